"""
Docker CLI client for the local stages storage.

Lists and removes images held by the local docker daemon, following the
same retry and error conventions as the skopeo client.
"""

import json
import logging
import subprocess
from typing import Any, Dict, List, Optional

from cleaner_utils.error_utils import ActionableError, ErrorCategory
from cleaner_utils.retry_utils import retry_from_config
from cleaner_utils.skopeo_client import ImageNotFoundError


def create_docker_daemon_error(operation: str, error: Exception) -> ActionableError:
    """Create actionable error for docker daemon failures"""
    return ActionableError(
        message=f"Docker daemon operation failed: {operation}",
        category=ErrorCategory.CONNECTION,
        suggestions=[
            "Verify the docker daemon is running (docker info)",
            "Check DOCKER_HOST and permissions on the docker socket",
        ],
        details={"operation": operation, "error_type": type(error).__name__, "error_message": str(error)},
    )


class DockerClient:
    """Thin wrapper over the docker CLI."""

    def __init__(self, config_manager, docker_config: Optional[str] = None):
        self.config_manager = config_manager
        self.docker_config = docker_config or config_manager.get_docker_config()

    def _build_command(self, args: List[str]) -> List[str]:
        cmd = ["docker"]
        if self.docker_config:
            cmd.extend(["--config", self.docker_config])
        return cmd + args

    def run_docker_command(self, args: List[str], operation: str) -> str:
        """Run a docker command with retries and return stdout."""
        timeout = self.config_manager.get_retry_timeout()
        cmd = self._build_command(args)

        @retry_from_config(self.config_manager)
        def _execute():
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
                return result.stdout
            except subprocess.TimeoutExpired as e:
                raise create_docker_daemon_error(operation, e)
            except subprocess.CalledProcessError as e:
                stderr = (e.stderr or "").strip()
                if "no such image" in stderr.lower():
                    raise ImageNotFoundError(f"Image not found in local storage: {operation} ({stderr})")
                logging.debug(f"Docker command failed: {' '.join(cmd)}: {stderr}")
                raise create_docker_daemon_error(operation, RuntimeError(stderr or str(e)))
            except FileNotFoundError as e:
                raise create_docker_daemon_error(operation, e)

        return _execute()

    def list_image_ids(self, label: str, reference: Optional[str] = None) -> List[str]:
        """List ids of local images carrying the given label (and matching reference, if given)."""
        args = ["image", "ls", "--no-trunc", "--quiet", "--filter", f"label={label}"]
        if reference:
            args.extend(["--filter", f"reference={reference}"])
        output = self.run_docker_command(args, f"list images with label {label}")
        # The same id shows once per tag
        return list(dict.fromkeys(line.strip() for line in output.splitlines() if line.strip()))

    def inspect_images(self, image_ids: List[str]) -> List[Dict[str, Any]]:
        if not image_ids:
            return []
        output = self.run_docker_command(["image", "inspect"] + image_ids, f"inspect {len(image_ids)} images")
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise create_docker_daemon_error("inspect images", e)

    def remove_image(self, image_id: str) -> None:
        self.run_docker_command(["image", "rm", "--force", image_id], f"remove image {image_id}")
