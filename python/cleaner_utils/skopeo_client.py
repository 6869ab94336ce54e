"""
Skopeo client for Docker registry operations.

This module provides a standardized client for listing, inspecting and
deleting registry images using skopeo, with support for rate limiting,
retries and docker-config based authentication.
"""

import json
import logging
import os
import subprocess
import time
from threading import Lock
from typing import Any, Dict, List, Optional

from cleaner_utils.error_utils import create_rate_limit_error, create_registry_connection_error, has_status_code
from cleaner_utils.retry_utils import retry_from_config


class ImageNotFoundError(Exception):
    """Raised when an image tag or repository does not exist in the registry.

    This is a non-retryable condition: the tag was never there or was
    already deleted by a concurrent or earlier operation.
    """


NOT_FOUND_MARKERS = ("manifest unknown", "name unknown")
RATE_LIMIT_MARKERS = ("rate limit", "too many requests")


def resolve_auth_file(docker_config: Optional[str]) -> Optional[str]:
    """Map a docker config location (dir or file) to the auth file skopeo expects."""
    if not docker_config:
        return None
    path = os.path.expanduser(docker_config)
    if os.path.isdir(path):
        return os.path.join(path, "config.json")
    return path


class SkopeoClient:
    """Standardized Skopeo client for registry operations."""

    def __init__(self, config_manager, docker_config: Optional[str] = None, tls_verify: Optional[bool] = None):
        """Initialize SkopeoClient.

        Args:
            config_manager: ConfigManager instance for accessing configuration
            docker_config: Docker config dir or auth file (defaults to config)
            tls_verify: Verify registry TLS (defaults to config; False for insecure repos)
        """
        self.config_manager = config_manager
        self.auth_file = resolve_auth_file(docker_config or config_manager.get_docker_config())
        self.tls_verify = config_manager.get_tls_verify() if tls_verify is None else tls_verify

        # Rate limiting
        self.rate_limit_enabled = config_manager.get_rate_limit_enabled()
        self.rate_limit_rps = config_manager.get_rate_limit_rps()
        self.rate_limit_burst = config_manager.get_rate_limit_burst()
        self._rate_limiter_lock = Lock()

        if self.rate_limit_enabled:
            self._init_rate_limiter()

    def _init_rate_limiter(self):
        """Initialize token bucket rate limiter."""
        self._tokens = float(self.rate_limit_burst)
        self._last_update = time.time()
        self._token_refill_rate = self.rate_limit_rps

    def _acquire_rate_limit_token(self):
        """Acquire a token from the rate limiter, waiting if necessary."""
        if not self.rate_limit_enabled:
            return

        with self._rate_limiter_lock:
            now = time.time()
            elapsed = now - self._last_update

            # Refill tokens based on elapsed time
            self._tokens = min(self.rate_limit_burst, self._tokens + elapsed * self._token_refill_rate)
            self._last_update = now

            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return

            wait_time = (1.0 - self._tokens) / self._token_refill_rate
            if wait_time > 0:
                logging.debug(f"Rate limiting: waiting {wait_time:.2f}s (tokens: {self._tokens:.2f})")
                time.sleep(wait_time)
                self._tokens = 0.0
                self._last_update = time.time()

    def _get_auth_args(self) -> List[str]:
        """Get TLS and authentication arguments for Skopeo commands."""
        args = [f"--tls-verify={'true' if self.tls_verify else 'false'}"]
        if self.auth_file:
            args.extend(["--authfile", self.auth_file])
        return args

    def _build_skopeo_command(self, subcommand: str, args: List[str]) -> List[str]:
        """Build a complete Skopeo command with authentication."""
        return ["skopeo", subcommand] + self._get_auth_args() + args

    @staticmethod
    def _redact_command_for_logging(cmd: List[str]) -> List[str]:
        """Return a copy of the command with any credentials redacted."""
        redacted = list(cmd)

        creds_flags = ("--creds", "--src-creds", "--dest-creds")
        token_flags = ("--password", "--registry-token")

        for i, token in enumerate(redacted):
            if token in creds_flags and i + 1 < len(redacted):
                value = redacted[i + 1]
                if isinstance(value, str) and ":" in value:
                    user, _ = value.split(":", 1)
                    redacted[i + 1] = f"{user}:****"
            if token in token_flags and i + 1 < len(redacted):
                redacted[i + 1] = "****"

        return redacted

    def run_skopeo_command(self, subcommand: str, args: List[str], target: str) -> str:
        """Run a Skopeo command with retries and return its stdout.

        Raises:
            ImageNotFoundError: The referenced image or repository does not exist
            ActionableError: The registry could not be reached after retries
        """
        self._acquire_rate_limit_token()

        timeout = self.config_manager.get_retry_timeout()
        cmd = self._build_skopeo_command(subcommand, args)
        log_cmd = " ".join(self._redact_command_for_logging(cmd))

        @retry_from_config(self.config_manager)
        def _execute():
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=timeout)
                return result.stdout
            except subprocess.TimeoutExpired as e:
                logging.error(f"Skopeo command timed out after {timeout}s: {log_cmd}")
                raise create_registry_connection_error(target, e)
            except subprocess.CalledProcessError as e:
                stderr = (e.stderr or "").strip()
                error_str = stderr.lower()
                if has_status_code(error_str, "429") or any(marker in error_str for marker in RATE_LIMIT_MARKERS):
                    raise create_rate_limit_error(f"skopeo {subcommand}", retry_after=1.0)
                if has_status_code(error_str, "404") or any(marker in error_str for marker in NOT_FOUND_MARKERS):
                    raise ImageNotFoundError(f"Image not found in registry: {target} ({stderr})")
                logging.debug(f"Skopeo command failed: {log_cmd}: {stderr}")
                raise create_registry_connection_error(target, RuntimeError(stderr or str(e)))
            except FileNotFoundError as e:
                raise create_registry_connection_error(target, e)

        return _execute()

    def list_tags(self, repository: str) -> List[str]:
        """List all tags for a repository. A repository that does not exist has no tags."""
        try:
            output = self.run_skopeo_command("list-tags", [f"docker://{repository}"], repository)
        except ImageNotFoundError:
            logging.debug(f"Repository {repository} does not exist yet")
            return []
        try:
            return json.loads(output).get("Tags") or []
        except json.JSONDecodeError as e:
            raise create_registry_connection_error(repository, e)

    def inspect_image(self, repository: str, tag: str) -> Dict[str, Any]:
        """Inspect a specific image tag (labels, creation time, manifest digest)."""
        ref = f"{repository}:{tag}"
        output = self.run_skopeo_command("inspect", [f"docker://{ref}"], ref)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise create_registry_connection_error(ref, e)

    def delete_image(self, repository: str, tag: str) -> None:
        """Delete a specific image tag."""
        ref = f"{repository}:{tag}"
        self.run_skopeo_command("delete", [f"docker://{ref}"], ref)
