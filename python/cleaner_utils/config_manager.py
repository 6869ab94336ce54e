#!/usr/bin/env python3
"""
Configuration Manager for the registry stages cleaner

This module handles loading and managing configuration from config.yaml
and environment variables.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


DEFAULT_CLEANUP_POLICIES = [
    # Keep every tag whose branch still exists
    {"scheme": "git-branch", "pattern": "*", "keep_last": 0},
    {"scheme": "git-tag", "pattern": "*", "keep_last": 10, "expire_after": "30d"},
    {"scheme": "git-commit", "pattern": "*", "keep_last": 50, "expire_after": "30d"},
    {"scheme": "custom", "pattern": "*", "keep_last": 0},
]


class ConfigManager:
    """Manages configuration for the registry stages cleaner"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        # Allow override via environment variable for containerized deployments
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "registry": {
                "docker_config": None,
                "tls_verify": True,
                "rate_limit": {
                    "enabled": True,
                    "requests_per_second": 10.0,  # Max requests per second
                    "burst_size": 20,  # Allow burst of up to N requests
                },
            },
            "kubernetes": {"kube_config": None, "kube_context": None, "all_contexts": False, "max_workers": 4},
            "cleanup": {"max_workers": 4, "policies": [dict(p) for p in DEFAULT_CLEANUP_POLICIES]},
            "lock": {"dir": os.path.join("~", ".stages-cleaner", "locks"), "timeout": 0},
            "git": {"timeout": 120},
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 60.0,
                "exponential_base": 2.0,
                "jitter": True,
                "timeout": 300,  # Timeout for subprocess calls in seconds
            },
            "reports": {"enabled": True, "output_dir": "reports", "cleanup_report": "cleanup-report"},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise ConfigValidationError(f"Config file {self.config_file} must hold a mapping")
                return self._merge_config(default_config, user_config)
            else:
                logging.debug(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Cannot load config file {self.config_file}: {e}") from e

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _get_int(self, section: str, key: str, default: int) -> int:
        value = self.config.get(section, {}).get(key, default)
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _get_float(self, section: str, key: str, default: float) -> float:
        value = self.config.get(section, {}).get(key, default)
        try:
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be a number, got: {value} (type: {type(value).__name__})"
            )

    # Registry configuration
    def get_docker_config(self) -> Optional[str]:
        """Get docker config path (auth file) from environment or config"""
        return os.environ.get("DOCKER_CONFIG") or self.config["registry"].get("docker_config")

    def get_tls_verify(self) -> bool:
        return bool(self.config["registry"].get("tls_verify", True))

    def get_rate_limit_enabled(self) -> bool:
        """Get whether rate limiting is enabled for registry operations"""
        return self.config["registry"].get("rate_limit", {}).get("enabled", True)

    def get_rate_limit_rps(self) -> float:
        """Get requests per second for registry rate limiting"""
        return float(self.config["registry"].get("rate_limit", {}).get("requests_per_second", 10.0))

    def get_rate_limit_burst(self) -> int:
        """Get burst size for registry rate limiting"""
        return int(self.config["registry"].get("rate_limit", {}).get("burst_size", 20))

    # Kubernetes configuration
    def get_kube_config(self) -> Optional[str]:
        return os.environ.get("KUBECONFIG") or self.config["kubernetes"].get("kube_config")

    def get_kube_context(self) -> Optional[str]:
        return os.environ.get("KUBE_CONTEXT") or self.config["kubernetes"].get("kube_context")

    def scan_all_kube_contexts(self) -> bool:
        """Whether the live workload scan covers every kubeconfig context"""
        return bool(self.config["kubernetes"].get("all_contexts", False))

    def get_kube_max_workers(self) -> int:
        return self._get_int("kubernetes", "max_workers", 4)

    # Cleanup configuration
    def get_max_workers(self) -> int:
        """Get max deletion workers from config, with type coercion"""
        return self._get_int("cleanup", "max_workers", 4)

    def get_cleanup_policies(self) -> List[Dict[str, Any]]:
        """Get raw cleanup policy mappings from config"""
        policies = self.config["cleanup"].get("policies")
        if policies is None:
            return [dict(p) for p in DEFAULT_CLEANUP_POLICIES]
        return policies

    # Lock configuration
    def get_lock_dir(self) -> str:
        lock_dir = os.environ.get("CLEANUP_LOCK_DIR") or self.config["lock"]["dir"]
        return os.path.expanduser(lock_dir)

    def get_lock_timeout(self) -> float:
        """Seconds to wait for the project lock (0 = fail fast)"""
        return self._get_float("lock", "timeout", 0)

    # Git configuration
    def get_git_timeout(self) -> int:
        return self._get_int("git", "timeout", 120)

    # Retry configuration
    def get_max_retries(self) -> int:
        """Get max retries from config, with type coercion"""
        return self._get_int("retry", "max_retries", 3)

    def get_retry_initial_delay(self) -> float:
        """Get initial retry delay from config, with type coercion"""
        return self._get_float("retry", "initial_delay", 1.0)

    def get_retry_max_delay(self) -> float:
        """Get max retry delay from config, with type coercion"""
        return self._get_float("retry", "max_delay", 60.0)

    def get_retry_exponential_base(self) -> float:
        """Get exponential base for retry backoff from config, with type coercion"""
        return self._get_float("retry", "exponential_base", 2.0)

    def get_retry_jitter(self) -> bool:
        """Get whether to use jitter in retry delays from config"""
        return self.config.get("retry", {}).get("jitter", True)

    def get_retry_timeout(self) -> int:
        """Get timeout for subprocess calls from config, with type coercion"""
        return self._get_int("retry", "timeout", 300)

    # Report configuration
    def reports_enabled(self) -> bool:
        return bool(self.config["reports"].get("enabled", True))

    def get_output_dir(self) -> str:
        """Get output directory from config"""
        return self.config["reports"]["output_dir"]

    def get_cleanup_report_path(self) -> str:
        """Get cleanup report base path (without extension) under output_dir"""
        base = self.config["reports"]["cleanup_report"]
        if os.path.isabs(base) or os.path.basename(base) != base:
            return base
        return os.path.join(self.get_output_dir(), base)

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        max_workers = self.get_max_workers()
        if max_workers < 1:
            errors.append(f"cleanup.max_workers must be a positive integer, got: {max_workers}")
        elif max_workers > 50:
            warnings.append(f"cleanup.max_workers is very high ({max_workers}), the registry may rate limit")

        kube_workers = self.get_kube_max_workers()
        if kube_workers < 1:
            errors.append(f"kubernetes.max_workers must be a positive integer, got: {kube_workers}")

        policies = self.config["cleanup"].get("policies")
        if policies is not None and not isinstance(policies, list):
            errors.append(f"cleanup.policies must be a list of mappings, got: {type(policies).__name__}")
        elif policies:
            for i, policy in enumerate(policies):
                if not isinstance(policy, dict) or "scheme" not in policy:
                    errors.append(f"cleanup.policies[{i}] must be a mapping with at least a 'scheme' key")

        lock_timeout = self.get_lock_timeout()
        if lock_timeout < 0:
            errors.append(f"lock.timeout must be a non-negative number, got: {lock_timeout}")

        if self.get_git_timeout() < 1:
            errors.append(f"git.timeout must be a positive integer (seconds), got: {self.get_git_timeout()}")

        # Validate retry configuration
        max_retries = self.get_max_retries()
        if max_retries < 0:
            errors.append(f"retry.max_retries must be a non-negative integer, got: {max_retries}")
        elif max_retries > 10:
            warnings.append(f"max_retries is very high ({max_retries}), operations may take a long time")

        initial_delay = self.get_retry_initial_delay()
        max_delay = self.get_retry_max_delay()
        if initial_delay < 0:
            errors.append(f"retry.initial_delay must be a non-negative number, got: {initial_delay}")
        if max_delay < 0:
            errors.append(f"retry.max_delay must be a non-negative number, got: {max_delay}")
        elif max_delay < initial_delay:
            errors.append(f"retry.max_delay ({max_delay}) must be >= retry.initial_delay ({initial_delay})")

        if self.get_retry_exponential_base() < 1.0:
            errors.append(f"retry.exponential_base must be >= 1.0, got: {self.get_retry_exponential_base()}")

        if self.get_retry_timeout() < 1:
            errors.append(f"retry.timeout must be a positive integer (seconds), got: {self.get_retry_timeout()}")

        if self.get_rate_limit_enabled() and self.get_rate_limit_rps() <= 0:
            errors.append("registry.rate_limit.requests_per_second must be positive when rate limiting is enabled")

        output_dir = self.get_output_dir()
        if not output_dir or not str(output_dir).strip():
            errors.append("reports.output_dir is required and cannot be empty")

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg)


# Global config manager instance
# Validation can be disabled by setting SKIP_CONFIG_VALIDATION=true environment variable
config_manager = ConfigManager(
    validate=os.environ.get("SKIP_CONFIG_VALIDATION", "").lower() not in ("true", "1", "yes")
)
