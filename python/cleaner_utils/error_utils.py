"""
Error message utilities for providing actionable guidance to users.

This module provides functions to create helpful error messages with
suggested fixes and troubleshooting steps.
"""

import re
from typing import List, Optional, Dict, Any
from enum import Enum


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RESOURCE = "resource"
    NETWORK = "network"
    CONCURRENCY = "concurrency"
    CORRUPTION = "corruption"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [f"❌ {self.message}"]

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\n📋 Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


def _error_details(error: Exception, **extra: Any) -> Dict[str, Any]:
    details = dict(extra)
    details["error_type"] = type(error).__name__
    details["error_message"] = str(error)
    return details


def has_status_code(text: str, *codes: str) -> bool:
    """Check for HTTP status codes as whole words; ``sha256:9f404e`` holds no 404"""
    return any(re.search(rf"\b{code}\b", text) for code in codes)


def registry_connection_guidance(registry_ref: str, error: Exception) -> Dict[str, Any]:
    """Build message, category, suggestions and details for registry failures"""
    error_str = str(error).lower()

    suggestions = [
        f"Verify the repository reference is correct: {registry_ref}",
        "Check network connectivity to the registry",
        "Verify the docker config (--docker-config) holds valid credentials",
        "Use --insecure-repo for registries served over plain HTTP or self-signed TLS",
    ]
    category = ErrorCategory.CONNECTION

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if the registry is experiencing high load")

    if has_status_code(error_str, "401") or "unauthorized" in error_str or "denied" in error_str:
        category = ErrorCategory.AUTHENTICATION
        suggestions.insert(0, "Log in to the registry (docker login) or refresh expired credentials")

    if "name resolution" in error_str or "dns" in error_str or "no such host" in error_str:
        suggestions.insert(1, "Verify DNS resolution for the registry hostname")

    return {
        "message": f"Failed to reach registry repository {registry_ref}",
        "category": category,
        "suggestions": suggestions,
        "details": _error_details(error, registry_ref=registry_ref),
    }


def create_registry_connection_error(registry_ref: str, error: Exception) -> ActionableError:
    """Create actionable error for registry connection failures"""
    return ActionableError(**registry_connection_guidance(registry_ref, error))


def kubernetes_guidance(operation: str, error: Exception) -> Dict[str, Any]:
    """Build guidance for Kubernetes API failures"""
    error_str = str(error).lower()

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check --kube-config and --kube-context point at the intended cluster",
        "Verify RBAC permissions allow listing namespaces and workloads",
        "Use --without-kube to explicitly run without cluster protection",
    ]

    forbidden = has_status_code(error_str, "403") or "forbidden" in error_str
    if forbidden:
        suggestions.insert(0, "Check Kubernetes RBAC permissions")
        suggestions.insert(1, "Verify the service account has list permissions cluster-wide")

    return {
        "message": f"Kubernetes operation failed: {operation}",
        "category": ErrorCategory.PERMISSION if forbidden else ErrorCategory.CONNECTION,
        "suggestions": suggestions,
        "details": _error_details(error, operation=operation),
    }


def git_repository_guidance(project_dir: str, error: Exception) -> Dict[str, Any]:
    """Build guidance for unreadable git repositories"""
    return {
        "message": f"Cannot read git repository at {project_dir}",
        "category": ErrorCategory.CORRUPTION,
        "suggestions": [
            "Run 'git fsck' in the project directory",
            "Verify the git binary is installed and on PATH",
            "Fetch the repository again if refs or objects are missing",
        ],
        "details": _error_details(error, project_dir=project_dir),
    }


def lock_guidance(key: str, holder: Optional[str], timeout: float) -> Dict[str, Any]:
    """Build guidance for a lock held by another process"""
    suggestions = [
        "Wait for the running cleanup or build of this project to finish",
        "Increase lock.timeout in config.yaml to block instead of failing fast",
    ]
    details: Dict[str, Any] = {"key": key, "timeout_seconds": timeout}
    if holder:
        details["holder"] = holder
    return {
        "message": f"Lock '{key}' is held by another process",
        "category": ErrorCategory.CONCURRENCY,
        "suggestions": suggestions,
        "details": details,
    }


def create_config_error(field: str, value: Any, reason: str) -> ActionableError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml",
        "Verify the value matches the expected format",
        "Review the configuration validation error message above"
    ]

    if "policies" in field.lower():
        suggestions.insert(1, "Policy format: scheme:pattern[:keep=N][:expire=DUR], separated by ';'")
    elif "timeout" in field.lower() or "workers" in field.lower():
        suggestions.insert(1, "Numeric values must be non-negative")

    return ActionableError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )


def create_rate_limit_error(operation: str, retry_after: Optional[float] = None) -> ActionableError:
    """Create actionable error for rate limiting"""
    suggestions = [
        "Reduce cleanup.max_workers in config.yaml",
        "Lower registry.rate_limit.requests_per_second in config.yaml",
        "Wait before retrying the operation",
    ]

    if retry_after:
        suggestions.insert(0, f"Wait {retry_after:.1f} seconds before retrying")

    return ActionableError(
        message=f"Rate limit exceeded for operation: {operation}",
        category=ErrorCategory.NETWORK,
        suggestions=suggestions,
        details={
            "operation": operation,
            "retry_after": retry_after
        }
    )
