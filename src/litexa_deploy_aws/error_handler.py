"""
Centralized error handling utilities for consistent error management.
"""
import logging
import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Standard error types for consistent categorization."""
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    REMOTE_STATE_ERROR = "REMOTE_STATE_ERROR"
    UPLOAD_ERROR = "UPLOAD_ERROR"
    ROLE_RECONCILIATION_ERROR = "ROLE_RECONCILIATION_ERROR"
    ASSET_DEPLOYMENT_ERROR = "ASSET_DEPLOYMENT_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DeploymentError(Exception):
    """Base exception class for all deployment errors."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_ERROR,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_type = error_type
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(self.message)


class ConfigurationError(DeploymentError):
    """Missing or invalid deployment configuration."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorType.CONFIGURATION_ERROR, original_error, context)


class InvalidConfigurationError(ConfigurationError):
    """A configured value breaks a naming rule."""


class PathValidationError(InvalidConfigurationError):
    """An object key contains characters S3 uploads do not allow."""


class RemoteStateError(DeploymentError):
    """Listing or reading remote state failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorType.REMOTE_STATE_ERROR, original_error, context)


class UploadError(DeploymentError):
    """An individual object upload failed."""

    def __init__(self, message: str, original_error: Optional[Exception] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorType.UPLOAD_ERROR, original_error, context)


class RoleNotFoundError(RemoteStateError):
    """The requested IAM role does not exist (yet)."""


class RoleReconciliationError(DeploymentError):
    """Converging an IAM role to its desired state failed."""

    def __init__(
        self,
        message: str,
        role_name: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        context = dict(context or {})
        if role_name:
            context["role_name"] = role_name
        self.role_name = role_name
        super().__init__(message, ErrorType.ROLE_RECONCILIATION_ERROR, original_error, context)


class AssetDeploymentError(DeploymentError):
    """The asset deployment step failed as a whole."""

    def __init__(self, message: str = "failed assets deployment", original_error: Optional[Exception] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorType.ASSET_DEPLOYMENT_ERROR, original_error, context)


def handle_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    log_level: int = logging.ERROR
) -> DeploymentError:
    """
    Centralized error handling function.

    Args:
        error: The original exception
        context: Additional context information
        log_level: Logging level for the error

    Returns:
        Standardized DeploymentError
    """
    if isinstance(error, DeploymentError):
        logger.log(log_level, f"[{error.error_type.value}] {error.message}", extra={
            "error_type": error.error_type.value,
            "context": error.context,
            "original_error": str(error.original_error) if error.original_error else None
        })
        return error

    error_type = _classify_error(error)

    error_context = dict(context or {})
    error_context.update({
        "exception_type": type(error).__name__,
        "traceback": traceback.format_exc()
    })

    deployment_error = DeploymentError(
        message=str(error),
        error_type=error_type,
        original_error=error,
        context=error_context
    )

    logger.log(log_level, f"[{error_type.value}] {str(error)}", extra={
        "error_type": error_type.value,
        "context": error_context,
        "original_error": str(error)
    })

    return deployment_error


def _classify_error(error: Exception) -> ErrorType:
    """Classify error based on exception type and message."""
    error_name = type(error).__name__
    error_message = str(error).lower()

    if any(aws_error in error_name for aws_error in ['ClientError', 'BotoCoreError', 'EndpointConnectionError']):
        return ErrorType.REMOTE_STATE_ERROR

    if error_name in ('NoCredentialsError', 'ProfileNotFound'):
        return ErrorType.CONFIGURATION_ERROR

    if 'invalid' in error_message or 'config' in error_message:
        return ErrorType.CONFIGURATION_ERROR

    return ErrorType.INTERNAL_ERROR


def get_user_friendly_message(error: Exception) -> str:
    """Short failure string for the command line; details belong in the log."""
    if isinstance(error, (AssetDeploymentError, RoleReconciliationError, ConfigurationError)):
        return error.message

    error_type = error.error_type if isinstance(error, DeploymentError) else _classify_error(error)
    friendly_messages = {
        ErrorType.CONFIGURATION_ERROR: "Deployment configuration is invalid.",
        ErrorType.REMOTE_STATE_ERROR: "Could not read the current AWS state.",
        ErrorType.UPLOAD_ERROR: "An asset upload failed.",
        ErrorType.ROLE_RECONCILIATION_ERROR: "Failed to reconcile IAM role.",
        ErrorType.ASSET_DEPLOYMENT_ERROR: "failed assets deployment",
        ErrorType.INTERNAL_ERROR: "An unexpected error occurred.",
    }
    return friendly_messages.get(error_type, "An unexpected error occurred.")
