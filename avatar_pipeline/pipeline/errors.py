"""
Photo avatar pipeline errors and their user-facing descriptions.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base class for everything the pipeline classifies."""

    error_code = "processing_error"


class UploadError(PipelineError):
    """The provider did not return an image key for the uploaded asset."""

    error_code = "upload_failed"


class ProviderApiError(PipelineError):
    """The provider answered with a non-2xx status or could not be reached.

    ``status_code`` is None for transport failures (DNS, timeouts, resets).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def api_error_code(self) -> Optional[str]:
        """The provider's own error code, e.g. ``insufficient_credit``."""
        if isinstance(self.body, dict):
            error = self.body.get("error")
            if isinstance(error, dict):
                return error.get("code")
        return None


class TrainingError(PipelineError):
    """Training request was not acknowledged. Logged, never terminal."""

    error_code = "training_failed"


class PersistenceError(PipelineError):
    """The avatar record could not be written."""

    error_code = "persistence_failed"


class DuplicateAvatarError(PersistenceError):
    """A record for this provider avatar id already exists."""

    error_code = "duplicate_avatar"


class UnexpectedError(PipelineError):
    """Wraps anything the pipeline did not anticipate."""


class PipelineFailed(PipelineError):
    """A stage failed terminally and the user has already been notified."""

    def __init__(self, stage: str, cause: PipelineError):
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


def describe_upload_error(error: PipelineError) -> Dict[str, Any]:
    code = "upload_failed"
    message = "Failed to upload image. Please try again."

    if isinstance(error, ProviderApiError):
        status = error.status_code
        if status is None:
            code = "network_error"
            message = "Network error. Please check your connection and try again."
        elif status == 401:
            code = "auth_failed"
            message = "Authentication failed. Please contact support."
        elif status == 413:
            code = "file_too_large"
            message = "Image file is too large. Please use a smaller image."
        elif status == 415:
            code = "unsupported_format"
            message = "Unsupported image format. Please use JPEG, PNG, or WebP."
        elif status >= 500:
            code = "server_error"
            message = "Server error. Please try again later."

    return {"message": message, "rawError": str(error), "errorCode": code}


def describe_group_creation_error(error: PipelineError) -> Dict[str, Any]:
    code = "unknown_error"
    message = "Failed to create avatar group. Please try again."
    status = None

    if isinstance(error, ProviderApiError):
        status = error.status_code
        if status == 400:
            if error.api_error_code == "insufficient_credit":
                code = "insufficient_credits"
                message = "Insufficient credits to create avatar. Please contact support."
            else:
                code = "invalid_image"
                message = (
                    "The image format or size is not supported. "
                    "Please use a clear, well-lit photo."
                )
        elif status == 429:
            code = "rate_limited"
            message = "Too many requests right now. Please retry in a few minutes."

    return {
        "message": message,
        "rawError": str(error),
        "errorCode": code,
        "statusCode": status,
    }


def describe_general_error(error: BaseException) -> Dict[str, Any]:
    code = "processing_error"
    message = "Failed to create your custom avatar. Please try again."

    if isinstance(error, FileNotFoundError):
        code = "file_not_found"
        message = "The uploaded image file was not found. Please try uploading again."
    elif isinstance(error, PermissionError):
        code = "permission_error"
        message = "Permission error accessing the image file. Please try again."
    elif isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        code = "timeout"
        message = "Avatar creation took too long and was stopped. Please try again."
    elif isinstance(error, ProviderApiError) and error.status_code is None:
        code = "network_error"
        message = "Network error while contacting the avatar service. Please try again."
    elif isinstance(error, PersistenceError):
        code = error.error_code
        message = "Your avatar was created but could not be saved. Please contact support."

    return {"message": message, "rawError": str(error) or type(error).__name__, "errorCode": code}
