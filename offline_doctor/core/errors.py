# offline_doctor/core/errors.py
from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    """Base error. `status_code` is only used when rendering HTTP responses."""

    status_code = 500


class ModelNotFound(AssistantError):
    status_code = 404


class BinaryNotFound(AssistantError):
    status_code = 500


class StartupTimeout(AssistantError):
    status_code = 504


class NotReady(AssistantError):
    status_code = 503


class BackendError(AssistantError):
    status_code = 502


class StorageError(AssistantError):
    status_code = 500


class NotFound(AssistantError):
    status_code = 404


class DownloadError(AssistantError):
    status_code = 502


class ConfirmationRequired(AssistantError):
    status_code = 400


class OperationFailed(AssistantError):
    """Single textual failure for one caller-facing operation."""

    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause: Optional[Exception] = cause
        self.status_code = getattr(cause, "status_code", 500)
