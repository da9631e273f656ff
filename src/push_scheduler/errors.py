# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy and HTTP status mapping.

Every client-facing failure is a :class:`PushSchedulerError` subclass carrying
an :class:`ErrorCode`. The API layer renders these as::

    {"success": false, "error": {"code": ..., "message": ..., "details": ...}}

using :data:`STATUS_BY_CODE` for the HTTP status. Errors that never reach a
client directly (content generation, transport, storage constraint) are plain
exceptions handled inside the dispatcher or the lifecycle.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Closed set of error codes exposed at the HTTP boundary."""

    # auth
    INVALID_TENANT_AUTH = "INVALID_TENANT_AUTH"
    INVALID_INIT_AUTH = "INVALID_INIT_AUTH"
    # request / validation
    INVALID_JSON = "INVALID_JSON"
    INVALID_REQUEST_BODY = "INVALID_REQUEST_BODY"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    INVALID_MESSAGE_TYPE = "INVALID_MESSAGE_TYPE"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    INVALID_UPDATE_DATA = "INVALID_UPDATE_DATA"
    ENCRYPTION_REQUIRED = "ENCRYPTION_REQUIRED"
    UNSUPPORTED_ENCRYPTION_VERSION = "UNSUPPORTED_ENCRYPTION_VERSION"
    USER_ID_REQUIRED = "USER_ID_REQUIRED"
    INVALID_USER_ID_FORMAT = "INVALID_USER_ID_FORMAT"
    INVALID_ENCRYPTED_PAYLOAD = "INVALID_ENCRYPTED_PAYLOAD"
    INVALID_PAYLOAD_FORMAT = "INVALID_PAYLOAD_FORMAT"
    TASK_ID_REQUIRED = "TASK_ID_REQUIRED"
    INVALID_DRIVER = "INVALID_DRIVER"
    INVALID_DATABASE_URL = "INVALID_DATABASE_URL"
    INVALID_TENANT_ID = "INVALID_TENANT_ID"
    # crypto
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    # not found / conflict
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    TASK_UUID_CONFLICT = "TASK_UUID_CONFLICT"
    TENANT_ALREADY_INITIALIZED = "TENANT_ALREADY_INITIALIZED"
    DATABASE_ALREADY_BOUND = "DATABASE_ALREADY_BOUND"
    TASK_ALREADY_COMPLETED = "TASK_ALREADY_COMPLETED"
    UPDATE_CONFLICT = "UPDATE_CONFLICT"
    # configuration / internal
    VAPID_CONFIG_ERROR = "VAPID_CONFIG_ERROR"
    TENANT_CONFIG_ERROR = "TENANT_CONFIG_ERROR"
    TASK_CREATE_FAILED = "TASK_CREATE_FAILED"
    MESSAGE_SEND_FAILED = "MESSAGE_SEND_FAILED"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.INVALID_TENANT_AUTH: 401,
    ErrorCode.INVALID_INIT_AUTH: 401,
    ErrorCode.INVALID_JSON: 400,
    ErrorCode.INVALID_REQUEST_BODY: 400,
    ErrorCode.INVALID_PARAMETERS: 400,
    ErrorCode.INVALID_MESSAGE_TYPE: 400,
    ErrorCode.INVALID_TIMESTAMP: 400,
    ErrorCode.INVALID_UPDATE_DATA: 400,
    ErrorCode.ENCRYPTION_REQUIRED: 400,
    ErrorCode.UNSUPPORTED_ENCRYPTION_VERSION: 400,
    ErrorCode.USER_ID_REQUIRED: 400,
    ErrorCode.INVALID_USER_ID_FORMAT: 400,
    ErrorCode.INVALID_ENCRYPTED_PAYLOAD: 400,
    ErrorCode.INVALID_PAYLOAD_FORMAT: 400,
    ErrorCode.TASK_ID_REQUIRED: 400,
    ErrorCode.INVALID_DRIVER: 400,
    ErrorCode.INVALID_DATABASE_URL: 400,
    ErrorCode.INVALID_TENANT_ID: 400,
    ErrorCode.DECRYPTION_FAILED: 400,
    ErrorCode.TASK_NOT_FOUND: 404,
    ErrorCode.TASK_UUID_CONFLICT: 409,
    ErrorCode.TENANT_ALREADY_INITIALIZED: 409,
    ErrorCode.DATABASE_ALREADY_BOUND: 409,
    ErrorCode.TASK_ALREADY_COMPLETED: 409,
    ErrorCode.UPDATE_CONFLICT: 409,
    ErrorCode.VAPID_CONFIG_ERROR: 500,
    ErrorCode.TENANT_CONFIG_ERROR: 500,
    ErrorCode.TASK_CREATE_FAILED: 500,
    ErrorCode.MESSAGE_SEND_FAILED: 500,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
}


class PushSchedulerError(Exception):
    """Base class for errors rendered to API clients.

    Attributes:
        code: The :class:`ErrorCode` reported to the client.
        message: Human readable message, safe to return.
        details: Optional structured details, safe to return.
    """

    code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error, please retry later"

    def __init__(self, message: str | None = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE[self.code]

    def to_dict(self) -> dict[str, Any]:
        """Return the ``error`` object of the response body."""
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return error


# --- auth -------------------------------------------------------------------

class InvalidTenantAuth(PushSchedulerError):
    """Any token or tenant-config failure. The cause is never disclosed."""

    code = ErrorCode.INVALID_TENANT_AUTH
    default_message = "Tenant token is missing, invalid or expired"


class InvalidInitAuth(PushSchedulerError):
    code = ErrorCode.INVALID_INIT_AUTH
    default_message = "Invalid init secret"


# --- validation / request shape ---------------------------------------------

class ValidationFailed(PushSchedulerError):
    """Field-level validation failure carrying its own code."""

    def __init__(self, code: ErrorCode, message: str, details: Any = None):
        self.code = code
        super().__init__(message, details)


class EncryptionRequired(PushSchedulerError):
    code = ErrorCode.ENCRYPTION_REQUIRED
    default_message = "Request body must be encrypted"


class UnsupportedEncryptionVersion(PushSchedulerError):
    code = ErrorCode.UNSUPPORTED_ENCRYPTION_VERSION
    default_message = "Unsupported encryption version"


class UserIdRequired(PushSchedulerError):
    code = ErrorCode.USER_ID_REQUIRED
    default_message = "Missing X-User-Id header"


class InvalidUserIdFormat(PushSchedulerError):
    code = ErrorCode.INVALID_USER_ID_FORMAT
    default_message = "X-User-Id must be a UUID v4"


class InvalidEncryptedPayload(PushSchedulerError):
    code = ErrorCode.INVALID_ENCRYPTED_PAYLOAD
    default_message = "Malformed encrypted payload"


class InvalidPayloadFormat(PushSchedulerError):
    code = ErrorCode.INVALID_PAYLOAD_FORMAT
    default_message = "Decrypted payload is not a JSON object"


class TaskIdRequired(PushSchedulerError):
    code = ErrorCode.TASK_ID_REQUIRED
    default_message = "Missing task id"


class InvalidDriver(PushSchedulerError):
    code = ErrorCode.INVALID_DRIVER
    default_message = "Unsupported database driver"


class InvalidDatabaseUrl(PushSchedulerError):
    code = ErrorCode.INVALID_DATABASE_URL
    default_message = "Database connection string is required"


class InvalidTenantId(PushSchedulerError):
    code = ErrorCode.INVALID_TENANT_ID
    default_message = "tenantId must be a UUID v4"


# --- crypto -----------------------------------------------------------------

class DecryptionFailed(PushSchedulerError):
    """Authentication tag mismatch, wrong key or malformed envelope."""

    code = ErrorCode.DECRYPTION_FAILED
    default_message = "Payload decryption failed"


# --- not found / conflict ---------------------------------------------------

class TaskNotFound(PushSchedulerError):
    code = ErrorCode.TASK_NOT_FOUND
    default_message = "Task does not exist or was already deleted"


class TaskUuidConflict(PushSchedulerError):
    code = ErrorCode.TASK_UUID_CONFLICT
    default_message = "Task uuid already exists, submit again with a new uuid"


class TenantAlreadyInitialized(PushSchedulerError):
    code = ErrorCode.TENANT_ALREADY_INITIALIZED
    default_message = "Tenant is already initialized"


class DatabaseAlreadyBound(PushSchedulerError):
    """The database descriptor already belongs to another tenant."""

    code = ErrorCode.DATABASE_ALREADY_BOUND
    default_message = "Database is already bound to another tenant"


class TaskAlreadyCompleted(PushSchedulerError):
    code = ErrorCode.TASK_ALREADY_COMPLETED
    default_message = "Task already completed or failed and cannot be updated"


class UpdateConflict(PushSchedulerError):
    code = ErrorCode.UPDATE_CONFLICT
    default_message = "Task update failed, it may have been modified or deleted"


# --- configuration / internal -----------------------------------------------

class TransportConfigError(PushSchedulerError):
    code = ErrorCode.VAPID_CONFIG_ERROR
    default_message = "Push transport is not configured"


class TenantConfigError(PushSchedulerError):
    code = ErrorCode.TENANT_CONFIG_ERROR
    default_message = "Tenant configuration keys are not set"


class TaskCreateFailed(PushSchedulerError):
    code = ErrorCode.TASK_CREATE_FAILED
    default_message = "Task creation failed"


class MessageSendFailed(PushSchedulerError):
    code = ErrorCode.MESSAGE_SEND_FAILED
    default_message = "Message delivery failed"


class InternalError(PushSchedulerError):
    code = ErrorCode.INTERNAL_SERVER_ERROR


# --- internal, never rendered directly --------------------------------------

class ContentGenerationError(Exception):
    """The message text could not be resolved (completion endpoint or payload)."""


class TransportError(Exception):
    """The push transport rejected or failed to deliver a message."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DuplicateKeyError(Exception):
    """A storage unique constraint was violated."""


class SchemaInitError(Exception):
    """A critical part of the task schema could not be created."""
