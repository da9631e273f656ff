# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Validation of scheduling requests.

:func:`validate_schedule_payload` checks a decrypted schedule request and
reports the first problem found, in a fixed order, as a
:class:`ValidationResult`. The error codes and ``details`` are safe to return
to the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from .errors import ErrorCode, ValidationFailed
from .models import AI_FIELDS

MESSAGE_TYPES = ("fixed", "prompted", "auto", "instant")
MESSAGE_SUBTYPES = ("chat", "forum", "moment")
RECURRENCE_TYPES = ("none", "daily", "weekly")

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")

_PARAMS_MESSAGE = "Missing required parameter or invalid parameter format"


@dataclass
class ValidationResult:
    """Outcome of a validation. ``valid`` is False when a check failed."""

    valid: bool = True
    error_code: ErrorCode | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def raise_for_error(self) -> None:
        """Raise :class:`ValidationFailed` when the result is invalid."""
        if not self.valid:
            raise ValidationFailed(self.error_code, self.message, self.details or None)


def _fail(code: ErrorCode, message: str, **details: Any) -> ValidationResult:
    return ValidationResult(valid=False, error_code=code, message=message, details=details)


def parse_iso8601(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Returns None when ``value`` is not a parseable ISO-8601 string.
    """
    if not isinstance(value, str) or not _ISO_DATE_RE.match(value.strip()):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_iso8601(epoch: float | None) -> str | None:
    """Render epoch seconds as an ISO-8601 UTC string with a ``Z`` suffix."""
    if epoch is None:
        return None
    moment = datetime.fromtimestamp(float(epoch), tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_valid_iso8601(value: Any) -> bool:
    return parse_iso8601(value) is not None


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def is_valid_uuid4(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID4_RE.match(value))


def validate_schedule_payload(payload: dict[str, Any], now: datetime | None = None) -> ValidationResult:
    """Validate a decrypted schedule request.

    Args:
        payload: The decrypted request object.
        now: Reference time for the future-only check; defaults to UTC now.

    Returns:
        A valid result, or the first failure with its code and details.
    """
    now = now or datetime.now(timezone.utc)

    contact_name = payload.get("contactName")
    if not contact_name or not isinstance(contact_name, str):
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, missingFields=["contactName"])

    message_type = payload.get("messageType")
    if message_type not in MESSAGE_TYPES:
        return _fail(
            ErrorCode.INVALID_MESSAGE_TYPE,
            "Invalid message type",
            providedType=message_type,
            allowedTypes=list(MESSAGE_TYPES),
        )

    first_send = parse_iso8601(payload.get("firstSendTime"))
    if first_send is None:
        return _fail(ErrorCode.INVALID_TIMESTAMP, "Invalid timestamp format", field="firstSendTime")
    if first_send <= now:
        return _fail(
            ErrorCode.INVALID_TIMESTAMP,
            "firstSendTime must be in the future",
            field="firstSendTime",
            reason="must be in the future",
        )

    if not isinstance(payload.get("pushSubscription"), dict):
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, missingFields=["pushSubscription"])

    recurrence = payload.get("recurrenceType")
    if recurrence and recurrence not in RECURRENCE_TYPES:
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=["recurrenceType"])

    non_strings = [
        name
        for name in ("userMessage", *AI_FIELDS)
        if payload.get(name) is not None and not isinstance(payload.get(name), str)
    ]
    if non_strings:
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=non_strings)

    if message_type == "fixed" and not payload.get("userMessage"):
        return _fail(
            ErrorCode.INVALID_PARAMETERS,
            _PARAMS_MESSAGE,
            missingFields=["userMessage (required for fixed type)"],
        )

    missing_ai = [name for name in AI_FIELDS if not payload.get(name)]
    if message_type in ("prompted", "auto") and missing_ai:
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, missingFields=missing_ai)

    if message_type == "instant":
        if recurrence and recurrence != "none":
            return _fail(
                ErrorCode.INVALID_PARAMETERS,
                "recurrenceType must be none for instant messages",
                invalidFields=['recurrenceType (must be "none" for instant type)'],
            )
        if missing_ai and not payload.get("userMessage"):
            return _fail(
                ErrorCode.INVALID_PARAMETERS,
                "instant messages need userMessage or a complete AI configuration",
                missingFields=["userMessage or (completePrompt + apiUrl + apiKey + primaryModel)"],
            )

    avatar_url = payload.get("avatarUrl")
    if avatar_url and not is_valid_url(avatar_url):
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=["avatarUrl (invalid URL format)"])

    task_uuid = payload.get("uuid")
    if task_uuid and not is_valid_uuid(task_uuid):
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=["uuid (invalid UUID format)"])

    subtype = payload.get("messageSubtype")
    if subtype and subtype not in MESSAGE_SUBTYPES:
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=["messageSubtype"])

    max_tokens = payload.get("maxTokens")
    if max_tokens is not None and (
        isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0
    ):
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=["maxTokens"])

    metadata = payload.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return _fail(ErrorCode.INVALID_PARAMETERS, _PARAMS_MESSAGE, invalidFields=["metadata"])

    return ValidationResult()


def validate_update_payload(updates: Any) -> dict[str, Any]:
    """Check an update request; returns it when acceptable.

    Raises:
        ValidationFailed: ``INVALID_UPDATE_DATA`` with ``invalidFields``.
    """
    if not isinstance(updates, dict):
        raise ValidationFailed(ErrorCode.INVALID_UPDATE_DATA, "Invalid update data")
    non_text = [
        name
        for name in ("userMessage", "completePrompt")
        if updates.get(name) is not None and not isinstance(updates[name], str)
    ]
    if non_text:
        raise ValidationFailed(
            ErrorCode.INVALID_UPDATE_DATA, "Invalid update data", {"invalidFields": non_text}
        )
    if updates.get("nextSendAt") and not is_valid_iso8601(updates["nextSendAt"]):
        raise ValidationFailed(
            ErrorCode.INVALID_UPDATE_DATA, "Invalid update data", {"invalidFields": ["nextSendAt"]}
        )
    recurrence = updates.get("recurrenceType")
    if recurrence and recurrence not in RECURRENCE_TYPES:
        raise ValidationFailed(
            ErrorCode.INVALID_UPDATE_DATA, "Invalid update data", {"invalidFields": ["recurrenceType"]}
        )
    if updates.get("avatarUrl") and not is_valid_url(updates["avatarUrl"]):
        raise ValidationFailed(
            ErrorCode.INVALID_UPDATE_DATA, "Invalid update data", {"invalidFields": ["avatarUrl"]}
        )
    if updates.get("metadata") and not isinstance(updates["metadata"], dict):
        raise ValidationFailed(
            ErrorCode.INVALID_UPDATE_DATA, "Invalid update data", {"invalidFields": ["metadata"]}
        )
    return updates
