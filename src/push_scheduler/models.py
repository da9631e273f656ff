# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models shared by the lifecycle, the dispatcher and the API.

Field names are snake_case in Python and camelCase on the wire (the JSON
carried inside encrypted envelopes), mapped through aliases. Serialize with
``model_dump(by_alias=True)``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal["fixed", "prompted", "auto", "instant"]
MessageSubtype = Literal["chat", "forum", "moment"]
RecurrenceType = Literal["none", "daily", "weekly"]

AI_FIELDS = ("completePrompt", "apiUrl", "apiKey", "primaryModel")


class TaskData(BaseModel):
    """Sensitive task fields, stored as one encrypted JSON object."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    contact_name: Annotated[str, Field(alias="contactName")]
    avatar_url: Annotated[str | None, Field(alias="avatarUrl")] = None
    message_type: Annotated[MessageType, Field(alias="messageType")]
    message_subtype: Annotated[MessageSubtype, Field(alias="messageSubtype")] = "chat"
    user_message: Annotated[str | None, Field(alias="userMessage")] = None
    first_send_time: Annotated[str | None, Field(alias="firstSendTime")] = None
    recurrence_type: Annotated[RecurrenceType, Field(alias="recurrenceType")] = "none"
    api_url: Annotated[str | None, Field(alias="apiUrl")] = None
    api_key: Annotated[str | None, Field(alias="apiKey")] = None
    primary_model: Annotated[str | None, Field(alias="primaryModel")] = None
    complete_prompt: Annotated[str | None, Field(alias="completePrompt")] = None
    max_tokens: Annotated[int | None, Field(alias="maxTokens", gt=0)] = None
    push_subscription: Annotated[dict[str, Any], Field(alias="pushSubscription")]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def has_ai_config(self) -> bool:
        """True when every field needed for a completion call is set."""
        return bool(self.complete_prompt and self.api_url and self.api_key and self.primary_model)

    @classmethod
    def from_request(cls, payload: dict[str, Any]) -> TaskData:
        """Build from a validated schedule payload, normalizing empty values."""
        return cls.model_validate(
            {
                "contactName": payload["contactName"],
                "avatarUrl": payload.get("avatarUrl") or None,
                "messageType": payload["messageType"],
                "messageSubtype": payload.get("messageSubtype") or "chat",
                "userMessage": payload.get("userMessage") or None,
                "firstSendTime": payload.get("firstSendTime"),
                "recurrenceType": payload.get("recurrenceType") or "none",
                "apiUrl": payload.get("apiUrl") or None,
                "apiKey": payload.get("apiKey") or None,
                "primaryModel": payload.get("primaryModel") or None,
                "completePrompt": payload.get("completePrompt") or None,
                "maxTokens": payload.get("maxTokens"),
                "pushSubscription": payload["pushSubscription"],
                "metadata": payload.get("metadata") or {},
            }
        )


class InitTenantPayload(BaseModel):
    """Body of ``POST /api/v1/init-tenant``.

    ``databaseUrl`` and ``connectionString`` are accepted interchangeably.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    driver: str | None = None
    database_url: Annotated[str | None, Field(alias="databaseUrl")] = None
    connection_string: Annotated[str | None, Field(alias="connectionString")] = None
    tenant_id: Annotated[str | None, Field(alias="tenantId")] = None

    @property
    def url(self) -> str | None:
        return self.database_url or self.connection_string
