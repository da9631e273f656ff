# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Message text resolution and sentence splitting.

``fixed`` messages are delivered verbatim; ``prompted`` and ``auto`` messages
are rendered by an OpenAI-compatible chat completion endpoint; ``instant``
messages use the completion endpoint when fully configured and fall back to
the fixed text otherwise. The resolved text is split into sentence-sized
units, each delivered as its own notification.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from typing import Any

import aiohttp

from .errors import ContentGenerationError
from .logger import get_logger
from .models import TaskData

logger = get_logger("ContentResolver")

DEFAULT_COMPLETION_TIMEOUT = 300.0
COMPLETION_TEMPERATURE = 0.8

_SENTENCE_SPLIT_RE = re.compile(r"([。！？.!?]+)")


def split_sentences(text: str) -> list[str]:
    """Split text on runs of sentence-terminal punctuation.

    Terminators stay attached to the sentence they close. Text without any
    terminator is returned as a single unit.

    Example:
        >>> split_sentences("Hi! How are you? Fine.")
        ['Hi!', 'How are you?', 'Fine.']
    """
    parts = _SENTENCE_SPLIT_RE.split(text)
    sentences: list[str] = []
    for i in range(0, len(parts), 2):
        body = parts[i].strip()
        if not body:
            continue
        terminator = parts[i + 1] if i + 1 < len(parts) else ""
        sentences.append(body + terminator)
    return sentences or [text]


def normalize_api_url(url: str) -> str:
    """Trim whitespace and trailing slashes from a completion endpoint URL."""
    return url.strip().rstrip("/")


class ContentResolver:
    """Resolves the text of a task.

    Args:
        session_factory: Callable returning an ``aiohttp.ClientSession``-like
            async context manager. Tests inject fakes here.
        timeout: Total timeout of a completion call, in seconds.
    """

    def __init__(
        self,
        session_factory: Callable[..., Any] = aiohttp.ClientSession,
        timeout: float = DEFAULT_COMPLETION_TIMEOUT,
    ):
        self.session_factory = session_factory
        self.timeout = timeout

    async def resolve(self, data: TaskData) -> str:
        """Return the text to deliver for ``data``.

        Raises:
            ContentGenerationError: No content source, or the completion call
                failed.
        """
        match data.message_type:
            case "fixed":
                if not data.user_message:
                    raise ContentGenerationError("Fixed message has no userMessage")
                return data.user_message
            case "prompted" | "auto":
                return await self.generate(data)
            case "instant":
                if data.has_ai_config:
                    return await self.generate(data)
                if data.user_message:
                    return data.user_message
                raise ContentGenerationError("Invalid instant message: no content source available")
            case _:
                raise ContentGenerationError("Invalid message configuration: no content source available")

    async def generate(self, data: TaskData) -> str:
        """Call the chat completion endpoint configured on the task.

        Raises:
            ContentGenerationError: Missing configuration, transport failure,
                non-2xx status or unexpected response shape.
        """
        if not data.has_ai_config:
            raise ContentGenerationError("Incomplete AI configuration")

        url = normalize_api_url(data.api_url or "")
        body: dict[str, Any] = {
            "model": data.primary_model,
            "messages": [{"role": "user", "content": data.complete_prompt}],
            "temperature": COMPLETION_TEMPERATURE,
        }
        if data.max_tokens is not None:
            body["max_tokens"] = data.max_tokens
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {data.api_key}",
        }

        try:
            async with self.session_factory(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(url, json=body, headers=headers) as resp:
                    if not 200 <= resp.status < 300:
                        message = f"AI API error: {resp.status} {resp.reason or ''}".rstrip()
                        if resp.status == 405:
                            message += (
                                " (the URL likely is not a full chat endpoint,"
                                " e.g. it should end with /chat/completions)"
                            )
                        raise ContentGenerationError(message)
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError as exc:
                        raise ContentGenerationError("AI API returned invalid JSON") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Completion endpoint %s not reachable: %s", url, exc)
            raise ContentGenerationError(f"AI API request failed: {exc}") from exc

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ContentGenerationError("AI API response missing choices[0].message.content") from exc
        if not isinstance(content, str) or not content.strip():
            raise ContentGenerationError("AI API returned empty content")
        return content.strip()
