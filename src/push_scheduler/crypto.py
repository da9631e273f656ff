# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""AES-256-GCM envelopes and key derivation.

Three envelope encodings share the same primitive:

- **Transport envelope**: ``{"iv", "authTag", "encryptedData"}`` with every
  field standard base64 and a 12-byte IV. Carries request and response bodies
  encrypted with a per-user key.
- **Storage envelope**: ``"iv:authTag:ciphertext"`` in lowercase hex with a
  16-byte IV. Wraps the sensitive task fields at rest.
- **Config envelope**: ``"v1.<iv>.<tag>.<ciphertext>"`` with unpadded
  URL-safe base64. Wraps tenant configuration blobs under the deployment KEK.

Keys are passed as 64-character hex strings (32 bytes), except for the KEK,
which is any string hashed with SHA-256.

Example:
    ::

        from push_scheduler.crypto import derive_user_key, encrypt_payload

        user_key = derive_user_key(user_id, master_key)
        envelope = encrypt_payload({"contactName": "Rei"}, user_key)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionFailed, InvalidPayloadFormat

TRANSPORT_IV_BYTES = 12
STORAGE_IV_BYTES = 16
TAG_BYTES = 16
CONFIG_VERSION = "v1"


def _key_bytes(key_hex: str) -> bytes:
    key = bytes.fromhex(key_hex)
    if len(key) != 32:
        raise ValueError("AES-256 key must be 32 bytes (64 hex characters)")
    return key


def _seal(key: bytes, iv: bytes, plaintext: bytes) -> tuple[bytes, bytes]:
    """Encrypt and split the cryptography output into (ciphertext, tag)."""
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]


def _open(key: bytes, iv: bytes, tag: bytes, ciphertext: bytes) -> bytes:
    if len(tag) != TAG_BYTES:
        raise DecryptionFailed()
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, ValueError) as exc:
        raise DecryptionFailed() from exc


# ---------------------------------------------------------------------------
# Transport envelope
# ---------------------------------------------------------------------------

def is_encrypted_envelope(value: Any) -> bool:
    """Return True when ``value`` has the transport envelope shape."""
    return isinstance(value, dict) and all(
        isinstance(value.get(field), str) for field in ("iv", "authTag", "encryptedData")
    )


def encrypt_payload(payload: Any, key_hex: str) -> dict[str, str]:
    """Encrypt a JSON-serializable value into a transport envelope.

    Args:
        payload: Any value accepted by ``json.dumps``.
        key_hex: 64-character hex user key.

    Returns:
        Dict with base64 ``iv``, ``authTag`` and ``encryptedData``.
    """
    iv = os.urandom(TRANSPORT_IV_BYTES)
    plaintext = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    ciphertext, tag = _seal(_key_bytes(key_hex), iv, plaintext)
    return {
        "iv": base64.b64encode(iv).decode("ascii"),
        "authTag": base64.b64encode(tag).decode("ascii"),
        "encryptedData": base64.b64encode(ciphertext).decode("ascii"),
    }


def decrypt_payload(envelope: dict[str, Any], key_hex: str) -> Any:
    """Decrypt a transport envelope and parse its JSON plaintext.

    Raises:
        DecryptionFailed: Malformed fields, wrong key or tampered data.
        InvalidPayloadFormat: The plaintext is not valid JSON.
    """
    if not is_encrypted_envelope(envelope):
        raise DecryptionFailed()
    try:
        iv = base64.b64decode(envelope["iv"], validate=True)
        tag = base64.b64decode(envelope["authTag"], validate=True)
        ciphertext = base64.b64decode(envelope["encryptedData"], validate=True)
        key = _key_bytes(key_hex)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed() from exc
    plaintext = _open(key, iv, tag, ciphertext)
    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidPayloadFormat("Decrypted data is not valid JSON") from exc


# ---------------------------------------------------------------------------
# Storage envelope
# ---------------------------------------------------------------------------

def encrypt_for_storage(text: str, key_hex: str) -> str:
    """Encrypt text into the compact ``iv:authTag:ciphertext`` hex form."""
    iv = os.urandom(STORAGE_IV_BYTES)
    ciphertext, tag = _seal(_key_bytes(key_hex), iv, text.encode("utf-8"))
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_for_storage(value: str, key_hex: str) -> str:
    """Decrypt a compact storage envelope.

    Raises:
        DecryptionFailed: Wrong structure, wrong key or tampered data.
    """
    parts = value.split(":") if isinstance(value, str) else []
    if len(parts) != 3:
        raise DecryptionFailed("Invalid storage envelope format")
    try:
        iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        key = _key_bytes(key_hex)
    except ValueError as exc:
        raise DecryptionFailed("Invalid storage envelope format") from exc
    try:
        return _open(key, iv, tag, ciphertext).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionFailed() from exc


# ---------------------------------------------------------------------------
# Config envelope
# ---------------------------------------------------------------------------

def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _kek_bytes(kek: str) -> bytes:
    return hashlib.sha256(kek.encode("utf-8")).digest()


def encrypt_config(config: dict[str, Any], kek: str) -> str:
    """Encrypt a tenant configuration dict under the deployment KEK."""
    iv = os.urandom(TRANSPORT_IV_BYTES)
    plaintext = json.dumps(config, separators=(",", ":")).encode("utf-8")
    ciphertext, tag = _seal(_kek_bytes(kek), iv, plaintext)
    return ".".join(
        [CONFIG_VERSION, _b64url_encode(iv), _b64url_encode(tag), _b64url_encode(ciphertext)]
    )


def decrypt_config(value: str, kek: str) -> dict[str, Any]:
    """Decrypt a config envelope produced by :func:`encrypt_config`.

    Raises:
        DecryptionFailed: Unknown version, bad structure, wrong KEK, tampered
            data, or a plaintext that is not a JSON object.
    """
    parts = value.split(".") if isinstance(value, str) else []
    if len(parts) != 4 or parts[0] != CONFIG_VERSION:
        raise DecryptionFailed("Unsupported config envelope")
    try:
        iv, tag, ciphertext = (_b64url_decode(p) for p in parts[1:])
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed("Unsupported config envelope") from exc
    plaintext = _open(_kek_bytes(kek), iv, tag, ciphertext)
    try:
        config = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionFailed() from exc
    if not isinstance(config, dict):
        raise DecryptionFailed()
    return config


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def generate_master_key() -> str:
    """Return a fresh 32-byte tenant master key as 64 hex characters."""
    return secrets.token_hex(32)


def derive_user_key(user_id: str, master_key: str) -> str:
    """Derive the per-user AES key from the tenant master key.

    Pure and deterministic: the same pair always yields the same key.

    Args:
        user_id: The end-user identifier (UUID v4).
        master_key: The tenant master key (64 hex characters).

    Returns:
        64 hex characters (32 bytes).
    """
    return hashlib.sha256(f"{master_key}{user_id}".encode("utf-8")).hexdigest()[:64]


def master_key_fingerprint(master_key: str) -> str:
    """Non-reversible 16-character fingerprint for display and audit."""
    return hashlib.sha256(master_key.encode("utf-8")).hexdigest()[:16]
