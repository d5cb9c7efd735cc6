from __future__ import annotations

"""Silo key digests and secret/PII detection for audit and telemetry payloads."""

import hashlib
import hmac
import re
import secrets
from typing import Any


SESSION_TOKEN_BYTES = 32
SENSITIVE_KEYS = {
    "api_key",
    "apikey",
    "session_token",
    "admin_session_token",
    "token",
    "authorization",
    "x-identity-session",
}

SECRET_VALUE_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bsk_(?:live|test)_[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.]{16,}\b", re.IGNORECASE),
    re.compile(r"-----BEGIN (?:RSA|EC|OPENSSH|PRIVATE) KEY-----"),
]

PII_PATTERNS = [
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),  # SSN-like
    re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w{2,}\b"),  # email
    re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),  # IPv4
]


def digest_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def verify_api_key(api_key: str, expected_digest: str) -> bool:
    """Constant-time comparison of a presented key against its stored digest."""

    presented = digest_api_key(api_key)
    return hmac.compare_digest(presented.encode("ascii"), expected_digest.strip().lower().encode("ascii"))


def new_session_token() -> str:
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def token_fingerprint(token: str) -> str:
    """Short, non-reversible handle for logging a session without exposing it."""

    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


def is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and key.strip().lower().replace("-", "_") in {
        item.replace("-", "_") for item in SENSITIVE_KEYS
    }


def is_secret_like_text(text: str) -> bool:
    return any(pattern.search(text) for pattern in SECRET_VALUE_PATTERNS)


def payload_contains_secrets(payload: Any) -> bool:
    if isinstance(payload, str):
        return is_secret_like_text(payload)
    if isinstance(payload, list):
        return any(payload_contains_secrets(item) for item in payload)
    if isinstance(payload, dict):
        return any(is_sensitive_key(key) or payload_contains_secrets(value) for key, value in payload.items())
    return False


def payload_contains_pii(payload: Any) -> bool:
    if isinstance(payload, str):
        return any(pattern.search(payload) for pattern in PII_PATTERNS)
    if isinstance(payload, list):
        return any(payload_contains_pii(item) for item in payload)
    if isinstance(payload, dict):
        return any(payload_contains_pii(value) for value in payload.values())
    return False
