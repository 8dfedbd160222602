"""CSRF state and PKCE material generation."""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Tuple


STATE_BYTES = 32
CODE_VERIFIER_BYTES = 32


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def generate_state() -> str:
    """Return an opaque, URL-safe anti-CSRF nonce with 256 bits of randomness."""
    return _b64url(secrets.token_bytes(STATE_BYTES))


def generate_code_verifier() -> str:
    # 32 bytes encode to 43 unpadded characters, the RFC 7636 minimum.
    return _b64url(secrets.token_bytes(CODE_VERIFIER_BYTES))


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_pkce_pair() -> Tuple[str, str]:
    """Return ``(code_verifier, code_challenge)`` using the S256 method."""
    verifier = generate_code_verifier()
    return verifier, generate_code_challenge(verifier)
