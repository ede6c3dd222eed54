"""
Utility functions for EduChain.

Provides canonical JSON serialization, hashing, encoding, identifier
generation, wallet address normalization and time utilities.
"""

import json
import hashlib
import base64
import re
import time
import secrets
from datetime import datetime, timezone
from typing import Any, Optional, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def now_epoch() -> int:
    """Get current Unix timestamp as integer."""
    return int(time.time())


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def b64url_encode(b: bytes) -> str:
    """URL-safe base64 encode bytes to string (no padding)."""
    return base64.urlsafe_b64encode(b).rstrip(b'=').decode('ascii')


def b64url_decode(s: str) -> bytes:
    """URL-safe base64 decode string to bytes (handles missing padding)."""
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += '=' * padding
    return base64.urlsafe_b64decode(s.encode('ascii'))


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes."""
    return base64.b64decode(s.encode('ascii'))


def generate_certificate_id() -> str:
    """
    Generate a certificate identifier.

    24 lowercase hex characters, the same shape as the document ids the
    issuing dashboard already links to.
    """
    return secrets.token_hex(12)


def generate_id(length: int = 16) -> str:
    """Generate a cryptographically secure random ID."""
    return secrets.token_hex(length)


CERTIFICATE_ID_PATTERN = re.compile(r'^[a-f0-9]{24}$')
TOKEN_ID_PATTERN = re.compile(r'^\d+$')


def looks_like_certificate_id(value: str) -> bool:
    return bool(CERTIFICATE_ID_PATTERN.match(value.lower()))


def looks_like_token_id(value: str) -> bool:
    return bool(TOKEN_ID_PATTERN.match(value))


# ============================================================
# Wallet addresses
# ============================================================

def normalize_address(address: Optional[str]) -> str:
    """
    Canonical form of a wallet address.

    Addresses are a case-insensitive identity: EIP-55 checksummed and
    all-lowercase spellings name the same wallet. Every lookup and every
    mint check goes through this function.
    """
    if address is None:
        return ""
    return address.strip().lower()


def addresses_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive wallet address equality. Empty never matches."""
    na = normalize_address(a)
    nb = normalize_address(b)
    return bool(na) and na == nb
