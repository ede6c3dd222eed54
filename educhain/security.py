"""
Security module for EduChain.

Provides input validation, sanitization, and security utilities.
"""

import re
from typing import Any, Collection, Dict, List, Mapping, Optional

from .errors import MissingFieldError, ValidationError

# ============================================================
# Input Validation
# ============================================================

WALLET_ADDRESS_PATTERN = re.compile(r'^[A-Za-z0-9:_-]{1,128}$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}([T ][0-9:.]+(Z|[+-]\d{2}:?\d{2})?)?$')


def require_text(value: Optional[str], field_name: str, max_length: int = 256) -> str:
    """
    Require a non-blank string field.

    Args:
        value: The submitted value (may be None)
        field_name: Name of the field (for error messages)
        max_length: Maximum allowed length after trimming

    Returns:
        The trimmed string

    Raises:
        MissingFieldError: If the value is absent or blank
        ValidationError: If the value is too long
    """
    if value is None or not str(value).strip():
        raise MissingFieldError(field_name)
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(field_name, f"must not exceed {max_length} characters")
    return value


def optional_text(value: Optional[str], field_name: str, default: str, max_length: int = 256) -> str:
    """Trimmed value, or ``default`` when absent or blank."""
    if value is None or not str(value).strip():
        return default
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(field_name, f"must not exceed {max_length} characters")
    return value


def validate_wallet_address(value: Optional[str], field_name: str) -> str:
    """
    Validate a wallet address.

    The ledger technology is pluggable, so only the shape shared by all
    supported address formats is enforced: 1-128 characters, no whitespace.
    Letter case is preserved; comparison is case-insensitive elsewhere.
    """
    value = require_text(value, field_name, max_length=128)
    if not WALLET_ADDRESS_PATTERN.match(value):
        raise ValidationError(field_name, "invalid wallet address format")
    return value


def validate_date(value: str, field_name: str) -> str:
    """Validate an ISO 8601 date or date-time string."""
    if not DATE_PATTERN.match(value):
        raise ValidationError(field_name, "must be an ISO 8601 date")
    return value


# ============================================================
# Rate Limiting Helpers
# ============================================================

def extract_client_id(
    headers: Mapping[str, str],
    peer: Optional[str],
    trusted_proxies: Collection[str] = ()
) -> str:
    """
    Extract a client identifier for rate limiting.

    X-Forwarded-For is only read when the peer is a trusted proxy; the client
    is then the right-most hop that is not itself a trusted proxy. Anything
    else a caller sends is ignored.
    """
    if peer and peer in trusted_proxies:
        hops = [h.strip() for h in headers.get("x-forwarded-for", "").split(",") if h.strip()]
        for hop in reversed(hops):
            if hop not in trusted_proxies:
                return f"ip:{hop}"

    if peer:
        return f"ip:{peer}"

    return "anonymous"


# ============================================================
# Audit Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["authorization", "token", "jwt", "secret", "password"]

    result = {}
    for key, value in data.items():
        if key.lower() in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        else:
            result[key] = value

    return result
