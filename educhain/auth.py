"""
Institution session verification for EduChain.

The institution auth service signs session claims with an Ed25519 key; this
service only holds the matching public keys (in the trust store) and turns a
verified bearer token into a read-only Institution.

Token format::

    base64url(canonical_json(claims)) "." base64url(signature)

Claims: kid, iat, exp, institutionId, institutionName, isVerified,
activeSubscriptionPlanId.
"""

import json
import os
import threading
from typing import Any, Dict, Optional

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import UnauthorizedError
from .models import Institution
from .util import b64d, b64url_decode, b64url_encode, canonicalize, now_epoch


class TrustStore:
    """
    File-backed trust store with modification time caching.
    Reloads if the file has been modified.
    """

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None
        self._mtime: float = 0

    def get(self) -> Dict[str, Any]:
        with self._lock:
            try:
                mtime = os.path.getmtime(self._path)
                if self._cache is None or mtime > self._mtime:
                    with open(self._path, "r", encoding="utf-8") as f:
                        self._cache = json.load(f)
                    self._mtime = mtime
            except FileNotFoundError:
                if self._cache is None:
                    raise
            return self._cache

    def auth_key(self, kid: str) -> Optional[str]:
        return self.get().get("auth_service_keys", {}).get(kid)


def verify_ed25519(signature: bytes, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature: Raw signature bytes
        payload: The signed data
        public_key_b64: Base64-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, signature)
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def sign_session(claims: Dict[str, Any], signing_key: SigningKey) -> str:
    """Produce a session token. Used by the auth service tooling and tests."""
    payload = canonicalize(claims)
    sig = signing_key.sign(payload).signature
    return f"{b64url_encode(payload)}.{b64url_encode(sig)}"


class SessionVerifier:
    """Turns a bearer token into the Institution it was issued for."""

    def __init__(self, trust_store: TrustStore, max_age_seconds: int = 43200, clock_skew: int = 30):
        self._trust_store = trust_store
        self._max_age = max_age_seconds
        self._skew = clock_skew

    def verify(self, token: str, now: Optional[int] = None) -> Institution:
        now = now if now is not None else now_epoch()
        try:
            payload_part, sig_part = token.split(".")
            payload = b64url_decode(payload_part)
            signature = b64url_decode(sig_part)
            claims = json.loads(payload)
        except (ValueError, TypeError):
            raise UnauthorizedError("Malformed session token")

        if not isinstance(claims, dict):
            raise UnauthorizedError("Malformed session token")
        kid = claims.get("kid")
        pub = self._trust_store.auth_key(kid) if kid else None
        if not pub:
            raise UnauthorizedError("Unknown session signing key")
        if not verify_ed25519(signature, payload, pub):
            raise UnauthorizedError("Invalid session signature")

        iat = int(claims.get("iat", 0))
        exp = int(claims.get("exp", 0))
        if iat <= 0 or exp <= 0:
            raise UnauthorizedError("Session token missing validity window")
        if iat > now + self._skew:
            raise UnauthorizedError("Session token issued in the future")
        if exp < now or (now - iat) > self._max_age + self._skew:
            raise UnauthorizedError("Session expired")

        institution_id = claims.get("institutionId")
        if not institution_id:
            raise UnauthorizedError("Session token has no institution")
        return Institution(
            id=str(institution_id),
            name=str(claims.get("institutionName", "")),
            is_verified=bool(claims.get("isVerified", False)),
            active_subscription_plan_id=claims.get("activeSubscriptionPlanId"),
        )


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token from an Authorization header value."""
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Authorization must be a Bearer token")
    return token.strip()
