"""
Configuration module for EduChain.

Centralizes all configuration with environment variable support,
validation, and caching for the subscription plan catalogue.
"""

import os
import json
import threading
import time
from typing import Dict, Any, Optional
from pathlib import Path

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("EDUCHAIN_ENV", "dev")  # dev|stage|prod

# Storage
DB_PATH = os.getenv("EDUCHAIN_DB_PATH", "data/educhain.db")

# Paths
PLANS_PATH = os.getenv("PLANS_PATH", "config/plans.json")
TRUST_STORE_PATH = os.getenv("TRUST_STORE_PATH", "trust/trust_store.json")

# Session tokens issued by the institution auth service
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", "43200"))

# Content addressing
CONTENT_BACKEND = os.getenv("CONTENT_BACKEND", "local")  # local|pinata|s3
CONTENT_DIR = os.getenv("CONTENT_DIR", "data/artifacts")
PINATA_JWT = os.getenv("PINATA_JWT", "")
PINATA_API_URL = os.getenv("PINATA_API_URL", "https://api.pinata.cloud/pinning/pinFileToIPFS")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_PREFIX = os.getenv("S3_PREFIX", "educhain/artifacts/")
MAX_ARTIFACT_BYTES = int(os.getenv("MAX_ARTIFACT_BYTES", str(20 * 1024 * 1024)))

# Ledger
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")  # memory|web3
WEB3_PROVIDER = os.getenv("WEB3_PROVIDER", "http://127.0.0.1:8545")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")
CONTRACT_ABI_PATH = os.getenv("CONTRACT_ABI_PATH", "config/contract_abi.json")
LEDGER_SENDER = os.getenv("LEDGER_SENDER", "")
LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "10"))

# Quota periods and mint reservations
USAGE_PERIOD_DAYS = int(os.getenv("USAGE_PERIOD_DAYS", "30"))
MINT_RESERVATION_TTL = int(os.getenv("MINT_RESERVATION_TTL", "900"))

# Rate limits (requests per minute)
VERIFY_RPM = int(os.getenv("VERIFY_RPM", "120"))
ISSUE_RPM = int(os.getenv("ISSUE_RPM", "120"))

# Peers whose X-Forwarded-For header is believed (comma-separated)
TRUSTED_PROXIES = frozenset(p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip())

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("LOG_FILE") or None

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))

# Limits use -1 for "unlimited" across every plan and metric.
UNLIMITED = -1

GB = 1024 * 1024 * 1024
MB = 1024 * 1024

DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "freetrial": {
        "name": "Free Trial",
        "is_trial": True,
        "certificate_limit": 10,
        "storage_limit_bytes": 100 * MB,
        "api_call_limit": 500,
    },
    "basic": {
        "name": "Basic",
        "is_trial": False,
        "certificate_limit": 100,
        "storage_limit_bytes": 1 * GB,
        "api_call_limit": 1000,
    },
    "professional": {
        "name": "Professional",
        "is_trial": False,
        "certificate_limit": 500,
        "storage_limit_bytes": 10 * GB,
        "api_call_limit": 5000,
    },
    "enterprise": {
        "name": "Enterprise",
        "is_trial": False,
        "certificate_limit": UNLIMITED,
        "storage_limit_bytes": 100 * GB,
        "api_call_limit": 50000,
    },
}


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe cached configuration loader.
    Reloads configuration files periodically based on TTL.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._cache: Dict[str, Any] = {}
        self._timestamps: Dict[str, float] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def _is_stale(self, key: str) -> bool:
        if key not in self._timestamps:
            return True
        return (time.time() - self._timestamps[key]) > self._ttl

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        """
        Load JSON file with caching.
        Returns cached version if within TTL, otherwise reloads.
        """
        with self._lock:
            if not force_reload and path in self._cache and not self._is_stale(path):
                return self._cache[path]

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

            self._cache[path] = data
            self._timestamps[path] = time.time()
            return data


_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Dict[str, Any]:
    """Load JSON file with caching."""
    return _config_cache.get_json(path)


def load_plan_catalogue(path: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """
    Load the subscription plan catalogue.

    The file at PLANS_PATH, when present, overrides or extends the built-in
    plans by id. Missing file means the defaults apply unchanged.
    """
    path = path or PLANS_PATH
    plans = {pid: dict(p) for pid, p in DEFAULT_PLANS.items()}
    if not Path(path).exists():
        return plans
    raw = load_json_cached(path)
    for pid, override in raw.get("plans", raw).items():
        merged = dict(plans.get(pid, {}))
        merged.update(override)
        plans[pid] = merged
    return plans


# ============================================================
# Validation
# ============================================================

def validate_config() -> Dict[str, bool]:
    """
    Validate that required configuration is in place for the selected backends.
    Returns dict of check name -> ok.
    """
    checks = {"trust_store": Path(TRUST_STORE_PATH).exists()}
    if CONTENT_BACKEND == "pinata":
        checks["pinata_jwt"] = bool(PINATA_JWT)
    if CONTENT_BACKEND == "s3":
        checks["s3_bucket"] = bool(S3_BUCKET)
    if LEDGER_BACKEND == "web3":
        checks["contract_address"] = bool(CONTRACT_ADDRESS)
        checks["contract_abi"] = Path(CONTRACT_ABI_PATH).exists()
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"
