# config_loader.py
# Environment-driven settings shared by the wholesale shipping Lambdas

import os
from typing import Any, Dict, Optional

# ---------------- Errors -----------------------------------------------------

class ConfigError(RuntimeError):
    pass

def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Environment variable {name} must be an integer, got {raw!r}")

def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Environment variable {name} must be a number, got {raw!r}")

# ---------------- Defaults ---------------------------------------------------

VALID_BACKENDS = {"dynamodb", "metafield", "memory"}
DEFAULT_API_VERSION = "2023-10"

# ---------------- In-memory cache -------------------------------------------

_cache_data: Optional[Dict[str, Any]] = None

# ---------------- Public API -------------------------------------------------

def load_settings() -> Dict[str, Any]:
    """
    Read settings from the environment once per container.
    Call invalidate_cache() first to pick up env changes made at runtime.
    """
    global _cache_data
    if _cache_data is not None:
        return _cache_data

    backend = (os.environ.get("RULE_STORE_BACKEND") or "dynamodb").strip().lower()
    if backend not in VALID_BACKENDS:
        raise ConfigError(f"RULE_STORE_BACKEND must be one of {sorted(VALID_BACKENDS)}, got {backend!r}")

    cfg: Dict[str, Any] = {
        "environment": os.environ.get("ENVIRONMENT", "dev"),
        "region": os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "us-west-2",
        "rule_store_backend": backend,
        "rules_table": os.environ.get("WHOLESALE_RULES_TABLE") or "",
        "tokens_table": os.environ.get("SHOP_TOKENS_TABLE") or "",
        "token_kms_key_arn": os.environ.get("TOKEN_KMS_KEY_ARN") or "",
        "shopify_api_version": os.environ.get("SHOPIFY_API_VERSION") or DEFAULT_API_VERSION,
        "default_shop": os.environ.get("SHOPIFY_SHOP_DOMAIN") or "",
        "env_access_token": os.environ.get("SHOPIFY_ACCESS_TOKEN") or "",
        "app_url": (os.environ.get("APP_URL") or "").rstrip("/"),
        "http_timeout": _int_env("HTTP_TIMEOUT", 30),
        "rule_store_timeout": _float_env("RULE_STORE_TIMEOUT_SECONDS", 2.0),
        "rule_store_workers": max(1, _int_env("RULE_STORE_WORKERS", 16)),
    }

    _cache_data = cfg
    return cfg

def get_value(key: str, default: Any = None, *, required: bool = False) -> Any:
    """
    Get a single setting. When required=True, raise ConfigError if missing or blank.
    """
    cfg = load_settings()
    value = cfg.get(key)
    if value not in (None, ""):
        return value
    if required:
        raise ConfigError(f"Missing required setting: {key} (env={cfg['environment']})")
    return default

def invalidate_cache() -> None:
    """Clear the cached settings so the next call re-reads the environment."""
    global _cache_data
    _cache_data = None
