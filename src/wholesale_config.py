# wholesale_config.py
# Admin endpoint for the per-shop wholesale shipping rule.
# Routes:
#   GET      /api/wholesale/config?shop=...               -> effective rule
#   POST|PUT /api/wholesale/config?shop=...               -> save {wholesaleTag?, thresholdCents?}
#
# Omitted fields keep the shop's current value (or the default when none is stored).

import logging
from typing import Any, Dict

from config_loader import ConfigError, load_settings
from credentials import ShopTokenStore, StaticCredentialProvider, credential_sources, resolve_credential
from http_utils import cors_headers, method_of, parse_json_body, query, resp
from rule_store import StorageError, ValidationError, build_rule_store, effective_rule, validate_rule
from shopify_client import is_valid_shop_domain

logger = logging.getLogger()
logger.setLevel(logging.INFO)

HEADERS = cors_headers("GET, POST, PUT, OPTIONS", "Content-Type, X-Shopify-Access-Token")


def _ok(body: Dict[str, Any], status: int = 200) -> Dict[str, Any]:
    return resp(status, body, HEADERS)


def _bad(error: str, status: int = 400, **extra) -> Dict[str, Any]:
    return resp(status, {"error": error, **extra}, HEADERS)


def _pick(body: Dict[str, Any], qs: Dict[str, str], field: str, current: Any) -> Any:
    if body.get(field) is not None:
        return body[field]
    if qs.get(field) not in (None, ""):
        return qs[field]
    return current


def _handle_get(shop: str, store) -> Dict[str, Any]:
    try:
        stored = store.get(shop)
    except StorageError as e:
        logger.error(f"[wholesale/config] read failed for {shop}: {e}")
        return _bad("Failed to load config", 500, message=str(e))
    return _ok({"shop": shop, "configured": stored is not None, **effective_rule(stored).to_dict()})


def _handle_save(event, shop: str, store) -> Dict[str, Any]:
    try:
        body = parse_json_body(event)
    except ValueError as e:
        return _bad(str(e))

    try:
        current = effective_rule(store.get(shop))
    except StorageError as e:
        logger.error(f"[wholesale/config] read failed for {shop}: {e}")
        return _bad("Failed to save config", 500, message=str(e))

    qs = query(event)
    try:
        rule = validate_rule(
            _pick(body, qs, "wholesaleTag", current.wholesale_tag),
            _pick(body, qs, "thresholdCents", current.threshold_cents),
        )
    except ValidationError as e:
        return _bad(str(e))

    try:
        saved = store.set(shop, rule)
    except ValidationError as e:
        return _bad(str(e))
    except StorageError as e:
        logger.error(f"[wholesale/config] write failed for {shop}: {e}")
        return _bad("Failed to save config", 500, message=str(e))

    logger.info(f"[wholesale/config] saved {shop}: {saved.to_dict()}")
    return _ok({"status": "saved", "shop": shop, **saved.to_dict()})


def lambda_handler(event, _context):
    method = method_of(event) or "GET"

    if method == "OPTIONS":
        return resp(204, None, HEADERS)
    if method not in ("GET", "POST", "PUT"):
        return resp(405, {"error": "Method Not Allowed"}, {**HEADERS, "Allow": "GET, POST, PUT, OPTIONS"})

    try:
        settings = load_settings()
        shop = (query(event).get("shop") or settings["default_shop"] or "").strip().lower()
        if not is_valid_shop_domain(shop):
            return _bad("Missing or invalid ?shop=")

        if settings["rule_store_backend"] == "metafield":
            token = resolve_credential(credential_sources(event, shop, ShopTokenStore()))
            if not token:
                return _bad("Missing access token")
            store = build_rule_store(StaticCredentialProvider(token))
        else:
            store = build_rule_store()

        if method == "GET":
            return _handle_get(shop, store)
        return _handle_save(event, shop, store)
    except ConfigError as e:
        logger.error(f"[wholesale/config] configuration error: {e}")
        return _bad(str(e), 500)
    except Exception as e:
        logger.error(f"[wholesale/config] error: {e}", exc_info=True)
        return _bad("Internal error", 500, message=str(e))
