# shipping_rates.py
# Shopify Carrier Service callback: returns rates based on the shop's wholesale rule.
# Routes:
#   POST    /api/shipping-rates?shop=<shop>.myshopify.com
#   OPTIONS /api/shipping-rates
#
# Only a body without a `rate` object is reported (400). Every other failure
# answers 200 {"rates": []} so Shopify falls back to the store's own rates.

import json
import logging
from typing import Any, Dict, Optional

from config_loader import load_settings
from http_utils import cors_headers, header, method_of, parse_json_body, query, resp
from rate_engine import MalformedRequest, parse_rate_request, quote, rates_payload
from rule_store import RuleStore, build_rule_store

logger = logging.getLogger()
logger.setLevel(logging.INFO)

HEADERS = cors_headers("POST, OPTIONS")

# Built on first use and reused while the container is warm.
_store: Optional[RuleStore] = None


def _rule_store() -> RuleStore:
    global _store
    if _store is None:
        _store = build_rule_store()
    return _store


def _resolve_shop(event: Dict[str, Any]) -> Optional[str]:
    shop = query(event).get("shop") or header(event, "X-Shopify-Shop-Domain") or load_settings()["default_shop"]
    return shop.strip().lower() if isinstance(shop, str) and shop.strip() else None


def _empty_rates() -> Dict[str, Any]:
    return resp(200, {"rates": []}, HEADERS)


def lambda_handler(event, _context):
    method = method_of(event)

    if method == "OPTIONS":
        return resp(204, None, HEADERS)
    if method != "POST":
        return resp(405, {"error": "Method Not Allowed"}, {**HEADERS, "Allow": "POST"})

    try:
        body = parse_json_body(event)
    except ValueError as e:
        logger.warning(f"[shipping-rates] unreadable body: {e}")
        body = {}

    try:
        logger.info(f"[shipping-rates] incoming: {json.dumps(body, default=str)}")
        request = parse_rate_request(body)
    except MalformedRequest:
        return resp(400, {"error": "Invalid rate payload"}, HEADERS)
    except Exception as e:
        logger.error(f"[shipping-rates] error parsing rate: {e}", exc_info=True)
        return _empty_rates()

    try:
        shop = _resolve_shop(event)
        offers = quote(shop, request, _rule_store(), timeout=load_settings()["rule_store_timeout"])
        return resp(200, rates_payload(offers), HEADERS)
    except Exception as e:
        logger.error(f"[shipping-rates] error: {e}", exc_info=True)
        return _empty_rates()
