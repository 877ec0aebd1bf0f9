# carrier_service.py
# Create or update the "Wholesale Shipping Rules" carrier service for a shop.
# Routes:
#   GET|POST /api/carrier-service?shop=<shop>.myshopify.com
#
# Shopify answers 422 when a service with the same name already exists; the
# existing one is then pointed at the current callback URL.

import logging
from typing import Any, Dict
from urllib.parse import quote as urlquote

import requests

from config_loader import ConfigError, get_value
from credentials import shop_and_token
from http_utils import cors_headers, header, method_of, resp
from shopify_client import ShopifyClient, ShopifyError, is_valid_shop_domain

logger = logging.getLogger()
logger.setLevel(logging.INFO)

HEADERS = cors_headers("GET, POST, OPTIONS", "Content-Type, X-Shopify-Access-Token")


def _base_url(event: Dict[str, Any]) -> str:
    host = header(event, "Host")
    if not host:
        return get_value("app_url", required=True)
    app_url = get_value("app_url")
    if app_url:
        return app_url
    proto = header(event, "X-Forwarded-Proto") or "https"
    return f"{proto}://{host}"


def callback_url_for(event: Dict[str, Any], shop: str) -> str:
    return f"{_base_url(event)}/api/shipping-rates?shop={urlquote(shop, safe='')}"


def register_carrier_service(client: ShopifyClient, callback_url: str) -> Dict[str, Any]:
    """
    Returns {"status": "created"|"updated", ...}.
    Raises ShopifyError when creation fails for any reason other than "already exists".
    """
    r = client.create_carrier_service(callback_url)
    if r.ok:
        body = r.json()
        return {"status": "created", "carrier_service": body.get("carrier_service") or body}

    logger.warning(f"[carrier-service] create failed {r.status_code}: {r.text}")
    if r.status_code == 422:
        existing = client.find_carrier_service()
        if existing:
            updated = client.update_carrier_service(existing["id"], callback_url)
            return {"status": "updated", "id": existing["id"], "carrier_service": updated}
    raise ShopifyError(f"Failed to create carrier service {r.status_code}: {r.text}", r.status_code, r.text)


def lambda_handler(event, _context):
    method = method_of(event) or "GET"

    if method == "OPTIONS":
        return resp(204, None, HEADERS)
    if method not in ("GET", "POST"):
        return resp(405, {"error": "Method Not Allowed"}, {**HEADERS, "Allow": "GET, POST, OPTIONS"})

    shop, token = shop_and_token(event)
    if not is_valid_shop_domain(shop):
        return resp(400, {"error": "Missing or invalid ?shop= parameter"}, HEADERS)
    if not token:
        return resp(400, {"error": "Access token missing. Provide ?token=, X-Shopify-Access-Token header, "
                                   "a stored shop token, or SHOPIFY_ACCESS_TOKEN env."}, HEADERS)

    try:
        callback_url = callback_url_for(event, shop)
    except ConfigError as e:
        logger.error(f"[carrier-service] configuration error: {e}")
        return resp(500, {"error": str(e)}, HEADERS)
    logger.info(f"[carrier-service] start shop={shop} callback={callback_url}")

    try:
        result = register_carrier_service(ShopifyClient(shop, token), callback_url)
        return resp(200, {**result, "callback_url": callback_url}, HEADERS)
    except ShopifyError as e:
        return resp(502, {"error": "Failed to create carrier service", "status": e.status, "body": e.body}, HEADERS)
    except requests.RequestException as e:
        logger.error(f"[carrier-service] error: {e}", exc_info=True)
        return resp(500, {"error": "Exception creating carrier service", "message": str(e)}, HEADERS)
