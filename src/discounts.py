# discounts.py
# Keep store-wide free-shipping discounts from undercutting wholesale rates.
# Routes:
#   GET|POST /api/discounts/limit-free-ship?shop=...&title=...&tag=...
#       Restrict an automatic free-shipping discount to a "non-wholesalers" segment.
#   GET|POST /api/discounts/audit?shop=...
#       Deactivate active automatic discounts that look like free shipping.

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from credentials import StaticCredentialProvider, shop_and_token
from http_utils import cors_headers, method_of, query, resp
from rate_engine import load_rule
from rule_store import build_rule_store
from shopify_client import ShopifyClient, ShopifyError, is_valid_shop_domain

logger = logging.getLogger()
logger.setLevel(logging.INFO)

HEADERS = cors_headers("GET, POST, OPTIONS", "Content-Type, X-Shopify-Access-Token")

DEFAULT_DISCOUNT_TITLE = "$40 free shipping"
SEGMENT_NAME = "Non-Wholesalers (auto)"

_SEGMENTS_QUERY = """#graphql
  query Segments($q: String) {
    segments(first: 50, query: $q) { nodes { id name query } }
  }
"""

_SEGMENT_CREATE = """#graphql
  mutation SegmentCreate($name: String!, $query: String!) {
    segmentCreate(name: $name, query: $query) {
      userErrors { field message }
      segment { id name query }
    }
  }
"""

_FIND_DISCOUNTS = """#graphql
  query FindDiscounts($q: String!) {
    discountNodes(first: 50, query: $q) {
      nodes {
        id
        discount {
          __typename
          ... on DiscountAutomaticBasic { title status }
          ... on DiscountAutomaticApp { title status }
          ... on DiscountAutomaticFreeShipping { title status }
          ... on DiscountCodeBasic { title }
          ... on DiscountCodeFreeShipping { title }
        }
      }
    }
  }
"""

_UPDATE_AUTOMATIC = """#graphql
  mutation UpdateAutomatic($id: ID!, $basic: DiscountAutomaticBasicInput!) {
    discountAutomaticBasicUpdate(id: $id, automaticBasicDiscount: $basic) {
      userErrors { field message }
      automaticDiscountNode { id }
    }
  }
"""

_DEACTIVATE = """#graphql
  mutation Deactivate($id: ID!) {
    discountAutomaticDeactivate(id: $id) { userErrors { field message } }
  }
"""


def _nodes(data: Dict[str, Any], root: str) -> List[Dict[str, Any]]:
    return ((data.get("data") or {}).get(root) or {}).get("nodes") or []


# =============== Operations ===============

def ensure_non_wholesale_segment(client: ShopifyClient, wholesale_tag: str) -> Optional[str]:
    """Id of the segment of customers NOT tagged `wholesale_tag`, created if missing."""
    existing = _nodes(client.graphql(_SEGMENTS_QUERY, {"q": f"name:{json.dumps(SEGMENT_NAME)}"}), "segments")
    for node in existing:
        if node.get("name") == SEGMENT_NAME:
            return node.get("id")

    created = client.graphql(_SEGMENT_CREATE, {"name": SEGMENT_NAME, "query": f"-customer_tags:'{wholesale_tag}'"})
    segment_id = (((created.get("data") or {}).get("segmentCreate") or {}).get("segment") or {}).get("id")
    if segment_id:
        logger.info(f"[discounts/limit] created segment {segment_id}")
    return segment_id


def limit_free_shipping(client: ShopifyClient, title: str, wholesale_tag: str):
    """Returns (status_code, body)."""
    segment_id = ensure_non_wholesale_segment(client, wholesale_tag)
    if not segment_id:
        return 500, {"error": "Failed to create non-wholesaler segment"}

    nodes = _nodes(client.graphql(_FIND_DISCOUNTS, {"q": f"status:active title:{json.dumps(title)}"}), "discountNodes")
    target = next((n for n in nodes if ((n.get("discount") or {}).get("title") or "").lower() == title.lower()), None)
    if not target:
        return 404, {"error": "Discount not found by title", "title": title}

    basic = {
        "title": title,
        "customerSelection": {"segments": {"add": [segment_id], "remove": []}, "all": False},
    }
    result = client.graphql(_UPDATE_AUTOMATIC, {"id": target["id"], "basic": basic})
    errors = ((result.get("data") or {}).get("discountAutomaticBasicUpdate") or {}).get("userErrors") or []
    if errors:
        return 422, {"error": "Failed to update discount customer selection", "errors": errors}
    return 200, {"status": "updated", "discountId": target["id"], "segmentId": segment_id}


def _looks_like_free_shipping(node: Dict[str, Any]) -> bool:
    d = node.get("discount") or {}
    title = (d.get("title") or "").lower()
    return (d.get("__typename") or "").startswith("DiscountAutomatic") and "free" in title and "ship" in title


def audit_free_shipping(client: ShopifyClient) -> Dict[str, Any]:
    nodes = _nodes(client.graphql(_FIND_DISCOUNTS, {"q": "status:active"}), "discountNodes")
    candidates = [n for n in nodes if _looks_like_free_shipping(n)]

    deactivated = []
    for c in candidates:
        try:
            result = client.graphql(_DEACTIVATE, {"id": c["id"]})
            deactivated.append({"id": c["id"], "result": result.get("data")})
        except (ShopifyError, requests.RequestException) as e:
            logger.warning(f"[discounts/audit] deactivate failed {c['id']}: {e}")

    return {"scanned": len(nodes), "matched": len(candidates), "deactivated": deactivated}


# =============== Lambda entry ===============

def lambda_handler(event, _context):
    method = method_of(event) or "GET"
    path = event.get("path") or ""

    if method == "OPTIONS":
        return resp(204, None, HEADERS)
    if method not in ("GET", "POST"):
        return resp(405, {"error": "Method Not Allowed"}, {**HEADERS, "Allow": "GET, POST, OPTIONS"})

    shop, token = shop_and_token(event)
    if not is_valid_shop_domain(shop):
        return resp(400, {"error": "Missing or invalid ?shop="}, HEADERS)
    if not token:
        return resp(400, {"error": "Missing access token"}, HEADERS)

    client = ShopifyClient(shop, token)
    qs = query(event)

    try:
        if path.endswith("/discounts/limit-free-ship"):
            title = qs.get("title") or DEFAULT_DISCOUNT_TITLE
            tag = qs.get("tag") or load_rule(shop, build_rule_store(StaticCredentialProvider(token))).wholesale_tag
            logger.info(f"[discounts/limit] start shop={shop} title={title} tag={tag}")
            status, body = limit_free_shipping(client, title, tag)
            return resp(status, body, HEADERS)

        if path.endswith("/discounts/audit"):
            logger.info(f"[discounts/audit] start shop={shop}")
            return resp(200, {"shop": shop, **audit_free_shipping(client)}, HEADERS)
    except (ShopifyError, requests.RequestException) as e:
        logger.error(f"[discounts] error: {e}", exc_info=True)
        return resp(500, {"error": "GraphQL error", "message": str(e)}, HEADERS)

    return resp(404, {"error": f"Unsupported route: {method} {path}"}, HEADERS)
