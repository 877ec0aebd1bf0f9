# shopify_client.py
# Thin Shopify Admin API wrapper (REST carrier services + GraphQL).

import logging
import re
from typing import Any, Dict, List, Optional

import requests

from config_loader import load_settings

logger = logging.getLogger()
logger.setLevel(logging.INFO)

CARRIER_SERVICE_NAME = "Wholesale Shipping Rules"

_SHOP_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$", re.IGNORECASE)


class ShopifyError(RuntimeError):
    """Non-2xx Admin API response, or a GraphQL payload carrying `errors`."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


def is_valid_shop_domain(shop: Optional[str]) -> bool:
    return isinstance(shop, str) and bool(_SHOP_RE.match(shop.strip()))


class ShopifyClient:
    """
    Admin API access for one shop with one access token.
    - GraphQL:  POST /admin/api/{version}/graphql.json
    - Carrier:  GET/POST /carrier_services.json, PUT /carrier_services/{id}.json
    """

    def __init__(self, shop: str, access_token: str,
                 api_version: Optional[str] = None, timeout: Optional[int] = None):
        settings = load_settings()
        self.shop = shop
        self.api_version = api_version or settings["shopify_api_version"]
        self.timeout = timeout or settings["http_timeout"]
        self.base = f"https://{shop}/admin/api/{self.api_version}"
        self.headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }

    # ---------- GraphQL ----------

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        r = requests.post(
            f"{self.base}/graphql.json",
            headers=self.headers,
            json={"query": query, "variables": variables or {}},
            timeout=self.timeout,
        )
        try:
            data = r.json()
        except ValueError:
            data = {"text": r.text}
        if not r.ok or (isinstance(data, dict) and data.get("errors")):
            logger.warning(f"[shopify] GraphQL failure for {self.shop}: {r.status_code}")
            raise ShopifyError(f"GraphQL {r.status_code}: {r.text}", r.status_code, r.text)
        return data

    # ---------- Carrier services (REST) ----------

    def _carrier_body(self, callback_url: str, service_id: Optional[int] = None,
                      service_discovery: bool = False) -> Dict[str, Any]:
        svc: Dict[str, Any] = {
            "name": CARRIER_SERVICE_NAME,
            "callback_url": callback_url,
            "service_discovery": service_discovery,
        }
        if service_id is not None:
            svc["id"] = service_id
        return {"carrier_service": svc}

    def list_carrier_services(self) -> List[Dict[str, Any]]:
        r = requests.get(f"{self.base}/carrier_services.json", headers=self.headers, timeout=self.timeout)
        if not r.ok:
            raise ShopifyError(f"List carrier services failed {r.status_code}: {r.text}", r.status_code, r.text)
        return r.json().get("carrier_services") or []

    def create_carrier_service(self, callback_url: str) -> requests.Response:
        """Returns the raw response; a 422 means the service already exists."""
        return requests.post(
            f"{self.base}/carrier_services.json",
            headers=self.headers,
            json=self._carrier_body(callback_url),
            timeout=self.timeout,
        )

    def update_carrier_service(self, service_id: int, callback_url: str) -> Dict[str, Any]:
        r = requests.put(
            f"{self.base}/carrier_services/{service_id}.json",
            headers=self.headers,
            json=self._carrier_body(callback_url, service_id),
            timeout=self.timeout,
        )
        if not r.ok:
            raise ShopifyError(f"Update carrier service failed {r.status_code}: {r.text}", r.status_code, r.text)
        return r.json().get("carrier_service") or {}

    def find_carrier_service(self, name: str = CARRIER_SERVICE_NAME) -> Optional[Dict[str, Any]]:
        for svc in self.list_carrier_services():
            if svc.get("name") == name and svc.get("id"):
                return svc
        return None
