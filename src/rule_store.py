# rule_store.py
# Per-shop wholesale shipping rule {wholesaleTag, thresholdCents}.
# Backends:
#   memory     - process-local dict (local runs, tests)
#   dynamodb   - WHOLESALE_RULES_TABLE, HASH=shop
#   metafield  - Shopify shop metafield wholesale/shipping_rules (json)

import json
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from config_loader import ConfigError, load_settings
from credentials import StoredCredentialProvider
from shopify_client import ShopifyClient, ShopifyError

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_WHOLESALE_TAG = "Wholesaler"
DEFAULT_THRESHOLD_CENTS = 100000  # $1000.00

METAFIELD_NAMESPACE = "wholesale"
METAFIELD_KEY = "shipping_rules"


# =============== Errors ===============

class ValidationError(ValueError):
    """Rejected rule: blank tag, or a negative / non-finite / fractional threshold."""


class StorageError(RuntimeError):
    """The backing store was unavailable or refused the operation."""


# =============== Rule ===============

@dataclass(frozen=True)
class WholesaleRule:
    wholesale_tag: str = DEFAULT_WHOLESALE_TAG
    threshold_cents: int = DEFAULT_THRESHOLD_CENTS

    def to_dict(self) -> Dict[str, Any]:
        return {"wholesaleTag": self.wholesale_tag, "thresholdCents": self.threshold_cents}


DEFAULT_RULE = WholesaleRule()


def _parse_threshold(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("Invalid thresholdCents: must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("Invalid thresholdCents: must be finite")
    try:
        d = Decimal(str(value).strip()) if isinstance(value, (str, float)) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid thresholdCents: {value!r}")
    if not d.is_finite():
        raise ValidationError("Invalid thresholdCents: must be finite")
    if d < 0:
        raise ValidationError("Invalid thresholdCents: must be >= 0")
    if d != d.to_integral_value():
        raise ValidationError("Invalid thresholdCents: must be a whole number of cents")
    return int(d)


def validate_rule(wholesale_tag: Any, threshold_cents: Any) -> WholesaleRule:
    if not isinstance(wholesale_tag, str) or not wholesale_tag.strip():
        raise ValidationError("Invalid wholesaleTag: must be a non-empty string")
    return WholesaleRule(wholesale_tag.strip(), _parse_threshold(threshold_cents))


def effective_rule(rule: Optional[WholesaleRule]) -> WholesaleRule:
    return rule if rule is not None else DEFAULT_RULE


# =============== Store contract ===============

class RuleStore:
    name: str

    def get(self, shop: str) -> Optional[WholesaleRule]:
        """Stored rule for the shop, or None if never configured."""
        raise NotImplementedError

    def set(self, shop: str, rule: WholesaleRule) -> WholesaleRule:
        """Validate and persist; returns the rule as stored."""
        raise NotImplementedError


# ---------- Memory ----------

class InMemoryRuleStore(RuleStore):
    name = "memory"

    def __init__(self):
        self._rules: Dict[str, WholesaleRule] = {}
        self._lock = threading.Lock()

    def get(self, shop: str) -> Optional[WholesaleRule]:
        with self._lock:
            return self._rules.get(shop)

    def set(self, shop: str, rule: WholesaleRule) -> WholesaleRule:
        rule = validate_rule(rule.wholesale_tag, rule.threshold_cents)
        with self._lock:
            self._rules[shop] = rule
        return rule


# ---------- DynamoDB ----------

def _aws_message(e: Exception) -> str:
    if isinstance(e, ClientError):
        return e.response["Error"].get("Message", "unknown")
    return str(e)


class DynamoRuleStore(RuleStore):
    """One item per shop: {shop, wholesale_tag, threshold_cents, updated_at}."""
    name = "dynamodb"

    def __init__(self, table: Any = None):
        self._table = table

    @property
    def table(self):
        if self._table is None:
            settings = load_settings()
            if not settings["rules_table"]:
                raise ConfigError("Missing required environment variable: WHOLESALE_RULES_TABLE")
            dynamodb = boto3.resource("dynamodb", region_name=settings["region"])
            self._table = dynamodb.Table(settings["rules_table"])
        return self._table

    def get(self, shop: str) -> Optional[WholesaleRule]:
        try:
            res = self.table.get_item(Key={"shop": shop}, ConsistentRead=True)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(_aws_message(e))
        item = res.get("Item")
        if not item:
            return None
        try:
            return validate_rule(item.get("wholesale_tag"), item.get("threshold_cents"))
        except ValidationError as e:
            logger.warning(f"[rules] ignoring unreadable rule for {shop}: {e}")
            return None

    def set(self, shop: str, rule: WholesaleRule) -> WholesaleRule:
        rule = validate_rule(rule.wholesale_tag, rule.threshold_cents)
        try:
            self.table.put_item(Item={
                "shop": shop,
                "wholesale_tag": rule.wholesale_tag,
                "threshold_cents": Decimal(rule.threshold_cents),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
        except (BotoCoreError, ClientError) as e:
            raise StorageError(_aws_message(e))
        return rule


# ---------- Shopify metafield ----------

_READ_QUERY = """#graphql
  query WholesaleRule($ns: String!, $key: String!) {
    shop {
      id
      metafield(namespace: $ns, key: $key) { value }
    }
  }
"""

_WRITE_MUTATION = """#graphql
  mutation SetWholesaleRule($metafields: [MetafieldsSetInput!]!) {
    metafieldsSet(metafields: $metafields) {
      metafields { id }
      userErrors { field message }
    }
  }
"""

_SHOP_ID_QUERY = """#graphql
  query ShopId { shop { id } }
"""


class MetafieldRuleStore(RuleStore):
    """
    Rule kept as a JSON shop metafield so Shopify Functions can read it too.
    `credential_provider(shop)` must return an Admin API token for the shop.
    """
    name = "metafield"

    def __init__(self, credential_provider: Callable[[str], Optional[str]],
                 client_factory: Callable[..., ShopifyClient] = ShopifyClient,
                 namespace: str = METAFIELD_NAMESPACE, key: str = METAFIELD_KEY):
        self.credential_provider = credential_provider
        self.client_factory = client_factory
        self.namespace = namespace
        self.key = key

    def _client(self, shop: str) -> ShopifyClient:
        token = self.credential_provider(shop)
        if not token:
            raise StorageError(f"No access token available for {shop}")
        return self.client_factory(shop, token)

    def get(self, shop: str) -> Optional[WholesaleRule]:
        client = self._client(shop)
        try:
            data = client.graphql(_READ_QUERY, {"ns": self.namespace, "key": self.key})
        except (ShopifyError, requests.RequestException) as e:
            raise StorageError(str(e))
        metafield = ((data.get("data") or {}).get("shop") or {}).get("metafield")
        if not metafield or not metafield.get("value"):
            return None
        try:
            raw = json.loads(metafield["value"])
            return validate_rule(raw.get("wholesaleTag"), raw.get("thresholdCents"))
        except (ValueError, AttributeError) as e:
            logger.warning(f"[rules] ignoring unreadable metafield for {shop}: {e}")
            return None

    def set(self, shop: str, rule: WholesaleRule) -> WholesaleRule:
        rule = validate_rule(rule.wholesale_tag, rule.threshold_cents)
        client = self._client(shop)
        try:
            shop_id = ((client.graphql(_SHOP_ID_QUERY).get("data") or {}).get("shop") or {}).get("id")
            if not shop_id:
                raise StorageError(f"Could not resolve shop id for {shop}")
            result = client.graphql(_WRITE_MUTATION, {"metafields": [{
                "ownerId": shop_id,
                "namespace": self.namespace,
                "key": self.key,
                "type": "json",
                "value": json.dumps(rule.to_dict()),
            }]})
        except (ShopifyError, requests.RequestException) as e:
            raise StorageError(str(e))
        errors = ((result.get("data") or {}).get("metafieldsSet") or {}).get("userErrors") or []
        if errors:
            raise StorageError("; ".join(str(err.get("message")) for err in errors))
        return rule


# =============== Factory ===============

_memory_store = InMemoryRuleStore()


def build_rule_store(credential_provider: Optional[Callable[[str], Optional[str]]] = None) -> RuleStore:
    """Backend chosen by RULE_STORE_BACKEND."""
    backend = load_settings()["rule_store_backend"]
    if backend == "memory":
        return _memory_store
    if backend == "metafield":
        if credential_provider is None:
            credential_provider = StoredCredentialProvider()
        return MetafieldRuleStore(credential_provider)
    return DynamoRuleStore()
