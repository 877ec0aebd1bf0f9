# credentials.py
# Shop access-token resolution and storage (replaces a process-global token map).

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config_loader import ConfigError, load_settings
from kms_utils import is_wrapped, kms_decrypt_wrapped, kms_encrypt, mask_secret

logger = logging.getLogger()
logger.setLevel(logging.INFO)

Source = Union[Optional[str], Callable[[], Optional[str]]]


def resolve_credential(sources: Iterable[Source]) -> Optional[str]:
    """
    First non-blank source wins. A source may be a value or a zero-arg
    callable; callables are only invoked when every earlier source is blank.
    """
    for src in sources:
        value = src() if callable(src) else src
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# ---------- Token storage ----------------------------------------------------

class ShopTokenStore:
    """
    DynamoDB table keyed by `shop`. Tokens are written as ENCRYPTED(...) when
    a KMS key is configured; plaintext rows (local/dev) are read as-is.
    """

    def __init__(self, table: Any = None, kms_key_arn: Optional[str] = None):
        self._table = table
        self._kms_key_arn = kms_key_arn

    @property
    def table(self):
        if self._table is None:
            settings = load_settings()
            name = settings["tokens_table"]
            if not name:
                raise ConfigError("Missing required environment variable: SHOP_TOKENS_TABLE")
            self._table = boto3.resource("dynamodb", region_name=settings["region"]).Table(name)
        return self._table

    @property
    def kms_key_arn(self) -> str:
        return self._kms_key_arn if self._kms_key_arn is not None else load_settings()["token_kms_key_arn"]

    def get_token(self, shop: str) -> Optional[str]:
        resp = self.table.get_item(Key={"shop": shop})
        item = resp.get("Item") or {}
        stored = item.get("access_token")
        if not stored:
            return None
        if is_wrapped(stored):
            return kms_decrypt_wrapped(stored, self.kms_key_arn or None)
        return stored

    def save_token(self, shop: str, token: str) -> None:
        value = kms_encrypt(token, self.kms_key_arn) if self.kms_key_arn else token
        self.table.put_item(Item={
            "shop": shop,
            "access_token": value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"[credentials] stored token for {shop}: {mask_secret(token)}")


# ---------- Providers --------------------------------------------------------

class StaticCredentialProvider:
    """Same token for every shop (single-store installs, tests)."""

    def __init__(self, token: Optional[str]):
        self.token = token

    def __call__(self, shop: str) -> Optional[str]:
        return self.token


class StoredCredentialProvider:
    """Token store first, then the SHOPIFY_ACCESS_TOKEN environment value."""

    def __init__(self, token_store: Optional[ShopTokenStore] = None):
        self.token_store = token_store or ShopTokenStore()

    def __call__(self, shop: str) -> Optional[str]:
        return resolve_credential([
            lambda: _stored_token(self.token_store, shop),
            load_settings()["env_access_token"],
        ])


def _stored_token(token_store: Optional[ShopTokenStore], shop: Optional[str]) -> Optional[str]:
    if token_store is None or not shop:
        return None
    try:
        return token_store.get_token(shop)
    except (BotoCoreError, ClientError, ConfigError, ValueError) as e:
        logger.warning(f"[credentials] token lookup failed for {shop}: {e}")
        return None


def credential_sources(event: Dict[str, Any], shop: Optional[str],
                       token_store: Optional[ShopTokenStore] = None) -> List[Source]:
    """
    The one resolution order used by every handler:
    ?token=, X-Shopify-Access-Token header, stored shop token, environment.
    """
    qs = event.get("queryStringParameters") or {}
    headers = {str(k).lower(): v for k, v in (event.get("headers") or {}).items()}
    return [
        qs.get("token"),
        headers.get("x-shopify-access-token"),
        lambda: _stored_token(token_store, shop),
        load_settings()["env_access_token"],
    ]


def shop_and_token(event: Dict[str, Any],
                   token_store: Optional[ShopTokenStore] = None) -> Tuple[str, Optional[str]]:
    """Shop from ?shop= (else SHOPIFY_SHOP_DOMAIN) and its resolved Admin API token."""
    qs = event.get("queryStringParameters") or {}
    shop = (qs.get("shop") or load_settings()["default_shop"] or "").strip().lower()
    token = resolve_credential(credential_sources(event, shop, token_store or ShopTokenStore())) if shop else None
    return shop, token
