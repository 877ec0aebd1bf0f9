"""Shared fixtures: fake DynamoDB tables, fake HTTP responses, API Gateway events."""

import base64
import copy
import json
import os

import pytest
from botocore.exceptions import ClientError

os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-west-2")
os.environ["ENVIRONMENT"] = "test"
os.environ["RULE_STORE_BACKEND"] = "memory"
for _name in ("SHOPIFY_ACCESS_TOKEN", "SHOPIFY_SHOP_DOMAIN", "APP_URL", "TOKEN_KMS_KEY_ARN",
              "WHOLESALE_RULES_TABLE", "SHOP_TOKENS_TABLE"):
    os.environ.pop(_name, None)

import config_loader  # noqa: E402
import rule_store  # noqa: E402
import shipping_rates  # noqa: E402

SHOP = "acme.myshopify.com"


class FakeTable:
    """Enough of a boto3 DynamoDB Table for get_item / put_item."""

    def __init__(self, key: str = "shop"):
        self.key = key
        self.items = {}
        self.calls = []
        self.fail_with = None

    def _maybe_fail(self, op: str):
        if isinstance(self.fail_with, Exception):
            raise self.fail_with
        if self.fail_with:
            raise ClientError({"Error": {"Code": self.fail_with, "Message": f"{self.fail_with} on {op}"}}, op)

    def get_item(self, Key, **kwargs):
        self.calls.append(("get_item", Key, kwargs))
        self._maybe_fail("GetItem")
        item = self.items.get(Key[self.key])
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, Item, **kwargs):
        self.calls.append(("put_item", Item, kwargs))
        self._maybe_fail("PutItem")
        self.items[Item[self.key]] = copy.deepcopy(Item)
        return {}


class FakeResource:
    """boto3.resource("dynamodb") stand-in handing out FakeTables by name."""

    def __init__(self):
        self.tables = {}

    def Table(self, name):
        return self.tables.setdefault(name, FakeTable())


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON")
        return self._payload


class FakeShopifyClient:
    """Scripted ShopifyClient: `graphql` answers come from a list of responses or a callable."""

    def __init__(self, shop, token, responses=None):
        self.shop = shop
        self.token = token
        self.responses = list(responses or [])
        self.calls = []

    def graphql(self, query, variables=None):
        self.calls.append((query, variables or {}))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt(query, variables) if callable(nxt) else nxt


def make_event(method="POST", body=None, qs=None, headers=None, path="/api/shipping-rates", b64=False):
    raw = body if isinstance(body, str) or body is None else json.dumps(body)
    if b64 and raw is not None:
        raw = base64.b64encode(raw.encode("utf-8")).decode("ascii")
    return {
        "httpMethod": method,
        "path": path,
        "queryStringParameters": qs,
        "headers": headers or {},
        "body": raw,
        "isBase64Encoded": b64,
    }


def body_of(response):
    return json.loads(response["body"]) if response["body"] else None


@pytest.fixture(autouse=True)
def _fresh_state(monkeypatch):
    config_loader.invalidate_cache()
    monkeypatch.setattr(rule_store, "_memory_store", rule_store.InMemoryRuleStore())
    monkeypatch.setattr(shipping_rates, "_store", None)
    yield
    config_loader.invalidate_cache()


@pytest.fixture
def memory_store():
    return rule_store._memory_store


@pytest.fixture
def fake_table():
    return FakeTable()
