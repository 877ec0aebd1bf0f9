"""Tests for rule validation and the rule store backends."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
import requests
from botocore.exceptions import EndpointConnectionError

import rule_store
from conftest import SHOP, FakeShopifyClient
from rule_store import (
    DEFAULT_RULE,
    DynamoRuleStore,
    InMemoryRuleStore,
    MetafieldRuleStore,
    StorageError,
    ValidationError,
    WholesaleRule,
    build_rule_store,
    effective_rule,
    validate_rule,
)
from shopify_client import ShopifyError


class TestValidateRule:
    """Test the single validation path."""

    def test_trims_tag(self):
        assert validate_rule("  VIP ", 50000) == WholesaleRule("VIP", 50000)

    @pytest.mark.parametrize("tag", ["", "   ", None, 5])
    def test_blank_or_non_string_tag_rejected(self, tag):
        with pytest.raises(ValidationError):
            validate_rule(tag, 1)

    @pytest.mark.parametrize("value", [-1, "-5", float("nan"), float("inf"), "abc", True, None, 10.5, "1.25"])
    def test_bad_threshold_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_rule("VIP", value)

    @pytest.mark.parametrize("value,expected", [(0, 0), ("2500", 2500), (1500.0, 1500), (Decimal("700"), 700)])
    def test_good_threshold_accepted(self, value, expected):
        assert validate_rule("VIP", value).threshold_cents == expected

    def test_effective_rule_default(self):
        assert effective_rule(None) is DEFAULT_RULE
        assert effective_rule(WholesaleRule("VIP", 1)) == WholesaleRule("VIP", 1)


class TestInMemoryRuleStore:
    def test_missing_is_none(self):
        assert InMemoryRuleStore().get(SHOP) is None

    def test_round_trip(self):
        store = InMemoryRuleStore()
        store.set(SHOP, WholesaleRule(" VIP ", 50000))
        assert store.get(SHOP) == WholesaleRule("VIP", 50000)

    def test_invalid_write_keeps_prior_value(self):
        store = InMemoryRuleStore()
        store.set(SHOP, WholesaleRule("VIP", 50000))
        with pytest.raises(ValidationError):
            store.set(SHOP, WholesaleRule("VIP", -1))
        assert store.get(SHOP) == WholesaleRule("VIP", 50000)

    def test_shops_are_isolated(self):
        store = InMemoryRuleStore()
        store.set(SHOP, WholesaleRule("VIP", 1))
        assert store.get("other.myshopify.com") is None

    def test_racing_writes_last_one_wins(self):
        store = InMemoryRuleStore()
        rules = [WholesaleRule("VIP", n) for n in range(1, 6)]
        store.set(SHOP, rules[0])
        start = threading.Barrier(4)

        def reading():
            start.wait()
            return {store.get(SHOP) for _ in range(200)}

        def writing():
            start.wait()
            for rule in rules:
                store.set(SHOP, rule)

        with ThreadPoolExecutor(max_workers=4) as pool:
            readers = [pool.submit(reading) for _ in range(3)]
            pool.submit(writing).result()
            seen = set().union(*(f.result() for f in readers))

        assert seen <= set(rules)
        assert store.get(SHOP) == rules[-1]


class TestDynamoRuleStore:
    def test_missing_is_none(self, fake_table):
        assert DynamoRuleStore(fake_table).get(SHOP) is None

    def test_round_trip_with_consistent_read(self, fake_table):
        store = DynamoRuleStore(fake_table)
        store.set(SHOP, WholesaleRule("VIP", 50000))
        assert fake_table.items[SHOP]["threshold_cents"] == Decimal(50000)
        assert store.get(SHOP) == WholesaleRule("VIP", 50000)
        assert fake_table.calls[-1][2] == {"ConsistentRead": True}

    def test_client_error_on_write_is_storage_error(self, fake_table):
        fake_table.fail_with = "ProvisionedThroughputExceededException"
        with pytest.raises(StorageError):
            DynamoRuleStore(fake_table).set(SHOP, WholesaleRule("VIP", 1))

    def test_client_error_on_read_is_storage_error(self, fake_table):
        fake_table.fail_with = "ResourceNotFoundException"
        with pytest.raises(StorageError):
            DynamoRuleStore(fake_table).get(SHOP)

    def test_transport_error_on_write_is_storage_error(self, fake_table):
        fake_table.fail_with = EndpointConnectionError(endpoint_url="https://dynamodb.us-west-2.amazonaws.com")
        with pytest.raises(StorageError) as exc:
            DynamoRuleStore(fake_table).set(SHOP, WholesaleRule("VIP", 1))
        assert "dynamodb.us-west-2.amazonaws.com" in str(exc.value)

    def test_transport_error_on_read_is_storage_error(self, fake_table):
        fake_table.fail_with = EndpointConnectionError(endpoint_url="https://dynamodb.us-west-2.amazonaws.com")
        with pytest.raises(StorageError):
            DynamoRuleStore(fake_table).get(SHOP)

    def test_validation_happens_before_write(self, fake_table):
        with pytest.raises(ValidationError):
            DynamoRuleStore(fake_table).set(SHOP, WholesaleRule("  ", 1))
        assert fake_table.items == {}

    def test_corrupt_item_reads_as_none(self, fake_table):
        fake_table.items[SHOP] = {"shop": SHOP, "wholesale_tag": "", "threshold_cents": Decimal(-3)}
        assert DynamoRuleStore(fake_table).get(SHOP) is None


def _metafield_store(responses, token="shpat_test"):
    clients = []

    def factory(shop, tok):
        client = FakeShopifyClient(shop, tok, responses)
        clients.append(client)
        return client

    return MetafieldRuleStore(lambda shop: token, client_factory=factory), clients


class TestMetafieldRuleStore:
    def test_missing_metafield_is_none(self):
        store, _ = _metafield_store([{"data": {"shop": {"id": "gid://shopify/Shop/9", "metafield": None}}}])
        assert store.get(SHOP) is None

    def test_reads_json_value(self):
        value = json.dumps({"wholesaleTag": "VIP", "thresholdCents": 50000})
        store, clients = _metafield_store([{"data": {"shop": {"metafield": {"value": value}}}}])
        assert store.get(SHOP) == WholesaleRule("VIP", 50000)
        assert clients[0].calls[0][1] == {"ns": "wholesale", "key": "shipping_rules"}

    def test_unparseable_value_is_none(self):
        store, _ = _metafield_store([{"data": {"shop": {"metafield": {"value": "not json"}}}}])
        assert store.get(SHOP) is None

    def test_write_uses_real_shop_id(self):
        store, clients = _metafield_store([
            {"data": {"shop": {"id": "gid://shopify/Shop/42"}}},
            {"data": {"metafieldsSet": {"metafields": [{"id": "m1"}], "userErrors": []}}},
        ])
        assert store.set(SHOP, WholesaleRule(" VIP ", 50000)) == WholesaleRule("VIP", 50000)
        metafield = clients[0].calls[1][1]["metafields"][0]
        assert metafield["ownerId"] == "gid://shopify/Shop/42"
        assert metafield["type"] == "json"
        assert json.loads(metafield["value"]) == {"wholesaleTag": "VIP", "thresholdCents": 50000}

    def test_user_errors_are_storage_error(self):
        store, _ = _metafield_store([
            {"data": {"shop": {"id": "gid://shopify/Shop/42"}}},
            {"data": {"metafieldsSet": {"userErrors": [{"field": ["value"], "message": "bad"}]}}},
        ])
        with pytest.raises(StorageError, match="bad"):
            store.set(SHOP, WholesaleRule("VIP", 1))

    @pytest.mark.parametrize("exc", [ShopifyError("GraphQL 500", 500), requests.ConnectionError("down")])
    def test_transport_errors_are_storage_error(self, exc):
        store, _ = _metafield_store([exc])
        with pytest.raises(StorageError):
            store.get(SHOP)

    def test_missing_token_is_storage_error(self):
        store, clients = _metafield_store([], token=None)
        with pytest.raises(StorageError):
            store.get(SHOP)
        assert clients == []

    def test_invalid_rule_never_reaches_shopify(self):
        store, clients = _metafield_store([])
        with pytest.raises(ValidationError):
            store.set(SHOP, WholesaleRule("VIP", -1))
        assert clients == []


class TestBuildRuleStore:
    def test_memory_backend_is_shared(self):
        assert build_rule_store() is rule_store._memory_store

    def test_dynamodb_backend(self, monkeypatch):
        import config_loader
        monkeypatch.setenv("RULE_STORE_BACKEND", "dynamodb")
        config_loader.invalidate_cache()
        assert isinstance(build_rule_store(), DynamoRuleStore)

    def test_metafield_backend_uses_given_provider(self, monkeypatch):
        import config_loader
        monkeypatch.setenv("RULE_STORE_BACKEND", "metafield")
        config_loader.invalidate_cache()
        provider = lambda shop: "tok"  # noqa: E731
        store = build_rule_store(provider)
        assert isinstance(store, MetafieldRuleStore)
        assert store.credential_provider is provider
