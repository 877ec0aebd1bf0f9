# rate_engine.py
# Wholesale shipping-rate decision: cart lines + customer tags + shop rule -> offers.
#
#   wholesale?  subtotal >= threshold   offers
#   no          -                       []            (Shopify falls back to store rates)
#   yes         yes                     FREE_SHIPPING 0
#   yes         no                      STANDARD 899, EXPRESS 1599

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from config_loader import get_value
from rule_store import DEFAULT_RULE, RuleStore, WholesaleRule, effective_rule

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DEFAULT_CURRENCY = "USD"

FREE_SHIPPING_CODE = "FREE_SHIPPING"
STANDARD_CODE = "STANDARD"
EXPRESS_CODE = "EXPRESS"
STANDARD_PRICE_CENTS = 899
EXPRESS_PRICE_CENTS = 1599

# Rule lookups with a deadline run on this pool. A lookup that overruns keeps its
# worker until the store call returns, so RULE_STORE_WORKERS bounds how many hung
# reads can pile up before later lookups queue behind them.
_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=get_value("rule_store_workers"),
                                           thread_name_prefix="rule-store")
        return _executor


class MalformedRequest(ValueError):
    """The callback body has no `rate` object."""


@dataclass(frozen=True)
class LineItem:
    price: float
    quantity: int


@dataclass(frozen=True)
class RateRequest:
    currency: str = DEFAULT_CURRENCY
    items: Tuple[LineItem, ...] = ()
    customer_tags: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class RateOffer:
    service_name: str
    service_code: str
    total_price: int
    currency: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "service_code": self.service_code,
            "total_price": str(self.total_price),
            "currency": self.currency,
            "description": self.description,
        }


# =============== Parsing ===============

def _number(value: Any, field: str) -> float:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{field} must be numeric, got a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{field} must be finite")
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return 0
        n = float(s)  # ValueError on junk
        if not math.isfinite(n):
            raise ValueError(f"{field} must be finite")
        return n
    raise ValueError(f"{field} must be numeric, got {type(value).__name__}")


def _quantity(value: Any) -> int:
    n = _number(value, "quantity")
    if n != int(n):
        raise ValueError(f"quantity must be a whole number, got {value!r}")
    return int(n)


def normalize_tags(tags: Any) -> FrozenSet[str]:
    """Comma-joined string or list -> trimmed, non-empty tag set."""
    if not tags:
        return frozenset()
    if isinstance(tags, (list, tuple, set, frozenset)):
        parts = [str(t).strip() for t in tags if t is not None]
    else:
        parts = [t.strip() for t in str(tags).split(",")]
    return frozenset(t for t in parts if t)


def parse_rate_request(body: Any) -> RateRequest:
    """
    Shopify carrier-service callback body -> RateRequest.
    Raises MalformedRequest when there is no `rate` object, ValueError on
    unparseable numbers.
    """
    if not isinstance(body, dict) or not isinstance(body.get("rate"), dict):
        raise MalformedRequest("Invalid rate payload")
    rate = body["rate"]

    currency = rate.get("currency")
    currency = currency.strip() if isinstance(currency, str) and currency.strip() else DEFAULT_CURRENCY

    raw_items = rate.get("items") if isinstance(rate.get("items"), list) else []
    items: List[LineItem] = []
    for it in raw_items:
        if it is None:
            continue
        if not isinstance(it, dict):
            raise ValueError(f"rate item must be an object, got {type(it).__name__}")
        items.append(LineItem(_number(it.get("price"), "price"), _quantity(it.get("quantity"))))

    customer = rate.get("customer") if isinstance(rate.get("customer"), dict) else {}
    tags = normalize_tags(customer.get("tags") or customer.get("tag"))

    return RateRequest(currency=currency, items=tuple(items), customer_tags=tags)


# =============== Computation ===============

def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_subtotal(items: Iterable[LineItem]) -> int:
    # Unit price is rounded before multiplying: {10.6, 3} -> 11 * 3 = 33.
    return sum(round_half_up(it.price) * max(0, it.quantity) for it in items)


def format_minor_units(cents: int, currency: str) -> str:
    amount = f"{cents // 100}" if cents % 100 == 0 else f"{cents / 100:.2f}"
    return f"${amount}" if currency == "USD" else f"{amount} {currency}"


def build_offers(rule: WholesaleRule, subtotal: int, is_wholesale: bool, currency: str) -> List[RateOffer]:
    if not is_wholesale:
        return []

    threshold = format_minor_units(rule.threshold_cents, currency)
    if subtotal >= rule.threshold_cents:
        return [RateOffer(
            service_name="Free Shipping",
            service_code=FREE_SHIPPING_CODE,
            total_price=0,
            currency=currency,
            description=f"Free shipping for wholesale orders ≥ {threshold}",
        )]

    return [
        RateOffer(
            service_name="Standard Shipping",
            service_code=STANDARD_CODE,
            total_price=STANDARD_PRICE_CENTS,
            currency=currency,
            description=f"Standard shipping for wholesale orders under {threshold}",
        ),
        RateOffer(
            service_name="Express Shipping",
            service_code=EXPRESS_CODE,
            total_price=EXPRESS_PRICE_CENTS,
            currency=currency,
            description=f"Express shipping for wholesale orders under {threshold}",
        ),
    ]


def load_rule(shop: Optional[str], store: Optional[RuleStore], timeout: Optional[float] = None) -> WholesaleRule:
    """
    One read from the store. Missing rule, store errors and deadline overruns
    all yield the default rule.
    """
    if store is None or not shop:
        return DEFAULT_RULE
    try:
        if timeout is None:
            return effective_rule(store.get(shop))
        return effective_rule(_get_executor().submit(store.get, shop).result(timeout=timeout))
    except FuturesTimeout:
        logger.warning(f"[rates] rule lookup for {shop} exceeded {timeout}s; using default rule")
    except Exception as e:
        logger.warning(f"[rates] rule lookup for {shop} failed ({type(e).__name__}: {e}); using default rule")
    return DEFAULT_RULE


def quote(shop: Optional[str], request: RateRequest, store: Optional[RuleStore] = None,
          timeout: Optional[float] = None) -> List[RateOffer]:
    rule = load_rule(shop, store, timeout)
    subtotal = compute_subtotal(request.items)
    is_wholesale = rule.wholesale_tag in request.customer_tags
    offers = build_offers(rule, subtotal, is_wholesale, request.currency)
    logger.info(
        f"[rates] shop={shop} subtotal={subtotal} threshold={rule.threshold_cents} "
        f"wholesale={is_wholesale} offers={[o.service_code for o in offers]}"
    )
    return offers


def rates_payload(offers: Iterable[RateOffer]) -> Dict[str, Any]:
    return {"rates": [o.to_dict() for o in offers]}
