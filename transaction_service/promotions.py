"""
promotions.py — Promotion Matching, Order Pricing and Promotion Administration

This module evaluates promotion rules against a cart and prices orders.

Matching Overview:
1. Promotions past their `valid_till` are ignored.
2. The Buy criterion must be met by the cart (specific SKU, any product, or a
   category tag). The first qualifying units, in cart order, are consumed by it.
3. The Get criterion selects what is discounted:
   - SoloThis: every line that satisfied Buy, on its full value.
   - This: the next units of the Buy lines beyond the consumed units.
   - Specific / Any / Category: units of matching lines not consumed by Buy.
4. Every matching promotion contributes; discounts stack additively per line
   and a line never costs less than zero. Each promotion applies once per cart.

Pricing:
    order total = order discount applied to Σ max(line cost after line discount − promotion discounts, 0)
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

from .auth import Action, Session, check_permissions
from .discounts import apply_discount, discount_amount, line_cost
from .logging_config import get_logger
from .models import (
    BuyAny, BuyCategory, BuySpecific, GetAny, GetCategory, GetSoloThis, GetSpecific, GetThis,
    OrderInit, Percentage, ProductPurchase, Promotion, PromotionInput, utc_now,
)
from .repository import PromotionRepository, persistence_guard

log = get_logger(__name__)


@dataclass(frozen=True)
class PromotionMatch:
    """A discount contributed by one promotion to one line item."""
    promotion_id: str
    line_item_id: str
    units: float
    discount_applied: float


@dataclass(frozen=True)
class OrderPricing:
    order_id: str
    subtotal: float
    total: float
    matches: Tuple[PromotionMatch, ...] = ()


def _buy_predicate(buy) -> Callable[[ProductPurchase], bool]:
    if isinstance(buy, BuySpecific):
        return lambda line: line.product_sku == buy.sku
    if isinstance(buy, BuyCategory):
        return lambda line: buy.tag in line.tags
    return lambda line: True


def _get_predicate(get) -> Callable[[ProductPurchase], bool]:
    if isinstance(get, GetSpecific):
        return lambda line: line.product_sku == get.sku
    if isinstance(get, GetCategory):
        return lambda line: get.tag in line.tags
    return lambda line: True


def buy_satisfied(buy, cart: List[ProductPurchase]) -> bool:
    predicate = _buy_predicate(buy)
    return sum(line.quantity for line in cart if predicate(line)) >= buy.quantity


def _consume(cart: List[ProductPurchase], predicate, quantity: float) -> Dict[str, float]:
    """Takes `quantity` units from matching lines in cart order; returns the units taken per line id."""
    taken: Dict[str, float] = {}
    remaining = quantity
    for line in cart:
        if remaining <= 0:
            break
        if not predicate(line):
            continue
        units = min(line.quantity, remaining)
        taken[line.id] = units
        remaining -= units
    return taken


def match_promotion(promotion: Promotion, cart: List[ProductPurchase]) -> List[PromotionMatch]:
    """
    Evaluates a single promotion against a cart.

    Args:
        promotion (Promotion): The rule to evaluate. Its validity date is not checked here.
        cart (List[ProductPurchase]): The purchased line items.

    Returns:
        List[PromotionMatch]: One entry per discounted line; empty when the Buy criterion is not met.
    """
    buy_matches = _buy_predicate(promotion.buy)
    if not buy_satisfied(promotion.buy, cart):
        return []

    get = promotion.get
    if isinstance(get, GetSoloThis):
        return [
            PromotionMatch(
                promotion_id=promotion.id,
                line_item_id=line.id,
                units=line.quantity,
                discount_applied=discount_amount(get.discount, line.product_cost * line.quantity),
            )
            for line in cart if buy_matches(line)
        ]

    consumed = _consume(cart, buy_matches, promotion.buy.quantity)
    target = buy_matches if isinstance(get, GetThis) else _get_predicate(get)

    matches = []
    remaining = get.quantity
    for line in cart:
        if remaining <= 0:
            break
        if not target(line):
            continue
        units = min(line.quantity - consumed.get(line.id, 0), remaining)
        if units <= 0:
            continue
        matches.append(PromotionMatch(
            promotion_id=promotion.id,
            line_item_id=line.id,
            units=units,
            discount_applied=discount_amount(get.discount, line.product_cost) * units,
        ))
        remaining -= units
    return matches


def match_promotions(cart: List[ProductPurchase], catalog: List[Promotion], as_of: datetime) -> List[PromotionMatch]:
    """
    Determines every promotion discount applying to a cart.

    Args:
        cart (List[ProductPurchase]): The purchased line items.
        catalog (List[Promotion]): Candidate promotions.
        as_of (datetime): Evaluation instant; promotions with `valid_till` before it are skipped.

    Returns:
        List[PromotionMatch]: All contributions, in catalog order. An empty catalog yields no matches.
    """
    matches = []
    for promotion in catalog:
        if as_of > promotion.valid_till:
            continue
        found = match_promotion(promotion, cart)
        if found:
            log.debug(f"[Promotion: {promotion.id}] '{promotion.name}' applies to {len(found)} line(s).")
        matches.extend(found)
    return matches


def price_order(order: OrderInit, catalog: List[Promotion], as_of: datetime) -> OrderPricing:
    """Prices one order: line discounts first, then promotions, then the order discount."""
    matches = match_promotions(order.products, catalog, as_of)

    promoted: Dict[str, float] = defaultdict(float)
    for match in matches:
        promoted[match.line_item_id] += match.discount_applied

    subtotal = sum(max(line_cost(line) - promoted[line.id], 0) for line in order.products)
    return OrderPricing(
        order_id=order.id,
        subtotal=subtotal,
        total=apply_discount(order.discount, subtotal),
        matches=tuple(matches),
    )


def price_orders(orders: List[OrderInit], catalog: List[Promotion], as_of: datetime) -> List[OrderPricing]:
    return [price_order(order, catalog, as_of) for order in orders]


def example_promotions(now: datetime) -> List[PromotionInput]:
    """Template promotions used for demo content, valid for seven days from `now`."""
    valid_till = now + timedelta(days=7)
    return [
        PromotionInput(
            name="Buy 1 Get 1 10% off",
            buy=BuyAny(quantity=1.0),
            get=GetAny(quantity=1.0, discount=Percentage(value=10)),
            valid_till=valid_till,
            timestamp=now,
        ),
        PromotionInput(
            name="50% off T-shirts",
            buy=BuyCategory(tag="Tee", quantity=1.0),
            get=GetSoloThis(discount=Percentage(value=50)),
            valid_till=valid_till,
            timestamp=now,
        ),
        PromotionInput(
            name="Buy a Kayak, get a Life Jacket 50% off",
            buy=BuySpecific(sku="654321", quantity=1.0),
            get=GetSpecific(sku="162534", quantity=1.0, discount=Percentage(value=50)),
            valid_till=valid_till,
            timestamp=now,
        ),
    ]


def _mentions(criterion, query: str) -> bool:
    if isinstance(criterion, (BuyAny, GetAny)):
        return True
    return query in (getattr(criterion, "sku", None), getattr(criterion, "tag", None))


class PromotionService:
    """
    Administrative operations on promotions.

    Promotions are never deleted here; their body can be replaced by an update.
    """

    def __init__(self, repository: PromotionRepository):
        self.repository = repository

    def create_promotion(self, promotion: PromotionInput, session: Session) -> Promotion:
        check_permissions(session, Action.CREATE_PROMOTION)
        with persistence_guard("[Promotion: new]", "insert"):
            stored = self.repository.insert(promotion)
        log.info(f"[Promotion: {stored.id}] Created '{stored.name}'.")
        return stored

    def update_promotion(self, promotion: PromotionInput, promotion_id: str, session: Session) -> Promotion:
        check_permissions(session, Action.MODIFY_PROMOTION)
        with persistence_guard(f"[Promotion: {promotion_id}]", "update"):
            stored = self.repository.update(promotion, promotion_id)
        log.info(f"[Promotion: {promotion_id}] Updated.")
        return stored

    def get_promotion(self, promotion_id: str, session: Session) -> Promotion:
        check_permissions(session, Action.FETCH_PROMOTION)
        with persistence_guard(f"[Promotion: {promotion_id}]", "fetch"):
            return self.repository.find_by_id(promotion_id)

    def list_promotions(self, session: Session) -> List[Promotion]:
        check_permissions(session, Action.FETCH_PROMOTION)
        with persistence_guard("[Promotion: *]", "fetch"):
            return self.repository.find_all()

    def search_promotions(self, query: str, session: Session) -> List[Promotion]:
        """Promotions whose Buy or Get criterion names `query` as SKU or tag, plus all Any criteria."""
        return [
            promotion for promotion in self.list_promotions(session)
            if _mentions(promotion.buy, query) or _mentions(promotion.get, query)
        ]

    def generate(self, session: Session) -> List[Promotion]:
        check_permissions(session, Action.GENERATE_TEMPLATE_CONTENT)
        now = utc_now()
        with persistence_guard("[Promotion: template]", "insert"):
            created = [self.repository.insert(promotion) for promotion in example_promotions(now)]
        log.info(f"Generated {len(created)} template promotions.")
        return created
