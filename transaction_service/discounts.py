"""
discounts.py — Discount Calculator

Pure helpers applying a DiscountValue to an amount.
"""

from .models import Fixed, Percentage, ProductPurchase


def apply_discount(discount, amount: float) -> float:
    """
    Applies a discount to an amount.

    Args:
        discount (DiscountValue): Percentage or Fixed discount.
        amount (float): The price to reduce.

    Returns:
        float: `amount * (100 - p) / 100` for a percentage, `max(amount - f, 0)` for a fixed amount.
    """
    if isinstance(discount, Percentage):
        return amount * (100 - discount.value) / 100
    if isinstance(discount, Fixed):
        return max(amount - discount.value, 0)
    raise TypeError(f"Unknown discount type: {type(discount).__name__}")


def discount_amount(discount, amount: float) -> float:
    """Amount removed from `amount` by `discount`."""
    return amount - apply_discount(discount, amount)


def line_cost(line: ProductPurchase) -> float:
    """Cost of a line item after its own discount."""
    return apply_discount(line.discount, line.product_cost * line.quantity)
