from decimal import Decimal

from common.utils import to_money

HUNDRED = Decimal("100")


def resolve_unit_price(product, business):
    """Price a business pays for one unit: business price less the tenant discount.

    The discount is validated when it is written, so it is used here as stored.
    """
    discount = Decimal(business.discount_pct or 0)
    return to_money(Decimal(product.business_price) * (HUNDRED - discount) / HUNDRED)


def public_price(product):
    return product.public_price


def line_total(unit_price, quantity):
    return to_money(Decimal(unit_price) * int(quantity))


def order_total(lines):
    """Sum already-rounded line totals; `lines` yields (unit_price, quantity) pairs."""
    return to_money(sum((line_total(unit_price, quantity) for unit_price, quantity in lines), Decimal("0")))
