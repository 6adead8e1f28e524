"""Builders shared by the test modules."""

from datetime import timedelta

from posledger.models import Product
from posledger.services.sale_engine import SaleLineRequest, SaleRequest
from posledger.time_utils import utcnow


def make_product(session, *, sku="SKU-1", name="Rice 1kg", price_cents=500, stock=0,
                 min_stock=5, allow_backorder=False, expires_on=None, core=None):
    product = Product(
        sku=sku,
        name=name,
        price_cents=price_cents,
        min_stock=min_stock,
        allow_backorder=allow_backorder,
        expires_on=expires_on,
    )
    session.add(product)
    session.commit()
    if stock:
        core.stock.receive(product.id, stock, kind="INITIAL_STOCK")
    return product


def sale_request(product_id, quantity=1, *, register_id=None, payment_method="CASH", **kwargs):
    return SaleRequest(
        lines=(SaleLineRequest(product_id=product_id, quantity=quantity),),
        payment_method=payment_method,
        register_id=register_id,
        **kwargs,
    )


def credit_sale(product_id, customer_id, quantity=1, unit_price_cents=None):
    return SaleRequest(
        lines=(SaleLineRequest(product_id=product_id, quantity=quantity, unit_price_cents=unit_price_cents),),
        payment_method="CREDIT",
        customer_id=customer_id,
    )


def hours_ago(hours):
    return utcnow() - timedelta(hours=hours)
