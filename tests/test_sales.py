"""Tests for the sale lifecycle: creation, approval paths, deletion and commission."""

from __future__ import annotations

from decimal import Decimal

import pytest

from retail_ledger import catalog, core_logic, sales
from retail_ledger.constants import (
    REASON_SALE_COMPLETED,
    REASON_SALE_DELETED,
    SaleStatus,
    StockDirection,
)

from conftest import CASHIER_ID, CUSTOMER_ID, OWNER_ID


def _command(*items, **overrides) -> sales.SaleCommand:
    payload = {
        "customer_id": CUSTOMER_ID,
        "seller_id": CASHIER_ID,
        "items": tuple(items),
        "payment_method": "Cash",
    }
    payload.update(overrides)
    return sales.SaleCommand(**payload)


def _line(product_id, quantity, variant_id=None) -> sales.LineItemCommand:
    return sales.LineItemCommand(product_id=product_id, quantity=quantity, variant_id=variant_id)


# ---------------------------------------------------------------------------
# Creation and completion
# ---------------------------------------------------------------------------


def test_completed_sale_decrements_stock_and_delete_restores_it(seeded_context, owner):
    """A cash sale takes stock immediately and its deletion gives it back."""

    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 3)))

    assert sale.status is SaleStatus.COMPLETED
    product = catalog.get_product(seeded_context, "P")
    assert product.stock == 7
    assert len(product.stock_history) == 1
    record = product.stock_history[0]
    assert record.direction is StockDirection.REMOVE
    assert record.quantity == 3
    assert record.resulting_stock_level == 7
    assert record.reason == REASON_SALE_COMPLETED

    sales.delete_sale(seeded_context, owner, sale.sale_id)

    product = catalog.get_product(seeded_context, "P")
    assert product.stock == 10
    restore = product.stock_history[-1]
    assert restore.direction is StockDirection.ADD
    assert restore.quantity == 3
    assert restore.resulting_stock_level == 10
    assert restore.reason == REASON_SALE_DELETED
    assert sale.sale_id not in {item.sale_id for item in catalog.list_sales(seeded_context)}


def test_variant_sale_rederives_parent_stock(seeded_context, owner):
    """Selling a variant decrements it and recomputes the parent total."""

    sales.create_sale(seeded_context, owner, _command(_line("T", 2, "V")))

    product = catalog.get_product(seeded_context, "T")
    assert catalog.stock_level(product, "V") == 3
    assert catalog.stock_level(product, "W") == 7
    assert product.stock == 10
    assert product.stock == sum(variant.stock for variant in product.variants)
    assert product.stock_history[-1].variant_id == "V"


def test_deleting_variant_sale_restores_variant_and_parent(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("T", 2, "V"), _line("T", 1, "W")))

    sales.delete_sale(seeded_context, owner, sale.sale_id)

    product = catalog.get_product(seeded_context, "T")
    assert catalog.stock_level(product, "V") == 5
    assert catalog.stock_level(product, "W") == 7
    assert product.stock == 12


def test_completed_sale_joins_customer_history(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 1)))

    assert catalog.get_customer(seeded_context, CUSTOMER_ID).purchase_history == (sale.sale_id,)

    sales.delete_sale(seeded_context, owner, sale.sale_id)

    assert catalog.get_customer(seeded_context, CUSTOMER_ID).purchase_history == ()


def test_totals_apply_discount_before_tax(seeded_context, owner):
    sale = sales.create_sale(
        seeded_context,
        owner,
        _command(_line("P", 2), _line("T", 1, "V"), discount=Decimal("4"), tax_rate=Decimal("10")),
    )

    assert sale.subtotal == Decimal("40.00")
    assert sale.discount == Decimal("4.00")
    assert sale.tax == Decimal("3.60")
    assert sale.total == Decimal("39.60")


def test_discount_is_clamped_to_subtotal(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 1), discount=Decimal("25")))

    assert sale.discount == Decimal("10.00")
    assert sale.total == Decimal("0.00")


def test_tiered_price_applies_from_threshold(seeded_context, owner):
    """The highest tier whose threshold is reached sets the unit price."""

    below = sales.create_sale(seeded_context, owner, _command(_line("Q", 9)))
    assert below.items[0].unit_price == Decimal("5.00")

    catalog_product = catalog.get_product(seeded_context, "Q")
    assert catalog.effective_price(catalog_product, 10) == Decimal("4.50")
    assert catalog.effective_price(catalog_product, 1) == Decimal("5.00")


def test_line_items_capture_cost_and_commission(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("T", 1, "W")))

    item = sale.items[0]
    assert item.unit_price == Decimal("22.00")
    assert item.cost_price == Decimal("13.00")
    assert item.commission_percentage == Decimal("5")
    assert item.variant_id == "W"


# ---------------------------------------------------------------------------
# Commission
# ---------------------------------------------------------------------------


def test_commission_spreads_discount_across_lines(seeded_context, owner):
    sale = sales.create_sale(
        seeded_context,
        owner,
        _command(_line("P", 2), _line("T", 1, "V"), discount=Decimal("4")),
    )

    # P: (20 - 2) * 10% = 1.80; V: (20 - 2) * 5% = 0.90
    assert sale.commission == Decimal("2.70")


def test_owner_commission_is_zero_when_tracking_disabled(seeded_context, owner):
    core_logic.update_settings(seeded_context, owner, commission_tracking_enabled=False)

    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 2), seller_id=OWNER_ID))

    assert sale.commission == Decimal("0.00")


def test_owner_commission_is_tracked_when_enabled(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 2), seller_id=OWNER_ID))

    assert sale.commission == Decimal("2.00")


def test_cashier_commission_ignores_tracking_switch(seeded_context, owner):
    core_logic.update_settings(seeded_context, owner, commission_tracking_enabled=False)

    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 2)))

    assert sale.commission == Decimal("2.00")


# ---------------------------------------------------------------------------
# Deferred payments and client orders
# ---------------------------------------------------------------------------


def test_deferred_payment_waits_for_approval(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 4), payment_method="Bank Transfer"))

    assert sale.status is SaleStatus.PENDING_APPROVAL
    assert sale.commission is None
    assert catalog.get_product(seeded_context, "P").stock == 10
    assert catalog.get_customer(seeded_context, CUSTOMER_ID).purchase_history == ()

    approved = sales.approve_sale(seeded_context, owner, sale.sale_id)

    assert approved.status is SaleStatus.COMPLETED
    assert approved.commission == Decimal("4.00")
    assert catalog.get_product(seeded_context, "P").stock == 6
    assert catalog.get_customer(seeded_context, CUSTOMER_ID).purchase_history == (sale.sale_id,)


def test_rejected_pending_sale_never_touches_stock(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 4), payment_method="Bank Receipt"))

    rejected = sales.reject_sale(seeded_context, owner, sale.sale_id)

    assert rejected.status is SaleStatus.REJECTED
    assert catalog.get_product(seeded_context, "P").stock == 10
    with pytest.raises(core_logic.InvalidTransition):
        sales.approve_sale(seeded_context, owner, sale.sale_id)
    with pytest.raises(core_logic.InvalidTransition):
        sales.reject_sale(seeded_context, owner, sale.sale_id)
    assert catalog.get_sale(seeded_context, sale.sale_id).status is SaleStatus.REJECTED


def test_remote_order_becomes_client_order_regardless_of_payment(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 1), remote_order=True))

    assert sale.status is SaleStatus.CLIENT_ORDER
    assert catalog.get_product(seeded_context, "P").stock == 10


def test_client_order_reaches_proforma_never_completed(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 1), remote_order=True))

    with pytest.raises(core_logic.InvalidTransition):
        sales.approve_sale(seeded_context, owner, sale.sale_id)

    proforma = sales.approve_client_order(seeded_context, owner, sale.sale_id)

    assert proforma.status is SaleStatus.PROFORMA
    assert sales.is_terminal(proforma)
    assert catalog.get_product(seeded_context, "P").stock == 10
    with pytest.raises(core_logic.InvalidTransition):
        sales.reject_client_order(seeded_context, owner, sale.sale_id)


def test_rejected_client_order_is_terminal(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 1), remote_order=True))

    sales.reject_client_order(seeded_context, owner, sale.sale_id)

    with pytest.raises(core_logic.InvalidTransition):
        sales.approve_client_order(seeded_context, owner, sale.sale_id)


def test_deleting_uncompleted_sale_leaves_stock_alone(seeded_context, owner):
    sale = sales.create_sale(seeded_context, owner, _command(_line("P", 2), remote_order=True))
    sales.approve_client_order(seeded_context, owner, sale.sale_id)

    deleted = sales.delete_sale(seeded_context, owner, sale.sale_id)

    assert deleted.status is SaleStatus.PROFORMA
    product = catalog.get_product(seeded_context, "P")
    assert product.stock == 10
    assert product.stock_history == ()


# ---------------------------------------------------------------------------
# Oversell policy and atomicity
# ---------------------------------------------------------------------------


def test_oversell_allowed_by_default(seeded_context, owner):
    sales.create_sale(seeded_context, owner, _command(_line("P", 12)))

    assert catalog.get_product(seeded_context, "P").stock == -2


def test_deleting_earlier_sale_after_oversell_restores_into_negative_stock(seeded_context, owner):
    first = sales.create_sale(seeded_context, owner, _command(_line("P", 2)))
    sales.create_sale(seeded_context, owner, _command(_line("P", 15)))
    assert catalog.get_product(seeded_context, "P").stock == -7

    sales.delete_sale(seeded_context, owner, first.sale_id)

    product = catalog.get_product(seeded_context, "P")
    assert product.stock == -5
    restore = product.stock_history[-1]
    assert restore.direction is StockDirection.ADD
    assert restore.quantity == 2
    assert restore.resulting_stock_level == -5
    assert restore.reason == REASON_SALE_DELETED
    with pytest.raises(core_logic.NotFoundError):
        catalog.get_sale(seeded_context, first.sale_id)


def test_deleting_oversold_variant_sale_restores_variant_and_parent(seeded_context, owner):
    first = sales.create_sale(seeded_context, owner, _command(_line("T", 1, "V")))
    sales.create_sale(seeded_context, owner, _command(_line("T", 9, "V")))

    sales.delete_sale(seeded_context, owner, first.sale_id)

    hoodie = catalog.get_product(seeded_context, "T")
    assert catalog.stock_level(hoodie, "V") == -4
    assert hoodie.stock == 3


def test_oversell_disabled_rejects_sale_atomically(seeded_context, owner):
    core_logic.update_settings(seeded_context, owner, allow_oversell=False)

    with pytest.raises(core_logic.InsufficientStock):
        sales.create_sale(seeded_context, owner, _command(_line("P", 2), _line("T", 50, "W")))

    assert catalog.get_product(seeded_context, "P").stock == 10
    assert catalog.get_product(seeded_context, "T").stock == 12
    assert catalog.list_sales(seeded_context) == []
    assert catalog.get_customer(seeded_context, CUSTOMER_ID).purchase_history == ()


def test_unknown_product_aborts_sale(seeded_context, owner):
    with pytest.raises(core_logic.NotFoundError):
        sales.create_sale(seeded_context, owner, _command(_line("P", 1), _line("MISSING", 1)))

    assert catalog.get_product(seeded_context, "P").stock == 10
    assert catalog.list_sales(seeded_context) == []


def test_unknown_customer_aborts_sale(seeded_context, owner):
    with pytest.raises(core_logic.NotFoundError):
        sales.create_sale(seeded_context, owner, _command(_line("P", 1), customer_id="C-404"))


def test_unknown_variant_aborts_sale(seeded_context, owner):
    with pytest.raises(core_logic.NotFoundError):
        sales.create_sale(seeded_context, owner, _command(_line("T", 1, "XL")))

    assert catalog.get_product(seeded_context, "T").stock == 12


def test_variant_product_requires_variant(seeded_context, owner):
    with pytest.raises(core_logic.BusinessRuleViolation):
        sales.create_sale(seeded_context, owner, _command(_line("T", 1)))


def test_empty_basket_is_rejected(seeded_context, owner):
    with pytest.raises(ValueError):
        sales.create_sale(seeded_context, owner, _command())


@pytest.mark.parametrize("quantity", [0, -1])
def test_non_positive_quantity_is_rejected(seeded_context, owner, quantity):
    with pytest.raises(ValueError):
        sales.create_sale(seeded_context, owner, _command(_line("P", quantity)))


def test_missing_sale_raises_not_found(seeded_context, owner):
    with pytest.raises(core_logic.NotFoundError):
        sales.approve_sale(seeded_context, owner, "sale-missing")
    with pytest.raises(core_logic.NotFoundError):
        sales.delete_sale(seeded_context, owner, "sale-missing")


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def test_cashier_may_sell_but_not_approve(seeded_context, cashier):
    sale = sales.create_sale(seeded_context, cashier, _command(_line("P", 1), payment_method="Bank Transfer"))

    with pytest.raises(core_logic.AuthorizationDenied):
        sales.approve_sale(seeded_context, cashier, sale.sale_id)
    with pytest.raises(core_logic.AuthorizationDenied):
        sales.delete_sale(seeded_context, cashier, sale.sale_id)
    assert catalog.get_sale(seeded_context, sale.sale_id).status is SaleStatus.PENDING_APPROVAL


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_initial_status_prefers_remote_flag():
    deferred = ("Bank Transfer",)
    remote = _command(_line("P", 1), payment_method="Bank Transfer", remote_order=True)
    deferred_sale = _command(_line("P", 1), payment_method="Bank Transfer")
    immediate = _command(_line("P", 1), payment_method=None)

    assert sales.initial_status(remote, deferred) is SaleStatus.CLIENT_ORDER
    assert sales.initial_status(deferred_sale, deferred) is SaleStatus.PENDING_APPROVAL
    assert sales.initial_status(immediate, deferred) is SaleStatus.COMPLETED
