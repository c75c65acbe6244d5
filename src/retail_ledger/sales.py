"""Sale lifecycle machine.

A sale is created in one of three states depending on how it was paid and
where it came from, and then moves through the transitions below. Only the
transition into ``completed`` takes stock out of the catalog and only the
deletion of a ``completed`` sale puts it back.

=================  ======================  ================
From               Operation               To
=================  ======================  ================
(new, immediate)   create_sale             completed
(new, deferred)    create_sale             pending_approval
(new, remote)      create_sale             client_order
pending_approval   approve_sale            completed
pending_approval   reject_sale             rejected
client_order       approve_client_order    proforma
client_order       reject_client_order     rejected
any                delete_sale             (removed)
=================  ======================  ================
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

from . import catalog, core_logic, data_manager, log, stock
from .constants import (
    REASON_SALE_COMPLETED,
    REASON_SALE_DELETED,
    TERMINAL_SALE_STATUSES,
    Action,
    CollectionName,
    ResourcePath,
    Role,
    SaleStatus,
    StockDirection,
)


CENT = Decimal("0.01")


@dataclass(frozen=True)
class LineItemCommand:
    """One requested line: a product, optionally a variant, and a quantity."""

    product_id: str
    quantity: int
    variant_id: Optional[str] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating a sale at the counter or from the storefront."""

    customer_id: str
    seller_id: str
    items: tuple[LineItemCommand, ...]
    payment_method: Optional[str] = None
    discount: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    remote_order: bool = False
    timestamp: Optional[datetime] = None


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _require_status(sale: data_manager.Sale, allowed: Iterable[SaleStatus], operation: str) -> None:
    allowed = tuple(allowed)
    if sale.status not in allowed:
        log.warning("Rejected %s on sale '%s' in status '%s'", operation, sale.sale_id, sale.status.value)
        raise core_logic.InvalidTransition(
            f"Cannot {operation} sale '{sale.sale_id}' in status '{sale.status.value}'"
        )


def initial_status(command: SaleCommand, deferred_methods: Sequence[str]) -> SaleStatus:
    """Status a freshly created sale starts in.

    Remote storefront orders always start as client orders; otherwise a
    deferred payment method (bank transfer and the like) holds the sale for
    approval.
    """

    if command.remote_order:
        return SaleStatus.CLIENT_ORDER
    if command.payment_method is not None and command.payment_method in deferred_methods:
        return SaleStatus.PENDING_APPROVAL
    return SaleStatus.COMPLETED


def build_line_item(product: data_manager.Product, request: LineItemCommand) -> data_manager.SaleLineItem:
    """Capture the price of a requested line at the moment of sale.

    Raises:
        ValueError: If the quantity is not a positive integer.
        NotFoundError: If the variant is unknown.
        BusinessRuleViolation: If a variant-bearing product is sold without
            naming a variant.
    """
    core_logic.require_positive_quantity(request.quantity)
    if request.variant_id is not None:
        variant = catalog.require_variant(product, request.variant_id)
        unit_price, cost_price = variant.price, variant.cost_price
    elif product.has_variants:
        raise core_logic.BusinessRuleViolation(
            f"Product '{product.product_id}' has variants; a variant must be selected"
        )
    else:
        unit_price, cost_price = catalog.effective_price(product, request.quantity), product.cost_price
    return data_manager.SaleLineItem(
        product_id=product.product_id,
        variant_id=request.variant_id,
        quantity=request.quantity,
        unit_price=unit_price,
        cost_price=cost_price,
        commission_percentage=product.commission_percentage,
    )


def calculate_totals(
    items: Sequence[data_manager.SaleLineItem], *, discount: Decimal, tax_rate: Decimal
) -> dict[str, Decimal]:
    """Compute subtotal, clamped discount, tax and total for ``items``.

    The discount is clamped to ``[0, subtotal]`` and tax applies to the
    discounted amount.
    """

    subtotal = sum((item.unit_price * item.quantity for item in items), Decimal("0"))
    applied_discount = min(max(discount, Decimal("0")), subtotal)
    tax = (subtotal - applied_discount) * max(tax_rate, Decimal("0")) / Decimal("100")
    return {
        "subtotal": _money(subtotal),
        "discount": _money(applied_discount),
        "tax": _money(tax),
        "total": _money(subtotal - applied_discount + tax),
    }


def calculate_commission(
    sale: data_manager.Sale, seller: data_manager.User, settings: data_manager.TenantSettings
) -> Decimal:
    """Commission earned by ``seller`` on ``sale``.

    Each line contributes its captured commission percentage of the line
    value minus the line's proportional share of the discount. Owners earn
    nothing while commission tracking is switched off.
    """

    if seller.role is Role.OWNER and not settings.commission_tracking_enabled:
        return Decimal("0.00")

    total = Decimal("0")
    for item in sale.items:
        line_value = item.unit_price * item.quantity
        share = (line_value / sale.subtotal) * sale.discount if sale.subtotal > 0 else Decimal("0")
        commissionable = max(Decimal("0"), line_value - share)
        total += commissionable * item.commission_percentage / Decimal("100")
    return _money(total)


def _complete(
    uow: core_logic.UnitOfWork,
    sale: data_manager.Sale,
    *,
    actor_id: str,
    when: datetime,
) -> data_manager.Sale:
    """Stage everything a transition into ``completed`` implies.

    Stock leaves the catalog for every line, commission is computed and the
    sale joins the customer's purchase history, all inside ``uow``.
    """
    settings = core_logic.current_settings(uow)
    for item in sale.items:
        stock.adjust_in_unit(
            uow,
            product_id=item.product_id,
            variant_id=item.variant_id,
            direction=StockDirection.REMOVE,
            quantity=item.quantity,
            reason=REASON_SALE_COMPLETED,
            actor_id=actor_id,
            when=when,
            enforce_floor=not settings.allow_oversell,
        )

    seller = uow.require(CollectionName.USERS, sale.seller_id, "User")
    commission = calculate_commission(sale, seller, settings)

    customer = uow.require(CollectionName.CUSTOMERS, sale.customer_id, "Customer")
    if sale.sale_id not in customer.purchase_history:
        uow.put(
            CollectionName.CUSTOMERS,
            customer.customer_id,
            replace(customer, purchase_history=customer.purchase_history + (sale.sale_id,)),
        )
    return replace(sale, status=SaleStatus.COMPLETED, commission=commission)


def create_sale(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    command: SaleCommand,
) -> data_manager.Sale:
    """Validate and record a new sale.

    Immediate sales are completed on the spot; deferred-payment sales wait
    for approval and storefront orders wait as client orders.

    Raises:
        AuthorizationDenied: If the actor may not sell at the counter.
        ValueError: When the basket is empty or a quantity, discount or tax
            rate is invalid.
        NotFoundError: If a product, variant, customer or seller is unknown.
        InsufficientStock: If oversell is disabled and a line exceeds stock.
    """
    core_logic.require_access(context, actor, ResourcePath.COUNTER, Action.ADD)
    if not command.items:
        log.error("Sale submitted with an empty basket")
        raise ValueError("A sale needs at least one line item")
    core_logic.require_nonnegative_money(command.discount)
    core_logic.require_nonnegative_money(command.tax_rate)
    core_logic.require_storable_text(payment_method=command.payment_method)

    when = core_logic._resolve_timestamp(command.timestamp)
    status = initial_status(command, context.settings.deferred_payment_methods)
    with core_logic.UnitOfWork(context, "create sale") as uow:
        uow.require(CollectionName.CUSTOMERS, command.customer_id, "Customer")
        uow.require(CollectionName.USERS, command.seller_id, "User")
        items = tuple(
            build_line_item(uow.require(CollectionName.PRODUCTS, request.product_id, "Product"), request)
            for request in command.items
        )
        totals = calculate_totals(items, discount=command.discount, tax_rate=command.tax_rate)
        sale = data_manager.Sale(
            sale_id=core_logic.generate_id("sale", when=when),
            timestamp_iso=when.isoformat(),
            items=items,
            customer_id=command.customer_id,
            seller_id=command.seller_id,
            subtotal=totals["subtotal"],
            tax=totals["tax"],
            discount=totals["discount"],
            total=totals["total"],
            payment_method=command.payment_method,
            tax_rate=command.tax_rate,
            status=status,
        )
        if status is SaleStatus.COMPLETED:
            sale = _complete(uow, sale, actor_id=actor.user_id, when=when)
        uow.put(CollectionName.SALES, sale.sale_id, sale)

    log.info(
        "Recorded sale '%s' as %s (total=%s, lines=%d)",
        sale.sale_id,
        sale.status.value,
        sale.total,
        len(sale.items),
    )
    return sale


def approve_sale(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    sale_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.Sale:
    """Confirm a deferred payment: ``pending_approval`` -> ``completed``."""
    core_logic.require_access(context, actor, ResourcePath.RECEIPTS, Action.EDIT)
    when = core_logic._resolve_timestamp(timestamp)
    with core_logic.UnitOfWork(context, f"approve sale {sale_id}") as uow:
        sale = uow.require(CollectionName.SALES, sale_id, "Sale")
        _require_status(sale, [SaleStatus.PENDING_APPROVAL], "approve")
        sale = _complete(uow, sale, actor_id=actor.user_id, when=when)
        uow.put(CollectionName.SALES, sale_id, sale)
    log.info("Approved sale '%s' (commission=%s)", sale_id, sale.commission)
    return sale


def reject_sale(context: core_logic.RuntimeContext, actor: data_manager.User, sale_id: str) -> data_manager.Sale:
    """Refuse a deferred payment: ``pending_approval`` -> ``rejected``."""
    core_logic.require_access(context, actor, ResourcePath.RECEIPTS, Action.EDIT)
    return _set_status(context, sale_id, [SaleStatus.PENDING_APPROVAL], SaleStatus.REJECTED, "reject")


def approve_client_order(
    context: core_logic.RuntimeContext, actor: data_manager.User, sale_id: str
) -> data_manager.Sale:
    """Accept a storefront order as a proforma: ``client_order`` -> ``proforma``."""
    core_logic.require_access(context, actor, ResourcePath.PROFORMA, Action.EDIT)
    return _set_status(context, sale_id, [SaleStatus.CLIENT_ORDER], SaleStatus.PROFORMA, "approve client order")


def reject_client_order(
    context: core_logic.RuntimeContext, actor: data_manager.User, sale_id: str
) -> data_manager.Sale:
    core_logic.require_access(context, actor, ResourcePath.PROFORMA, Action.EDIT)
    return _set_status(context, sale_id, [SaleStatus.CLIENT_ORDER], SaleStatus.REJECTED, "reject client order")


def _set_status(
    context: core_logic.RuntimeContext,
    sale_id: str,
    allowed: Sequence[SaleStatus],
    target: SaleStatus,
    operation: str,
) -> data_manager.Sale:
    with core_logic.UnitOfWork(context, f"{operation} {sale_id}") as uow:
        sale = uow.require(CollectionName.SALES, sale_id, "Sale")
        _require_status(sale, allowed, operation)
        sale = replace(sale, status=target)
        uow.put(CollectionName.SALES, sale_id, sale)
    log.info("Sale '%s' moved to %s", sale_id, target.value)
    return sale


def delete_sale(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    sale_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.Sale:
    """Remove a sale, returning its stock when it had been completed.

    A completed sale gives back exactly the quantities its completion took,
    line by line, and leaves the customer's purchase history. Sales in any
    other status never touched stock and are simply removed.

    Returns:
        Sale: The record as it was before deletion.
    """
    sale = catalog.get_sale(context, sale_id)
    path = (
        ResourcePath.PROFORMA
        if sale.status in (SaleStatus.CLIENT_ORDER, SaleStatus.PROFORMA)
        else ResourcePath.RECEIPTS
    )
    core_logic.require_access(context, actor, path, Action.DELETE)
    when = core_logic._resolve_timestamp(timestamp)

    with core_logic.UnitOfWork(context, f"delete sale {sale_id}") as uow:
        sale = uow.require(CollectionName.SALES, sale_id, "Sale")
        if sale.status is SaleStatus.COMPLETED:
            for item in sale.items:
                stock.adjust_in_unit(
                    uow,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    direction=StockDirection.ADD,
                    quantity=item.quantity,
                    reason=REASON_SALE_DELETED,
                    actor_id=actor.user_id,
                    when=when,
                )
            customer = uow.find(CollectionName.CUSTOMERS, sale.customer_id)
            if customer is None:
                log.warning("Customer '%s' of sale '%s' no longer exists", sale.customer_id, sale_id)
            else:
                history = tuple(entry for entry in customer.purchase_history if entry != sale_id)
                uow.put(CollectionName.CUSTOMERS, customer.customer_id, replace(customer, purchase_history=history))
        uow.remove(CollectionName.SALES, sale_id)

    log.info("Deleted sale '%s' (status was %s)", sale_id, sale.status.value)
    return sale


def is_terminal(sale: data_manager.Sale) -> bool:
    return sale.status in TERMINAL_SALE_STATUSES
