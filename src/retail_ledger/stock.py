"""Stock adjustment engine.

Every change to a stock level, whether entered by hand or implied by a sale
transition, goes through :func:`apply_adjustment`. It applies one signed
delta to a product or to one of its variants, re-derives the parent level
of a variant-bearing product, and appends exactly one
:class:`~retail_ledger.data_manager.StockAdjustmentRecord` carrying the
resulting level so the history can be replayed.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from . import catalog, core_logic, data_manager, log
from .constants import Action, CollectionName, ResourcePath, StockDirection


@dataclass(frozen=True)
class StockAdjustmentCommand:
    """User intent for a manual stock correction."""

    product_id: str
    direction: StockDirection
    quantity: int
    reason: str
    variant_id: Optional[str] = None
    timestamp: Optional[datetime] = None


def apply_adjustment(
    product: data_manager.Product,
    *,
    direction: StockDirection,
    quantity: int,
    reason: str,
    actor_id: str,
    when: datetime,
    variant_id: Optional[str] = None,
    enforce_floor: bool = True,
) -> tuple[data_manager.Product, int]:
    """Apply one stock delta and return the updated product and target level.

    Args:
        product (Product): Product being adjusted.
        direction (StockDirection): ``ADD`` or ``REMOVE``.
        quantity (int): Positive magnitude of the change.
        reason (str): Recorded verbatim in the audit entry.
        actor_id (str): User responsible for the change.
        when (datetime): Timestamp of the audit entry.
        variant_id (str | None): Variant to adjust; ``None`` targets the
            product itself.
        enforce_floor (bool): When ``True`` a removal may not take the target
            below zero. Additions are never refused,
            even onto a negative level.

    Returns:
        tuple[Product, int]: The new product record and the resulting stock
            level of the adjusted target (variant or product).

    Raises:
        ValueError: If ``quantity`` is not a positive integer.
        NotFoundError: If ``variant_id`` does not exist on the product.
        BusinessRuleViolation: If a variant-bearing product is adjusted
            without naming a variant.
        InsufficientStock: If ``enforce_floor`` is set and the removal
            exceeds the available quantity.
    """
    core_logic.require_positive_quantity(quantity)
    delta = quantity if direction is StockDirection.ADD else -quantity

    if variant_id is not None:
        variant = catalog.require_variant(product, variant_id)
        current = variant.stock
    elif product.has_variants:
        raise core_logic.BusinessRuleViolation(
            f"Product '{product.product_id}' has variants; adjust a specific variant"
        )
    else:
        current = product.stock

    new_level = current + delta
    if enforce_floor and direction is StockDirection.REMOVE and new_level < 0:
        log.warning(
            "Rejected %s of %d on '%s'%s: only %d available",
            direction.value,
            quantity,
            product.product_id,
            f" variant '{variant_id}'" if variant_id else "",
            current,
        )
        raise core_logic.InsufficientStock(
            f"Cannot {direction.value} {quantity} from '{product.product_id}': only {current} available"
        )

    entry = data_manager.StockAdjustmentRecord(
        date_iso=when.isoformat(),
        actor_id=actor_id,
        direction=direction,
        quantity=quantity,
        reason=reason,
        resulting_stock_level=new_level,
        variant_id=variant_id,
    )
    if variant_id is not None:
        variants = tuple(
            replace(item, stock=new_level) if item.variant_id == variant_id else item
            for item in product.variants
        )
        updated = replace(
            product,
            variants=variants,
            stock=catalog.derive_stock(variants),
            stock_history=product.stock_history + (entry,),
        )
    else:
        updated = replace(product, stock=new_level, stock_history=product.stock_history + (entry,))
    return updated, new_level


def adjust_in_unit(
    uow: core_logic.UnitOfWork,
    *,
    product_id: str,
    direction: StockDirection,
    quantity: int,
    reason: str,
    actor_id: str,
    when: datetime,
    variant_id: Optional[str] = None,
    enforce_floor: bool = True,
) -> int:
    """Resolve a product inside ``uow``, adjust it and stage the result."""

    product = uow.require(CollectionName.PRODUCTS, product_id, "Product")
    updated, new_level = apply_adjustment(
        product,
        direction=direction,
        quantity=quantity,
        reason=reason,
        actor_id=actor_id,
        when=when,
        variant_id=variant_id,
        enforce_floor=enforce_floor,
    )
    uow.put(CollectionName.PRODUCTS, product_id, updated)
    log.debug(
        "Staged %s of %d on '%s'%s -> %d (%s)",
        direction.value,
        quantity,
        product_id,
        f"/{variant_id}" if variant_id else "",
        new_level,
        reason,
    )
    return new_level


def adjust_stock(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    command: StockAdjustmentCommand,
) -> int:
    """Validate and apply a manual stock adjustment.

    Manual removals are never allowed to take stock below zero, regardless of
    the tenant's oversell policy.

    Returns:
        int: The resulting stock level of the adjusted product or variant.

    Raises:
        AuthorizationDenied: If the actor may not edit inventory.
        ValueError: If the quantity is not a positive integer or the reason is
            blank.
        NotFoundError: If the product or variant is unknown.
        InsufficientStock: If a removal exceeds the available quantity.
    """
    core_logic.require_access(context, actor, ResourcePath.INVENTORY, Action.EDIT)
    reason = (command.reason or "").strip()
    if not reason:
        log.error("Stock adjustment for '%s' submitted without a reason", command.product_id)
        raise ValueError("A reason is required for stock adjustments")

    when = core_logic._resolve_timestamp(command.timestamp)
    with core_logic.UnitOfWork(context, f"adjust stock {command.product_id}") as uow:
        new_level = adjust_in_unit(
            uow,
            product_id=command.product_id,
            direction=command.direction,
            quantity=command.quantity,
            reason=reason,
            actor_id=actor.user_id,
            when=when,
            variant_id=command.variant_id,
            enforce_floor=True,
        )
    log.info(
        "Adjusted stock of '%s'%s: %s %d -> %d (%s)",
        command.product_id,
        f" variant '{command.variant_id}'" if command.variant_id else "",
        command.direction.value,
        command.quantity,
        new_level,
        reason,
    )
    return new_level
