"""Catalog store and read models.

Products (with their variants), customers and users are consumed by the
sale lifecycle and the payout workflows as read models. This module owns
their registration and lookups, plus the pricing rules that decide what a
line item costs at checkout.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import Action, CollectionName, ResourcePath, Role


def derive_stock(variants: Sequence[data_manager.Variant]) -> int:
    """Parent stock of a variant-bearing product: the sum of its variants."""

    return sum(variant.stock for variant in variants)


def find_variant(product: data_manager.Product, variant_id: str) -> Optional[data_manager.Variant]:
    for variant in product.variants:
        if variant.variant_id == variant_id:
            return variant
    return None


def require_variant(product: data_manager.Product, variant_id: str) -> data_manager.Variant:
    """Resolve ``variant_id`` on ``product``.

    Raises:
        NotFoundError: If the product has no such variant.
    """
    variant = find_variant(product, variant_id)
    if variant is None:
        log.warning("Variant lookup failed for '%s' on product '%s'", variant_id, product.product_id)
        raise core_logic.NotFoundError(f"Unknown variant id: {variant_id} (product {product.product_id})")
    return variant


def effective_price(product: data_manager.Product, quantity: int) -> Decimal:
    """Unit price for ``quantity`` units of a simple product.

    The highest tier whose threshold is reached wins; without a matching tier
    the base price applies.
    """

    for tier in sorted(product.tiered_pricing, key=lambda item: item.quantity, reverse=True):
        if quantity >= tier.quantity:
            return tier.price
    return product.price


def stock_level(product: data_manager.Product, variant_id: Optional[str] = None) -> int:
    if variant_id is None:
        return product.stock
    return require_variant(product, variant_id).stock


def add_product(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    product_id: str,
    name: str,
    category: str,
    price: Decimal,
    cost_price: Decimal,
    stock: int = 0,
    commission_percentage: Decimal = Decimal("0"),
    tiered_pricing: Iterable[data_manager.PriceTier] = (),
    variants: Iterable[data_manager.Variant] = (),
) -> data_manager.Product:
    """Register a new product in the catalog.

    When ``variants`` are supplied the ``stock`` argument is ignored and the
    parent level is derived from them.

    Raises:
        BusinessRuleViolation: If ``product_id`` is already registered or two
            variants share an id.
        ValueError: If prices or stock levels are negative.
    """
    core_logic.require_access(context, actor, ResourcePath.INVENTORY, Action.ADD)
    core_logic.require_storable_text(name=name, category=category)
    core_logic.require_nonnegative_money(price)
    core_logic.require_nonnegative_money(cost_price)
    variants = tuple(variants)
    if len({variant.variant_id for variant in variants}) != len(variants):
        raise core_logic.BusinessRuleViolation(f"Duplicate variant ids on product '{product_id}'")
    for level in [stock, *(variant.stock for variant in variants)]:
        if level < 0:
            raise ValueError("Stock levels must be zero or positive")

    product = data_manager.Product(
        product_id=product_id,
        name=name,
        category=category,
        price=price,
        cost_price=cost_price,
        stock=derive_stock(variants) if variants else stock,
        commission_percentage=commission_percentage,
        tiered_pricing=tuple(tiered_pricing),
        variants=variants,
    )
    with core_logic.UnitOfWork(context, f"add product {product_id}") as uow:
        if uow.find(CollectionName.PRODUCTS, product_id) is not None:
            log.warning("Attempted to register duplicate product '%s'", product_id)
            raise core_logic.BusinessRuleViolation(f"Product '{product_id}' already exists")
        uow.put(CollectionName.PRODUCTS, product_id, product)
    log.info("Registered product '%s' (stock=%d, variants=%d)", product_id, product.stock, len(variants))
    return product


def add_customer(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    name: str,
    email: str = "",
    phone: str = "",
    customer_id: Optional[str] = None,
    joined: Optional[datetime] = None,
) -> data_manager.Customer:
    """Register a customer with an empty purchase history."""
    core_logic.require_access(context, actor, ResourcePath.CUSTOMERS, Action.ADD)
    core_logic.require_storable_text(name=name, email=email, phone=phone)
    joined = core_logic._resolve_timestamp(joined)
    customer = data_manager.Customer(
        customer_id=customer_id or core_logic.generate_id("cust", when=joined),
        name=name,
        email=email,
        phone=phone,
        join_date_iso=joined.isoformat(),
    )
    with core_logic.UnitOfWork(context, f"add customer {customer.customer_id}") as uow:
        if uow.find(CollectionName.CUSTOMERS, customer.customer_id) is not None:
            raise core_logic.BusinessRuleViolation(f"Customer '{customer.customer_id}' already exists")
        uow.put(CollectionName.CUSTOMERS, customer.customer_id, customer)
    log.info("Registered customer '%s'", customer.customer_id)
    return customer


def add_user(
    context: core_logic.RuntimeContext,
    actor: Optional[data_manager.User],
    *,
    user_id: str,
    name: str,
    role: Role,
) -> data_manager.User:
    """Register a user.

    The first user of a tenant must be its owner and is registered without an
    actor; every later registration goes through the gate.
    """
    core_logic.require_storable_text(name=name)
    with core_logic.UnitOfWork(context, f"add user {user_id}") as uow:
        users = uow.collection(CollectionName.USERS)
        if users:
            if actor is None:
                raise core_logic.AuthorizationDenied("An acting user is required once the tenant has users")
            core_logic.require_access(context, actor, ResourcePath.USERS, Action.ADD)
        elif role is not Role.OWNER:
            raise core_logic.BusinessRuleViolation("The first user of a tenant must be its owner")
        if user_id in users:
            raise core_logic.BusinessRuleViolation(f"User '{user_id}' already exists")
        user = data_manager.User(user_id=user_id, name=name, role=role)
        uow.put(CollectionName.USERS, user_id, user)
    log.info("Registered user '%s' with role %s", user_id, role.value)
    return user


def get_product(context: core_logic.RuntimeContext, product_id: str) -> data_manager.Product:
    """Resolve a committed product by id.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    return _get(context, CollectionName.PRODUCTS, product_id, "Product")


def get_customer(context: core_logic.RuntimeContext, customer_id: str) -> data_manager.Customer:
    return _get(context, CollectionName.CUSTOMERS, customer_id, "Customer")


def get_user(context: core_logic.RuntimeContext, user_id: str) -> data_manager.User:
    return _get(context, CollectionName.USERS, user_id, "User")


def get_sale(context: core_logic.RuntimeContext, sale_id: str) -> data_manager.Sale:
    return _get(context, CollectionName.SALES, sale_id, "Sale")


def list_products(context: core_logic.RuntimeContext) -> List[data_manager.Product]:
    return list(core_logic.read_collection(context, CollectionName.PRODUCTS).values())


def list_customers(context: core_logic.RuntimeContext) -> List[data_manager.Customer]:
    return list(core_logic.read_collection(context, CollectionName.CUSTOMERS).values())


def list_users(context: core_logic.RuntimeContext) -> List[data_manager.User]:
    return list(core_logic.read_collection(context, CollectionName.USERS).values())


def list_sales(context: core_logic.RuntimeContext) -> List[data_manager.Sale]:
    return list(core_logic.read_collection(context, CollectionName.SALES).values())


def _get(context: core_logic.RuntimeContext, name: CollectionName, key: str, label: str):
    record = core_logic.read_collection(context, name).get(key)
    if record is None:
        log.warning("%s lookup failed for id '%s'", label, key)
        raise core_logic.NotFoundError(f"Unknown {label.lower()} id: {key}")
    return record
