"""Data access layer for the retail ledger.

This module provides the typed records and the low-level helpers that read
from and write to a tenant's persistent store. Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Records and codecs: immutable dataclasses for every entity and the
   functions that convert them to and from worksheet rows.
3. Stores: the per-tenant ``load``/``save`` contract, implemented in memory
   and on top of one ``openpyxl`` workbook per tenant.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_DEFERRED_PAYMENT_METHODS,
    CollectionName,
    CustomPaymentStatus,
    DepositStatus,
    ExpenseRequestStatus,
    Role,
    SaleStatus,
    StockDirection,
    WithdrawalSource,
    WithdrawalStatus,
)


CONFIG_FILE_NAME = "config.ini"


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_directory: Path
    tenant_id: str
    schema_version: str
    allow_oversell: bool = True
    commission_tracking_enabled: bool = True
    deferred_payment_methods: tuple[str, ...] = DEFAULT_DEFERRED_PAYMENT_METHODS
    flush_attempts: int = 3
    flush_backoff: float = 0.1


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceTier:
    quantity: int
    price: Decimal


@dataclass(frozen=True)
class VariantAttribute:
    name: str
    value: str


@dataclass(frozen=True)
class Variant:
    """One purchasable configuration of a product (e.g. size M, red)."""

    variant_id: str
    attributes: tuple[VariantAttribute, ...]
    price: Decimal
    cost_price: Decimal
    stock: int


@dataclass(frozen=True)
class StockAdjustmentRecord:
    """Immutable audit entry appended on every stock mutation."""

    date_iso: str
    actor_id: str
    direction: StockDirection
    quantity: int
    reason: str
    resulting_stock_level: int
    variant_id: Optional[str] = None


@dataclass(frozen=True)
class Product:
    """In-memory view of a catalog entry.

    For products carrying variants ``stock`` is always derived as the sum of
    the variant stock levels.
    """

    product_id: str
    name: str
    category: str
    price: Decimal
    cost_price: Decimal
    stock: int
    commission_percentage: Decimal = Decimal("0")
    tiered_pricing: tuple[PriceTier, ...] = ()
    variants: tuple[Variant, ...] = ()
    stock_history: tuple[StockAdjustmentRecord, ...] = ()

    @property
    def has_variants(self) -> bool:
        return bool(self.variants)


@dataclass(frozen=True)
class SaleLineItem:
    """A product (and optional variant) captured at the price of the sale."""

    product_id: str
    quantity: int
    unit_price: Decimal
    cost_price: Decimal = Decimal("0")
    commission_percentage: Decimal = Decimal("0")
    variant_id: Optional[str] = None


@dataclass(frozen=True)
class Sale:
    sale_id: str
    timestamp_iso: str
    items: tuple[SaleLineItem, ...]
    customer_id: str
    seller_id: str
    subtotal: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    payment_method: Optional[str]
    status: SaleStatus
    tax_rate: Decimal = Decimal("0")
    commission: Optional[Decimal] = None


@dataclass(frozen=True)
class Customer:
    customer_id: str
    name: str
    email: str = ""
    phone: str = ""
    join_date_iso: str = ""
    purchase_history: tuple[str, ...] = ()


@dataclass(frozen=True)
class AuditEntry:
    """Status change trail kept on withdrawals and custom payments."""

    timestamp_iso: str
    status: str
    actor_id: str
    note: str = ""


@dataclass(frozen=True)
class Withdrawal:
    withdrawal_id: str
    date_iso: str
    amount: Decimal
    source: WithdrawalSource
    status: WithdrawalStatus
    notes: Optional[str] = None
    audit_log: tuple[AuditEntry, ...] = ()


@dataclass(frozen=True)
class CustomPayment:
    payment_id: str
    date_initiated_iso: str
    amount: Decimal
    description: str
    initiator_id: str
    status: CustomPaymentStatus
    notes: Optional[str] = None
    audit_log: tuple[AuditEntry, ...] = ()


@dataclass(frozen=True)
class User:
    user_id: str
    name: str
    role: Role
    withdrawals: tuple[Withdrawal, ...] = ()
    custom_payments: tuple[CustomPayment, ...] = ()


@dataclass(frozen=True)
class Deposit:
    deposit_id: str
    date_iso: str
    amount: Decimal
    description: str
    submitter_id: str
    status: DepositStatus


@dataclass(frozen=True)
class ExpenseRequest:
    request_id: str
    date_iso: str
    category: str
    amount: Decimal
    description: str
    requester_id: str
    status: ExpenseRequestStatus
    approver_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Expense:
    """One row of the append-only expense ledger.

    ``source_key`` is empty for manual entries and carries the idempotency
    key of the workflow event for materialized ones.
    """

    expense_id: str
    date_iso: str
    category: str
    description: str
    amount: Decimal
    source_key: Optional[str] = None


@dataclass(frozen=True)
class LedgerIndexEntry:
    """Maps a workflow event to the expense materialized for it."""

    source_key: str
    source_kind: str
    source_id: str
    expense_id: str


@dataclass(frozen=True)
class TenantSettings:
    settings_key: str
    commission_tracking_enabled: bool
    allow_oversell: bool


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Validation of required entries happens in
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Policy]`` and ``[Persistence]``
    fall back to the dataclass defaults when absent. A relative
    ``DataDirectory`` is anchored at ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for a relative
            ``DataDirectory`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a policy or persistence entry cannot be parsed.
    """

    try:
        data_directory_raw = parser.get("System", "DataDirectory")
        tenant_id = parser.get("System", "TenantId")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_directory = Path(data_directory_raw)
    if not data_directory.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_directory = (base_path / data_directory).resolve()

    defaults = ConfigSettings(data_directory=data_directory, tenant_id=tenant_id, schema_version=schema_version)
    deferred_raw = parser.get("Policy", "DeferredPaymentMethods", fallback=None)
    deferred = (
        tuple(method.strip() for method in deferred_raw.split(",") if method.strip())
        if deferred_raw is not None
        else defaults.deferred_payment_methods
    )

    return ConfigSettings(
        data_directory=data_directory,
        tenant_id=tenant_id,
        schema_version=schema_version,
        allow_oversell=parser.getboolean("Policy", "AllowOversell", fallback=defaults.allow_oversell),
        commission_tracking_enabled=parser.getboolean(
            "Policy", "CommissionTrackingEnabled", fallback=defaults.commission_tracking_enabled
        ),
        deferred_payment_methods=deferred,
        flush_attempts=parser.getint("Persistence", "FlushAttempts", fallback=defaults.flush_attempts),
        flush_backoff=parser.getfloat("Persistence", "FlushBackoff", fallback=defaults.flush_backoff),
    )


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw not in (None, "") else Decimal(default)


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw not in (None, "") else None


def _to_int(raw: object) -> int:
    return int(Decimal(str(raw))) if raw not in (None, "") else 0


def has_illegal_characters(value: Optional[str]) -> bool:
    """Whether ``value`` holds control characters a worksheet cell rejects."""

    return value is not None and ILLEGAL_CHARACTERS_RE.search(value) is not None


def _to_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return bool(raw)


def _dump(payload: Any) -> str:
    return json.dumps(payload, default=str)


def _load(raw: object) -> list[Any]:
    if raw in (None, ""):
        return []
    return json.loads(str(raw))


def _audit_to_dict(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "timestamp": entry.timestamp_iso,
        "status": entry.status,
        "actor_id": entry.actor_id,
        "note": entry.note,
    }


def _audit_from_dict(payload: Mapping[str, Any]) -> AuditEntry:
    return AuditEntry(
        timestamp_iso=str(payload["timestamp"]),
        status=str(payload["status"]),
        actor_id=str(payload["actor_id"]),
        note=str(payload.get("note") or ""),
    )


# ---------------------------------------------------------------------------
# Row codecs
# ---------------------------------------------------------------------------


def serialize_product(record: Product) -> list[object]:
    """Convert a product into the ``products`` sheet column ordering.

    Tiers, variants and the stock history are nested lists and are stored as
    JSON text in a single cell each.
    """

    tiers = [{"quantity": tier.quantity, "price": str(tier.price)} for tier in record.tiered_pricing]
    variants = [
        {
            "id": variant.variant_id,
            "attributes": [{"name": attr.name, "value": attr.value} for attr in variant.attributes],
            "price": str(variant.price),
            "cost_price": str(variant.cost_price),
            "stock": variant.stock,
        }
        for variant in record.variants
    ]
    history = [
        {
            "date": entry.date_iso,
            "actor_id": entry.actor_id,
            "direction": entry.direction.value,
            "quantity": entry.quantity,
            "reason": entry.reason,
            "resulting_stock_level": entry.resulting_stock_level,
            "variant_id": entry.variant_id,
        }
        for entry in record.stock_history
    ]
    return [
        record.product_id,
        record.name,
        record.category,
        record.price,
        record.cost_price,
        record.stock,
        record.commission_percentage,
        _dump(tiers),
        _dump(variants),
        _dump(history),
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw ``products`` row into a :class:`Product`."""

    (
        product_id,
        name,
        category,
        price,
        cost_price,
        stock,
        commission,
        tiers_raw,
        variants_raw,
        history_raw,
    ) = raw_row

    tiers = tuple(
        PriceTier(quantity=int(tier["quantity"]), price=Decimal(str(tier["price"])))
        for tier in _load(tiers_raw)
    )
    variants = tuple(
        Variant(
            variant_id=str(item["id"]),
            attributes=tuple(
                VariantAttribute(name=str(attr["name"]), value=str(attr["value"]))
                for attr in item.get("attributes", [])
            ),
            price=Decimal(str(item["price"])),
            cost_price=Decimal(str(item["cost_price"])),
            stock=int(item["stock"]),
        )
        for item in _load(variants_raw)
    )
    history = tuple(
        StockAdjustmentRecord(
            date_iso=str(item["date"]),
            actor_id=str(item["actor_id"]),
            direction=StockDirection(item["direction"]),
            quantity=int(item["quantity"]),
            reason=str(item["reason"]),
            resulting_stock_level=int(item["resulting_stock_level"]),
            variant_id=item.get("variant_id"),
        )
        for item in _load(history_raw)
    )
    return Product(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        category=str(category) if category is not None else "",
        price=_to_decimal(price, "0.00"),
        cost_price=_to_decimal(cost_price, "0.00"),
        stock=_to_int(stock),
        commission_percentage=_to_decimal(commission),
        tiered_pricing=tiers,
        variants=variants,
        stock_history=history,
    )


def serialize_sale(record: Sale) -> list[object]:
    items = [
        {
            "product_id": item.product_id,
            "variant_id": item.variant_id,
            "quantity": item.quantity,
            "unit_price": str(item.unit_price),
            "cost_price": str(item.cost_price),
            "commission_percentage": str(item.commission_percentage),
        }
        for item in record.items
    ]
    return [
        record.sale_id,
        record.timestamp_iso,
        _dump(items),
        record.customer_id,
        record.seller_id,
        record.subtotal,
        record.tax,
        record.discount,
        record.total,
        record.payment_method,
        record.tax_rate,
        record.commission,
        record.status.value,
    ]


def deserialize_sale(raw_row: Sequence[object]) -> Sale:
    (
        sale_id,
        timestamp_iso,
        items_raw,
        customer_id,
        seller_id,
        subtotal,
        tax,
        discount,
        total,
        payment_method,
        tax_rate,
        commission,
        status,
    ) = raw_row

    items = tuple(
        SaleLineItem(
            product_id=str(item["product_id"]),
            variant_id=item.get("variant_id"),
            quantity=int(item["quantity"]),
            unit_price=Decimal(str(item["unit_price"])),
            cost_price=Decimal(str(item.get("cost_price", "0"))),
            commission_percentage=Decimal(str(item.get("commission_percentage", "0"))),
        )
        for item in _load(items_raw)
    )
    return Sale(
        sale_id=str(sale_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        items=items,
        customer_id=str(customer_id),
        seller_id=str(seller_id),
        subtotal=_to_decimal(subtotal, "0.00"),
        tax=_to_decimal(tax, "0.00"),
        discount=_to_decimal(discount, "0.00"),
        total=_to_decimal(total, "0.00"),
        payment_method=_to_text(payment_method),
        tax_rate=_to_decimal(tax_rate),
        commission=_to_optional_decimal(commission),
        status=SaleStatus(str(status)),
    )


def serialize_customer(record: Customer) -> list[object]:
    return [
        record.customer_id,
        record.name,
        record.email,
        record.phone,
        record.join_date_iso,
        _dump(list(record.purchase_history)),
    ]


def deserialize_customer(raw_row: Sequence[object]) -> Customer:
    customer_id, name, email, phone, join_date_iso, history_raw = raw_row
    return Customer(
        customer_id=str(customer_id),
        name=str(name) if name is not None else "",
        email=str(email) if email is not None else "",
        phone=str(phone) if phone is not None else "",
        join_date_iso=str(join_date_iso) if join_date_iso is not None else "",
        purchase_history=tuple(str(sale_id) for sale_id in _load(history_raw)),
    )


def serialize_user(record: User) -> list[object]:
    withdrawals = [
        {
            "id": item.withdrawal_id,
            "date": item.date_iso,
            "amount": str(item.amount),
            "source": item.source.value,
            "status": item.status.value,
            "notes": item.notes,
            "audit_log": [_audit_to_dict(entry) for entry in item.audit_log],
        }
        for item in record.withdrawals
    ]
    payments = [
        {
            "id": item.payment_id,
            "date_initiated": item.date_initiated_iso,
            "amount": str(item.amount),
            "description": item.description,
            "initiator_id": item.initiator_id,
            "status": item.status.value,
            "notes": item.notes,
            "audit_log": [_audit_to_dict(entry) for entry in item.audit_log],
        }
        for item in record.custom_payments
    ]
    return [record.user_id, record.name, record.role.value, _dump(withdrawals), _dump(payments)]


def deserialize_user(raw_row: Sequence[object]) -> User:
    user_id, name, role, withdrawals_raw, payments_raw = raw_row
    withdrawals = tuple(
        Withdrawal(
            withdrawal_id=str(item["id"]),
            date_iso=str(item["date"]),
            amount=Decimal(str(item["amount"])),
            source=WithdrawalSource(item["source"]),
            status=WithdrawalStatus(item["status"]),
            notes=item.get("notes"),
            audit_log=tuple(_audit_from_dict(entry) for entry in item.get("audit_log", [])),
        )
        for item in _load(withdrawals_raw)
    )
    payments = tuple(
        CustomPayment(
            payment_id=str(item["id"]),
            date_initiated_iso=str(item["date_initiated"]),
            amount=Decimal(str(item["amount"])),
            description=str(item.get("description") or ""),
            initiator_id=str(item["initiator_id"]),
            status=CustomPaymentStatus(item["status"]),
            notes=item.get("notes"),
            audit_log=tuple(_audit_from_dict(entry) for entry in item.get("audit_log", [])),
        )
        for item in _load(payments_raw)
    )
    return User(
        user_id=str(user_id),
        name=str(name) if name is not None else "",
        role=Role(str(role)),
        withdrawals=withdrawals,
        custom_payments=payments,
    )


def serialize_deposit(record: Deposit) -> list[object]:
    return [
        record.deposit_id,
        record.date_iso,
        record.amount,
        record.description,
        record.submitter_id,
        record.status.value,
    ]


def deserialize_deposit(raw_row: Sequence[object]) -> Deposit:
    deposit_id, date_iso, amount, description, submitter_id, status = raw_row
    return Deposit(
        deposit_id=str(deposit_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        amount=_to_decimal(amount, "0.00"),
        description=str(description) if description is not None else "",
        submitter_id=str(submitter_id),
        status=DepositStatus(str(status)),
    )


def serialize_expense_request(record: ExpenseRequest) -> list[object]:
    return [
        record.request_id,
        record.date_iso,
        record.category,
        record.amount,
        record.description,
        record.requester_id,
        record.status.value,
        record.approver_id,
        record.notes,
    ]


def deserialize_expense_request(raw_row: Sequence[object]) -> ExpenseRequest:
    (
        request_id,
        date_iso,
        category,
        amount,
        description,
        requester_id,
        status,
        approver_id,
        notes,
    ) = raw_row
    return ExpenseRequest(
        request_id=str(request_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        category=str(category),
        amount=_to_decimal(amount, "0.00"),
        description=str(description) if description is not None else "",
        requester_id=str(requester_id),
        status=ExpenseRequestStatus(str(status)),
        approver_id=_to_text(approver_id),
        notes=_to_text(notes),
    )


def serialize_expense(record: Expense) -> list[object]:
    return [
        record.expense_id,
        record.date_iso,
        record.category,
        record.description,
        record.amount,
        record.source_key,
    ]


def deserialize_expense(raw_row: Sequence[object]) -> Expense:
    expense_id, date_iso, category, description, amount, source_key = raw_row
    return Expense(
        expense_id=str(expense_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        category=str(category),
        description=str(description) if description is not None else "",
        amount=_to_decimal(amount, "0.00"),
        source_key=_to_text(source_key),
    )


def serialize_ledger_entry(record: LedgerIndexEntry) -> list[object]:
    return [record.source_key, record.source_kind, record.source_id, record.expense_id]


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerIndexEntry:
    source_key, source_kind, source_id, expense_id = raw_row
    return LedgerIndexEntry(
        source_key=str(source_key),
        source_kind=str(source_kind),
        source_id=str(source_id),
        expense_id=str(expense_id),
    )


def serialize_settings(record: TenantSettings) -> list[object]:
    return [record.settings_key, record.commission_tracking_enabled, record.allow_oversell]


def deserialize_settings(raw_row: Sequence[object]) -> TenantSettings:
    settings_key, commission_tracking_enabled, allow_oversell = raw_row
    return TenantSettings(
        settings_key=str(settings_key),
        commission_tracking_enabled=_to_bool(commission_tracking_enabled),
        allow_oversell=_to_bool(allow_oversell),
    )


@dataclass(frozen=True)
class CollectionCodec:
    """Describe how one collection maps onto a worksheet."""

    columns: tuple[str, ...]
    serialize: Callable[[Any], list[object]]
    deserialize: Callable[[Sequence[object]], Any]
    key: Callable[[Any], str]


COLLECTION_CODECS: Mapping[CollectionName, CollectionCodec] = {
    CollectionName.PRODUCTS: CollectionCodec(
        columns=(
            "ProductID",
            "Name",
            "Category",
            "Price",
            "CostPrice",
            "Stock",
            "CommissionPercentage",
            "TieredPricing",
            "Variants",
            "StockHistory",
        ),
        serialize=serialize_product,
        deserialize=deserialize_product,
        key=lambda record: record.product_id,
    ),
    CollectionName.SALES: CollectionCodec(
        columns=(
            "SaleID",
            "Timestamp",
            "Items",
            "CustomerID",
            "SellerID",
            "Subtotal",
            "Tax",
            "Discount",
            "Total",
            "PaymentMethod",
            "TaxRate",
            "Commission",
            "Status",
        ),
        serialize=serialize_sale,
        deserialize=deserialize_sale,
        key=lambda record: record.sale_id,
    ),
    CollectionName.CUSTOMERS: CollectionCodec(
        columns=("CustomerID", "Name", "Email", "Phone", "JoinDate", "PurchaseHistory"),
        serialize=serialize_customer,
        deserialize=deserialize_customer,
        key=lambda record: record.customer_id,
    ),
    CollectionName.USERS: CollectionCodec(
        columns=("UserID", "Name", "Role", "Withdrawals", "CustomPayments"),
        serialize=serialize_user,
        deserialize=deserialize_user,
        key=lambda record: record.user_id,
    ),
    CollectionName.DEPOSITS: CollectionCodec(
        columns=("DepositID", "Date", "Amount", "Description", "SubmitterID", "Status"),
        serialize=serialize_deposit,
        deserialize=deserialize_deposit,
        key=lambda record: record.deposit_id,
    ),
    CollectionName.EXPENSE_REQUESTS: CollectionCodec(
        columns=(
            "RequestID",
            "Date",
            "Category",
            "Amount",
            "Description",
            "RequesterID",
            "Status",
            "ApproverID",
            "Notes",
        ),
        serialize=serialize_expense_request,
        deserialize=deserialize_expense_request,
        key=lambda record: record.request_id,
    ),
    CollectionName.EXPENSES: CollectionCodec(
        columns=("ExpenseID", "Date", "Category", "Description", "Amount", "SourceKey"),
        serialize=serialize_expense,
        deserialize=deserialize_expense,
        key=lambda record: record.expense_id,
    ),
    CollectionName.LEDGER_INDEX: CollectionCodec(
        columns=("SourceKey", "SourceKind", "SourceID", "ExpenseID"),
        serialize=serialize_ledger_entry,
        deserialize=deserialize_ledger_entry,
        key=lambda record: record.source_key,
    ),
    CollectionName.SETTINGS: CollectionCodec(
        columns=("SettingsKey", "CommissionTrackingEnabled", "AllowOversell"),
        serialize=serialize_settings,
        deserialize=deserialize_settings,
        key=lambda record: record.settings_key,
    ),
}


def get_codec(collection_key: str) -> CollectionCodec:
    """Resolve the codec registered for ``collection_key``.

    Raises:
        KeyError: If the collection is unknown to the data layer.
    """

    try:
        return COLLECTION_CODECS[CollectionName(collection_key)]
    except ValueError as exc:
        raise KeyError(f"Unknown collection: {collection_key}") from exc


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def initialize_workbook(codecs: Mapping[CollectionName, CollectionCodec] = COLLECTION_CODECS) -> Workbook:
    """Build an empty workbook holding one sheet per collection with bold headers."""

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for collection, codec in codecs.items():
        _create_sheet(workbook, collection.value, codec.columns)
    return workbook


def _create_sheet(workbook: Workbook, title: str, columns: Sequence[str], index: Optional[int] = None):
    bold_font = Font(bold=True)
    worksheet = workbook.create_sheet(title=title, index=index)
    for column_index, column_name in enumerate(columns, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return worksheet


def open_workbook(data_file: Path) -> Workbook:
    """Open a tenant workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def iter_records(workbook: Workbook, collection_key: str) -> Iterable[Any]:
    """Stream typed records from the sheet backing ``collection_key``.

    The header row is validated against the registered columns; fully empty
    rows are skipped.

    Raises:
        KeyError: If the sheet is missing or its header does not match.
    """

    codec = get_codec(collection_key)
    if collection_key not in workbook.sheetnames:
        raise KeyError(f"Sheet not found: {collection_key}")
    sheet = workbook[collection_key]
    header = tuple(cell.value for cell in sheet[1])[: len(codec.columns)]
    if header != codec.columns:
        raise KeyError(f"Unexpected columns in sheet '{collection_key}': {header}")
    for raw in sheet.iter_rows(min_row=2, max_col=len(codec.columns), values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield codec.deserialize(raw)


def replace_records(workbook: Workbook, collection_key: str, records: Iterable[Any]) -> None:
    """Rewrite the sheet backing ``collection_key`` with ``records``.

    The sheet is dropped and recreated at the same position so stale rows can
    never survive a shrinking collection.
    """

    codec = get_codec(collection_key)
    index = None
    if collection_key in workbook.sheetnames:
        index = workbook.sheetnames.index(collection_key)
        workbook.remove(workbook[collection_key])
    sheet = _create_sheet(workbook, collection_key, codec.columns, index=index)
    for record in records:
        sheet.append(codec.serialize(record))


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Keyed store holding every tenant collection in process memory.

    Records are immutable, so the store only copies the mapping itself.
    """

    def __init__(self) -> None:
        self._data: Dict[tuple[str, str], Dict[str, Any]] = {}

    def load(self, tenant_id: str, collection_key: str, default: Mapping[str, Any]) -> Dict[str, Any]:
        stored = self._data.get((tenant_id, collection_key))
        return dict(stored) if stored is not None else dict(default)

    def save(self, tenant_id: str, collection_key: str, records: Mapping[str, Any]) -> None:
        self._data[(tenant_id, collection_key)] = dict(records)

    def tenants(self) -> set[str]:
        return {tenant for tenant, _ in self._data}


@dataclass
class WorkbookStore:
    """Keyed store backed by one ``.xlsx`` workbook per tenant.

    Each collection lives in its own sheet named after the collection key.
    Workbooks are opened lazily and kept for the lifetime of the store.
    """

    directory: Path
    _workbooks: Dict[str, Workbook] = field(default_factory=dict, repr=False)

    def workbook_path(self, tenant_id: str) -> Path:
        return Path(self.directory).expanduser().resolve() / f"{tenant_id}.xlsx"

    def _workbook(self, tenant_id: str, *, create: bool) -> Optional[Workbook]:
        workbook = self._workbooks.get(tenant_id)
        if workbook is not None:
            return workbook
        path = self.workbook_path(tenant_id)
        if path.exists():
            workbook = open_workbook(path)
        elif create:
            log.info("Creating workbook for tenant '%s' at '%s'", tenant_id, path)
            workbook = initialize_workbook()
        else:
            return None
        self._workbooks[tenant_id] = workbook
        return workbook

    def load(self, tenant_id: str, collection_key: str, default: Mapping[str, Any]) -> Dict[str, Any]:
        workbook = self._workbook(tenant_id, create=False)
        if workbook is None or collection_key not in workbook.sheetnames:
            return dict(default)
        codec = get_codec(collection_key)
        return {codec.key(record): record for record in iter_records(workbook, collection_key)}

    def save(self, tenant_id: str, collection_key: str, records: Mapping[str, Any]) -> None:
        workbook = self._workbook(tenant_id, create=True)
        try:
            replace_records(workbook, collection_key, records.values())
            save_workbook(workbook, self.workbook_path(tenant_id))
        except Exception:
            # the cached sheet may be half rewritten; reopen from disk next time
            self._workbooks.pop(tenant_id, None)
            raise
        log.debug("Saved %d records to '%s' for tenant '%s'", len(records), collection_key, tenant_id)
