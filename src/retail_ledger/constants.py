"""Enumerations shared across the retail ledger modules.

Centralises domain constants so that the data access layer (DAL), the
business logic layer (BLL) and the CLI rely on a single source of truth for
statuses, collection keys and resource paths.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating tenant stores.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class SaleStatus(str, Enum):
    """Lifecycle states of a ``Sale``."""

    COMPLETED = "completed"
    PENDING_APPROVAL = "pending_approval"
    CLIENT_ORDER = "client_order"
    PROFORMA = "proforma"
    REJECTED = "rejected"


TERMINAL_SALE_STATUSES: frozenset[SaleStatus] = frozenset(
    {SaleStatus.PROFORMA, SaleStatus.REJECTED}
)


class StockDirection(str, Enum):
    """Direction of a stock adjustment."""

    ADD = "add"
    REMOVE = "remove"


class Role(str, Enum):
    """Roles a ``User`` may hold inside the business."""

    OWNER = "Owner"
    MANAGER = "Manager"
    CASHIER = "Cashier"
    INVESTOR = "Investor"
    SELLER_AGENT = "SellerAgent"
    SUPER_ADMIN = "Super Admin"
    CUSTOM = "Custom"


class WithdrawalSource(str, Enum):
    """Funds a withdrawal is drawn against."""

    COMMISSION = "commission"
    INVESTMENT = "investment"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    COMPLETED = "completed"


class CustomPaymentStatus(str, Enum):
    PENDING_USER_APPROVAL = "pending_user_approval"
    REJECTED_BY_USER = "rejected_by_user"
    APPROVED_BY_USER = "approved_by_user"
    PAID = "paid"
    COMPLETED = "completed"


class DepositStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExpenseRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SourceKind(str, Enum):
    """Workflow events that materialize ledger expenses.

    The value doubles as the prefix of the derived expense identifier.
    """

    WITHDRAWAL = "wd"
    CUSTOM_PAYMENT = "cp"
    EXPENSE_REQUEST = "req"


class ExpenseCategory(str, Enum):
    """Categories booked automatically by the workflows."""

    INVESTOR_PAYOUT = "Investor Payout"
    STAFF_PAYOUT = "Staff Payout"
    STAFF_PAYMENT = "Staff Payment"


class CollectionName(str, Enum):
    """Per-tenant collections managed by the store (one sheet each)."""

    PRODUCTS = "products"
    SALES = "sales"
    CUSTOMERS = "customers"
    USERS = "users"
    DEPOSITS = "deposits"
    EXPENSE_REQUESTS = "expense_requests"
    EXPENSES = "expenses"
    LEDGER_INDEX = "ledger_index"
    SETTINGS = "settings"


class Action(str, Enum):
    """Actions understood by the authorization gate."""

    VIEW = "view"
    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"


class ResourcePath(str, Enum):
    """Resource paths checked by each operation before it mutates state."""

    COUNTER = "/counter"
    RECEIPTS = "/receipts"
    PROFORMA = "/proforma"
    INVENTORY = "/inventory"
    CUSTOMERS = "/customer-management"
    USERS = "/users"
    PROFILE = "/profile"
    TRANSACTIONS = "/transactions"
    EXPENSES = "/expenses"
    EXPENSE_REQUESTS = "/expense-requests"
    SETTINGS = "/settings/business"


# System-generated reasons recorded by the sale lifecycle.
REASON_SALE_COMPLETED = "sale completed"
REASON_SALE_DELETED = "sale deleted/restored"

DEFAULT_DEFERRED_PAYMENT_METHODS: tuple[str, ...] = ("Bank Transfer", "Bank Receipt")

SETTINGS_KEY = "tenant"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SaleStatus",
    "TERMINAL_SALE_STATUSES",
    "StockDirection",
    "Role",
    "WithdrawalSource",
    "WithdrawalStatus",
    "CustomPaymentStatus",
    "DepositStatus",
    "ExpenseRequestStatus",
    "SourceKind",
    "ExpenseCategory",
    "CollectionName",
    "Action",
    "ResourcePath",
    "REASON_SALE_COMPLETED",
    "REASON_SALE_DELETED",
    "DEFAULT_DEFERRED_PAYMENT_METHODS",
    "SETTINGS_KEY",
]
