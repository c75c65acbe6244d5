"""Runtime context and transaction boundary for the retail ledger.

Every operation exposed by the business logic layer (BLL) runs against a
:class:`RuntimeContext`: one tenant, one store, one authorization gate and
the in-memory state of that tenant's collections. Mutations are staged in a
:class:`UnitOfWork` and become visible only when the whole operation
succeeds, after which the touched collections are flushed to the store.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Set

from . import authorization, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, SETTINGS_KEY, Action, CollectionName, ResourcePath


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced record does not exist."""


class InvalidTransition(BusinessRuleViolation):
    """Raised when an operation is not permitted from the record's current status."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a removal would take stock below what policy allows."""


class AuthorizationDenied(BusinessRuleViolation):
    """Raised when the access gate rejects the acting user."""


class PersistenceError(RuntimeError):
    """Raised when committed collections cannot be written to the store."""


# Store failures worth retrying; anything else is a programming error.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (OSError,)


class Store(Protocol):
    def load(self, tenant_id: str, collection_key: str, default: Dict[str, Any]) -> Dict[str, Any]: ...

    def save(self, tenant_id: str, collection_key: str, records: Dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, store and gate references used by the BLL."""

    settings: data_manager.ConfigSettings
    store: Store
    access_gate: authorization.AccessGate = field(default_factory=authorization.RoleAccessGate)
    _state: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _pending: Set[str] = field(default_factory=set, repr=False, compare=False)

    @property
    def tenant_id(self) -> str:
        return self.settings.tenant_id

    @property
    def pending_collections(self) -> frozenset[str]:
        """Collections committed in memory but not yet written to the store."""
        return frozenset(self._pending)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` unchanged, or the current UTC time when ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``sale-20250101120000000000-3fa2c1``.

    The timestamp keeps identifiers chronologically ordered; the random
    suffix avoids collisions when two records share a microsecond.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def _ensure_collection(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Load a tenant collection into the context on first use."""

    bucket = context._state.get(name)
    if bucket is None:
        bucket = context.store.load(context.tenant_id, name, {})
        context._state[name] = bucket
        log.debug("Loaded collection '%s' for tenant '%s' (%d records)", name, context.tenant_id, len(bucket))
    return bucket


def read_collection(context: RuntimeContext, name: CollectionName) -> Dict[str, Any]:
    """Return a snapshot of a committed collection keyed by record id."""

    return dict(_ensure_collection(context, name.value))


class UnitOfWork:
    """Stage changes to several collections and commit them together.

    Collections are copied on first access. Leaving the ``with`` block
    normally swaps every staged copy into the context at once and flushes
    them; leaving it with an exception discards the staging area so no
    collection observes a partial operation.
    """

    def __init__(self, context: RuntimeContext, description: str) -> None:
        self.context = context
        self.description = description
        self._staged: Dict[str, Dict[str, Any]] = {}

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            log.warning("Discarding staged changes for '%s': %s", self.description, exc)
            self._staged.clear()
            return False
        self.commit()
        return False

    def collection(self, name: CollectionName) -> Dict[str, Any]:
        staged = self._staged.get(name.value)
        if staged is None:
            staged = dict(_ensure_collection(self.context, name.value))
            self._staged[name.value] = staged
        return staged

    def find(self, name: CollectionName, key: str) -> Optional[Any]:
        return self.collection(name).get(key)

    def require(self, name: CollectionName, key: str, label: str) -> Any:
        record = self.find(name, key)
        if record is None:
            log.warning("%s lookup failed for id '%s'", label, key)
            raise NotFoundError(f"Unknown {label.lower()} id: {key}")
        return record

    def put(self, name: CollectionName, key: str, record: Any) -> None:
        self.collection(name)[key] = record

    def remove(self, name: CollectionName, key: str) -> None:
        self.collection(name).pop(key, None)

    def commit(self) -> None:
        if not self._staged:
            return
        for name, records in self._staged.items():
            self.context._state[name] = records
            self.context._pending.add(name)
        log.debug("Committed '%s' touching: %s", self.description, ", ".join(sorted(self._staged)))
        self._staged = {}
        flush_pending(self.context)


def run_with_retry(func: Callable[[], Any], *, attempts: int = 3, backoff_base: float = 0.1) -> Any:
    """Call ``func`` retrying store failures with exponential backoff.

    Only :data:`RETRYABLE_ERRORS` are retried; the last one is re-raised once
    ``attempts`` is exhausted.
    """

    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts - 1:
                raise
            log.warning("Store write failed (attempt %d/%d): %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
    return None


def flush_pending(context: RuntimeContext) -> bool:
    """Write every pending collection to the store.

    Failed collections stay pending and keep the in-memory state as the source
    of truth, so a later flush can retry them. Only store errors in
    :data:`RETRYABLE_ERRORS` are retried, but any error leaves the collection
    pending instead of reaching the caller of an already committed operation.

    Returns:
        bool: ``True`` when nothing is left pending.
    """

    for name in sorted(context._pending):
        records = context._state[name]
        try:
            run_with_retry(
                lambda: context.store.save(context.tenant_id, name, records),
                attempts=max(1, context.settings.flush_attempts),
                backoff_base=context.settings.flush_backoff,
            )
        except Exception as exc:
            log.error(
                "Unable to persist collection '%s' for tenant '%s': %s: %s",
                name,
                context.tenant_id,
                type(exc).__name__,
                exc,
            )
            continue
        context._pending.discard(name)
    return not context._pending


def persist_context(context: RuntimeContext) -> None:
    """Flush pending collections, failing loudly if any remain unwritten.

    Raises:
        PersistenceError: If at least one collection could not be written.
    """

    if not flush_pending(context):
        raise PersistenceError(
            "Unable to persist collections: %s" % ", ".join(sorted(context._pending))
        )
    log.info("Persisted tenant '%s'", context.tenant_id)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a fresh context that reloads every collection from the store.

    Unflushed changes held by ``context`` are discarded.
    """

    log.info("Reloading tenant '%s' from the store", context.tenant_id)
    return RuntimeContext(settings=context.settings, store=context.store, access_gate=context.access_gate)


def build_store(settings: data_manager.ConfigSettings) -> data_manager.WorkbookStore:
    return data_manager.WorkbookStore(directory=settings.data_directory)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    store: Optional[Store] = None,
    access_gate: Optional[authorization.AccessGate] = None,
) -> RuntimeContext:
    """Load configuration settings and a tenant store for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        store (Store | None): Store to use instead of the workbook store
            configured by ``DataDirectory``.
        access_gate (AccessGate | None): Gate consulted by every mutating
            operation. Defaults to an empty :class:`RoleAccessGate`, which only
            admits owners and super admins.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    context = RuntimeContext(
        settings=settings,
        store=store if store is not None else build_store(settings),
        access_gate=access_gate if access_gate is not None else authorization.RoleAccessGate(),
    )
    log.info("Loaded runtime context for tenant '%s' (%s)", settings.tenant_id, settings.data_directory)
    return context


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def require_access(context: RuntimeContext, actor: data_manager.User, path: ResourcePath, action: Action) -> None:
    """Consult the context's gate and reject the actor when it says no.

    Raises:
        AuthorizationDenied: If the gate denies ``action`` on ``path``.
    """
    if not context.access_gate.has_access(actor, path.value, action.value):
        log.warning("Access denied for user '%s' on %s:%s", actor.user_id, path.value, action.value)
        raise AuthorizationDenied(f"User '{actor.user_id}' may not {action.value} {path.value}")


def current_settings(uow: UnitOfWork) -> data_manager.TenantSettings:
    """Tenant settings as stored, falling back to the ``[Policy]`` defaults."""

    stored = uow.find(CollectionName.SETTINGS, SETTINGS_KEY)
    if stored is not None:
        return stored
    config = uow.context.settings
    return data_manager.TenantSettings(
        settings_key=SETTINGS_KEY,
        commission_tracking_enabled=config.commission_tracking_enabled,
        allow_oversell=config.allow_oversell,
    )


def update_settings(
    context: RuntimeContext,
    actor: data_manager.User,
    *,
    commission_tracking_enabled: Optional[bool] = None,
    allow_oversell: Optional[bool] = None,
) -> data_manager.TenantSettings:
    """Change the tenant's commission tracking and oversell policies."""
    require_access(context, actor, ResourcePath.SETTINGS, Action.EDIT)
    with UnitOfWork(context, "update settings") as uow:
        settings = current_settings(uow)
        updated = data_manager.TenantSettings(
            settings_key=SETTINGS_KEY,
            commission_tracking_enabled=(
                settings.commission_tracking_enabled
                if commission_tracking_enabled is None
                else commission_tracking_enabled
            ),
            allow_oversell=settings.allow_oversell if allow_oversell is None else allow_oversell,
        )
        uow.put(CollectionName.SETTINGS, SETTINGS_KEY, updated)
    log.info(
        "Updated settings: commission_tracking=%s allow_oversell=%s",
        updated.commission_tracking_enabled,
        updated.allow_oversell,
    )
    return updated


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a positive integer")


def require_positive_money(amount: Decimal) -> None:
    """Validate that a monetary amount is strictly positive.

    Raises:
        ValueError: If ``amount`` is zero or negative.
    """
    if amount <= Decimal("0"):
        log.error("Amount validation failed: %s", amount)
        raise ValueError("Amount must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def require_storable_text(**fields: Optional[str]) -> None:
    """Validate that free-text values can be written to a worksheet cell.

    Raises:
        ValueError: If a value contains control characters.
    """
    for label, value in fields.items():
        if data_manager.has_illegal_characters(value):
            log.error("Text validation failed for %s: %r", label, value)
            raise ValueError(f"{label.replace('_', ' ').capitalize()} contains control characters")
