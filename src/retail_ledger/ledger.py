"""Ledger materializer and manual expense book.

Workflow events (a withdrawal confirmed by its recipient, a custom payment
confirmed, an expense request approved) each book exactly one
:class:`~retail_ledger.data_manager.Expense`. The ``ledger_index`` collection
maps ``"{kind}:{source_id}"`` to the booked expense so that booking the same
event again replaces the entry instead of adding a second one.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from . import core_logic, data_manager, log
from .constants import Action, CollectionName, ResourcePath, SourceKind


def source_key(kind: SourceKind, source_id: str) -> str:
    return f"{kind.value}:{source_id}"


def derive_expense_id(kind: SourceKind, source_id: str) -> str:
    """Deterministic expense id for a workflow event, e.g. ``exp-wd-<id>``."""

    return f"exp-{kind.value}-{source_id}"


def materialize(
    uow: core_logic.UnitOfWork,
    *,
    kind: SourceKind,
    source_id: str,
    amount: Decimal,
    category: str,
    description: str,
    when: datetime,
) -> data_manager.Expense:
    """Stage the expense booked by a workflow event.

    When the event was booked before, the indexed expense is replaced in
    place and keeps its id; otherwise a new expense is added and indexed.
    """
    key = source_key(kind, source_id)
    indexed = uow.find(CollectionName.LEDGER_INDEX, key)
    expense_id = indexed.expense_id if indexed is not None else derive_expense_id(kind, source_id)

    expense = data_manager.Expense(
        expense_id=expense_id,
        date_iso=when.isoformat(),
        category=category,
        description=description,
        amount=amount,
        source_key=key,
    )
    uow.put(CollectionName.EXPENSES, expense_id, expense)
    if indexed is None:
        uow.put(
            CollectionName.LEDGER_INDEX,
            key,
            data_manager.LedgerIndexEntry(
                source_key=key,
                source_kind=kind.value,
                source_id=source_id,
                expense_id=expense_id,
            ),
        )
        log.debug("Staged expense '%s' for %s", expense_id, key)
    else:
        log.warning("Expense for %s already booked as '%s'; replacing it", key, expense_id)
    return expense


def record_expense(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    category: str,
    description: str,
    amount: Decimal,
    timestamp: Optional[datetime] = None,
) -> data_manager.Expense:
    """Book a manual expense that no workflow produced.

    Raises:
        AuthorizationDenied: If the actor may not add expenses.
        ValueError: If ``amount`` is not positive, the category is blank or
            the text holds control characters.
    """
    core_logic.require_access(context, actor, ResourcePath.EXPENSES, Action.ADD)
    core_logic.require_positive_money(amount)
    core_logic.require_storable_text(category=category, description=description)
    if not category or not category.strip():
        log.error("Manual expense submitted without a category")
        raise ValueError("An expense category is required")

    when = core_logic._resolve_timestamp(timestamp)
    expense = data_manager.Expense(
        expense_id=core_logic.generate_id("exp", when=when),
        date_iso=when.isoformat(),
        category=category.strip(),
        description=description,
        amount=amount,
    )
    with core_logic.UnitOfWork(context, "record expense") as uow:
        uow.put(CollectionName.EXPENSES, expense.expense_id, expense)
    log.info("Recorded expense '%s' (%s, %s)", expense.expense_id, expense.category, expense.amount)
    return expense


def delete_expense(
    context: core_logic.RuntimeContext, actor: data_manager.User, expense_id: str
) -> data_manager.Expense:
    """Delete a manual expense.

    Raises:
        NotFoundError: If ``expense_id`` is unknown.
        BusinessRuleViolation: If the expense was booked by a workflow.
    """
    core_logic.require_access(context, actor, ResourcePath.EXPENSES, Action.DELETE)
    with core_logic.UnitOfWork(context, f"delete expense {expense_id}") as uow:
        expense = uow.require(CollectionName.EXPENSES, expense_id, "Expense")
        if expense.source_key is not None:
            log.warning("Refused to delete automated expense '%s' (%s)", expense_id, expense.source_key)
            raise core_logic.BusinessRuleViolation(
                f"Expense '{expense_id}' was booked by {expense.source_key} and cannot be deleted"
            )
        uow.remove(CollectionName.EXPENSES, expense_id)
    log.info("Deleted expense '%s'", expense_id)
    return expense


def list_expenses(
    context: core_logic.RuntimeContext, *, category: Optional[str] = None
) -> List[data_manager.Expense]:
    expenses = core_logic.read_collection(context, CollectionName.EXPENSES).values()
    if category is not None:
        expenses = [expense for expense in expenses if expense.category == category]
    return sorted(expenses, key=lambda expense: (expense.date_iso, expense.expense_id))


def expense_for(context: core_logic.RuntimeContext, kind: SourceKind, source_id: str) -> Optional[data_manager.Expense]:
    """Expense booked by a workflow event, if any."""

    entry = core_logic.read_collection(context, CollectionName.LEDGER_INDEX).get(source_key(kind, source_id))
    if entry is None:
        return None
    return core_logic.read_collection(context, CollectionName.EXPENSES).get(entry.expense_id)
