"""Payout and request workflows.

Four small state machines share one shape: a record is created pending, an
organizational actor or the recipient moves it forward, and the terminal
step of some of them books a ledger expense. Withdrawals and custom payments
are nested under the user they are paid to; deposits and expense requests
live in their own collections.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from . import core_logic, data_manager, ledger, log
from .constants import (
    Action,
    CollectionName,
    CustomPaymentStatus,
    DepositStatus,
    ExpenseCategory,
    ExpenseRequestStatus,
    ResourcePath,
    Role,
    SourceKind,
    WithdrawalSource,
    WithdrawalStatus,
)


# ============================================================
# TRANSITION TABLES
# ============================================================

WITHDRAWAL_TRANSITIONS: Mapping[WithdrawalStatus, FrozenSet[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.PAID}),
    WithdrawalStatus.PAID: frozenset({WithdrawalStatus.COMPLETED}),
}

CUSTOM_PAYMENT_TRANSITIONS: Mapping[CustomPaymentStatus, FrozenSet[CustomPaymentStatus]] = {
    CustomPaymentStatus.PENDING_USER_APPROVAL: frozenset(
        {CustomPaymentStatus.APPROVED_BY_USER, CustomPaymentStatus.REJECTED_BY_USER}
    ),
    CustomPaymentStatus.APPROVED_BY_USER: frozenset({CustomPaymentStatus.PAID}),
    CustomPaymentStatus.PAID: frozenset({CustomPaymentStatus.COMPLETED}),
}

DEPOSIT_TRANSITIONS: Mapping[DepositStatus, FrozenSet[DepositStatus]] = {
    DepositStatus.PENDING: frozenset({DepositStatus.APPROVED, DepositStatus.REJECTED}),
}

EXPENSE_REQUEST_TRANSITIONS: Mapping[ExpenseRequestStatus, FrozenSet[ExpenseRequestStatus]] = {
    ExpenseRequestStatus.PENDING: frozenset({ExpenseRequestStatus.APPROVED, ExpenseRequestStatus.REJECTED}),
}


def validate_transition(
    table: Mapping[Enum, FrozenSet[Enum]], current: Enum, target: Enum, *, label: str, record_id: str
) -> None:
    """Reject a move from ``current`` to ``target`` that ``table`` does not list.

    Raises:
        InvalidTransition: If the transition is not allowed.
    """
    if target not in table.get(current, frozenset()):
        log.warning("Rejected %s '%s' transition %s -> %s", label, record_id, current.value, target.value)
        raise core_logic.InvalidTransition(
            f"{label} '{record_id}' cannot move from '{current.value}' to '{target.value}'"
        )


# ============================================================
# NESTED RECORD HELPERS
# ============================================================


def _audit(when: datetime, status: Enum, actor: data_manager.User, note: Optional[str]) -> data_manager.AuditEntry:
    return data_manager.AuditEntry(
        timestamp_iso=when.isoformat(),
        status=status.value,
        actor_id=actor.user_id,
        note=note or "",
    )


def _locate(uow: core_logic.UnitOfWork, attribute: str, id_attribute: str, record_id: str, label: str):
    """Find the user holding a nested withdrawal or custom payment."""

    for user in uow.collection(CollectionName.USERS).values():
        for record in getattr(user, attribute):
            if getattr(record, id_attribute) == record_id:
                return user, record
    log.warning("%s lookup failed for id '%s'", label, record_id)
    raise core_logic.NotFoundError(f"Unknown {label.lower()} id: {record_id}")


def _store_nested(uow: core_logic.UnitOfWork, user: data_manager.User, attribute: str, id_attribute: str, record) -> None:
    key = getattr(record, id_attribute)
    records = tuple(record if getattr(item, id_attribute) == key else item for item in getattr(user, attribute))
    uow.put(CollectionName.USERS, user.user_id, replace(user, **{attribute: records}))


def _require_recipient(actor: data_manager.User, owner: data_manager.User, label: str, record_id: str) -> None:
    if actor.user_id != owner.user_id:
        log.warning("User '%s' acted on %s '%s' owned by '%s'", actor.user_id, label, record_id, owner.user_id)
        raise core_logic.AuthorizationDenied(
            f"Only '{owner.user_id}' may act on {label.lower()} '{record_id}'"
        )


# ============================================================
# WITHDRAWALS
# ============================================================


def withdrawal_category(user: data_manager.User, withdrawal: data_manager.Withdrawal) -> ExpenseCategory:
    if user.role is Role.INVESTOR or withdrawal.source is WithdrawalSource.INVESTMENT:
        return ExpenseCategory.INVESTOR_PAYOUT
    return ExpenseCategory.STAFF_PAYOUT


def request_withdrawal(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    amount: Decimal,
    source: WithdrawalSource,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.Withdrawal:
    """Ask the business to pay out ``amount`` to the acting user.

    Raises:
        ValueError: If ``amount`` is not positive.
        NotFoundError: If the acting user is not registered.
    """
    core_logic.require_access(context, actor, ResourcePath.PROFILE, Action.ADD)
    core_logic.require_positive_money(amount)
    when = core_logic._resolve_timestamp(timestamp)
    with core_logic.UnitOfWork(context, "request withdrawal") as uow:
        user = uow.require(CollectionName.USERS, actor.user_id, "User")
        withdrawal = data_manager.Withdrawal(
            withdrawal_id=core_logic.generate_id("wd", when=when),
            date_iso=when.isoformat(),
            amount=amount,
            source=source,
            status=WithdrawalStatus.PENDING,
            notes=notes,
            audit_log=(_audit(when, WithdrawalStatus.PENDING, actor, notes),),
        )
        uow.put(CollectionName.USERS, user.user_id, replace(user, withdrawals=user.withdrawals + (withdrawal,)))
    log.info("User '%s' requested withdrawal '%s' of %s", actor.user_id, withdrawal.withdrawal_id, amount)
    return withdrawal


def _advance_withdrawal(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    withdrawal_id: str,
    target: WithdrawalStatus,
    *,
    note: Optional[str],
    timestamp: Optional[datetime],
    recipient_only: bool = False,
) -> data_manager.Withdrawal:
    when = core_logic._resolve_timestamp(timestamp)
    with core_logic.UnitOfWork(context, f"withdrawal {withdrawal_id} -> {target.value}") as uow:
        user, withdrawal = _locate(uow, "withdrawals", "withdrawal_id", withdrawal_id, "Withdrawal")
        if recipient_only:
            _require_recipient(actor, user, "Withdrawal", withdrawal_id)
        validate_transition(WITHDRAWAL_TRANSITIONS, withdrawal.status, target, label="Withdrawal", record_id=withdrawal_id)
        withdrawal = replace(
            withdrawal,
            status=target,
            notes=note if note is not None else withdrawal.notes,
            audit_log=withdrawal.audit_log + (_audit(when, target, actor, note),),
        )
        _store_nested(uow, user, "withdrawals", "withdrawal_id", withdrawal)
        if target is WithdrawalStatus.COMPLETED:
            ledger.materialize(
                uow,
                kind=SourceKind.WITHDRAWAL,
                source_id=withdrawal_id,
                amount=withdrawal.amount,
                category=withdrawal_category(user, withdrawal).value,
                description=f"Withdrawal by {user.name} ({withdrawal.source.value})",
                when=when,
            )
    log.info("Withdrawal '%s' of user '%s' moved to %s", withdrawal_id, user.user_id, target.value)
    return withdrawal


def approve_withdrawal(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    withdrawal_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.Withdrawal:
    core_logic.require_access(context, actor, ResourcePath.USERS, Action.EDIT)
    return _advance_withdrawal(context, actor, withdrawal_id, WithdrawalStatus.APPROVED, note=note, timestamp=timestamp)


def reject_withdrawal(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    withdrawal_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.Withdrawal:
    core_logic.require_access(context, actor, ResourcePath.USERS, Action.EDIT)
    return _advance_withdrawal(context, actor, withdrawal_id, WithdrawalStatus.REJECTED, note=note, timestamp=timestamp)


def mark_withdrawal_paid(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    withdrawal_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.Withdrawal:
    """Record that the business has sent the money: ``approved`` -> ``paid``."""
    core_logic.require_access(context, actor, ResourcePath.USERS, Action.EDIT)
    return _advance_withdrawal(context, actor, withdrawal_id, WithdrawalStatus.PAID, note=note, timestamp=timestamp)


def confirm_withdrawal_received(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    withdrawal_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.Withdrawal:
    """Recipient confirms receipt: ``paid`` -> ``completed``, booking the payout.

    Raises:
        AuthorizationDenied: If the actor is not the withdrawal's recipient.
        InvalidTransition: If the withdrawal is not ``paid``, including a
            repeated confirmation.
    """
    core_logic.require_access(context, actor, ResourcePath.PROFILE, Action.EDIT)
    return _advance_withdrawal(
        context,
        actor,
        withdrawal_id,
        WithdrawalStatus.COMPLETED,
        note=note,
        timestamp=timestamp,
        recipient_only=True,
    )


# ============================================================
# CUSTOM PAYMENTS
# ============================================================


def initiate_custom_payment(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    user_id: str,
    amount: Decimal,
    description: str,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomPayment:
    """Offer a one-off payment to ``user_id``, pending the recipient's approval."""
    core_logic.require_access(context, actor, ResourcePath.USERS, Action.EDIT)
    core_logic.require_positive_money(amount)
    core_logic.require_storable_text(description=description)
    when = core_logic._resolve_timestamp(timestamp)
    with core_logic.UnitOfWork(context, f"initiate custom payment for {user_id}") as uow:
        user = uow.require(CollectionName.USERS, user_id, "User")
        payment = data_manager.CustomPayment(
            payment_id=core_logic.generate_id("cp", when=when),
            date_initiated_iso=when.isoformat(),
            amount=amount,
            description=description,
            initiator_id=actor.user_id,
            status=CustomPaymentStatus.PENDING_USER_APPROVAL,
            notes=notes,
            audit_log=(_audit(when, CustomPaymentStatus.PENDING_USER_APPROVAL, actor, notes),),
        )
        uow.put(CollectionName.USERS, user_id, replace(user, custom_payments=user.custom_payments + (payment,)))
    log.info("Initiated custom payment '%s' of %s for user '%s'", payment.payment_id, amount, user_id)
    return payment


def _advance_custom_payment(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    payment_id: str,
    target: CustomPaymentStatus,
    *,
    note: Optional[str],
    timestamp: Optional[datetime],
    recipient_only: bool,
) -> data_manager.CustomPayment:
    when = core_logic._resolve_timestamp(timestamp)
    with core_logic.UnitOfWork(context, f"custom payment {payment_id} -> {target.value}") as uow:
        user, payment = _locate(uow, "custom_payments", "payment_id", payment_id, "Custom payment")
        if recipient_only:
            _require_recipient(actor, user, "Custom payment", payment_id)
        validate_transition(
            CUSTOM_PAYMENT_TRANSITIONS, payment.status, target, label="Custom payment", record_id=payment_id
        )
        payment = replace(
            payment,
            status=target,
            notes=note if note is not None else payment.notes,
            audit_log=payment.audit_log + (_audit(when, target, actor, note),),
        )
        _store_nested(uow, user, "custom_payments", "payment_id", payment)
        if target is CustomPaymentStatus.COMPLETED:
            ledger.materialize(
                uow,
                kind=SourceKind.CUSTOM_PAYMENT,
                source_id=payment_id,
                amount=payment.amount,
                category=ExpenseCategory.STAFF_PAYMENT.value,
                description=f"Payment to {user.name}: {payment.description}",
                when=when,
            )
    log.info("Custom payment '%s' of user '%s' moved to %s", payment_id, user.user_id, target.value)
    return payment


def approve_custom_payment(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    payment_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomPayment:
    core_logic.require_access(context, actor, ResourcePath.PROFILE, Action.EDIT)
    return _advance_custom_payment(
        context, actor, payment_id, CustomPaymentStatus.APPROVED_BY_USER, note=note, timestamp=timestamp, recipient_only=True
    )


def reject_custom_payment(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    payment_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomPayment:
    core_logic.require_access(context, actor, ResourcePath.PROFILE, Action.EDIT)
    return _advance_custom_payment(
        context, actor, payment_id, CustomPaymentStatus.REJECTED_BY_USER, note=note, timestamp=timestamp, recipient_only=True
    )


def mark_custom_payment_paid(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    payment_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomPayment:
    core_logic.require_access(context, actor, ResourcePath.USERS, Action.EDIT)
    return _advance_custom_payment(
        context, actor, payment_id, CustomPaymentStatus.PAID, note=note, timestamp=timestamp, recipient_only=False
    )


def confirm_custom_payment_received(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    payment_id: str,
    *,
    note: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomPayment:
    """Recipient confirms receipt: ``paid`` -> ``completed``, booking a staff payment."""
    core_logic.require_access(context, actor, ResourcePath.PROFILE, Action.EDIT)
    return _advance_custom_payment(
        context, actor, payment_id, CustomPaymentStatus.COMPLETED, note=note, timestamp=timestamp, recipient_only=True
    )


# ============================================================
# DEPOSITS
# ============================================================


def submit_deposit(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    amount: Decimal,
    description: str,
    timestamp: Optional[datetime] = None,
) -> data_manager.Deposit:
    core_logic.require_access(context, actor, ResourcePath.TRANSACTIONS, Action.ADD)
    core_logic.require_positive_money(amount)
    core_logic.require_storable_text(description=description)
    when = core_logic._resolve_timestamp(timestamp)
    deposit = data_manager.Deposit(
        deposit_id=core_logic.generate_id("dep", when=when),
        date_iso=when.isoformat(),
        amount=amount,
        description=description,
        submitter_id=actor.user_id,
        status=DepositStatus.PENDING,
    )
    with core_logic.UnitOfWork(context, "submit deposit") as uow:
        uow.put(CollectionName.DEPOSITS, deposit.deposit_id, deposit)
    log.info("User '%s' submitted deposit '%s' of %s", actor.user_id, deposit.deposit_id, amount)
    return deposit


def _decide_deposit(
    context: core_logic.RuntimeContext, actor: data_manager.User, deposit_id: str, target: DepositStatus
) -> data_manager.Deposit:
    core_logic.require_access(context, actor, ResourcePath.TRANSACTIONS, Action.EDIT)
    with core_logic.UnitOfWork(context, f"deposit {deposit_id} -> {target.value}") as uow:
        deposit = uow.require(CollectionName.DEPOSITS, deposit_id, "Deposit")
        validate_transition(DEPOSIT_TRANSITIONS, deposit.status, target, label="Deposit", record_id=deposit_id)
        deposit = replace(deposit, status=target)
        uow.put(CollectionName.DEPOSITS, deposit_id, deposit)
    log.info("Deposit '%s' moved to %s", deposit_id, target.value)
    return deposit


def approve_deposit(
    context: core_logic.RuntimeContext, actor: data_manager.User, deposit_id: str
) -> data_manager.Deposit:
    return _decide_deposit(context, actor, deposit_id, DepositStatus.APPROVED)


def reject_deposit(
    context: core_logic.RuntimeContext, actor: data_manager.User, deposit_id: str
) -> data_manager.Deposit:
    return _decide_deposit(context, actor, deposit_id, DepositStatus.REJECTED)


# ============================================================
# EXPENSE REQUESTS
# ============================================================


def submit_expense_request(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    *,
    category: str,
    amount: Decimal,
    description: str,
    timestamp: Optional[datetime] = None,
) -> data_manager.ExpenseRequest:
    """File a request for the business to cover an expense.

    Raises:
        ValueError: If ``amount`` is not positive or ``category`` is blank.
    """
    core_logic.require_access(context, actor, ResourcePath.EXPENSE_REQUESTS, Action.ADD)
    core_logic.require_positive_money(amount)
    core_logic.require_storable_text(category=category, description=description)
    if not category or not category.strip():
        log.error("Expense request submitted without a category")
        raise ValueError("An expense category is required")
    when = core_logic._resolve_timestamp(timestamp)
    request = data_manager.ExpenseRequest(
        request_id=core_logic.generate_id("req", when=when),
        date_iso=when.isoformat(),
        category=category.strip(),
        amount=amount,
        description=description,
        requester_id=actor.user_id,
        status=ExpenseRequestStatus.PENDING,
    )
    with core_logic.UnitOfWork(context, "submit expense request") as uow:
        uow.put(CollectionName.EXPENSE_REQUESTS, request.request_id, request)
    log.info("User '%s' submitted expense request '%s' of %s", actor.user_id, request.request_id, amount)
    return request


def approve_expense_request(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    request_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> Tuple[data_manager.ExpenseRequest, data_manager.Expense]:
    """Approve a pending request and book its expense in the same unit of work."""
    core_logic.require_access(context, actor, ResourcePath.EXPENSE_REQUESTS, Action.EDIT)
    when = core_logic._resolve_timestamp(timestamp)
    with core_logic.UnitOfWork(context, f"approve expense request {request_id}") as uow:
        request = uow.require(CollectionName.EXPENSE_REQUESTS, request_id, "Expense request")
        validate_transition(
            EXPENSE_REQUEST_TRANSITIONS,
            request.status,
            ExpenseRequestStatus.APPROVED,
            label="Expense request",
            record_id=request_id,
        )
        request = replace(request, status=ExpenseRequestStatus.APPROVED, approver_id=actor.user_id)
        uow.put(CollectionName.EXPENSE_REQUESTS, request_id, request)
        requester = uow.find(CollectionName.USERS, request.requester_id)
        requested_by = requester.name if requester is not None else request.requester_id
        expense = ledger.materialize(
            uow,
            kind=SourceKind.EXPENSE_REQUEST,
            source_id=request_id,
            amount=request.amount,
            category=request.category,
            description=f"{request.description} (requested by {requested_by})",
            when=when,
        )
    log.info("Approved expense request '%s'; booked '%s'", request_id, expense.expense_id)
    return request, expense


def reject_expense_request(
    context: core_logic.RuntimeContext,
    actor: data_manager.User,
    request_id: str,
    *,
    reason: Optional[str] = None,
) -> data_manager.ExpenseRequest:
    core_logic.require_access(context, actor, ResourcePath.EXPENSE_REQUESTS, Action.EDIT)
    core_logic.require_storable_text(reason=reason)
    with core_logic.UnitOfWork(context, f"reject expense request {request_id}") as uow:
        request = uow.require(CollectionName.EXPENSE_REQUESTS, request_id, "Expense request")
        validate_transition(
            EXPENSE_REQUEST_TRANSITIONS,
            request.status,
            ExpenseRequestStatus.REJECTED,
            label="Expense request",
            record_id=request_id,
        )
        request = replace(
            request,
            status=ExpenseRequestStatus.REJECTED,
            approver_id=actor.user_id,
            notes=reason if reason is not None else request.notes,
        )
        uow.put(CollectionName.EXPENSE_REQUESTS, request_id, request)
    log.info("Rejected expense request '%s'", request_id)
    return request


# ============================================================
# READ HELPERS
# ============================================================


def list_withdrawals(
    context: core_logic.RuntimeContext, *, user_id: Optional[str] = None
) -> List[Tuple[str, data_manager.Withdrawal]]:
    """``(user_id, withdrawal)`` pairs, optionally for a single user."""

    users: Dict[str, data_manager.User] = core_logic.read_collection(context, CollectionName.USERS)
    return [
        (user.user_id, withdrawal)
        for user in users.values()
        if user_id is None or user.user_id == user_id
        for withdrawal in user.withdrawals
    ]


def list_custom_payments(
    context: core_logic.RuntimeContext, *, user_id: Optional[str] = None
) -> List[Tuple[str, data_manager.CustomPayment]]:
    users: Dict[str, data_manager.User] = core_logic.read_collection(context, CollectionName.USERS)
    return [
        (user.user_id, payment)
        for user in users.values()
        if user_id is None or user.user_id == user_id
        for payment in user.custom_payments
    ]


def list_deposits(context: core_logic.RuntimeContext) -> List[data_manager.Deposit]:
    return list(core_logic.read_collection(context, CollectionName.DEPOSITS).values())


def list_expense_requests(context: core_logic.RuntimeContext) -> List[data_manager.ExpenseRequest]:
    return list(core_logic.read_collection(context, CollectionName.EXPENSE_REQUESTS).values())
