"""Command-line entry points for the retail ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import catalog, core_logic, data_manager, ledger, log, payouts, sales, stock
from .constants import Role, SaleStatus, StockDirection, WithdrawalSource


Subparsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[Subparsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="retail-ledger",
        description="Command-line tools for the retail operations ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to an upward search from the working directory).",
    )
    parser.add_argument(
        "--actor",
        default=None,
        help="Identifier of the user performing the command.",
    )
    return parser


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and payouts."""
    specs = {
        "add-product": register_add_product_command(),
        "add-customer": register_add_customer_command(),
        "add-user": register_add_user_command(),
        "settings": register_settings_command(),
        "sale": register_sale_command(),
        "approve-sale": register_transition_command(
            "approve-sale", "Confirm a deferred payment and complete the sale.", "--sale-id", sales.approve_sale
        ),
        "reject-sale": register_transition_command(
            "reject-sale", "Reject a sale awaiting payment approval.", "--sale-id", sales.reject_sale
        ),
        "approve-order": register_transition_command(
            "approve-order", "Turn a client order into a proforma.", "--sale-id", sales.approve_client_order
        ),
        "reject-order": register_transition_command(
            "reject-order", "Reject a client order.", "--sale-id", sales.reject_client_order
        ),
        "delete-sale": register_transition_command(
            "delete-sale", "Delete a sale, restoring stock if it was completed.", "--sale-id", sales.delete_sale
        ),
        "adjust-stock": register_adjust_stock_command(),
        "request-withdrawal": register_request_withdrawal_command(),
        "approve-withdrawal": register_transition_command(
            "approve-withdrawal", "Approve a pending withdrawal.", "--withdrawal-id",
            payouts.approve_withdrawal, note_keyword="note",
        ),
        "reject-withdrawal": register_transition_command(
            "reject-withdrawal", "Reject a pending withdrawal.", "--withdrawal-id",
            payouts.reject_withdrawal, note_keyword="note",
        ),
        "pay-withdrawal": register_transition_command(
            "pay-withdrawal", "Mark an approved withdrawal as paid.", "--withdrawal-id",
            payouts.mark_withdrawal_paid, note_keyword="note",
        ),
        "confirm-withdrawal": register_transition_command(
            "confirm-withdrawal", "Confirm receipt of a paid withdrawal.", "--withdrawal-id",
            payouts.confirm_withdrawal_received, note_keyword="note",
        ),
        "initiate-payment": register_initiate_payment_command(),
        "approve-payment": register_transition_command(
            "approve-payment", "Accept a custom payment offered to you.", "--payment-id",
            payouts.approve_custom_payment, note_keyword="note",
        ),
        "reject-payment": register_transition_command(
            "reject-payment", "Decline a custom payment offered to you.", "--payment-id",
            payouts.reject_custom_payment, note_keyword="note",
        ),
        "pay-payment": register_transition_command(
            "pay-payment", "Mark an accepted custom payment as paid.", "--payment-id",
            payouts.mark_custom_payment_paid, note_keyword="note",
        ),
        "confirm-payment": register_transition_command(
            "confirm-payment", "Confirm receipt of a paid custom payment.", "--payment-id",
            payouts.confirm_custom_payment_received, note_keyword="note",
        ),
        "submit-deposit": register_submit_deposit_command(),
        "approve-deposit": register_transition_command(
            "approve-deposit", "Approve a pending deposit.", "--deposit-id", payouts.approve_deposit
        ),
        "reject-deposit": register_transition_command(
            "reject-deposit", "Reject a pending deposit.", "--deposit-id", payouts.reject_deposit
        ),
        "request-expense": register_request_expense_command(),
        "approve-expense": register_transition_command(
            "approve-expense", "Approve an expense request and book it.", "--request-id",
            payouts.approve_expense_request,
        ),
        "reject-expense": register_transition_command(
            "reject-expense", "Reject an expense request.", "--request-id",
            payouts.reject_expense_request, note_keyword="reason",
        ),
        "record-expense": register_record_expense_command(),
        "delete-expense": register_transition_command(
            "delete-expense", "Delete a manually recorded expense.", "--expense-id", ledger.delete_expense
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: Subparsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(),
        "sales": register_sales_command(),
        "expenses": register_expenses_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def parse_line_item(raw: str) -> sales.LineItemCommand:
    """Parse ``PRODUCT=QTY`` or ``PRODUCT:VARIANT=QTY``."""

    target, separator, quantity = raw.partition("=")
    if not separator or not target or not quantity.strip().isdigit():
        raise argparse.ArgumentTypeError(f"Expected PRODUCT[:VARIANT]=QTY, got '{raw}'")
    product_id, _, variant_id = target.partition(":")
    return sales.LineItemCommand(
        product_id=product_id.strip(),
        variant_id=variant_id.strip() or None,
        quantity=int(quantity),
    )


def parse_switch(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in {"on", "true", "yes", "1"}:
        return True
    if lowered in {"off", "false", "no", "0"}:
        return False
    raise argparse.ArgumentTypeError(f"Expected on/off, got '{raw}'")


# ---------------------------------------------------------------------------
# Write commands
# ---------------------------------------------------------------------------


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the catalog."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="General")
        parser.add_argument("--price", required=True)
        parser.add_argument("--cost-price", default="0")
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--commission", default="0", help="Commission percentage earned by sellers.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_customer_command() -> CommandSpec:
    name = "add-customer"
    help_text = "Register a new customer."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_add_user_command() -> CommandSpec:
    name = "add-user"
    help_text = "Register a user; the first user must be the owner."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--role", choices=[member.value for member in Role], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_user)


def register_settings_command() -> CommandSpec:
    name = "settings"
    help_text = "Change the tenant's commission tracking and oversell policies."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--commission-tracking", type=parse_switch, default=None)
        parser.add_argument("--allow-oversell", type=parse_switch, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settings)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale at the counter or a storefront order."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--seller-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_line_item,
            required=True,
            help="Line item as PRODUCT[:VARIANT]=QTY; repeat for several lines.",
        )
        parser.add_argument("--payment-method", default=None)
        parser.add_argument("--discount", default="0")
        parser.add_argument("--tax-rate", default="0")
        parser.add_argument("--remote", action="store_true", help="Record as a storefront client order.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_adjust_stock_command() -> CommandSpec:
    name = "adjust-stock"
    help_text = "Manually add or remove stock with a reason."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--variant-id", default=None)
        parser.add_argument("--direction", choices=[member.value for member in StockDirection], required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_stock)


def register_request_withdrawal_command() -> CommandSpec:
    name = "request-withdrawal"
    help_text = "Request a payout to the acting user."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--source", choices=[member.value for member in WithdrawalSource], required=True)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request_withdrawal)


def register_initiate_payment_command() -> CommandSpec:
    name = "initiate-payment"
    help_text = "Offer a one-off payment to a user."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", required=True)
        parser.add_argument("--notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_initiate_payment)


def register_submit_deposit_command() -> CommandSpec:
    name = "submit-deposit"
    help_text = "Submit a cash deposit for approval."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_submit_deposit)


def register_request_expense_command() -> CommandSpec:
    name = "request-expense"
    help_text = "Ask the business to cover an expense."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_request_expense)


def register_record_expense_command() -> CommandSpec:
    name = "record-expense"
    help_text = "Record a manual expense in the ledger."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record_expense)


def register_transition_command(
    name: str,
    help_text: str,
    id_option: str,
    operation: Callable[..., Any],
    *,
    note_keyword: Optional[str] = None,
) -> CommandSpec:
    """Register a command that moves one record forward by id.

    ``note_keyword`` names the keyword argument the operation accepts for a
    free-text note, if any; the CLI exposes it as ``--note``.
    """
    dest = id_option.lstrip("-").replace("-", "_")

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(id_option, required=True)
        if note_keyword is not None:
            parser.add_argument("--note", default=None)
        parser.set_defaults(command=name)
        return parser

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        actor = resolve_actor(context, args)
        options = {note_keyword: args.note} if note_keyword is not None else {}
        operation(context, actor, getattr(args, dest), **options)
        return 0

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_sales_command() -> CommandSpec:
    name = "sales"
    help_text = "List recorded sales."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in SaleStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_expenses_command() -> CommandSpec:
    name = "expenses"
    help_text = "List ledger expenses."

    def registrar(action: Subparsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expenses_report)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def resolve_actor(context: core_logic.RuntimeContext, args: argparse.Namespace) -> data_manager.User:
    """Look up the user named by ``--actor``.

    Raises:
        AuthorizationDenied: If no actor was given.
        NotFoundError: If the actor is not a registered user.
    """
    actor_id = getattr(args, "actor", None)
    if not actor_id:
        raise core_logic.AuthorizationDenied("This command requires --actor")
    return catalog.get_user(context, actor_id)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translators and executors
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "name": args.name,
        "category": args.category,
        "price": Decimal(args.price),
        "cost_price": Decimal(args.cost_price),
        "stock": args.stock,
        "commission_percentage": Decimal(args.commission),
    }


def translate_sale(args: argparse.Namespace) -> sales.SaleCommand:
    """Translate CLI args into a sale command object."""
    return sales.SaleCommand(
        customer_id=args.customer_id,
        seller_id=args.seller_id,
        items=tuple(args.items),
        payment_method=args.payment_method,
        discount=Decimal(args.discount),
        tax_rate=Decimal(args.tax_rate),
        remote_order=args.remote,
    )


def translate_adjust_stock(args: argparse.Namespace) -> stock.StockAdjustmentCommand:
    return stock.StockAdjustmentCommand(
        product_id=args.product_id,
        variant_id=args.variant_id,
        direction=StockDirection(args.direction),
        quantity=args.quantity,
        reason=args.reason,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    catalog.add_product(context, resolve_actor(context, args), **translate_add_product(args))
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = catalog.add_customer(
        context,
        resolve_actor(context, args),
        name=args.name,
        email=args.email,
        phone=args.phone,
        customer_id=args.customer_id,
    )
    print(customer.customer_id)
    return 0


def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-user workflow; the first user needs no actor."""
    actor = resolve_actor(context, args) if getattr(args, "actor", None) else None
    catalog.add_user(context, actor, user_id=args.user_id, name=args.name, role=Role(args.role))
    return 0


def run_settings(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.update_settings(
        context,
        resolve_actor(context, args),
        commission_tracking_enabled=args.commission_tracking,
        allow_oversell=args.allow_oversell,
    )
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    sale = sales.create_sale(context, resolve_actor(context, args), translate_sale(args))
    print(f"{sale.sale_id}\t{sale.status.value}\t{sale.total}")
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    level = stock.adjust_stock(context, resolve_actor(context, args), translate_adjust_stock(args))
    print(level)
    return 0


def run_request_withdrawal(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    withdrawal = payouts.request_withdrawal(
        context,
        resolve_actor(context, args),
        amount=Decimal(args.amount),
        source=WithdrawalSource(args.source),
        notes=args.notes,
    )
    print(withdrawal.withdrawal_id)
    return 0


def run_initiate_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payment = payouts.initiate_custom_payment(
        context,
        resolve_actor(context, args),
        user_id=args.user_id,
        amount=Decimal(args.amount),
        description=args.description,
        notes=args.notes,
    )
    print(payment.payment_id)
    return 0


def run_submit_deposit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    deposit = payouts.submit_deposit(
        context, resolve_actor(context, args), amount=Decimal(args.amount), description=args.description
    )
    print(deposit.deposit_id)
    return 0


def run_request_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    request = payouts.submit_expense_request(
        context,
        resolve_actor(context, args),
        category=args.category,
        amount=Decimal(args.amount),
        description=args.description,
    )
    print(request.request_id)
    return 0


def run_record_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = ledger.record_expense(
        context,
        resolve_actor(context, args),
        category=args.category,
        amount=Decimal(args.amount),
        description=args.description,
    )
    print(expense.expense_id)
    return 0


def format_stock_report(products: Iterable[data_manager.Product]) -> List[str]:
    lines = []
    for product in sorted(products, key=lambda item: item.product_id):
        lines.append(f"{product.product_id}\t{product.name}\t{product.stock}")
        for variant in product.variants:
            label = ", ".join(f"{attribute.name}={attribute.value}" for attribute in variant.attributes)
            lines.append(f"  {variant.variant_id}\t{label}\t{variant.stock}")
    return lines


def format_sales_report(records: Iterable[data_manager.Sale], status: Optional[SaleStatus] = None) -> List[str]:
    return [
        f"{sale.sale_id}\t{sale.timestamp_iso}\t{sale.status.value}\t{sale.total}"
        for sale in sorted(records, key=lambda item: (item.timestamp_iso, item.sale_id))
        if status is None or sale.status is status
    ]


def format_expenses_report(expenses: Iterable[data_manager.Expense]) -> List[str]:
    return [
        f"{expense.expense_id}\t{expense.date_iso}\t{expense.category}\t{expense.amount}\t{expense.description}"
        for expense in expenses
    ]


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for line in format_stock_report(catalog.list_products(context)):
        print(line)
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    status = SaleStatus(args.status) if args.status else None
    for line in format_sales_report(catalog.list_sales(context), status):
        print(line)
    return 0


def run_expenses_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for line in format_expenses_report(ledger.list_expenses(context, category=args.category)):
        print(line)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            core_logic.persist_context(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
