"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from typing import Iterable

import pytest

from retail_ledger import cli, core_logic, data_manager, sales
from retail_ledger.constants import Role, SaleStatus, StockDirection


WRITE_COMMANDS = {
    "add-product",
    "add-customer",
    "add-user",
    "settings",
    "sale",
    "approve-sale",
    "reject-sale",
    "approve-order",
    "reject-order",
    "delete-sale",
    "adjust-stock",
    "request-withdrawal",
    "approve-withdrawal",
    "reject-withdrawal",
    "pay-withdrawal",
    "confirm-withdrawal",
    "initiate-payment",
    "approve-payment",
    "reject-payment",
    "pay-payment",
    "confirm-payment",
    "submit-deposit",
    "approve-deposit",
    "reject-deposit",
    "request-expense",
    "approve-expense",
    "reject-expense",
    "record-expense",
    "delete-expense",
}

READ_COMMANDS = {"stock", "sales", "expenses"}


def _registered_choices(parser: argparse.ArgumentParser) -> Iterable[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()

    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "retail-ledger"
    args = parser.parse_args(["--actor", "U-1"])
    assert args.actor == "U-1"
    assert args.config is None


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert set(_registered_choices(cli_parser)) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name == name
        assert callable(spec.execute)


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_unknown_raises(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)

    with pytest.raises(KeyError):
        cli.dispatch_command(None, argparse.Namespace(command="delta"), table)
    assert cli.dispatch_command(None, argparse.Namespace(command="alpha"), table) == 0


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("P=3", sales.LineItemCommand(product_id="P", quantity=3)),
        ("T:V=2", sales.LineItemCommand(product_id="T", quantity=2, variant_id="V")),
    ],
)
def test_parse_line_item(raw, expected):
    assert cli.parse_line_item(raw) == expected


@pytest.mark.parametrize("raw", ["P", "P=", "=3", "P=two", "P=-1"])
def test_parse_line_item_rejects_malformed(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_line_item(raw)


def test_parse_switch():
    assert cli.parse_switch("ON") is True
    assert cli.parse_switch("false") is False
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_switch("maybe")


def test_translate_sale_builds_command():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        [
            "sale",
            "--customer-id", "C-1",
            "--seller-id", "U-1",
            "--item", "P=2",
            "--item", "T:V=1",
            "--payment-method", "Bank Transfer",
            "--discount", "1.50",
            "--remote",
        ]
    )

    command = cli.translate_sale(args)

    assert command.items == (
        sales.LineItemCommand("P", 2),
        sales.LineItemCommand("T", 1, "V"),
    )
    assert command.discount == Decimal("1.50")
    assert command.tax_rate == Decimal("0")
    assert command.remote_order is True
    assert command.payment_method == "Bank Transfer"


def test_translate_adjust_stock_builds_command():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    args = parser.parse_args(
        ["adjust-stock", "--product-id", "P", "--direction", "remove", "--quantity", "2", "--reason", "damaged"]
    )

    command = cli.translate_adjust_stock(args)

    assert command.direction is StockDirection.REMOVE
    assert command.quantity == 2
    assert command.variant_id is None


def test_resolve_actor_requires_flag(context):
    with pytest.raises(core_logic.AuthorizationDenied):
        cli.resolve_actor(context, argparse.Namespace(actor=None))
    with pytest.raises(core_logic.NotFoundError):
        cli.resolve_actor(context, argparse.Namespace(actor="U-ghost"))
    assert cli.resolve_actor(context, argparse.Namespace(actor="U-OWNER")).role is Role.OWNER


def test_format_sales_report_filters_by_status():
    def _sale(sale_id, status, stamp):
        return data_manager.Sale(
            sale_id=sale_id,
            timestamp_iso=stamp,
            items=(),
            customer_id="C",
            seller_id="U",
            subtotal=Decimal("1"),
            tax=Decimal("0"),
            discount=Decimal("0"),
            total=Decimal("1"),
            payment_method=None,
            status=status,
        )

    records = [
        _sale("s2", SaleStatus.COMPLETED, "2025-01-02"),
        _sale("s1", SaleStatus.COMPLETED, "2025-01-01"),
        _sale("s3", SaleStatus.REJECTED, "2025-01-03"),
    ]

    lines = cli.format_sales_report(records, SaleStatus.COMPLETED)

    assert [line.split("\t")[0] for line in lines] == ["s1", "s2"]


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (core_logic.InvalidTransition("no"), 2),
        (core_logic.AuthorizationDenied("no"), 2),
        (FileNotFoundError("config.ini"), 3),
        (core_logic.PersistenceError("disk"), 1),
        (ValueError("bad"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "stock"]) == 3


def test_main_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="0.1")

    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1
