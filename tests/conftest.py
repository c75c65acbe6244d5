"""Shared pytest fixtures and utilities for retail ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from retail_ledger import authorization, catalog, cli, constants, core_logic, data_manager  # noqa: E402
from retail_ledger.setup_workbook import create_tenant_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_TENANT_ID = "test-shop"
OWNER_ID = "U-OWNER"
CASHIER_ID = "U-CASH"
INVESTOR_ID = "U-INV"
CUSTOMER_ID = "C-1"
FIXED_MOMENT = datetime(2025, 3, 14, 9, 30, tzinfo=UTC)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDirectory = {data_directory}\n"
    "TenantId = {tenant_id}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Policy]\n"
    "AllowOversell = {allow_oversell}\n"
    "CommissionTrackingEnabled = true\n"
    "DeferredPaymentMethods = Bank Transfer, Bank Receipt\n\n"
    "[Persistence]\n"
    "FlushAttempts = 2\n"
    "FlushBackoff = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_directory: Path
    tenant_id: str
    schema_version: str

    @property
    def workbook_path(self) -> Path:
        return self.data_directory / f"{self.tenant_id}.xlsx"


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = True,
        tenant_id: str = DEFAULT_TENANT_ID,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        allow_oversell: bool = True,
        with_workbook: bool = False,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        data_directory = bundle_dir / "data"
        data_directory.mkdir(parents=True, exist_ok=True)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_directory="data" if make_relative else str(data_directory),
                tenant_id=tenant_id,
                schema_version=schema_version,
                allow_oversell="true" if allow_oversell else "false",
            )
        )
        bundle = ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_directory=data_directory.resolve(),
            tenant_id=tenant_id,
            schema_version=schema_version,
        )
        if with_workbook:
            create_tenant_workbook(bundle.workbook_path)
        return bundle

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="retail-ledger", description="Retail ledger CLI")


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser) -> argparse._SubParsersAction:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for in-memory contexts."""

    return data_manager.ConfigSettings(
        data_directory=tmp_path / "data",
        tenant_id=DEFAULT_TENANT_ID,
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        flush_backoff=0.0,
    )


@pytest.fixture
def store() -> data_manager.InMemoryStore:
    return data_manager.InMemoryStore()


@pytest.fixture
def access_gate() -> authorization.RoleAccessGate:
    """Gate granting cashiers the counter and investors their own profile."""

    return authorization.RoleAccessGate(
        roles={
            constants.Role.CASHIER: {
                constants.ResourcePath.COUNTER.value: {"view": True, "add": True},
                constants.ResourcePath.PROFILE.value: {"view": True, "add": True, "edit": True},
                constants.ResourcePath.EXPENSE_REQUESTS.value: {"add": True},
                constants.ResourcePath.TRANSACTIONS.value: {"add": True},
            },
            constants.Role.INVESTOR: {
                constants.ResourcePath.PROFILE.value: {"view": True, "add": True, "edit": True},
            },
        }
    )


@pytest.fixture
def owner() -> data_manager.User:
    return data_manager.User(user_id=OWNER_ID, name="Olivia Owner", role=constants.Role.OWNER)


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    store: data_manager.InMemoryStore,
    access_gate: authorization.RoleAccessGate,
    owner: data_manager.User,
) -> core_logic.RuntimeContext:
    """In-memory runtime context whose tenant already has an owner."""

    context = core_logic.RuntimeContext(settings=settings, store=store, access_gate=access_gate)
    catalog.add_user(context, None, user_id=owner.user_id, name=owner.name, role=owner.role)
    return context


@pytest.fixture
def cashier(context: core_logic.RuntimeContext, owner: data_manager.User) -> data_manager.User:
    return catalog.add_user(context, owner, user_id=CASHIER_ID, name="Casey Cashier", role=constants.Role.CASHIER)


@pytest.fixture
def investor(context: core_logic.RuntimeContext, owner: data_manager.User) -> data_manager.User:
    return catalog.add_user(context, owner, user_id=INVESTOR_ID, name="Ivan Investor", role=constants.Role.INVESTOR)


@pytest.fixture
def seeded_context(
    context: core_logic.RuntimeContext,
    owner: data_manager.User,
    cashier: data_manager.User,
) -> core_logic.RuntimeContext:
    """Context with a small catalog and one customer.

    * ``P``: simple product, stock 10, price 10.00, commission 10%.
    * ``Q``: simple product, stock 12, price 5.00, tier 4.50 from 10 units.
    * ``T``: variant product with ``V`` (size=M, stock 5, price 20.00) and
      ``W`` (size=L, stock 7, price 22.00); 12 units in total.
    """

    catalog.add_product(
        context,
        owner,
        product_id="P",
        name="Plain Tee",
        category="Apparel",
        price=Decimal("10.00"),
        cost_price=Decimal("6.00"),
        stock=10,
        commission_percentage=Decimal("10"),
    )
    catalog.add_product(
        context,
        owner,
        product_id="Q",
        name="Socks",
        category="Apparel",
        price=Decimal("5.00"),
        cost_price=Decimal("2.00"),
        stock=12,
        tiered_pricing=[data_manager.PriceTier(quantity=10, price=Decimal("4.50"))],
    )
    catalog.add_product(
        context,
        owner,
        product_id="T",
        name="Hoodie",
        category="Apparel",
        price=Decimal("20.00"),
        cost_price=Decimal("12.00"),
        commission_percentage=Decimal("5"),
        variants=[
            data_manager.Variant(
                variant_id="V",
                attributes=(data_manager.VariantAttribute("size", "M"),),
                price=Decimal("20.00"),
                cost_price=Decimal("12.00"),
                stock=5,
            ),
            data_manager.Variant(
                variant_id="W",
                attributes=(data_manager.VariantAttribute("size", "L"),),
                price=Decimal("22.00"),
                cost_price=Decimal("13.00"),
                stock=7,
            ),
        ],
    )
    catalog.add_customer(context, owner, name="Carla Customer", customer_id=CUSTOMER_ID)
    return context


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime = FIXED_MOMENT) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
