"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from typing import Iterable, Mapping

import pytest

from wms_returns import cli, constants, core_logic, data_manager
from wms_returns.errors import EngineError, InvalidSelection
from wms_returns.setup_workbook import create_master_workbook

from conftest import make_broken, make_invoice, make_stock


WRITE_COMMANDS = {"return", "exchange", "void", "dispose"}
READ_COMMANDS = {"invoice", "defects", "products"}


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "wms-cli"
    assert "invoice" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all sub-commands onto the parser."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())
    assert WRITE_COMMANDS <= set(subparsers_action.choices)


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert READ_COMMANDS <= set(subparsers_action.choices)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("P1:2", ("P1", 2)),
        ("SKU:42:3", ("SKU:42", 3)),
    ],
)
def test_parse_item_spec_splits_on_last_colon(raw, expected):
    assert cli.parse_item_spec(raw) == expected


@pytest.mark.parametrize("raw", ["P1", ":2", "P1:two"])
def test_parse_item_spec_rejects_malformed_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item_spec(raw)


def test_register_mode_command_configures_arguments():
    """register_mode_command should accept an invoice and repeated items."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = cli.register_mode_command(subparsers, constants.Mode.RETURN, "Return items")
    spec.register(subparsers)

    namespace = parser.parse_args(["return", "--invoice", "INV-001", "--item", "P1:2", "--item", "P2:1"])

    assert spec.name == "return"
    assert namespace.invoice_number == "INV-001"
    assert namespace.items == [("P1", 2), ("P2", 1)]
    assert namespace.mode == "return"


def test_register_mode_command_requires_items():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_mode_command(subparsers, constants.Mode.EXCHANGE, "Exchange").register(subparsers)

    with pytest.raises(SystemExit):
        parser.parse_args(["exchange", "--invoice", "INV-001"])


def test_register_void_command_configures_arguments():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_void_command(subparsers).register(subparsers)

    namespace = parser.parse_args(
        [
            "void",
            "--invoice",
            "INV-001",
            "--replace",
            "P1:1",
            "--payment-method",
            "Cashless",
            "--customer-id",
            "C1",
        ]
    )

    assert namespace.replacement_items == [("P1", 1)]
    assert namespace.payment_method == "Cashless"
    assert namespace.customer_id == "C1"


def test_register_dispose_command_limits_reasons():
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    cli.register_dispose_command(subparsers).register(subparsers)

    namespace = parser.parse_args(["dispose", "--broken-id", "BP1", "--reason", "painter", "--painter", "Budi"])
    assert namespace.broken_id == "BP1"
    assert namespace.painter_name == "Budi"

    with pytest.raises(SystemExit):
        parser.parse_args(["dispose", "--broken-id", "BP1", "--reason", "landfill"])


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def test_translate_mode_builds_command():
    args = argparse.Namespace(mode="exchange", invoice_number="INV-001", items=[("P1", 2)])

    command = cli.translate_mode(args)

    assert command == core_logic.ExchangeCommand(
        invoice_number="INV-001",
        items=(core_logic.SelectedItem(product_id="P1", amount=2),),
    )


def test_translate_void_without_replacement():
    args = argparse.Namespace(invoice_number="INV-001", replacement_items=None, payment_method=None, customer_id=None)

    assert cli.translate_void(args) == core_logic.VoidCommand(invoice_number="INV-001")


def test_translate_void_with_replacement():
    args = argparse.Namespace(
        invoice_number="INV-001",
        replacement_items=[("P2", 3)],
        payment_method="Cash",
        customer_id="C9",
    )

    command = cli.translate_void(args)

    assert command.replacement.payment_method is constants.PaymentMethod.CASH
    assert command.replacement.items == (core_logic.ReplacementItem(product_id="P2", amount=3),)
    assert command.replacement.customer_id == "C9"


def test_translate_void_requires_payment_method_for_replacement():
    args = argparse.Namespace(invoice_number="INV-001", replacement_items=[("P2", 3)], payment_method=None, customer_id=None)

    with pytest.raises(EngineError, match="--payment-method"):
        cli.translate_void(args)


# ---------------------------------------------------------------------------
# Command table and dispatch
# ---------------------------------------------------------------------------


def test_build_command_table_indexes_by_name(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    with pytest.raises(ValueError, match="Duplicate"):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_invokes_executor(context):
    called = {}

    def fake_execute(ctx: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["context"] = ctx
        return 7

    table = {"alpha": cli.CommandSpec("alpha", "help", lambda _: None, fake_execute)}

    assert cli.dispatch_command(context, argparse.Namespace(command="alpha"), table) == 7
    assert called["context"] is context


def test_dispatch_command_rejects_unknown_command(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="missing"), {})


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_mode_invokes_bll(context, monkeypatch):
    command = core_logic.ReturnCommand(invoice_number="INV-001", items=())
    monkeypatch.setattr(cli, "translate_mode", lambda value: command)
    called = {}

    def fake_run(ctx: core_logic.RuntimeContext, cmd: core_logic.EngineCommand) -> None:
        called["cmd"] = cmd

    monkeypatch.setattr(cli.core_logic, "run_command", fake_run)

    assert cli.run_mode(context, argparse.Namespace()) == 0
    assert called["cmd"] is command


def test_run_void_invokes_bll(context, monkeypatch):
    command = core_logic.VoidCommand(invoice_number="INV-001")
    monkeypatch.setattr(cli, "translate_void", lambda value: command)
    called = {}

    def fake_record(ctx: core_logic.RuntimeContext, cmd: core_logic.VoidCommand) -> None:
        called["cmd"] = cmd

    monkeypatch.setattr(cli.core_logic, "record_void", fake_record)

    assert cli.run_void(context, argparse.Namespace()) == 0
    assert called["cmd"] is command


def test_run_dispose_passes_reason_and_painter(context, monkeypatch):
    called = {}

    def fake_dispose(ctx, broken_id, reason, painter_name=None):
        called.update(broken_id=broken_id, reason=reason, painter_name=painter_name)

    monkeypatch.setattr(cli.core_logic, "dispose", fake_dispose)
    args = argparse.Namespace(broken_id="BP1", reason="painter", painter_name="Budi")

    assert cli.run_dispose(context, args) == 0
    assert called == {"broken_id": "BP1", "reason": "painter", "painter_name": "Budi"}


def test_run_defects_report_prints_matches(context, seed, capsys):
    seed(make_broken("BP1", count=4))

    assert cli.run_defects_report(context, argparse.Namespace(search="fender")) == 0

    output = capsys.readouterr().out
    assert "Honda / Beat / Front Fender / Red / Gudang Jadi" in output
    assert "count=4" in output
    assert "[BP1]" in output


def test_run_invoice_report_flags_returned_lines(context, monkeypatch, capsys):
    invoice = make_invoice()
    monkeypatch.setattr(cli.core_logic, "find_invoice", lambda ctx, number: invoice)

    assert cli.run_invoice_report(context, argparse.Namespace(invoice_number="INV-001")) == 0

    output = capsys.readouterr().out
    assert "INV-001" in output
    assert "total=5000" in output
    assert "(returned)" not in output


def test_run_products_report_invokes_bll(context, monkeypatch):
    called = {}

    def fake_search(ctx: core_logic.RuntimeContext, text: str) -> list[object]:
        called["text"] = text
        return []

    monkeypatch.setattr(cli.core_logic, "search_products", fake_search)

    assert cli.run_products_report(context, argparse.Namespace(search="Hon")) == 0
    assert called["text"] == "Hon"


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (InvalidSelection("invalid"), 2),
        (EngineError("invalid"), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_human_readable_message(caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    cli.handle_cli_error(InvalidSelection("No items selected"))
    assert any("No items selected" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, context):
    """main should execute the command parsed from argv."""

    parser = _stub_parser(command="return")
    command_table = {"return": cli.CommandSpec("return", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    called = {}

    def fake_dispatch(ctx: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = ctx
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    assert cli.main(["return"]) == 0
    assert called["context"] is context
    assert called["args"].command == "return"


def test_main_handles_engine_errors(monkeypatch, context):
    """main should surface engine errors as non-zero exits."""

    parser = _stub_parser(command="void")
    command_table = {"void": cli.CommandSpec("void", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    def fake_dispatch(*_: object) -> int:
        raise InvalidSelection("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    assert cli.main(["void"]) == 99
    assert isinstance(handled["error"], InvalidSelection)


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "defects"]) == 3


def test_main_runs_return_against_workbook(config_file, capsys):
    """A full CLI round trip against a bootstrapped workbook."""

    context = core_logic.load_runtime_context(config_file)
    context.store.set("product", data_manager.serialize_stock(make_stock()))
    context.store.set("invoice", data_manager.serialize_invoice(make_invoice()))

    exit_code = cli.main(["--config", str(config_file), "return", "--invoice", "INV-001", "--item", "P1:2"])
    assert exit_code == 0

    cli.main(["--config", str(config_file), "invoice", "--invoice", "INV-001"])
    output = capsys.readouterr().out
    assert "total=3000" in output
    assert "(returned)" in output

    reloaded = core_logic.load_runtime_context(config_file)
    assert core_logic.find_invoice(reloaded, "INV-001").total_price == Decimal("3000")



def _seed_file_workbook(config_path) -> None:
    context = core_logic.load_runtime_context(config_path)
    context.store.set("product", data_manager.serialize_stock(make_stock()))
    context.store.set("invoice", data_manager.serialize_invoice(make_invoice()))


def test_main_refuses_config_with_other_schema_version(config_factory):
    bundle = config_factory(schema_version="9.9.9")
    _seed_file_workbook(bundle.config_path)

    exit_code = cli.main(["--config", str(bundle.config_path), "return", "--invoice", "INV-001", "--item", "P1:2"])

    assert exit_code == 1
    untouched = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.find_invoice(untouched, "INV-001").total_price == Decimal("5000")
    assert core_logic.list_broken_products(untouched) == []


def test_main_refuses_workbook_with_other_schema_version(config_factory):
    bundle = config_factory()
    create_master_workbook(bundle.workbook_path, schema_version="0.1.0", overwrite=True)
    _seed_file_workbook(bundle.config_path)

    exit_code = cli.main(["--config", str(bundle.config_path), "exchange", "--invoice", "INV-001", "--item", "P1:1"])

    assert exit_code == 1
    untouched = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_stock(untouched, "P1").count == 10


def test_main_discovers_config_in_parent_directory(config_factory, monkeypatch, capsys):
    """Without --config the search walks up from the working directory."""

    bundle = config_factory()
    _seed_file_workbook(bundle.config_path)
    nested = bundle.directory / "reports" / "october"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert cli.main(["invoice", "--invoice", "INV-001"]) == 0
    assert "INV-001" in capsys.readouterr().out

    context = cli.load_runtime_context()
    assert context.settings.data_file.resolve() == bundle.workbook_path.resolve()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
