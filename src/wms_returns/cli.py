"""Command-line entry points for the warehouse returns engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the business
layer. Keeping the CLI thin means the same parser configuration can be reused
by tests, scripts, or any other front end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import DispositionReason, Mode, PaymentMethod
from .errors import EngineError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="wms-cli",
        description="Return, exchange, and void invoices in the warehouse workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "return": register_mode_command(subparsers, Mode.RETURN, "Return items from an invoice."),
        "exchange": register_mode_command(subparsers, Mode.EXCHANGE, "Exchange defective items from an invoice."),
        "void": register_void_command(subparsers),
        "dispose": register_dispose_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "invoice": register_invoice_command(subparsers),
        "defects": register_defects_command(subparsers),
        "products": register_products_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item_spec(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID:AMOUNT`` into its parts for argparse ``type=``."""
    product_id, sep, amount_raw = raw.rpartition(":")
    if not sep or not product_id:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:AMOUNT, got '{raw}'")
    try:
        amount = int(amount_raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Amount must be a whole number in '{raw}'") from exc
    return product_id, amount


def register_mode_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    mode: Mode,
    help_text: str,
) -> CommandSpec:
    """Register the parser and executor for ``return`` or ``exchange``."""
    name = mode.value

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice", required=True, dest="invoice_number")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item_spec,
            required=True,
            metavar="PRODUCT_ID:AMOUNT",
        )
        parser.set_defaults(command=name, mode=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mode)


def register_void_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``void``."""
    name = "void"
    help_text = "Void an invoice, optionally staging a replacement sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice", required=True, dest="invoice_number")
        parser.add_argument(
            "--replace",
            dest="replacement_items",
            action="append",
            type=parse_item_spec,
            default=None,
            metavar="PRODUCT_ID:AMOUNT",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
        )
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_void)


def register_dispose_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dispose``."""
    name = "dispose"
    help_text = "Send a broken product back to the supplier or to a painter."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--broken-id", required=True)
        parser.add_argument(
            "--reason",
            choices=[member.value for member in DispositionReason],
            required=True,
        )
        parser.add_argument("--painter", dest="painter_name", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dispose)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Show an invoice and its lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--invoice", required=True, dest="invoice_number")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice_report)


def register_defects_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``defects``."""
    name = "defects"
    help_text = "List broken products, optionally filtered."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_defects_report)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "Search stock by brand prefix."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations.

    Without ``--config`` the data layer searches upward from the working
    directory for ``config.ini``. The schema version is checked before any
    command runs.
    """
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


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


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_mode(args: argparse.Namespace) -> core_logic.EngineCommand:
    """Translate CLI args into a return or exchange command object."""
    items = [core_logic.SelectedItem(product_id=pid, amount=amount) for pid, amount in args.items]
    return core_logic.build_command(args.mode, args.invoice_number, items)


def translate_void(args: argparse.Namespace) -> core_logic.VoidCommand:
    """Translate CLI args into a void command object."""
    replacement = None
    if args.replacement_items:
        if args.payment_method is None:
            raise EngineError("--payment-method is required when staging a replacement")
        replacement = core_logic.ReplacementTransaction(
            payment_method=PaymentMethod(args.payment_method),
            items=tuple(
                core_logic.ReplacementItem(product_id=pid, amount=amount)
                for pid, amount in args.replacement_items
            ),
            customer_id=args.customer_id,
        )
    return core_logic.VoidCommand(invoice_number=args.invoice_number, replacement=replacement)


def run_mode(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a return or exchange via the BLL."""
    command = translate_mode(args)
    core_logic.run_command(context, command)
    return 0


def run_void(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the void workflow via the BLL."""
    command = translate_void(args)
    core_logic.record_void(context, command)
    return 0


def run_dispose(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a broken-product disposition via the BLL."""
    core_logic.dispose(context, args.broken_id, args.reason, args.painter_name)
    return 0


def run_invoice_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one invoice."""
    invoice = core_logic.find_invoice(context, args.invoice_number)
    print(f"{invoice.invoice_id}  {invoice.customer_name}  {invoice.payment_method}  total={invoice.total_price}")
    for line in invoice.items:
        flag = " (returned)" if line.is_returned else ""
        print(f"  {line.product_id}  {line.product_name}  {line.amount} x {line.price}{flag}")
    return 0


def run_defects_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print broken products matching the search."""
    for record in core_logic.find_defective_stock(context, args.search):
        print(format_identity(record) + f"  count={record.count}  [{record.broken_id}]")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock records whose brand matches the search prefix."""
    for record in core_logic.search_products(context, args.search):
        print(format_identity(record) + f"  count={record.count}  price={record.sell_price}  [{record.stock_id}]")
    return 0


def format_identity(record: data_manager.StockRecord | data_manager.BrokenProductRecord) -> str:
    return " / ".join(
        (record.brand, record.motor_type, record.part, record.available_color, record.warehouse_position)
    )


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, EngineError):
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
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
