"""Command-line entry points for the Pedidos ERP toolkit.

This module only wires argparse and turns command-line arguments into the
command objects consumed by the business layer. The same parser
configuration can be reused by tests, scripts or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log

PAYMENT_OPTION_KEYS: Mapping[str, str] = {
    "id": "payment_id",
    "date": "payment_date",
    "description": "description",
    "notes": "notes",
    "payer": "payer",
    "reference": "reference",
    "card": "card",
}


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
        prog="pedidos-cli",
        description="Command-line tools for the Pedidos ERP workbook.",
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
    """Declare mutating CLI commands: confirmation, settlement and payments."""
    specs = {
        "confirm-selection": register_confirm_selection_command(subparsers),
        "settle": register_settle_command(subparsers),
        "pay": register_pay_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as boards and balances."""
    specs = {
        "groups": register_groups_command(subparsers),
        "orders": register_orders_command(subparsers),
        "balance": register_balance_command(subparsers),
        "methods": register_methods_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_amount(raw: str) -> Decimal:
    """``argparse`` type for monetary amounts."""
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw!r}") from exc


def parse_order_date(raw: str) -> date:
    """``argparse`` type for ``YYYY-MM-DD`` dates."""
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {raw!r}") from exc


def parse_payment_argument(raw: str) -> core_logic.ProposedPayment:
    """Parse ``METHOD_ID:AMOUNT[:key=value...]`` into a proposed payment.

    Recognised keys are ``id``, ``date``, ``description``, ``notes``,
    ``payer``, ``reference`` and ``card``. A segment that does not start with
    a recognised ``key=`` belongs to the previous option's value, so values
    may contain colons (``date=2024-06-01T10:30``).
    """
    parts = raw.split(":", 2)
    if len(parts) < 2 or not parts[0].strip():
        raise argparse.ArgumentTypeError(
            f"Invalid payment {raw!r}; expected METHOD_ID:AMOUNT[:key=value...]")
    options: Dict[str, str] = {}
    current: Optional[str] = None
    for item in parts[2].split(":") if len(parts) == 3 else ():
        key, sep, value = item.partition("=")
        if sep and key in PAYMENT_OPTION_KEYS:
            current = PAYMENT_OPTION_KEYS[key]
            options[current] = value
        elif current is not None:
            options[current] = f"{options[current]}:{item}"
        else:
            raise argparse.ArgumentTypeError(f"Invalid payment option {item!r} in {raw!r}")
    return core_logic.ProposedPayment(
        method_id=parts[0].strip(),
        amount=parse_amount(parts[1]),
        **options,
    )


def register_confirm_selection_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``confirm-selection``."""
    name = "confirm-selection"
    help_text = "Move the selected open lines to 'Confirmar y Monitorear'."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--line-id", dest="line_ids", action="append", required=True)
        parser.add_argument(
            "--preview",
            action="store_true",
            help="Only show what would be confirmed.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_confirm_selection)


def register_settle_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``settle``."""
    name = "settle"
    help_text = "Create an order from a confirmation group and record its payments."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--group", required=True, help="Group key, e.g. '12345-Andrea'.")
        parser.add_argument("--order-number", required=True)
        parser.add_argument("--order-date", type=parse_order_date, default=None)
        parser.add_argument("--extra-cost", type=parse_amount, default=None)
        parser.add_argument("--extra-expenses", type=parse_amount, default=None)
        parser.add_argument(
            "--payment",
            dest="payments",
            action="append",
            type=parse_payment_argument,
            default=[],
            help="METHOD_ID:AMOUNT[:key=value...]; repeat for several payments.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_settle)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Register payments against an existing order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument(
            "--payment",
            dest="payments",
            action="append",
            type=parse_payment_argument,
            required=True,
            help="METHOD_ID:AMOUNT[:key=value...]; repeat for several payments.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_groups_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``groups``."""
    name = "groups"
    help_text = "List the lines awaiting confirmation, grouped by order and brand."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_groups_report)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List requested orders with their paid and total amounts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", default=None)
        parser.add_argument("--month", default=None, help="Order month as YYYY-MM.")
        parser.add_argument("--brand", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display the due, paid and outstanding amounts of an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance_report)


def register_methods_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``methods``."""
    name = "methods"
    help_text = "List the configured payment methods."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_methods_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


def translate_settle(args: argparse.Namespace) -> core_logic.SettlementCommand:
    """Translate CLI args into a settlement command object."""
    return core_logic.SettlementCommand(
        order_number=args.order_number,
        order_date=args.order_date,
        extra_cost=args.extra_cost,
        extra_expenses=args.extra_expenses,
        payments=tuple(args.payments or ()),
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentRegistrationCommand:
    """Translate CLI args into a payment registration command object."""
    return core_logic.PaymentRegistrationCommand(
        order_id=args.order_id,
        payments=tuple(args.payments),
    )


def run_confirm_selection(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute (or preview) the selection confirmation workflow."""
    if args.preview:
        summary = core_logic.summarize_selection(context, args.line_ids)
    else:
        summary = core_logic.confirm_selection(context, args.line_ids)
    verb = "Would confirm" if args.preview else "Confirmed"
    print(f"{verb} {summary.confirmed_count} line(s), total cost {summary.total_cost}.")
    if summary.skipped_count:
        print(summary.skip_message)
    return 0


def run_settle(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the BLL."""
    group = core_logic.find_confirmation_group(context, args.group)
    result = core_logic.settle_group(context, group, translate_settle(args))
    print(
        f"Order {result.order_number} ({result.order_id}) created for {result.brand}: "
        f"{result.line_count} line(s), cost {result.total_cost}, "
        f"paid {result.ledger.total_paid}, remaining {result.ledger.remaining}, "
        f"status {result.order_status}."
    )
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment registration workflow via the BLL."""
    result = core_logic.register_payments(context, translate_pay(args))
    print(
        f"Registered {len(result.payment_ids)} payment(s) for {result.order_id}: "
        f"paid {result.amount_paid}, remaining {result.remaining}, status {result.status}."
    )
    return 0


def run_groups_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the confirmation board."""
    for group in core_logic.list_confirmation_groups(context):
        print(f"{group.key}\t{len(group.lines)} line(s)\t{group.total_cost}")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the requested-orders board."""
    entries = core_logic.list_requested_orders(
        context,
        status=args.status,
        month=args.month,
        brand=args.brand,
    )
    for entry in entries:
        flag = "needs payment" if entry.needs_payment else ""
        print(
            f"{entry.order.order_id}\t{entry.order.order_number or ''}\t{entry.order.brand or ''}\t"
            f"{entry.order.status or ''}\t{entry.amount_paid}/{entry.total_cost}\t{flag}".rstrip()
        )
    return 0


def run_balance_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the ledger of one order."""
    balance = core_logic.get_order_balance(context, args.order_id)
    print(f"Due {balance.total_due}, paid {balance.total_paid}, remaining {balance.remaining}.")
    return 0


def run_methods_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the payment methods."""
    for method in core_logic.list_payment_methods(context):
        print(f"{method.method_id}\t{method.name}\t{method.type_tag or ''}")
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


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    Writes that already reached the workbook before a :class:`PartialFailure`
    are saved so the file reflects what actually happened.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except core_logic.PartialFailure as error:
        if context is not None:
            try:
                persist_workbook(context)
            except Exception as persist_error:  # pragma: no cover - reported alongside the original error
                log.error("Could not save partial changes: %s", persist_error)
        return handle_cli_error(error)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
