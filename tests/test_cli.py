"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Mapping

import pytest

from pedidos_erp import cli, constants, core_logic, data_manager, ledger


WRITE_COMMANDS = {
    "confirm-selection",
    "settle",
    "pay",
}

READ_COMMANDS = {
    "groups",
    "orders",
    "balance",
    "methods",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "pedidos-cli"
    assert "Pedidos" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    choices = _registered_choices(cli_parser)
    for name in WRITE_COMMANDS | READ_COMMANDS:
        assert name in command_table
        assert name in choices


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert spec.name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _parse(argv):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(argv)


def test_settle_command_configures_arguments():
    namespace = _parse(
        [
            "settle",
            "--group",
            "12345-Andrea",
            "--order-number",
            "12345",
            "--order-date",
            "2024-06-01",
            "--extra-cost",
            "50",
            "--payment",
            "recCash:600:payer=CANA",
            "--payment",
            "recVales:100:reference=V-9:notes=segundo",
        ]
    )

    assert namespace.command == "settle"
    assert namespace.group == "12345-Andrea"
    assert namespace.order_date == date(2024, 6, 1)
    assert namespace.extra_cost == Decimal("50")
    assert namespace.extra_expenses is None
    first, second = namespace.payments
    assert first == core_logic.ProposedPayment("recCash", Decimal("600"), payer="CANA")
    assert second.reference == "V-9"
    assert second.notes == "segundo"


def test_pay_command_requires_a_payment():
    with pytest.raises(SystemExit):
        _parse(["pay", "--order-id", "recO"])


def test_confirm_selection_collects_line_ids():
    namespace = _parse(["confirm-selection", "--line-id", "recA", "--line-id", "recB", "--preview"])

    assert namespace.line_ids == ["recA", "recB"]
    assert namespace.preview is True


def test_orders_command_filters():
    namespace = _parse(["orders", "--month", "2024-06", "--brand", "Avon"])

    assert namespace.month == "2024-06"
    assert namespace.brand == "Avon"
    assert namespace.status is None


@pytest.mark.parametrize("raw", ["recCash", ":10", "recCash:abc", "recCash:10:color=rojo", "recCash:10:payer"])
def test_parse_payment_argument_rejects_malformed_values(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_payment_argument(raw)


def test_parse_payment_argument_keeps_colons_inside_option_values():
    payment = cli.parse_payment_argument(
        "recCash:25.50:date=2024-06-01T10:30:00:notes=ver: caja 2:payer=CANA")

    assert payment.method_id == "recCash"
    assert payment.amount == Decimal("25.50")
    assert payment.payment_date == "2024-06-01T10:30:00"
    assert payment.notes == "ver: caja 2"
    assert payment.payer == "CANA"


def test_parse_order_date_rejects_bad_dates():
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_order_date("01/06/2024")


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == tmp_path / "config.ini"
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


def test_dispatch_command_invokes_executor(context):
    called = {}

    def execute(ctx, args):
        called["args"] = args
        return 0

    spec = cli.CommandSpec("probe", "help", lambda sub: sub.add_parser("probe"), execute)
    args = argparse.Namespace(command="probe")

    assert cli.dispatch_command(context, args, {"probe": spec}) == 0
    assert called["args"] is args


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Translation and executors
# ---------------------------------------------------------------------------


def test_translate_settle_returns_settlement_command():
    payment = core_logic.ProposedPayment("recM", Decimal("10"))
    args = argparse.Namespace(
        order_number="77",
        order_date=date(2024, 6, 1),
        extra_cost=Decimal("5"),
        extra_expenses=None,
        payments=[payment],
    )

    command = cli.translate_settle(args)

    assert command == core_logic.SettlementCommand(
        order_number="77",
        order_date=date(2024, 6, 1),
        extra_cost=Decimal("5"),
        extra_expenses=None,
        payments=(payment,),
    )


def test_translate_pay_returns_registration_command():
    payment = core_logic.ProposedPayment("recM", Decimal("10"))
    command = cli.translate_pay(argparse.Namespace(order_id="recO", payments=[payment]))

    assert command.order_id == "recO"
    assert command.payments == (payment,)


def test_run_settle_resolves_group_and_invokes_bll(context, monkeypatch, capsys):
    group = ledger.OrderLineGroup(order_number="77", brand="Avon")
    summary = ledger.LedgerSummary(Decimal("10"), Decimal("10"), Decimal("0"))
    result = core_logic.SettlementResult(
        order_id="recO",
        order_number="77",
        brand="Avon",
        line_count=1,
        total_cost=Decimal("10"),
        order_status="Pagado",
        line_status="Pendiente de Pago",
        ledger=summary,
    )
    calls = {}

    def fake_find(ctx, key):
        calls["key"] = key
        return group

    def fake_settle(ctx, grp, command):
        calls["group"] = grp
        calls["command"] = command
        return result

    monkeypatch.setattr(core_logic, "find_confirmation_group", fake_find)
    monkeypatch.setattr(core_logic, "settle_group", fake_settle)
    args = argparse.Namespace(
        group="77-Avon", order_number="77", order_date=None, extra_cost=None, extra_expenses=None, payments=[])

    assert cli.run_settle(context, args) == 0
    assert calls["key"] == "77-Avon"
    assert calls["group"] is group
    assert calls["command"].order_number == "77"
    assert "recO" in capsys.readouterr().out


def test_run_confirm_selection_preview_does_not_write(context, monkeypatch, capsys):
    summary = core_logic.SelectionSummary(confirmed_count=1, total_cost=Decimal("3"), skipped_count=2)
    monkeypatch.setattr(core_logic, "summarize_selection", lambda ctx, ids: summary)
    monkeypatch.setattr(
        core_logic, "confirm_selection", lambda *_, **__: pytest.fail("preview must not confirm"))

    exit_code = cli.run_confirm_selection(context, argparse.Namespace(line_ids=["a", "b", "c"], preview=True))

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Would confirm 1 line(s)" in output
    assert "2 record(s) skipped" in output


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.ValidationError("order number required"), 2),
        (core_logic.PartialFailure("partial", step="lines", succeeded=1, attempted=2), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_handles_read_only_workbooks(context, monkeypatch):
    """persist_workbook should convert permission problems into RuntimeError."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv and persist."""

    parser = _stub_parser(command="groups")
    command_table = {"groups": cli.CommandSpec("groups", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    exit_code = cli.main(["groups"])
    assert exit_code == 0
    assert called["context"] is runtime_context
    assert called["persisted"] is runtime_context
    assert called["args"].command == "groups"


def test_main_handles_bll_errors_without_persisting(monkeypatch, runtime_context):
    parser = _stub_parser(command="settle")
    command_table = {"settle": cli.CommandSpec("settle", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.ValidationError("order number required")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["settle"]) == 2


def test_main_persists_partial_failures(monkeypatch, runtime_context):
    """Writes made before a partial failure are saved and the exit code is 2."""

    parser = _stub_parser(command="settle")
    command_table = {"settle": cli.CommandSpec("settle", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.PartialFailure("order created", step="payments", succeeded=0, attempted=1)

    persisted = {}
    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: persisted.setdefault("context", ctx))

    assert cli.main(["settle"]) == 2
    assert persisted["context"] is runtime_context


def test_main_reports_missing_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert cli.main(["--config", str(tmp_path / "absent.ini"), "groups"]) == 3


def test_main_runs_against_real_workbook(config_file, capsys):
    """The methods report lists the seeded payment methods."""

    exit_code = cli.main(["--config", str(config_file), "methods"])

    output = capsys.readouterr().out
    assert exit_code == 0
    for type_tag in ("Efectivo", "Vales", "Transferencia"):
        assert type_tag in output


def test_main_settle_and_balance_end_to_end(config_file, capsys):
    """Settle a group through the CLI, then read its balance back from disk."""

    context = core_logic.load_runtime_context(config_file)
    for cost in ("300", "200"):
        data_manager.create_record(
            context.workbook,
            constants.TableName.ORDER_LINES,
            {
                constants.LineField.STATUS: constants.Status.AWAITING_CONFIRMATION,
                constants.LineField.ORDER_NUMBER: "900",
                constants.LineField.BRAND: "Avon",
                constants.LineField.COST: Decimal(cost),
            },
        )
    cash = next(m.method_id for m in core_logic.list_payment_methods(context) if m.type_tag == "Efectivo")
    core_logic.persist_context(context)

    exit_code = cli.main(
        ["--config", str(config_file), "settle", "--group", "900-Avon", "--order-number", "900",
         "--payment", f"{cash}:200:payer=CANA"]
    )
    assert exit_code == 0

    reloaded = core_logic.load_runtime_context(config_file)
    (order,) = data_manager.iter_orders(reloaded.workbook)
    capsys.readouterr()

    assert cli.main(["--config", str(config_file), "balance", "--order-id", order.order_id]) == 0
    assert "remaining 300" in capsys.readouterr().out
    assert order.status == constants.Status.PARTIALLY_PAID.value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            parsed = argparse.Namespace(command=command)
            return parsed

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
