"""Command-line entry points for the BusiCode toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the calls and command objects consumed by the
business layer, and printing what comes back. Keeping the CLI thin ensures
the same parser configuration can be reused by tests, scripts, or any other
front-end that wants to expose the package capabilities.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import HISTORY_PREVIEW_SIZE, BalanceAction
from .domain import BusinessRuleViolation, format_money


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="busicode-cli",
        description="Command-line tools for the BusiCode classroom economy workbook.",
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


def _spec(
    name: str,
    help_text: str,
    arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    writes: bool,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, writes=writes)


def register_write_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as company creation and sales."""
    specs = {
        "add-class": register_add_class_command(),
        "delete-class": register_delete_class_command(),
        "add-student": register_add_student_command(),
        "import-students": register_import_students_command(),
        "balance": register_balance_command(),
        "create-company": register_create_company_command(),
        "delete-company": register_delete_company_command(),
        "set-members": register_set_members_command(),
        "expense": register_expense_command(),
        "revenue": register_revenue_command(),
        "distribute": register_distribute_command(),
        "launch-product": register_launch_product_command(),
        "set-price": register_set_price_command(),
        "sale": register_sale_command(),
        "remove-product": register_remove_product_command(),
        "restore": register_restore_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "classes": register_classes_command(),
        "companies": register_companies_command(),
        "history": register_history_command(),
        "summary": register_summary_command(),
        "products": register_products_command(),
        "backup": register_backup_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# -- write command registration -------------------------------------------------


def register_add_class_command() -> CommandSpec:
    """Register the parser and executor for ``add-class``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)

    return _spec("add-class", "Create a new class.", arguments, run_add_class, writes=True)


def register_delete_class_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--class-id", required=True)

    return _spec(
        "delete-class",
        "Delete a class with its students, companies and products.",
        arguments,
        run_delete_class,
        writes=True,
    )


def register_add_student_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--class-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--initial-balance", default=None, help="Defaults to [Defaults] InitialBalance.")

    return _spec("add-student", "Enroll a student in a class.", arguments, run_add_student, writes=True)


def register_import_students_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--class-id", required=True)
        source = parser.add_mutually_exclusive_group(required=True)
        source.add_argument("--names", help="Comma-separated student names.")
        source.add_argument("--file", type=Path, help="Text file with comma-separated names.")
        parser.add_argument("--initial-balance", default=None)

    return _spec(
        "import-students",
        "Enroll several students at once from comma-separated names.",
        arguments,
        run_import_students,
        writes=True,
    )


def register_balance_command() -> CommandSpec:
    """Register the parser and executor for ``balance``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--student-id")
        target.add_argument("--class-id", help="Apply the adjustment to every student of the class.")
        parser.add_argument("--action", choices=[member.value for member in BalanceAction], required=True)
        parser.add_argument("--amount", required=True)

    return _spec("balance", "Add to or remove from student balances.", arguments, run_balance, writes=True)


def register_create_company_command() -> CommandSpec:
    """Register the parser and executor for ``create-company``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--class-id", required=True)
        parser.add_argument(
            "--member",
            action="append",
            required=True,
            metavar="STUDENT_ID=AMOUNT",
            help="Member and optional contribution; repeat for each member.",
        )

    return _spec(
        "create-company",
        "Found a company from student contributions.",
        arguments,
        run_create_company,
        writes=True,
    )


def register_delete_company_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", required=True)

    return _spec("delete-company", "Delete a company and its products.", arguments, run_delete_company, writes=True)


def register_set_members_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", required=True)
        parser.add_argument("--student-id", action="append", required=True, dest="student_ids")

    return _spec("set-members", "Replace the members of a company.", arguments, run_set_members, writes=True)


def _ledger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--company-id", required=True)
    parser.add_argument("--description", required=True)
    parser.add_argument("--amount", required=True)


def register_expense_command() -> CommandSpec:
    return _spec("expense", "Record a company expense.", _ledger_arguments, run_expense, writes=True)


def register_revenue_command() -> CommandSpec:
    return _spec("revenue", "Record a company revenue.", _ledger_arguments, run_revenue, writes=True)


def register_distribute_command() -> CommandSpec:
    """Register the parser and executor for ``distribute``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", required=True)
        parser.add_argument("--student-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default=None)

    return _spec("distribute", "Distribute company profit to a student.", arguments, run_distribute, writes=True)


def register_launch_product_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)

    return _spec("launch-product", "Launch a product for a company.", arguments, run_launch_product, writes=True)


def register_set_price_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--price", required=True)

    return _spec("set-price", "Change the price of a product.", arguments, run_set_price, writes=True)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--units", required=True)

    return _spec("sale", "Record units sold of a product.", arguments, run_sale, writes=True)


def register_remove_product_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)

    return _spec("remove-product", "Remove a product.", arguments, run_remove_product, writes=True)


def register_restore_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--input", type=Path, required=True, help="JSON snapshot produced by 'backup'.")

    return _spec("restore", "Replace all data with a JSON snapshot.", arguments, run_restore, writes=True)


# -- read command registration --------------------------------------------------


def register_classes_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        pass

    return _spec("classes", "List classes and student balances.", arguments, run_classes_report, writes=False)


def register_companies_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--class-id", default=None)

    return _spec("companies", "List companies and their cash.", arguments, run_companies_report, writes=False)


def register_history_command() -> CommandSpec:
    """Register the parser and executor for ``history``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", required=True)
        parser.add_argument("--limit", type=int, default=HISTORY_PREVIEW_SIZE)
        parser.add_argument("--all", action="store_true", help="Show the full ledger.")

    return _spec("history", "Display a company's recent ledger activity.", arguments, run_history_report, writes=False)


def register_summary_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", required=True)

    return _spec("summary", "Display a company's financial summary.", arguments, run_summary_report, writes=False)


def register_products_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--company-id", default=None)
        parser.add_argument("--class-id", default=None)

    return _spec("products", "List products and their sales.", arguments, run_products_report, writes=False)


def register_backup_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--output", type=Path, required=True)

    return _spec("backup", "Export all data to a JSON snapshot.", arguments, run_backup, writes=False)


# -- dispatch -------------------------------------------------------------------


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


# -- translation ----------------------------------------------------------------


def translate_create_company(args: argparse.Namespace) -> core_logic.CreateCompanyCommand:
    """Translate ``--member ID=AMOUNT`` pairs into a company creation command."""
    member_ids = []
    contributions: Dict[str, str] = {}
    for raw in args.member:
        student_id, _, amount = raw.partition("=")
        student_id = student_id.strip()
        if not student_id:
            raise BusinessRuleViolation(f"Invalid member argument: '{raw}'")
        member_ids.append(student_id)
        if amount.strip():
            contributions[student_id] = amount.strip()
    return core_logic.CreateCompanyCommand(
        name=args.name,
        class_id=args.class_id,
        member_ids=tuple(member_ids),
        contributions=contributions,
    )


def translate_ledger_entry(args: argparse.Namespace) -> core_logic.LedgerEntryCommand:
    return core_logic.LedgerEntryCommand(
        company_id=args.company_id,
        description=args.description,
        amount=args.amount,
    )


def translate_distribution(args: argparse.Namespace) -> core_logic.DistributionCommand:
    return core_logic.DistributionCommand(
        company_id=args.company_id,
        student_id=args.student_id,
        amount=args.amount,
        description=args.description,
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    return core_logic.SaleCommand(product_id=args.product_id, units=args.units)


# -- executors ------------------------------------------------------------------


def report_result(result: core_logic.OperationResult) -> int:
    """Print the outcome of a business operation and map it to an exit code."""
    if result.success:
        print(result.message)
        return 0
    log.error("%s", result.message)
    return 2


def run_add_class(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.create_class(context, args.name)
    if result.success:
        print(f"Class id: {result.data['school_class'].class_id}")
    return report_result(result)


def run_delete_class(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.delete_class(context, args.class_id))


def run_add_student(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.add_student(context, args.class_id, args.name, args.initial_balance)
    if result.success:
        print(f"Student id: {result.data['student'].student_id}")
    return report_result(result)


def run_import_students(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    csv_text = args.names if args.names is not None else args.file.read_text(encoding="utf-8")
    return report_result(
        core_logic.add_students_from_csv(context, args.class_id, csv_text, args.initial_balance)
    )


def run_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    action = BalanceAction(args.action)
    if args.class_id is not None:
        return report_result(core_logic.apply_bulk_action(context, args.class_id, action, args.amount))
    return report_result(core_logic.modify_student_balance(context, args.student_id, args.amount, action))


def run_create_company(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the company creation workflow via the BLL."""
    result = core_logic.create_company(context, translate_create_company(args))
    if result.success:
        print(f"Company id: {result.data['company'].company_id}")
    return report_result(result)


def run_delete_company(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.delete_company(context, args.company_id))


def run_set_members(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.update_company_students(context, args.company_id, args.student_ids))


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.record_expense(context, translate_ledger_entry(args)))


def run_revenue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.record_revenue(context, translate_ledger_entry(args)))


def run_distribute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the profit distribution workflow via the BLL."""
    return report_result(core_logic.distribute_profits(context, translate_distribution(args)))


def run_launch_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.launch_product(context, args.company_id, args.name, args.price)
    if result.success:
        print(f"Product id: {result.data['product'].product_id}")
    return report_result(result)


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.edit_product_price(context, args.product_id, args.price))


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    return report_result(core_logic.add_sales(context, translate_sale(args)))


def run_remove_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    return report_result(core_logic.remove_product(context, args.product_id))


def run_restore(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Load a JSON snapshot from disk and replace the workbook contents with it."""
    try:
        snapshot = json.loads(Path(args.input).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise BusinessRuleViolation(f"Snapshot file is not valid JSON: {exc}") from exc
    return report_result(core_logic.restore_snapshot(context, snapshot))


def run_classes_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    currency = context.currency
    for school_class in core_logic.list_classes(context):
        print(f"{school_class.class_id}  {school_class.name}")
        for student in core_logic.list_students(context, school_class.class_id):
            print(f"    {student.student_id}  {student.name}: {format_money(student.current_balance, currency)}")
    return 0


def run_companies_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for company in core_logic.list_companies(context, args.class_id):
        print(
            f"{company.company_id}  {company.name} ({len(company.member_ids)} members): "
            f"{format_money(company.current_budget, context.currency)}"
        )
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the company's ledger newest-first."""
    limit = None if args.all else args.limit
    for item in core_logic.get_activity_history(context, args.company_id, limit=limit):
        print(f"{item.date:%Y-%m-%d %H:%M}  {item.display_amount:>14}  {item.description}")
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.calculate_financial_summary(context, args.company_id)
    currency = context.currency
    print(f"Initial budget: {format_money(summary['initial_budget'], currency)}")
    print(f"Revenues:       {format_money(summary['total_revenues'], currency)} ({summary['revenue_count']})")
    print(f"Expenses:       {format_money(summary['total_expenses'], currency)} ({summary['expense_count']})")
    print(f"Profit:         {format_money(summary['profit'], currency)}")
    print(f"Cash available: {format_money(summary['current_budget'], currency)}")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    currency = context.currency
    for product in core_logic.list_products(context, args.company_id, args.class_id):
        print(
            f"{product.product_id}  {product.name} @ {format_money(product.price, currency)}: "
            f"{product.sales} sold, {format_money(product.total, currency)}"
        )
    return 0


def run_backup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    snapshot: Dict[str, Any] = core_logic.export_snapshot(context)
    output = Path(args.output).expanduser()
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(snapshot, ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"Snapshot written to {output}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
