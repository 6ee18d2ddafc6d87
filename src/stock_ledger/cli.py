"""Command-line entry points for the stock ledger.

This module only wires argparse and translates command-line arguments into
the commands and patches consumed by the coordinator and report modules.
Every executor is a coroutine; :func:`main` drives one of them with
:func:`asyncio.run` and saves the workbook after a successful write.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import aggregation, coordinator, core_logic, costs, log, set_log_level
from .constants import DEFAULT_PAGE_SIZE, ActivityType, CostField, RevenuePeriod, StatisticsPeriod
from .domain import ActivityCommand, ActivityPatch, MonthlyCost, Product
from .errors import NotFoundError, StockConsistencyError, ValidationError


Executor = Callable[[core_logic.RuntimeContext, argparse.Namespace], Awaitable[int]]


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Executor
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Record stock activities and report on the ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output.")
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
    """Declare commands that modify the workbook."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-activity": register_add_activity_command(subparsers),
        "update-activity": register_update_activity_command(subparsers),
        "set-cost": register_set_cost_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only report commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "check-stock": register_check_stock_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "profit": register_profit_command(subparsers),
        "margins": register_margins_command(subparsers),
        "stats": register_stats_command(subparsers),
        "revenue": register_revenue_command(subparsers),
        "log": register_log_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def decimal_arg(value: str) -> Decimal:
    """argparse ``type`` accepting any decimal literal."""
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None


def _add_date_range(parser: argparse.ArgumentParser, *, required: bool = False) -> None:
    parser.add_argument("--start", dest="start_date", required=required, help="Inclusive ISO-8601 lower bound.")
    parser.add_argument("--end", dest="end_date", required=required, help="Inclusive ISO-8601 upper bound.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", default="", help="Generated when omitted.")
        parser.add_argument("--name")
        parser.add_argument("--unit-cost", type=decimal_arg, required=True)
        parser.add_argument("--sale-price", type=decimal_arg, required=True)
        parser.add_argument("--stock", type=decimal_arg, default=Decimal("0"))
        parser.add_argument("--model-id")
        parser.add_argument("--coloris-id")
        parser.add_argument("--weight", type=decimal_arg)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_add_activity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-activity``."""
    name = "add-activity"
    help_text = "Record an activity and move the product stock accordingly."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="activity_type", required=True, choices=[t.value for t in ActivityType])
        parser.add_argument("--date", help="ISO-8601 timestamp, defaults to now (UTC).")
        parser.add_argument("--product-id")
        parser.add_argument("--quantity", type=decimal_arg, required=True, help="Signed; negative for outflows.")
        parser.add_argument("--amount", type=decimal_arg, default=Decimal("0"))
        parser.add_argument("--note")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_activity, mutates=True)


def register_update_activity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-activity``."""
    name = "update-activity"
    help_text = "Correct fields of an existing activity and resync stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("activity_id")
        parser.add_argument("--type", dest="activity_type", choices=[t.value for t in ActivityType])
        parser.add_argument("--date")
        product = parser.add_mutually_exclusive_group()
        product.add_argument("--product-id")
        product.add_argument("--clear-product-id", action="store_true")
        parser.add_argument("--quantity", type=decimal_arg)
        parser.add_argument("--amount", type=decimal_arg)
        note = parser.add_mutually_exclusive_group()
        note.add_argument("--note")
        note.add_argument("--clear-note", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name, help_text=help_text, register=registrar, execute=run_update_activity, mutates=True
    )


def register_set_cost_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-cost``."""
    name = "set-cost"
    help_text = "Book indirect costs for a YYYY-MM month."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("month")
        parser.add_argument("--shipping", type=decimal_arg)
        parser.add_argument("--marketing", type=decimal_arg)
        parser.add_argument("--overhead", type=decimal_arg)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_cost, mutates=True)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display cached stock next to the ledger sum."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_check_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``check-stock``."""
    name = "check-stock"
    help_text = "List products whose cached stock disagrees with the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_check_stock)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products below a stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=decimal_arg, help="Defaults to LowStockThreshold in config.ini.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display profit, sales and creation totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_profit_report)


def register_margins_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``margins``."""
    name = "margins"
    help_text = "Display per-product margins, best first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_margins_report)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display profit and activity counts per period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--period", choices=[p.value for p in StatisticsPeriod], default=StatisticsPeriod.MONTHLY.value
        )
        _add_date_range(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


def register_revenue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``revenue``."""
    name = "revenue"
    help_text = "Display revenue, gross margin and net result for a window."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--period", choices=[p.value for p in RevenuePeriod], default=RevenuePeriod.CUSTOM.value
        )
        _add_date_range(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_revenue_report)


def register_log_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``log``."""
    name = "log"
    help_text = "Display the activity ledger, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range(parser)
        parser.add_argument("--type", dest="activity_type", choices=[t.value for t in ActivityType])
        parser.add_argument("--product-id")
        parser.add_argument("--page", type=int, default=1)
        parser.add_argument("--page-size", type=int, help="Defaults to PageSize in config.ini.")
        parser.add_argument("--recent", type=int, metavar="N", help="Only show the N most recent activities.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_log_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


async def dispatch_command(
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
    return await spec.execute(context, args)


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


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Format ``moment`` (default: now) as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    moment = moment or datetime.now(UTC)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def translate_add_product(args: argparse.Namespace) -> Product:
    """Translate CLI args into a product record."""
    return Product(
        product_id=args.product_id or "",
        unit_cost=args.unit_cost,
        sale_price=args.sale_price,
        stock=args.stock,
        model_id=args.model_id,
        coloris_id=args.coloris_id,
        weight=args.weight,
        name=args.name,
    )


def translate_add_activity(args: argparse.Namespace) -> ActivityCommand:
    """Translate CLI args into an activity command."""
    return ActivityCommand(
        date=args.date or utc_timestamp(),
        activity_type=ActivityType(args.activity_type),
        quantity=args.quantity,
        amount=args.amount,
        product_id=args.product_id,
        note=args.note,
    )


def translate_update_activity(args: argparse.Namespace) -> ActivityPatch:
    """Translate CLI args into a patch holding only the supplied fields."""
    fields: Dict[str, Any] = {}
    if args.activity_type is not None:
        fields["activity_type"] = ActivityType(args.activity_type)
    if args.date is not None:
        fields["date"] = args.date
    if args.clear_product_id:
        fields["product_id"] = None
    elif args.product_id is not None:
        fields["product_id"] = args.product_id
    if args.quantity is not None:
        fields["quantity"] = args.quantity
    if args.amount is not None:
        fields["amount"] = args.amount
    if args.clear_note:
        fields["note"] = None
    elif args.note is not None:
        fields["note"] = args.note
    if not fields:
        raise ValidationError("update-activity needs at least one field to change")
    return ActivityPatch(fields)


def translate_set_cost(args: argparse.Namespace) -> Dict[CostField, Decimal]:
    """Translate CLI args into the cost categories to write."""
    values = {
        CostField.SHIPPING: args.shipping,
        CostField.MARKETING: args.marketing,
        CostField.OVERHEAD: args.overhead,
    }
    supplied = {field: value for field, value in values.items() if value is not None}
    if not supplied:
        raise ValidationError("set-cost needs at least one of --shipping, --marketing, --overhead")
    return supplied


async def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = await core_logic.create_product(context, translate_add_product(args))
    print(f"Created product {product.product_id}")
    return 0


async def run_add_activity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-activity workflow through the coordinator."""
    activity = await coordinator.add_activity(context, translate_add_activity(args))
    print(f"Recorded {activity.activity_type.value} activity {activity.activity_id}")
    return 0


async def run_update_activity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-activity workflow through the coordinator."""
    activity = await coordinator.update_activity(context, args.activity_id, translate_update_activity(args))
    print(f"Updated activity {activity.activity_id}")
    return 0


async def run_set_cost(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Book monthly costs, as one row write when all categories are given."""
    supplied = translate_set_cost(args)
    if len(supplied) == len(CostField):
        cost = await costs.create_or_update_monthly_cost(
            context,
            MonthlyCost(
                month=args.month,
                shipping_cost=supplied[CostField.SHIPPING],
                marketing_cost=supplied[CostField.MARKETING],
                overhead_cost=supplied[CostField.OVERHEAD],
            ),
        )
    else:
        for field, value in supplied.items():
            cost = await costs.update_monthly_cost_field(context, args.month, field, value)
    print(
        f"{cost.month}: shipping={cost.shipping_cost} marketing={cost.marketing_cost} "
        f"overhead={cost.overhead_cost}"
    )
    return 0


async def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print cached and ledger-derived stock per product."""
    if args.product_id:
        products = [await core_logic.get_product(context, args.product_id)]
    else:
        products = await core_logic.list_products(context)
    ledger = await aggregation.compute_stock_from_activities(context, args.product_id)
    for product in products:
        print(f"{product.product_id}\tstock={product.stock}\tledger={ledger.get(product.product_id, 0)}")
    return 0


async def run_check_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock discrepancies between products and the ledger."""
    discrepancies = await coordinator.find_stock_discrepancies(context)
    if not discrepancies:
        print("Stock matches the ledger for every product.")
    for item in discrepancies:
        print(f"{item.product_id}\tcached={item.cached_stock}\texpected={item.expected_stock}\tdelta={item.delta}")
    return 0


async def run_low_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products below the stock threshold."""
    for product in await core_logic.list_low_stock_products(context, args.threshold):
        print(f"{product.product_id}\tstock={product.stock}")
    return 0


async def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print headline profit figures."""
    stats = await aggregation.compute_business_statistics(context, args.start_date, args.end_date)
    print(f"profit={stats.total_profit}")
    print(f"sales={stats.total_sales}")
    print(f"creations={stats.total_creations}")
    return 0


async def run_margins_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print per-product margins."""
    for margin in await aggregation.compute_product_margins(context, args.start_date, args.end_date):
        print(
            f"{margin.product_id}\tsales={margin.sales_count}\trevenue={margin.total_revenue}"
            f"\tcost={margin.total_cost}\tprofit={margin.profit}\tmargin={margin.margin_percentage:.2f}%"
        )
    return 0


async def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print period statistics."""
    rows = await aggregation.compute_profits_by_period(
        context, StatisticsPeriod(args.period), args.start_date, args.end_date
    )
    for row in rows:
        print(f"{row.period}\tprofit={row.profit}\tsales={row.total_sales}\tcreations={row.total_creations}")
    return 0


async def run_revenue_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the revenue breakdown."""
    data = await aggregation.compute_revenue(
        context, RevenuePeriod(args.period), args.start_date, args.end_date
    )
    print(f"revenue={data.total_revenue}")
    print(f"material_costs={data.material_costs}")
    print(f"gross_margin={data.gross_margin} ({data.gross_margin_rate:.2f}%)")
    print(f"shipping={data.shipping_cost}")
    print(f"indirect_costs={data.total_indirect_costs}")
    print(f"net_result={data.net_result} ({data.net_margin_rate:.2f}%)")
    return 0


async def run_log_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one page of the activity ledger."""
    if args.recent is not None:
        activities = await coordinator.list_recent_activities(context, args.recent)
    else:
        page_size = args.page_size
        if page_size is None and context.settings is not None:
            page_size = context.settings.page_size
        result = await aggregation.list_activities_paginated(
            context,
            args.start_date,
            args.end_date,
            ActivityType(args.activity_type) if args.activity_type else None,
            args.product_id,
            page=args.page,
            page_size=page_size or DEFAULT_PAGE_SIZE,
        )
        activities = result.activities
        print(f"page {result.page}/{result.total_pages} ({result.total} activities)")
    for activity in activities:
        print(
            f"{activity.date}\t{activity.activity_type.value}\t{activity.product_id or '-'}"
            f"\tqty={activity.quantity}\tamount={activity.amount}\t{activity.activity_id}"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into exit codes."""
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, NotFoundError):
        log.error("%s", error)
        return 4
    if isinstance(error, StockConsistencyError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


async def run_cli(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Load the context, run the selected command and save on success."""
    context = load_runtime_context(getattr(args, "config", None))
    exit_code = await dispatch_command(context, args, command_table)
    if exit_code == 0 and command_table[args.command].mutates:
        persist_workbook(context)
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_log_level("DEBUG")
    try:
        return asyncio.run(run_cli(args, command_table))
    except Exception as error:
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
