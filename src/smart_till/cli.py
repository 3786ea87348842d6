"""Command-line entry points for the Smart Till toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into business-layer calls, and printing results. The
engine itself never reads from or writes to the console, so the same parser
configuration can be reused by tests, scripts, or any other front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, export, log
from .constants import LookupKind, PaymentMethod, SearchField, TransactionState


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


@dataclass(frozen=True)
class SaleRequest:
    """A complete checkout described on the command line."""

    items: Tuple[Tuple[str, int], ...]
    tenders: Tuple[core_logic.Tender, ...]
    lookup: LookupKind = LookupKind.AUTO
    phone: Optional[str] = None
    customer_name: Optional[str] = None
    use_loyalty: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="till-cli",
        description="Command-line tools for the Smart Till point of sale.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
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
    """Declare mutating CLI commands such as sales and catalog edits."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "search": register_search_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "customer": register_customer_command(subparsers),
        "sales": register_sales_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_lookup_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--by",
        dest="lookup",
        choices=[member.value for member in LookupKind],
        default=LookupKind.AUTO.value,
        help="Resolve product keys by name, barcode, or barcode then name (default).",
    )


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog, or replace one with the same name."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--quantity", required=True, type=int)
        parser.add_argument("--barcode", default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--supplier", default=None)
        parser.add_argument("--threshold", type=int, default=0, help="Low stock threshold (0 uses the default).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Change fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--key", required=True, help="Product name or barcode.")
        _add_lookup_argument(parser)
        parser.add_argument("--price", default=None)
        parser.add_argument("--quantity", type=int, default=None)
        parser.add_argument("--barcode", default=None, help="New barcode; pass an empty string to clear it.")
        parser.add_argument("--category", default=None)
        parser.add_argument("--supplier", default=None)
        parser.add_argument("--threshold", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--key", required=True, help="Product name or barcode.")
        _add_lookup_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new loyalty customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--phone", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--email", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Ring up a sale and take payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="KEY=QTY",
            help="Product name or barcode and quantity; repeat for more lines.",
        )
        _add_lookup_argument(parser)
        parser.add_argument("--phone", default=None, help="Customer phone number.")
        parser.add_argument("--customer-name", default=None, help="Register an unknown phone under this name.")
        parser.add_argument("--use-loyalty", action="store_true", help="Redeem loyalty points if available.")
        parser.add_argument(
            "--pay",
            dest="payments",
            action="append",
            required=True,
            metavar="METHOD:AMOUNT[:REF]",
            help="Payment tender ({}); repeat to split.".format(
                ", ".join(member.value for member in PaymentMethod)
            ),
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "List products at or below their low stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock_report)


def register_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``search``."""
    name = "search"
    help_text = "Search the catalog by name, category or barcode."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--term", required=True)
        parser.add_argument(
            "--field",
            choices=[member.value for member in SearchField],
            default=SearchField.NAME.value,
            help="Attribute to match (default: name).",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_search)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Show inventory value, customer count and stock alerts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customer``."""
    name = "customer"
    help_text = "Show a customer's loyalty record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--phone", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customer_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Summarize committed sales per day, or list each sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--list", dest="list_sales", action="store_true", help="Print one line per sale.")
        period = parser.add_mutually_exclusive_group()
        period.add_argument("--date", dest="day", type=_parse_day, default=None, help="Restrict to YYYY-MM-DD.")
        period.add_argument("--today", action="store_true", help="Restrict to today's sales.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Export inventory, sales and restock suggestions to an .xlsx workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, default=None, help="Target .xlsx path.")
        parser.add_argument("--date", dest="day", type=_parse_day, default=None, help="Restrict sales to YYYY-MM-DD.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
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


def _parse_day(raw: str) -> date:
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{raw}', expected YYYY-MM-DD") from exc


def parse_item(raw: str) -> Tuple[str, int]:
    """Split ``KEY=QTY`` into a product key and a quantity."""
    key, separator, quantity = raw.rpartition("=")
    if not separator or not key.strip():
        raise core_logic.ValidationError(f"Invalid item '{raw}', expected KEY=QTY")
    try:
        return key.strip(), int(quantity)
    except ValueError as exc:
        raise core_logic.ValidationError(f"Invalid quantity in item '{raw}'") from exc


def parse_tender(raw: str) -> core_logic.Tender:
    """Split ``METHOD:AMOUNT[:REF]`` into a :class:`core_logic.Tender`."""
    parts = raw.split(":", 2)
    if len(parts) < 2:
        raise core_logic.ValidationError(f"Invalid payment '{raw}', expected METHOD:AMOUNT[:REF]")
    reference = parts[2] if len(parts) == 3 else None
    return core_logic.Tender(method=parts[0], amount=parts[1], reference=reference)


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an upsert-product request."""
    return {
        "name": args.name,
        "price": args.price,
        "quantity": args.quantity,
        "barcode": args.barcode,
        "category": args.category,
        "supplier": args.supplier,
        "low_stock_threshold": args.threshold,
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the field changes for ``update_product``."""
    changes: Dict[str, Any] = {}
    for option, field_name in (
        ("price", "price"),
        ("quantity", "quantity"),
        ("barcode", "barcode"),
        ("category", "category"),
        ("supplier", "supplier"),
        ("threshold", "low_stock_threshold"),
    ):
        value = getattr(args, option)
        if value is not None:
            changes[field_name] = value
    if not changes:
        raise core_logic.ValidationError("Nothing to update; pass at least one field option")
    return changes


def translate_sale(args: argparse.Namespace) -> SaleRequest:
    """Translate CLI args into a :class:`SaleRequest`."""
    return SaleRequest(
        items=tuple(parse_item(raw) for raw in args.items),
        tenders=tuple(parse_tender(raw) for raw in args.payments),
        lookup=LookupKind(args.lookup),
        phone=args.phone,
        customer_name=args.customer_name,
        use_loyalty=args.use_loyalty,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    payload = translate_add_product(args)
    record = core_logic.upsert_product(context, **payload)
    print(f"Saved product '{record.name}' ({record.quantity} @ {record.price}).")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    changes = translate_update_product(args)
    record = core_logic.update_product(context, args.key, lookup=LookupKind(args.lookup), **changes)
    print(f"Updated product '{record.name}'.")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    record = core_logic.delete_product(context, args.key, lookup=LookupKind(args.lookup))
    print(f"Deleted product '{record.name}'.")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    record = core_logic.register_customer(context, phone=args.phone, name=args.name, email=args.email)
    print(f"Registered customer {record.customer_id} ({record.name}).")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Drive a :class:`core_logic.TransactionEngine` through one checkout.

    Any failure before payment is complete cancels the sale, so reserved
    stock goes back to the catalog. A failed commit is reported without
    cancelling, since the customer has already paid.
    """
    request = translate_sale(args)
    engine = core_logic.TransactionEngine(context)
    engine.open(request.phone, customer_name=request.customer_name)
    try:
        for key, quantity in request.items:
            engine.add_line(key, quantity, lookup=request.lookup)
        if request.use_loyalty:
            if engine.loyalty_discount_offer() > 0:
                engine.apply_loyalty_discount()
            else:
                log.info("No loyalty discount available for this sale")
        engine.price()
        engine.collect_payment(request.tenders)
    except (core_logic.BusinessRuleViolation, data_manager.PersistenceFailure):
        if engine.state in (
            TransactionState.OPEN,
            TransactionState.PRICING,
            TransactionState.PAYMENT_COLLECTION,
        ):
            engine.cancel()
            print("Sale cancelled; reserved stock restored.")
        raise

    result = engine.commit()
    print_receipt(context, result)
    return 0


def print_receipt(context: core_logic.RuntimeContext, result: core_logic.SaleResult) -> None:
    """Print a plain-text receipt for a committed sale."""
    pricing = result.pricing
    print(f"===== {context.settings.store_name} =====")
    print(f"Date: {result.sale.timestamp:%Y-%m-%d %H:%M:%S}")
    print(f"Customer: {result.sale.customer_name}")
    print("-" * 40)
    for line in result.lines:
        print(f"{line.product.name:<20}{line.quantity:>5} x {line.product.price:>8} = {line.amount:>9}")
    print("-" * 40)
    if pricing.loyalty_discount:
        print(f"{'Loyalty discount:':<30}{-pricing.loyalty_discount:>10}")
    print(f"{'Subtotal:':<30}{pricing.subtotal:>10}")
    print(f"{'VAT:':<30}{pricing.vat:>10}")
    if pricing.discount:
        print(f"{'Discount:':<30}{-pricing.discount:>10}")
    print(f"{'NET TOTAL:':<30}{pricing.net_total:>10}")
    for entry in result.payments:
        reference = f" [{entry.reference}]" if entry.reference else ""
        print(f"  Paid {entry.method.label}: {entry.amount}{reference}")
    if result.customer is not None:
        print(f"Loyalty points balance: {result.customer.loyalty_points}")
    for product in result.low_stock:
        print(f"LOW STOCK: {product.name} ({product.quantity} left)")


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    products = core_logic.list_products(context)
    _print_products(products)
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List products needing a restock."""
    products = core_logic.low_stock_items(
        core_logic.list_products(context),
        context.policy.low_stock_threshold,
    )
    if not products:
        print("No low stock items.")
        return 0
    _print_products(products)
    return 0


def _print_products(
    products: Sequence[data_manager.ProductRecord],
    default_threshold: Optional[int] = None,
) -> None:
    """Print a product table; a ``default_threshold`` adds a status column."""
    header = f"{'Name':<20}{'Price':>10}{'Qty':>6}  {'Barcode':<14}{'Category':<12}"
    if default_threshold is not None:
        header += "Status"
    print(header)
    for product in products:
        row = (
            f"{product.name:<20}{product.price:>10}{product.quantity:>6}  "
            f"{product.barcode or '-':<14}{product.category or '-':<12}"
        )
        if default_threshold is not None:
            row += core_logic.stock_status(product, default_threshold).value
        print(row)


def run_search(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Search the catalog and print matches with their stock status."""
    matches = core_logic.search_products(context, args.term, SearchField(args.field))
    if not matches:
        print(f"No items found matching '{args.term}'.")
        return 0
    _print_products(matches, context.policy.low_stock_threshold)
    print(f"Found {len(matches)} item(s) matching '{args.term}'.")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the store overview."""
    snapshot = core_logic.dashboard_snapshot(context)
    print(f"===== {context.settings.store_name} =====")
    print(f"Products in catalog: {snapshot.product_count}")
    print(f"Inventory value: {snapshot.inventory_value}")
    print(f"Customers: {snapshot.customer_count}")
    print(f"Low stock items: {snapshot.low_stock_count}")
    print(f"Out of stock items: {snapshot.out_of_stock_count}")
    return 0


def run_customer_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Show one customer's loyalty record."""
    customer = core_logic.find_customer(context, args.phone)
    print(f"ID: {customer.customer_id}")
    print(f"Name: {customer.name}")
    print(f"Phone: {customer.phone}")
    print(f"Email: {customer.email or '-'}")
    print(f"Loyalty points: {customer.loyalty_points}")
    print(f"Total spent: {customer.total_spent}")
    print(f"Visits: {customer.visit_count}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales reporting workflow, as daily totals or one line per sale."""
    sales = data_manager.load_sales(context.settings.sales_file)
    day = core_logic.current_day() if args.today else args.day
    if args.list_sales:
        _print_sales(core_logic.filter_sales(sales, day=day))
        return 0
    summaries: List[core_logic.DailySalesSummary] = core_logic.summarize_sales(sales, day=day)
    if not summaries:
        print("No sales recorded.")
        return 0
    print(f"{'Date':<12}{'Sales':>7}{'Revenue':>12}{'Average':>10}")
    for entry in summaries:
        print(f"{entry.day.isoformat():<12}{entry.sale_count:>7}{entry.revenue:>12}{entry.average:>10}")
    return 0


def _print_sales(sales: Sequence[data_manager.SaleRecord]) -> None:
    if not sales:
        print("No sales recorded.")
        return
    print(f"{'#':>4}  {'Date & Time':<20}{'Customer':<20}{'Amount':>10}  Items")
    for sale in sales:
        items = ", ".join(f"{name}({quantity})" for name, quantity in sale.items)
        print(
            f"{sale.sequence or '-':>4}  {sale.timestamp:%Y-%m-%d %H:%M:%S} "
            f"{sale.customer_name[:19]:<20}{sale.net_total:>10}  {items}"
        )
    revenue = sum((sale.net_total for sale in sales), Decimal("0.00"))
    print(f"Total records: {len(sales)}  Revenue: {revenue}")


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the spreadsheet export."""
    destination = export.export_workbook(context, args.output, day=args.day)
    print(f"Report exported to '{destination}'.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.PersistenceFailure):
        log.error("%s", error)
        return 4
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
