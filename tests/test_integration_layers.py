"""Integration tests describing the end-to-end Smart Till workflows.

These scenarios document how the data access layer, the transaction engine and
the CLI collaborate over the same text stores across several checkouts.
"""

from __future__ import annotations

from decimal import Decimal

from smart_till import cli, core_logic, data_manager
from smart_till.constants import TransactionState
from smart_till.core_logic import Tender


def _stock(context: core_logic.RuntimeContext) -> dict[str, int]:
    return {product.name: product.quantity for product in core_logic.list_products(context)}


def test_stock_is_conserved_across_committed_and_cancelled_sales(runtime_context):
    """Only committed sales leave a trace in the catalog and the sales ledger."""

    context = runtime_context
    core_logic.upsert_product(context, name="Rice", price="40.00", quantity=100, barcode="12345678")
    core_logic.upsert_product(context, name="Milk", price="90.00", quantity=30, low_stock_threshold=10)

    first = core_logic.TransactionEngine(context)
    first.open()
    first.add_line("Rice", 20)
    first.checkout([Tender("cash", "790")])

    # A cancelled sale must put back exactly what it reserved.
    second = core_logic.TransactionEngine(context)
    second.open()
    second.add_line("12345678", 30)
    second.add_line("Milk", 5)
    assert _stock(context) == {"Rice": 50, "Milk": 25}
    second.cancel()

    assert _stock(context) == {"Rice": 80, "Milk": 30}
    sales = data_manager.load_sales(context.settings.sales_file)
    assert [(sale.sequence, sale.items) for sale in sales] == [(1, (("Rice", 20),))]


def test_returning_customer_accumulates_across_visits(runtime_context):
    """Loyalty points earned on one visit can be redeemed on the next."""

    context = runtime_context
    core_logic.upsert_product(context, name="Rice", price="40.00", quantity=100)

    visit_one = core_logic.TransactionEngine(context)
    customer = visit_one.open("0170", customer_name="Ada")
    assert customer.customer_id == "TEST1"
    visit_one.add_line("Rice", 50)
    first = visit_one.checkout([Tender("card", "2050", "TX-1")])
    assert first.pricing.net_total == Decimal("2050.00")
    assert first.customer.loyalty_points == Decimal("20.50")

    visit_two = core_logic.TransactionEngine(context)
    visit_two.open("0170")
    assert visit_two.is_new_customer is False
    visit_two.add_line("Rice", 10)
    assert visit_two.apply_loyalty_discount() == Decimal("0.20")
    second = visit_two.checkout([Tender("cash", "419.79")])

    stored = core_logic.find_customer(context, "0170")
    assert second.pricing.net_total == Decimal("419.79")
    assert stored.visit_count == 2
    assert stored.total_spent == Decimal("2469.79")
    assert stored.loyalty_points == Decimal("4.70")
    assert [record.customer_id for record in core_logic.list_customers(context)] == ["TEST1"]


def test_malformed_catalog_lines_do_not_block_checkout(runtime_context):
    """Corrupted records are skipped on load and dropped on the next save."""

    path = runtime_context.settings.catalog_file
    path.write_text(
        "# header\nRice|40.00|100\nBroken|x|1\nMilk|90.00|30\n",
        encoding="utf-8",
    )

    engine = core_logic.TransactionEngine(runtime_context)
    engine.open()
    engine.add_line("Milk", 1)
    engine.checkout([Tender("cash", "94.50")])

    assert engine.state is TransactionState.COMMITTED
    assert "Broken" not in path.read_text(encoding="utf-8")
    assert _stock(runtime_context) == {"Rice": 100, "Milk": 29}


def test_cli_sale_then_reports_flow(config_file, runtime_context, capsys):
    """A CLI sale shows up in stock, low-stock, sales and export reports."""

    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-product", "--name", "Milk", "--price", "90", "--quantity", "12",
                     "--threshold", "10"]) == 0
    assert cli.main([*base, "add-customer", "--phone", "0170", "--name", "Ada"]) == 0
    assert cli.main([*base, "sale", "--item", "Milk=3", "--phone", "0170", "--pay", "digital-wallet:283.50:W-1"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "low-stock"]) == 0
    assert "Milk" in capsys.readouterr().out

    assert cli.main([*base, "sales"]) == 0
    assert "283.50" in capsys.readouterr().out

    output = runtime_context.settings.exports_dir / "report.xlsx"
    assert cli.main([*base, "export", "--output", str(output)]) == 0
    assert output.exists()

    assert core_logic.find_customer(runtime_context, "0170").total_spent == Decimal("283.50")
