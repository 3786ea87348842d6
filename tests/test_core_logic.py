"""Unit tests verifying the business logic layer against real text stores."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from smart_till import constants, core_logic, data_manager
from smart_till.constants import LookupKind, PaymentMethod, TransactionState
from smart_till.core_logic import Tender
from smart_till.data_manager import CustomerRecord, ProductRecord, SaleRecord

from conftest import MILK, RICE


def _stock(context, name):
    products = data_manager.load_products(context.settings.catalog_file)
    return products[data_manager.find_product_by_name(products, name)].quantity


def _sales_lines(context):
    path = context.settings.sales_file
    return [line for line in path.read_text(encoding="utf-8").splitlines() if not line.startswith("#")]


@pytest.fixture
def engine(runtime_context, seed_catalog):
    seed_catalog()
    return core_logic.TransactionEngine(runtime_context)


@pytest.fixture
def loyal_customer(seed_customers):
    record = CustomerRecord(
        customer_id="CUST1001",
        name="Ada",
        phone="01700000000",
        loyalty_points=Decimal("500"),
        total_spent=Decimal("1000.00"),
        visit_count=3,
        last_visit=1600000000,
    )
    seed_customers([record])
    return record


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble parsed settings into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_dir=tmp_path,
        store_name="Shop",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        catalog_file=tmp_path / "Bill.txt",
        customers_file=tmp_path / "customers.txt",
        sales_file=tmp_path / "Sales.txt",
        exports_dir=tmp_path / "Reports",
    )

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)

    context = core_logic.load_runtime_context(config_path)

    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    assert context.settings is parsed_settings
    assert isinstance(context.id_generator, core_logic.CustomerIdGenerator)


def test_ensure_schema_version_rejects_mismatch(config_factory):
    bundle = config_factory(schema_version="0.9.0")
    context = core_logic.load_runtime_context(bundle.config_path)

    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(context)


def test_customer_id_generator_counts_from_base():
    generator = core_logic.CustomerIdGenerator()

    assert generator([]) == "CUST1001"
    assert generator([]) == "CUST1002"


def test_customer_id_generator_skips_ids_already_in_ledger():
    generator = core_logic.CustomerIdGenerator("CUST", 1000)
    existing = [
        CustomerRecord("CUST1500", "Ada", "1"),
        CustomerRecord("VIP9999", "Bo", "2"),
        CustomerRecord("CUSTabc", "Cy", "3"),
    ]

    assert generator(existing) == "CUST1501"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        ("12345678", True),
        ("1234567890123", True),
        ("1234567", False),
        ("12345678901234", False),
        ("1234abcd", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_barcode(code, expected):
    assert core_logic.is_valid_barcode(code) is expected


@pytest.mark.parametrize("quantity", [0, -3, 1.5, "2", True])
def test_require_positive_quantity_rejects(quantity):
    with pytest.raises(core_logic.ValidationError):
        core_logic.require_positive_quantity(quantity)


def test_to_money_rounds_half_up():
    assert core_logic.to_money("2.345") == Decimal("2.35")
    assert core_logic.to_money(3) == Decimal("3.00")
    with pytest.raises(core_logic.ValidationError):
        core_logic.to_money("ten")


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def test_compute_pricing_applies_vat_and_threshold_discount():
    summary = core_logic.compute_pricing(Decimal("600.00"))

    assert summary.vat == Decimal("30.00")
    assert summary.discount == Decimal("50.00")
    assert summary.net_total == Decimal("580.00")


def test_compute_pricing_discount_requires_strictly_greater_than_threshold():
    summary = core_logic.compute_pricing(Decimal("500.00"))

    assert summary.discount == Decimal("0.00")
    assert summary.net_total == Decimal("525.00")


def test_compute_pricing_honours_policy():
    policy = data_manager.PricingPolicy(vat_rate=Decimal("0.15"), discount_threshold=Decimal("1000"))

    summary = core_logic.compute_pricing(Decimal("600.00"), policy)

    assert summary.vat == Decimal("90.00")
    assert summary.discount == Decimal("0.00")


@pytest.mark.parametrize(
    ("subtotal", "points", "expected"),
    [
        (Decimal("800.00"), Decimal("500"), Decimal("5.00")),
        (Decimal("100.00"), Decimal("5000"), Decimal("10.00")),
        (Decimal("100.00"), Decimal("7.9"), Decimal("0.07")),
        (Decimal("100.00"), Decimal("0"), Decimal("0.00")),
    ],
)
def test_compute_loyalty_discount(subtotal, points, expected):
    assert core_logic.compute_loyalty_discount(subtotal, points) == expected


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


def test_cart_accumulates_lines_and_subtotal():
    cart = core_logic.Cart()
    cart.add_line(RICE, 2)
    cart.add_line(MILK, 1)

    assert len(cart) == 2
    assert cart.subtotal() == Decimal("170.00")
    assert not cart.is_empty()


def test_cart_rejects_more_than_known_stock():
    cart = core_logic.Cart()

    with pytest.raises(core_logic.InsufficientStock) as excinfo:
        cart.add_line(RICE, 101)

    assert excinfo.value.available == 100
    assert cart.is_empty()


def test_cart_remove_all_drains_every_line_once():
    cart = core_logic.Cart()
    cart.add_line(RICE, 2)
    cart.add_line(RICE, 3)

    assert cart.remove_all() == [("Rice", 2), ("Rice", 3)]
    assert cart.remove_all() == []
    assert cart.is_empty()


def test_cart_discount_cannot_exceed_subtotal():
    cart = core_logic.Cart()
    cart.add_line(MILK, 1)

    with pytest.raises(core_logic.ValidationError):
        cart.apply_discount(Decimal("90.01"))
    cart.apply_discount(Decimal("9.00"))
    assert cart.subtotal() == Decimal("81.00")


# ---------------------------------------------------------------------------
# Payment splitting
# ---------------------------------------------------------------------------


def test_splitter_caps_overpayment_at_remaining():
    splitter = core_logic.PaymentSplitter(Decimal("790.00"))

    splitter.offer(PaymentMethod.CASH, "500")
    entry = splitter.offer(PaymentMethod.CARD, "400", "TX-1")

    assert entry.amount == Decimal("290.00")
    assert splitter.collected == Decimal("790.00")
    assert splitter.is_complete


@pytest.mark.parametrize(
    ("method", "amount", "reference"),
    [
        ("cash", "0", None),
        ("cash", "-5", None),
        ("cash", "abc", None),
        ("bitcoin", "10", None),
        ("card", "10", None),
        ("digital-wallet", "10", "   "),
    ],
)
def test_splitter_rejects_invalid_tender_without_consuming(method, amount, reference):
    splitter = core_logic.PaymentSplitter(Decimal("100.00"))

    with pytest.raises(core_logic.ValidationError):
        splitter.offer(method, amount, reference)

    assert splitter.entries == ()
    assert splitter.remaining == Decimal("100.00")


def test_splitter_accepts_menu_numbers_and_names():
    assert core_logic.coerce_payment_method("1") is PaymentMethod.CASH
    assert core_logic.coerce_payment_method(3) is PaymentMethod.MOBILE_BANKING
    assert core_logic.coerce_payment_method("digital_wallet") is PaymentMethod.DIGITAL_WALLET
    assert core_logic.coerce_payment_method("Card") is PaymentMethod.CARD


def test_splitter_completes_within_tolerance():
    splitter = core_logic.PaymentSplitter(Decimal("10.00"))
    splitter.offer("cash", "9.99")

    assert splitter.is_complete
    splitter.verify()
    with pytest.raises(core_logic.ValidationError):
        splitter.offer("cash", "1")


def test_collect_payments_stops_consuming_when_complete():
    tenders = iter(
        [
            Tender("card", "50"),
            Tender("cash", "60"),
            Tender("card", "40", "TX-9"),
            Tender("cash", "5"),
        ]
    )

    entries = core_logic.collect_payments(Decimal("100.00"), tenders)

    assert [(entry.method, entry.amount) for entry in entries] == [
        (PaymentMethod.CASH, Decimal("60.00")),
        (PaymentMethod.CARD, Decimal("40.00")),
    ]
    assert next(tenders) == Tender("cash", "5")


def test_collect_payments_raises_when_tenders_run_out():
    with pytest.raises(core_logic.PaymentMismatch):
        core_logic.collect_payments(Decimal("100.00"), [Tender("cash", "60")])


def test_collect_payments_with_nothing_due_needs_no_tender():
    assert core_logic.collect_payments(Decimal("0.00"), []) == []


# ---------------------------------------------------------------------------
# Transaction engine: happy paths
# ---------------------------------------------------------------------------


def test_walk_in_rice_checkout_end_to_end(engine, runtime_context, set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 3, 1, 9, 30, 15, 500, tzinfo=UTC))

    engine.open()
    engine.add_line("Rice", 20)
    assert _stock(runtime_context, "Rice") == 80

    pricing = engine.price()
    assert pricing.subtotal == Decimal("800.00")
    assert pricing.vat == Decimal("40.00")
    assert pricing.discount == Decimal("50.00")
    assert pricing.net_total == Decimal("790.00")

    engine.collect_payment([Tender(PaymentMethod.CASH, "790.00")])
    result = engine.commit()

    assert engine.state is TransactionState.COMMITTED
    assert _stock(runtime_context, "Rice") == 80
    assert _sales_lines(runtime_context) == ["2024-03-01 09:30:15|Walk-in Customer|790.00|Rice(20)"]
    assert result.sale.items == (("Rice", 20),)
    assert result.customer is None
    assert sum(entry.amount for entry in result.payments) == pricing.net_total


def test_add_line_by_barcode_and_split_payment(engine, runtime_context):
    engine.open()
    engine.add_line("12345678", 2)
    engine.add_line("Milk", 1, lookup=LookupKind.NAME)

    result = engine.checkout([Tender("cash", "100"), Tender("mobile-banking", "200", "MB-77")])

    assert result.pricing.net_total == Decimal("178.50")
    assert [entry.amount for entry in result.payments] == [Decimal("100.00"), Decimal("78.50")]
    assert _stock(runtime_context, "Rice") == 98
    assert _stock(runtime_context, "Milk") == 29
    assert _sales_lines(runtime_context)[0].endswith("|Walk-in Customer|178.50|Rice(2),Milk(1)")


def test_checkout_reports_low_stock_items(engine):
    engine.open()
    engine.add_line("Milk", 25)

    result = engine.checkout([Tender("cash", "3000")])

    assert [product.name for product in result.low_stock] == ["Milk"]
    assert result.low_stock[0].quantity == 5


def test_known_customer_redeems_and_accrues_loyalty(engine, runtime_context, loyal_customer):
    engine.open(loyal_customer.phone)
    engine.add_line("Rice", 20)

    assert engine.loyalty_discount_offer() == Decimal("5.00")
    assert engine.apply_loyalty_discount() == Decimal("5.00")
    assert engine.customer.loyalty_points == Decimal("0")

    pricing = engine.price()
    assert pricing.subtotal == Decimal("795.00")
    assert pricing.net_total == Decimal("784.75")

    result = engine.checkout([Tender("cash", "784.75")])

    stored = core_logic.find_customer(runtime_context, loyal_customer.phone)
    assert stored == result.customer
    assert stored.loyalty_points == Decimal("7.85")
    assert stored.total_spent == Decimal("1784.75")
    assert stored.visit_count == 4
    assert stored.last_visit > loyal_customer.last_visit
    assert _sales_lines(runtime_context)[0].split("|")[1] == "Ada"


def test_loyalty_discount_is_allowed_once(engine, loyal_customer):
    engine.open(loyal_customer.phone)
    engine.add_line("Rice", 1)
    engine.apply_loyalty_discount()

    assert engine.loyalty_discount_offer() == Decimal("0.00")
    with pytest.raises(core_logic.BusinessRuleViolation):
        engine.apply_loyalty_discount()


def test_walk_in_cannot_redeem_loyalty(engine):
    engine.open()
    engine.add_line("Rice", 1)

    assert engine.loyalty_discount_offer() == Decimal("0.00")
    with pytest.raises(core_logic.BusinessRuleViolation):
        engine.apply_loyalty_discount()


def test_new_customer_is_registered_at_commit(engine, runtime_context, id_generator):
    engine.open("01999999999", customer_name="Zed")
    engine.add_line("Milk", 1)

    assert core_logic.list_customers(runtime_context) == []

    result = engine.checkout([Tender("card", "94.50", "TX-1")])

    customers = core_logic.list_customers(runtime_context)
    assert [customer.customer_id for customer in customers] == ["TEST1"]
    assert customers[0] == result.customer
    assert customers[0].visit_count == 1
    assert customers[0].total_spent == Decimal("94.50")
    assert customers[0].loyalty_points == Decimal("0.95")


def test_unknown_phone_without_name_keeps_engine_idle(engine):
    with pytest.raises(core_logic.MissingReferenceError):
        engine.open("0000")

    assert engine.state is TransactionState.IDLE
    engine.open()
    assert engine.state is TransactionState.OPEN


# ---------------------------------------------------------------------------
# Transaction engine: rejections and cancellation
# ---------------------------------------------------------------------------


def test_cancel_restores_stock_without_ledger_writes(engine, runtime_context, loyal_customer):
    customers_before = runtime_context.settings.customers_file.read_text(encoding="utf-8")
    engine.open(loyal_customer.phone)
    engine.add_line("Rice", 20)
    engine.apply_loyalty_discount()
    assert _stock(runtime_context, "Rice") == 80

    restored = engine.cancel()

    assert restored == [("Rice", 20)]
    assert engine.state is TransactionState.CANCELLED
    assert _stock(runtime_context, "Rice") == 100
    assert _sales_lines(runtime_context) == []
    assert runtime_context.settings.customers_file.read_text(encoding="utf-8") == customers_before


def test_cancel_after_partial_payment_restores_stock(engine, runtime_context):
    engine.open()
    engine.add_line("Rice", 20)
    engine.price()
    with pytest.raises(core_logic.PaymentMismatch):
        engine.collect_payment([Tender("cash", "100")])

    engine.cancel()

    assert _stock(runtime_context, "Rice") == 100
    assert _sales_lines(runtime_context) == []


def test_add_line_never_oversells(engine, runtime_context):
    engine.open()
    engine.add_line("Rice", 60)

    with pytest.raises(core_logic.InsufficientStock):
        engine.add_line("Rice", 41)

    assert _stock(runtime_context, "Rice") == 40
    assert len(engine.cart) == 1
    assert engine.state is TransactionState.OPEN


@pytest.mark.parametrize(
    ("key", "quantity", "error"),
    [
        ("Sugar", 1, core_logic.MissingReferenceError),
        ("", 1, core_logic.ValidationError),
        ("Rice", 0, core_logic.ValidationError),
        ("Rice", -2, core_logic.ValidationError),
    ],
)
def test_add_line_rejections_leave_cart_and_stock_untouched(engine, runtime_context, key, quantity, error):
    engine.open()

    with pytest.raises(error):
        engine.add_line(key, quantity)

    assert engine.cart.is_empty()
    assert _stock(runtime_context, "Rice") == 100


def test_name_lookup_does_not_match_barcodes(engine):
    engine.open()

    with pytest.raises(core_logic.MissingReferenceError):
        engine.add_line("12345678", 1, lookup=LookupKind.NAME)


def test_price_requires_items(engine):
    engine.open()

    with pytest.raises(core_logic.ValidationError):
        engine.price()
    assert engine.state is TransactionState.OPEN


def test_payment_mismatch_keeps_collecting(engine):
    engine.open()
    engine.add_line("Milk", 1)
    engine.price()

    with pytest.raises(core_logic.PaymentMismatch):
        engine.collect_payment([Tender("cash", "50")])
    assert engine.state is TransactionState.PAYMENT_COLLECTION
    assert engine.remaining_due == Decimal("44.50")

    engine.collect_payment([Tender("cash", "44.50")])
    result = engine.commit()

    assert [entry.amount for entry in result.payments] == [Decimal("50.00"), Decimal("44.50")]


def test_commit_requires_complete_payment(engine):
    engine.open()
    engine.add_line("Milk", 1)
    engine.price()
    with pytest.raises(core_logic.PaymentMismatch):
        engine.collect_payment([])

    with pytest.raises(core_logic.PaymentMismatch):
        engine.commit()


@pytest.mark.parametrize("method", ["commit", "price", "cancel"])
def test_operations_out_of_order_raise_invalid_state(engine, method):
    with pytest.raises(core_logic.InvalidTransactionState):
        getattr(engine, method)()


def test_terminal_engine_rejects_further_calls(engine):
    engine.open()
    engine.add_line("Rice", 1)
    engine.cancel()

    with pytest.raises(core_logic.InvalidTransactionState):
        engine.add_line("Rice", 1)
    with pytest.raises(core_logic.InvalidTransactionState):
        engine.cancel()


@pytest.mark.parametrize("method", ["collect_payment", "commit"])
def test_payment_steps_require_pricing_even_when_state_is_forced(engine, method):
    engine.open()
    engine.add_line("Rice", 1)
    engine.state = TransactionState.PAYMENT_COLLECTION

    with pytest.raises(core_logic.InvalidTransactionState, match="before the cart is priced"):
        if method == "commit":
            engine.commit()
        else:
            engine.collect_payment([Tender("cash", "42")])


# ---------------------------------------------------------------------------
# Transaction engine: persistence failures
# ---------------------------------------------------------------------------


def test_failed_reservation_save_leaves_cart_unchanged(engine, runtime_context, monkeypatch):
    engine.open()
    monkeypatch.setattr(
        data_manager, "save_products", Mock(side_effect=data_manager.PersistenceFailure("disk full"))
    )

    with pytest.raises(data_manager.PersistenceFailure):
        engine.add_line("Rice", 5)

    assert engine.cart.is_empty()
    assert engine.state is TransactionState.OPEN
    assert _stock(runtime_context, "Rice") == 100


def test_failed_cancel_keeps_reservation_in_cart(engine, monkeypatch):
    engine.open()
    engine.add_line("Rice", 5)
    monkeypatch.setattr(
        data_manager, "save_products", Mock(side_effect=data_manager.PersistenceFailure("disk full"))
    )

    with pytest.raises(data_manager.PersistenceFailure):
        engine.cancel()

    assert engine.state is TransactionState.OPEN
    assert [(line.product.name, line.quantity) for line in engine.cart.lines] == [("Rice", 5)]


def test_failed_ledger_append_is_logged_and_not_rolled_back(engine, runtime_context, monkeypatch, caplog):
    engine.open()
    engine.add_line("Rice", 20)
    engine.price()
    engine.collect_payment([Tender("cash", "790")])
    monkeypatch.setattr(
        data_manager, "append_sale", Mock(side_effect=data_manager.PersistenceFailure("read-only"))
    )

    with caplog.at_level("ERROR"):
        with pytest.raises(data_manager.PersistenceFailure):
            engine.commit()

    assert "reconcile manually" in caplog.text
    assert engine.state is TransactionState.PAYMENT_COLLECTION
    assert _stock(runtime_context, "Rice") == 80


# ---------------------------------------------------------------------------
# Catalog and customer maintenance
# ---------------------------------------------------------------------------


def test_upsert_product_adds_and_stamps(runtime_context, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 1, 1, tzinfo=UTC))

    record = core_logic.upsert_product(runtime_context, name="Tea", price="120.5", quantity=10, barcode="87654321")

    assert record.price == Decimal("120.50")
    assert record.low_stock_threshold == 5
    assert record.last_updated == int(moment.timestamp())
    assert core_logic.list_products(runtime_context) == [record]


def test_upsert_product_replaces_existing_name(runtime_context, seed_catalog):
    seed_catalog()

    core_logic.upsert_product(runtime_context, name="Rice", price="42", quantity=7, low_stock_threshold=3)

    products = core_logic.list_products(runtime_context)
    assert [product.name for product in products] == ["Rice", "Milk"]
    assert products[0].quantity == 7
    assert products[0].barcode is None
    assert products[0].low_stock_threshold == 3


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "  "},
        {"name": "Tea|Leaf"},
        {"price": "-1"},
        {"price": "free"},
        {"quantity": -1},
        {"barcode": "12AB"},
    ],
)
def test_upsert_product_validates_fields(runtime_context, overrides):
    payload = {"name": "Tea", "price": "10", "quantity": 1, **overrides}

    with pytest.raises(core_logic.ValidationError):
        core_logic.upsert_product(runtime_context, **payload)


def test_upsert_product_rejects_name_that_reads_back_as_comment(runtime_context, seed_catalog):
    seed_catalog()

    with pytest.raises(core_logic.ValidationError, match="may not start with"):
        core_logic.upsert_product(runtime_context, name="#1 Coffee", price="10", quantity=5)

    assert [product.name for product in core_logic.list_products(runtime_context)] == ["Rice", "Milk"]


def test_upsert_product_name_with_inner_hash_round_trips(runtime_context):
    core_logic.upsert_product(runtime_context, name="Coffee #1", price="10", quantity=5)

    assert [product.name for product in core_logic.list_products(runtime_context)] == ["Coffee #1"]


def test_upsert_product_rejects_barcode_owned_by_another_product(runtime_context, seed_catalog):
    seed_catalog()

    with pytest.raises(core_logic.BusinessRuleViolation, match="already assigned"):
        core_logic.upsert_product(runtime_context, name="Tea", price="10", quantity=1, barcode="12345678")


def test_update_product_changes_selected_fields(runtime_context, seed_catalog):
    seed_catalog()

    updated = core_logic.update_product(runtime_context, "12345678", price="45", barcode="", category="Staples")

    assert updated.name == "Rice"
    assert updated.price == Decimal("45.00")
    assert updated.barcode is None
    assert updated.category == "Staples"
    assert updated.quantity == 100
    assert core_logic.find_product(runtime_context, "Rice") == updated


def test_update_product_rejects_unknown_fields(runtime_context, seed_catalog):
    seed_catalog()

    with pytest.raises(core_logic.ValidationError):
        core_logic.update_product(runtime_context, "Rice", colour="red")


def test_delete_product_removes_record(runtime_context, seed_catalog):
    seed_catalog()

    removed = core_logic.delete_product(runtime_context, "Milk")

    assert removed == MILK
    assert [product.name for product in core_logic.list_products(runtime_context)] == ["Rice"]
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.delete_product(runtime_context, "Milk")


def test_register_customer_uses_injected_ids(runtime_context, id_generator):
    record = core_logic.register_customer(runtime_context, phone="0170", name="Ada", email="ada@example.com")

    assert record.customer_id == "TEST1"
    assert id_generator.calls == [0]
    assert core_logic.find_customer(runtime_context, "0170") == record


def test_register_customer_rejects_duplicate_phone(runtime_context, loyal_customer):
    with pytest.raises(core_logic.BusinessRuleViolation, match="already exists"):
        core_logic.register_customer(runtime_context, phone=loyal_customer.phone, name="Someone")


def test_find_customer_missing_phone(runtime_context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.find_customer(runtime_context, "0000")


# ---------------------------------------------------------------------------
# Reporting helpers
# ---------------------------------------------------------------------------


def test_low_stock_items_excludes_out_of_stock():
    products = [
        replace(RICE, quantity=0),
        replace(RICE, name="Oats", quantity=5),
        replace(RICE, name="Corn", quantity=6),
        replace(MILK, quantity=10),
        replace(MILK, name="Butter", quantity=2, low_stock_threshold=0),
    ]

    names = [product.name for product in core_logic.low_stock_items(products, default_threshold=3)]

    assert names == ["Oats", "Milk", "Butter"]


def test_purchase_order_lines_include_empty_shelves():
    products = [replace(MILK, quantity=0), RICE]

    lines = core_logic.purchase_order_lines(products, default_threshold=5)

    assert lines == [core_logic.PurchaseOrderLine("Milk", 0, 30, "TBD", "Dairy")]


def test_summarize_sales_groups_by_day():
    sales = [
        SaleRecord(datetime(2024, 3, 1, 9, tzinfo=UTC), "A", Decimal("10.00"), ()),
        SaleRecord(datetime(2024, 3, 1, 18, tzinfo=UTC), "B", Decimal("20.01"), ()),
        SaleRecord(datetime(2024, 3, 2, 9, tzinfo=UTC), "C", Decimal("5.00"), ()),
    ]

    summaries = core_logic.summarize_sales(sales)

    assert [(entry.day, entry.sale_count, entry.revenue) for entry in summaries] == [
        (date(2024, 3, 1), 2, Decimal("30.01")),
        (date(2024, 3, 2), 1, Decimal("5.00")),
    ]
    assert summaries[0].average == Decimal("15.01")
    assert core_logic.summarize_sales(sales, day=date(2024, 3, 2))[0].sale_count == 1


def test_filter_sales_keeps_ledger_order_for_one_day():
    sales = [
        SaleRecord(datetime(2024, 3, 1, 9, tzinfo=UTC), "A", Decimal("10.00"), (), 1),
        SaleRecord(datetime(2024, 3, 2, 9, tzinfo=UTC), "B", Decimal("20.00"), (), 2),
        SaleRecord(datetime(2024, 3, 1, 18, tzinfo=UTC), "C", Decimal("5.00"), (), 3),
    ]

    assert [sale.customer_name for sale in core_logic.filter_sales(sales, day=date(2024, 3, 1))] == ["A", "C"]
    assert core_logic.filter_sales(sales) == sales


def test_current_day_follows_the_clock(set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 6, 30, 23, 59, tzinfo=UTC))

    assert core_logic.current_day() == date(2024, 6, 30)


@pytest.mark.parametrize(
    ("quantity", "threshold", "expected"),
    [
        (0, 5, constants.StockStatus.OUT),
        (5, 5, constants.StockStatus.LOW),
        (6, 5, constants.StockStatus.OK),
        (3, 0, constants.StockStatus.LOW),
    ],
)
def test_stock_status(quantity, threshold, expected):
    product = replace(RICE, quantity=quantity, low_stock_threshold=threshold)

    assert core_logic.stock_status(product, default_threshold=3) is expected


@pytest.fixture
def searchable_catalog(seed_catalog):
    return seed_catalog([RICE, MILK, ProductRecord("Brown Rice", Decimal("60.00"), 4)])


@pytest.mark.parametrize(
    ("term", "field", "expected"),
    [
        ("rice", constants.SearchField.NAME, ["Rice", "Brown Rice"]),
        ("  BROWN ", constants.SearchField.NAME, ["Brown Rice"]),
        ("dair", constants.SearchField.CATEGORY, ["Milk"]),
        ("12345678", constants.SearchField.BARCODE, ["Rice"]),
        ("1234", constants.SearchField.BARCODE, []),
        ("tea", "name", []),
    ],
)
def test_search_products(runtime_context, searchable_catalog, term, field, expected):
    matches = core_logic.search_products(runtime_context, term, field)

    assert [product.name for product in matches] == expected


def test_search_products_rejects_empty_term(runtime_context, searchable_catalog):
    with pytest.raises(core_logic.ValidationError):
        core_logic.search_products(runtime_context, "   ")
    with pytest.raises(core_logic.ValidationError):
        core_logic.search_products(runtime_context, "rice", "supplier")


def test_dashboard_snapshot_counts_value_and_alerts(runtime_context, seed_catalog, loyal_customer):
    seed_catalog(
        [
            RICE,
            MILK,
            ProductRecord("Bread", Decimal("55.00"), 0),
            ProductRecord("Oats", Decimal("10.00"), 2),
        ]
    )

    snapshot = core_logic.dashboard_snapshot(runtime_context)

    assert snapshot == core_logic.DashboardSnapshot(
        product_count=4,
        inventory_value=Decimal("6720.00"),
        customer_count=1,
        low_stock_count=1,
        out_of_stock_count=1,
    )
