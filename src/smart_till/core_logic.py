"""Business logic layer for Smart Till.

This module contains the sale transaction engine and the rules around it:
cart accumulation with eager stock reservation, multi-instrument payment
splitting, VAT and threshold pricing, loyalty accrual and redemption, and the
commit/rollback contract between the catalog and the two ledgers. It consumes
the Data Access Layer (DAL) for all I/O and never talks to the console.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from . import data_manager, log
from .constants import (
    CENTS,
    COMMENT_MARKER,
    DEFAULT_CUSTOMER_ID_BASE,
    DEFAULT_CUSTOMER_ID_PREFIX,
    EXPECTED_SCHEMA_VERSION,
    FIELD_DELIMITER,
    PAYMENT_TOLERANCE,
    WALK_IN_CUSTOMER,
    LookupKind,
    PaymentMethod,
    SearchField,
    StockStatus,
    TransactionState,
)
from .data_manager import CustomerRecord, PersistenceFailure, PricingPolicy, ProductRecord, SaleRecord


_BARCODE_PATTERN = re.compile(r"[0-9]{8,13}")
_ZERO = Decimal("0.00")

MoneyLike = Union[Decimal, int, float, str]
IdGenerator = Callable[[Sequence[CustomerRecord]], str]


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product or customer is unknown."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a cart line asks for more units than are on hand."""

    def __init__(self, product_name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_name}': requested {requested}, only {available} available"
        )
        self.product_name = product_name
        self.requested = requested
        self.available = available


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when a quantity, price, barcode, or payment input is malformed."""


class PaymentMismatch(BusinessRuleViolation):
    """Raised when collected payments do not cover the amount due."""


class InvalidTransactionState(BusinessRuleViolation):
    """Raised when an engine operation is not allowed in its current state."""


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


class CustomerIdGenerator:
    """Issue ``<prefix><number>`` customer ids from a monotonic counter.

    The counter starts at ``base`` and never falls below the highest numeric
    suffix already present in the ledger handed to each call, so a restarted
    process does not hand out an id that is already taken.
    """

    def __init__(self, prefix: str = DEFAULT_CUSTOMER_ID_PREFIX, base: int = DEFAULT_CUSTOMER_ID_BASE) -> None:
        self.prefix = prefix
        self._last = base

    def __call__(self, existing: Sequence[CustomerRecord] = ()) -> str:
        suffixes = [
            int(record.customer_id[len(self.prefix):])
            for record in existing
            if record.customer_id.startswith(self.prefix) and record.customer_id[len(self.prefix):].isdigit()
        ]
        self._last = max([self._last, *suffixes]) + 1
        return f"{self.prefix}{self._last}"


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and injected capabilities used by the BLL."""

    settings: data_manager.ConfigSettings
    id_generator: Optional[IdGenerator] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.id_generator is None:
            generator = CustomerIdGenerator(self.settings.customer_id_prefix, self.settings.customer_id_base)
            object.__setattr__(self, "id_generator", generator)

    @property
    def policy(self) -> PricingPolicy:
        return self.settings.pricing


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _epoch_now() -> int:
    return int(_resolve_timestamp(None).timestamp())


def load_runtime_context(config_path: Optional[Path] = None, *, id_generator: Optional[IdGenerator] = None) -> RuntimeContext:
    """Load configuration settings for the BLL.

    Resolves ``config.ini`` (walking up from the working directory when no
    path is given) and parses it into :class:`RuntimeContext`. Stores are not
    opened here; each operation loads fresh snapshots on demand.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file.
        id_generator (IdGenerator | None): Customer id capability. Defaults to a
            :class:`CustomerIdGenerator` built from the configured prefix/base.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    log.info("Loaded runtime context for store '%s' (data dir '%s')", settings.store_name, settings.data_dir)
    return RuntimeContext(settings=settings, id_generator=id_generator)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that ``config.ini`` targets the store layout this code reads.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def is_valid_barcode(code: Optional[str]) -> bool:
    """Return ``True`` when ``code`` is 8 to 13 ASCII digits."""

    return bool(code) and _BARCODE_PATTERN.fullmatch(code) is not None


def to_money(value: MoneyLike, *, label: str = "amount") -> Decimal:
    """Coerce ``value`` into a Decimal rounded to cents.

    Raises:
        ValidationError: If ``value`` is not a finite number.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}: {value!r}")
    try:
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid {label}: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid {label}: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def require_positive_quantity(quantity: object) -> int:
    """Validate that ``quantity`` is a strictly positive whole number.

    Returns:
        int: The validated quantity.

    Raises:
        ValidationError: If ``quantity`` is not an integer greater than zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError(f"Quantity must be a whole number, got {quantity!r}")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")
    return quantity


def require_nonnegative_money(amount: Decimal, *, label: str = "amount") -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < 0:
        log.error("Monetary value validation failed for %s: %s", label, amount)
        raise ValidationError(f"{label.capitalize()} must be zero or positive")


def require_clean_text(value: str, *, label: str) -> str:
    """Reject text that would break the delimited store format."""

    if FIELD_DELIMITER in value or "\n" in value or "\r" in value:
        raise ValidationError(f"{label.capitalize()} may not contain '{FIELD_DELIMITER}' or line breaks")
    return value


def _optional_text(value: Optional[str], *, label: str) -> Optional[str]:
    text = (value or "").strip()
    return require_clean_text(text, label=label) if text else None


# ---------------------------------------------------------------------------
# Catalog maintenance
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[ProductRecord]:
    """Return a fresh snapshot of the catalog in file order."""

    return data_manager.load_products(context.settings.catalog_file)


def locate_product(products: Sequence[ProductRecord], key: str, lookup: LookupKind = LookupKind.AUTO) -> Optional[int]:
    """Resolve ``key`` against ``products`` by name, barcode, or both.

    ``LookupKind.AUTO`` tries the barcode first when ``key`` looks like one and
    falls back to the name, matching how a scanner and a typed name share the
    same prompt.

    Raises:
        ValidationError: If ``key`` is empty.
    """
    key = (key or "").strip()
    if not key:
        raise ValidationError("Product name or barcode cannot be empty")

    lookup = LookupKind(lookup)
    if lookup is LookupKind.NAME:
        return data_manager.find_product_by_name(products, key)
    if lookup is LookupKind.BARCODE:
        return data_manager.find_product_by_barcode(products, key)

    index = None
    if is_valid_barcode(key):
        index = data_manager.find_product_by_barcode(products, key)
    if index is None:
        index = data_manager.find_product_by_name(products, key)
    return index


def find_product(context: RuntimeContext, key: str, lookup: LookupKind = LookupKind.AUTO) -> ProductRecord:
    """Resolve a single product from a fresh catalog snapshot.

    Raises:
        MissingReferenceError: If no product matches ``key``.
    """
    products = list_products(context)
    index = locate_product(products, key, lookup)
    if index is None:
        log.warning("Product lookup failed for '%s'", key)
        raise MissingReferenceError(f"Unknown product: {key}")
    return products[index]


def upsert_product(
    context: RuntimeContext,
    *,
    name: str,
    price: MoneyLike,
    quantity: int,
    barcode: Optional[str] = None,
    category: Optional[str] = None,
    supplier: Optional[str] = None,
    low_stock_threshold: int = 0,
) -> ProductRecord:
    """Add a product, or replace the product that already has ``name``.

    Thresholds of zero or less fall back to the configured global threshold.
    A barcode already owned by a different product is rejected so barcode
    lookups stay unambiguous.

    Returns:
        ProductRecord: The record as persisted.

    Raises:
        ValidationError: If any field is malformed.
        BusinessRuleViolation: If the barcode belongs to another product.
        PersistenceFailure: If the catalog cannot be saved.
    """
    name = require_clean_text((name or "").strip(), label="product name")
    if not name:
        raise ValidationError("Product name cannot be empty")
    if name.startswith(COMMENT_MARKER):
        raise ValidationError(f"Product name may not start with '{COMMENT_MARKER}'")
    amount = to_money(price, label="price")
    require_nonnegative_money(amount, label="price")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationError("Quantity must be a whole number of zero or more")
    code = _optional_text(barcode, label="barcode")
    if code is not None and not is_valid_barcode(code):
        raise ValidationError("Invalid barcode format! Must be 8-13 digits.")

    record = ProductRecord(
        name=name,
        price=amount,
        quantity=quantity,
        barcode=code,
        category=_optional_text(category, label="category"),
        supplier=_optional_text(supplier, label="supplier"),
        low_stock_threshold=low_stock_threshold if low_stock_threshold > 0 else context.policy.low_stock_threshold,
        last_updated=_epoch_now(),
    )

    path = context.settings.catalog_file
    products = data_manager.load_products(path)
    index = data_manager.find_product_by_name(products, name)
    owner = data_manager.find_product_by_barcode(products, code)
    if owner is not None and owner != index:
        raise BusinessRuleViolation(f"Barcode {code} is already assigned to '{products[owner].name}'")

    if index is None:
        products.append(record)
    else:
        products[index] = record
    data_manager.save_products(path, products)
    log.info("%s product '%s' (price=%s, quantity=%s)", "Updated" if index is not None else "Added", name, amount, quantity)
    return record


_UPDATABLE_PRODUCT_FIELDS = frozenset({"price", "quantity", "barcode", "category", "supplier", "low_stock_threshold"})


def update_product(
    context: RuntimeContext,
    key: str,
    *,
    lookup: LookupKind = LookupKind.AUTO,
    **changes: object,
) -> ProductRecord:
    """Apply field ``changes`` to an existing product.

    Optional text fields (``barcode``, ``category``, ``supplier``) are cleared
    by passing ``None`` or an empty string.

    Raises:
        MissingReferenceError: If ``key`` matches no product.
        ValidationError: If a change names an unknown field or is malformed.
        PersistenceFailure: If the catalog cannot be saved.
    """
    unknown = set(changes) - _UPDATABLE_PRODUCT_FIELDS
    if unknown:
        raise ValidationError(f"Unknown product field(s): {', '.join(sorted(unknown))}")

    path = context.settings.catalog_file
    products = data_manager.load_products(path)
    index = locate_product(products, key, lookup)
    if index is None:
        log.warning("Product lookup failed for '%s'", key)
        raise MissingReferenceError(f"Unknown product: {key}")

    values: Dict[str, object] = {}
    if "price" in changes:
        amount = to_money(changes["price"], label="price")  # type: ignore[arg-type]
        require_nonnegative_money(amount, label="price")
        values["price"] = amount
    if "quantity" in changes:
        quantity = changes["quantity"]
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError("Quantity must be a whole number of zero or more")
        values["quantity"] = quantity
    if "barcode" in changes:
        code = _optional_text(changes["barcode"], label="barcode")  # type: ignore[arg-type]
        if code is not None:
            if not is_valid_barcode(code):
                raise ValidationError("Invalid barcode format! Must be 8-13 digits.")
            owner = data_manager.find_product_by_barcode(products, code)
            if owner is not None and owner != index:
                raise BusinessRuleViolation(f"Barcode {code} is already assigned to '{products[owner].name}'")
        values["barcode"] = code
    for text_field in ("category", "supplier"):
        if text_field in changes:
            values[text_field] = _optional_text(changes[text_field], label=text_field)  # type: ignore[arg-type]
    if "low_stock_threshold" in changes:
        threshold = changes["low_stock_threshold"]
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise ValidationError("Low stock threshold must be a whole number")
        values["low_stock_threshold"] = threshold if threshold > 0 else context.policy.low_stock_threshold

    updated = replace(products[index], last_updated=_epoch_now(), **values)
    products[index] = updated
    data_manager.save_products(path, products)
    log.info("Updated product '%s' fields: %s", updated.name, ", ".join(sorted(values)) or "none")
    return updated


def delete_product(context: RuntimeContext, key: str, *, lookup: LookupKind = LookupKind.AUTO) -> ProductRecord:
    """Remove a product from the catalog and return the removed record.

    Raises:
        MissingReferenceError: If ``key`` matches no product.
        PersistenceFailure: If the catalog cannot be saved.
    """
    path = context.settings.catalog_file
    products = data_manager.load_products(path)
    index = locate_product(products, key, lookup)
    if index is None:
        log.warning("Product lookup failed for '%s'", key)
        raise MissingReferenceError(f"Unknown product: {key}")
    removed = products.pop(index)
    data_manager.save_products(path, products)
    log.info("Deleted product '%s'", removed.name)
    return removed


def low_stock_items(products: Iterable[ProductRecord], default_threshold: int) -> List[ProductRecord]:
    """Return in-stock products at or below their low-stock threshold."""

    return [
        product
        for product in products
        if 0 < product.quantity <= product.effective_threshold(default_threshold)
    ]


def stock_status(product: ProductRecord, default_threshold: int) -> StockStatus:
    """Classify ``product`` as out of stock, low, or OK."""

    if product.quantity == 0:
        return StockStatus.OUT
    if product.quantity <= product.effective_threshold(default_threshold):
        return StockStatus.LOW
    return StockStatus.OK


def search_products(
    context: RuntimeContext,
    term: str,
    field: SearchField = SearchField.NAME,
) -> List[ProductRecord]:
    """Find catalog products matching ``term``.

    Name and category searches are case-insensitive substring matches; a
    barcode search matches the whole code exactly. Products without a category
    never match a category search.

    Raises:
        ValidationError: If ``term`` is empty.
    """
    needle = (term or "").strip()
    if not needle:
        raise ValidationError("Search term cannot be empty")
    try:
        field = SearchField(field)
    except ValueError as exc:
        raise ValidationError(f"Unknown search field: {field!r}") from exc

    if field is SearchField.BARCODE:
        matches = [product for product in list_products(context) if product.barcode == needle]
    else:
        folded = needle.casefold()
        matches = [
            product
            for product in list_products(context)
            if folded in (getattr(product, field.value) or "").casefold()
        ]
    log.info("Search by %s for '%s' matched %d product(s)", field.value, needle, len(matches))
    return matches


@dataclass(frozen=True)
class PurchaseOrderLine:
    """Restock suggestion for one product."""

    name: str
    current_stock: int
    suggested_quantity: int
    supplier: str
    category: str


def purchase_order_lines(products: Iterable[ProductRecord], default_threshold: int) -> List[PurchaseOrderLine]:
    """Suggest restocks for every product at or below its threshold.

    The suggested order is three times the threshold; missing suppliers and
    categories are reported as ``TBD`` and ``General``.
    """
    lines = []
    for product in products:
        threshold = product.effective_threshold(default_threshold)
        if product.quantity <= threshold:
            lines.append(
                PurchaseOrderLine(
                    name=product.name,
                    current_stock=product.quantity,
                    suggested_quantity=threshold * 3,
                    supplier=product.supplier or "TBD",
                    category=product.category or "General",
                )
            )
    return lines


# ---------------------------------------------------------------------------
# Customer maintenance
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[CustomerRecord]:
    """Return a fresh snapshot of the customer ledger."""

    return data_manager.load_customers(context.settings.customers_file)


def find_customer(context: RuntimeContext, phone: str) -> CustomerRecord:
    """Resolve a customer by phone number.

    Raises:
        MissingReferenceError: If no customer is registered with ``phone``.
    """
    customers = list_customers(context)
    index = data_manager.find_customer_by_phone(customers, phone)
    if index is None:
        log.warning("Customer lookup failed for phone '%s'", phone)
        raise MissingReferenceError(f"No customer registered with phone {phone}")
    return customers[index]


def register_customer(context: RuntimeContext, *, phone: str, name: str, email: Optional[str] = None) -> CustomerRecord:
    """Create and persist a new customer record.

    Raises:
        ValidationError: If the phone or name is empty or malformed.
        BusinessRuleViolation: If the phone is already registered.
        PersistenceFailure: If the ledger cannot be saved.
    """
    phone = require_clean_text((phone or "").strip(), label="phone")
    name = require_clean_text((name or "").strip(), label="customer name")
    if not phone or not name:
        raise ValidationError("Customer phone and name are required")

    path = context.settings.customers_file
    customers = data_manager.load_customers(path)
    if data_manager.find_customer_by_phone(customers, phone) is not None:
        log.warning("Attempted to register duplicate phone '%s'", phone)
        raise BusinessRuleViolation("Customer already exists!")

    record = CustomerRecord(
        customer_id=context.id_generator(customers),
        name=name,
        phone=phone,
        email=_optional_text(email, label="email"),
        last_visit=_epoch_now(),
    )
    customers.append(record)
    data_manager.save_customers(path, customers)
    log.info("Registered customer '%s' (%s)", record.customer_id, record.name)
    return record


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailySalesSummary:
    """Aggregate of the sales committed on one calendar day."""

    day: date
    sale_count: int
    revenue: Decimal

    @property
    def average(self) -> Decimal:
        return (self.revenue / self.sale_count).quantize(CENTS, rounding=ROUND_HALF_UP)


def summarize_sales(sales: Iterable[SaleRecord], *, day: Optional[date] = None) -> List[DailySalesSummary]:
    """Group committed sales per day, optionally restricted to ``day``."""

    counts: Dict[date, int] = {}
    totals: Dict[date, Decimal] = {}
    for sale in sales:
        sale_day = sale.timestamp.date()
        if day is not None and sale_day != day:
            continue
        counts[sale_day] = counts.get(sale_day, 0) + 1
        totals[sale_day] = totals.get(sale_day, _ZERO) + sale.net_total
    return [
        DailySalesSummary(day=sale_day, sale_count=counts[sale_day], revenue=totals[sale_day].quantize(CENTS))
        for sale_day in sorted(counts)
    ]


def current_day() -> date:
    """Return today's date in the timezone sales are stamped in."""

    return _resolve_timestamp(None).date()


def filter_sales(sales: Iterable[SaleRecord], *, day: Optional[date] = None) -> List[SaleRecord]:
    """Return committed sales in ledger order, optionally only those on ``day``."""

    return [sale for sale in sales if day is None or sale.timestamp.date() == day]


@dataclass(frozen=True)
class DashboardSnapshot:
    """Store-wide figures shown on the overview screen."""

    product_count: int
    inventory_value: Decimal
    customer_count: int
    low_stock_count: int
    out_of_stock_count: int


def dashboard_snapshot(context: RuntimeContext) -> DashboardSnapshot:
    products = list_products(context)
    statuses = [stock_status(product, context.policy.low_stock_threshold) for product in products]
    value = sum((product.price * product.quantity for product in products), _ZERO)
    return DashboardSnapshot(
        product_count=len(products),
        inventory_value=value.quantize(CENTS),
        customer_count=len(list_customers(context)),
        low_stock_count=statuses.count(StockStatus.LOW),
        out_of_stock_count=statuses.count(StockStatus.OUT),
    )


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CartLine:
    """A product snapshot taken when the line was added, and the units sold."""

    product: ProductRecord
    quantity: int

    @property
    def amount(self) -> Decimal:
        return (self.product.price * self.quantity).quantize(CENTS)


class Cart:
    """In-memory accumulation of cart lines for one checkout.

    The cart never touches a store; the engine reserves and restores stock.
    """

    def __init__(self) -> None:
        self._lines: List[CartLine] = []
        self._discount = _ZERO

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines)

    @property
    def discount(self) -> Decimal:
        return self._discount

    def add_line(self, product: ProductRecord, quantity: int) -> CartLine:
        """Append ``quantity`` units of ``product`` to the cart.

        Raises:
            ValidationError: If ``quantity`` is not a positive whole number.
            InsufficientStock: If ``quantity`` exceeds ``product.quantity``.
        """
        require_positive_quantity(quantity)
        if quantity > product.quantity:
            raise InsufficientStock(product.name, quantity, product.quantity)
        line = CartLine(product=product, quantity=quantity)
        self._lines.append(line)
        return line

    def remove_all(self) -> List[Tuple[str, int]]:
        """Drain the cart, returning every reserved ``(name, quantity)`` once."""

        drained = [(line.product.name, line.quantity) for line in self._lines]
        self._lines.clear()
        self._discount = _ZERO
        return drained

    def reinstate(self, lines: Iterable[CartLine], discount: Decimal = _ZERO) -> None:
        """Put previously drained lines back, e.g. after a failed rollback."""

        self._lines.extend(lines)
        self._discount = discount

    def apply_discount(self, amount: Decimal) -> None:
        """Reduce the running subtotal by ``amount``."""

        if amount <= 0 or amount > self.subtotal():
            raise ValidationError(f"Discount must be between 0 and the subtotal, got {amount}")
        self._discount += amount

    def line_total(self) -> Decimal:
        return sum((line.amount for line in self._lines), _ZERO)

    def subtotal(self) -> Decimal:
        return self.line_total() - self._discount

    def is_empty(self) -> bool:
        return not self._lines

    def __len__(self) -> int:
        return len(self._lines)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentEntry:
    """One accepted payment instrument entry."""

    method: PaymentMethod
    amount: Decimal
    reference: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class Tender:
    """A payment attempt as entered at the till, not yet validated."""

    method: Union[PaymentMethod, str]
    amount: MoneyLike
    reference: Optional[str] = None


def coerce_payment_method(value: Union[PaymentMethod, str, int]) -> PaymentMethod:
    """Resolve a method enum, its value, its name, or its 1-4 menu number.

    Raises:
        ValidationError: If ``value`` names no supported instrument.
    """
    if isinstance(value, PaymentMethod):
        return value
    members = list(PaymentMethod)
    text = str(value).strip().lower()
    if text.isdigit() and 1 <= int(text) <= len(members):
        return members[int(text) - 1]
    for member in members:
        if text in (member.value, member.name.lower()):
            return member
    raise ValidationError(f"Invalid payment method: {value!r}")


class PaymentSplitter:
    """Collect payment entries until they sum to the amount due.

    Each entry is capped at the amount still remaining. The amount is
    considered collected once the remainder is within ``PAYMENT_TOLERANCE``.
    """

    def __init__(self, amount_due: MoneyLike, *, require_reference: bool = True) -> None:
        due = to_money(amount_due, label="amount due")
        require_nonnegative_money(due, label="amount due")
        self.amount_due = due
        self.require_reference = require_reference
        self._entries: List[PaymentEntry] = []

    @property
    def entries(self) -> Tuple[PaymentEntry, ...]:
        return tuple(self._entries)

    @property
    def collected(self) -> Decimal:
        return sum((entry.amount for entry in self._entries), _ZERO)

    @property
    def remaining(self) -> Decimal:
        return self.amount_due - self.collected

    @property
    def is_complete(self) -> bool:
        return self.remaining <= PAYMENT_TOLERANCE

    def offer(self, method: Union[PaymentMethod, str, int], amount: MoneyLike, reference: Optional[str] = None) -> PaymentEntry:
        """Validate one tender and record it as a :class:`PaymentEntry`.

        Rejected tenders leave the splitter unchanged.

        Raises:
            ValidationError: If the method is unknown, the amount is not a
                positive number, a non-cash tender lacks a reference, or
                nothing remains to be paid.
        """
        if self.is_complete:
            raise ValidationError("The amount due has already been collected")
        instrument = coerce_payment_method(method)
        value = to_money(amount)
        if value <= 0:
            raise ValidationError("Invalid amount! Payments must be greater than zero")
        reference = (reference or "").strip() or None
        if self.require_reference and instrument is not PaymentMethod.CASH and reference is None:
            raise ValidationError(f"{instrument.label} payments need a reference/transaction ID")

        remaining = self.remaining
        if value > remaining:
            log.info("Capping %s payment of %s at remaining %s", instrument.value, value, remaining)
            value = remaining

        entry = PaymentEntry(method=instrument, amount=value, reference=reference, timestamp=_resolve_timestamp(None))
        self._entries.append(entry)
        log.info("Payment of %s recorded via %s (remaining %s)", value, instrument.label, self.remaining)
        return entry

    def verify(self) -> None:
        """Raise :class:`PaymentMismatch` unless the entries cover the amount due."""

        if abs(self.collected - self.amount_due) > PAYMENT_TOLERANCE:
            raise PaymentMismatch(f"Collected {self.collected} of {self.amount_due} due")


def collect_payments(
    amount_due: MoneyLike,
    tenders: Iterable[Tender],
    *,
    splitter: Optional[PaymentSplitter] = None,
) -> List[PaymentEntry]:
    """Feed ``tenders`` into a splitter until ``amount_due`` is covered.

    ``tenders`` plays the role of the till prompt: rejected attempts are logged
    and skipped, and the iterable is not consumed past the tender that
    completes the payment.

    Returns:
        list[PaymentEntry]: All entries held by the splitter.

    Raises:
        PaymentMismatch: If the tenders run out before the amount is covered.
    """
    splitter = splitter if splitter is not None else PaymentSplitter(amount_due)
    if not splitter.is_complete:
        for tender in tenders:
            try:
                splitter.offer(tender.method, tender.amount, tender.reference)
            except ValidationError as exc:
                log.warning("Rejected tender %r: %s", tender, exc)
                continue
            if splitter.is_complete:
                break
    if not splitter.is_complete:
        raise PaymentMismatch(f"Remaining amount {splitter.remaining} of {splitter.amount_due} still due")
    return list(splitter.entries)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricingSummary:
    """Totals for a priced cart."""

    subtotal: Decimal
    vat: Decimal
    discount: Decimal
    net_total: Decimal
    loyalty_discount: Decimal = _ZERO


def compute_pricing(
    subtotal: MoneyLike,
    policy: PricingPolicy = PricingPolicy(),
    *,
    loyalty_discount: Decimal = _ZERO,
) -> PricingSummary:
    """Apply VAT and the flat threshold discount to ``subtotal``.

    ``subtotal`` is the cart value after any loyalty discount; the loyalty
    amount is carried along for display only.
    """
    base = to_money(subtotal, label="subtotal")
    vat = (base * policy.vat_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    discount = policy.discount_amount.quantize(CENTS) if base > policy.discount_threshold else _ZERO
    return PricingSummary(
        subtotal=base,
        vat=vat,
        discount=discount,
        net_total=base + vat - discount,
        loyalty_discount=loyalty_discount,
    )


def compute_loyalty_discount(subtotal: Decimal, points: Decimal, policy: PricingPolicy = PricingPolicy()) -> Decimal:
    """Return ``min(max ratio of subtotal, points x redemption rate)``.

    Rounded down to cents so redeeming never burns more points than held.
    """
    if points <= 0 or subtotal <= 0:
        return _ZERO
    candidate = min(subtotal * policy.max_loyalty_discount_ratio, points * policy.loyalty_redemption_rate)
    return candidate.quantize(CENTS, rounding=ROUND_DOWN)


# ---------------------------------------------------------------------------
# Transaction engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SaleResult:
    """Everything the presentation layer needs to print a receipt."""

    sale: SaleRecord
    pricing: PricingSummary
    payments: Tuple[PaymentEntry, ...]
    lines: Tuple[CartLine, ...]
    customer: Optional[CustomerRecord]
    low_stock: Tuple[ProductRecord, ...]


class TransactionEngine:
    """Drive one checkout from an empty cart to a committed or cancelled sale.

    ``IDLE -> OPEN -> PRICING -> PAYMENT_COLLECTION -> COMMITTED``, with
    cancellation allowed from any non-terminal state after ``OPEN``. Stock is
    reserved eagerly: every accepted line is written to the catalog at once,
    and cancellation writes it back. An engine is single use.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context
        self.cart = Cart()
        self.state = TransactionState.IDLE
        self.customer: Optional[CustomerRecord] = None
        self.is_new_customer = False
        self.redeemed_points = Decimal("0")
        self.pricing: Optional[PricingSummary] = None
        self.sale: Optional[SaleRecord] = None
        self._splitter: Optional[PaymentSplitter] = None
        self._loyalty_applied = False

    @property
    def settings(self) -> data_manager.ConfigSettings:
        return self.context.settings

    @property
    def policy(self) -> PricingPolicy:
        return self.context.policy

    @property
    def customer_name(self) -> str:
        return self.customer.name if self.customer is not None else WALK_IN_CUSTOMER

    @property
    def payments(self) -> Tuple[PaymentEntry, ...]:
        return self._splitter.entries if self._splitter is not None else ()

    @property
    def remaining_due(self) -> Optional[Decimal]:
        return self._splitter.remaining if self._splitter is not None else None

    def _require_state(self, *allowed: TransactionState, action: str) -> None:
        if self.state not in allowed:
            raise InvalidTransactionState(f"Cannot {action} while the transaction is {self.state.value}")

    def _require_pricing(self, *, action: str) -> PricingSummary:
        if self.pricing is None:
            raise InvalidTransactionState(f"Cannot {action} before the cart is priced")
        return self.pricing

    def _transition(self, new_state: TransactionState) -> None:
        log.info("Transaction for '%s': %s -> %s", self.customer_name, self.state.value, new_state.value)
        self.state = new_state

    def open(self, phone: Optional[str] = None, *, customer_name: Optional[str] = None) -> Optional[CustomerRecord]:
        """Start the checkout, optionally identifying the customer by phone.

        An unknown phone together with ``customer_name`` creates a new customer
        that is persisted when the sale commits.

        Raises:
            MissingReferenceError: If ``phone`` is unknown and no name is given;
                the engine stays ``IDLE`` so the caller can retry.
        """
        self._require_state(TransactionState.IDLE, action="open a transaction")
        phone = (phone or "").strip()
        if phone:
            customers = data_manager.load_customers(self.settings.customers_file)
            index = data_manager.find_customer_by_phone(customers, phone)
            if index is not None:
                self.customer = customers[index]
                log.info("Customer found: %s (points=%s)", self.customer.name, self.customer.loyalty_points)
            else:
                name = (customer_name or "").strip()
                if not name:
                    log.warning("Customer lookup failed for phone '%s'", phone)
                    raise MissingReferenceError(f"No customer registered with phone {phone}")
                require_clean_text(phone, label="phone")
                require_clean_text(name, label="customer name")
                self.customer = CustomerRecord(
                    customer_id=self.context.id_generator(customers),
                    name=name,
                    phone=phone,
                    last_visit=_epoch_now(),
                )
                self.is_new_customer = True
                log.info("New customer '%s' will be registered as %s", name, self.customer.customer_id)
        self._transition(TransactionState.OPEN)
        return self.customer

    def add_line(self, key: str, quantity: int, *, lookup: LookupKind = LookupKind.AUTO) -> CartLine:
        """Reserve ``quantity`` units of the product matching ``key``.

        The catalog is loaded fresh, decremented, and saved before the line
        joins the cart, so a failed save leaves the cart unchanged.

        Raises:
            ValidationError: If ``key`` is empty or ``quantity`` is invalid.
            MissingReferenceError: If no product matches ``key``.
            InsufficientStock: If fewer than ``quantity`` units are on hand.
            PersistenceFailure: If the decremented catalog cannot be saved.
        """
        self._require_state(TransactionState.OPEN, action="add items")
        require_positive_quantity(quantity)

        path = self.settings.catalog_file
        products = data_manager.load_products(path)
        index = locate_product(products, key, lookup)
        if index is None:
            log.warning("Product lookup failed for '%s'", key)
            raise MissingReferenceError(f"Item not found: {key}")

        product = products[index]
        if quantity > product.quantity:
            log.warning("Insufficient stock for '%s': requested %d, on hand %d", product.name, quantity, product.quantity)
            raise InsufficientStock(product.name, quantity, product.quantity)

        products[index] = replace(product, quantity=product.quantity - quantity)
        data_manager.save_products(path, products)
        line = self.cart.add_line(product, quantity)
        log.info("Reserved %d x '%s' (line amount %s)", quantity, product.name, line.amount)
        return line

    def loyalty_discount_offer(self) -> Decimal:
        """Return the loyalty discount the customer could redeem right now."""

        self._require_state(TransactionState.OPEN, action="offer a loyalty discount")
        if self.customer is None or self._loyalty_applied or self.cart.is_empty():
            return _ZERO
        return compute_loyalty_discount(self.cart.subtotal(), self.customer.loyalty_points, self.policy)

    def apply_loyalty_discount(self) -> Decimal:
        """Redeem loyalty points against the running subtotal.

        Points are debited at ``loyalty_redemption_cost`` per currency unit of
        discount on the in-memory customer snapshot; the ledger is only written
        at commit. Allowed once per transaction.

        Raises:
            BusinessRuleViolation: If no customer is identified, the discount
                was already applied, or no points are available.
        """
        self._require_state(TransactionState.OPEN, action="apply a loyalty discount")
        if self.customer is None:
            raise BusinessRuleViolation("Loyalty discounts need an identified customer")
        if self._loyalty_applied:
            raise BusinessRuleViolation("Loyalty discount already applied to this sale")
        discount = self.loyalty_discount_offer()
        if discount <= 0:
            raise BusinessRuleViolation("No loyalty points available!")

        burned = discount * self.policy.loyalty_redemption_cost
        self.cart.apply_discount(discount)
        self.customer = replace(self.customer, loyalty_points=max(self.customer.loyalty_points - burned, Decimal("0")))
        self.redeemed_points += burned
        self._loyalty_applied = True
        log.info("Loyalty discount of %s applied for '%s' (%s points redeemed)", discount, self.customer.name, burned)
        return discount

    def cancel(self) -> List[Tuple[str, int]]:
        """Abort the sale and return every reserved unit to the catalog.

        Neither ledger is touched. If the restored catalog cannot be saved the
        lines go back into the cart and the error propagates, so the caller can
        retry.

        Returns:
            list[tuple[str, int]]: The ``(name, quantity)`` pairs restored.
        """
        self._require_state(
            TransactionState.OPEN,
            TransactionState.PRICING,
            TransactionState.PAYMENT_COLLECTION,
            action="cancel",
        )
        lines, discount = self.cart.lines, self.cart.discount
        restorations = self.cart.remove_all()
        if restorations:
            try:
                self._restore_stock(restorations)
            except PersistenceFailure:
                log.error("Cancellation could not restore stock %s; reservation is still held", restorations)
                self.cart.reinstate(lines, discount)
                raise
        if self.payments:
            log.warning(
                "Sale for '%s' cancelled after %d payment entries totalling %s; refund them",
                self.customer_name,
                len(self.payments),
                self._splitter.collected if self._splitter is not None else _ZERO,
            )
        self._transition(TransactionState.CANCELLED)
        return restorations

    def _restore_stock(self, restorations: Sequence[Tuple[str, int]]) -> None:
        path = self.settings.catalog_file
        products = data_manager.load_products(path)
        for name, quantity in restorations:
            index = data_manager.find_product_by_name(products, name)
            if index is None:
                log.error("Product '%s' is no longer in the catalog; %d unit(s) not restored", name, quantity)
                continue
            products[index] = replace(products[index], quantity=products[index].quantity + quantity)
        data_manager.save_products(path, products)
        log.info("Restored %d reserved line(s) to the catalog", len(restorations))

    def price(self) -> PricingSummary:
        """Freeze the cart and compute VAT, threshold discount and net total.

        Raises:
            ValidationError: If the cart is empty.
        """
        self._require_state(TransactionState.OPEN, action="price the cart")
        if self.cart.is_empty():
            raise ValidationError("Cannot complete sale - no items in cart!")
        self.pricing = compute_pricing(self.cart.subtotal(), self.policy, loyalty_discount=self.cart.discount)
        self._transition(TransactionState.PRICING)
        log.info(
            "Priced cart: subtotal=%s vat=%s discount=%s net=%s",
            self.pricing.subtotal,
            self.pricing.vat,
            self.pricing.discount,
            self.pricing.net_total,
        )
        return self.pricing

    def collect_payment(self, tenders: Iterable[Tender]) -> List[PaymentEntry]:
        """Collect tenders towards the net total.

        May be called again after a :class:`PaymentMismatch` to supply more
        tenders; earlier entries are kept.

        Raises:
            PaymentMismatch: If the tenders do not cover the net total.
        """
        self._require_state(TransactionState.PRICING, TransactionState.PAYMENT_COLLECTION, action="collect payment")
        pricing = self._require_pricing(action="collect payment")
        if self._splitter is None:
            self._splitter = PaymentSplitter(pricing.net_total)
            self._transition(TransactionState.PAYMENT_COLLECTION)
        return collect_payments(pricing.net_total, tenders, splitter=self._splitter)

    def commit(self) -> SaleResult:
        """Record the sale in the sales ledger and update the customer.

        Stock was reserved while the cart was open, so the catalog is not
        written here. A failed ledger append is not rolled back: it is logged
        for manual reconciliation and re-raised, and the engine stays in
        ``PAYMENT_COLLECTION`` so the commit can be retried.

        Raises:
            PaymentMismatch: If payments do not sum to the net total.
            PersistenceFailure: If the sales or customer ledger cannot be written.
        """
        self._require_state(TransactionState.PAYMENT_COLLECTION, action="commit")
        pricing = self._require_pricing(action="commit")
        if self._splitter is None:
            raise InvalidTransactionState("Cannot commit before payment collection has started")
        self._splitter.verify()

        net_total = pricing.net_total
        sale = SaleRecord(
            timestamp=_resolve_timestamp(None).replace(microsecond=0),
            customer_name=self.customer_name,
            net_total=net_total,
            items=tuple((line.product.name, line.quantity) for line in self.cart.lines),
        )
        try:
            data_manager.append_sale(self.settings.sales_file, sale)
        except PersistenceFailure:
            log.error(
                "Sale for '%s' (net=%s, items=%s) was paid and its stock reserved but is missing from the "
                "sales ledger; reconcile manually",
                sale.customer_name,
                net_total,
                sale.items,
            )
            raise
        self.sale = sale
        self._transition(TransactionState.COMMITTED)

        if self.customer is not None:
            self._record_customer_visit(self.customer, net_total)

        products = data_manager.load_products(self.settings.catalog_file)
        low_stock = low_stock_items(products, self.policy.low_stock_threshold)
        if low_stock:
            log.warning("Low stock: %s", ", ".join(f"{item.name} ({item.quantity} left)" for item in low_stock))

        return SaleResult(
            sale=sale,
            pricing=pricing,
            payments=self._splitter.entries,
            lines=self.cart.lines,
            customer=self.customer,
            low_stock=tuple(low_stock),
        )

    def _record_customer_visit(self, customer: CustomerRecord, net_total: Decimal) -> None:
        path = self.settings.customers_file
        customers = data_manager.load_customers(path)
        index = next(
            (i for i, record in enumerate(customers) if record.customer_id == customer.customer_id),
            None,
        )
        if index is None and not self.is_new_customer:
            log.warning("Customer '%s' vanished from the ledger; re-adding", customer.customer_id)
        base = customers[index] if index is not None else replace(customer, loyalty_points=Decimal("0"))
        accrued = net_total * self.policy.loyalty_accrual_rate
        points = max(base.loyalty_points - self.redeemed_points, Decimal("0")) + accrued
        updated = replace(
            base,
            loyalty_points=points.quantize(CENTS, rounding=ROUND_HALF_UP),
            total_spent=base.total_spent + net_total,
            visit_count=base.visit_count + 1,
            last_visit=_epoch_now(),
        )
        if index is None:
            customers.append(updated)
        else:
            customers[index] = updated

        try:
            data_manager.save_customers(path, customers)
        except PersistenceFailure:
            log.error(
                "Sale for '%s' is committed but the customer ledger update (spent +%s, points +%s) failed; "
                "reconcile manually",
                updated.customer_id,
                net_total,
                accrued,
            )
            raise
        self.customer = updated
        log.info(
            "Customer '%s' updated: points=%s total_spent=%s visits=%d",
            updated.customer_id,
            updated.loyalty_points,
            updated.total_spent,
            updated.visit_count,
        )

    def checkout(self, tenders: Iterable[Tender]) -> SaleResult:
        """Price, collect payment and commit in one call."""

        if self.state is TransactionState.OPEN:
            self.price()
        self.collect_payment(tenders)
        return self.commit()
