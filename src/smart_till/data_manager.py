"""Data access layer for Smart Till.

This module provides low-level helpers that read from and write to the three
delimited text stores (catalog, customer ledger, sales ledger). Business logic
belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: loading full snapshots with a tolerant reader and writing
   them back as full replacements (catalog, customers) or appends (sales).
3. Record conversion: serializing dataclasses into delimited lines and back.
"""


from __future__ import annotations

import configparser
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from . import log
from .constants import (
    CATALOG_HEADER,
    CENTS,
    COMMENT_MARKER,
    CUSTOMER_HEADER,
    DEFAULT_CUSTOMER_ID_BASE,
    DEFAULT_CUSTOMER_ID_PREFIX,
    DEFAULT_DISCOUNT_AMOUNT,
    DEFAULT_DISCOUNT_THRESHOLD,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_LOYALTY_ACCRUAL_RATE,
    DEFAULT_LOYALTY_REDEMPTION_COST,
    DEFAULT_LOYALTY_REDEMPTION_RATE,
    DEFAULT_MAX_LOYALTY_DISCOUNT_RATIO,
    DEFAULT_VAT_RATE,
    FIELD_DELIMITER,
    SALE_TIMESTAMP_FORMAT,
    SALES_HEADER,
    StoreFile,
)


CONFIG_FILE_NAME = "config.ini"
_SALE_ITEM_PATTERN = re.compile(r"(.+?)\((\d+)\)(?:,|$)")

RecordT = TypeVar("RecordT")


class PersistenceFailure(RuntimeError):
    """Raised when a backing store cannot be created, read, or written."""


@dataclass(frozen=True)
class PricingPolicy:
    """Pricing and loyalty constants applied by the transaction engine."""

    vat_rate: Decimal = DEFAULT_VAT_RATE
    discount_threshold: Decimal = DEFAULT_DISCOUNT_THRESHOLD
    discount_amount: Decimal = DEFAULT_DISCOUNT_AMOUNT
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    loyalty_accrual_rate: Decimal = DEFAULT_LOYALTY_ACCRUAL_RATE
    loyalty_redemption_rate: Decimal = DEFAULT_LOYALTY_REDEMPTION_RATE
    loyalty_redemption_cost: Decimal = DEFAULT_LOYALTY_REDEMPTION_COST
    max_loyalty_discount_ratio: Decimal = DEFAULT_MAX_LOYALTY_DISCOUNT_RATIO


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_dir: Path
    store_name: str
    schema_version: str
    catalog_file: Path
    customers_file: Path
    sales_file: Path
    exports_dir: Path
    pricing: PricingPolicy = field(default_factory=PricingPolicy)
    customer_id_prefix: str = DEFAULT_CUSTOMER_ID_PREFIX
    customer_id_base: int = DEFAULT_CUSTOMER_ID_BASE


@dataclass(frozen=True)
class ProductRecord:
    """In-memory view of one line of the catalog store."""

    name: str
    price: Decimal
    quantity: int
    barcode: Optional[str] = None
    category: Optional[str] = None
    supplier: Optional[str] = None
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    last_updated: Optional[int] = None

    def effective_threshold(self, default: int = DEFAULT_LOW_STOCK_THRESHOLD) -> int:
        """Return the per-product threshold, or ``default`` when unset."""

        return self.low_stock_threshold if self.low_stock_threshold > 0 else default


@dataclass(frozen=True)
class CustomerRecord:
    """In-memory view of one line of the customer ledger."""

    customer_id: str
    name: str
    phone: str
    email: Optional[str] = None
    loyalty_points: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0.00")
    visit_count: int = 0
    last_visit: int = 0


@dataclass(frozen=True)
class SaleRecord:
    """In-memory view of one committed sale in the sales ledger.

    ``sequence`` is the 1-based position of the entry in the ledger and is only
    known once the record has been read back from disk.
    """

    timestamp: datetime
    customer_name: str
    net_total: Decimal
    items: tuple[tuple[str, int], ...]
    sequence: Optional[int] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(inline_comment_prefixes=(";",))
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataDir``, ``StoreName`` and ``SchemaVersion``.
    ``[Files]``, ``[Pricing]`` and ``[Loyalty]`` are optional and fall back to
    the defaults declared in :mod:`smart_till.constants`. Relative paths are
    anchored to ``base_path`` (normally the directory holding ``config.ini``),
    or to the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataDir`` entries.

    Returns:
        ConfigSettings: Immutable settings with resolved store paths.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a numeric pricing or loyalty option cannot be parsed.
    """

    try:
        data_dir_raw = parser.get("System", "DataDir")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_dir = Path(data_dir_raw).expanduser()
    if not data_dir.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_dir = (base_path / data_dir).resolve()

    def store_path(option: str, default: StoreFile) -> Path:
        return data_dir / parser.get("Files", option, fallback=default.value)

    pricing = PricingPolicy(
        vat_rate=_decimal_option(parser, "Pricing", "VatRate", DEFAULT_VAT_RATE),
        discount_threshold=_decimal_option(parser, "Pricing", "DiscountThreshold", DEFAULT_DISCOUNT_THRESHOLD),
        discount_amount=_decimal_option(parser, "Pricing", "DiscountAmount", DEFAULT_DISCOUNT_AMOUNT),
        low_stock_threshold=parser.getint("Pricing", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD),
        loyalty_accrual_rate=_decimal_option(parser, "Loyalty", "AccrualRate", DEFAULT_LOYALTY_ACCRUAL_RATE),
        loyalty_redemption_rate=_decimal_option(parser, "Loyalty", "RedemptionRate", DEFAULT_LOYALTY_REDEMPTION_RATE),
        loyalty_redemption_cost=_decimal_option(parser, "Loyalty", "RedemptionCost", DEFAULT_LOYALTY_REDEMPTION_COST),
        max_loyalty_discount_ratio=_decimal_option(
            parser, "Loyalty", "MaxDiscountRatio", DEFAULT_MAX_LOYALTY_DISCOUNT_RATIO
        ),
    )

    return ConfigSettings(
        data_dir=data_dir,
        store_name=store_name,
        schema_version=schema_version,
        catalog_file=store_path("Catalog", StoreFile.CATALOG),
        customers_file=store_path("Customers", StoreFile.CUSTOMERS),
        sales_file=store_path("Sales", StoreFile.SALES),
        exports_dir=store_path("Exports", StoreFile.EXPORTS),
        pricing=pricing,
        customer_id_prefix=parser.get("Loyalty", "IdPrefix", fallback=DEFAULT_CUSTOMER_ID_PREFIX),
        customer_id_base=parser.getint("Loyalty", "IdBase", fallback=DEFAULT_CUSTOMER_ID_BASE),
    )


def _decimal_option(parser: configparser.ConfigParser, section: str, option: str, default: Decimal) -> Decimal:
    raw = parser.get(section, option, fallback=None)
    if raw is None or not raw.strip():
        return default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value for [{section}] {option}: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid numeric value for [{section}] {option}: {raw!r}")
    return value


# ---------------------------------------------------------------------------
# Catalog store
# ---------------------------------------------------------------------------


def load_products(path: Path) -> List[ProductRecord]:
    """Load the full catalog snapshot from ``path``.

    A missing file is created with only its header comment so that a later
    :func:`save_products` cannot fail because the store never existed. Blank
    lines and comment lines are ignored and malformed lines are skipped; the
    number of skipped lines is logged as a warning.

    Args:
        path (Path): Location of the catalog text file.

    Returns:
        list[ProductRecord]: Products in file order.

    Raises:
        PersistenceFailure: If the file cannot be created or read.
    """

    return _read_store(path, deserialize_product, label="catalog", header=CATALOG_HEADER)


def save_products(path: Path, products: Iterable[ProductRecord]) -> None:
    """Replace the catalog at ``path`` with ``products``.

    This is a full-replace write: callers must load, mutate the whole snapshot
    and hand the whole snapshot back.

    Raises:
        ValueError: If a product name would be read back as a comment line.
        PersistenceFailure: If the file cannot be written.
    """

    lines = [serialize_product(product) for product in products]
    _write_store(path, CATALOG_HEADER, lines, label="catalog")


def find_product_by_name(products: Sequence[ProductRecord], name: str) -> Optional[int]:
    """Return the index of the product called ``name``, or ``None``."""

    target = name.strip()
    if not target:
        return None
    for index, product in enumerate(products):
        if product.name == target:
            return index
    return None


def find_product_by_barcode(products: Sequence[ProductRecord], code: Optional[str]) -> Optional[int]:
    """Return the index of the product holding barcode ``code``, or ``None``.

    An empty code is the "no barcode assigned" sentinel, never a wildcard, so
    it matches nothing.
    """

    target = (code or "").strip()
    if not target:
        return None
    for index, product in enumerate(products):
        if product.barcode == target:
            return index
    return None


def serialize_product(record: ProductRecord) -> str:
    """Convert a product dataclass into its delimited line.

    Args:
        record (ProductRecord): Structured product data to transform.

    Returns:
        str: ``Name|Rate|Quantity|Barcode|Category|Supplier|Threshold|LastUpdated``
            with ``None`` values written as empty fields.

    Raises:
        ValueError: If the name starts with the comment marker.
    """

    if record.name.startswith(COMMENT_MARKER):
        raise ValueError(f"Product name may not start with '{COMMENT_MARKER}': {record.name}")
    return FIELD_DELIMITER.join(
        [
            record.name,
            str(record.price.quantize(CENTS)),
            str(record.quantity),
            record.barcode or "",
            record.category or "",
            record.supplier or "",
            str(record.low_stock_threshold),
            "" if record.last_updated is None else str(record.last_updated),
        ]
    )


def deserialize_product(line: str) -> Optional[ProductRecord]:
    """Convert a delimited catalog line into a :class:`ProductRecord`.

    Only name, price and quantity are mandatory; the trailing fields may be
    absent. Returns ``None`` for a line that cannot be trusted: wrong field
    count, non-numeric price/quantity/threshold, an empty name or one starting
    with the comment marker, negative price or negative quantity.
    """

    parts = line.split(FIELD_DELIMITER)
    if not 3 <= len(parts) <= 8:
        return None

    name = parts[0].strip()
    optional = [part.strip() for part in parts[3:]] + [""] * (8 - len(parts))
    barcode, category, supplier, threshold_raw, updated_raw = optional

    try:
        price = Decimal(parts[1].strip())
        quantity = int(parts[2].strip())
        threshold = int(threshold_raw) if threshold_raw else DEFAULT_LOW_STOCK_THRESHOLD
        last_updated = int(updated_raw) if updated_raw else None
    except (InvalidOperation, ValueError):
        return None

    if not name or name.startswith(COMMENT_MARKER) or not price.is_finite() or price < 0 or quantity < 0:
        return None

    return ProductRecord(
        name=name,
        price=price,
        quantity=quantity,
        barcode=barcode or None,
        category=category or None,
        supplier=supplier or None,
        low_stock_threshold=threshold,
        last_updated=last_updated,
    )


# ---------------------------------------------------------------------------
# Customer ledger
# ---------------------------------------------------------------------------


def load_customers(path: Path) -> List[CustomerRecord]:
    """Load the full customer ledger, dropping records that fail to parse.

    Raises:
        PersistenceFailure: If the file cannot be created or read.
    """

    return _read_store(path, deserialize_customer, label="customer", header=CUSTOMER_HEADER)


def save_customers(path: Path, customers: Iterable[CustomerRecord]) -> None:
    """Replace the customer ledger at ``path`` with ``customers``.

    Raises:
        PersistenceFailure: If the file cannot be written.
    """

    _write_store(path, CUSTOMER_HEADER, (serialize_customer(customer) for customer in customers), label="customer")


def find_customer_by_phone(customers: Sequence[CustomerRecord], phone: Optional[str]) -> Optional[int]:
    """Return the index of the first customer registered with ``phone``."""

    target = (phone or "").strip()
    if not target:
        return None
    for index, customer in enumerate(customers):
        if customer.phone == target:
            return index
    return None


def serialize_customer(record: CustomerRecord) -> str:
    """Convert a customer dataclass into its delimited line."""

    return FIELD_DELIMITER.join(
        [
            record.customer_id,
            record.name,
            record.phone,
            record.email or "",
            str(record.loyalty_points),
            str(record.total_spent.quantize(CENTS)),
            str(record.visit_count),
            str(record.last_visit),
        ]
    )


def deserialize_customer(line: str) -> Optional[CustomerRecord]:
    """Convert a delimited ledger line into a :class:`CustomerRecord`.

    Returns ``None`` when the field count is wrong or any of the loyalty,
    spend, visit or last-visit fields is not numeric.
    """

    parts = line.split(FIELD_DELIMITER)
    if len(parts) != 8:
        return None

    customer_id, name, phone, email, points_raw, spent_raw, visits_raw, last_visit_raw = parts
    try:
        loyalty_points = Decimal(points_raw.strip())
        total_spent = Decimal(spent_raw.strip())
        visit_count = int(visits_raw.strip())
        last_visit = int(last_visit_raw.strip())
    except (InvalidOperation, ValueError):
        return None

    if not loyalty_points.is_finite() or not total_spent.is_finite() or not customer_id.strip():
        return None

    return CustomerRecord(
        customer_id=customer_id.strip(),
        name=name.strip(),
        phone=phone.strip(),
        email=email.strip() or None,
        loyalty_points=loyalty_points,
        total_spent=total_spent,
        visit_count=visit_count,
        last_visit=last_visit,
    )


# ---------------------------------------------------------------------------
# Sales ledger
# ---------------------------------------------------------------------------


def append_sale(path: Path, record: SaleRecord) -> None:
    """Append ``record`` to the sales ledger, never touching prior lines.

    The header comment is written first when the file is new or empty.

    Raises:
        PersistenceFailure: If the ledger cannot be opened for appending.
    """

    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not path.exists() or path.stat().st_size == 0
        with path.open("a", encoding="utf-8", newline="\n") as handle:
            if is_new:
                handle.write(SALES_HEADER + "\n")
            handle.write(serialize_sale(record) + "\n")
    except OSError as exc:
        log.error("Unable to append sale to ledger '%s': %s", path, exc)
        raise PersistenceFailure(f"Unable to append to sales ledger {path}: {exc}") from exc
    log.info("Appended sale for '%s' (net=%s) to '%s'", record.customer_name, record.net_total, path)


def load_sales(path: Path) -> List[SaleRecord]:
    """Read every committed sale for reporting collaborators.

    The ledger is not created when missing; an absent file simply means no
    sale has been committed yet. Sequence numbers are assigned in file order.
    """

    path = Path(path)
    if not path.exists():
        return []
    records = _read_store(path, deserialize_sale, label="sales", header=SALES_HEADER)
    return [
        SaleRecord(
            timestamp=record.timestamp,
            customer_name=record.customer_name,
            net_total=record.net_total,
            items=record.items,
            sequence=position,
        )
        for position, record in enumerate(records, start=1)
    ]


def serialize_sale(record: SaleRecord) -> str:
    """Convert a sale into ``DateTime|Customer|Amount|Name(qty),Name(qty)``."""

    items = ",".join(f"{name}({quantity})" for name, quantity in record.items)
    return FIELD_DELIMITER.join(
        [
            record.timestamp.strftime(SALE_TIMESTAMP_FORMAT),
            record.customer_name,
            str(record.net_total.quantize(CENTS)),
            items,
        ]
    )


def deserialize_sale(line: str) -> Optional[SaleRecord]:
    """Convert a ledger line into a :class:`SaleRecord` (without sequence)."""

    parts = line.split(FIELD_DELIMITER)
    if len(parts) != 4:
        return None

    timestamp_raw, customer_name, amount_raw, items_raw = parts
    try:
        timestamp = datetime.strptime(timestamp_raw.strip(), SALE_TIMESTAMP_FORMAT).replace(tzinfo=UTC)
        net_total = Decimal(amount_raw.strip())
    except (InvalidOperation, ValueError):
        return None
    if not net_total.is_finite():
        return None

    items = tuple(
        (match.group(1).strip(), int(match.group(2)))
        for match in _SALE_ITEM_PATTERN.finditer(items_raw.strip())
    )
    return SaleRecord(
        timestamp=timestamp,
        customer_name=customer_name,
        net_total=net_total,
        items=items,
    )


# ---------------------------------------------------------------------------
# Shared file helpers
# ---------------------------------------------------------------------------


def initialize_store(path: Path, header: str, *, overwrite: bool = False) -> Path:
    """Create an empty store file containing only ``header``.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is ``False``.
        PersistenceFailure: If the file cannot be written.
    """

    path = Path(path).expanduser()
    if path.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing store: {path}")
    _write_store(path, header, (), label=path.name)
    return path


def _read_store(
    path: Path,
    parse: Callable[[str], Optional[RecordT]],
    *,
    label: str,
    header: str,
) -> List[RecordT]:
    path = Path(path)
    if not path.exists():
        log.info("No %s store at '%s'; creating an empty one", label, path)
        _write_store(path, header, (), label=label)
        return []

    records: List[RecordT] = []
    skipped = 0
    try:
        with path.open("rb") as handle:
            for line_number, raw in enumerate(handle, start=1):
                try:
                    line = raw.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError:
                    skipped += 1
                    log.debug("Skipping undecodable %s record at %s:%d", label, path, line_number)
                    continue
                if not line.strip() or line.startswith(COMMENT_MARKER):
                    continue
                record = parse(line)
                if record is None:
                    skipped += 1
                    log.debug("Skipping malformed %s record at %s:%d", label, path, line_number)
                    continue
                records.append(record)
    except OSError as exc:
        log.error("Unable to read %s store '%s': %s", label, path, exc)
        raise PersistenceFailure(f"Unable to read {label} store {path}: {exc}") from exc

    if skipped:
        log.warning("Skipped %d malformed %s record(s) in '%s'", skipped, label, path)
    return records


def _write_store(path: Path, header: str, lines: Iterable[str], *, label: str) -> None:
    path = Path(path)
    staging = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with staging.open("w", encoding="utf-8", newline="\n") as handle:
            handle.write(header + "\n")
            for line in lines:
                handle.write(line + "\n")
        staging.replace(path)
    except OSError as exc:
        log.error("Unable to write %s store '%s': %s", label, path, exc)
        raise PersistenceFailure(f"Unable to write {label} store {path}: {exc}") from exc
    log.debug("Wrote %s store '%s'", label, path)
