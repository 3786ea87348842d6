"""Enumerations and defaults shared across the Smart Till modules.

Keeps the store layouts, payment instruments and pricing defaults in one place
so that the data access layer (DAL), the business logic layer (BLL) and the
command line front-end agree on a single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Version of the on-disk store layout expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"

FIELD_DELIMITER = "|"
COMMENT_MARKER = "#"

CATALOG_HEADER = (
    "# Inventory File - Format: "
    "Name|Rate|Quantity|Barcode|Category|Supplier|LowStockThreshold|LastUpdated"
)
CUSTOMER_HEADER = (
    "# Customer File - Format: "
    "ID|Name|Phone|Email|Points|TotalSpent|VisitCount|LastVisit"
)
SALES_HEADER = "# Sales History - Format: DateTime|Customer|Amount|Items"

SALE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
WALK_IN_CUSTOMER = "Walk-in Customer"

# Pricing and loyalty defaults, overridable from config.ini.
DEFAULT_VAT_RATE = Decimal("0.05")
DEFAULT_DISCOUNT_THRESHOLD = Decimal("500.00")
DEFAULT_DISCOUNT_AMOUNT = Decimal("50.00")
DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_LOYALTY_ACCRUAL_RATE = Decimal("0.01")
DEFAULT_LOYALTY_REDEMPTION_RATE = Decimal("0.01")
DEFAULT_LOYALTY_REDEMPTION_COST = Decimal("100")
DEFAULT_MAX_LOYALTY_DISCOUNT_RATIO = Decimal("0.10")
DEFAULT_CUSTOMER_ID_PREFIX = "CUST"
DEFAULT_CUSTOMER_ID_BASE = 1000

PAYMENT_TOLERANCE = Decimal("0.01")
CENTS = Decimal("0.01")


class PaymentMethod(str, Enum):
    """Enumerate the payment instruments accepted at the till."""

    CASH = "cash"
    CARD = "card"
    MOBILE_BANKING = "mobile-banking"
    DIGITAL_WALLET = "digital-wallet"

    @property
    def label(self) -> str:
        return _PAYMENT_LABELS[self]


_PAYMENT_LABELS = {
    PaymentMethod.CASH: "Cash",
    PaymentMethod.CARD: "Credit/Debit Card",
    PaymentMethod.MOBILE_BANKING: "Mobile Banking",
    PaymentMethod.DIGITAL_WALLET: "Digital Wallet",
}


class TransactionState(str, Enum):
    """Lifecycle states of a single checkout."""

    IDLE = "IDLE"
    OPEN = "OPEN"
    PRICING = "PRICING"
    PAYMENT_COLLECTION = "PAYMENT_COLLECTION"
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"


class LookupKind(str, Enum):
    """How a product key typed at the till should be resolved."""

    AUTO = "auto"
    NAME = "name"
    BARCODE = "barcode"


class SearchField(str, Enum):
    """Product attribute a catalog search matches against."""

    NAME = "name"
    CATEGORY = "category"
    BARCODE = "barcode"


class StockStatus(str, Enum):
    """Shelf status of a product relative to its low-stock threshold."""

    OK = "OK"
    LOW = "LOW"
    OUT = "OUT"


class StoreFile(str, Enum):
    """Enumerate the default file names of the durable stores."""

    CATALOG = "Bill.txt"
    CUSTOMERS = "customers.txt"
    SALES = "Sales.txt"
    EXPORTS = "Reports"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "FIELD_DELIMITER",
    "COMMENT_MARKER",
    "PaymentMethod",
    "TransactionState",
    "LookupKind",
    "SearchField",
    "StockStatus",
    "StoreFile",
]
