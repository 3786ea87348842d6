"""Spreadsheet export of the till stores.

Builds an ``.xlsx`` workbook from read-only snapshots of the catalog and the
sales ledger so the back office can work with the data outside the till.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Iterable, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from . import core_logic, data_manager, log
from .constants import StockStatus
from .data_manager import ProductRecord, SaleRecord


SHEET_COLUMNS = {
    "Inventory": [
        "Name",
        "Price",
        "Quantity",
        "Barcode",
        "Category",
        "Supplier",
        "LowStockThreshold",
        "Status",
    ],
    "Sales": ["Sequence", "Timestamp", "Customer", "NetTotal", "Items"],
    "DailySummary": ["Date", "Sales", "Revenue", "Average"],
    "PurchaseOrder": ["Product", "CurrentStock", "SuggestedOrder", "Supplier", "Category"],
}


def _add_sheet(workbook: openpyxl.Workbook, title: str) -> Worksheet:
    sheet = workbook.create_sheet(title=title)
    bold_font = Font(bold=True)
    for col_idx, column_name in enumerate(SHEET_COLUMNS[title], 1):
        cell = sheet.cell(row=1, column=col_idx)
        cell.value = column_name
        cell.font = bold_font
    return sheet


_STATUS_LABELS = {
    StockStatus.OK: "OK",
    StockStatus.LOW: "LOW STOCK",
    StockStatus.OUT: "OUT OF STOCK",
}


def build_workbook(
    products: Sequence[ProductRecord],
    sales: Iterable[SaleRecord],
    *,
    default_threshold: int,
    day: Optional[date] = None,
) -> openpyxl.Workbook:
    """Assemble the export workbook in memory.

    Monetary values are written as floats so that spreadsheet formulas work on
    them; the stores keep the exact decimal values.
    """
    sales = list(sales)
    workbook = openpyxl.Workbook()
    if "Sheet" in workbook.sheetnames:
        del workbook["Sheet"]

    inventory = _add_sheet(workbook, "Inventory")
    for product in products:
        inventory.append(
            [
                product.name,
                float(product.price),
                product.quantity,
                product.barcode or "",
                product.category or "",
                product.supplier or "",
                product.effective_threshold(default_threshold),
                _STATUS_LABELS[core_logic.stock_status(product, default_threshold)],
            ]
        )

    ledger = _add_sheet(workbook, "Sales")
    for sale in core_logic.filter_sales(sales, day=day):
        ledger.append(
            [
                sale.sequence,
                sale.timestamp.replace(tzinfo=None),
                sale.customer_name,
                float(sale.net_total),
                ", ".join(f"{name}({quantity})" for name, quantity in sale.items),
            ]
        )

    summary = _add_sheet(workbook, "DailySummary")
    for entry in core_logic.summarize_sales(sales, day=day):
        summary.append([entry.day, entry.sale_count, float(entry.revenue), float(entry.average)])

    orders = _add_sheet(workbook, "PurchaseOrder")
    for line in core_logic.purchase_order_lines(products, default_threshold):
        orders.append([line.name, line.current_stock, line.suggested_quantity, line.supplier, line.category])

    return workbook


def export_workbook(
    context: core_logic.RuntimeContext,
    destination: Optional[Path] = None,
    *,
    day: Optional[date] = None,
) -> Path:
    """Write the export workbook and return its path.

    Args:
        context (RuntimeContext): Runtime configuration.
        destination (Path | None): Target file. Defaults to
            ``<exports_dir>/till_report_<YYYYMMDD>.xlsx`` for ``day`` or today.
        day (date | None): Restrict the sales sheets to a single day.

    Raises:
        PersistenceFailure: If the workbook cannot be written.
    """
    settings = context.settings
    products = data_manager.load_products(settings.catalog_file)
    sales = data_manager.load_sales(settings.sales_file)
    workbook = build_workbook(
        products,
        sales,
        default_threshold=settings.pricing.low_stock_threshold,
        day=day,
    )

    if destination is None:
        stamp = (day or core_logic.current_day()).strftime("%Y%m%d")
        destination = settings.exports_dir / f"till_report_{stamp}.xlsx"
    destination = Path(destination)

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(destination)
    except OSError as exc:
        log.error("Failed to write export workbook '%s': %s", destination, exc)
        raise data_manager.PersistenceFailure(f"Could not write '{destination}': {exc}") from exc

    log.info("Exported %d products and %d sales to '%s'", len(products), len(sales), destination)
    return destination
