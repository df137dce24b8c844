"""Data access layer for Stockbook.

This module provides low-level helpers that read from and write to the
master workbook. Business rules belong in :mod:`stockbook.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record-store primitives: reading typed rows, appending new rows,
   version-checked updates of products, and row deletion.
"""


from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_CONFLICT_RETRIES,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_PRODUCT_TYPE,
    MONEY_QUANTUM,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value

PRODUCT_COLUMNS: tuple[str, ...] = (
    "ProductID",
    "ProductName",
    "ProductType",
    "Quantity",
    "UnitCost",
    "UnitPrice",
    "Profit",
    "ImageURL",
    "Version",
    "CreatedAt",
    "UpdatedAt",
)

SALE_COLUMNS: tuple[str, ...] = (
    "SaleID",
    "ProductID",
    "ProductName",
    "Units",
    "SellPrice",
    "Cost",
    "NewCost",
    "Profit",
    "CreatedAt",
)

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: PRODUCT_COLUMNS,
    SALES_SHEET: SALE_COLUMNS,
}

# Columns managed by the store itself; callers may not overwrite them.
_PROTECTED_PRODUCT_COLUMNS = frozenset({"ProductID", "Version", "CreatedAt"})


class StaleVersionError(Exception):
    """Raised when a conditional update targets an outdated product version."""

    def __init__(self, product_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Product '{product_id}' is at version {actual}, expected {expected}"
        )
        self.product_id = product_id
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str
    default_product_type: str = DEFAULT_PRODUCT_TYPE.value
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    product_type: str
    quantity: int
    unit_cost: Decimal
    unit_price: Decimal
    profit: Decimal
    image_url: Optional[str]
    version: int
    created_at_iso: str
    updated_at_iso: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    product_id: str
    product_name: str
    units: int
    sell_price: Decimal
    cost: Decimal
    new_cost: Optional[Decimal]
    profit: Decimal
    created_at_iso: str

    @property
    def effective_cost(self) -> Decimal:
        """Cost per unit that was used to compute :attr:`profit`."""
        return self.new_cost if self.new_cost is not None else self.cost


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

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries are optional
    and fall back to the package defaults from :mod:`stockbook.constants`.
    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If a numeric ``[Defaults]`` option cannot be parsed or is
            out of range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_product_type = parser.get(
        "Defaults", "ProductType", fallback=DEFAULT_PRODUCT_TYPE.value)
    low_stock_threshold = parser.getint(
        "Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)
    conflict_retries = parser.getint(
        "Defaults", "ConflictRetries", fallback=DEFAULT_CONFLICT_RETRIES)
    if low_stock_threshold < 0:
        raise ValueError("LowStockThreshold must be zero or positive")
    if conflict_retries < 1:
        raise ValueError("ConflictRetries must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
        default_product_type=default_product_type,
        low_stock_threshold=low_stock_threshold,
        conflict_retries=conflict_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing ``destination`` atomically.

    The workbook is first serialized into a temporary file next to the
    destination and then moved over it with :func:`os.replace`. A crash in the
    middle of a save therefore leaves the previous file intact instead of a
    truncated one. Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{dest.stem}-", suffix=dest.suffix, dir=dest.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        workbook.save(temp_path)
        os.replace(temp_path, dest)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    log.debug("Saved workbook to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    sheet = workbook[PRODUCTS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale records from the ``Sales`` worksheet in sheet order.

    Args:
        workbook (Workbook): Workbook containing the ``Sales`` sheet.

    Yields:
        SaleRow: Normalized sale record for each populated row.
    """

    sheet = workbook[SALES_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield deserialize_sale(raw)


def get_product(workbook: Workbook, product_id: str) -> ProductRow:
    """Read a single product row straight from the worksheet.

    Raises:
        KeyError: If no row carries ``product_id``.
    """

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")
    return deserialize_product(_row_values(workbook[PRODUCTS_SHEET], row_index))


def get_sale(workbook: Workbook, sale_id: str) -> SaleRow:
    """Read a single sale row straight from the worksheet.

    Raises:
        KeyError: If no row carries ``sale_id``.
    """

    row_index = locate_row(workbook, SALES_SHEET, "SaleID", sale_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {sale_id}")
    return deserialize_sale(_row_values(workbook[SALES_SHEET], row_index))


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook whose products sheet should be modified.
        record (ProductRow): Structured product data ready for persistence.
    """

    sheet = workbook[PRODUCTS_SHEET]
    sheet.append(serialize_product(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.

    Args:
        workbook (Workbook): Workbook containing the sales sheet.
        record (SaleRow): Sale to persist.
    """

    sheet = workbook[SALES_SHEET]
    sheet.append(serialize_sale(record))


def conditional_update_product(
    workbook: Workbook,
    product_id: str,
    *,
    expected_version: int,
    field_values: dict[str, Any],
    updated_at_iso: str,
) -> ProductRow:
    """Update selected product columns only if the stored version matches.

    This is the compare-and-swap primitive that guards every product write.
    The row is located by ``ProductID`` and its ``Version`` cell is compared
    against ``expected_version``. On a match the requested cells are written,
    ``UpdatedAt`` is stamped, and ``Version`` is incremented by one. On a
    mismatch nothing is written.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (str): Identifier used to locate the target row.
        expected_version (int): Version the caller read before computing
            ``field_values``.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values. ``ProductID``, ``Version`` and ``CreatedAt`` are rejected.
        updated_at_iso (str): Timestamp written into ``UpdatedAt``.

    Returns:
        ProductRow: The row as stored after the update.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
        ValueError: If ``field_values`` names a store-managed column.
        StaleVersionError: If the stored version differs from
            ``expected_version``.
    """

    protected = _PROTECTED_PRODUCT_COLUMNS.intersection(field_values)
    if protected:
        raise ValueError(f"Cannot overwrite managed product fields: {', '.join(sorted(protected))}")

    row_index = locate_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    if row_index is None:
        raise KeyError(f"Product not found: {product_id}")

    sheet = workbook[PRODUCTS_SHEET]
    header_map = _header_map(sheet)
    for field in field_values:
        if field not in header_map:
            raise KeyError(f"Unknown product field: {field}")

    version_cell = sheet.cell(row=row_index, column=header_map["Version"])
    stored_version = int(version_cell.value or 0)
    if stored_version != expected_version:
        raise StaleVersionError(product_id, expected_version, stored_version)

    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=value)
    sheet.cell(row=row_index, column=header_map["UpdatedAt"], value=updated_at_iso)
    version_cell.value = stored_version + 1

    return deserialize_product(_row_values(sheet, row_index))


def delete_product(workbook: Workbook, product_id: str) -> None:
    """Remove a product row from the ``Products`` worksheet.

    Raises:
        KeyError: If the product does not exist.
    """

    _delete_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)


def delete_sale(workbook: Workbook, sale_id: str) -> None:
    """Remove a sale row from the ``Sales`` worksheet.

    Raises:
        KeyError: If the sale does not exist.
    """

    _delete_row(workbook, SALES_SHEET, "SaleID", sale_id)


def _delete_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")
    workbook[sheet_name].delete_rows(row_index)


def _header_map(sheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _row_values(sheet, row_index: int) -> tuple[object, ...]:
    width = sheet.max_column
    return next(sheet.iter_rows(min_row=row_index, max_row=row_index, max_col=width, values_only=True))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: Values arranged as :data:`PRODUCT_COLUMNS`.
    """

    return [
        record.product_id,
        record.product_name,
        record.product_type,
        record.quantity,
        record.unit_cost,
        record.unit_price,
        record.profit,
        record.image_url,
        record.version,
        record.created_at_iso,
        record.updated_at_iso,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the worksheet column ordering.

    Returns:
        list[object]: Values arranged as :data:`SALE_COLUMNS`.
    """

    return [
        record.sale_id,
        record.product_id,
        record.product_name,
        record.units,
        record.sell_price,
        record.cost,
        record.new_cost,
        record.profit,
        record.created_at_iso,
    ]


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    # Excel hands numbers back as floats; snap them to whole cents.
    value = Decimal(str(raw)) if raw is not None else Decimal(default)
    return value.quantize(MONEY_QUANTUM)


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Monetary columns become :class:`~decimal.Decimal` instances, quantities
    and versions become ``int``, and id/name fields are coerced to ``str`` to
    avoid surprises caused by Excel interpreting numbers.
    """

    (
        product_id,
        product_name,
        product_type,
        quantity_raw,
        unit_cost_raw,
        unit_price_raw,
        profit_raw,
        image_url,
        version_raw,
        created_at,
        updated_at,
    ) = tuple(raw_row[:len(PRODUCT_COLUMNS)])

    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name) if product_name is not None else "",
        product_type=str(product_type) if product_type is not None else DEFAULT_PRODUCT_TYPE.value,
        quantity=int(quantity_raw) if quantity_raw is not None else 0,
        unit_cost=_to_decimal(unit_cost_raw),
        unit_price=_to_decimal(unit_price_raw),
        profit=_to_decimal(profit_raw),
        image_url=_to_optional_str(image_url),
        version=int(version_raw) if version_raw is not None else 0,
        created_at_iso=str(created_at) if created_at is not None else "",
        updated_at_iso=str(updated_at) if updated_at is not None else "",
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale record.

    ``NewCost`` stays ``None`` when the sheet leaves it blank so callers can
    tell an override apart from the standing cost.
    """

    (
        sale_id,
        product_id,
        product_name,
        units_raw,
        sell_price_raw,
        cost_raw,
        new_cost_raw,
        profit_raw,
        created_at,
    ) = tuple(raw_row[:len(SALE_COLUMNS)])

    return SaleRow(
        sale_id=str(sale_id),
        product_id=str(product_id) if product_id is not None else "",
        product_name=str(product_name) if product_name is not None else "",
        units=int(units_raw) if units_raw is not None else 0,
        sell_price=_to_decimal(sell_price_raw),
        cost=_to_decimal(cost_raw),
        new_cost=_to_decimal(new_cost_raw) if new_cost_raw is not None else None,
        profit=_to_decimal(profit_raw),
        created_at_iso=str(created_at) if created_at is not None else "",
    )
