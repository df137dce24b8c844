"""Enumerations and defaults shared across Stockbook modules.

The data access layer (DAL), business logic layer (BLL), and the CLI all read
sheet names, product categories, and tuning defaults from here so the
workbook layout has a single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Products below this many units count as low stock.
DEFAULT_LOW_STOCK_THRESHOLD = 3

# Attempts made by ledger operations before a version conflict is surfaced.
DEFAULT_CONFLICT_RETRIES = 3

# Smallest monetary unit stored in the workbook.
MONEY_QUANTUM = Decimal("0.01")


class ProductType(str, Enum):
    """Enumerate the catalogue categories a product can belong to."""

    BOOSTER_PACKS = "Booster Packs"
    BOOSTER_BOXES = "Booster Boxes"
    ELITE_TRAINER_BOXES = "Elite Trainer Boxes"
    MINI_TINS = "Mini Tins"
    GRADED_CARDS = "Graded Cards"
    SINGLE_CARDS = "Single Cards"
    OTHER = "Other"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"


class ProductSort(str, Enum):
    """Enumerate the orderings supported by product listings."""

    NAME_ASC = "name-asc"
    NAME_DESC = "name-desc"
    QUANTITY_ASC = "quantity-asc"
    QUANTITY_DESC = "quantity-desc"
    PRICE_ASC = "price-asc"
    PRICE_DESC = "price-desc"
    COST_ASC = "cost-asc"
    COST_DESC = "cost-desc"


DEFAULT_PRODUCT_TYPE = ProductType.OTHER


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_CONFLICT_RETRIES",
    "DEFAULT_PRODUCT_TYPE",
    "MONEY_QUANTUM",
    "ProductType",
    "ProductSort",
    "SheetName",
]
