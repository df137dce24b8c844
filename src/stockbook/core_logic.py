"""Business logic layer for Stockbook.

This module owns the ledger rules that keep the ``Products`` and ``Sales``
sheets consistent with each other. It consumes the Data Access Layer (DAL) for
all I/O while ensuring every mutation passes through validation, the
version-checked product update, and, for two-record operations, a single
commit section guarded by the runtime context lock.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, MONEY_QUANTUM, ProductSort, ProductType


T = TypeVar("T")


class LedgerError(Exception):
    """Base class for every failure surfaced by the business logic layer."""


class ValidationError(LedgerError, ValueError):
    """Raised when input is rejected before any mutation is attempted."""


class NotFoundError(LedgerError):
    """Raised when a referenced product or sale is unknown."""


class ConflictError(LedgerError):
    """Raised when a concurrent write changed a product under our feet."""


class StorageError(LedgerError):
    """Raised when the underlying workbook cannot be read or written."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    ``_lock`` serializes every access to the workbook. ``openpyxl`` objects
    are not thread-safe and row appends or deletions shift row indices, so
    concurrent callers sharing a context must never touch the sheets at the
    same time.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


@dataclass(frozen=True)
class ProductCommand:
    """User intent for adding a product to the catalogue."""

    product_name: str
    product_type: str
    quantity: int
    unit_cost: Decimal
    unit_price: Decimal
    image_url: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ProductEditCommand:
    """User intent for changing the descriptive fields of a product.

    Quantity and profit are absent: they only move through
    sales, reversals, and quantity adjustments.
    """

    product_id: str
    product_name: Optional[str] = None
    product_type: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for selling units of a product.

    ``sale_id`` doubles as an idempotency key: resubmitting a command with
    the id of a sale that already exists returns that sale instead of
    applying the stock and profit deltas a second time.
    """

    product_id: str
    units: int
    sell_price: Decimal
    override_cost: Optional[Decimal] = None
    sale_id: Optional[str] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are simple dictionaries that store precomputed query results so
    repeated reads do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. Missing buckets are
            ignored.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products in sheet order and
            a ``by_id`` lookup dictionary.
    """

    bucket = _get_cache_bucket(context, "products")
    if "all" not in bucket:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["all"] = all_products
        bucket["by_id"] = {product.product_id: product for product in all_products}
        log.debug("Populated products cache with %d entries", len(all_products))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sales cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` sales in sheet order and a
            ``by_id`` dictionary for primary key lookups.
    """

    bucket = _get_cache_bucket(context, "sales")
    if "all" not in bucket:
        all_sales = list(data_manager.iter_sales(context.workbook))
        bucket["all"] = all_sales
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        log.debug("Populated sales cache with %d entries", len(all_sales))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores the ledger. The resulting :class:`RuntimeContext`
    bundles the immutable settings with a mutable workbook handle, an empty
    cache store, and a fresh lock.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to disk.

    Raises:
        StorageError: If the workbook cannot be written.
    """
    with context._lock:
        try:
            data_manager.save_workbook(
                context.workbook,
                destination=context.settings.data_file,
            )
        except OSError as exc:
            log.error("Unable to persist workbook '%s': %s", context.settings.data_file, exc)
            raise StorageError(f"Unable to persist workbook: {exc}") from exc
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook, an
            empty cache, and a new lock.

    Raises:
        StorageError: If the backing workbook cannot be reloaded.
    """
    try:
        workbook = data_manager.refresh_workbook(context.settings.data_file)
    except OSError as exc:
        log.error("Unable to reload workbook '%s': %s", context.settings.data_file, exc)
        raise StorageError(f"Unable to reload workbook: {exc}") from exc
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Lookups and listings
# ---------------------------------------------------------------------------


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        product_id (str): Identifier populated in the ``Products`` sheet.

    Returns:
        data_manager.ProductRow: Matching product as currently stored.

    Raises:
        NotFoundError: If ``product_id`` is absent from the workbook.
    """
    with context._lock:
        cache = _ensure_products_cache(context)
        try:
            return cache["by_id"][product_id]
        except KeyError as exc:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise NotFoundError(f"Unknown product id: {product_id}") from exc


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale record by its identifier.

    Raises:
        NotFoundError: If the ``Sales`` sheet lacks ``sale_id``.
    """
    with context._lock:
        cache = _ensure_sales_cache(context)
        try:
            return cache["by_id"][sale_id]
        except KeyError as exc:
            log.warning("Sale lookup failed for id '%s'", sale_id)
            raise NotFoundError(f"Unknown sale id: {sale_id}") from exc


_PRODUCT_SORT_KEYS: Dict[ProductSort, tuple[Callable[[data_manager.ProductRow], Any], bool]] = {
    ProductSort.NAME_ASC: (lambda product: product.product_name.casefold(), False),
    ProductSort.NAME_DESC: (lambda product: product.product_name.casefold(), True),
    ProductSort.QUANTITY_ASC: (lambda product: product.quantity, False),
    ProductSort.QUANTITY_DESC: (lambda product: product.quantity, True),
    ProductSort.PRICE_ASC: (lambda product: product.unit_price, False),
    ProductSort.PRICE_DESC: (lambda product: product.unit_price, True),
    ProductSort.COST_ASC: (lambda product: product.unit_cost, False),
    ProductSort.COST_DESC: (lambda product: product.unit_cost, True),
}


def list_products(
    context: RuntimeContext,
    *,
    search: Optional[str] = None,
    product_type: Optional[str] = None,
    include_out_of_stock: bool = True,
    include_low_stock: bool = True,
    sort_by: Union[ProductSort, str] = ProductSort.NAME_ASC,
) -> List[data_manager.ProductRow]:
    """Return catalogue rows filtered and ordered for display.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        search (str | None): Case-insensitive substring matched against the
            product name.
        product_type (str | None): Only return products of this type.
        include_out_of_stock (bool): When ``False`` products with zero units
            are hidden.
        include_low_stock (bool): When ``False`` products below the configured
            low-stock threshold are hidden. Out-of-stock products fall below
            any positive threshold and are hidden as well.
        sort_by (ProductSort | str): Ordering to apply.

    Returns:
        list[data_manager.ProductRow]: Matching products.

    Raises:
        ValidationError: If ``sort_by`` is not a known ordering.
    """
    try:
        ordering = ProductSort(sort_by)
    except ValueError as exc:
        raise ValidationError(f"Unsupported product ordering: {sort_by}") from exc

    with context._lock:
        products = list(_ensure_products_cache(context)["all"])

    threshold = context.settings.low_stock_threshold
    needle = search.casefold() if search else None
    selected = [
        product
        for product in products
        if (needle is None or needle in product.product_name.casefold())
        and (product_type is None or product.product_type == product_type)
        and (include_out_of_stock or product.quantity > 0)
        and (include_low_stock or product.quantity >= threshold)
    ]
    key, reverse = _PRODUCT_SORT_KEYS[ordering]
    return sorted(selected, key=key, reverse=reverse)


def list_sales(context: RuntimeContext, *, product_id: Optional[str] = None) -> List[data_manager.SaleRow]:
    """Return sales newest first, optionally restricted to one product.

    Sales recorded at the same instant keep their reverse sheet order so the
    most recently appended row still comes first.
    """
    with context._lock:
        sales = list(_ensure_sales_cache(context)["all"])
    if product_id is not None:
        sales = [sale for sale in sales if sale.product_id == product_id]
    indexed = sorted(enumerate(sales), key=lambda pair: (pair[1].created_at_iso, pair[0]), reverse=True)
    return [sale for _, sale in indexed]


def calculate_dashboard(context: RuntimeContext) -> Dict[str, Union[int, Decimal]]:
    """Produce the headline inventory and sales metrics.

    Returns:
        dict[str, int | Decimal]: ``total_products``, ``units_in_stock``,
            ``out_of_stock``, ``low_stock``, ``stock_value`` (cost of units on
            hand), ``total_profit`` (sum of product profit), ``sales_count``,
            ``sales_revenue``, ``sales_costs`` (effective cost of units sold),
            and ``money_spent`` (stock value plus sales costs).
    """
    with context._lock:
        products = list(_ensure_products_cache(context)["all"])
        sales = list(_ensure_sales_cache(context)["all"])

    threshold = context.settings.low_stock_threshold
    stock_value = sum((product.unit_cost * product.quantity for product in products), Decimal("0"))
    sales_costs = sum((sale.effective_cost * sale.units for sale in sales), Decimal("0"))
    summary: Dict[str, Union[int, Decimal]] = {
        "total_products": len(products),
        "units_in_stock": sum(product.quantity for product in products),
        "out_of_stock": sum(1 for product in products if product.quantity == 0),
        "low_stock": sum(1 for product in products if 0 < product.quantity < threshold),
        "stock_value": stock_value,
        "total_profit": sum((product.profit for product in products), Decimal("0")),
        "sales_count": len(sales),
        "sales_revenue": sum((sale.sell_price * sale.units for sale in sales), Decimal("0")),
        "sales_costs": sales_costs,
        "money_spent": stock_value + sales_costs,
    }
    log.debug("Calculated dashboard summary: %s", summary)
    return summary


# ---------------------------------------------------------------------------
# Catalogue management
# ---------------------------------------------------------------------------


def add_product(context: RuntimeContext, command: ProductCommand) -> data_manager.ProductRow:
    """Validate and append a new product with zero accumulated profit.

    Raises:
        ValidationError: If the name is blank, the type unknown, the quantity
            not a non-negative integer, or a price negative.
    """
    name = require_product_name(command.product_name)
    product_type = require_product_type(command.product_type)
    require_nonnegative_units(command.quantity)
    require_nonnegative_money(command.unit_cost)
    require_nonnegative_money(command.unit_price)

    timestamp = _resolve_timestamp(command.timestamp)
    product = data_manager.ProductRow(
        product_id=generate_record_id(prefix="P", when=timestamp),
        product_name=name,
        product_type=product_type,
        quantity=command.quantity,
        unit_cost=command.unit_cost,
        unit_price=command.unit_price,
        profit=Decimal("0.00"),
        image_url=command.image_url or None,
        version=1,
        created_at_iso=timestamp.isoformat(),
        updated_at_iso=timestamp.isoformat(),
    )
    with context._lock:
        data_manager.append_product(context.workbook, product)
        _invalidate_cache(context, "products")
    log.info(
        "Added product '%s' (%s, quantity=%s, cost=%s, price=%s)",
        product.product_id,
        product.product_name,
        product.quantity,
        product.unit_cost,
        product.unit_price,
    )
    return product


def edit_product(context: RuntimeContext, command: ProductEditCommand) -> data_manager.ProductRow:
    """Change the descriptive fields of a product under version control.

    Only the fields set on ``command`` are written. An empty ``image_url``
    string clears the stored image.

    Raises:
        ValidationError: If nothing would change or a new value is invalid.
        NotFoundError: If the product does not exist.
        ConflictError: If concurrent writes kept invalidating the read.
    """
    field_values: Dict[str, Any] = {}
    if command.product_name is not None:
        field_values["ProductName"] = require_product_name(command.product_name)
    if command.product_type is not None:
        field_values["ProductType"] = require_product_type(command.product_type)
    if command.unit_cost is not None:
        require_nonnegative_money(command.unit_cost)
        field_values["UnitCost"] = command.unit_cost
    if command.unit_price is not None:
        require_nonnegative_money(command.unit_price)
        field_values["UnitPrice"] = command.unit_price
    if command.image_url is not None:
        field_values["ImageURL"] = command.image_url or None
    if not field_values:
        log.error("Edit of product '%s' requested without any changes", command.product_id)
        raise ValidationError("No product fields to update")

    timestamp = _resolve_timestamp(command.timestamp)

    def attempt() -> data_manager.ProductRow:
        product = get_product(context, command.product_id)
        with context._lock:
            return _write_product(context, product, field_values, timestamp=timestamp)

    updated = _retry_on_conflict(context, f"Edit of product '{command.product_id}'", attempt)
    log.info("Edited product '%s' (%s)", updated.product_id, ", ".join(sorted(field_values)))
    return updated


def remove_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Delete a product row, leaving its sales in place.

    Sales only hold a weak reference to the product, so they stay in the log
    and can still be reversed later; the reversal then skips the stock update.

    Raises:
        NotFoundError: If the product does not exist.
    """
    with context._lock:
        product = get_product(context, product_id)
        data_manager.delete_product(context.workbook, product_id)
        _invalidate_cache(context, "products")
        orphaned = sum(1 for sale in _ensure_sales_cache(context)["all"] if sale.product_id == product_id)
    log.info("Removed product '%s' (%d sales keep referencing it)", product_id, orphaned)
    return product


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------


def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate a sale, then append it and update its product as one unit.

    Inputs are checked before anything is read. The product is then read,
    stock availability is validated against that snapshot, and profit is
    computed as ``(sell_price - effective_cost) * units`` where the effective
    cost is ``override_cost`` when given and the product's standing cost
    otherwise. A negative profit is recorded as-is.

    The commit section runs under the context lock: it re-checks the
    idempotency key, writes the product through the version-checked update,
    and appends the sale. If the append fails the product write is undone
    before the error propagates. A version conflict triggers a fresh read and
    re-validation, up to ``settings.conflict_retries`` attempts.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale request.

    Returns:
        data_manager.SaleRow: The recorded sale, or the existing sale when
            ``command.sale_id`` names one with identical contents.

    Raises:
        ValidationError: On non-positive units, insufficient stock,
            negative prices, or a ``command.sale_id`` already used by a
            different sale.
        NotFoundError: If the product does not exist.
        ConflictError: If concurrent writes kept invalidating the read.
        StorageError: If the sale could not be appended.
    """
    require_positive_units(command.units)
    require_nonnegative_money(command.sell_price)
    if command.override_cost is not None:
        require_nonnegative_money(command.override_cost)

    timestamp = _resolve_timestamp(command.timestamp)
    sale_id = command.sale_id or generate_record_id(prefix="S", when=timestamp)

    def attempt() -> data_manager.SaleRow:
        duplicate = _find_sale(context, sale_id)
        if duplicate is not None:
            return _resolve_duplicate_sale(duplicate, command)

        product = get_product(context, command.product_id)
        require_available_stock(product, command.units)
        sale = build_sale(command, product, sale_id=sale_id, timestamp=timestamp)

        with context._lock:
            duplicate = _find_sale(context, sale_id)
            if duplicate is not None:
                return _resolve_duplicate_sale(duplicate, command)
            updated = _write_product(
                context,
                product,
                {"Quantity": product.quantity - sale.units, "Profit": product.profit + sale.profit},
                timestamp=timestamp,
            )
            try:
                data_manager.append_sale(context.workbook, sale)
            except Exception as exc:
                _restore_product(context, updated, product, timestamp=timestamp)
                raise StorageError(f"Unable to record sale '{sale_id}': {exc}") from exc
            finally:
                _invalidate_cache(context, "sales")

        log.info(
            "Recorded sale '%s' of %d x '%s' at %s (cost=%s, profit=%s); stock %d -> %d",
            sale.sale_id,
            sale.units,
            sale.product_id,
            sale.sell_price,
            sale.effective_cost,
            sale.profit,
            product.quantity,
            updated.quantity,
        )
        return sale

    return _retry_on_conflict(context, f"Sale of product '{command.product_id}'", attempt)


def reverse_sale(context: RuntimeContext, sale_id: str, *, timestamp: Optional[datetime] = None) -> data_manager.SaleRow:
    """Undo a sale's effect on its product and delete the sale.

    The product regains ``sale.units`` units and loses ``sale.profit`` from
    its accumulated profit. When the product no longer exists the stock
    update is skipped, the inconsistency is logged, and the sale is still
    removed. Both writes happen in one commit section under the context lock,
    with the product write undone if the deletion fails.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        sale_id (str): Identifier of the sale to reverse.
        timestamp (datetime | None): Time stamped on the product update.

    Returns:
        data_manager.SaleRow: The sale that was removed.

    Raises:
        NotFoundError: If the sale does not exist, including when a
            concurrent reversal removed it first.
        ConflictError: If retries were exhausted.
        StorageError: If the sale could not be deleted.
    """
    moment = _resolve_timestamp(timestamp)

    def attempt() -> data_manager.SaleRow:
        sale = get_sale(context, sale_id)
        try:
            product: Optional[data_manager.ProductRow] = get_product(context, sale.product_id)
        except NotFoundError:
            product = None

        with context._lock:
            if _find_sale(context, sale_id) is None:
                log.warning("Sale '%s' disappeared before it could be reversed", sale_id)
                raise NotFoundError(f"Unknown sale id: {sale_id}")

            updated: Optional[data_manager.ProductRow] = None
            if product is not None:
                try:
                    updated = _write_product(
                        context,
                        product,
                        {"Quantity": product.quantity + sale.units, "Profit": product.profit - sale.profit},
                        timestamp=moment,
                    )
                except NotFoundError:
                    product = None
            if product is None:
                log.warning(
                    "Product '%s' referenced by sale '%s' no longer exists; removing the sale without restoring stock",
                    sale.product_id,
                    sale_id,
                )

            try:
                data_manager.delete_sale(context.workbook, sale_id)
            except Exception as exc:
                if updated is not None:
                    _restore_product(context, updated, product, timestamp=moment)
                raise StorageError(f"Unable to delete sale '{sale_id}': {exc}") from exc
            finally:
                _invalidate_cache(context, "sales")

        if updated is not None:
            log.info(
                "Reversed sale '%s'; product '%s' stock %d -> %d, profit %s -> %s",
                sale_id,
                sale.product_id,
                product.quantity,
                updated.quantity,
                product.profit,
                updated.profit,
            )
        else:
            log.info("Reversed sale '%s' without a product update", sale_id)
        return sale

    return _retry_on_conflict(context, f"Reversal of sale '{sale_id}'", attempt)


def adjust_quantity(
    context: RuntimeContext,
    product_id: str,
    delta: int,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Move a product's on-hand quantity by ``delta`` outside of a sale.

    Profit is untouched. A zero delta returns the current product without
    writing.

    Raises:
        ValidationError: If ``delta`` is not an integer or would take the
            quantity below zero.
        NotFoundError: If the product does not exist.
        ConflictError: If retries were exhausted.
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        log.error("Quantity adjustment validation failed: %r", delta)
        raise ValidationError("Quantity adjustment must be an integer")

    moment = _resolve_timestamp(timestamp)

    def attempt() -> data_manager.ProductRow:
        product = get_product(context, product_id)
        new_quantity = product.quantity + delta
        if new_quantity < 0:
            log.error(
                "Quantity adjustment of %d rejected for product '%s' holding %d units",
                delta,
                product_id,
                product.quantity,
            )
            raise ValidationError(
                f"Cannot adjust product '{product_id}' by {delta}: only {product.quantity} units on hand"
            )
        if delta == 0:
            return product
        with context._lock:
            return _write_product(context, product, {"Quantity": new_quantity}, timestamp=moment)

    updated = _retry_on_conflict(context, f"Quantity adjustment of product '{product_id}'", attempt)
    log.info("Adjusted product '%s' quantity by %d to %d", product_id, delta, updated.quantity)
    return updated


def build_sale(
    command: SaleCommand,
    product: data_manager.ProductRow,
    *,
    sale_id: str,
    timestamp: datetime,
) -> data_manager.SaleRow:
    """Materialize a :class:`SaleCommand` against a product snapshot.

    ``cost`` always records the product's standing unit cost; ``new_cost``
    carries the override when one was given. Profit uses whichever of the two
    is effective.
    """
    effective_cost = command.override_cost if command.override_cost is not None else product.unit_cost
    profit = (command.sell_price - effective_cost) * command.units
    return data_manager.SaleRow(
        sale_id=sale_id,
        product_id=product.product_id,
        product_name=product.product_name,
        units=command.units,
        sell_price=command.sell_price,
        cost=product.unit_cost,
        new_cost=command.override_cost,
        profit=profit,
        created_at_iso=timestamp.isoformat(),
    )


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{suffix}``
            where the six-character random suffix keeps identifiers unique
            when several records share a microsecond.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def parse_money(raw: Union[str, int, Decimal]) -> Decimal:
    """Convert user input into a finite :class:`~decimal.Decimal`.

    Raises:
        ValidationError: If ``raw`` is not a finite number.
    """
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Not a monetary amount: {raw!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Not a monetary amount: {raw!r}")
    return amount


def require_positive_units(units: int) -> None:
    """Validate that a unit count is an integer greater than zero.

    Raises:
        ValidationError: If ``units`` is not an ``int`` or is not positive.
    """
    if isinstance(units, bool) or not isinstance(units, int) or units <= 0:
        log.error("Units validation failed: %r", units)
        raise ValidationError("Units must be a positive integer")


def require_nonnegative_units(quantity: int) -> None:
    """Validate that a stock quantity is an integer of zero or more."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a non-negative integer")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is a finite amount of zero or more.

    Amounts are held to whole cents so that values read back from the
    workbook add up exactly.

    Raises:
        ValidationError: If ``amount`` is negative, not a finite number, or
            has more than two decimal places.
    """
    if isinstance(amount, bool) or not isinstance(amount, (Decimal, int)):
        log.error("Monetary value validation failed: %r", amount)
        raise ValidationError("Amount must be a decimal number")
    if isinstance(amount, Decimal) and not amount.is_finite():
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be a finite number")
    if amount < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")
    if isinstance(amount, Decimal) and not _is_whole_cents(amount):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must not have more than two decimal places")


def _is_whole_cents(amount: Decimal) -> bool:
    try:
        return amount == amount.quantize(MONEY_QUANTUM)
    except InvalidOperation:
        return False


def require_available_stock(product: data_manager.ProductRow, units: int) -> None:
    """Validate that ``product`` holds at least ``units`` units.

    Raises:
        ValidationError: If the sale would drive the quantity below zero.
    """
    if units > product.quantity:
        log.error(
            "Insufficient stock for product '%s': requested %d, available %d",
            product.product_id,
            units,
            product.quantity,
        )
        raise ValidationError(
            f"Cannot sell {units} units of '{product.product_id}': only {product.quantity} in stock"
        )


def require_product_name(name: str) -> str:
    """Return ``name`` stripped, rejecting blank names."""
    cleaned = (name or "").strip()
    if not cleaned:
        log.error("Product name validation failed: %r", name)
        raise ValidationError("Product name must not be empty")
    return cleaned


def require_product_type(product_type: str) -> str:
    """Return the canonical value of a known product type."""
    try:
        return ProductType(product_type).value
    except ValueError as exc:
        log.error("Product type validation failed: %r", product_type)
        raise ValidationError(f"Unknown product type: {product_type}") from exc


# ---------------------------------------------------------------------------
# Commit helpers
# ---------------------------------------------------------------------------


def _retry_on_conflict(context: RuntimeContext, operation: str, action: Callable[[], T]) -> T:
    """Run ``action`` again with fresh reads whenever it raises ConflictError.

    Other errors propagate immediately. After ``settings.conflict_retries``
    conflicting attempts the last :class:`ConflictError` is surfaced.
    """
    attempts = context.settings.conflict_retries
    for attempt in range(1, attempts + 1):
        try:
            return action()
        except ConflictError:
            if attempt >= attempts:
                log.error("%s gave up after %d conflicting attempts", operation, attempts)
                raise
            log.warning(
                "%s hit a concurrent update (attempt %d/%d); retrying with fresh state",
                operation,
                attempt,
                attempts,
            )
    raise ConflictError(f"{operation} could not be applied")


def _write_product(
    context: RuntimeContext,
    product: data_manager.ProductRow,
    field_values: Dict[str, Any],
    *,
    timestamp: datetime,
) -> data_manager.ProductRow:
    """Apply a version-checked update and translate DAL failures.

    Callers must hold ``context._lock``.
    """
    try:
        updated = data_manager.conditional_update_product(
            context.workbook,
            product.product_id,
            expected_version=product.version,
            field_values=field_values,
            updated_at_iso=timestamp.isoformat(),
        )
    except data_manager.StaleVersionError as exc:
        log.warning("Version conflict on product '%s': %s", product.product_id, exc)
        raise ConflictError(str(exc)) from exc
    except KeyError as exc:
        log.warning("Product '%s' vanished before it could be updated", product.product_id)
        raise NotFoundError(f"Unknown product id: {product.product_id}") from exc
    finally:
        _invalidate_cache(context, "products")
    return updated


def _restore_product(
    context: RuntimeContext,
    updated: data_manager.ProductRow,
    original: data_manager.ProductRow,
    *,
    timestamp: datetime,
) -> None:
    """Compensate a product write whose companion sale write failed.

    Runs under the lock still held by the caller, so the version written a
    moment ago is the one on file.
    """
    log.error(
        "Rolling back product '%s' to quantity=%d profit=%s after a failed sale write",
        original.product_id,
        original.quantity,
        original.profit,
    )
    _write_product(
        context,
        updated,
        {"Quantity": original.quantity, "Profit": original.profit},
        timestamp=timestamp,
    )


def _find_sale(context: RuntimeContext, sale_id: str) -> Optional[data_manager.SaleRow]:
    with context._lock:
        return _ensure_sales_cache(context)["by_id"].get(sale_id)


def _resolve_duplicate_sale(existing: data_manager.SaleRow, command: SaleCommand) -> data_manager.SaleRow:
    """Return ``existing`` when it matches ``command``, else raise ValidationError."""
    same = (
        existing.product_id == command.product_id
        and existing.units == command.units
        and existing.sell_price == command.sell_price
        and existing.new_cost == command.override_cost
    )
    if not same:
        log.error("Sale id '%s' is already used by a different sale", existing.sale_id)
        raise ValidationError(f"Sale id '{existing.sale_id}' is already used by a different sale")
    log.info("Sale '%s' was already recorded; not applying it again", existing.sale_id)
    return existing
