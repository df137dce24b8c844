"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from stockbook import constants, data_manager, setup_excel


def _product(product_id: str = "P1", **overrides) -> data_manager.ProductRow:
    values = dict(
        product_id=product_id,
        product_name="Paldea Tin",
        product_type=constants.ProductType.MINI_TINS.value,
        quantity=4,
        unit_cost=Decimal("6.50"),
        unit_price=Decimal("9.99"),
        profit=Decimal("0.00"),
        image_url=None,
        version=1,
        created_at_iso="2025-01-01T00:00:00+00:00",
        updated_at_iso="2025-01-01T00:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.ProductRow(**values)


def _sale(sale_id: str = "S1", **overrides) -> data_manager.SaleRow:
    values = dict(
        sale_id=sale_id,
        product_id="P1",
        product_name="Paldea Tin",
        units=2,
        sell_price=Decimal("9.99"),
        cost=Decimal("6.50"),
        new_cost=None,
        profit=Decimal("6.98"),
        created_at_iso="2025-01-02T00:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.SaleRow(**values)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=stockbook.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Shop"
    assert parser.getint("Defaults", "LowStockThreshold") == 3


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.shop_name == "Test Shop"


def test_parse_settings_uses_defaults_when_section_missing(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = book.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.low_stock_threshold == constants.DEFAULT_LOW_STOCK_THRESHOLD
    assert settings.conflict_retries == constants.DEFAULT_CONFLICT_RETRIES
    assert settings.default_product_type == constants.ProductType.OTHER.value


def test_parse_settings_requires_system_section(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_zero_conflict_retries(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = book.xlsx\nShopName = Shop\nSchemaVersion = 1.0.0\n"
        "[Defaults]\nConflictRetries = 0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_create_master_workbook_writes_headers(master_workbook_path):
    workbook = openpyxl.load_workbook(master_workbook_path)

    assert workbook.sheetnames == [constants.SheetName.PRODUCTS.value, constants.SheetName.SALES.value]
    header = [cell.value for cell in workbook[constants.SheetName.SALES.value][1]]
    assert header == list(data_manager.SALE_COLUMNS)


def test_create_master_workbook_refuses_overwrite(master_workbook_path):
    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(master_workbook_path)


def test_run_from_config_creates_configured_workbook(config_factory):
    bundle = config_factory()
    bundle.workbook_path.unlink()

    created = setup_excel.run_from_config(bundle.config_path)

    assert created == bundle.workbook_path.resolve()
    assert created.exists()


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    assert isinstance(data_manager.open_workbook(master_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_round_trips_typed_rows(master_workbook_path):
    """Rows written through the DAL should read back with equal values."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product())
    data_manager.append_sale(workbook, _sale(new_cost=Decimal("7.00")))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.refresh_workbook(master_workbook_path)
    product = data_manager.get_product(reloaded, "P1")
    sale = data_manager.get_sale(reloaded, "S1")

    assert product.quantity == 4
    assert product.unit_cost == Decimal("6.50")
    assert product.image_url is None
    assert product.version == 1
    assert sale.units == 2
    assert sale.new_cost == Decimal("7.00")
    assert sale.profit == Decimal("6.98")


def test_save_workbook_leaves_no_temporary_files(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.save_workbook(workbook, master_workbook_path)

    assert sorted(p.name for p in master_workbook_path.parent.iterdir()) == [master_workbook_path.name]


def test_save_workbook_failure_keeps_previous_file(tmp_path):
    """A failed save must not truncate or replace the existing workbook."""

    destination = tmp_path / "stockbook.xlsx"
    destination.write_bytes(b"previous contents")
    broken = Mock(name="workbook")
    broken.save.side_effect = OSError("disk full")

    with pytest.raises(OSError):
        data_manager.save_workbook(broken, destination)

    assert destination.read_bytes() == b"previous contents"
    assert [p.name for p in tmp_path.iterdir()] == ["stockbook.xlsx"]


# ---------------------------------------------------------------------------
# Record-store primitives
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_with_product(master_workbook_path) -> OpenpyxlWorkbook:
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_product(workbook, _product("P1"))
    data_manager.append_product(workbook, _product("P2", product_name="Other"))
    return workbook


def test_iter_products_yields_rows_in_sheet_order(workbook_with_product):
    assert [row.product_id for row in data_manager.iter_products(workbook_with_product)] == ["P1", "P2"]


def test_get_product_missing_raises_key_error(workbook_with_product):
    with pytest.raises(KeyError):
        data_manager.get_product(workbook_with_product, "nope")


def test_conditional_update_writes_fields_and_bumps_version(workbook_with_product):
    updated = data_manager.conditional_update_product(
        workbook_with_product,
        "P1",
        expected_version=1,
        field_values={"Quantity": 1, "Profit": Decimal("3.00")},
        updated_at_iso="2025-02-01T00:00:00+00:00",
    )

    assert updated.quantity == 1
    assert updated.profit == Decimal("3.00")
    assert updated.version == 2
    assert updated.updated_at_iso == "2025-02-01T00:00:00+00:00"
    assert data_manager.get_product(workbook_with_product, "P2").version == 1


def test_conditional_update_rejects_stale_version(workbook_with_product):
    """A mismatched version must leave the row untouched."""

    with pytest.raises(data_manager.StaleVersionError) as excinfo:
        data_manager.conditional_update_product(
            workbook_with_product,
            "P1",
            expected_version=7,
            field_values={"Quantity": 0},
            updated_at_iso="2025-02-01T00:00:00+00:00",
        )

    assert excinfo.value.actual == 1
    row = data_manager.get_product(workbook_with_product, "P1")
    assert row.quantity == 4
    assert row.version == 1


def test_conditional_update_rejects_managed_columns(workbook_with_product):
    with pytest.raises(ValueError):
        data_manager.conditional_update_product(
            workbook_with_product,
            "P1",
            expected_version=1,
            field_values={"Version": 10},
            updated_at_iso="x",
        )


def test_conditional_update_unknown_column_raises(workbook_with_product):
    with pytest.raises(KeyError):
        data_manager.conditional_update_product(
            workbook_with_product,
            "P1",
            expected_version=1,
            field_values={"Colour": "red"},
            updated_at_iso="x",
        )


def test_conditional_update_missing_product_raises(workbook_with_product):
    with pytest.raises(KeyError):
        data_manager.conditional_update_product(
            workbook_with_product,
            "P9",
            expected_version=1,
            field_values={"Quantity": 1},
            updated_at_iso="x",
        )


def test_delete_sale_removes_only_target_row(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    for sale_id in ("S1", "S2", "S3"):
        data_manager.append_sale(workbook, _sale(sale_id))

    data_manager.delete_sale(workbook, "S2")

    assert [sale.sale_id for sale in data_manager.iter_sales(workbook)] == ["S1", "S3"]
    with pytest.raises(KeyError):
        data_manager.delete_sale(workbook, "S2")


def test_delete_product_removes_row(workbook_with_product):
    data_manager.delete_product(workbook_with_product, "P1")

    assert [row.product_id for row in data_manager.iter_products(workbook_with_product)] == ["P2"]


def test_sale_effective_cost_prefers_override():
    assert _sale().effective_cost == Decimal("6.50")
    assert _sale(new_cost=Decimal("8.00")).effective_cost == Decimal("8.00")


def test_deserialize_sale_keeps_blank_override_as_none():
    raw = ["S1", "P1", "Tin", 1, 5, 2, None, 3, "2025-01-01"]

    sale = data_manager.deserialize_sale(raw)

    assert sale.new_cost is None
    assert sale.sell_price == Decimal("5")


def test_deserialize_product_snaps_float_noise_to_cents():
    """Floats read back from Excel must not carry binary rounding residue."""

    raw = ["P1", "Tin", "Other", 2, 0.1, 0.30000000000000004, 0.6000000000000001, None, 3, "", ""]

    product = data_manager.deserialize_product(raw)

    assert product.unit_cost == Decimal("0.10")
    assert product.unit_price == Decimal("0.30")
    assert product.profit == Decimal("0.60")
