"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import asyncio
import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from stock_ledger import constants, data_manager
from stock_ledger.constants import ActivityType, CostField, ProductType, SheetName
from stock_ledger.domain import Activity, ActivityCommand, ActivityPatch, MonthlyCost, Product
from stock_ledger.errors import NotFoundError, StoreError
from stock_ledger.setup_excel import build_master_workbook, create_master_workbook
from stock_ledger import setup_excel


def _command(**overrides) -> ActivityCommand:
    values = {
        "date": "2025-01-27T14:00:00.000Z",
        "activity_type": ActivityType.SALE,
        "quantity": Decimal("-2"),
        "amount": Decimal("40"),
        "product_id": "P1",
    }
    values.update(overrides)
    return ActivityCommand(**values)


def _product(product_id: str = "P1", stock: str = "10") -> Product:
    return Product(
        product_id=product_id,
        unit_cost=Decimal("10"),
        sale_price=Decimal("20"),
        stock=Decimal(stock),
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile=ledger.xlsx\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_path


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Discovery should fail loudly when no config.ini is found."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should expose the System and Defaults sections."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "SchemaVersion") == constants.EXPECTED_SCHEMA_VERSION
    assert parser.getint("Defaults", "PageSize") == constants.DEFAULT_PAGE_SIZE


def test_read_config_missing_file_raises(tmp_path):
    """A missing configuration file should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, low_stock_threshold=3, page_size=50)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.low_stock_threshold == 3
    assert settings.page_size == 50


def test_parse_settings_defaults_section_is_optional(tmp_path):
    """The Defaults section may be left out entirely."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\nSchemaVersion = 2.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.data_file == (tmp_path / "ledger.xlsx").resolve()
    assert settings.low_stock_threshold == constants.DEFAULT_LOW_STOCK_THRESHOLD
    assert settings.page_size == constants.DEFAULT_PAGE_SIZE


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\n")
    with pytest.raises(KeyError, match="SchemaVersion|schemaversion"):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should return a workbook with every ledger sheet."""

    wb = data_manager.open_workbook(master_workbook_path)
    assert isinstance(wb, OpenpyxlWorkbook)
    assert set(wb.sheetnames) == set(data_manager.SHEET_COLUMNS)


def test_open_workbook_missing_file_raises(tmp_path):
    """A missing workbook should raise FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_creates_parent_directories(workbook, tmp_path):
    """Saving should create missing parent directories."""

    destination = tmp_path / "nested" / "copy.xlsx"
    data_manager.get_sheet(workbook, SheetName.PRODUCTS.value).append(data_manager.serialize_product(_product()))

    data_manager.save_workbook(workbook, destination)

    reloaded = openpyxl.load_workbook(destination)
    assert reloaded[SheetName.PRODUCTS.value].cell(row=2, column=1).value == "P1"


def test_get_sheet_missing_raises_store_error():
    """A missing sheet should be reported as a store error."""

    wb = openpyxl.Workbook()
    with pytest.raises(StoreError, match="Activities"):
        data_manager.get_sheet(wb, SheetName.ACTIVITIES.value)


def test_locate_row_and_unknown_column(workbook):
    """locate_row should find rows by column value and reject unknown columns."""

    sheet = data_manager.get_sheet(workbook, SheetName.PRODUCTS.value)
    sheet.append(data_manager.serialize_product(_product("P1")))
    sheet.append(data_manager.serialize_product(_product("P2")))

    assert data_manager.locate_row(workbook, SheetName.PRODUCTS.value, "ProductID", "P2") == 3
    assert data_manager.locate_row(workbook, SheetName.PRODUCTS.value, "ProductID", "P9") is None
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, SheetName.PRODUCTS.value, "Colour", "red")


def test_setup_excel_writes_bold_headers(master_workbook_path):
    """Every generated sheet should start with its bold header row."""

    wb = openpyxl.load_workbook(master_workbook_path)
    for sheet_name, columns in data_manager.SHEET_COLUMNS.items():
        header = [cell.value for cell in wb[sheet_name][1]]
        assert header == list(columns)
        assert wb[sheet_name].cell(row=1, column=1).font.bold
    assert "Sheet" not in build_master_workbook().sheetnames


def test_create_master_workbook_refuses_to_overwrite(master_workbook_path):
    """The master workbook is only replaced when overwrite is requested."""

    with pytest.raises(FileExistsError):
        create_master_workbook(master_workbook_path)
    assert create_master_workbook(master_workbook_path, overwrite=True) == master_workbook_path.resolve()


def test_setup_excel_main_reports_existing_file(master_workbook_path, capsys):
    """The setup command should refuse an existing file unless forced."""

    assert setup_excel.main([str(master_workbook_path)]) == 1
    assert "already exists" in capsys.readouterr().out
    assert setup_excel.main([str(master_workbook_path), "--force"]) == 0


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def test_activity_row_round_trip_keeps_blank_product():
    """An activity without a product should survive a row round trip."""

    activity = Activity(
        activity_id="A1",
        date="2025-01-01T00:00:00Z",
        activity_type=ActivityType.OTHER,
        product_id=None,
        quantity=Decimal("0"),
        amount=Decimal("12.5"),
        note="packaging",
    )
    assert data_manager.serialize_activity(activity)[2] == "OTHER"
    assert data_manager.deserialize_activity(data_manager.serialize_activity(activity)) == activity


def test_deserialize_activity_rejects_unknown_type():
    """Rows with an unknown activity type should be rejected."""

    with pytest.raises(StoreError, match="unknown type"):
        data_manager.deserialize_activity(["A1", "2025-01-01T00:00:00Z", "REFUND", "P1", 1, 1, None])


def test_deserialize_product_treats_blank_weight_as_missing():
    """Blank optional product cells should read back as None."""

    product = data_manager.deserialize_product(["P1", None, "", 10, 19.9, 3, None, "Pouch"])
    assert product.weight is None
    assert product.coloris_id is None
    assert product.sale_price == Decimal("19.9")
    assert product.name == "Pouch"


def test_deserialize_rejects_non_numeric_cells():
    """Non-numeric cells in numeric columns should be rejected."""

    with pytest.raises(StoreError, match="Invalid numeric cell value"):
        data_manager.deserialize_product(["P1", None, None, "ten", 20, 0, None, None])


# ---------------------------------------------------------------------------
# Activity store
# ---------------------------------------------------------------------------


async def test_activity_store_create_assigns_id_and_appends(workbook):
    """Created activities should get an id and be appended to the sheet."""

    store = data_manager.WorkbookActivityStore(workbook)

    created = await store.create(_command(note="first"))

    assert created.activity_id
    assert await store.get_by_id(created.activity_id) == created
    assert await store.list() == [created]


async def test_activity_store_update_writes_only_patched_columns(workbook):
    """Updates should only touch the columns named in the patch."""

    store = data_manager.WorkbookActivityStore(workbook)
    created = await store.create(_command(note="keep"))

    updated = await store.update(
        created.activity_id,
        ActivityPatch(quantity=Decimal("-5"), activity_type=ActivityType.STOCK_CORRECTION),
    )

    assert updated.quantity == Decimal("-5")
    assert updated.activity_type is ActivityType.STOCK_CORRECTION
    assert updated.note == "keep"
    assert updated.amount == created.amount


async def test_activity_store_update_can_clear_fields(workbook):
    """Fields set to None should be blanked in the sheet."""

    store = data_manager.WorkbookActivityStore(workbook)
    created = await store.create(_command(activity_type=ActivityType.CREATION, note="x"))

    updated = await store.update(created.activity_id, ActivityPatch(product_id=None, note=None))

    assert updated.product_id is None
    assert updated.note is None
    row = data_manager.locate_row(workbook, SheetName.ACTIVITIES.value, "ActivityID", created.activity_id)
    assert workbook[SheetName.ACTIVITIES.value].cell(row=row, column=4).value is None


async def test_activity_store_missing_rows(workbook):
    """Unknown activity ids should read as None and fail on write."""

    store = data_manager.WorkbookActivityStore(workbook)

    assert await store.get_by_id("nope") is None
    with pytest.raises(NotFoundError, match="Activity with id nope not found"):
        await store.update("nope", ActivityPatch(note="x"))
    with pytest.raises(NotFoundError):
        await store.delete("nope")


async def test_activity_store_delete_removes_row(workbook):
    """Deleting an activity should remove its row."""

    store = data_manager.WorkbookActivityStore(workbook)
    first = await store.create(_command())
    second = await store.create(_command(amount=Decimal("5")))

    await store.delete(first.activity_id)

    assert await store.get_by_id(first.activity_id) is None
    assert await store.list() == [second]


# ---------------------------------------------------------------------------
# Product store
# ---------------------------------------------------------------------------


async def test_product_store_create_and_lookup(workbook):
    """Products should be stored by id, generating one when it is blank."""

    store = data_manager.WorkbookProductStore(workbook)

    created = await store.create(_product("P1"))
    generated = await store.create(_product(""))

    assert await store.get_by_id("P1") == created
    assert generated.product_id
    assert [product.product_id for product in await store.list()] == ["P1", generated.product_id]
    assert await store.get_by_id("P9") is None


async def test_product_store_rejects_duplicate_ids(workbook):
    """Product ids must be unique."""

    store = data_manager.WorkbookProductStore(workbook)
    await store.create(_product("P1"))
    with pytest.raises(StoreError, match="already exists"):
        await store.create(_product("P1"))


async def test_product_store_update_fields(workbook):
    """Product updates should write known columns only."""

    store = data_manager.WorkbookProductStore(workbook)
    await store.create(_product("P1"))

    updated = await store.update("P1", {"sale_price": Decimal("25"), "name": "Trousse"})

    assert updated.sale_price == Decimal("25")
    assert updated.name == "Trousse"
    with pytest.raises(KeyError):
        await store.update("P1", {"colour": "red"})
    with pytest.raises(NotFoundError):
        await store.update("P9", {"name": "x"})


async def test_update_stock_atomically_adds_and_clamps(workbook):
    """Stock deltas should add to the cached stock and clamp at zero."""

    store = data_manager.WorkbookProductStore(workbook)
    await store.create(_product("P1", stock="3"))

    assert await store.update_stock_atomically("P1", Decimal("2")) == Decimal("5")
    assert await store.update_stock_atomically("P1", Decimal("-8")) == Decimal("0")
    assert (await store.get_by_id("P1")).stock == Decimal("0")


async def test_update_stock_atomically_missing_product(workbook):
    """Adding stock to an unknown product should raise."""

    store = data_manager.WorkbookProductStore(workbook)
    with pytest.raises(NotFoundError, match="Product with id P9 not found"):
        await store.update_stock_atomically("P9", Decimal("1"))


async def test_update_stock_atomically_under_concurrency(workbook):
    """Concurrent deltas must all land; none may be lost to interleaving."""

    store = data_manager.WorkbookProductStore(workbook)
    await store.create(_product("P1", stock="0"))

    await asyncio.gather(*(store.update_stock_atomically("P1", Decimal("1")) for _ in range(50)))
    await asyncio.gather(*(store.update_stock_atomically("P1", Decimal("-1")) for _ in range(20)))

    assert (await store.get_by_id("P1")).stock == Decimal("30")


async def test_product_store_reads_models_and_coloris(workbook):
    """Models and coloris should be looked up by id."""

    workbook[SheetName.MODELS.value].append(["M1", "TROUSSE_ZIPPEE", "Zip"])
    workbook[SheetName.COLORIS.value].append(["C1", "M1", "Indigo"])
    store = data_manager.WorkbookProductStore(workbook)

    model = await store.get_model_by_id("M1")
    coloris = await store.get_coloris_by_id("C1")

    assert model.product_type is ProductType.TROUSSE_ZIPPEE
    assert model.name == "Zip"
    assert (coloris.model_id, coloris.coloris) == ("M1", "Indigo")
    assert await store.get_model_by_id("M9") is None
    assert await store.get_coloris_by_id("C9") is None


# ---------------------------------------------------------------------------
# Cost store
# ---------------------------------------------------------------------------


async def test_cost_store_upserts_one_row_per_month(workbook):
    """Saving the same month twice should update a single row."""

    store = data_manager.WorkbookCostStore(workbook)

    first = await store.create_or_update_monthly_cost(
        MonthlyCost("2025-01", Decimal("1"), Decimal("2"), Decimal("3"))
    )
    second = await store.create_or_update_monthly_cost(
        MonthlyCost("2025-01", Decimal("4"), Decimal("5"), Decimal("6"))
    )

    assert first.cost_id == second.cost_id
    assert (second.shipping_cost, second.marketing_cost, second.overhead_cost) == (
        Decimal("4"),
        Decimal("5"),
        Decimal("6"),
    )
    assert len(list(data_manager.iter_rows(workbook, SheetName.MONTHLY_COSTS.value))) == 1


async def test_cost_store_field_update_creates_missing_month(workbook):
    """Updating one field of a missing month should create the row."""

    store = data_manager.WorkbookCostStore(workbook)

    created = await store.update_monthly_cost_field("2025-02", CostField.MARKETING, Decimal("9"))
    updated = await store.update_monthly_cost_field("2025-02", CostField.SHIPPING, Decimal("2"))

    assert created.marketing_cost == Decimal("9")
    assert created.shipping_cost == Decimal("0")
    assert (updated.shipping_cost, updated.marketing_cost) == (Decimal("2"), Decimal("9"))
    assert await store.get_monthly_cost("2025-02") == updated
    assert await store.get_monthly_cost("2025-03") is None
