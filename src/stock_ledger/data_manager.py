"""Data access layer for the stock ledger.

This module reads from and writes to the master workbook and provides the
workbook-backed implementations of the store contracts declared in
:mod:`stock_ledger.ports`. Business rules belong elsewhere.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Store adapters: ``WorkbookActivityStore``, ``WorkbookProductStore`` and
   ``WorkbookCostStore``, which translate between sheet rows and domain
   records.
"""


from __future__ import annotations

import asyncio
import configparser
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    DEFAULT_LOW_STOCK_THRESHOLD,
    DEFAULT_PAGE_SIZE,
    ActivityType,
    CostField,
    ProductType,
    SheetName,
)
from .domain import (
    ZERO,
    Activity,
    ActivityCommand,
    ActivityPatch,
    MonthlyCost,
    Product,
    ProductColoris,
    ProductModel,
)
from .errors import NotFoundError, StoreError


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.ACTIVITIES.value: [
        "ActivityID",
        "Date",
        "Type",
        "ProductID",
        "Quantity",
        "Amount",
        "Note",
    ],
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ModelID",
        "ColorisID",
        "UnitCost",
        "SalePrice",
        "Stock",
        "Weight",
        "Name",
    ],
    SheetName.MODELS.value: ["ModelID", "ProductType", "Name"],
    SheetName.COLORIS.value: ["ColorisID", "ModelID", "Coloris"],
    SheetName.MONTHLY_COSTS.value: [
        "CostID",
        "Month",
        "ShippingCost",
        "MarketingCost",
        "OverheadCost",
    ],
}

ACTIVITY_COLUMNS: Mapping[str, str] = {
    "date": "Date",
    "activity_type": "Type",
    "product_id": "ProductID",
    "quantity": "Quantity",
    "amount": "Amount",
    "note": "Note",
}

PRODUCT_COLUMNS: Mapping[str, str] = {
    "model_id": "ModelID",
    "coloris_id": "ColorisID",
    "unit_cost": "UnitCost",
    "sale_price": "SalePrice",
    "stock": "Stock",
    "weight": "Weight",
    "name": "Name",
}

COST_COLUMNS: Mapping[CostField, str] = {
    CostField.SHIPPING: "ShippingCost",
    CostField.MARKETING: "MarketingCost",
    CostField.OVERHEAD: "OverheadCost",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    page_size: int = DEFAULT_PAGE_SIZE


def generate_id() -> str:
    """Return a new opaque record identifier."""

    return str(uuid.uuid4())


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate ``config.ini``.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory and returns the first match.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` into a ``ConfigParser``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into :class:`ConfigSettings`.

    ``[System] DataFile`` and ``SchemaVersion`` are mandatory. The
    ``[Defaults]`` section is optional; missing entries fall back to the
    package defaults. A relative ``DataFile`` is anchored at ``base_path``
    (or the working directory) and resolved.

    Raises:
        KeyError: If a mandatory entry is missing.
        ValueError: If a ``[Defaults]`` entry is not an integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    low_stock_threshold = parser.getint(
        "Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD
    )
    page_size = parser.getint("Defaults", "PageSize", fallback=DEFAULT_PAGE_SIZE)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        low_stock_threshold=low_stock_threshold,
        page_size=page_size,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return ``sheet_name`` or raise :class:`StoreError` when it is missing."""

    try:
        return workbook[sheet_name]
    except KeyError as exc:
        raise StoreError(f"Workbook is missing the '{sheet_name}' sheet") from exc


def header_map(sheet: Worksheet) -> Dict[str, int]:
    """Map header titles to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    """Yield non-empty data rows of ``sheet_name``, header excluded."""

    sheet = get_sheet(workbook, sheet_name)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield raw


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Return the 1-based index of the first row whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the header.
    """

    sheet = get_sheet(workbook, sheet_name)
    columns = header_map(sheet)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_index = columns[key_column] - 1
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_index] is not None and str(row[key_index]) == key_value:
            return row_idx

    return None


def write_cells(workbook: Workbook, sheet_name: str, row_index: int, values: Mapping[str, Any]) -> None:
    """Write ``values`` (header title -> cell value) into one row."""

    sheet = get_sheet(workbook, sheet_name)
    columns = header_map(sheet)
    for column, value in values.items():
        if column not in columns:
            raise KeyError(f"Unknown column: {column}")
        sheet.cell(row=row_index, column=columns[column]).value = value


def read_row(workbook: Workbook, sheet_name: str, row_index: int) -> tuple:
    sheet = get_sheet(workbook, sheet_name)
    width = len(SHEET_COLUMNS[sheet_name])
    return tuple(sheet.cell(row=row_index, column=col).value for col in range(1, width + 1))


def _decimal(raw: object, default: Optional[Decimal] = ZERO) -> Optional[Decimal]:
    if raw is None or raw == "":
        return default
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise StoreError(f"Invalid numeric cell value: {raw!r}") from exc


def _text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _cell_value(value: Any) -> Any:
    """Convert domain values into something openpyxl can store."""

    if isinstance(value, (ActivityType, ProductType)):
        return value.value
    return value


def serialize_activity(record: Activity) -> list[object]:
    """Arrange an activity in the ``Activities`` column order."""

    return [
        record.activity_id,
        record.date,
        record.activity_type.value,
        record.product_id,
        record.quantity,
        record.amount,
        record.note,
    ]


def deserialize_activity(raw_row: Sequence[object]) -> Activity:
    """Convert a raw ``Activities`` row into an :class:`Activity`."""

    activity_id, date, type_raw, product_id, quantity, amount, note = raw_row[:7]
    try:
        activity_type = ActivityType(str(type_raw))
    except ValueError as exc:
        raise StoreError(f"Activity {activity_id} has unknown type {type_raw!r}") from exc
    return Activity(
        activity_id=str(activity_id),
        date=str(date) if date is not None else "",
        activity_type=activity_type,
        product_id=_text(product_id),
        quantity=_decimal(quantity),
        amount=_decimal(amount),
        note=_text(note),
    )


def serialize_product(record: Product) -> list[object]:
    return [
        record.product_id,
        record.model_id,
        record.coloris_id,
        record.unit_cost,
        record.sale_price,
        record.stock,
        record.weight,
        record.name,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    product_id, model_id, coloris_id, unit_cost, sale_price, stock, weight, name = raw_row[:8]
    return Product(
        product_id=str(product_id),
        model_id=_text(model_id),
        coloris_id=_text(coloris_id),
        unit_cost=_decimal(unit_cost),
        sale_price=_decimal(sale_price),
        stock=_decimal(stock),
        weight=_decimal(weight, default=None),
        name=_text(name),
    )


def deserialize_model(raw_row: Sequence[object]) -> ProductModel:
    model_id, product_type, name = raw_row[:3]
    return ProductModel(
        model_id=str(model_id),
        product_type=ProductType(str(product_type)),
        name=str(name) if name is not None else "",
    )


def deserialize_coloris(raw_row: Sequence[object]) -> ProductColoris:
    coloris_id, model_id, coloris = raw_row[:3]
    return ProductColoris(
        coloris_id=str(coloris_id),
        model_id=str(model_id),
        coloris=str(coloris) if coloris is not None else "",
    )


def serialize_monthly_cost(record: MonthlyCost) -> list[object]:
    return [
        record.cost_id,
        record.month,
        record.shipping_cost,
        record.marketing_cost,
        record.overhead_cost,
    ]


def deserialize_monthly_cost(raw_row: Sequence[object]) -> MonthlyCost:
    cost_id, month, shipping, marketing, overhead = raw_row[:5]
    return MonthlyCost(
        cost_id=_text(cost_id),
        month=str(month),
        shipping_cost=_decimal(shipping),
        marketing_cost=_decimal(marketing),
        overhead_cost=_decimal(overhead),
    )


class WorkbookActivityStore:
    """Activity ledger kept on the ``Activities`` sheet."""

    sheet_name = SheetName.ACTIVITIES.value

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def _require_row(self, activity_id: str) -> int:
        row_index = locate_row(self.workbook, self.sheet_name, "ActivityID", activity_id)
        if row_index is None:
            raise NotFoundError("Activity", activity_id)
        return row_index

    async def create(self, command: ActivityCommand) -> Activity:
        activity = Activity(
            activity_id=generate_id(),
            date=command.date,
            activity_type=ActivityType(command.activity_type),
            product_id=command.product_id,
            quantity=command.quantity,
            amount=command.amount,
            note=command.note,
        )
        get_sheet(self.workbook, self.sheet_name).append(serialize_activity(activity))
        log.debug("Appended activity row '%s'", activity.activity_id)
        return activity

    async def get_by_id(self, activity_id: str) -> Optional[Activity]:
        row_index = locate_row(self.workbook, self.sheet_name, "ActivityID", activity_id)
        if row_index is None:
            return None
        return deserialize_activity(read_row(self.workbook, self.sheet_name, row_index))

    async def update(self, activity_id: str, patch: ActivityPatch) -> Activity:
        row_index = self._require_row(activity_id)
        values = {ACTIVITY_COLUMNS[name]: _cell_value(value) for name, value in patch.items()}
        write_cells(self.workbook, self.sheet_name, row_index, values)
        return deserialize_activity(read_row(self.workbook, self.sheet_name, row_index))

    async def delete(self, activity_id: str) -> None:
        row_index = self._require_row(activity_id)
        get_sheet(self.workbook, self.sheet_name).delete_rows(row_index)
        log.debug("Deleted activity row '%s'", activity_id)

    async def list(self) -> List[Activity]:
        return [deserialize_activity(raw) for raw in iter_rows(self.workbook, self.sheet_name)]


class WorkbookProductStore:
    """Products, models and coloris kept on their own sheets.

    Stock updates are serialized through an :class:`asyncio.Lock`, which makes
    the clamped add a single step for every coroutine sharing this store.
    """

    sheet_name = SheetName.PRODUCTS.value

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._stock_lock = asyncio.Lock()

    def _require_row(self, product_id: str) -> int:
        row_index = locate_row(self.workbook, self.sheet_name, "ProductID", product_id)
        if row_index is None:
            raise NotFoundError("Product", product_id)
        return row_index

    async def get_by_id(self, product_id: str) -> Optional[Product]:
        row_index = locate_row(self.workbook, self.sheet_name, "ProductID", product_id)
        if row_index is None:
            return None
        return deserialize_product(read_row(self.workbook, self.sheet_name, row_index))

    async def list(self) -> List[Product]:
        return [deserialize_product(raw) for raw in iter_rows(self.workbook, self.sheet_name)]

    async def create(self, product: Product) -> Product:
        if not product.product_id:
            product = replace(product, product_id=generate_id())
        if locate_row(self.workbook, self.sheet_name, "ProductID", product.product_id) is not None:
            raise StoreError(f"Product {product.product_id} already exists")
        get_sheet(self.workbook, self.sheet_name).append(serialize_product(product))
        return product

    async def update(self, product_id: str, fields: Mapping[str, Any]) -> Product:
        unknown = sorted(set(fields) - set(PRODUCT_COLUMNS))
        if unknown:
            raise KeyError(f"Unknown product field(s): {', '.join(unknown)}")
        row_index = self._require_row(product_id)
        values = {PRODUCT_COLUMNS[name]: value for name, value in fields.items()}
        write_cells(self.workbook, self.sheet_name, row_index, values)
        return deserialize_product(read_row(self.workbook, self.sheet_name, row_index))

    async def update_stock_atomically(self, product_id: str, delta: Decimal) -> Decimal:
        async with self._stock_lock:
            row_index = self._require_row(product_id)
            current = deserialize_product(read_row(self.workbook, self.sheet_name, row_index)).stock
            new_stock = max(ZERO, current + Decimal(delta))
            write_cells(self.workbook, self.sheet_name, row_index, {"Stock": new_stock})
        log.debug("Stock for product '%s' moved %s -> %s", product_id, current, new_stock)
        return new_stock

    async def get_model_by_id(self, model_id: str) -> Optional[ProductModel]:
        sheet_name = SheetName.MODELS.value
        row_index = locate_row(self.workbook, sheet_name, "ModelID", model_id)
        if row_index is None:
            return None
        return deserialize_model(read_row(self.workbook, sheet_name, row_index))

    async def get_coloris_by_id(self, coloris_id: str) -> Optional[ProductColoris]:
        sheet_name = SheetName.COLORIS.value
        row_index = locate_row(self.workbook, sheet_name, "ColorisID", coloris_id)
        if row_index is None:
            return None
        return deserialize_coloris(read_row(self.workbook, sheet_name, row_index))


class WorkbookCostStore:
    """Monthly cost rows kept on the ``MonthlyCosts`` sheet, one per month."""

    sheet_name = SheetName.MONTHLY_COSTS.value

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._lock = asyncio.Lock()

    def _read(self, row_index: int) -> MonthlyCost:
        return deserialize_monthly_cost(read_row(self.workbook, self.sheet_name, row_index))

    def _upsert_row(self, month: str) -> int:
        row_index = locate_row(self.workbook, self.sheet_name, "Month", month)
        if row_index is None:
            sheet = get_sheet(self.workbook, self.sheet_name)
            sheet.append(serialize_monthly_cost(MonthlyCost(month=month, cost_id=generate_id())))
            row_index = sheet.max_row
        return row_index

    async def get_monthly_cost(self, month: str) -> Optional[MonthlyCost]:
        row_index = locate_row(self.workbook, self.sheet_name, "Month", month)
        if row_index is None:
            return None
        return self._read(row_index)

    async def create_or_update_monthly_cost(self, cost: MonthlyCost) -> MonthlyCost:
        async with self._lock:
            row_index = self._upsert_row(cost.month)
            write_cells(
                self.workbook,
                self.sheet_name,
                row_index,
                {
                    "ShippingCost": cost.shipping_cost,
                    "MarketingCost": cost.marketing_cost,
                    "OverheadCost": cost.overhead_cost,
                },
            )
            return self._read(row_index)

    async def update_monthly_cost_field(self, month: str, field: CostField, value: Decimal) -> MonthlyCost:
        async with self._lock:
            row_index = self._upsert_row(month)
            write_cells(self.workbook, self.sheet_name, row_index, {COST_COLUMNS[CostField(field)]: value})
            return self._read(row_index)
