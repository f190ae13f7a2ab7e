"""Data access layer for BusiCode.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: creating, opening, validating, and persisting the
   Excel file.
3. Sheet operations: loading structured records and rewriting a sheet from
   a sequence of records.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Sequence, TypeVar

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CURRENCY, ZERO, SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_DATA_FILE = "busicode.xlsx"

# Column layout of every sheet, in order. The first row of each sheet holds
# these headers.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CLASSES.value: ["ClassID", "ClassName", "CreatedAt"],
    SheetName.STUDENTS.value: [
        "StudentID",
        "StudentName",
        "ClassID",
        "InitialBalance",
        "CurrentBalance",
        "CreatedAt",
    ],
    SheetName.COMPANIES.value: [
        "CompanyID",
        "CompanyName",
        "ClassID",
        "InitialBudget",
        "CreatedAt",
    ],
    SheetName.COMPANY_MEMBERS.value: [
        "CompanyID",
        "StudentID",
        "Contribution",
        "IsMember",
    ],
    SheetName.LEDGER_ENTRIES.value: [
        "EntryID",
        "CompanyID",
        "EntryType",
        "Description",
        "Amount",
        "EntryDate",
        "Sequence",
    ],
    SheetName.PRODUCTS.value: [
        "ProductID",
        "CompanyID",
        "ProductName",
        "Price",
        "SalesCount",
        "TotalRevenue",
        "LaunchedAt",
    ],
    SheetName.PRODUCT_SALES.value: [
        "SaleID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "TotalAmount",
        "SaleDate",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    school_name: str
    schema_version: str
    currency: str = DEFAULT_CURRENCY
    default_initial_balance: Decimal = ZERO


@dataclass(frozen=True)
class ClassRow:
    """In-memory view of a row from the ``Classes`` sheet."""

    class_id: str
    class_name: str
    created_at_iso: Optional[str]


@dataclass(frozen=True)
class StudentRow:
    """In-memory view of a row from the ``Students`` sheet."""

    student_id: str
    student_name: str
    class_id: str
    initial_balance: Decimal
    current_balance: Decimal
    created_at_iso: Optional[str]


@dataclass(frozen=True)
class CompanyRow:
    """In-memory view of a row from the ``Companies`` sheet."""

    company_id: str
    company_name: str
    class_id: str
    initial_budget: Decimal
    created_at_iso: Optional[str]


@dataclass(frozen=True)
class MemberRow:
    """In-memory view of a row from the ``CompanyMembers`` sheet.

    Rows with ``is_member`` set to ``False`` record a past contributor who is
    no longer part of the company.
    """

    company_id: str
    student_id: str
    contribution: Decimal
    is_member: bool


@dataclass(frozen=True)
class LedgerEntryRow:
    """In-memory view of a row from the ``LedgerEntries`` sheet."""

    entry_id: str
    company_id: str
    entry_type: str
    description: str
    amount: Decimal
    entry_date_iso: str
    sequence: int


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    company_id: str
    product_name: str
    price: Decimal
    sales_count: int
    total_revenue: Decimal
    launched_at_iso: Optional[str]


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``ProductSales`` sheet."""

    sale_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    sale_date_iso: str


RowT = TypeVar("RowT")


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

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
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Validation of required entries happens in
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must define ``DataFile``, ``SchoolName`` and
    ``SchemaVersion``. The ``[Defaults]`` section is optional; ``Currency``
    falls back to ``R$`` and ``InitialBalance`` to zero. Relative data file
    paths are anchored at ``base_path`` (or the current working directory).

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If ``InitialBalance`` is not a valid non-negative number.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        school_name = parser.get("System", "SchoolName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    currency = parser.get("Defaults", "Currency", fallback=DEFAULT_CURRENCY)
    balance_raw = parser.get("Defaults", "InitialBalance", fallback="0")
    try:
        default_initial_balance = _decimal_or_zero(balance_raw)
    except InvalidOperation as exc:
        raise ValueError(f"InitialBalance is not a number: {balance_raw}") from exc
    if default_initial_balance < ZERO:
        raise ValueError(f"InitialBalance cannot be negative: {balance_raw}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        school_name=school_name,
        schema_version=schema_version,
        currency=currency,
        default_initial_balance=default_initial_balance,
    )


def create_workbook(sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS) -> Workbook:
    """Build an empty in-memory workbook with every sheet and bold headers."""

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font
    return workbook


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        ValueError: If a required sheet is missing from the workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    validate_workbook(wb)
    return wb


def validate_workbook(workbook: Workbook) -> None:
    """Ensure every sheet listed in :data:`SHEET_COLUMNS` exists."""

    missing = [name for name in SHEET_COLUMNS if name not in workbook.sheetnames]
    if missing:
        raise ValueError(f"Workbook is missing sheets: {', '.join(missing)}")


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str, deserialize: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    width = len(SHEET_COLUMNS[sheet_name])
    for raw in sheet.iter_rows(min_row=2, max_col=width, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize(raw)


def iter_classes(workbook: Workbook) -> Iterable[ClassRow]:
    """Iterate over class records stored on the ``Classes`` worksheet."""

    return _iter_sheet(workbook, SheetName.CLASSES.value, deserialize_class)


def iter_students(workbook: Workbook) -> Iterable[StudentRow]:
    """Iterate over student records stored on the ``Students`` worksheet."""

    return _iter_sheet(workbook, SheetName.STUDENTS.value, deserialize_student)


def iter_companies(workbook: Workbook) -> Iterable[CompanyRow]:
    """Iterate over company records stored on the ``Companies`` worksheet."""

    return _iter_sheet(workbook, SheetName.COMPANIES.value, deserialize_company)


def iter_members(workbook: Workbook) -> Iterable[MemberRow]:
    """Iterate over membership records stored on the ``CompanyMembers`` worksheet."""

    return _iter_sheet(workbook, SheetName.COMPANY_MEMBERS.value, deserialize_member)


def iter_ledger_entries(workbook: Workbook) -> Iterable[LedgerEntryRow]:
    """Stream ledger entries from the ``LedgerEntries`` worksheet."""

    return _iter_sheet(workbook, SheetName.LEDGER_ENTRIES.value, deserialize_ledger_entry)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet."""

    return _iter_sheet(workbook, SheetName.PRODUCTS.value, deserialize_product)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Iterate over sale records stored on the ``ProductSales`` worksheet."""

    return _iter_sheet(workbook, SheetName.PRODUCT_SALES.value, deserialize_sale)


def write_sheet(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> int:
    """Replace every data row of ``sheet_name`` with ``rows``.

    The header row is kept. Returns the number of rows written.

    Raises:
        KeyError: If ``sheet_name`` does not exist in the workbook.
    """

    if sheet_name not in workbook.sheetnames:
        raise KeyError(f"Unknown sheet: {sheet_name}")
    sheet = workbook[sheet_name]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    # append() would continue below the deleted rows.
    count = 0
    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)
        count += 1
    log.debug("Rewrote sheet '%s' with %d rows", sheet_name, count)
    return count


def serialize_class(record: ClassRow) -> list[object]:
    return [record.class_id, record.class_name, record.created_at_iso]


def serialize_student(record: StudentRow) -> list[object]:
    return [
        record.student_id,
        record.student_name,
        record.class_id,
        record.initial_balance,
        record.current_balance,
        record.created_at_iso,
    ]


def serialize_company(record: CompanyRow) -> list[object]:
    return [
        record.company_id,
        record.company_name,
        record.class_id,
        record.initial_budget,
        record.created_at_iso,
    ]


def serialize_member(record: MemberRow) -> list[object]:
    return [record.company_id, record.student_id, record.contribution, record.is_member]


def serialize_ledger_entry(record: LedgerEntryRow) -> list[object]:
    """Convert a ledger entry dataclass into the ``LedgerEntries`` column order.

    Amounts stay :class:`~decimal.Decimal` so Excel keeps their precision.
    """

    return [
        record.entry_id,
        record.company_id,
        record.entry_type,
        record.description,
        record.amount,
        record.entry_date_iso,
        record.sequence,
    ]


def serialize_product(record: ProductRow) -> list[object]:
    return [
        record.product_id,
        record.company_id,
        record.product_name,
        record.price,
        record.sales_count,
        record.total_revenue,
        record.launched_at_iso,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    return [
        record.sale_id,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.total_amount,
        record.sale_date_iso,
    ]


def _decimal_or_zero(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None and str(raw).strip() != "" else Decimal("0.00")


def _int_or_zero(raw: object) -> int:
    return int(Decimal(str(raw))) if raw is not None and str(raw).strip() != "" else 0


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def deserialize_class(raw_row: Sequence[object]) -> ClassRow:
    class_id, class_name, created_at = raw_row
    return ClassRow(
        class_id=str(class_id),
        class_name=str(class_name) if class_name is not None else "",
        created_at_iso=_optional_text(created_at),
    )


def deserialize_student(raw_row: Sequence[object]) -> StudentRow:
    """Convert a raw worksheet row into a strongly typed student record.

    Balances become :class:`~decimal.Decimal` instances and identifiers are
    coerced to ``str`` so numeric-looking ids typed into Excel still match.
    """

    student_id, student_name, class_id, initial_raw, current_raw, created_at = raw_row
    return StudentRow(
        student_id=str(student_id),
        student_name=str(student_name) if student_name is not None else "",
        class_id=str(class_id),
        initial_balance=_decimal_or_zero(initial_raw),
        current_balance=_decimal_or_zero(current_raw),
        created_at_iso=_optional_text(created_at),
    )


def deserialize_company(raw_row: Sequence[object]) -> CompanyRow:
    company_id, company_name, class_id, initial_raw, created_at = raw_row
    return CompanyRow(
        company_id=str(company_id),
        company_name=str(company_name) if company_name is not None else "",
        class_id=str(class_id),
        initial_budget=_decimal_or_zero(initial_raw),
        created_at_iso=_optional_text(created_at),
    )


def deserialize_member(raw_row: Sequence[object]) -> MemberRow:
    company_id, student_id, contribution_raw, is_member = raw_row
    return MemberRow(
        company_id=str(company_id),
        student_id=str(student_id),
        contribution=_decimal_or_zero(contribution_raw),
        is_member=bool(is_member),
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntryRow:
    """Convert a raw worksheet row into a strongly typed ledger entry record.

    Raises:
        ValueError: If the row has no entry date, since ledger history cannot
            be ordered without one.
    """

    entry_id, company_id, entry_type, description, amount_raw, entry_date, sequence_raw = raw_row
    if entry_date is None:
        raise ValueError(f"Ledger entry '{entry_id}' has no date")
    return LedgerEntryRow(
        entry_id=str(entry_id),
        company_id=str(company_id),
        entry_type=str(entry_type) if entry_type is not None else "",
        description=str(description) if description is not None else "",
        amount=_decimal_or_zero(amount_raw),
        entry_date_iso=str(entry_date),
        sequence=_int_or_zero(sequence_raw),
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    product_id, company_id, product_name, price_raw, sales_raw, total_raw, launched_at = raw_row
    return ProductRow(
        product_id=str(product_id),
        company_id=str(company_id),
        product_name=str(product_name) if product_name is not None else "",
        price=_decimal_or_zero(price_raw),
        sales_count=_int_or_zero(sales_raw),
        total_revenue=_decimal_or_zero(total_raw),
        launched_at_iso=_optional_text(launched_at),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    sale_id, product_id, quantity_raw, unit_raw, total_raw, sale_date = raw_row
    return SaleRow(
        sale_id=str(sale_id),
        product_id=str(product_id),
        quantity=_int_or_zero(quantity_raw),
        unit_price=_decimal_or_zero(unit_raw),
        total_amount=_decimal_or_zero(total_raw),
        sale_date_iso=str(sale_date) if sale_date is not None else "",
    )
