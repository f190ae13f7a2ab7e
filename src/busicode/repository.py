"""Workbook-backed store injected into the business logic layer.

The :class:`Repository` turns the flat worksheet rows produced by
:mod:`busicode.data_manager` into domain aggregates once, keeps them in
memory, and writes them back inside :meth:`Repository.transaction`. A
transaction is all-or-nothing: if anything raises before the workbook has
been written and saved, the in-memory aggregates and the worksheet rows are
restored to their state at the start of the transaction.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import CENTS, EntryType, SheetName
from .domain import (
    Company,
    LedgerEntry,
    MissingReferenceError,
    Product,
    SaleRecord,
    SchoolClass,
    Student,
    as_utc,
    parse_timestamp,
)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Repository:
    """In-memory aggregates mirrored to an ``openpyxl`` workbook."""

    def __init__(self, workbook: Workbook, *, data_file: Optional[Path] = None) -> None:
        self.workbook = workbook
        self.data_file = data_file
        self._classes: Dict[str, SchoolClass] = {}
        self._students: Dict[str, Student] = {}
        self._companies: Dict[str, Company] = {}
        self._products: Dict[str, Product] = {}
        self._in_transaction = False
        self.load()

    @classmethod
    def in_memory(cls) -> "Repository":
        """Create a repository over a blank workbook that is never saved."""

        return cls(data_manager.create_workbook())

    @classmethod
    def from_file(cls, data_file: Path) -> "Repository":
        """Open the workbook at ``data_file`` and load its aggregates."""

        workbook = data_manager.open_workbook(data_file)
        return cls(workbook, data_file=Path(data_file).expanduser().resolve())

    # -- loading ------------------------------------------------------------

    def load(self) -> None:
        """Rebuild every aggregate from the worksheet rows.

        Raises:
            ValueError: If rows reference unknown parents or hold values that
                cannot be parsed (corrupt workbook).
        """

        classes: Dict[str, SchoolClass] = {}
        for row in data_manager.iter_classes(self.workbook):
            classes[row.class_id] = SchoolClass(
                class_id=row.class_id,
                name=row.class_name,
                created_at=parse_timestamp(row.created_at_iso),
            )

        students: Dict[str, Student] = {}
        for row in data_manager.iter_students(self.workbook):
            students[row.student_id] = Student(
                student_id=row.student_id,
                name=row.student_name,
                class_id=row.class_id,
                initial_balance=row.initial_balance.quantize(CENTS),
                current_balance=row.current_balance.quantize(CENTS),
                created_at=parse_timestamp(row.created_at_iso),
            )

        companies: Dict[str, Company] = {}
        for row in data_manager.iter_companies(self.workbook):
            companies[row.company_id] = Company(
                company_id=row.company_id,
                name=row.company_name,
                class_id=row.class_id,
                initial_budget=row.initial_budget.quantize(CENTS),
                created_at=parse_timestamp(row.created_at_iso),
            )

        for row in data_manager.iter_members(self.workbook):
            company = companies.get(row.company_id)
            if company is None:
                raise ValueError(f"Membership row references unknown company '{row.company_id}'")
            if row.is_member:
                company.member_ids.append(row.student_id)
            if row.contribution:
                company.contributions[row.student_id] = row.contribution.quantize(CENTS)

        for row in data_manager.iter_ledger_entries(self.workbook):
            company = companies.get(row.company_id)
            if company is None:
                raise ValueError(f"Ledger entry '{row.entry_id}' references unknown company '{row.company_id}'")
            company.restore_entry(
                LedgerEntry(
                    entry_id=row.entry_id,
                    company_id=row.company_id,
                    entry_type=EntryType(row.entry_type),
                    description=row.description,
                    amount=row.amount.quantize(CENTS),
                    date=as_utc(datetime.fromisoformat(row.entry_date_iso)),
                    sequence=row.sequence,
                )
            )

        products: Dict[str, Product] = {}
        for row in data_manager.iter_products(self.workbook):
            if row.company_id not in companies:
                raise ValueError(f"Product '{row.product_id}' references unknown company '{row.company_id}'")
            products[row.product_id] = Product(
                product_id=row.product_id,
                company_id=row.company_id,
                name=row.product_name,
                price=row.price.quantize(CENTS),
                sales=row.sales_count,
                total=row.total_revenue.quantize(CENTS),
                launched_at=parse_timestamp(row.launched_at_iso),
            )

        for row in data_manager.iter_sales(self.workbook):
            product = products.get(row.product_id)
            if product is None:
                raise ValueError(f"Sale '{row.sale_id}' references unknown product '{row.product_id}'")
            product.sale_records.append(
                SaleRecord(
                    sale_id=row.sale_id,
                    product_id=row.product_id,
                    quantity=row.quantity,
                    unit_price=row.unit_price.quantize(CENTS),
                    total_amount=row.total_amount.quantize(CENTS),
                    sale_date=as_utc(datetime.fromisoformat(row.sale_date_iso)),
                )
            )

        self._classes = classes
        self._students = students
        self._companies = companies
        self._products = products
        log.debug(
            "Loaded %d classes, %d students, %d companies, %d products",
            len(classes),
            len(students),
            len(companies),
            len(products),
        )

    # -- lookups ------------------------------------------------------------

    def get_class(self, class_id: str) -> SchoolClass:
        try:
            return self._classes[class_id]
        except KeyError as exc:
            log.warning("Class lookup failed for id '%s'", class_id)
            raise MissingReferenceError(f"Unknown class id: {class_id}") from exc

    def get_student(self, student_id: str) -> Student:
        try:
            return self._students[student_id]
        except KeyError as exc:
            log.warning("Student lookup failed for id '%s'", student_id)
            raise MissingReferenceError(f"Unknown student id: {student_id}") from exc

    def get_company(self, company_id: str) -> Company:
        try:
            return self._companies[company_id]
        except KeyError as exc:
            log.warning("Company lookup failed for id '%s'", company_id)
            raise MissingReferenceError(f"Unknown company id: {company_id}") from exc

    def get_product(self, product_id: str) -> Product:
        try:
            return self._products[product_id]
        except KeyError as exc:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise MissingReferenceError(f"Unknown product id: {product_id}") from exc

    def list_classes(self) -> List[SchoolClass]:
        return list(self._classes.values())

    def list_students(self, class_id: Optional[str] = None) -> List[Student]:
        return [s for s in self._students.values() if class_id is None or s.class_id == class_id]

    def list_companies(self, class_id: Optional[str] = None) -> List[Company]:
        return [c for c in self._companies.values() if class_id is None or c.class_id == class_id]

    def list_products(self, company_id: Optional[str] = None) -> List[Product]:
        return [p for p in self._products.values() if company_id is None or p.company_id == company_id]

    # -- mutations (callers wrap these in ``transaction``) ------------------

    def add_class(self, school_class: SchoolClass) -> None:
        self._classes[school_class.class_id] = school_class

    def add_student(self, student: Student) -> None:
        self._students[student.student_id] = student

    def add_company(self, company: Company) -> None:
        self._companies[company.company_id] = company

    def add_product(self, product: Product) -> None:
        self._products[product.product_id] = product

    def remove_class(self, class_id: str) -> SchoolClass:
        school_class = self.get_class(class_id)
        del self._classes[class_id]
        return school_class

    def remove_student(self, student_id: str) -> Student:
        student = self.get_student(student_id)
        del self._students[student_id]
        return student

    def remove_company(self, company_id: str) -> Company:
        company = self.get_company(company_id)
        del self._companies[company_id]
        return company

    def remove_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        del self._products[product_id]
        return product

    def clear(self) -> None:
        """Drop every aggregate; used when restoring a snapshot."""

        self._classes = {}
        self._students = {}
        self._companies = {}
        self._products = {}

    # -- unit of work -------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["Repository"]:
        """Run a block of mutations as one unit.

        Nested calls join the outermost transaction. On success the workbook
        is rewritten and, for file-backed repositories, saved. On any
        exception the aggregates are restored, the worksheets rewritten from
        the restored state, and the exception re-raised.
        """

        if self._in_transaction:
            yield self
            return

        saved = copy.deepcopy((self._classes, self._students, self._companies, self._products))
        self._in_transaction = True
        try:
            yield self
            self.flush()
        except Exception:
            self._classes, self._students, self._companies, self._products = saved
            self._write_sheets()
            log.warning("Transaction rolled back")
            raise
        finally:
            self._in_transaction = False

    def flush(self, destination: Optional[Path] = None) -> None:
        """Write every aggregate to the workbook and save it.

        The workbook is saved to ``destination`` or, when omitted, to the
        repository's own data file. In-memory repositories without either are
        only written.
        """

        self._write_sheets()
        target = destination if destination is not None else self.data_file
        if target is not None:
            data_manager.save_workbook(self.workbook, target)
            log.info("Persisted workbook '%s'", target)

    def _write_sheets(self) -> None:
        wb = self.workbook
        data_manager.write_sheet(
            wb,
            SheetName.CLASSES.value,
            (
                data_manager.serialize_class(
                    data_manager.ClassRow(c.class_id, c.name, _format_timestamp(c.created_at))
                )
                for c in self._classes.values()
            ),
        )
        data_manager.write_sheet(
            wb,
            SheetName.STUDENTS.value,
            (
                data_manager.serialize_student(
                    data_manager.StudentRow(
                        student_id=s.student_id,
                        student_name=s.name,
                        class_id=s.class_id,
                        initial_balance=s.initial_balance,
                        current_balance=s.current_balance,
                        created_at_iso=_format_timestamp(s.created_at),
                    )
                )
                for s in self._students.values()
            ),
        )
        data_manager.write_sheet(
            wb,
            SheetName.COMPANIES.value,
            (
                data_manager.serialize_company(
                    data_manager.CompanyRow(
                        company_id=c.company_id,
                        company_name=c.name,
                        class_id=c.class_id,
                        initial_budget=c.initial_budget,
                        created_at_iso=_format_timestamp(c.created_at),
                    )
                )
                for c in self._companies.values()
            ),
        )
        data_manager.write_sheet(wb, SheetName.COMPANY_MEMBERS.value, self._member_rows())
        data_manager.write_sheet(
            wb,
            SheetName.LEDGER_ENTRIES.value,
            (
                data_manager.serialize_ledger_entry(
                    data_manager.LedgerEntryRow(
                        entry_id=e.entry_id,
                        company_id=e.company_id,
                        entry_type=e.entry_type.value,
                        description=e.description,
                        amount=e.amount,
                        entry_date_iso=e.date.isoformat(),
                        sequence=e.sequence,
                    )
                )
                for c in self._companies.values()
                for e in c.entries
            ),
        )
        data_manager.write_sheet(
            wb,
            SheetName.PRODUCTS.value,
            (
                data_manager.serialize_product(
                    data_manager.ProductRow(
                        product_id=p.product_id,
                        company_id=p.company_id,
                        product_name=p.name,
                        price=p.price,
                        sales_count=p.sales,
                        total_revenue=p.total,
                        launched_at_iso=_format_timestamp(p.launched_at),
                    )
                )
                for p in self._products.values()
            ),
        )
        data_manager.write_sheet(
            wb,
            SheetName.PRODUCT_SALES.value,
            (
                data_manager.serialize_sale(
                    data_manager.SaleRow(
                        sale_id=r.sale_id,
                        product_id=r.product_id,
                        quantity=r.quantity,
                        unit_price=r.unit_price,
                        total_amount=r.total_amount,
                        sale_date_iso=r.sale_date.isoformat(),
                    )
                )
                for p in self._products.values()
                for r in p.sale_records
            ),
        )

    def _member_rows(self) -> Iterator[list[object]]:
        for company in self._companies.values():
            student_ids = list(company.member_ids)
            student_ids += [sid for sid in company.contributions if sid not in company.member_ids]
            for student_id in student_ids:
                yield data_manager.serialize_member(
                    data_manager.MemberRow(
                        company_id=company.company_id,
                        student_id=student_id,
                        contribution=company.contribution_of(student_id),
                        is_member=company.is_member(student_id),
                    )
                )
