"""Domain aggregates for the classroom economy.

The objects in this module hold the financial state of a class: students
and their balances, companies with their ledgers and memberships, and the
products a company sells. They enforce the per-entity rules (positive
amounts, non-negative balances, append-only ledgers) and know nothing about
storage. Cross-entity coordination lives in :mod:`busicode.core_logic`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from . import log
from .constants import CENTS, DEFAULT_CURRENCY, ZERO, EntryType, ErrorKind


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT


class InvalidAmountError(BusinessRuleViolation):
    """Raised when a monetary value or unit count is non-numeric or not positive."""

    kind = ErrorKind.INVALID_AMOUNT


class InsufficientFundsError(BusinessRuleViolation):
    """Raised when a deduction exceeds the balance available to cover it."""

    kind = ErrorKind.INSUFFICIENT_FUNDS


class OverDistributionError(BusinessRuleViolation):
    """Raised when a profit distribution exceeds the company's current profit."""

    kind = ErrorKind.OVER_DISTRIBUTION


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced class, student, company, or product is unknown."""

    kind = ErrorKind.NOT_FOUND


def _now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware datetime, reading naive values as UTC."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse a stored ISO-8601 timestamp; naive values are taken as UTC."""

    return as_utc(datetime.fromisoformat(str(raw))) if raw else None


def _to_decimal(value: Any) -> Decimal:
    """Convert user input into a finite ``Decimal`` or raise ``InvalidAmountError``."""

    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        candidate = value
    else:
        text = str(value).strip().replace(",", ".")
        try:
            candidate = Decimal(text)
        except InvalidOperation as exc:
            raise InvalidAmountError(f"Invalid amount: {value!r}") from exc
    if not candidate.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    try:
        return candidate.quantize(CENTS)
    except InvalidOperation as exc:
        raise InvalidAmountError(f"Amount out of range: {value!r}") from exc


def parse_amount(value: Any) -> Decimal:
    """Parse a strictly positive monetary amount rounded to cents.

    Args:
        value (Any): ``Decimal``, ``int``, ``float`` or numeric string. A comma
            is accepted as decimal separator.

    Returns:
        Decimal: The amount quantized to two decimal places.

    Raises:
        InvalidAmountError: If ``value`` is not numeric or is zero/negative
            after rounding.
    """

    amount = _to_decimal(value)
    if amount <= ZERO:
        raise InvalidAmountError(f"Amount must be greater than zero (got {amount})")
    return amount


def parse_balance(value: Any) -> Decimal:
    """Parse a non-negative balance such as a student's initial balance."""

    amount = _to_decimal(value)
    if amount < ZERO:
        raise InvalidAmountError(f"Balance cannot be negative (got {amount})")
    return amount


def parse_units(value: Any) -> int:
    """Parse a strictly positive whole number of units sold."""

    if isinstance(value, bool) or value is None:
        raise InvalidAmountError(f"Invalid unit count: {value!r}")
    if isinstance(value, int):
        units = value
    else:
        try:
            candidate = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmountError(f"Invalid unit count: {value!r}") from exc
        if not candidate.is_finite() or candidate != candidate.to_integral_value():
            raise InvalidAmountError(f"Unit count must be a whole number: {value!r}")
        units = int(candidate)
    if units <= 0:
        raise InvalidAmountError(f"Unit count must be greater than zero (got {units})")
    return units


def format_money(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    """Render ``amount`` as ``"R$ 12.50"``."""

    return f"{currency} {amount.quantize(CENTS)}"


@dataclass
class SchoolClass:
    """A classroom grouping students and the companies they run."""

    class_id: str
    name: str
    created_at: Optional[datetime] = None


@dataclass
class Student:
    """A student account holding a personal cash balance.

    ``current_balance`` never goes negative: :meth:`deduct_balance` is the
    only way money leaves the account and it refuses any amount larger than
    the balance. Neither method notifies anyone; callers publish
    ``BalanceChanged`` events.
    """

    student_id: str
    name: str
    class_id: str
    initial_balance: Decimal = ZERO
    current_balance: Decimal = ZERO
    created_at: Optional[datetime] = None

    def add_balance(self, amount: Any) -> bool:
        try:
            value = parse_amount(amount)
        except InvalidAmountError:
            log.warning("Rejected credit of %r to student '%s'", amount, self.student_id)
            return False
        self.current_balance += value
        return True

    def deduct_balance(self, amount: Any) -> bool:
        try:
            value = parse_amount(amount)
        except InvalidAmountError:
            log.warning("Rejected debit of %r from student '%s'", amount, self.student_id)
            return False
        if value > self.current_balance:
            log.warning(
                "Rejected debit of %s from student '%s' (balance=%s)",
                value,
                self.student_id,
                self.current_balance,
            )
            return False
        self.current_balance -= value
        return True

    def can_afford(self, amount: Decimal) -> bool:
        return amount <= self.current_balance

    def reset_balance(self) -> None:
        """Restore the current balance to the initial balance."""

        self.current_balance = self.initial_balance

    def set_initial_balance(self, value: Any) -> None:
        """Replace the initial balance and reset the current balance to it."""

        balance = parse_balance(value)
        self.initial_balance = balance
        self.current_balance = balance


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable expense or revenue recorded in a company ledger."""

    entry_id: str
    company_id: str
    entry_type: EntryType
    description: str
    amount: Decimal
    date: datetime
    sequence: int

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.entry_type is EntryType.REVENUE else -self.amount

    def display_amount(self, currency: str = DEFAULT_CURRENCY) -> str:
        sign = "+" if self.entry_type is EntryType.REVENUE else "-"
        return f"{sign} {format_money(self.amount, currency)}"


@dataclass(frozen=True)
class HistoryItem:
    """One row of a company's activity history view."""

    entry_id: str
    entry_type: EntryType
    description: str
    amount: Decimal
    date: datetime
    display_amount: str


@dataclass
class Company:
    """A pooled-capital group of students with its own ledger.

    The ledger is append-only. Totals are recomputed from the entries on
    every call, so ``profit()`` (the cash available to spend or distribute)
    can never drift from the recorded history. ``member_ids`` is the current
    membership; ``contributions`` keeps every contribution ever made, even
    for students who later left the company.
    """

    company_id: str
    name: str
    class_id: str
    initial_budget: Decimal = ZERO
    created_at: Optional[datetime] = None
    member_ids: List[str] = field(default_factory=list)
    contributions: Dict[str, Decimal] = field(default_factory=dict)
    entries: List[LedgerEntry] = field(default_factory=list)

    # -- membership ---------------------------------------------------------

    def is_member(self, student_id: str) -> bool:
        return student_id in self.member_ids

    def add_member(self, student_id: str, contribution: Decimal = ZERO) -> None:
        if not student_id:
            raise BusinessRuleViolation("A student id is required")
        if self.is_member(student_id):
            raise BusinessRuleViolation(
                f"Student '{student_id}' is already a member of company '{self.name}'"
            )
        self.member_ids.append(student_id)
        if contribution > ZERO:
            self.contributions[student_id] = self.contributions.get(student_id, ZERO) + contribution

    def remove_member(self, student_id: str) -> bool:
        # Contributions already made stay on record.
        if not self.is_member(student_id):
            return False
        self.member_ids.remove(student_id)
        return True

    def replace_members(self, student_ids: Iterable[str]) -> None:
        unique: List[str] = []
        for student_id in student_ids:
            if student_id and student_id not in unique:
                unique.append(student_id)
        self.member_ids = unique

    def contribution_of(self, student_id: str) -> Decimal:
        return self.contributions.get(student_id, ZERO)

    # -- ledger -------------------------------------------------------------

    def _next_sequence(self) -> int:
        return max((entry.sequence for entry in self.entries), default=0) + 1

    def _append(
        self,
        entry_type: EntryType,
        description: str,
        amount: Any,
        date: Optional[datetime],
        entry_id: Optional[str],
    ) -> LedgerEntry:
        value = parse_amount(amount)
        sequence = self._next_sequence()
        entry = LedgerEntry(
            entry_id=entry_id or f"{self.company_id}-{sequence:05d}",
            company_id=self.company_id,
            entry_type=entry_type,
            description=(description or "").strip() or entry_type.value,
            amount=value,
            date=as_utc(date) if date is not None else _now(),
            sequence=sequence,
        )
        self.entries.append(entry)
        log.debug(
            "Appended %s entry #%d (%s) to company '%s'",
            entry_type.value,
            sequence,
            value,
            self.company_id,
        )
        return entry

    def add_expense(
        self,
        description: str,
        amount: Any,
        date: Optional[datetime] = None,
        *,
        entry_id: Optional[str] = None,
    ) -> LedgerEntry:
        return self._append(EntryType.EXPENSE, description, amount, date, entry_id)

    def add_revenue(
        self,
        description: str,
        amount: Any,
        date: Optional[datetime] = None,
        *,
        entry_id: Optional[str] = None,
    ) -> LedgerEntry:
        return self._append(EntryType.REVENUE, description, amount, date, entry_id)

    def restore_entry(self, entry: LedgerEntry) -> None:
        """Re-attach a persisted entry while loading from storage."""

        if entry.company_id != self.company_id:
            raise BusinessRuleViolation(
                f"Entry '{entry.entry_id}' belongs to company '{entry.company_id}'"
            )
        self.entries.append(entry)
        self.entries.sort(key=lambda item: item.sequence)

    @property
    def expenses(self) -> List[LedgerEntry]:
        return [entry for entry in self.entries if entry.entry_type is EntryType.EXPENSE]

    @property
    def revenues(self) -> List[LedgerEntry]:
        return [entry for entry in self.entries if entry.entry_type is EntryType.REVENUE]

    def total_expenses(self) -> Decimal:
        return sum((entry.amount for entry in self.expenses), ZERO)

    def total_revenues(self) -> Decimal:
        return sum((entry.amount for entry in self.revenues), ZERO)

    def profit(self) -> Decimal:
        return self.total_revenues() - self.total_expenses()

    @property
    def current_budget(self) -> Decimal:
        return self.profit()

    def activity_history(
        self,
        *,
        limit: Optional[int] = None,
        currency: str = DEFAULT_CURRENCY,
    ) -> List[HistoryItem]:
        """Return ledger entries newest-first with signed display amounts.

        Entries sharing a date are ordered by ledger sequence, latest first.
        """

        ordered = sorted(self.entries, key=lambda entry: (entry.date, entry.sequence), reverse=True)
        if limit is not None:
            ordered = ordered[: max(limit, 0)]
        return [
            HistoryItem(
                entry_id=entry.entry_id,
                entry_type=entry.entry_type,
                description=entry.description,
                amount=entry.amount,
                date=entry.date,
                display_amount=entry.display_amount(currency),
            )
            for entry in ordered
        ]


@dataclass(frozen=True)
class SaleRecord:
    """A single recorded sale of a product at the price in force at the time."""

    sale_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    sale_date: datetime


@dataclass
class Product:
    """A product launched by a company.

    ``total`` accumulates ``units * price`` at the moment of each sale, so a
    later price change never rewrites past revenue.
    """

    product_id: str
    company_id: str
    name: str
    price: Decimal
    sales: int = 0
    total: Decimal = ZERO
    launched_at: Optional[datetime] = None
    sale_records: List[SaleRecord] = field(default_factory=list)

    def update_price(self, new_price: Any) -> bool:
        try:
            price = parse_amount(new_price)
        except InvalidAmountError:
            log.warning("Rejected price %r for product '%s'", new_price, self.product_id)
            return False
        self.price = price
        return True

    def add_sales(self, units: Any, *, when: Optional[datetime] = None) -> SaleRecord:
        count = parse_units(units)
        try:
            amount = (self.price * count).quantize(CENTS)
        except InvalidOperation as exc:
            raise InvalidAmountError(f"Sale of {count} units is out of range") from exc
        self.sales += count
        self.total += amount
        record = SaleRecord(
            sale_id=f"{self.product_id}-S{len(self.sale_records) + 1:05d}",
            product_id=self.product_id,
            quantity=count,
            unit_price=self.price,
            total_amount=amount,
            sale_date=as_utc(when) if when is not None else _now(),
        )
        self.sale_records.append(record)
        return record

    def statistics(self) -> Dict[str, Any]:
        """Summarise the recorded sales of this product."""

        if not self.sale_records:
            return {
                "total_units": 0,
                "total_revenue": ZERO,
                "average_order_value": ZERO,
                "sale_count": 0,
                "first_sale": None,
                "last_sale": None,
            }
        ordered = sorted(self.sale_records, key=lambda record: record.sale_date)
        revenue = sum((record.total_amount for record in ordered), ZERO)
        return {
            "total_units": sum(record.quantity for record in ordered),
            "total_revenue": revenue,
            "average_order_value": (revenue / len(ordered)).quantize(CENTS),
            "sale_count": len(ordered),
            "first_sale": ordered[0],
            "last_sale": ordered[-1],
        }


__all__ = [
    "BusinessRuleViolation",
    "InvalidAmountError",
    "InsufficientFundsError",
    "OverDistributionError",
    "MissingReferenceError",
    "parse_amount",
    "parse_balance",
    "parse_units",
    "format_money",
    "as_utc",
    "parse_timestamp",
    "SchoolClass",
    "Student",
    "LedgerEntry",
    "HistoryItem",
    "Company",
    "SaleRecord",
    "Product",
]
