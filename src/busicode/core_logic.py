"""Business logic layer for BusiCode.

This module orchestrates the classroom economy: it validates user intent,
coordinates student balances with company ledgers inside a single repository
transaction, and publishes domain events once a change has been committed.
It consumes :mod:`busicode.repository` for all state and never touches the
workbook directly.

Mutating operations return an :class:`OperationResult`. Business-rule
violations raised by the domain layer are converted into failed results
carrying an :class:`~busicode.constants.ErrorKind`; storage failures
propagate after the repository has rolled back. Read helpers such as
:func:`get_company` raise :class:`~busicode.domain.MissingReferenceError`
for unknown identifiers.
"""

from __future__ import annotations

import csv
import functools
import io
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from . import data_manager, log
from .constants import (
    ADD_FUNDS_DESCRIPTION,
    CENTS,
    DISTRIBUTION_DESCRIPTION,
    EXPECTED_SCHEMA_VERSION,
    INITIAL_CAPITAL_DESCRIPTION,
    REMOVE_FUNDS_DESCRIPTION,
    SNAPSHOT_VERSION,
    SUPPORTED_SNAPSHOT_VERSIONS,
    ZERO,
    BalanceAction,
    EntryType,
    ErrorKind,
)
from .domain import (
    BusinessRuleViolation,
    Company,
    HistoryItem,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerEntry,
    MissingReferenceError,
    OverDistributionError,
    Product,
    SaleRecord,
    SchoolClass,
    Student,
    as_utc,
    format_money,
    parse_amount,
    parse_balance,
    parse_timestamp,
    parse_units,
)
from .events import (
    BalanceChanged,
    ClassDeleted,
    CompanyCreated,
    CompanyDeleted,
    DomainEvent,
    EventBus,
    ProductLaunched,
    ProductSold,
)
from .repository import Repository


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for settings, the repository, the event bus, and the clock."""

    settings: data_manager.ConfigSettings
    repository: Repository
    events: EventBus = field(default_factory=EventBus, compare=False)
    clock: Callable[[], datetime] = field(default=_utcnow, repr=False, compare=False)

    @property
    def currency(self) -> str:
        return self.settings.currency


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a mutating business operation.

    ``error`` is ``None`` on success. ``data`` carries the operation payload
    (the created company, the affected student ids, counters, ...).
    """

    success: bool
    message: str = ""
    error: Optional[ErrorKind] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error: ErrorKind, message: str) -> "OperationResult":
        return cls(success=False, message=message, error=error)


@dataclass(frozen=True)
class CreateCompanyCommand:
    """User intent for founding a company with pooled student capital."""

    name: str
    class_id: str
    member_ids: Sequence[str]
    contributions: Mapping[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerEntryCommand:
    """User intent for posting an ordinary expense or revenue to a company."""

    company_id: str
    description: str
    amount: Any
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class DistributionCommand:
    """User intent for paying part of a company's profit to one student."""

    company_id: str
    student_id: str
    amount: Any
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording units sold of a product."""

    product_id: str
    units: Any
    timestamp: Optional[datetime] = None


def _resolve_timestamp(context: RuntimeContext, candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the context clock's time."""

    return as_utc(candidate) if candidate is not None else context.clock()


def generate_id(prefix: str) -> str:
    """Generate a unique identifier such as ``CMP-1f0c2a9b8d7e``."""

    return f"{prefix}-{uuid4().hex[:12]}"


def _guarded(operation: Callable[..., OperationResult]) -> Callable[..., OperationResult]:
    """Convert business-rule violations raised by ``operation`` into failed results."""

    @functools.wraps(operation)
    def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            return operation(*args, **kwargs)
        except BusinessRuleViolation as exc:
            log.warning("%s rejected (%s): %s", operation.__name__, exc.kind.value, exc)
            return OperationResult.fail(exc.kind, str(exc))

    return wrapper


def _publish(context: RuntimeContext, events: Iterable[DomainEvent]) -> None:
    for event in events:
        context.events.publish(event)


def _require_text(value: Optional[str], label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise BusinessRuleViolation(f"{label} is required")
    return text


# -- runtime context ----------------------------------------------------------


def build_runtime_context(
    repository: Repository,
    *,
    settings: Optional[data_manager.ConfigSettings] = None,
    events: Optional[EventBus] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> RuntimeContext:
    """Bundle a repository with settings and wire the default subscribers.

    Company deletion only publishes :class:`~busicode.events.CompanyDeleted`;
    the product cleanup that follows is registered here so that every context
    gets the cascade.

    Args:
        repository (Repository): Store holding the loaded aggregates.
        settings (ConfigSettings | None): Parsed configuration. In-memory
            contexts receive defaults pointing at the repository's data file.
        events (EventBus | None): Bus to publish on; a fresh one by default.
        clock (Callable[[], datetime] | None): Source of "now" for ledger
            entries and sales.

    Returns:
        RuntimeContext: Context ready for the operations in this module.
    """

    if settings is None:
        settings = data_manager.ConfigSettings(
            data_file=repository.data_file or Path(data_manager.DEFAULT_DATA_FILE),
            school_name="",
            schema_version=EXPECTED_SCHEMA_VERSION,
        )
    context = RuntimeContext(
        settings=settings,
        repository=repository,
        events=events if events is not None else EventBus(),
        clock=clock if clock is not None else _utcnow,
    )

    def _cascade_products(event: DomainEvent) -> None:
        remove_products_by_company(context, event.company_id)

    context.events.subscribe(CompanyDeleted, _cascade_products)
    return context


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the workbook-backed repository.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When the workbook is missing sheets or holds corrupt rows.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    repository = Repository.from_file(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(repository, settings=settings)


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
    """Write every aggregate to the workbook and save it to the configured file."""

    context.repository.flush(context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    A new context (and a new event bus) is returned; subscribers registered on
    the old bus are not carried over.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    repository = Repository(
        data_manager.refresh_workbook(context.settings.data_file),
        data_file=context.settings.data_file,
    )
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_runtime_context(repository, settings=context.settings, clock=context.clock)


# -- read helpers ---------------------------------------------------------------


def get_class(context: RuntimeContext, class_id: str) -> SchoolClass:
    return context.repository.get_class(class_id)


def get_student(context: RuntimeContext, student_id: str) -> Student:
    return context.repository.get_student(student_id)


def get_company(context: RuntimeContext, company_id: str) -> Company:
    """Return the company with ``company_id``.

    Raises:
        MissingReferenceError: If no such company exists.
    """

    return context.repository.get_company(company_id)


def get_product(context: RuntimeContext, product_id: str) -> Product:
    return context.repository.get_product(product_id)


def list_classes(context: RuntimeContext) -> List[SchoolClass]:
    """Return every class sorted by name."""

    return sorted(context.repository.list_classes(), key=lambda item: item.name.casefold())


def list_students(context: RuntimeContext, class_id: Optional[str] = None) -> List[Student]:
    """Return students, optionally restricted to one class, sorted by name."""

    return sorted(context.repository.list_students(class_id), key=lambda item: item.name.casefold())


def list_companies(context: RuntimeContext, class_id: Optional[str] = None) -> List[Company]:
    return context.repository.list_companies(class_id)


def list_products(
    context: RuntimeContext,
    company_id: Optional[str] = None,
    class_id: Optional[str] = None,
) -> List[Product]:
    """Return products filtered by owning company and/or the company's class."""

    products = context.repository.list_products(company_id)
    if class_id is None:
        return products
    company_ids = {company.company_id for company in context.repository.list_companies(class_id)}
    return [product for product in products if product.company_id in company_ids]


def list_products_by_launch_date(
    context: RuntimeContext,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    company_id: Optional[str] = None,
    class_id: Optional[str] = None,
) -> List[Product]:
    """Return products launched within ``[start, end]``, newest first.

    Either bound may be omitted. Products with no launch date only appear
    when no bound is given, and then sort last.
    """

    start, end = as_utc(start), as_utc(end)
    selected = []
    for product in list_products(context, company_id, class_id):
        launched = product.launched_at
        if launched is None:
            if start is None and end is None:
                selected.append(product)
            continue
        if start is not None and launched < start:
            continue
        if end is not None and launched > end:
            continue
        selected.append(product)
    oldest = datetime.min.replace(tzinfo=UTC)
    selected.sort(key=lambda product: product.launched_at or oldest, reverse=True)
    return selected


def get_activity_history(
    context: RuntimeContext,
    company_id: str,
    *,
    limit: Optional[int] = None,
) -> List[HistoryItem]:
    """Return the company's ledger newest-first with signed display amounts.

    Raises:
        MissingReferenceError: If the company is unknown.
    """

    company = get_company(context, company_id)
    return company.activity_history(limit=limit, currency=context.currency)


def calculate_financial_summary(context: RuntimeContext, company_id: str) -> Dict[str, Any]:
    """Aggregate a company's ledger into the figures shown on its dashboard.

    Args:
        context (RuntimeContext): Runtime context holding the repository.
        company_id (str): Identifier of the company to summarise.

    Returns:
        dict[str, Any]: ``initial_budget``, ``current_budget``,
            ``total_revenues``, ``total_expenses``, ``profit`` (all
            ``Decimal``), plus ``revenue_count``, ``expense_count`` and
            ``member_count``.

    Raises:
        MissingReferenceError: If the company is unknown.
    """

    company = get_company(context, company_id)
    summary = {
        "initial_budget": company.initial_budget,
        "current_budget": company.current_budget,
        "total_revenues": company.total_revenues(),
        "total_expenses": company.total_expenses(),
        "profit": company.profit(),
        "revenue_count": len(company.revenues),
        "expense_count": len(company.expenses),
        "member_count": len(company.member_ids),
    }
    log.debug("Computed financial summary for company '%s': %s", company_id, summary)
    return summary


def class_statistics(context: RuntimeContext, class_id: str) -> Dict[str, Any]:
    """Summarise the balances of the students enrolled in a class."""

    get_class(context, class_id)
    students = list_students(context, class_id)
    total_initial = sum((student.initial_balance for student in students), ZERO)
    total_current = sum((student.current_balance for student in students), ZERO)
    count = len(students)
    return {
        "student_count": count,
        "total_initial_balance": total_initial,
        "total_current_balance": total_current,
        "average_initial_balance": (total_initial / count).quantize(CENTS) if count else ZERO,
        "average_current_balance": (total_current / count).quantize(CENTS) if count else ZERO,
    }


def sales_statistics(context: RuntimeContext, product_id: str) -> Dict[str, Any]:
    """Return sales statistics for one product (see :meth:`Product.statistics`)."""

    return get_product(context, product_id).statistics()


# -- classes --------------------------------------------------------------------


def _ensure_unique_class_name(context: RuntimeContext, name: str, *, ignore_id: Optional[str] = None) -> None:
    for school_class in context.repository.list_classes():
        if school_class.class_id != ignore_id and school_class.name.casefold() == name.casefold():
            raise BusinessRuleViolation(f"A class named '{name}' already exists")


@_guarded
def create_class(context: RuntimeContext, name: str) -> OperationResult:
    """Create a new, empty class with a unique name."""

    class_name = _require_text(name, "Class name")
    _ensure_unique_class_name(context, class_name)
    school_class = SchoolClass(class_id=generate_id("CLS"), name=class_name, created_at=context.clock())
    with context.repository.transaction() as repo:
        repo.add_class(school_class)
    log.info("Created class '%s' (%s)", class_name, school_class.class_id)
    return OperationResult.ok(f"Class '{class_name}' created", school_class=school_class)


@_guarded
def rename_class(context: RuntimeContext, class_id: str, name: str) -> OperationResult:
    new_name = _require_text(name, "Class name")
    school_class = get_class(context, class_id)
    _ensure_unique_class_name(context, new_name, ignore_id=class_id)
    with context.repository.transaction():
        school_class.name = new_name
    log.info("Renamed class '%s' to '%s'", class_id, new_name)
    return OperationResult.ok(f"Class renamed to '{new_name}'", school_class=school_class)


@_guarded
def delete_class(context: RuntimeContext, class_id: str) -> OperationResult:
    """Delete a class together with its companies and students.

    Companies go first (each publishing ``CompanyDeleted`` so their products
    are removed), then the students, then the class itself, all in one
    transaction. ``ClassDeleted`` is published last.
    """

    get_class(context, class_id)
    companies = context.repository.list_companies(class_id)
    students = context.repository.list_students(class_id)
    with context.repository.transaction() as repo:
        for company in companies:
            repo.remove_company(company.company_id)
        for student in students:
            repo.remove_student(student.student_id)
        repo.remove_class(class_id)
    _publish(context, [CompanyDeleted(company.company_id, class_id) for company in companies])
    context.events.publish(ClassDeleted(class_id))
    log.info(
        "Deleted class '%s' with %d companies and %d students",
        class_id,
        len(companies),
        len(students),
    )
    return OperationResult.ok(
        "Class deleted",
        class_id=class_id,
        company_ids=tuple(company.company_id for company in companies),
        student_ids=tuple(student.student_id for student in students),
    )


# -- students -------------------------------------------------------------------


def _default_balance(context: RuntimeContext, initial_balance: Any) -> Decimal:
    if initial_balance is None:
        return context.settings.default_initial_balance.quantize(CENTS)
    return parse_balance(initial_balance)


def _new_student(context: RuntimeContext, class_id: str, name: str, balance: Decimal) -> Student:
    return Student(
        student_id=generate_id("STU"),
        name=name,
        class_id=class_id,
        initial_balance=balance,
        current_balance=balance,
        created_at=context.clock(),
    )


@_guarded
def add_student(
    context: RuntimeContext,
    class_id: str,
    name: str,
    initial_balance: Any = None,
) -> OperationResult:
    """Enroll a student in a class.

    ``initial_balance`` defaults to the ``[Defaults] InitialBalance`` setting.
    """

    student_name = _require_text(name, "Student name")
    get_class(context, class_id)
    balance = _default_balance(context, initial_balance)
    student = _new_student(context, class_id, student_name, balance)
    with context.repository.transaction() as repo:
        repo.add_student(student)
    context.events.publish(BalanceChanged(student.student_id, class_id, student.current_balance))
    log.info("Added student '%s' to class '%s' with balance %s", student_name, class_id, balance)
    return OperationResult.ok(f"Student '{student_name}' added", student=student)


def _split_names(csv_text: str) -> List[str]:
    names: List[str] = []
    for row in csv.reader(io.StringIO(csv_text or "")):
        names.extend(cell.strip() for cell in row if cell.strip())
    return names


@_guarded
def add_students_from_csv(
    context: RuntimeContext,
    class_id: str,
    csv_text: str,
    initial_balance: Any = None,
) -> OperationResult:
    """Enroll every comma-separated name in ``csv_text`` with a shared balance.

    Blank names are skipped. Fails with ``INVALID_INPUT`` when no name is left.
    """

    get_class(context, class_id)
    balance = _default_balance(context, initial_balance)
    names = _split_names(csv_text)
    if not names:
        raise BusinessRuleViolation("No student names found in the import text")
    students = [_new_student(context, class_id, name, balance) for name in names]
    with context.repository.transaction() as repo:
        for student in students:
            repo.add_student(student)
    _publish(context, [BalanceChanged(s.student_id, class_id, s.current_balance) for s in students])
    log.info("Imported %d students into class '%s'", len(students), class_id)
    return OperationResult.ok(f"{len(students)} students added", students=tuple(students))


@_guarded
def remove_student(context: RuntimeContext, student_id: str) -> OperationResult:
    """Remove a student from its class.

    Company ledgers and recorded contributions are untouched; the student only
    leaves the current membership of any company.
    """

    student = get_student(context, student_id)
    with context.repository.transaction() as repo:
        for company in repo.list_companies(student.class_id):
            company.remove_member(student_id)
        repo.remove_student(student_id)
    log.info("Removed student '%s' from class '%s'", student_id, student.class_id)
    return OperationResult.ok(f"Student '{student.name}' removed", student=student)


def _adjust_balance(student: Student, amount: Decimal, action: BalanceAction) -> None:
    if action is BalanceAction.ADD:
        student.add_balance(amount)
        return
    if not student.can_afford(amount):
        raise InsufficientFundsError(
            f"Student '{student.name}' has {format_money(student.current_balance)}, "
            f"cannot remove {format_money(amount)}"
        )
    student.deduct_balance(amount)


@_guarded
def modify_student_balance(
    context: RuntimeContext,
    student_id: str,
    amount: Any,
    action: BalanceAction,
) -> OperationResult:
    """Manually credit or debit a student's balance."""

    value = parse_amount(amount)
    action = BalanceAction(action)
    student = get_student(context, student_id)
    with context.repository.transaction():
        _adjust_balance(student, value, action)
    context.events.publish(BalanceChanged(student.student_id, student.class_id, student.current_balance))
    log.info("Applied %s of %s to student '%s'", action.value, value, student_id)
    return OperationResult.ok(
        f"Balance of '{student.name}' is now {format_money(student.current_balance, context.currency)}",
        student=student,
    )


@_guarded
def apply_bulk_action(
    context: RuntimeContext,
    class_id: str,
    action: BalanceAction,
    amount: Any,
) -> OperationResult:
    """Add or remove ``amount`` for every student of a class.

    Students who cannot afford a removal are left unchanged and counted as
    failures; the result carries ``succeeded`` and ``failed`` counts.
    """

    value = parse_amount(amount)
    action = BalanceAction(action)
    get_class(context, class_id)
    changed: List[Student] = []
    failed = 0
    with context.repository.transaction() as repo:
        for student in repo.list_students(class_id):
            try:
                _adjust_balance(student, value, action)
            except InsufficientFundsError as exc:
                log.warning("Bulk %s skipped for student '%s': %s", action.value, student.student_id, exc)
                failed += 1
                continue
            changed.append(student)
    _publish(context, [BalanceChanged(s.student_id, class_id, s.current_balance) for s in changed])
    log.info(
        "Bulk %s of %s on class '%s': %d succeeded, %d failed",
        action.value,
        value,
        class_id,
        len(changed),
        failed,
    )
    return OperationResult.ok(
        f"{len(changed)} students updated, {failed} failed",
        succeeded=len(changed),
        failed=failed,
    )


@_guarded
def reset_student_balance(context: RuntimeContext, student_id: str) -> OperationResult:
    student = get_student(context, student_id)
    with context.repository.transaction():
        student.reset_balance()
    context.events.publish(BalanceChanged(student.student_id, student.class_id, student.current_balance))
    log.info("Reset balance of student '%s' to %s", student_id, student.current_balance)
    return OperationResult.ok("Balance reset", student=student)


@_guarded
def reset_class_balances(context: RuntimeContext, class_id: str) -> OperationResult:
    """Reset every student of a class back to their initial balance."""

    get_class(context, class_id)
    with context.repository.transaction() as repo:
        students = repo.list_students(class_id)
        for student in students:
            student.reset_balance()
    _publish(context, [BalanceChanged(s.student_id, class_id, s.current_balance) for s in students])
    log.info("Reset balances of %d students in class '%s'", len(students), class_id)
    return OperationResult.ok(f"{len(students)} balances reset", students=students)


@_guarded
def set_student_initial_balance(context: RuntimeContext, student_id: str, value: Any) -> OperationResult:
    """Replace a student's initial balance; the current balance is reset to it."""

    balance = parse_balance(value)
    student = get_student(context, student_id)
    with context.repository.transaction():
        student.set_initial_balance(balance)
    context.events.publish(BalanceChanged(student.student_id, student.class_id, student.current_balance))
    log.info("Set initial balance of student '%s' to %s", student_id, balance)
    return OperationResult.ok("Initial balance updated", student=student)


# -- companies ------------------------------------------------------------------


def _class_members(context: RuntimeContext, class_id: str, member_ids: Iterable[str]) -> List[Student]:
    """Resolve ``member_ids`` (deduplicated, in order) to students of ``class_id``."""

    students: List[Student] = []
    seen: set[str] = set()
    for student_id in member_ids:
        if not student_id or student_id in seen:
            continue
        seen.add(student_id)
        student = get_student(context, student_id)
        if student.class_id != class_id:
            raise BusinessRuleViolation(
                f"Student '{student.name}' does not belong to class '{class_id}'"
            )
        students.append(student)
    return students


def _contribution(raw: Any) -> Decimal:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return ZERO
    return parse_balance(raw)


@_guarded
def create_company(context: RuntimeContext, command: CreateCompanyCommand) -> OperationResult:
    """Found a company from student contributions.

    Validation happens before any mutation, in this order:

    1. name, class and at least one member are given, the class exists and
       every member is a student of that class;
    2. each contribution is a valid non-negative amount no larger than the
       contributing student's balance (the first offender is reported by
       name and amount);
    3. the total contribution is greater than zero.

    The company is then created with a single "Capital Inicial" revenue equal
    to the total, and every contributor is debited, in one transaction.

    Args:
        context (RuntimeContext): Runtime context holding the repository.
        command (CreateCompanyCommand): Structured intent for the new company.

    Returns:
        OperationResult: On success ``data`` holds ``company``,
            ``student_ids``, ``class_id`` and ``total``.
    """

    name = _require_text(command.name, "Company name")
    class_id = _require_text(command.class_id, "Class id")
    get_class(context, class_id)
    members = _class_members(context, class_id, command.member_ids)
    if not members:
        raise BusinessRuleViolation("A company needs at least one member")

    contributions: Dict[str, Decimal] = {}
    for student in members:
        amount = _contribution(command.contributions.get(student.student_id))
        if not student.can_afford(amount):
            raise InsufficientFundsError(
                f"Student '{student.name}' does not have enough balance to contribute "
                f"{format_money(amount, context.currency)}"
            )
        contributions[student.student_id] = amount
    total = sum(contributions.values(), ZERO)
    if total <= ZERO:
        raise InvalidAmountError("The total contribution must be greater than zero")

    timestamp = _resolve_timestamp(context, command.timestamp)
    company = Company(
        company_id=generate_id("CMP"),
        name=name,
        class_id=class_id,
        initial_budget=total,
        created_at=timestamp,
    )
    debited: List[Student] = []
    with context.repository.transaction() as repo:
        for student in members:
            company.add_member(student.student_id, contributions[student.student_id])
        company.add_revenue(INITIAL_CAPITAL_DESCRIPTION, total, timestamp)
        for student in members:
            amount = contributions[student.student_id]
            if amount > ZERO:
                if not student.deduct_balance(amount):
                    raise InsufficientFundsError(f"Could not debit {amount} from student '{student.name}'")
                debited.append(student)
        repo.add_company(company)

    student_ids = tuple(student.student_id for student in members)
    context.events.publish(CompanyCreated(company.company_id, class_id, student_ids, total))
    _publish(context, [BalanceChanged(s.student_id, class_id, s.current_balance) for s in debited])
    log.info(
        "Created company '%s' (%s) in class '%s' with capital %s",
        name,
        company.company_id,
        class_id,
        total,
    )
    return OperationResult.ok(
        f"Company '{name}' created with {format_money(total, context.currency)}",
        company=company,
        student_ids=student_ids,
        class_id=class_id,
        total=total,
    )


@_guarded
def delete_company(context: RuntimeContext, company_id: str) -> OperationResult:
    """Delete a company. Products are removed by the ``CompanyDeleted`` subscriber.

    Member balances are not refunded.
    """

    company = get_company(context, company_id)
    with context.repository.transaction() as repo:
        repo.remove_company(company_id)
    context.events.publish(CompanyDeleted(company_id, company.class_id))
    log.info("Deleted company '%s' (%s)", company.name, company_id)
    return OperationResult.ok(f"Company '{company.name}' deleted", company_id=company_id)


@_guarded
def delete_companies_by_class(context: RuntimeContext, class_id: str) -> OperationResult:
    companies = context.repository.list_companies(class_id)
    with context.repository.transaction() as repo:
        for company in companies:
            repo.remove_company(company.company_id)
    _publish(context, [CompanyDeleted(company.company_id, class_id) for company in companies])
    log.info("Deleted %d companies of class '%s'", len(companies), class_id)
    return OperationResult.ok(
        f"{len(companies)} companies deleted",
        company_ids=tuple(company.company_id for company in companies),
    )


@_guarded
def update_company_students(
    context: RuntimeContext,
    company_id: str,
    member_ids: Sequence[str],
) -> OperationResult:
    """Replace a company's membership wholesale.

    Recorded contributions and the ledger are left as they are.
    """

    company = get_company(context, company_id)
    members = _class_members(context, company.class_id, member_ids)
    with context.repository.transaction():
        company.replace_members(student.student_id for student in members)
    log.info("Company '%s' now has %d members", company_id, len(company.member_ids))
    return OperationResult.ok("Company members updated", company=company)


@_guarded
def add_student_to_company(
    context: RuntimeContext,
    company_id: str,
    student_id: str,
    contribution: Any = 0,
) -> OperationResult:
    """Add one member, optionally with a contribution.

    A positive contribution debits the student and posts a
    "Contribuição de <name>" revenue to the company in the same transaction.
    """

    _require_text(student_id, "Student id")
    company = get_company(context, company_id)
    (student,) = _class_members(context, company.class_id, [student_id])
    if company.is_member(student_id):
        raise BusinessRuleViolation(f"Student '{student.name}' is already a member of '{company.name}'")
    amount = _contribution(contribution)
    if not student.can_afford(amount):
        raise InsufficientFundsError(
            f"Student '{student.name}' does not have enough balance to contribute "
            f"{format_money(amount, context.currency)}"
        )
    with context.repository.transaction():
        company.add_member(student_id, amount)
        if amount > ZERO:
            company.add_revenue(f"Contribuição de {student.name}", amount, context.clock())
            student.deduct_balance(amount)
    if amount > ZERO:
        context.events.publish(BalanceChanged(student_id, student.class_id, student.current_balance))
    log.info("Added student '%s' to company '%s' (contribution=%s)", student_id, company_id, amount)
    return OperationResult.ok(f"'{student.name}' joined '{company.name}'", company=company, contribution=amount)


@_guarded
def remove_student_from_company(context: RuntimeContext, company_id: str, student_id: str) -> OperationResult:
    company = get_company(context, company_id)
    if not company.is_member(student_id):
        raise MissingReferenceError(f"Student '{student_id}' is not a member of '{company.name}'")
    with context.repository.transaction():
        company.remove_member(student_id)
    log.info("Removed student '%s' from company '%s'", student_id, company_id)
    return OperationResult.ok("Member removed", company=company)


@_guarded
def rename_company(context: RuntimeContext, company_id: str, name: str) -> OperationResult:
    new_name = _require_text(name, "Company name")
    company = get_company(context, company_id)
    with context.repository.transaction():
        company.name = new_name
    log.info("Renamed company '%s' to '%s'", company_id, new_name)
    return OperationResult.ok(f"Company renamed to '{new_name}'", company=company)


# -- ledger ---------------------------------------------------------------------


def _post_expense(
    context: RuntimeContext,
    company: Company,
    description: str,
    amount: Decimal,
    timestamp: datetime,
) -> LedgerEntry:
    if amount > company.profit():
        raise InsufficientFundsError(
            f"Company '{company.name}' has {format_money(company.profit(), context.currency)} "
            f"available, cannot spend {format_money(amount, context.currency)}"
        )
    return company.add_expense(description, amount, timestamp)


@_guarded
def record_expense(context: RuntimeContext, command: LedgerEntryCommand) -> OperationResult:
    """Post an ordinary expense; it may not exceed the company's cash."""

    amount = parse_amount(command.amount)
    company = get_company(context, command.company_id)
    with context.repository.transaction():
        entry = _post_expense(
            context,
            company,
            command.description,
            amount,
            _resolve_timestamp(context, command.timestamp),
        )
    log.info("Recorded expense '%s' of %s for company '%s'", entry.description, amount, company.company_id)
    return OperationResult.ok("Expense recorded", entry=entry, balance=company.current_budget)


@_guarded
def record_revenue(context: RuntimeContext, command: LedgerEntryCommand) -> OperationResult:
    amount = parse_amount(command.amount)
    company = get_company(context, command.company_id)
    with context.repository.transaction():
        entry = company.add_revenue(
            command.description,
            amount,
            _resolve_timestamp(context, command.timestamp),
        )
    log.info("Recorded revenue '%s' of %s for company '%s'", entry.description, amount, company.company_id)
    return OperationResult.ok("Revenue recorded", entry=entry, balance=company.current_budget)


def add_funds(context: RuntimeContext, company_id: str, amount: Any) -> OperationResult:
    """Inject outside money into a company as an "Aporte de recursos" revenue."""

    return record_revenue(context, LedgerEntryCommand(company_id, ADD_FUNDS_DESCRIPTION, amount))


def remove_funds(context: RuntimeContext, company_id: str, amount: Any) -> OperationResult:
    """Withdraw company cash as a "Retirada de recursos" external-cost expense."""

    return record_expense(context, LedgerEntryCommand(company_id, REMOVE_FUNDS_DESCRIPTION, amount))


@_guarded
def distribute_profits(context: RuntimeContext, command: DistributionCommand) -> OperationResult:
    """Pay part of a company's profit to one student.

    The amount must be positive and no larger than ``profit()``; the student
    must belong to the company's class. The company expense and the student
    credit are applied in one transaction so money is conserved.

    Returns:
        OperationResult: On success ``data`` holds ``entry``, ``student`` and
            ``amount``. Exceeding the profit fails with ``OVER_DISTRIBUTION``.
    """

    company = get_company(context, command.company_id)
    amount = parse_amount(command.amount)
    available = company.profit()
    if amount > available:
        raise OverDistributionError(
            f"Cannot distribute {format_money(amount, context.currency)}: the maximum available "
            f"is {format_money(max(available, ZERO), context.currency)}"
        )
    student = get_student(context, command.student_id)
    if student.class_id != company.class_id:
        raise BusinessRuleViolation(
            f"Student '{student.name}' does not belong to the class of company '{company.name}'"
        )
    description = (command.description or "").strip() or DISTRIBUTION_DESCRIPTION
    with context.repository.transaction():
        entry = company.add_expense(
            f"{description} para {student.name}",
            amount,
            _resolve_timestamp(context, command.timestamp),
        )
        if not student.add_balance(amount):
            raise InvalidAmountError(f"Could not credit {amount} to student '{student.name}'")
    context.events.publish(BalanceChanged(student.student_id, student.class_id, student.current_balance))
    log.info(
        "Distributed %s from company '%s' to student '%s'",
        amount,
        company.company_id,
        student.student_id,
    )
    return OperationResult.ok(
        f"{format_money(amount, context.currency)} distributed to '{student.name}'",
        entry=entry,
        student=student,
        amount=amount,
    )


# -- products -------------------------------------------------------------------


@_guarded
def launch_product(context: RuntimeContext, company_id: str, name: str, price: Any) -> OperationResult:
    product_name = _require_text(name, "Product name")
    value = parse_amount(price)
    company = get_company(context, company_id)
    product = Product(
        product_id=generate_id("PRD"),
        company_id=company.company_id,
        name=product_name,
        price=value,
        launched_at=context.clock(),
    )
    with context.repository.transaction() as repo:
        repo.add_product(product)
    context.events.publish(ProductLaunched(product.product_id, company.company_id))
    log.info("Launched product '%s' (%s) for company '%s' at %s", product_name, product.product_id, company_id, value)
    return OperationResult.ok(f"Product '{product_name}' launched", product=product)


@_guarded
def edit_product_price(context: RuntimeContext, product_id: str, new_price: Any) -> OperationResult:
    """Change the unit price used for future sales."""

    product = get_product(context, product_id)
    price = parse_amount(new_price)
    with context.repository.transaction():
        product.update_price(price)
    log.info("Updated price of product '%s' to %s", product_id, price)
    return OperationResult.ok(f"Price set to {format_money(price, context.currency)}", product=product)


@_guarded
def add_sales(context: RuntimeContext, command: SaleCommand) -> OperationResult:
    """Record units sold and post the matching revenue to the owning company.

    The product counters, the sale record and the company revenue entry are
    written in one transaction.

    Returns:
        OperationResult: On success ``data`` holds ``product``, ``sale`` and
            ``entry``.
    """

    units = parse_units(command.units)
    product = get_product(context, command.product_id)
    company = get_company(context, product.company_id)
    timestamp = _resolve_timestamp(context, command.timestamp)
    with context.repository.transaction():
        sale: SaleRecord = product.add_sales(units, when=timestamp)
        entry = company.add_revenue(
            f"Venda de produto {product.name} ({units} unidades)",
            sale.total_amount,
            timestamp,
        )
    context.events.publish(ProductSold(product.product_id, company.company_id, units, sale.total_amount))
    log.info(
        "Recorded sale of %d unit(s) of product '%s' for %s",
        units,
        product.product_id,
        sale.total_amount,
    )
    return OperationResult.ok(
        f"{units} unit(s) sold for {format_money(sale.total_amount, context.currency)}",
        product=product,
        sale=sale,
        entry=entry,
    )


@_guarded
def remove_product(context: RuntimeContext, product_id: str) -> OperationResult:
    """Remove a product; revenue already posted to its company stays."""

    with context.repository.transaction() as repo:
        product = repo.remove_product(product_id)
    log.info("Removed product '%s' (%s)", product.name, product_id)
    return OperationResult.ok(f"Product '{product.name}' removed", product=product)


@_guarded
def remove_products_by_company(context: RuntimeContext, company_id: str) -> OperationResult:
    products = context.repository.list_products(company_id)
    with context.repository.transaction() as repo:
        for product in products:
            repo.remove_product(product.product_id)
    log.info("Removed %d products of company '%s'", len(products), company_id)
    return OperationResult.ok(
        f"{len(products)} products removed",
        product_ids=tuple(product.product_id for product in products),
    )


# -- snapshots ------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.entry_id,
        "description": entry.description,
        "amount": str(entry.amount),
        "date": entry.date.isoformat(),
        "sequence": entry.sequence,
    }


def export_snapshot(context: RuntimeContext) -> Dict[str, Any]:
    """Return the whole state as a versioned, JSON-compatible dictionary.

    Money is rendered as decimal strings and timestamps as ISO 8601 so the
    snapshot survives a JSON round trip without losing precision.
    """

    repo = context.repository
    snapshot = {
        "version": SNAPSHOT_VERSION,
        "timestamp": context.clock().isoformat(),
        "school_name": context.settings.school_name,
        "classes": [
            {
                "id": school_class.class_id,
                "name": school_class.name,
                "created_at": _iso(school_class.created_at),
                "students": [
                    {
                        "id": student.student_id,
                        "name": student.name,
                        "initial_balance": str(student.initial_balance),
                        "current_balance": str(student.current_balance),
                        "created_at": _iso(student.created_at),
                    }
                    for student in repo.list_students(school_class.class_id)
                ],
            }
            for school_class in repo.list_classes()
        ],
        "companies": [
            {
                "id": company.company_id,
                "name": company.name,
                "class_id": company.class_id,
                "initial_budget": str(company.initial_budget),
                "created_at": _iso(company.created_at),
                "members": [
                    {
                        "student_id": student_id,
                        "contribution": str(company.contribution_of(student_id)),
                        "is_member": company.is_member(student_id),
                    }
                    for student_id in list(company.member_ids)
                    + [sid for sid in company.contributions if sid not in company.member_ids]
                ],
                "expenses": [_entry_to_dict(entry) for entry in company.expenses],
                "revenues": [_entry_to_dict(entry) for entry in company.revenues],
            }
            for company in repo.list_companies()
        ],
        "products": [
            {
                "id": product.product_id,
                "company_id": product.company_id,
                "name": product.name,
                "price": str(product.price),
                "sales": product.sales,
                "total": str(product.total),
                "launched_at": _iso(product.launched_at),
                "sales_history": [
                    {
                        "id": record.sale_id,
                        "quantity": record.quantity,
                        "unit_price": str(record.unit_price),
                        "total_amount": str(record.total_amount),
                        "date": record.sale_date.isoformat(),
                    }
                    for record in product.sale_records
                ],
            }
            for product in repo.list_products()
        ],
    }
    log.info(
        "Exported snapshot with %d classes, %d companies, %d products",
        len(snapshot["classes"]),
        len(snapshot["companies"]),
        len(snapshot["products"]),
    )
    return snapshot


def _snapshot_decimal(raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw if raw is not None else "0"))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount in snapshot: {raw!r}") from exc
    if not value.is_finite() or value < ZERO:
        raise ValueError(f"Invalid amount in snapshot: {raw!r}")
    try:
        return value.quantize(CENTS)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount in snapshot: {raw!r}") from exc


def _snapshot_datetime(raw: Any) -> Optional[datetime]:
    return parse_timestamp(raw)


def _snapshot_members(raw_company: Mapping[str, Any]) -> List[Tuple[str, Decimal, bool]]:
    # Version 2.0 stored plain member ids and a contribution map.
    if "members" in raw_company:
        return [
            (
                str(member["student_id"]),
                _snapshot_decimal(member.get("contribution")),
                bool(member.get("is_member", True)),
            )
            for member in raw_company["members"]
        ]
    contributions = raw_company.get("contributions") or {}
    member_ids = [str(student_id) for student_id in raw_company.get("member_ids", [])]
    members = [(sid, _snapshot_decimal(contributions.get(sid)), True) for sid in member_ids]
    members += [
        (str(sid), _snapshot_decimal(amount), False)
        for sid, amount in contributions.items()
        if str(sid) not in member_ids
    ]
    return members


def _snapshot_company(raw: Mapping[str, Any], class_ids: set[str]) -> Company:
    class_id = str(raw["class_id"])
    if class_id not in class_ids:
        raise ValueError(f"Company '{raw['id']}' references unknown class '{class_id}'")
    company = Company(
        company_id=str(raw["id"]),
        name=str(raw["name"]),
        class_id=class_id,
        initial_budget=_snapshot_decimal(raw.get("initial_budget")),
        created_at=_snapshot_datetime(raw.get("created_at")),
    )
    for student_id, contribution, is_member in _snapshot_members(raw):
        if is_member:
            company.member_ids.append(student_id)
        if contribution > ZERO:
            company.contributions[student_id] = contribution

    raw_entries = [(EntryType.EXPENSE, item) for item in raw.get("expenses", [])]
    raw_entries += [(EntryType.REVENUE, item) for item in raw.get("revenues", [])]
    # Entries without a sequence keep their date order.
    raw_entries.sort(key=lambda pair: (pair[1].get("sequence") is None, pair[1].get("sequence") or 0, pair[1]["date"]))
    for index, (entry_type, item) in enumerate(raw_entries, start=1):
        sequence = int(item.get("sequence") or index)
        amount = _snapshot_decimal(item["amount"])
        if amount <= ZERO:
            raise ValueError(f"Ledger entry of company '{company.company_id}' has a non-positive amount")
        company.restore_entry(
            LedgerEntry(
                entry_id=str(item.get("id") or f"{company.company_id}-{sequence:05d}"),
                company_id=company.company_id,
                entry_type=entry_type,
                description=str(item.get("description", "")),
                amount=amount,
                date=as_utc(datetime.fromisoformat(item["date"])),
                sequence=sequence,
            )
        )
    return company


def _snapshot_product(raw: Mapping[str, Any], company_ids: set[str]) -> Product:
    company_id = str(raw["company_id"])
    if company_id not in company_ids:
        raise ValueError(f"Product '{raw['id']}' references unknown company '{company_id}'")
    product = Product(
        product_id=str(raw["id"]),
        company_id=company_id,
        name=str(raw["name"]),
        price=_snapshot_decimal(raw["price"]),
        sales=int(raw.get("sales", 0)),
        total=_snapshot_decimal(raw.get("total")),
        launched_at=_snapshot_datetime(raw.get("launched_at")),
    )
    for item in raw.get("sales_history", []):
        product.sale_records.append(
            SaleRecord(
                sale_id=str(item["id"]),
                product_id=product.product_id,
                quantity=int(item["quantity"]),
                unit_price=_snapshot_decimal(item["unit_price"]),
                total_amount=_snapshot_decimal(item["total_amount"]),
                sale_date=as_utc(datetime.fromisoformat(item["date"])),
            )
        )
    return product


def _parse_snapshot(
    snapshot: Mapping[str, Any],
) -> Tuple[List[SchoolClass], List[Student], List[Company], List[Product]]:
    classes: List[SchoolClass] = []
    students: List[Student] = []
    for raw_class in snapshot["classes"]:
        school_class = SchoolClass(
            class_id=str(raw_class["id"]),
            name=str(raw_class["name"]),
            created_at=_snapshot_datetime(raw_class.get("created_at")),
        )
        classes.append(school_class)
        for raw_student in raw_class.get("students", []):
            students.append(
                Student(
                    student_id=str(raw_student["id"]),
                    name=str(raw_student["name"]),
                    class_id=school_class.class_id,
                    initial_balance=_snapshot_decimal(raw_student.get("initial_balance")),
                    current_balance=_snapshot_decimal(raw_student.get("current_balance")),
                    created_at=_snapshot_datetime(raw_student.get("created_at")),
                )
            )
    class_ids = {school_class.class_id for school_class in classes}
    companies = [_snapshot_company(raw, class_ids) for raw in snapshot["companies"]]
    company_ids = {company.company_id for company in companies}
    products = [_snapshot_product(raw, company_ids) for raw in snapshot.get("products", [])]
    return classes, students, companies, products


@_guarded
def restore_snapshot(context: RuntimeContext, snapshot: Mapping[str, Any]) -> OperationResult:
    """Replace the whole state with the contents of ``snapshot``.

    The snapshot is parsed completely before anything is touched; a
    malformed or unsupported snapshot fails with ``INVALID_INPUT`` and leaves
    the current state as it was.

    Args:
        context (RuntimeContext): Runtime context holding the repository.
        snapshot (Mapping[str, Any]): Dictionary produced by
            :func:`export_snapshot` (versions ``2.0`` and ``2.1``).

    Returns:
        OperationResult: On success ``data`` holds the restored counts.
    """

    if not isinstance(snapshot, Mapping):
        raise BusinessRuleViolation("Snapshot must be a mapping")
    version = str(snapshot.get("version", ""))
    if version not in SUPPORTED_SNAPSHOT_VERSIONS:
        raise BusinessRuleViolation(f"Unsupported snapshot version: '{version}'")
    missing = [key for key in ("classes", "companies") if key not in snapshot]
    if missing:
        raise BusinessRuleViolation(f"Snapshot is missing keys: {', '.join(missing)}")
    try:
        classes, students, companies, products = _parse_snapshot(snapshot)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise BusinessRuleViolation(f"Malformed snapshot: {exc}") from exc

    with context.repository.transaction() as repo:
        repo.clear()
        for school_class in classes:
            repo.add_class(school_class)
        for student in students:
            repo.add_student(student)
        for company in companies:
            repo.add_company(company)
        for product in products:
            repo.add_product(product)
    log.info(
        "Restored snapshot version %s: %d classes, %d students, %d companies, %d products",
        version,
        len(classes),
        len(students),
        len(companies),
        len(products),
    )
    return OperationResult.ok(
        "Snapshot restored",
        classes=len(classes),
        students=len(students),
        companies=len(companies),
        products=len(products),
    )


__all__ = [
    "RuntimeContext",
    "OperationResult",
    "CreateCompanyCommand",
    "LedgerEntryCommand",
    "DistributionCommand",
    "SaleCommand",
    "generate_id",
    "build_runtime_context",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "get_class",
    "get_student",
    "get_company",
    "get_product",
    "list_classes",
    "list_students",
    "list_companies",
    "list_products",
    "list_products_by_launch_date",
    "get_activity_history",
    "calculate_financial_summary",
    "sales_statistics",
    "class_statistics",
    "create_class",
    "rename_class",
    "delete_class",
    "add_student",
    "add_students_from_csv",
    "remove_student",
    "modify_student_balance",
    "apply_bulk_action",
    "reset_student_balance",
    "reset_class_balances",
    "set_student_initial_balance",
    "create_company",
    "delete_company",
    "delete_companies_by_class",
    "update_company_students",
    "add_student_to_company",
    "remove_student_from_company",
    "rename_company",
    "record_expense",
    "record_revenue",
    "add_funds",
    "remove_funds",
    "distribute_profits",
    "launch_product",
    "edit_product_price",
    "add_sales",
    "remove_product",
    "remove_products_by_company",
    "export_snapshot",
    "restore_snapshot",
]
