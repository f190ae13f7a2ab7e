"""Enumerations and shared literals used across the BusiCode layers.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the CLI rely on a single source of truth for sheet
names, ledger entry types, and the default ledger descriptions shown to
students.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Snapshot versions accepted by ``core_logic.restore_snapshot``.
SNAPSHOT_VERSION = "2.1"
SUPPORTED_SNAPSHOT_VERSIONS: tuple[str, ...] = ("2.0", "2.1")

DEFAULT_CURRENCY = "R$"
CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

INITIAL_CAPITAL_DESCRIPTION = "Capital Inicial"
DISTRIBUTION_DESCRIPTION = "Distribuição de lucros"
ADD_FUNDS_DESCRIPTION = "Aporte de recursos"
REMOVE_FUNDS_DESCRIPTION = "Retirada de recursos"
HISTORY_PREVIEW_SIZE = 5


class EntryType(str, Enum):
    """Enumerate the two kinds of company ledger entries."""

    EXPENSE = "expense"
    REVENUE = "revenue"


class BalanceAction(str, Enum):
    """Direction of a manual student balance adjustment."""

    ADD = "add"
    REMOVE = "remove"


class ErrorKind(str, Enum):
    """Failure categories reported by business operations."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_AMOUNT = "invalid_amount"
    NOT_FOUND = "not_found"
    OVER_DISTRIBUTION = "over_distribution"
    INVALID_INPUT = "invalid_input"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CLASSES = "Classes"
    STUDENTS = "Students"
    COMPANIES = "Companies"
    COMPANY_MEMBERS = "CompanyMembers"
    LEDGER_ENTRIES = "LedgerEntries"
    PRODUCTS = "Products"
    PRODUCT_SALES = "ProductSales"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SNAPSHOT_VERSION",
    "SUPPORTED_SNAPSHOT_VERSIONS",
    "DEFAULT_CURRENCY",
    "CENTS",
    "ZERO",
    "INITIAL_CAPITAL_DESCRIPTION",
    "DISTRIBUTION_DESCRIPTION",
    "ADD_FUNDS_DESCRIPTION",
    "REMOVE_FUNDS_DESCRIPTION",
    "HISTORY_PREVIEW_SIZE",
    "EntryType",
    "BalanceAction",
    "ErrorKind",
    "SheetName",
]
