"""Unit tests for the business logic layer over an in-memory repository."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from busicode import constants, core_logic, data_manager, events
from busicode.constants import BalanceAction, ErrorKind
from busicode.repository import Repository

from conftest import found_company


def balance(context, student_id):
    return core_logic.get_student(context, student_id).current_balance


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and the repository into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        school_name="Escola",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=data_manager.create_workbook())

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.repository.workbook is open_workbook.return_value
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_context = replace(context, settings=replace(context.settings, schema_version="0.9"))
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_operation_result_constructors():
    ok = core_logic.OperationResult.ok("done", value=1)
    failed = core_logic.OperationResult.fail(ErrorKind.NOT_FOUND, "missing")

    assert (ok.success, ok.error, ok.data) == (True, None, {"value": 1})
    assert (failed.success, failed.error, failed.message) == (False, ErrorKind.NOT_FOUND, "missing")


# ---------------------------------------------------------------------------
# Classes and students
# ---------------------------------------------------------------------------


def test_create_class_requires_unique_non_empty_name(context):
    assert core_logic.create_class(context, "9A").success
    duplicate = core_logic.create_class(context, " 9a ")
    blank = core_logic.create_class(context, "   ")

    assert duplicate.error is ErrorKind.INVALID_INPUT
    assert blank.error is ErrorKind.INVALID_INPUT
    assert len(core_logic.list_classes(context)) == 1


def test_rename_class(classroom):
    context = classroom.context
    other = core_logic.create_class(context, "9B").data["school_class"]

    assert core_logic.rename_class(context, classroom.class_id, "9C").success
    assert core_logic.get_class(context, classroom.class_id).name == "9C"
    assert core_logic.rename_class(context, other.class_id, "9C").error is ErrorKind.INVALID_INPUT


def test_add_student_uses_configured_default_balance(clock):
    repository = Repository.in_memory()
    settings = data_manager.ConfigSettings(
        data_file=Path(data_manager.DEFAULT_DATA_FILE),
        school_name="",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_initial_balance=Decimal("80"),
    )
    context = core_logic.build_runtime_context(repository, settings=settings, clock=clock)
    class_id = core_logic.create_class(context, "9A").data["school_class"].class_id

    student = core_logic.add_student(context, class_id, "Ana").data["student"]

    assert student.initial_balance == student.current_balance == Decimal("80.00")


def test_add_student_rejects_unknown_class_and_negative_balance(classroom):
    context = classroom.context
    assert core_logic.add_student(context, "missing", "Zé", "10").error is ErrorKind.NOT_FOUND
    assert core_logic.add_student(context, classroom.class_id, "Zé", "-10").error is ErrorKind.INVALID_AMOUNT


def test_add_students_from_csv_skips_blanks(classroom):
    """Blank names in the import text are ignored."""

    context = classroom.context
    result = core_logic.add_students_from_csv(context, classroom.class_id, "Carla, ,Davi,,\nEva", "20")

    assert result.success
    names = [student.name for student in result.data["students"]]
    assert names == ["Carla", "Davi", "Eva"]
    assert all(student.current_balance == Decimal("20.00") for student in result.data["students"])
    assert len(core_logic.list_students(context, classroom.class_id)) == 5


def test_add_students_from_csv_requires_a_name(classroom):
    result = core_logic.add_students_from_csv(classroom.context, classroom.class_id, " , ,")
    assert result.error is ErrorKind.INVALID_INPUT


def test_modify_student_balance(classroom, published):
    context = classroom.context
    ana_id = classroom.ana.student_id

    assert core_logic.modify_student_balance(context, ana_id, "5", BalanceAction.ADD).success
    assert balance(context, ana_id) == Decimal("105.00")

    refused = core_logic.modify_student_balance(context, ana_id, "200", BalanceAction.REMOVE)
    assert refused.error is ErrorKind.INSUFFICIENT_FUNDS
    assert balance(context, ana_id) == Decimal("105.00")

    invalid = core_logic.modify_student_balance(context, ana_id, "0", BalanceAction.ADD)
    assert invalid.error is ErrorKind.INVALID_AMOUNT
    assert published[-1] == events.BalanceChanged(ana_id, classroom.class_id, Decimal("105.00"))


def test_apply_bulk_action_counts_failures(classroom):
    """Students who cannot afford a removal are skipped and counted as failures."""

    context = classroom.context
    result = core_logic.apply_bulk_action(context, classroom.class_id, BalanceAction.REMOVE, "60")

    assert (result.data["succeeded"], result.data["failed"]) == (1, 1)
    assert balance(context, classroom.ana.student_id) == Decimal("40.00")
    assert balance(context, classroom.bruno.student_id) == Decimal("50.00")


def test_reset_and_set_initial_balance(classroom):
    context = classroom.context
    ana_id = classroom.ana.student_id
    core_logic.modify_student_balance(context, ana_id, "30", BalanceAction.REMOVE)

    assert core_logic.reset_student_balance(context, ana_id).success
    assert balance(context, ana_id) == Decimal("100.00")
    assert core_logic.set_student_initial_balance(context, ana_id, "12").success
    assert core_logic.get_student(context, ana_id).initial_balance == Decimal("12.00")
    assert balance(context, ana_id) == Decimal("12.00")


def test_class_statistics(classroom):
    context = classroom.context
    found_company(classroom)

    stats = core_logic.class_statistics(context, classroom.class_id)

    assert stats == {
        "student_count": 2,
        "total_initial_balance": Decimal("150.00"),
        "total_current_balance": Decimal("100.00"),
        "average_initial_balance": Decimal("75.00"),
        "average_current_balance": Decimal("50.00"),
    }
    empty = core_logic.create_class(context, "9B").data["school_class"].class_id
    assert core_logic.class_statistics(context, empty)["average_current_balance"] == Decimal("0")
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.class_statistics(context, "missing")


def test_reset_class_balances(classroom, published):
    """Every student of the class goes back to the initial balance."""

    context = classroom.context
    found_company(classroom)

    result = core_logic.reset_class_balances(context, classroom.class_id)

    assert result.success
    assert balance(context, classroom.ana.student_id) == Decimal("100.00")
    assert balance(context, classroom.bruno.student_id) == Decimal("50.00")
    assert published[-2:] == [
        events.BalanceChanged(classroom.ana.student_id, classroom.class_id, Decimal("100.00")),
        events.BalanceChanged(classroom.bruno.student_id, classroom.class_id, Decimal("50.00")),
    ]
    assert core_logic.reset_class_balances(context, "missing").error is ErrorKind.NOT_FOUND


def test_remove_student_leaves_company_ledger(classroom):
    context = classroom.context
    company = found_company(classroom)

    assert core_logic.remove_student(context, classroom.bruno.student_id).success

    company = core_logic.get_company(context, company.company_id)
    assert company.member_ids == [classroom.ana.student_id]
    assert company.contribution_of(classroom.bruno.student_id) == Decimal("20.00")
    assert company.profit() == Decimal("50.00")
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_student(context, classroom.bruno.student_id)


# ---------------------------------------------------------------------------
# Company lifecycle
# ---------------------------------------------------------------------------


def test_create_company_conserves_money(classroom, published):
    """Balances 100/50 contributing 30/20 end at 70/30 with profit 50."""

    context = classroom.context
    company = found_company(classroom)

    assert balance(context, classroom.ana.student_id) == Decimal("70.00")
    assert balance(context, classroom.bruno.student_id) == Decimal("30.00")
    assert company.profit() == Decimal("50.00")
    assert company.initial_budget == Decimal("50.00")
    assert [entry.description for entry in company.revenues] == [constants.INITIAL_CAPITAL_DESCRIPTION]
    assert company.contribution_of(classroom.ana.student_id) == Decimal("30.00")

    created = [event for event in published if isinstance(event, events.CompanyCreated)]
    assert created == [
        events.CompanyCreated(
            company.company_id,
            classroom.class_id,
            (classroom.ana.student_id, classroom.bruno.student_id),
            Decimal("50.00"),
        )
    ]


def test_create_company_rejects_insufficient_contribution_without_mutation(classroom):
    """A contribution above the balance fails with the student's name and no change."""

    context = classroom.context
    result = core_logic.create_company(
        context,
        core_logic.CreateCompanyCommand(
            name="Loja",
            class_id=classroom.class_id,
            member_ids=(classroom.ana.student_id, classroom.bruno.student_id),
            contributions={classroom.ana.student_id: "30", classroom.bruno.student_id: "60"},
        ),
    )

    assert result.error is ErrorKind.INSUFFICIENT_FUNDS
    assert "Bruno" in result.message and "60.00" in result.message
    assert balance(context, classroom.ana.student_id) == Decimal("100.00")
    assert balance(context, classroom.bruno.student_id) == Decimal("50.00")
    assert core_logic.list_companies(context) == []


@pytest.mark.parametrize(
    "name, members, contributions, expected",
    [
        ("", ("ana",), {"ana": "10"}, ErrorKind.INVALID_INPUT),
        ("Loja", (), {}, ErrorKind.INVALID_INPUT),
        ("Loja", ("ana",), {"ana": "0"}, ErrorKind.INVALID_AMOUNT),
        ("Loja", ("ana",), {"ana": "-5"}, ErrorKind.INVALID_AMOUNT),
        ("Loja", ("ghost",), {"ghost": "5"}, ErrorKind.NOT_FOUND),
    ],
)
def test_create_company_validation(classroom, name, members, contributions, expected):
    context = classroom.context
    ids = {"ana": classroom.ana.student_id, "ghost": "STU-ghost"}
    command = core_logic.CreateCompanyCommand(
        name=name,
        class_id=classroom.class_id,
        member_ids=tuple(ids[m] for m in members),
        contributions={ids[m]: v for m, v in contributions.items()},
    )

    result = core_logic.create_company(context, command)

    assert result.error is expected
    assert balance(context, classroom.ana.student_id) == Decimal("100.00")


def test_create_company_rejects_students_of_another_class(classroom):
    context = classroom.context
    other_class = core_logic.create_class(context, "9B").data["school_class"].class_id
    outsider = core_logic.add_student(context, other_class, "Caio", "100").data["student"]

    result = core_logic.create_company(
        context,
        core_logic.CreateCompanyCommand(
            "Loja", classroom.class_id, (outsider.student_id,), {outsider.student_id: "10"}
        ),
    )

    assert result.error is ErrorKind.INVALID_INPUT


def test_create_company_rolls_back_when_persistence_fails(classroom, monkeypatch):
    """A storage failure during creation leaves balances and companies untouched."""

    context = classroom.context
    monkeypatch.setattr(context.repository, "data_file", context.settings.data_file)
    monkeypatch.setattr(data_manager, "save_workbook", Mock(side_effect=OSError("read-only")))

    with pytest.raises(OSError):
        found_company(classroom)

    assert balance(context, classroom.ana.student_id) == Decimal("100.00")
    assert balance(context, classroom.bruno.student_id) == Decimal("50.00")
    assert core_logic.list_companies(context) == []


def test_delete_company_cascades_products_without_refund(classroom, published):
    """Deleting a company removes its products; member balances stay as they are."""

    context = classroom.context
    company = found_company(classroom)
    for name in ("Bolo", "Suco"):
        assert core_logic.launch_product(context, company.company_id, name, "5").success

    result = core_logic.delete_company(context, company.company_id)

    assert result.success
    assert core_logic.list_products(context) == []
    assert core_logic.list_companies(context) == []
    assert balance(context, classroom.ana.student_id) == Decimal("70.00")
    assert balance(context, classroom.bruno.student_id) == Decimal("30.00")
    assert events.CompanyDeleted(company.company_id, classroom.class_id) in published


def test_delete_companies_by_class_publishes_one_event_each(classroom, published):
    context = classroom.context
    first = found_company(classroom, ana="10", bruno="0")
    second = found_company(classroom, ana="10", bruno="5")

    result = core_logic.delete_companies_by_class(context, classroom.class_id)

    deleted = [event.company_id for event in published if isinstance(event, events.CompanyDeleted)]
    assert result.success
    assert deleted == [first.company_id, second.company_id]
    assert core_logic.list_companies(context, classroom.class_id) == []


def test_update_company_students_keeps_ledger(classroom):
    context = classroom.context
    company = found_company(classroom)

    result = core_logic.update_company_students(context, company.company_id, [classroom.bruno.student_id])

    company = core_logic.get_company(context, company.company_id)
    assert result.success
    assert company.member_ids == [classroom.bruno.student_id]
    assert company.contribution_of(classroom.ana.student_id) == Decimal("30.00")
    assert company.profit() == Decimal("50.00")


def test_add_student_to_company_with_contribution(classroom):
    """A joining student's contribution is debited and posted as revenue."""

    context = classroom.context
    company = found_company(classroom, ana="30", bruno="0")
    core_logic.update_company_students(context, company.company_id, [classroom.ana.student_id])

    result = core_logic.add_student_to_company(context, company.company_id, classroom.bruno.student_id, "15")

    company = core_logic.get_company(context, company.company_id)
    assert result.success
    assert balance(context, classroom.bruno.student_id) == Decimal("35.00")
    assert company.profit() == Decimal("45.00")
    assert company.revenues[-1].description == "Contribuição de Bruno"
    again = core_logic.add_student_to_company(context, company.company_id, classroom.bruno.student_id)
    assert again.error is ErrorKind.INVALID_INPUT


def test_remove_student_from_company(classroom):
    context = classroom.context
    company = found_company(classroom)

    assert core_logic.remove_student_from_company(context, company.company_id, classroom.ana.student_id).success
    missing = core_logic.remove_student_from_company(context, company.company_id, classroom.ana.student_id)
    assert missing.error is ErrorKind.NOT_FOUND


def test_rename_company(classroom):
    context = classroom.context
    company = found_company(classroom)
    assert core_logic.rename_company(context, company.company_id, "Mercado").success
    assert core_logic.get_company(context, company.company_id).name == "Mercado"
    assert core_logic.rename_company(context, company.company_id, "").error is ErrorKind.INVALID_INPUT


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------


def test_record_expense_cannot_exceed_cash(classroom):
    context = classroom.context
    company = found_company(classroom)

    too_much = core_logic.record_expense(
        context, core_logic.LedgerEntryCommand(company.company_id, "Aluguel", "50.01")
    )
    ok = core_logic.record_expense(context, core_logic.LedgerEntryCommand(company.company_id, "Aluguel", "50"))

    assert too_much.error is ErrorKind.INSUFFICIENT_FUNDS
    assert ok.success
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("0.00")


def test_add_and_remove_funds(classroom):
    context = classroom.context
    company = found_company(classroom)

    assert core_logic.add_funds(context, company.company_id, "25").success
    assert core_logic.remove_funds(context, company.company_id, "5").success

    company = core_logic.get_company(context, company.company_id)
    assert [entry.description for entry in company.entries[1:]] == [
        constants.ADD_FUNDS_DESCRIPTION,
        constants.REMOVE_FUNDS_DESCRIPTION,
    ]
    assert company.profit() == Decimal("70.00")
    assert core_logic.add_funds(context, company.company_id, "abc").error is ErrorKind.INVALID_AMOUNT


def test_activity_history_and_summary(classroom):
    context = classroom.context
    company = found_company(classroom)
    core_logic.record_expense(context, core_logic.LedgerEntryCommand(company.company_id, "Material", "20"))
    core_logic.record_revenue(context, core_logic.LedgerEntryCommand(company.company_id, "Venda", "8"))

    history = core_logic.get_activity_history(context, company.company_id, limit=2)
    summary = core_logic.calculate_financial_summary(context, company.company_id)

    assert [(item.description, item.display_amount) for item in history] == [
        ("Venda", "+ R$ 8.00"),
        ("Material", "- R$ 20.00"),
    ]
    assert summary["total_revenues"] == Decimal("58.00")
    assert summary["total_expenses"] == Decimal("20.00")
    assert summary["profit"] == summary["current_budget"] == Decimal("38.00")
    assert (summary["revenue_count"], summary["expense_count"], summary["member_count"]) == (2, 1, 2)
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_activity_history(context, "missing")


# ---------------------------------------------------------------------------
# Profit distribution
# ---------------------------------------------------------------------------


def test_distribute_profits_moves_money_to_student(classroom, published):
    """Distribution posts an expense and credits the student by the same amount."""

    context = classroom.context
    company = found_company(classroom)
    ana_id = classroom.ana.student_id
    before = company.profit() + balance(context, ana_id)

    result = core_logic.distribute_profits(context, core_logic.DistributionCommand(company.company_id, ana_id, "40"))

    company = core_logic.get_company(context, company.company_id)
    assert result.success
    assert company.profit() == Decimal("10.00")
    assert balance(context, ana_id) == Decimal("110.00")
    assert company.profit() + balance(context, ana_id) == before
    assert company.expenses[-1].description == f"{constants.DISTRIBUTION_DESCRIPTION} para Ana"
    assert published[-1] == events.BalanceChanged(ana_id, classroom.class_id, Decimal("110.00"))


def test_distribute_profits_enforces_cap(classroom):
    """Distributing more than the profit fails, states the cap and changes nothing."""

    context = classroom.context
    company = found_company(classroom)
    ana_id = classroom.ana.student_id

    result = core_logic.distribute_profits(context, core_logic.DistributionCommand(company.company_id, ana_id, "50.01"))

    assert result.error is ErrorKind.OVER_DISTRIBUTION
    assert "50.00" in result.message
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("50.00")
    assert balance(context, ana_id) == Decimal("70.00")


def test_distribute_profits_accepts_the_whole_profit(classroom):
    """Paying out exactly the profit empties it and keeps the class total intact."""

    context = classroom.context
    company = found_company(classroom)
    bruno_id = classroom.bruno.student_id
    before = company.profit() + balance(context, bruno_id)

    result = core_logic.distribute_profits(context, core_logic.DistributionCommand(company.company_id, bruno_id, "50"))

    company = core_logic.get_company(context, company.company_id)
    assert result.success
    assert company.profit() == Decimal("0.00")
    assert balance(context, bruno_id) == Decimal("80.00")
    assert company.profit() + balance(context, bruno_id) == before
    students_total = sum((s.current_balance for s in core_logic.list_students(context)), Decimal("0"))
    assert students_total + company.profit() == Decimal("150.00")
    extra = core_logic.distribute_profits(context, core_logic.DistributionCommand(company.company_id, bruno_id, "0.01"))
    assert extra.error is ErrorKind.OVER_DISTRIBUTION


def test_distribute_profits_rejects_student_of_another_class(classroom):
    context = classroom.context
    company = found_company(classroom)
    other_class = core_logic.create_class(context, "9B").data["school_class"].class_id
    outsider = core_logic.add_student(context, other_class, "Caio", "10").data["student"].student_id

    result = core_logic.distribute_profits(context, core_logic.DistributionCommand(company.company_id, outsider, "10"))

    assert result.error is ErrorKind.INVALID_INPUT
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("50.00")
    assert balance(context, outsider) == Decimal("10.00")


@pytest.mark.parametrize("amount", ["1e30", "9" * 40])
def test_out_of_range_amounts_fail_as_invalid_amounts(classroom, amount):
    """Amounts too large to hold in cents are refused without touching any balance."""

    context = classroom.context
    company = found_company(classroom)
    ana_id = classroom.ana.student_id
    ana = core_logic.get_student(context, ana_id)

    assert ana.add_balance(amount) is False
    assert ana.deduct_balance(amount) is False
    for action in BalanceAction:
        assert core_logic.modify_student_balance(context, ana_id, amount, action).error is ErrorKind.INVALID_AMOUNT
    distribution = core_logic.DistributionCommand(company.company_id, ana_id, amount)
    assert core_logic.distribute_profits(context, distribution).error is ErrorKind.INVALID_AMOUNT
    expense = core_logic.LedgerEntryCommand(company.company_id, "Material", amount)
    assert core_logic.record_expense(context, expense).error is ErrorKind.INVALID_AMOUNT
    assert balance(context, ana_id) == Decimal("70.00")
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("50.00")


@pytest.mark.parametrize(
    "company_id, student_id, amount, expected",
    [
        ("missing", "ana", "10", ErrorKind.NOT_FOUND),
        ("company", "ghost", "10", ErrorKind.NOT_FOUND),
        ("company", "ana", "0", ErrorKind.INVALID_AMOUNT),
        ("company", "ana", "x", ErrorKind.INVALID_AMOUNT),
    ],
)
def test_distribute_profits_validation(classroom, company_id, student_id, amount, expected):
    context = classroom.context
    company = found_company(classroom)
    ids = {"company": company.company_id, "missing": "CMP-missing", "ana": classroom.ana.student_id, "ghost": "STU-x"}

    result = core_logic.distribute_profits(
        context, core_logic.DistributionCommand(ids[company_id], ids[student_id], amount, "Bônus")
    )

    assert result.error is expected
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("50.00")


# ---------------------------------------------------------------------------
# Products and sales
# ---------------------------------------------------------------------------


def test_add_sales_posts_revenue(classroom, published):
    """3 units at 10.00 add 3 sales, 30.00 to the product and a 30.00 revenue."""

    context = classroom.context
    company = found_company(classroom)
    product = core_logic.launch_product(context, company.company_id, "Bolo", "10").data["product"]

    result = core_logic.add_sales(context, core_logic.SaleCommand(product.product_id, 3))

    product = core_logic.get_product(context, product.product_id)
    company = core_logic.get_company(context, company.company_id)
    assert result.success
    assert (product.sales, product.total) == (3, Decimal("30.00"))
    assert company.revenues[-1].description == "Venda de produto Bolo (3 unidades)"
    assert company.revenues[-1].amount == Decimal("30.00")
    assert company.profit() == Decimal("80.00")
    assert published[-1] == events.ProductSold(product.product_id, company.company_id, 3, Decimal("30.00"))


@pytest.mark.parametrize("units", [0, -2, "1.5", "abc"])
def test_add_sales_rejects_invalid_units(classroom, units):
    context = classroom.context
    company = found_company(classroom)
    product = core_logic.launch_product(context, company.company_id, "Bolo", "10").data["product"]

    result = core_logic.add_sales(context, core_logic.SaleCommand(product.product_id, units))

    assert result.error is ErrorKind.INVALID_AMOUNT
    product = core_logic.get_product(context, product.product_id)
    assert (product.sales, product.total) == (0, Decimal("0.00"))
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("50.00")


def test_add_sales_rejects_units_too_large_to_settle(classroom):
    context = classroom.context
    company = found_company(classroom)
    product_id = core_logic.launch_product(context, company.company_id, "Bolo", "10").data["product"].product_id

    result = core_logic.add_sales(context, core_logic.SaleCommand(product_id, "1e27"))

    assert result.error is ErrorKind.INVALID_AMOUNT
    product = core_logic.get_product(context, product_id)
    assert (product.sales, product.total) == (0, Decimal("0.00"))
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("50.00")


def test_edit_product_price_affects_future_sales_only(classroom):
    context = classroom.context
    company = found_company(classroom)
    product_id = core_logic.launch_product(context, company.company_id, "Bolo", "10").data["product"].product_id
    core_logic.add_sales(context, core_logic.SaleCommand(product_id, 1))

    assert core_logic.edit_product_price(context, product_id, "0").error is ErrorKind.INVALID_AMOUNT
    assert core_logic.edit_product_price(context, product_id, "15").success
    core_logic.add_sales(context, core_logic.SaleCommand(product_id, 2))

    stats = core_logic.sales_statistics(context, product_id)
    assert stats["total_revenue"] == Decimal("40.00")
    assert stats["sale_count"] == 2
    assert stats["average_order_value"] == Decimal("20.00")


def test_launch_product_validation(classroom, published):
    context = classroom.context
    company = found_company(classroom)

    assert core_logic.launch_product(context, company.company_id, " ", "5").error is ErrorKind.INVALID_INPUT
    assert core_logic.launch_product(context, company.company_id, "Bolo", "0").error is ErrorKind.INVALID_AMOUNT
    assert core_logic.launch_product(context, "missing", "Bolo", "5").error is ErrorKind.NOT_FOUND
    result = core_logic.launch_product(context, company.company_id, "Bolo", "5")
    assert published[-1] == events.ProductLaunched(result.data["product"].product_id, company.company_id)


def test_remove_product_keeps_posted_revenue(classroom):
    context = classroom.context
    company = found_company(classroom)
    product_id = core_logic.launch_product(context, company.company_id, "Bolo", "10").data["product"].product_id
    core_logic.add_sales(context, core_logic.SaleCommand(product_id, 1))

    assert core_logic.remove_product(context, product_id).success
    assert core_logic.remove_product(context, product_id).error is ErrorKind.NOT_FOUND
    assert core_logic.get_company(context, company.company_id).profit() == Decimal("60.00")


def test_list_products_by_class(classroom):
    context = classroom.context
    company = found_company(classroom)
    core_logic.launch_product(context, company.company_id, "Bolo", "10")
    other_class = core_logic.create_class(context, "9B").data["school_class"].class_id

    assert len(core_logic.list_products(context, class_id=classroom.class_id)) == 1
    assert core_logic.list_products(context, class_id=other_class) == []


def test_list_products_by_launch_date(classroom):
    """Products come back newest first, filtered by the inclusive launch range."""

    context = classroom.context
    company = found_company(classroom)
    launched = [
        core_logic.launch_product(context, company.company_id, name, "5").data["product"]
        for name in ("Bolo", "Suco", "Pão")
    ]
    bolo, suco, pao = launched
    other_class = core_logic.create_class(context, "9B").data["school_class"].class_id

    everything = core_logic.list_products_by_launch_date(context)
    since_suco = core_logic.list_products_by_launch_date(context, suco.launched_at)
    until_suco = core_logic.list_products_by_launch_date(context, end=suco.launched_at, company_id=company.company_id)

    assert [p.name for p in everything] == ["Pão", "Suco", "Bolo"]
    assert [p.name for p in since_suco] == ["Pão", "Suco"]
    assert [p.name for p in until_suco] == ["Suco", "Bolo"]
    assert core_logic.list_products_by_launch_date(context, bolo.launched_at, class_id=other_class) == []
    naive_start = pao.launched_at.replace(tzinfo=None)
    assert [p.name for p in core_logic.list_products_by_launch_date(context, naive_start)] == ["Pão"]


# ---------------------------------------------------------------------------
# Class deletion
# ---------------------------------------------------------------------------


def test_delete_class_removes_everything(classroom, published):
    context = classroom.context
    company = found_company(classroom)
    core_logic.launch_product(context, company.company_id, "Bolo", "10")

    result = core_logic.delete_class(context, classroom.class_id)

    assert result.success
    assert core_logic.list_classes(context) == []
    assert core_logic.list_students(context) == []
    assert core_logic.list_companies(context) == []
    assert core_logic.list_products(context) == []
    assert published[-1] == events.ClassDeleted(classroom.class_id)
    assert core_logic.delete_class(context, classroom.class_id).error is ErrorKind.NOT_FOUND


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def test_snapshot_round_trip_restores_balances_and_ledgers(classroom):
    context = classroom.context
    company = found_company(classroom)
    product_id = core_logic.launch_product(context, company.company_id, "Bolo", "10").data["product"].product_id
    core_logic.add_sales(context, core_logic.SaleCommand(product_id, 2))
    core_logic.distribute_profits(
        context, core_logic.DistributionCommand(company.company_id, classroom.bruno.student_id, "15")
    )
    snapshot = core_logic.export_snapshot(context)

    target = core_logic.build_runtime_context(Repository.in_memory())
    result = core_logic.restore_snapshot(target, snapshot)

    assert result.success
    assert result.data["students"] == 2
    restored = core_logic.get_company(target, company.company_id)
    assert restored.total_revenues() == Decimal("70.00")
    assert restored.total_expenses() == Decimal("15.00")
    assert [entry.sequence for entry in restored.entries] == [1, 2, 3]
    assert balance(target, classroom.bruno.student_id) == Decimal("45.00")
    assert core_logic.get_product(target, product_id).sale_records[0].quantity == 2


def test_restore_snapshot_accepts_version_2_0_layout(context):
    snapshot = {
        "version": "2.0",
        "classes": [
            {"id": "C1", "name": "9A", "students": [{"id": "S1", "name": "Ana", "initial_balance": 100, "current_balance": 70}]}
        ],
        "companies": [
            {
                "id": "CMP-1",
                "name": "Loja",
                "class_id": "C1",
                "member_ids": ["S1"],
                "contributions": {"S1": 30},
                "expenses": [],
                "revenues": [{"description": "Capital Inicial", "amount": 30, "date": "2024-03-01T09:00:00+00:00"}],
            }
        ],
    }

    result = core_logic.restore_snapshot(context, snapshot)

    assert result.success
    company = core_logic.get_company(context, "CMP-1")
    assert company.member_ids == ["S1"]
    assert company.profit() == Decimal("30.00")
    assert company.entries[0].entry_id == "CMP-1-00001"


def test_restore_snapshot_reads_naive_dates_as_utc(classroom):
    """Restored entries without an offset still sort against new entries."""

    context = classroom.context
    company = found_company(classroom)
    snapshot = core_logic.export_snapshot(context)
    snapshot["companies"][0]["revenues"][0]["date"] = "2024-01-01T10:00:00"
    target = core_logic.build_runtime_context(Repository.in_memory())

    assert core_logic.restore_snapshot(target, snapshot).success
    assert core_logic.record_revenue(target, core_logic.LedgerEntryCommand(company.company_id, "Venda", "5")).success

    history = core_logic.get_activity_history(target, company.company_id)
    assert [item.description for item in history] == ["Venda", constants.INITIAL_CAPITAL_DESCRIPTION]
    assert history[-1].date == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)


def test_naive_command_timestamps_are_read_as_utc(classroom):
    context = classroom.context
    company = found_company(classroom)
    naive = datetime(2024, 1, 1, 12, 0)

    result = core_logic.record_expense(context, core_logic.LedgerEntryCommand(company.company_id, "Material", "5", naive))

    assert result.data["entry"].date == naive.replace(tzinfo=UTC)
    history = core_logic.get_activity_history(context, company.company_id)
    assert history[-1].description == "Material"


@pytest.mark.parametrize(
    "snapshot",
    [
        {"version": "1.0", "classes": [], "companies": []},
        {"version": "2.1", "classes": []},
        {"version": "2.1", "classes": [{"name": "no id"}], "companies": []},
        {"version": "2.1", "classes": [], "companies": [{"id": "X", "name": "Y", "class_id": "ghost"}]},
        "not a mapping",
    ],
)
def test_restore_snapshot_rejects_malformed_input_without_change(classroom, snapshot):
    context = classroom.context

    result = core_logic.restore_snapshot(context, snapshot)

    assert result.error is ErrorKind.INVALID_INPUT
    assert len(core_logic.list_students(context)) == 2
