"""Shared pytest fixtures and utilities for BusiCode tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, List

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from busicode import constants, core_logic, domain, events  # noqa: E402
from busicode.repository import Repository  # noqa: E402
from busicode.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
START = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchoolName = {school_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "Currency = {currency}\n"
    "InitialBalance = {initial_balance}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    school_name: str


class StepClock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        moment = self.current
        self.current += timedelta(minutes=1)
        return moment


@dataclass
class Classroom:
    """A class with two students: Ana (100.00) and Bruno (50.00)."""

    context: core_logic.RuntimeContext
    class_id: str
    ana: domain.Student
    bruno: domain.Student


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        school_name: str = "Escola Teste",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        currency: str = "R$",
        initial_balance: str = "0",
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                school_name=school_name,
                schema_version=schema_version,
                currency=currency,
                initial_balance=initial_balance,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            school_name=school_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="busicode-cli", description="BusiCode CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def context(clock: StepClock) -> core_logic.RuntimeContext:
    """In-memory runtime context with a deterministic clock."""

    return core_logic.build_runtime_context(Repository.in_memory(), clock=clock)


@pytest.fixture
def published(context: core_logic.RuntimeContext) -> List[events.DomainEvent]:
    """Collect every event published on the context's bus."""

    received: List[events.DomainEvent] = []
    for event_type in (
        events.BalanceChanged,
        events.CompanyCreated,
        events.CompanyDeleted,
        events.ProductLaunched,
        events.ProductSold,
        events.ClassDeleted,
    ):
        context.events.subscribe(event_type, received.append)
    return received


def seed_classroom(context: core_logic.RuntimeContext) -> Classroom:
    """Create class "9A" with Ana (100.00) and Bruno (50.00)."""

    class_id = core_logic.create_class(context, "9A").data["school_class"].class_id
    ana = core_logic.add_student(context, class_id, "Ana", "100").data["student"]
    bruno = core_logic.add_student(context, class_id, "Bruno", "50").data["student"]
    return Classroom(context=context, class_id=class_id, ana=ana, bruno=bruno)


@pytest.fixture
def classroom(context: core_logic.RuntimeContext) -> Classroom:
    return seed_classroom(context)


def found_company(classroom: Classroom, ana: str = "30", bruno: str = "20") -> domain.Company:
    """Create "Loja" with the given contributions and return it."""

    result = core_logic.create_company(
        classroom.context,
        core_logic.CreateCompanyCommand(
            name="Loja",
            class_id=classroom.class_id,
            member_ids=(classroom.ana.student_id, classroom.bruno.student_id),
            contributions={classroom.ana.student_id: ana, classroom.bruno.student_id: bruno},
        ),
    )
    assert result.success, result.message
    return result.data["company"]


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``domain.datetime`` so default entry dates are predetermined."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(domain, "datetime", _FixedDateTime)
        return moment

    return _apply
