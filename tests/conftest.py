"""Shared pytest fixtures for pivot tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner

from pivot.config import GlobalConfig, MultiProjectConfig, ProjectConfig
from pivot.core import PivotDB
from tests._factories import FakeRemoteSource


@pytest.fixture
def db(tmp_path: Path) -> Generator[PivotDB, None, None]:
    """Fresh, initialized PivotDB for each test."""
    d = PivotDB(tmp_path / "pivot.db")
    d.initialize()
    yield d
    d.close()


@pytest.fixture
def project_id(db: PivotDB) -> int:
    """Id of the registered ``octo/widgets`` project."""
    return db.register_project(ProjectConfig(owner="octo", repo="widgets", path="/src/widgets"))


@pytest.fixture
def config(tmp_path: Path) -> MultiProjectConfig:
    """Two-project config sharing one database and a global token."""
    return MultiProjectConfig(
        global_config=GlobalConfig(database=str(tmp_path / "pivot.db"), token="global-token"),
        projects=[
            ProjectConfig(owner="octo", repo="widgets", path="/src/widgets"),
            ProjectConfig(owner="octo", repo="gadgets", path="/src/gadgets", token="gadget-token"),
        ],
    )


@pytest.fixture
def source() -> FakeRemoteSource:
    return FakeRemoteSource()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def _reset_pivot_logger() -> Generator[None, None, None]:
    """Drop file handlers the CLI attaches so tests do not share log files."""
    yield
    logger = logging.getLogger("pivot")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
