"""Shared pytest fixtures."""

from __future__ import annotations

import os
from typing import Iterator

import pytest

from cellpilot.documents.workbook import InMemoryWorkbook
from cellpilot.services import telemetry
from cellpilot.services.settings import Settings


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    for name in list(os.environ):
        if name.startswith("CELLPILOT_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CELLPILOT_LOG_DIR", str(tmp_path / "logs"))
    yield
    telemetry.clear_event_listeners()


@pytest.fixture
def workbook() -> InMemoryWorkbook:
    return InMemoryWorkbook.from_dict(
        {
            "sheets": {
                "Sheet1": [
                    ["Region", "Q1", "Q2"],
                    ["North", 10, 20],
                    ["South", 5, 15],
                    ["Total", "=SUM(B2:B3)", "=SUM(C2:C3)"],
                ],
                "Notes": [],
            },
            "selection": "Sheet1!A1:C4",
            "tables": [{"name": "Sales", "address": "Sheet1!A1:C3"}],
        }
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        provider="gemini",
        api_keys={"gemini": "test-key"},
        approval_mode=False,
        logging_enabled=False,
    )
