"""Pytest configuration for kmp-init scenarios.

Routes approved/received files to the approved_files/ subdirectory
and generates SCENARIOS-init.md after each test run.
"""

from __future__ import annotations

from pathlib import Path

import pytest

import kmp_init
from tests.scenario_report import generate_report

SUITE_DIR = Path(__file__).parent
APPROVED_DIR = SUITE_DIR / "approved_files"
SCENARIOS_MD = SUITE_DIR.parents[1] / "SCENARIOS-init.md"


@pytest.fixture(autouse=True)
def _shipped_templates(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(kmp_init.TEMPLATES_ENV, raising=False)


def pytest_sessionfinish(session, exitstatus):
    generate_report(
        title="kmp-init Scenarios",
        approved_dir=APPROVED_DIR,
        output_path=SCENARIOS_MD,
    )
