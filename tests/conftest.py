"""
Pytest configuration and fixtures.

Integration tests run a whole migration against in-memory fakes. Any WARNING
or ERROR logged by the migrator during such a test means a record was dropped
or degraded, so the test is marked as failed. Unit tests may log warnings freely.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest
from typing_extensions import override

if TYPE_CHECKING:
    from collections.abc import Generator

MIGRATOR_LOGGER: str = "flarum_to_discourse_migrator"

_warnings_key = pytest.StashKey[list[logging.LogRecord]]()


class MigratorWarningHandler(logging.Handler):
    """Collects WARNING and above records emitted by the migrator package."""

    records: list[logging.LogRecord]

    def __init__(self, records: list[logging.LogRecord]) -> None:
        super().__init__(level=logging.WARNING)
        self.records = records

    @override
    def emit(self, record: logging.LogRecord) -> None:
        if record.name == MIGRATOR_LOGGER or record.name.startswith(f"{MIGRATOR_LOGGER}."):
            self.records.append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(request: pytest.FixtureRequest) -> Generator[None]:
    """Capture migrator warnings during integration tests; the report hook turns them into failures."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    records: list[logging.LogRecord] = []
    request.node.stash[_warnings_key] = records
    handler = MigratorWarningHandler(records)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Generator[None]:  # type: ignore[misc]
    """Fail a passed integration test that logged migrator warnings."""
    outcome = yield
    report = outcome.get_result()

    if call.when != "call" or report.outcome != "passed":
        return
    records = item.stash.get(_warnings_key, [])
    if not records:
        return

    lines = [f"  - {r.levelname}: {r.getMessage()} (in {r.name}:{r.lineno})" for r in records]
    report.outcome = "failed"
    report.longrepr = f"Integration test failed: {len(records)} warning(s) detected:\n" + "\n".join(lines)
