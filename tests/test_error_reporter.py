"""Tests for the operator error log and the background task registry."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from schemas.fulfillment import ErrorLogEntry, Severity
from services.error_reporter import ErrorReporter
from storage.sheets_client import SheetRef
from tasks.background import BackgroundTaskRegistry


class TestErrorLogRow:
    def test_row_has_fifteen_columns_with_defaults(self):
        entry = ErrorLogEntry(timestamp=datetime(2024, 6, 1, tzinfo=timezone.utc))
        row = entry.to_row("01/06/2024, 02:00:00")
        assert len(row) == 15
        assert row[:6] == [
            "01/06/2024, 02:00:00", "Critical", "Unknown", "N/A", "No message", "No stack trace",
        ]
        assert row[10] == "N/A"
        assert row[11] == "Open"

    def test_context_serialized_as_json(self):
        entry = ErrorLogEntry(additional_context={"session_id": "cs_1"})
        assert entry.to_row("t")[10] == '{"session_id": "cs_1"}'


class TestErrorReporter:
    @pytest.mark.asyncio
    async def test_report_appends_row(self, spreadsheet, settings):
        reporter = ErrorReporter(spreadsheet, settings)
        entry = reporter.build_entry(
            Severity.WARNING, "orchestrator", "DuplicateSession", "dup", user_id="ana@example.com",
        )

        assert await reporter.report(entry) is True
        rows = spreadsheet.rows(SheetRef("log-sheet", "Sheet1"))
        assert len(rows) == 1
        assert rows[0][1:5] == ["Warning", "orchestrator", "DuplicateSession", "dup"]
        assert rows[0][6] == "ana@example.com"
        assert rows[0][8] == "Test"

    @pytest.mark.asyncio
    async def test_sheet_failure_falls_back_without_raising(self, settings):
        broken = MagicMock()
        broken.append_row = AsyncMock(side_effect=RuntimeError("quota exceeded"))
        reporter = ErrorReporter(broken, settings)

        result = await reporter.report(reporter.build_entry(Severity.ERROR, "x", "CODE", "boom"))

        assert result is False
        broken.append_row.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exception_carries_stack_trace(self, spreadsheet, settings):
        reporter = ErrorReporter(spreadsheet, settings)
        try:
            raise ValueError("bad value")
        except ValueError as e:
            await reporter.report_exception(e, Severity.ERROR, "media_pipeline", "MEDIA_UPLOAD_ERROR")

        row = spreadsheet.rows(SheetRef("log-sheet", "Sheet1"))[0]
        assert row[4] == "bad value"
        assert "ValueError: bad value" in row[5]

    @pytest.mark.asyncio
    async def test_background_report_completes_on_drain(self, spreadsheet, settings):
        tasks = BackgroundTaskRegistry()
        reporter = ErrorReporter(spreadsheet, settings, tasks=tasks)
        reporter.report_in_background(reporter.build_entry(Severity.INFO, "x", "CODE", "later"))

        assert tasks.pending == 1
        await tasks.drain()
        assert len(spreadsheet.rows(SheetRef("log-sheet", "Sheet1"))) == 1

    def test_request_id_taken_from_bound_context(self, spreadsheet, settings):
        reporter = ErrorReporter(spreadsheet, settings)
        structlog.contextvars.bind_contextvars(request_id="req-42")
        try:
            entry = reporter.build_entry(Severity.ERROR, "api", "CODE", "m")
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        assert entry.request_id == "req-42"
        assert entry.to_row("t")[7] == "req-42"
        assert reporter.build_entry(Severity.ERROR, "api", "CODE", "m").request_id is None

    def test_explicit_request_id_wins(self, spreadsheet, settings):
        reporter = ErrorReporter(spreadsheet, settings)
        entry = reporter.build_entry(Severity.ERROR, "api", "CODE", "m", request_id="req-7")
        assert entry.to_row("t")[7] == "req-7"

    def test_background_report_requires_registry(self, spreadsheet, settings):
        reporter = ErrorReporter(spreadsheet, settings)
        with pytest.raises(RuntimeError):
            reporter.report_in_background(reporter.build_entry(Severity.INFO, "x", "CODE", "m"))


class TestBackgroundTaskRegistry:
    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks_spawned_while_draining(self):
        tasks = BackgroundTaskRegistry()
        finished = []

        async def child():
            await asyncio.sleep(0.01)
            finished.append("child")

        async def parent():
            await asyncio.sleep(0.01)
            tasks.spawn(child(), name="child")
            finished.append("parent")

        tasks.spawn(parent(), name="parent")
        assert await tasks.drain() == 0
        assert finished == ["parent", "child"]
        assert tasks.pending == 0

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_stragglers(self):
        tasks = BackgroundTaskRegistry()
        task = tasks.spawn(asyncio.sleep(10), name="slow")

        assert await tasks.drain(timeout=0.05) == 1
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_failed_task_does_not_break_drain(self):
        tasks = BackgroundTaskRegistry()

        async def explode():
            raise RuntimeError("boom")

        tasks.spawn(explode(), name="explode")
        assert await tasks.drain() == 0
        assert tasks.pending == 0
