"""
Error Reporter
==============
Writes operator-facing rows to the error log sheet.

Reporting must never break the code path that reports: a failed sheet write
falls back to the local structured log, and nothing here raises.
"""

import traceback
from typing import Any, Optional

import structlog

from config import Settings
from schemas.fulfillment import ErrorLogEntry, Severity, format_ledger_time
from storage.sheets_client import ISpreadsheet, SheetRef
from tasks.background import BackgroundTaskRegistry


_LOG_METHODS = {
    Severity.CRITICAL: "critical",
    Severity.ERROR: "error",
    Severity.WARNING: "warning",
    Severity.INFO: "info",
}


class ErrorReporter:
    def __init__(
        self,
        spreadsheet: ISpreadsheet,
        settings: Settings,
        tasks: Optional[BackgroundTaskRegistry] = None,
    ):
        self.spreadsheet = spreadsheet
        self.settings = settings
        self.sheet = SheetRef(settings.log_spreadsheet_id, settings.log_sheet_name)
        self.tasks = tasks
        self._logger = structlog.get_logger().bind(component="error_reporter")

    def build_entry(
        self,
        severity: Severity,
        script_name: str,
        error_code: str,
        message: str,
        error: Optional[BaseException] = None,
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> ErrorLogEntry:
        """Without an explicit request_id, the one bound by the API middleware is used."""
        if request_id is None:
            request_id = structlog.contextvars.get_contextvars().get("request_id")
        stack = None
        if error is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return ErrorLogEntry(
            severity=severity,
            script_name=script_name,
            error_code=error_code,
            message=message,
            stack_trace=stack,
            user_id=user_id,
            request_id=request_id,
            environment=self.settings.environment,
            endpoint=endpoint,
            additional_context=context or {},
            assigned_to=self.settings.assigned_to,
            reference_link=self.settings.reference_link,
            resolution_link=self.settings.resolution_link,
        )

    async def report(self, entry: ErrorLogEntry) -> bool:
        """Append the entry to the log sheet. Returns False if it fell back."""
        log_method = getattr(self._logger, _LOG_METHODS[entry.severity])
        log_method(
            "error_reported",
            severity=entry.severity.value,
            script=entry.script_name,
            error_code=entry.error_code,
            message=entry.message,
            context=entry.additional_context,
        )

        try:
            await self.spreadsheet.append_row(self.sheet, entry.to_row(format_ledger_time(entry.timestamp)))
            return True
        except Exception as e:
            self._logger.error(
                "error_log_write_failed",
                write_error=str(e),
                entry=entry.model_dump(mode="json"),
            )
            return False

    async def report_exception(
        self,
        error: BaseException,
        severity: Severity,
        script_name: str,
        error_code: str,
        **kwargs: Any,
    ) -> bool:
        entry = self.build_entry(severity, script_name, error_code, str(error), error=error, **kwargs)
        return await self.report(entry)

    def report_in_background(self, entry: ErrorLogEntry) -> None:
        """Schedule the write without waiting for it."""
        if self.tasks is None:
            raise RuntimeError("ErrorReporter has no task registry for background reports")
        self.tasks.spawn(self.report(entry), name=f"error-report-{entry.error_code}")
