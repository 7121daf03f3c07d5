"""
Ledger Store
============
Sales and pending-fulfillment sheets keyed by checkout session id.

- is_duplicate / record_sale: the idempotency gate for payment events
- record_pending_fulfillment / record_submission: pending queue rows
- update_status and friends: targeted cell updates located by key scan

Two fulfillment attempts for the same session can both pass is_duplicate
before either reaches record_sale. There is no lock around that window.
"""

import asyncio
import json
from typing import Any, Optional

import structlog

from config import Settings
from schemas.fulfillment import (
    FulfillmentStatus,
    PaymentEvent,
    PendingFulfillment,
    format_ledger_time,
)
from storage.sheets_client import ISpreadsheet, SheetRef, find_row


SALES_KEY_COLUMN = "A"
PENDING_KEY_COLUMN = "C"

# Logical field -> pending-fulfillment column
PENDING_COLUMNS: dict[str, str] = {
    "date": "A",
    "product_name": "B",
    "session_id": "C",
    "customer_email": "D",
    "customer_name": "E",
    "status": "F",
    "content_edit_url": "G",
    "description": "I",
    "media_urls": "O",
    "backup_url": "Q",
}


class LedgerStore:
    """Append and update rows in the sales and pending-fulfillment sheets."""

    def __init__(self, spreadsheet: ISpreadsheet, settings: Settings):
        self.spreadsheet = spreadsheet
        self.sales = SheetRef(settings.sales_spreadsheet_id, settings.sales_sheet_name)
        self.pending = SheetRef(settings.pending_spreadsheet_id, settings.pending_sheet_name)

        self._seen_sales: set[str] = set()
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="ledger_store")

    # =========================================================================
    # SALES
    # =========================================================================

    async def is_duplicate(self, session_id: str) -> bool:
        async with self._lock:
            duplicate = session_id in self._seen_sales

        if not duplicate:
            # Cache misses always rescan; other instances append to the same sheet.
            ids = await self.spreadsheet.read_column(self.sales, SALES_KEY_COLUMN)
            async with self._lock:
                self._seen_sales.update(value for value in ids if value)
                duplicate = session_id in self._seen_sales

        if duplicate:
            self._logger.warning("duplicate_session", session_id=session_id)
        return duplicate

    async def record_sale(self, event: PaymentEvent) -> None:
        row = [
            event.id,
            event.payment_intent_id,
            event.customer.external_id,
            event.customer.name,
            event.customer.email,
            event.amount,
            format_ledger_time(event.created_at),
            event.mode.value,
        ]
        await self.spreadsheet.append_row(self.sales, row)
        async with self._lock:
            self._seen_sales.add(event.id)
        self._logger.info("sale_recorded", session_id=event.id, mode=event.mode.value)

    # =========================================================================
    # PENDING FULFILLMENT
    # =========================================================================

    async def record_pending_fulfillment(self, pending: PendingFulfillment) -> None:
        row = [
            format_ledger_time(pending.created_at),
            pending.product_name,
            pending.session_id,
            pending.customer_email,
            pending.customer_name,
            pending.status,
            pending.content_edit_url,
            "",
            pending.description,
        ]
        await self.spreadsheet.append_row(self.pending, row)
        self._logger.info(
            "pending_fulfillment_recorded",
            session_id=pending.session_id,
            status=pending.status,
        )

    async def record_submission(self, pending: PendingFulfillment) -> None:
        """Mark an existing pending row as submitted, or append one if absent."""
        row = await self.find_pending_row(pending.session_id)
        if row is None:
            await self.record_pending_fulfillment(pending)
            return

        await self.spreadsheet.update_cells(self.pending, row, {
            PENDING_COLUMNS["status"]: pending.status,
            PENDING_COLUMNS["content_edit_url"]: pending.content_edit_url,
            PENDING_COLUMNS["description"]: pending.description,
        })
        self._logger.info("submission_recorded", session_id=pending.session_id, row=row)

    async def find_pending_row(self, session_id: str) -> Optional[int]:
        values = await self.spreadsheet.read_column(self.pending, PENDING_KEY_COLUMN)
        return find_row(values, session_id)

    async def is_submitted(self, session_id: str) -> bool:
        """True once a pending row for the session carries a content edit URL."""
        row = await self.find_pending_row(session_id)
        if row is None:
            return False
        urls = await self.spreadsheet.read_column(
            self.pending, PENDING_COLUMNS["content_edit_url"]
        )
        return row <= len(urls) and bool(urls[row - 1])

    async def update_status(self, session_id: str, fields: dict[str, Any]) -> bool:
        """
        Update named fields of the session's pending row.

        Returns False, without raising, when the row does not exist yet.
        """
        unknown = set(fields) - set(PENDING_COLUMNS)
        if unknown:
            raise KeyError(f"Unknown pending-fulfillment fields: {sorted(unknown)}")

        row = await self.find_pending_row(session_id)
        if row is None:
            self._logger.warning(
                "pending_row_not_found",
                session_id=session_id,
                fields=sorted(fields),
            )
            return False

        values = {
            PENDING_COLUMNS[name]: value.value if isinstance(value, FulfillmentStatus) else value
            for name, value in fields.items()
        }
        await self.spreadsheet.update_cells(self.pending, row, values)
        self._logger.info("pending_row_updated", session_id=session_id, row=row, fields=sorted(fields))
        return True

    async def update_media_urls(self, session_id: str, urls: dict[str, str]) -> bool:
        return await self.update_status(session_id, {"media_urls": json.dumps(urls)})

    async def update_backup_url(self, session_id: str, url: str) -> bool:
        return await self.update_status(session_id, {"backup_url": url})
