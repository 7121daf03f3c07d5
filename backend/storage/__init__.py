# storage/__init__.py
# ============================================================================
# APPRAISAL FULFILLMENT - STORAGE MODULE
# ============================================================================
# Spreadsheet ledger and bucket storage
# ============================================================================

from storage.sheets_client import (
    GoogleSheetsClient,
    InMemorySpreadsheet,
    ISpreadsheet,
    SheetRef,
)
from storage.ledger_store import LedgerStore
from storage.object_store import (
    InMemoryObjectStore,
    IObjectStore,
    S3ObjectStore,
    StoredObject,
)

__all__ = [
    "GoogleSheetsClient",
    "InMemorySpreadsheet",
    "ISpreadsheet",
    "SheetRef",
    "LedgerStore",
    "InMemoryObjectStore",
    "IObjectStore",
    "S3ObjectStore",
    "StoredObject",
]
