"""
Bulk Appraisal Intake
=====================
Multi-item sessions that end in a single Stripe checkout.

Session layout in the bulk bucket:

    bulk_<uuid>/.folder                 creation marker
    bulk_<uuid>/0001_<file_id>.jpg      one object per item, position-ordered
    bulk_<uuid>/customer_info.json      email, appraisal type, finalization info

The checkout's client_reference_id is the session id, which is how the
payment webhook recognizes a bulk order.
"""

import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from config import Settings
from errors import BulkSessionError
from pipeline.stripe_client import StripeClient
from schemas.fulfillment import BULK_PREFIX, PaymentMode
from services.event_publisher import EventPublisher
from storage.object_store import IObjectStore


SESSION_TTL = timedelta(hours=24)
FOLDER_MARKER = ".folder"
CUSTOMER_INFO = "customer_info.json"
SIGNED_URL_SECONDS = 3600


class AppraisalType(str, Enum):
    REGULAR = "Regular"
    INSURANCE = "Insurance"
    IRS = "IRS"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AppraisalType":
        for member in cls:
            if value and value.strip().lower() == member.value.lower():
                return member
        raise BulkSessionError(
            f"Invalid appraisal type. Must be one of: {', '.join(m.value for m in cls)}"
        )


PRICE_PER_ITEM: dict[AppraisalType, int] = {
    AppraisalType.REGULAR: 2500,
    AppraisalType.INSURANCE: 5000,
    AppraisalType.IRS: 7500,
}

DESCRIPTIONS: dict[AppraisalType, str] = {
    AppraisalType.REGULAR: "Standard art appraisal",
    AppraisalType.INSURANCE: "Insurance valuation appraisal",
    AppraisalType.IRS: "IRS documentation appraisal",
}


class BulkItem(BaseModel):
    id: str
    file_url: str
    description: str = ""
    category: str = "uncategorized"
    position: int = 0
    status: str = "processed"


class BulkSession(BaseModel):
    id: str
    customer_email: Optional[str] = None
    appraisal_type: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    items: list[BulkItem] = Field(default_factory=list)


def item_id_from_key(key: str) -> Optional[str]:
    name = key.rsplit("/", 1)[-1]
    if "_" not in name or not name.endswith(".jpg"):
        return None
    return name.split("_", 1)[1][: -len(".jpg")]


class BulkSubmissionService:
    def __init__(
        self,
        store: IObjectStore,
        stripe_client: StripeClient,
        events: EventPublisher,
        settings: Settings,
    ):
        self.store = store
        self.stripe = stripe_client
        self.events = events
        self.settings = settings
        self._logger = structlog.get_logger().bind(component="bulk_submissions")

    @staticmethod
    def _check_session_id(session_id: str) -> None:
        if not session_id.startswith(BULK_PREFIX) or "/" in session_id:
            raise BulkSessionError(f"Invalid bulk session id: {session_id}")

    # =========================================================================
    # SESSION
    # =========================================================================

    async def initialize_session(self) -> dict[str, str]:
        session_id = f"{BULK_PREFIX}{uuid.uuid4()}"
        await self.store.put(f"{session_id}/{FOLDER_MARKER}", b"", content_type="text/plain")
        expires_at = datetime.now(timezone.utc) + SESSION_TTL
        self._logger.info("bulk_session_created", session_id=session_id)
        return {"session_id": session_id, "expires_at": expires_at.isoformat()}

    async def get_customer_info(self, session_id: str) -> dict[str, Any]:
        raw = await self.store.get(f"{session_id}/{CUSTOMER_INFO}")
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            self._logger.warning("customer_info_unreadable", session_id=session_id)
            return {}

    async def _save_customer_info(self, session_id: str, info: dict[str, Any]) -> None:
        await self.store.put(
            f"{session_id}/{CUSTOMER_INFO}",
            json.dumps(info, indent=2).encode(),
            content_type="application/json",
        )

    async def get_session_status(self, session_id: str) -> BulkSession:
        self._check_session_id(session_id)
        objects = await self.store.list_prefix(f"{session_id}/")
        marker = next((obj for obj in objects if obj.key.endswith(FOLDER_MARKER)), None)
        if marker is None:
            raise BulkSessionError(f"Bulk session not found: {session_id}", status_code=404)

        items = []
        for obj in objects:
            item_id = item_id_from_key(obj.key)
            if item_id is None:
                continue
            items.append(BulkItem(
                id=item_id,
                file_url=await self.store.signed_url(obj.key, SIGNED_URL_SECONDS),
                description=obj.metadata.get("description", ""),
                category=obj.metadata.get("category", "uncategorized"),
                position=int(obj.metadata.get("position", 0) or 0),
            ))
        items.sort(key=lambda item: item.position)

        info = await self.get_customer_info(session_id)
        return BulkSession(
            id=session_id,
            customer_email=info.get("email"),
            appraisal_type=info.get("appraisal_type"),
            created_at=marker.created_at,
            expires_at=marker.created_at + SESSION_TTL,
            items=items,
        )

    async def count_items(self, session_id: str) -> int:
        objects = await self.store.list_prefix(f"{session_id}/")
        return sum(1 for obj in objects if item_id_from_key(obj.key) is not None)

    # =========================================================================
    # ITEMS
    # =========================================================================

    async def upload_item(
        self,
        session_id: str,
        content: bytes,
        original_name: str,
        position: int,
        description: str = "",
        category: str = "uncategorized",
    ) -> dict[str, str]:
        self._check_session_id(session_id)
        file_id = str(uuid.uuid4())
        key = f"{session_id}/{position:04d}_{file_id}.jpg"
        await self.store.put(
            key,
            content,
            content_type="image/jpeg",
            metadata={
                "description": description,
                "category": category or "uncategorized",
                "position": str(position),
                "originalName": original_name,
                "uploadTime": datetime.now(timezone.utc).isoformat(),
            },
        )
        url = await self.store.signed_url(key, SIGNED_URL_SECONDS)
        self._logger.info("bulk_item_uploaded", session_id=session_id, file_id=file_id, position=position)
        return {"file_id": file_id, "url": url}

    async def _find_item_key(self, session_id: str, file_id: str) -> str:
        self._check_session_id(session_id)
        for obj in await self.store.list_prefix(f"{session_id}/"):
            if obj.key.endswith(f"_{file_id}.jpg"):
                return obj.key
        raise BulkSessionError("File not found", status_code=404)

    async def delete_item(self, session_id: str, file_id: str) -> bool:
        key = await self._find_item_key(session_id, file_id)
        await self.store.delete(key)
        self._logger.info("bulk_item_deleted", session_id=session_id, file_id=file_id)
        return True

    async def update_item_description(self, session_id: str, file_id: str, description: str) -> bool:
        key = await self._find_item_key(session_id, file_id)
        objects = {obj.key: obj for obj in await self.store.list_prefix(key)}
        content = await self.store.get(key)
        if content is None or key not in objects:
            raise BulkSessionError("Session or item not found", status_code=404)

        metadata = {
            **objects[key].metadata,
            "description": description,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        await self.store.put(key, content, content_type=objects[key].content_type, metadata=metadata)
        return True

    async def update_customer_email(self, session_id: str, email: str) -> bool:
        self._check_session_id(session_id)
        info = await self.get_customer_info(session_id)
        info.update({"email": email, "updated_at": datetime.now(timezone.utc).isoformat()})
        await self._save_customer_info(session_id, info)

        try:
            await self.events.publish_bulk_email_update(session_id, email)
        except Exception as e:
            self._logger.warning("bulk_email_publish_failed", session_id=session_id, error=str(e))
        return True

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def finalize(self, session_id: str, appraisal_type: str) -> dict[str, str]:
        """Record the appraisal type and open a Stripe checkout for every item."""
        kind = AppraisalType.parse(appraisal_type)
        status = await self.get_session_status(session_id)
        count = len(status.items)
        if count == 0:
            raise BulkSessionError("No files uploaded in this session")

        info = await self.get_customer_info(session_id)
        info.update({
            "appraisal_type": kind.value,
            "images_count": count,
            "finalized_at": datetime.now(timezone.utc).isoformat(),
            "status": "finalized",
        })
        await self._save_customer_info(session_id, info)

        params: dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": f"{DESCRIPTIONS[kind]} - {count} items",
                        "description": f"Bulk {kind.value} appraisal service for {count} items",
                    },
                    "unit_amount": PRICE_PER_ITEM[kind] * count,
                },
                "quantity": 1,
            }],
            "client_reference_id": session_id,
            "metadata": {
                "bulk_session_id": session_id,
                "items_count": str(count),
                "appraisal_type": kind.value,
            },
            "mode": "payment",
            "success_url": f"{self.settings.frontend_url}/bulk-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.settings.frontend_url}/bulk-cancel?session_id={{CHECKOUT_SESSION_ID}}",
        }
        if info.get("email"):
            params["customer_email"] = info["email"]

        session = await self.stripe.create_checkout_session(params, mode=PaymentMode.LIVE)
        self._logger.info(
            "bulk_session_finalized",
            session_id=session_id,
            items=count,
            appraisal_type=kind.value,
        )
        return {"checkout_url": session["url"]}
