"""Shared fixtures for the appraisal fulfillment test suite."""

from __future__ import annotations

import hashlib
import hmac
import io
import json
import re
import time
from typing import Any, Optional
from unittest.mock import MagicMock

import httpx
import pytest
from PIL import Image

from api.dependencies import ServiceContainer, build_services
from config import Settings
from pipeline.stripe_client import StripeClient
from services.content_repository import ContentRepository
from services.event_publisher import InMemoryEventPublisher
from services.notification_sender import NotificationSender
from storage.object_store import InMemoryObjectStore
from storage.sheets_client import InMemorySpreadsheet


TEST_WEBHOOK_SECRET = "whsec_test_secret"
LIVE_WEBHOOK_SECRET = "whsec_live_secret"
CMS_API_URL = "https://cms.example.com/wp-json/wp/v2"


# ── Stripe helpers ────────────────────────────────────────────────────────


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for the payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_event(
    session_id: str = "cs_test_abc123",
    email: Optional[str] = "ana@example.com",
    name: str = "Ana Garcia",
    amount: Any = 5900,
    payment_link: Optional[str] = "plink_1PzzahAQSJ9n5XyNZTMmYyLJ",
    client_reference_id: Optional[str] = None,
    metadata: Optional[dict[str, str]] = None,
    event_type: str = "checkout.session.completed",
) -> bytes:
    """Serialized checkout.session.completed event."""
    session = {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": f"pi_{session_id}",
        "customer": "cus_123",
        "customer_details": {"email": email, "name": name},
        "amount_total": amount,
        "currency": "usd",
        "created": 1717000000,
        "payment_link": payment_link,
        "payment_status": "paid",
        "client_reference_id": client_reference_id,
        "metadata": metadata or {},
    }
    event = {
        "id": f"evt_{session_id}",
        "object": "event",
        "type": event_type,
        "data": {"object": session},
    }
    return json.dumps(event).encode()


# ── Fake CMS ──────────────────────────────────────────────────────────────


class FakeCMS:
    """
    In-process WordPress REST stand-in for httpx.MockTransport.

    ready_after: GET probes that return an uninitialized field group before
    the record reports its custom fields.
    """

    def __init__(
        self,
        ready_after: int = 0,
        create_status: int = 201,
        update_status: int = 200,
        failing_media: tuple[str, ...] = (),
    ):
        self.ready_after = ready_after
        self.create_status = create_status
        self.update_status = update_status
        self.failing_media = failing_media

        self.records: dict[int, dict[str, Any]] = {}
        self.media: dict[int, str] = {}
        self.probes: dict[int, int] = {}
        self.updates: list[tuple[int, dict[str, Any]]] = []
        self._next_id = 100
        self._next_media_id = 500

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/wp-json/wp/v2")

        if path == "/appraisals" and request.method == "POST":
            return self._create(request)
        if path == "/appraisals" and request.method == "GET":
            return httpx.Response(200, json=[])
        if path == "/media" and request.method == "POST":
            return self._upload(request)

        match = re.fullmatch(r"/appraisals/(\d+)", path)
        if match:
            record_id = int(match.group(1))
            if request.method == "GET":
                return self._probe(record_id)
            return self._update(record_id, request)

        return httpx.Response(404, json={"code": "rest_no_route"})

    def _create(self, request: httpx.Request) -> httpx.Response:
        if self.create_status >= 400:
            return httpx.Response(self.create_status, json={"code": "rest_cannot_create"})
        record_id = self._next_id
        self._next_id += 1
        self.records[record_id] = {**json.loads(request.content), "acf": {}}
        return httpx.Response(self.create_status, json={"id": record_id})

    def _probe(self, record_id: int) -> httpx.Response:
        if record_id not in self.records:
            return httpx.Response(404, json={"code": "rest_post_invalid_id"})
        self.probes[record_id] = self.probes.get(record_id, 0) + 1
        if self.probes[record_id] <= self.ready_after:
            return httpx.Response(200, json={"id": record_id, "acf": []})
        return httpx.Response(200, json={"id": record_id, "acf": self.records[record_id]["acf"]})

    def _update(self, record_id: int, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.updates.append((record_id, payload))
        if self.update_status >= 400:
            return httpx.Response(self.update_status, json={"code": "rest_update_failed"})
        self.records[record_id]["acf"].update(payload.get("acf", {}))
        if "status" in payload:
            self.records[record_id]["status"] = payload["status"]
        return httpx.Response(200, json={"id": record_id})

    def _upload(self, request: httpx.Request) -> httpx.Response:
        found = re.search(rb'filename="([^"]+)"', request.content)
        filename = found.group(1).decode() if found else "upload.jpg"
        if any(filename.startswith(prefix) for prefix in self.failing_media):
            return httpx.Response(500, json={"code": "upload_error"})
        media_id = self._next_media_id
        self._next_media_id += 1
        self.media[media_id] = filename
        return httpx.Response(201, json={
            "id": media_id,
            "source_url": f"https://cms.example.com/wp-content/uploads/{filename}",
        })

    def metadata_updates(self, record_id: int) -> list[dict[str, Any]]:
        return [payload for rid, payload in self.updates if rid == record_id]


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        stripe_secret_key_test="sk_test_dummy",
        stripe_secret_key_live="sk_live_dummy",
        stripe_webhook_secret_test=TEST_WEBHOOK_SECRET,
        stripe_webhook_secret_live=LIVE_WEBHOOK_SECRET,
        stripe_shared_secret="shared-secret",
        sales_spreadsheet_id="sales-sheet",
        pending_spreadsheet_id="pending-sheet",
        log_spreadsheet_id="log-sheet",
        sendgrid_api_key="SG.dummy",
        email_sender="info@appraisily.com",
        sendgrid_template_id="d-payment",
        sendgrid_bulk_template_id="d-bulk",
        admin_email="admin@appraisily.com",
        wordpress_api_url=CMS_API_URL,
        wordpress_username="api-user",
        wordpress_app_password="app-password",
        backup_bucket="image-backups",
        bulk_bucket="bulk-bucket",
        crm_topic="crm-topic",
        environment="Test",
        cms_init_backoff_seconds=0,
    )


@pytest.fixture()
def spreadsheet() -> InMemorySpreadsheet:
    return InMemorySpreadsheet()


@pytest.fixture()
def backup_store() -> InMemoryObjectStore:
    return InMemoryObjectStore("image-backups")


@pytest.fixture()
def bulk_store() -> InMemoryObjectStore:
    return InMemoryObjectStore("bulk-bucket")


@pytest.fixture()
def publisher() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture()
def cms() -> FakeCMS:
    return FakeCMS()


@pytest.fixture()
def content(settings: Settings, cms: FakeCMS) -> ContentRepository:
    return ContentRepository(
        settings,
        client=httpx.AsyncClient(transport=httpx.MockTransport(cms)),
    )


@pytest.fixture()
def sendgrid_client() -> MagicMock:
    client = MagicMock()
    client.send.return_value = MagicMock(status_code=202, headers={"X-Message-Id": "msg-1"})
    return client


@pytest.fixture()
def notifier(settings: Settings, sendgrid_client: MagicMock) -> NotificationSender:
    return NotificationSender(settings, client=sendgrid_client)


@pytest.fixture()
def container(
    settings: Settings,
    spreadsheet: InMemorySpreadsheet,
    backup_store: InMemoryObjectStore,
    bulk_store: InMemoryObjectStore,
    publisher: InMemoryEventPublisher,
    content: ContentRepository,
    notifier: NotificationSender,
) -> ServiceContainer:
    return build_services(
        settings,
        spreadsheet=spreadsheet,
        backup_store=backup_store,
        bulk_store=bulk_store,
        publisher=publisher,
        content=content,
        notifier=notifier,
        stripe_client=StripeClient(settings),
    )


@pytest.fixture()
def jpeg_bytes() -> bytes:
    """Small valid JPEG."""
    output = io.BytesIO()
    Image.new("RGB", (64, 48), (180, 40, 40)).save(output, format="JPEG")
    return output.getvalue()
