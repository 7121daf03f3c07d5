# api/dependencies.py
# ============================================================================
# APPRAISAL FULFILLMENT - SERVICE WIRING
# ============================================================================
# Builds every pipeline component from one Settings instance. Tests build a
# ServiceContainer by hand with in-memory parts instead.
# ============================================================================

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from config import Settings
from pipeline.image_normalizer import ImageNormalizer
from pipeline.media_pipeline import MediaPipeline
from pipeline.orchestrator import FulfillmentOrchestrator
from pipeline.signature_verifier import SignatureVerifier
from pipeline.stripe_client import StripeClient
from services.appraisers_client import AppraisersBackendClient
from services.bulk_submissions import BulkSubmissionService
from services.content_repository import ContentRepository
from services.error_reporter import ErrorReporter
from services.event_publisher import (
    EventPublisher,
    IEventPublisher,
    InMemoryEventPublisher,
    RabbitMQEventPublisher,
)
from services.notification_sender import NotificationSender
from storage.ledger_store import LedgerStore
from storage.object_store import IObjectStore, S3ObjectStore
from storage.sheets_client import GoogleSheetsClient, ISpreadsheet
from tasks.background import BackgroundTaskRegistry


@dataclass
class ServiceContainer:
    settings: Settings
    spreadsheet: ISpreadsheet
    ledger: LedgerStore
    content: ContentRepository
    media: MediaPipeline
    notifier: NotificationSender
    publisher: IEventPublisher
    events: EventPublisher
    reporter: ErrorReporter
    tasks: BackgroundTaskRegistry
    orchestrator: FulfillmentOrchestrator
    bulk: BulkSubmissionService
    stripe: StripeClient
    appraisers: Optional[AppraisersBackendClient] = None

    async def startup(self) -> None:
        await self.publisher.connect()

    async def shutdown(self, drain_timeout: Optional[float] = 60.0) -> None:
        await self.tasks.drain(timeout=drain_timeout)
        await self.publisher.disconnect()
        await self.content.close()
        if self.appraisers is not None:
            await self.appraisers.close()


def build_services(
    settings: Settings,
    spreadsheet: Optional[ISpreadsheet] = None,
    backup_store: Optional[IObjectStore] = None,
    bulk_store: Optional[IObjectStore] = None,
    publisher: Optional[IEventPublisher] = None,
    content: Optional[ContentRepository] = None,
    notifier: Optional[NotificationSender] = None,
    appraisers: Optional[AppraisersBackendClient] = None,
    stripe_client: Optional[StripeClient] = None,
) -> ServiceContainer:
    """Wire the pipeline. Any component may be supplied pre-built."""
    tasks = BackgroundTaskRegistry()
    spreadsheet = spreadsheet or GoogleSheetsClient(settings.google_credentials_path)
    backup_store = backup_store or S3ObjectStore(
        settings.backup_bucket,
        endpoint_url=settings.storage_endpoint_url,
        public_base_url=settings.storage_public_base_url,
    )
    bulk_store = bulk_store or S3ObjectStore(
        settings.bulk_bucket,
        endpoint_url=settings.storage_endpoint_url,
        public_base_url=settings.storage_public_base_url,
    )
    if publisher is None:
        publisher = (
            RabbitMQEventPublisher(settings.rabbitmq_url, settings.exchange_name)
            if settings.crm_topic
            else InMemoryEventPublisher()
        )

    reporter = ErrorReporter(spreadsheet, settings, tasks=tasks)
    ledger = LedgerStore(spreadsheet, settings)
    content = content or ContentRepository(settings)
    media = MediaPipeline(
        content,
        backup_store,
        reporter,
        ImageNormalizer(settings.image_max_dimension, settings.image_jpeg_quality),
    )
    notifier = notifier or NotificationSender(settings)
    events = EventPublisher(publisher, settings)
    stripe_client = stripe_client or StripeClient(settings)
    if appraisers is None and settings.appraisers_backend_url:
        appraisers = AppraisersBackendClient(settings)
    bulk = BulkSubmissionService(bulk_store, stripe_client, events, settings)

    orchestrator = FulfillmentOrchestrator(
        settings=settings,
        verifier=SignatureVerifier(settings),
        ledger=ledger,
        content=content,
        media=media,
        notifier=notifier,
        events=events,
        reporter=reporter,
        tasks=tasks,
        appraisers=appraisers,
        bulk=bulk,
        stripe_client=stripe_client,
    )

    return ServiceContainer(
        settings=settings,
        spreadsheet=spreadsheet,
        ledger=ledger,
        content=content,
        media=media,
        notifier=notifier,
        publisher=publisher,
        events=events,
        reporter=reporter,
        tasks=tasks,
        orchestrator=orchestrator,
        bulk=bulk,
        stripe=stripe_client,
        appraisers=appraisers,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
