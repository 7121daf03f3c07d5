"""
Fulfillment Orchestrator
========================
Drives one payment event or one customer submission through the pipeline.

Payment webhook:
    verify -> dedup -> sales row -> pending row -> confirmation email -> CRM

Submission:
    dedup -> start backup -> (pending row || draft record) -> GCS SAVED
    -> [background] media -> attach -> MEDIA UPLOADED -> finalize
    -> admin email -> CRM + appraisers backend -> join backup -> done

Failure handling:
- Fatal to the request: signature, payload, draft creation, sales write
- Fatal to a stage: one asset's CMS upload, a pending-row update
- Best-effort: email, CRM publish, appraisers backend, backup copy
Every failure branch goes through the ErrorReporter in the background.

pip install pydantic structlog
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from config import Settings
from errors import SubmissionValidationError
from pipeline.media_pipeline import MediaPipeline
from pipeline.signature_verifier import SignatureVerifier, VerifiedEvent
from pipeline.stripe_client import StripeClient
from schemas.fulfillment import (
    AssetKey,
    BackupResult,
    ContentRecord,
    FulfillmentResult,
    FulfillmentRun,
    FulfillmentState,
    FulfillmentStatus,
    PaymentEvent,
    PaymentMode,
    PendingFulfillment,
    Severity,
    Submission,
)
from services.appraisers_client import AppraisersBackendClient
from services.bulk_submissions import BulkSubmissionService
from services.content_repository import ContentRepository
from services.error_reporter import ErrorReporter
from services.event_publisher import EventPublisher
from services.notification_sender import NotificationSender
from storage.ledger_store import LedgerStore
from tasks.background import BackgroundTaskRegistry


CHECKOUT_COMPLETED = "checkout.session.completed"


class WebhookOutcome(BaseModel):
    status: str
    event_type: str
    session_id: Optional[str] = None
    mode: Optional[PaymentMode] = None
    state: Optional[FulfillmentState] = None


WebhookHandler = Callable[[VerifiedEvent], Awaitable[WebhookOutcome]]


class FulfillmentOrchestrator:
    """
    Coordinates the ledger, CMS, media, email and event-bus components.

    Holds no per-event state between calls; the only shared state is the
    ledger's duplicate-id cache.
    """

    def __init__(
        self,
        settings: Settings,
        verifier: SignatureVerifier,
        ledger: LedgerStore,
        content: ContentRepository,
        media: MediaPipeline,
        notifier: NotificationSender,
        events: EventPublisher,
        reporter: ErrorReporter,
        tasks: BackgroundTaskRegistry,
        appraisers: Optional[AppraisersBackendClient] = None,
        bulk: Optional[BulkSubmissionService] = None,
        stripe_client: Optional[StripeClient] = None,
    ):
        self.settings = settings
        self.verifier = verifier
        self.ledger = ledger
        self.content = content
        self.media = media
        self.notifier = notifier
        self.events = events
        self.reporter = reporter
        self.tasks = tasks
        self.appraisers = appraisers
        self.bulk = bulk
        self.stripe = stripe_client

        self._handlers: dict[str, WebhookHandler] = {
            CHECKOUT_COMPLETED: self._handle_checkout_completed,
        }
        self._base_logger = structlog.get_logger()

    def _get_logger(self, session_id: Optional[str] = None):
        return self._base_logger.bind(component="orchestrator", session_id=session_id)

    # =========================================================================
    # REPORTING HELPERS
    # =========================================================================

    def _report(
        self,
        severity: Severity,
        error_code: str,
        message: str,
        session_id: Optional[str],
        error: Optional[BaseException] = None,
        user_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        **context: Any,
    ) -> None:
        entry = self.reporter.build_entry(
            severity,
            "orchestrator",
            error_code,
            message,
            error=error,
            user_id=user_id,
            endpoint=endpoint,
            context={"session_id": session_id, **context},
        )
        self.reporter.report_in_background(entry)

    async def _attempt(
        self,
        operation: Awaitable[Any],
        *,
        stage: str,
        error_code: str,
        session_id: str,
        severity: Severity = Severity.WARNING,
        user_id: Optional[str] = None,
    ) -> Any:
        """Await a non-fatal operation; report and return None if it fails."""
        try:
            return await operation
        except Exception as e:
            self._get_logger(session_id).warning(
                "stage_failed",
                stage=stage,
                error=str(e),
                status_code=getattr(e, "status_code", None),
            )
            self._report(
                severity,
                error_code,
                str(e),
                session_id,
                error=e,
                user_id=user_id,
                stage=stage,
                status_code=getattr(e, "status_code", None),
                body=getattr(e, "body", None),
            )
            return None

    # =========================================================================
    # PAYMENT WEBHOOK
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify and process one Stripe delivery."""
        try:
            verified = self.verifier.verify(raw_body, signature)
        except Exception as e:
            self._report(
                Severity.ERROR,
                "WEBHOOK_VERIFICATION_ERROR",
                str(e),
                None,
                error=e,
                endpoint="/stripe-webhook",
            )
            raise

        handler = self._handlers.get(verified.event_type)
        if handler is None:
            self._get_logger().info("webhook_ignored", event_type=verified.event_type)
            return WebhookOutcome(status="ignored", event_type=verified.event_type, mode=verified.mode)
        return await handler(verified)

    async def _handle_checkout_completed(self, verified: VerifiedEvent) -> WebhookOutcome:
        try:
            event = PaymentEvent.from_checkout_session(verified.data_object, verified.mode)
        except Exception as e:
            self._report(
                Severity.ERROR,
                "INVALID_PAYLOAD",
                str(e),
                verified.data_object.get("id"),
                error=e,
                user_id=(verified.data_object.get("customer_details") or {}).get("email"),
                endpoint="/stripe-webhook",
                mode=verified.mode.value,
            )
            raise

        log = self._get_logger(event.id)
        run = FulfillmentRun(session_id=event.id)

        try:
            duplicate = await self.ledger.is_duplicate(event.id)
        except Exception as e:
            run.transition_to(FulfillmentState.ERRORED)
            self._report(
                Severity.ERROR,
                "PAYMENT_PROCESSING_ERROR",
                str(e),
                event.id,
                error=e,
                user_id=event.customer.email,
                endpoint="/stripe-webhook",
                mode=event.mode.value,
                stage="dedup",
            )
            raise

        if duplicate:
            run.transition_to(FulfillmentState.DEDUPLICATED)
            self._report(
                Severity.WARNING,
                "DuplicateSession",
                f"Duplicate session ID: {event.id}",
                event.id,
                user_id=event.customer.email,
                endpoint="/stripe-webhook",
                mode=event.mode.value,
            )
            log.warning("payment_deduplicated", mode=event.mode.value)
            return WebhookOutcome(
                status="duplicate",
                event_type=verified.event_type,
                session_id=event.id,
                mode=event.mode,
                state=run.state,
            )

        run.transition_to(FulfillmentState.VERIFIED)
        log.info("payment_accepted", mode=event.mode.value, bulk=event.is_bulk, amount=event.amount)

        try:
            if event.is_bulk:
                await self._fulfill_bulk_payment(event, run)
            else:
                await self._fulfill_payment(event, run)
        except Exception as e:
            run.transition_to(FulfillmentState.ERRORED)
            self._report(
                Severity.ERROR,
                "PAYMENT_PROCESSING_ERROR",
                str(e),
                event.id,
                error=e,
                user_id=event.customer.email,
                endpoint="/stripe-webhook",
                mode=event.mode.value,
            )
            raise

        return WebhookOutcome(
            status="processed",
            event_type=verified.event_type,
            session_id=event.id,
            mode=event.mode,
            state=run.state,
        )

    async def _fulfill_payment(self, event: PaymentEvent, run: FulfillmentRun) -> None:
        product_name = self.settings.product_name(event.product_ref)

        await self.ledger.record_sale(event)
        await self.ledger.record_pending_fulfillment(PendingFulfillment(
            session_id=event.id,
            customer_email=event.customer.email,
            customer_name=event.customer.name,
            product_name=product_name,
            status=FulfillmentStatus.PENDING_INFO.value,
            created_at=event.created_at,
        ))
        run.transition_to(FulfillmentState.LEDGER_WRITTEN)

        await self._attempt(
            self.notifier.send_payment_confirmation(event),
            stage="notify",
            error_code="EMAIL_SEND_ERROR",
            session_id=event.id,
            user_id=event.customer.email,
        )
        run.transition_to(FulfillmentState.NOTIFIED)

        await self._attempt(
            self.events.publish_payment(event, product_name),
            stage="publish",
            error_code="PUBSUB_PUBLISH_ERROR",
            session_id=event.id,
            user_id=event.customer.email,
        )
        run.transition_to(FulfillmentState.PUBLISHED)
        run.transition_to(FulfillmentState.DONE)

    async def _fulfill_bulk_payment(self, event: PaymentEvent, run: FulfillmentRun) -> None:
        bulk_session_id = event.client_reference_id or ""
        appraisal_type = event.metadata.get("appraisal_type") or "Regular"

        items_count = int(event.metadata.get("items_count") or 0)
        if not items_count and self.bulk is not None:
            items_count = await self.bulk.count_items(bulk_session_id)

        await self.ledger.record_sale(event)
        await self.ledger.record_pending_fulfillment(PendingFulfillment(
            session_id=event.id,
            customer_email=event.customer.email,
            customer_name=event.customer.name,
            product_name=f"Bulk Appraisal ({items_count} items) - {appraisal_type}",
            status=f"BULK ORDER ({items_count} items)",
            content_edit_url=f"{self.settings.bulk_bucket}/{bulk_session_id}",
            created_at=event.created_at,
        ))
        run.transition_to(FulfillmentState.LEDGER_WRITTEN)

        await self._attempt(
            self.notifier.send_bulk_confirmation(event, items_count, appraisal_type),
            stage="notify",
            error_code="EMAIL_SEND_ERROR",
            session_id=event.id,
            user_id=event.customer.email,
        )
        run.transition_to(FulfillmentState.NOTIFIED)

        await self._attempt(
            self.events.publish_payment(event, f"Bulk Appraisal - {appraisal_type}"),
            stage="publish",
            error_code="PUBSUB_PUBLISH_ERROR",
            session_id=event.id,
            user_id=event.customer.email,
        )
        run.transition_to(FulfillmentState.PUBLISHED)
        run.transition_to(FulfillmentState.DONE)

    # =========================================================================
    # SUBMISSION INTAKE
    # =========================================================================

    async def resolve_customer(self, submission: Submission) -> Submission:
        """Fill in customer email/name from the checkout session when missing."""
        if submission.customer_email:
            return submission
        try:
            return await self._customer_from_session(submission)
        except Exception as e:
            self._report(
                Severity.ERROR,
                "CUSTOMER_LOOKUP_ERROR",
                str(e),
                submission.session_id,
                error=e,
                endpoint="/api/appraisals",
            )
            raise

    async def _customer_from_session(self, submission: Submission) -> Submission:
        if self.stripe is None:
            raise SubmissionValidationError("Customer email is required")

        session = await self.stripe.retrieve_session(submission.session_id, PaymentMode.LIVE)
        details = session.get("customer_details") or {}
        if not details.get("email"):
            raise SubmissionValidationError("Customer email not found in session")
        return submission.model_copy(update={
            "customer_email": details["email"],
            "customer_name": submission.customer_name or details.get("name") or "",
        })

    async def handle_submission(
        self,
        submission: Submission,
        wait_for_completion: bool = False,
    ) -> FulfillmentResult:
        """
        Create the draft record and hand the rest to a background task.

        With wait_for_completion the background stages are awaited and the
        final result is returned instead.
        """
        session_id = submission.session_id
        log = self._get_logger(session_id)
        run = FulfillmentRun(session_id=session_id)

        try:
            submitted = await self.ledger.is_submitted(session_id)
        except Exception as e:
            run.transition_to(FulfillmentState.ERRORED)
            self._report(
                Severity.ERROR,
                "APPRAISAL_SUBMISSION_ERROR",
                str(e),
                session_id,
                error=e,
                user_id=submission.customer_email,
                endpoint="/api/appraisals",
                stage="dedup",
            )
            raise

        if submitted:
            run.transition_to(FulfillmentState.DEDUPLICATED)
            self._report(
                Severity.WARNING,
                "DuplicateSubmission",
                f"Submission already recorded for session {session_id}",
                session_id,
                user_id=submission.customer_email,
                endpoint="/api/appraisals",
            )
            log.warning("submission_deduplicated")
            return FulfillmentResult(session_id=session_id, state=run.state, history=run.history)

        run.transition_to(FulfillmentState.VERIFIED)

        backup_task = self.tasks.spawn(
            self.media.backup(session_id, submission.files, {
                "customer_email": submission.customer_email,
                "customer_name": submission.customer_name,
                "description": submission.description or "",
                "payment_id": submission.payment_ref,
            }),
            name=f"backup-{session_id}",
        )

        ledger_outcome, draft = await asyncio.gather(
            self.ledger.record_submission(PendingFulfillment(
                session_id=session_id,
                customer_email=submission.customer_email,
                customer_name=submission.customer_name,
                product_name="Regular",
                status=FulfillmentStatus.SUBMITTED.value,
                description=submission.description or "",
            )),
            self.content.create_draft(submission),
            return_exceptions=True,
        )

        if isinstance(draft, BaseException):
            run.transition_to(FulfillmentState.ERRORED)
            self._report(
                Severity.ERROR,
                "APPRAISAL_CREATION_ERROR",
                str(draft),
                session_id,
                error=draft,
                user_id=submission.customer_email,
                endpoint="/api/appraisals",
                status_code=getattr(draft, "status_code", None),
            )
            raise draft

        if isinstance(ledger_outcome, BaseException):
            self._report(
                Severity.ERROR,
                "APPRAISAL_SUBMISSION_ERROR",
                str(ledger_outcome),
                session_id,
                error=ledger_outcome,
                user_id=submission.customer_email,
                stage="ledger",
            )
        else:
            run.transition_to(FulfillmentState.LEDGER_WRITTEN)
        run.transition_to(FulfillmentState.CONTENT_DRAFTED)
        log.info("submission_drafted", content_id=draft.id, initialized=draft.initialized)

        await self._attempt(
            self.ledger.update_status(session_id, {
                "status": FulfillmentStatus.GCS_SAVED,
                "content_edit_url": draft.edit_url,
            }),
            stage="ledger_status",
            error_code="SHEETS_UPDATE_ERROR",
            session_id=session_id,
            severity=Severity.ERROR,
        )

        completion = self._complete_submission(submission, draft, run, backup_task)
        if wait_for_completion:
            return await completion

        self.tasks.spawn(completion, name=f"submission-{session_id}")
        return FulfillmentResult(
            session_id=session_id,
            state=run.state,
            content_id=draft.id,
            edit_url=draft.edit_url,
            history=run.history,
        )

    async def _complete_submission(
        self,
        submission: Submission,
        record: ContentRecord,
        run: FulfillmentRun,
        backup_task: "asyncio.Task[BackupResult]",
    ) -> FulfillmentResult:
        session_id = submission.session_id
        log = self._get_logger(session_id)
        customer_fields = {
            "customer_name": submission.customer_name,
            "customer_email": submission.customer_email,
            "session_id": session_id,
        }
        result = FulfillmentResult(
            session_id=session_id,
            state=run.state,
            content_id=record.id,
            edit_url=record.edit_url,
        )

        try:
            run.transition_to(FulfillmentState.MEDIA_PROCESSING)
            assets = await self.media.process(session_id, submission.files, backup_task=backup_task)

            # Also the retry for a record whose fields were not ready at creation.
            attached = await self.content.attach_media(
                record.id,
                {key: asset.cms_id for key, asset in assets.items()},
                customer_fields,
            )
            if not attached:
                self._report(
                    Severity.WARNING,
                    "CONTENT_METADATA_ERROR",
                    f"Media metadata not written for post {record.id}",
                    session_id,
                    user_id=submission.customer_email,
                    content_id=record.id,
                )

            media_urls = {
                key.value: (assets[key].cms_url or "") if key in assets else ""
                for key in AssetKey
            }
            result.media = {key: media_urls[key.value] for key in AssetKey}
            result.assets = assets

            await self._attempt(
                self.ledger.update_media_urls(session_id, media_urls),
                stage="ledger_media",
                error_code="SHEETS_UPDATE_ERROR",
                session_id=session_id,
                severity=Severity.ERROR,
            )
            await self._attempt(
                self.ledger.update_status(session_id, {"status": FulfillmentStatus.MEDIA_UPLOADED}),
                stage="ledger_status",
                error_code="SHEETS_UPDATE_ERROR",
                session_id=session_id,
                severity=Severity.ERROR,
            )

            await self.content.finalize(record.id, {"processing_status": "completed"})
            run.transition_to(FulfillmentState.CONTENT_FINALIZED)

            await self._attempt(
                self.notifier.send_submission_notification(submission, record.edit_url),
                stage="notify",
                error_code="EMAIL_SEND_ERROR",
                session_id=session_id,
                user_id=submission.customer_email,
            )
            run.transition_to(FulfillmentState.NOTIFIED)

            await self._attempt(
                self.events.publish_submission(
                    session_id,
                    submission.customer_email,
                    submission.customer_name,
                    record.edit_url,
                    media_urls,
                ),
                stage="publish",
                error_code="PUBSUB_PUBLISH_ERROR",
                session_id=session_id,
                user_id=submission.customer_email,
            )
            if self.appraisers is not None:
                await self._attempt(
                    self.appraisers.notify_submission({
                        "session_id": session_id,
                        "customer_email": submission.customer_email,
                        "customer_name": submission.customer_name,
                        "description": submission.description or "",
                        "payment_id": submission.payment_ref,
                        "post_id": str(record.id),
                        "wordpress_url": record.edit_url,
                        "post_edit_url": record.edit_url,
                        "images": media_urls,
                    }),
                    stage="appraisers_backend",
                    error_code="BACKEND_NOTIFICATION_ERROR",
                    session_id=session_id,
                    user_id=submission.customer_email,
                )
            run.transition_to(FulfillmentState.PUBLISHED)

            backup = await self._attempt(
                backup_task,
                stage="backup",
                error_code="GCS_UPLOAD_ERROR",
                session_id=session_id,
            )
            if backup is not None:
                MediaPipeline.apply_backup(assets, backup)
                result.backup = backup
                if backup.folder_url:
                    await self._attempt(
                        self.ledger.update_backup_url(session_id, backup.folder_url),
                        stage="ledger_backup",
                        error_code="SHEETS_UPDATE_ERROR",
                        session_id=session_id,
                    )

            run.transition_to(FulfillmentState.DONE)
            log.info(
                "submission_completed",
                content_id=record.id,
                states=[state.value for state in run.history],
            )
        except Exception as e:
            run.transition_to(FulfillmentState.ERRORED)
            log.error("submission_failed", error=str(e), state_history=[s.value for s in run.history])
            self._report(
                Severity.ERROR,
                "BACKGROUND_PROCESSING_ERROR",
                str(e),
                session_id,
                error=e,
                user_id=submission.customer_email,
                content_id=record.id,
            )
            await self.content.attach_media(record.id, {}, customer_fields)

        result.state = run.state
        result.history = list(run.history)
        return result
