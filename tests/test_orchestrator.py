"""End-to-end tests for payment webhooks and submissions through the orchestrator."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from api.dependencies import build_services
from conftest import LIVE_WEBHOOK_SECRET, TEST_WEBHOOK_SECRET, FakeCMS, checkout_event, sign_payload
from errors import AuthenticationError, ContentCreationError, InvalidPayloadError
from schemas.fulfillment import (
    AssetKey,
    FulfillmentRun,
    FulfillmentState,
    PendingFulfillment,
    Submission,
    UploadedFile,
)
from storage.sheets_client import InMemorySpreadsheet, SheetRef


def _log_rows(container) -> list[list]:
    return container.spreadsheet.rows(container.reporter.sheet)


async def _deliver(container, payload: bytes, secret: str = TEST_WEBHOOK_SECRET):
    return await container.orchestrator.handle_webhook(payload, sign_payload(payload, secret))


def _submission(jpeg: bytes, session_id: str = "abc 123", **files: bytes) -> Submission:
    uploads = {AssetKey.MAIN: UploadedFile(key=AssetKey.MAIN, content=jpeg)}
    for name, content in files.items():
        uploads[AssetKey(name)] = UploadedFile(key=AssetKey(name), content=content)
    return Submission(
        session_id=session_id,
        customer_email="ana@example.com",
        customer_name="Ana Garcia",
        description="Oil on canvas, signed lower right",
        files=uploads,
    )


class TestPaymentWebhook:
    @pytest.mark.asyncio
    async def test_regular_payment_fulfilled(self, container, publisher, sendgrid_client):
        outcome = await _deliver(container, checkout_event())
        await container.tasks.drain()

        assert outcome.status == "processed"
        assert outcome.state == FulfillmentState.DONE
        sales = container.spreadsheet.rows(container.ledger.sales)
        assert sales[0][0] == "cs_test_abc123"
        assert sales[0][5] == 59.0
        assert sales[0][7] == "Test"

        pending = container.spreadsheet.rows(container.ledger.pending)
        assert pending[0][1:6] == ["Regular", "cs_test_abc123", "ana@example.com", "Ana Garcia", "PENDING INFO"]

        sendgrid_client.send.assert_called_once()
        assert [(topic, msg.crmProcess) for topic, msg in publisher.published] == [
            ("crm-topic", "stripePayment"),
        ]
        assert _log_rows(container) == []

    @pytest.mark.asyncio
    async def test_live_attribution_recorded(self, container):
        outcome = await _deliver(container, checkout_event(session_id="cs_live_9"), LIVE_WEBHOOK_SECRET)
        assert outcome.mode.value == "Live"
        assert container.spreadsheet.rows(container.ledger.sales)[0][7] == "Live"

    @pytest.mark.asyncio
    async def test_unknown_payment_link_named_unknown(self, container):
        await _deliver(container, checkout_event(payment_link="plink_other"))
        assert container.spreadsheet.rows(container.ledger.pending)[0][1] == "Unknown Product"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_has_no_side_effects(self, container, publisher, sendgrid_client):
        payload = checkout_event()
        await _deliver(container, payload)
        sendgrid_client.send.reset_mock()
        published = len(publisher.published)

        outcome = await _deliver(container, payload)
        await container.tasks.drain()

        assert outcome.status == "duplicate"
        assert outcome.state == FulfillmentState.DEDUPLICATED
        assert len(container.spreadsheet.rows(container.ledger.sales)) == 1
        assert len(container.spreadsheet.rows(container.ledger.pending)) == 1
        sendgrid_client.send.assert_not_called()
        assert len(publisher.published) == published

        log = _log_rows(container)
        assert len(log) == 1
        assert log[0][1] == "Warning"
        assert log[0][3] == "DuplicateSession"

    @pytest.mark.asyncio
    async def test_email_failure_does_not_abort(self, container, publisher, sendgrid_client):
        sendgrid_client.send.side_effect = RuntimeError("sendgrid down")

        outcome = await _deliver(container, checkout_event())
        await container.tasks.drain()

        assert outcome.state == FulfillmentState.DONE
        assert len(publisher.published) == 1
        assert [row[3] for row in _log_rows(container)] == ["EMAIL_SEND_ERROR"]

    @pytest.mark.asyncio
    async def test_bad_signature_reported_and_raised(self, container):
        payload = checkout_event()
        with pytest.raises(AuthenticationError):
            await container.orchestrator.handle_webhook(payload, sign_payload(payload, "whsec_wrong"))
        await container.tasks.drain()

        assert container.spreadsheet.rows(container.ledger.sales) == []
        assert _log_rows(container)[0][3] == "WEBHOOK_VERIFICATION_ERROR"

    @pytest.mark.asyncio
    async def test_incomplete_session_rejected(self, container):
        with pytest.raises(InvalidPayloadError, match="email"):
            await _deliver(container, checkout_event(email=None))
        with pytest.raises(InvalidPayloadError, match="amount"):
            await _deliver(container, checkout_event(amount="59.00"))
        assert container.spreadsheet.rows(container.ledger.sales) == []

    @pytest.mark.asyncio
    async def test_incomplete_session_logged_as_error(self, container):
        with pytest.raises(InvalidPayloadError):
            await _deliver(container, checkout_event(email=None))
        await container.tasks.drain()

        log = _log_rows(container)
        assert [(row[1], row[3]) for row in log] == [("Error", "INVALID_PAYLOAD")]
        assert json.loads(log[0][10])["session_id"] == "cs_test_abc123"

    @pytest.mark.asyncio
    async def test_dedup_read_failure_logged_as_error(self, container, sendgrid_client):
        container.spreadsheet.read_column = AsyncMock(side_effect=RuntimeError("sheets 503"))

        with pytest.raises(RuntimeError, match="sheets 503"):
            await _deliver(container, checkout_event())
        await container.tasks.drain()

        assert container.spreadsheet.rows(container.ledger.sales) == []
        sendgrid_client.send.assert_not_called()
        assert [(row[1], row[3]) for row in _log_rows(container)] == [
            ("Error", "PAYMENT_PROCESSING_ERROR"),
        ]

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(self, container):
        outcome = await _deliver(container, checkout_event(event_type="payment_intent.created"))
        assert outcome.status == "ignored"
        assert container.spreadsheet.rows(container.ledger.sales) == []

    @pytest.mark.asyncio
    async def test_bulk_payment_branch(self, container, publisher, sendgrid_client):
        payload = checkout_event(
            session_id="cs_bulk_1",
            client_reference_id="bulk_7f3a",
            metadata={"items_count": "3", "appraisal_type": "IRS"},
        )
        outcome = await _deliver(container, payload)

        assert outcome.state == FulfillmentState.DONE
        pending = container.spreadsheet.rows(container.ledger.pending)[0]
        assert pending[1] == "Bulk Appraisal (3 items) - IRS"
        assert pending[5] == "BULK ORDER (3 items)"
        assert pending[6] == "bulk-bucket/bulk_7f3a"

        message = sendgrid_client.send.call_args.args[0].get()
        assert message["template_id"] == "d-bulk"
        _, crm = publisher.published[0]
        assert crm.payment.metadata["bulkSessionId"] == "bulk_7f3a"
        assert crm.payment.metadata["serviceType"] == "Bulk Appraisal - IRS"

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_can_both_pass_dedup(self, settings, container):
        """
        Known race: two deliveries of one session interleaving between the
        dedup read and the sales append both get recorded.
        """

        class BarrierSpreadsheet(InMemorySpreadsheet):
            """Holds every column read until both deliveries have read the sales ids."""

            def __init__(self):
                super().__init__()
                self.reads = 0
                self.both_read = asyncio.Event()

            async def read_column(self, sheet: SheetRef, column: str) -> list[str]:
                values = await super().read_column(sheet, column)
                self.reads += 1
                if self.reads >= 2:
                    self.both_read.set()
                await asyncio.wait_for(self.both_read.wait(), timeout=1)
                return values

        racy = build_services(
            settings,
            spreadsheet=BarrierSpreadsheet(),
            publisher=container.publisher,
            content=container.content,
            notifier=container.notifier,
            backup_store=container.media.backup_store,
            bulk_store=container.bulk.store,
            stripe_client=container.stripe,
        )
        payload = checkout_event()
        outcomes = await asyncio.gather(_deliver(racy, payload), _deliver(racy, payload))
        await racy.tasks.drain()

        assert [outcome.status for outcome in outcomes] == ["processed", "processed"]
        assert len(racy.spreadsheet.rows(racy.ledger.sales)) == 2


class TestSubmission:
    @pytest.mark.asyncio
    async def test_main_only_submission_completes(self, container, cms, publisher, sendgrid_client, jpeg_bytes):
        await container.ledger.record_pending_fulfillment(PendingFulfillment(
            session_id="abc 123", customer_email="ana@example.com", product_name="Regular",
        ))

        result = await container.orchestrator.handle_submission(
            _submission(jpeg_bytes), wait_for_completion=True,
        )
        await container.tasks.drain()

        assert result.state == FulfillmentState.DONE
        assert result.media[AssetKey.MAIN].startswith("https://cms.example.com/wp-content/uploads/main-")
        assert result.media[AssetKey.SIGNATURE] == ""
        assert result.media[AssetKey.AGE] == ""

        acf = cms.records[result.content_id]["acf"]
        assert acf["main"] in cms.media
        assert acf["signature"] == ""
        assert acf["age"] == ""
        assert acf["session_id"] == "abc 123"
        assert acf["processing_status"] == "completed"

        rows = container.spreadsheet.rows(container.ledger.pending)
        assert len(rows) == 1
        row = rows[0]
        assert row[5] == "MEDIA UPLOADED"
        assert row[6] == result.edit_url
        assert row[8] == "Oil on canvas, signed lower right"
        assert json.loads(row[14]) == {
            "main": result.media[AssetKey.MAIN], "signature": "", "age": "",
        }
        assert row[16] == "https://storage.googleapis.com/image-backups/abc 123/"

        admin_mail = sendgrid_client.send.call_args.args[0].get()
        assert admin_mail["subject"] == "New Appraisal Submission - abc 123"
        assert [msg.crmProcess for _, msg in publisher.published] == ["appraisalSubmission"]
        assert _log_rows(container) == []

    @pytest.mark.asyncio
    async def test_backup_joined_into_result(self, container, jpeg_bytes):
        result = await container.orchestrator.handle_submission(
            _submission(jpeg_bytes, session_id="cs_hist"), wait_for_completion=True,
        )
        assert result.state == FulfillmentState.DONE
        assert result.backup is not None
        assert set(result.backup.urls) == {AssetKey.MAIN}
        assert FulfillmentState.LEDGER_WRITTEN in result.history

    @pytest.mark.asyncio
    async def test_background_completion(self, container, jpeg_bytes):
        result = await container.orchestrator.handle_submission(_submission(jpeg_bytes, session_id="cs_bg"))

        assert result.state == FulfillmentState.CONTENT_DRAFTED
        assert result.content_id is not None
        await container.tasks.drain()
        assert container.spreadsheet.rows(container.ledger.pending)[0][5] == "MEDIA UPLOADED"

    @pytest.mark.asyncio
    async def test_repeat_submission_deduplicated(self, container, cms, jpeg_bytes):
        await container.orchestrator.handle_submission(_submission(jpeg_bytes), wait_for_completion=True)
        records = len(cms.records)

        again = await container.orchestrator.handle_submission(_submission(jpeg_bytes))
        await container.tasks.drain()

        assert again.deduplicated
        assert len(cms.records) == records
        assert [row[3] for row in _log_rows(container)] == ["DuplicateSubmission"]

    @pytest.mark.asyncio
    async def test_draft_failure_aborts_request(self, container, jpeg_bytes):
        container.content._client = httpx.AsyncClient(
            transport=httpx.MockTransport(FakeCMS(create_status=500))
        )
        with pytest.raises(ContentCreationError):
            await container.orchestrator.handle_submission(_submission(jpeg_bytes))
        await container.tasks.drain()

        assert "APPRAISAL_CREATION_ERROR" in [row[3] for row in _log_rows(container)]

    @pytest.mark.asyncio
    async def test_uninitialized_record_gets_metadata_on_attach(self, container, cms, jpeg_bytes):
        """A record whose fields were not ready at creation is filled in after media upload."""
        cms.ready_after = 99
        result = await container.orchestrator.handle_submission(
            _submission(jpeg_bytes, session_id="cs_late"), wait_for_completion=True,
        )

        acf = cms.records[result.content_id]["acf"]
        assert acf["session_id"] == "cs_late"
        assert acf["customer_email"] == "ana@example.com"
        assert acf["main"] in cms.media

    @pytest.mark.asyncio
    async def test_failed_asset_left_blank(self, container, cms, jpeg_bytes):
        cms.failing_media = ("age",)
        result = await container.orchestrator.handle_submission(
            _submission(jpeg_bytes, session_id="cs_age", age=jpeg_bytes), wait_for_completion=True,
        )
        await container.tasks.drain()

        assert result.state == FulfillmentState.DONE
        assert result.media[AssetKey.AGE] == ""
        assert cms.records[result.content_id]["acf"]["age"] == ""
        assert "MEDIA_UPLOAD_ERROR" in [row[3] for row in _log_rows(container)]

    @pytest.mark.asyncio
    async def test_all_three_assets_have_independent_outcomes(self, container, cms, backup_store, jpeg_bytes):
        """Age fails at the CMS, signature fails at backup, main succeeds at both."""
        cms.failing_media = ("age",)
        backup_store.fail_keys = {"/signature-"}

        result = await container.orchestrator.handle_submission(
            _submission(jpeg_bytes, session_id="cs_three", signature=jpeg_bytes, age=jpeg_bytes),
            wait_for_completion=True,
        )
        await container.tasks.drain()

        assert result.state == FulfillmentState.DONE
        assert set(result.assets) == set(AssetKey)
        main = result.assets[AssetKey.MAIN]
        signature = result.assets[AssetKey.SIGNATURE]
        age = result.assets[AssetKey.AGE]

        assert main.cms_id in cms.media and main.backup_url and main.error is None
        assert signature.cms_id in cms.media and signature.backup_url is None and signature.error is None
        assert age.cms_id is None and age.backup_url and age.error
        assert main.cms_id != signature.cms_id

        acf = cms.records[result.content_id]["acf"]
        assert (acf["main"], acf["signature"], acf["age"]) == (main.cms_id, signature.cms_id, "")
        assert result.media[AssetKey.AGE] == ""
        assert sorted(row[3] for row in _log_rows(container)) == ["FILE_BACKUP_ERROR", "MEDIA_UPLOAD_ERROR"]

    @pytest.mark.asyncio
    async def test_dedup_lookup_failure_logged_as_error(self, container, cms, jpeg_bytes):
        container.ledger.is_submitted = AsyncMock(side_effect=RuntimeError("sheets 503"))

        with pytest.raises(RuntimeError, match="sheets 503"):
            await container.orchestrator.handle_submission(_submission(jpeg_bytes))
        await container.tasks.drain()

        assert cms.records == {}
        assert [(row[1], row[3]) for row in _log_rows(container)] == [
            ("Error", "APPRAISAL_SUBMISSION_ERROR"),
        ]

    @pytest.mark.asyncio
    async def test_customer_lookup_failure_logged_as_error(self, container, jpeg_bytes):
        container.orchestrator.stripe = MagicMock(
            retrieve_session=AsyncMock(side_effect=RuntimeError("stripe unavailable"))
        )
        anonymous = _submission(jpeg_bytes).model_copy(update={"customer_email": ""})

        with pytest.raises(RuntimeError, match="stripe unavailable"):
            await container.orchestrator.resolve_customer(anonymous)
        await container.tasks.drain()

        assert [(row[1], row[3]) for row in _log_rows(container)] == [
            ("Error", "CUSTOMER_LOOKUP_ERROR"),
        ]

    @pytest.mark.asyncio
    async def test_failed_pending_write_not_recorded_as_written(self, container, jpeg_bytes):
        container.ledger.record_submission = AsyncMock(side_effect=RuntimeError("sheets 503"))

        result = await container.orchestrator.handle_submission(
            _submission(jpeg_bytes, session_id="cs_nowrite"), wait_for_completion=True,
        )
        await container.tasks.drain()

        assert result.state == FulfillmentState.DONE
        assert FulfillmentState.LEDGER_WRITTEN not in result.history
        assert result.history[:3] == [
            FulfillmentState.RECEIVED,
            FulfillmentState.VERIFIED,
            FulfillmentState.CONTENT_DRAFTED,
        ]
        assert "APPRAISAL_SUBMISSION_ERROR" in [row[3] for row in _log_rows(container)]


class TestFulfillmentRun:
    def test_payment_path(self):
        run = FulfillmentRun(session_id="cs_1")
        for state in (
            FulfillmentState.VERIFIED,
            FulfillmentState.LEDGER_WRITTEN,
            FulfillmentState.NOTIFIED,
            FulfillmentState.PUBLISHED,
            FulfillmentState.DONE,
        ):
            run.transition_to(state)
        assert run.finished

    def test_illegal_transition_rejected(self):
        run = FulfillmentRun(session_id="cs_1")
        with pytest.raises(ValueError):
            run.transition_to(FulfillmentState.DONE)

    def test_terminal_state_is_final(self):
        run = FulfillmentRun(session_id="cs_1").transition_to(FulfillmentState.ERRORED)
        with pytest.raises(ValueError):
            run.transition_to(FulfillmentState.VERIFIED)
