# services/notification_sender.py
# ============================================================================
# APPRAISAL FULFILLMENT - EMAIL NOTIFICATIONS
# ============================================================================
# SendGrid dynamic-template mail to customers and a plain alert to the
# admin inbox. The SDK is synchronous; sends run in the default executor.
# Failures raise; the orchestrator treats every send as best-effort.
# ============================================================================

import asyncio
from datetime import datetime, timezone
from html import escape
from typing import Any, Optional

import structlog
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from config import Settings
from errors import ConfigurationError
from schemas.fulfillment import PaymentEvent, Submission


class NotificationSender:
    def __init__(self, settings: Settings, client: Any = None):
        self.settings = settings
        self._client = client
        self._logger = structlog.get_logger().bind(component="notification_sender")

    def _get_client(self):
        if self._client is None:
            if not self.settings.sendgrid_api_key:
                raise ConfigurationError("SENDGRID_API_KEY is not configured")
            self._client = SendGridAPIClient(self.settings.sendgrid_api_key)
        return self._client

    @property
    def configured(self) -> bool:
        return bool(self._client is not None or self.settings.sendgrid_api_key) and bool(
            self.settings.email_sender
        )

    async def _send(self, message: Mail, kind: str, recipient: str) -> Optional[str]:
        client = self._get_client()
        try:
            response = await asyncio.get_running_loop().run_in_executor(None, client.send, message)
        except Exception as e:
            self._logger.error("email_failed", kind=kind, recipient=recipient, error=str(e))
            raise

        headers = getattr(response, "headers", None) or {}
        message_id = headers.get("X-Message-Id")
        self._logger.info(
            "email_sent",
            kind=kind,
            recipient=recipient,
            status_code=getattr(response, "status_code", None),
            message_id=message_id,
        )
        return message_id

    def _template_message(self, to_email: str, template_id: str, data: dict[str, Any]) -> Mail:
        message = Mail(from_email=self.settings.email_sender, to_emails=to_email)
        message.template_id = template_id
        message.dynamic_template_data = data
        return message

    async def send_payment_confirmation(self, event: PaymentEvent) -> Optional[str]:
        message = self._template_message(
            event.customer.email,
            self.settings.sendgrid_template_id,
            {
                "customer_name": event.customer.name,
                "session_id": event.id,
                "current_year": datetime.now(timezone.utc).year,
            },
        )
        return await self._send(message, "payment_confirmation", event.customer.email)

    async def send_bulk_confirmation(
        self,
        event: PaymentEvent,
        items_count: int,
        appraisal_type: str,
    ) -> Optional[str]:
        message = self._template_message(
            event.customer.email,
            self.settings.sendgrid_bulk_template_id,
            {
                "customer_name": event.customer.name,
                "session_id": event.id,
                "items_count": items_count,
                "appraisal_type": appraisal_type,
                "current_year": datetime.now(timezone.utc).year,
            },
        )
        return await self._send(message, "bulk_confirmation", event.customer.email)

    async def send_submission_notification(
        self,
        submission: Submission,
        edit_url: str,
    ) -> Optional[str]:
        """Alert the admin inbox that a submission is ready for review."""
        customer = submission.customer_name or "Not provided"
        text = (
            "New appraisal submission received:\n\n"
            f"Session ID: {submission.session_id}\n"
            f"Customer: {customer}\n"
            f"Email: {submission.customer_email}\n\n"
            f"View submission: {edit_url}\n"
        )
        html = (
            "<h2>New Appraisal Submission</h2>"
            "<p>A new appraisal submission has been received.</p>"
            "<ul>"
            f"<li><strong>Session ID:</strong> {escape(submission.session_id)}</li>"
            f"<li><strong>Customer:</strong> {escape(customer)}</li>"
            f"<li><strong>Email:</strong> {escape(submission.customer_email)}</li>"
            "</ul>"
            f'<p><a href="{escape(edit_url)}">View submission in WordPress</a></p>'
        )
        message = Mail(
            from_email=self.settings.email_sender,
            to_emails=self.settings.admin_email,
            subject=f"New Appraisal Submission - {submission.session_id}",
            plain_text_content=text,
            html_content=html,
        )
        return await self._send(message, "submission_notification", self.settings.admin_email)
