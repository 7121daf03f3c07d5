# services/__init__.py
# ============================================================================
# APPRAISAL FULFILLMENT - SERVICES MODULE
# ============================================================================
# Outbound integrations: CMS, email, CRM events, appraisers backend, error
# log, bulk intake
# ============================================================================

from services.content_repository import ContentRepository
from services.notification_sender import NotificationSender
from services.event_publisher import (
    CrmMessage,
    EventPublisher,
    IEventPublisher,
    InMemoryEventPublisher,
    RabbitMQEventPublisher,
)
from services.appraisers_client import AppraisersBackendClient
from services.error_reporter import ErrorReporter
from services.bulk_submissions import AppraisalType, BulkSubmissionService

__all__ = [
    # CMS
    "ContentRepository",
    # Email
    "NotificationSender",
    # CRM events
    "CrmMessage",
    "EventPublisher",
    "IEventPublisher",
    "InMemoryEventPublisher",
    "RabbitMQEventPublisher",
    # Appraisers backend
    "AppraisersBackendClient",
    # Error log
    "ErrorReporter",
    # Bulk intake
    "AppraisalType",
    "BulkSubmissionService",
]
