# errors.py
# ============================================================================
# APPRAISAL FULFILLMENT - ERROR TYPES
# ============================================================================
# Exceptions raised across the pipeline. The API layer maps them to
# HTTP status codes; the orchestrator decides which ones abort a request.
# ============================================================================

from typing import Optional


class FulfillmentError(Exception):
    """Base class for every error the fulfillment pipeline raises."""


class ConfigurationError(FulfillmentError):
    """A required credential or setting is missing."""


class AuthenticationError(FulfillmentError):
    """Webhook signature could not be verified with any configured secret."""


class InvalidPayloadError(FulfillmentError):
    """Payload is authentic but malformed or missing required fields."""


class SubmissionValidationError(FulfillmentError):
    """Customer submission failed intake validation."""


class ContentCreationError(FulfillmentError):
    """The CMS refused to create the draft content record."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(FulfillmentError):
    """An external HTTP dependency answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BulkSessionError(FulfillmentError):
    """Bulk intake session or item could not be found or used."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
