# services/appraisers_client.py
# ============================================================================
# APPRAISAL FULFILLMENT - APPRAISERS BACKEND NOTIFICATION
# ============================================================================
# Tells the appraisers' work queue that a submission is ready.
# ============================================================================

from typing import Any, Optional

import httpx
import structlog

from config import Settings
from errors import UpstreamError


class AppraisersBackendClient:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._logger = structlog.get_logger().bind(component="appraisers_backend")

    @property
    def configured(self) -> bool:
        return bool(self.settings.appraisers_backend_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def notify_submission(self, payload: dict[str, Any]) -> bool:
        """POST the submission summary. Raises UpstreamError on failure."""
        if not self.configured:
            self._logger.warning("appraisers_backend_not_configured")
            return False

        try:
            response = await self._client.post(
                self.settings.appraisers_backend_url,
                json=payload,
                headers={"x-shared-secret": self.settings.shared_secret},
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Appraisers backend unreachable: {e}") from e

        if response.is_error:
            raise UpstreamError(
                f"Appraisers backend rejected notification: HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        self._logger.info("appraisers_backend_notified", session_id=payload.get("session_id"))
        return True
