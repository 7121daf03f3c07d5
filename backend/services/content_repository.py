"""
Content Repository
==================
WordPress REST client for appraisal records and their media.

Features:
- Draft creation with an initialization probe: custom fields on a fresh
  record are not writable until the CMS has attached its field schema
- Idempotent metadata overwrite (media ids, customer fields, session id)
- Media library uploads (multipart JPEG)
- Metadata update failures are logged and swallowed; creation failures raise

The configured API URL already ends in /wp-json/wp/v2.

pip install httpx structlog
"""

import asyncio
from typing import Any, Optional

import httpx
import structlog

from config import Settings
from errors import ContentCreationError, UpstreamError
from schemas.fulfillment import AssetKey, ContentRecord, ContentStatus, Submission


APPRAISALS_ENDPOINT = "/appraisals"
MEDIA_ENDPOINT = "/media"

# Keys attachMedia owns on the record's custom fields.
MEDIA_FIELDS = tuple(key.value for key in AssetKey)
CUSTOMER_FIELDS = ("customer_name", "customer_email", "session_id")


def _describe_failure(action: str, response: httpx.Response) -> str:
    if response.status_code == 404:
        return "WordPress API endpoint not found. Check API URL configuration."
    if response.status_code == 401:
        return "WordPress authentication failed. Check credentials."
    return f"Failed to {action}: HTTP {response.status_code}"


class ContentRepository:
    """Appraisal records stored as a WordPress custom post type."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = settings.wordpress_api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            auth=httpx.BasicAuth(settings.wordpress_username, settings.wordpress_app_password),
            headers={"Accept": "application/json"},
            timeout=settings.http_timeout_seconds,
        )
        self._logger = structlog.get_logger().bind(component="content_repository")

    async def close(self) -> None:
        await self._client.aclose()

    def edit_url(self, record_id: int) -> str:
        return f"{self.settings.wordpress_admin_url}/post.php?post={record_id}&action=edit"

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_draft(self, submission: Submission) -> ContentRecord:
        """
        Create the draft record, wait for its custom fields, seed metadata.

        Raises ContentCreationError when the CMS refuses the record. When the
        probe runs out of attempts the record is returned uninitialized and
        no metadata has been written.
        """
        log = self._logger.bind(session_id=submission.session_id)
        payload = {
            "title": f"Art Appraisal Request - {submission.session_id}",
            "content": " ",
            "status": ContentStatus.DRAFT.value,
            "type": "appraisals",
        }

        try:
            response = await self._client.post(f"{self.base_url}{APPRAISALS_ENDPOINT}", json=payload)
        except httpx.HTTPError as e:
            log.error("content_draft_failed", error=str(e))
            raise ContentCreationError(f"Failed to create WordPress post: {e}") from e

        if response.is_error:
            log.error(
                "content_draft_failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ContentCreationError(
                _describe_failure("create WordPress post", response),
                status_code=response.status_code,
            )

        data = response.json()
        record_id = data.get("id") if isinstance(data, dict) else None
        if not record_id:
            log.error("content_draft_missing_id", body=response.text[:500])
            raise ContentCreationError("Invalid response from WordPress: missing post ID")

        record = ContentRecord(id=record_id, edit_url=self.edit_url(record_id))
        log.info("content_draft_created", content_id=record_id)

        record.initialized = await self._await_initialization(record_id)
        if not record.initialized:
            log.warning(
                "content_fields_not_initialized",
                content_id=record_id,
                attempts=self.settings.cms_init_retries,
            )
            return record

        meta = {
            **{key: "" for key in MEDIA_FIELDS},
            "customer_name": submission.customer_name,
            "customer_email": submission.customer_email,
            "session_id": submission.session_id,
        }
        if await self._update(record_id, {"acf": meta}):
            record.meta_fields = meta
        return record

    async def _await_initialization(self, record_id: int) -> bool:
        for attempt in range(1, self.settings.cms_init_retries + 1):
            try:
                data = await self.get_by_id(record_id)
            except UpstreamError as e:
                self._logger.info(
                    "content_probe_failed",
                    content_id=record_id,
                    attempt=attempt,
                    status_code=e.status_code,
                )
                data = {}

            # Uninitialized ACF groups come back as an empty list.
            if isinstance(data.get("acf"), dict):
                return True

            if attempt < self.settings.cms_init_retries:
                await asyncio.sleep(self.settings.cms_init_backoff_seconds)
        return False

    # =========================================================================
    # READ / UPDATE
    # =========================================================================

    async def get_by_id(self, record_id: int) -> dict[str, Any]:
        try:
            response = await self._client.get(
                f"{self.base_url}{APPRAISALS_ENDPOINT}/{record_id}",
                params={"context": "edit"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to fetch WordPress post {record_id}: {e}") from e

        if response.is_error:
            raise UpstreamError(
                _describe_failure(f"fetch WordPress post {record_id}", response),
                status_code=response.status_code,
                body=response.text[:500],
            )
        return response.json()

    async def _update(self, record_id: int, payload: dict[str, Any]) -> bool:
        try:
            response = await self._client.post(
                f"{self.base_url}{APPRAISALS_ENDPOINT}/{record_id}",
                json=payload,
            )
        except httpx.HTTPError as e:
            self._logger.error("content_update_failed", content_id=record_id, error=str(e))
            return False

        if response.is_error:
            self._logger.error(
                "content_update_failed",
                content_id=record_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return False

        self._logger.info("content_updated", content_id=record_id, fields=sorted(payload.get("acf", {})))
        return True

    async def attach_media(
        self,
        record_id: int,
        media_refs: dict[AssetKey, Optional[int]],
        customer_fields: dict[str, str],
    ) -> bool:
        """Overwrite media ids and customer fields. Missing media become ''."""
        meta: dict[str, Any] = {
            key.value: media_refs.get(key) or "" for key in AssetKey
        }
        for name in CUSTOMER_FIELDS:
            meta[name] = customer_fields.get(name, "")
        return await self._update(record_id, {"acf": meta})

    async def finalize(
        self,
        record_id: int,
        status_fields: dict[str, Any],
        status: Optional[ContentStatus] = None,
    ) -> bool:
        payload: dict[str, Any] = {"acf": dict(status_fields)}
        if status is not None:
            payload["status"] = status.value
        return await self._update(record_id, payload)

    # =========================================================================
    # MEDIA
    # =========================================================================

    async def upload_media(self, content: bytes, filename: str) -> tuple[int, str]:
        """Upload a JPEG to the media library and return (id, source_url)."""
        try:
            response = await self._client.post(
                f"{self.base_url}{MEDIA_ENDPOINT}",
                files={"file": (filename, content, "image/jpeg")},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Failed to upload media {filename}: {e}") from e

        if response.is_error:
            raise UpstreamError(
                _describe_failure(f"upload media {filename}", response),
                status_code=response.status_code,
                body=response.text[:500],
            )

        data = response.json()
        if not data.get("id"):
            raise UpstreamError(f"Invalid media response for {filename}: missing id")
        return data["id"], data.get("source_url", "")

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(
                f"{self.base_url}{APPRAISALS_ENDPOINT}",
                params={"per_page": 1},
            )
        except httpx.HTTPError:
            return False
        return not response.is_error
