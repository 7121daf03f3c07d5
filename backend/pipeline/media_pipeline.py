"""
Media Pipeline
==============
Turns uploaded photos into CMS media items plus a backup of the originals.

Per asset, independently and concurrently:
1. Normalize (HEIF transcode, orientation, bound, progressive JPEG)
2. Upload the normalized JPEG to the CMS media library
3. Copy the original bytes to the backup bucket

Only a failed normalize or CMS upload costs an asset its CMS reference. A
failed backup leaves backup_url empty and is reported as a warning.

pip install Pillow pillow-heif structlog
"""

import asyncio
import json
import mimetypes
import time
from typing import Any, Optional

import structlog

from pipeline.image_normalizer import ImageNormalizer
from schemas.fulfillment import AssetKey, BackupResult, MediaAsset, Severity, UploadedFile
from services.content_repository import ContentRepository
from services.error_reporter import ErrorReporter
from storage.object_store import IObjectStore


SCRIPT_NAME = "media_pipeline"


def _extension(upload: UploadedFile) -> str:
    ext = mimetypes.guess_extension(upload.content_type or "") or ".jpg"
    return ".jpg" if ext in (".jpe", ".jpeg") else ext


class MediaPipeline:
    def __init__(
        self,
        content: ContentRepository,
        backup_store: IObjectStore,
        reporter: ErrorReporter,
        normalizer: Optional[ImageNormalizer] = None,
    ):
        self.content = content
        self.backup_store = backup_store
        self.reporter = reporter
        self.normalizer = normalizer or ImageNormalizer()
        self._logger = structlog.get_logger().bind(component="media_pipeline")

    # =========================================================================
    # CMS PATH
    # =========================================================================

    async def process(
        self,
        session_id: str,
        files: dict[AssetKey, UploadedFile],
        backup_task: Optional["asyncio.Task[BackupResult]"] = None,
    ) -> dict[AssetKey, MediaAsset]:
        """
        Normalize and upload every file. Keys absent from files are absent
        from the result.

        Without a backup_task the backup is started here and joined before
        returning. A caller-supplied task is left for the caller to join.
        """
        owns_backup = backup_task is None
        if owns_backup:
            backup_task = self.start_backup(session_id, files)

        results = await asyncio.gather(
            *(self._process_asset(session_id, upload) for upload in files.values())
        )
        assets = {asset.key: asset for asset in results}

        if owns_backup:
            self.apply_backup(assets, await backup_task)

        self._logger.info(
            "media_processed",
            session_id=session_id,
            uploaded=sorted(key.value for key, asset in assets.items() if asset.uploaded),
            failed=sorted(key.value for key, asset in assets.items() if asset.error),
        )
        return assets

    async def _process_asset(self, session_id: str, upload: UploadedFile) -> MediaAsset:
        asset = MediaAsset(key=upload.key, raw_bytes=upload.content)
        loop = asyncio.get_running_loop()
        try:
            asset.normalized_bytes = await loop.run_in_executor(
                None, self.normalizer.normalize, upload.content
            )
            filename = f"{upload.key.value}-{int(time.time() * 1000)}.jpg"
            asset.cms_id, asset.cms_url = await self.content.upload_media(
                asset.normalized_bytes, filename
            )
        except Exception as e:
            asset.error = str(e)
            await self.reporter.report_exception(
                e,
                Severity.ERROR,
                SCRIPT_NAME,
                "MEDIA_UPLOAD_ERROR",
                context={
                    "session_id": session_id,
                    "asset": upload.key.value,
                    "status_code": getattr(e, "status_code", None),
                    "body": getattr(e, "body", None),
                },
            )
        return asset

    # =========================================================================
    # BACKUP PATH
    # =========================================================================

    def start_backup(
        self,
        session_id: str,
        files: dict[AssetKey, UploadedFile],
        request_data: Optional[dict[str, Any]] = None,
    ) -> "asyncio.Task[BackupResult]":
        return asyncio.create_task(
            self.backup(session_id, files, request_data),
            name=f"backup-{session_id}",
        )

    async def backup(
        self,
        session_id: str,
        files: dict[AssetKey, UploadedFile],
        request_data: Optional[dict[str, Any]] = None,
    ) -> BackupResult:
        result = BackupResult(folder_url=self.backup_store.public_url(f"{session_id}/"))

        async def save_request_data() -> None:
            payload = {
                "session_id": session_id,
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                "files": sorted(key.value for key in files),
                **(request_data or {}),
            }
            try:
                result.request_data_url = await self.backup_store.put(
                    f"{session_id}/request-data.json",
                    json.dumps(payload, indent=2, default=str).encode(),
                    content_type="application/json",
                )
            except Exception as e:
                await self._report_backup_failure(e, session_id, "REQUEST_DATA_BACKUP_ERROR", None)

        async def save_file(upload: UploadedFile) -> None:
            key = f"{session_id}/{upload.key.value}-{int(time.time() * 1000)}{_extension(upload)}"
            try:
                result.urls[upload.key] = await self.backup_store.put(
                    key,
                    upload.content,
                    content_type=upload.content_type,
                    metadata={"session_id": session_id, "original_name": upload.filename},
                )
            except Exception as e:
                result.urls[upload.key] = None
                await self._report_backup_failure(e, session_id, "FILE_BACKUP_ERROR", upload.key)

        await asyncio.gather(save_request_data(), *(save_file(f) for f in files.values()))
        self._logger.info(
            "backup_completed",
            session_id=session_id,
            saved=sorted(k.value for k, url in result.urls.items() if url),
        )
        return result

    async def _report_backup_failure(
        self,
        error: Exception,
        session_id: str,
        error_code: str,
        key: Optional[AssetKey],
    ) -> None:
        await self.reporter.report_exception(
            error,
            Severity.WARNING,
            SCRIPT_NAME,
            error_code,
            context={"session_id": session_id, "asset": key.value if key else None},
        )

    @staticmethod
    def apply_backup(assets: dict[AssetKey, MediaAsset], backup: BackupResult) -> None:
        for key, asset in assets.items():
            asset.backup_url = backup.urls.get(key)
