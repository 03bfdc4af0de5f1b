"""Supabase Storage — upload request/note media to the public media bucket.

Uploads customer photos/videos and note attachments and returns public
URLs for the request's ``media_urls`` and the note's ``media_url``.

Prerequisites:
    - A public 'service-media' bucket in the Supabase dashboard
    - SUPABASE_URL and SUPABASE_ANON_KEY in .env

Usage:
    from src.gateway.storage import MediaStorage

    storage = MediaStorage(gateway)
    items = await storage.upload_request_media(user_id, files)
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from src.common.config import settings
from src.common.exceptions import UploadError
from src.common.models import MediaItem, MediaType

from .client import SupabaseGateway

logger = logging.getLogger(__name__)


@dataclass
class MediaFile:
    """A local file waiting to be uploaded."""

    filename: str
    data: bytes
    content_type: str

    @property
    def media_type(self) -> MediaType:
        if self.content_type.startswith("video/"):
            return MediaType.VIDEO
        return MediaType.IMAGE

    @property
    def extension(self) -> str:
        if "." in self.filename:
            return self.filename.rsplit(".", 1)[-1].lower()
        return "bin"


@dataclass
class UploadResult:
    """Result of a single upload."""

    path: str  # Storage path relative to the bucket root
    public_url: str


class MediaStorage:
    """Upload files to Supabase Storage and build public URLs."""

    def __init__(
        self,
        gateway: SupabaseGateway,
        bucket: Optional[str] = None,
    ):
        self._gateway = gateway
        self._bucket = bucket or settings.media.bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    def get_public_url(self, path: str) -> str:
        """URL stored in a request's ``media_urls`` or a note's ``media_url``.

        The media bucket is public, so the link is derived locally from the
        project URL and the object path (``<user_id>/...`` or ``notes/...``)
        without a signing round-trip.
        """
        url = self._gateway.supabase_url.rstrip("/")
        return f"{url}/storage/v1/object/public/{self._bucket}/{path}"

    async def upload(
        self,
        data: bytes,
        path: str,
        content_type: str = "application/octet-stream",
    ) -> UploadResult:
        """Upload a single file. Raises UploadError on any failure."""
        try:
            client = await self._gateway.get_client()
            await client.storage.from_(self._bucket).upload(
                path=path,
                file=data,
                file_options={
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "false",
                },
            )
        except Exception as e:
            logger.error("Upload failed for %s: %s", path, e)
            raise UploadError(f"Upload failed for {path}: {e}") from e

        public_url = self.get_public_url(path)
        logger.info("Uploaded: %s → %s", path, public_url)
        return UploadResult(path=path, public_url=public_url)

    @staticmethod
    def _unique_name(extension: str) -> str:
        """Sanitized object name: ``{epoch_ms}_{random}.{ext}``."""
        return f"{int(time.time() * 1000)}_{secrets.token_hex(4)}.{extension}"

    async def upload_request_media(
        self,
        user_id: str,
        files: list[MediaFile],
    ) -> list[MediaItem]:
        """Upload every photo/video for a new request, stopping at the first failure.

        Path pattern: {user_id}/{epoch_ms}_{random}.{ext} (matches the
        owner-folder storage policy).
        """
        items: list[MediaItem] = []
        for index, media in enumerate(files, start=1):
            path = f"{user_id}/{self._unique_name(media.extension)}"
            logger.info("Uploading %s %d/%d", media.media_type.value, index, len(files))
            result = await self.upload(media.data, path, media.content_type)
            items.append(MediaItem(type=media.media_type, url=result.public_url, path=result.path))
        return items

    async def upload_note_attachment(self, media: MediaFile) -> MediaItem:
        """Upload a single note attachment under the notes folder."""
        path = f"{settings.media.note_folder}/{self._unique_name(media.extension)}"
        result = await self.upload(media.data, path, media.content_type)
        return MediaItem(type=media.media_type, url=result.public_url, path=result.path)
