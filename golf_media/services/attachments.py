from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict
from uuid import uuid4

from golf_media.models.media import Attachment
from golf_media.services.job_queue import JobQueue, get_job_queue

logger = logging.getLogger(__name__)

PURGE_ATTACHMENT = "purge_attachment"


class AttachmentError(RuntimeError):
    """Raised when a blob cannot be written, read or located."""


class AttachmentStore:
    """
    Filesystem-backed blob storage addressed by opaque keys.

    Blobs are written to `<base_dir>/<key>`; metadata stays in memory. This can
    later be replaced by object storage without changing callers.
    """

    def __init__(self, base_dir: Path, job_queue: JobQueue | None = None) -> None:
        self._base_dir = base_dir
        self._job_queue = job_queue
        self._attachments: Dict[str, Attachment] = {}
        self._lock = threading.Lock()
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def attach(self, data: bytes, filename: str, content_type: str) -> Attachment:
        """Persist `data` and return its metadata."""
        key = uuid4().hex
        try:
            (self._base_dir / key).write_bytes(data)
        except OSError as exc:
            raise AttachmentError(f"Failed to write blob for '{filename}'.") from exc

        attachment = Attachment(
            key=key,
            filename=filename,
            content_type=content_type or "application/octet-stream",
            byte_size=len(data),
        )
        with self._lock:
            self._attachments[key] = attachment
        logger.debug(f"Stored blob {key} ({filename}, {content_type}, {len(data)} bytes)")
        return attachment

    def exists(self, attachment: Attachment | None) -> bool:
        return attachment is not None and (self._base_dir / attachment.key).is_file()

    def read(self, attachment: Attachment) -> bytes:
        """Return the blob's bytes."""
        try:
            return (self._base_dir / attachment.key).read_bytes()
        except OSError as exc:
            raise AttachmentError(f"Blob {attachment.key} could not be read.") from exc

    def purge(self, attachment: Attachment) -> None:
        """Delete the blob. Purging an already missing blob is a no-op."""
        with self._lock:
            self._attachments.pop(attachment.key, None)
        try:
            (self._base_dir / attachment.key).unlink(missing_ok=True)
        except OSError as exc:
            raise AttachmentError(f"Blob {attachment.key} could not be purged.") from exc
        logger.info(f"Purged blob {attachment.key} ({attachment.filename})")

    def purge_later(self, attachment: Attachment) -> None:
        """Schedule the blob for deletion on the job queue."""
        queue = self._job_queue or get_job_queue()
        queue.enqueue(PURGE_ATTACHMENT, {"key": attachment.key})

    def purge_key(self, key: str) -> None:
        with self._lock:
            attachment = self._attachments.get(key)
        if attachment is None:
            attachment = Attachment(key=key, filename=key, content_type="", byte_size=0)
        self.purge(attachment)


def register_tasks(queue: JobQueue, store: AttachmentStore | None = None) -> None:
    """Bind the purge task to `queue`."""

    def _purge(payload: dict) -> None:
        target = store or get_attachment_store()
        try:
            target.purge_key(payload["key"])
        except AttachmentError as exc:
            # Deleting the owning record already happened; a stray blob is harmless.
            logger.warning(f"Purge of blob {payload['key']} failed: {exc}")

    queue.register(PURGE_ATTACHMENT, _purge)


_default_store: AttachmentStore | None = None


def get_attachment_store() -> AttachmentStore:
    """Return the process-wide attachment store."""
    global _default_store
    if _default_store is None:
        _default_store = AttachmentStore(
            base_dir=Path(os.getenv("GOLF_MEDIA_STORAGE_DIR", "storage/attachments"))
        )
    return _default_store
