"""
Background job that stylizes a hole's layout image.

Per upload the image moves pending -> processing -> ready | failed. The hole
carries a coarser mirror of the same status for the legacy single-layout path.

Failures never escape the job: the generation client already retried
transient errors, so a failure here is recorded on the records and the queue
sees a finished task.
"""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Any, Dict

from golf_media.api.v1.schemas import ImageKind, ImageStatus, StylizationStatus
from golf_media.models.media import Attachment, HoleImage
from golf_media.services.gemini_client import GeminiImageClient, get_gemini_client
from golf_media.services.job_queue import JobQueue
from golf_media.services.media import MediaStore, MediaStoreError, get_media_store

logger = logging.getLogger(__name__)

STYLIZE_HOLE_IMAGE = "stylize_hole_image"
AI_GENERATION_QUEUE = "ai_generation"
NO_DATA_MESSAGE = "No image data returned"


def _resolve_source(store: MediaStore, hole_layout: Attachment | None, original: HoleImage | None) -> Attachment | None:
    if original is not None and store.attachments.exists(original.attachment):
        return original.attachment
    if store.attachments.exists(hole_layout):
        return hole_layout
    return None


def stylize_hole_image(
    hole_id: int,
    original_image_id: int | None = None,
    *,
    store: MediaStore | None = None,
    client: GeminiImageClient | None = None,
) -> HoleImage | None:
    """
    Stylize one upload (or the hole's legacy layout image).

    Returns the derived image when one was created, otherwise None.
    """
    store = store or get_media_store()
    client = client or get_gemini_client()

    hole = store.get_hole(hole_id)
    original = store.find_image(original_image_id)
    if original is not None and (
        original.kind != ImageKind.ORIGINAL
        or (original.attachment is not None and not original.attachment.is_image)
    ):
        logger.warning(f"Image {original.id} is not an uploaded still image; not stylizing")
        return None
    source = _resolve_source(store, hole.layout_image, original)
    if source is None:
        logger.info(f"Nothing to stylize for hole {hole_id} (image {original_image_id})")
        return None

    logger.info(f"Stylizing hole image for hole {hole.id}")
    course = store.get_course(hole.course_id)

    try:
        store.mark_hole_stylization(hole.id, StylizationStatus.PROCESSING)
        if original is not None and original.status != ImageStatus.PROCESSING:
            store.update_image(original.id, status=ImageStatus.PROCESSING, error_message=None)

        data = store.read_attachment(source)
        input_type = source.content_type or "image/png"
        styled = client.stylize_image(data, mime_type=input_type, seed=course.style_seed)

        if not styled:
            store.mark_hole_stylization(hole.id, StylizationStatus.FAILED, NO_DATA_MESSAGE)
            if original is not None:
                store.update_image(original.id, status=ImageStatus.FAILED, error_message=NO_DATA_MESSAGE)
            logger.warning(f"Stylization returned no image for hole {hole.id}")
            return None

        if original is None:
            filename = f"{PurePath(source.filename).stem}_stylized.png"
            attachment = store.attachments.attach(styled, filename, "image/png")
            store.update_hole(
                hole.id,
                stylized_layout_image=attachment,
                stylization_status=StylizationStatus.READY,
                stylization_error=None,
            )
            logger.info(f"Attached stylized layout image for hole {hole.id}")
            return None

        attachment = store.attachments.attach(styled, "styled.png", "image/png")
        try:
            derived = store.create_image(
                hole_id=hole.id,
                user_id=original.user_id,
                kind=ImageKind.STYLIZED,
                status=ImageStatus.READY,
                source_image_id=original.id,
                attachment=attachment,
            )
        except MediaStoreError:
            # The original was deleted while generation was running.
            store.attachments.purge_later(attachment)
            raise
        if store.get_image(original.id).status != ImageStatus.READY:
            store.update_image(original.id, status=ImageStatus.READY, error_message=None)
        store.mark_hole_stylization(hole.id, StylizationStatus.READY)
        logger.info(f"Attached stylized HoleImage {derived.id} for hole {hole.id}")
        return derived

    except Exception as exc:  # noqa: BLE001
        message = str(exc) or exc.__class__.__name__
        logger.error(f"Stylization failed for hole {hole.id}: {exc.__class__.__name__} - {message}")
        store.mark_hole_stylization(hole.id, StylizationStatus.FAILED, message)
        if original is not None and store.find_image(original.id) is not None:
            store.update_image(original.id, status=ImageStatus.FAILED, error_message=message)
        return None


def register_tasks(
    queue: JobQueue,
    store: MediaStore | None = None,
    client: GeminiImageClient | None = None,
) -> None:
    """Bind the stylization job to the generation queue."""

    def _handle(payload: Dict[str, Any]) -> HoleImage | None:
        return stylize_hole_image(
            payload["hole_id"],
            payload.get("image_id"),
            store=store,
            client=client,
        )

    queue.register(STYLIZE_HOLE_IMAGE, _handle, queue=AI_GENERATION_QUEUE)


def enqueue_stylization(queue: JobQueue, hole_id: int, image_id: int | None = None):
    """Schedule stylization for an upload (or the legacy layout when image_id is None)."""
    return queue.enqueue(STYLIZE_HOLE_IMAGE, {"hole_id": hole_id, "image_id": image_id})
