from __future__ import annotations

import logging

from golf_media.api.v1.schemas import CropParams, ImageKind, ImageStatus
from golf_media.models.media import HoleImage
from golf_media.services.cropper import replay_crop, validate_file_size
from golf_media.services.job_queue import JobQueue, get_job_queue
from golf_media.services.media import (
    MediaStore,
    MediaStoreError,
    PermissionDeniedError,
    ValidationError,
    get_media_store,
)
from golf_media.services.stylization import enqueue_stylization

logger = logging.getLogger(__name__)


class UnsupportedMediaError(ValueError):
    """Raised for uploads that are neither images nor videos."""


def validate_upload(content_type: str | None, size: int) -> str:
    """Server-side re-check of what the browser already enforced. Returns the content type."""
    validate_file_size(size)
    content_type = (content_type or "").lower()
    if not (content_type.startswith("image/") or content_type.startswith("video/")):
        raise UnsupportedMediaError("Only image or video uploads are supported.")
    return content_type


def accept_upload(
    hole_id: int,
    user_id: str,
    data: bytes,
    content_type: str | None,
    filename: str | None,
    crop: CropParams | None = None,
    *,
    store: MediaStore | None = None,
    queue: JobQueue | None = None,
) -> HoleImage:
    """
    Accept a user's hole media upload.

    Videos skip stylization and become ready as soon as they are stored.
    Images become a `processing` placeholder and are queued for stylization.
    """
    store = store or get_media_store()
    queue = queue or get_job_queue()

    content_type = validate_upload(content_type, len(data))
    filename = filename or "upload"
    store.get_hole(hole_id)

    if crop is not None and content_type.startswith("image/"):
        cropped = replay_crop(data, content_type, filename, **crop.model_dump())
        data, content_type, filename = cropped.data, cropped.content_type, cropped.filename

    # No record is created unless the blob was written.
    attachment = store.attachments.attach(data, filename, content_type)
    try:
        original = store.create_image(
            hole_id=hole_id,
            user_id=user_id,
            kind=ImageKind.ORIGINAL,
            status=ImageStatus.PROCESSING,
            attachment=attachment,
        )
    except MediaStoreError:
        store.attachments.purge_later(attachment)
        raise

    if content_type.startswith("video/"):
        original = store.update_image(original.id, status=ImageStatus.READY)
        logger.info(f"Video {original.id} uploaded for hole {hole_id}")
        return original

    enqueue_stylization(queue, hole_id, original.id)
    logger.info(f"Image {original.id} uploaded for hole {hole_id}; stylization queued")
    return original


def upload_layout_image(
    hole_id: int,
    data: bytes,
    content_type: str | None,
    filename: str | None,
    *,
    store: MediaStore | None = None,
    queue: JobQueue | None = None,
):
    """Legacy path: replace the hole's single layout image and restyle it."""
    store = store or get_media_store()
    queue = queue or get_job_queue()

    content_type = validate_upload(content_type, len(data))
    if not content_type.startswith("image/"):
        raise UnsupportedMediaError("Layout images must be images.")
    previous = store.get_hole(hole_id).layout_image
    attachment = store.attachments.attach(data, filename or "layout.png", content_type)
    hole = store.update_hole(hole_id, layout_image=attachment)
    if previous is not None:
        store.attachments.purge_later(previous)
    enqueue_stylization(queue, hole_id)
    return hole


def _owned_image(store: MediaStore, hole_id: int, image_id: int, user_id: str, action: str) -> HoleImage:
    image = store.get_hole_image(hole_id, image_id)
    if image.user_id != user_id:
        raise PermissionDeniedError(f"You can only {action} your own uploads.")
    return image


def redo_stylization(
    hole_id: int,
    image_id: int,
    user_id: str,
    *,
    store: MediaStore | None = None,
    queue: JobQueue | None = None,
) -> HoleImage:
    """Re-run stylization for an upload. Only the uploader may ask."""
    store = store or get_media_store()
    queue = queue or get_job_queue()

    image = _owned_image(store, hole_id, image_id, user_id, "redo")
    if image.kind != ImageKind.ORIGINAL or not image.is_image_content:
        raise ValidationError("Only uploaded images can be restyled.")
    image = store.update_image(image_id, status=ImageStatus.PROCESSING, error_message=None)
    enqueue_stylization(queue, hole_id, image_id)
    return image


def delete_upload(
    hole_id: int,
    image_id: int,
    user_id: str,
    *,
    store: MediaStore | None = None,
):
    """Delete an upload with everything derived from it. Only the uploader may delete."""
    store = store or get_media_store()
    _owned_image(store, hole_id, image_id, user_id, "delete")
    return store.destroy_image(image_id)


def vote(
    hole_id: int,
    image_id: int,
    user_id: str,
    value: int,
    *,
    store: MediaStore | None = None,
) -> HoleImage:
    """Record an up/down vote. -1 is a downvote; anything else is an upvote."""
    store = store or get_media_store()
    store.get_hole_image(hole_id, image_id)
    return store.cast_vote(image_id, user_id, -1 if value == -1 else 1)
