"""
Tests for the upload, redo, delete and vote flows.

Stylization itself is replaced by a recording handler so these tests only
check what gets stored and what gets queued.
"""

import logging
from io import BytesIO
from unittest.mock import MagicMock

import pytest
from PIL import Image

from golf_media.api.v1.schemas import CropParams, ImageKind, ImageStatus
from golf_media.services.attachments import AttachmentError, AttachmentStore
from golf_media.services.attachments import register_tasks as register_attachment_tasks
from golf_media.services.broadcast import Broadcaster
from golf_media.services.cropper import FileTooLargeError, MAX_UPLOAD_BYTES
from golf_media.services.job_queue import JobQueue
from golf_media.services.media import (
    MediaStore,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from golf_media.services.stylization import STYLIZE_HOLE_IMAGE
from golf_media.services.uploads import (
    UnsupportedMediaError,
    accept_upload,
    delete_upload,
    redo_stylization,
    upload_layout_image,
    vote,
)

logger = logging.getLogger(__name__)


def _png(width: int = 800, height: int = 600) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def env(tmp_path):
    queue = JobQueue(eager=True)
    attachments = AttachmentStore(tmp_path, job_queue=queue)
    store = MediaStore(attachments=attachments, broadcaster=Broadcaster())
    register_attachment_tasks(queue, attachments)

    queued = []
    queue.register(STYLIZE_HOLE_IMAGE, queued.append, queue="ai_generation")

    _, holes = store.create_course("Bethpage Black", "Farmingdale, NY", num_holes=9)
    return store, queue, holes[0], queued


def test_image_upload_is_queued_for_stylization(env):
    store, queue, hole, queued = env

    image = accept_upload(hole.id, "alice", _png(), "image/png", "hole1.png", store=store, queue=queue)

    assert image.kind == ImageKind.ORIGINAL
    assert image.status == ImageStatus.PROCESSING
    assert image.attachment.filename == "hole1.png"
    assert store.read_attachment(image.attachment) == _png()
    assert queued == [{"hole_id": hole.id, "image_id": image.id}]
    logger.info("✓ Image upload stored and queued")


def test_video_upload_is_ready_without_stylization(env):
    store, queue, hole, queued = env

    video = accept_upload(hole.id, "alice", b"\x00\x00\x00\x18ftypmp42", "video/mp4", "flyover.mp4", store=store, queue=queue)

    assert video.status == ImageStatus.READY
    assert video.attachment.is_video
    assert queued == []


def test_oversized_upload_is_rejected_before_anything_is_stored(env):
    store, queue, hole, queued = env

    with pytest.raises(FileTooLargeError):
        accept_upload(hole.id, "alice", b"\0" * (MAX_UPLOAD_BYTES + 1), "image/png", "big.png", store=store, queue=queue)

    assert store.list_images(hole.id) == []
    assert queued == []


def test_unsupported_media_is_rejected(env):
    store, queue, hole, _ = env

    with pytest.raises(UnsupportedMediaError):
        accept_upload(hole.id, "alice", b"%PDF-1.7", "application/pdf", "card.pdf", store=store, queue=queue)
    with pytest.raises(UnsupportedMediaError):
        accept_upload(hole.id, "alice", b"data", None, "mystery", store=store, queue=queue)


def test_upload_to_missing_hole_fails(env):
    store, queue, _, _ = env

    with pytest.raises(NotFoundError):
        accept_upload(999, "alice", _png(), "image/png", "x.png", store=store, queue=queue)


def test_crop_parameters_are_replayed_on_the_server(env):
    store, queue, hole, _ = env
    crop = CropParams(viewport_width=300, viewport_height=400)

    image = accept_upload(hole.id, "alice", _png(), "image/png", "tee.png", crop=crop, store=store, queue=queue)

    assert image.attachment.filename == "tee_cropped.png"
    with Image.open(BytesIO(store.read_attachment(image.attachment))) as cropped:
        assert cropped.size == (450, 600)


def test_redo_is_limited_to_the_uploader(env):
    store, queue, hole, queued = env
    image = accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)
    store.update_image(image.id, status=ImageStatus.FAILED, error_message="No image data returned")

    with pytest.raises(PermissionDeniedError):
        redo_stylization(hole.id, image.id, "mallory", store=store, queue=queue)
    assert len(queued) == 1

    redone = redo_stylization(hole.id, image.id, "alice", store=store, queue=queue)

    assert redone.status == ImageStatus.PROCESSING
    assert redone.error_message is None
    assert queued[-1] == {"hole_id": hole.id, "image_id": image.id}
    assert len(queued) == 2


def test_redo_checks_the_image_belongs_to_the_hole(env):
    store, queue, hole, _ = env
    other_hole = store.list_holes(hole.course_id)[1]
    image = accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)

    with pytest.raises(NotFoundError):
        redo_stylization(other_hole.id, image.id, "alice", store=store, queue=queue)


def test_delete_is_limited_to_the_uploader(env, tmp_path):
    store, queue, hole, _ = env
    image = accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)
    blob = tmp_path / image.attachment.key

    with pytest.raises(PermissionDeniedError):
        delete_upload(hole.id, image.id, "mallory", store=store)
    assert blob.exists()

    assert delete_upload(hole.id, image.id, "alice", store=store) == [image.id]
    assert store.find_image(image.id) is None
    assert not blob.exists()


def test_vote_values_are_normalized(env):
    store, queue, hole, _ = env
    image = accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)

    vote(hole.id, image.id, "bob", 7, store=store)
    vote(hole.id, image.id, "carol", 0, store=store)
    updated = vote(hole.id, image.id, "dave", -1, store=store)

    assert (updated.upvotes_count, updated.downvotes_count) == (2, 1)

    updated = vote(hole.id, image.id, "bob", -1, store=store)
    assert (updated.upvotes_count, updated.downvotes_count) == (1, 2)
    assert len(store.votes_for(image.id)) == 3


def test_legacy_layout_upload_replaces_previous_layout(env, tmp_path):
    store, queue, hole, queued = env

    first = upload_layout_image(hole.id, _png(), "image/png", "layout.png", store=store, queue=queue)
    old_blob = tmp_path / first.layout_image.key
    second = upload_layout_image(hole.id, _png(400, 300), "image/png", "layout2.png", store=store, queue=queue)

    assert second.layout_image.filename == "layout2.png"
    assert not old_blob.exists()
    assert queued == [
        {"hole_id": hole.id, "image_id": None},
        {"hole_id": hole.id, "image_id": None},
    ]

    with pytest.raises(UnsupportedMediaError):
        upload_layout_image(hole.id, b"video", "video/mp4", "clip.mp4", store=store, queue=queue)


def test_failed_blob_write_leaves_no_placeholder(env):
    store, queue, hole, queued = env
    store.attachments.attach = MagicMock(side_effect=AttachmentError("disk full"))
    tiles = []
    store.broadcaster.subscribe(f"hole_{hole.id}_images", tiles.append)

    with pytest.raises(AttachmentError):
        accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)

    assert store.list_images(hole.id) == []
    assert tiles == []
    assert queued == []


def test_upload_placeholder_is_created_with_its_blob(env):
    store, queue, hole, _ = env
    tiles = []
    store.broadcaster.subscribe(f"hole_{hole.id}_images", tiles.append)

    image = accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)

    assert tiles[0]["action"] == "prepend"
    assert tiles[0]["image"]["id"] == image.id
    assert tiles[0]["image"]["attachment"]["filename"] == "a.png"


def test_redo_rejects_stylized_images(env):
    store, queue, hole, queued = env
    original = accept_upload(hole.id, "alice", _png(), "image/png", "a.png", store=store, queue=queue)
    derived = store.create_image(
        hole.id,
        "alice",
        kind=ImageKind.STYLIZED,
        status=ImageStatus.READY,
        source_image_id=original.id,
        attachment=store.attachments.attach(b"styled", "styled.png", "image/png"),
    )

    with pytest.raises(ValidationError):
        redo_stylization(hole.id, derived.id, "alice", store=store, queue=queue)

    assert store.get_image(derived.id).status == ImageStatus.READY
    assert len(queued) == 1


def test_redo_rejects_videos(env):
    store, queue, hole, queued = env
    video = accept_upload(hole.id, "alice", b"\x00\x00\x00\x18ftypmp42", "video/mp4", "flyover.mp4", store=store, queue=queue)

    with pytest.raises(ValidationError):
        redo_stylization(hole.id, video.id, "alice", store=store, queue=queue)

    assert store.get_image(video.id).status == ImageStatus.READY
    assert queued == []
