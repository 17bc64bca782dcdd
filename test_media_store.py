"""
Test the in-memory media store: courses, holes, images and votes.

Run with: pytest test_media_store.py -v
"""

import logging

import pytest

from golf_media.api.v1.schemas import ImageKind, ImageStatus
from golf_media.services.attachments import AttachmentStore, register_tasks
from golf_media.services.broadcast import Broadcaster, flash_stream, image_stream
from golf_media.services.job_queue import JobQueue
from golf_media.services.media import (
    DuplicateCourseError,
    MediaStore,
    NotFoundError,
    ValidationError,
    image_payload,
    normalize_hole_count,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@pytest.fixture
def store(tmp_path):
    queue = JobQueue(eager=True)
    attachments = AttachmentStore(tmp_path, job_queue=queue)
    register_tasks(queue, attachments)
    return MediaStore(attachments=attachments, broadcaster=Broadcaster())


@pytest.fixture
def hole(store):
    _, holes = store.create_course("St Andrews Old Course", "St Andrews, Scotland", num_holes=9)
    return holes[0]


def _ready_original(store, hole_id, user_id="alice"):
    attachment = store.attachments.attach(b"png-bytes", "orig.png", "image/png")
    return store.create_image(hole_id, user_id, status=ImageStatus.READY, attachment=attachment)


def test_course_creation_builds_holes(store):
    course, holes = store.create_course("Augusta National", "Augusta, GA", style_seed=77)

    assert course.style_seed == 77
    assert [h.number for h in holes] == list(range(1, 19))
    assert all(h.course_id == course.id for h in holes)
    assert store.find_hole(course.id, 18).number == 18
    logger.info("✓ Course created with 18 holes")


def test_style_seed_assigned_when_missing(store):
    course, _ = store.create_course("Torrey Pines", "La Jolla, CA")

    assert isinstance(course.style_seed, int)
    assert course.style_seed > 0


@pytest.mark.parametrize("requested, expected", [(9, 9), (18, 18), (12, 18), (None, 18), (0, 18)])
def test_hole_count_normalization(requested, expected):
    assert normalize_hole_count(requested) == expected


def test_duplicate_course_is_case_and_whitespace_insensitive(store):
    course, _ = store.create_course("Augusta National", "Augusta, GA")

    with pytest.raises(DuplicateCourseError) as excinfo:
        store.create_course("  augusta national ", "AUGUSTA, ga")

    assert excinfo.value.existing.id == course.id
    assert len(store.list_courses()) == 1


def test_blank_course_fields_rejected(store):
    with pytest.raises(ValidationError):
        store.create_course("   ", "Somewhere")
    with pytest.raises(ValidationError):
        store.create_course("Somewhere", "")


def test_generate_holes_only_adds_missing(store):
    course, _ = store.create_course("Kiawah Island", "Kiawah, SC", num_holes=9)

    assert store.generate_holes(course.id, 18) == list(range(10, 19))
    assert store.generate_holes(course.id, 18) == []
    assert len(store.list_holes(course.id)) == 18

    with pytest.raises(NotFoundError):
        store.generate_holes(999, 9)


def test_hole_stat_validation(store, hole):
    store.update_hole(hole.id, par=4, yardage=410)

    with pytest.raises(ValidationError):
        store.update_hole(hole.id, par=6)
    with pytest.raises(ValidationError):
        store.update_hole(hole.id, yardage=50)
    with pytest.raises(ValidationError):
        store.update_hole(hole.id, yardage=800)

    updated = store.get_hole(hole.id)
    assert (updated.par, updated.yardage) == (4, 410)


def test_records_are_copies(store, hole):
    fetched = store.get_hole(hole.id)
    fetched.par = 5

    assert store.get_hole(hole.id).par is None


def test_image_invariants(store, hole):
    with pytest.raises(ValidationError):
        store.create_image(hole.id, "alice", status=ImageStatus.READY)

    with pytest.raises(ValidationError):
        store.create_image(hole.id, "alice", kind=ImageKind.STYLIZED, status=ImageStatus.PENDING)

    original = _ready_original(store, hole.id)
    derived_blob = store.attachments.attach(b"styled", "styled.png", "image/png")
    derived = store.create_image(
        hole.id,
        "alice",
        kind=ImageKind.STYLIZED,
        status=ImageStatus.READY,
        source_image_id=original.id,
        attachment=derived_blob,
    )

    # A stylized image cannot itself be the source of another stylized image.
    with pytest.raises(ValidationError):
        store.create_image(
            hole.id,
            "alice",
            kind=ImageKind.STYLIZED,
            status=ImageStatus.READY,
            source_image_id=derived.id,
            attachment=derived_blob,
        )

    placeholder = store.create_image(hole.id, "alice", status=ImageStatus.PROCESSING)
    with pytest.raises(ValidationError):
        store.update_image(placeholder.id, status=ImageStatus.READY)


def test_vote_counts_are_recomputed(store, hole):
    image = _ready_original(store, hole.id)

    store.cast_vote(image.id, "bob", 1)
    store.cast_vote(image.id, "carol", 1)
    store.cast_vote(image.id, "dave", -1)
    image = store.cast_vote(image.id, "bob", 1)

    assert (image.upvotes_count, image.downvotes_count) == (2, 1)
    assert image.score == pytest.approx(2 / 3)

    image = store.cast_vote(image.id, "carol", -1)
    votes = store.votes_for(image.id)
    assert (image.upvotes_count, image.downvotes_count) == (1, 2)
    assert image.upvotes_count == sum(1 for v in votes if v.value == 1)
    assert image.downvotes_count == sum(1 for v in votes if v.value == -1)


def test_invalid_vote_value_rejected(store, hole):
    image = _ready_original(store, hole.id)

    with pytest.raises(ValidationError):
        store.cast_vote(image.id, "bob", 2)
    with pytest.raises(NotFoundError):
        store.cast_vote(999, "bob", 1)


def test_unvoted_image_scores_neutral(store, hole):
    image = _ready_original(store, hole.id)

    assert image.score == 0.5
    assert image_payload(image)["score"] == 0.5


def test_destroy_cascades_to_derived_images_votes_and_blobs(store, hole, tmp_path):
    original = _ready_original(store, hole.id)
    derived = store.create_image(
        hole.id,
        "alice",
        kind=ImageKind.STYLIZED,
        status=ImageStatus.READY,
        source_image_id=original.id,
        attachment=store.attachments.attach(b"styled", "styled.png", "image/png"),
    )
    store.cast_vote(original.id, "bob", 1)
    store.cast_vote(derived.id, "bob", -1)
    unrelated = _ready_original(store, hole.id, user_id="zoe")

    deleted = store.destroy_image(original.id)

    assert sorted(deleted) == sorted([original.id, derived.id])
    assert store.find_image(derived.id) is None
    assert store.votes_for(original.id) == []
    assert store.votes_for(derived.id) == []
    assert not (tmp_path / original.attachment.key).exists()
    assert not (tmp_path / derived.attachment.key).exists()
    assert store.get_image(unrelated.id).user_id == "zoe"

    with pytest.raises(NotFoundError):
        store.destroy_image(original.id)


def test_recent_images_newest_first(store, hole):
    ids = [_ready_original(store, hole.id).id for _ in range(10)]

    recent = store.recent_images(hole.id)

    assert len(recent) == 8
    assert [i.id for i in recent] == list(reversed(ids))[:8]


def test_writes_publish_live_updates(store, hole):
    tiles, flashes = [], []
    store.broadcaster.subscribe(image_stream(hole.id), tiles.append)
    store.broadcaster.subscribe(flash_stream(hole.id), flashes.append)

    image = store.create_image(hole.id, "alice", status=ImageStatus.PROCESSING)
    store.update_image(image.id, error_message="still working")
    attachment = store.attachments.attach(b"bytes", "a.png", "image/png")
    store.update_image(image.id, attachment=attachment, status=ImageStatus.READY)
    store.update_image(image.id, error_message=None)
    store.cast_vote(image.id, "bob", 1)

    assert [e["action"] for e in tiles] == ["prepend", "replace", "replace", "replace"]
    assert tiles[0]["target"] == "hole_images_grid"
    assert tiles[0]["image"]["status"] == "processing"
    assert tiles[2]["image"]["content_url"] == f"/api/v1/images/{image.id}/content"
    assert len(flashes) == 1


def test_unknown_records_raise_not_found(store, hole):
    with pytest.raises(NotFoundError):
        store.get_course(42)
    with pytest.raises(NotFoundError):
        store.get_hole(4242)
    with pytest.raises(NotFoundError):
        store.find_hole(hole.course_id, 18)
    with pytest.raises(NotFoundError):
        store.get_hole_image(hole.id + 1, _ready_original(store, hole.id).id)
    assert store.find_image(None) is None
