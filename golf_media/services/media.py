from __future__ import annotations

import logging
import random
import threading
from dataclasses import replace
from typing import Any, Dict, List, Tuple

from golf_media.api.v1.schemas import (
    AttachmentRead,
    HoleImageRead,
    ImageKind,
    ImageStatus,
    StylizationStatus,
)
from golf_media.models.media import (
    Attachment,
    Course,
    Hole,
    HoleImage,
    HoleImageVote,
    utcnow,
)
from golf_media.services.attachments import (
    AttachmentError,
    AttachmentStore,
    get_attachment_store,
)
from golf_media.services.broadcast import Broadcaster, get_broadcaster

logger = logging.getLogger(__name__)

ALLOWED_HOLE_COUNTS = (9, 18)
MAX_HOLE_NUMBER = 18


class MediaStoreError(RuntimeError):
    """Base class for store failures."""


class NotFoundError(MediaStoreError, LookupError):
    """Raised when a course, hole or image does not exist."""


class DuplicateCourseError(MediaStoreError):
    """Raised when a course with the same name and location already exists."""

    def __init__(self, existing: Course) -> None:
        super().__init__("That course already exists for this location.")
        self.existing = existing


class ValidationError(MediaStoreError, ValueError):
    """Raised when a record fails validation."""


class PermissionDeniedError(MediaStoreError, PermissionError):
    """Raised when a user acts on an upload they do not own."""


def normalize_hole_count(count: int | None) -> int:
    """Anything other than 9 or 18 holes means a full 18-hole course."""
    if count in ALLOWED_HOLE_COUNTS:
        return count
    return 18


def image_payload(image: HoleImage) -> Dict[str, Any]:
    """Serialize an image for API responses and live updates."""
    return HoleImageRead(
        id=image.id,
        hole_id=image.hole_id,
        user_id=image.user_id,
        kind=image.kind,
        status=image.status,
        upvotes_count=image.upvotes_count,
        downvotes_count=image.downvotes_count,
        score=image.score,
        source_image_id=image.source_image_id,
        error_message=image.error_message,
        attachment=(
            AttachmentRead.model_validate(image.attachment) if image.attachment else None
        ),
        content_url=f"/api/v1/images/{image.id}/content" if image.attachment else None,
        created_at=image.created_at.isoformat(),
    ).model_dump(mode="json")


class MediaStore:
    """
    In-memory store for courses, holes, hole images and votes.

    All writes are serialized by a single re-entrant lock. Side effects of a
    write (live updates, vote recounts) are invoked explicitly after the write
    has been applied and the lock released.

    Records handed out are copies; callers change state through the store.
    """

    def __init__(
        self,
        attachments: AttachmentStore | None = None,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self._attachments = attachments or get_attachment_store()
        self._broadcaster = broadcaster or get_broadcaster()
        self._courses: Dict[int, Course] = {}
        self._holes: Dict[int, Hole] = {}
        self._images: Dict[int, HoleImage] = {}
        self._votes: Dict[Tuple[int, str], HoleImageVote] = {}
        self._ids = {"course": 0, "hole": 0, "image": 0}
        self._lock = threading.RLock()

    @property
    def attachments(self) -> AttachmentStore:
        return self._attachments

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    def _next_id(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]

    # Courses ---------------------------------------------------------------

    def create_course(
        self,
        name: str,
        location: str,
        description: str | None = None,
        num_holes: int | None = 18,
        style_seed: int | None = None,
    ) -> Tuple[Course, List[Hole]]:
        """Create a course and holes `1..num_holes` in one step."""
        name = (name or "").strip()
        location = (location or "").strip()
        if not name:
            raise ValidationError("Name can't be blank")
        if not location:
            raise ValidationError("Location can't be blank")

        count = normalize_hole_count(num_holes)
        with self._lock:
            for existing in self._courses.values():
                if (
                    existing.name.lower() == name.lower()
                    and existing.location.lower() == location.lower()
                ):
                    raise DuplicateCourseError(existing)

            course = Course(
                id=self._next_id("course"),
                name=name,
                location=location,
                description=description,
                style_seed=style_seed if style_seed is not None else random.randint(1, 2**31 - 1),
            )
            self._courses[course.id] = course
            holes = [self._create_hole(course.id, number) for number in range(1, count + 1)]

        logger.info(f"Created course {course.id} '{course.name}' with {count} holes")
        return replace(course), [replace(hole) for hole in holes]

    def get_course(self, course_id: int) -> Course:
        with self._lock:
            course = self._courses.get(course_id)
            if course is None:
                raise NotFoundError(f"Course {course_id} not found.")
            return replace(course)

    def list_courses(self) -> List[Course]:
        with self._lock:
            return sorted((replace(c) for c in self._courses.values()), key=lambda c: c.name)

    def generate_holes(self, course_id: int, num_holes: int | None) -> List[int]:
        """Create whichever of holes `1..num_holes` are missing. Returns the new numbers."""
        count = normalize_hole_count(num_holes)
        with self._lock:
            self.get_course(course_id)
            existing = {h.number for h in self._holes.values() if h.course_id == course_id}
            missing = [n for n in range(1, count + 1) if n not in existing]
            for number in missing:
                self._create_hole(course_id, number)
        return missing

    # Holes -----------------------------------------------------------------

    def _create_hole(self, course_id: int, number: int) -> Hole:
        if not 0 < number <= MAX_HOLE_NUMBER:
            raise ValidationError(f"Number must be between 1 and {MAX_HOLE_NUMBER}")
        hole = Hole(id=self._next_id("hole"), course_id=course_id, number=number)
        self._holes[hole.id] = hole
        return hole

    def get_hole(self, hole_id: int) -> Hole:
        with self._lock:
            hole = self._holes.get(hole_id)
            if hole is None:
                raise NotFoundError(f"Hole {hole_id} not found.")
            return replace(hole)

    def find_hole(self, course_id: int, number: int) -> Hole:
        with self._lock:
            for hole in self._holes.values():
                if hole.course_id == course_id and hole.number == number:
                    return replace(hole)
        raise NotFoundError(f"Hole {number} not found on course {course_id}.")

    def list_holes(self, course_id: int) -> List[Hole]:
        with self._lock:
            holes = [replace(h) for h in self._holes.values() if h.course_id == course_id]
        return sorted(holes, key=lambda h: h.number)

    def update_hole(self, hole_id: int, **changes: Any) -> Hole:
        """Apply attribute changes to a hole (stats, stylization status, legacy images)."""
        if "par" in changes and changes["par"] is not None and not 2 < changes["par"] < 6:
            raise ValidationError("Par must be between 3 and 5")
        if (
            "yardage" in changes
            and changes["yardage"] is not None
            and not 50 < changes["yardage"] < 800
        ):
            raise ValidationError("Yardage must be greater than 50 and less than 800")
        with self._lock:
            hole = self._holes.get(hole_id)
            if hole is None:
                raise NotFoundError(f"Hole {hole_id} not found.")
            for attr, value in changes.items():
                setattr(hole, attr, value)
            return replace(hole)

    def mark_hole_stylization(
        self,
        hole_id: int,
        status: StylizationStatus,
        error: str | None = None,
    ) -> Hole:
        return self.update_hole(hole_id, stylization_status=status, stylization_error=error)

    # Images ----------------------------------------------------------------

    def create_image(
        self,
        hole_id: int,
        user_id: str,
        kind: ImageKind = ImageKind.ORIGINAL,
        status: ImageStatus = ImageStatus.PENDING,
        source_image_id: int | None = None,
        attachment: Attachment | None = None,
    ) -> HoleImage:
        """Insert a hole image, then announce it to viewers of the hole."""
        if kind == ImageKind.STYLIZED:
            source = self.get_image(source_image_id) if source_image_id else None
            if source is None or source.kind != ImageKind.ORIGINAL:
                raise ValidationError("Stylized images must reference an original image")
        if status == ImageStatus.READY and attachment is None:
            raise ValidationError("Ready images must have an attachment")

        with self._lock:
            self.get_hole(hole_id)
            image = HoleImage(
                id=self._next_id("image"),
                hole_id=hole_id,
                user_id=user_id,
                kind=kind,
                status=status,
                source_image_id=source_image_id,
                attachment=attachment,
            )
            self._images[image.id] = image
            created = replace(image)

        self._after_image_created(created)
        return created

    def get_image(self, image_id: int) -> HoleImage:
        with self._lock:
            image = self._images.get(image_id)
            if image is None:
                raise NotFoundError(f"Image {image_id} not found.")
            return replace(image)

    def find_image(self, image_id: int | None) -> HoleImage | None:
        if image_id is None:
            return None
        try:
            return self.get_image(image_id)
        except NotFoundError:
            return None

    def get_hole_image(self, hole_id: int, image_id: int) -> HoleImage:
        image = self.get_image(image_id)
        if image.hole_id != hole_id:
            raise NotFoundError(f"Image {image_id} not found on hole {hole_id}.")
        return image

    def list_images(self, hole_id: int) -> List[HoleImage]:
        with self._lock:
            return [replace(i) for i in self._images.values() if i.hole_id == hole_id]

    def recent_images(self, hole_id: int, limit: int = 8) -> List[HoleImage]:
        images = sorted(
            self.list_images(hole_id), key=lambda i: (i.created_at, i.id), reverse=True
        )
        return images[:limit]

    def update_image(self, image_id: int, **changes: Any) -> HoleImage:
        """Apply changes to an image, then push the replacement tile."""
        with self._lock:
            image = self._images.get(image_id)
            if image is None:
                raise NotFoundError(f"Image {image_id} not found.")
            previous_status = image.status
            attachment = changes.get("attachment", image.attachment)
            if changes.get("status") == ImageStatus.READY and attachment is None:
                raise ValidationError("Ready images must have an attachment")
            for attr, value in changes.items():
                setattr(image, attr, value)
            image.updated_at = utcnow()
            updated = replace(image)

        self._after_image_updated(updated, previous_status)
        return updated

    def destroy_image(self, image_id: int) -> List[int]:
        """
        Delete an image, its derived images (recursively) and their votes.

        Attachments are purged asynchronously. Returns the deleted ids.
        """
        with self._lock:
            if image_id not in self._images:
                raise NotFoundError(f"Image {image_id} not found.")
            doomed: List[HoleImage] = []
            frontier = [image_id]
            while frontier:
                current = frontier.pop()
                doomed.append(self._images[current])
                frontier.extend(
                    i.id for i in self._images.values() if i.source_image_id == current
                )
            for image in doomed:
                del self._images[image.id]
                for key in [k for k in self._votes if k[0] == image.id]:
                    del self._votes[key]

        for image in doomed:
            if image.attachment is None:
                continue
            try:
                self._attachments.purge_later(image.attachment)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Could not schedule purge for image {image.id}: {exc}")
        deleted = [image.id for image in doomed]
        logger.info(f"Deleted hole images {deleted}")
        return deleted

    def _after_image_created(self, image: HoleImage) -> None:
        self._broadcaster.prepend_tile(image.hole_id, image_payload(image))

    def _after_image_updated(self, image: HoleImage, previous_status: ImageStatus) -> None:
        self._broadcaster.replace_tile(image.hole_id, image_payload(image))
        if image.status == ImageStatus.READY and previous_status != ImageStatus.READY:
            self._broadcaster.clear_flash(image.hole_id)

    # Votes -----------------------------------------------------------------

    def cast_vote(self, image_id: int, user_id: str, value: int) -> HoleImage:
        """Create or update `user_id`'s vote on an image, then recount."""
        if value not in (-1, 1):
            raise ValidationError("Value is not included in the list")
        with self._lock:
            if image_id not in self._images:
                raise NotFoundError(f"Image {image_id} not found.")
            key = (image_id, user_id)
            vote = self._votes.get(key)
            if vote is None:
                self._votes[key] = HoleImageVote(image_id=image_id, user_id=user_id, value=value)
            else:
                vote.value = value
                vote.updated_at = utcnow()
            return self.recount_votes(image_id)

    def recount_votes(self, image_id: int) -> HoleImage:
        """Recompute an image's counters from its vote rows."""
        with self._lock:
            image = self._images.get(image_id)
            if image is None:
                raise NotFoundError(f"Image {image_id} not found.")
            values = [v.value for (i, _), v in self._votes.items() if i == image_id]
            image.upvotes_count = values.count(1)
            image.downvotes_count = values.count(-1)
            return replace(image)

    def votes_for(self, image_id: int) -> List[HoleImageVote]:
        with self._lock:
            return [replace(v) for (i, _), v in self._votes.items() if i == image_id]

    # Blobs -----------------------------------------------------------------

    def read_attachment(self, attachment: Attachment) -> bytes:
        try:
            return self._attachments.read(attachment)
        except AttachmentError:
            logger.error(f"Attachment {attachment.key} is missing from storage")
            raise


_default_store: MediaStore | None = None


def get_media_store() -> MediaStore:
    """
    Return the process-wide media store instance.

    Abstracted behind a function so tests can build isolated stores.
    """
    global _default_store
    if _default_store is None:
        _default_store = MediaStore()
    return _default_store
