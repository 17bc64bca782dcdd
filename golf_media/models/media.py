from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from golf_media.api.v1.schemas import ImageKind, ImageStatus, StylizationStatus


def utcnow() -> datetime:
    """Return an explicit, timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Attachment:
    """
    Metadata for one blob held by the attachment store.

    The bytes themselves live on disk under the store's base directory and are
    addressed only by the opaque `key`.
    """

    key: str
    filename: str
    content_type: str
    byte_size: int
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return self.content_type.startswith("video/")


@dataclass(slots=True)
class Course:
    """A golf course. Owns its holes."""

    id: int
    name: str
    location: str
    description: str | None = None
    # Fed to the generation API so every hole of a course comes out in the
    # same visual style.
    style_seed: int | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Hole:
    """
    One playable hole of a course.

    `layout_image` / `stylized_layout_image` are the legacy single-image pair;
    user uploads live in `HoleImage` records instead.
    """

    id: int
    course_id: int
    number: int
    par: int | None = None
    yardage: int | None = None
    layout_image: Attachment | None = None
    stylized_layout_image: Attachment | None = None
    stylization_status: StylizationStatus | None = None
    stylization_error: str | None = None


@dataclass(slots=True)
class HoleImage:
    """
    Uploaded (original) or derived (stylized) media attached to a hole.

    Vote counters are denormalized from `HoleImageVote` rows and recomputed on
    every vote write.
    """

    id: int
    hole_id: int
    user_id: str
    kind: ImageKind = ImageKind.ORIGINAL
    status: ImageStatus = ImageStatus.PENDING
    upvotes_count: int = 0
    downvotes_count: int = 0
    source_image_id: int | None = None
    error_message: str | None = None
    attachment: Attachment | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def score(self) -> float:
        total = self.upvotes_count + self.downvotes_count
        if total == 0:
            return 0.5
        return self.upvotes_count / total

    @property
    def is_image_content(self) -> bool:
        return self.attachment is not None and self.attachment.is_image


@dataclass(slots=True)
class HoleImageVote:
    """A single user's +1/-1 vote on a hole image."""

    image_id: int
    user_id: str
    value: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

