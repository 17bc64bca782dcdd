from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, PositiveInt


class ImageKind(str, Enum):
    """Whether a hole image was uploaded by a user or derived by stylization."""

    ORIGINAL = "original"
    STYLIZED = "stylized"


class ImageStatus(str, Enum):
    """Lifecycle states for an uploaded or derived hole image."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class StylizationStatus(str, Enum):
    """Coarse per-hole status mirrored for the legacy single-layout path."""

    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class CourseCreate(BaseModel):
    """Payload for creating a course together with its holes."""

    name: str = Field(..., description="Course name, e.g. 'Pebble Beach Golf Links'.")
    location: str = Field(..., description="City/region used to disambiguate names.")
    description: str | None = Field(default=None, description="Optional free text.")
    num_holes: int = Field(
        default=18,
        description="Number of holes to create. Anything other than 9 or 18 becomes 18.",
    )
    style_seed: int | None = Field(
        default=None,
        description="Seed fed to the stylization model. Randomly assigned when omitted.",
    )


class GenerateHolesRequest(BaseModel):
    """Payload for adding any missing holes to a course."""

    num_holes: int = Field(default=18, description="Target hole count (9 or 18).")


class HoleUpdate(BaseModel):
    """Editable hole statistics."""

    par: int | None = Field(default=None, ge=3, le=5, description="Par for the hole.")
    yardage: int | None = Field(
        default=None, gt=50, lt=800, description="Playing length in yards."
    )


class VoteRequest(BaseModel):
    """A directional vote. -1 is a downvote; any other value counts as +1."""

    value: int = Field(default=1, description="-1 to downvote, 1 to upvote.")


class CropParams(BaseModel):
    """
    Crop-tool state replayed on the server.

    These mirror what the browser crop overlay tracks: the on-screen viewport
    size, the pan offset relative to the viewport centre and the zoom factor.
    """

    viewport_width: PositiveInt = Field(..., description="Viewport width in CSS pixels.")
    viewport_height: PositiveInt = Field(..., description="Viewport height in CSS pixels.")
    offset_x: float = Field(default=0.0, description="Horizontal pan offset in CSS pixels.")
    offset_y: float = Field(default=0.0, description="Vertical pan offset in CSS pixels.")
    zoom: float = Field(default=1.0, description="User zoom factor, clamped to [1, 3].")


class AttachmentRead(BaseModel):
    """Public view of an attachment. The storage key is not exposed."""

    model_config = ConfigDict(from_attributes=True)

    filename: str
    content_type: str
    byte_size: int


class HoleImageRead(BaseModel):
    """Public view of a hole image tile."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    hole_id: int
    user_id: str
    kind: ImageKind
    status: ImageStatus
    upvotes_count: int
    downvotes_count: int
    score: float
    source_image_id: int | None = None
    error_message: str | None = None
    attachment: AttachmentRead | None = None
    content_url: str | None = Field(
        default=None,
        description="Relative URL serving the image bytes, once attached.",
    )
    created_at: str = Field(..., description="Creation timestamp in ISO 8601 format (UTC).")


class HoleRead(BaseModel):
    """Summary of a hole."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    course_id: int
    number: int
    par: int | None = None
    yardage: int | None = None
    stylization_status: StylizationStatus | None = None
    stylization_error: str | None = None


class HoleDetail(BaseModel):
    """Hole page payload: stats, a freshly drawn display image and recent media."""

    hole: HoleRead
    display_image: HoleImageRead | None = Field(
        default=None,
        description="Score-weighted random pick; drawn independently on every request.",
    )
    recent_images: List[HoleImageRead] = Field(
        default_factory=list,
        description="Newest uploads and derived images for the hole (up to 8).",
    )
    max_hole_number: int = Field(..., description="Highest hole number on the course.")
    image_stream: str = Field(..., description="Topic carrying image tile updates.")
    flash_stream: str = Field(..., description="Topic carrying processing notices.")


class CourseRead(BaseModel):
    """Course summary for listings."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    location: str
    description: str | None = None
    style_seed: int | None = None


class CourseDetail(CourseRead):
    """Course with its holes ordered by number."""

    holes: List[HoleRead] = Field(default_factory=list)


class GenerateHolesResponse(BaseModel):
    """Outcome of a generate-holes request."""

    course_id: int
    added: List[int] = Field(default_factory=list, description="Hole numbers created.")


class UploadAccepted(BaseModel):
    """Response for an accepted upload."""

    image: HoleImageRead
    message: str = Field(..., description="User-facing notice.")
