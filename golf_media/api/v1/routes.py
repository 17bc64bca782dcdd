import asyncio
import json
from typing import Any, Dict

from fastapi import (
    APIRouter,
    File,
    Form,
    Header,
    HTTPException,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from golf_media.api.v1.schemas import (
    CourseCreate,
    CourseDetail,
    CourseRead,
    CropParams,
    GenerateHolesRequest,
    GenerateHolesResponse,
    HoleDetail,
    HoleImageRead,
    HoleRead,
    HoleUpdate,
    UploadAccepted,
    VoteRequest,
)
from golf_media.services.attachments import AttachmentError
from golf_media.services.broadcast import flash_stream, image_stream
from golf_media.services.cropper import CropError, FileTooLargeError
from golf_media.services.media import (
    DuplicateCourseError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    get_media_store,
    image_payload,
)
from golf_media.services.selection import images_for_display, select_image_for_display
from golf_media.services import uploads

router = APIRouter(prefix="/api/v1")


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _forbidden(exc: PermissionDeniedError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


def _hole_or_404(course_id: int, number: int):
    store = get_media_store()
    try:
        return store.find_hole(course_id, number)
    except NotFoundError as exc:
        raise _not_found(exc) from exc


def _image_read(image) -> HoleImageRead:
    return HoleImageRead.model_validate(image_payload(image))


@router.get("/health", tags=["health"])
async def health_check() -> dict:
    """API v1 health check endpoint."""
    return {"status": "ok", "api_version": "v1"}


@router.post(
    "/courses",
    response_model=CourseDetail,
    status_code=status.HTTP_201_CREATED,
    tags=["courses"],
    summary="Create a course with its holes",
)
async def create_course(payload: CourseCreate) -> CourseDetail:
    """
    Create a course and its holes in one go.

    Names and locations are compared case-insensitively after trimming, so
    "Augusta National" in "augusta, ga " is a duplicate of an existing
    "Augusta National" in "Augusta, GA".
    """
    store = get_media_store()
    try:
        course, holes = store.create_course(
            name=payload.name,
            location=payload.location,
            description=payload.description,
            num_holes=payload.num_holes,
            style_seed=payload.style_seed,
        )
    except DuplicateCourseError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "course_id": exc.existing.id},
        ) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc

    return CourseDetail(
        **CourseRead.model_validate(course).model_dump(),
        holes=[HoleRead.model_validate(h) for h in holes],
    )


@router.get("/courses", response_model=list[CourseRead], tags=["courses"])
async def list_courses() -> list[CourseRead]:
    """List courses ordered by name."""
    return [CourseRead.model_validate(c) for c in get_media_store().list_courses()]


@router.get("/courses/{course_id}", response_model=CourseDetail, tags=["courses"])
async def get_course(course_id: int) -> CourseDetail:
    store = get_media_store()
    try:
        course = store.get_course(course_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return CourseDetail(
        **CourseRead.model_validate(course).model_dump(),
        holes=[HoleRead.model_validate(h) for h in store.list_holes(course_id)],
    )


@router.post(
    "/courses/{course_id}/holes",
    response_model=GenerateHolesResponse,
    tags=["courses"],
    summary="Add missing holes up to 9 or 18",
)
async def generate_holes(course_id: int, payload: GenerateHolesRequest) -> GenerateHolesResponse:
    store = get_media_store()
    try:
        added = store.generate_holes(course_id, payload.num_holes)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return GenerateHolesResponse(course_id=course_id, added=added)


@router.get(
    "/courses/{course_id}/holes/{number}",
    response_model=HoleDetail,
    tags=["holes"],
    summary="Hole page data",
)
async def get_hole(course_id: int, number: int) -> HoleDetail:
    """
    Return hole stats, a display image and recent uploads.

    The display image is a score-weighted random draw made fresh for every
    request, so repeated visits rotate through well-liked images.
    """
    store = get_media_store()
    hole = _hole_or_404(course_id, number)
    images = store.list_images(hole.id)
    display = select_image_for_display(images)
    holes = store.list_holes(course_id)

    return HoleDetail(
        hole=HoleRead.model_validate(hole),
        display_image=_image_read(display) if display else None,
        recent_images=[_image_read(i) for i in store.recent_images(hole.id)],
        max_hole_number=max((h.number for h in holes), default=18),
        image_stream=image_stream(hole.id),
        flash_stream=flash_stream(hole.id),
    )


@router.patch("/courses/{course_id}/holes/{number}", response_model=HoleRead, tags=["holes"])
async def update_hole(course_id: int, number: int, payload: HoleUpdate) -> HoleRead:
    hole = _hole_or_404(course_id, number)
    try:
        updated = get_media_store().update_hole(hole.id, **payload.model_dump(exclude_unset=True))
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    return HoleRead.model_validate(updated)


@router.get(
    "/courses/{course_id}/holes/{number}/images",
    response_model=list[HoleImageRead],
    tags=["images"],
    summary="Gallery of display-eligible images",
)
async def list_hole_images(course_id: int, number: int) -> list[HoleImageRead]:
    hole = _hole_or_404(course_id, number)
    images = images_for_display(get_media_store().list_images(hole.id))
    return [_image_read(i) for i in images]


@router.post(
    "/courses/{course_id}/holes/{number}/images",
    response_model=UploadAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["images"],
    summary="Upload a hole image or video",
)
async def upload_hole_image(
    course_id: int,
    number: int,
    file: UploadFile = File(..., description="Image (stylized after upload) or video, max 10MB."),
    crop: str | None = Form(
        default=None,
        description=(
            "Optional JSON-encoded crop state, e.g. "
            "{\"viewport_width\":300,\"viewport_height\":400,\"offset_x\":0,\"offset_y\":0,\"zoom\":1}."
        ),
    ),
    user_id: str = Header(..., alias="X-User-Id"),
) -> UploadAccepted:
    """
    Accept an upload from the hole media tab.

    Images are stored as a processing placeholder and queued for
    stylization; progress arrives on the hole's image stream. Videos are
    stored and shown as-is.
    """
    hole = _hole_or_404(course_id, number)

    crop_params = None
    if crop:
        try:
            crop_params = CropParams.model_validate(json.loads(crop))
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Invalid `crop` payload. Expected a JSON CropParams object.",
            ) from exc

    data = await file.read()
    try:
        image = uploads.accept_upload(
            hole.id, user_id, data, file.content_type, file.filename, crop_params
        )
    except FileTooLargeError as exc:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)
        ) from exc
    except uploads.UnsupportedMediaError as exc:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(exc)
        ) from exc
    except CropError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    except AttachmentError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to persist the upload.",
        ) from exc

    message = (
        "Video uploaded."
        if image.attachment and image.attachment.is_video
        else "Layout image uploaded and is processing…"
    )
    return UploadAccepted(image=_image_read(image), message=message)


@router.post(
    "/courses/{course_id}/holes/{number}/images/{image_id}/vote",
    response_model=HoleImageRead,
    tags=["images"],
)
async def vote_image(
    course_id: int,
    number: int,
    image_id: int,
    payload: VoteRequest,
    user_id: str = Header(..., alias="X-User-Id"),
) -> HoleImageRead:
    hole = _hole_or_404(course_id, number)
    try:
        image = uploads.vote(hole.id, image_id, user_id, payload.value)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return _image_read(image)


@router.post(
    "/courses/{course_id}/holes/{number}/images/{image_id}/redo",
    response_model=HoleImageRead,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["images"],
)
async def redo_stylization(
    course_id: int,
    number: int,
    image_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
) -> HoleImageRead:
    """Queue stylization again for one of the caller's uploads."""
    hole = _hole_or_404(course_id, number)
    try:
        image = uploads.redo_stylization(hole.id, image_id, user_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except PermissionDeniedError as exc:
        raise _forbidden(exc) from exc
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    return _image_read(image)


@router.delete(
    "/courses/{course_id}/holes/{number}/images/{image_id}",
    tags=["images"],
)
async def delete_hole_image(
    course_id: int,
    number: int,
    image_id: int,
    user_id: str = Header(..., alias="X-User-Id"),
) -> dict:
    hole = _hole_or_404(course_id, number)
    try:
        deleted = uploads.delete_upload(hole.id, image_id, user_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except PermissionDeniedError as exc:
        raise _forbidden(exc) from exc
    return {"deleted": deleted, "message": "Image deleted."}


@router.post(
    "/courses/{course_id}/holes/{number}/layout",
    response_model=HoleRead,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["holes"],
    summary="Replace the hole's legacy layout image",
)
async def upload_layout(
    course_id: int,
    number: int,
    layout_image: UploadFile = File(..., description="Top-down hole layout image."),
) -> HoleRead:
    hole = _hole_or_404(course_id, number)
    data = await layout_image.read()
    try:
        updated = uploads.upload_layout_image(
            hole.id, data, layout_image.content_type, layout_image.filename
        )
    except FileTooLargeError as exc:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)
        ) from exc
    except uploads.UnsupportedMediaError as exc:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(exc)
        ) from exc
    return HoleRead.model_validate(updated)


@router.get("/images/{image_id}/content", tags=["images"])
async def image_content(image_id: int) -> Response:
    """Serve the stored bytes of a hole image or video."""
    store = get_media_store()
    try:
        image = store.get_image(image_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    if image.attachment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image has no content yet.")
    try:
        data = store.read_attachment(image.attachment)
    except AttachmentError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image content is gone.") from exc
    return Response(content=data, media_type=image.attachment.content_type)


@router.websocket("/holes/{hole_id}/stream")
async def hole_stream(websocket: WebSocket, hole_id: int) -> None:
    """
    Push tile and flash events for one hole.

    Events are published from worker threads; they are handed to this
    connection's event loop before being sent.
    """
    broadcaster = get_media_store().broadcaster
    loop = asyncio.get_running_loop()
    events: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

    def _forward(topic: str):
        def callback(event: Dict[str, Any]) -> None:
            loop.call_soon_threadsafe(events.put_nowait, {"topic": topic, **event})

        return callback

    # Subscribe before accepting so nothing published after the handshake is lost.
    unsubscribers = [
        broadcaster.subscribe(topic, _forward(topic))
        for topic in (image_stream(hole_id), flash_stream(hole_id))
    ]

    async def _pump() -> None:
        while True:
            event = await events.get()
            await websocket.send_json(event)

    sender = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(_pump())
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        if sender is not None:
            sender.cancel()
        for unsubscribe in unsubscribers:
            unsubscribe()
