"""
SIHA Backend — Vitals Analysis Routes
=======================================

What:  Endpoints that accept camera input and return vital-sign estimates.
Why:   Entry point for the face-scan feature of the mobile app.
How:   Reads uploads into memory, validates them with UploadService and
       delegates to AnalysisService.
Who:   Called by the mobile client after a face scan.

Request Flow (POST /api/ai/analyze-video):
    1. Client sends multipart/form-data with repeated `frames` parts
    2. Each part is read and validated (image/*, size)
    3. AnalysisService compresses the batch and forwards it
    4. 200 with {success, result, saved_metrics, compression}
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from siha.database import get_db_session
from siha.exceptions import ValidationError
from siha.schemas.analysis import AnalysisResponse, AnalyzeFramesRequest, ErrorResponse
from siha.services.analysis_service import analysis_service
from siha.services.upload_service import upload_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["Analysis"])

_ERROR_RESPONSES = {
    400: {"description": "Invalid input", "model": ErrorResponse},
    503: {"description": "Vitals service unavailable", "model": ErrorResponse},
}

_FRAME_ERROR_RESPONSES = {
    **_ERROR_RESPONSES,
    413: {"description": "Payload too large after compression", "model": ErrorResponse},
    422: {"description": "A frame could not be re-encoded", "model": ErrorResponse},
}


@router.post(
    "/analyze-image",
    response_model=AnalysisResponse,
    responses=_ERROR_RESPONSES,
    summary="Analyze a single image for vital signs",
)
async def analyze_image(
    image: Optional[UploadFile] = File(None, description="Face image (image/*, max 10MB)"),
    sensor_data: Optional[str] = Form(None, description="JSON-encoded sensor hints"),
    save: bool = Form(False),
    user_id: Optional[UUID] = Form(None),
    db: AsyncSession = Depends(get_db_session),
) -> AnalysisResponse:
    if image is None:
        raise ValidationError(message="No image file provided", field="image")

    try:
        content = upload_service.validate_image(
            image.filename, image.content_type, await image.read()
        )
    finally:
        await image.close()

    logger.info(
        "Received image analysis request: filename=%s, size=%d bytes",
        image.filename or "unknown",
        len(content),
    )

    return await analysis_service.analyze_image(
        db,
        content,
        sensor_data=upload_service.parse_json_field(sensor_data, "sensor_data"),
        save=save,
        user_id=user_id,
    )


@router.post(
    "/analyze-video",
    response_model=AnalysisResponse,
    responses=_FRAME_ERROR_RESPONSES,
    summary="Analyze a sequence of uploaded frames",
    description=(
        "Upload up to 100 frames in capture order. The first 12 are used; they are "
        "re-encoded as needed so the forwarded payload stays under the size limit."
    ),
)
async def analyze_video(
    frames: Optional[List[UploadFile]] = File(None, description="Frames in capture order"),
    sensor_data: Optional[str] = Form(None),
    user_profile: Optional[str] = Form(None),
    save: bool = Form(False),
    user_id: Optional[UUID] = Form(None),
    db: AsyncSession = Depends(get_db_session),
) -> AnalysisResponse:
    uploads = frames or []
    upload_service.validate_frame_count(len(uploads))

    contents = []
    try:
        for upload in uploads:
            contents.append(
                upload_service.validate_image(
                    upload.filename, upload.content_type, await upload.read()
                )
            )
    finally:
        for upload in uploads:
            await upload.close()

    logger.info(
        "Received video analysis request: %d frames, %.2f MB",
        len(contents),
        sum(len(c) for c in contents) / (1024 * 1024),
    )

    return await analysis_service.analyze_video_frames(
        db,
        contents,
        sensor_data=upload_service.parse_json_field(sensor_data, "sensor_data"),
        user_profile=upload_service.parse_json_field(user_profile, "user_profile"),
        save=save,
        user_id=user_id,
    )


@router.post(
    "/analyze-video/base64",
    response_model=AnalysisResponse,
    responses=_FRAME_ERROR_RESPONSES,
    summary="Analyze a sequence of base64-encoded frames",
)
async def analyze_video_base64(
    request: AnalyzeFramesRequest,
    db: AsyncSession = Depends(get_db_session),
) -> AnalysisResponse:
    logger.info("Received base64 video analysis request: %d frames", len(request.frames))
    frames = upload_service.decode_base64_frames(request.frames)

    return await analysis_service.analyze_video_frames(
        db,
        frames,
        sensor_data=request.sensor_data,
        user_profile=request.user_profile,
        save=request.save,
        user_id=request.user_id,
    )


@router.post(
    "/analyze-video-file",
    response_model=AnalysisResponse,
    responses=_ERROR_RESPONSES,
    summary="Analyze a recorded video file",
)
async def analyze_video_file(
    video: Optional[UploadFile] = File(None, description="Video file (video/*, max 50MB)"),
    sensor_data: Optional[str] = Form(None),
    user_profile: Optional[str] = Form(None),
    save: bool = Form(False),
    user_id: Optional[UUID] = Form(None),
    db: AsyncSession = Depends(get_db_session),
) -> AnalysisResponse:
    if video is None:
        raise ValidationError(message="No video file provided", field="video")

    try:
        content = upload_service.validate_video(
            video.filename, video.content_type, await video.read()
        )
    finally:
        await video.close()

    return await analysis_service.analyze_video_file(
        db,
        content,
        mime_type=video.content_type,
        sensor_data=upload_service.parse_json_field(sensor_data, "sensor_data"),
        user_profile=upload_service.parse_json_field(user_profile, "user_profile"),
        save=save,
        user_id=user_id,
    )
