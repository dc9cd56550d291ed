# videos/routers.py
from typing import List

from fastapi import APIRouter

from apps.videos.schema import MessageResponse, VideoResponse
from config.settings import API_V1_STR
from .views import upload_video, list_videos, stream_video, delete_video, serve_blob

router = APIRouter(tags=['videos'])

router.get(f"{API_V1_STR}/videos/", response_model=List[VideoResponse])(list_videos)
router.post(f"{API_V1_STR}/videos/upload", status_code=201, response_model=VideoResponse)(upload_video)
router.get(f"{API_V1_STR}/videos/stream/{{video_id}}", status_code=307)(stream_video)
router.delete(f"{API_V1_STR}/videos/{{video_id}}", response_model=MessageResponse)(delete_video)
router.get(f"{API_V1_STR}/videos/blobs/{{key}}")(serve_blob)
