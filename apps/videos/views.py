import os

from fastapi import Depends, HTTPException, Request
from fastapi.responses import FileResponse, RedirectResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from apps.videos.exceptions import InvalidInput, NotFound
from apps.videos.manager import VideoManager
from apps.videos.models import MAX_VIDEO_ID
from apps.videos.storage import BlobStoreError, LocalStorage
from config.settings import MAX_UPLOAD_SIZE


def get_video_manager(request: Request) -> VideoManager:
    return request.app.state.video_manager


def parse_video_id(raw: str) -> int:
    try:
        video_id = int(raw)
    except (TypeError, ValueError):
        raise InvalidInput('Invalid video ID') from None
    if not 0 < video_id <= MAX_VIDEO_ID:
        raise InvalidInput('Invalid video ID')
    return video_id


async def upload_video(request: Request, manager: VideoManager = Depends(get_video_manager)):
    content_length = request.headers.get('content-length', '')
    if content_length.isdigit() and int(content_length) > MAX_UPLOAD_SIZE:
        raise InvalidInput('File too large or invalid form data')
    try:
        form = await request.form()
    except (MultiPartException, StarletteHTTPException, KeyError, ValueError) as e:
        raise InvalidInput('File too large or invalid form data') from e

    try:
        upload = form.get('video')
        if not isinstance(upload, UploadFile):
            raise InvalidInput('Failed to read video file')
        if upload.size is not None and upload.size > MAX_UPLOAD_SIZE:
            raise InvalidInput('File too large or invalid form data')
        title = form.get('title')
        return await manager.upload(
            upload,
            filename=upload.filename,
            content_type=upload.content_type,
            size=upload.size,
            title=title if isinstance(title, str) else None,
        )
    finally:
        await form.close()


async def list_videos(manager: VideoManager = Depends(get_video_manager)):
    return await manager.list_videos()


async def stream_video(video_id: str, manager: VideoManager = Depends(get_video_manager)):
    url = await manager.stream_url(parse_video_id(video_id))
    return RedirectResponse(url, status_code=307)


async def delete_video(video_id: str, manager: VideoManager = Depends(get_video_manager)):
    await manager.delete(parse_video_id(video_id))
    return {'message': 'Video deleted successfully'}


async def serve_blob(key: str, expires: str = '', signature: str = '',
                     manager: VideoManager = Depends(get_video_manager)):
    """Serves the signed links handed out by the local blob store."""
    storage = manager.storage
    if not isinstance(storage, LocalStorage):
        raise NotFound('Blob not found')
    try:
        path = storage.path_for(key)
    except BlobStoreError:
        raise NotFound('Blob not found') from None
    try:
        expires_at = int(expires)
    except ValueError:
        expires_at = None
    if expires_at is None or not storage.verify(key, expires_at, signature):
        raise HTTPException(status_code=403, detail='Invalid or expired link')
    if not os.path.isfile(path):
        raise NotFound('Blob not found')
    return FileResponse(path, media_type=storage.content_type(key) or 'application/octet-stream')
