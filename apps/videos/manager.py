"""Video lifecycle: upload, list, stream and delete across the blob store and the ``videos`` table.

The two stores share no transaction. Writes go blob first and metadata second, deletes go
metadata first and blob second, so a row never points at a blob that was never written.
Leaked blobs are tolerated and only logged.
"""
import logging
import os
import uuid
from typing import AsyncIterator, List, Optional, Protocol

from apps.videos.exceptions import InvalidInput, NotFound, StorageWriteError, StorageReadError, \
    MetadataReadError, MetadataWriteError
from apps.videos.models import MAX_NAME_LENGTH, Video
from apps.videos.schema import VideoResponse
from apps.videos.services import VideoRepository
from apps.videos.storage import BlobStoreError, StorageInterface
from config.settings import API_V1_STR, VERIFY_UPLOADS

logger = logging.getLogger(__name__)

PRESIGNED_URL_TTL = 3600
UPLOAD_CHUNK_SIZE = 1024 * 1024


class AsyncReader(Protocol):
    async def read(self, size: int = -1) -> bytes:
        ...


def default_title(filename: str) -> str:
    """Original file name without its extension."""
    title, _ = os.path.splitext(filename)
    return title or filename


def clean_filename(filename: Optional[str]) -> str:
    # some browsers send the client-side path
    return os.path.basename((filename or '').replace('\\', '/')).strip()


class VideoManager:

    def __init__(self, storage: StorageInterface, repository: Optional[VideoRepository] = None,
                 stream_url_prefix: str = f'{API_V1_STR}/videos/stream', verify_uploads: bool = VERIFY_UPLOADS,
                 chunk_size: int = UPLOAD_CHUNK_SIZE):
        self.storage = storage
        self.repository = repository or VideoRepository()
        self.stream_url_prefix = stream_url_prefix.rstrip('/')
        self.verify_uploads = verify_uploads
        self.chunk_size = chunk_size

    @staticmethod
    def new_storage_key() -> str:
        return uuid.uuid4().hex

    def to_response(self, video: Video) -> VideoResponse:
        return VideoResponse(
            id=video.id,
            title=video.title,
            url=f'{self.stream_url_prefix}/{video.id}',
            size=video.file_size,
            content_type=video.content_type,
            uploaded_at=video.created_at,
        )

    async def _chunks(self, file: AsyncReader) -> AsyncIterator[bytes]:
        while True:
            chunk = await file.read(self.chunk_size)
            if not chunk:
                break
            yield chunk

    async def _discard_blob(self, key: str, reason: str) -> None:
        try:
            await self.storage.delete(key)
        except Exception:
            logger.warning('Could not delete blob %s (%s)', key, reason, exc_info=True)
        else:
            logger.info('Deleted blob %s (%s)', key, reason)

    async def _get_record(self, video_id: int) -> Video:
        try:
            video = await self.repository.get_by_id(video_id)
        except Exception as e:
            logger.error('Failed to load video %s: %s', video_id, e)
            raise MetadataReadError('Failed to get video') from e
        if video is None:
            raise NotFound(f'Video {video_id} not found')
        return video

    async def upload(self, file: AsyncReader, filename: str, content_type: str, size: Optional[int] = None,
                     title: Optional[str] = None) -> VideoResponse:
        if not content_type or not content_type.lower().startswith('video/'):
            raise InvalidInput('File must be a video')
        filename = clean_filename(filename)
        if not filename:
            raise InvalidInput('Uploaded file has no name')
        title = (title or '').strip() or default_title(filename)
        for label, value in (('File name', filename), ('Title', title), ('Content type', content_type)):
            if len(value) > MAX_NAME_LENGTH:
                raise InvalidInput(f'{label} longer than {MAX_NAME_LENGTH} characters')

        if size is None:
            data = await file.read()
            size = len(data)
        else:
            data = self._chunks(file)

        key = self.new_storage_key()
        try:
            blob_url = await self.storage.put(key, data, content_type, size)
            if self.verify_uploads and not await self.storage.exists(key):
                raise BlobStoreError(f'blob {key} missing after write')
        except BlobStoreError as e:
            logger.error('Blob write failed for %s: %s', key, e)
            raise StorageWriteError(f'Failed to upload video: {e}') from e

        try:
            video = await self.repository.create(
                title=title,
                filename=filename,
                storage_key=key,
                blob_url=blob_url,
                content_type=content_type,
                size=size,
            )
        except Exception as e:
            logger.error('Failed to save metadata for blob %s: %s', key, e)
            await self._discard_blob(key, 'metadata insert failed')
            raise MetadataWriteError('Failed to save video metadata') from e

        logger.info('Uploaded video %s (%s, %d bytes)', video.id, key, size)
        return self.to_response(video)

    async def list_videos(self) -> List[VideoResponse]:
        try:
            videos = await self.repository.list_all()
        except Exception as e:
            logger.error('Failed to list videos: %s', e)
            raise MetadataReadError('Failed to list videos') from e
        return [self.to_response(v) for v in videos]

    async def stream_url(self, video_id: int) -> str:
        """Time-limited URL the client should be redirected to."""
        video = await self._get_record(video_id)
        if not video.storage_key:
            raise NotFound('Video not stored in blob storage')
        try:
            return await self.storage.presigned_url(video.storage_key, PRESIGNED_URL_TTL)
        except BlobStoreError as e:
            logger.error('Failed to presign %s: %s', video.storage_key, e)
            raise StorageReadError('Failed to generate video URL') from e

    async def delete(self, video_id: int) -> None:
        video = await self._get_record(video_id)
        try:
            await self.repository.delete_by_id(video.id)
        except Exception as e:
            logger.error('Failed to delete video %s: %s', video.id, e)
            raise MetadataWriteError('Failed to delete video') from e

        if video.storage_key:
            await self._discard_blob(video.storage_key, f'video {video.id} deleted')
        logger.info('Deleted video %s', video.id)
