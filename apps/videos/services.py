from typing import List, Optional

from apps.videos.models import Video


class VideoRepository:
    """Access to the ``videos`` table.

    ORM failures are not caught here; callers decide which of them are reads and which are writes.
    """

    async def create(self, title: str, filename: str, storage_key: Optional[str], blob_url: Optional[str],
                     content_type: str, size: int) -> Video:
        return await Video.create(
            title=title,
            filename=filename,
            storage_key=storage_key,
            blob_url=blob_url,
            content_type=content_type,
            file_size=size,
        )

    async def list_all(self) -> List[Video]:
        return await Video.all().order_by('created_at', 'id')

    async def get_by_id(self, video_id: int) -> Optional[Video]:
        return await Video.filter(id=video_id).first()

    async def delete_by_id(self, video_id: int) -> None:
        await Video.filter(id=video_id).delete()

    async def count(self) -> int:
        return await Video.all().count()
