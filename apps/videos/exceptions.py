class VideoServiceError(Exception):
    """Base error of the video lifecycle; carries the HTTP status the API answers with."""
    status_code = 500
    default_message = 'Internal error'

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(VideoServiceError):
    status_code = 400
    default_message = 'Invalid input'


class NotFound(VideoServiceError):
    status_code = 404
    default_message = 'Video not found'


class StorageWriteError(VideoServiceError):
    default_message = 'Failed to store video'


class StorageReadError(VideoServiceError):
    default_message = 'Failed to generate video URL'


class MetadataReadError(VideoServiceError):
    default_message = 'Failed to read video metadata'


class MetadataWriteError(VideoServiceError):
    default_message = 'Failed to save video metadata'
