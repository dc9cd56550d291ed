from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class VideoResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    title: str
    url: str
    size: int
    content_type: str
    uploaded_at: datetime


class MessageResponse(BaseModel):
    message: str
