"""Models for the videos app.

Video - one row per uploaded video. The bytes live in the blob store under
``storage_key``; this table only keeps the metadata.
"""
from tortoise import fields, models

MAX_NAME_LENGTH = 255
MAX_VIDEO_ID = 2 ** 63 - 1


class Video(models.Model):
    id = fields.BigIntField(primary_key=True)
    title = fields.CharField(max_length=MAX_NAME_LENGTH)
    filename = fields.CharField(max_length=MAX_NAME_LENGTH)
    # null only for rows written without blob backing
    storage_key = fields.CharField(max_length=512, unique=True, null=True)
    blob_url = fields.TextField(null=True)
    content_type = fields.CharField(max_length=MAX_NAME_LENGTH)
    file_size = fields.BigIntField()
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        default_connection = "default"
        table = "videos"
        ordering = ["created_at", "id"]

    def __str__(self):
        return f'{self.id}:{self.title}'
