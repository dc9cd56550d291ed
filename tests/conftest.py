import asyncio
import os
import shutil
import tempfile

import pytest

# App modules read their settings at import time, so these must be set before any test module imports them.
_STORAGE_DIR = tempfile.mkdtemp(prefix='videos-test-')
os.environ.setdefault('DATABASE_URL', 'sqlite://:memory:')
os.environ.setdefault('STORAGE_BACKEND', 'local')
os.environ.setdefault('LOCAL_STORAGE_PATH', _STORAGE_DIR)
os.environ.setdefault('LOCAL_SIGNING_SECRET', 'test-secret')
os.environ.setdefault('S3_ENDPOINT', '')
os.environ.setdefault('S3_BUCKET', '')
os.environ.setdefault('S3_ACCESS_KEY', '')
os.environ.setdefault('S3_SECRET_KEY', '')

from apps.videos.storage import BlobStoreError, iter_chunks  # noqa: E402
from config.db import init_db, close_db  # noqa: E402


@pytest.fixture(autouse=True, scope='session')
def cleanup_storage():
    yield
    shutil.rmtree(_STORAGE_DIR, ignore_errors=True)


class FakeReader:
    """Just enough of UploadFile for the manager."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    async def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self.data) - self.pos
        chunk = self.data[self.pos:self.pos + size]
        self.pos += len(chunk)
        return chunk


class FakeStorage:
    """In-memory blob store with switchable failures."""

    def __init__(self):
        self.objects = {}
        self.puts = 0
        self.fail_put = False
        self.fail_delete = False
        self.fail_presign = False
        self.drop_writes = False

    async def put(self, key, data, content_type, size=None):
        self.puts += 1
        if self.fail_put:
            raise BlobStoreError('put refused')
        body = b''.join([chunk async for chunk in iter_chunks(data)])
        if not self.drop_writes:
            self.objects[key] = (body, content_type)
        return f'memory://bucket/{key}'

    async def presigned_url(self, key, ttl):
        if self.fail_presign:
            raise BlobStoreError('presign refused')
        return f'https://blobs.example.com/{key}?ttl={ttl}'

    async def get(self, key):
        obj = self.objects.get(key)
        return obj[0] if obj else None

    async def exists(self, key):
        return key in self.objects

    async def delete(self, key):
        if self.fail_delete:
            raise BlobStoreError('delete refused')
        self.objects.pop(key, None)

    async def aclose(self):
        return None


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def run_db():
    """Run an async callable against a fresh in-memory database."""

    def _run(fn):
        async def _runner():
            await init_db('sqlite://:memory:')
            try:
                return await fn()
            finally:
                await close_db()

        return asyncio.run(_runner())

    return _run


@pytest.fixture
def make_reader():
    return FakeReader
