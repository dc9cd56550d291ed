import hashlib
import hmac
import logging
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, Optional, Protocol, Union
from urllib.parse import quote, urlencode, urlparse

import httpx

from config.settings import STORAGE_BACKEND, LOCAL_STORAGE_PATH, LOCAL_SIGNING_SECRET, S3_BUCKET, S3_ENDPOINT, \
    S3_ACCESS_KEY, S3_SECRET_KEY, S3_REGION, S3_VIDEO_PREFIX, S3_VIRTUAL_HOST, S3_TIMEOUT, API_V1_STR

logger = logging.getLogger(__name__)

BlobData = Union[bytes, AsyncIterable[bytes]]

# SigV4 presigned URLs cannot outlive seven days
MAX_PRESIGN_TTL = 7 * 24 * 3600

META_SUFFIX = '.meta'

_SAFE_KEY = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')


class BlobStoreError(RuntimeError):
    pass


class StorageInterface(Protocol):
    async def put(self, key: str, data: BlobData, content_type: str, size: Optional[int] = None) -> str:
        ...

    async def presigned_url(self, key: str, ttl: int) -> str:
        ...

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def aclose(self) -> None:
        ...


async def iter_chunks(data: BlobData):
    if isinstance(data, (bytes, bytearray)):
        yield bytes(data)
        return
    async for chunk in data:
        yield chunk


class LocalStorage:
    """Blob store on local disk.

    Read links point back at this service: ``{url_prefix}/{key}?expires=..&signature=..``
    where the signature is an HMAC-SHA256 of the key and expiry.
    """

    def __init__(self, base_path: str, signing_secret: str = LOCAL_SIGNING_SECRET,
                 url_prefix: str = f'{API_V1_STR}/videos/blobs', prefix: str = ''):
        self.base_path = base_path
        self.prefix = prefix
        self.url_prefix = url_prefix.rstrip('/')
        self._secret = signing_secret.encode('utf-8')
        os.makedirs(self.base_path, exist_ok=True)

    def path_for(self, key: str) -> str:
        if not _SAFE_KEY.match(key or ''):
            raise BlobStoreError(f'Invalid blob key: {key!r}')
        return os.path.join(self.base_path, self.prefix, key)

    def _signature(self, key: str, expires: int) -> str:
        return hmac.new(self._secret, f'{key}:{expires}'.encode('utf-8'), hashlib.sha256).hexdigest()

    def verify(self, key: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(key, expires), signature or '')

    async def put(self, key: str, data: BlobData, content_type: str, size: Optional[int] = None) -> str:
        path = self.path_for(key)
        dirpath = os.path.dirname(path)
        try:
            if dirpath:
                os.makedirs(dirpath, exist_ok=True)
            with open(path, 'wb') as f:
                async for chunk in iter_chunks(data):
                    f.write(chunk)
            # declared type sits next to the bytes, served back on read
            with open(path + META_SUFFIX, 'w', encoding='utf-8') as f:
                f.write(content_type)
        except OSError as e:
            raise BlobStoreError(f'Local write failed for {key}: {e}') from e
        return Path(path).resolve().as_uri()

    def content_type(self, key: str) -> Optional[str]:
        try:
            with open(self.path_for(key) + META_SUFFIX, encoding='utf-8') as f:
                return f.read().strip() or None
        except FileNotFoundError:
            return None

    async def presigned_url(self, key: str, ttl: int) -> str:
        self.path_for(key)
        expires = int(time.time()) + int(ttl)
        query = urlencode({'expires': expires, 'signature': self._signature(key, expires)})
        return f'{self.url_prefix}/{key}?{query}'

    async def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        with open(path, 'rb') as f:
            return f.read()

    async def exists(self, key: str) -> bool:
        return os.path.isfile(self.path_for(key))

    async def delete(self, key: str) -> None:
        path = self.path_for(key)
        for target in (path, path + META_SUFFIX):
            try:
                os.remove(target)
            except FileNotFoundError:
                continue
            except OSError as e:
                raise BlobStoreError(f'Local delete failed for {key}: {e}') from e

    async def aclose(self) -> None:
        return None


class S3HTTPStorage:

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str | None = None,
        virtual_host: bool = False,
        prefix: str = '',
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        if not bucket:
            raise BlobStoreError('S3 bucket name is required')
        self.region = region or (self._extract_region(endpoint) if endpoint else 'us-east-1')
        self.endpoint = (endpoint or f'https://s3.{self.region}.amazonaws.com').rstrip('/')
        self.bucket = bucket
        self.access_key = access_key
        self.secret_key = secret_key
        self.service = "s3"
        self.virtual_host = virtual_host
        self.prefix = prefix
        self.timeout = timeout
        self.client = client

        parsed = urlparse(self.endpoint)
        self.host = f'{self.bucket}.{parsed.netloc}' if virtual_host else parsed.netloc

    def _extract_region(self, endpoint: str) -> str:
        """Auto-detect region from endpoint URL"""
        patterns = [
            r's3[.-]([a-z0-9-]+)\.amazonaws\.com',
            r'([a-z0-9-]+)\.digitaloceanspaces\.com',
            r'([a-z0-9-]+)\.linodeobjects\.com',
            r's3\.([a-z0-9-]+)\.backblazeb2\.com',
            r's3\.([a-z0-9-]+)\.wasabisys\.com',
        ]
        for p in patterns:
            match = re.search(p, endpoint)
            if match:
                return match.group(1)

        # MinIO and generic S3 services commonly use "us-east-1"
        return "us-east-1"

    def _sign(self, key: bytes, msg: str) -> bytes:
        return hmac.new(key, msg.encode('utf-8'), hashlib.sha256).digest()

    def _get_signature_key(self, date_stamp: str) -> bytes:
        k_date = self._sign(f"AWS4{self.secret_key}".encode('utf-8'), date_stamp)
        k_region = self._sign(k_date, self.region)
        k_service = self._sign(k_region, self.service)
        return self._sign(k_service, 'aws4_request')

    def _scope(self, date_stamp: str) -> str:
        return f"{date_stamp}/{self.region}/{self.service}/aws4_request"

    def _signature(self, amz_date: str, date_stamp: str, canonical_request: str) -> str:
        string_to_sign = (
            f"AWS4-HMAC-SHA256\n"
            f"{amz_date}\n"
            f"{self._scope(date_stamp)}\n"
            f"{hashlib.sha256(canonical_request.encode('utf-8')).hexdigest()}"
        )
        return hmac.new(
            self._get_signature_key(date_stamp),
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _make_url_and_path(self, key: str):
        """
        Supports both:
            - path-style:       https://endpoint/bucket/prefix/key
            - virtual-host:     https://bucket.endpoint/prefix/key
        """
        object_key = quote(f"{self.prefix}{key}", safe="/-_.~")
        if self.virtual_host:
            url = f"{self.endpoint.replace('//', f'//{self.bucket}.', 1)}/{object_key}"
            path = f"/{object_key}"
        else:
            url = f"{self.endpoint}/{self.bucket}/{object_key}"
            path = f"/{self.bucket}/{object_key}"

        return url, path

    def _auth_headers(self, method: str, path: str, payload_hash: str, extra: dict | None = None) -> dict:
        extra = dict(extra or {})
        if not self.access_key or not self.secret_key:
            return extra

        now = datetime.now(timezone.utc)
        amz_date = now.strftime('%Y%m%dT%H%M%SZ')
        date_stamp = now.strftime('%Y%m%d')

        to_sign = {
            'host': self.host,
            'x-amz-content-sha256': payload_hash,
            'x-amz-date': amz_date,
        }
        to_sign.update({k.lower(): str(v).strip() for k, v in extra.items()})
        names = sorted(to_sign)
        canonical_headers = ''.join(f'{name}:{to_sign[name]}\n' for name in names)
        signed_headers = ';'.join(names)

        canonical_request = (
            f"{method}\n"
            f"{path}\n"
            f""  # no query string
            f"\n{canonical_headers}\n"
            f"{signed_headers}\n"
            f"{payload_hash}"
        )
        signature = self._signature(amz_date, date_stamp, canonical_request)

        auth = (
            f"AWS4-HMAC-SHA256 "
            f"Credential={self.access_key}/{self._scope(date_stamp)}, "
            f"SignedHeaders={signed_headers}, "
            f"Signature={signature}"
        )

        extra.update({
            "Authorization": auth,
            "x-amz-date": amz_date,
            "x-amz-content-sha256": payload_hash,
        })
        return extra

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self.client is not None:
                return await self.client.request(method, url, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise BlobStoreError(f"S3 {method} failed: {e}") from e

    async def put(self, key: str, data: BlobData, content_type: str, size: Optional[int] = None) -> str:
        url, path = self._make_url_and_path(key)
        if isinstance(data, (bytes, bytearray)):
            content = bytes(data)
            payload_hash = hashlib.sha256(content).hexdigest()
            size = len(content)
        else:
            if size is None:
                raise BlobStoreError("S3 PUT of a stream needs its size")
            content = data
            payload_hash = "UNSIGNED-PAYLOAD"

        headers = self._auth_headers("PUT", path, payload_hash, {"x-amz-acl": "private"})
        headers["Content-Type"] = content_type
        headers["Content-Length"] = str(size)

        resp = await self._request("PUT", url, content=content, headers=headers)
        if resp.status_code not in (200, 201):
            raise BlobStoreError(f"S3 PUT failed: {resp.status_code} {resp.text}")
        return url

    async def presigned_url(self, key: str, ttl: int) -> str:
        if not self.access_key or not self.secret_key:
            raise BlobStoreError("S3 credentials are required to presign URLs")
        if not 0 < ttl <= MAX_PRESIGN_TTL:
            raise BlobStoreError(f"Presigned URL lifetime out of range: {ttl}")

        url, path = self._make_url_and_path(key)
        now = datetime.now(timezone.utc)
        amz_date = now.strftime('%Y%m%dT%H%M%SZ')
        date_stamp = now.strftime('%Y%m%d')

        params = {
            'X-Amz-Algorithm': 'AWS4-HMAC-SHA256',
            'X-Amz-Credential': f'{self.access_key}/{self._scope(date_stamp)}',
            'X-Amz-Date': amz_date,
            'X-Amz-Expires': str(int(ttl)),
            'X-Amz-SignedHeaders': 'host',
        }
        canonical_query = '&'.join(
            f"{quote(k, safe='-_.~')}={quote(v, safe='-_.~')}" for k, v in sorted(params.items())
        )
        canonical_request = (
            f"GET\n"
            f"{path}\n"
            f"{canonical_query}\n"
            f"host:{self.host}\n"
            f"\nhost\n"
            f"UNSIGNED-PAYLOAD"
        )
        signature = self._signature(amz_date, date_stamp, canonical_request)
        return f"{url}?{canonical_query}&X-Amz-Signature={signature}"

    async def get(self, key: str) -> Optional[bytes]:
        url, path = self._make_url_and_path(key)
        headers = self._auth_headers("GET", path, hashlib.sha256(b"").hexdigest())

        resp = await self._request("GET", url, headers=headers)
        if resp.status_code == 200:
            return resp.content
        if resp.status_code == 404:
            return None
        raise BlobStoreError(f"S3 GET failed: {resp.status_code} {resp.text}")

    async def exists(self, key: str) -> bool:
        url, path = self._make_url_and_path(key)
        headers = self._auth_headers("HEAD", path, hashlib.sha256(b"").hexdigest())

        resp = await self._request("HEAD", url, headers=headers)
        if resp.status_code == 200:
            return True
        if resp.status_code == 404:
            return False
        raise BlobStoreError(f"S3 HEAD failed: {resp.status_code}")

    async def delete(self, key: str) -> None:
        url, path = self._make_url_and_path(key)
        headers = self._auth_headers("DELETE", path, hashlib.sha256(b"").hexdigest())

        resp = await self._request("DELETE", url, headers=headers)
        if resp.status_code not in (200, 204, 404):
            raise BlobStoreError(f"S3 DELETE failed: {resp.status_code} {resp.text}")

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def pick_storage() -> StorageInterface:
    """Pick storage implementation based on environment variables.

    ``s3`` gets a pooled httpx client that lives until ``aclose``; anything else is local disk.
    """
    storage_type = STORAGE_BACKEND.lower()
    if storage_type == 's3':
        logger.info('Using S3 blob storage (bucket=%s)', S3_BUCKET)
        return S3HTTPStorage(endpoint=S3_ENDPOINT, bucket=S3_BUCKET, region=S3_REGION,
                             access_key=S3_ACCESS_KEY, secret_key=S3_SECRET_KEY,
                             virtual_host=S3_VIRTUAL_HOST, prefix=S3_VIDEO_PREFIX, timeout=S3_TIMEOUT,
                             client=httpx.AsyncClient(timeout=S3_TIMEOUT))
    logger.info('Using local blob storage at %s', LOCAL_STORAGE_PATH)
    return LocalStorage(LOCAL_STORAGE_PATH, prefix=S3_VIDEO_PREFIX)
