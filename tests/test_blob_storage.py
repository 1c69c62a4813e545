import asyncio
import os
from io import BytesIO
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from tessra.config import Settings
from tessra.service.blob_storage import (
    LocalBlobStorage,
    PathTraversalError,
    S3BlobStorage,
    check_s3_status,
    safe_join,
)

S3_ENV = dict(s3_bucket="media", s3_region="us-east-1", s3_access_key="AKIA", s3_secret_key="shh")


class FakeS3Client:
    def __init__(self, head_error=None):
        self.objects = {}
        self.head_error = head_error

    def put_object(self, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = (Body, ContentType)

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": BytesIO(self.objects[(Bucket, Key)][0])}

    def delete_object(self, Bucket, Key):
        self.objects.pop((Bucket, Key), None)

    def head_bucket(self, Bucket):
        if self.head_error is not None:
            raise self.head_error
        return {}


def test_safe_join_blocks_escape(tmp_path):
    assert safe_join(tmp_path, "uploads/ab/x.png") == (tmp_path / "uploads/ab/x.png").resolve()
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, "../outside")
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, "/etc/passwd")


async def test_local_storage_round_trip(tmp_path):
    storage = LocalBlobStorage(str(tmp_path))
    key = "uploads/ab/abc.png"

    assert await storage.put(key, b"bytes", "image/png") == key
    assert await storage.get(key) == b"bytes"
    assert not list((tmp_path / "uploads/ab").glob("*.tmp"))

    await storage.delete(key)
    assert await storage.get(key) is None
    await storage.delete(key)


async def test_local_storage_rejects_traversal(tmp_path):
    storage = LocalBlobStorage(str(tmp_path / "root"))
    with pytest.raises(PathTraversalError):
        await storage.put("../escape.txt", b"x", "text/plain")


async def test_local_storage_concurrent_writes_to_the_same_key(tmp_path):
    storage = LocalBlobStorage(str(tmp_path))
    key = "uploads/ab/same.png"
    payload = b"\x89PNG" * (2 * 1024 * 1024)

    for _ in range(5):
        keys = await asyncio.gather(*(storage.put(key, payload, "image/png") for _ in range(4)))
        assert keys == [key] * 4

    assert await storage.get(key) == payload
    assert not list((tmp_path / "uploads/ab").glob("*.tmp"))


async def test_local_storage_failed_write_leaves_no_temp_file(tmp_path, monkeypatch):
    storage = LocalBlobStorage(str(tmp_path))

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError):
        await storage.put("uploads/ab/abc.png", b"bytes", "image/png")
    assert list((tmp_path / "uploads/ab").iterdir()) == []


async def test_s3_storage_uses_client():
    client = FakeS3Client()
    storage = S3BlobStorage(bucket="media", region="us-east-1", access_key="a", secret_key="b", client=client)

    await storage.put("uploads/ab/abc.png", b"data", "image/png")
    assert client.objects[("media", "uploads/ab/abc.png")] == (b"data", "image/png")
    assert await storage.get("uploads/ab/abc.png") == b"data"
    assert await storage.get("uploads/ab/missing.png") is None

    await storage.delete("uploads/ab/abc.png")
    assert client.objects == {}


async def test_s3_status_not_configured():
    status = await check_s3_status(Settings())
    assert status.configured is False
    assert status.connected is False
    assert "S3_BUCKET" in status.message


async def test_s3_status_connected():
    status = await check_s3_status(Settings(**S3_ENV), client=FakeS3Client())
    assert status.configured and status.connected


async def test_s3_status_missing_bucket():
    error = ClientError(
        {"Error": {"Code": "404"}, "ResponseMetadata": {"HTTPStatusCode": 404}}, "HeadBucket"
    )
    status = await check_s3_status(Settings(**S3_ENV), client=FakeS3Client(error))
    assert status.configured is True
    assert status.connected is False
    assert "does not exist" in status.message


async def test_s3_status_access_denied():
    error = ClientError(
        {"Error": {"Code": "403"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "HeadBucket"
    )
    status = await check_s3_status(Settings(**S3_ENV), client=FakeS3Client(error))
    assert "Access denied" in status.message


async def test_s3_status_unreachable_endpoint():
    client = MagicMock()
    client.head_bucket.side_effect = EndpointConnectionError(endpoint_url="http://minio:9000")

    status = await check_s3_status(Settings(**S3_ENV), client=client)

    assert status.connected is False
    client.head_bucket.assert_called_once_with(Bucket="media")
