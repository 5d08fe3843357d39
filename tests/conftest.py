# tests/conftest.py
"""
Pytest configuration and fixtures for the snowball-transfer unit tests.

This module provides in-memory stand-ins for the pipeline's collaborators:
- `FakeStream`, a readable content stream that records when it is closed.
- `InMemorySource`, an object source backed by a dict, with injectable
  listing and fetch failures.
- `RecordingSink`, a batch sink that drains the handoff channel and records
  every call.
- `FakeS3Client`, enough of an aiobotocore S3 client for the S3 source and
  the archive sink.
- `InstrumentedGate`, a job gate that records its peak permit usage.
"""

import asyncio
import io
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import pytest
from botocore.exceptions import ClientError

from snowball_transfer.channel import HandoffChannel
from snowball_transfer.config import AppConfig, Config, S3Config
from snowball_transfer.exceptions import FetchError, UploadError
from snowball_transfer.gate import JobGate
from snowball_transfer.models import ArchiveResult, FetchedContent, ObjectDescriptor

MOD_TIME: datetime = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def client_error(code: str, operation: str) -> ClientError:
    """
    Build a botocore `ClientError` with the given error code.

    Args:
        code (str): The S3 error code, e.g. "NoSuchKey".
        operation (str): The API operation name.

    Returns:
        ClientError: The error.
    """
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeStream:
    """An async-readable byte stream that remembers whether it was closed."""

    def __init__(self, data: bytes, fail_read: bool = False) -> None:
        self._buffer: io.BytesIO = io.BytesIO(data)
        self._fail_read: bool = fail_read
        self.closed: bool = False
        self.close_calls: int = 0

    async def read(self, amt: int = -1) -> bytes:
        if self._fail_read:
            raise ConnectionResetError("connection reset by peer")
        await asyncio.sleep(0)
        return self._buffer.read(amt)

    def close(self) -> None:
        self.closed = True
        self.close_calls += 1


class InMemorySource:
    """An object source backed by a dict of key -> content."""

    def __init__(
        self,
        objects: Dict[str, bytes],
        failing_keys: Optional[Set[str]] = None,
        unreadable_keys: Optional[Set[str]] = None,
        listing_errors: Optional[Dict[int, int]] = None,
        open_delay_s: float = 0.0,
    ) -> None:
        """
        Args:
            objects (Dict[str, bytes]): The objects, listed in insertion order.
            failing_keys (Set[str], optional): Keys whose open fails.
            unreadable_keys (Set[str], optional): Keys whose stream fails on read.
            listing_errors (Dict[int, int], optional): Maps a listing position
                to a number of error descriptors yielded before it.
            open_delay_s (float): Simulated latency of each open.
        """
        self.objects: Dict[str, bytes] = objects
        self.failing_keys: Set[str] = failing_keys or set()
        self.unreadable_keys: Set[str] = unreadable_keys or set()
        self.listing_errors: Dict[int, int] = listing_errors or {}
        self.open_delay_s: float = open_delay_s
        self.listed: int = 0
        self.opened: List[str] = []
        self.streams: Dict[str, FakeStream] = {}

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectDescriptor]:
        for position, (key, data) in enumerate(self.objects.items()):
            for _ in range(self.listing_errors.get(position, 0)):
                yield ObjectDescriptor.failed(
                    client_error("InternalError", "ListObjectsV2")
                )
            if not key.startswith(prefix):
                continue
            self.listed += 1
            yield ObjectDescriptor(key=key, size=len(data), last_modified=MOD_TIME)

    async def open_object(self, descriptor: ObjectDescriptor) -> FetchedContent:
        if self.open_delay_s:
            await asyncio.sleep(self.open_delay_s)
        else:
            await asyncio.sleep(0)
        if descriptor.key in self.failing_keys:
            raise FetchError(f"GetObject failed (NoSuchKey): {descriptor.key}")
        self.opened.append(descriptor.key)
        stream: FakeStream = FakeStream(
            self.objects[descriptor.key],
            fail_read=descriptor.key in self.unreadable_keys,
        )
        self.streams[descriptor.key] = stream
        return FetchedContent(
            key=descriptor.key,
            size=descriptor.size,
            mod_time=descriptor.last_modified,
            content=stream,
            closer=stream.close,
        )


class RecordingSink:
    """A batch sink that drains the channel and records each call."""

    def __init__(self, fail_on_call: Optional[int] = None) -> None:
        """
        Args:
            fail_on_call (int, optional): One-based call number that raises
                `UploadError` after draining the channel.
        """
        self.fail_on_call: Optional[int] = fail_on_call
        self.calls: List[Dict[str, bytes]] = []
        self.events: List[str] = []
        self.active: int = 0
        self.max_active: int = 0

    async def write(self, channel: HandoffChannel[FetchedContent]) -> ArchiveResult:
        call: int = len(self.calls) + 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(f"start:{call}")
        received: Dict[str, bytes] = {}
        try:
            async for record in channel:
                try:
                    received[record.key] = await record.content.read()
                finally:
                    record.release()
            self.calls.append(received)
            if call == self.fail_on_call:
                raise UploadError(f"upload {call} rejected")
            return ArchiveResult(
                key=f"archive-{call}.tar",
                entries=len(received),
                bytes=sum(len(v) for v in received.values()),
            )
        finally:
            self.events.append(f"end:{call}")
            self.active -= 1


class FakeS3Client:
    """The subset of an aiobotocore S3 client used by this package."""

    def __init__(
        self,
        pages: Optional[List[Any]] = None,
        objects: Optional[Dict[str, bytes]] = None,
        put_error: Optional[Exception] = None,
    ) -> None:
        """
        Args:
            pages (List[Any], optional): Successive `list_objects_v2` outcomes;
                an exception entry is raised, a list entry becomes a page of
                keys.
            objects (Dict[str, bytes], optional): Content for `get_object`.
            put_error (Exception, optional): Raised by `put_object`.
        """
        self.pages: List[Any] = list(pages or [])
        self.objects: Dict[str, bytes] = objects or {}
        self.put_error: Optional[Exception] = put_error
        self.list_requests: List[Dict[str, Any]] = []
        self.put_requests: List[Dict[str, Any]] = []
        self.uploads: Dict[str, bytes] = {}

    async def list_objects_v2(self, **kwargs: Any) -> Dict[str, Any]:
        self.list_requests.append(dict(kwargs))
        outcome: Any = self.pages.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        truncated: bool = any(not isinstance(p, Exception) for p in self.pages)
        page: Dict[str, Any] = {
            "Contents": [
                {
                    "Key": key,
                    "Size": len(self.objects.get(key, b"")),
                    "LastModified": MOD_TIME,
                }
                for key in outcome
            ],
            "IsTruncated": truncated,
        }
        if truncated:
            page["NextContinuationToken"] = f"token-{len(self.list_requests)}"
        return page

    async def get_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": FakeStream(self.objects[Key])}

    async def put_object(self, **kwargs: Any) -> Dict[str, Any]:
        self.put_requests.append(kwargs)
        if self.put_error is not None:
            raise self.put_error
        body: bytes = kwargs["Body"].read()
        self.uploads[kwargs["Key"]] = body
        return {"ETag": '"etag"'}


class InstrumentedGate(JobGate):
    """A `JobGate` that records the highest number of permits held at once."""

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity)
        self.peak: int = 0
        self.acquired: int = 0

    async def acquire(self) -> None:
        await super().acquire()
        self.acquired += 1
        self.peak = max(self.peak, self.active)


@pytest.fixture(scope="function")
def config_factory() -> Callable[..., Config]:
    """
    Provide a factory for isolated `Config` objects.

    The endpoints are never contacted; only the `app` settings matter to the
    tests that use `SnowballPipeline.transfer` directly.

    Returns:
        Callable[..., Config]: Accepts `AppConfig` keyword overrides.
    """

    def _creator(**app_kwargs: Any) -> Config:
        endpoint: S3Config = S3Config(
            endpoint_url="http://127.0.0.1:9",
            access_key_id="test-key",
            secret_access_key="test-secret",
            bucket="src",
            region="us-east-1",
        )
        settings: Dict[str, Any] = {"concurrency": 4, "batch_size": 10}
        settings.update(app_kwargs)
        return Config(
            source=endpoint,
            destination=replace(endpoint, bucket="dst"),
            app=AppConfig(**settings),
        )

    return _creator


@pytest.fixture(scope="function")
def object_factory() -> Callable[[int], Dict[str, bytes]]:
    """
    Provide a factory for in-memory object sets.

    Returns:
        Callable[[int], Dict[str, bytes]]: Builds `count` objects keyed
            `data/obj_<i>.txt`.
    """

    def _creator(count: int) -> Dict[str, bytes]:
        return {f"data/obj_{i}.txt": f"content of {i}".encode() for i in range(count)}

    return _creator
