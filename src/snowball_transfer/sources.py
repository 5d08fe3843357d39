# src/snowball_transfer/sources.py
"""
Object sources: listing descriptors and opening content streams.

Two sources share the same interface. `S3Source` pages through a bucket with
an aiobotocore client. `LocalSource` walks a directory tree, so a local disk
can be shipped to a bucket through the same batching pipeline.
"""

import asyncio
import fnmatch
import logging
import os
import stat
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    BinaryIO,
    Dict,
    Iterator,
    List,
    Optional,
    Protocol,
    Tuple,
)

from botocore.exceptions import BotoCoreError, ClientError

from snowball_transfer.exceptions import FetchError
from snowball_transfer.models import FetchedContent, ObjectDescriptor

if TYPE_CHECKING:
    from aiobotocore.response import StreamingBody
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.type_defs import (
        GetObjectOutputTypeDef,
        ListObjectsV2OutputTypeDef,
    )

logger: logging.Logger = logging.getLogger(__name__)

# Platform specific junk never worth archiving.
IGNORED_FILES: Dict[str, List[str]] = {
    "darwin": ["*.DS_Store"],
    "default": ["lost+found"],
}


class ObjectSource(Protocol):
    """Where the pipeline reads objects from."""

    def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectDescriptor]: ...

    async def open_object(self, descriptor: ObjectDescriptor) -> FetchedContent: ...


class S3Source:
    """Lists and reads objects from a bucket on an S3-compatible service."""

    def __init__(
        self,
        client: "S3Client",
        bucket: str,
        list_max_attempts: int = 3,
        list_retry_delay_s: float = 0.5,
    ) -> None:
        """
        Initialize the source.

        Args:
            client (S3Client): An open aiobotocore S3 client.
            bucket (str): The bucket to read from.
            list_max_attempts (int): Consecutive failures tolerated on one
                listing page before the listing is abandoned.
            list_retry_delay_s (float): Base delay before a failed page is
                requested again, multiplied by the consecutive failure count.
        """
        self._client: "S3Client" = client
        self._bucket: str = bucket
        self._list_max_attempts: int = max(1, list_max_attempts)
        self._list_retry_delay_s: float = max(0.0, list_retry_delay_s)

    @property
    def bucket(self) -> str:
        return self._bucket

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectDescriptor]:
        """
        Recursively lists the bucket, one page at a time.

        A failed page request is yielded as a descriptor carrying the error and
        the same page is requested again after a delay that grows with each
        consecutive failure.

        Args:
            prefix (str): Only list keys starting with this prefix.

        Yields:
            ObjectDescriptor: One descriptor per object, or per listing failure.
        """
        logger.info(f"Listing objects under 's3://{self._bucket}/{prefix}'...")
        request: Dict[str, Any] = {"Bucket": self._bucket, "Prefix": prefix}
        failures: int = 0
        listed: int = 0

        while True:
            try:
                page: "ListObjectsV2OutputTypeDef" = (
                    await self._client.list_objects_v2(**request)
                )
            except (ClientError, BotoCoreError) as e:
                failures += 1
                yield ObjectDescriptor.failed(e)
                if failures >= self._list_max_attempts:
                    logger.error(
                        f"Giving up listing 's3://{self._bucket}/{prefix}' after "
                        f"{failures} failed attempts; {listed} objects listed."
                    )
                    return
                await asyncio.sleep(self._list_retry_delay_s * failures)
                continue

            failures = 0
            for obj in page.get("Contents", []):
                listed += 1
                yield ObjectDescriptor(
                    key=obj["Key"],
                    size=obj["Size"],
                    last_modified=obj["LastModified"],
                )

            if not page.get("IsTruncated"):
                break
            request["ContinuationToken"] = page["NextContinuationToken"]

        logger.debug(f"Listed {listed} objects in 's3://{self._bucket}/{prefix}'.")

    async def open_object(self, descriptor: ObjectDescriptor) -> FetchedContent:
        """
        Opens a streaming read of one object.

        Args:
            descriptor (ObjectDescriptor): The object to open.

        Returns:
            FetchedContent: The open stream and its metadata.

        Raises:
            FetchError: If the object cannot be opened.
        """
        try:
            response: "GetObjectOutputTypeDef" = await self._client.get_object(
                Bucket=self._bucket, Key=descriptor.key
            )
        except ClientError as e:
            code: str = e.response.get("Error", {}).get("Code", "Unknown")
            raise FetchError(f"GetObject failed ({code}): {e}") from e
        except BotoCoreError as e:
            raise FetchError(f"GetObject failed: {e}") from e

        body: "StreamingBody" = response["Body"]
        return FetchedContent(
            key=descriptor.key,
            size=descriptor.size,
            mod_time=descriptor.last_modified,
            content=body,
            closer=body.close,
        )


def is_ignored_file(name: str, platform: str = sys.platform) -> bool:
    """
    Checks a file or directory name against the ignore lists.

    Args:
        name (str): The base name to check.
        platform (str): The platform whose extra ignore list applies.

    Returns:
        bool: True if the entry must be skipped.
    """
    patterns: List[str] = IGNORED_FILES.get(platform, []) + IGNORED_FILES["default"]
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


class AsyncFileReader:
    """Reads a blocking file object from a thread pool executor."""

    def __init__(self, fileobj: BinaryIO) -> None:
        self._fileobj: BinaryIO = fileobj

    async def read(self, amt: int = -1) -> bytes:
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fileobj.read, amt)

    def close(self) -> None:
        self._fileobj.close()


_WalkStep = Tuple[str, List[str], List[str]]


class LocalSource:
    """Walks a local directory tree and reads its regular files."""

    def __init__(self, root: Path) -> None:
        """
        Initialize the source.

        Args:
            root (Path): The directory to transfer.
        """
        self._root: Path = root

    @property
    def root(self) -> Path:
        return self._root

    async def list_objects(self, prefix: str = "") -> AsyncIterator[ObjectDescriptor]:
        """
        Lazily walks the tree, one directory at a time.

        Keys are POSIX paths relative to the root. Symlinks are followed to
        regular files; broken links and special files are skipped. Directory
        read errors are yielded as descriptors carrying the error.

        Args:
            prefix (str): Only list keys starting with this prefix.

        Yields:
            ObjectDescriptor: One descriptor per file, or per walk failure.
        """
        logger.info(f"Walking local directory '{self._root}'...")
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        errors: List[OSError] = []
        walker: Iterator[_WalkStep] = os.walk(self._root, onerror=errors.append)

        while True:
            step: Optional[_WalkStep] = await loop.run_in_executor(
                None, next, walker, None
            )
            while errors:
                yield ObjectDescriptor.failed(errors.pop(0))
            if step is None:
                break

            dirpath, dirnames, filenames = step
            # Pruned in place so os.walk does not descend into them.
            dirnames[:] = sorted(d for d in dirnames if not is_ignored_file(d))

            for name in sorted(filenames):
                if is_ignored_file(name):
                    continue
                path: Path = Path(dirpath) / name
                key: str = path.relative_to(self._root).as_posix()
                if not key.startswith(prefix):
                    continue
                try:
                    st: os.stat_result = await loop.run_in_executor(None, path.stat)
                except OSError as e:
                    logger.debug(f"Skipping unreadable entry '{path}': {e}")
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                yield ObjectDescriptor(
                    key=key,
                    size=st.st_size,
                    last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                )

    async def open_object(self, descriptor: ObjectDescriptor) -> FetchedContent:
        """
        Opens one file for reading.

        Args:
            descriptor (ObjectDescriptor): The file to open.

        Returns:
            FetchedContent: The open file and its metadata.

        Raises:
            FetchError: If the file cannot be opened.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        path: Path = self._root / descriptor.key
        try:
            fileobj: BinaryIO = await loop.run_in_executor(None, path.open, "rb")
        except OSError as e:
            raise FetchError(f"Cannot open '{path}': {e}") from e

        reader: AsyncFileReader = AsyncFileReader(fileobj)
        return FetchedContent(
            key=descriptor.key,
            size=descriptor.size,
            mod_time=descriptor.last_modified,
            content=reader,
            closer=reader.close,
        )
