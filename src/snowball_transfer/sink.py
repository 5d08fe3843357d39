# src/snowball_transfer/sink.py
"""
Archive-and-upload sink.

The sink drains a handoff channel of fetched objects, packs them into a single
tar archive (a "snowball") and uploads it to the destination bucket. MinIO
extracts such archives server-side when they carry the
`snowball-auto-extract` metadata flag, so one PUT replaces a whole batch of
small-object PUTs.
"""

import asyncio
import io
import logging
import tarfile
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from tempfile import SpooledTemporaryFile
from typing import IO, TYPE_CHECKING, BinaryIO, Dict, Optional, Protocol, cast

from botocore.exceptions import BotoCoreError, ClientError

from snowball_transfer.channel import HandoffChannel
from snowball_transfer.exceptions import ArchiveError, FetchError, UploadError
from snowball_transfer.models import ArchiveResult, FetchedContent

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

READ_CHUNK_BYTES: int = 64 * 1024
AUTO_EXTRACT_METADATA: Dict[str, str] = {"snowball-auto-extract": "true"}


class BatchSink(Protocol):
    """Consumes one batch worth of fetched objects."""

    async def write(self, channel: HandoffChannel[FetchedContent]) -> ArchiveResult: ...


@dataclass(frozen=True)
class ArchiveOptions:
    """
    Archive settings for a sink.

    Attributes:
        compress (bool): Gzip the archive.
        in_memory (bool): Build the archive in memory rather than in a
            temporary file.
        skip_errors (bool): Drop objects whose content cannot be read instead
            of failing the batch.
        prefix (str): Key prefix for uploaded archives.
        spool_threshold_bytes (int): Object content above this size is spooled
            to disk while it is being archived.
        temp_dir (Path, optional): Where temporary files are created.
    """

    compress: bool = False
    in_memory: bool = True
    skip_errors: bool = False
    prefix: str = ""
    spool_threshold_bytes: int = 8 * 1024 * 1024
    temp_dir: Optional[Path] = None


async def _spool_and_validate(
    record: FetchedContent,
    spool_threshold: int,
    temp_dir: Optional[Path],
) -> BinaryIO:
    """
    Reads a record's stream into a spooled temporary file while counting bytes.

    Args:
        record (FetchedContent): The object to read.
        spool_threshold (int): Bytes kept in memory before spilling to disk.
        temp_dir (Path, optional): Where the spill file is created.

    Returns:
        BinaryIO: The content, rewound to the start.

    Raises:
        FetchError: If reading fails or the byte count does not match the
            listed size.
    """
    spool: BinaryIO = cast(
        BinaryIO,
        SpooledTemporaryFile(max_size=spool_threshold, mode="w+b", dir=temp_dir),
    )
    copied: int = 0
    try:
        while True:
            chunk: bytes = await record.content.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            spool.write(chunk)
            copied += len(chunk)
    except FetchError:
        spool.close()
        raise
    except Exception as e:
        spool.close()
        raise FetchError(f"Read failed: {type(e).__name__}: {e}") from e

    if copied != record.size:
        spool.close()
        raise FetchError(f"Size mismatch: listed {record.size} bytes, read {copied}.")

    spool.seek(0)
    return spool


class SnowballSink:
    """Packs a batch into one tar archive and uploads it."""

    def __init__(
        self,
        client: "S3Client",
        bucket: str,
        options: ArchiveOptions = ArchiveOptions(),
    ) -> None:
        """
        Initialize the sink.

        Args:
            client (S3Client): An open aiobotocore client for the destination.
            bucket (str): The destination bucket.
            options (ArchiveOptions): Archive settings.
        """
        self._client: "S3Client" = client
        self._bucket: str = bucket
        self._options: ArchiveOptions = options

    def archive_key(self) -> str:
        """
        Generates a unique destination key for a new archive.

        Returns:
            str: The key, ending in `.tar` or `.tar.gz`.
        """
        suffix: str = ".tar.gz" if self._options.compress else ".tar"
        return f"{self._options.prefix}snowball-upload-{uuid.uuid4().hex}{suffix}"

    def _open_buffer(self) -> IO[bytes]:
        if self._options.in_memory:
            return io.BytesIO()
        return tempfile.TemporaryFile(mode="w+b", dir=self._options.temp_dir)

    async def write(self, channel: HandoffChannel[FetchedContent]) -> ArchiveResult:
        """
        Archives every record published on the channel and uploads the result.

        Every record is released exactly once. If a record fails and errors
        are not skipped, the remaining records are still drained and released
        before the error is raised.

        Args:
            channel (HandoffChannel[FetchedContent]): The batch's records.

        Returns:
            ArchiveResult: What was uploaded.

        Raises:
            ArchiveError: If a record cannot be archived and errors are not
                skipped.
            UploadError: If the archive cannot be uploaded.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        mode: str = "w:gz" if self._options.compress else "w"
        entries: int = 0
        total_bytes: int = 0
        skipped: int = 0
        failure: Optional[ArchiveError] = None

        with self._open_buffer() as buffer:
            with tarfile.open(
                mode=mode, fileobj=buffer, format=tarfile.PAX_FORMAT
            ) as tar:
                async for record in channel:
                    try:
                        if failure is not None:
                            continue
                        await self._archive_record(loop, tar, record)
                        entries += 1
                        total_bytes += record.size
                    except FetchError as e:
                        if self._options.skip_errors:
                            skipped += 1
                            logger.warning(f"Skipping '{record.key}': {e}")
                        else:
                            logger.error(f"Failed to archive '{record.key}': {e}")
                            failure = ArchiveError(
                                f"Failed to archive '{record.key}': {e}"
                            )
                    except ArchiveError as e:
                        logger.error(str(e))
                        failure = e
                    finally:
                        record.release()

            if failure is not None:
                raise failure

            if entries == 0:
                logger.warning("No objects could be archived; nothing uploaded.")
                return ArchiveResult(key=None, entries=0, bytes=0, skipped=skipped)

            key: str = self.archive_key()
            await self._upload(buffer, key)

        return ArchiveResult(key=key, entries=entries, bytes=total_bytes, skipped=skipped)

    async def _archive_record(
        self,
        loop: asyncio.AbstractEventLoop,
        tar: tarfile.TarFile,
        record: FetchedContent,
    ) -> None:
        """
        Appends one record to the archive.

        Args:
            loop (asyncio.AbstractEventLoop): The running loop.
            tar (tarfile.TarFile): The open archive.
            record (FetchedContent): The object to append.

        Raises:
            FetchError: If the record's content cannot be read.
            ArchiveError: If the archive cannot be written.
        """
        spool: BinaryIO = await _spool_and_validate(
            record, self._options.spool_threshold_bytes, self._options.temp_dir
        )
        with spool:
            try:
                await loop.run_in_executor(
                    None, tar.addfile, self._tar_info(record), spool
                )
            except (OSError, tarfile.TarError) as e:
                raise ArchiveError(f"Failed to write '{record.key}' to archive: {e}") from e

    @staticmethod
    def _tar_info(record: FetchedContent) -> tarfile.TarInfo:
        info: tarfile.TarInfo = tarfile.TarInfo(name=record.key)
        info.size = record.size
        info.mode = 0o644
        if record.mod_time is not None:
            info.mtime = int(record.mod_time.timestamp())
        return info

    async def _upload(self, buffer: IO[bytes], key: str) -> None:
        """
        Uploads the finished archive.

        Args:
            buffer (IO[bytes]): The archive, positioned anywhere.
            key (str): The destination key.
        """
        size: int = buffer.seek(0, io.SEEK_END)
        buffer.seek(0)
        logger.debug(f"Uploading {size} byte archive to 's3://{self._bucket}/{key}'.")
        try:
            await self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=buffer,
                ContentLength=size,
                ContentType=(
                    "application/gzip" if self._options.compress else "application/x-tar"
                ),
                Metadata=AUTO_EXTRACT_METADATA,
            )
        except (ClientError, BotoCoreError) as e:
            raise UploadError(
                f"Failed to upload archive 's3://{self._bucket}/{key}': {e}"
            ) from e
