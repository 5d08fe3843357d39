# src/snowball_transfer/models.py
"""
Value types passed between the pipeline stages.

Descriptors flow from the listers into the batcher, fetched content flows from
the fetch jobs into the archive sink, and reports flow back to the driver.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

import numpy as np


class AsyncReadable(Protocol):
    """A single-use byte stream read with `await stream.read(amt)`."""

    async def read(self, amt: int = -1) -> bytes: ...


@dataclass(frozen=True)
class ObjectDescriptor:
    """
    Metadata identifying one source object, without its content.

    Attributes:
        key (str): Source-relative key, unique within a listing.
        size (int): Object size in bytes.
        last_modified (datetime, optional): Last modification time.
        listing_error (Exception, optional): Set when the lister failed to
            produce this entry. Such descriptors carry no usable key or size.
    """

    key: str
    size: int = 0
    last_modified: Optional[datetime] = None
    listing_error: Optional[Exception] = None

    @classmethod
    def failed(cls, error: Exception) -> "ObjectDescriptor":
        """
        Builds a descriptor that reports a listing failure.

        Args:
            error (Exception): The error raised by the backend.

        Returns:
            ObjectDescriptor: A descriptor carrying only the error.
        """
        return cls(key="", listing_error=error)


@dataclass
class FetchedContent:
    """
    An opened source object, handed from a fetch job to the archive sink.

    Ownership moves to the consumer of the handoff channel, which must call
    `release()` once it is done with `content`, whatever the outcome.

    Attributes:
        key (str): The object key.
        size (int): The expected content length in bytes.
        mod_time (datetime, optional): The object's modification time.
        content (AsyncReadable): The open content stream.
        closer (Callable[[], None]): Releases the stream.
    """

    key: str
    size: int
    mod_time: Optional[datetime]
    content: AsyncReadable
    closer: Callable[[], None]
    _released: bool = field(default=False, init=False, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Invokes the closer; later calls are no-ops."""
        if self._released:
            return
        self._released = True
        self.closer()


@dataclass(frozen=True)
class ArchiveResult:
    """
    Outcome of one archive-and-upload call.

    Attributes:
        key (str, optional): Destination key of the archive, or None when
            nothing was uploaded.
        entries (int): Number of objects written into the archive.
        bytes (int): Total content bytes of those objects.
        skipped (int): Objects dropped because their content could not be read.
    """

    key: Optional[str]
    entries: int
    bytes: int
    skipped: int = 0


@dataclass(frozen=True)
class FanOutResult:
    """Counts of fetch jobs launched, published and failed for one batch."""

    launched: int
    published: int
    failed: int


@dataclass(frozen=True)
class BatchReport:
    """
    Telemetry for a single processed batch.

    Attributes:
        index (int): One-based batch number within the run.
        listed (int): Descriptors in the batch.
        copied (int): Objects written to the destination archive.
        bytes (int): Content bytes written.
        dropped (int): Objects lost to fetch or read failures.
        duration_s (float): Wall-clock time for fetch, archive and upload.
        archive_key (str, optional): Destination key of the archive.
    """

    index: int
    listed: int
    copied: int
    bytes: int
    dropped: int
    duration_s: float
    archive_key: Optional[str] = None


@dataclass
class TransferSummary:
    """Accumulates batch reports over a whole run."""

    batches: List[BatchReport] = field(default_factory=list)

    def add(self, report: BatchReport) -> None:
        self.batches.append(report)

    @property
    def objects(self) -> int:
        return sum(b.copied for b in self.batches)

    @property
    def bytes(self) -> int:
        return sum(b.bytes for b in self.batches)

    @property
    def dropped(self) -> int:
        return sum(b.dropped for b in self.batches)

    def duration_percentiles(self) -> Tuple[float, float]:
        """
        Median and 90th percentile of batch durations.

        Returns:
            Tuple[float, float]: (median, p90) in seconds, zeros for an
                empty run.
        """
        if not self.batches:
            return 0.0, 0.0
        durations: np.ndarray = np.array([b.duration_s for b in self.batches])
        return float(np.median(durations)), float(np.percentile(durations, 90))
