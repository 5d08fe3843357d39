# src/snowball_transfer/pipeline.py
"""Core orchestration logic for the snowball-transfer pipeline."""

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator, AsyncIterator, List, Optional

from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from rich.filesize import decimal
from rich.progress import (
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from snowball_transfer.batcher import iter_batches
from snowball_transfer.channel import HandoffChannel
from snowball_transfer.config import AppConfig, Config
from snowball_transfer.exceptions import (
    ArchiveError,
    ConfigError,
    SnowballTransferError,
)
from snowball_transfer.fetcher import fan_out_batch
from snowball_transfer.gate import JobGate
from snowball_transfer.models import (
    ArchiveResult,
    BatchReport,
    FanOutResult,
    FetchedContent,
    ObjectDescriptor,
    TransferSummary,
)
from snowball_transfer.sink import ArchiveOptions, BatchSink, SnowballSink
from snowball_transfer.sources import LocalSource, ObjectSource, S3Source

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)


def build_boto_config(app: AppConfig) -> BotoConfig:
    """
    Builds the botocore settings shared by the source and destination clients.

    Signature v4 with payload signing disabled works with non-AWS providers
    that require Content-Length. `total_max_attempts` counts the first request,
    so a value of 1 disables retries.

    Args:
        app (AppConfig): The operational settings.

    Returns:
        BotoConfig: The client configuration.
    """
    return BotoConfig(
        signature_version="s3v4",
        max_pool_connections=app.concurrency + 10,
        retries={"total_max_attempts": app.client_max_attempts},
        s3={"payload_signing_enabled": False},
    )


class PipelineState(Enum):
    """Where the driver is in its per-batch cycle."""

    LISTING = "listing"
    BATCH_READY = "batch_ready"
    FETCHING = "fetching"
    UPLOADING = "uploading"
    DONE = "done"


class SnowballPipeline:
    """Orchestrates the entire transfer from start to finish."""

    def __init__(self, config: Config, shutdown_event: asyncio.Event) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (Config): The application configuration.
            shutdown_event (asyncio.Event): Event to signal graceful shutdown.
        """
        self._config: Config = config
        self._shutdown_event: asyncio.Event = shutdown_event
        self._session: AioSession = get_session()
        self._state: PipelineState = PipelineState.LISTING

    @property
    def state(self) -> PipelineState:
        return self._state

    def _set_state(self, state: PipelineState) -> None:
        logger.debug(f"Pipeline state: {self._state.value} -> {state.value}")
        self._state = state

    async def run(self) -> TransferSummary:
        """
        Executes the full transfer.

        The job gate is created before any client so that an invalid
        concurrency setting fails before anything is listed.

        Returns:
            TransferSummary: Per-batch reports for the run.
        """
        logger.info("Starting snowball-transfer pipeline.")
        gate: JobGate = JobGate(self._config.app.concurrency)
        if self._config.app.batch_size <= 0:
            raise ConfigError(
                f"Batch size must be > 0, got {self._config.app.batch_size}."
            )

        boto_config: BotoConfig = build_boto_config(self._config.app)

        async with AsyncExitStack() as stack:
            dest_client: "S3Client" = await stack.enter_async_context(
                self._session.create_client(
                    "s3",
                    **self._config.destination.as_boto_dict(),
                    config=boto_config,
                )
            )
            source: ObjectSource = await self._open_source(stack, boto_config)
            sink: SnowballSink = SnowballSink(
                dest_client,
                self._config.destination.bucket,
                ArchiveOptions(
                    compress=self._config.app.compress,
                    in_memory=self._config.app.in_memory,
                    skip_errors=self._config.app.skip_errors,
                    prefix=self._config.app.archive_prefix,
                    spool_threshold_bytes=self._config.app.spool_threshold_bytes,
                    temp_dir=self._config.app.temp_dir,
                ),
            )
            summary: TransferSummary = await self.transfer(source, sink, gate)

        if not self._shutdown_event.is_set():
            logger.info("Snowball-transfer pipeline completed successfully.")
        return summary

    async def _open_source(
        self,
        stack: AsyncExitStack,
        boto_config: BotoConfig,
    ) -> ObjectSource:
        """
        Builds the configured source, a local directory or a bucket.

        Args:
            stack (AsyncExitStack): Owns the source client, if any.
            boto_config (BotoConfig): Client settings.

        Returns:
            ObjectSource: The source to transfer from.
        """
        source_dir: Optional[Path] = self._config.app.source_dir
        if source_dir is not None:
            if not source_dir.is_dir():
                raise ConfigError(f"Source directory '{source_dir}' does not exist.")
            return LocalSource(source_dir)

        if self._config.source is None:
            raise ConfigError(
                "Either a source bucket or a source directory is required."
            )
        source_client: "S3Client" = await stack.enter_async_context(
            self._session.create_client(
                "s3",
                **self._config.source.as_boto_dict(),
                config=boto_config,
            )
        )
        return S3Source(
            source_client,
            self._config.source.bucket,
            list_max_attempts=self._config.app.list_max_attempts,
            list_retry_delay_s=self._config.app.list_retry_delay_s,
        )

    async def transfer(
        self,
        source: ObjectSource,
        sink: BatchSink,
        gate: Optional[JobGate] = None,
    ) -> TransferSummary:
        """
        Lists the source and ships it batch after batch.

        Batches never overlap: the next batch is not assembled until the sink
        has finished with the previous one.

        Args:
            source (ObjectSource): Where objects are listed and read.
            sink (BatchSink): Where each batch is archived and uploaded.
            gate (JobGate, optional): Concurrency limiter; one is created from
                the configuration when omitted.

        Returns:
            TransferSummary: Per-batch reports for the run.
        """
        if gate is None:
            gate = JobGate(self._config.app.concurrency)
        self._set_state(PipelineState.LISTING)
        summary: TransferSummary = TransferSummary()
        descriptors: AsyncIterator[ObjectDescriptor] = source.list_objects(
            self._config.app.source_prefix
        )
        batches: AsyncGenerator[List[ObjectDescriptor], None] = iter_batches(
            descriptors, self._config.app.batch_size
        )

        progress: Progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TextColumn("{task.completed} objects"),
            TextColumn("([bold cyan]Batches: {task.fields[batches]})"),
            TimeElapsedColumn(),
            transient=True,
        )

        try:
            with progress:
                task_id: TaskID = progress.add_task(
                    "Transferring...", total=None, batches=0
                )
                async for batch in batches:
                    if self._shutdown_event.is_set():
                        logger.warning(
                            "Shutdown signal received. Stopping after "
                            f"{len(summary.batches)} batch(es)."
                        )
                        break
                    self._set_state(PipelineState.BATCH_READY)
                    report: BatchReport = await self._process_batch(
                        len(summary.batches) + 1, batch, source, sink, gate
                    )
                    summary.add(report)
                    progress.update(
                        task_id, advance=report.copied, batches=len(summary.batches)
                    )
        finally:
            await batches.aclose()

        self._set_state(PipelineState.DONE)
        self._log_summary(summary)
        return summary

    async def _process_batch(
        self,
        index: int,
        batch: List[ObjectDescriptor],
        source: ObjectSource,
        sink: BatchSink,
        gate: JobGate,
    ) -> BatchReport:
        """
        Fetches one batch into the sink and waits for the upload.

        Args:
            index (int): One-based batch number.
            batch (List[ObjectDescriptor]): The descriptors to transfer.
            source (ObjectSource): Where objects are read.
            sink (BatchSink): Where the batch is archived and uploaded.
            gate (JobGate): The concurrency limiter.

        Returns:
            BatchReport: Telemetry for the batch.
        """
        start_time: float = time.monotonic()
        channel: HandoffChannel[FetchedContent] = HandoffChannel()

        self._set_state(PipelineState.FETCHING)
        fan_out_task: asyncio.Task[FanOutResult] = asyncio.create_task(
            fan_out_batch(batch, source, gate, channel)
        )
        sink_task: asyncio.Task[ArchiveResult] = asyncio.create_task(
            sink.write(channel)
        )

        try:
            done, _ = await asyncio.wait(
                {fan_out_task, sink_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if sink_task in done and not fan_out_task.done():
                # The sink stopped consuming, so pending publishers would block.
                sink_task.result()
                raise ArchiveError("Sink returned before the batch was handed off.")
            fan_out: FanOutResult = await fan_out_task

            self._set_state(PipelineState.UPLOADING)
            result: ArchiveResult = await sink_task
        except SnowballTransferError as e:
            logger.error(f"Batch {index} failed: {e}")
            raise
        finally:
            for task in (fan_out_task, sink_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(fan_out_task, sink_task, return_exceptions=True)
            for record in channel.drain_nowait():
                logger.debug(f"Releasing unconsumed '{record.key}'.")
                record.release()

        duration_s: float = time.monotonic() - start_time
        report: BatchReport = BatchReport(
            index=index,
            listed=len(batch),
            copied=result.entries,
            bytes=result.bytes,
            dropped=fan_out.failed + result.skipped,
            duration_s=duration_s,
            archive_key=result.key,
        )
        logger.info(
            f"Copied {report.copied} objects in {duration_s:.3f}s successfully"
            + (f" ({report.dropped} dropped)" if report.dropped else "")
        )
        return report

    def _log_summary(self, summary: TransferSummary) -> None:
        if not summary.batches:
            logger.info("No objects found to transfer.")
            return
        median_s, p90_s = summary.duration_percentiles()
        logger.info(
            f"Transferred {summary.objects} objects ({decimal(summary.bytes)}) "
            f"in {len(summary.batches)} archive(s); "
            f"batch time median={median_s:.3f}s p90={p90_s:.3f}s."
        )
        if summary.dropped:
            logger.warning(f"{summary.dropped} object(s) could not be transferred.")
