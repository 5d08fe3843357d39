# src/snowball_transfer/fetcher.py
"""
Defines the fetch fan-out stage.

For one batch, this module launches one fetch job per descriptor under the
job gate. Each job opens the object's content stream and hands it to the
archive sink through a single-slot channel. A job that cannot open its object
logs the failure and drops the object; the rest of the batch carries on.
"""

import asyncio
import logging
from typing import List

from snowball_transfer.channel import HandoffChannel
from snowball_transfer.exceptions import FetchError
from snowball_transfer.gate import JobGate
from snowball_transfer.models import FanOutResult, FetchedContent, ObjectDescriptor
from snowball_transfer.sources import ObjectSource

logger: logging.Logger = logging.getLogger(__name__)


async def fan_out_batch(
    batch: List[ObjectDescriptor],
    source: ObjectSource,
    gate: JobGate,
    channel: HandoffChannel[FetchedContent],
) -> FanOutResult:
    """
    Fetches every object of a batch concurrently and publishes the results.

    Launching is throttled only by the gate. Once every job has been launched
    and has released its permit, the channel is closed.

    Args:
        batch (List[ObjectDescriptor]): The descriptors to fetch.
        source (ObjectSource): Where to open the objects.
        gate (JobGate): The concurrency limiter shared across batches.
        channel (HandoffChannel[FetchedContent]): Where opened objects go.

    Returns:
        FanOutResult: How many jobs were launched, published and failed.
    """
    tasks: List[asyncio.Task[bool]] = []

    try:
        for descriptor in batch:
            await gate.acquire()
            task: asyncio.Task[bool] = asyncio.create_task(
                _fetch_job(descriptor, source, gate, channel)
            )
            tasks.append(task)

        await gate.wait_all()
        results: List[bool] = await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.warning("Fan-out cancelled, abandoning pending fetch jobs.")
        for pending in tasks:
            pending.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    await channel.close()

    published: int = sum(1 for ok in results if ok)
    return FanOutResult(
        launched=len(batch),
        published=published,
        failed=len(batch) - published,
    )


async def _fetch_job(
    descriptor: ObjectDescriptor,
    source: ObjectSource,
    gate: JobGate,
    channel: HandoffChannel[FetchedContent],
) -> bool:
    """
    Opens one object and publishes it on the channel.

    The gate permit is always released, whatever the outcome.

    Args:
        descriptor (ObjectDescriptor): The object to fetch.
        source (ObjectSource): Where to open it.
        gate (JobGate): The limiter whose permit this job holds.
        channel (HandoffChannel[FetchedContent]): Where to publish the content.

    Returns:
        bool: True if the content was published, False if it was dropped.
    """
    try:
        try:
            content: FetchedContent = await source.open_object(descriptor)
        except FetchError as e:
            logger.error(f"Failed to fetch '{descriptor.key}': {e}")
            return False
        except Exception:
            logger.exception(f"An unexpected error occurred fetching '{descriptor.key}'")
            return False

        try:
            await channel.put(content)
        except BaseException:
            # Never reached the consumer, so the stream is still ours to close.
            content.release()
            raise
        logger.debug(f"Fetched '{descriptor.key}' ({descriptor.size} bytes).")
        return True
    finally:
        gate.release()
