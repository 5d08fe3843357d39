# src/snowball_transfer/batcher.py
"""Groups listed descriptors into fixed-size batches."""

import logging
from typing import AsyncGenerator, AsyncIterable, List

from snowball_transfer.exceptions import ConfigError
from snowball_transfer.models import ObjectDescriptor

logger: logging.Logger = logging.getLogger(__name__)


async def iter_batches(
    descriptors: AsyncIterable[ObjectDescriptor],
    batch_size: int,
) -> AsyncGenerator[List[ObjectDescriptor], None]:
    """
    Accumulates descriptors and yields them `batch_size` at a time.

    Descriptors carrying a listing error are logged and skipped. The final
    batch may be shorter; an empty batch is never yielded. No descriptor is
    pulled from the lister while the caller still holds the previous batch.

    Args:
        descriptors (AsyncIterable[ObjectDescriptor]): The listing to batch.
        batch_size (int): The number of descriptors per batch.

    Yields:
        List[ObjectDescriptor]: The next batch.
    """
    if batch_size <= 0:
        raise ConfigError(f"Batch size must be > 0, got {batch_size}.")

    batch: List[ObjectDescriptor] = []
    async for descriptor in descriptors:
        if descriptor.listing_error is not None:
            logger.error(f"Listing failed, skipping entry: {descriptor.listing_error}")
            continue
        batch.append(descriptor)
        if len(batch) == batch_size:
            yield batch
            batch = []

    if batch:
        yield batch
