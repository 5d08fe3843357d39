# src/snowball_transfer/__init__.py
"""
snowball-transfer: Batched small-object transfer between S3-compatible buckets.

Objects listed from a source bucket (or a local directory) are fetched
concurrently under a hard concurrency cap and packed, one fixed-size batch at
a time, into tar archives that are uploaded to the destination bucket. This
trades thousands of small PUTs for a handful of large ones.

The primary entry point for programmatic use is the `SnowballPipeline` class.
"""

from typing import List

from snowball_transfer.pipeline import SnowballPipeline

__all__: List[str] = ["SnowballPipeline"]
