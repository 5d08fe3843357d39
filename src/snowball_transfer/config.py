# src/snowball_transfer/config.py
"""
Configuration for the snowball-transfer pipeline.

This module centralizes all configuration, loading credentials from
environment variables and providing typed dataclasses for use throughout
the application.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from snowball_transfer.exceptions import ConfigError

DEFAULT_BATCH_SIZE: int = 100


def _get_env_var(name: str, default: Optional[str] = None) -> str:
    """
    Retrieves a required environment variable.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        str: The value of the environment variable.
    """
    value: Optional[str] = os.environ.get(name, default)
    if not value:
        raise ConfigError(f"Environment variable '{name}' must be set.")
    return value


def _default_concurrency() -> int:
    """Number of processors available to this host."""
    return os.cpu_count() or 1


@dataclass(frozen=True)
class S3Config:
    """
    Represents the configuration for an S3-compatible endpoint.

    Attributes:
        endpoint_url (str): The S3 endpoint URL.
        access_key_id (str): The access key ID.
        secret_access_key (str): The secret access key.
        bucket (str): The bucket name.
        region (str): The AWS region.
    """

    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str

    @classmethod
    def from_env(cls, role: str) -> "S3Config":
        """
        Builds an endpoint configuration from `SNOWBALL_<ROLE>_*` variables.

        Args:
            role (str): Either "SOURCE" or "DESTINATION".

        Returns:
            S3Config: The endpoint configuration.
        """
        return cls(
            endpoint_url=_get_env_var(f"SNOWBALL_{role}_ENDPOINT_URL"),
            access_key_id=_get_env_var(f"SNOWBALL_{role}_ACCESS_KEY_ID"),
            secret_access_key=_get_env_var(f"SNOWBALL_{role}_SECRET_ACCESS_KEY"),
            bucket=_get_env_var(f"SNOWBALL_{role}_BUCKET"),
            region=_get_env_var(f"SNOWBALL_{role}_REGION", "us-east-1"),
        )

    def as_boto_dict(self) -> Dict[str, str]:
        """
        Returns the configuration as a dictionary suitable for aiobotocore clients.

        Returns:
            Dict[str, str]: A dictionary of client parameters.
        """
        return {
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "region_name": self.region,
        }


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the application's operational parameters.

    Attributes:
        concurrency (int): Maximum number of concurrent object fetches.
        batch_size (int): Number of objects packed into each archive.
        compress (bool): Whether archives are gzip-compressed.
        in_memory (bool): Build archives in memory instead of a temporary file.
        skip_errors (bool): Skip objects whose content cannot be read instead
            of failing the batch.
        source_prefix (str): Only transfer source keys under this prefix.
        archive_prefix (str): Key prefix for archives in the destination.
        source_dir (Path, optional): Walk this local directory instead of
            listing a source bucket.
        temp_dir (Path, optional): Directory for on-disk archive buffers.
        spool_threshold_bytes (int): Object size above which object content is
            spooled to disk while it is being archived.
        client_max_attempts (int): Total request attempts made by the S3
            clients, the first one included; 1 disables retries.
        list_max_attempts (int): Consecutive failed requests tolerated on a
            single listing page before the listing is abandoned.
        list_retry_delay_s (float): Base delay before a failed listing page is
            requested again; the n-th consecutive retry waits n times as long.
    """

    concurrency: int = field(default_factory=_default_concurrency)
    batch_size: int = DEFAULT_BATCH_SIZE
    compress: bool = False
    in_memory: bool = True
    skip_errors: bool = False
    source_prefix: str = ""
    archive_prefix: str = ""
    source_dir: Optional[Path] = None
    temp_dir: Optional[Path] = None
    spool_threshold_bytes: int = 8 * 1024 * 1024
    client_max_attempts: int = 1
    list_max_attempts: int = 3
    list_retry_delay_s: float = 0.5


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for the entire application.

    Attributes:
        source (S3Config, optional): Configuration for the source S3-compatible
            service. Unused when `app.source_dir` is set.
        destination (S3Config): Configuration for the destination service.
        app (AppConfig): General application settings.
    """

    source: Optional[S3Config] = field(
        default_factory=lambda: S3Config.from_env("SOURCE")
    )
    destination: S3Config = field(
        default_factory=lambda: S3Config.from_env("DESTINATION")
    )
    app: AppConfig = field(default_factory=AppConfig)
