"""
Storage backends for scope documents.

build_backend() turns a BackendConfig into a Backend instance.
"""

from typing import Optional

from ..config import BackendConfig
from ..errors import ConfigError
from ..retry import RetryPolicy
from .base import Backend, InMemoryBackend, RetryingBackend, normalize_key
from .composite import CompositeBackend
from .local import LocalBackend


def build_backend(config: BackendConfig, retry: Optional[RetryPolicy] = None) -> Backend:
    """
    Create a backend from configuration.

    Args:
        config: Backend section of the scopekeeper config
        retry: Retry policy for transient I/O errors

    Returns:
        Backend instance

    Raises:
        ConfigError: If the backend type is unknown
    """
    if config.type == "memory":
        return InMemoryBackend(retry)
    if config.type == "local":
        return LocalBackend(config.root_path, retry=retry)
    if config.type == "gcs":
        from .gcs import GCSBackend

        return GCSBackend(
            config.bucket,
            prefix=config.prefix,
            project=config.project,
            credentials_file=config.credentials_file,
            retry=retry,
        )
    if config.type == "composite":
        if config.secondary is None:
            raise ConfigError("composite backend requires a secondary")
        return CompositeBackend(
            build_backend(config.primary(), retry),
            build_backend(config.secondary, retry),
        )
    raise ConfigError(f"Unknown backend type: {config.type}")


__all__ = [
    "Backend",
    "RetryingBackend",
    "InMemoryBackend",
    "LocalBackend",
    "CompositeBackend",
    "build_backend",
    "normalize_key",
]
