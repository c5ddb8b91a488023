"""
GCSBackend - scope documents as objects in a Google Cloud Storage bucket.

Object names are ``<prefix>/<key>``. Conditional create uses the
``if_generation_match=0`` precondition, which GCS evaluates atomically,
so two processes racing for a lock marker cannot both win.

Error classification follows google.api_core:
- 5xx, 429 and connection failures are TransientError (retried)
- NotFound becomes NotFoundError
- Everything else (403, 400, ...) is PermanentError
"""

import logging
from typing import Any, Callable, Optional, TypeVar

from google.api_core import exceptions as gexc

from ..errors import NotFoundError, PermanentError, TransientError
from ..retry import RetryPolicy
from .base import RetryingBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT = (
    gexc.ServerError,
    gexc.TooManyRequests,
    gexc.RetryError,
    # requests/urllib3 connection failures are OSError subclasses
    OSError,
)


class GCSBackend(RetryingBackend):
    """Google Cloud Storage backed storage."""

    name = "gcs"

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        client: Any = None,
        project: Optional[str] = None,
        credentials_file: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        """
        Args:
            bucket: Bucket name
            prefix: Object name prefix under which all keys live
            client: google.cloud.storage.Client (created lazily if None)
            project: GCP project for the lazily created client
            credentials_file: Service account JSON for the lazily created client
            retry: Retry policy for transient failures
        """
        super().__init__(retry)
        self.bucket_name = bucket
        self.prefix = prefix.strip("/")
        self.project = project
        self.credentials_file = credentials_file
        self._client = client
        self._bucket = None

    def describe(self) -> str:
        location = f"gs://{self.bucket_name}"
        return f"{location}/{self.prefix}" if self.prefix else location

    @property
    def client(self):
        if self._client is None:
            from google.cloud import storage

            if self.credentials_file:
                self._client = storage.Client.from_service_account_json(
                    self.credentials_file, project=self.project
                )
            else:
                self._client = storage.Client(project=self.project)
        return self._client

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = self.client.bucket(self.bucket_name)
        return self._bucket

    def _object_name(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def _guard(self, key: str, func: Callable[[], T]) -> T:
        """Run a GCS call, translating google exceptions to scopekeeper errors."""
        try:
            return func()
        except gexc.NotFound:
            raise NotFoundError(key) from None
        except _TRANSIENT as e:
            raise TransientError(f"GCS {key}: {e}") from e
        except gexc.GoogleAPIError as e:
            raise PermanentError(f"GCS {key}: {e}") from e

    def _read(self, key: str) -> bytes:
        blob = self.bucket.blob(self._object_name(key))
        return self._guard(key, blob.download_as_bytes)

    def _write(self, key: str, data: bytes) -> None:
        blob = self.bucket.blob(self._object_name(key))
        self._guard(key, lambda: blob.upload_from_string(data, content_type="application/json"))

    def _create(self, key: str, data: bytes) -> bool:
        blob = self.bucket.blob(self._object_name(key))
        try:
            self._guard(
                key,
                lambda: blob.upload_from_string(
                    data, content_type="application/json", if_generation_match=0
                ),
            )
        except PermanentError as e:
            if isinstance(e.__cause__, gexc.PreconditionFailed):
                return False
            raise
        return True

    def _delete(self, key: str) -> None:
        blob = self.bucket.blob(self._object_name(key))
        try:
            self._guard(key, blob.delete)
        except NotFoundError:
            pass

    def _list(self, prefix: str) -> list[str]:
        full_prefix = self._object_name(prefix) if prefix else (f"{self.prefix}/" if self.prefix else "")
        strip = len(self.prefix) + 1 if self.prefix else 0

        def _names() -> list[str]:
            return [b.name[strip:] for b in self.client.list_blobs(self.bucket_name, prefix=full_prefix)]

        return self._guard(prefix or "/", _names)
