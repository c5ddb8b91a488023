"""
LocalBackend - scope documents as files under a root directory.

Writes go to a temp file in the target directory which is fsynced and
renamed into place, so a crash mid-write leaves the previous document
intact. Conditional create links the finished temp file to the target,
which fails atomically when the target already exists.
"""

import errno
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import NotFoundError, PermanentError, TransientError
from ..retry import RetryPolicy
from .base import RetryingBackend

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"

# errno values that usually clear up on their own
_TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EINTR,
    errno.EIO,
    errno.EBUSY,
    errno.ETIMEDOUT,
    errno.ENOLCK,
    errno.ESTALE,
}


def _classify(e: OSError, key: str) -> Exception:
    """Map an OSError to TransientError or PermanentError."""
    if e.errno in _TRANSIENT_ERRNOS:
        return TransientError(f"{key}: {e}")
    return PermanentError(f"{key}: {e}")


class LocalBackend(RetryingBackend):
    """Filesystem-backed storage rooted at a directory."""

    name = "local"

    def __init__(self, root: Path, retry: Optional[RetryPolicy] = None):
        super().__init__(retry)
        self.root = Path(root).expanduser()

    def describe(self) -> str:
        return f"local:{self.root}"

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*key.split("/"))

    def _write_temp(self, path: Path, data: bytes) -> str:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=TEMP_SUFFIX,
        )
        try:
            with os.fdopen(fd, "wb") as tmp_handle:
                tmp_handle.write(data)
                tmp_handle.flush()
                os.fsync(tmp_handle.fileno())
        except BaseException:
            _unlink_quietly(tmp_path)
            raise
        return tmp_path

    def _read(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            raise NotFoundError(key) from None
        except IsADirectoryError:
            raise NotFoundError(key) from None
        except OSError as e:
            raise _classify(e, key) from e

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            tmp_path = self._write_temp(path, data)
            try:
                os.replace(tmp_path, str(path))
            except BaseException:
                _unlink_quietly(tmp_path)
                raise
        except OSError as e:
            raise _classify(e, key) from e

    def _create(self, key: str, data: bytes) -> bool:
        path = self._path(key)
        try:
            tmp_path = self._write_temp(path, data)
            try:
                os.link(tmp_path, str(path))
            except FileExistsError:
                return False
            finally:
                _unlink_quietly(tmp_path)
        except OSError as e:
            raise _classify(e, key) from e
        return True

    def _delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except IsADirectoryError:
            return
        except OSError as e:
            raise _classify(e, key) from e
        self._prune_empty_dirs(path.parent)

    def _prune_empty_dirs(self, directory: Path) -> None:
        """Remove empty directories up to (not including) the root."""
        root = self.root.resolve()
        current = directory
        while True:
            try:
                resolved = current.resolve()
            except OSError:
                return
            if resolved == root or root not in resolved.parents:
                return
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    def _list(self, prefix: str) -> list[str]:
        if not self.root.exists():
            return []
        keys = []
        try:
            for path in self.root.rglob("*"):
                if not path.is_file():
                    continue
                if path.name.startswith(".") and path.name.endswith(TEMP_SUFFIX):
                    continue
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        except OSError as e:
            raise _classify(e, prefix) from e
        return keys


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass
