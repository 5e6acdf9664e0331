from __future__ import annotations

import logging
import os
import tempfile
import time
from typing import TYPE_CHECKING

from .exceptions import FileError

if TYPE_CHECKING:  # pragma: no cover
    from io import BufferedWriter

# How many freshly allocated names we try before giving up on a directory.
MAX_CREATE_ATTEMPTS = 100


class TempFileManager:
    """
    This class creates the files that file fields are streamed into, and
    keeps track of the ones it still owns so they can be deleted later.

    File names are ``<prefix><nanosecond timestamp>``, with a ``-<n>`` suffix
    appended until an unused name is found.  Files are opened with exclusive
    creation, so two parses sharing ``base_dir`` that pick the same name
    don't clobber each other: the loser just tries the next name.

    :param base_dir: An existing, writable directory.  Defaults to the
                     system's temporary directory.
    :param prefix: The prefix of generated file names.
    """

    def __init__(self, base_dir: str | os.PathLike[str] | None = None, prefix: str = "py-") -> None:
        self.logger = logging.getLogger(__name__)
        self.base_dir = os.fspath(base_dir) if base_dir is not None else tempfile.gettempdir()
        self.prefix = prefix

        # Insertion ordered set of paths we're responsible for deleting.
        self._owned: dict[str, None] = {}

    @property
    def owned(self) -> tuple[str, ...]:
        return tuple(self._owned)

    def owns(self, path: str) -> bool:
        return path in self._owned

    def allocate_path(self) -> str:
        """Return a path in ``base_dir`` that doesn't exist yet."""
        base_name = f"{self.prefix}{time.time_ns()}"
        path = os.path.join(self.base_dir, base_name)

        i = 1
        while os.path.exists(path):
            path = os.path.join(self.base_dir, f"{base_name}-{i}")
            i += 1
        return path

    def create_and_open(self, path: str) -> BufferedWriter:
        """
        Create the file at ``path`` and open it for writing.  From now on we
        own it.  Raises FileExistsError if the file already exists, and
        FileError on any other failure.
        """
        try:
            self.logger.info("Opening file: %r", path)
            fileobj = open(path, "xb")
        except FileExistsError:
            raise
        except OSError as err:
            self.logger.exception("Error creating temporary file")
            raise FileError("Error creating temporary file: %r" % path) from err

        self._owned[path] = None
        return fileobj

    def create(self) -> tuple[str, BufferedWriter]:
        """Allocate a fresh path, create the file, and return both."""
        for _ in range(MAX_CREATE_ATTEMPTS):
            path = self.allocate_path()
            try:
                return path, self.create_and_open(path)
            except FileExistsError:
                self.logger.debug("Temporary file %r was created concurrently, trying another name", path)

        raise FileError("Could not find an unused file name in %r" % self.base_dir)

    def release(self, path: str) -> None:
        """Give up ownership of ``path``; it will no longer be deleted by us."""
        self._owned.pop(path, None)

    def delete(self, path: str) -> None:
        """Delete ``path``.  Failures are logged and otherwise ignored."""
        self._owned.pop(path, None)
        try:
            os.remove(path)
        except OSError as err:
            self.logger.debug("Could not delete temporary file %r: %r", path, err)
        else:
            self.logger.debug("Deleted temporary file %r", path)

    def dispose(self) -> None:
        """Delete every file we still own."""
        for path in list(self._owned):
            self.delete(path)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(base_dir={self.base_dir!r}, owned={len(self._owned)})"
