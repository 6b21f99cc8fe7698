"""Staged archive session.

:class:`ArchiveSession` drives a :class:`~phar_packer.phar.PharWriter` for one
build attempt. It maps absolute source paths to archive paths relative to the
project root and moves through two states: ``buffering`` and then
``committed``.
"""

from collections.abc import Iterable
import pathlib

from phar_packer.bundle import Bundle, FileFinder
from phar_packer.errors import BuildError
from phar_packer.package import Package
from phar_packer.phar import PharWriter, default_stub


class ArchiveSession:
    """A buffered write session against a temporary archive path.

    :param writer: Underlying phar writer.
    :param package: Main package, used to relativize source paths.
    """

    def __init__(self, writer: PharWriter, package: Package) -> None:
        self._writer: PharWriter = writer
        self._package: Package = package
        self._committed: bool = False
        writer.start_buffering()

    def __str__(self) -> str:
        return self._writer.path.name

    @property
    def path(self) -> pathlib.Path:
        return self._writer.path

    @property
    def committed(self) -> bool:
        return self._committed

    def add_bundle(self, bundle: Bundle) -> int:
        """Add every resource of a bundle.

        :param bundle: Bundle to add.
        :returns: Number of files added.
        """

        added: int = 0
        for resource in bundle:
            if isinstance(resource, FileFinder) is True:
                added += self.build_from_iterator(resource)
            else:
                self.add_file(resource)
                added += 1
        return added

    def add_file(self, filename: str | pathlib.Path) -> None:
        """Add one file under its path relative to the project root.

        :param filename: Absolute path under the project root.
        :raises BuildError: If the file lies outside the project root.
        """

        self._require_open()
        path: pathlib.Path = pathlib.Path(filename)
        self._writer.add_file(_archive_path(self._package.local_path(path)), path)

    def build_from_iterator(self, files: Iterable[pathlib.Path]) -> int:
        """Add every file yielded by ``files``.

        :param files: Absolute file paths under the project root.
        :returns: Number of files added.
        """

        added: int = 0
        for path in files:
            self.add_file(path)
            added += 1
        return added

    def add_from_string(self, local: str, contents: str | bytes) -> None:
        """Add synthetic contents under an archive path.

        :param local: Path relative to the project root.
        :param contents: File contents; text is encoded as UTF-8.
        :raises BuildError: If ``local`` is absolute or escapes the root.
        """

        self._require_open()
        data: bytes = contents.encode("utf-8") if isinstance(contents, str) else contents
        self._writer.add_from_string(_archive_path(local), data)

    def create_default_stub(self, index_file: str) -> str:
        return "#!/usr/bin/env php\n" + default_stub(index_file)

    def set_stub(self, stub: str) -> None:
        self._require_open()
        self._writer.set_stub(stub)

    def commit(self) -> None:
        """Flush buffered entries so the archive becomes a complete file.

        :raises BuildError: If the session was already committed.
        """

        self._require_open()
        self._committed = True
        self._writer.stop_buffering()

    def _require_open(self) -> None:
        if self._committed is True:
            raise BuildError(f"Archive {self} has already been committed")


def _archive_path(local: str) -> str:
    """Validate a path relative to the project root.

    :param local: Candidate archive path.
    :returns: The path in POSIX form.
    :raises BuildError: If ``local`` is absolute or escapes the root.
    """

    rel: pathlib.PurePosixPath = pathlib.PurePosixPath(local)
    if rel.is_absolute() is True or ".." in rel.parts:
        raise BuildError(f'Archive path "{local}" must be relative to the project root')
    return rel.as_posix()
