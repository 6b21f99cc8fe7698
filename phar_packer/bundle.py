"""File inclusion rules.

A :class:`Bundle` is the set of on-disk resources of one package that must be
copied into the archive. Members are either single files or a
:class:`FileFinder`, a lazy walk over a directory tree that is re-run every
time it is iterated.
"""

from collections.abc import Iterator
from dataclasses import dataclass
import os
import pathlib
import re

from phar_packer.errors import BuildError


VCS_NAMES: frozenset[str] = frozenset(
    {".svn", "_svn", "CVS", "_darcs", ".arch-params", ".monotone", ".bzr", ".git", ".hg"}
)


@dataclass(frozen=True, slots=True)
class FileFinder:
    """Restartable enumeration of the files under ``root``.

    All relative paths are POSIX-style and relative to ``root``.

    :ivar root: Directory to walk.
    :ivar ignore_vcs: Skip version control metadata at any depth.
    :ivar ignore_dot_files: Skip hidden files and directories at any depth.
    :ivar exclude_dirs: Relative directories to prune.
    :ivar exclude_paths: Relative files to skip.
    :ivar not_path: Patterns searched against each relative file path.
    """

    root: pathlib.Path
    ignore_vcs: bool = True
    ignore_dot_files: bool = True
    exclude_dirs: tuple[str, ...] = ()
    exclude_paths: tuple[str, ...] = ()
    not_path: tuple[re.Pattern[str], ...] = ()

    def __iter__(self) -> Iterator[pathlib.Path]:
        excluded_dirs: set[str] = {d.strip("/") for d in self.exclude_dirs}
        excluded_paths: set[str] = {p.strip("/") for p in self.exclude_paths}

        for root_str, dirs, files in os.walk(self.root, topdown=True):
            root_path: pathlib.Path = pathlib.Path(root_str)
            rel_root: pathlib.PurePosixPath = pathlib.PurePosixPath(
                root_path.relative_to(self.root).as_posix()
            )

            keep_dirs: list[str] = []
            for d in sorted(dirs):
                if self._ignored_name(d) is True:
                    continue
                if _join(rel_root, d) in excluded_dirs:
                    continue
                keep_dirs.append(d)
            dirs[:] = keep_dirs

            for name in sorted(files):
                if self._ignored_name(name) is True:
                    continue
                rel: str = _join(rel_root, name)
                if rel in excluded_paths:
                    continue
                if any(p.search(rel) is not None for p in self.not_path):
                    continue
                yield root_path / name

    def _ignored_name(self, name: str) -> bool:
        if self.ignore_vcs is True and name in VCS_NAMES:
            return True
        if self.ignore_dot_files is True and name.startswith(".") is True:
            return True
        return False


def _join(rel_root: pathlib.PurePosixPath, name: str) -> str:
    if rel_root.as_posix() == ".":
        return name
    return (rel_root / name).as_posix()


class Bundle:
    """Resources of one package, rooted at the package directory.

    :param root: Package root; every member must live under it.
    """

    def __init__(self, root: pathlib.Path) -> None:
        self._root: pathlib.Path = root
        self._resources: list[pathlib.Path | FileFinder] = []

    @property
    def root(self) -> pathlib.Path:
        return self._root

    def add_file(self, path: pathlib.Path) -> "Bundle":
        """Add a single file.

        :param path: File under the bundle root.
        :returns: This bundle.
        :raises BuildError: If the file lies outside the bundle root.
        """

        self._check_owned(path)
        self._resources.append(path)
        return self

    def add_dir(self, finder: FileFinder) -> "Bundle":
        """Add a lazy directory enumeration.

        :param finder: Finder rooted at or below the bundle root.
        :returns: This bundle.
        :raises BuildError: If the finder walks outside the bundle root.
        """

        self._check_owned(finder.root)
        self._resources.append(finder)
        return self

    def __iter__(self) -> Iterator[pathlib.Path | FileFinder]:
        return iter(self._resources)

    def files(self) -> Iterator[pathlib.Path]:
        """Iterate every file of the bundle, walking directory members lazily."""

        for resource in self._resources:
            if isinstance(resource, FileFinder) is True:
                yield from resource
            else:
                yield resource

    def check_contains(self, path: str | pathlib.Path) -> bool:
        """Return whether ``path`` is part of this bundle.

        :param path: Absolute file path.
        :returns: ``True`` if a member resolves to ``path``.
        """

        wanted: pathlib.Path = pathlib.Path(path)
        for candidate in self.files():
            if candidate == wanted:
                return True
        return False

    def _check_owned(self, path: pathlib.Path) -> None:
        if pathlib.Path(path).is_relative_to(self._root) is False:
            raise BuildError(f"{path} is not within bundle root {self._root}")
