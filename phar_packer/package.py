"""Composer package descriptors.

A :class:`Package` wraps one decoded ``composer.json`` (or one record of
``vendor/composer/installed.json``) together with the directory the package
lives in. One instance exists per package: the main project and every
installed dependency.
"""

from collections.abc import Mapping
import json
import pathlib
import posixpath
import re
from typing import Any

from phar_packer.bundle import Bundle, FileFinder
from phar_packer.errors import BuildError, InvalidInputError


ROOT_COMPOSER_PHAR_RE: re.Pattern[str] = re.compile(r"^composer\.phar")


class Package:
    """A composer package rooted at a directory.

    :param manifest: Decoded manifest mapping.
    :param directory: Package root; normalized to end with ``/``.
    """

    def __init__(self, manifest: Mapping[str, Any], directory: str) -> None:
        self._manifest: Mapping[str, Any] = manifest
        self._directory: str = directory.rstrip("/") + "/"

    def __repr__(self) -> str:
        return f"Package(name={self.name!r}, directory={self._directory!r})"

    @property
    def name(self) -> str | None:
        """Full ``vendor/name`` package name, or ``None`` when unset."""

        name: Any = self._manifest.get("name")
        if name is None:
            return None
        return str(name)

    @property
    def short_name(self) -> str:
        """Package name without its vendor prefix.

        Falls back to the directory name for packages without a ``name``.
        """

        name: str | None = self.name
        if name is None:
            return pathlib.PurePosixPath(self._directory.rstrip("/")).name
        return name.rsplit("/", 1)[-1]

    @property
    def directory(self) -> str:
        """Package root as a string ending with ``/``."""

        return self._directory

    @property
    def path(self) -> pathlib.Path:
        """Package root as a path."""

        return pathlib.Path(self._directory)

    @property
    def path_vendor(self) -> str:
        """Vendor directory relative to the package root, ending with ``/``."""

        vendor: str = "vendor"
        config: Any = self._manifest.get("config")
        if isinstance(config, Mapping) is True and config.get("vendor-dir") is not None:
            vendor = str(config["vendor-dir"])
        return vendor.rstrip("/") + "/"

    @property
    def vendor_absolute_path(self) -> str:
        """Vendor directory joined onto the package root, ending with ``/``."""

        return self._directory + self.path_vendor

    @property
    def bins(self) -> list[str]:
        """Declared entry points.

        :returns: The manifest's ``bin`` entries; a single string becomes a
            one-element list.
        """

        bins: Any = self._manifest.get("bin")
        if bins is None:
            return []
        if isinstance(bins, str) is True:
            return [bins]
        return [str(b) for b in bins]

    @property
    def type(self) -> str:
        """Composer package type, ``library`` by default."""

        return str(self._manifest.get("type", "library"))

    def local_path(self, path: str | pathlib.Path) -> str:
        """Return ``path`` relative to this package's root.

        Both sides are normalized first, so ``..`` segments (for example a
        ``vendor-dir`` of ``../shared``) cannot smuggle a path outside the
        root.

        :param path: Absolute path under the package root.
        :returns: Relative POSIX path.
        :raises BuildError: If the path is outside the package root.
        """

        p: str = posixpath.normpath(pathlib.Path(path).as_posix())
        base: str = posixpath.normpath(self._directory).rstrip("/") + "/"
        if p.startswith(base) is False:
            raise BuildError(f'Path "{p}" is not within base project path "{self._directory}"')
        return p[len(base) :]

    def bundle(self, finder: FileFinder | None = None) -> Bundle:
        """Collect the files of this package that belong in the archive.

        Without a ``finder`` the dependency rule applies: every file except VCS
        metadata, dot files, the package's own vendor directory and a
        ``composer.phar`` sitting directly in the package root.

        :param finder: Optional pre-filtered file enumeration.
        :returns: Bundle rooted at this package's directory.
        """

        if finder is None:
            finder = FileFinder(
                root=self.path,
                exclude_dirs=(self.path_vendor.rstrip("/"),),
                not_path=(ROOT_COMPOSER_PHAR_RE,),
            )
        return Bundle(self.path).add_dir(finder)


def load_json(path: pathlib.Path) -> Any:
    """Decode a JSON manifest.

    :param path: Manifest path.
    :returns: Decoded document.
    :raises InvalidInputError: If the file is missing, unreadable or not JSON.
    """

    try:
        raw: str = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidInputError(f"Unable to read given path {path}") from e
    except UnicodeDecodeError as e:
        raise InvalidInputError(f"Unable to parse given path {path}") from e

    try:
        result: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Unable to parse given path {path}: {e.msg}") from e

    if result is None:
        raise InvalidInputError(f"Unable to parse given path {path}")
    return result
