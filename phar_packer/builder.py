"""Phar builder.

This module packs a composer project into one executable ``.phar``:

- It bundles the main project's files, the generated ``runtime/container``
  files, composer's autoloader and every installed dependency.
- It patches ``config/config.php`` and hyperf's ``ConfigFactory`` so they work
  from inside the archive.
- It prefixes the entry point with a preamble that mounts writable files
  (``.env``, the pid file) from beside the archive.
- It writes everything to a temporary file and renames it over the target, so
  the target is either fully replaced or left untouched.
"""

from collections.abc import Sequence
import logging
import os
import pathlib
import random
import re
import time
from typing import Any

from phar_packer.archive import ArchiveSession
from phar_packer.bundle import FileFinder
from phar_packer.config import DEFAULT_MAIN, BuildConfig
from phar_packer.errors import (
    BuildError,
    InvalidInputError,
    MissingEntryPointError,
    NotInstalledError,
    PublishFailedError,
    UnwritableError,
)
from phar_packer.package import ROOT_COMPOSER_PHAR_RE, Package, load_json
from phar_packer.phar import PharWriter
from phar_packer.rewrite import enable_scan_cacheable, rewrite_config_factory


CONFIG_PATH: str = "config/config.php"

CONFIG_FACTORY_PATH: str = "hyperf/config/src/ConfigFactory.php"

PHP_OPEN_TAG: str = "<?php"

# Leading declare() statements, optionally preceded by comments. PHP requires
# strict_types to be the first statement of a file.
LEADING_DECLARE_RE: re.Pattern[str] = re.compile(
    r"(?:\s|//[^\n]*|#(?!\[)[^\n]*|/\*.*?\*/)*(?:\s*declare\s*\([^)]*\)\s*;)+",
    re.DOTALL | re.IGNORECASE,
)


def mount_link_code(mount_links: Sequence[str]) -> str:
    """Render the preamble that mounts writable paths at startup.

    Each link is resolved next to the running archive, created when missing
    (links ending in ``/`` are directories) and mounted into the archive.

    :param mount_links: Paths relative to the archive's directory.
    :returns: PHP source starting with ``<?php``.
    """

    items: str = ", ".join(_php_string(link) for link in mount_links)
    return (
        "<?php\n"
        f"$mountLink = [{items}];\n"
        "$path = dirname(realpath($argv[0]));\n"
        "array_walk($mountLink, function ($item) use ($path) {\n"
        "    $file = $path . '/' . $item;\n"
        "    if (!file_exists($file)) {\n"
        "        if (rtrim($item, '/') != $item) {\n"
        "            @mkdir($file, 0777, true);\n"
        "        } else {\n"
        "            file_exists(dirname($file)) || @mkdir(dirname($file), 0777, true);\n"
        "            file_put_contents($file, '');\n"
        "        }\n"
        "    }\n"
        "    Phar::mount($item, $file);\n"
        "});"
    )


def _php_string(value: str) -> str:
    """Quote ``value`` as a single-quoted PHP string literal."""

    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _size_kib(path: pathlib.Path) -> str:
    """Format the size of ``path`` for progress logs.

    :param path: Existing file.
    :returns: Size such as ``12.3 KiB``.
    """

    return f"{path.stat().st_size / 1024:.1f} KiB"


class PharBuilder:
    """Build one phar archive from a composer project.

    :param config: Immutable build configuration.
    :param logger: Optional logger for progress output.
    :raises InvalidInputError: If the project manifest cannot be decoded.
    """

    def __init__(self, config: BuildConfig, *, logger: logging.Logger | None = None) -> None:
        if logger is None:
            logger = logging.getLogger("phar_packer")
        self._config: BuildConfig = config
        self._logger: logging.Logger = logger

        manifest_path: pathlib.Path = config.manifest_path.resolve()
        manifest: Any = load_json(manifest_path)
        if isinstance(manifest, dict) is False:
            raise InvalidInputError(f"Manifest {manifest_path} must contain a JSON object")
        self._package: Package = Package(manifest, manifest_path.parent.as_posix())
        self._target: pathlib.Path = self._resolve_target()

    @property
    def package(self) -> Package:
        return self._package

    @property
    def target(self) -> pathlib.Path:
        return self._target

    def _resolve_target(self) -> pathlib.Path:
        """Derive the archive path.

        :returns: ``<short_name>[:<version>].phar`` in the project root, or in
            the override directory; any other override is used as given.
        """

        name: str = self._package.short_name
        if self._config.version is not None:
            name += f":{self._config.version}"
        name += ".phar"

        if self._config.target is None:
            return self._package.path / name

        override: pathlib.Path = pathlib.Path(self._config.target)
        if override.is_dir() is True:
            return override / name
        return override

    def main(self) -> str:
        """Resolve the entry point relative to the project root.

        :returns: Entry point path.
        :raises MissingEntryPointError: If a declared bin file does not exist.
        """

        if self._config.main is not None:
            return self._config.main

        for path in self._package.bins:
            if (self._package.path / path).exists() is False:
                raise MissingEntryPointError(f'Bin file "{path}" does not exist')
            return path
        return DEFAULT_MAIN

    def dependencies(self) -> list[Package]:
        """Discover installed dependency packages.

        Reads ``vendor/composer/installed.json``. Both the flat list written
        by composer 1 and the ``{"packages": [...]}`` object written by
        composer 2 are accepted; in the latter, ``packages`` wins over any
        other top-level key.

        :returns: One package per installed record, in manifest order.
        :raises InvalidInputError: If the manifest has an unknown shape.
        """

        vendor: str = self._package.vendor_absolute_path
        installed_path: pathlib.Path = pathlib.Path(vendor) / "composer" / "installed.json"
        if installed_path.is_file() is False:
            return []

        installed: Any = load_json(installed_path)
        records: Any = installed
        if isinstance(installed, dict) is True:
            if "packages" not in installed:
                raise InvalidInputError(f"{installed_path} has no \"packages\" list")
            records = installed["packages"]
        if isinstance(records, list) is False:
            raise InvalidInputError(f"{installed_path} does not list installed packages")

        packages: list[Package] = []
        for record in records:
            if isinstance(record, dict) is False or "name" not in record:
                raise InvalidInputError(f"{installed_path} contains a package record without a name")
            directory: str = vendor + str(record["name"]).strip("/") + "/"
            if record.get("target-dir") is not None:
                directory += str(record["target-dir"]).strip("/") + "/"
            package: Package = Package(record, directory)
            if package.type == "metapackage":
                continue
            packages.append(package)
        return packages

    def build(self) -> pathlib.Path:
        """Compile the project into the target phar.

        :returns: Path of the published archive.
        :raises BuildError: If packing fails; the target is then left as it was.
        """

        if self._config.phar_readonly is True:
            raise UnwritableError(
                "Your configuration disabled writing phar files (PHAR_READONLY is on), "
                "please update your configuration"
            )

        target: pathlib.Path = self._target
        self._logger.info(f"phar-packer: creating phar {target}")
        t0: float = time.perf_counter()

        vendor_path: pathlib.Path = pathlib.Path(self._package.vendor_absolute_path)
        if vendor_path.is_dir() is False:
            raise NotInstalledError(
                f'Directory {vendor_path} not properly installed, did you run "composer install" ?'
            )

        main: str = pathlib.PurePosixPath(self.main()).as_posix()
        if (self._package.path / main).is_file() is False:
            raise MissingEntryPointError(f'Main file "{main}" does not exist')

        tmp: pathlib.Path = _temporary_path(target)
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"phar-packer: staging to {tmp}")

        session: ArchiveSession = ArchiveSession(PharWriter(tmp), self._package)

        self._logger.info(f'phar-packer: adding main package "{self._package.name}"')
        added: int = session.add_bundle(self._package.bundle(self._main_finder(main=main, target=target)))
        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"phar-packer: main package contributed {added} files")

        self._enable_scan_cacheable(session)

        container: pathlib.Path = self._package.path / "runtime" / "container"
        if container.is_dir() is True:
            self._logger.info("phar-packer: adding runtime container files")
            session.add_bundle(self._package.bundle(FileFinder(root=container)))

        self._logger.info("phar-packer: adding composer base files")
        autoload: pathlib.Path = vendor_path / "autoload.php"
        if autoload.is_file() is False:
            raise NotInstalledError(
                f'Autoloader {autoload} is missing, did you run "composer install" ?'
            )
        session.add_file(autoload)
        session.build_from_iterator(
            sorted(p for p in (vendor_path / "composer").glob("*.*") if p.is_file() is True)
        )

        for package in self.dependencies():
            local: str = self._package.local_path(package.directory)
            self._logger.info(f'phar-packer: adding dependency "{package.name}" from "{local}"')
            if package.path.is_dir() is False:
                raise NotInstalledError(
                    f'Dependency "{package.name}" is not installed in {package.directory}, '
                    'did you run "composer install" ?'
                )
            session.add_bundle(package.bundle())

        self._replace_config_factory_read_paths(session, vendor_path)

        self._logger.info(f'phar-packer: adding main file "{main}"')
        session.add_from_string(main, self._bootstrap_main(main))

        self._logger.info("phar-packer: setting stub")
        session.set_stub(session.create_default_stub(main))
        self._logger.info(f"phar-packer: setting default stub {main}")

        session.commit()

        if target.exists() is True:
            self._logger.info(f"phar-packer: overwriting existing file {target} ({_size_kib(target)})")

        try:
            os.replace(tmp, target)
        except OSError as e:
            raise PublishFailedError(
                f"Unable to rename temporary phar archive {tmp} to {target}: {e}"
            ) from e

        elapsed: float = max(time.perf_counter() - t0, 0.0)
        self._logger.info("")
        self._logger.info(
            f"    OK - Creating {target} ({_size_kib(target)}) completed after {elapsed:.1f}s"
        )
        return target

    def _main_finder(self, *, main: str, target: pathlib.Path) -> FileFinder:
        """Select the main project's own files.

        Skips the vendor and runtime directories, a root ``composer.phar``,
        the entry point, the target archive and temporaries left by earlier
        failed builds.
        """

        exclude_paths: list[str] = [main]
        not_path: list[re.Pattern[str]] = [ROOT_COMPOSER_PHAR_RE]

        resolved: pathlib.Path = target.resolve()
        if resolved.is_relative_to(self._package.path) is True:
            rel: str = resolved.relative_to(self._package.path).as_posix()
            exclude_paths.append(rel)
            not_path.append(re.compile("^" + re.escape(rel) + r"\.\d+\.phar$"))

        return FileFinder(
            root=self._package.path,
            exclude_dirs=(self._package.path_vendor.rstrip("/"), "runtime"),
            exclude_paths=tuple(exclude_paths),
            not_path=tuple(not_path),
        )

    def _enable_scan_cacheable(self, session: ArchiveSession) -> None:
        """Replace the packed ``config/config.php`` with a cacheable copy.

        :param session: Open archive session.
        :raises UnparsableSourceError: If the config file is not valid PHP.
        """

        path: pathlib.Path = self._package.path / CONFIG_PATH
        if path.is_file() is False:
            return
        self._logger.info(f'phar-packer: forcing "scan_cacheable" on in "{CONFIG_PATH}"')
        code: str = _read_source(path)
        session.add_from_string(CONFIG_PATH, enable_scan_cacheable(code, filename=str(path)))

    def _replace_config_factory_read_paths(self, session: ArchiveSession, vendor_path: pathlib.Path) -> None:
        """Replace the packed ``ConfigFactory.php`` when it is installed.

        :param session: Open archive session.
        :param vendor_path: Absolute vendor directory.
        """

        path: pathlib.Path = vendor_path / CONFIG_FACTORY_PATH
        if path.is_file() is False:
            return
        local: str = self._package.local_path(path)
        self._logger.info(
            f'phar-packer: replacing method "readPaths" in "{local}", '
            'changing "getRealPath" to "getPathname"'
        )
        code: str = _read_source(path)
        session.add_from_string(local, rewrite_config_factory(code, filename=str(path)))

    def _bootstrap_main(self, main: str) -> str:
        """Prefix the entry point's code with the mount-link preamble.

        The preamble replaces the first ``<?php`` tag. When the file opens
        with ``declare(...)`` statements, the preamble follows them instead.

        :param main: Entry point relative to the project root.
        :returns: Rewritten entry point source.
        :raises InvalidInputError: If the file has no ``<?php`` tag.
        """

        path: pathlib.Path = self._package.path / main
        contents: str = _read_source(path)
        idx: int = contents.find(PHP_OPEN_TAG)
        if idx < 0:
            raise InvalidInputError(f'Main file "{main}" has no "{PHP_OPEN_TAG}" opening tag')

        code: str = mount_link_code(self._config.mount_links)[len(PHP_OPEN_TAG) :]
        insert_at: int = idx + len(PHP_OPEN_TAG)
        declares: re.Match[str] | None = LEADING_DECLARE_RE.match(contents, insert_at)
        if declares is not None:
            insert_at = declares.end()
        return contents[0:insert_at] + code + contents[insert_at:]


def _temporary_path(target: pathlib.Path) -> pathlib.Path:
    """Pick an unused ``<target>.<random>.phar`` path beside ``target``.

    :param target: Final archive path.
    :returns: Path that does not exist yet.
    """

    while True:
        tmp: pathlib.Path = target.with_name(f"{target.name}.{random.getrandbits(31)}.phar")
        if tmp.exists() is False:
            return tmp


def _read_source(path: pathlib.Path) -> str:
    """Read a UTF-8 source file.

    :raises BuildError: If the file cannot be read.
    :raises InvalidInputError: If the file is not valid UTF-8.
    """

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise BuildError(f"Unable to read {path}") from e
    except UnicodeDecodeError as e:
        raise InvalidInputError(f"{path} is not valid UTF-8") from e
