"""Build configuration.

A build is described once, up front, by an immutable :class:`BuildConfig`:

- The project root is passed in explicitly (``base_path``) rather than read
  from process-wide state.
- Overrides from the command line are folded in by :func:`resolve_build_config`.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import os
import pathlib

from phar_packer.errors import InvalidInputError


DEFAULT_MAIN: str = "bin/hyperf.php"

DEFAULT_MOUNT_LINKS: tuple[str, ...] = (".env", "runtime/hyperf.pid")

MANIFEST_NAME: str = "composer.json"


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Phar build configuration.

    :ivar manifest_path: Path to the project's ``composer.json``.
    :ivar target: Optional output archive override (file or directory).
    :ivar main: Optional entry point override, relative to the project root.
    :ivar version: Optional version appended to the derived archive name.
    :ivar mount_links: Relative paths kept writable outside the archive.
    :ivar phar_readonly: Whether the environment forbids writing phar archives.
    """

    manifest_path: pathlib.Path
    target: str | None = None
    main: str | None = None
    version: str | None = None
    mount_links: tuple[str, ...] = DEFAULT_MOUNT_LINKS
    phar_readonly: bool = False


def resolve_build_config(
    *,
    base_path: pathlib.Path,
    path: pathlib.Path | None = None,
    name: str | None = None,
    main: str | None = None,
    version: str | None = None,
    mount_links: tuple[str, ...] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuildConfig:
    """Resolve user-supplied build arguments into a :class:`~BuildConfig`.

    :param base_path: Project root used when ``path`` is not given.
    :param path: Optional project directory or manifest file.
    :param name: Optional output archive name override.
    :param main: Optional entry point override.
    :param version: Optional version for the derived archive name.
    :param mount_links: Optional replacement for the default mount links.
    :param environ: Environment to read ``PHAR_READONLY`` from (defaults to ``os.environ``).
    :returns: Resolved build config.
    :raises InvalidInputError: If no readable manifest file can be found.
    """

    if environ is None:
        environ = os.environ

    manifest_path: pathlib.Path = _resolve_manifest_path(path if path is not None else base_path)

    links: tuple[str, ...] = DEFAULT_MOUNT_LINKS
    if mount_links is not None:
        links = tuple(mount_links)

    return BuildConfig(
        manifest_path=manifest_path,
        target=_empty_to_none(name),
        main=_empty_to_none(main),
        version=_empty_to_none(version),
        mount_links=links,
        phar_readonly=phar_readonly(environ),
    )


def phar_readonly(environ: Mapping[str, str]) -> bool:
    """Return whether writing phar archives is disabled.

    Mirrors PHP's ``phar.readonly`` setting through the ``PHAR_READONLY``
    environment variable.

    :param environ: Environment mapping.
    :returns: ``True`` if writing is disabled.
    """

    raw: str | None = environ.get("PHAR_READONLY")
    if raw is None:
        return False
    return _parse_env_bool(raw) is True


def _resolve_manifest_path(path: pathlib.Path) -> pathlib.Path:
    """Map a project directory or manifest path onto the manifest file.

    :param path: Directory or file path.
    :returns: Manifest file path.
    :raises InvalidInputError: If the path is not a readable file.
    """

    if path.is_dir() is True:
        path = path / MANIFEST_NAME
    if path.is_file() is False:
        raise InvalidInputError(f'The given path "{path}" is not a readable file')
    return path


def _parse_env_bool(value: str) -> bool | None:
    """Parse a string into a boolean.

    :param value: Raw environment variable string.
    :returns: Parsed boolean, or ``None`` if unknown.
    """

    v: str = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off", ""}:
        return False
    return None


def _empty_to_none(value: str | None) -> str | None:
    if value is None or len(value) == 0:
        return None
    return value
