"""Command line interface for phar-packer."""

import argparse
import logging
import pathlib
import sys

from phar_packer.builder import PharBuilder
from phar_packer.config import DEFAULT_MAIN, BuildConfig, resolve_build_config
from phar_packer.errors import BuildError
from phar_packer.phar import PharArchive, read_phar


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the phar-packer logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("phar_packer")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_verbosity(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def main(argv: list[str] | None = None, *, base_path: pathlib.Path | None = None) -> int:
    """Run the phar-packer CLI.

    :param argv: Optional argv list (excluding program name).
    :param base_path: Project root used when ``--path`` is omitted (defaults to cwd).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="phar-packer",
        description="Pack a composer project and its dependencies into one .phar file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_build = subparsers.add_parser(
        "build",
        help="Pack your project into a Phar package.",
    )
    p_build.add_argument(
        "--name",
        type=str,
        default=None,
        help=(
            "Name of the Phar package. Defaults to the project name. "
            "An existing directory places the default name inside it."
        ),
    )
    p_build.add_argument(
        "-b",
        "--bin",
        type=str,
        default=DEFAULT_MAIN,
        help="The script path to execute by default.",
    )
    p_build.add_argument(
        "-p",
        "--path",
        type=pathlib.Path,
        default=None,
        help="Project root path or composer.json file. Defaults to the current directory.",
    )
    p_build.add_argument(
        "--phar-version",
        dest="phar_version",
        type=str,
        default=None,
        help="Version appended to the default archive name (<name>:<version>.phar).",
    )
    _add_verbosity(p_build)

    p_list = subparsers.add_parser(
        "list",
        help="List the files stored in a Phar package.",
    )
    p_list.add_argument("archive", type=pathlib.Path, help="Path to a .phar file.")
    _add_verbosity(p_list)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)

    try:
        if ns.command == "build":
            config: BuildConfig = resolve_build_config(
                base_path=base_path if base_path is not None else pathlib.Path.cwd(),
                path=ns.path,
                name=ns.name,
                main=ns.bin,
                version=ns.phar_version,
            )
            PharBuilder(config, logger=logger).build()
            return 0

        if ns.command == "list":
            archive: PharArchive = read_phar(ns.archive)
            for entry in archive:
                sys.stdout.write(f"{entry.size:>10}  {entry.name}\n")
            logger.info(f"phar-packer: {len(archive)} files in {ns.archive}")
            return 0
    except BuildError as e:
        logger.error(f"phar-packer: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
