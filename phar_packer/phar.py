"""Native PHAR container format.

Layout written by :class:`PharWriter` (all integers little endian unless noted):

- stub: PHP code ending in ``__HALT_COMPILER(); ?>\\r\\n``
- manifest: u32 length, u32 entry count, u16 API version (big endian),
  u32 global flags, u32 alias length + alias, u32 metadata length + metadata,
  then per entry: u32 name length + name, u32 size, u32 mtime,
  u32 stored size, u32 crc32, u32 flags, u32 metadata length + metadata
- entry contents, uncompressed, in manifest order
- signature: SHA-256 digest of everything above, u32 signature type, ``GBMB``
"""

from collections.abc import Iterator
from dataclasses import dataclass
import hashlib
import pathlib
import struct
import time
from typing import BinaryIO
import zlib

from phar_packer.errors import BuildError, InvalidInputError


HALT_COMPILER: bytes = b"__HALT_COMPILER();"

_API_VERSION: bytes = b"\x11\x10"
_FLAG_HAS_SIGNATURE: int = 0x00010000
_ENTRY_PERMISSIONS: int = 0o666
_ENTRY_COMPRESSION_MASK: int = 0x0000F000
_SIG_SHA256: int = 0x0003
_SIG_MAGIC: bytes = b"GBMB"
_CHUNK: int = 1024 * 1024
_MANIFEST_HEADER_LEN: int = 4 + len(_API_VERSION) + 4 + 4 + 4
_ENTRY_RECORD_LEN: int = 6 * 4


@dataclass(frozen=True, slots=True)
class _Pending:
    """A buffered entry: either a file on disk or in-memory contents."""

    source: pathlib.Path | None
    data: bytes | None
    mtime: int


@dataclass(frozen=True, slots=True)
class PharEntry:
    """Manifest record of one archived file.

    :ivar name: Path inside the archive.
    :ivar size: Uncompressed size in bytes.
    :ivar mtime: Modification time (Unix seconds).
    :ivar crc32: CRC32 of the contents.
    :ivar offset: Absolute offset of the contents in the archive file.
    """

    name: str
    size: int
    mtime: int
    crc32: int
    offset: int


def default_stub(index_file: str) -> str:
    """Render the loader stub that runs ``index_file`` from the archive.

    :param index_file: Entry point path inside the archive.
    :returns: PHP stub source, terminated by ``__HALT_COMPILER();``.
    """

    index: str = index_file.replace("\\", "\\\\").replace("'", "\\'")
    return (
        "<?php\n"
        "if (!class_exists('Phar')) {\n"
        "    fwrite(STDERR, \"The phar extension is required to run this archive.\\n\");\n"
        "    exit(1);\n"
        "}\n"
        "Phar::interceptFileFuncs();\n"
        "set_include_path('phar://' . __FILE__ . PATH_SEPARATOR . get_include_path());\n"
        f"include 'phar://' . __FILE__ . '/{index}';\n"
        "__HALT_COMPILER(); ?>\r\n"
    )


def _normalize_stub(stub: str) -> bytes:
    data: bytes = stub.encode("utf-8")
    idx: int = data.find(HALT_COMPILER)
    if idx < 0:
        raise BuildError("Stub is missing the __HALT_COMPILER(); marker")
    return data[0 : idx + len(HALT_COMPILER)] + b" ?>\r\n"


class PharWriter:
    """Buffered writer for one PHAR file.

    Entries are collected while buffering and written to ``path`` in one pass
    by :meth:`stop_buffering`. Adding a name twice keeps the latest contents.

    :param path: Archive path to create (overwritten).
    """

    def __init__(self, path: pathlib.Path) -> None:
        self._path: pathlib.Path = path
        self._entries: dict[str, _Pending] = {}
        self._stub: bytes = _normalize_stub("<?php __HALT_COMPILER();")
        self._buffering: bool = False

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def start_buffering(self) -> None:
        self._buffering = True

    def add_file(self, local: str, source: pathlib.Path) -> None:
        self._require_buffering()
        try:
            mtime: int = int(source.stat().st_mtime)
        except OSError as e:
            raise BuildError(f"Unable to read {source}") from e
        self._entries.pop(local, None)
        self._entries[local] = _Pending(source=source, data=None, mtime=mtime)

    def add_from_string(self, local: str, data: bytes) -> None:
        self._require_buffering()
        self._entries.pop(local, None)
        self._entries[local] = _Pending(source=None, data=data, mtime=int(time.time()))

    def set_stub(self, stub: str) -> None:
        self._require_buffering()
        self._stub = _normalize_stub(stub)

    def stop_buffering(self) -> None:
        """Write the archive to disk and end the session.

        A partially written file is removed if writing fails.

        :raises BuildError: If buffering was not started or writing fails.
        """

        self._require_buffering()
        self._buffering = False
        try:
            self._write()
        except OSError as e:
            self._path.unlink(missing_ok=True)
            raise BuildError(f"Unable to write phar {self._path}") from e
        except BaseException:
            self._path.unlink(missing_ok=True)
            raise

    def _require_buffering(self) -> None:
        if self._buffering is False:
            raise BuildError(f"Phar {self._path.name} is not buffering")

    def _write(self) -> None:
        """Write stub, manifest, contents and signature to :attr:`path`.

        Each source file is read exactly once. The manifest is reserved
        first and filled in once every entry's size and CRC32 are known, so
        the recorded values always describe the bytes actually stored.
        """

        entries: list[tuple[bytes, _Pending]] = [
            (local.encode("utf-8"), pending) for local, pending in self._entries.items()
        ]
        manifest_len: int = _MANIFEST_HEADER_LEN + sum(
            4 + len(name) + _ENTRY_RECORD_LEN for name, _ in entries
        )

        with open(self._path, "w+b") as f:
            f.write(self._stub)
            f.write(struct.pack("<I", manifest_len))
            manifest_at: int = f.tell()
            f.write(b"\0" * manifest_len)

            records: list[bytes] = []
            for name, pending in entries:
                size, crc = _copy_contents(pending, f)
                records.append(
                    struct.pack("<I", len(name))
                    + name
                    + struct.pack("<IIIIII", size, pending.mtime, size, crc, _ENTRY_PERMISSIONS, 0)
                )

            f.seek(manifest_at)
            f.write(
                struct.pack("<I", len(records))
                + _API_VERSION
                + struct.pack("<I", _FLAG_HAS_SIGNATURE)
                + struct.pack("<I", 0)
                + struct.pack("<I", 0)
                + b"".join(records)
            )

            f.seek(0)
            digest = hashlib.sha256()
            while True:
                chunk: bytes = f.read(_CHUNK)
                if len(chunk) == 0:
                    break
                digest.update(chunk)
            f.write(digest.digest())
            f.write(struct.pack("<I", _SIG_SHA256))
            f.write(_SIG_MAGIC)


def _copy_contents(pending: _Pending, out: BinaryIO) -> tuple[int, int]:
    """Append an entry's contents to ``out``.

    :param pending: Buffered entry.
    :param out: Archive file positioned at the entry's offset.
    :returns: Number of bytes written and their CRC32.
    :raises BuildError: If the source file cannot be read.
    """

    if pending.data is not None:
        out.write(pending.data)
        return len(pending.data), zlib.crc32(pending.data)

    size: int = 0
    crc: int = 0
    try:
        src: BinaryIO = open(pending.source, "rb")
    except OSError as e:
        raise BuildError(f"Unable to read {pending.source}") from e
    with src:
        while True:
            try:
                chunk: bytes = src.read(_CHUNK)
            except OSError as e:
                raise BuildError(f"Unable to read {pending.source}") from e
            if len(chunk) == 0:
                break
            out.write(chunk)
            size += len(chunk)
            crc = zlib.crc32(chunk, crc)
    return size, crc


class PharArchive:
    """Read-only view of a PHAR file written by :class:`PharWriter`.

    :param path: Archive path.
    :param stub: Stub source, up to and including ``__HALT_COMPILER(); ?>``.
    :param entries: Manifest records in archive order.
    """

    def __init__(self, path: pathlib.Path, stub: str, entries: list[PharEntry]) -> None:
        self.path: pathlib.Path = path
        self.stub: str = stub
        self._entries: dict[str, PharEntry] = {e.name: e for e in entries}

    def __iter__(self) -> Iterator[PharEntry]:
        return iter(self._entries.values())

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def names(self) -> list[str]:
        return list(self._entries)

    def read(self, name: str) -> bytes:
        """Return the contents of ``name``.

        :raises KeyError: If the archive has no such entry.
        """

        entry: PharEntry = self._entries[name]
        with open(self.path, "rb") as f:
            f.seek(entry.offset)
            return f.read(entry.size)


def read_phar(path: pathlib.Path) -> PharArchive:
    """Open and verify a PHAR file.

    :param path: Archive path.
    :returns: Archive view.
    :raises InvalidInputError: If the file is not a valid, signed PHAR.
    """

    try:
        data: bytes = path.read_bytes()
    except OSError as e:
        raise InvalidInputError(f"Unable to read archive {path}") from e

    halt: int = data.find(HALT_COMPILER)
    if halt < 0:
        raise InvalidInputError(f"{path} is not a phar archive (no __HALT_COMPILER)")
    pos: int = halt + len(HALT_COMPILER)
    if data[pos : pos + 3] in {b" ?>", b"\n?>"}:
        pos += 3
        if data[pos : pos + 2] == b"\r\n":
            pos += 2
        elif data[pos : pos + 1] == b"\n":
            pos += 1
    stub: str = data[0:pos].decode("utf-8", errors="replace")

    if len(data) < pos + 4 + 8 + len(_SIG_MAGIC):
        raise InvalidInputError(f"{path} is truncated")
    if data[-4:] != _SIG_MAGIC:
        raise InvalidInputError(f"{path} has no signature")
    (sig_type,) = struct.unpack("<I", data[-8:-4])
    if sig_type != _SIG_SHA256:
        raise InvalidInputError(f"{path} uses unsupported signature type {sig_type:#x}")
    sig_start: int = len(data) - 8 - 32
    if hashlib.sha256(data[0:sig_start]).digest() != data[sig_start:-8]:
        raise InvalidInputError(f"{path} signature does not match its contents")

    try:
        (manifest_len,) = struct.unpack_from("<I", data, pos)
        cursor: int = pos + 4
        (count,) = struct.unpack_from("<I", data, cursor)
        cursor += 4 + len(_API_VERSION) + 4
        (alias_len,) = struct.unpack_from("<I", data, cursor)
        cursor += 4 + alias_len
        (meta_len,) = struct.unpack_from("<I", data, cursor)
        cursor += 4 + meta_len

        offset: int = pos + 4 + manifest_len
        entries: list[PharEntry] = []
        for _ in range(count):
            (name_len,) = struct.unpack_from("<I", data, cursor)
            cursor += 4
            name: str = data[cursor : cursor + name_len].decode("utf-8")
            cursor += name_len
            size, mtime, stored, crc, flags, entry_meta_len = struct.unpack_from("<IIIIII", data, cursor)
            cursor += 24 + entry_meta_len
            if flags & _ENTRY_COMPRESSION_MASK != 0 or stored != size:
                raise InvalidInputError(f"{path}: compressed entry {name!r} is not supported")
            if zlib.crc32(data[offset : offset + size]) != crc:
                raise InvalidInputError(f"{path}: CRC mismatch for {name!r}")
            entries.append(PharEntry(name=name, size=size, mtime=mtime, crc32=crc, offset=offset))
            offset += size
    except struct.error as e:
        raise InvalidInputError(f"{path} has a corrupt manifest") from e

    if offset != sig_start:
        raise InvalidInputError(f"{path} has trailing data before its signature")
    return PharArchive(path, stub, entries)

