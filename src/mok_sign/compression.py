"""Kernel module compression handling.

Modules may be installed plain (``.ko``), zstd-compressed (``.ko.zst``) or
xz-compressed (``.ko.xz``). Signing works on the plain ELF object, so
compressed modules are unpacked for the duration of the signing step by
:class:`DecompressedModule` and packed back with the same codec afterwards.
"""

import logging
import os
import time
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from .errors import CompressionError
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class Compression(Enum):
    """Supported module compression kinds."""

    NONE = ""
    ZSTD = ".zst"
    XZ = ".xz"

    @property
    def suffix(self) -> str:
        """File suffix appended to the ``.ko`` name."""
        return self.value

    @classmethod
    def from_path(cls, path: Path) -> "Compression":
        """Infer the compression kind from a module file name."""
        name = Path(path).name
        for kind in (cls.ZSTD, cls.XZ):
            if name.endswith(kind.suffix):
                return kind
        return cls.NONE


def decompress(kind: Compression, src: Path, dst: Path, runner: CommandRunner) -> None:
    """Decompress ``src`` into ``dst``, keeping ``src``.

    Raises:
        CompressionError: If the codec fails
    """
    if kind is Compression.ZSTD:
        result = runner.run(["zstd", "-d", "-q", "-f", src, "-o", dst])
    elif kind is Compression.XZ:
        result = runner.run(["xz", "-d", "-c", src], stdout_path=dst)
    else:
        raise CompressionError(f"{src} is not compressed")

    if not result.ok:
        _discard(dst)
        raise CompressionError(f"Failed to decompress {src}: {result.stderr.strip()}")


def compress(kind: Compression, src: Path, dst: Path, runner: CommandRunner) -> None:
    """Compress ``src`` into ``dst``, keeping ``src``.

    xz output uses CRC32 checks, the only integrity check the kernel's
    in-kernel xz decompressor accepts.

    Raises:
        CompressionError: If the codec fails
    """
    if kind is Compression.ZSTD:
        result = runner.run(["zstd", "-q", "-f", src, "-o", dst])
    elif kind is Compression.XZ:
        result = runner.run(["xz", "-z", "-c", "--check=crc32", src], stdout_path=dst)
    else:
        raise CompressionError(f"No codec for {src}")

    if not result.ok:
        _discard(dst)
        raise CompressionError(f"Failed to compress {src}: {result.stderr.strip()}")


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def stripped_path(path: Path, kind: Compression) -> Path:
    """Sibling path of a compressed module with the codec suffix removed."""
    if kind is Compression.NONE:
        return path
    return path.with_name(path.name[: -len(kind.suffix)])


class DecompressedModule:
    """Context manager exposing a compressed module as a plain file.

    On entry a compressed module is unpacked next to the original; the
    plain path is returned. On exit, whatever happened inside the block,
    the plain file is packed back with the original codec and the
    intermediate is removed. The packed output is staged and then moved
    over the original, so a failed recompression leaves the original
    module as it was.

    Uncompressed modules pass straight through.
    """

    def __init__(self, path: Path, runner: CommandRunner) -> None:
        self.path = Path(path)
        self.kind = Compression.from_path(self.path)
        self.runner = runner
        self.work_path: Optional[Path] = None
        self.recompress_error: Optional[str] = None

    def _intermediate_path(self) -> Path:
        target = stripped_path(self.path, self.kind)
        if target.exists():
            # A plain twin of this module is installed alongside it
            target = target.with_name(f"{target.name}.{time.time_ns()}")
        return target

    def __enter__(self) -> Path:
        if self.kind is Compression.NONE:
            self.work_path = self.path
            return self.path

        target = self._intermediate_path()
        logger.info("Decompressing %s", self.path)
        decompress(self.kind, self.path, target, self.runner)
        self.work_path = target
        return target

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> bool:
        if self.kind is Compression.NONE or self.work_path is None:
            return False

        staging = self.path.with_name(self.path.name + ".new")
        try:
            logger.info("Recompressing %s", self.path)
            compress(self.kind, self.work_path, staging, self.runner)
            os.replace(staging, self.path)
        except (CompressionError, OSError) as e:
            self.recompress_error = str(e)
            logger.error("Recompression of %s failed: %s", self.path, e)
            _discard(staging)
        finally:
            _discard(self.work_path)

        return False
