"""Pytest configuration and fixtures for mok-sign tests."""

import re
import tempfile
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from mok_sign.compression import Compression
from mok_sign.config import PathsConfig, SignerConfig
from mok_sign.runner import COMMAND_NOT_FOUND, CommandResult

KERNEL = "6.8.0-40-generic"
ARCH = "x86_64"

SIGNATURE = b"~Module signature appended~\n"

# Reversible stand-ins for the real codecs
CODEC_MAGIC = {
    Compression.ZSTD: b"ZSTD:",
    Compression.XZ: b"XZ:",
}


def module_bytes(name: str, version: str = "535.183.01") -> bytes:
    """Fake ELF kernel object carrying a modinfo version field."""
    return b"\x7fELF" + f"\x00name={name}\x00version={version}\x00".encode() + b"\x00" * 64


class SimulatedRunner:
    """Simulated CommandRunner emulating the external tools on disk.

    sign-file appends a signature trailer, zstd/xz wrap and unwrap a magic
    prefix, modinfo reads the version field, and mokutil/apt answer from
    configurable attributes. Every call is recorded.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.available = {"apt-get", "apt-cache", "mokutil", "modinfo", "zstd", "xz"}
        self.sign_failures: set[str] = set()
        self.codec_failures: set[str] = set()
        self.sb_state = "SecureBoot disabled\n"
        self.enrolled = "MokListRT is empty\n"
        self.import_returncode = 0
        self.policy_output = ""
        self.search_output = ""
        self.install_returncode = 0
        self.on_install: Optional[Callable[[list[str]], None]] = None

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.available else None

    def commands(self, program: str) -> list[list[str]]:
        """Recorded invocations of one program."""
        return [c for c in self.calls if Path(c[0]).name == program]

    def run(self, args, *, stdout_path=None, interactive=False, env=None) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        program = Path(argv[0]).name

        if program != "sign-file" and program not in self.available:
            return CommandResult(argv, COMMAND_NOT_FOUND, stderr="not found")

        handler = getattr(self, "_" + program.replace("-", "_"), None)
        if handler is None:
            return CommandResult(argv, 0)
        return handler(argv, stdout_path)

    def _sign_file(self, argv, stdout_path) -> CommandResult:
        target = Path(argv[4])
        if target.name.split(".ko")[0] in self.sign_failures:
            return CommandResult(argv, 2, stderr="sign-file: signing failed")
        if not target.is_file():
            return CommandResult(argv, 2, stderr="sign-file: no such file")
        with open(target, "ab") as f:
            f.write(SIGNATURE)
        return CommandResult(argv, 0)

    def _codec(self, kind, argv, src: Path, dst: Path, unpack: bool) -> CommandResult:
        if src.name in self.codec_failures:
            return CommandResult(argv, 1, stderr="codec failure")
        magic = CODEC_MAGIC[kind]
        data = src.read_bytes()
        if unpack:
            if not data.startswith(magic):
                return CommandResult(argv, 1, stderr="not in compressed format")
            dst.write_bytes(data[len(magic):])
        else:
            dst.write_bytes(magic + data)
        return CommandResult(argv, 0)

    def _zstd(self, argv, stdout_path) -> CommandResult:
        unpack = "-d" in argv
        src = Path(argv[-3])
        dst = Path(argv[-1])
        return self._codec(Compression.ZSTD, argv, src, dst, unpack)

    def _xz(self, argv, stdout_path) -> CommandResult:
        unpack = "-d" in argv
        return self._codec(Compression.XZ, argv, Path(argv[-1]), Path(stdout_path), unpack)

    def _modinfo(self, argv, stdout_path) -> CommandResult:
        data = Path(argv[-1]).read_bytes()
        match = re.search(rb"version=([^\x00]+)", data)
        if not match:
            return CommandResult(argv, 0, stdout="")
        return CommandResult(argv, 0, stdout=match.group(1).decode() + "\n")

    def _mokutil(self, argv, stdout_path) -> CommandResult:
        if "--sb-state" in argv:
            return CommandResult(argv, 0, stdout=self.sb_state)
        if "--list-enrolled" in argv:
            return CommandResult(argv, 0, stdout=self.enrolled)
        if "--import" in argv:
            return CommandResult(argv, self.import_returncode)
        return CommandResult(argv, 1)

    def _apt_get(self, argv, stdout_path) -> CommandResult:
        if "install" in argv:
            if self.on_install:
                self.on_install(argv)
            return CommandResult(argv, self.install_returncode)
        return CommandResult(argv, 0)

    def _apt_cache(self, argv, stdout_path) -> CommandResult:
        if argv[1] == "policy":
            return CommandResult(argv, 0, stdout=self.policy_output)
        if argv[1] == "search":
            return CommandResult(argv, 0, stdout=self.search_output)
        return CommandResult(argv, 1)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir: Path) -> SignerConfig:
    """Configuration rooted in the temporary directory."""
    paths = PathsConfig(
        modules_root=temp_dir / "lib" / "modules",
        dkms_root=temp_dir / "var" / "lib" / "dkms",
        headers_root=temp_dir / "usr" / "src",
        mok_dir=temp_dir / "var" / "lib" / "shim-signed" / "mok",
        dkms_config=temp_dir / "etc" / "dkms" / "framework.conf",
        helper_path=temp_dir / "usr" / "local" / "bin" / "nvidia-secure-boot-resign",
        xorg_log=temp_dir / "var" / "log" / "Xorg.0.log",
    )
    return SignerConfig(paths=paths, kernel_version=KERNEL, arch=ARCH)


@pytest.fixture
def runner() -> SimulatedRunner:
    """Simulated command runner."""
    return SimulatedRunner()


@pytest.fixture
def sign_tool(config: SignerConfig) -> Path:
    """sign-file installed with the kernel headers."""
    path = config.paths.headers_root / f"linux-headers-{KERNEL}" / "scripts" / "sign-file"
    path.parent.mkdir(parents=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def make_module(config: SignerConfig) -> Callable[..., Path]:
    """Factory placing a (simulated-compressed) module file on disk."""

    def _make(
        name: str,
        compression: Compression = Compression.NONE,
        subdir: str = "updates/dkms",
        version: str = "535.183.01",
        directory: Optional[Path] = None,
    ) -> Path:
        base = directory or config.paths.modules_root / KERNEL / subdir
        base.mkdir(parents=True, exist_ok=True)
        path = base / f"{name}.ko{compression.suffix}"
        data = module_bytes(name, version)
        if compression is not Compression.NONE:
            data = CODEC_MAGIC[compression] + data
        path.write_bytes(data)
        return path

    return _make
