"""Driver version detection.

The installed driver's version is found by an ordered chain of probes.
Each probe either returns a version string or None; the detector stops at
the first probe that answers. A probe failing for an expected reason
(missing directory, missing tool, empty output) simply yields None.
"""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional, Protocol, Sequence, runtime_checkable

from .compression import Compression, decompress
from .config import SignerConfig
from .errors import CompressionError, VersionNotDetectedError
from .packages import AptPackageManager
from .runner import CommandRunner
from .versions import max_version

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"

_VERSION_RE = re.compile(r"\d+\.\d+(?:\.\d+)*")
_LOG_TIMESTAMP_RE = re.compile(r"^\s*\[[^\]]*\]")


@runtime_checkable
class VersionProbe(Protocol):
    """Protocol for a single version detection method."""

    name: str

    def probe(self) -> Optional[str]:
        """Return a version string, or None if this method cannot tell."""
        ...


def dkms_versions(dkms_root: Path, driver: str) -> list[str]:
    """Version-named directories in the DKMS tree of a driver.

    DKMS also keeps ``kernel-*`` symlinks beside the version directories;
    only names starting with a digit are versions.
    """
    tree = dkms_root / driver
    try:
        entries = list(tree.iterdir())
    except OSError:
        return []
    return [e.name for e in entries if e.is_dir() and e.name[:1].isdigit()]


def latest_dkms_version(dkms_root: Path, driver: str) -> Optional[str]:
    """Greatest version registered with DKMS for a driver."""
    return max_version(dkms_versions(dkms_root, driver))


class DkmsTreeProbe:
    """Reads the DKMS module-tracking directory."""

    name = "dkms"

    def __init__(self, dkms_root: Path, driver: str) -> None:
        self.dkms_root = dkms_root
        self.driver = driver

    def probe(self) -> Optional[str]:
        return latest_dkms_version(self.dkms_root, self.driver)


class ModinfoProbe:
    """Queries the version field embedded in an installed module."""

    name = "modinfo"

    def __init__(
        self,
        modules_root: Path,
        module_names: Sequence[str],
        runner: CommandRunner,
        scratch_prefix: str = "module_temp_",
    ) -> None:
        self.modules_root = modules_root
        self.module_names = list(module_names)
        self.runner = runner
        self.scratch_prefix = scratch_prefix

    def find_module(self) -> Optional[Path]:
        """First installed module matching one of the probe names."""
        wanted = {
            f"{name}.ko{kind.suffix}"
            for name in self.module_names
            for kind in Compression
        }
        if not self.modules_root.is_dir():
            return None

        for dirpath, dirnames, filenames in os.walk(self.modules_root):
            dirnames.sort()
            for filename in sorted(filenames):
                if filename in wanted:
                    return Path(dirpath) / filename
        return None

    def probe(self) -> Optional[str]:
        module = self.find_module()
        if module is None:
            return None

        kind = Compression.from_path(module)
        if kind is Compression.NONE:
            return self._query(module)

        fd, scratch_name = tempfile.mkstemp(prefix=self.scratch_prefix, suffix=".ko")
        os.close(fd)
        scratch = Path(scratch_name)
        try:
            decompress(kind, module, scratch, self.runner)
            return self._query(scratch)
        except CompressionError as e:
            logger.debug("modinfo probe: %s", e)
            return None
        finally:
            scratch.unlink(missing_ok=True)

    def _query(self, module: Path) -> Optional[str]:
        result = self.runner.run(["modinfo", "-F", "version", module])
        if not result.ok:
            return None
        lines = result.stdout.strip().splitlines()
        return lines[0].strip() if lines and lines[0].strip() else None


class PackageCandidateProbe:
    """Asks the package index for the driver package's candidate version."""

    name = "apt-policy"

    def __init__(self, packages: AptPackageManager, package: str) -> None:
        self.packages = packages
        self.package = package

    def probe(self) -> Optional[str]:
        return self.packages.candidate_version(self.package)


class XorgLogProbe:
    """Scans the X server log for the driver's version banner."""

    name = "xorg-log"

    def __init__(self, log_path: Path, marker: str) -> None:
        self.log_path = log_path
        self.marker = marker

    def probe(self) -> Optional[str]:
        try:
            text = self.log_path.read_text(errors="replace")
        except OSError:
            return None

        for line in text.splitlines():
            if self.marker in line and "Driver" in line:
                match = _VERSION_RE.search(_LOG_TIMESTAMP_RE.sub("", line))
                if match:
                    return match.group(0)
        return None


class VersionDetector:
    """Determines the installed driver version through a probe chain."""

    def __init__(
        self,
        probes: Sequence[VersionProbe],
        packages: Optional[AptPackageManager] = None,
        package: Optional[str] = None,
    ) -> None:
        """Initialize detector.

        Args:
            probes: Probes in the order they are tried
            packages: Package manager used by the search fallback
            package: Package name for the search fallback
        """
        self.probes = list(probes)
        self.packages = packages
        self.package = package

    @classmethod
    def from_config(
        cls,
        config: SignerConfig,
        runner: CommandRunner,
        packages: Optional[AptPackageManager] = None,
    ) -> "VersionDetector":
        """Build the standard four-probe chain."""
        packages = packages or AptPackageManager(runner)
        driver = config.driver
        probes = [
            DkmsTreeProbe(config.paths.dkms_root, driver.name),
            ModinfoProbe(
                config.paths.modules_root,
                driver.version_probe_names,
                runner,
                scratch_prefix=f"{driver.name}_temp_",
            ),
            PackageCandidateProbe(packages, driver.package),
            XorgLogProbe(config.paths.xorg_log, driver.log_marker),
        ]
        return cls(probes, packages, driver.package)

    def detect(self) -> str:
        """Run the probes in order.

        Returns:
            The first version found, or UNKNOWN_VERSION
        """
        for probe in self.probes:
            version = probe.probe()
            if version:
                logger.info("Driver version %s (via %s)", version, probe.name)
                return version
            logger.debug("Version probe %s found nothing", probe.name)
        return UNKNOWN_VERSION

    def detect_or_fallback(self) -> str:
        """Detect the version, falling back to a package index search.

        Raises:
            VersionNotDetectedError: If every method fails
        """
        version = self.detect()
        if version != UNKNOWN_VERSION:
            return version

        if self.packages is not None and self.package:
            logger.info("Searching package index for %s", self.package)
            found = self.packages.search_versions(self.package)
            if found:
                return found

        raise VersionNotDetectedError(
            "Could not detect the driver version",
            hints=[
                "Check the installed driver packages: dpkg -l | grep nvidia",
                "Make sure the driver is installed before signing its modules",
            ],
        )
