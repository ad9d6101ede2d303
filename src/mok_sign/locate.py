"""Kernel module discovery."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from .compression import Compression
from .config import SignerConfig
from .detect import latest_dkms_version
from .errors import NoModulesFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ModulePath:
    """A kernel module file and its compression kind.

    Ordering and identity follow the path string.
    """

    sort_key: str = field(init=False, repr=False)
    path: Path = field(compare=False)
    compression: Compression = field(compare=False, default=Compression.NONE)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sort_key", str(self.path))

    @classmethod
    def from_path(cls, path: Path) -> "ModulePath":
        """Create a ModulePath, inferring compression from the name."""
        path = Path(path)
        return cls(path=path, compression=Compression.from_path(path))

    @property
    def name(self) -> str:
        return self.path.name


class ModuleLocator:
    """Finds a driver's module files in the standard module directories.

    The search space is the cross product of the search directories, the
    module base names and the supported suffixes (``.ko``, ``.ko.zst``,
    ``.ko.xz``). Only existing regular files are returned.
    """

    def __init__(
        self,
        directories: Sequence[Path],
        module_names: Sequence[str],
    ) -> None:
        """Initialize locator.

        Args:
            directories: Directories to probe
            module_names: Module base names without suffix
        """
        self.directories = list(directories)
        self.module_names = list(module_names)

    @classmethod
    def from_config(cls, config: SignerConfig) -> "ModuleLocator":
        """Build the locator for the running kernel.

        Covers the per-kernel module subdirectories plus the DKMS build
        output of the newest registered driver version.
        """
        kernel = config.resolved_kernel()
        paths = config.paths
        driver = config.driver

        directories = [paths.modules_root / kernel / sub for sub in driver.search_subdirs]

        dkms_version = latest_dkms_version(paths.dkms_root, driver.name)
        if dkms_version:
            directories.append(
                paths.dkms_root
                / driver.name
                / dkms_version
                / kernel
                / config.resolved_arch()
                / "module"
            )

        return cls(directories, driver.module_names)

    def locate(self) -> list[ModulePath]:
        """Return existing module files, deduplicated and sorted by path."""
        found: dict[str, ModulePath] = {}
        for directory in self.directories:
            if not directory.is_dir():
                logger.debug("Skipping missing directory %s", directory)
                continue
            for name in self.module_names:
                for kind in Compression:
                    candidate = directory / f"{name}.ko{kind.suffix}"
                    if candidate.is_file():
                        found.setdefault(str(candidate), ModulePath(candidate, kind))

        return sorted(found.values())

    def require(self, hint_root: Optional[Path] = None) -> list[ModulePath]:
        """Like :meth:`locate`, but an empty result is fatal.

        Raises:
            NoModulesFoundError: If no module file exists
        """
        modules = self.locate()
        if modules:
            return modules

        root = hint_root or Path("/lib/modules")
        pattern = f"{self.module_names[0]}*.ko*" if self.module_names else "*.ko*"
        raise NoModulesFoundError(
            "No kernel modules found",
            hints=[
                "The driver may not be installed",
                "The modules may be in an unexpected location",
                f"Try running: find {root} -name '{pattern}'",
            ],
        )
