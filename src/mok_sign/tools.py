"""Resolution of the kernel's sign-file utility."""

import logging
from pathlib import Path
from typing import Optional

from .config import SignerConfig
from .errors import SignToolNotFoundError
from .packages import AptPackageManager

logger = logging.getLogger(__name__)


def headers_package(kernel: str) -> str:
    """Name of the headers package for a kernel release."""
    return f"linux-headers-{kernel}"


class ToolResolver:
    """Locates ``scripts/sign-file`` for the running kernel."""

    def __init__(
        self,
        config: SignerConfig,
        packages: Optional[AptPackageManager] = None,
    ) -> None:
        self.config = config
        self.packages = packages
        self.kernel = config.resolved_kernel()

    def candidates(self) -> list[Path]:
        """Probe order: headers package, then the build and source trees."""
        paths = self.config.paths
        return [
            paths.headers_root / headers_package(self.kernel) / "scripts" / "sign-file",
            paths.modules_root / self.kernel / "build" / "scripts" / "sign-file",
            paths.modules_root / self.kernel / "source" / "scripts" / "sign-file",
        ]

    def find(self) -> Optional[Path]:
        """First existing candidate, without any recovery."""
        for candidate in self.candidates():
            if candidate.is_file():
                return candidate
        return None

    def resolve(self) -> Path:
        """Find sign-file, reinstalling the headers package once if needed.

        Returns:
            Path to the sign-file utility

        Raises:
            SignToolNotFoundError: If it is still missing after recovery
        """
        found = self.find()
        if found:
            logger.info("Found sign-file at %s", found)
            return found

        primary = self.candidates()[0]
        package = headers_package(self.kernel)
        if self.packages is not None:
            logger.warning("sign-file not found, reinstalling %s", package)
            self.packages.install(package, reinstall=True)
            if primary.is_file():
                return primary

        raise SignToolNotFoundError(
            "Could not find the kernel sign-file utility",
            hints=[
                f"Install the kernel headers: apt-get install --reinstall {package}",
                f"Expected location: {primary}",
            ],
        )
