"""Package manager queries and installs (apt)."""

import logging
import re
from typing import Optional

from .runner import CommandRunner
from .versions import max_version

logger = logging.getLogger(__name__)

NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class AptPackageManager:
    """Thin wrapper over apt-get and apt-cache."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def available(self) -> bool:
        """Check that apt tooling is installed."""
        return bool(self.runner.which("apt-get") and self.runner.which("apt-cache"))

    def update(self) -> bool:
        """Refresh the package index."""
        return self.runner.run(["apt-get", "update", "-qq"]).ok

    def install(self, *packages: str, reinstall: bool = False) -> bool:
        """Install packages non-interactively.

        Args:
            packages: Package names
            reinstall: Pass --reinstall to apt-get

        Returns:
            True if apt-get exited successfully
        """
        cmd = ["apt-get", "install", "-y"]
        if reinstall:
            cmd.append("--reinstall")
        cmd.extend(packages)

        result = self.runner.run(cmd, env=NONINTERACTIVE_ENV)
        if not result.ok:
            logger.warning("apt-get install %s failed: %s", " ".join(packages), result.stderr.strip())
        return result.ok

    def candidate_version(self, package: str) -> Optional[str]:
        """Candidate version of a package, without the Debian revision.

        Args:
            package: Package name

        Returns:
            Upstream version string, or None when apt has no candidate
        """
        result = self.runner.run(["apt-cache", "policy", package])
        if not result.ok:
            return None

        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith("Candidate:"):
                candidate = line.split(":", 1)[1].strip()
                if not candidate or candidate == "(none)":
                    return None
                return candidate.split("-", 1)[0] or None
        return None

    def search_versions(self, package: str) -> Optional[str]:
        """Find the newest versioned variant of a package in the index.

        ``apt-cache search nvidia-driver`` lists names such as
        ``nvidia-driver-535``; the greatest numeric suffix is returned.
        """
        result = self.runner.run(["apt-cache", "search", package])
        if not result.ok:
            return None

        pattern = re.compile(rf"^{re.escape(package)}-(\d+(?:\.\d+)*)$")
        found = []
        for line in result.stdout.splitlines():
            name = line.split(" ", 1)[0].strip()
            match = pattern.match(name)
            if match:
                found.append(match.group(1))

        return max_version(found)
