"""Persistence of the signing setup.

Two things outlive a run: the DKMS framework configuration, which makes
DKMS sign every module it rebuilds with the MOK, and a small re-sign helper
for signing the driver's modules again after a driver update.
"""

import logging
import re
import shlex
import sys
from enum import Enum
from pathlib import Path
from typing import Optional

from .compression import Compression
from .config import SignerConfig
from .errors import NoModulesFoundError, SignToolNotFoundError
from .keys import KeyMaterial
from .locate import ModulePath
from .runner import CommandRunner
from .signing import SigningOrchestrator, SigningReport
from .tools import ToolResolver

logger = logging.getLogger(__name__)

SIGNING_KEY_MARKER = "mok_signing_key"

# Stock framework.conf ships the assignment commented out
_ACTIVE_SIGNING_KEY = re.compile(rf"^\s*{SIGNING_KEY_MARKER}\s*=", re.MULTILINE)

MODULE_SUFFIXES = tuple(f".ko{kind.suffix}" for kind in Compression)


class DkmsStatus(Enum):
    """What configure_dkms did."""

    CREATED = "created"
    UPDATED = "updated"
    ALREADY_CONFIGURED = "already_configured"


def signing_block(material: KeyMaterial) -> str:
    """The two DKMS assignments pointing at the key material."""
    return (
        f'{SIGNING_KEY_MARKER}="{material.private_key}"\n'
        f'mok_certificate="{material.der_certificate}"\n'
    )


class PersistenceConfigurer:
    """Writes the DKMS signing config and the re-sign helper."""

    def __init__(self, config: SignerConfig, config_path: Optional[Path] = None) -> None:
        """Initialize configurer.

        Args:
            config: Tool configuration
            config_path: Configuration file the helper passes back to resign
        """
        self.config = config
        self.config_path = config_path

    def configure_dkms(self, material: KeyMaterial) -> DkmsStatus:
        """Point DKMS at the signing key, at most once.

        The config file (and its directory) is created when missing. An
        existing file is appended to unless it already sets the signing key.

        Args:
            material: Key material to reference

        Returns:
            DkmsStatus describing the change
        """
        path = self.config.paths.dkms_config

        if path.is_file():
            content = path.read_text()
            if _ACTIVE_SIGNING_KEY.search(content):
                logger.info("DKMS already configured for signing in %s", path)
                return DkmsStatus.ALREADY_CONFIGURED

            separator = "" if not content or content.endswith("\n") else "\n"
            with open(path, "a") as f:
                f.write(separator + "\n# MOK signing configuration for Secure Boot\n")
                f.write(signing_block(material))
            logger.info("Updated DKMS configuration %s", path)
            return DkmsStatus.UPDATED

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            f.write("# DKMS configuration for automatic module signing\n")
            f.write(signing_block(material))
        logger.info("Created DKMS configuration %s", path)
        return DkmsStatus.CREATED

    def helper_script(self, material: KeyMaterial) -> str:
        """Content of the re-sign helper."""
        args = [sys.executable, "-m", "mok_sign.cli"]
        if self.config_path is not None:
            args.extend(["--config", str(Path(self.config_path).resolve())])
        args.extend([
            "resign",
            "--key",
            str(material.private_key),
            "--cert",
            str(material.der_certificate),
            "--pattern",
            self.config.driver.resign_pattern,
        ])
        return (
            "#!/bin/sh\n"
            f"# Re-sign {self.config.driver.name} kernel modules after driver updates\n"
            f"exec {' '.join(shlex.quote(a) for a in args)} \"$@\"\n"
        )

    def write_resign_helper(self, material: KeyMaterial) -> Path:
        """Install the executable re-sign helper.

        Returns:
            Path of the helper
        """
        path = self.config.paths.helper_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.helper_script(material))
        path.chmod(0o755)
        logger.info("Wrote re-sign helper %s", path)
        return path


def find_resign_targets(modules_dir: Path, pattern: str) -> list[ModulePath]:
    """Modules below ``modules_dir`` whose file name matches ``pattern``.

    Staging files and intermediates left by an interrupted run match a
    broad glob too; only real module suffixes are kept.
    """
    if not modules_dir.is_dir():
        return []
    found = {
        str(p): ModulePath.from_path(p)
        for p in modules_dir.rglob(pattern)
        if p.is_file() and p.name.endswith(MODULE_SUFFIXES)
    }
    return sorted(found.values())


def resign(
    config: SignerConfig,
    material: KeyMaterial,
    runner: CommandRunner,
    pattern: Optional[str] = None,
) -> SigningReport:
    """Sign the driver's modules again with existing key material.

    A reduced pass: no version detection, no key generation and no package
    installs. Modules are matched by glob under the running kernel's module
    directory, and sign-file is looked up in the headers and build trees only.

    Raises:
        SignToolNotFoundError: If sign-file is missing
        NoModulesFoundError: If no module matches
    """
    kernel = config.resolved_kernel()
    pattern = pattern or config.driver.resign_pattern

    sign_tool = next(
        (c for c in ToolResolver(config).candidates()[:2] if c.is_file()),
        None,
    )
    if sign_tool is None:
        raise SignToolNotFoundError(
            "sign-file script not found",
            hints=[f"apt-get install linux-headers-{kernel}"],
        )

    modules_dir = config.paths.modules_root / kernel
    modules = find_resign_targets(modules_dir, pattern)
    if not modules:
        raise NoModulesFoundError(
            f"No modules matching {pattern} in {modules_dir}",
            hints=[f"find {modules_dir} -name '{pattern}'"],
        )

    orchestrator = SigningOrchestrator(
        sign_tool, material, runner, config.signing.hash_algorithm
    )
    return orchestrator.sign_all(modules)
