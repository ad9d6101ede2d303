"""Kernel module signing."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from .compression import DecompressedModule
from .errors import CompressionError
from .keys import KeyMaterial
from .locate import ModulePath
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class SigningStatus(Enum):
    """Per-module signing result."""

    SIGNED = "signed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SigningOutcome:
    """Result of signing one module."""

    module: ModulePath
    status: SigningStatus
    message: str = ""
    recompressed: bool = True

    @property
    def signed(self) -> bool:
        return self.status is SigningStatus.SIGNED


@dataclass
class SigningReport:
    """Outcomes of a signing pass."""

    outcomes: list[SigningOutcome] = field(default_factory=list)

    def _count(self, status: SigningStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def signed(self) -> int:
        return self._count(SigningStatus.SIGNED)

    @property
    def failed(self) -> int:
        return self._count(SigningStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SigningStatus.SKIPPED)

    @property
    def all_signed(self) -> bool:
        return self.signed == self.total


class SigningOrchestrator:
    """Signs modules in place with the kernel's sign-file utility.

    A module that fails to sign is recorded and the pass continues with the
    next one. Compressed modules are restored to their original path and
    codec whether or not signing succeeded.
    """

    def __init__(
        self,
        sign_tool: Path,
        material: KeyMaterial,
        runner: CommandRunner,
        hash_algorithm: str = "sha256",
    ) -> None:
        """Initialize orchestrator.

        Args:
            sign_tool: Path to scripts/sign-file
            material: Signing key and certificate
            runner: Command runner
            hash_algorithm: Digest passed to sign-file
        """
        self.sign_tool = sign_tool
        self.material = material
        self.runner = runner
        self.hash_algorithm = hash_algorithm

    def sign_file(self, path: Path) -> tuple[bool, str]:
        """Run sign-file on an uncompressed module."""
        result = self.runner.run(
            [
                self.sign_tool,
                self.hash_algorithm,
                self.material.private_key,
                self.material.der_certificate,
                path,
            ]
        )
        return result.ok, result.stderr.strip()

    def sign_module(self, module: ModulePath) -> SigningOutcome:
        """Sign a single module, handling compression."""
        if not module.path.is_file():
            logger.warning("Skipping %s: file disappeared", module.path)
            return SigningOutcome(module, SigningStatus.SKIPPED, "file not found")

        guard = DecompressedModule(module.path, self.runner)
        try:
            with guard as plain:
                logger.info("Signing %s", plain.name)
                ok, error = self.sign_file(plain)
        except CompressionError as e:
            logger.error("%s", e)
            return SigningOutcome(module, SigningStatus.FAILED, str(e), recompressed=False)

        if guard.recompress_error:
            return SigningOutcome(
                module,
                SigningStatus.FAILED,
                guard.recompress_error,
                recompressed=False,
            )

        if not ok:
            logger.error("Failed to sign %s: %s", module.path, error)
            return SigningOutcome(module, SigningStatus.FAILED, error or "sign-file failed")

        return SigningOutcome(module, SigningStatus.SIGNED)

    def sign_all(
        self,
        modules: Iterable[ModulePath],
        on_outcome: Optional[Callable[[SigningOutcome], None]] = None,
    ) -> SigningReport:
        """Sign every module in order.

        Args:
            modules: Modules to sign
            on_outcome: Called after each module, for progress display

        Returns:
            SigningReport with one outcome per module
        """
        report = SigningReport()
        for module in modules:
            outcome = self.sign_module(module)
            report.outcomes.append(outcome)
            if on_outcome:
                on_outcome(outcome)
        return report
