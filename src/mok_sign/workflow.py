"""The end-to-end signing pass.

Steps run once, in order: privilege check, prerequisite packages, Secure
Boot state, driver version, module discovery, key material, sign-file
resolution, signing, DKMS configuration, enrollment request and the re-sign
helper. Fatal conditions raise :class:`~mok_sign.errors.SignerError`;
everything else is reported and the pass continues.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from .config import SignerConfig
from .detect import VersionDetector
from .dkms import DkmsStatus, PersistenceConfigurer
from .enroll import EnrollmentRequester, EnrollmentResult, EnrollmentStatus
from .errors import PrivilegeError
from .keys import KeyManager, KeyMaterial
from .locate import ModuleLocator, ModulePath
from .packages import AptPackageManager
from .runner import CommandRunner
from .signing import SigningOrchestrator, SigningOutcome, SigningReport, SigningStatus
from .tools import ToolResolver, headers_package

logger = logging.getLogger(__name__)


class StatusReporter(Protocol):
    """Receives status-coded progress messages."""

    def info(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LogReporter:
    """StatusReporter that forwards to :mod:`logging`."""

    def info(self, message: str) -> None:
        logger.info(message)

    def success(self, message: str) -> None:
        logger.info(message)

    def warning(self, message: str) -> None:
        logger.warning(message)

    def error(self, message: str) -> None:
        logger.error(message)


@dataclass
class RunSummary:
    """Everything a completed run produced."""

    driver_version: str
    kernel_version: str
    modules: list[ModulePath]
    report: SigningReport
    material: KeyMaterial
    keys_generated: bool
    sign_tool: Path
    dkms_status: DkmsStatus
    enrollment: EnrollmentResult
    helper_path: Path
    secure_boot: Optional[bool] = None
    warnings: list[str] = field(default_factory=list)


def require_root(geteuid: Callable[[], int] = os.geteuid) -> None:
    """Abort unless running as root.

    Raises:
        PrivilegeError: If the effective uid is not 0
    """
    if geteuid() != 0:
        raise PrivilegeError(
            "Please run as root",
            hints=["sudo mok-sign"],
        )


class SigningWorkflow:
    """Runs the full discovery, signing and enrollment pass."""

    def __init__(
        self,
        config: SignerConfig,
        runner: CommandRunner,
        reporter: Optional[StatusReporter] = None,
        confirm_reuse: Optional[Callable[[KeyMaterial], bool]] = None,
        geteuid: Callable[[], int] = os.geteuid,
        config_path: Optional[Path] = None,
    ) -> None:
        """Initialize workflow.

        Args:
            config: Tool configuration
            runner: Command runner for every external tool
            reporter: Receives status messages
            confirm_reuse: Asked whether existing keys should be reused
            geteuid: Effective uid source for the privilege check
            config_path: Configuration file baked into the re-sign helper
        """
        self.config = config
        self.runner = runner
        self.reporter = reporter or LogReporter()
        self.confirm_reuse = confirm_reuse
        self.geteuid = geteuid
        self.config_path = config_path
        self.packages = AptPackageManager(runner)

    def install_prerequisites(self) -> list[str]:
        """Install the codec, kmod and mokutil packages and kernel headers.

        Failures are returned as warnings; a missing headers package only
        matters if sign-file cannot be found later.
        """
        warnings = []
        kernel = self.config.resolved_kernel()

        if not self.packages.available():
            warnings.append("apt is not available, skipping package installation")
            return warnings

        self.packages.update()
        if not self.packages.install(*self.config.signing.prerequisites):
            warnings.append("Could not install all required packages")
        if not self.packages.install(headers_package(kernel)):
            warnings.append(
                "Could not install linux-headers, will try to find sign-file from existing sources"
            )
        return warnings

    def run(self, skip_install: bool = False) -> RunSummary:
        """Execute the pass.

        Args:
            skip_install: Do not call the package manager for prerequisites

        Returns:
            RunSummary of the completed run

        Raises:
            SignerError: On any fatal precondition failure
        """
        out = self.reporter
        config = self.config
        require_root(self.geteuid)

        kernel = config.resolved_kernel()
        warnings: list[str] = []

        if not skip_install:
            out.info("Installing required packages...")
            for warning in self.install_prerequisites():
                out.warning(warning)
                warnings.append(warning)

        enroller = EnrollmentRequester(self.runner, config.keys.enrollment_marker)
        secure_boot = enroller.secure_boot_enabled()
        if secure_boot:
            out.warning("Secure Boot is currently ENABLED; modules will be signed anyway")
        elif secure_boot is False:
            out.success("Secure Boot is currently disabled")
        else:
            out.warning("Could not determine Secure Boot state")

        out.info("Detecting driver version...")
        detector = VersionDetector.from_config(config, self.runner, self.packages)
        version = detector.detect_or_fallback()
        out.info(f"Detected driver version: {version}")
        out.info(f"Kernel version: {kernel}")

        out.info("Locating kernel modules...")
        modules = ModuleLocator.from_config(config).require(config.paths.modules_root)
        out.success(f"Found {len(modules)} kernel module(s)")
        for module in modules:
            out.info(f"  - {module.path}")

        out.info("Preparing Machine Owner Key...")
        keys = KeyManager(config.paths.mok_dir, config.keys).ensure(self.confirm_reuse)
        material = keys.material
        if keys.generated:
            out.success(f"MOK keys generated in {material.directory}")
        else:
            out.success("Using existing MOK keys")

        out.info("Locating sign-file...")
        sign_tool = ToolResolver(config, self.packages).resolve()
        out.success(f"Found sign-file at: {sign_tool}")

        out.info("Signing kernel modules...")
        orchestrator = SigningOrchestrator(
            sign_tool, material, self.runner, config.signing.hash_algorithm
        )
        report = orchestrator.sign_all(modules, self._report_outcome)

        out.info("Configuring DKMS for automatic module signing...")
        persistence = PersistenceConfigurer(config, self.config_path)
        dkms_status = persistence.configure_dkms(material)
        if dkms_status is DkmsStatus.ALREADY_CONFIGURED:
            out.warning("DKMS already configured for signing")
        else:
            out.success(f"DKMS configuration {dkms_status.value}")

        out.info("Enrolling MOK key into system firmware...")
        enrollment = enroller.request(material)
        if enrollment.status is EnrollmentStatus.FAILED:
            out.error(f"Failed to import MOK key: {enrollment.message}")
        elif enrollment.needs_reboot:
            out.success("MOK key import request created")
        else:
            out.warning("MOK key appears to be already enrolled")

        helper_path = persistence.write_resign_helper(material)
        out.success(f"Helper script created at {helper_path}")

        return RunSummary(
            driver_version=version,
            kernel_version=kernel,
            modules=modules,
            report=report,
            material=material,
            keys_generated=keys.generated,
            sign_tool=sign_tool,
            dkms_status=dkms_status,
            enrollment=enrollment,
            helper_path=helper_path,
            secure_boot=secure_boot,
            warnings=warnings,
        )

    def _report_outcome(self, outcome: SigningOutcome) -> None:
        if outcome.signed:
            self.reporter.success(f"Signed {outcome.module.name}")
        elif outcome.status is SigningStatus.SKIPPED:
            self.reporter.warning(f"Skipped {outcome.module.name}: {outcome.message}")
        else:
            self.reporter.error(f"Failed to sign {outcome.module.path}: {outcome.message}")
