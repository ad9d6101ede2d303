"""MOK enrollment through shim's mokutil."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .keys import KeyMaterial
from .runner import CommandRunner

logger = logging.getLogger(__name__)

# Operator steps in MOK Manager after a successful import
POST_REBOOT_STEPS = [
    "Select 'Enroll MOK'",
    "Select 'Continue'",
    "Select 'Yes' to enroll the key",
    "Enter the password you just set",
    "Select 'Reboot'",
]


class EnrollmentStatus(Enum):
    """Result of an enrollment request."""

    ALREADY_ENROLLED = "already_enrolled"
    REQUESTED = "requested"
    FAILED = "failed"


@dataclass
class EnrollmentResult:
    """Outcome of :meth:`EnrollmentRequester.request`."""

    status: EnrollmentStatus
    message: str = ""

    @property
    def needs_reboot(self) -> bool:
        return self.status is EnrollmentStatus.REQUESTED


class EnrollmentRequester:
    """Queues the MOK certificate for enrollment at next boot."""

    def __init__(self, runner: CommandRunner, marker: str = "NVIDIA") -> None:
        """Initialize requester.

        Args:
            runner: Command runner
            marker: Substring identifying our key in the enrolled-key listing
        """
        self.runner = runner
        self.marker = marker

    def secure_boot_enabled(self) -> Optional[bool]:
        """Secure Boot state from ``mokutil --sb-state``, None if unknown."""
        result = self.runner.run(["mokutil", "--sb-state"])
        output = result.stdout + result.stderr
        if "SecureBoot enabled" in output:
            return True
        if "SecureBoot disabled" in output:
            return False
        return None

    def is_enrolled(self, material: KeyMaterial) -> bool:
        """Check the enrolled-key listing for our key.

        Matches the configured marker or the certificate's SHA-1
        fingerprint. This is a heuristic; any enrolled key whose subject
        contains the marker counts.
        """
        result = self.runner.run(["mokutil", "--list-enrolled"])
        if not result.ok:
            return False

        listing = result.stdout
        if self.marker and self.marker in listing:
            return True

        try:
            fingerprint = material.fingerprint()
        except OSError:
            return False
        return fingerprint.lower() in listing.lower()

    def request(self, material: KeyMaterial) -> EnrollmentResult:
        """Import the DER certificate unless it is already enrolled.

        ``mokutil --import`` asks the operator for a one-time password on the
        terminal; the key is enrolled by MOK Manager on the next boot.

        Args:
            material: Key material whose certificate is imported

        Returns:
            EnrollmentResult
        """
        if self.is_enrolled(material):
            logger.info("MOK key appears to be already enrolled")
            return EnrollmentResult(EnrollmentStatus.ALREADY_ENROLLED)

        logger.info("Importing %s", material.der_certificate)
        result = self.runner.run(
            ["mokutil", "--import", material.der_certificate],
            interactive=True,
        )
        if result.ok:
            return EnrollmentResult(EnrollmentStatus.REQUESTED, "MOK key import request created")

        logger.error("mokutil --import failed with status %d", result.returncode)
        return EnrollmentResult(
            EnrollmentStatus.FAILED,
            result.stderr.strip() or f"mokutil exited with status {result.returncode}",
        )
