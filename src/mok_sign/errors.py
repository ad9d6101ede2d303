"""Error types for the MOK signing workflow.

Fatal errors abort the run with exit code 1. Each carries remediation
hints (suggested manual commands) that the CLI prints under the message.
"""

from typing import Optional


class SignerError(RuntimeError):
    """Base class for fatal workflow errors."""

    def __init__(self, message: str, hints: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.hints = list(hints or [])


class PrivilegeError(SignerError):
    """The tool was started without root privileges."""


class VersionNotDetectedError(SignerError):
    """No detection method produced a driver version."""


class NoModulesFoundError(SignerError):
    """Module discovery returned an empty set."""


class SignToolNotFoundError(SignerError):
    """The kernel sign-file utility could not be located or installed."""


class CompressionError(RuntimeError):
    """A codec failed to decompress or recompress a module.

    Not fatal: the signing orchestrator records it against the module.
    """
