"""Secure Boot kernel module signing tool.

This package signs out-of-tree kernel modules so they load under UEFI
Secure Boot, including:
- Driver version and kernel module discovery
- Machine Owner Key (MOK) generation
- In-place module signing with the kernel's sign-file utility
- DKMS configuration for signing future rebuilds
- MOK enrollment requests through mokutil
"""

__version__ = "0.1.0"

from .config import SignerConfig, load_config
from .keys import KeyManager, KeyMaterial
from .locate import ModuleLocator, ModulePath
from .signing import SigningOrchestrator, SigningOutcome, SigningReport, SigningStatus
from .workflow import RunSummary, SigningWorkflow

__all__ = [
    "SignerConfig",
    "load_config",
    "KeyManager",
    "KeyMaterial",
    "ModuleLocator",
    "ModulePath",
    "SigningOrchestrator",
    "SigningOutcome",
    "SigningReport",
    "SigningStatus",
    "RunSummary",
    "SigningWorkflow",
]
