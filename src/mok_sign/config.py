"""Configuration management for the MOK signing tool."""

import json
import platform
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel


class PathsConfig(BaseModel):
    """Filesystem locations read and written by the tool."""

    modules_root: Path = Path("/lib/modules")
    dkms_root: Path = Path("/var/lib/dkms")
    headers_root: Path = Path("/usr/src")
    mok_dir: Path = Path("/var/lib/shim-signed/mok")
    dkms_config: Path = Path("/etc/dkms/framework.conf")
    helper_path: Path = Path("/usr/local/bin/nvidia-secure-boot-resign")
    xorg_log: Path = Path("/var/log/Xorg.0.log")


class DriverConfig(BaseModel):
    """Driver whose modules are signed."""

    name: str = "nvidia"
    package: str = "nvidia-driver"
    module_names: list[str] = [
        "nvidia",
        "nvidia-modeset",
        "nvidia-drm",
        "nvidia-uvm",
        "nvidia-peermem",
    ]
    version_probe_names: list[str] = ["nvidia", "nvidia-modeset"]
    search_subdirs: list[str] = [
        "updates/dkms",
        "kernel/drivers/video",
        "extra",
        "updates",
    ]
    log_marker: str = "NVIDIA"
    resign_pattern: str = "nvidia*.ko*"


class KeyConfig(BaseModel):
    """Machine Owner Key generation settings."""

    common_name: str = "NVIDIA Secure Boot MOK"
    key_size: int = 2048
    valid_days: int = 36500
    enrollment_marker: str = "NVIDIA"
    extended_key_usage: list[str] = [
        "1.3.6.1.5.5.7.3.3",  # codeSigning
        "1.3.6.1.4.1.311.10.3.6",
        "1.3.6.1.4.1.2312.16.1.2",  # kernel module signing
    ]


class SigningConfig(BaseModel):
    """Module signing behaviour."""

    hash_algorithm: str = "sha256"
    strict: bool = False
    prerequisites: list[str] = ["mokutil", "kmod", "zstd", "xz-utils"]


class SignerConfig(BaseModel):
    """Complete tool configuration."""

    paths: PathsConfig = PathsConfig()
    driver: DriverConfig = DriverConfig()
    keys: KeyConfig = KeyConfig()
    signing: SigningConfig = SigningConfig()

    # Captured from the running system when left unset
    kernel_version: Optional[str] = None
    arch: Optional[str] = None

    def resolved_kernel(self) -> str:
        """Kernel release the run operates on."""
        if not self.kernel_version:
            self.kernel_version = platform.release()
        return self.kernel_version

    def resolved_arch(self) -> str:
        """Machine architecture used in DKMS build paths."""
        if not self.arch:
            self.arch = platform.machine()
        return self.arch


def load_config(config_path: Path) -> SignerConfig:
    """Load configuration from file.

    Supports YAML and JSON formats.

    Args:
        config_path: Path to configuration file

    Returns:
        SignerConfig object
    """
    with open(config_path) as f:
        if config_path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif config_path.suffix == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")

    return SignerConfig(**(data or {}))


def save_config(config: SignerConfig, config_path: Path) -> None:
    """Save configuration to file.

    Args:
        config: Configuration to save
        config_path: Output path
    """
    data = config.model_dump(mode="json")

    with open(config_path, "w") as f:
        if config_path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        elif config_path.suffix == ".json":
            json.dump(data, f, indent=2)
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")


def generate_default_config(format: str = "yaml") -> str:
    """Generate default configuration content.

    Args:
        format: Output format ("yaml" or "json")

    Returns:
        Configuration file content as string
    """
    data = SignerConfig().model_dump(mode="json")

    if format == "yaml":
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif format == "json":
        return json.dumps(data, indent=2)
    else:
        raise ValueError(f"Unsupported format: {format}")
