"""Tests for the mok-sign command line."""

import json

import pytest
import yaml
from click.testing import CliRunner

from conftest import SIGNATURE

from mok_sign.cli import main
from mok_sign.compression import Compression
from mok_sign.config import save_config
from mok_sign.keys import KeyManager


@pytest.fixture
def cli():
    return CliRunner()


@pytest.fixture
def modules(make_module):
    """One plain, one zstd and one xz module."""
    return [
        make_module("nvidia"),
        make_module("nvidia-modeset", Compression.ZSTD),
        make_module("nvidia-drm", Compression.XZ),
    ]


def obj(config, runner, uid=0):
    return {"config": config, "runner": runner, "geteuid": lambda: uid}


class TestRun:
    """Tests for the full signing pass."""

    def test_end_to_end(self, cli, config, runner, sign_tool, modules):
        """Test every module is signed and the setup persisted."""
        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert "3/3" in result.output
        assert "Detected driver version: 535.183.01" in result.output
        for path in modules:
            assert path.read_bytes().endswith(SIGNATURE)

        assert config.paths.mok_dir.joinpath("MOK.der").is_file()
        assert "mok_signing_key" in config.paths.dkms_config.read_text()
        assert config.paths.helper_path.is_file()
        assert runner.commands("apt-get") == []
        assert "MOK Manager" in result.output

    def test_default_command_installs_prerequisites(self, cli, config, runner, sign_tool, modules):
        """Test running without a subcommand performs the full pass."""
        result = cli.invoke(main, [], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        installs = [c for c in runner.commands("apt-get") if "install" in c]
        assert any("mokutil" in c for c in installs)
        assert any(f"linux-headers-{config.kernel_version}" in c for c in installs)

    def test_partial_failure_lenient(self, cli, config, runner, sign_tool, modules):
        """Test a failed module is reported but the run succeeds."""
        runner.sign_failures.add("nvidia-modeset")

        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert "2/3" in result.output
        assert "1 module(s) failed to sign" in result.output

    def test_partial_failure_strict(self, cli, config, runner, sign_tool, modules):
        """Test strict mode exits non-zero when a module is unsigned."""
        runner.sign_failures.add("nvidia-modeset")

        result = cli.invoke(
            main, ["run", "--skip-install", "--strict"], obj=obj(config, runner)
        )

        assert result.exit_code == 1
        assert config.paths.helper_path.is_file()

    def test_strict_from_config_file(self, cli, config, runner, sign_tool, modules, temp_dir):
        """Test strict mode can be enabled in the configuration file."""
        config.signing.strict = True
        path = temp_dir / "mok-sign.yaml"
        save_config(config, path)
        runner.sign_failures.add("nvidia")

        result = cli.invoke(
            main, ["-c", str(path), "run", "--skip-install"], obj={"runner": runner, "geteuid": lambda: 0}
        )

        assert result.exit_code == 1
        helper = config.paths.helper_path.read_text()
        assert f"--config {path.resolve()} resign" in helper

    def test_requires_root(self, cli, config, runner, sign_tool, modules):
        """Test non-root invocation aborts before touching anything."""
        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner, uid=1000))

        assert result.exit_code == 1
        assert "Please run as root" in result.output
        assert runner.calls == []
        assert not config.paths.mok_dir.exists()

    def test_no_modules(self, cli, config, runner, sign_tool):
        """Test missing modules abort with a search hint."""
        (config.paths.dkms_root / "nvidia" / "535.183.01").mkdir(parents=True)

        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner))

        assert result.exit_code == 1
        assert "No kernel modules found" in result.output
        assert "find" in result.output

    def test_version_undetectable(self, cli, config, runner, sign_tool):
        """Test an unknown driver version aborts with a package hint."""
        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner))

        assert result.exit_code == 1
        assert "Could not detect the driver version" in result.output
        assert "dpkg -l" in result.output
        assert not config.paths.mok_dir.exists()

    def test_sign_tool_unresolvable(self, cli, config, runner, modules):
        """Test a missing sign-file aborts after one headers reinstall."""
        originals = [p.read_bytes() for p in modules]

        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner))

        assert result.exit_code == 1
        assert "Could not find the kernel sign-file utility" in result.output
        installs = [c for c in runner.commands("apt-get") if "--reinstall" in c]
        assert len(installs) == 1
        assert runner.commands("sign-file") == []
        assert [p.read_bytes() for p in modules] == originals
        assert not config.paths.dkms_config.exists()

    def test_summary_details(self, cli, config, runner, sign_tool, modules):
        """Test the summary shows Secure Boot state, sign-file and setup warnings."""
        runner.sb_state = "SecureBoot enabled\n"
        runner.available -= {"apt-get", "apt-cache"}

        result = cli.invoke(main, ["run"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert "Setup warnings:" in result.output
        assert "apt is not available" in result.output
        summary = result.output.split("Summary", 1)[1]
        assert "enabled" in summary
        assert "sign-file" in summary

    def test_reuse_prompt_decline(self, cli, config, runner, sign_tool, modules):
        """Test declining the reuse prompt regenerates the keys."""
        material = KeyManager(config.paths.mok_dir, config.keys).generate()
        before = material.der_certificate.read_bytes()

        result = cli.invoke(
            main, ["run", "--skip-install"], obj=obj(config, runner), input="n\n"
        )

        assert result.exit_code == 0, result.output
        assert "Do you want to use existing keys?" in result.output
        assert material.der_certificate.read_bytes() != before

    def test_reuse_prompt_default(self, cli, config, runner, sign_tool, modules):
        """Test the reuse prompt defaults to keeping the keys."""
        material = KeyManager(config.paths.mok_dir, config.keys).generate()
        before = material.der_certificate.read_bytes()

        result = cli.invoke(
            main, ["run", "--skip-install"], obj=obj(config, runner), input="\n"
        )

        assert result.exit_code == 0, result.output
        assert material.der_certificate.read_bytes() == before

    def test_already_enrolled(self, cli, config, runner, sign_tool, modules):
        """Test no import is attempted for an enrolled key."""
        runner.enrolled = "Subject: CN=NVIDIA Secure Boot MOK\n"

        result = cli.invoke(main, ["run", "--skip-install"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert not any("--import" in c for c in runner.calls)
        assert "already enrolled" in result.output


class TestResign:
    """Tests for the resign command."""

    def test_resign(self, cli, config, runner, sign_tool, modules):
        """Test modules are re-signed with existing keys."""
        KeyManager(config.paths.mok_dir, config.keys).generate()

        result = cli.invoke(main, ["resign"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert "Re-signing complete! (3/3 signed)" in result.output
        assert all(p.read_bytes().endswith(SIGNATURE) for p in modules)

    def test_resign_without_keys(self, cli, config, runner, sign_tool, modules):
        """Test resign refuses to run without key material."""
        result = cli.invoke(main, ["resign"], obj=obj(config, runner))

        assert result.exit_code == 1
        assert "MOK keys not found" in result.output
        assert runner.commands("sign-file") == []


class TestStatus:
    """Tests for the status command."""

    def test_status_without_keys(self, cli, config, runner):
        """Test status on a fresh system."""
        result = cli.invoke(main, ["status"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert "disabled" in result.output
        assert "missing" in result.output
        assert "not found" in result.output

    def test_status_with_keys(self, cli, config, runner, sign_tool):
        """Test status reports the key fingerprint."""
        material = KeyManager(config.paths.mok_dir, config.keys).generate()

        result = cli.invoke(main, ["status"], obj=obj(config, runner))

        assert result.exit_code == 0, result.output
        assert material.fingerprint()[:8] in result.output


class TestConfigCommands:
    """Tests for configuration handling on the command line."""

    def test_init_config_yaml(self, cli, temp_dir):
        """Test default YAML config generation."""
        path = temp_dir / "mok-sign.yaml"
        result = cli.invoke(main, ["init-config", "-o", str(path)], obj={})

        assert result.exit_code == 0, result.output
        assert yaml.safe_load(path.read_text())["driver"]["name"] == "nvidia"

    def test_init_config_json(self, cli, temp_dir):
        """Test default JSON config generation."""
        path = temp_dir / "mok-sign.json"
        result = cli.invoke(main, ["init-config", "-o", str(path), "--format", "json"], obj={})

        assert result.exit_code == 0, result.output
        assert json.loads(path.read_text())["signing"]["strict"] is False

    def test_invalid_config(self, cli, temp_dir):
        """Test a malformed config file is rejected."""
        path = temp_dir / "bad.yaml"
        path.write_text("signing:\n  strict: sometimes\n")

        result = cli.invoke(main, ["-c", str(path), "status"], obj={})

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
