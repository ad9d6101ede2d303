"""Tests for MOK enrollment requests."""

import pytest

from mok_sign.enroll import EnrollmentRequester, EnrollmentStatus
from mok_sign.keys import KeyManager


@pytest.fixture
def material(config):
    return KeyManager(config.paths.mok_dir, config.keys).generate()


class TestSecureBootState:
    """Tests for Secure Boot state parsing."""

    @pytest.mark.parametrize(
        "output,expected",
        [
            ("SecureBoot enabled\n", True),
            ("SecureBoot disabled\n", False),
            ("EFI variables are not supported on this system\n", None),
        ],
    )
    def test_state(self, runner, output, expected):
        """Test mokutil output mapping."""
        runner.sb_state = output
        assert EnrollmentRequester(runner).secure_boot_enabled() is expected

    def test_mokutil_missing(self, runner):
        """Test unknown state when mokutil is not installed."""
        runner.available.discard("mokutil")
        assert EnrollmentRequester(runner).secure_boot_enabled() is None


class TestEnrollment:
    """Tests for EnrollmentRequester."""

    def test_import_requested(self, runner, material):
        """Test the DER certificate is imported interactively."""
        result = EnrollmentRequester(runner).request(material)

        assert result.status is EnrollmentStatus.REQUESTED
        assert result.needs_reboot
        assert ["mokutil", "--import", str(material.der_certificate)] in runner.calls

    def test_already_enrolled_by_marker(self, runner, material):
        """Test the marker in the listing skips the import."""
        runner.enrolled = "[key 1]\nSubject: CN=NVIDIA Secure Boot MOK\n"

        result = EnrollmentRequester(runner).request(material)

        assert result.status is EnrollmentStatus.ALREADY_ENROLLED
        assert not result.needs_reboot
        assert not any("--import" in c for c in runner.calls)

    def test_already_enrolled_by_fingerprint(self, runner, material):
        """Test our certificate fingerprint in the listing counts as enrolled."""
        runner.enrolled = f"[key 1]\nSHA1 Fingerprint: {material.fingerprint().upper()}\n"
        requester = EnrollmentRequester(runner, marker="Lab Key")
        assert requester.is_enrolled(material)

    def test_other_keys_not_enrolled(self, runner, material):
        """Test unrelated enrolled keys do not match."""
        runner.enrolled = "[key 1]\nSubject: CN=Canonical Ltd. Master Certificate Authority\n"
        assert not EnrollmentRequester(runner).is_enrolled(material)

    def test_import_failure(self, runner, material):
        """Test a failed import is reported, not raised."""
        runner.import_returncode = 1

        result = EnrollmentRequester(runner).request(material)

        assert result.status is EnrollmentStatus.FAILED
        assert "status 1" in result.message
        assert not result.needs_reboot
