"""Machine Owner Key (MOK) material.

The signing key is a self-signed RSA certificate whose extended key usage
marks it for code signing and kernel module signing. It is kept in three
files: the private key (PEM, PKCS#8, unencrypted), the certificate in DER
form for ``mokutil --import`` and ``sign-file``, and the same certificate in
PEM form for tools that want it.
"""

import datetime
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from Crypto.Hash import SHA1
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .config import KeyConfig

logger = logging.getLogger(__name__)

PRIVATE_KEY_NAME = "MOK.priv"
DER_CERT_NAME = "MOK.der"
PEM_CERT_NAME = "MOK.pem"


@dataclass
class KeyMaterial:
    """Paths of the signing key pair and certificate."""

    private_key: Path
    der_certificate: Path
    pem_certificate: Path

    @classmethod
    def in_directory(cls, mok_dir: Path) -> "KeyMaterial":
        """Key material at the well-known names inside ``mok_dir``."""
        mok_dir = Path(mok_dir)
        return cls(
            private_key=mok_dir / PRIVATE_KEY_NAME,
            der_certificate=mok_dir / DER_CERT_NAME,
            pem_certificate=mok_dir / PEM_CERT_NAME,
        )

    @property
    def directory(self) -> Path:
        return self.private_key.parent

    def exists(self) -> bool:
        """Whether a usable key pair is present.

        Only existence is checked; the files are not parsed.
        """
        return self.private_key.is_file() and self.der_certificate.is_file()

    def fingerprint(self) -> str:
        """SHA-1 fingerprint of the DER certificate, as mokutil prints it."""
        digest = SHA1.new(self.der_certificate.read_bytes()).hexdigest()
        return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


@dataclass
class KeyResult:
    """Outcome of :meth:`KeyManager.ensure`."""

    material: KeyMaterial
    generated: bool


def _write(path: Path, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    path.chmod(mode)


class KeyManager:
    """Creates or reuses the MOK signing key."""

    def __init__(self, mok_dir: Path, config: Optional[KeyConfig] = None) -> None:
        """Initialize key manager.

        Args:
            mok_dir: Directory holding the key material
            config: Key generation settings
        """
        self.config = config or KeyConfig()
        self.material = KeyMaterial.in_directory(mok_dir)

    def ensure(
        self,
        confirm_reuse: Optional[Callable[[KeyMaterial], bool]] = None,
    ) -> KeyResult:
        """Make sure key material exists.

        Existing keys are offered to ``confirm_reuse``; answering False
        regenerates them. Without a callback existing keys are reused.

        Args:
            confirm_reuse: Asked whether existing keys should be kept

        Returns:
            KeyResult telling whether new keys were generated
        """
        if self.material.exists():
            reuse = confirm_reuse(self.material) if confirm_reuse else True
            if reuse:
                logger.info("Using existing MOK keys in %s", self.material.directory)
                if not self.material.pem_certificate.is_file():
                    self._derive_pem()
                return KeyResult(self.material, generated=False)
            logger.info("Regenerating MOK keys in %s", self.material.directory)

        self.generate()
        return KeyResult(self.material, generated=True)

    def generate(self) -> KeyMaterial:
        """Generate a new key pair, overwriting any existing files."""
        cfg = self.config
        now = datetime.datetime.now(datetime.timezone.utc)

        key = rsa.generate_private_key(public_exponent=65537, key_size=cfg.key_size)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cfg.common_name)])
        usages = [x509.ObjectIdentifier(oid) for oid in cfg.extended_key_usage]

        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=cfg.valid_days))
            .serial_number(x509.random_serial_number())
            .public_key(key.public_key())
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                critical=False,
            )
            .add_extension(x509.ExtendedKeyUsage(usages), critical=False)
            .sign(private_key=key, algorithm=hashes.SHA256())
        )

        self.material.directory.mkdir(parents=True, exist_ok=True)

        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        _write(self.material.private_key, key_pem, 0o600)
        _write(self.material.der_certificate, cert.public_bytes(serialization.Encoding.DER), 0o644)
        _write(self.material.pem_certificate, cert.public_bytes(serialization.Encoding.PEM), 0o644)

        logger.info("Generated MOK keys in %s", self.material.directory)
        return self.material

    def _derive_pem(self) -> None:
        cert = x509.load_der_x509_certificate(self.material.der_certificate.read_bytes())
        _write(self.material.pem_certificate, cert.public_bytes(serialization.Encoding.PEM), 0o644)
