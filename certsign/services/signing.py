"""Certificate signing backends.

The lifecycle controller only sees the :class:`SigningGateway` protocol.
:class:`OpenSSLSigningGateway` drives a local ``openssl ca`` installation and
:class:`HttpSigningGateway` delegates to a remote signing service.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

import httpx
from cryptography import x509
from loguru import logger

from certsign.core.concurrency import ThreadLimiter

PASSWORD_ENV_VAR = "CERTSIGN_CA_KEY_PASSWORD"


class SigningError(RuntimeError):
    """The CA did not produce a usable certificate."""


class UnsafeArtifactName(ValueError):
    """An email address that cannot be used as a file name."""


class SigningGateway(Protocol):
    async def sign(self, email_address: str, csr: str) -> str: ...


def _artifact_stem(email_address: str) -> str:
    if (
        not email_address
        or email_address.startswith(".")
        or any(ch in email_address for ch in ("/", "\\", "\x00"))
    ):
        raise UnsafeArtifactName(f"'{email_address}' cannot be used as an artifact name")
    return email_address


def csr_artifact_path(ca_dir: str | Path, email_address: str) -> Path:
    return Path(ca_dir) / "csr" / f"{_artifact_stem(email_address)}.csr.pem"


def cert_artifact_path(ca_dir: str | Path, email_address: str) -> Path:
    return Path(ca_dir) / "certs" / f"{_artifact_stem(email_address)}.cert.pem"


def write_csr_artifact(ca_dir: str | Path, email_address: str, csr: str) -> Path:
    """Write ``csr`` to the per-email CSR path, replacing any earlier file.

    The file is written next to its destination and renamed into place, so
    a reader never sees a partial CSR.
    """

    path = csr_artifact_path(ca_dir, email_address)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".csr-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(csr)
        os.chmod(tmp_name, 0o444)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


def _validated_pem(cert: str, source: str) -> str:
    try:
        x509.load_pem_x509_certificate(cert.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise SigningError(f"{source} returned a malformed certificate: {exc}") from exc
    return cert


class OpenSSLSigningGateway:
    """Sign with ``openssl ca`` against an on-disk intermediate CA."""

    def __init__(
        self,
        *,
        ca_dir: str,
        ca_config: str,
        key_password: str,
        extensions: str = "usr_cert",
        validity_days: int = 375,
        digest: str = "sha256",
        openssl_bin: str = "openssl",
        timeout: float = 60.0,
        limiter: ThreadLimiter | None = None,
    ):
        self.ca_dir = ca_dir
        self.ca_config = ca_config
        self._key_password = key_password
        self.extensions = extensions
        self.validity_days = validity_days
        self.digest = digest
        self.openssl_bin = openssl_bin
        self.timeout = timeout
        self._limiter = limiter or ThreadLimiter(2)

    def _command(self, csr_path: Path, cert_path: Path) -> list[str]:
        return [
            self.openssl_bin,
            "ca",
            "-batch",
            "-config",
            self.ca_config,
            "-extensions",
            self.extensions,
            "-days",
            str(self.validity_days),
            "-notext",
            "-md",
            self.digest,
            "-passin",
            f"env:{PASSWORD_ENV_VAR}",
            "-in",
            str(csr_path),
            "-out",
            str(cert_path),
        ]

    def _sign_sync(self, email_address: str, csr: str) -> str:
        try:
            csr_path = write_csr_artifact(self.ca_dir, email_address, csr)
            cert_path = cert_artifact_path(self.ca_dir, email_address)
            cert_path.parent.mkdir(parents=True, exist_ok=True)
            # Never hand back a certificate left over from an earlier request.
            cert_path.unlink(missing_ok=True)
        except (OSError, UnsafeArtifactName) as exc:
            raise SigningError(f"Unable to prepare CSR for signing: {exc}") from exc

        env = dict(os.environ)
        env[PASSWORD_ENV_VAR] = self._key_password
        try:
            result = subprocess.run(
                self._command(csr_path, cert_path),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                env=env,
            )
        except FileNotFoundError as exc:
            raise SigningError(f"OpenSSL binary '{self.openssl_bin}' not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise SigningError(f"openssl ca timed out after {self.timeout}s") from exc

        logger.bind(returncode=result.returncode, stderr=result.stderr).debug(
            "openssl_ca_completed"
        )
        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            raise SigningError(
                f"openssl ca exited with status {result.returncode}: "
                f"{detail[-1] if detail else 'no output'}"
            )
        try:
            cert = cert_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SigningError(f"Signed certificate could not be read: {exc}") from exc
        if not cert.strip():
            raise SigningError("openssl ca produced an empty certificate")
        return _validated_pem(cert, "openssl ca")

    async def sign(self, email_address: str, csr: str) -> str:
        return await self._limiter.run(self._sign_sync, email_address, csr)


class HttpSigningGateway:
    """Delegate signing to a remote service speaking ``{email, csr} -> {cert}``."""

    def __init__(
        self,
        *,
        url: str,
        validity_days: int = 375,
        extensions: str = "usr_cert",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.validity_days = validity_days
        self.extensions = extensions
        self.timeout = timeout
        self._transport = transport

    async def sign(self, email_address: str, csr: str) -> str:
        payload = {
            "email": email_address,
            "csr": csr,
            "days": self.validity_days,
            "extensions": self.extensions,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise SigningError(f"Signing service unreachable: {exc}") from exc
        if not response.is_success:
            raise SigningError(
                f"Signing service responded with status {response.status_code}"
            )
        try:
            cert = response.json()["cert"]
        except (ValueError, KeyError, TypeError) as exc:
            raise SigningError("Signing service returned an unexpected body") from exc
        if not isinstance(cert, str) or not cert.strip():
            raise SigningError("Signing service returned an empty certificate")
        return _validated_pem(cert, "Signing service")
