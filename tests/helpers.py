"""Shared builders and doubles for the test suite."""

from __future__ import annotations

import base64
import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import anyio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from certsign.services.mailer import MailerError
from certsign.services.signing import SigningError


@lru_cache(maxsize=1)
def _key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def make_csr(email: str | None = "alice@durfee.io", **extra: str) -> str:
    attributes = [
        x509.NameAttribute(NameOID.COUNTRY_NAME, extra.get("country", "US")),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, extra.get("organization", "Durfee Ltd")),
    ]
    if email is not None:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, email))
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, email))
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attributes))
        .sign(_key(), hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def make_csr_with_undecodable_subject(email: str = "alice@durfee.io") -> str:
    """A correctly signed CSR whose O= UTF8String holds invalid UTF-8."""

    placeholder = "QQQQQQ"
    csr = x509.load_pem_x509_csr(make_csr(email, organization=placeholder).encode("ascii"))
    der = csr.public_bytes(serialization.Encoding.DER)
    tbs = csr.tbs_certrequest_bytes
    bad_tbs = tbs.replace(b"\x0c\x06" + placeholder.encode(), b"\x0c\x06\xff\xfe\xfd\xff\xfe\xfd")
    assert bad_tbs != tbs
    signature = _key().sign(bad_tbs, padding.PKCS1v15(), hashes.SHA256())
    der = der.replace(tbs, bad_tbs).replace(csr.signature, signature)
    body = base64.encodebytes(der).decode("ascii").replace("\n", "")
    lines = [body[i : i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN CERTIFICATE REQUEST-----\n" + "\n".join(lines) + "\n-----END CERTIFICATE REQUEST-----\n"


def make_cert(common_name: str = "alice@durfee.io") -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(_key().public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=375))
        .sign(_key(), hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


class FakeMailer:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, text: str) -> None:
        if self.fail:
            raise MailerError("smtp unavailable")
        self.sent.append((to, subject, text))

    def last_code(self) -> str:
        match = re.search(r"Verification code: (\S+)\.$", self.sent[-1][2])
        assert match, self.sent[-1]
        return match.group(1)


class FakeSigner:
    def __init__(self, *, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def sign(self, email_address: str, csr: str) -> str:
        self.calls.append((email_address, csr))
        if self.delay:
            await anyio.sleep(self.delay)
        if self.fail:
            raise SigningError("openssl ca exited with status 1: bad decrypt")
        return f"-----BEGIN CERTIFICATE-----\n{email_address}#{len(self.calls)}\n-----END CERTIFICATE-----\n"

    async def wait_started(self) -> None:
        while not self.calls:
            await anyio.sleep(0.005)
