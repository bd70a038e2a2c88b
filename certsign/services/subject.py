"""CSR subject extraction."""

from __future__ import annotations

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID

# OpenSSL long names, lower-cased, for the attributes a client CSR carries.
_ATTRIBUTE_NAMES = {
    NameOID.COUNTRY_NAME: "countryname",
    NameOID.STATE_OR_PROVINCE_NAME: "stateorprovincename",
    NameOID.LOCALITY_NAME: "localityname",
    NameOID.ORGANIZATION_NAME: "organizationname",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "organizationalunitname",
    NameOID.COMMON_NAME: "commonname",
    NameOID.EMAIL_ADDRESS: "emailaddress",
    NameOID.SERIAL_NUMBER: "serialnumber",
    NameOID.GIVEN_NAME: "givenname",
    NameOID.SURNAME: "surname",
    NameOID.TITLE: "title",
}


class InvalidCSR(ValueError):
    """The submitted text is not a well-formed, self-signed PEM CSR."""


def load_csr(csr: str | None) -> x509.CertificateSigningRequest:
    if not csr or not csr.strip():
        raise InvalidCSR("CSR is empty")
    try:
        request = x509.load_pem_x509_csr(csr.strip().encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise InvalidCSR(f"CSR could not be parsed: {exc}") from exc
    try:
        signed = request.is_signature_valid
    except UnsupportedAlgorithm as exc:
        raise InvalidCSR(f"CSR signature algorithm is unsupported: {exc}") from exc
    if not signed:
        raise InvalidCSR("CSR signature does not verify")
    return request


def extract_subject(csr: str | None) -> dict[str, str]:
    """Map each subject attribute of ``csr`` to its trimmed value.

    Keys are lower-cased OpenSSL long names (``emailaddress``,
    ``organizationname``...). Attributes the subject does not carry are
    absent from the result. Raises :class:`InvalidCSR` for anything that
    is not a parseable PEM CSR.
    """

    request = load_csr(csr)
    try:
        # Attribute values are decoded lazily, on first access.
        attributes = list(request.subject)
    except ValueError as exc:
        raise InvalidCSR(f"CSR subject could not be decoded: {exc}") from exc
    subject: dict[str, str] = {}
    for attribute in attributes:
        name = _ATTRIBUTE_NAMES.get(attribute.oid)
        if name is None:
            name = attribute.rfc4514_attribute_name.lower()
        value = attribute.value
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        subject.setdefault(name, value.strip())
    return subject
