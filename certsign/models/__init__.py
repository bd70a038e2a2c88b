"""ORM model exports for convenient imports elsewhere in the app."""

from certsign.models.base import Base
from certsign.models.certificate_request import CertificateSigningRequest, RequestStatus

__all__ = [
    "Base",
    "CertificateSigningRequest",
    "RequestStatus",
]
