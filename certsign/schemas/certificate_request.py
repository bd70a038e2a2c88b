"""Request and response bodies for the certificate signing request API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from certsign.models.certificate_request import RequestStatus
from certsign.services.store import CertificateRequestRecord


class CertificateSigningRequestIn(BaseModel):
    csr: str = Field(min_length=1)


class VerificationIn(BaseModel):
    verificationCode: str = ""


class CertificateSigningRequestOut(BaseModel):
    """A stored request as returned to clients; the verification code never appears."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    createdAt: datetime
    modifiedAt: datetime
    accessedAt: datetime
    csr: str
    status: RequestStatus
    statusMessage: str

    @classmethod
    def from_record(cls, record: CertificateRequestRecord) -> "CertificateSigningRequestOut":
        return cls(
            id=record.id,
            createdAt=record.created_at,
            modifiedAt=record.modified_at,
            accessedAt=record.accessed_at,
            csr=record.csr,
            status=record.status,
            statusMessage=record.status_message,
        )


class VerifiedCertificateSigningRequestOut(CertificateSigningRequestOut):
    cert: str

    @classmethod
    def from_record(
        cls, record: CertificateRequestRecord
    ) -> "VerifiedCertificateSigningRequestOut":
        base = CertificateSigningRequestOut.from_record(record).model_dump()
        return cls(**base, cert=record.cert)


class ErrorDetail(BaseModel):
    code: int
    message: str
    status: str


class ErrorOut(BaseModel):
    error: ErrorDetail
