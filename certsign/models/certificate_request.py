"""Certificate signing request table."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import CHAR, DateTime, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from certsign.models.base import Base


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING

    @property
    def message(self) -> str:
        return STATUS_MESSAGES[self]


STATUS_MESSAGES = {
    RequestStatus.PENDING: "Pending email verification. Please check your inbox.",
    RequestStatus.VERIFIED: (
        "Email address has been verified. Certificate signing request has been granted."
    ),
    RequestStatus.FAILED: "The certificate signing request has been denied.",
}


class CertificateSigningRequest(Base):
    """One row per submitted CSR; rows are never deleted by the service."""

    __tablename__ = "certificate_signing_requests"

    id: Mapped[str] = mapped_column(CHAR(32), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    modified_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    accessed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    csr: Mapped[str] = mapped_column(Text, nullable=False)
    email_address: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'PENDING'")
    )
    status_message: Mapped[str] = mapped_column(String(255), nullable=False)
    cert: Mapped[str] = mapped_column(Text, nullable=False, default="")
    verification_code: Mapped[str] = mapped_column(String(64), nullable=False)
    # Set once by the verify call that won the right to invoke the signer.
    signing_claim: Mapped[str | None] = mapped_column(CHAR(32))
    signing_claimed_at: Mapped[datetime | None] = mapped_column(DateTime)
