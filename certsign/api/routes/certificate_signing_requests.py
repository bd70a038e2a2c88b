"""Certificate signing request endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from certsign.core.deps import get_controller
from certsign.core.logging import resource_id_ctx_var
from certsign.schemas.certificate_request import (
    CertificateSigningRequestIn,
    CertificateSigningRequestOut,
    ErrorOut,
    VerificationIn,
    VerifiedCertificateSigningRequestOut,
)
from certsign.services.lifecycle import LifecycleController

router = APIRouter(prefix="/certificateSigningRequests", tags=["certificateSigningRequests"])

_ERRORS = {
    400: {"model": ErrorOut},
    404: {"model": ErrorOut},
    409: {"model": ErrorOut},
    500: {"model": ErrorOut},
}


# Method: certificateSigningRequests.insert
@router.post(
    "",
    response_model=CertificateSigningRequestOut,
    responses={k: v for k, v in _ERRORS.items() if k in (400, 500)},
)
async def insert_certificate_signing_request(
    payload: CertificateSigningRequestIn,
    controller: LifecycleController = Depends(get_controller),
) -> CertificateSigningRequestOut:
    record = await controller.submit(payload.csr)
    resource_id_ctx_var.set(record.id)
    return CertificateSigningRequestOut.from_record(record)


# Method: certificateSigningRequests.verify
@router.post(
    "/{resource_id}/verify",
    response_model=VerifiedCertificateSigningRequestOut,
    responses=_ERRORS,
)
async def verify_certificate_signing_request(
    resource_id: str,
    payload: VerificationIn,
    controller: LifecycleController = Depends(get_controller),
) -> VerifiedCertificateSigningRequestOut:
    resource_id_ctx_var.set(resource_id)
    record = await controller.verify(resource_id, payload.verificationCode)
    return VerifiedCertificateSigningRequestOut.from_record(record)
