"""Certificate signing request lifecycle.

A request is created PENDING by :meth:`LifecycleController.submit` and moves
to VERIFIED or FAILED exactly once, inside :meth:`LifecycleController.verify`.

Concurrent verify calls for the same id race on a single compare-and-swap
that stamps ``signing_claim`` on the row. Only the caller whose update
applied talks to the signer; every other caller waits for the row to reach a
terminal state and returns it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable

import anyio
from loguru import logger

from certsign.core.errors import BadRequest, Conflict, InternalError, NotFound
from certsign.models.certificate_request import RequestStatus
from certsign.services.eligibility import is_eligible_email
from certsign.services.mailer import Mailer, MailerError
from certsign.services.signing import (
    SigningError,
    SigningGateway,
    UnsafeArtifactName,
    write_csr_artifact,
)
from certsign.services.store import (
    CertificateRequestRecord,
    RecordNotFound,
    RequestStore,
    StorageError,
    utcnow,
)
from certsign.services.subject import InvalidCSR, extract_subject
from certsign.services.verification import codes_match, new_verification_code


def parse_resource_id(raw: str) -> str:
    try:
        return uuid.UUID(raw).hex
    except (ValueError, TypeError, AttributeError) as exc:
        raise BadRequest(f"Resource ID '{raw}' is malformed: {exc}") from exc


class LifecycleController:
    def __init__(
        self,
        store: RequestStore,
        mailer: Mailer,
        signer: SigningGateway,
        *,
        allowed_domains: Iterable[str],
        ca_dir: str,
        mail_subject: str = "Email Verification",
        wait_timeout: float = 30.0,
        poll_interval: float = 0.25,
        claim_ttl: float = 600.0,
    ):
        self._store = store
        self._mailer = mailer
        self._signer = signer
        self._allowed_domains = frozenset(allowed_domains)
        self._ca_dir = ca_dir
        self._mail_subject = mail_subject
        self._wait_timeout = wait_timeout
        self._poll_interval = poll_interval
        self._claim_ttl = timedelta(seconds=claim_ttl)

    # ------------------------------------------------------------------ submit

    async def submit(self, csr: str) -> CertificateRequestRecord:
        """Accept a CSR, email a verification code and persist a PENDING request.

        The record is inserted only after the email went out, so a stored
        code has always been delivered to the mail server.
        """

        try:
            subject = extract_subject(csr)
        except InvalidCSR as exc:
            raise BadRequest(f"Certificate signing request is not valid: {exc}") from exc
        email_address = subject.get("emailaddress", "")
        if not is_eligible_email(email_address, self._allowed_domains):
            raise BadRequest(f"Email address '{email_address}' is not valid.")

        try:
            await anyio.to_thread.run_sync(
                write_csr_artifact, self._ca_dir, email_address, csr
            )
        except UnsafeArtifactName as exc:
            raise BadRequest(f"Email address '{email_address}' is not valid.") from exc
        except OSError as exc:
            raise InternalError(
                f"Unexpected error occurred when inserting resource: {exc}"
            ) from exc

        verification_code = new_verification_code()
        try:
            await self._mailer.send(
                email_address,
                self._mail_subject,
                f"Verification code: {verification_code}.",
            )
        except MailerError as exc:
            raise InternalError(
                f"Unexpected error occurred when inserting resource: {exc}"
            ) from exc
        logger.bind(to=email_address).info("verification_email_sent")

        try:
            record = await self._store.insert(
                csr=csr,
                email_address=email_address,
                verification_code=verification_code,
            )
        except StorageError as exc:
            raise InternalError(
                f"Unexpected error occurred when inserting resource: {exc}"
            ) from exc
        logger.bind(resource_id=record.id, email=email_address).info("csr_submitted")
        return record

    # ------------------------------------------------------------------ verify

    async def verify(self, raw_id: str, verification_code: str | None) -> CertificateRequestRecord:
        record_id = parse_resource_id(raw_id)
        record = await self._fetch(record_id, raw_id)

        if not codes_match(record.verification_code, verification_code):
            logger.bind(resource_id=record_id).info("verification_code_rejected")
            raise BadRequest("Verification code is incorrect.")

        if record.status.is_terminal:
            return record

        if record.signing_claim is None:
            claim = uuid.uuid4().hex
            # Once the claim may have been written, signing and the terminal
            # transition must finish even if the client goes away.
            with anyio.CancelScope(shield=True):
                record, won = await self._claim(record_id, raw_id, claim)
                if won:
                    return await self._sign_and_settle(record, claim, raw_id)

        return await self._await_terminal(record, raw_id)

    # ----------------------------------------------------------------- helpers

    async def _fetch(self, record_id: str, raw_id: str) -> CertificateRequestRecord:
        try:
            return await self._store.fetch_and_touch(record_id)
        except RecordNotFound as exc:
            raise NotFound(f"Resource '{raw_id}' was not found.") from exc
        except StorageError as exc:
            raise InternalError(
                f"Unexpected error occurred when verifying resource '{raw_id}': {exc}"
            ) from exc

    async def _claim(
        self, record_id: str, raw_id: str, claim: str
    ) -> tuple[CertificateRequestRecord, bool]:
        now = utcnow()
        try:
            outcome = await self._store.transition_if_match(
                record_id,
                {"status": RequestStatus.PENDING, "signing_claim": None},
                {"signing_claim": claim, "signing_claimed_at": now, "accessed_at": now},
            )
        except RecordNotFound as exc:
            raise NotFound(f"Resource '{raw_id}' was not found.") from exc
        except StorageError as exc:
            raise InternalError(
                f"Unexpected error occurred when verifying resource '{raw_id}': {exc}"
            ) from exc
        if outcome.applied:
            logger.bind(resource_id=record_id).info("signing_claimed")
        return outcome.record, outcome.applied

    async def _settle(
        self, record_id: str, claim: str, status: RequestStatus, cert: str = ""
    ) -> CertificateRequestRecord:
        now = utcnow()
        outcome = await self._store.transition_if_match(
            record_id,
            {"status": RequestStatus.PENDING, "signing_claim": claim},
            {
                "status": status,
                "status_message": status.message,
                "cert": cert,
                "modified_at": now,
                "accessed_at": now,
            },
        )
        if not outcome.applied:
            logger.bind(
                resource_id=record_id,
                current_status=outcome.record.status.value,
                wanted_status=status.value,
            ).warning("signing_result_discarded")
        return outcome.record

    async def _sign_and_settle(
        self, record: CertificateRequestRecord, claim: str, raw_id: str
    ) -> CertificateRequestRecord:
        log = logger.bind(resource_id=record.id, email=record.email_address)
        try:
            cert = await self._signer.sign(record.email_address, record.csr)
        except Exception as exc:
            if isinstance(exc, SigningError):
                log.warning("signing_failed: {}", exc)
            else:
                log.opt(exception=exc).error("signing_failed")
            try:
                await self._settle(record.id, claim, RequestStatus.FAILED)
            except (StorageError, RecordNotFound) as store_exc:
                log.error("failed_state_not_recorded: {}", store_exc)
            detail = f": {exc}" if isinstance(exc, SigningError) else "."
            raise InternalError(
                f"Unexpected error occurred when verifying resource '{raw_id}'{detail}"
            ) from exc

        try:
            settled = await self._settle(record.id, claim, RequestStatus.VERIFIED, cert)
        except (StorageError, RecordNotFound) as exc:
            # The CA has issued a certificate the database does not know about.
            log.critical("verified_state_not_recorded: {}", exc)
            raise InternalError(
                f"Unexpected error occurred when verifying resource '{raw_id}': {exc}"
            ) from exc
        log.info("certificate_signed")
        return settled

    def _claim_is_stale(self, record: CertificateRequestRecord) -> bool:
        if record.signing_claimed_at is None:
            return False
        return datetime.now(timezone.utc) - record.signing_claimed_at > self._claim_ttl

    async def _fail_stale_claim(
        self, record: CertificateRequestRecord, raw_id: str
    ) -> CertificateRequestRecord:
        now = utcnow()
        try:
            outcome = await self._store.transition_if_match(
                record.id,
                {"status": RequestStatus.PENDING, "signing_claim": record.signing_claim},
                {
                    "status": RequestStatus.FAILED,
                    "status_message": RequestStatus.FAILED.message,
                    "modified_at": now,
                    "accessed_at": now,
                },
            )
        except (StorageError, RecordNotFound) as exc:
            raise InternalError(
                f"Unexpected error occurred when verifying resource '{raw_id}': {exc}"
            ) from exc
        if outcome.applied:
            logger.bind(
                resource_id=record.id,
                claimed_at=record.signing_claimed_at.isoformat(),
            ).warning("stale_signing_claim_failed")
        return outcome.record

    async def _await_terminal(
        self, record: CertificateRequestRecord, raw_id: str
    ) -> CertificateRequestRecord:
        with anyio.move_on_after(self._wait_timeout):
            while not record.status.is_terminal:
                if self._claim_is_stale(record):
                    record = await self._fail_stale_claim(record, raw_id)
                    continue
                await anyio.sleep(self._poll_interval)
                record = await self._fetch(record.id, raw_id)
            return record
        raise Conflict(
            f"Resource '{raw_id}' is still being verified. Please retry shortly.",
            headers={"Retry-After": "1"},
        )
