"""Application entry point for the certificate signing request API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from certsign.api.routes.certificate_signing_requests import router as csr_router
from certsign.core.concurrency import ThreadLimiter
from certsign.core.config import Settings, get_settings
from certsign.core.db import build_engine, build_session_factory, create_schema, ping
from certsign.core.errors import error_body, register_exception_handlers
from certsign.core.logging import setup_logging
from certsign.core.middleware import BodySizeLimitMiddleware, RequestContextLogMiddleware
from certsign.services.lifecycle import LifecycleController
from certsign.services.mailer import SmtpMailer
from certsign.services.signing import (
    HttpSigningGateway,
    OpenSSLSigningGateway,
    SigningGateway,
)
from certsign.services.store import RequestStore


def build_signer(settings: Settings) -> SigningGateway:
    if settings.SIGNING_BACKEND == "http":
        if not settings.SIGNER_URL:
            raise RuntimeError("SIGNER_URL must be configured for the http signing backend")
        return HttpSigningGateway(
            url=settings.SIGNER_URL,
            validity_days=settings.CERT_VALIDITY_DAYS,
            extensions=settings.CA_EXTENSIONS,
            timeout=settings.SIGNING_TIMEOUT_SEC,
        )
    if settings.SIGNING_BACKEND != "openssl":
        raise RuntimeError(f"Unknown SIGNING_BACKEND '{settings.SIGNING_BACKEND}'")
    return OpenSSLSigningGateway(
        ca_dir=settings.CA_DIR,
        ca_config=settings.CA_CONFIG,
        key_password=settings.CA_KEY_PASSWORD.get_secret_value(),
        extensions=settings.CA_EXTENSIONS,
        validity_days=settings.CERT_VALIDITY_DAYS,
        digest=settings.CA_DIGEST,
        openssl_bin=settings.OPENSSL_BIN,
        timeout=settings.SIGNING_TIMEOUT_SEC,
        limiter=ThreadLimiter(settings.SIGNER_MAX_CONCURRENCY),
    )


def build_controller(settings: Settings, store: RequestStore) -> LifecycleController:
    mailer = SmtpMailer(
        host=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USER,
        password=settings.SMTP_PASSWORD.get_secret_value(),
        sender=settings.MAIL_FROM,
        starttls=settings.SMTP_STARTTLS,
        timeout=settings.SMTP_TIMEOUT_SEC,
        limiter=ThreadLimiter(settings.MAILER_MAX_CONCURRENCY),
    )
    return LifecycleController(
        store,
        mailer,
        build_signer(settings),
        allowed_domains=settings.EMAIL_DOMAIN_WHITELIST,
        ca_dir=settings.CA_DIR,
        mail_subject=settings.MAIL_SUBJECT,
        wait_timeout=settings.VERIFY_WAIT_TIMEOUT_SEC,
        poll_interval=settings.VERIFY_POLL_INTERVAL_SEC,
        claim_ttl=settings.SIGNING_CLAIM_TTL_SEC,
    )


def create_app(
    settings: Settings | None = None,
    *,
    controller: LifecycleController | None = None,
) -> FastAPI:
    """Build the API.

    Without ``controller`` the lifespan opens the database, creates the
    schema and wires the SMTP mailer and configured signer; with one (tests)
    it is used as-is and no database is touched.
    """

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if controller is not None:
            app.state.controller = controller
            app.state.session_factory = None
            yield
            return
        engine = build_engine(settings)
        try:
            await create_schema(engine)
            session_factory = build_session_factory(engine)
            store = RequestStore(
                session_factory,
                retry_attempts=settings.DB_RETRY_ATTEMPTS,
                retry_base_delay=settings.DB_RETRY_BASE_DELAY,
                retry_jitter=settings.DB_RETRY_JITTER,
            )
            app.state.session_factory = session_factory
            app.state.controller = build_controller(settings, store)
            logger.bind(signing_backend=settings.SIGNING_BACKEND).info("startup_complete")
            yield
        finally:
            await engine.dispose()
            logger.info("shutdown_complete")

    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG, lifespan=lifespan)
    if controller is not None:
        app.state.controller = controller
        app.state.session_factory = None

    register_exception_handlers(app)
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.MAX_REQUEST_BYTES)
    app.add_middleware(RequestContextLogMiddleware)

    @app.get("/healthz", tags=["system"], summary="Liveness probe")
    def healthz() -> dict[str, str]:
        """Simple liveness probe that load balancers and monitors can call."""

        return {"status": "ok"}

    @app.get("/readyz", tags=["system"], summary="Readiness probe")
    async def readyz(request: Request):
        session_factory = getattr(request.app.state, "session_factory", None)
        if session_factory is None:
            return {"ready": True}
        try:
            await ping(session_factory)
            return {"ready": True}
        except (SQLAlchemyError, OSError):
            return JSONResponse(
                status_code=503, content=error_body(503, "Database not reachable")
            )

    app.include_router(csr_router)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging("DEBUG" if settings.DEBUG else "INFO")
    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level="info",
    )
