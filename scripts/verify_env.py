import asyncio

from sqlalchemy import func, select

from certsign.core.config import get_settings
from certsign.core.db import build_engine, build_session_factory, create_schema
from certsign.models import CertificateSigningRequest


async def main():
    settings = get_settings()
    print("SIGNING_BACKEND:", settings.SIGNING_BACKEND)
    print("CA_DIR:", settings.CA_DIR)
    print("CERT_VALIDITY_DAYS:", settings.CERT_VALIDITY_DAYS)
    print("EMAIL_DOMAIN_WHITELIST:", settings.EMAIL_DOMAIN_WHITELIST)
    print("CA key password set:", bool(settings.CA_KEY_PASSWORD.get_secret_value()))
    print("SMTP password set:", bool(settings.SMTP_PASSWORD.get_secret_value()))
    engine = build_engine(settings)
    try:
        await create_schema(engine)
        async with build_session_factory(engine)() as s:
            count = await s.scalar(select(func.count()).select_from(CertificateSigningRequest))
            print("certificate_signing_requests rows:", count)
    finally:
        await engine.dispose()

if __name__ == "__main__":
    asyncio.run(main())
