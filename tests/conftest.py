import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from helpers import FakeMailer, FakeSigner  # noqa: E402

from certsign.core.config import Settings  # noqa: E402
from certsign.core.db import build_engine, build_session_factory, create_schema  # noqa: E402
from certsign.services.lifecycle import LifecycleController  # noqa: E402
from certsign.services.store import RequestStore  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'requests.db'}",
        CA_DIR=str(tmp_path / "ca"),
        EMAIL_DOMAIN_WHITELIST=["durfee.io"],
        VERIFY_WAIT_TIMEOUT_SEC=5.0,
        VERIFY_POLL_INTERVAL_SEC=0.01,
        DB_RETRY_BASE_DELAY=0.01,
    )


@pytest.fixture
async def session_factory(settings):
    engine = build_engine(settings)
    await create_schema(engine)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def store(session_factory):
    return RequestStore(session_factory, retry_base_delay=0.01)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def controller(store, mailer, signer, settings):
    return LifecycleController(
        store,
        mailer,
        signer,
        allowed_domains=settings.EMAIL_DOMAIN_WHITELIST,
        ca_dir=settings.CA_DIR,
        wait_timeout=settings.VERIFY_WAIT_TIMEOUT_SEC,
        poll_interval=settings.VERIFY_POLL_INTERVAL_SEC,
    )
