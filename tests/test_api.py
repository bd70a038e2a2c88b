"""HTTP surface of the certificate signing request API."""

from __future__ import annotations

import anyio
import pytest
from helpers import FakeSigner, make_csr, make_csr_with_undecodable_subject
from httpx import ASGITransport, AsyncClient

from certsign.main import create_app
from certsign.models.certificate_request import RequestStatus
from certsign.services.lifecycle import LifecycleController

pytestmark = pytest.mark.anyio

BASE = "/certificateSigningRequests"


@pytest.fixture
def app(settings, controller):
    return create_app(settings, controller=controller)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _assert_error(response, code: int, status: str) -> dict:
    assert response.status_code == code
    body = response.json()
    assert set(body) == {"error"}
    assert body["error"]["code"] == code
    assert body["error"]["status"] == status
    assert body["error"]["message"]
    return body["error"]


async def test_submit_and_verify_flow(client, mailer, signer):
    csr = make_csr("alice@durfee.io")

    created = await client.post(BASE, json={"csr": csr})
    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "PENDING"
    assert body["statusMessage"] == RequestStatus.PENDING.message
    assert body["csr"] == csr
    assert {"id", "createdAt", "modifiedAt", "accessedAt"} <= set(body)
    assert "verificationCode" not in body
    assert "cert" not in body
    resource_id = body["id"]

    wrong = await client.post(f"{BASE}/{resource_id}/verify", json={"verificationCode": "x"})
    error = _assert_error(wrong, 400, "BAD_REQUEST")
    assert error["message"] == "Verification code is incorrect."

    code = mailer.last_code()
    verified = await client.post(f"{BASE}/{resource_id}/verify", json={"verificationCode": code})
    assert verified.status_code == 200
    vbody = verified.json()
    assert vbody["id"] == resource_id
    assert vbody["status"] == "VERIFIED"
    assert vbody["statusMessage"] == RequestStatus.VERIFIED.message
    assert vbody["cert"].startswith("-----BEGIN CERTIFICATE-----")
    assert code not in verified.text

    again = await client.post(f"{BASE}/{resource_id}/verify", json={"verificationCode": code})
    assert again.status_code == 200
    assert again.json()["cert"] == vbody["cert"]
    assert len(signer.calls) == 1


async def test_submit_rejects_foreign_domain(client, mailer):
    response = await client.post(BASE, json={"csr": make_csr("mallory@example.com")})
    error = _assert_error(response, 400, "BAD_REQUEST")
    assert error["message"] == "Email address 'mallory@example.com' is not valid."
    assert mailer.sent == []


@pytest.mark.parametrize(
    "payload",
    [{}, {"csr": ""}, {"csr": 5}, {"certificate": "x"}],
)
async def test_submit_rejects_malformed_body(client, payload):
    response = await client.post(BASE, json=payload)
    error = _assert_error(response, 400, "BAD_REQUEST")
    assert error["message"].startswith("Request is malformed")


async def test_submit_rejects_non_json_body(client):
    response = await client.post(
        BASE, content=b"not json", headers={"content-type": "application/json"}
    )
    _assert_error(response, 400, "BAD_REQUEST")


async def test_submit_rejects_garbage_csr(client):
    response = await client.post(BASE, json={"csr": "-----BEGIN CERTIFICATE REQUEST-----\nxx"})
    _assert_error(response, 400, "BAD_REQUEST")


async def test_submit_rejects_undecodable_subject(client, mailer):
    response = await client.post(BASE, json={"csr": make_csr_with_undecodable_subject()})
    _assert_error(response, 400, "BAD_REQUEST")
    assert mailer.sent == []


async def test_oversized_body_is_rejected(client, settings):
    payload = {"csr": "A" * (settings.MAX_REQUEST_BYTES + 1)}
    response = await client.post(BASE, json=payload)
    _assert_error(response, 413, "PAYLOAD_TOO_LARGE")


async def test_verify_unknown_id_is_not_found(client):
    response = await client.post(f"{BASE}/{'a' * 32}/verify", json={"verificationCode": "x"})
    _assert_error(response, 404, "NOT_FOUND")


async def test_verify_malformed_id_is_bad_request(client):
    response = await client.post(f"{BASE}/abc/verify", json={"verificationCode": "x"})
    error = _assert_error(response, 400, "BAD_REQUEST")
    assert "abc" in error["message"]


async def test_verify_without_code_is_incorrect(client):
    created = await client.post(BASE, json={"csr": make_csr()})
    response = await client.post(f"{BASE}/{created.json()['id']}/verify", json={})
    _assert_error(response, 400, "BAD_REQUEST")


async def test_signing_failure_is_internal_error_then_failed(store, settings, mailer):
    controller = LifecycleController(
        store,
        mailer,
        FakeSigner(fail=True),
        allowed_domains=settings.EMAIL_DOMAIN_WHITELIST,
        ca_dir=settings.CA_DIR,
        poll_interval=0.01,
    )
    app = create_app(settings, controller=controller)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(BASE, json={"csr": make_csr()})
        resource_id = created.json()["id"]
        code = mailer.last_code()

        first = await client.post(f"{BASE}/{resource_id}/verify", json={"verificationCode": code})
        _assert_error(first, 500, "INTERNAL_SERVER_ERROR")

        second = await client.post(f"{BASE}/{resource_id}/verify", json={"verificationCode": code})
        assert second.status_code == 200
        body = second.json()
        assert body["status"] == "FAILED"
        assert body["statusMessage"] == RequestStatus.FAILED.message
        assert body["cert"] == ""


async def test_concurrent_verify_requests_share_one_certificate(store, settings, mailer):
    signer = FakeSigner(delay=0.05)
    controller = LifecycleController(
        store,
        mailer,
        signer,
        allowed_domains=settings.EMAIL_DOMAIN_WHITELIST,
        ca_dir=settings.CA_DIR,
        poll_interval=0.01,
    )
    app = create_app(settings, controller=controller)
    responses = []
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(BASE, json={"csr": make_csr()})
        resource_id = created.json()["id"]
        code = mailer.last_code()

        async def verify():
            responses.append(
                await client.post(f"{BASE}/{resource_id}/verify", json={"verificationCode": code})
            )

        async with anyio.create_task_group() as tg:
            for _ in range(5):
                tg.start_soon(verify)

    assert [r.status_code for r in responses] == [200] * 5
    assert len({r.json()["cert"] for r in responses}) == 1
    assert len(signer.calls) == 1


async def test_unknown_route_uses_error_shape(client):
    response = await client.get("/nope")
    _assert_error(response, 404, "NOT_FOUND")


async def test_request_id_is_echoed(client):
    response = await client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"


async def test_request_id_is_generated(client):
    response = await client.get("/healthz")
    assert len(response.headers["X-Request-ID"]) == 32


async def test_readyz_without_database(client):
    response = await client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"ready": True}
