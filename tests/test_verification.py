import uuid

from certsign.services.verification import codes_match, new_verification_code


def test_codes_are_random_uuid4():
    codes = {new_verification_code() for _ in range(50)}
    assert len(codes) == 50
    for code in codes:
        assert uuid.UUID(code).version == 4


def test_codes_match():
    code = new_verification_code()
    assert codes_match(code, code)
    assert not codes_match(code, code.upper())
    assert not codes_match(code, "")
    assert not codes_match(code, None)
