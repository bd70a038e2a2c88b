"""Verification code generation and comparison."""

from __future__ import annotations

import secrets
import uuid


def new_verification_code() -> str:
    # uuid4 draws 122 bits from os.urandom.
    return str(uuid.uuid4())


def codes_match(expected: str, submitted: str | None) -> bool:
    if not submitted:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))
