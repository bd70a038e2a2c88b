"""Email eligibility policy shared by the API and the CLI."""

from __future__ import annotations

from typing import Iterable


def is_eligible_email(address: str | None, allowed_domains: Iterable[str]) -> bool:
    """Return True when ``address`` is ``local@domain`` with an allow-listed domain.

    The domain comparison is exact and case-sensitive; subdomains of an
    allowed domain do not match.
    """

    parts = (address or "").split("@")
    if len(parts) != 2:
        return False
    local, domain = parts
    if not local:
        return False
    return domain in set(allowed_domains)
