"""
certsign: client certificate request CLI

Walks a user through one request:
- prompts for subject fields and an eligible email address
- generates an RSA key and CSR locally (the key never leaves the machine)
- submits the CSR, prompts for the emailed verification code, verifies it
- writes the signed certificate next to the key
"""

from __future__ import annotations

import os
import ssl
from pathlib import Path
from typing import Any, List, Optional

import httpx
import typer
from rich.console import Console

from certsign.cli.csr import SubjectFields, generate_key_and_csr, write_file
from certsign.services.eligibility import is_eligible_email

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()

DEFAULT_API_URL = os.getenv("CERTSIGN_API_URL", "https://ca.durfee.io")
DEFAULT_CA_CERT = os.getenv("CERTSIGN_CA_CERT", "../ca.cert.pem")
DEFAULT_DOMAINS = ["durfee.io"]


class CliError(Exception):
    pass


def _err(msg: str) -> None:
    console.print(f"[bold red]ERROR[/bold red] {msg}", highlight=False)


def _info(msg: str) -> None:
    console.print(f"[bold]INFO[/bold] {msg}", highlight=False)


def _ok(msg: str) -> None:
    console.print(f"[bold green]OK[/bold green] {msg}", highlight=False)


def _http_client(api_url: str, ca_cert: Path, timeout: float) -> httpx.Client:
    context = ssl.create_default_context(cafile=str(ca_cert))
    return httpx.Client(base_url=api_url, verify=context, timeout=timeout)


def _post(client: httpx.Client, path: str, payload: dict[str, Any]) -> dict[str, Any]:
    try:
        response = client.post(path, json=payload)
    except httpx.HTTPError as exc:
        raise CliError(f"Request to {path} failed: {exc}") from exc
    try:
        body = response.json() if response.content else None
    except ValueError:
        body = None
    if response.status_code != 200:
        message = ""
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = f": {body['error'].get('message', '')}"
        raise CliError(f"Unexpected status code '{response.status_code}'{message}")
    if not isinstance(body, dict):
        raise CliError(f"Unexpected response '{response.text}'")
    return body


def _prompt_email(allowed_domains: List[str]) -> str:
    while True:
        email = typer.prompt("Email Address").strip()
        if is_eligible_email(email, allowed_domains):
            return email
        _err(f"Email address must belong to one of: {', '.join(allowed_domains)}")


def _prompt_country() -> str:
    while True:
        country = typer.prompt("Country Name (2 letter code)", default="US").strip()
        if len(country) == 2:
            return country
        _err("Country name must be a 2 letter code")


@app.callback()
def main() -> None:
    """Request client certificates from the certificate authority."""


@app.command("request")
def request_certificate(
    api_url: str = typer.Option(DEFAULT_API_URL, "--api-url", help="Base URL of the CA API."),
    ca_cert: Path = typer.Option(
        Path(DEFAULT_CA_CERT), "--ca-cert", help="CA certificate the API's TLS chain must lead to."
    ),
    out_dir: Path = typer.Option(Path("."), "--out-dir", help="Where key, CSR and certificate are written."),
    allowed_domain: Optional[List[str]] = typer.Option(
        None, "--allowed-domain", help="Eligible email domain (repeatable)."
    ),
    key_size: int = typer.Option(4096, "--key-size", min=2048),
    timeout: float = typer.Option(30.0, "--timeout"),
) -> None:
    """Generate a key and CSR, verify the email address and save the certificate."""

    domains = allowed_domain or DEFAULT_DOMAINS
    subject = SubjectFields(
        country_name=_prompt_country(),
        state_name=typer.prompt("State or Province Name (full name)", default="Wisconsin"),
        locality_name=typer.prompt("Locality Name (eg, city)", default="Waupaca"),
        organization_name=typer.prompt("Organization Name (eg, company)", default="Durfee Ltd"),
        email_address=_prompt_email(domains),
    )
    email = subject.email_address
    key_path = out_dir / f"{email}.key.pem"
    csr_path = out_dir / f"{email}.csr.pem"
    cert_path = out_dir / f"{email}.cert.pem"

    try:
        key_pem, csr = generate_key_and_csr(subject, key_size=key_size)
        out_dir.mkdir(parents=True, exist_ok=True)
        write_file(key_path, key_pem, 0o600)
        write_file(csr_path, csr, 0o444)
    except (OSError, ValueError) as exc:
        _err(f"Unable to create key and CSR: {exc}")
        raise typer.Exit(1)
    _info(f"Wrote {key_path} and {csr_path}")

    try:
        with _http_client(api_url, ca_cert, timeout) as client:
            created = _post(client, "/certificateSigningRequests", {"csr": csr})
            resource_id = created.get("id")
            if not resource_id:
                raise CliError(f"Unexpected response '{created}'")
            _info(created.get("statusMessage", "Pending email verification."))
            code = typer.prompt("Verification Code").strip()
            verified = _post(
                client,
                f"/certificateSigningRequests/{resource_id}/verify",
                {"verificationCode": code},
            )
        cert = verified.get("cert")
        if not cert:
            raise CliError(verified.get("statusMessage") or "No certificate was returned")
        write_file(cert_path, cert, 0o444)
    except (CliError, OSError, ssl.SSLError) as exc:
        _err(str(exc))
        raise typer.Exit(1)

    _ok(f"Certificate written to {cert_path}")


if __name__ == "__main__":
    app()
