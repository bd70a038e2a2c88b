"""Application configuration loaded from environment variables."""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed settings handed to the app factory and the services it builds."""

    # Read .env with BOM tolerance; case-sensitive keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=True,
        populate_by_name=True,
    )

    APP_NAME: str = "Certificate Signing Request API"
    ENV: str = "dev"  # dev | staging | prod
    DEBUG: bool = False
    HOST: str = "127.0.0.1"
    PORT: int = 8003

    # DB
    # DATABASE_URL wins over the individual DB_* parts when set.
    DATABASE_URL: str | None = None
    DB_HOST: str = "127.0.0.1"
    DB_PORT: int = 3306
    DB_USER: str = "certsign"
    DB_PASSWORD: SecretStr = SecretStr("")
    DB_NAME: str = "certificate_signing_requests"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_RETRY_ATTEMPTS: int = 4
    DB_RETRY_BASE_DELAY: float = 0.05
    DB_RETRY_JITTER: float = 0.025

    # Eligibility
    EMAIL_DOMAIN_WHITELIST: list[str] = Field(default_factory=lambda: ["durfee.io"])

    # Mail
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_STARTTLS: bool = True
    SMTP_USER: str = ""
    SMTP_PASSWORD: SecretStr = Field(default=SecretStr(""), alias="GMAIL_APP_PASSWORD")
    SMTP_TIMEOUT_SEC: float = 30.0
    MAIL_FROM: str = "Durfee Certificate Authority <noreply-ca@durfee.io>"
    MAIL_SUBJECT: str = "Email Verification"
    MAILER_MAX_CONCURRENCY: int = 4

    # Signing
    SIGNING_BACKEND: str = "openssl"  # openssl | http
    CA_DIR: str = "/root/ca/intermediate"
    CA_CONFIG: str = "/root/ca/intermediate/openssl.cnf"
    CA_KEY_PASSWORD: SecretStr = Field(
        default=SecretStr(""), alias="CA_INTERMEDIATE_PASSWORD"
    )
    CA_EXTENSIONS: str = "usr_cert"
    CA_DIGEST: str = "sha256"
    CERT_VALIDITY_DAYS: int = 375
    OPENSSL_BIN: str = "openssl"
    SIGNING_TIMEOUT_SEC: float = 60.0
    SIGNER_URL: str | None = None
    SIGNER_MAX_CONCURRENCY: int = 2

    # Verification
    VERIFY_WAIT_TIMEOUT_SEC: float = 30.0
    VERIFY_POLL_INTERVAL_SEC: float = 0.25
    # A claim older than this belongs to a signer that never finished.
    SIGNING_CLAIM_TTL_SEC: float = 600.0

    # Maximum accepted request body; a PEM CSR is a few kilobytes.
    MAX_REQUEST_BYTES: int = 64 * 1024

    @property
    def sqlalchemy_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+aiomysql://{self.DB_USER}:{self.DB_PASSWORD.get_secret_value()}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )


def get_settings() -> Settings:
    return Settings()
