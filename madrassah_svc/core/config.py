# madrassah_svc/core/config.py
from __future__ import annotations
import logging
from functools import cached_property
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    service_name: str = Field("madrassah-svc", alias="SERVICE_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # database
    database_url: str = Field("sqlite+aiosqlite:///./madrassah.db", alias="DATABASE_URL")

    # token lifetimes
    access_token_exp_minutes: int = Field(15, alias="ACCESS_TOKEN_EXP_MINUTES")
    refresh_token_exp_minutes: int = Field(60 * 24 * 7, alias="REFRESH_TOKEN_EXP_MINUTES")  # 7 days
    token_issuer: str = Field("madrassah-svc", alias="TOKEN_ISSUER")

    # RS256 keys as inline PEM or file paths
    jwt_private_key_path: Optional[str] = Field(default=None, alias="JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: Optional[str] = Field(default=None, alias="JWT_PUBLIC_KEY_PATH")
    jwt_private_key_inline: Optional[str] = Field(default=None, alias="JWT_PRIVATE_KEY")
    jwt_public_key_inline: Optional[str] = Field(default=None, alias="JWT_PUBLIC_KEY")

    # client credentials for bootstrapping the first admin of a madrassah
    service_client_id: str | None = Field(default=None, alias="SERVICE_CLIENT_ID")
    service_client_secret: str | None = Field(default=None, alias="SERVICE_CLIENT_SECRET")

    # Redis (empty -> in-memory role hints / redirect counters)
    redis_url: str = Field("", alias="REDIS_URL")
    redirect_counter_ttl_sec: int = Field(300, alias="REDIRECT_COUNTER_TTL_SEC")

    # NATS change feed
    enable_nats: bool = Field(default=True, alias="ENABLE_NATS")
    nats_urls: str = Field("nats://127.0.0.1:4222", alias="NATS_URLS")
    nats_subject_prefix: str = Field("changes", alias="NATS_SUBJECT_PREFIX")

    # access gate
    role_check_timeout_sec: float = Field(3.0, alias="ROLE_CHECK_TIMEOUT_SEC")
    max_auth_redirects: int = Field(3, alias="MAX_AUTH_REDIRECTS")
    login_path: str = Field("/auth", alias="LOGIN_PATH")
    home_path: str = Field("/", alias="HOME_PATH")

    # query cache
    cache_ttl_sec: int = Field(300, alias="CACHE_TTL_SEC")
    cache_sweep_interval_sec: int = Field(30, alias="CACHE_SWEEP_INTERVAL_SEC")

    allowed_origins: str = Field(
        "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000,http://127.0.0.1:3000",
        alias="ALLOWED_ORIGINS",
    )

    class Config:
        env_file = ".env"
        env_prefix = ""
        case_sensitive = False
        populate_by_name = True

    @property
    def allowed_origin_list(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    # signing keys: configured PEM (inline or file) or a per-process generated pair
    @cached_property
    def jwt_keypair(self) -> tuple[str, str]:
        private_pem = _read_pem(self.jwt_private_key_inline, self.jwt_private_key_path)
        if private_pem is None:
            logger.warning("no JWT signing key configured; generated keys last only as long as this process")
            private_pem = _generate_private_pem()
            return private_pem, _public_pem_for(private_pem)
        public_pem = _read_pem(self.jwt_public_key_inline, self.jwt_public_key_path)
        return private_pem, public_pem or _public_pem_for(private_pem)

    @property
    def jwt_private_key(self) -> str:
        return self.jwt_keypair[0]

    @property
    def jwt_public_key(self) -> str:
        return self.jwt_keypair[1]


def _read_pem(inline: Optional[str], path: Optional[str]) -> Optional[str]:
    if inline and "BEGIN" in inline:
        return inline
    if path and Path(path).is_file():
        return Path(path).read_text(encoding="utf-8")
    return None


def _generate_private_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("utf-8")


def _public_pem_for(private_pem: str) -> str:
    key = serialization.load_pem_private_key(private_pem.encode("utf-8"), password=None)
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("utf-8")


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
