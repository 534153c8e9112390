from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # Base de datos
    db_url: str = Field("sqlite+aiosqlite:///./keygate.sqlite3", alias="DB_URL")

    # Tokens de sesión (HMAC)
    session_secret: str | None = Field(None, alias="SESSION_SECRET")
    session_token_format: str = Field("hmac", alias="SESSION_TOKEN_FORMAT")  # hmac | jwt

    # Tiempos del flujo Get Key
    session_ttl_minutes: int = Field(30, alias="SESSION_TTL_MINUTES")
    completed_display_minutes: int = Field(5, alias="COMPLETED_DISPLAY_MINUTES")
    max_public_key_hours: int = Field(6, alias="MAX_PUBLIC_KEY_HOURS")
    key_prefix: str = Field("SH-id", alias="KEY_PREFIX")

    # Checkpoint 0 forzado por la plataforma
    platform_ad_link: str = Field("https://omg10.com/4/9212698", alias="PLATFORM_AD_LINK")

    # Cloudflare Turnstile
    turnstile_secret_key: str | None = Field(None, alias="TURNSTILE_SECRET_KEY")
    turnstile_verify_url: str = Field(
        "https://challenges.cloudflare.com/turnstile/v0/siteverify", alias="TURNSTILE_VERIFY_URL"
    )
    turnstile_timeout_seconds: float = Field(5.0, alias="TURNSTILE_TIMEOUT_SECONDS")

    # IP del solicitante detrás de Cloudflare / proxy
    trust_proxy_headers: bool = Field(True, alias="TRUST_PROXY_HEADERS")

    # Identidad del dueño en X-User-Id, inyectada por el gateway autenticado
    trust_owner_header: bool = Field(False, alias="TRUST_OWNER_HEADER")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,  # permite defaults si no hay variable de entorno
    )

    def missing_secrets(self) -> list[str]:
        missing = []
        if not self.session_secret:
            missing.append("SESSION_SECRET")
        if not self.turnstile_secret_key:
            missing.append("TURNSTILE_SECRET_KEY")
        return missing


settings = Settings()
