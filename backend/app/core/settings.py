import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_csv_set(name: str) -> set[str]:
    raw = _getenv(name)
    if raw is None:
        return set()
    parts = [p.strip().lower() for p in raw.split(",")]
    return {p for p in parts if p}


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./coupons.db") or "sqlite:///./coupons.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()

        # Service credentials for the storefront checkout flow.
        self.basic_auth_enabled = _getenv_bool(
            "BASIC_AUTH_ENABLED",
            default=(self.environment == "production"),
        )
        self.basic_auth_username = _getenv("BASIC_AUTH_USERNAME")
        self.basic_auth_password = _getenv("BASIC_AUTH_PASSWORD")

        # Admin panel login.
        self.admin_email = (_getenv("ADMIN_EMAIL") or "").lower() or None
        self.admin_password = _getenv("ADMIN_PASSWORD")
        self.admin_otp_code = _getenv("ADMIN_OTP_CODE")
        self.admin_emails = _getenv_csv_set("ADMIN_EMAILS")
        if self.admin_email:
            self.admin_emails.add(self.admin_email)

        self.session_secret = _getenv("SESSION_SECRET")
        self.session_cookie_name = _getenv("SESSION_COOKIE_NAME", "admin_session") or "admin_session"
        self.session_ttl_minutes = max(1, _getenv_int("SESSION_TTL_MINUTES", 720))
        self.login_max_failures = max(1, _getenv_int("LOGIN_MAX_FAILURES", 5))
        self.login_lockout_minutes = max(1, _getenv_int("LOGIN_LOCKOUT_MINUTES", 15))
        # Peers whose X-Forwarded-For / X-Real-IP headers are believed.
        self.trusted_proxies = _getenv_csv_set("TRUSTED_PROXIES")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins

    def resolved_session_secret(self) -> str:
        if self.session_secret:
            return self.session_secret
        if self.is_production:
            raise RuntimeError("SESSION_SECRET must be set in production")
        return "dev-only-session-secret"


settings = Settings()
