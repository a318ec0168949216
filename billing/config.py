import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


def is_enabled(flag: str, default: bool = False) -> bool:
    raw = os.getenv(flag)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    value = default
    if raw is not None:
        try:
            value = int(raw)
        except ValueError:
            value = default
    if minimum is not None and value < minimum:
        return minimum
    return value


@dataclass(frozen=True)
class Settings:
    webhook_secret: str = ""
    public_key: str = ""
    enforce_signature: bool = False
    fallback_window_minutes: int = 30
    storage_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    log_level: str = "INFO"

    @property
    def fallback_window(self) -> timedelta:
        return timedelta(minutes=self.fallback_window_minutes)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            webhook_secret=os.getenv("FEDAPAY_WEBHOOK_SECRET", ""),
            public_key=os.getenv("FEDAPAY_PUBLIC_KEY", ""),
            enforce_signature=is_enabled("FEDAPAY_ENFORCE_SIGNATURE", False),
            fallback_window_minutes=env_int("FALLBACK_MATCH_WINDOW_MINUTES", 30, minimum=1),
            storage_backend=os.getenv("STORAGE_BACKEND", "memory").strip().lower(),
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
