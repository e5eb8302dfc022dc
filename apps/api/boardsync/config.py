from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://boardsync:boardsync@db:5432/boardsync"
  database_echo: bool = False
  app_version: str = "v2026-10-18+r1"
  build_sha: str = "dev"
  api_docs_enabled: bool = True
  log_level: str = "INFO"

  session_ttl_days: int = 14
  cookie_secure: bool = False
  cookie_domain: str | None = None

  rate_limit_login_ip_per_minute: int = 60
  rate_limit_login_email_per_minute: int = 20
  redis_url: str | None = None

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
  trusted_hosts: str = "localhost,127.0.0.1,0.0.0.0,api,web,testserver"

  activity_page_size_default: int = 20
  activity_page_size_max: int = 100

  # Bounded re-reads when a concurrent assignment claims the same user first.
  assignment_max_attempts: int = 16

  realtime_queue_size: int = 256
  realtime_send_timeout_seconds: float = 10.0

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def trusted_host_list(self) -> list[str]:
    return [h.strip() for h in self.trusted_hosts.split(",") if h.strip()]


settings = Settings()
