from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# default resync period for the supabase backend, whose writes may come from other processes
SUPABASE_RESYNC_SECONDS = 15.0


class Settings(BaseSettings):
  """Application configuration loaded from environment variables."""

  model_config = SettingsConfigDict(
    env_file='.env',
    env_file_encoding='utf-8',
    case_sensitive=False,
  )

  supabase_url: Optional[str] = Field(default=None, validation_alias='SUPABASE_URL')
  supabase_service_key: Optional[str] = Field(default=None, validation_alias='SUPABASE_SERVICE_KEY')
  cors_allow_origins: str = Field(
    default='http://localhost:5173',
    validation_alias='CORS_ALLOW_ORIGINS',
  )

  store_backend: str = Field(default='supabase', validation_alias='STORE_BACKEND')
  announcements_table: str = Field(default='announcements', validation_alias='ANNOUNCEMENTS_TABLE')
  profiles_table: str = Field(default='profiles', validation_alias='PROFILES_TABLE')
  store_timeout_seconds: float = Field(default=10.0, gt=0, validation_alias='STORE_TIMEOUT_SECONDS')

  live_max_results: int = Field(default=20, ge=1, le=200, validation_alias='LIVE_MAX_RESULTS')
  # unset: SUPABASE_RESYNC_SECONDS for supabase, 0 (disabled) for memory
  live_refresh_seconds: Optional[float] = Field(default=None, ge=0, validation_alias='LIVE_REFRESH_SECONDS')

  log_level: str = Field(default='INFO', validation_alias='LOG_LEVEL')

  @field_validator('store_backend', mode='after')
  @classmethod
  def validate_store_backend(cls, v: str) -> str:
    v = v.strip().lower()
    if v not in ('supabase', 'memory'):
      raise ValueError("STORE_BACKEND must be 'supabase' or 'memory'")
    return v

  @field_validator('log_level', mode='after')
  @classmethod
  def validate_log_level(cls, v: str) -> str:
    return v.strip().upper() or 'INFO'

  @model_validator(mode='after')
  def require_supabase_credentials(self):
    if self.store_backend == 'supabase' and not (self.supabase_url and self.supabase_service_key):
      raise ValueError('SUPABASE_URL and SUPABASE_SERVICE_KEY are required for the supabase store backend')
    return self

  @model_validator(mode='after')
  def default_live_refresh(self):
    if self.live_refresh_seconds is None:
      self.live_refresh_seconds = SUPABASE_RESYNC_SECONDS if self.store_backend == 'supabase' else 0.0
    return self

  @property
  def cors_origins_list(self) -> List[str]:
    return [origin.strip() for origin in str(self.cors_allow_origins).split(',') if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
  return Settings()
