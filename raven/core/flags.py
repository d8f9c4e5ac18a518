"""
Central feature flags. One file controls every external dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system uses a local fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth: bool = Field(default=True, alias="FF_USE_AUTH")
    # ON  → Bearer JWT validated with JWT_SECRET.
    # OFF → Dev user injected (user_id="dev-user"). No token needed.

    # ── Quota counter ────────────────────────────────────────────────
    use_redis: bool = Field(default=False, alias="FF_USE_REDIS")
    # ON  → Daily counters live in Redis (INCR + expiry). Needs REDIS_URL.
    # OFF → Counters live in the chat_daily_usage table.

    # ── LLM Provider ─────────────────────────────────────────────────
    llm_provider: str = Field(default="koboldcpp", alias="FF_LLM_PROVIDER")
    # "koboldcpp"  → Local KoboldCpp OpenAI-compatible server (default).
    # "openrouter" → OpenRouter. Needs OPENROUTER_API_KEY.

    allow_provider_override: bool = Field(default=False, alias="FF_ALLOW_PROVIDER_OVERRIDE")
    # ON  → Admins may pick the provider per request.

    # ── Memory ───────────────────────────────────────────────────────
    enable_memory: bool = Field(default=True, alias="FF_ENABLE_MEMORY")
    # OFF → No memories are read or injected for anyone.

    enable_auto_memory: bool = Field(default=True, alias="FF_ENABLE_AUTO_MEMORY")
    # OFF → The extraction pass never runs, manual memories still work.

    create_memory_schema: bool = Field(default=True, alias="FF_CREATE_MEMORY_SCHEMA")
    # ON  → chat_user_settings / chat_user_memories created on startup.
    # OFF → Tables must be installed separately; absent tables degrade to no-memory.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
