"""Settings via pydantic-settings with AGENTLOOP_ env prefix.

Credential fields use validation_alias to read the same unprefixed env
vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the Anthropic tooling uses,
so a single .env file drives every process that talks to the API.
"""

import logging

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENTLOOP_", env_file=".env")

    log_level: str = "info"

    # Credentials (unprefixed aliases)
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    max_iterations: int | None = 10  # None = no cap on tool rounds

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    api_max_retries: int = 1  # retries for 429/500/529 and timeouts

    # Prompt caching
    prompt_caching: bool = True
    prompt_caching_haiku: bool = True
    prompt_caching_sonnet: bool = True
    prompt_caching_opus: bool = True
    prompt_cache_ttl: str | None = "1h"  # None = default 5m ephemeral TTL

    # Request metadata
    user_id: str = "unknown"
    session_id: str = ""

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if self.max_iterations is not None and self.max_iterations < 0:
            raise ValueError("max_iterations must be >= 0 (or unset for no cap)")
        return self


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
