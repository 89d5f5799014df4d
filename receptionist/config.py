"""Service configuration via environment variables.

Only process-level wiring lives here (endpoints, timeouts, storage paths).
Anything that changes how a call behaves is part of the tenant snapshot in
``receptionist.tenants.schema`` so concurrent calls never share a switch.
"""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("receptionist.config")


class Settings(BaseSettings):
    # Language-model service (Tier 3 fallback)
    llm_service_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 2.5
    llm_max_tokens: int = 400
    llm_temperature: float = 0.2

    # Circuit breaker around the language-model call
    llm_breaker_failure_threshold: int = 5
    llm_breaker_cooldown_seconds: float = 30.0

    # Tenant configuration
    tenant_config_dir: str = "data/tenants"
    tenant_config_cache_ttl_seconds: float = 60.0
    tenant_config_cache_max_entries: int = 500

    # Call sessions
    session_idle_timeout_seconds: float = 300.0
    session_post_end_ttl_seconds: float = 60.0
    session_reaper_interval_seconds: float = 15.0

    # Trace / audit
    audit_log_path: str = ""
    trace_raw_response_max_chars: int = 500
    trace_final_write_timeout_seconds: float = 1.0

    # Admin auth (trace inspection endpoints)
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-...", "changeme"}

        if self.llm_timeout_seconds <= 0:
            raise ValueError("LLM_TIMEOUT_SECONDS must be positive.")

        if self.session_idle_timeout_seconds <= 0:
            raise ValueError("SESSION_IDLE_TIMEOUT_SECONDS must be positive.")

        if not self.llm_api_key or self.llm_api_key in _placeholders:
            warnings.append(
                "LLM_API_KEY is missing or a placeholder. Tier 3 fallback will "
                "degrade to the generic clarifying question."
            )

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Trace endpoints are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Trace endpoints are locked in production."
                )

        if not self.audit_log_path:
            warnings.append(
                "AUDIT_LOG_PATH not set. Trace events are kept in memory only."
            )

        return warnings


settings = Settings()
