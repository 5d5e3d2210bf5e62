"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # SmileID partner credentials
    smile_partner_id: str = ""
    smile_api_key: str = ""
    smile_server_mode: int = 0  # 0 = sandbox, 1 = production
    smile_default_callback: str = ""
    smile_sandbox_url: str = "https://testapi.smileidentity.com/v1"
    smile_production_url: str = "https://api.smileidentity.com/v1"

    # Provider / storage backends
    provider_mode: str = "smileid"  # "smileid" or "mock"
    job_store_backend: str = "memory"  # "memory" or "supabase"

    # Supabase (only when job_store_backend=supabase)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_jobs_table: str = "verification_jobs"
    supabase_timeout_seconds: float = 10.0

    # External call deadlines (seconds)
    token_timeout_seconds: float = 15.0
    submit_timeout_seconds: float = 30.0
    poll_timeout_seconds: float = 10.0

    # Reconciliation
    poll_interval_seconds: float = 3.0
    poll_ceiling_seconds: float = 300.0
    poll_confirm_grace_seconds: float = 5.0
    job_max_age_seconds: float = 300.0
    expiry_sweep_seconds: float = 30.0

    # Compare-and-swap retry loop
    cas_max_attempts: int = 5
    cas_backoff_seconds: float = 0.02

    verify_callback_signature: bool = False

    # Service
    port: int = 3000
    debug: bool = False
    log_level: Optional[str] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def environment(self) -> str:
        return "production" if self.smile_server_mode == 1 else "sandbox"

    @property
    def provider_base_url(self) -> str:
        if self.smile_server_mode == 1:
            return self.smile_production_url
        return self.smile_sandbox_url

    def missing_provider_fields(self) -> list:
        """Names of required SmileID settings that are unset."""
        required = {
            "SMILE_PARTNER_ID": self.smile_partner_id,
            "SMILE_API_KEY": self.smile_api_key,
            "SMILE_DEFAULT_CALLBACK": self.smile_default_callback,
        }
        return [name for name, value in required.items() if not value]


settings = Settings()
