"""Supabase client for the persistent job store."""

from typing import Optional

from supabase import Client, create_client

from kyc_gateway.config import Settings, settings as default_settings

_clients: dict = {}


def get_supabase(config: Optional[Settings] = None) -> Client:
    """Service-role client for ``config``, created once per project URL and key."""
    config = config or default_settings
    missing = [
        name
        for name, value in (
            ("SUPABASE_URL", config.supabase_url),
            ("SUPABASE_SERVICE_ROLE_KEY", config.supabase_service_role_key),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(f"JOB_STORE_BACKEND=supabase requires {', '.join(missing)}")

    key = (config.supabase_url, config.supabase_service_role_key)
    if key not in _clients:
        _clients[key] = create_client(*key)
    return _clients[key]
