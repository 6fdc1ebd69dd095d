from __future__ import annotations

from .settings import GatewaySettings
from .stores import SecretStore

GUEST_USER_ID = "guest"

CREDENTIAL_KEYS = {
    "gemini": "api_key_makersuite",
    "openai": "api_key_openai",
    "openrouter": "api_key_openrouter",
    "custom": "api_key_generic",
}


def credential_key_for(source: str) -> str:
    return CREDENTIAL_KEYS.get(source, CREDENTIAL_KEYS["custom"])


def default_credential(settings: GatewaySettings, key: str) -> str:
    defaults = {
        "api_key_makersuite": settings.makersuite_api_key,
        "api_key_openai": settings.openai_api_key,
        "api_key_openrouter": settings.openrouter_api_key,
        "api_key_generic": settings.generic_api_key,
    }
    return defaults.get(key, "")


def resolve_secret(
    store: SecretStore,
    settings: GatewaySettings,
    user_id: str | None,
    key: str,
) -> str | None:
    """Look up ``key`` for the user, then the shared guest scope, then process defaults."""

    if user_id and user_id != GUEST_USER_ID:
        value = store.find(user_id, key)
        if value:
            return value

    value = store.find(GUEST_USER_ID, key)
    if value:
        return value

    return default_credential(settings, key) or None
