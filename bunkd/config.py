from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Backend project (https://<ref>.supabase.co) and its public anon key
    SUPABASE_URL: str = "https://your-project-ref.supabase.co"
    SUPABASE_ANON_KEY: str = "your-anon-key-here"

    # Edge functions are also served from https://<ref>.<FUNCTIONS_FALLBACK_DOMAIN>/<name>
    FUNCTIONS_FALLBACK_DOMAIN: str = "functions.supabase.co"

    HTTP_TIMEOUT_SECONDS: float = 30.0

    POLL_MAX_ATTEMPTS: int = 30
    POLL_INTERVAL_SECONDS: float = 2.0

    HISTORY_PAGE_SIZE: int = 50

    # Backend error wording we match on, lower-case substrings.
    # error_code values from the auth server are checked against the same list.
    ANON_DISABLED_SIGNATURES: List[str] = [
        "anonymous sign-ins are disabled",
        "anonymous_provider_disabled",
    ]
    INVALID_TOKEN_SIGNATURES: List[str] = [
        "invalid jwt",
    ]

    class Config:
        env_file = ".env"


settings = Settings()
