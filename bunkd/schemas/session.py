from pydantic import BaseModel
from typing import Optional


class Session(BaseModel):
    user_id: str
    access_token: str
    expires_at: Optional[int] = None  # unix seconds
    is_anonymous: bool = True
    refresh_token: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def token_prefix(self) -> str:
        return self.access_token[:12] + "..."


class AuthState(BaseModel):
    """
    Snapshot of the session manager, published to subscribers on every change.

    - initialized: the first sign-in attempt has finished, successfully or not
    - anonymous_disabled: the backend refuses anonymous sign-ins (configuration issue)
    - error: last sign-in failure message, if any
    """
    initialized: bool = False
    is_authenticated: bool = False
    anonymous_disabled: bool = False
    user_id: Optional[str] = None
    error: Optional[str] = None

    model_config = {"frozen": True}
