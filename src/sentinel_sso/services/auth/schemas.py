from typing import Optional

from pydantic import BaseModel


class UserContext(BaseModel):
    user_id: str
    email: str
    tenant_id: str
    role: str
    provider_id: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
