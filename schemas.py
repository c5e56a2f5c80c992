from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ProfileAttributes(BaseModel):
    """Reputation data for one player; every field may be missing upstream."""
    account_level: Optional[int] = None
    playtime_minutes: Optional[int] = None
    rating: Optional[float] = None

    def is_empty(self) -> bool:
        return (
            self.account_level is None
            and self.playtime_minutes is None
            and self.rating is None
        )


class ServerContext(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    verification_enabled: bool = True


class EvaluateRequest(BaseModel):
    steam_id: str
    ip: str
    player_name: Optional[str] = None
    server_name: Optional[str] = None
    server_address: Optional[str] = None
    verification_enabled: bool = True


class DecisionResponse(BaseModel):
    verdict: str           # ALLOW | DENY | PENDING | UNKNOWN
    rule: str              # which check produced the verdict
    reason: Optional[str]
    expires_at: Optional[datetime] = None
    stale: bool = False
    attributes: Optional[ProfileAttributes] = None


class VerificationResponse(BaseModel):
    steam_id: str
    status: str
    verdict: Optional[str]
    reason: Optional[str]
    stale: bool
    attributes: Optional[ProfileAttributes]
    updated_at: Optional[datetime]


class ResolveRequest(BaseModel):
    status: str = Field(pattern="^(allowed|denied)$")
    reason: Optional[str] = None


class HealthResponse(BaseModel):
    status: str


class ErrorResponse(BaseModel):
    detail: str
