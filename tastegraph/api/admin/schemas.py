"""Administrative request and response schemas."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class TierUpdateRequest(BaseModel):
    tier: str = Field(..., description="free | premium | enterprise")

    model_config = {"json_schema_extra": {"example": {"tier": "premium"}}}


class WarmupEntity(BaseModel):
    name: str
    type: str
    id: Optional[str] = None


class WarmupRequest(BaseModel):
    entities: List[WarmupEntity] = Field(..., min_length=1, description="Popular entities to pre-load")


class CacheClearResult(BaseModel):
    namespace: str
    removed: int
    details: Dict[str, int] = Field(default_factory=dict)


class UserTierResponse(BaseModel):
    user_id: str
    tier: str
    email: Optional[str] = None


class ServiceHealthResponse(BaseModel):
    graph: bool
    explanations: bool
    overall: bool
    cache: bool
