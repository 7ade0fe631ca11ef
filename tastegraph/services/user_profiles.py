from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from tastegraph.config.logger import app_logger
from tastegraph.services.cache_backend import CacheBackend
from tastegraph.services.cached_graph import NS_USER_PROFILES
from tastegraph.utils.errors import ValidationError


DEFAULT_TIER = "free"


@dataclass
class UserProfile:
    user_id: str
    tier: str = DEFAULT_TIER
    email: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "tier": self.tier, "email": self.email, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=data["user_id"],
            tier=data.get("tier") or DEFAULT_TIER,
            email=data.get("email"),
            created_at=data.get("created_at") or datetime.now(timezone.utc).isoformat(),
        )


class UserProfileStore:
    """Tier lookup records kept in the ``user:profiles`` cache namespace."""

    def __init__(self, backend: CacheBackend, known_tiers: Iterable[str] = ("free", "premium", "enterprise")):
        self.backend = backend
        self.known_tiers = tuple(known_tiers)

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        data = await self.backend.get(NS_USER_PROFILES, user_id)
        return UserProfile.from_dict(data) if data else None

    async def get_or_create(self, user_id: str, email: Optional[str] = None) -> UserProfile:
        profile = await self.get_profile(user_id)
        if profile is not None:
            return profile
        profile = UserProfile(user_id=user_id, email=email)
        await self.backend.set(NS_USER_PROFILES, user_id, profile.to_dict())
        app_logger.info(f"[UserProfiles] Created {profile.tier} profile for user {user_id}")
        return profile

    async def set_tier(self, user_id: str, tier: str) -> UserProfile:
        if tier not in self.known_tiers:
            raise ValidationError(
                f"Unknown tier '{tier}'",
                [{"field": "tier", "message": f"must be one of: {', '.join(self.known_tiers)}"}],
            )
        profile = await self.get_or_create(user_id)
        profile.tier = tier
        await self.backend.set(NS_USER_PROFILES, user_id, profile.to_dict())
        app_logger.info(f"[UserProfiles] User {user_id} moved to tier {tier}")
        return profile
