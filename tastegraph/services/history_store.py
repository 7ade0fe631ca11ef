from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
import time

from tastegraph.config.logger import app_logger
from tastegraph.models.domain import Recommendation, RecommendationsByDomain
from tastegraph.services.cache_backend import CacheBackend
from tastegraph.services.cached_graph import NS_HISTORY


GLOBAL_KEY = "global"


@dataclass
class HistoryEntry:
    """A previously generated successful result."""

    user_id: str
    input_names: List[str]
    recommendations: RecommendationsByDomain
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "input_names": list(self.input_names),
            "recommendations": {
                domain: [rec.to_dict() for rec in recs] for domain, recs in self.recommendations.items()
            },
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            user_id=data.get("user_id", ""),
            input_names=list(data.get("input_names") or []),
            recommendations={
                domain: [Recommendation.from_dict(rec) for rec in recs]
                for domain, recs in (data.get("recommendations") or {}).items()
            },
            created_at=float(data.get("created_at") or 0.0),
        )


class HistoryStore:
    """Recent successful results per user and across all users, kept in the ``history`` namespace."""

    def __init__(
        self,
        backend: CacheBackend,
        per_user_limit: int = 10,
        global_limit: int = 200,
        retention_seconds: float = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.per_user_limit = per_user_limit
        self.global_limit = global_limit
        self.retention_seconds = retention_seconds
        self._clock = clock

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"user:{user_id}"

    async def _append(self, key: str, entry: Dict[str, Any], limit: int) -> None:
        entries = await self.backend.get(NS_HISTORY, key) or []
        entries.insert(0, entry)
        await self.backend.set(NS_HISTORY, key, entries[:limit], ttl_seconds=self.retention_seconds)

    async def record(self, user_id: str, input_names: Sequence[str], recommendations: RecommendationsByDomain) -> None:
        if not any(recommendations.values()):
            return
        entry = HistoryEntry(
            user_id=user_id,
            input_names=list(input_names),
            recommendations=recommendations,
            created_at=self._clock(),
        ).to_dict()
        try:
            await self._append(self._user_key(user_id), entry, self.per_user_limit)
            await self._append(GLOBAL_KEY, entry, self.global_limit)
        except Exception as exc:
            app_logger.error(f"[History] Failed to record history for {user_id}: {exc}")

    async def recent_for_user(self, user_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        entries = await self.backend.get(NS_HISTORY, self._user_key(user_id)) or []
        return [HistoryEntry.from_dict(e) for e in entries[: limit or self.per_user_limit]]

    async def recent_global(self, within_seconds: float, limit: int = 50) -> List[HistoryEntry]:
        cutoff = self._clock() - within_seconds
        entries = await self.backend.get(NS_HISTORY, GLOBAL_KEY) or []
        recent = [HistoryEntry.from_dict(e) for e in entries if float(e.get("created_at") or 0) >= cutoff]
        return recent[:limit]
