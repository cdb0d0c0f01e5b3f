from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .config import MAX_DEPTH, MIN_DEPTH

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheScope:
    kind: str
    scope_id: str

    @classmethod
    def for_session(cls, topic_id: Optional[str], chapter_id: Optional[str]) -> Optional["CacheScope"]:
        if chapter_id:
            return cls(kind="chapter", scope_id=str(chapter_id))
        if topic_id:
            return cls(kind="topic", scope_id=str(topic_id))
        return None

    @classmethod
    def candidates(cls, topic_id: Optional[str], chapter_id: Optional[str]) -> List["CacheScope"]:
        out: List[CacheScope] = []
        if chapter_id:
            out.append(cls(kind="chapter", scope_id=str(chapter_id)))
        if topic_id:
            out.append(cls(kind="topic", scope_id=str(topic_id)))
        return out


@dataclass
class SummaryCacheEntry:
    summary: str
    question: str = ""
    answer_pills: List[str] = field(default_factory=list)
    correct_index: int = -1
    explanation: str = ""
    starters: List[str] = field(default_factory=list)
    generated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SummaryCacheEntry":
        return cls(
            summary=str(raw.get("summary") or ""),
            question=str(raw.get("question") or ""),
            answer_pills=[str(x) for x in (raw.get("answer_pills") or [])],
            correct_index=int(raw.get("correct_index", -1)),
            explanation=str(raw.get("explanation") or ""),
            starters=[str(x) for x in (raw.get("starters") or [])],
            generated_at=str(raw.get("generated_at") or ""),
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SummaryCacheEntry":
        return cls(
            summary=str(payload.get("summary") or ""),
            question=str(payload.get("question") or ""),
            answer_pills=list(payload.get("answerPills") or []),
            correct_index=int(payload.get("correctIndex", -1)),
            explanation=str(payload.get("explanation") or ""),
            starters=list(payload.get("starters") or []),
            generated_at=datetime.now().isoformat(timespec="seconds"),
        )

    def done_payload(self, depth: int) -> Dict[str, Any]:
        return {
            "depth": depth,
            "question": self.question,
            "answerPills": list(self.answer_pills),
            "correctIndex": self.correct_index,
            "explanation": self.explanation,
            "starters": list(self.starters),
        }


def clamp_depth(depth: Any) -> int:
    try:
        value = int(depth)
    except (TypeError, ValueError):
        value = MIN_DEPTH
    return max(MIN_DEPTH, min(MAX_DEPTH, value))


class SummaryCacheStore(Protocol):
    def get(self, user_id: str, scope: CacheScope, depth: int) -> Optional[SummaryCacheEntry]: ...

    def put(self, user_id: str, scope: CacheScope, depth: int, entry: SummaryCacheEntry) -> None: ...

    def last_depth(self, user_id: str, scope: CacheScope) -> Optional[int]: ...


class MemorySummaryCacheStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str, str, int], SummaryCacheEntry] = {}
        self._last: Dict[Tuple[str, str, str], int] = {}

    def get(self, user_id: str, scope: CacheScope, depth: int) -> Optional[SummaryCacheEntry]:
        with self._lock:
            entry = self._entries.get((user_id, scope.kind, scope.scope_id, depth))
            return SummaryCacheEntry.from_dict(entry.to_dict()) if entry is not None else None

    def put(self, user_id: str, scope: CacheScope, depth: int, entry: SummaryCacheEntry) -> None:
        stored = SummaryCacheEntry.from_dict(entry.to_dict())
        with self._lock:
            self._entries[(user_id, scope.kind, scope.scope_id, depth)] = stored
            self._last[(user_id, scope.kind, scope.scope_id)] = depth

    def last_depth(self, user_id: str, scope: CacheScope) -> Optional[int]:
        with self._lock:
            return self._last.get((user_id, scope.kind, scope.scope_id))


class RedisSummaryCacheStore:
    """Entries as JSON strings; entry and last-depth pointer written in one MULTI/EXEC."""

    def __init__(self, redis_client: Any, *, prefix: str = "summary") -> None:
        self.redis = redis_client
        self.prefix = str(prefix or "summary")

    def _base(self, user_id: str, scope: CacheScope) -> str:
        return f"{self.prefix}:{user_id}:{scope.kind}:{scope.scope_id}"

    def _entry_key(self, user_id: str, scope: CacheScope, depth: int) -> str:
        return f"{self._base(user_id, scope)}:{depth}"

    def _last_key(self, user_id: str, scope: CacheScope) -> str:
        return f"{self._base(user_id, scope)}:last"

    def get(self, user_id: str, scope: CacheScope, depth: int) -> Optional[SummaryCacheEntry]:
        raw = self.redis.get(self._entry_key(user_id, scope, depth))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            _log.warning("discarding corrupt summary cache entry scope=%s:%s", scope.kind, scope.scope_id)
            return None
        return SummaryCacheEntry.from_dict(data) if isinstance(data, dict) else None

    def put(self, user_id: str, scope: CacheScope, depth: int, entry: SummaryCacheEntry) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self._entry_key(user_id, scope, depth), json.dumps(entry.to_dict(), ensure_ascii=False))
        pipe.set(self._last_key(user_id, scope), str(depth))
        pipe.execute()

    def last_depth(self, user_id: str, scope: CacheScope) -> Optional[int]:
        raw = self.redis.get(self._last_key(user_id, scope))
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None


class SummaryCache:
    def __init__(self, store: SummaryCacheStore) -> None:
        self.store = store

    def resolve_depth(self, user_id: str, scopes: Sequence[CacheScope], raw_depth: Any) -> int:
        """Map a requested depth onto [1, 5].

        0 or missing means "unspecified": the last depth recorded for the first
        of ``scopes`` that has one (most specific first), else 1.
        """
        try:
            requested = int(raw_depth or 0)
        except (TypeError, ValueError):
            requested = 0
        if requested != 0:
            return clamp_depth(requested)
        for scope in scopes:
            last = self.store.last_depth(user_id, scope)
            if last is not None:
                return clamp_depth(last)
        return MIN_DEPTH

    def get(self, user_id: str, scope: CacheScope, depth: int) -> Optional[SummaryCacheEntry]:
        return self.store.get(user_id, scope, clamp_depth(depth))

    def put(self, user_id: str, scope: CacheScope, depth: int, entry: SummaryCacheEntry) -> None:
        self.store.put(user_id, scope, clamp_depth(depth), entry)

    def last_depth(self, user_id: str, scope: CacheScope) -> Optional[int]:
        return self.store.last_depth(user_id, scope)


def build_summary_cache_store(*, backend: str, redis_url: str) -> SummaryCacheStore:
    if str(backend or "").strip().lower() != "redis":
        return MemorySummaryCacheStore()
    try:
        from .redis_clients import get_redis_client

        client = get_redis_client(redis_url, decode_responses=True)
        client.ping()
        return RedisSummaryCacheStore(client)
    except Exception:
        _log.warning("Redis unavailable for summary cache; using in-memory fallback", exc_info=True)
        return MemorySummaryCacheStore()
