import hashlib
import json
import logging
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError as ModelValidationError

from .models import CacheEntry, EvaluationResult, SourceHashes
from .store import ArtifactStore
from .utils import file_sha256

logger = logging.getLogger(__name__)

INDEX_NAME = "index.json"
DEFAULT_TTL_HOURS = 168.0


def make_key(sources: SourceHashes) -> str:
    """Audio hash first, then the image hashes sorted so their order does not matter."""
    joined = sources.audio + "".join(sorted(sources.images))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def hash_sources(audio_path: str, image_paths: Sequence[str]) -> SourceHashes:
    return SourceHashes(
        audio=file_sha256(audio_path),
        images=sorted(file_sha256(p) for p in image_paths),
    )


def compute_key(audio_path: str, image_paths: Sequence[str]) -> str:
    return make_key(hash_sources(audio_path, image_paths))


def _created_at(raw: Any) -> float:
    """Creation time of a raw index entry; 0 (long expired) when unreadable."""
    if not isinstance(raw, dict):
        return 0.0
    try:
        return float(raw.get("created_at", 0))
    except (TypeError, ValueError):
        return 0.0


def _atomic_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class ResultCache:
    """
    Content-addressed evaluation results.

    The index lives in a single JSON file that is rewritten atomically on every
    change, so concurrent writers end up last-write-wins without corrupting it.
    The rendered artifacts belong to the ArtifactStore; an entry whose artifact
    has disappeared is evicted on lookup.
    """

    def __init__(
        self,
        cache_dir: Path,
        artifacts: ArtifactStore,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.index_path = self.cache_dir / INDEX_NAME
        self.artifacts = artifacts
        self.ttl_seconds = ttl_hours * 3600
        self.clock = clock
        self._lock = threading.Lock()
        os.makedirs(self.cache_dir, exist_ok=True)

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as exc:
            # bad JSON or bad UTF-8
            logger.error("Cache index %s is corrupt, starting empty: %s", self.index_path, exc)
            return {}
        if not isinstance(data, dict):
            logger.error("Cache index %s is not an object, starting empty", self.index_path)
            return {}
        return data

    def _save(self, index: Dict[str, Dict[str, Any]]) -> None:
        _atomic_write_json(self.index_path, index)

    def _expired(self, entry: CacheEntry) -> bool:
        return self.clock() - entry.created_at > self.ttl_seconds

    def _evict(self, key: str, reason: str) -> None:
        with self._lock:
            index = self._load()
            if index.pop(key, None) is not None:
                self._save(index)
        logger.warning("Evicted cache entry %s...: %s", key[:12], reason)

    # ---- lookups ----

    def lookup(self, key: str) -> Optional[CacheEntry]:
        raw = self._load().get(key)
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate(raw)
        except ModelValidationError as exc:
            self._evict(key, f"unreadable entry ({exc.error_count()} errors)")
            return None
        if not self.artifacts.exists(entry.artifact_reference):
            self._evict(key, f"artifact {entry.artifact_reference} no longer exists")
            return None
        if self._expired(entry):
            self._evict(key, "expired")
            return None
        logger.info("Cache hit %s... (artifact %s)", key[:12], entry.artifact_reference)
        return entry

    def get(self, audio_path: str, image_paths: Sequence[str]) -> Optional[EvaluationResult]:
        entry = self.lookup(compute_key(audio_path, image_paths))
        return entry.evaluation_result if entry else None

    # ---- writes ----

    def store(
        self,
        key: str,
        sources: SourceHashes,
        result: EvaluationResult,
        artifact_reference: str,
        executive_id: str = "",
        call_type: str = "",
    ) -> CacheEntry:
        entry = CacheEntry(
            content_key=key,
            created_at=self.clock(),
            evaluation_result=result,
            artifact_reference=artifact_reference,
            source_hashes=sources,
            executive_id=executive_id,
            call_type=call_type,
        )
        with self._lock:
            index = self._load()
            index[key] = entry.model_dump(mode="json")
            self._save(index)
        logger.info("Cached %s... -> %s", key[:12], artifact_reference)
        return entry

    def put(
        self,
        audio_path: str,
        image_paths: Sequence[str],
        result: EvaluationResult,
        artifact_reference: str,
        executive_id: str = "",
        call_type: str = "",
    ) -> CacheEntry:
        sources = hash_sources(audio_path, image_paths)
        return self.store(make_key(sources), sources, result, artifact_reference, executive_id, call_type)

    # ---- maintenance ----

    def cleanup(self) -> int:
        now = self.clock()
        with self._lock:
            index = self._load()
            expired: List[str] = [
                k for k, v in index.items()
                if now - _created_at(v) > self.ttl_seconds
            ]
            for k in expired:
                del index[k]
            if expired:
                self._save(index)
        if expired:
            logger.info("Cache cleanup evicted %d expired entries", len(expired))
        return len(expired)

    def remove(self, key: str) -> bool:
        with self._lock:
            index = self._load()
            found = index.pop(key, None) is not None
            if found:
                self._save(index)
        return found

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._load())
            self._save({})
        logger.info("Cache invalidated (%d entries)", count)
        return count

    def stats(self) -> Dict[str, Any]:
        index = self._load()
        stamps = [_created_at(v) for v in index.values() if isinstance(v, dict)]

        def iso(ts: Optional[float]) -> Optional[str]:
            if ts is None:
                return None
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")

        return {
            "entries": len(index),
            "oldest": iso(min(stamps)) if stamps else None,
            "newest": iso(max(stamps)) if stamps else None,
            "ttl_hours": self.ttl_seconds / 3600,
            "index_path": str(self.index_path),
        }
