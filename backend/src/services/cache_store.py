from __future__ import annotations

from copy import deepcopy
import json
import logging
from pathlib import Path
import re
from typing import Any, Dict, List, Optional

from privacy.models import PrivacyPreferences, SyncMutation

logger = logging.getLogger(__name__)


class CacheStore:
    """Key-value store for preference snapshots and unacknowledged mutations, keyed by user id."""

    def get_preferences(self, user_id: str) -> Optional[PrivacyPreferences]:
        raise NotImplementedError

    def put_preferences(self, user_id: str, preferences: PrivacyPreferences) -> None:
        raise NotImplementedError

    def drop_preferences(self, user_id: str) -> None:
        raise NotImplementedError

    def add_pending(self, user_id: str, mutation: SyncMutation) -> None:
        raise NotImplementedError

    def remove_pending(self, user_id: str, mutation_id: str) -> None:
        raise NotImplementedError

    def list_pending(self, user_id: str) -> List[SyncMutation]:
        raise NotImplementedError


class InMemoryCacheStore(CacheStore):
    def __init__(self) -> None:
        self._preferences: Dict[str, PrivacyPreferences] = {}
        self._pending: Dict[str, Dict[str, SyncMutation]] = {}

    def get_preferences(self, user_id: str) -> Optional[PrivacyPreferences]:
        cached = self._preferences.get(user_id)
        return deepcopy(cached) if cached is not None else None

    def put_preferences(self, user_id: str, preferences: PrivacyPreferences) -> None:
        self._preferences[user_id] = deepcopy(preferences)

    def drop_preferences(self, user_id: str) -> None:
        self._preferences.pop(user_id, None)

    def add_pending(self, user_id: str, mutation: SyncMutation) -> None:
        self._pending.setdefault(user_id, {})[mutation.id] = mutation

    def remove_pending(self, user_id: str, mutation_id: str) -> None:
        self._pending.get(user_id, {}).pop(mutation_id, None)

    def list_pending(self, user_id: str) -> List[SyncMutation]:
        return list(self._pending.get(user_id, {}).values())


class JsonFileCacheStore(CacheStore):
    """One JSON document per user under ``directory``.

    An unreadable or corrupted file is treated as a cache miss; the snapshot is
    rebuilt from the ledger on the next read.

    Calls are blocking file I/O. The engine runs the pending-mutation journal
    through ``asyncio.to_thread``. Files are not locked, so one directory should
    be owned by a single process.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    def _path(self, user_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)
        return self._directory / f"{safe}.json"

    def _load(self, user_id: str) -> Dict[str, Any]:
        path = self._path(user_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(f"Ignoring unreadable cache file {path}: {exc}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, user_id: str, data: Dict[str, Any]) -> None:
        path = self._path(user_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(data), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error(f"Unable to write cache file {path}: {exc}")

    def get_preferences(self, user_id: str) -> Optional[PrivacyPreferences]:
        raw = self._load(user_id).get("preferences")
        if not raw:
            return None
        try:
            return PrivacyPreferences.from_dict(raw)
        except (KeyError, ValueError, TypeError) as exc:
            logger.warning(f"Discarding malformed cached preferences for user {user_id}: {exc}")
            return None

    def put_preferences(self, user_id: str, preferences: PrivacyPreferences) -> None:
        data = self._load(user_id)
        data["preferences"] = preferences.to_dict()
        self._save(user_id, data)

    def drop_preferences(self, user_id: str) -> None:
        data = self._load(user_id)
        if data.pop("preferences", None) is not None:
            self._save(user_id, data)

    def add_pending(self, user_id: str, mutation: SyncMutation) -> None:
        data = self._load(user_id)
        data.setdefault("pending", {})[mutation.id] = mutation.to_dict()
        self._save(user_id, data)

    def remove_pending(self, user_id: str, mutation_id: str) -> None:
        data = self._load(user_id)
        if data.get("pending", {}).pop(mutation_id, None) is not None:
            self._save(user_id, data)

    def list_pending(self, user_id: str) -> List[SyncMutation]:
        pending = self._load(user_id).get("pending") or {}
        return [SyncMutation.from_dict(item) for item in pending.values()]
