"""
Cross-device synchronization.

A client serializes its question banks, mistake bank and study statistics
into a portable JSON "sync document"; another client (or the server) merges
that document back in. Merging is append-only and keyed: questions and
mistakes by ``id``, exam records by ``date``. Nothing local is ever
overwritten or removed, so importing the same document twice is a no-op.

Scalar counters (total questions, correct answers, study time) merge by
taking the larger value. That only holds up while those counters never go
down; deleting an exam entry does lower them, and a later merge with an older
export will bring the old values back.
"""
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

import config
from errors import ValidationFailed
from schemas import SYNC_DATA_TYPES, SyncDocument

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "1.0.0"
HISTORY_LIMIT = 10
COUNTER_FIELDS = ("totalQuestions", "correctAnswers", "totalStudyTime")


@dataclass
class MergeResult:
    merged: List[Any]
    added_count: int
    skipped_count: int


def by_id(item: Any) -> Any:
    return item.get("id") if isinstance(item, dict) else None


def by_date(item: Any) -> Any:
    if not isinstance(item, dict):
        return None
    value = item.get("date")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        # the document store keeps millisecond precision
        return value.replace(microsecond=value.microsecond // 1000 * 1000).isoformat()
    return value


def merge_collections(local: Iterable[Any], incoming: Iterable[Any], key_fn: Callable[[Any], Any]) -> MergeResult:
    """Append the incoming items whose key is not present locally.

    Local items are kept as they are, in order. Incoming items without a key,
    or repeating a key already seen, are skipped.
    """
    merged = list(local)
    seen = {key_fn(item) for item in merged}
    seen.discard(None)
    added = skipped = 0
    for item in incoming:
        key = key_fn(item)
        if key is None or key in seen:
            skipped += 1
            continue
        seen.add(key)
        merged.append(item)
        added += 1
    return MergeResult(merged, added, skipped)


def empty_study_stats() -> Dict[str, Any]:
    return {
        "totalQuestions": 0,
        "correctAnswers": 0,
        "totalStudyTime": 0,
        "examRecords": [],
        "correctRate": 0,
        "averageScore": 0,
        "bestScore": 0,
    }


def recompute_study_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
    total = stats.get("totalQuestions") or 0
    stats["correctRate"] = round((stats.get("correctAnswers") or 0) / total * 100) if total else 0
    scores = [r.get("score", 0) for r in stats.get("examRecords") or [] if isinstance(r, dict)]
    stats["averageScore"] = round(sum(scores) / len(scores)) if scores else 0
    stats["bestScore"] = max(scores) if scores else 0
    return stats


def merge_study_stats(local: Dict[str, Any], incoming: Dict[str, Any]) -> MergeResult:
    """Merge statistics: counters keep the maximum, exam records append by date.

    ``merged`` holds a one-element list with the new stats dict.
    """
    if not isinstance(incoming, dict):
        raise ValueError("studyStats must be an object")
    stats = {**incoming, **(local or empty_study_stats())}
    for name in COUNTER_FIELDS:
        stats[name] = max(stats.get(name) or 0, incoming.get(name) or 0)
    records = incoming.get("examRecords") or []
    if not isinstance(records, list):
        raise ValueError("studyStats.examRecords must be a list")
    result = merge_collections(stats.get("examRecords") or [], records, by_date)
    stats["examRecords"] = result.merged
    recompute_study_stats(stats)
    return MergeResult([stats], result.added_count, result.skipped_count)


def validate_sync_document(document: Any) -> SyncDocument:
    """Check the header fields of a sync document; raise ValidationFailed if unusable."""
    if not isinstance(document, dict):
        raise ValidationFailed("Sync document must be a JSON object")
    missing = [name for name in ("version", "exportTime", "deviceId") if not document.get(name)]
    if missing:
        raise ValidationFailed("Sync document is missing required fields", {"missing": missing})
    try:
        return SyncDocument.model_validate(document)
    except ValidationError as e:
        raise ValidationFailed("Invalid sync document", {"errors": e.errors(include_url=False)})


@dataclass
class LocalStore:
    """A client's in-memory banks."""

    public_questions: List[Dict[str, Any]] = field(default_factory=list)
    personal_questions: List[Dict[str, Any]] = field(default_factory=list)
    mistake_bank: List[Dict[str, Any]] = field(default_factory=list)
    study_stats: Dict[str, Any] = field(default_factory=empty_study_stats)

    FIELDS = {
        "publicQuestions": "public_questions",
        "personalQuestions": "personal_questions",
        "mistakeBank": "mistake_bank",
        "studyStats": "study_stats",
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalStore":
        store = cls()
        for key, attr in cls.FIELDS.items():
            if data.get(key) is not None:
                setattr(store, attr, data[key])
        return store

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in self.FIELDS.items()}

    @classmethod
    def load(cls, path: str) -> "LocalStore":
        if not os.path.exists(path):
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def save(self, path: str) -> None:
        _write_json(path, self.to_dict())


@dataclass
class ImportResult:
    success: bool = True
    imported: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "imported": self.imported, "skipped": self.skipped, "errors": self.errors}


def build_export(
    store: LocalStore,
    device_id: str,
    include_public: bool = True,
    include_personal: bool = True,
    include_mistakes: bool = True,
    include_stats: bool = True,
    extra: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        "version": DOCUMENT_VERSION,
        "deviceId": device_id,
        "exportTime": (now or datetime.now(timezone.utc)).isoformat(),
        "dataTypes": [],
        "stats": {},
        **(extra or {}),
    }
    if include_public:
        document["publicQuestions"] = list(store.public_questions)
        document["dataTypes"].append("publicQuestions")
        document["stats"]["publicQuestions"] = len(store.public_questions)
    if include_personal:
        document["personalQuestions"] = list(store.personal_questions)
        document["dataTypes"].append("personalQuestions")
        document["stats"]["personalQuestions"] = len(store.personal_questions)
    if include_mistakes:
        document["mistakeBank"] = list(store.mistake_bank)
        document["dataTypes"].append("mistakeBank")
        document["stats"]["mistakes"] = len(store.mistake_bank)
    if include_stats:
        document["studyStats"] = dict(store.study_stats)
        document["dataTypes"].append("studyStats")
    document["stats"]["totalQuestions"] = (
        document["stats"].get("publicQuestions", 0) + document["stats"].get("personalQuestions", 0)
    )
    if not document["dataTypes"]:
        raise ValidationFailed("Nothing selected for export")
    return document


def import_document(store: LocalStore, document: Any, allowed_types: Optional[Iterable[str]] = None) -> ImportResult:
    """Merge a sync document into ``store``.

    An invalid header raises ValidationFailed before anything is touched.
    After that each data type is merged on its own: a broken field is reported
    in ``errors`` and the remaining types are still imported.
    """
    validate_sync_document(document)
    wanted = set(document.get("dataTypes") or SYNC_DATA_TYPES)
    if allowed_types is not None:
        wanted &= set(allowed_types)

    result = ImportResult()
    for key in SYNC_DATA_TYPES:
        if key not in wanted or document.get(key) is None:
            continue
        attr = LocalStore.FIELDS[key]
        try:
            if key == "studyStats":
                merged = merge_study_stats(store.study_stats, document[key])
                setattr(store, attr, merged.merged[0])
            else:
                if not isinstance(document[key], list):
                    raise ValueError(f"{key} must be a list")
                merged = merge_collections(getattr(store, attr), document[key], by_id)
                setattr(store, attr, merged.merged)
            result.imported[key] = merged.added_count
            result.skipped[key] = merged.skipped_count
        except (TypeError, ValueError) as e:
            result.errors.append(f"{key}: {e}")
            logger.warning("Import of %s failed: %s", key, e)
    result.success = not result.errors
    logger.info("Imported sync document from %s: %s", document.get("deviceId"), result.imported)
    return result


def generate_device_id() -> str:
    return f"device_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _write_json(path: str, data: Any) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2, default=_json_default)
    os.replace(tmp, path)


class SyncState:
    """Small key-value file: device id, last sync time, and the recent sync outcomes."""

    def __init__(self, path: str):
        self.path = path
        data: Dict[str, Any] = {}
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        self.device_id: str = data.get("deviceId") or generate_device_id()
        self.last_sync_time: Optional[str] = data.get("lastSyncTime")
        self.history: List[Dict[str, Any]] = list(data.get("syncHistory") or [])[:HISTORY_LIMIT]
        if not data.get("deviceId"):
            self.save()

    def record(self, kind: str, success: bool, error: Optional[str] = None, stats: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "type": kind,
            "timestamp": int(time.time() * 1000),
            "success": success,
            "deviceId": self.device_id,
        }
        if error:
            entry["error"] = error
        if stats:
            entry["stats"] = stats
        self.history = [entry, *self.history][:HISTORY_LIMIT]
        self.last_sync_time = datetime.now(timezone.utc).isoformat()
        self.save()
        return entry

    def save(self) -> None:
        _write_json(self.path, {
            "deviceId": self.device_id,
            "lastSyncTime": self.last_sync_time,
            "syncHistory": self.history,
        })


class SyncManager:
    def __init__(self, store: LocalStore, state: SyncState, store_path: Optional[str] = None):
        self.store = store
        self.state = state
        self.store_path = store_path

    def export_document(self, **options) -> Dict[str, Any]:
        return build_export(self.store, self.state.device_id, **options)

    def export_to_file(self, path: str, **options) -> Dict[str, Any]:
        try:
            document = self.export_document(**options)
            _write_json(path, document)
        except (OSError, ValidationFailed) as e:
            self.state.record("export", False, str(e))
            raise
        self.state.record("export", True, stats=document["stats"])
        logger.info("Exported %s to %s", document["dataTypes"], path)
        return document

    def import_from_file(self, path: str) -> ImportResult:
        try:
            document = self._read_import_file(path)
        except ValidationFailed as e:
            self.state.record("import", False, e.message)
            raise
        return self.import_document(document)

    def import_document(self, document: Any, allowed_types: Optional[Iterable[str]] = None) -> ImportResult:
        try:
            result = import_document(self.store, document, allowed_types)
        except ValidationFailed as e:
            self.state.record("import", False, e.message)
            raise
        if self.store_path:
            self.store.save(self.store_path)
        self.state.record("import", result.success, "; ".join(result.errors) or None, result.imported)
        return result

    def _read_import_file(self, path: str) -> Any:
        if not path.lower().endswith(".json"):
            raise ValidationFailed("Sync file must be a .json file")
        if not os.path.exists(path):
            raise ValidationFailed("Sync file not found")
        if os.path.getsize(path) > config.MAX_IMPORT_BYTES:
            raise ValidationFailed(f"Sync file is larger than {config.MAX_IMPORT_BYTES} bytes")
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationFailed(f"Sync file is not valid JSON: {e}")

    def status(self) -> Dict[str, Any]:
        return {
            "deviceId": self.state.device_id,
            "lastSyncTime": self.state.last_sync_time,
            "history": self.state.history,
            "publicBankSize": len(self.store.public_questions),
            "personalBankSize": len(self.store.personal_questions),
            "mistakeBankSize": len(self.store.mistake_bank),
        }


class AutoSync:
    """Run ``sync_fn`` every ``interval`` seconds, and on demand through ``trigger``.

    A trigger that arrives while a sync is running is dropped, not queued.
    """

    def __init__(self, sync_fn: Callable[[], Any], interval: Optional[float] = None):
        self.sync_fn = sync_fn
        self.interval = config.SYNC_INTERVAL_SECONDS if interval is None else interval
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def trigger(self) -> bool:
        if not self._running.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return False
        try:
            self.sync_fn()
            return True
        except Exception:
            logger.exception("Sync failed")
            return False
        finally:
            self._running.release()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.trigger()

    def start(self) -> None:
        self.stop()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="auto-sync", daemon=True)
        self._thread.start()
        logger.info("Auto sync started (interval: %ss)", self.interval)

    def stop(self) -> None:
        if self._thread is not None:
            self._stop.set()
            self._thread.join()
            self._thread = None
            logger.info("Auto sync stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
