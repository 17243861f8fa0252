"""
Per-user aggregate document: personal questions, a lightweight mistake bank
and study statistics, all embedded in one ``user_data`` document per user.

Every operation reads the document, changes it in Python and writes the whole
document back; concurrent writers on the same user overwrite each other.
"""
import logging
import random
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from database import create_document, get_db, serialize, to_object_id
from errors import Conflict, NotFound, ValidationFailed
from schemas import BankMistake, ExamEntry, PersonalQuestion, StudyStats, UserData
import sync

logger = logging.getLogger(__name__)

COLLECTION = "user_data"
MAX_EXAM_ENTRIES = 100
MAX_BATCH = 100
CHOICE_TYPES = ("single", "multiple")
PERSONAL_EDITABLE = ("type", "content", "options", "answer", "analysis", "difficulty", "tags")
TIME_RANGES = {"today": 1, "week": 7, "month": 30, "year": 365}
SERVER_DEVICE_ID = "server"
SERVER_IMPORT_TYPES = ("personalQuestions", "mistakeBank", "studyStats")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _day(value: Any) -> Optional[str]:
    value = _as_datetime(value)
    return value.strftime("%Y-%m-%d") if value else None


def _month(value: Any) -> Optional[str]:
    value = _as_datetime(value)
    return value.strftime("%Y-%m") if value else None


def _paginate(items: List[Any], page: int, limit: int) -> Dict[str, Any]:
    page, limit = max(1, int(page)), max(1, int(limit))
    total = len(items)
    return {
        "items": items[(page - 1) * limit:page * limit],
        "pagination": {"total": total, "page": page, "limit": limit, "pages": -(-total // limit)},
    }


def _validation_errors(e: ValidationError) -> Dict[str, Any]:
    return {"errors": e.errors(include_url=False)}


def get_or_create_user_data(user_id: Any) -> Dict[str, Any]:
    db = get_db()
    user = to_object_id(user_id, "User")
    doc = db[COLLECTION].find_one({"userId": user})
    if doc:
        return doc
    doc = UserData(userId=user).to_mongo()
    doc["studyStats"] = sync.recompute_study_stats(doc["studyStats"])
    doc["_id"] = create_document(COLLECTION, doc)
    logger.info("Created user data for %s", user)
    return doc


def _save(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["updatedAt"] = datetime.utcnow()
    get_db()[COLLECTION].replace_one({"_id": doc["_id"]}, doc)
    return doc


def _find(items: List[Dict[str, Any]], item_id: str, what: str) -> int:
    for index, item in enumerate(items):
        if item.get("id") == item_id:
            return index
    raise NotFound(f"{what} not found")


def _matches(item: Dict[str, Any], type: str = "", tags: Optional[Iterable[str]] = None, search: str = "",
             search_fields: Iterable[str] = ("content",)) -> bool:
    if type and item.get("type") != type:
        return False
    if tags and not set(item.get("tags") or []) & set(tags):
        return False
    if search:
        needle = search.lower()
        if not any(needle in str(item.get(f) or "").lower() for f in search_fields):
            return False
    return True


# Personal questions

def _validate_personal(data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        question = PersonalQuestion.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed("Invalid question", _validation_errors(e))
    if question.type in CHOICE_TYPES and not question.options:
        raise ValidationFailed("Choice questions need options")
    return question.model_dump()


def add_personal_question(user_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    now = datetime.utcnow()
    question = _validate_personal({
        **data,
        "id": data.get("id") or _new_id("personal"),
        "createdAt": now,
        "updatedAt": now,
        "usageCount": 0,
    })
    if any(q.get("id") == question["id"] for q in doc["personalQuestions"]):
        raise Conflict("Question id already exists")
    doc["personalQuestions"].append(question)
    _save(doc)
    return question


def import_personal_questions(user_id: Any, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Add many personal questions at once; invalid items are reported and skipped."""
    if not items:
        raise ValidationFailed("No questions to import")
    if len(items) > MAX_BATCH:
        raise ValidationFailed(f"Cannot import more than {MAX_BATCH} questions at once")
    doc = get_or_create_user_data(user_id)
    now = datetime.utcnow()
    added, errors = [], []
    for index, item in enumerate(items):
        try:
            added.append(_validate_personal({
                **item,
                "id": _new_id("personal"),
                "createdAt": now,
                "updatedAt": now,
                "usageCount": 0,
            }))
        except ValidationFailed as e:
            errors.append({"index": index, "error": e.message})
    if added:
        doc["personalQuestions"].extend(added)
        _save(doc)
    logger.info("Imported %d/%d personal questions for %s", len(added), len(items), user_id)
    return {"imported": added, "errors": errors, "summary": {"total": len(items), "success": len(added), "failed": len(errors)}}


def list_personal_questions(user_id: Any, page: int = 1, limit: int = 20, type: str = "",
                            difficulty: Optional[int] = None, tags: Optional[List[str]] = None,
                            search: str = "") -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    found = [
        q for q in doc["personalQuestions"]
        if _matches(q, type, tags, search) and (difficulty is None or q.get("difficulty") == difficulty)
    ]
    result = _paginate(found, page, limit)
    return {"questions": serialize(result["items"]), "pagination": result["pagination"]}


def get_personal_question(user_id: Any, question_id: str) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    questions = doc["personalQuestions"]
    return serialize(questions[_find(questions, question_id, "Question")])


def update_personal_question(user_id: Any, question_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    questions = doc["personalQuestions"]
    index = _find(questions, question_id, "Question")
    changes = {k: v for k, v in updates.items() if k in PERSONAL_EDITABLE}
    questions[index] = _validate_personal({**questions[index], **changes, "updatedAt": datetime.utcnow()})
    _save(doc)
    return serialize(questions[index])


def delete_personal_question(user_id: Any, question_id: str) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    questions = doc["personalQuestions"]
    removed = questions.pop(_find(questions, question_id, "Question"))
    _save(doc)
    return {"deleted": removed["id"]}


# Mistake bank

def add_bank_mistake(user_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    for existing in doc["mistakeBank"]:
        if existing.get("questionId") == data.get("questionId") and existing.get("wrongAnswer") == data.get("wrongAnswer"):
            raise Conflict("This mistake is already in the mistake bank")
    try:
        mistake = BankMistake.model_validate({
            **data,
            "id": _new_id("mistake"),
            "mistakeTime": datetime.utcnow(),
            "reviewCount": 0,
            "lastReviewTime": None,
        }).model_dump()
    except ValidationError as e:
        raise ValidationFailed("Invalid mistake", _validation_errors(e))
    doc["mistakeBank"].append(mistake)
    _save(doc)
    return mistake


def list_bank_mistakes(user_id: Any, page: int = 1, limit: int = 20, type: str = "",
                       is_important: Optional[bool] = None, time_range: str = "",
                       tags: Optional[List[str]] = None, search: str = "",
                       now: Optional[datetime] = None) -> Dict[str, Any]:
    if time_range and time_range not in TIME_RANGES:
        raise ValidationFailed(f"timeRange must be one of {', '.join(TIME_RANGES)}")
    doc = get_or_create_user_data(user_id)
    since = (now or datetime.utcnow()) - timedelta(days=TIME_RANGES[time_range]) if time_range else None
    found = []
    for m in doc["mistakeBank"]:
        if not _matches(m, type, tags, search, ("content", "analysis")):
            continue
        if is_important and not m.get("isImportant"):
            continue
        if since is not None and (_as_datetime(m.get("mistakeTime")) or datetime.min) < since:
            continue
        found.append(m)
    found.sort(key=lambda m: _as_datetime(m.get("mistakeTime")) or datetime.min, reverse=True)
    result = _paginate(found, page, limit)
    return {
        "mistakes": serialize(result["items"]),
        "stats": _mistake_counts(doc["mistakeBank"]),
        "pagination": result["pagination"],
    }


def _update_bank_mistake(user_id: Any, mistake_id: str, change: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    mistakes = doc["mistakeBank"]
    mistake = mistakes[_find(mistakes, mistake_id, "Mistake")]
    change(mistake)
    _save(doc)
    return serialize(mistake)


def toggle_important(user_id: Any, mistake_id: str) -> Dict[str, Any]:
    def flip(m):
        m["isImportant"] = not m.get("isImportant", False)
    return _update_bank_mistake(user_id, mistake_id, flip)


def review_bank_mistake(user_id: Any, mistake_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    def reviewed(m):
        m["reviewCount"] = m.get("reviewCount", 0) + 1
        m["lastReviewTime"] = now or datetime.utcnow()
    return _update_bank_mistake(user_id, mistake_id, reviewed)


def delete_bank_mistake(user_id: Any, mistake_id: str) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    mistakes = doc["mistakeBank"]
    removed = mistakes.pop(_find(mistakes, mistake_id, "Mistake"))
    _save(doc)
    return {"deleted": removed["id"]}


def delete_bank_mistakes(user_id: Any, mistake_ids: List[str]) -> Dict[str, Any]:
    if not mistake_ids:
        raise ValidationFailed("No mistakes selected")
    doc = get_or_create_user_data(user_id)
    ids = set(mistake_ids)
    before = len(doc["mistakeBank"])
    doc["mistakeBank"] = [m for m in doc["mistakeBank"] if m.get("id") not in ids]
    _save(doc)
    return {"deleted": before - len(doc["mistakeBank"])}


def practice_mistakes(user_id: Any, count: int = 10, type: str = "", is_important: Optional[bool] = None,
                      tags: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Pick the least reviewed mistakes matching the filters, in random order."""
    doc = get_or_create_user_data(user_id)
    found = [
        m for m in doc["mistakeBank"]
        if _matches(m, type, tags) and (not is_important or m.get("isImportant"))
    ]
    if not found:
        raise NotFound("No mistakes match the filters")
    found.sort(key=lambda m: m.get("reviewCount", 0))
    picked = found[:max(1, count)]
    random.shuffle(picked)
    return serialize(picked)


def _mistake_counts(mistakes: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_type: Dict[str, int] = {}
    by_month: Dict[str, int] = {}
    for m in mistakes:
        by_type[m.get("type")] = by_type.get(m.get("type"), 0) + 1
        month = _month(m.get("mistakeTime"))
        if month:
            by_month[month] = by_month.get(month, 0) + 1
    return {
        "total": len(mistakes),
        "byType": by_type,
        "byMonth": by_month,
        "important": sum(1 for m in mistakes if m.get("isImportant")),
        "unreviewed": sum(1 for m in mistakes if not m.get("reviewCount")),
    }


def mistake_summary(user_id: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    mistakes = doc["mistakeBank"]
    now = now or datetime.utcnow()
    days = [(now - timedelta(days=i)).strftime("%Y-%m-%d") for i in range(6, -1, -1)]
    per_day = {day: 0 for day in days}
    for m in mistakes:
        day = _day(m.get("mistakeTime"))
        if day in per_day:
            per_day[day] += 1
    counts = _mistake_counts(mistakes)
    return {
        "summary": counts,
        "last7Days": [{"date": day, "count": per_day[day]} for day in days],
        "typeDistribution": counts["byType"],
        "reviewStats": {
            "total": len(mistakes),
            "reviewed": sum(1 for m in mistakes if m.get("reviewCount", 0) > 0),
            "unreviewed": counts["unreviewed"],
            "mastered": sum(1 for m in mistakes if m.get("reviewCount", 0) >= 3),
        },
    }


# Study statistics

def get_study_stats(user_id: Any) -> Dict[str, Any]:
    stats = get_or_create_user_data(user_id)["studyStats"]
    records = stats.get("examRecords") or []
    n = len(records)

    def avg(field):
        return round(sum(r.get(field, 0) for r in records) / n) if n else 0

    return serialize({
        **stats,
        "totalExams": n,
        "averageScore": avg("score"),
        "averageDuration": avg("duration"),
        "averageQuestions": avg("totalQuestions"),
        "recentExams": list(reversed(records[-5:])),
    })


def add_exam_entry(user_id: Any, data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Append an exam to the history (capped) and fold its counts into the totals."""
    try:
        entry = ExamEntry.model_validate({**data, "date": now or datetime.utcnow()}).model_dump()
    except ValidationError as e:
        raise ValidationFailed("Invalid exam entry", _validation_errors(e))
    doc = get_or_create_user_data(user_id)
    stats = doc["studyStats"]
    stats["examRecords"] = (list(stats.get("examRecords") or []) + [entry])[-MAX_EXAM_ENTRIES:]
    stats["totalQuestions"] = stats.get("totalQuestions", 0) + entry["totalQuestions"]
    stats["correctAnswers"] = stats.get("correctAnswers", 0) + entry["correctCount"]
    stats["totalStudyTime"] = stats.get("totalStudyTime", 0) + entry["duration"]
    sync.recompute_study_stats(stats)
    _save(doc)
    return {"examRecord": serialize(entry), "updatedStats": serialize(stats)}


def list_exam_entries(user_id: Any, page: int = 1, limit: int = 20, type: str = "") -> Dict[str, Any]:
    """Exam entries, newest first. ``index`` in each item addresses it for get/delete."""
    records = get_or_create_user_data(user_id)["studyStats"].get("examRecords") or []
    indexed = [{**r, "index": i} for i, r in enumerate(records) if not type or r.get("type") == type]
    indexed.reverse()
    result = _paginate(indexed, page, limit)
    return {"records": serialize(result["items"]), "pagination": result["pagination"]}


def _entry_index(records: List[Any], index: int) -> int:
    if not isinstance(index, int) or not 0 <= index < len(records):
        raise NotFound("Exam entry not found")
    return index


def get_exam_entry(user_id: Any, index: int) -> Dict[str, Any]:
    records = get_or_create_user_data(user_id)["studyStats"].get("examRecords") or []
    return serialize(records[_entry_index(records, index)])


def delete_exam_entry(user_id: Any, index: int) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    stats = doc["studyStats"]
    records = stats.get("examRecords") or []
    removed = records.pop(_entry_index(records, index))
    stats["examRecords"] = records
    stats["totalQuestions"] = max(0, stats.get("totalQuestions", 0) - removed.get("totalQuestions", 0))
    stats["correctAnswers"] = max(0, stats.get("correctAnswers", 0) - removed.get("correctCount", 0))
    stats["totalStudyTime"] = max(0, stats.get("totalStudyTime", 0) - removed.get("duration", 0))
    sync.recompute_study_stats(stats)
    _save(doc)
    return {"deleted": serialize(removed), "updatedStats": serialize(stats)}


def update_study_stats(user_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    changes = {k: updates[k] for k in sync.COUNTER_FIELDS if updates.get(k) is not None}
    try:
        stats = StudyStats.model_validate({**doc["studyStats"], **changes}).model_dump()
    except ValidationError as e:
        raise ValidationFailed("Invalid study stats", _validation_errors(e))
    if stats["correctAnswers"] > stats["totalQuestions"]:
        raise ValidationFailed("correctAnswers cannot exceed totalQuestions")
    doc["studyStats"] = sync.recompute_study_stats(stats)
    _save(doc)
    return serialize(doc["studyStats"])


def reset_study_stats(user_id: Any, confirm: bool = False) -> Dict[str, Any]:
    if confirm is not True:
        raise ValidationFailed("Resetting study stats must be confirmed")
    doc = get_or_create_user_data(user_id)
    old = doc["studyStats"]
    doc["studyStats"] = sync.empty_study_stats()
    _save(doc)
    logger.info("Study stats reset for %s", user_id)
    return {"oldStats": serialize(old), "newStats": doc["studyStats"]}


def _bucket(label_key: str, label: str, entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        label_key: label,
        "score": round(sum(e.get("score", 0) for e in entries) / len(entries)) if entries else None,
        "examCount": len(entries),
        "questionCount": sum(e.get("totalQuestions", 0) for e in entries),
    }


def study_trends(user_id: Any, period: str = "month", now: Optional[datetime] = None) -> Dict[str, Any]:
    """Average score per day (week), per 7-day window (month) or per calendar month (year)."""
    if period not in ("week", "month", "year"):
        raise ValidationFailed("period must be week, month or year")
    now = now or datetime.utcnow()
    records = get_or_create_user_data(user_id)["studyStats"].get("examRecords") or []
    trends = []
    if period == "week":
        for i in range(6, -1, -1):
            day = (now - timedelta(days=i)).strftime("%Y-%m-%d")
            trends.append(_bucket("date", day, [r for r in records if _day(r.get("date")) == day]))
    elif period == "month":
        for i in range(3, -1, -1):
            start, end = now - timedelta(days=(i + 1) * 7), now - timedelta(days=i * 7)
            window = [r for r in records if start <= (_as_datetime(r.get("date")) or datetime.min) < end]
            trends.append(_bucket("period", f"week {4 - i}", window))
    else:
        for i in range(11, -1, -1):
            year, month = divmod(now.year * 12 + now.month - 1 - i, 12)
            label = f"{year:04d}-{month + 1:02d}"
            trends.append(_bucket("period", label, [r for r in records if _month(r.get("date")) == label]))
    return {"period": period, "trends": trends}


def _window_stats(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "examCount": len(entries),
        "questionCount": sum(e.get("totalQuestions", 0) for e in entries),
        "studyTime": sum(e.get("duration", 0) for e in entries),
        "averageScore": round(sum(e.get("score", 0) for e in entries) / len(entries)) if entries else 0,
    }


def study_overview(user_id: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    doc = get_or_create_user_data(user_id)
    stats = doc["studyStats"]
    records = stats.get("examRecords") or []
    today = now.strftime("%Y-%m-%d")
    # weeks start on Sunday
    week_start = (now - timedelta(days=(now.weekday() + 1) % 7)).replace(hour=0, minute=0, second=0, microsecond=0)

    type_stats: Dict[str, Dict[str, int]] = {}
    for r in records:
        for q in r.get("questions") or []:
            if not isinstance(q, dict) or not q.get("type"):
                continue
            counts = type_stats.setdefault(q["type"], {"total": 0, "correct": 0})
            counts["total"] += 1
            counts["correct"] += int(bool(q.get("isCorrect")))
    for counts in type_stats.values():
        counts["rate"] = round(counts["correct"] / counts["total"] * 100)

    return {
        "totalExams": len(records),
        "totalQuestions": stats.get("totalQuestions", 0),
        "totalStudyTime": stats.get("totalStudyTime", 0),
        "averageScore": stats.get("averageScore", 0),
        "bestScore": stats.get("bestScore", 0),
        "correctRate": stats.get("correctRate", 0),
        "mistakeCount": len(doc["mistakeBank"]),
        "personalQuestionCount": len(doc["personalQuestions"]),
        "todayStats": _window_stats([r for r in records if _day(r.get("date")) == today]),
        "weekStats": _window_stats([r for r in records if (_as_datetime(r.get("date")) or datetime.min) >= week_start]),
        "typeStats": type_stats,
    }


# Server-side sync

def _store_for(doc: Dict[str, Any]) -> sync.LocalStore:
    return sync.LocalStore(
        personal_questions=list(doc["personalQuestions"]),
        mistake_bank=list(doc["mistakeBank"]),
        study_stats=dict(doc["studyStats"]),
    )


def export_sync_document(user_id: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    doc = get_or_create_user_data(user_id)
    document = sync.build_export(
        _store_for(doc),
        SERVER_DEVICE_ID,
        include_public=False,
        extra={"syncVersion": doc.get("syncVersion", 1)},
        now=now,
    )
    return serialize(document)


def import_sync_document(user_id: Any, document: Any) -> Dict[str, Any]:
    """Merge a client's sync document into the user's data.

    Public questions in the document are ignored; the public bank is managed
    through the question service.
    """
    doc = get_or_create_user_data(user_id)
    store = _store_for(doc)
    result = sync.import_document(store, document, allowed_types=SERVER_IMPORT_TYPES)
    doc["personalQuestions"] = store.personal_questions
    doc["mistakeBank"] = store.mistake_bank
    doc["studyStats"] = store.study_stats
    doc["syncVersion"] = doc.get("syncVersion", 1) + 1
    doc["lastSync"] = datetime.utcnow()
    _save(doc)
    logger.info("Sync import for %s: %s (version %d)", user_id, result.imported, doc["syncVersion"])
    return {**result.to_dict(), "syncVersion": doc["syncVersion"]}
