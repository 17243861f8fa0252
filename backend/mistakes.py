import logging
from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import ValidationError

from database import create_document, get_db, paginate, regex_any, serialize, to_object_id
from errors import NotFound, ValidationFailed
from schemas import MistakeRecord
import review

logger = logging.getLogger(__name__)

COLLECTION = "mistake"
UPDATABLE_FIELDS = ("mistakeReason", "tags", "importance", "masteryLevel", "reviewStatus", "userAnswer")


def _load(mistake_id: Any, user_id: Any) -> Dict[str, Any]:
    doc = get_db()[COLLECTION].find_one({
        "_id": to_object_id(mistake_id, "Mistake record"),
        "user": to_object_id(user_id, "User"),
    })
    if not doc:
        raise NotFound("Mistake record not found")
    return doc


def _save(record: MistakeRecord) -> Dict[str, Any]:
    # last write wins: the whole document is replaced
    doc = record.to_mongo()
    get_db()[COLLECTION].replace_one({"_id": doc["_id"]}, doc)
    return doc


def create_mistake_record(user_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    """Record a wrong answer, folding it into the active record for the same question if one exists."""
    db = get_db()
    user = to_object_id(user_id, "User")
    question = data.get("question")
    if question is None:
        raise ValidationFailed("question is required")
    try:
        question = to_object_id(question, "Question")
    except NotFound:
        raise ValidationFailed("question must be a valid id")

    existing = db[COLLECTION].find_one({"user": user, "question": question, "metadata.isArchived": False})
    if existing:
        merged = MistakeRecord.model_validate(existing).to_mongo()
        merged["errorStats"]["totalAttempts"] += 1
        merged["userAnswer"] = data.get("userAnswer", merged["userAnswer"])
        merged["tags"] = list(dict.fromkeys([*merged["tags"], *(data.get("tags") or [])]))
        for field in ("mistakeReason", "importance", "source", "examRecord"):
            merged[field] = data.get(field) or merged[field]
        try:
            record = MistakeRecord.model_validate(merged)
        except ValidationError as e:
            raise ValidationFailed("Invalid mistake record", {"errors": e.errors(include_url=False)})
        doc = _save(review.normalize(record))
        logger.info("Updated mistake %s for user %s (attempts=%d)", doc["_id"], user, record.errorStats.totalAttempts)
        return serialize(doc)

    try:
        record = MistakeRecord.model_validate({**data, "user": user, "question": question})
    except ValidationError as e:
        raise ValidationFailed("Invalid mistake record", {"errors": e.errors(include_url=False)})
    doc = review.normalize(record).to_mongo()
    doc["_id"] = create_document(COLLECTION, doc)
    logger.info("Created mistake %s for user %s", doc["_id"], user)
    return serialize(doc)


def list_mistakes(
    user_id: Any,
    page: int = 1,
    limit: int = 20,
    search: str = "",
    type: str = "",
    difficulty: Optional[List[int]] = None,
    category: str = "",
    tags: Optional[List[str]] = None,
    importance: Optional[List[int]] = None,
    mastery_level: Optional[List[int]] = None,
    review_status: str = "",
    is_archived: bool = False,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    query: Dict[str, Any] = {
        "user": to_object_id(user_id, "User"),
        "metadata.isArchived": is_archived,
    }
    if type:
        query["questionSnapshot.type"] = type
    if difficulty:
        query["questionSnapshot.difficulty"] = {"$in": difficulty}
    if category:
        query["questionSnapshot.category"] = category
    if tags:
        query["tags"] = {"$in": tags}
    if importance:
        query["importance"] = {"$in": importance}
    if mastery_level:
        query["masteryLevel"] = {"$in": mastery_level}
    if review_status:
        query["reviewStatus"] = review_status
    if search:
        query["$or"] = regex_any(
            ["questionSnapshot.title", "questionSnapshot.content", "questionSnapshot.analysis", "mistakeReason"],
            search,
        )
    mistakes, pagination = paginate(COLLECTION, query, page, limit, sort_by, sort_order)
    return {"mistakes": mistakes, "pagination": pagination}


def get_mistake(mistake_id: Any, user_id: Any) -> Dict[str, Any]:
    doc = _load(mistake_id, user_id)
    get_db()[COLLECTION].update_one({"_id": doc["_id"]}, {"$inc": {"metadata.viewCount": 1}})
    doc["metadata"]["viewCount"] = doc["metadata"].get("viewCount", 0) + 1
    return serialize(doc)


def update_mistake(mistake_id: Any, user_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
    record = MistakeRecord.model_validate(_load(mistake_id, user_id))
    changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
    try:
        record = MistakeRecord.model_validate({**record.to_mongo(), **changes})
    except ValidationError as e:
        raise ValidationFailed("Invalid mistake update", {"errors": e.errors(include_url=False)})
    return serialize(_save(review.normalize(record)))


def delete_mistake(mistake_id: Any, user_id: Any) -> Dict[str, Any]:
    doc = _load(mistake_id, user_id)
    get_db()[COLLECTION].delete_one({"_id": doc["_id"]})
    return {"deleted": True}


def delete_mistakes(mistake_ids: List[Any], user_id: Any) -> Dict[str, Any]:
    ids = [to_object_id(i, "Mistake record") for i in mistake_ids]
    res = get_db()[COLLECTION].delete_many({"_id": {"$in": ids}, "user": to_object_id(user_id, "User")})
    return {"deleted": res.deleted_count}


def archive_mistake(mistake_id: Any, user_id: Any) -> Dict[str, Any]:
    doc = _load(mistake_id, user_id)
    now = datetime.utcnow()
    get_db()[COLLECTION].update_one({"_id": doc["_id"]}, {"$set": {
        "metadata.isArchived": True,
        "metadata.archiveDate": now,
        "reviewStatus": "mastered",
        "updatedAt": now,
    }})
    return {"archived": True}


def archive_mistakes(mistake_ids: List[Any], user_id: Any) -> Dict[str, Any]:
    ids = [to_object_id(i, "Mistake record") for i in mistake_ids]
    now = datetime.utcnow()
    res = get_db()[COLLECTION].update_many(
        {"_id": {"$in": ids}, "user": to_object_id(user_id, "User")},
        {"$set": {"metadata.isArchived": True, "metadata.archiveDate": now, "reviewStatus": "mastered", "updatedAt": now}},
    )
    return {"archived": res.modified_count}


def record_review(mistake_id: Any, user_id: Any, is_correct: bool, now: Optional[datetime] = None) -> Dict[str, Any]:
    record = MistakeRecord.model_validate(_load(mistake_id, user_id))
    if record.metadata.isArchived:
        raise ValidationFailed("Mistake record is archived")
    updated = review.apply_review(record, bool(is_correct), now)
    logger.info(
        "Review of mistake %s: correct=%s mastery %d->%d next=%s",
        record.id, is_correct, record.masteryLevel, updated.masteryLevel, updated.reviewInfo.nextReviewDate,
    )
    return serialize(_save(updated))


def due_for_review(user_id: Any, limit: int = 20, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or datetime.utcnow()
    cursor = (
        get_db()[COLLECTION]
        .find({
            "user": to_object_id(user_id, "User"),
            "metadata.isArchived": False,
            "reviewInfo.nextReviewDate": {"$lte": now},
        })
        .sort([("importance", -1), ("reviewInfo.nextReviewDate", 1)])
        .limit(limit)
    )
    return [serialize(doc) for doc in cursor]


def recommended_for_review(user_id: Any, count: int = 10, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or datetime.utcnow()
    docs = get_db()[COLLECTION].find({"user": to_object_id(user_id, "User"), "metadata.isArchived": False})
    ranked = review.rank_for_review((MistakeRecord.model_validate(d) for d in docs), count, now)
    return [
        {**serialize(r.to_mongo()), "reviewScore": review.review_score(r, now)}
        for r in ranked
    ]


def mistake_stats(user_id: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    db = get_db()
    now = now or datetime.utcnow()
    user = to_object_id(user_id, "User")
    type_stats = list(db[COLLECTION].aggregate([
        {"$match": {"user": user}},
        {"$group": {
            "_id": {"type": "$questionSnapshot.type", "isArchived": "$metadata.isArchived"},
            "count": {"$sum": 1},
            "avgImportance": {"$avg": "$importance"},
            "avgMasteryLevel": {"$avg": "$masteryLevel"},
            "avgErrorRate": {"$avg": "$errorStats.errorRate"},
        }},
    ]))
    due = db[COLLECTION].count_documents({
        "user": user,
        "metadata.isArchived": False,
        "reviewInfo.nextReviewDate": {"$lte": now},
    })
    total = db[COLLECTION].count_documents({"user": user, "metadata.isArchived": False})
    mastered = db[COLLECTION].count_documents({"user": user, "metadata.isArchived": True})
    return {
        "typeStats": type_stats,
        "dueForReviewCount": due,
        "totalCount": total,
        "masteredCount": mastered,
        "masteryRate": round(mastered / (total + mastered) * 100) if total + mastered else 0,
    }
