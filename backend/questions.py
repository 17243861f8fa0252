import logging
from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import ValidationError

from database import create_document, get_db, paginate, regex_any, serialize, to_object_id
from errors import Forbidden, NotFound, ValidationFailed
from schemas import Question

logger = logging.getLogger(__name__)

COLLECTION = "question"
HISTORY_LIMIT = 10
MAX_IMPORT = 100
QUESTION_STATUSES = ("draft", "published", "archived")
EDITABLE_FIELDS = (
    "title", "content", "type", "options", "answer", "analysis", "difficulty",
    "score", "tags", "category", "source", "status", "isPublic",
)


def _load(question_id: Any) -> Dict[str, Any]:
    doc = get_db()[COLLECTION].find_one({"_id": to_object_id(question_id, "Question")})
    if not doc:
        raise NotFound("Question not found")
    return doc


def _check_owner(doc: Dict[str, Any], user_id: Any, role: str) -> None:
    if role != "admin" and str(doc.get("creator")) != str(user_id):
        raise Forbidden("Not allowed to modify this question")


def _validate(data: Dict[str, Any]) -> Question:
    try:
        return Question.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed("Invalid question", {"errors": e.errors(include_url=False)})


def create_question(data: Dict[str, Any], creator_id: Any) -> Dict[str, Any]:
    question = _validate({**data, "creator": to_object_id(creator_id, "User")})
    doc = question.to_mongo()
    doc["_id"] = create_document(COLLECTION, doc)
    logger.info("Question %s created by %s", doc["_id"], creator_id)
    return serialize(doc)


def import_questions(items: List[Dict[str, Any]], creator_id: Any) -> Dict[str, Any]:
    """Bulk-create public questions; a bad item is reported and does not stop the rest."""
    if not items:
        raise ValidationFailed("No questions to import")
    if len(items) > MAX_IMPORT:
        raise ValidationFailed(f"Cannot import more than {MAX_IMPORT} questions at once")
    imported, errors = [], []
    for index, item in enumerate(items):
        try:
            imported.append(create_question({**item, "status": "published", "isPublic": True}, creator_id))
        except ValidationFailed as e:
            errors.append({"index": index, "error": e.message, "details": e.data})
    logger.info("Imported %d/%d questions for %s", len(imported), len(items), creator_id)
    return {
        "importedQuestions": imported,
        "errors": errors,
        "summary": {"total": len(items), "success": len(imported), "failed": len(errors)},
    }


def list_questions(
    page: int = 1,
    limit: int = 20,
    type: str = "",
    difficulty: Optional[List[int]] = None,
    category: str = "",
    tags: Optional[List[str]] = None,
    search: str = "",
    creator: Any = None,
    status: str = "published",
    is_public: Optional[bool] = True,
    approved_only: bool = True,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    query: Dict[str, Any] = {"status": status}
    if type:
        query["type"] = type
    if difficulty:
        query["difficulty"] = {"$in": difficulty}
    if category:
        query["category"] = category
    if tags:
        query["tags"] = {"$in": tags}
    if creator:
        query["creator"] = to_object_id(creator, "User")
    if is_public is not None:
        query["isPublic"] = is_public
        if is_public and approved_only:
            query["moderation.isApproved"] = True
    if search:
        query["$or"] = regex_any(["title", "content", "analysis"], search)
    questions, pagination = paginate(COLLECTION, query, page, limit, sort_by, sort_order, {"history": 0})
    return {"questions": questions, "pagination": pagination}


def get_question(question_id: Any, user_id: Any = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {"_id": to_object_id(question_id, "Question")}
    if user_id is None:
        query.update({"status": "published", "isPublic": True, "moderation.isApproved": True})
    db = get_db()
    doc = db[COLLECTION].find_one(query)
    if not doc:
        raise NotFound("Question not found")
    db[COLLECTION].update_one({"_id": doc["_id"]}, {"$inc": {"metadata.viewCount": 1}})
    doc["metadata"]["viewCount"] = doc["metadata"].get("viewCount", 0) + 1
    return serialize(doc)


def update_question(question_id: Any, updates: Dict[str, Any], user_id: Any, role: str = "user") -> Dict[str, Any]:
    doc = _load(question_id)
    _check_owner(doc, user_id, role)
    changes = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS}
    if not changes:
        return serialize(doc)

    now = datetime.utcnow()
    question = _validate({**doc, **changes})
    question.version += 1
    question.updatedAt = now
    snapshot = {k: v for k, v in question.to_mongo().items() if k not in ("history", "_id")}
    question.history = (question.history + [{
        "version": question.version,
        "content": snapshot,
        "modifiedBy": to_object_id(user_id, "User"),
        "modifiedAt": now,
    }])[-HISTORY_LIMIT:]
    new_doc = question.to_mongo()
    get_db()[COLLECTION].replace_one({"_id": doc["_id"]}, new_doc)
    logger.info("Question %s updated to version %d", doc["_id"], question.version)
    return serialize(new_doc)


def delete_question(question_id: Any, user_id: Any, role: str = "user") -> Dict[str, Any]:
    doc = _load(question_id)
    _check_owner(doc, user_id, role)
    get_db()[COLLECTION].update_one(
        {"_id": doc["_id"]}, {"$set": {"status": "archived", "updatedAt": datetime.utcnow()}}
    )
    return {"deleted": True}


def delete_questions(question_ids: List[Any], user_id: Any, role: str = "user") -> Dict[str, Any]:
    db = get_db()
    ids = [to_object_id(i, "Question") for i in question_ids]
    for doc in db[COLLECTION].find({"_id": {"$in": ids}}, {"creator": 1}):
        _check_owner(doc, user_id, role)
    res = db[COLLECTION].update_many(
        {"_id": {"$in": ids}}, {"$set": {"status": "archived", "updatedAt": datetime.utcnow()}}
    )
    return {"deleted": res.modified_count}


def _bulk_set(question_ids: List[Any], user_id: Any, role: str, changes: Dict[str, Any]) -> int:
    if not question_ids:
        raise ValidationFailed("No question ids given")
    db = get_db()
    ids = [to_object_id(i, "Question") for i in question_ids]
    for doc in db[COLLECTION].find({"_id": {"$in": ids}}, {"creator": 1}):
        _check_owner(doc, user_id, role)
    res = db[COLLECTION].update_many({"_id": {"$in": ids}}, {"$set": {**changes, "updatedAt": datetime.utcnow()}})
    logger.info("Bulk update %s on %d questions by %s", changes, res.modified_count, user_id)
    return res.modified_count


def set_questions_status(question_ids: List[Any], status: str, user_id: Any, role: str = "user") -> Dict[str, Any]:
    if status not in QUESTION_STATUSES:
        raise ValidationFailed("Invalid status", {"allowed": list(QUESTION_STATUSES)})
    return {"updatedCount": _bulk_set(question_ids, user_id, role, {"status": status})}


def set_questions_public(question_ids: List[Any], is_public: bool, user_id: Any, role: str = "user") -> Dict[str, Any]:
    if not isinstance(is_public, bool):
        raise ValidationFailed("isPublic must be a boolean")
    return {"updatedCount": _bulk_set(question_ids, user_id, role, {"isPublic": is_public})}


def export_my_questions(user_id: Any, type: str = "", status: str = "") -> Dict[str, Any]:
    """The caller's own questions in a portable form, newest first."""
    query: Dict[str, Any] = {"creator": to_object_id(user_id, "User")}
    if type:
        query["type"] = type
    if status:
        query["status"] = status
    cursor = (
        get_db()[COLLECTION]
        .find(query, {"createdAt": 0, "updatedAt": 0, "usage": 0, "metadata": 0})
        .sort("_id", -1)
    )
    exported = [serialize(doc) for doc in cursor]
    logger.info("Exported %d questions for %s", len(exported), user_id)
    return {"exportTime": datetime.utcnow().isoformat(), "totalQuestions": len(exported), "questions": exported}


def _moderate(question_id: Any, admin_id: Any, approved: bool, reason: Optional[str]) -> Dict[str, Any]:
    doc = _load(question_id)
    moderation = doc.get("moderation") or {}
    if moderation.get("isApproved") is approved and moderation.get("approvedAt") is not None:
        raise ValidationFailed("Question already " + ("approved" if approved else "rejected"))
    moderation = {
        "isApproved": approved,
        "approvedBy": to_object_id(admin_id, "User"),
        "approvedAt": datetime.utcnow(),
        "rejectionReason": None if approved else (reason or ""),
    }
    get_db()[COLLECTION].update_one({"_id": doc["_id"]}, {"$set": {"moderation": moderation}})
    doc["moderation"] = moderation
    return serialize(doc)


def approve_question(question_id: Any, admin_id: Any) -> Dict[str, Any]:
    return _moderate(question_id, admin_id, True, None)


def reject_question(question_id: Any, admin_id: Any, reason: str = "") -> Dict[str, Any]:
    return _moderate(question_id, admin_id, False, reason)


def update_usage_stats(question_id: Any, is_correct: bool) -> None:
    update: Dict[str, Any] = {
        "$inc": {"usage.totalAttempts": 1},
        "$set": {"usage.lastUsed": datetime.utcnow()},
    }
    if is_correct:
        update["$inc"]["usage.correctAttempts"] = 1
    db = get_db()
    oid = to_object_id(question_id, "Question")
    db[COLLECTION].update_one({"_id": oid}, update)
    doc = db[COLLECTION].find_one({"_id": oid}, {"usage": 1})
    if doc:
        usage = doc.get("usage") or {}
        total = usage.get("totalAttempts", 0)
        rate = round(usage.get("correctAttempts", 0) / total * 100) if total else 0
        db[COLLECTION].update_one({"_id": oid}, {"$set": {"usage.correctRate": rate}})


def random_questions(
    count: int = 10,
    type: str = "",
    difficulty: Optional[List[int]] = None,
    category: str = "",
    tags: Optional[List[str]] = None,
    exclude_ids: Optional[List[Any]] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"status": "published", "isPublic": True, "moderation.isApproved": True}
    if exclude_ids:
        query["_id"] = {"$nin": [to_object_id(i, "Question") for i in exclude_ids]}
    if type:
        query["type"] = type
    if difficulty:
        query["difficulty"] = {"$in": difficulty}
    if category:
        query["category"] = category
    if tags:
        query["tags"] = {"$in": tags}
    docs = get_db()[COLLECTION].aggregate([
        {"$match": query},
        {"$sample": {"size": count}},
        {"$project": {"history": 0}},
    ])
    return [serialize(d) for d in docs]


def question_stats(creator_id: Any = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"status": "published", "isPublic": True}
    if creator_id:
        query["creator"] = to_object_id(creator_id, "User")
    return list(get_db()[COLLECTION].aggregate([
        {"$match": query},
        {"$group": {
            "_id": "$type",
            "count": {"$sum": 1},
            "avgDifficulty": {"$avg": "$difficulty"},
            "avgCorrectRate": {"$avg": {"$cond": [
                {"$gt": ["$usage.totalAttempts", 0]},
                {"$divide": ["$usage.correctAttempts", "$usage.totalAttempts"]},
                0,
            ]}},
        }},
    ]))
