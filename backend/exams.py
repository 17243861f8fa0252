import logging
import secrets
import string
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta

from pydantic import ValidationError

from database import create_document, get_db, paginate, regex_any, serialize, to_object_id
from errors import Forbidden, NotFound, ValidationFailed
from schemas import QUESTION_TYPES, ExamRecord, TimeAnalysis, TypePerformance
import mistakes
import questions
import users

logger = logging.getLogger(__name__)

COLLECTION = "exam_record"
SHARE_CODE_ALPHABET = string.ascii_letters + string.digits
SHARE_CODE_LENGTH = 8
GRADE_THRESHOLDS = ((90, "excellent"), (80, "good"), (60, "pass"))


def grade_for_score(score: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "fail"


def generate_share_code() -> str:
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(SHARE_CODE_LENGTH))


def _difficulty_bucket(difficulty: Optional[int]) -> Optional[str]:
    if difficulty is None:
        return None
    if difficulty <= 2:
        return "easy"
    return "medium" if difficulty == 3 else "hard"


def finalize_exam_record(record: ExamRecord) -> ExamRecord:
    """Derive grade, pass flag, accuracy, sharing code and the analysis breakdowns."""
    result = record.result
    result.grade = grade_for_score(result.score)
    result.isPassed = result.score >= record.config.passingScore
    if record.config.totalQuestions > 0:
        result.accuracy = min(100, round(result.correctCount / record.config.totalQuestions * 100))

    if record.sharing.isPublic and not record.sharing.shareCode:
        record.sharing.shareCode = generate_share_code()

    per_type = {t: [0, 0] for t in QUESTION_TYPES}
    per_category: Dict[str, List[int]] = {}
    distribution = {"easy": 0, "medium": 0, "hard": 0}
    for q in record.questions:
        per_type[q.type][1] += 1
        if q.isCorrect:
            per_type[q.type][0] += 1
        bucket = _difficulty_bucket(q.difficulty)
        if bucket:
            distribution[bucket] += 1
        if q.category:
            counts = per_category.setdefault(q.category, [0, 0])
            counts[1] += 1
            counts[0] += int(q.isCorrect)
    record.analysis.typePerformance = {
        t: TypePerformance(correct=c, total=n, rate=round(c / n * 100) if n else 0)
        for t, (c, n) in per_type.items()
    }
    record.analysis.difficultyDistribution = distribution
    record.analysis.weakAreas = sorted(c for c, (ok, n) in per_category.items() if ok / n < 0.6)
    record.analysis.strongAreas = sorted(c for c, (ok, n) in per_category.items() if ok / n >= 0.8)

    times = [q.timeSpent for q in record.questions if q.timeSpent > 0]
    if times:
        record.analysis.timeAnalysis = TimeAnalysis(
            avgTimePerQuestion=round(sum(times) / len(times)),
            fastestQuestion=min(times),
            slowestQuestion=max(times),
        )
    record.updatedAt = datetime.utcnow()
    return record


def _to_doc(record: ExamRecord) -> Dict[str, Any]:
    doc = record.to_mongo()
    if not doc["sharing"].get("shareCode"):
        # the unique share-code index is sparse, so private records leave the field out
        doc["sharing"].pop("shareCode", None)
    return doc


def create_exam_record(user_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        record = ExamRecord.model_validate({**data, "user": to_object_id(user_id, "User")})
    except ValidationError as e:
        raise ValidationFailed("Invalid exam record", {"errors": e.errors(include_url=False)})
    doc = _to_doc(finalize_exam_record(record))
    doc["_id"] = create_document(COLLECTION, doc)
    logger.info("Exam record %s created for %s (score=%s)", doc["_id"], user_id, doc["result"]["score"])
    return serialize(doc)


def submit_exam(user_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    """Store a finished exam and feed its answers back into question usage, the mistake bank and user stats."""
    record = create_exam_record(user_id, data)
    for q in record["questions"]:
        try:
            questions.update_usage_stats(q["questionId"], q["isCorrect"])
        except NotFound:
            logger.warning("Exam %s references unknown question %s", record["_id"], q["questionId"])
            continue
        if q["isCorrect"] or record["metadata"]["isPractice"]:
            continue
        mistakes.create_mistake_record(user_id, {
            "question": q["questionId"],
            "questionSnapshot": _snapshot(q),
            "userAnswer": q.get("userAnswer"),
            "source": "exam",
            "examRecord": to_object_id(record["_id"]),
        })
    users.record_exam_result(user_id, record["result"]["score"], record["actualDuration"])
    return record


def _snapshot(q: Dict[str, Any]) -> Dict[str, Any]:
    source = get_db()[questions.COLLECTION].find_one({"_id": to_object_id(q["questionId"], "Question")}) or {}
    return {
        "title": source.get("title") or q["content"][:50],
        "content": q["content"],
        "type": q["type"],
        "options": q.get("options") or [],
        "correctAnswer": q["correctAnswer"],
        "analysis": source.get("analysis", ""),
        "difficulty": source.get("difficulty", q.get("difficulty") or 2),
        "tags": source.get("tags", []),
        "category": source.get("category", q.get("category") or "general"),
    }


def list_exam_records(
    user_id: Any,
    page: int = 1,
    limit: int = 10,
    search: str = "",
    status: str = "",
    source: str = "",
    min_score: float = 0,
    max_score: float = 100,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = "startTime",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    query: Dict[str, Any] = {
        "user": to_object_id(user_id, "User"),
        "result.score": {"$gte": min_score, "$lte": max_score},
    }
    if status:
        query["status"] = status
    if source:
        query["metadata.source"] = source
    if start_date or end_date:
        query["startTime"] = {}
        if start_date:
            query["startTime"]["$gte"] = start_date
        if end_date:
            query["startTime"]["$lte"] = end_date
    if search:
        query["$or"] = regex_any(["title", "description"], search)

    records, pagination = paginate(COLLECTION, query, page, limit, sort_by, sort_order)
    summary = list(get_db()[COLLECTION].aggregate([
        {"$match": query},
        {"$group": {
            "_id": None,
            "totalExams": {"$sum": 1},
            "avgScore": {"$avg": "$result.score"},
            "bestScore": {"$max": "$result.score"},
            "totalStudyTime": {"$sum": "$actualDuration"},
            "passRate": {"$avg": {"$cond": [{"$eq": ["$result.isPassed", True]}, 1, 0]}},
        }},
    ]))
    stats = summary[0] if summary else {
        "totalExams": 0, "avgScore": 0, "bestScore": 0, "totalStudyTime": 0, "passRate": 0,
    }
    stats.pop("_id", None)
    return {"records": records, "pagination": pagination, "stats": stats}


def get_exam_record(record_id: Any, user_id: Any = None) -> Dict[str, Any]:
    db = get_db()
    doc = db[COLLECTION].find_one({"_id": to_object_id(record_id, "Exam record")})
    is_owner = doc is not None and user_id is not None and str(doc["user"]) == str(user_id)
    if not doc or not (is_owner or doc.get("sharing", {}).get("isPublic")):
        raise NotFound("Exam record not found")
    if not is_owner and user_id is not None:
        db[COLLECTION].update_one({"_id": doc["_id"]}, {"$inc": {"sharing.viewCount": 1}})
        doc["sharing"]["viewCount"] = doc["sharing"].get("viewCount", 0) + 1
    return serialize(doc)


def get_exam_record_by_share_code(share_code: str) -> Dict[str, Any]:
    db = get_db()
    doc = db[COLLECTION].find_one({"sharing.shareCode": share_code, "sharing.isPublic": True})
    if not doc:
        raise NotFound("Shared exam record not found")
    db[COLLECTION].update_one({"_id": doc["_id"]}, {"$inc": {"sharing.viewCount": 1}})
    doc["sharing"]["viewCount"] = doc["sharing"].get("viewCount", 0) + 1
    return serialize(doc)


def _load_owned(record_id: Any, user_id: Any, role: str) -> Dict[str, Any]:
    doc = get_db()[COLLECTION].find_one({"_id": to_object_id(record_id, "Exam record")})
    if not doc:
        raise NotFound("Exam record not found")
    if role != "admin" and str(doc["user"]) != str(user_id):
        raise Forbidden("Not allowed to modify this exam record")
    return doc


def update_exam_record(record_id: Any, updates: Dict[str, Any], user_id: Any, role: str = "user") -> Dict[str, Any]:
    doc = _load_owned(record_id, user_id, role)
    now = datetime.utcnow()
    set_ops: Dict[str, Any] = {"updatedAt": now}
    unset_ops: Dict[str, Any] = {}

    for field in ("title", "description"):
        if field in updates:
            set_ops[field] = updates[field]
    metadata = updates.get("metadata") or {}
    for field in ("notes", "tags"):
        if field in metadata:
            set_ops[f"metadata.{field}"] = metadata[field]

    review = updates.get("review") or {}
    if review.get("reviewNotes"):
        set_ops["review.reviewNotes"] = review["reviewNotes"]
        set_ops["review.isReviewed"] = True
        set_ops["review.reviewedAt"] = now
        set_ops["review.reviewCount"] = doc.get("review", {}).get("reviewCount", 0) + 1

    sharing = updates.get("sharing") or {}
    if "isPublic" in sharing:
        set_ops["sharing.isPublic"] = bool(sharing["isPublic"])
        if sharing["isPublic"] and not doc.get("sharing", {}).get("shareCode"):
            set_ops["sharing.shareCode"] = generate_share_code()
        elif not sharing["isPublic"]:
            unset_ops["sharing.shareCode"] = ""

    update: Dict[str, Any] = {"$set": set_ops}
    if unset_ops:
        update["$unset"] = unset_ops
    db = get_db()
    db[COLLECTION].update_one({"_id": doc["_id"]}, update)
    return serialize(db[COLLECTION].find_one({"_id": doc["_id"]}))


def delete_exam_record(record_id: Any, user_id: Any, role: str = "user") -> Dict[str, Any]:
    doc = _load_owned(record_id, user_id, role)
    get_db()[COLLECTION].delete_one({"_id": doc["_id"]})
    return {"deleted": True}


def user_study_stats(user_id: Any, days: int = 30, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Per-day totals of completed exams over the last ``days`` days."""
    start = (now or datetime.utcnow()) - timedelta(days=days)
    return list(get_db()[COLLECTION].aggregate([
        {"$match": {"user": to_object_id(user_id, "User"), "startTime": {"$gte": start}, "status": "completed"}},
        {"$group": {
            "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$startTime"}},
            "dailyExams": {"$sum": 1},
            "dailyScore": {"$avg": "$result.score"},
            "dailyStudyTime": {"$sum": "$actualDuration"},
            "dailyCorrectCount": {"$sum": "$result.correctCount"},
            "dailyTotalQuestions": {"$sum": "$config.totalQuestions"},
        }},
        {"$sort": {"_id": 1}},
    ]))
