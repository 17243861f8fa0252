import logging
from typing import Any, Dict, Optional
from datetime import datetime, timedelta

from passlib.context import CryptContext
from pydantic import ValidationError

import config
from database import create_document, get_db, paginate, regex_any, serialize, to_object_id
from errors import AccountLocked, Conflict, Forbidden, NotFound, Unauthorized, ValidationFailed
from schemas import Preferences, User

logger = logging.getLogger(__name__)

COLLECTION = "user"
PROFILE_FIELDS = ("nickname", "avatar", "bio", "preferences")
PASSWORD_MIN, PASSWORD_MAX = 6, 128
PRIVATE_FIELDS = ("password", "verificationToken", "resetPasswordToken")

_hash_settings = {"bcrypt__rounds": config.BCRYPT_ROUNDS} if "bcrypt" in config.PASSWORD_SCHEMES else {}
pwd_context = CryptContext(schemes=config.PASSWORD_SCHEMES, deprecated="auto", **_hash_settings)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    return serialize({k: v for k, v in doc.items() if k not in PRIVATE_FIELDS})


def _check_password(password: str) -> None:
    if not password or not (PASSWORD_MIN <= len(password) <= PASSWORD_MAX):
        raise ValidationFailed(f"Password must be {PASSWORD_MIN}-{PASSWORD_MAX} characters")


def _load(user_id: Any) -> Dict[str, Any]:
    doc = get_db()[COLLECTION].find_one({"_id": to_object_id(user_id, "User")})
    if not doc:
        raise NotFound("User not found")
    return doc


def register_user(username: str, email: str, password: str) -> Dict[str, Any]:
    _check_password(password)
    try:
        user = User(username=(username or "").strip(), email=(email or "").strip().lower(), password="-")
    except ValidationError as e:
        raise ValidationFailed("Invalid registration data", {"errors": e.errors(include_url=False)})

    db = get_db()
    if db[COLLECTION].find_one({"username": user.username}):
        raise Conflict("Username already taken")
    if db[COLLECTION].find_one({"email": user.email}):
        raise Conflict("Email already registered")

    user.password = get_password_hash(password)
    doc = user.to_mongo()
    doc["_id"] = create_document(COLLECTION, doc)
    logger.info("Registered user %s (%s)", user.username, doc["_id"])
    return _public(doc)


def is_locked(doc: Dict[str, Any], now: datetime) -> bool:
    """True while a lockout is running; an expired lockout clears the counters."""
    security = doc.setdefault("security", {})
    locked_until = security.get("lockedUntil")
    if locked_until and locked_until > now:
        return True
    if locked_until:
        security["loginAttempts"] = 0
        security["lockedUntil"] = None
    return False


def authenticate(identifier: str, password: str, ip: str = "", user_agent: str = "", now: Optional[datetime] = None) -> Dict[str, Any]:
    if not identifier or not password:
        raise ValidationFailed("Username/email and password are required")
    now = now or datetime.utcnow()
    db = get_db()
    doc = db[COLLECTION].find_one({"$or": [{"username": identifier}, {"email": identifier.lower()}]})
    if not doc:
        logger.info("Login failed for %s: unknown user", identifier)
        raise Unauthorized("Invalid username/email or password")
    if doc.get("status", "active") != "active":
        logger.info("Login refused for %s: account %s", identifier, doc.get("status"))
        raise Forbidden("Account is disabled")

    if is_locked(doc, now):
        logger.warning("Login refused for %s: account locked", identifier)
        raise AccountLocked("Account is locked, try again later", {"lockedUntil": doc["security"]["lockedUntil"]})

    security = doc["security"]
    if not verify_password(password, doc.get("password", "")):
        security["loginAttempts"] = security.get("loginAttempts", 0) + 1
        security["lastLoginAttempt"] = now
        if security["loginAttempts"] >= config.MAX_LOGIN_ATTEMPTS:
            security["lockedUntil"] = now + timedelta(seconds=config.LOCKOUT_DURATION_SECONDS)
            logger.warning("Locking %s after %d failed logins", identifier, security["loginAttempts"])
        db[COLLECTION].update_one({"_id": doc["_id"]}, {"$set": {"security": security}})
        raise Unauthorized("Invalid username/email or password", {"loginAttempts": security["loginAttempts"]})

    security["loginAttempts"] = 0
    security["lockedUntil"] = None
    doc["lastLogin"] = {"date": now, "ip": ip, "userAgent": user_agent}
    db[COLLECTION].update_one(
        {"_id": doc["_id"]},
        {"$set": {"security": security, "lastLogin": doc["lastLogin"], "updatedAt": now}},
    )
    logger.info("User %s logged in", doc.get("username"))
    return _public(doc)


def get_user(user_id: Any) -> Dict[str, Any]:
    return _public(_load(user_id))


def update_profile(user_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
    doc = _load(user_id)
    changes = {k: v for k, v in updates.items() if k in PROFILE_FIELDS}
    if "preferences" in changes:
        try:
            prefs = Preferences.model_validate({**(doc.get("preferences") or {}), **changes["preferences"]})
        except ValidationError as e:
            raise ValidationFailed("Invalid preferences", {"errors": e.errors(include_url=False)})
        changes["preferences"] = prefs.model_dump()
    if len(changes.get("bio", "")) > 500:
        raise ValidationFailed("Bio must be at most 500 characters")
    if not changes:
        return _public(doc)
    changes["updatedAt"] = datetime.utcnow()
    get_db()[COLLECTION].update_one({"_id": doc["_id"]}, {"$set": changes})
    doc.update(changes)
    return _public(doc)


def change_password(user_id: Any, current_password: str, new_password: str) -> Dict[str, Any]:
    doc = _load(user_id)
    if not verify_password(current_password or "", doc.get("password", "")):
        raise Unauthorized("Current password is incorrect")
    _check_password(new_password)
    get_db()[COLLECTION].update_one(
        {"_id": doc["_id"]},
        {"$set": {"password": get_password_hash(new_password), "updatedAt": datetime.utcnow()}},
    )
    return {"updated": True}


def set_status(user_id: Any, status: str) -> Dict[str, Any]:
    if status not in ("active", "inactive", "banned", "deleted"):
        raise ValidationFailed("Invalid status")
    doc = _load(user_id)
    get_db()[COLLECTION].update_one({"_id": doc["_id"]}, {"$set": {"status": status, "updatedAt": datetime.utcnow()}})
    doc["status"] = status
    return _public(doc)


def list_users(page: int = 1, limit: int = 10, search: str = "", role: str = "") -> Dict[str, Any]:
    query: Dict[str, Any] = {"status": {"$ne": "deleted"}}
    if search:
        query["$or"] = regex_any(["username", "email"], search)
    if role:
        query["role"] = role
    users, pagination = paginate(COLLECTION, query, page, limit, projection={f: 0 for f in PRIVATE_FIELDS})
    return {"users": users, "pagination": pagination}


def record_exam_result(user_id: Any, score: float, duration: int) -> Dict[str, Any]:
    """Fold one finished exam into the user's stats summary."""
    doc = _load(user_id)
    stats = doc.get("stats") or {}
    total = stats.get("totalExams", 0) + 1
    old_avg = stats.get("averageScore", 0)
    stats = {
        "totalExams": total,
        "totalStudyTime": stats.get("totalStudyTime", 0) + int(duration),
        "bestScore": max(stats.get("bestScore", 0), score),
        "averageScore": round((old_avg * (total - 1) + score) / total),
    }
    get_db()[COLLECTION].update_one({"_id": doc["_id"]}, {"$set": {"stats": stats}})
    return stats
