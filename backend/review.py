"""
Mistake review scheduling.

A missed question comes back for review on a simplified Ebbinghaus schedule:
every correct answer pushes the next review further out along
``REVIEW_INTERVALS``, three in a row raise the mastery level, and a wrong
answer brings the question back immediately. Records that reach the top
mastery level are archived.

Everything here works on plain ``MistakeRecord`` models and returns new
copies; persisting the result is up to the caller.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from schemas import MistakeRecord

logger = logging.getLogger(__name__)

REVIEW_INTERVALS = (1, 2, 4, 7, 15, 30, 60, 90)  # days
STREAK_FOR_PROMOTION = 3
MIN_MASTERY = 1
MAX_MASTERY = 5


def next_interval_days(consecutive_correct: int) -> int:
    index = min(max(consecutive_correct - 1, 0), len(REVIEW_INTERVALS) - 1)
    return REVIEW_INTERVALS[index]


def error_rate(total_attempts: int, correct_attempts: int) -> int:
    if total_attempts <= 0:
        return 0
    return round((total_attempts - correct_attempts) / total_attempts * 100)


def normalize(record: MistakeRecord, now: Optional[datetime] = None) -> MistakeRecord:
    """Bring derived fields in line with the counters (error rate, promotion, archiving)."""
    now = now or datetime.utcnow()
    stats = record.errorStats
    if stats.totalAttempts > 0:
        stats.errorRate = error_rate(stats.totalAttempts, stats.correctAttempts)

    info = record.reviewInfo
    if info.consecutiveCorrect >= STREAK_FOR_PROMOTION:
        record.masteryLevel = min(MAX_MASTERY, record.masteryLevel + 1)
        info.consecutiveCorrect = 0

    if record.masteryLevel >= MAX_MASTERY and record.reviewStatus != "mastered":
        record.reviewStatus = "mastered"
        record.metadata.isArchived = True
        record.metadata.archiveDate = now
        logger.info("Mistake %s mastered and archived", record.id)

    record.updatedAt = now
    return record


def apply_review(record: MistakeRecord, is_correct: bool, now: Optional[datetime] = None) -> MistakeRecord:
    now = now or datetime.utcnow()
    record = record.model_copy(deep=True)
    info = record.reviewInfo
    info.reviewCount += 1
    info.lastReviewDate = now

    if is_correct:
        info.consecutiveCorrect += 1
        record.errorStats.correctAttempts += 1
        if info.consecutiveCorrect >= STREAK_FOR_PROMOTION:
            record.masteryLevel = min(MAX_MASTERY, record.masteryLevel + 1)
            info.consecutiveCorrect = 0
        days = next_interval_days(info.consecutiveCorrect)
        info.nextReviewDate = now + timedelta(days=days)
        info.reviewIntervals.append(days)
    else:
        info.consecutiveCorrect = 0
        info.nextReviewDate = now
        record.masteryLevel = max(MIN_MASTERY, record.masteryLevel - 1)

    record.errorStats.totalAttempts += 1
    if record.reviewStatus == "unreviewed":
        record.reviewStatus = "reviewing"
    return normalize(record, now)


def is_due(record: MistakeRecord, now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    return record.reviewInfo.nextReviewDate <= now


def correct_rate(record: MistakeRecord) -> int:
    stats = record.errorStats
    if stats.totalAttempts <= 0:
        return 0
    return round(stats.correctAttempts / stats.totalAttempts * 100)


def review_interval_days(record: MistakeRecord, now: Optional[datetime] = None) -> int:
    """Whole days until the next review, never negative."""
    now = now or datetime.utcnow()
    seconds = (record.reviewInfo.nextReviewDate - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def review_score(record: MistakeRecord, now: Optional[datetime] = None) -> float:
    now = now or datetime.utcnow()
    overdue = record.reviewInfo.nextReviewDate < now
    return (
        record.importance * 20
        + (6 - record.masteryLevel) * 15
        + (50 if overdue else 0)
        + record.errorStats.errorRate * 0.5
    )


def rank_for_review(records: Iterable[MistakeRecord], count: int = 10, now: Optional[datetime] = None) -> List[MistakeRecord]:
    now = now or datetime.utcnow()
    active = [r for r in records if not r.metadata.isArchived]
    active.sort(key=lambda r: review_score(r, now), reverse=True)
    return active[:max(0, count)]
