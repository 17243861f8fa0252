from datetime import datetime

import pytest

import exams
import mistakes
import questions
import users
from errors import Forbidden, NotFound, ValidationFailed


def exam_payload(qs, score=85, correct=1, wrong=1, **overrides):
    data = {
        "title": "Weekly quiz",
        "config": {"totalQuestions": len(qs), "passingScore": 60},
        "result": {"score": score, "correctCount": correct, "wrongCount": wrong},
        "questions": qs,
        "startTime": datetime(2026, 3, 2, 10, 0, 0),
        "endTime": datetime(2026, 3, 2, 10, 20, 0),
        "actualDuration": 1200,
    }
    data.update(overrides)
    return data


def answered(question, is_correct, time_spent=30, category=None, difficulty=None):
    return {
        "questionId": question["_id"],
        "type": question["type"],
        "content": question["content"],
        "options": question["options"],
        "userAnswer": question["answer"] if is_correct else "B",
        "correctAnswer": question["answer"],
        "isCorrect": is_correct,
        "timeSpent": time_spent,
        "category": category,
        "difficulty": difficulty,
    }


@pytest.fixture
def bank(db, user):
    make = lambda title, category: questions.create_question({
        "title": title, "content": f"{title}?", "type": "single",
        "options": ["A", "B"], "answer": "A", "category": category,
    }, user["_id"])
    return [make("Rivers", "geography"), make("Kings", "history")]


@pytest.mark.parametrize("score,grade", [(100, "excellent"), (90, "excellent"), (89.5, "good"),
                                         (80, "good"), (60, "pass"), (59.9, "fail"), (0, "fail")])
def test_grade_for_score(score, grade):
    assert exams.grade_for_score(score) == grade


def test_share_codes_are_eight_alphanumerics():
    code = exams.generate_share_code()
    assert len(code) == 8 and code.isalnum()


def test_create_derives_result_and_analysis(db, user, bank):
    qs = [answered(bank[0], True, 20, "geography", 1), answered(bank[1], False, 40, "history", 4)]
    record = exams.create_exam_record(user["_id"], exam_payload(qs, score=85))
    assert record["result"]["grade"] == "good"
    assert record["result"]["isPassed"] is True
    assert record["result"]["accuracy"] == 50
    assert record["analysis"]["typePerformance"]["single"] == {"correct": 1, "total": 2, "rate": 50}
    assert record["analysis"]["difficultyDistribution"] == {"easy": 1, "medium": 0, "hard": 1}
    assert record["analysis"]["weakAreas"] == ["history"]
    assert record["analysis"]["strongAreas"] == ["geography"]
    assert record["analysis"]["timeAnalysis"] == {"avgTimePerQuestion": 30, "fastestQuestion": 20, "slowestQuestion": 40}
    assert "shareCode" not in record["sharing"]


def test_invalid_exam_is_rejected(db, user):
    with pytest.raises(ValidationFailed):
        exams.create_exam_record(user["_id"], exam_payload([], score=140))


def test_submit_feeds_usage_mistakes_and_user_stats(db, user, bank):
    qs = [answered(bank[0], True), answered(bank[1], False)]
    record = exams.submit_exam(user["_id"], exam_payload(qs, score=50))
    assert record["result"]["grade"] == "fail"

    usage = questions.get_question(bank[0]["_id"], user["_id"])["usage"]
    assert (usage["totalAttempts"], usage["correctAttempts"], usage["correctRate"]) == (1, 1, 100)

    wrong = mistakes.list_mistakes(user["_id"])["mistakes"]
    assert len(wrong) == 1
    assert wrong[0]["question"] == bank[1]["_id"]
    assert wrong[0]["examRecord"] == record["_id"]
    assert wrong[0]["questionSnapshot"]["title"] == "Kings"

    stats = users.get_user(user["_id"])["stats"]
    assert stats == {"totalExams": 1, "totalStudyTime": 1200, "bestScore": 50, "averageScore": 50}


def test_practice_exams_do_not_create_mistakes(db, user, bank):
    qs = [answered(bank[1], False)]
    exams.submit_exam(user["_id"], exam_payload(qs, score=0, correct=0, metadata={"isPractice": True}))
    assert mistakes.list_mistakes(user["_id"])["mistakes"] == []


def test_list_returns_summary(db, user, bank):
    qs = [answered(bank[0], True)]
    exams.create_exam_record(user["_id"], exam_payload(qs, score=90))
    exams.create_exam_record(user["_id"], exam_payload(qs, score=50, title="Retake"))
    listing = exams.list_exam_records(user["_id"])
    assert listing["pagination"]["total"] == 2
    assert listing["stats"]["totalExams"] == 2
    assert listing["stats"]["avgScore"] == 70
    assert listing["stats"]["bestScore"] == 90
    assert listing["stats"]["passRate"] == 0.5
    assert [r["title"] for r in exams.list_exam_records(user["_id"], search="retake")["records"]] == ["Retake"]


def test_private_records_are_hidden_from_others(db, user, bank):
    other = users.register_user("bob_02", "bob@example.com", "secret123")
    record = exams.create_exam_record(user["_id"], exam_payload([answered(bank[0], True)]))
    with pytest.raises(NotFound):
        exams.get_exam_record(record["_id"], other["_id"])
    assert exams.get_exam_record(record["_id"], user["_id"])["sharing"]["viewCount"] == 0


def test_sharing_toggle(db, user, bank):
    other = users.register_user("bob_02", "bob@example.com", "secret123")
    record = exams.create_exam_record(user["_id"], exam_payload([answered(bank[0], True)]))
    shared = exams.update_exam_record(record["_id"], {"sharing": {"isPublic": True}}, user["_id"])
    code = shared["sharing"]["shareCode"]
    assert len(code) == 8

    assert exams.get_exam_record_by_share_code(code)["_id"] == record["_id"]
    assert exams.get_exam_record(record["_id"], other["_id"])["sharing"]["viewCount"] == 2

    hidden = exams.update_exam_record(record["_id"], {"sharing": {"isPublic": False}}, user["_id"])
    assert "shareCode" not in hidden["sharing"]
    with pytest.raises(NotFound):
        exams.get_exam_record_by_share_code(code)


def test_review_notes_count_reviews(db, user, bank):
    record = exams.create_exam_record(user["_id"], exam_payload([answered(bank[0], True)]))
    exams.update_exam_record(record["_id"], {"review": {"reviewNotes": "check units"}}, user["_id"])
    updated = exams.update_exam_record(record["_id"], {"review": {"reviewNotes": "again"}}, user["_id"])
    assert updated["review"]["isReviewed"] is True
    assert updated["review"]["reviewCount"] == 2


def test_only_owner_or_admin_can_change(db, user, bank):
    other = users.register_user("bob_02", "bob@example.com", "secret123")
    record = exams.create_exam_record(user["_id"], exam_payload([answered(bank[0], True)]))
    with pytest.raises(Forbidden):
        exams.update_exam_record(record["_id"], {"title": "mine now"}, other["_id"])
    with pytest.raises(Forbidden):
        exams.delete_exam_record(record["_id"], other["_id"])
    assert exams.delete_exam_record(record["_id"], other["_id"], role="admin") == {"deleted": True}
    with pytest.raises(NotFound):
        exams.get_exam_record(record["_id"], user["_id"])


def test_user_study_stats_buckets_by_day(db, user, bank):
    qs = [answered(bank[0], True), answered(bank[1], False)]
    exams.create_exam_record(user["_id"], exam_payload(qs, score=80))
    exams.create_exam_record(user["_id"], exam_payload(qs, score=60, startTime=datetime(2026, 3, 2, 18, 0, 0)))
    exams.create_exam_record(user["_id"], exam_payload(qs, score=40, startTime=datetime(2026, 3, 4, 9, 0, 0)))
    exams.create_exam_record(user["_id"], exam_payload(qs, score=90, startTime=datetime(2026, 1, 1, 9, 0, 0)))

    days = exams.user_study_stats(user["_id"], days=30, now=datetime(2026, 3, 5))
    assert [d["_id"] for d in days] == ["2026-03-02", "2026-03-04"]
    assert (days[0]["dailyExams"], days[0]["dailyScore"], days[0]["dailyStudyTime"]) == (2, 70, 2400)
    assert days[0]["dailyTotalQuestions"] == 4
    assert days[1]["dailyCorrectCount"] == 1
