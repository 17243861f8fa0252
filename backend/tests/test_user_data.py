from datetime import datetime, timedelta

import pytest

import sync
import user_data
from errors import Conflict, NotFound, ValidationFailed


def personal(**overrides):
    data = {"type": "single", "content": "2 + 2 = ?", "options": ["3", "4"], "answer": "4", "tags": ["math"]}
    data.update(overrides)
    return data


def bank_mistake(question_id="q1", wrong="3", **overrides):
    data = {"questionId": question_id, "type": "single", "content": "2 + 2 = ?", "options": ["3", "4"],
            "answer": "4", "wrongAnswer": wrong, "analysis": "basic addition", "tags": ["math"]}
    data.update(overrides)
    return data


def entry(score, total=10, correct=8, duration=600, **overrides):
    data = {"score": score, "grade": "good", "correctCount": correct, "wrongCount": total - correct,
            "totalQuestions": total, "duration": duration}
    data.update(overrides)
    return data


def test_user_data_is_created_once(db, user):
    first = user_data.get_or_create_user_data(user["_id"])
    second = user_data.get_or_create_user_data(user["_id"])
    assert first["_id"] == second["_id"]
    assert first["syncVersion"] == 1
    assert first["studyStats"]["examRecords"] == []


def test_personal_question_crud(db, user):
    created = user_data.add_personal_question(user["_id"], personal())
    assert created["id"].startswith("personal_")
    assert user_data.get_personal_question(user["_id"], created["id"])["content"] == "2 + 2 = ?"

    updated = user_data.update_personal_question(user["_id"], created["id"], {"difficulty": 4, "usageCount": 99})
    assert updated["difficulty"] == 4
    assert updated["usageCount"] == 0

    assert user_data.delete_personal_question(user["_id"], created["id"]) == {"deleted": created["id"]}
    with pytest.raises(NotFound):
        user_data.get_personal_question(user["_id"], created["id"])


def test_personal_question_validation(db, user):
    with pytest.raises(ValidationFailed):
        user_data.add_personal_question(user["_id"], personal(options=[]))
    with pytest.raises(ValidationFailed):
        user_data.add_personal_question(user["_id"], personal(content=""))
    user_data.add_personal_question(user["_id"], personal(id="mine"))
    with pytest.raises(Conflict):
        user_data.add_personal_question(user["_id"], personal(id="mine"))


def test_personal_question_listing(db, user):
    user_data.add_personal_question(user["_id"], personal())
    user_data.add_personal_question(user["_id"], personal(type="judge", options=[], answer=True, content="Sky is blue", tags=["nature"]))
    assert user_data.list_personal_questions(user["_id"], type="judge")["pagination"]["total"] == 1
    assert user_data.list_personal_questions(user["_id"], tags=["math", "x"])["pagination"]["total"] == 1
    assert user_data.list_personal_questions(user["_id"], search="SKY")["questions"][0]["content"] == "Sky is blue"


def test_batch_import(db, user):
    result = user_data.import_personal_questions(user["_id"], [personal(), personal(content=""), personal(type="fill", options=[])])
    assert result["summary"] == {"total": 3, "success": 2, "failed": 1}
    with pytest.raises(ValidationFailed):
        user_data.import_personal_questions(user["_id"], [])


def test_bank_mistakes(db, user, now):
    first = user_data.add_bank_mistake(user["_id"], bank_mistake())
    with pytest.raises(Conflict):
        user_data.add_bank_mistake(user["_id"], bank_mistake())
    second = user_data.add_bank_mistake(user["_id"], bank_mistake(wrong="5", type="fill"))

    assert user_data.toggle_important(user["_id"], first["id"])["isImportant"] is True
    reviewed = user_data.review_bank_mistake(user["_id"], first["id"], now)
    assert (reviewed["reviewCount"], reviewed["lastReviewTime"]) == (1, now)

    assert [m["id"] for m in user_data.list_bank_mistakes(user["_id"], is_important=True)["mistakes"]] == [first["id"]]
    assert [m["id"] for m in user_data.list_bank_mistakes(user["_id"], type="fill")["mistakes"]] == [second["id"]]
    assert user_data.list_bank_mistakes(user["_id"], search="ADDITION")["pagination"]["total"] == 2
    with pytest.raises(ValidationFailed):
        user_data.list_bank_mistakes(user["_id"], time_range="decade")

    assert user_data.delete_bank_mistake(user["_id"], second["id"]) == {"deleted": second["id"]}
    assert user_data.delete_bank_mistakes(user["_id"], [first["id"], "missing"]) == {"deleted": 1}


def test_bank_mistake_time_range(db, user):
    doc = user_data.get_or_create_user_data(user["_id"])
    old = datetime(2020, 1, 1)
    doc["mistakeBank"] = [
        {**bank_mistake(), "id": "old", "mistakeTime": old, "reviewCount": 0},
        {**bank_mistake(wrong="5"), "id": "new", "mistakeTime": datetime(2026, 3, 1), "reviewCount": 0},
    ]
    db["user_data"].replace_one({"_id": doc["_id"]}, doc)
    found = user_data.list_bank_mistakes(user["_id"], time_range="week", now=datetime(2026, 3, 2))
    assert [m["id"] for m in found["mistakes"]] == ["new"]
    listing = user_data.list_bank_mistakes(user["_id"])
    assert [m["id"] for m in listing["mistakes"]] == ["new", "old"]
    assert listing["stats"]["byMonth"] == {"2020-01": 1, "2026-03": 1}


def test_practice_prefers_least_reviewed(db, user, now):
    ids = [user_data.add_bank_mistake(user["_id"], bank_mistake(wrong=str(i)))["id"] for i in range(4)]
    for mistake_id in ids[:2]:
        user_data.review_bank_mistake(user["_id"], mistake_id, now)
    picked = user_data.practice_mistakes(user["_id"], count=2)
    assert sorted(m["id"] for m in picked) == sorted(ids[2:])
    with pytest.raises(NotFound):
        user_data.practice_mistakes(user["_id"], type="essay")


def test_mistake_summary(db, user, now):
    a = user_data.add_bank_mistake(user["_id"], bank_mistake())
    user_data.add_bank_mistake(user["_id"], bank_mistake(wrong="5"))
    for _ in range(3):
        user_data.review_bank_mistake(user["_id"], a["id"], now)
    summary = user_data.mistake_summary(user["_id"], now=datetime.utcnow())
    assert summary["reviewStats"] == {"total": 2, "reviewed": 1, "unreviewed": 1, "mastered": 1}
    assert summary["typeDistribution"] == {"single": 2}
    assert len(summary["last7Days"]) == 7
    assert summary["last7Days"][-1]["count"] == 2


def test_exam_entries_update_stats(db, user, now):
    user_data.add_exam_entry(user["_id"], entry(80), now=now)
    result = user_data.add_exam_entry(user["_id"], entry(60, correct=5), now=now + timedelta(hours=1))
    stats = result["updatedStats"]
    assert (stats["totalQuestions"], stats["correctAnswers"], stats["totalStudyTime"]) == (20, 13, 1200)
    assert (stats["averageScore"], stats["bestScore"], stats["correctRate"]) == (70, 80, 65)

    listing = user_data.list_exam_entries(user["_id"])
    assert [r["score"] for r in listing["records"]] == [60, 80]
    assert listing["records"][0]["index"] == 1
    assert user_data.get_exam_entry(user["_id"], 0)["score"] == 80

    removed = user_data.delete_exam_entry(user["_id"], 0)
    assert removed["updatedStats"]["totalQuestions"] == 10
    assert removed["updatedStats"]["averageScore"] == 60
    with pytest.raises(NotFound):
        user_data.get_exam_entry(user["_id"], 5)

    with pytest.raises(ValidationFailed):
        user_data.add_exam_entry(user["_id"], entry(120))


def test_exam_history_is_capped(db, user, now):
    for i in range(user_data.MAX_EXAM_ENTRIES + 5):
        user_data.add_exam_entry(user["_id"], entry(50 + i % 50), now=now + timedelta(minutes=i))
    records = user_data.get_or_create_user_data(user["_id"])["studyStats"]["examRecords"]
    assert len(records) == user_data.MAX_EXAM_ENTRIES
    assert records[0]["date"] == now + timedelta(minutes=5)


def test_update_and_reset_stats(db, user, now):
    user_data.add_exam_entry(user["_id"], entry(90), now=now)
    updated = user_data.update_study_stats(user["_id"], {"totalQuestions": 40, "correctAnswers": 30})
    assert updated["correctRate"] == 75
    with pytest.raises(ValidationFailed):
        user_data.update_study_stats(user["_id"], {"correctAnswers": 50})
    with pytest.raises(ValidationFailed):
        user_data.reset_study_stats(user["_id"])
    result = user_data.reset_study_stats(user["_id"], confirm=True)
    assert result["oldStats"]["totalQuestions"] == 40
    assert result["newStats"] == sync.empty_study_stats()


def test_trends_and_overview(db, user):
    now = datetime(2026, 3, 4, 12, 0, 0)  # a Wednesday
    user_data.add_exam_entry(user["_id"], entry(80, questions=[{"type": "single", "isCorrect": True}]), now=now)
    user_data.add_exam_entry(user["_id"], entry(60, questions=[{"type": "single", "isCorrect": False}]), now=now - timedelta(days=2))
    user_data.add_exam_entry(user["_id"], entry(40), now=now - timedelta(days=40))

    week = user_data.study_trends(user["_id"], "week", now=now)["trends"]
    assert [t["date"] for t in week][-1] == "2026-03-04"
    assert [t["score"] for t in week] == [None, None, None, None, 60, None, 80]

    month = user_data.study_trends(user["_id"], "month", now=now)["trends"]
    assert [t["examCount"] for t in month] == [0, 0, 0, 1]

    year = user_data.study_trends(user["_id"], "year", now=now)["trends"]
    assert year[-1] == {"period": "2026-03", "score": 70, "examCount": 2, "questionCount": 20}
    assert year[-3]["examCount"] == 1
    assert year[-2]["period"] == "2026-02"
    assert year[0]["period"] == "2025-04"
    with pytest.raises(ValidationFailed):
        user_data.study_trends(user["_id"], "decade", now=now)

    overview = user_data.study_overview(user["_id"], now=now)
    assert overview["totalExams"] == 3
    assert overview["todayStats"]["examCount"] == 1
    assert overview["weekStats"] == {"examCount": 2, "questionCount": 20, "studyTime": 1200, "averageScore": 70}
    assert overview["typeStats"] == {"single": {"total": 2, "correct": 1, "rate": 50}}


def test_server_sync_round_trip(db, user):
    user_data.add_personal_question(user["_id"], personal(id="p1"))
    exported = user_data.export_sync_document(user["_id"])
    assert exported["deviceId"] == user_data.SERVER_DEVICE_ID
    assert "publicQuestions" not in exported

    incoming = {
        "version": "1.0.0",
        "deviceId": "device_phone",
        "exportTime": "2026-03-02T12:00:00.000Z",
        "dataTypes": ["publicQuestions", "personalQuestions", "mistakeBank"],
        "publicQuestions": [{"id": "pub1"}],
        "personalQuestions": [personal(id="p1"), personal(id="p2")],
        "mistakeBank": [{**bank_mistake(), "id": "m1"}],
    }
    result = user_data.import_sync_document(user["_id"], incoming)
    assert result["imported"] == {"personalQuestions": 1, "mistakeBank": 1}
    assert result["syncVersion"] == 2

    again = user_data.import_sync_document(user["_id"], incoming)
    assert again["imported"] == {"personalQuestions": 0, "mistakeBank": 0}
    doc = user_data.get_or_create_user_data(user["_id"])
    assert [q["id"] for q in doc["personalQuestions"]] == ["p1", "p2"]
    assert doc["syncVersion"] == 3

    with pytest.raises(ValidationFailed):
        user_data.import_sync_document(user["_id"], {**incoming, "deviceId": ""})
    assert user_data.get_or_create_user_data(user["_id"])["syncVersion"] == 3
