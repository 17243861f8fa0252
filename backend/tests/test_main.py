import json

import main
from sync import LocalStore, SyncManager, SyncState


def run(capsys, tmp_path, *argv):
    code = main.main(["--store", str(tmp_path / "store.json"), "--state", str(tmp_path / "state.json"), *argv])
    return code, json.loads(capsys.readouterr().out)


def test_export_then_import_into_another_store(capsys, tmp_path):
    LocalStore(public_questions=[{"id": "p1", "content": "?"}]).save(str(tmp_path / "store.json"))
    out = str(tmp_path / "backup.json")
    code, output = run(capsys, tmp_path, "export", out, "--no-stats")
    assert code == 0
    assert output["success"] is True
    assert output["data"]["dataTypes"] == ["publicQuestions", "personalQuestions", "mistakeBank"]

    other = tmp_path / "other"
    other.mkdir()
    code, output = run(capsys, other, "import", out)
    assert code == 0
    assert output["data"]["imported"]["publicQuestions"] == 1
    assert LocalStore.load(str(other / "store.json")).public_questions == [{"id": "p1", "content": "?"}]

    code, output = run(capsys, other, "status")
    assert output["data"]["publicBankSize"] == 1
    assert output["data"]["history"][0]["type"] == "import"


def test_bad_import_prints_error_envelope(capsys, tmp_path):
    code, output = run(capsys, tmp_path, "import", str(tmp_path / "missing.json"))
    assert code == 1
    assert output == {"success": False, "message": "Sync file not found", "data": None}


def test_push_then_pull_round_trips_through_the_server(db, user, tmp_path):
    laptop = SyncManager(
        LocalStore(
            public_questions=[{"id": "pub1", "content": "shared"}],
            personal_questions=[{"id": "p1", "type": "single", "content": "2 + 2 = ?", "answer": "4"}],
            mistake_bank=[{"id": "m1", "questionId": "q1", "wrongAnswer": "3"}],
        ),
        SyncState(str(tmp_path / "laptop_state.json")),
        str(tmp_path / "laptop.json"),
    )
    first = main.push(laptop, user["_id"])
    assert first["success"] is True
    assert first["imported"]["personalQuestions"] == 1
    assert first["imported"]["mistakeBank"] == 1
    assert laptop.state.history[0]["type"] == "push"

    again = main.push(laptop, user["_id"])
    assert sum(again["imported"].values()) == 0
    assert again["syncVersion"] == first["syncVersion"] + 1

    phone_store = tmp_path / "phone.json"
    phone = SyncManager(LocalStore(), SyncState(str(tmp_path / "phone_state.json")), str(phone_store))
    pulled = main.pull(phone, user["_id"])
    assert pulled["imported"]["personalQuestions"] == 1
    assert pulled["imported"]["mistakeBank"] == 1
    saved = LocalStore.load(str(phone_store))
    assert [q["id"] for q in saved.personal_questions] == ["p1"]
    assert [m["id"] for m in saved.mistake_bank] == ["m1"]
    assert saved.public_questions == []
