import pytest
from examprep.core.auth import create_token
from examprep.core.config import settings
from examprep.core.database import SessionLocal
from examprep.core.errors import ConflictError
from examprep.models.orm import MockExam
from examprep.services.exam_session import MockExamService


def _start(client, headers, **body):
    r = client.post("/api/exam/mock/start", headers=headers, json=body or None)
    assert r.status_code == 200, r.text
    return r.json()


def _answer(client, headers, exam_id, *answers):
    return client.post(f"/api/exam/mock/{exam_id}/answer", headers=headers, json={"answers": list(answers)})


def test_full_speaking_session(client, sections, make_user, load_exam):
    _, hdr = make_user("alice")
    started = _start(client, hdr, language="FR")
    exam_id = started["examId"]
    assert started["section"] == "A2" and started["attempt"] == 1 and started["alreadySeen"] is False
    a2 = started["sections"][0]
    assert a2["sectionId"] == sections["a2_paper1"]
    assert a2["section"]["items"][0]["instructions"] == "Présentez-vous"

    r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "A1"})
    assert r.status_code == 200
    assert r.json()["sections"][0]["sectionId"] == sections["a1_paper1"]

    r = _answer(client, hdr, exam_id,
                {"sectionType": "A2", "questionId": "q1", "answerText": "Bonjour"},
                {"sectionType": "A1", "questionId": "A1_q1", "answerText": "Salut", "audioUrl": "s3://a.webm"})
    assert r.json() == {"ok": True, "count": 2}

    assert client.post(f"/api/exam/mock/{exam_id}/complete", headers=hdr).json() == {"ok": True}
    assert load_exam(exam_id).status == "COMPLETED"

    detail = client.get(f"/api/exam/{exam_id}", headers=hdr).json()
    assert detail["exam"]["selectedPath"] == "A1"
    assert [s["level"] for s in detail["sections"]] == ["A2", "A1"]
    by_level = {a["sectionType"]: a for a in detail["answers"]}
    assert by_level["A2"]["answerText"] == "Bonjour"
    assert by_level["A1"]["questionId"] == "q1" and by_level["A1"]["audioUrl"] == "s3://a.webm"


def test_a2_papers_assigned_in_catalog_order(client, sections, make_user):
    _, hdr = make_user("bob")
    got = [_start(client, hdr) for _ in range(3)]
    assert [g["sections"][0]["sectionId"] for g in got] == [sections[f"a2_paper{i}"] for i in (1, 2, 3)]
    assert all(g["alreadySeen"] is False for g in got)
    assert len({g["examId"] for g in got}) == 3


def test_a1_paired_with_a2_paper_position(client, sections, make_user):
    _, hdr = make_user("carol")
    pairs = []
    for _ in range(3):
        exam_id = _start(client, hdr)["examId"]
        r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "a1"})
        pairs.append(r.json()["sections"][0]["sectionId"])
    assert pairs == [sections["a1_paper1"], sections["a1_paper2"], sections["a1_paper1"]]


def test_exhausted_papers_reuse_a_session(client, sections, make_user):
    _, hdr = make_user("dave")
    exam_ids = []
    for _ in range(3):
        exam_id = _start(client, hdr)["examId"]
        exam_ids.append(exam_id)
        client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "A1"})
        _answer(client, hdr, exam_id, {"sectionType": "A2", "questionId": "q1", "answerText": f"first {exam_id}"},
                {"sectionType": "A1", "questionId": "q1", "answerText": "dropped with the A1 branch"})

    again = _start(client, hdr)
    assert again["alreadySeen"] is True
    assert again["examId"] in exam_ids
    assert again["attempt"] == 2

    detail = client.get(f"/api/exam/{again['examId']}", headers=hdr).json()
    assert detail["exam"]["selectedPath"] is None
    assert detail["exam"]["speakingA1Id"] is None
    assert [s["level"] for s in detail["sections"]] == ["A2"]
    [old] = detail["answers"]
    assert old["isStale"] is True and old["attemptNumber"] == 1

    _answer(client, hdr, again["examId"], {"sectionType": "A2", "questionId": "q1", "answerText": "second try"})
    [latest] = client.get(f"/api/exam/{again['examId']}", headers=hdr).json()["answers"]
    assert latest["answerText"] == "second try" and latest["isStale"] is False


def test_resubmission_latest_wins(client, sections, make_user):
    _, hdr = make_user("erin")
    exam_id = _start(client, hdr)["examId"]
    _answer(client, hdr, exam_id, {"sectionType": "A2", "questionId": "q2", "answerText": "draft"})
    _answer(client, hdr, exam_id, {"sectionType": "A2", "questionId": "A2_q2", "answerText": "final"})
    answers = client.get(f"/api/exam/{exam_id}", headers=hdr).json()["answers"]
    assert len(answers) == 1
    assert answers[0]["answerText"] == "final"


def test_branches_are_exclusive(client, sections, make_user, load_exam):
    _, hdr = make_user("frank")
    exam_id = _start(client, hdr)["examId"]
    client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "A1"})
    assert load_exam(exam_id).speaking_a1_id is not None

    options = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "B1"}).json()
    picked = options["topicSelection"]["options"][0]["id"]
    r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": picked})
    assert r.status_code == 200
    exam = load_exam(exam_id)
    assert exam.speaking_b1_id == picked and exam.speaking_a1_id is None and exam.selected_path == "B1"

    client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "A1"})
    exam = load_exam(exam_id)
    assert exam.speaking_a1_id is not None and exam.speaking_b1_id is None and exam.selected_path == "A1"


def test_b1_options_are_persisted_and_enforced(client, sections, make_user):
    _, hdr = make_user("gina")
    exam_id = _start(client, hdr)["examId"]
    first = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "B1"}).json()
    assert first["topicSelection"]["title"] == "Section B1"
    offered = [o["id"] for o in first["topicSelection"]["options"]]
    assert len(set(offered)) == 2
    second = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "B1"}).json()
    assert [o["id"] for o in second["topicSelection"]["options"]] == offered

    [other] = [sid for key, sid in sections.items() if key.startswith("b1_") and "listen" not in key
               and sid not in offered]
    r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": str(other)})
    assert r.status_code == 400
    r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": sections["a1_paper1"]})
    assert r.status_code == 400


def test_b1_topic_requires_offered_options(client, sections, make_user, load_exam):
    _, hdr = make_user("hugo")
    exam_id = _start(client, hdr)["examId"]
    r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": sections["b1_voyage"]})
    assert r.status_code == 400 and r.json()["error"]["type"] == "invalid_input"
    exam = load_exam(exam_id)
    assert exam.speaking_b1_id is None and exam.selected_path is None


def test_second_session_prefers_unseen_b1_topics(client, sections, make_user):
    _, hdr = make_user("hank")
    first_id = _start(client, hdr)["examId"]
    offered = client.post(f"/api/exam/mock/{first_id}/decision", headers=hdr, json={"choice": "B1"}).json()
    chosen = offered["topicSelection"]["options"][0]["id"]
    client.post(f"/api/exam/mock/{first_id}/decision", headers=hdr, json={"choice": chosen})

    second_id = _start(client, hdr)["examId"]
    again = client.post(f"/api/exam/mock/{second_id}/decision", headers=hdr, json={"choice": "B1"}).json()
    assert again["topicSelection"]["options"][0]["id"] != chosen


@pytest.mark.parametrize("choice", [None, "", "C", "0", -3])
def test_invalid_choice_is_rejected(client, sections, make_user, choice):
    _, hdr = make_user("ivan")
    exam_id = _start(client, hdr)["examId"]
    r = client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": choice})
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_input"


def test_foreign_session_is_not_found(client, sections, make_user):
    _, owner = make_user("judy")
    _, intruder = make_user("mallory")
    exam_id = _start(client, owner)["examId"]
    calls = [
        client.post(f"/api/exam/mock/{exam_id}/decision", headers=intruder, json={"choice": "C"}),
        client.post(f"/api/exam/mock/{exam_id}/answer", headers=intruder, json={"answers": []}),
        client.post(f"/api/exam/mock/{exam_id}/decision", headers=intruder, json={"choice": {"x": 1}}),
        client.post(f"/api/exam/mock/{exam_id}/decision", headers=intruder),
        client.post(f"/api/exam/mock/{exam_id}/answer", headers=intruder, json={"answers": [{"questionId": "q1"}]}),
        client.post(f"/api/exam/mock/{exam_id}/listening/decision", headers=intruder, json={"choice": ["A1"]}),
        client.post(f"/api/exam/mock/{exam_id}/complete", headers=intruder),
        client.get(f"/api/exam/{exam_id}", headers=intruder),
        client.delete(f"/api/exam/mock/{exam_id}/answer/A2/q1", headers=intruder),
    ]
    for r in calls:
        assert r.status_code == 404
        assert r.json()["error"]["message"] == "Exam not found"
    assert client.get(f"/api/exam/{exam_id + 1000}", headers=owner).status_code == 404


def test_start_with_foreign_exam_id_creates_new_session(client, sections, make_user):
    _, owner = make_user("kim")
    _, other = make_user("lee")
    exam_id = _start(client, owner)["examId"]
    started = _start(client, other, examId=exam_id)
    assert started["resumed"] is False and started["examId"] != exam_id


def test_resume_in_progress_session(client, sections, make_user):
    _, hdr = make_user("mona")
    exam_id = _start(client, hdr)["examId"]
    client.post(f"/api/exam/mock/{exam_id}/decision", headers=hdr, json={"choice": "A1"})
    _answer(client, hdr, exam_id, {"sectionType": "A1", "questionId": "q1", "answerText": "oui"})
    resumed = _start(client, hdr, examId=exam_id)
    assert resumed["resumed"] is True and resumed["examId"] == exam_id
    assert resumed["selectedPath"] == "A1"
    assert [a["answerText"] for a in resumed["answers"]] == ["oui"]

    client.post(f"/api/exam/mock/{exam_id}/complete", headers=hdr)
    assert _start(client, hdr, examId=exam_id)["resumed"] is False


def test_answers_for_unassigned_sections_are_skipped(client, sections, make_user):
    _, hdr = make_user("nina")
    exam_id = _start(client, hdr)["examId"]
    r = _answer(client, hdr, exam_id,
                {"sectionType": "B1", "questionId": "q1", "answerText": "nope"},
                {"sectionType": "Z9", "questionId": "q1", "answerText": "nope"},
                {"sectionType": "A2", "mode": "Listening", "questionId": "q1", "answerText": "nope"},
                {"sectionType": "A2", "questionId": "q1", "answerText": "yes"})
    assert r.json() == {"ok": True, "count": 1}


def test_empty_answer_list_is_bad_request(client, sections, make_user):
    _, hdr = make_user("omar")
    exam_id = _start(client, hdr)["examId"]
    r = _answer(client, hdr, exam_id)
    assert r.status_code == 400


def test_non_integer_exam_id_is_bad_request(client, sections, make_user):
    _, hdr = make_user("pia")
    r = client.post("/api/exam/mock/abc/complete", headers=hdr)
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "validation_error"


def test_delete_latest_answer(client, sections, make_user):
    _, hdr = make_user("quinn")
    exam_id = _start(client, hdr)["examId"]
    _answer(client, hdr, exam_id, {"sectionType": "A2", "questionId": "q1", "answerText": "one"})
    _answer(client, hdr, exam_id, {"sectionType": "A2", "questionId": "q1", "answerText": "two"})

    r = client.delete(f"/api/exam/mock/{exam_id}/answer/A2/A2_q1", headers=hdr)
    assert r.status_code == 200 and r.json()["ok"] is True
    [remaining] = client.get(f"/api/exam/{exam_id}", headers=hdr).json()["answers"]
    assert remaining["answerText"] == "one"

    client.delete(f"/api/exam/mock/{exam_id}/answer/A2/q1", headers=hdr)
    r = client.delete(f"/api/exam/mock/{exam_id}/answer/A2/q1", headers=hdr)
    assert r.status_code == 404 and r.json()["error"]["message"] == "Answer not found"
    r = client.delete(f"/api/exam/mock/{exam_id}/answer/B1/q1", headers=hdr)
    assert r.status_code == 404 and r.json()["error"]["message"] == "Section not found for this exam"


def test_complete_is_idempotent(client, sections, make_user):
    _, hdr = make_user("rita")
    exam_id = _start(client, hdr)["examId"]
    for _ in range(2):
        r = client.post(f"/api/exam/mock/{exam_id}/complete", headers=hdr)
        assert r.status_code == 200 and r.json() == {"ok": True}


def test_history_lists_own_sessions_newest_first(client, sections, make_user):
    _, hdr = make_user("sam")
    _, other = make_user("tess")
    first = _start(client, hdr)["examId"]
    second = _start(client, hdr)["examId"]
    _start(client, other)
    _answer(client, hdr, first, {"sectionType": "A2", "questionId": "q1", "answerText": "later"})
    client.post(f"/api/exam/mock/{first}/complete", headers=hdr)

    history = client.get("/api/exam/history", headers=hdr).json()
    assert [h["exam"]["id"] for h in history] == [first, second]
    assert history[0]["exam"]["status"] == "COMPLETED"
    assert [a["answerText"] for a in history[0]["answers"]] == ["later"]
    assert history[1]["answers"] == []


def test_listening_session(client, sections, make_user, load_exam):
    _, hdr = make_user("uma")
    started = client.post("/api/exam/mock/start/listening", headers=hdr, json={"language": "FR"}).json()
    exam_id = started["examId"]
    assert started["selectedPath"] is None
    [a2] = started["sections"]
    assert a2["type"] == "Listening" and a2["sectionId"] in {sections["a2_listen1"], sections["a2_listen2"]}

    r = client.post(f"/api/exam/mock/{exam_id}/listening/decision", headers=hdr, json={"choice": "B1"})
    assert r.status_code == 200
    assert r.json()["sections"][0]["sectionId"] in {sections["b1_listen1"], sections["b1_listen2"]}
    exam = load_exam(exam_id)
    assert exam.selected_path == "B1" and exam.listening_a1_id is None

    r = client.post(f"/api/exam/mock/{exam_id}/listening/decision", headers=hdr, json={"choice": "A2"})
    assert r.status_code == 400


def test_listening_rotation_covers_least_used_first(client, sections, make_user):
    _, hdr = make_user("vera")
    seen = set()
    for _ in range(2):
        started = client.post("/api/exam/mock/start/listening", headers=hdr, json={"path": "A1"}).json()
        seen.add(started["sections"][0]["sectionId"])
        assert started["selectedPath"] == "A1"
        assert started["sections"][1]["sectionId"] == sections["a1_listen1"]
    assert seen == {sections["a2_listen1"], sections["a2_listen2"]}


def test_listening_path_from_speaking_session(client, sections, make_user):
    _, hdr = make_user("walt")
    speaking_id = _start(client, hdr)["examId"]
    client.post(f"/api/exam/mock/{speaking_id}/decision", headers=hdr, json={"choice": "A1"})
    started = client.post("/api/exam/mock/start/listening", headers=hdr,
                          json={"speakingExamId": speaking_id}).json()
    assert started["examId"] != speaking_id
    assert started["selectedPath"] == "A1"


def test_missing_catalog_is_configuration_error(client, sections, make_user):
    _, hdr = make_user("xena")
    r = client.post("/api/exam/mock/start", headers=hdr, json={"language": "DE"})
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "configuration_error"


def test_language_defaults_from_settings(client, sections, make_user, monkeypatch):
    _, hdr = make_user("xavi")
    assert _start(client, hdr)["sections"][0]["sectionId"] == sections["a2_paper1"]
    monkeypatch.setattr(settings, "DEFAULT_LANGUAGE", "DE")
    for url in ("/api/exam/mock/start", "/api/exam/mock/start/listening"):
        r = client.post(url, headers=hdr)
        assert r.status_code == 500 and "language DE" in r.json()["error"]["message"]


def test_unsupported_language_is_bad_request(client, sections, make_user):
    _, hdr = make_user("yuri")
    r = client.post("/api/exam/mock/start", headers=hdr, json={"language": "XX"})
    assert r.status_code == 400


def test_authentication_required(client, sections, make_user):
    assert client.post("/api/exam/mock/start").status_code == 401
    r = client.get("/api/exam/history", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401
    r = client.get("/api/exam/history", headers={"Authorization": f"Bearer {create_token('ghost')}"})
    assert r.status_code == 401 and r.json()["error"]["message"] == "User not found"


def test_concurrent_update_is_a_conflict(db, catalog, sections, make_user):
    user_id, _ = make_user("zed")
    exam = MockExam(user_id=user_id, speaking_a2_id=sections["a2_paper1"])
    db.add(exam); db.commit()
    assert exam.version == 1

    with SessionLocal() as other:
        racing = other.get(MockExam, exam.id)
        exam.status = "COMPLETED"
        db.commit()
        assert exam.version == 2
        racing.selected_path = "A1"
        with pytest.raises(ConflictError):
            MockExamService(other, catalog)._commit()
