"""Interview prep: text heuristics, question generation, prep and list routes."""
import json

import pytest
from sqlalchemy import select

from app import interview_prep
from app.interview_prep import (
    QuestionGenerationError,
    extract_company_from_content,
    extract_role_from_content,
    fallback_questions,
    generate_interview_questions,
)
from app.models import InterviewPrep, Task
from app.routers import interviews as interviews_router


@pytest.mark.parametrize(
    "title,details,expected",
    [
        ("Interview with Stripe", "", "Stripe"),
        ("Prep", "Your final interview at globex. See you", "Globex"),
        ("Offer call", "We loved meeting you for the position at initech.", "Initech"),
        ("Reply to recruiter", "", "the company"),
    ],
)
def test_extract_company(title, details, expected):
    assert extract_company_from_content(title, details) == expected


@pytest.mark.parametrize(
    "title,details,expected",
    [
        ("Software Engineer interview", "", "Software Engineer"),
        ("Onsite", "Panel for the data analyst opening", "Analyst"),
        ("Weekly sync", "", "the position"),
    ],
)
def test_extract_role(title, details, expected):
    assert extract_role_from_content(title, details) == expected


def test_fallback_questions_mention_role():
    generic = fallback_questions("the position")
    specific = fallback_questions("Data Engineer")

    assert len(generic) == 4
    assert generic[1]["question"] == "Why are you interested in this position?"
    assert specific[1]["question"] == "Why are you interested in working as a Data Engineer?"
    assert {q["type"] for q in specific} == {"behavioral", "company-specific"}


def test_generate_questions_normalizes_model_output(monkeypatch):
    payload = {
        "questions": [
            {"type": "Technical", "question": "Design a rate limiter."},
            {"type": "culture", "question": "What motivates you?"},
            {"type": "behavioral", "question": "   "},
            "not a dict",
        ]
    }
    captured = {}

    def fake_llm(prompt, **kwargs):
        captured["prompt"] = prompt
        captured.update(kwargs)
        return "```json\n" + json.dumps(payload) + "\n```"

    monkeypatch.setattr(interview_prep, "_call_llm", fake_llm)

    questions = generate_interview_questions("Acme", "Backend Engineer", "technical")

    assert questions == [
        {"type": "technical", "question": "Design a rate limiter."},
        {"type": "behavioral", "question": "What motivates you?"},
    ]
    assert "Company: Acme" in captured["prompt"]
    assert captured["force_json"] is True


def test_generate_questions_wraps_model_failure(monkeypatch):
    def broken(prompt, **kwargs):
        raise TimeoutError("model timed out")

    monkeypatch.setattr(interview_prep, "_call_llm", broken)

    with pytest.raises(QuestionGenerationError):
        generate_interview_questions("Acme", "Engineer")


def test_generate_questions_unexpected_shape_is_empty(monkeypatch):
    monkeypatch.setattr(interview_prep, "_call_llm", lambda prompt, **kwargs: '{"items": []}')
    assert generate_interview_questions("Acme", "Engineer") == []


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _task(db_session, user, **fields):
    row = Task(
        user_id=user.id,
        title=fields.pop("title", "Interview with Acme"),
        details=fields.pop("details", ""),
        priority=3,
        task_type=fields.pop("task_type", "interview"),
        status="todo",
        links=[],
        **fields,
    )
    db_session.add(row)
    db_session.commit()
    db_session.refresh(row)
    return row


def _stub_generator(monkeypatch, result):
    calls = []

    def fake(company, role, interview_type="technical"):
        calls.append((company, role, interview_type))
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(interviews_router, "generate_interview_questions", fake)
    return calls


def test_prep_generates_and_stores_questions(client, db_session, monkeypatch, user):
    task = _task(db_session, user, company="Acme", role="Platform Engineer")
    calls = _stub_generator(monkeypatch, [{"type": "technical", "question": "Explain consistent hashing."}])

    r = client.post("/api/interviews/prep", json={"taskId": task.id, "interviewType": "technical"})

    assert r.status_code == 200
    assert r.json()["data"]["questions"] == [{"type": "technical", "question": "Explain consistent hashing."}]
    assert calls == [("Acme", "Platform Engineer", "technical")]
    db_session.expire_all()
    prep = db_session.execute(select(InterviewPrep).where(InterviewPrep.task_id == task.id)).scalar_one()
    assert prep.prep_scheduled is True
    assert prep.user_id == user.id


def test_prep_uses_text_heuristics_and_regenerates_in_place(client, db_session, monkeypatch, user):
    task = _task(db_session, user, title="Interview with Globex", details="Software Engineer loop")
    calls = _stub_generator(monkeypatch, [{"type": "behavioral", "question": "Q1"}])

    client.post("/api/interviews/prep", json={"taskId": task.id})
    _stub_generator(monkeypatch, [{"type": "behavioral", "question": "Q2"}])
    r = client.post("/api/interviews/prep", json={"taskId": task.id})

    assert calls[0] == ("Globex", "Software Engineer", "mixed")
    assert r.json()["data"]["questions"][0]["question"] == "Q2"
    db_session.expire_all()
    preps = db_session.execute(select(InterviewPrep).where(InterviewPrep.task_id == task.id)).scalars().all()
    assert len(preps) == 1
    assert preps[0].questions == [{"type": "behavioral", "question": "Q2"}]


def test_prep_falls_back_when_generator_returns_nothing(client, db_session, monkeypatch, user):
    task = _task(db_session, user, role="Data Analyst")
    _stub_generator(monkeypatch, [])

    r = client.post("/api/interviews/prep", json={"taskId": task.id})

    questions = r.json()["data"]["questions"]
    assert r.status_code == 200
    assert len(questions) == 4
    assert questions[1]["question"] == "Why are you interested in working as a Data Analyst?"


def test_prep_generation_failure_is_503(client, db_session, monkeypatch, user):
    task = _task(db_session, user)
    _stub_generator(monkeypatch, QuestionGenerationError("Failed to generate interview questions"))

    r = client.post("/api/interviews/prep", json={"taskId": task.id})

    assert r.status_code == 503


def test_prep_rejects_non_interview_and_foreign_tasks(client, db_session, monkeypatch, user, other_user):
    calls = _stub_generator(monkeypatch, [])
    meeting = _task(db_session, user, title="Standup", task_type="meeting")
    foreign = _task(db_session, other_user)

    not_interview = client.post("/api/interviews/prep", json={"taskId": meeting.id})
    not_mine = client.post("/api/interviews/prep", json={"taskId": foreign.id})

    assert not_interview.status_code == 400
    assert not_interview.json()["detail"] == "Task is not an interview task"
    assert not_mine.status_code == 404
    assert calls == []


def test_list_interviews_reflects_new_prep(client, db_session, monkeypatch, user):
    assert client.get("/api/interviews").json()["count"] == 0

    task = _task(db_session, user)
    _stub_generator(monkeypatch, [{"type": "company-specific", "question": "Why Acme?"}])
    client.post("/api/interviews/prep", json={"taskId": task.id})

    body = client.get("/api/interviews").json()
    assert body["count"] == 1
    item = body["interviews"][0]
    assert item["taskId"] == task.id
    assert item["prepScheduled"] is True
    assert item["questions"] == [{"type": "company-specific", "question": "Why Acme?"}]
