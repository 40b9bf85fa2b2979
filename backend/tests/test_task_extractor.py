"""Extraction graph with the model call stubbed out."""
import json

import pytest

from app import task_extractor
from app.task_extractor import (
    ExtractionError,
    LLMTaskExtractor,
    _parse_json_response,
    normalize_tasks_node,
    process_email_text,
)


def _stub_llm(monkeypatch, reply):
    prompts = []

    def fake(prompt, **kwargs):
        prompts.append(prompt)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)

    monkeypatch.setattr(task_extractor, "_call_llm", fake)
    return prompts


def test_actionable_email_yields_normalized_tasks(monkeypatch):
    prompts = _stub_llm(monkeypatch, {
        "is_actionable": True,
        "tasks": [
            {
                "title": "Technical interview with Acme",
                "priority": "3",
                "deadline": "2030-05-01T15:00:00Z",
                "task_type": "Interview",
                "company": "Acme",
                "role": "null",
                "details": "Join via the link",
                "links": "https://meet.example.com/abc",
            },
            {"title": "", "priority": 2},
            {"title": "Read handbook", "task_type": "reading", "priority": True},
        ],
    })

    analysis = process_email_text("Subject: Interview\n\nSee you Thursday", current_date="2030-04-28")

    assert analysis.is_actionable is True
    assert [t.title for t in analysis.tasks] == ["Technical interview with Acme", "Read handbook"]
    first, second = analysis.tasks
    assert first.priority == 3.0
    assert first.task_type == "interview"
    assert first.role is None
    assert first.links == ["https://meet.example.com/abc"]
    assert second.task_type == "general"
    assert "Current Date: 2030-04-28" in prompts[0]
    assert "See you Thursday" in prompts[0]


def test_non_actionable_email_has_no_tasks(monkeypatch):
    _stub_llm(monkeypatch, {"is_actionable": False, "tasks": [{"title": "Unsubscribe"}]})

    analysis = process_email_text("Weekly newsletter")

    assert analysis.is_actionable is False
    assert analysis.tasks == []


def test_actionable_without_tasks_is_not_actionable():
    result = normalize_tasks_node({"raw_result": {"is_actionable": True, "tasks": []}})
    assert result == {"is_actionable": False, "tasks": []}


def test_long_emails_are_truncated(monkeypatch):
    prompts = _stub_llm(monkeypatch, {"is_actionable": False, "tasks": []})
    monkeypatch.setattr(task_extractor.settings, "extraction_max_chars", 50)

    process_email_text("x" * 40 + "TAIL-MARKER" + "y" * 100)

    assert "TAIL-MARKER" not in prompts[0]


def test_model_failure_raises_extraction_error(monkeypatch):
    _stub_llm(monkeypatch, RuntimeError("rate limited"))

    with pytest.raises(ExtractionError):
        process_email_text("Please send the report")


def test_unparsable_reply_raises_extraction_error(monkeypatch):
    _stub_llm(monkeypatch, "I could not find any tasks, sorry.")

    with pytest.raises(ExtractionError):
        process_email_text("Please send the report")


@pytest.mark.parametrize(
    "text,expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('```json\n{"a": 2}\n```', {"a": 2}),
        ('Sure! {"a": 3} Hope that helps', {"a": 3}),
        ("no json here", {}),
    ],
)
def test_parse_json_response(text, expected):
    assert _parse_json_response(text) == expected


async def test_extractor_runs_graph_off_the_event_loop(monkeypatch):
    _stub_llm(monkeypatch, {"is_actionable": True, "tasks": [{"title": "Pay invoice", "priority": 4}]})

    analysis = await LLMTaskExtractor().extract("Invoice due")

    assert analysis.is_actionable is True
    assert analysis.tasks[0].title == "Pay invoice"
