"""
LangGraph-powered task extraction from a single email.

Flow: START -> analyze_email -> normalize_tasks -> END

analyze_email asks the OpenAI chat model for JSON; normalize_tasks coerces whatever
came back into TaskCandidate objects. Priority clamping and deadline validation are
applied again at persistence time, so this layer only fixes shape.
"""
import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, START, END

from .config import settings
from .models import TASK_TYPES
from .schemas import EmailAnalysis, TaskCandidate

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """The model call failed or returned something that is not JSON."""


# =============================================================================
# State Schema
# =============================================================================

class ExtractionState(TypedDict, total=False):
    """State that flows through the extraction graph."""
    # Input
    email_text: str
    current_date: str

    # Raw model output
    raw_result: dict

    # Normalized output
    is_actionable: bool
    tasks: List[TaskCandidate]


# =============================================================================
# OpenAI Client
# =============================================================================

def _get_openai_client():
    """Get OpenAI client instance."""
    api_key = settings.openai_api_key
    if not api_key:
        raise ValueError("OPENAI_API_KEY not set. Add to .env or environment.")
    from openai import OpenAI
    return OpenAI(api_key=api_key)


def _call_llm(
    prompt: str,
    max_tokens: int = 1200,
    force_json: bool = False,
    temperature: Optional[float] = None,
) -> str:
    """Call OpenAI chat model and return response text."""
    client = _get_openai_client()
    kwargs = {
        "temperature": float(
            temperature if temperature is not None else settings.openai_extraction_temperature
        )
    }
    if force_json:
        kwargs["response_format"] = {"type": "json_object"}

    response = client.chat.completions.create(
        model=settings.openai_model,
        max_tokens=max_tokens,
        messages=[{"role": "user", "content": prompt}],
        **kwargs,
    )
    return (response.choices[0].message.content or "").strip()


def _parse_json_response(text: str) -> dict:
    """Parse JSON from LLM response, handling markdown code blocks."""
    text = re.sub(r"```json\s*", "", text)
    text = re.sub(r"```\s*", "", text)
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", text, re.DOTALL)
        if match:
            try:
                return json.loads(match.group())
            except json.JSONDecodeError:
                pass
        return {}


# =============================================================================
# LangGraph Nodes
# =============================================================================

EXTRACTION_PROMPT = """Analyze the following email content and extract any actionable tasks, interviews, or deadlines.

Email Content:
---
{email_text}
---

Current Date: {current_date}

IMPORTANT INSTRUCTIONS:
1. If the email is not actionable (e.g., spam, newsletter, notification), return "is_actionable" as false and an empty "tasks" list.
2. ONLY extract tasks with deadlines that are TODAY or in the FUTURE. Do NOT create tasks for past dates.
3. Use priority scale: 1=Low, 2=Medium, 3=High, 4=Urgent
4. For interviews: Use company name and role if available
5. For assignments: Focus on the subject/topic
6. If no clear deadline is mentioned, set deadline to null
7. Skip any tasks that have already passed based on the current date

Return ONLY valid JSON (no markdown):
{{
  "is_actionable": <true|false>,
  "tasks": [
    {{
      "title": "<short task title>",
      "priority": <1-4>,
      "deadline": "<ISO 8601 date or datetime, or null>",
      "task_type": "<interview|meeting|assignment|general>",
      "company": "<company name or null>",
      "role": "<role or null>",
      "details": "<what needs to be done>",
      "links": ["<relevant URL>"]
    }}
  ]
}}"""


def analyze_email_node(state: ExtractionState) -> dict:
    """Ask the model for structured tasks. Errors propagate as ExtractionError."""
    email_text = (state.get("email_text") or "")[: settings.extraction_max_chars]
    prompt = EXTRACTION_PROMPT.format(
        email_text=email_text,
        current_date=state.get("current_date") or datetime.now(timezone.utc).date().isoformat(),
    )
    try:
        response_text = _call_llm(prompt, force_json=True)
    except Exception as e:
        raise ExtractionError(f"Email analysis failed: {e}") from e
    result = _parse_json_response(response_text)
    if not result:
        raise ExtractionError("Email analysis returned no JSON")
    return {"raw_result": result}


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def _normalize_candidate(item: Any) -> Optional[TaskCandidate]:
    if not isinstance(item, dict):
        return None
    title = _as_str(item.get("title"))
    if not title:
        return None
    task_type = (_as_str(item.get("task_type") or item.get("type")) or "general").lower()
    if task_type not in TASK_TYPES:
        task_type = "general"
    links = item.get("links")
    if isinstance(links, str):
        links = [links]
    if not isinstance(links, list):
        links = []
    priority = item.get("priority")
    if not isinstance(priority, (int, float)) or isinstance(priority, bool):
        try:
            priority = float(priority)
        except (TypeError, ValueError):
            priority = None
    return TaskCandidate(
        title=title,
        priority=priority,
        deadline=_as_str(item.get("deadline")),
        task_type=task_type,
        company=_as_str(item.get("company")),
        role=_as_str(item.get("role")),
        details=_as_str(item.get("details")) or "",
        links=[str(link).strip() for link in links if _as_str(link)],
    )


def normalize_tasks_node(state: ExtractionState) -> dict:
    """Coerce the raw model output into TaskCandidate objects."""
    raw = state.get("raw_result") or {}
    items = raw.get("tasks") if isinstance(raw.get("tasks"), list) else []
    tasks = [t for t in (_normalize_candidate(item) for item in items) if t is not None]
    is_actionable = bool(raw.get("is_actionable", bool(tasks))) and bool(tasks)
    return {"is_actionable": is_actionable, "tasks": tasks if is_actionable else []}


# =============================================================================
# Graph Construction
# =============================================================================

def create_extraction_graph() -> Any:
    graph = StateGraph(ExtractionState)
    graph.add_node("analyze_email", analyze_email_node)
    graph.add_node("normalize_tasks", normalize_tasks_node)
    graph.add_edge(START, "analyze_email")
    graph.add_edge("analyze_email", "normalize_tasks")
    graph.add_edge("normalize_tasks", END)
    return graph.compile()


task_extraction_graph = create_extraction_graph()


# =============================================================================
# Public API
# =============================================================================

def process_email_text(email_text: str, current_date: Optional[str] = None) -> EmailAnalysis:
    """Run one email through the extraction graph (blocking)."""
    initial_state: ExtractionState = {
        "email_text": email_text or "",
        "current_date": current_date or datetime.now(timezone.utc).date().isoformat(),
    }
    result = task_extraction_graph.invoke(initial_state)
    analysis = EmailAnalysis(
        is_actionable=bool(result.get("is_actionable")),
        tasks=result.get("tasks") or [],
    )
    logger.info(f"Email analysis done: actionable={analysis.is_actionable} tasks={len(analysis.tasks)}")
    return analysis


class LLMTaskExtractor:
    """Task extractor used by the sync run; the graph runs in a worker thread."""

    async def extract(self, raw_text: str) -> EmailAnalysis:
        return await asyncio.to_thread(process_email_text, raw_text)
