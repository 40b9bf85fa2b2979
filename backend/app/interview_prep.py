"""Interview question generation for interview tasks (on demand, never during sync)."""
import logging
import re
from typing import List

from .config import settings
from .task_extractor import _call_llm, _parse_json_response

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("behavioral", "technical", "company-specific")


class QuestionGenerationError(Exception):
    """The model call failed or returned unusable output."""


QUESTIONS_PROMPT = """You are an expert career coach. Generate 5 high-quality, tailored interview questions for the following scenario:

Company: {company}
Role: {role}
Interview Type: {interview_type}

Include a mix of behavioral, technical, and company-specific questions relevant to the role. For example, for a "Software Engineer" role, include a coding challenge idea or a system design question.

Return ONLY valid JSON (no markdown):
{{
  "questions": [
    {{"type": "<behavioral|technical|company-specific>", "question": "<the interview question>"}}
  ]
}}"""


def generate_interview_questions(company: str, role: str, interview_type: str = "technical") -> List[dict]:
    """
    Ask the model for interview questions.

    Returns a list of {"type", "question"} dicts (possibly empty when the model
    returned no usable questions). Raises QuestionGenerationError when the call fails.
    """
    logger.info(f"Generating {interview_type} interview questions for {role} at {company}")
    prompt = QUESTIONS_PROMPT.format(company=company, role=role, interview_type=interview_type)
    try:
        response_text = _call_llm(
            prompt,
            max_tokens=900,
            force_json=True,
            temperature=settings.openai_questions_temperature,
        )
    except Exception as e:
        logger.error(f"Failed to generate interview questions: {e}")
        raise QuestionGenerationError("Failed to generate interview questions") from e

    result = _parse_json_response(response_text)
    raw_questions = result.get("questions") if isinstance(result.get("questions"), list) else []
    questions = []
    for item in raw_questions:
        if not isinstance(item, dict):
            continue
        text = str(item.get("question") or "").strip()
        if not text:
            continue
        qtype = str(item.get("type") or "").strip().lower()
        if qtype not in QUESTION_TYPES:
            qtype = "behavioral"
        questions.append({"type": qtype, "question": text})
    if not raw_questions:
        logger.warning("Interview question generator returned unexpected format")
    logger.info(f"Generated {len(questions)} interview question(s)")
    return questions


def _title_case(text: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group().upper(), text)


_COMPANY_PATTERNS = [
    r"interview (?:at|with) ([a-z0-9\s]+?)(?:\s|$|\.)",
    r"([a-z0-9\s]+?) interview",
    r"position at ([a-z0-9\s]+?)(?:\s|$|\.)",
    r"job at ([a-z0-9\s]+?)(?:\s|$|\.)",
    r"work at ([a-z0-9\s]+?)(?:\s|$|\.)",
]

_ROLE_PATTERNS = [
    r"(software engineer|developer|engineer|manager|analyst|designer|consultant|intern|associate|director|specialist)",
    r"position.*?(?:as|for)\s+([a-z\s]+?)(?:\s|$|\.)",
    r"role.*?(?:as|for)\s+([a-z\s]+?)(?:\s|$|\.)",
    r"applying for ([a-z\s]+?)(?:\s|$|\.)",
    r"interview for ([a-z\s]+?)(?:\s|$|\.)",
]


def extract_company_from_content(title: str, details: str) -> str:
    """Best-effort company name from task text; "the company" when nothing matches."""
    content = f"{title or ''} {details or ''}".lower()
    for pattern in _COMPANY_PATTERNS:
        match = re.search(pattern, content)
        if match and match.group(1):
            company = match.group(1).strip()
            if len(company) > 2 and company not in ("the", "and", "for", "with"):
                return _title_case(company)
    return "the company"


def extract_role_from_content(title: str, details: str) -> str:
    """Best-effort role from task text; "the position" when nothing matches."""
    content = f"{title or ''} {details or ''}".lower()
    for pattern in _ROLE_PATTERNS:
        match = re.search(pattern, content)
        if match and match.group(1):
            role = match.group(1).strip()
            if len(role) > 2:
                return _title_case(role)
    return "the position"


def fallback_questions(role: str) -> List[dict]:
    """Generic questions used when the generator returns none."""
    lowered = (role or "").lower()
    is_generic = "position" in lowered or "role" in lowered
    interest = "this position" if is_generic else f"working as a {role}"
    return [
        {
            "type": "behavioral",
            "question": "Tell me about a time when you had to overcome a significant challenge at work.",
        },
        {"type": "company-specific", "question": f"Why are you interested in {interest}?"},
        {
            "type": "behavioral",
            "question": "Describe a situation where you had to work with a difficult team member.",
        },
        {
            "type": "company-specific",
            "question": "What are your greatest strengths and how do they relate to this role?",
        },
    ]
