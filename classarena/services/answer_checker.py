"""
Answer correctness against a question's stored answer key.

Submitted content is text. Structured answers (multiple choice, matching)
arrive JSON-encoded:
- TRUE_FALSE: "true" / "false"
- SINGLE_CHOICE: the chosen option text
- MULTIPLE_CHOICE: JSON list of option texts (a bare text counts as a list of one)
- MATCHING: JSON list of {"left": ..., "right": ...}
"""
import json
import logging
from typing import Any, Optional

from classarena.services.collaborators import QuestionData

logger = logging.getLogger(__name__)


def _parse(value: Any) -> Any:
    """Decode JSON text, tolerating payloads that were JSON-encoded twice."""
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return value
    if isinstance(parsed, str):
        try:
            return json.loads(parsed)
        except (TypeError, ValueError):
            return parsed
    return parsed


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "verdadero"):
            return True
        if lowered in ("false", "0", "falso"):
            return False
    return None


def _correct_texts(options: Any):
    options = _parse(options)
    if not isinstance(options, list):
        return []
    return [o.get("text") for o in options if isinstance(o, dict) and o.get("isCorrect")]


def check_answer(question: QuestionData, content: Optional[str]) -> bool:
    """True when `content` matches the answer key. Timeouts (None) are never correct."""
    if content is None:
        return False

    kind = question.question_type
    if kind == "TRUE_FALSE":
        expected = _as_bool(_parse(question.correct_answer))
        given = _as_bool(content)
        return expected is not None and given is expected

    if kind == "SINGLE_CHOICE":
        correct = _correct_texts(question.options)
        return len(correct) > 0 and content.strip() == str(correct[0]).strip()

    if kind == "MULTIPLE_CHOICE":
        correct = _correct_texts(question.options)
        given = _parse(content)
        if not isinstance(given, list):
            given = [content]
        given = [str(g).strip() for g in given]
        return (
            len(correct) > 0
            and len(correct) == len(given)
            and set(str(c).strip() for c in correct) == set(given)
        )

    if kind == "MATCHING":
        pairs = _parse(question.pairs)
        given = _parse(content)
        if not isinstance(pairs, list) or not pairs or not isinstance(given, list):
            return False
        chosen = {
            item.get("left"): item.get("right")
            for item in given if isinstance(item, dict)
        }
        return all(chosen.get(pair.get("left")) == pair.get("right") for pair in pairs)

    logger.warning(f"Unknown question type '{kind}' for question {question.id}; marking incorrect")
    return False
