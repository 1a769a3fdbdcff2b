"""
Analysis Result Normalizer.

Single-point conversion from raw provider output (JSON text or dict) to the
validated AnalysisResult model. Providers are not trusted to emit canonical
grades, bounded scores or complete question entries; everything is checked
here, once, at the provider boundary.
"""
import json
import logging
import math
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..schemas.exam import (
    MAX_SCORE,
    VALID_GRADES,
    AnalysisFeedback,
    AnalysisResult,
    QuestionResult,
)
from .errors import MalformedProviderResponseError

logger = logging.getLogger(__name__)

# Fullwidth, superscript, small and heavy plus signs; minus sign variants
_PLUS_VARIANTS = "\uff0b\u207a\ufe62\u2795"
_MINUS_VARIANTS = "\u2212\uff0d\u207b\u2013\u2014\ufe63"
_SIGN_FOLD = str.maketrans({**{c: "+" for c in _PLUS_VARIANTS}, **{c: "-" for c in _MINUS_VARIANTS}})

_GRADE_TOKEN = re.compile(r"(?<![A-Z])([A-DF])([+-]?)(?![A-Z])")

_TRUE_STRINGS = {"true", "yes", "correct", "1", "对", "正确"}
_FALSE_STRINGS = {"false", "no", "incorrect", "wrong", "0", "错", "错误"}


def normalize_grade(grade: Any) -> str:
    """
    Fold any provider grade string into one of the 13 canonical grades.

    Handles Unicode plus/minus variants and case, then looks for a standalone
    grade token, then falls back to substring bucketing (first of A/B/C/D
    found, with its sign); anything else is F.
    The result is always a member of VALID_GRADES, so the function is idempotent.
    """
    if not grade or not isinstance(grade, str):
        return "F"

    normalized = grade.strip().upper().translate(_SIGN_FOLD)

    if normalized in VALID_GRADES:
        return normalized

    # Standalone grade token inside prose, e.g. "GRADE: B+"
    match = _GRADE_TOKEN.search(normalized)
    if match:
        letter, sign = match.groups()
        return "F" if letter == "F" else f"{letter}{sign}"

    for letter in "ABCD":
        if letter in normalized:
            if "+" in normalized:
                return f"{letter}+"
            if "-" in normalized:
                return f"{letter}-"
            return letter

    return "F"


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive scores (2.5 -> 3), unlike round()."""
    return int(math.floor(value + 0.5))


def clamp_score(value: Any, max_score: int = MAX_SCORE) -> int:
    """Return max(0, min(max_score, round(value))); raises on non-numeric input."""
    if isinstance(value, bool):
        raise MalformedProviderResponseError(f"overallScore is not numeric: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedProviderResponseError(f"overallScore is not numeric: {value!r}")
    if not math.isfinite(number):
        raise MalformedProviderResponseError(f"overallScore is not finite: {value!r}")
    return max(0, min(max_score, round_half_up(number)))


def parse_provider_json(response: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
    """Parse JSON from a provider response, handling markdown code fences."""
    if isinstance(response, dict):
        return response
    if not response or not response.strip():
        raise MalformedProviderResponseError("Empty response from provider")

    cleaned = response.strip()

    # Remove markdown code blocks
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        if lines[-1].strip() == "```":
            lines = lines[1:-1]
        else:
            lines = lines[1:]
        cleaned = "\n".join(lines).strip()
        if cleaned.startswith("json"):
            cleaned = cleaned[4:].strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Last resort: outermost object embedded in prose
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            logger.error(f"Provider response is not JSON: {response[:500]}...")
            raise MalformedProviderResponseError("Provider response is not valid JSON")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.error(f"JSON parse error: {e}")
            logger.error(f"Response: {response[:500]}...")
            raise MalformedProviderResponseError("Provider response is not valid JSON")

    if not isinstance(data, dict):
        raise MalformedProviderResponseError("Provider response JSON is not an object")
    return data


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _as_string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [_as_text(v) for v in value if v is not None and _as_text(v).strip()]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _pick(raw: Dict[str, Any], *keys: str) -> Any:
    """First present key among camelCase / snake_case spellings."""
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _normalize_question(raw: Any, index: int) -> Optional[QuestionResult]:
    """Normalize one questionAnalysis entry; returns None when unusable."""
    if not isinstance(raw, dict):
        logger.warning(f"Dropping question entry {index}: not an object")
        return None

    is_correct = _as_bool(_pick(raw, "isCorrect", "is_correct"))
    if is_correct is None:
        logger.warning(f"Dropping question entry {index}: missing isCorrect")
        return None

    number = _as_number(_pick(raw, "questionNumber", "question_number"), default=0)
    question_number = int(number) if number >= 1 else index + 1

    return QuestionResult(
        question_number=question_number,
        score=_as_number(raw.get("score")),
        max_score=_as_number(_pick(raw, "maxScore", "max_score")),
        feedback=_as_text(raw.get("feedback")),
        question_text=_as_text(_pick(raw, "questionText", "question_text")),
        user_answer=_as_text(_pick(raw, "userAnswer", "user_answer")),
        correct_answer=_as_text(_pick(raw, "correctAnswer", "correct_answer")),
        explanation=_as_text(raw.get("explanation")),
        is_correct=is_correct,
    )


def normalize_analysis_result(response: Union[str, Dict[str, Any], None]) -> AnalysisResult:
    """
    Convert raw provider output to a validated AnalysisResult.

    Raises:
        MalformedProviderResponseError: unparseable JSON or missing
            overallScore / grade / feedback.
    """
    data = parse_provider_json(response)

    raw_score = _pick(data, "overallScore", "overall_score")
    raw_grade = data.get("grade")
    raw_feedback = data.get("feedback")

    if raw_score is None or not raw_grade or not isinstance(raw_feedback, dict):
        logger.error(f"Analysis result missing required fields: keys={list(data.keys())}")
        raise MalformedProviderResponseError("Analysis result missing required fields")

    feedback = AnalysisFeedback(
        strengths=_as_string_list(raw_feedback.get("strengths")),
        improvements=_as_string_list(raw_feedback.get("improvements")),
        detailed_feedback=_as_text(_pick(raw_feedback, "detailedFeedback", "detailed_feedback")),
    )

    raw_questions = _pick(data, "questionAnalysis", "question_analysis")
    questions: List[QuestionResult] = []
    if isinstance(raw_questions, list):
        for idx, raw_q in enumerate(raw_questions):
            question = _normalize_question(raw_q, idx)
            if question is not None:
                questions.append(question)

    try:
        result = AnalysisResult(
            overall_score=clamp_score(raw_score),
            max_score=MAX_SCORE,
            grade=normalize_grade(raw_grade),
            feedback=feedback,
            question_analysis=questions,
        )
    except ValidationError as e:
        raise MalformedProviderResponseError(f"Analysis result failed validation: {e}")

    logger.info(
        f"Normalized analysis: score={result.overall_score}, grade={result.grade}, "
        f"{len(questions)} questions, {result.wrong_count} wrong"
    )
    return result
