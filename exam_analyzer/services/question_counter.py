"""
Question counting.

Fast estimate of how many top-level questions an exam paper has, used by the
client as the denominator of its progress display. Tries the model first,
then falls back to numbering patterns in the OCR transcript. Never guesses:
when neither works the count is None with method "unknown".
"""
import logging
import re
from typing import Optional

from ..schemas.exam import QuestionCountResult
from .analysis_provider import ExternalAnalysisProvider
from .errors import (
    ProviderError,
    ProviderOverloadedError,
    ProviderRateLimitError,
    ProviderUnauthorizedError,
)

logger = logging.getLogger(__name__)

# Auth and capacity failures reach the caller; anything else falls back
_SURFACED_ERRORS = (ProviderUnauthorizedError, ProviderRateLimitError, ProviderOverloadedError)

MIN_QUESTIONS = 1
MAX_QUESTIONS = 100

# Top-level numbering at line start: "1.", "1、", "12．", "一、", "第3题", "第十题"
_ARABIC_HEADING = re.compile(r"^\s*(\d{1,3})\s*[\.、．](?!\d)", re.MULTILINE)
_CHINESE_HEADING = re.compile(r"^\s*([一二三四五六七八九十]{1,3})\s*[、．.]", re.MULTILINE)
_TI_HEADING = re.compile(r"第\s*([\d一二三四五六七八九十]{1,3})\s*[题道]")

_CHINESE_DIGITS = {"一": 1, "二": 2, "三": 3, "四": 4, "五": 5, "六": 6, "七": 7, "八": 8, "九": 9}


def chinese_numeral_to_int(text: str) -> Optional[int]:
    """Convert 1..99 written as 一 .. 九十九; returns None for anything else."""
    if text.isdigit():
        return int(text)
    if text == "十":
        return 10
    if "十" in text:
        tens, _, ones = text.partition("十")
        tens_value = _CHINESE_DIGITS.get(tens, 1) if tens else 1
        ones_value = _CHINESE_DIGITS.get(ones, 0) if ones else 0
        if (tens and tens not in _CHINESE_DIGITS) or (ones and ones not in _CHINESE_DIGITS):
            return None
        return tens_value * 10 + ones_value
    return _CHINESE_DIGITS.get(text)


def parse_llm_count(reply: str) -> QuestionCountResult:
    """
    Interpret the model's reply to the count prompt.

    A bare integer is high confidence; an integer buried in prose is medium.
    """
    cleaned = (reply or "").strip()
    if re.fullmatch(r"\d{1,3}", cleaned):
        count = int(cleaned)
        if MIN_QUESTIONS <= count <= MAX_QUESTIONS:
            return QuestionCountResult(count=count, method="llm", confidence="high")

    numbers = [int(n) for n in re.findall(r"\d{1,3}", cleaned)]
    plausible = [n for n in numbers if MIN_QUESTIONS <= n <= MAX_QUESTIONS]
    if len(plausible) == 1:
        return QuestionCountResult(
            count=plausible[0],
            method="llm",
            confidence="medium",
            warning="题目数量为模型估计值，可能不准确",
        )

    return QuestionCountResult(count=None, method="unknown", confidence="low")


def count_questions_in_text(text: str) -> QuestionCountResult:
    """
    Count top-level questions from numbering patterns in an OCR transcript.

    Uses the largest heading number that forms a run starting at 1, so stray
    numbers inside answers do not inflate the count.
    """
    if not text or not text.strip():
        return QuestionCountResult(count=None, method="unknown", confidence="low")

    found = set()
    for match in _ARABIC_HEADING.finditer(text):
        found.add(int(match.group(1)))
    for pattern in (_CHINESE_HEADING, _TI_HEADING):
        for match in pattern.finditer(text):
            value = chinese_numeral_to_int(match.group(1))
            if value is not None:
                found.add(value)

    count = 0
    while count + 1 in found:
        count += 1

    if count < MIN_QUESTIONS or count > MAX_QUESTIONS:
        return QuestionCountResult(count=None, method="unknown", confidence="low")

    # A gap-free run that covers every heading found is more trustworthy
    confidence = "medium" if max(found) == count else "low"
    return QuestionCountResult(
        count=count,
        method="ocr_regex",
        confidence=confidence,
        warning="题目数量根据识别文字推断，可能不准确",
    )


async def count_questions(
    provider: ExternalAnalysisProvider,
    data: bytes,
    mime_type: str,
    ocr_text: Optional[str] = None,
) -> QuestionCountResult:
    """
    Count questions with the model, falling back to OCR numbering patterns.

    Args:
        provider: The configured analysis provider
        data: Stored exam-paper file bytes
        mime_type: MIME type of the stored file
        ocr_text: Previously extracted text, if the record already has it

    Returns:
        QuestionCountResult; count is None when nothing could be determined

    Raises:
        ProviderUnauthorizedError, ProviderRateLimitError, ProviderOverloadedError
    """
    try:
        reply = await provider.count_questions(data, mime_type)
        result = parse_llm_count(reply)
        if result.count is not None:
            logger.info(f"Counted {result.count} questions (llm, {result.confidence})")
            return result
        logger.warning(f"Unusable question count reply: {reply!r}")
    except _SURFACED_ERRORS:
        raise
    except ProviderError as e:
        logger.warning(f"Model question count failed: {e}")

    try:
        text = ocr_text if ocr_text else await provider.extract_text(data, mime_type)
    except _SURFACED_ERRORS:
        raise
    except ProviderError as e:
        logger.warning(f"OCR fallback for question count failed: {e}")
        text = ""

    result = count_questions_in_text(text)
    if result.count is None:
        result.warning = "无法确定试卷题目数量"
        logger.warning("Question count could not be determined")
    else:
        logger.info(f"Counted {result.count} questions (ocr_regex, {result.confidence})")
    return result
