"""
Mistake notebook.

Derives the wrong-question view from completed exam records and partitions it
three ways (knowledge point, error type, difficulty) by keyword matching.
Everything here is a pure function of its input: same records in, same
buckets out, in the same order.
"""
import json
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..schemas.exam import (
    AnalysisResult,
    ClassificationSummary,
    RecordStatus,
    WrongQuestion,
    WrongQuestionClassification,
)

logger = logging.getLogger(__name__)

EXAM_DATE_FORMAT = "%Y/%m/%d"

# (label, keywords) in priority order; first label with a matching keyword wins
KNOWLEDGE_POINT_RULES: Sequence[Tuple[str, Sequence[str]]] = (
    ("函数与方程", ("函数", "方程", "不等式", "equation", "function", "inequality")),
    ("几何", ("几何", "三角形", "圆", "角度", "面积", "周长", "平行", "垂直", "triangle", "circle", "geometry", "angle")),
    ("代数运算", ("代数", "多项式", "因式", "分式", "根式", "指数", "对数", "algebra", "polynomial", "fraction")),
    ("概率与统计", ("概率", "统计", "平均数", "方差", "probability", "statistics", "mean")),
    ("数与计算", ("计算", "加法", "减法", "乘法", "除法", "小数", "分数", "百分", "arithmetic")),
    ("物理", ("力", "速度", "加速度", "电路", "电流", "电压", "能量", "force", "velocity", "circuit")),
    ("化学", ("化学", "元素", "分子", "原子", "反应", "溶液", "chemical", "molecule", "reaction")),
    ("语文阅读", ("阅读", "文章", "作者", "段落", "修辞", "古诗", "文言", "reading", "passage")),
    ("英语语法", ("语法", "时态", "从句", "单词", "grammar", "tense", "vocabulary", "clause")),
)
DEFAULT_KNOWLEDGE_POINT = "其他"

ERROR_TYPE_RULES: Sequence[Tuple[str, Sequence[str]]] = (
    ("计算错误", ("计算错误", "计算有误", "算错", "运算错误", "calculation", "arithmetic error")),
    ("审题不清", ("审题", "题意", "理解错", "看错", "misread", "misunderstood the question")),
    ("概念不清", ("概念", "定义", "定理", "公式", "原理", "concept", "definition", "formula")),
    ("步骤不完整", ("步骤", "过程", "不完整", "缺少", "遗漏", "incomplete", "missing step")),
    ("粗心大意", ("粗心", "马虎", "笔误", "抄错", "careless")),
    ("未作答", ("未作答", "空白", "没有作答", "未答", "blank", "no answer")),
)
DEFAULT_ERROR_TYPE = "其他错误"

HARD_KEYWORDS = ("难题", "压轴", "综合", "拓展", "较难", "困难", "challenging", "difficult")
EASY_KEYWORDS = ("基础", "简单", "送分", "basic", "easy")

DIFFICULTY_EASY = "基础"
DIFFICULTY_MEDIUM = "中等"
DIFFICULTY_HARD = "困难"
DIFFICULTY_ORDER = (DIFFICULTY_EASY, DIFFICULTY_MEDIUM, DIFFICULTY_HARD)


def _parse_result(record) -> Optional[AnalysisResult]:
    if not record.analysis_result:
        return None
    try:
        return AnalysisResult.model_validate(json.loads(record.analysis_result))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Failed to parse analysis result of record {record.id}: {e}")
        return None


def derive_wrong_questions(records: Iterable, user_id: Optional[str] = None) -> List[WrongQuestion]:
    """
    Collect every question with is_correct=False from completed records.

    Args:
        records: ExamRecord objects, typically newest first
        user_id: Restrict to records owned by this user when given

    Returns:
        Wrong questions in record order, then source question order
    """
    wrong: List[WrongQuestion] = []
    for record in records:
        if record.status != RecordStatus.completed:
            continue
        if user_id is not None and record.user_id != user_id:
            continue

        result = _parse_result(record)
        if result is None:
            continue

        exam_date = record.uploaded_at.strftime(EXAM_DATE_FORMAT)
        for question in result.question_analysis:
            if question.is_correct:
                continue
            wrong.append(WrongQuestion(
                question_number=question.question_number,
                question_text=question.question_text,
                user_answer=question.user_answer,
                correct_answer=question.correct_answer,
                explanation=question.explanation,
                feedback=question.feedback,
                score=question.score,
                max_score=question.max_score,
                exam_id=record.id,
                exam_date=exam_date,
                user_id=record.user_id,
            ))

    return wrong


def _match_rules(text: str, rules: Sequence[Tuple[str, Sequence[str]]], default: str) -> str:
    lowered = text.lower()
    for label, keywords in rules:
        if any(keyword.lower() in lowered for keyword in keywords):
            return label
    return default


def classify_knowledge_point(question: WrongQuestion) -> str:
    """Knowledge point from the question text and its explanation."""
    return _match_rules(
        f"{question.question_text}\n{question.explanation}",
        KNOWLEDGE_POINT_RULES,
        DEFAULT_KNOWLEDGE_POINT,
    )


def classify_error_type(question: WrongQuestion) -> str:
    """Error type from the grader's feedback and explanation."""
    if not question.user_answer.strip():
        return "未作答"
    return _match_rules(
        f"{question.feedback}\n{question.explanation}",
        ERROR_TYPE_RULES,
        DEFAULT_ERROR_TYPE,
    )


def classify_difficulty(question: WrongQuestion) -> str:
    """
    Difficulty from explicit keywords, else from the question's point value.
    """
    text = f"{question.question_text}\n{question.feedback}\n{question.explanation}".lower()
    if any(k.lower() in text for k in HARD_KEYWORDS):
        return DIFFICULTY_HARD
    if any(k.lower() in text for k in EASY_KEYWORDS):
        return DIFFICULTY_EASY

    if question.max_score <= 0:
        return DIFFICULTY_MEDIUM
    if question.max_score <= 5:
        return DIFFICULTY_EASY
    if question.max_score <= 12:
        return DIFFICULTY_MEDIUM
    return DIFFICULTY_HARD


def classify_wrong_questions(questions: Sequence[WrongQuestion]) -> WrongQuestionClassification:
    """
    Partition wrong questions by knowledge point, error type and difficulty.

    Each question lands in exactly one bucket of each partition. Buckets keep
    first-seen order; difficulty labels are listed easy to hard.
    """
    by_knowledge_point: Dict[str, List[WrongQuestion]] = {}
    by_error_type: Dict[str, List[WrongQuestion]] = {}
    by_difficulty: Dict[str, List[WrongQuestion]] = {}

    for question in questions:
        by_knowledge_point.setdefault(classify_knowledge_point(question), []).append(question)
        by_error_type.setdefault(classify_error_type(question), []).append(question)
        by_difficulty.setdefault(classify_difficulty(question), []).append(question)

    by_difficulty = {level: by_difficulty[level] for level in DIFFICULTY_ORDER if level in by_difficulty}

    return WrongQuestionClassification(
        by_knowledge_point=by_knowledge_point,
        by_error_type=by_error_type,
        by_difficulty=by_difficulty,
        summary=ClassificationSummary(
            total_questions=len(questions),
            knowledge_points=list(by_knowledge_point.keys()),
            error_types=list(by_error_type.keys()),
            difficulty_levels=list(by_difficulty.keys()),
        ),
    )
