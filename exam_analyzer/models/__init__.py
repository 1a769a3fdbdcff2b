# Models package
from .exam_paper import ExamPaper

__all__ = [
    "ExamPaper",
]
