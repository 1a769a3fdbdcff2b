"""
SQLAlchemy ORM model for uploaded exam papers.

The analysis_result column holds the serialized AnalysisResult JSON:
{
    "overallScore": 85,
    "maxScore": 100,
    "grade": "B+",
    "feedback": {"strengths": [...], "improvements": [...], "detailedFeedback": "..."},
    "questionAnalysis": [
        {
            "questionNumber": 1,
            "score": 8,
            "maxScore": 10,
            "isCorrect": true,
            ...
        },
        ...
    ]
}
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, Text

from ..database import Base


class ExamPaper(Base):
    """One uploaded exam paper and its processing status."""
    __tablename__ = "exam_papers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    filename = Column(Text, nullable=False)
    file_path = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    mime_type = Column(String(100), nullable=True)
    original_text = Column(Text, nullable=True)
    analysis_result = Column(Text, nullable=True)
    score = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default="uploaded")
    uploaded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Owner as reported by the auth middleware, if any
    user_id = Column(String(255), nullable=True, index=True)

    def __repr__(self):
        return f"<ExamPaper(id={self.id}, filename={self.filename}, status={self.status})>"
