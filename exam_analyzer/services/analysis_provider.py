"""
External Analysis Providers

OCR and grading backends for exam papers, behind one capability-scoped
interface. Two interchangeable implementations:

- VisionAnalysisProvider: a vision model reads and grades the page in one call.
- OcrTextAnalysisProvider: a vision model transcribes the page, then a text
  model (any OpenAI-compatible endpoint, e.g. DeepSeek) grades the transcript.

Both return results already passed through normalize_analysis_result, so
callers only ever see validated AnalysisResult objects. SDK exceptions are
translated to ProviderError subclasses here.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from langsmith import traceable

from ..config import settings
from ..schemas.exam import AnalysisResult
from .errors import ProviderError, translate_provider_error
from .image_utils import file_to_base64_pages_async
from .result_normalizer import normalize_analysis_result

logger = logging.getLogger(__name__)


# =============================================================================
# Prompts
# =============================================================================

RESULT_JSON_FORMAT = """{
  "overallScore": 0-100之间的数字,
  "maxScore": 100,
  "grade": "等级 (A+, A, A-, B+, B, B-, C+, C, C-, D+, D, D-, F)",
  "feedback": {
    "strengths": ["优点"],
    "improvements": ["改进建议"],
    "detailedFeedback": "总体评价和学习建议"
  },
  "questionAnalysis": [
    {
      "questionNumber": 题号,
      "score": 得分,
      "maxScore": 该题满分,
      "feedback": "该题反馈",
      "questionText": "题目原文",
      "userAnswer": "学生答案",
      "correctAnswer": "标准答案",
      "explanation": "解题思路与知识点",
      "isCorrect": true 或 false
    }
  ]
}"""

GRADING_SYSTEM_PROMPT = f"""你是一名经验丰富的阅卷老师。请批改这份试卷，逐题给出评分和反馈。

只返回一个JSON对象，格式如下：
{RESULT_JSON_FORMAT}

要求：
1. 识别试卷上的每一道主要题目，按试卷顺序给出题号
2. 每道题都要给出题目原文、学生答案、标准答案和解析
3. isCorrect 表示学生是否答对，部分得分的题目也要明确判断对错
4. 评分公正，反馈具体并鼓励学生进步"""

OCR_PROMPT = "请准确识别并提取这份试卷中的全部文字，包括题目、学生答案和批注，保持原有的题号和结构。只返回识别出的文字。"

COUNT_PROMPT = """请数一数这份试卷中主要题目（大题）的数量。

只计算顶级题号，例如 1、2、3 或 一、二、三 或 第1题、第2题。
不要计算子题 (1)(2)、①②、a) b)，也不要计算选项或学生答案里的编号。

只返回一个阿拉伯数字，不要返回其他任何文字。"""


# =============================================================================
# Vision Client Interface
# =============================================================================

class VisionClient(ABC):
    """Abstract base class for vision language model backends."""

    @abstractmethod
    async def complete(
        self,
        images_b64: List[str],
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
        """
        Send images (possibly none) and prompts to the model, return its text.
        """
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name for logging."""
        pass


class OpenAIVisionClient(VisionClient):
    """OpenAI GPT-4o vision backend using the native async client."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o", timeout: float = 120.0):
        from openai import AsyncOpenAI
        self.client = AsyncOpenAI(api_key=api_key or settings.openai_api_key, timeout=timeout)
        self.model = model

    @property
    def name(self) -> str:
        return f"OpenAI/{self.model}"

    @traceable(run_type="llm", name="OpenAI Vision")
    async def complete(
        self,
        images_b64: List[str],
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
        content = []

        for img_b64 in images_b64:
            content.append({
                "type": "image_url",
                "image_url": {
                    "url": f"data:image/png;base64,{img_b64}",
                    "detail": "high",
                },
            })

        content.append({"type": "text", "text": user_prompt})

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )

        return response.choices[0].message.content or ""


class AnthropicVisionClient(VisionClient):
    """Anthropic Claude vision backend."""

    def __init__(self, api_key: Optional[str] = None, model: str = "claude-sonnet-4-20250514", timeout: float = 120.0):
        import anthropic
        self.client = anthropic.AsyncAnthropic(api_key=api_key or settings.anthropic_api_key, timeout=timeout)
        self.model = model

    @property
    def name(self) -> str:
        return f"Anthropic/{self.model}"

    @traceable(run_type="llm", name="Claude Vision")
    async def complete(
        self,
        images_b64: List[str],
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4000,
        temperature: float = 0.1,
    ) -> str:
        content = []

        for img_b64 in images_b64:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": "image/png",
                    "data": img_b64,
                },
            })

        content.append({"type": "text", "text": user_prompt})

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": content}],
        )

        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")


def get_vision_client(backend: str = "openai", **kwargs) -> VisionClient:
    """
    Factory function to get a vision backend by name.

    Args:
        backend: One of "openai", "anthropic"
        **kwargs: Backend-specific arguments (api_key, model, timeout)
    """
    backends = {
        "openai": OpenAIVisionClient,
        "anthropic": AnthropicVisionClient,
    }

    if backend.lower() not in backends:
        raise ValueError(f"Unknown vision backend: {backend}. Available: {list(backends.keys())}")

    return backends[backend.lower()](**kwargs)


class TextAnalysisClient:
    """OpenAI-compatible chat completion client returning JSON objects."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "deepseek-chat",
        timeout: float = 120.0,
    ):
        from openai import AsyncOpenAI
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model

    @property
    def name(self) -> str:
        return f"Text/{self.model}"

    @traceable(run_type="llm", name="Text Analysis")
    async def complete_json(self, system_prompt: str, user_prompt: str, max_tokens: int = 4000) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            max_tokens=max_tokens,
            temperature=0.2,
        )
        return response.choices[0].message.content or ""


# =============================================================================
# Analysis Provider Interface
# =============================================================================

class ExternalAnalysisProvider(ABC):
    """OCR + grading capabilities the API layer depends on."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def extract_text(self, data: bytes, mime_type: str) -> str:
        """Transcribe all text on the exam paper."""
        pass

    @abstractmethod
    async def analyze_image(self, data: bytes, mime_type: str) -> AnalysisResult:
        """Grade the exam paper directly from its image/PDF."""
        pass

    @abstractmethod
    async def analyze_text(self, text: str) -> AnalysisResult:
        """Grade an already transcribed exam paper."""
        pass

    @abstractmethod
    async def count_questions(self, data: bytes, mime_type: str) -> str:
        """Ask the model for the number of top-level questions; returns its raw reply."""
        pass


class VisionAnalysisProvider(ExternalAnalysisProvider):
    """Single vision-model call performs OCR and grading together."""

    def __init__(self, vision: VisionClient, max_tokens: int = 4000):
        self.vision = vision
        self.max_tokens = max_tokens

    @property
    def name(self) -> str:
        return f"vision:{self.vision.name}"

    async def extract_text(self, data: bytes, mime_type: str) -> str:
        pages = await file_to_base64_pages_async(data, mime_type)
        try:
            text = await self.vision.complete(pages, "你是一个精确的OCR文字识别助手。", OCR_PROMPT, max_tokens=self.max_tokens)
        except ProviderError:
            raise
        except Exception as e:
            raise translate_provider_error(e, self.name) from e
        logger.info(f"[{self.name}] OCR extracted {len(text)} chars from {len(pages)} page(s)")
        return text

    @traceable(name="analyze_exam_image")
    async def analyze_image(self, data: bytes, mime_type: str) -> AnalysisResult:
        pages = await file_to_base64_pages_async(data, mime_type)
        logger.info(f"[{self.name}] Grading {len(pages)} page(s)")
        try:
            raw = await self.vision.complete(
                pages, GRADING_SYSTEM_PROMPT, "请批改这份试卷，只返回JSON。", max_tokens=self.max_tokens
            )
        except ProviderError:
            raise
        except Exception as e:
            raise translate_provider_error(e, self.name) from e
        return normalize_analysis_result(raw)

    @traceable(name="analyze_exam_text")
    async def analyze_text(self, text: str) -> AnalysisResult:
        if not text or not text.strip():
            raise ProviderError("试卷文本内容为空，无法进行分析", provider=self.name)
        try:
            raw = await self.vision.complete(
                [], GRADING_SYSTEM_PROMPT, f"试卷内容：\n\n{text}\n\n只返回JSON。", max_tokens=self.max_tokens
            )
        except ProviderError:
            raise
        except Exception as e:
            raise translate_provider_error(e, self.name) from e
        return normalize_analysis_result(raw)

    async def count_questions(self, data: bytes, mime_type: str) -> str:
        pages = await file_to_base64_pages_async(data, mime_type)
        try:
            return await self.vision.complete(pages, "你是试卷题目计数助手。", COUNT_PROMPT, max_tokens=20, temperature=0.0)
        except ProviderError:
            raise
        except Exception as e:
            raise translate_provider_error(e, self.name) from e


class OcrTextAnalysisProvider(VisionAnalysisProvider):
    """Vision OCR first, then a text model grades the transcript."""

    def __init__(self, vision: VisionClient, text_client: TextAnalysisClient, max_tokens: int = 4000):
        super().__init__(vision, max_tokens=max_tokens)
        self.text_client = text_client

    @property
    def name(self) -> str:
        return f"ocr_text:{self.vision.name}+{self.text_client.name}"

    async def analyze_image(self, data: bytes, mime_type: str) -> AnalysisResult:
        text = await self.extract_text(data, mime_type)
        if not text.strip():
            raise ProviderError("未能识别到试卷内容，请确保图片清晰且包含文字", provider=self.name)
        return await self.analyze_text(text)

    @traceable(name="analyze_exam_text")
    async def analyze_text(self, text: str) -> AnalysisResult:
        if not text or not text.strip():
            raise ProviderError("试卷文本内容为空，无法进行分析", provider=self.name)
        logger.info(f"[{self.name}] Grading transcript of {len(text)} chars")
        try:
            raw = await self.text_client.complete_json(
                GRADING_SYSTEM_PROMPT, f"试卷内容：\n\n{text}", max_tokens=self.max_tokens
            )
        except ProviderError:
            raise
        except Exception as e:
            raise translate_provider_error(e, self.name) from e
        return normalize_analysis_result(raw)


# Singleton provider instance
_provider: Optional[ExternalAnalysisProvider] = None


def build_analysis_provider() -> ExternalAnalysisProvider:
    """Build the provider configured in settings."""
    if settings.vision_backend.lower() == "anthropic":
        vision = get_vision_client(
            "anthropic",
            model=settings.anthropic_vision_model,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        vision = get_vision_client(
            "openai",
            model=settings.openai_vision_model,
            timeout=settings.provider_timeout_seconds,
        )

    if settings.analysis_provider.lower() == "ocr_text":
        text_client = TextAnalysisClient(
            api_key=settings.text_analysis_api_key,
            base_url=settings.text_analysis_base_url,
            model=settings.text_analysis_model,
            timeout=settings.provider_timeout_seconds,
        )
        provider = OcrTextAnalysisProvider(vision, text_client, max_tokens=settings.max_tokens_per_request)
    else:
        provider = VisionAnalysisProvider(vision, max_tokens=settings.max_tokens_per_request)

    logger.info(f"Analysis provider initialized: {provider.name}")
    return provider


def get_analysis_provider() -> ExternalAnalysisProvider:
    """Get or create the configured analysis provider."""
    global _provider
    if _provider is None:
        _provider = build_analysis_provider()
    return _provider
