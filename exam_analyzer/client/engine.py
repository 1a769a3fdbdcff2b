"""
Client workflow engine.

Drives one session through upload -> count -> analyze -> results:

    idle -> uploading -> processing -> completed
    uploading / processing -> error
    error -> processing      (retry_analysis, no re-upload)
    completed / error -> idle (start_over)

Only one pipeline runs at a time; a second request while one is in flight
gets a busy notice and changes nothing else. Every state change is pushed to
subscribers and persisted through the session store. A persisted run that
was interrupted mid-flight is restored as an error with a retry affordance,
never resumed automatically.
"""
import asyncio
import logging
from typing import Callable, List, Optional

from ..utils.file_types import is_accepted_file
from .api_client import ExamApiClient
from .config import ClientSettings
from .image_prep import LocalFile, LocalPreview, prepare_for_upload
from .progress import ProgressSimulator, estimated_percent, seconds_per_question
from .resilient import ApiError, RetryPolicy, retry_message
from .session import FileSessionStore, SessionStore, clear_session, load_session, save_session
from .state import AppState, ClientWorkflowState, ProcessingStep, UploadProgress

logger = logging.getLogger(__name__)

Listener = Callable[[ClientWorkflowState], None]
PreviewFactory = Callable[[LocalFile], LocalPreview]

MSG_UPLOADING = "正在上传试卷..."
MSG_UPLOADED = "上传成功，准备分析..."
MSG_COUNTING = "正在识别试卷题目数量..."
MSG_ANALYZING = "AI正在分析试卷..."
MSG_GENERATING = "生成分析报告..."
MSG_COMPLETED = "分析完成"
MSG_BUSY = "正在处理中，请等待当前操作完成"
MSG_INVALID_TYPE = "只支持图片或PDF格式的试卷"
MSG_COUNT_UNAVAILABLE = "无法确定试卷题目数量，请重试"
MSG_LOW_CONFIDENCE = "题目数量识别置信度较低，进度仅供参考"
MSG_INTERRUPTED = "上次分析被中断，请点击重试继续分析"
MSG_UNEXPECTED = "处理失败，请重试"
MSG_NOTHING_TO_RETRY = "没有可以重试的分析"
MSG_OFFLINE = "网络连接已断开，等待网络恢复..."
MSG_RECONNECTED = "网络已恢复，请点击重试"


def _too_large_message(max_mb: int) -> str:
    return f"文件过大，最大支持 {max_mb}MB"


class WorkflowEngine:
    """
    Client-resident state machine for one exam-analysis session.

    Args:
        api: HTTP client for the exam analyzer API
        session_store: Durable per-session storage
        settings: Client settings (retry, image, progress pacing)
        preview_factory: Creates the local preview for a selected file
        sleep: Awaitable sleep used by the progress simulator
    """

    def __init__(
        self,
        api: ExamApiClient,
        session_store: SessionStore,
        settings: Optional[ClientSettings] = None,
        preview_factory: PreviewFactory = LocalPreview.create,
        sleep: Callable = asyncio.sleep,
    ):
        self.api = api
        self.session_store = session_store
        self.settings = settings or ClientSettings()
        self._preview_factory = preview_factory
        self._sleep = sleep
        self._listeners: List[Listener] = []
        self._online = True
        self.state = ClientWorkflowState()

    # =========================================================================
    # Subscription and state updates
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("Workflow listener raised")

    async def _persist(self) -> None:
        if self.state.app_state in (AppState.idle, AppState.completed):
            await clear_session(self.session_store)
        else:
            await save_session(self.session_store, self.state)

    async def _update(self, **changes) -> None:
        self.state = self.state.model_copy(update=changes)
        await self._persist()
        self._notify()

    async def _progress(self, step: ProcessingStep, percent: int, message: str, **extra) -> None:
        await self._update(
            current_step=step,
            progress=UploadProgress(step=step, progress=percent, message=message, **extra),
        )

    async def _reject_busy(self) -> None:
        logger.info("Rejected request while a pipeline is in flight")
        await self._update(notice=MSG_BUSY)

    async def _fail(self, message: str) -> None:
        """Move to error, keeping record id and preview so analysis can be retried."""
        can_retry = self.state.exam_paper_id is not None
        logger.warning(f"Workflow failed at {self.state.current_step.value}: {message}")
        await self._update(
            app_state=AppState.error,
            error_message=message,
            can_retry=can_retry,
            progress=self.state.progress.model_copy(update={"message": message}),
        )

    async def _on_retry(self, attempt: int, max_retries: int) -> None:
        await self._update(
            progress=self.state.progress.model_copy(update={"message": retry_message(attempt, max_retries)}),
        )

    def _release_preview(self) -> None:
        preview = self.state.local_preview
        if preview is not None:
            preview.release()
            self.state = self.state.model_copy(update={"local_preview": None})

    # =========================================================================
    # Intents
    # =========================================================================

    async def select_file(self, file: LocalFile) -> bool:
        """
        Validate, upload and analyze a newly selected file.

        Returns:
            True if the pipeline started, False if rejected (busy or invalid)
        """
        if self.state.is_processing:
            await self._reject_busy()
            return False

        if not is_accepted_file(file.mime_type, file.name):
            await self._reject_file(MSG_INVALID_TYPE)
            return False
        if file.size > self.settings.max_upload_size_bytes:
            await self._reject_file(_too_large_message(self.settings.max_upload_size_mb))
            return False

        self._release_preview()
        await self._update(
            app_state=AppState.uploading,
            current_step=ProcessingStep.upload,
            progress=UploadProgress(step=ProcessingStep.upload, progress=10, message=MSG_UPLOADING),
            exam_paper_id=None,
            results=None,
            server_image_url=None,
            error_message=None,
            local_preview=self._preview_factory(file),
            is_processing=True,
            notice=None,
            warning=None,
            can_retry=False,
            reconnect_prompt=None,
        )

        try:
            name, data, mime_type = file.name, file.data, file.mime_type
            if self.settings.downsize_images:
                name, data, mime_type = await asyncio.to_thread(
                    prepare_for_upload,
                    file,
                    self.settings.image_max_dimension,
                    self.settings.jpeg_quality,
                )

            try:
                uploaded = await self.api.upload(name, data, mime_type, on_retry=self._on_retry)
            except ApiError as e:
                await self._fail(e.message)
                return True

            logger.info(f"Uploaded {file.name} as record {uploaded.record_id}")
            await self._update(
                app_state=AppState.processing,
                exam_paper_id=uploaded.record_id,
                server_image_url=uploaded.image_url,
                progress=UploadProgress(step=ProcessingStep.upload, progress=100, message=MSG_UPLOADED),
            )
            await self._run_analysis()
            return True
        except Exception as e:
            logger.error(f"Unexpected failure processing {file.name}: {e}", exc_info=True)
            await self._fail(MSG_UNEXPECTED)
            return True
        finally:
            await self._update(is_processing=False)

    async def _reject_file(self, message: str) -> None:
        self._release_preview()
        await self._update(
            app_state=AppState.error,
            current_step=ProcessingStep.upload,
            progress=UploadProgress(step=ProcessingStep.upload, progress=0, message=message),
            exam_paper_id=None,
            results=None,
            server_image_url=None,
            error_message=message,
            can_retry=False,
            notice=None,
            warning=None,
        )

    async def retry_analysis(self) -> bool:
        """
        Re-run count and analyze for the current record without re-uploading.

        Returns:
            True if the pipeline started
        """
        if self.state.is_processing:
            await self._reject_busy()
            return False

        if self.state.app_state != AppState.error or not self.state.exam_paper_id:
            await self._update(notice=MSG_NOTHING_TO_RETRY)
            return False

        await self._update(
            app_state=AppState.processing,
            is_processing=True,
            error_message=None,
            can_retry=False,
            reconnect_prompt=None,
            notice=None,
            warning=None,
        )
        try:
            await self._run_analysis()
            return True
        except Exception as e:
            logger.error(f"Unexpected failure retrying {self.state.exam_paper_id}: {e}", exc_info=True)
            await self._fail(MSG_UNEXPECTED)
            return True
        finally:
            await self._update(is_processing=False)

    async def start_over(self) -> bool:
        """Full reset to idle, releasing the local preview and the persisted session."""
        if self.state.is_processing:
            await self._reject_busy()
            return False

        self._release_preview()
        self.state = ClientWorkflowState()
        await clear_session(self.session_store)
        self._notify()
        return True

    async def set_online(self, online: bool) -> None:
        """
        Network status change. Losing the network mid-run updates the progress
        message; regaining it only prompts the user to retry.
        """
        was_online, self._online = self._online, online
        if online == was_online:
            return

        if not online:
            logger.info("Network connection lost")
            if self.state.is_processing:
                await self._update(
                    progress=self.state.progress.model_copy(update={"message": MSG_OFFLINE}),
                )
            return

        logger.info("Network connection restored")
        if self.state.app_state in (AppState.processing, AppState.uploading, AppState.error):
            await self._update(reconnect_prompt=MSG_RECONNECTED)

    async def restore(self) -> ClientWorkflowState:
        """
        Load the persisted session after a reload.

        An interrupted upload/analysis comes back as an error the user can
        retry; nothing is re-sent automatically.
        """
        restored = await load_session(self.session_store)
        if restored is None:
            return self.state

        if restored.app_state in (AppState.uploading, AppState.processing):
            logger.info(f"Restored interrupted session for record {restored.exam_paper_id}")
            restored = restored.model_copy(update={
                "app_state": AppState.error,
                "error_message": MSG_INTERRUPTED,
                "can_retry": restored.exam_paper_id is not None,
                "progress": restored.progress.model_copy(update={"message": MSG_INTERRUPTED}),
            })
        elif restored.app_state == AppState.error:
            restored = restored.model_copy(update={"can_retry": restored.exam_paper_id is not None})

        self.state = restored
        await self._persist()
        self._notify()
        return self.state

    async def close(self) -> None:
        """Release session-owned resources (the local preview)."""
        self._release_preview()
        self._listeners.clear()

    # =========================================================================
    # Analysis pipeline
    # =========================================================================

    async def _on_question_tick(self, current: int, total: int) -> None:
        if self.state.app_state != AppState.processing:
            return
        message = MSG_OFFLINE if not self._online else f"AI正在分析第 {current} 题..."
        await self._progress(
            ProcessingStep.analysis,
            estimated_percent(current, total),
            message,
            current_question=current,
            total_questions=total,
            question_progress=f"{current}/{total}",
        )

    async def _run_analysis(self) -> None:
        record_id = self.state.exam_paper_id

        await self._progress(ProcessingStep.ocr, 0, MSG_COUNTING)
        try:
            counted = await self.api.count_questions(record_id, on_retry=self._on_retry)
        except ApiError as e:
            await self._fail(MSG_COUNT_UNAVAILABLE if e.status_code == 422 else e.message)
            return

        if not counted.success or counted.question_count is None:
            await self._fail(MSG_COUNT_UNAVAILABLE)
            return

        total = counted.question_count
        warning = counted.warning
        if warning is None and counted.confidence == "low":
            warning = MSG_LOW_CONFIDENCE
        if warning:
            logger.info(f"Question count warning for {record_id}: {warning}")

        self.state = self.state.model_copy(update={"warning": warning})
        await self._progress(
            ProcessingStep.analysis,
            0,
            MSG_ANALYZING,
            current_question=0,
            total_questions=total,
            question_progress=f"0/{total}",
        )

        interval = seconds_per_question(
            total,
            self.settings.analysis_time_budget_seconds,
            self.settings.min_seconds_per_question,
            self.settings.max_seconds_per_question,
        )
        try:
            async with ProgressSimulator(total, self._on_question_tick, interval=interval, sleep=self._sleep):
                result = await self.api.analyze(record_id, on_retry=self._on_retry)
        except ApiError as e:
            await self._fail(e.message)
            return

        actual = len(result.question_analysis)
        if actual and actual != total:
            logger.info(f"Question count corrected for {record_id}: {total} -> {actual}")
            await self._progress(
                ProcessingStep.analysis,
                estimated_percent(actual, actual),
                f"题目数量已校正：{total} → {actual}",
                current_question=actual,
                total_questions=actual,
                question_progress=f"{actual}/{actual}",
            )

        await self._progress(ProcessingStep.generating, 95, MSG_GENERATING)
        await self._update(
            app_state=AppState.completed,
            current_step=ProcessingStep.results,
            progress=UploadProgress(step=ProcessingStep.results, progress=100, message=MSG_COMPLETED),
            results=result,
            error_message=None,
            can_retry=False,
        )
        logger.info(f"Analysis of {record_id} completed: {result.overall_score} ({result.grade})")


def build_engine(
    settings: Optional[ClientSettings] = None,
    session_store: Optional[SessionStore] = None,
    user_id: Optional[str] = None,
) -> WorkflowEngine:
    """Engine wired from ClientSettings: retrying API client plus file-backed session."""
    settings = settings or ClientSettings()
    api = ExamApiClient(
        settings.api_base_url,
        retry_policy=RetryPolicy(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
        ),
        timeout=settings.request_timeout_seconds,
        user_id=user_id,
    )
    return WorkflowEngine(
        api,
        session_store or FileSessionStore(settings.session_dir),
        settings=settings,
    )
