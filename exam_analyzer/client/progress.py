"""
Simulated per-question progress while the analyze call is in flight.

Used as an async context manager around the real request so the ticking
task is cancelled on every exit path:

    async with ProgressSimulator(total, on_tick):
        result = await api.analyze(record_id)
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TickCallback = Callable[[int, int], Awaitable[None]]


def seconds_per_question(
    total_questions: int,
    budget_seconds: float,
    min_seconds: float = 2.0,
    max_seconds: float = 4.0,
) -> float:
    """Share of the time budget per question, clamped to [min_seconds, max_seconds]."""
    if total_questions <= 0:
        return max_seconds
    return max(min_seconds, min(max_seconds, budget_seconds / total_questions))


def estimated_percent(current_question: int, total_questions: int, ceiling: int = 90) -> int:
    """Cosmetic progress for the current question; never reaches 100."""
    if total_questions <= 0:
        return 0
    current = max(0, min(current_question, total_questions))
    return min(ceiling, int(ceiling * current / total_questions))


class ProgressSimulator:
    """
    Advances a current-question counter from 1 up to total, one step per
    interval, then holds at the last question until cancelled.
    """

    def __init__(
        self,
        total_questions: int,
        on_tick: TickCallback,
        interval: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.total_questions = total_questions
        self.on_tick = on_tick
        self.interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.current_question = 0

    async def _run(self) -> None:
        while self.current_question < self.total_questions:
            self.current_question += 1
            try:
                await self.on_tick(self.current_question, self.total_questions)
            except Exception as e:
                logger.warning(f"Progress tick {self.current_question}/{self.total_questions} failed: {e}")
            await self._sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the ticking task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> "ProgressSimulator":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
