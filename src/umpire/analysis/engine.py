"""Playback-synchronized analysis engine.

Runs a fixed-period sampler while the clip is playing and analysis is
enabled. Every tick reads the playback position, appends a simulated ball
position to a bounded trajectory buffer, fires any review decision whose
window contains the position (at most once per type and half-second bucket),
and compiles a single report once enough decisions have been logged.

All mutation happens inside ``tick()``, which is synchronous. The sampler is
the only caller and at most one sampler task exists per engine, so every tick
sees a consistent snapshot of the decision log and trajectory buffer.
"""

import asyncio
import math
import random
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from loguru import logger

from umpire.analysis.clock import PlaybackClock
from umpire.analysis.decisions import (
    CHECK_ORDER,
    DEFAULT_VERDICTS,
    DEFAULT_WINDOWS,
    VERDICT_TABLE,
    DecisionKey,
    DecisionType,
    DecisionWindow,
    Verdict,
    decision_key,
)
from umpire.core.config import settings


@dataclass(frozen=True)
class TrajectoryFrame:
    """One sampled ball position in overlay pixel space."""

    ball_position: tuple[float, float]

    def to_dict(self) -> dict:
        return {"ball_position": list(self.ball_position)}


@dataclass(frozen=True)
class LiveDecision:
    """A verdict that fired during playback."""

    decision_type: DecisionType
    verdict: Verdict
    fired_at: float  # Playback seconds
    visible: bool = True

    @property
    def key(self) -> DecisionKey:
        return decision_key(self.decision_type, self.fired_at)

    def to_dict(self) -> dict:
        return {
            "type": self.decision_type.value,
            "label": self.decision_type.label,
            "verdict": self.verdict.to_dict(),
            "fired_at": self.fired_at,
            "visible": self.visible,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """The compiled review report. Immutable once created."""

    lbw_decision: Verdict
    no_ball_decision: Verdict
    edge_detection: Verdict
    frame_data: tuple[TrajectoryFrame, ...]
    trajectory_overlay: bytes = b""
    snicko_overlay: bytes = b""

    def verdict_for(self, decision_type: DecisionType) -> Verdict:
        return {
            DecisionType.LBW: self.lbw_decision,
            DecisionType.NO_BALL: self.no_ball_decision,
            DecisionType.EDGE: self.edge_detection,
        }[decision_type]


class EngineState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"


DecisionObserver = Callable[[LiveDecision], None]
ResultListener = Callable[[AnalysisResult], None]


@dataclass
class _SamplerRun:
    task: Optional[asyncio.Task] = None
    cancelled: bool = False
    ticks: int = 0


class _Sampler:
    """Owns the single periodic tick task.

    ``start`` always cancels the current run first. ``stop`` marks the run
    cancelled before cancelling its task, so no tick executes once ``stop``
    has returned, even if the task was already scheduled to wake up.
    """

    def __init__(self, interval: float, on_tick: Callable[[], None]):
        self._interval = interval
        self._on_tick = on_tick
        self._run: Optional[_SamplerRun] = None

    @property
    def running(self) -> bool:
        return self._run is not None and not self._run.cancelled

    def start(self) -> None:
        self.stop()
        run = _SamplerRun()
        run.task = asyncio.get_running_loop().create_task(self._loop(run))
        self._run = run

    def stop(self) -> None:
        run, self._run = self._run, None
        if run is None:
            return
        run.cancelled = True
        if run.task is not None and not run.task.done():
            run.task.cancel()

    async def _loop(self, run: _SamplerRun) -> None:
        try:
            while not run.cancelled:
                await asyncio.sleep(self._interval)
                if run.cancelled:
                    break
                run.ticks += 1
                try:
                    self._on_tick()
                except Exception as e:
                    logger.exception(f"Sampler tick failed: {e}")
        except asyncio.CancelledError:
            pass


class AnalysisEngine:
    """Simulated live review for one playback session.

    Args:
        clock: Playback clock to read on every tick. If it exposes
            ``add_listener`` the engine subscribes to its play/pause/seek/ended
            notifications.
        windows: Trigger window per decision type. Types without a window
            never fire.
        verdicts: Candidate verdicts per type, chosen uniformly at random.
        defaults: Fallback verdict per type used when compiling.
        interval: Sampler period in seconds (wall clock).
        capacity: Trajectory ring buffer length.
        quorum: Logged decisions required before compiling.
        rng: Random source, injectable for reproducible sessions.
        session_id: Used only for log messages.
    """

    def __init__(
        self,
        clock: PlaybackClock,
        *,
        windows: Mapping[DecisionType, DecisionWindow] = DEFAULT_WINDOWS,
        verdicts: Mapping[DecisionType, tuple[Verdict, ...]] = VERDICT_TABLE,
        defaults: Mapping[DecisionType, Verdict] = DEFAULT_VERDICTS,
        interval: Optional[float] = None,
        capacity: Optional[int] = None,
        quorum: Optional[int] = None,
        rng: Optional[random.Random] = None,
        session_id: str = "local",
    ):
        self._clock = clock
        self._windows = dict(windows)
        self._verdicts = dict(verdicts)
        self._defaults = dict(defaults)
        self._capacity = capacity if capacity is not None else settings.trajectory_capacity
        self._quorum = quorum if quorum is not None else settings.decision_quorum
        self._rng = rng or random.Random()
        self.session_id = session_id

        self._trajectory: deque[TrajectoryFrame] = deque(maxlen=self._capacity)
        self._decisions: list[LiveDecision] = []
        self._fired: set[DecisionKey] = set()
        self._result: Optional[AnalysisResult] = None

        self._playing = False
        self._analysis_enabled = False
        self._closed = False
        self._observers: list[DecisionObserver] = []
        self._result_listeners: list[ResultListener] = []
        self._sampler = _Sampler(
            interval if interval is not None else settings.sample_interval,
            self.tick,
        )

        if hasattr(clock, "add_listener"):
            clock.add_listener(self.handle_playback_event)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return EngineState.SAMPLING if self._sampler.running else EngineState.IDLE

    @property
    def analysis_enabled(self) -> bool:
        return self._analysis_enabled

    @property
    def playing(self) -> bool:
        return self._playing

    @property
    def trajectory(self) -> tuple[TrajectoryFrame, ...]:
        return tuple(self._trajectory)

    @property
    def decisions(self) -> tuple[LiveDecision, ...]:
        return tuple(self._decisions)

    @property
    def fired_keys(self) -> frozenset[DecisionKey]:
        return frozenset(self._fired)

    @property
    def result(self) -> Optional[AnalysisResult]:
        return self._result

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: DecisionObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: DecisionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def add_result_listener(self, listener: ResultListener) -> None:
        self._result_listeners.append(listener)

    # ------------------------------------------------------------------
    # Playback notifications
    # ------------------------------------------------------------------

    def handle_playback_event(self, event: str) -> None:
        """Dispatch a clock notification (play, pause, seek, ended)."""
        handler = {
            "play": self.on_play,
            "pause": self.on_pause,
            "seek": self.on_seek,
            "ended": self.on_ended,
        }.get(event)
        if handler is None:
            logger.warning(f"[{self.session_id}] Unknown playback event '{event}'")
            return
        handler()

    def on_play(self) -> None:
        if self._closed:
            return
        self._playing = True
        if not self._analysis_enabled:
            self._analysis_enabled = True
            logger.info(f"[{self.session_id}] Real-time analysis started")
        self._sync_sampler()

    def on_pause(self) -> None:
        self._playing = False
        self._sync_sampler()

    def on_ended(self) -> None:
        self._playing = False
        self._sync_sampler()
        if self._result is None:
            logger.info(
                f"[{self.session_id}] Clip ended with {len(self._decisions)} decision(s); "
                "no result compiled"
            )

    def on_seek(self) -> None:
        # Seeking never clears fired keys; the sampler just keeps reading the clock
        logger.debug(f"[{self.session_id}] Seek to {self._clock.position:.2f}s")

    def _sync_sampler(self) -> None:
        if self._playing and self._analysis_enabled and not self._closed:
            self._sampler.start()
        else:
            self._sampler.stop()

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Sample the clock once: trajectory, decisions, then compilation."""
        if self._closed:
            return

        t = self._clock.position
        if not isinstance(t, (int, float)) or not math.isfinite(t) or t < 0:
            logger.debug(f"[{self.session_id}] Skipping tick at invalid position {t!r}")
            return

        self._trajectory.append(self._synthesize_frame(t))

        for decision_type in CHECK_ORDER:
            window = self._windows.get(decision_type)
            if window is None or not window.contains(t):
                continue
            key = decision_key(decision_type, t)
            if key in self._fired:
                continue
            self._fire(decision_type, key, t)

        self._maybe_compile()

    def _synthesize_frame(self, t: float) -> TrajectoryFrame:
        x = 100 + t * 80 + self._rng.random() * 20
        y = 200 - t * 30 + self._rng.random() * 15
        return TrajectoryFrame((x, y))

    def _fire(self, decision_type: DecisionType, key: DecisionKey, t: float) -> None:
        candidates = self._verdicts.get(decision_type) or ()
        if not candidates:
            logger.warning(f"[{self.session_id}] No verdict candidates for {decision_type.value}")
            return

        verdict = candidates[self._rng.randrange(len(candidates))]
        decision = LiveDecision(decision_type=decision_type, verdict=verdict, fired_at=t)

        self._fired.add(key)
        self._decisions.append(decision)
        logger.info(
            f"[{self.session_id}] {decision_type.label}: {verdict.text} "
            f"({verdict.confidence:.0%}) at {t:.2f}s"
        )

        for observer in list(self._observers):
            try:
                observer(decision)
            except Exception as e:
                logger.exception(f"[{self.session_id}] Decision observer failed: {e}")

    def _maybe_compile(self) -> None:
        if self._result is not None or len(self._decisions) < self._quorum:
            return

        def first_verdict(decision_type: DecisionType) -> Verdict:
            for decision in self._decisions:
                if decision.decision_type == decision_type:
                    return decision.verdict
            return self._defaults[decision_type]

        self._result = AnalysisResult(
            lbw_decision=first_verdict(DecisionType.LBW),
            no_ball_decision=first_verdict(DecisionType.NO_BALL),
            edge_detection=first_verdict(DecisionType.EDGE),
            frame_data=tuple(self._trajectory),
        )
        logger.info(
            f"[{self.session_id}] Compiled analysis result from {len(self._decisions)} decisions "
            f"and {len(self._result.frame_data)} trajectory frames"
        )

        for listener in list(self._result_listeners):
            try:
                listener(self._result)
            except Exception as e:
                logger.exception(f"[{self.session_id}] Result listener failed: {e}")

    # ------------------------------------------------------------------
    # Presentation support
    # ------------------------------------------------------------------

    def active_decision(
        self,
        at: Optional[float] = None,
        window: Optional[float] = None,
    ) -> Optional[LiveDecision]:
        """Most recently fired visible decision within ``window`` seconds of ``at``."""
        t = self._clock.position if at is None else at
        span = settings.active_decision_window if window is None else window
        for decision in reversed(self._decisions):
            if decision.visible and abs(decision.fired_at - t) < span:
                return decision
        return None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Cancel the sampler and detach from the clock. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._playing = False
        self._sampler.stop()
        if hasattr(self._clock, "remove_listener"):
            self._clock.remove_listener(self.handle_playback_event)
        self._observers.clear()
        self._result_listeners.clear()
        logger.debug(f"[{self.session_id}] Analysis engine closed")
