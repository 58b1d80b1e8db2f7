"""Timeline scheduler: plays parsed blocks with audio/visual lock-step.

Playback is a state machine driven by an event queue. Each ``play()``
call opens a fresh session that owns its audio registry, timers and
stopped flag; ``stop()`` tears the whole session down at once.

Visual changes from media blocks are held as a pending visual state and
only shown when the next voice line's audio starts.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Coroutine

from storycut.audio import AudioRegistry, estimate_voice_duration
from storycut.constants import MEDIA_DURATION_ESTIMATE, PROGRESS_INTERVAL
from storycut.errors import MediaUnresolved, StoryCutError
from storycut.models import (
    BASELINE_VISUAL,
    EMPTY_CAPTION,
    Caption,
    HoldBlock,
    LoadScreenBlock,
    MediaBlock,
    MediaRef,
    TimelineStep,
    VisualState,
    VoiceBlock,
)
from storycut.parser import estimate_sentence_timings, split_sentences
from storycut.voices import PlaybackResources, resolve_voice

logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    PLAYING = "playing"
    STOPPED = "stopped"
    COMPLETED = "completed"


TRANSITIONS = {
    State.IDLE: {State.PREPARING, State.STOPPED},
    State.PREPARING: {State.PLAYING, State.STOPPED, State.COMPLETED},
    State.PLAYING: {State.STOPPED, State.COMPLETED},
    State.STOPPED: {State.PREPARING},
    State.COMPLETED: {State.PREPARING},
}


class EventKind(Enum):
    RESOLUTION_SETTLED = "resolution_settled"
    AUDIO_ENDED = "audio_ended"
    AUDIO_ERROR = "audio_error"
    TIMER_FIRED = "timer_fired"
    STOP = "stop"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    index: int | None = None        # step the event belongs to
    detail: object = None


def _ignore(*args):
    pass


def _consume(task: asyncio.Task) -> None:
    # Results of tasks abandoned by stop() are never awaited
    if not task.cancelled():
        task.exception()


@dataclass
class TimelineObserver:
    on_visual_state_change: Callable = _ignore
    on_caption_change: Callable = _ignore
    on_progress: Callable = _ignore     # (elapsed_seconds, total_estimate_seconds)
    on_complete: Callable = _ignore
    on_error: Callable = _ignore        # (block_index, reason)


def estimate_block(block) -> float:
    """Duration estimate used for progress reporting."""
    if isinstance(block, VoiceBlock):
        return estimate_voice_duration(block.raw_text)
    if isinstance(block, MediaBlock):
        return MEDIA_DURATION_ESTIMATE
    if isinstance(block, (HoldBlock, LoadScreenBlock)):
        return block.duration
    return 0.0


async def resolve_media_url(block: MediaBlock, resources: PlaybackResources) -> str:
    """Resolve a media block to a URL, trying its fallback name last."""
    store = resources.content_store
    try:
        url = await store.resolve_media(block.ref, resources.scope_id)
        if not url and block.ref.fallback:
            url = await store.resolve_media(MediaRef(name=block.ref.fallback), resources.scope_id)
    except Exception as e:
        raise MediaUnresolved(f"Could not resolve media {block.ref.describe()}: {e}") from e
    if not url:
        raise MediaUnresolved(f"No media found for {block.ref.describe()}")
    return url


def build_steps(blocks: list) -> list[TimelineStep]:
    """Derive timeline steps with cumulative start offsets."""
    steps = []
    offset = 0.0
    for index, block in enumerate(blocks):
        estimate = estimate_block(block)
        steps.append(TimelineStep(index=index, block=block, start_offset=offset, estimate=estimate))
        offset += estimate
    return steps


class _Session:
    """State owned by a single play() run."""

    def __init__(self, loop=None):
        self.loop = loop
        self.registry = AudioRegistry()
        self.events = asyncio.Queue()
        self.timers = []
        self.media = {}
        self.ticker = None
        self.stopped = False

    def post(self, kind: EventKind, index: int | None = None, detail=None) -> None:
        self.events.put_nowait(Event(kind, index, detail))

    def call_later(self, delay: float, index: int) -> None:
        self.timers.append(self.loop.call_later(delay, self.post, EventKind.TIMER_FIRED, index))

    def cancel_timers(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers.clear()

    async def wait_for(self, index: int) -> Event:
        """Next event for this step, or STOP. Events for other steps are stale."""
        while True:
            event = await self.events.get()
            if event.kind is EventKind.STOP or event.index == index:
                return event
            logger.debug("Ignoring stale %s for step %s", event.kind.value, event.index)


class Timeline:
    def __init__(self, blocks: list, resources: PlaybackResources,
                 observer: TimelineObserver | None = None, time_scale: float = 1.0,
                 progress_interval: float | None = PROGRESS_INTERVAL):
        self.blocks = list(blocks)
        self.resources = resources
        self.observer = observer or TimelineObserver()
        self.time_scale = time_scale
        self.progress_interval = progress_interval
        self.state = State.IDLE
        self.steps = build_steps(self.blocks)
        self._session = None
        self._pending = None
        self._visible = BASELINE_VISUAL

    @property
    def total_estimate(self) -> float:
        return sum(step.estimate for step in self.steps)

    @property
    def registry(self) -> AudioRegistry | None:
        """Active-audio registry of the current or last session."""
        return self._session.registry if self._session else None

    @property
    def visible(self) -> VisualState:
        return self._visible

    def _transition(self, new: State) -> None:
        if new not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid timeline transition {self.state.value} -> {new.value}")
        logger.debug("Timeline %s -> %s", self.state.value, new.value)
        self.state = new

    # --- Control ---

    def play(self) -> Coroutine[None, None, State]:
        """Open a playback session and return the coroutine that plays it.

        The session exists as soon as play() is called, so a stop() issued
        before the coroutine first runs still ends it. The coroutine returns
        COMPLETED, or STOPPED if stop() was called.
        """
        if self.state in (State.PREPARING, State.PLAYING):
            raise StoryCutError("Timeline is already playing")

        session = _Session()
        self._session = session
        self.steps = build_steps(self.blocks)
        self._pending = None
        self._visible = BASELINE_VISUAL
        self._transition(State.PREPARING)
        return self._run(session)

    async def _run(self, session: _Session) -> State:
        if session.stopped:
            return State.STOPPED
        session.loop = asyncio.get_running_loop()

        try:
            for step in self.steps:
                if isinstance(step.block, MediaBlock):
                    task = session.loop.create_task(resolve_media_url(step.block, self.resources))
                    task.add_done_callback(_consume)
                    session.media[step.index] = task

            for step in self.steps:
                if session.stopped:
                    break
                self._progress(session, step.start_offset)
                await self._run_step(step, session)

            if session.stopped:
                return State.STOPPED
            self._complete(session)
            return self.state
        except BaseException:
            if not session.stopped:
                logger.error("Playback aborted; tearing down session")
                self._teardown(session)
                if self.state in (State.PREPARING, State.PLAYING):
                    self._transition(State.STOPPED)
                self._pending = None
                self._visible = BASELINE_VISUAL
            raise

    def stop(self) -> None:
        """Stop playback. Safe to call repeatedly or when nothing is playing."""
        session = self._session
        if session is None or session.stopped:
            return
        self._teardown(session)

        if self.state in (State.PREPARING, State.PLAYING):
            self._transition(State.STOPPED)
            self._pending = None
            self._visible = BASELINE_VISUAL
            self.observer.on_visual_state_change(BASELINE_VISUAL)
            self.observer.on_caption_change(EMPTY_CAPTION)
        logger.debug("Timeline stopped")

    def _teardown(self, session: _Session) -> None:
        session.stopped = True
        session.cancel_timers()
        for task in session.media.values():
            task.cancel()
        if session.ticker is not None:
            session.ticker.cancel()
        session.registry.close()
        session.post(EventKind.STOP)

    # --- Steps ---

    async def _run_step(self, step: TimelineStep, session: _Session) -> None:
        block = step.block
        if isinstance(block, VoiceBlock):
            await self._voice_step(step, session)
        elif isinstance(block, MediaBlock):
            await self._media_step(step, session)
        elif isinstance(block, HoldBlock):
            await self._hold_step(step, session)
        elif isinstance(block, LoadScreenBlock):
            await self._loadscreen_step(step, session)

    async def _settle(self, session: _Session, index: int, task: asyncio.Task):
        """Wait until task finishes or playback stops; None when stopped."""
        def settled(t):
            _consume(t)
            session.post(EventKind.RESOLUTION_SETTLED, index, t)

        task.add_done_callback(settled)
        event = await session.wait_for(index)
        if event.kind is EventKind.STOP or session.stopped:
            return None
        return event.detail

    async def _media_step(self, step: TimelineStep, session: _Session) -> None:
        task = await self._settle(session, step.index, session.media[step.index])
        if task is None:
            return
        try:
            url = task.result()
        except MediaUnresolved as e:
            self._fail(session, step, str(e))
            return
        self._pending = VisualState(media_url=url, effects=tuple(step.block.effects))
        logger.debug("Media %s pending until next voice line", url)

    async def _voice_step(self, step: TimelineStep, session: _Session) -> None:
        block = step.block
        task = session.loop.create_task(resolve_voice(block, self.resources, session.registry))
        task = await self._settle(session, step.index, task)
        if task is None:
            return
        try:
            resolution = task.result()
        except StoryCutError as e:
            self._fail(session, step, str(e))
            return
        except Exception as e:
            self._fail(session, step, f"Voice resolution failed: {type(e).__name__}: {e}")
            return

        handle = resolution.audio_handle
        index = step.index
        handle.on_ended = lambda: session.post(EventKind.AUDIO_ENDED, index)
        handle.on_error = lambda error: session.post(EventKind.AUDIO_ERROR, index, error)

        self._apply_pending(session)
        sentences = split_sentences(resolution.spoken_text)
        self._caption(session, Caption(
            speaker=block.display_name or block.speaker,
            role=block.voice_role,
            text=resolution.spoken_text,
            sentences=tuple(estimate_sentence_timings(sentences, handle.duration)),
        ))
        if self.state is State.PREPARING:
            self._transition(State.PLAYING)
        handle.play()
        self._start_ticker(session, step, handle)

        event = await session.wait_for(index)
        self._stop_ticker(session)
        session.registry.release(handle)
        if event.kind is EventKind.AUDIO_ERROR:
            self._fail(session, step, f"Audio playback failed: {event.detail}")

    async def _hold_step(self, step: TimelineStep, session: _Session) -> None:
        block = step.block
        base = self._pending or self._visible
        self._pending = None
        self._show(session, replace(base, color=block.color, fade=block.fade, loading=False))
        await self._wait(session, step.index, block.duration)

    async def _loadscreen_step(self, step: TimelineStep, session: _Session) -> None:
        block = step.block
        previous = self._visible
        self._show(session, replace(
            previous, loading=True, loading_message=block.message, loading_icon=block.icon,
        ))
        await self._wait(session, step.index, block.duration)
        self._show(session, previous)

    async def _wait(self, session: _Session, index: int, seconds: float) -> None:
        session.call_later(seconds * self.time_scale, index)
        await session.wait_for(index)

    # --- Output ---

    def _apply_pending(self, session: _Session) -> None:
        if self._pending is not None:
            self._show(session, self._pending)
            self._pending = None

    def _show(self, session: _Session, state: VisualState) -> None:
        if session.stopped:
            return
        self._visible = state
        self.observer.on_visual_state_change(state)

    def _caption(self, session: _Session, caption: Caption) -> None:
        if not session.stopped:
            self.observer.on_caption_change(caption)

    def _progress(self, session: _Session, elapsed: float) -> None:
        if not session.stopped:
            self.observer.on_progress(elapsed, self.total_estimate)

    def _fail(self, session: _Session, step: TimelineStep, reason: str) -> None:
        if session.stopped:
            return
        logger.warning("Skipping block %d (%s): %s", step.index, step.block.kind, reason)
        self.observer.on_error(step.index, reason)

    def _start_ticker(self, session: _Session, step: TimelineStep, handle) -> None:
        if not self.progress_interval:
            return

        async def tick():
            while True:
                await asyncio.sleep(self.progress_interval * self.time_scale)
                self._progress(session, step.start_offset + handle.current_time)

        session.ticker = session.loop.create_task(tick())

    def _stop_ticker(self, session: _Session) -> None:
        if session.ticker is not None:
            session.ticker.cancel()
            session.ticker = None

    def _complete(self, session: _Session) -> None:
        session.registry.clear_all()
        self._transition(State.COMPLETED)
        self._pending = None
        self._show(session, BASELINE_VISUAL)
        self._caption(session, EMPTY_CAPTION)
        self._progress(session, self.total_estimate)
        self.observer.on_complete()


def create_timeline(blocks: list, resources: PlaybackResources,
                    observer: TimelineObserver | None = None, **kwargs) -> Timeline:
    """Build a timeline for the given blocks (start/end markers included or not)."""
    return Timeline(blocks, resources, observer=observer, **kwargs)
