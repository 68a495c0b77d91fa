from __future__ import annotations

import asyncio
from asyncio import CancelledError, create_task
from collections.abc import Callable
from enum import Enum
from typing import NamedTuple, Protocol

import numpy as np

from .asr import ASRClient, ControlSink, EventStream, StreamingControl, StreamingEvent, create_asr_client
from .audio import Quality, check_quality, encode_pcm16le, peak_level, quality_from_peak
from .config import Config
from .errors import ConfigurationError, InvalidStateError, LLMError
from .llm import LLMClient, create_llm_client
from .log import debug
from .vocabulary import VocabularyProcessor


class PipelineState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"


class PipelineEvent:
    class RecordingStarted(NamedTuple):
        pass

    class RecordingStopped(NamedTuple):
        pass

    class PartialResult(NamedTuple):
        text: str
        stash: str = ""

    class FinalResult(NamedTuple):
        text: str
        session_finished: bool = True

    class Warning(NamedTuple):
        message: str

    class Error(NamedTuple):
        message: str

    class Cancelled(NamedTuple):
        pass

    Event = RecordingStarted | RecordingStopped | PartialResult | FinalResult | Warning | Error | Cancelled


class Capture(Protocol):
    target_sample_rate: int

    def start(self) -> None: ...

    def drain_buffer(self) -> np.ndarray: ...

    def stop(self) -> np.ndarray: ...

    def cancel(self) -> None: ...


class _Session:
    """Handles of one recording session, with the config snapshot taken when it started."""

    def __init__(
        self,
        control: ControlSink,
        events: EventStream,
        vocabulary: VocabularyProcessor,
        llm: LLMClient | None,
        result_timeout: float,
    ):
        self.control = control
        self.events = events
        self.vocabulary = vocabulary
        self.llm = llm
        self.result_timeout = result_timeout
        self.finalizing = False
        self.committed = False
        self.sample_count = 0
        self.peak = 0.0
        self.drain_task: asyncio.Task | None = None
        self.consumer_task: asyncio.Task | None = None


class VoicePipeline:
    """Push-to-talk session orchestration: capture, streaming recognition, vocabulary and refinement.

    ``start_recording``, ``stop_recording``, ``cancel`` and the handling of final/error events all
    run under one lock, so transitions never interleave. Events are only emitted for the session
    that is current at emission time.
    """

    DRAIN_INTERVAL_SECONDS = 0.1
    WATCHDOG_TIMEOUT_SECONDS = 3.0
    TIMEOUT_MESSAGE = "Timed out waiting for transcription result"

    def __init__(
        self,
        config: Config.App,
        *,
        capture: Capture,
        asr_factory: Callable[[Config.ASR], ASRClient | None] = create_asr_client,
        llm_factory: Callable[..., LLMClient | None] = create_llm_client,
        is_hotkey_pressed: Callable[[], bool] | None = None,
        on_event: Callable[[PipelineEvent.Event], None] | None = None,
        drain_interval: float = DRAIN_INTERVAL_SECONDS,
        watchdog_timeout: float = WATCHDOG_TIMEOUT_SECONDS,
    ):
        self.capture = capture
        self.asr_factory = asr_factory
        self.llm_factory = llm_factory
        self.is_hotkey_pressed = is_hotkey_pressed or (lambda: False)
        self.on_event = on_event
        self.drain_interval = drain_interval
        self.watchdog_timeout = watchdog_timeout
        self._lock = asyncio.Lock()
        self._state = PipelineState.IDLE
        self._session: _Session | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._retired_clients: list = []
        self._apply_config(config)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def has_session(self) -> bool:
        return self._session is not None

    def _apply_config(self, config: Config.App) -> None:
        self.config = config
        self.asr_client = self.asr_factory(config.asr)
        self.llm_client = self.llm_factory(
            config.llm,
            vocabulary_context=config.vocabulary_context,
            asr_api_key=config.asr_api_key,
            asr_vendor=config.asr.provider.vendor,
        )
        self.vocabulary = VocabularyProcessor(config.vocabulary)

    async def update_config(self, config: Config.App) -> None:
        """Swap the configuration; a session already running keeps its own snapshot."""
        async with self._lock:
            self._retired_clients += [self.asr_client, self.llm_client]
            self._apply_config(config)
            if self._session is None:
                await self._close_retired_clients()

    async def aclose(self) -> None:
        """Cancel any session and release the HTTP connection pools of every client."""
        await self.cancel()
        async with self._lock:
            self._retired_clients += [self.asr_client, self.llm_client]
            await self._close_retired_clients()

    def _emit(self, event: PipelineEvent.Event) -> None:
        debug(f"Pipeline event: {event!r}")
        if self.on_event is not None:
            self.on_event(event)

    # Public operations

    async def start_recording(self) -> None:
        async with self._lock:
            if self.asr_client is None:
                raise ConfigurationError(f"No API key configured for {self.config.asr.provider.label}")
            if self._state is not PipelineState.IDLE:
                raise InvalidStateError(f"cannot start recording while {self._state.value}")

            self._state = PipelineState.RECORDING
            try:
                self.capture.start()
            except Exception:
                self._state = PipelineState.IDLE
                raise
            try:
                control, events = await self.asr_client.start_streaming(self.capture.target_sample_rate)
            except BaseException:
                self.capture.cancel()
                self._state = PipelineState.IDLE
                raise

            result_timeout = max(self.watchdog_timeout, getattr(self.asr_client, "result_timeout", 0.0))
            session = _Session(control, events, self.vocabulary, self.llm_client, result_timeout)
            self._session = session
            session.drain_task = create_task(self._drain_audio(session))
            session.consumer_task = create_task(self._consume_events(session))
            self._emit(PipelineEvent.RecordingStarted())

    async def stop_recording(self) -> None:
        async with self._lock:
            if self._state is not PipelineState.RECORDING or self._session is None:
                return
            session = self._session
            self._state = PipelineState.PROCESSING
            self._emit(PipelineEvent.RecordingStopped())

            self._cancel_task(session.drain_task)
            samples = self.capture.stop()

            self._track_level(session, samples)
            quality = quality_from_peak(session.peak) if session.sample_count else check_quality(samples)
            match quality:
                case Quality.Error(message=message):
                    await self._teardown(session)
                    self._emit(PipelineEvent.Error(message))
                    return
                case Quality.Warning(message=message):
                    self._emit(PipelineEvent.Warning(message))

            session.committed = True
            await session.control(StreamingControl.Audio(encode_pcm16le(samples)))
            await session.control(StreamingControl.Commit())
            self._arm_watchdog(session)

    async def cancel(self) -> None:
        async with self._lock:
            if self._session is not None:
                await self._teardown(self._session)
            else:
                self.capture.cancel()
                self._cancel_task(self._watchdog_task)
                self._state = PipelineState.IDLE
            self._emit(PipelineEvent.Cancelled())

    # Background tasks

    async def _drain_audio(self, session: _Session) -> None:
        try:
            while self._session is session and self._state is PipelineState.RECORDING:
                samples = self.capture.drain_buffer()
                if len(samples):
                    self._track_level(session, samples)
                    await session.control(StreamingControl.Audio(encode_pcm16le(samples)))
                await asyncio.sleep(self.drain_interval)
        except CancelledError:
            pass

    async def _consume_events(self, session: _Session) -> None:
        try:
            async for event in session.events:
                if self._session is not session:
                    break
                match event:
                    case StreamingEvent.Partial(text=text, stash=stash):
                        self._emit(PipelineEvent.PartialResult(text, stash))
                    case StreamingEvent.Final(text=text):
                        await self._handle_final(session, text, after_commit=session.committed)
                    case StreamingEvent.Error(message=message):
                        await self._handle_error(session, message)
        except CancelledError:
            pass

    async def _watchdog(self, session: _Session) -> None:
        try:
            await asyncio.sleep(session.result_timeout)
        except CancelledError:
            return
        async with self._lock:
            if self._session is not session or self._state is not PipelineState.PROCESSING:
                return
            if session.finalizing:
                return
            debug("Watchdog expired, forcing cleanup")
            self._watchdog_task = None
            await self._teardown(session)
            self._emit(PipelineEvent.Error(self.TIMEOUT_MESSAGE))

    # Event handling

    async def _handle_final(self, session: _Session, text: str, after_commit: bool) -> None:
        if after_commit:
            # the watchdog only guards the wait for the result
            async with self._lock:
                if self._session is not session:
                    return
                session.finalizing = True
                self._cancel_task(self._watchdog_task)
                self._watchdog_task = None

        text = session.vocabulary.process(text)
        if session.llm is not None and text:
            try:
                text = await session.llm.refine_text(text)
            except LLMError as exc:
                if self._session is session:
                    self._emit(PipelineEvent.Warning(f"LLM refinement failed: {exc}"))

        async with self._lock:
            if self._session is not session:
                return
            finished = after_commit or (self._state is PipelineState.RECORDING and not self.is_hotkey_pressed())
            if finished:
                await self._teardown(session)
            self._emit(PipelineEvent.FinalResult(text, session_finished=finished))

    async def _handle_error(self, session: _Session, message: str) -> None:
        async with self._lock:
            if self._session is not session:
                return
            await self._teardown(session)
            if "cancel" in message.lower():
                debug(f"Suppressed cancellation error: {message}")
                return
            self._emit(PipelineEvent.Error(message))

    # Helpers

    def _arm_watchdog(self, session: _Session) -> None:
        self._cancel_task(self._watchdog_task)
        self._watchdog_task = create_task(self._watchdog(session))

    @staticmethod
    def _track_level(session: _Session, samples: np.ndarray) -> None:
        session.sample_count += len(samples)
        session.peak = max(session.peak, peak_level(samples))

    @staticmethod
    def _cancel_task(task: asyncio.Task | None) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _teardown(self, session: _Session) -> None:
        """Release every resource of ``session`` and go back to idle. Lock must be held."""
        if self._session is session:
            self._session = None
        self._state = PipelineState.IDLE
        self._cancel_task(session.drain_task)
        self._cancel_task(session.consumer_task)
        self._cancel_task(self._watchdog_task)
        self._watchdog_task = None
        self.capture.cancel()
        await session.control(StreamingControl.Cancel())
        await self._close_retired_clients()

    async def _close_retired_clients(self) -> None:
        clients, self._retired_clients = self._retired_clients, []
        for client in clients:
            if (aclose := getattr(client, "aclose", None)) is not None:
                await aclose()
