from __future__ import annotations

import asyncio
import json
from asyncio import CancelledError, Queue, create_task
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, NamedTuple, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidHandshake, InvalidStatus

from ..errors import ASRApiError, ASRCancelledError, ASRError, ASRNetworkError, ASRTimeoutError
from ..log import debug


class StreamingEvent:
    class Partial(NamedTuple):
        text: str
        stash: str = ""

    class Final(NamedTuple):
        text: str

    class Error(NamedTuple):
        message: str

    Event = Partial | Final | Error


class StreamingControl:
    class Audio(NamedTuple):
        data: bytes

    class Commit(NamedTuple):
        pass

    class Cancel(NamedTuple):
        pass

    Control = Audio | Commit | Cancel


ControlSink = Callable[[StreamingControl.Control], Awaitable[None]]
EventStream = AsyncIterator[StreamingEvent.Event]


class ASRClient(Protocol):
    name: str

    async def start_streaming(self, sample_rate: int) -> tuple[ControlSink, EventStream]: ...

    async def recognize(self, audio: bytes, sample_rate: int) -> str: ...


class Dialect(Protocol):
    """Per-session wire protocol of a duplex websocket provider."""

    finished: bool

    async def handshake(self, ws) -> None: ...

    def audio_frame(self, chunk: bytes) -> str | bytes: ...

    def commit_frames(self) -> list[str | bytes]: ...

    def decode(self, data: dict[str, Any], committed: bool) -> list[StreamingEvent.Event]: ...


class EventChannel:
    """Event queue of one session, closed by a sentinel once the stream is over."""

    def __init__(self):
        self._queue: Queue[StreamingEvent.Event | None] = Queue()
        self.closed = False

    def put(self, event: StreamingEvent.Event) -> None:
        if self.closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)

    def abort(self) -> None:
        """Drop undelivered events and close."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self.closed = False
        self.close()

    async def stream(self) -> AsyncIterator[StreamingEvent.Event]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


async def recv_json(ws) -> dict[str, Any] | None:
    """Receive one frame and decode it, returning None for anything that is not a JSON object."""
    raw = await ws.recv()
    if isinstance(raw, bytes):
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        debug(f"Skipping undecodable frame: {raw[:200]!r}")
        return None
    return data if isinstance(data, dict) else None


class WebSocketSession:
    """One duplex recognition session over an open websocket.

    A Final is terminal once Commit was sent (or when the dialect says the server finished); before
    that it is a VAD segment final and the session stays open. An Error is always terminal.
    """

    CONNECT_TIMEOUT_SECONDS = 10.0
    HANDSHAKE_TIMEOUT_SECONDS = 5.0

    def __init__(self, ws, dialect: Dialect, provider: str):
        self.ws = ws
        self.dialect = dialect
        self.provider = provider
        self.channel = EventChannel()
        self.committed = False
        self.cancelled = False
        self._receiver_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None

    @classmethod
    async def open(
        cls,
        url: str,
        headers: dict[str, str],
        dialect: Dialect,
        provider: str,
        **connect_kwargs,
    ) -> tuple[ControlSink, EventStream]:
        try:
            ws = await websockets.connect(
                url,
                additional_headers=headers,
                max_size=None,
                open_timeout=cls.CONNECT_TIMEOUT_SECONDS,
                proxy=None,
                **connect_kwargs,
            )
        except InvalidStatus as exc:
            raise ASRApiError(f"HTTP {exc.response.status_code}", provider) from exc
        except TimeoutError as exc:
            raise ASRTimeoutError("connection timed out", provider) from exc
        except (OSError, InvalidHandshake) as exc:
            raise ASRNetworkError(str(exc), provider) from exc

        try:
            async with asyncio.timeout(cls.HANDSHAKE_TIMEOUT_SECONDS):
                await dialect.handshake(ws)
        except TimeoutError as exc:
            await cls._close_quietly(ws)
            raise ASRTimeoutError("no session acknowledgement", provider) from exc
        except ASRError as exc:
            await cls._close_quietly(ws)
            if exc.provider is None:
                exc.provider = provider
            raise
        except ConnectionClosed as exc:
            await cls._close_quietly(ws)
            raise ASRNetworkError(f"connection closed during handshake ({exc})", provider) from exc
        except BaseException:
            await cls._close_quietly(ws)
            raise

        session = cls(ws, dialect, provider)
        session._receiver_task = create_task(session._receiver())
        return session.send, session.channel.stream()

    @staticmethod
    async def _close_quietly(ws) -> None:
        try:
            await ws.close()
        except (OSError, ConnectionClosed) as exc:
            debug(f"Error while closing websocket: {exc}")

    async def send(self, control: StreamingControl.Control) -> None:
        match control:
            case StreamingControl.Cancel():
                if self.cancelled:
                    return
                self.cancelled = True
                self.channel.abort()
                if self._receiver_task is not None and self._receiver_task is not asyncio.current_task():
                    self._receiver_task.cancel()
                self._close_transport()

            case _ if self.channel.closed or self.cancelled:
                return

            case StreamingControl.Audio(data=data):
                if not data:
                    return
                await self._send_frames([self.dialect.audio_frame(data)], "send audio")

            case StreamingControl.Commit():
                if self.committed:
                    return
                self.committed = True
                await self._send_frames(self.dialect.commit_frames(), "commit")

    async def _send_frames(self, frames: list[str | bytes], operation: str) -> None:
        try:
            for frame in frames:
                await self.ws.send(frame)
        except (ConnectionClosed, OSError) as exc:
            self._deliver(StreamingEvent.Error(f"[{self.provider}] Failed to {operation}: {exc}"))

    def _deliver(self, event: StreamingEvent.Event) -> None:
        if self.channel.closed or self.cancelled:
            return
        self.channel.put(event)
        match event:
            case StreamingEvent.Error():
                terminal = True
            case StreamingEvent.Final():
                terminal = self.committed or self.dialect.finished
            case _:
                terminal = False
        if terminal:
            self.channel.close()
            self._close_transport()

    def _close_transport(self) -> None:
        if self._close_task is None:
            self._close_task = create_task(self._close_quietly(self.ws))

    async def _receiver(self) -> None:
        try:
            while not self.channel.closed:
                data = await recv_json(self.ws)
                if data is None:
                    continue
                try:
                    events = self.dialect.decode(data, self.committed)
                except (AttributeError, TypeError, KeyError, ValueError) as exc:
                    debug(f"[{self.provider}] Skipping malformed frame ({exc}): {str(data)[:200]}")
                    continue
                for event in events:
                    self._deliver(event)
        except ConnectionClosedOK:
            if not self.cancelled:
                self._deliver(StreamingEvent.Error(f"[{self.provider}] Connection closed before the final result"))
        except ConnectionClosed as exc:
            if not self.cancelled:
                self._deliver(StreamingEvent.Error(f"[{self.provider}] Connection lost: {exc}"))
        except CancelledError:
            pass
        finally:
            self.channel.close()


async def recognize_streaming(
    client: ASRClient,
    audio: bytes,
    sample_rate: int,
    chunk_size: int,
    pacing_seconds: float,
) -> str:
    """Batch recognition on top of a streaming session: paced chunks, Commit, collect the finals."""
    control, events = await client.start_streaming(sample_rate)
    finals: list[str] = []
    last_partial = ""
    try:
        for offset in range(0, len(audio), chunk_size):
            await control(StreamingControl.Audio(audio[offset : offset + chunk_size]))
            await asyncio.sleep(pacing_seconds)
        await control(StreamingControl.Commit())
        async for event in events:
            match event:
                case StreamingEvent.Partial(text=text):
                    last_partial = text
                case StreamingEvent.Final(text=text):
                    finals.append(text)
                    last_partial = ""
                case StreamingEvent.Error(message=message):
                    if finals:
                        debug(f"Ignoring error after final segments: {message}")
                        break
                    if "cancel" in message.lower():
                        raise ASRCancelledError(message, client.name)
                    raise ASRApiError(message, client.name)
    finally:
        await control(StreamingControl.Cancel())
    if not finals and not last_partial:
        raise ASRApiError("No transcription result received", client.name)
    return "".join(finals) + last_partial
