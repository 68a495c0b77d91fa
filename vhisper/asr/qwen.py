from __future__ import annotations

import base64
import json
import uuid
from enum import Enum
from functools import cached_property
from typing import Any

from ..config import Config
from ..errors import ASRApiError
from .base import ControlSink, EventStream, StreamingEvent, WebSocketSession, as_str, recognize_streaming, recv_json


def event_id() -> str:
    return f"event_{uuid.uuid4().hex[:20]}"


class QwenRealtimeASRClient:
    """Qwen realtime ASR on DashScope, speaking the OpenAI realtime style JSON protocol."""

    name = "qwen"
    WS_URL = "wss://dashscope.aliyuncs.com/api-ws/v1/realtime"
    RECOGNIZE_CHUNK_SIZE = 3200
    RECOGNIZE_PACING_SECONDS = 0.05

    class Event(Enum):
        SESSION_CREATED = "session.created"
        SESSION_UPDATED = "session.updated"
        ERROR = "error"
        TEXT = "conversation.item.input_audio_transcription.text"
        COMPLETED = "conversation.item.input_audio_transcription.completed"

    def __init__(self, config: Config.QwenASR, vad: Config.VAD = Config.VAD()):
        self.api_key = config.api_key
        self.model = config.model
        self.language = config.language
        self.vad = vad

    @cached_property
    def ws_url(self) -> str:
        return f"{self.WS_URL}?model={self.model}"

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

    def dialect(self, sample_rate: int) -> QwenRealtimeASRClient.Dialect:
        return self.Dialect(self, sample_rate)

    async def start_streaming(self, sample_rate: int = 16_000) -> tuple[ControlSink, EventStream]:
        return await WebSocketSession.open(self.ws_url, self.ws_headers, self.dialect(sample_rate), self.name)

    async def recognize(self, audio: bytes, sample_rate: int = 16_000) -> str:
        return await recognize_streaming(self, audio, sample_rate, self.RECOGNIZE_CHUNK_SIZE, self.RECOGNIZE_PACING_SECONDS)

    class Dialect:
        def __init__(self, client: QwenRealtimeASRClient, sample_rate: int):
            self.client = client
            self.sample_rate = sample_rate
            self.accumulated = ""
            self.finished = False

        def session_update(self) -> str:
            session: dict[str, Any] = {
                "modalities": ["text"],
                "input_audio_format": "pcm",
                "sample_rate": self.sample_rate,
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": self.client.vad.threshold,
                    "silence_duration_ms": self.client.vad.silence_duration_ms,
                },
            }
            if self.client.language:
                session["input_audio_transcription"] = {"language": self.client.language}
            return json.dumps({"event_id": event_id(), "type": "session.update", "session": session})

        async def handshake(self, ws) -> None:
            await ws.send(self.session_update())
            event = QwenRealtimeASRClient.Event
            while True:
                data = await recv_json(ws)
                if data is None:
                    continue
                if error := data.get("error"):
                    raise ASRApiError(self._error_message(error))
                if data.get("type") in (event.SESSION_CREATED.value, event.SESSION_UPDATED.value):
                    return

        def audio_frame(self, chunk: bytes) -> str:
            return json.dumps(
                {
                    "event_id": event_id(),
                    "type": "input_audio_buffer.append",
                    "audio": base64.b64encode(chunk).decode("ascii"),
                }
            )

        def commit_frames(self) -> list[str]:
            return [json.dumps({"event_id": event_id(), "type": "input_audio_buffer.commit"})]

        @staticmethod
        def _error_message(error: Any) -> str:
            if isinstance(error, dict):
                return as_str(error.get("message")) or str(error.get("code") or "Unknown error")
            return str(error)

        def decode(self, data: dict[str, Any], committed: bool) -> list[StreamingEvent.Event]:
            if error := data.get("error"):
                return [StreamingEvent.Error(self._error_message(error))]

            try:
                event_type = QwenRealtimeASRClient.Event(as_str(data.get("type")))
            except ValueError:
                return []

            match event_type:
                case QwenRealtimeASRClient.Event.TEXT:
                    text = as_str(data.get("text"))
                    stash = as_str(data.get("stash"))
                    if text:
                        self.accumulated = text
                    return [StreamingEvent.Partial(text, stash)]

                case QwenRealtimeASRClient.Event.COMPLETED:
                    final = as_str(data.get("transcript")) or as_str(data.get("text")) or self.accumulated
                    self.accumulated = ""
                    return [StreamingEvent.Final(final)]

            return []
