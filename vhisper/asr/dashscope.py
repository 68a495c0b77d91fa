from __future__ import annotations

import json
import uuid
from functools import cached_property
from typing import Any

from ..config import Config
from ..errors import ASRApiError
from .base import ControlSink, EventStream, StreamingEvent, WebSocketSession, as_dict, as_str, recognize_streaming, recv_json


class DashScopeASRClient:
    """Paraformer realtime recognition over the DashScope duplex inference websocket."""

    name = "dashscope"
    WS_URL = "wss://dashscope.aliyuncs.com/api-ws/v1/inference"
    RECOGNIZE_CHUNK_SIZE = 3200
    RECOGNIZE_PACING_SECONDS = 0.05

    def __init__(self, config: Config.DashScopeASR):
        self.api_key = config.api_key
        self.model = config.model

    @cached_property
    def ws_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def dialect(self, sample_rate: int) -> DashScopeASRClient.Dialect:
        return self.Dialect(self, sample_rate)

    async def start_streaming(self, sample_rate: int = 16_000) -> tuple[ControlSink, EventStream]:
        return await WebSocketSession.open(self.WS_URL, self.ws_headers, self.dialect(sample_rate), self.name)

    async def recognize(self, audio: bytes, sample_rate: int = 16_000) -> str:
        return await recognize_streaming(self, audio, sample_rate, self.RECOGNIZE_CHUNK_SIZE, self.RECOGNIZE_PACING_SECONDS)

    class Dialect:
        """One Paraformer task.

        Sentence finals reported before the commit are delivered as VAD segment finals. After the
        commit they are collected and delivered together when the task finishes.
        """

        def __init__(self, client: DashScopeASRClient, sample_rate: int):
            self.client = client
            self.sample_rate = sample_rate
            self.task_id = uuid.uuid4().hex
            self.committed_text = ""
            self.finished = False

        def run_task(self) -> str:
            return json.dumps(
                {
                    "header": {"task_id": self.task_id, "action": "run-task", "streaming": "duplex"},
                    "payload": {
                        "model": self.client.model,
                        "task": "asr",
                        "task_group": "audio",
                        "function": "recognition",
                        "input": {"sample_rate": self.sample_rate, "format": "pcm"},
                        "parameters": {"sample_rate": self.sample_rate, "format": "pcm"},
                    },
                }
            )

        async def handshake(self, ws) -> None:
            await ws.send(self.run_task())
            while True:
                data = await recv_json(ws)
                if data is None:
                    continue
                header = as_dict(data.get("header"))
                match header.get("event"):
                    case "task-started":
                        return
                    case "task-failed":
                        raise ASRApiError(as_str(header.get("error_message")) or str(header.get("error_code") or "task failed"))

        def audio_frame(self, chunk: bytes) -> bytes:
            return chunk

        def commit_frames(self) -> list[str]:
            return [
                json.dumps(
                    {
                        "header": {"task_id": self.task_id, "action": "finish-task", "streaming": "duplex"},
                        "payload": {"input": {}},
                    }
                )
            ]

        @staticmethod
        def _is_sentence_end(sentence: dict[str, Any]) -> bool:
            if (sentence_end := sentence.get("sentence_end")) is not None:
                return bool(sentence_end)
            return sentence.get("end_time") is not None

        def decode(self, data: dict[str, Any], committed: bool) -> list[StreamingEvent.Event]:
            header = as_dict(data.get("header"))
            error_code = header.get("error_code")
            if header.get("event") == "task-failed" or (error_code not in (None, 0, "0", "")):
                return [StreamingEvent.Error(as_str(header.get("error_message")) or f"Error code {error_code}")]

            match header.get("event"):
                case "result-generated":
                    sentence = as_dict(as_dict(data.get("payload")).get("output")).get("sentence")
                    if not isinstance(sentence, dict):
                        return []
                    text = as_str(sentence.get("text"))
                    if not self._is_sentence_end(sentence):
                        return [StreamingEvent.Partial(self.committed_text + text, "")]
                    if not committed:
                        return [StreamingEvent.Final(text)]
                    self.committed_text += text
                    return [StreamingEvent.Partial(self.committed_text, "")]

                case "task-finished":
                    self.finished = True
                    return [StreamingEvent.Final(self.committed_text)]

            return []
