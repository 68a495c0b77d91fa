from __future__ import annotations

import json
import ssl
from typing import Any

from ..config import Config
from .base import ControlSink, EventStream, StreamingEvent, WebSocketSession, as_str, recognize_streaming


class FunASRClient:
    """Self-hosted FunASR runtime in two-pass mode.

    The online pass gives a fast guess shown as stash, the offline pass replaces the committed text.
    """

    name = "funasr"
    RECOGNIZE_CHUNK_SIZE = 9600
    RECOGNIZE_PACING_SECONDS = 0.1

    def __init__(self, config: Config.FunASR):
        self.endpoint = config.endpoint
        self.hotwords = config.hotwords

    @property
    def connect_kwargs(self) -> dict[str, Any]:
        if not self.endpoint.startswith("wss://"):
            return {}
        # self-hosted runtimes ship a self-signed certificate
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return {"ssl": context}

    def dialect(self, sample_rate: int) -> FunASRClient.Dialect:
        return self.Dialect(self, sample_rate)

    async def start_streaming(self, sample_rate: int = 16_000) -> tuple[ControlSink, EventStream]:
        return await WebSocketSession.open(self.endpoint, {}, self.dialect(sample_rate), self.name, **self.connect_kwargs)

    async def recognize(self, audio: bytes, sample_rate: int = 16_000) -> str:
        return await recognize_streaming(self, audio, sample_rate, self.RECOGNIZE_CHUNK_SIZE, self.RECOGNIZE_PACING_SECONDS)

    class Dialect:
        def __init__(self, client: FunASRClient, sample_rate: int):
            self.client = client
            self.sample_rate = sample_rate
            self.accumulated = ""
            self.finished = False

        def start_message(self) -> str:
            return json.dumps(
                {
                    "mode": "2pass",
                    "chunk_size": [5, 10, 5],
                    "wav_name": "audio",
                    "is_speaking": True,
                    "chunk_interval": 10,
                    "hotwords": self.client.hotwords,
                }
            )

        async def handshake(self, ws) -> None:
            # the runtime never acknowledges the start message
            await ws.send(self.start_message())

        def audio_frame(self, chunk: bytes) -> bytes:
            return chunk

        def commit_frames(self) -> list[str]:
            return [json.dumps({"is_speaking": False})]

        @staticmethod
        def _is_end(value: Any) -> bool:
            if isinstance(value, bool):
                return value
            if isinstance(value, int):
                return value != 0
            return False

        def decode(self, data: dict[str, Any], committed: bool) -> list[StreamingEvent.Event]:
            text = as_str(data.get("text"))

            if self._is_end(data.get("is_end")):
                self.finished = True
                return [StreamingEvent.Final(text or self.accumulated)]

            match data.get("mode"):
                case "2pass-online":
                    return [StreamingEvent.Partial(self.accumulated, text)]
                case "2pass-offline":
                    self.accumulated = text
                    return [StreamingEvent.Partial(text, "")]

            return []
