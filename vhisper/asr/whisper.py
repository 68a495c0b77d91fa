from __future__ import annotations

import asyncio
from asyncio import CancelledError, create_task
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from ..audio import wav_header
from ..config import Config
from ..errors import ASRApiError, ASRError, ASRNetworkError, ASRTimeoutError
from ..log import debug
from .base import ControlSink, EventChannel, EventStream, StreamingControl, StreamingEvent


def error_message(exc: APIStatusError) -> str:
    body: Any = exc.body
    if isinstance(body, dict) and (message := body.get("message")):
        return str(message)
    return f"HTTP {exc.status_code}"


class OpenAIWhisperASRClient:
    """Batch transcription with the OpenAI audio API (multipart upload of a WAV file)."""

    name = "openai_whisper"
    REQUEST_TIMEOUT_SECONDS = 60.0
    result_timeout = REQUEST_TIMEOUT_SECONDS + 5.0

    def __init__(self, config: Config.OpenAIASR, http_client: httpx.AsyncClient | None = None):
        self.api_key = config.api_key
        self.model = config.model
        self.language = config.language
        self.client = AsyncOpenAI(
            api_key=self.api_key,
            max_retries=0,
            timeout=self.REQUEST_TIMEOUT_SECONDS,
            http_client=http_client or httpx.AsyncClient(trust_env=False),
        )

    async def aclose(self) -> None:
        await self.client.close()

    async def recognize(self, audio: bytes, sample_rate: int = 16_000) -> str:
        wav = wav_header(len(audio), sample_rate) + audio
        create_kwargs: dict[str, Any] = {
            "file": ("audio.wav", wav, "audio/wav"),
            "model": self.model,
            "response_format": "json",
        }
        if self.language:
            create_kwargs["language"] = self.language
        try:
            transcription = await self.client.audio.transcriptions.create(**create_kwargs)
        except APITimeoutError as exc:
            raise ASRTimeoutError("transcription request timed out", self.name) from exc
        except APIConnectionError as exc:
            raise ASRNetworkError(str(exc), self.name) from exc
        except APIStatusError as exc:
            raise ASRApiError(error_message(exc), self.name) from exc
        return transcription.text or ""

    async def start_streaming(self, sample_rate: int = 16_000) -> tuple[ControlSink, EventStream]:
        session = self.BufferedSession(self, sample_rate)
        return session.send, session.channel.stream()

    class BufferedSession:
        """Collects the streamed audio and sends a single request on commit."""

        def __init__(self, client: OpenAIWhisperASRClient, sample_rate: int):
            self.client = client
            self.sample_rate = sample_rate
            self.channel = EventChannel()
            self.chunks: list[bytes] = []
            self.committed = False
            self.cancelled = False
            self._request_task: asyncio.Task | None = None

        async def send(self, control: StreamingControl.Control) -> None:
            match control:
                case StreamingControl.Cancel():
                    if self.cancelled:
                        return
                    self.cancelled = True
                    self.chunks.clear()
                    if self._request_task is not None:
                        self._request_task.cancel()
                    self.channel.abort()

                case _ if self.channel.closed or self.cancelled:
                    return

                case StreamingControl.Audio(data=data):
                    if not self.committed and data:
                        self.chunks.append(data)

                case StreamingControl.Commit():
                    if self.committed:
                        return
                    self.committed = True
                    self._request_task = create_task(self._transcribe(b"".join(self.chunks)))

        async def _transcribe(self, audio: bytes) -> None:
            try:
                text = await self.client.recognize(audio, self.sample_rate)
            except ASRError as exc:
                self.channel.put(StreamingEvent.Error(str(exc)))
            except CancelledError:
                debug("Whisper request cancelled")
            else:
                self.channel.put(StreamingEvent.Final(text))
            finally:
                self.channel.close()
