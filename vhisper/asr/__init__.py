from __future__ import annotations

from ..config import ASRProvider, Config
from .base import ASRClient, ControlSink, EventChannel, EventStream, StreamingControl, StreamingEvent, WebSocketSession, recognize_streaming
from .dashscope import DashScopeASRClient
from .funasr import FunASRClient
from .qwen import QwenRealtimeASRClient
from .whisper import OpenAIWhisperASRClient

__all__ = [
    "ASRClient",
    "ControlSink",
    "DashScopeASRClient",
    "EventChannel",
    "EventStream",
    "FunASRClient",
    "OpenAIWhisperASRClient",
    "QwenRealtimeASRClient",
    "StreamingControl",
    "StreamingEvent",
    "WebSocketSession",
    "create_asr_client",
    "recognize_streaming",
]


def create_asr_client(config: Config.ASR) -> ASRClient | None:
    """Build the client of the selected provider, or None when its API key is missing."""
    match config.provider:
        case ASRProvider.QWEN if config.qwen.api_key:
            return QwenRealtimeASRClient(config.qwen, config.vad)
        case ASRProvider.DASHSCOPE if config.dashscope.api_key:
            return DashScopeASRClient(config.dashscope)
        case ASRProvider.OPENAI_WHISPER if config.openai.api_key:
            return OpenAIWhisperASRClient(config.openai)
        case ASRProvider.FUNASR:
            return FunASRClient(config.funasr)
    return None
