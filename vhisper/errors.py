from __future__ import annotations


class VhisperError(Exception):
    """Root of every error raised by vhisper."""


class ConfigurationError(VhisperError):
    """No usable provider could be built from the configuration."""

    def __init__(self, detail: str = "ASR provider is not configured"):
        self.detail = detail
        super().__init__(detail)


class InvalidStateError(VhisperError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid state: {detail}")


class DeviceError(VhisperError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Audio device error: {detail}")


class ASRError(VhisperError):
    PREFIX = "ASR error"

    def __init__(self, detail: str = "", provider: str | None = None):
        self.detail = detail
        self.provider = provider
        where = f" [{provider}]" if provider else ""
        super().__init__(f"{self.PREFIX}{where}: {detail}" if detail else f"{self.PREFIX}{where}")


class ASRNetworkError(ASRError):
    PREFIX = "Network error"


class ASRApiError(ASRError):
    PREFIX = "API error"


class ASRTimeoutError(ASRError):
    PREFIX = "Request timeout"


class ASRCancelledError(ASRError):
    PREFIX = "Request cancelled"


class LLMError(VhisperError):
    PREFIX = "LLM error"

    def __init__(self, detail: str = "", provider: str | None = None):
        self.detail = detail
        self.provider = provider
        where = f" [{provider}]" if provider else ""
        super().__init__(f"{self.PREFIX}{where}: {detail}" if detail else f"{self.PREFIX}{where}")


class LLMNetworkError(LLMError):
    PREFIX = "Network error"


class LLMApiError(LLMError):
    PREFIX = "API error"


class LLMTimeoutError(LLMError):
    PREFIX = "Request timeout"
