from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from dotenv import load_dotenv
from platformdirs import user_config_dir

from .log import debug, errprint

APP_NAME = "vhisper"
ENV_PREFIX = "VHISPER_"


class ASRProvider(Enum):
    QWEN = "qwen"
    DASHSCOPE = "dashscope"
    OPENAI_WHISPER = "openai_whisper"
    FUNASR = "funasr"

    @property
    def vendor(self) -> str | None:
        """Vendor whose credentials this provider uses, if any."""
        match self:
            case ASRProvider.QWEN | ASRProvider.DASHSCOPE:
                return "dashscope"
            case ASRProvider.OPENAI_WHISPER:
                return "openai"
        return None

    @property
    def label(self) -> str:
        return {
            ASRProvider.QWEN: "Qwen realtime",
            ASRProvider.DASHSCOPE: "DashScope Paraformer",
            ASRProvider.OPENAI_WHISPER: "OpenAI Whisper",
            ASRProvider.FUNASR: "FunASR (local)",
        }[self]


class LLMProvider(Enum):
    DASHSCOPE = "dashscope"
    OPENAI = "openai"
    OLLAMA = "ollama"

    @property
    def vendor(self) -> str | None:
        match self:
            case LLMProvider.DASHSCOPE:
                return "dashscope"
            case LLMProvider.OPENAI:
                return "openai"
        return None


class VAD(NamedTuple):
    silence_duration_ms: int = 300
    threshold: float = 0.5


class QwenASR(NamedTuple):
    api_key: str = ""
    model: str = "qwen3-asr-flash-realtime"
    language: str = "zh"


class DashScopeASR(NamedTuple):
    api_key: str = ""
    model: str = "paraformer-realtime-v2"


class OpenAIASR(NamedTuple):
    api_key: str = ""
    model: str = "whisper-1"
    language: str = "zh"


class FunASR(NamedTuple):
    endpoint: str = "ws://localhost:10096"
    hotwords: str = ""


class ASR(NamedTuple):
    provider: ASRProvider = ASRProvider.QWEN
    vad: VAD = VAD()
    qwen: QwenASR = QwenASR()
    dashscope: DashScopeASR = DashScopeASR()
    openai: OpenAIASR = OpenAIASR()
    funasr: FunASR = FunASR()

    @property
    def api_key(self) -> str:
        match self.provider:
            case ASRProvider.QWEN:
                return self.qwen.api_key
            case ASRProvider.DASHSCOPE:
                return self.dashscope.api_key
            case ASRProvider.OPENAI_WHISPER:
                return self.openai.api_key
        return ""


class DashScopeLLM(NamedTuple):
    api_key: str = ""
    model: str = "qwen-plus"


class OpenAILLM(NamedTuple):
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 2000
    base_url: str | None = None


class OllamaLLM(NamedTuple):
    endpoint: str = "http://localhost:11434"
    model: str = "qwen3:8b"


class LLM(NamedTuple):
    enabled: bool = False
    provider: LLMProvider = LLMProvider.DASHSCOPE
    custom_prompt: str | None = None
    dashscope: DashScopeLLM = DashScopeLLM()
    openai: OpenAILLM = OpenAILLM()
    ollama: OllamaLLM = OllamaLLM()


class Output(NamedTuple):
    restore_clipboard: bool = True
    paste_delay_ms: int = 50


class Hotkey(NamedTuple):
    keys: str = "f9"
    cancel_key: str | None = "esc"
    keyboard: str | None = None


class VocabularyEntry(NamedTuple):
    correct_word: str
    error_variants: tuple[str, ...] = ()


class VocabularyCategory(NamedTuple):
    name: str
    enabled: bool = True
    entries: tuple[VocabularyEntry, ...] = ()


class Vocabulary(NamedTuple):
    enabled: bool = False
    enable_post_asr_replacement: bool = True
    enable_llm_injection: bool = True
    categories: tuple[VocabularyCategory, ...] = ()

    def enabled_entries(self) -> list[VocabularyEntry]:
        return [entry for category in self.categories if category.enabled for entry in category.entries]

    @property
    def replacement_dictionary(self) -> dict[str, str]:
        """Lower-cased error variant -> correct word, for enabled categories only."""
        result: dict[str, str] = {}
        for entry in self.enabled_entries():
            for variant in entry.error_variants:
                if variant:
                    result[variant.lower()] = entry.correct_word
        return result

    @property
    def llm_context(self) -> str:
        lines = []
        for entry in self.enabled_entries():
            variants = [variant for variant in entry.error_variants if variant]
            if variants:
                lines.append(f'- "{", ".join(variants)}" should be written as "{entry.correct_word}"')
        if not lines:
            return ""
        return "Important vocabulary corrections:\n" + "\n".join(lines)


class App(NamedTuple):
    hotkey: Hotkey = Hotkey()
    asr: ASR = ASR()
    llm: LLM = LLM()
    output: Output = Output()
    vocabulary: Vocabulary = Vocabulary()

    @property
    def asr_api_key(self) -> str:
        return self.asr.api_key

    @property
    def vocabulary_context(self) -> str:
        if not (self.vocabulary.enabled and self.vocabulary.enable_llm_injection):
            return ""
        return self.vocabulary.llm_context


class Config:
    """Namespace of the immutable configuration sections."""

    VAD = VAD
    QwenASR = QwenASR
    DashScopeASR = DashScopeASR
    OpenAIASR = OpenAIASR
    FunASR = FunASR
    ASR = ASR
    DashScopeLLM = DashScopeLLM
    OpenAILLM = OpenAILLM
    OllamaLLM = OllamaLLM
    LLM = LLM
    Output = Output
    Hotkey = Hotkey
    VocabularyEntry = VocabularyEntry
    VocabularyCategory = VocabularyCategory
    Vocabulary = Vocabulary
    App = App


VAD_PRESETS: dict[str, Config.VAD] = {
    "fast": Config.VAD(silence_duration_ms=200, threshold=0.5),
    "default": Config.VAD(silence_duration_ms=300, threshold=0.5),
    "stable": Config.VAD(silence_duration_ms=500, threshold=0.5),
    "long": Config.VAD(silence_duration_ms=800, threshold=0.4),
}


def get_env(name: str, default: str | None = None, prefix_optional: bool = False) -> str | None:
    result = os.getenv(f"{ENV_PREFIX}{name}", default)
    if not prefix_optional and result is None:
        result = os.getenv(name, default)
    return result


def env_truthy(val: str | None) -> bool:
    if not val:
        return False
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _section(tuple_cls, data: Any, **nested):
    """Build a NamedTuple from a JSON mapping, ignoring unknown keys.

    ``nested`` maps field names to callables building the field value from its raw data.
    """
    if not isinstance(data, dict):
        data = {}
    values = {}
    for field in tuple_cls._fields:
        if field in nested:
            values[field] = nested[field](data.get(field))
        elif field in data:
            values[field] = data[field]
    return tuple_cls(**values)


def _enum(enum_cls, default):
    def build(value):
        try:
            return enum_cls(value)
        except ValueError:
            return default

    return build


def _entries(data: Any) -> tuple[Config.VocabularyEntry, ...]:
    if not isinstance(data, list):
        return ()
    entries = []
    for item in data:
        if not isinstance(item, dict) or not item.get("correct_word"):
            continue
        variants = item.get("error_variants") or []
        entries.append(Config.VocabularyEntry(correct_word=item["correct_word"], error_variants=tuple(str(v) for v in variants)))
    return tuple(entries)


def _categories(data: Any) -> tuple[Config.VocabularyCategory, ...]:
    if not isinstance(data, list):
        return ()
    return tuple(
        _section(Config.VocabularyCategory, {"name": "", **item}, entries=_entries)
        for item in data
        if isinstance(item, dict)
    )


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "_asdict"):
        return {key: _to_json(item) for key, item in value._asdict().items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


class ConfigStorage:
    FILE_NAME = "config.json"
    API_KEY_ENV = {
        "dashscope": "DASHSCOPE_API_KEY",
        "openai": "OPENAI_API_KEY",
    }

    @classmethod
    def config_dir(cls) -> Path:
        return Path(user_config_dir(APP_NAME))

    @classmethod
    def default_path(cls) -> Path:
        return cls.config_dir() / cls.FILE_NAME

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config.App:
        return _section(
            Config.App,
            data,
            hotkey=lambda d: _section(Config.Hotkey, d),
            asr=lambda d: _section(
                Config.ASR,
                d,
                provider=_enum(ASRProvider, ASRProvider.QWEN),
                vad=lambda v: _section(Config.VAD, v),
                qwen=lambda v: _section(Config.QwenASR, v),
                dashscope=lambda v: _section(Config.DashScopeASR, v),
                openai=lambda v: _section(Config.OpenAIASR, v),
                funasr=lambda v: _section(Config.FunASR, v),
            ),
            llm=lambda d: _section(
                Config.LLM,
                d,
                provider=_enum(LLMProvider, LLMProvider.DASHSCOPE),
                dashscope=lambda v: _section(Config.DashScopeLLM, v),
                openai=lambda v: _section(Config.OpenAILLM, v),
                ollama=lambda v: _section(Config.OllamaLLM, v),
            ),
            output=lambda d: _section(Config.Output, d),
            vocabulary=lambda d: _section(Config.Vocabulary, d, categories=_categories),
        )

    @classmethod
    def to_dict(cls, config: Config.App) -> dict[str, Any]:
        return _to_json(config)

    @classmethod
    def load(cls, path: Path | None = None) -> Config.App:
        path = path or cls.default_path()
        if not path.exists():
            debug(f"No config file at {path}, using defaults")
            return Config.App()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            errprint(f"WARNING: Unable to read config file {path} ({exc}); using defaults")
            return Config.App()
        if not isinstance(data, dict):
            errprint(f"WARNING: Config file {path} does not contain an object; using defaults")
            return Config.App()
        return cls.from_dict(data)

    @classmethod
    def save(cls, config: Config.App, path: Path | None = None) -> Path:
        path = path or cls.default_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(cls.to_dict(config), indent=2, sort_keys=True, ensure_ascii=False) + "\n", encoding="utf-8")
        return path

    @classmethod
    def load_env_files(cls, config_dir: Path | None = None) -> list[Path]:
        loaded_files = []
        for directory in (Path.cwd(), config_dir or cls.config_dir()):
            if (env_path := (directory / ".env")).exists() and env_path.is_file():
                load_dotenv(env_path, override=False)
                loaded_files.append(env_path.resolve())
        return loaded_files

    @classmethod
    def apply_env(cls, config: Config.App) -> Config.App:
        """Fill empty API keys and a few overridable fields from the environment."""
        keys = {vendor: get_env(name) or "" for vendor, name in cls.API_KEY_ENV.items()}
        asr = config.asr
        llm = config.llm
        if keys["dashscope"]:
            if not asr.qwen.api_key:
                asr = asr._replace(qwen=asr.qwen._replace(api_key=keys["dashscope"]))
            if not asr.dashscope.api_key:
                asr = asr._replace(dashscope=asr.dashscope._replace(api_key=keys["dashscope"]))
            if not llm.dashscope.api_key:
                llm = llm._replace(dashscope=llm.dashscope._replace(api_key=keys["dashscope"]))
        if keys["openai"]:
            if not asr.openai.api_key:
                asr = asr._replace(openai=asr.openai._replace(api_key=keys["openai"]))
            if not llm.openai.api_key:
                llm = llm._replace(openai=llm.openai._replace(api_key=keys["openai"]))
        if provider := get_env("ASR_PROVIDER", prefix_optional=True):
            try:
                asr = asr._replace(provider=ASRProvider(provider.strip().lower()))
            except ValueError:
                errprint(f"WARNING: Unknown ASR provider in {ENV_PREFIX}ASR_PROVIDER: {provider}")
        if endpoint := get_env("FUNASR_ENDPOINT", prefix_optional=True):
            asr = asr._replace(funasr=asr.funasr._replace(endpoint=endpoint))
        if (llm_enabled := get_env("LLM_ENABLED", prefix_optional=True)) is not None:
            llm = llm._replace(enabled=env_truthy(llm_enabled))
        return config._replace(asr=asr, llm=llm)
