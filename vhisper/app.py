from __future__ import annotations

import argparse
import asyncio
import sys
from asyncio import CancelledError
from contextlib import ExitStack
from pathlib import Path

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .capture import AudioCapture
from .config import VAD_PRESETS, ASRProvider, Config, ConfigStorage, env_truthy, get_env
from .display import TerminalDisplay
from .errors import VhisperError
from .hotkey import HotKeyListener, find_keyboard, parse_cancel_key, parse_hotkeys
from .llm import OllamaLLMClient, create_llm_client
from .log import ConsoleWithLogging, errprint
from .output import TextOutput
from .pipeline import PipelineEvent, VoicePipeline


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vhisper",
        description="Push-to-talk dictation: hold the hotkey, speak, release to type the transcript.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=get_env("CONFIG", prefix_optional=True),
        help=f"JSON config file (default: {ConfigStorage.default_path()}). Env: VHISPER_CONFIG",
    )
    parser.add_argument(
        "-p",
        "--provider",
        choices=[provider.value for provider in ASRProvider],
        help="Speech recognition provider, overrides the config file",
    )
    parser.add_argument("-k", "--hotkey", help="Push-to-talk key(s), comma separated, F1-F12. Env: VHISPER_HOTKEY")
    parser.add_argument("-kb", "--keyboard", help="Keyboard name filter. Env: VHISPER_KEYBOARD")
    parser.add_argument(
        "--llm",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable or disable the LLM refinement configured in the config file",
    )
    parser.add_argument("--vad-preset", choices=sorted(VAD_PRESETS), help="Voice activity detection preset")
    parser.add_argument("--ydotool-socket", default=get_env("YDOTOOL_SOCKET"), help="ydotool socket path. Env: VHISPER_YDOTOOL_SOCKET")
    parser.add_argument("--log", type=Path, default=get_env("LOG", prefix_optional=True), help="Also write transcripts to this file")
    parser.add_argument(
        "--save-config",
        action="store_true",
        default=env_truthy(get_env("SAVE_CONFIG", prefix_optional=True)),
        help="Write the resulting configuration back to the config file and exit",
    )
    parser.add_argument("--check-llm", action="store_true", help="Check that the local Ollama server answers and exit")
    return parser


def build_config(args: argparse.Namespace) -> Config.App:
    ConfigStorage.load_env_files()
    config = ConfigStorage.apply_env(ConfigStorage.load(args.config))
    asr = config.asr
    if args.provider:
        asr = asr._replace(provider=ASRProvider(args.provider))
    if args.vad_preset:
        asr = asr._replace(vad=VAD_PRESETS[args.vad_preset])
    llm = config.llm if args.llm is None else config.llm._replace(enabled=args.llm)
    hotkey = config.hotkey
    if hotkey_keys := args.hotkey or get_env("HOTKEY", prefix_optional=True):
        hotkey = hotkey._replace(keys=hotkey_keys)
    if keyboard := args.keyboard or get_env("KEYBOARD", prefix_optional=True):
        hotkey = hotkey._replace(keyboard=keyboard)
    return config._replace(asr=asr, llm=llm, hotkey=hotkey)


def print_config(console: ConsoleWithLogging, config: Config.App, keyboard_name: str) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", width=20)
    table.add_column()
    table.add_row("ASR provider", config.asr.provider.label)
    table.add_row("VAD", f"{config.asr.vad.silence_duration_ms} ms / {config.asr.vad.threshold}")
    table.add_row("LLM refinement", config.llm.provider.value if config.llm.enabled else "disabled")
    table.add_row("Vocabulary", f"{len(config.vocabulary.replacement_dictionary)} corrections" if config.vocabulary.enabled else "disabled")
    table.add_row("Hotkey", config.hotkey.keys.upper())
    table.add_row("Keyboard", keyboard_name)
    console.print_and_log(Panel(table, title="[bold]Vhisper Configuration[/bold]", border_style="blue"), log_max_width=150)


async def check_llm(config: Config.App) -> bool:
    client = create_llm_client(config.llm._replace(enabled=True))
    if not isinstance(client, OllamaLLMClient):
        errprint("ERROR: --check-llm only applies to the Ollama provider")
        return False
    ok = await client.test_connection()
    print(f"Ollama at {client.endpoint}: {'reachable' if ok else 'unreachable'}")
    return ok


async def main_async() -> int:
    args = create_parser().parse_args()
    config = build_config(args)

    if args.save_config:
        path = ConfigStorage.save(config, args.config)
        print(f"Saved configuration to {path} .")
        return 0
    if args.check_llm:
        return 0 if await check_llm(config) else 1

    try:
        codes = parse_hotkeys(config.hotkey.keys)
        cancel_code = parse_cancel_key(config.hotkey.cancel_key)
    except ValueError as exc:
        errprint(f"ERROR: {exc}")
        return 2

    with ExitStack() as stack:
        log_file = stack.enter_context(args.log.open("a", encoding="utf-8")) if args.log else None
        console = ConsoleWithLogging(log_file)
        keyboard = find_keyboard(config.hotkey.keyboard)
        print_config(console, config, keyboard.name)

        output = TextOutput(args.ydotool_socket)
        display = stack.enter_context(TerminalDisplay(console, config.hotkey.keys.split(",")[0].strip().upper()))
        output_tasks: set[asyncio.Task] = set()

        def on_event(event: PipelineEvent.Event) -> None:
            display.handle_event(event)
            match event:
                case PipelineEvent.FinalResult(text=text) if text:
                    task = asyncio.create_task(
                        output.output_text(text, config.output.restore_clipboard, config.output.paste_delay_ms)
                    )
                    output_tasks.add(task)
                    task.add_done_callback(output_tasks.discard)

        pipeline = VoicePipeline(
            config,
            capture=AudioCapture(),
            is_hotkey_pressed=lambda: hotkey.is_pressed,
            on_event=on_event,
        )

        async def on_press() -> None:
            try:
                await pipeline.start_recording()
            except VhisperError as exc:
                console.print_and_log(Text(f"Error: {exc}", style="red"))

        async def on_release() -> None:
            await pipeline.stop_recording()

        async def on_cancel() -> None:
            if pipeline.has_session:
                await pipeline.cancel()

        hotkey = HotKeyListener(keyboard, codes, on_press, on_release, on_cancel, cancel_code)
        if pipeline.asr_client is None:
            errprint(f"WARNING: {config.asr.provider.label} has no API key configured, recording will fail until one is set")

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(hotkey.run())
        except* (KeyboardInterrupt, CancelledError):
            print("\nExit.")
        finally:
            await pipeline.aclose()
    return 0


def main():
    try:
        sys.exit(asyncio.run(main_async()))
    except KeyboardInterrupt:
        print("\nExit.")


if __name__ == "__main__":
    main()
