from __future__ import annotations

from datetime import datetime

from rich.console import Group
from rich.live import Live
from rich.rule import Rule
from rich.text import Text

from .log import ConsoleWithLogging
from .pipeline import PipelineEvent, PipelineState


class TerminalDisplay:
    """Live terminal view of the pipeline lifecycle; finished sessions are also written to the log."""

    def __init__(self, console: ConsoleWithLogging, hotkey_name: str = "F9"):
        self.console = console
        self.hotkey_name = hotkey_name
        self.live: Live | None = None
        self.state = PipelineState.IDLE
        self.session_active = False
        self.started_at: datetime | None = None
        self.text = ""
        self.stash = ""
        self.notices: list[tuple[str, str]] = []

    def __enter__(self) -> TerminalDisplay:
        self.live = Live(
            self._renderable(),
            console=self.console.console,
            refresh_per_second=8,
            auto_refresh=False,
            transient=False,
        )
        self.live.__enter__()
        return self

    def __exit__(self, *exc_info) -> None:
        if self.session_active:
            self._finalize_session()
        if self.live is not None:
            self.live.__exit__(*exc_info)
            self.live = None

    def handle_event(self, event: PipelineEvent.Event) -> None:
        match event:
            case PipelineEvent.RecordingStarted():
                if self.session_active:
                    self._finalize_session()
                self.session_active = True
                self.started_at = datetime.now()
                self.text = self.stash = ""
                self.notices = []
                self.state = PipelineState.RECORDING

            case PipelineEvent.RecordingStopped():
                self.state = PipelineState.PROCESSING

            case PipelineEvent.PartialResult(text=text, stash=stash):
                self.text, self.stash = text, stash

            case PipelineEvent.FinalResult(text=text, session_finished=session_finished):
                self.text, self.stash = text, ""
                if session_finished:
                    self.state = PipelineState.IDLE
                    self._finalize_session()
                else:
                    self._print_segment(text)

            case PipelineEvent.Warning(message=message):
                self.notices.append(("Warning", message))

            case PipelineEvent.Error(message=message):
                self.notices.append(("Error", message))
                self.state = PipelineState.IDLE
                self._finalize_session()

            case PipelineEvent.Cancelled():
                self.notices.append(("Cancelled", ""))
                self.state = PipelineState.IDLE
                self._finalize_session()

        self._refresh()

    def _refresh(self):
        if self.live is None:
            return
        self.live.update(self._renderable(), refresh=True)

    def _renderable(self):
        if self.session_active:
            return self._build_section(final=False)
        return Text(f"Hold {self.hotkey_name} to dictate...", style="dim")

    def _print_segment(self, text: str):
        self.console.print_and_log(Text(text))

    def _finalize_session(self):
        if not self.session_active:
            return
        top, content, bottom = self._build_section(final=True).renderables
        self.console.print_and_log(top, log_max_width=50)
        self.console.print_and_log(content)
        self.console.print_and_log(bottom, log_max_width=50)
        self.console.print_and_log()
        self.session_active = False
        self.text = self.stash = ""
        self.notices = []

    def _state_label(self, *, final: bool) -> str:
        if final:
            return "Done"
        return {
            PipelineState.IDLE: "Idle",
            PipelineState.RECORDING: "Recording",
            PipelineState.PROCESSING: "Processing",
        }[self.state]

    def _build_section(self, *, final: bool) -> Group:
        started_at = self.started_at or datetime.now()
        text = Text(overflow="fold", no_wrap=False)
        text.append("[", style="bold cyan")
        text.append("Speech: ", style="bold")
        text.append(self._state_label(final=final))
        text.append("]\n\n", style="bold cyan")
        if self.text or self.stash:
            text.append(self.text)
            text.append(self.stash, style="dim italic")
        else:
            text.append("...", style="dim")
        for kind, message in self.notices:
            style = "yellow" if kind == "Warning" else "red" if kind == "Error" else "dim"
            text.append(f"\n[{kind}] {message}".rstrip(), style=style)

        rule_style = "cyan" if final else "green"
        if final:
            bottom_title = f"End: {datetime.now():%Y-%m-%d %H:%M:%S}"
        elif self.state is PipelineState.RECORDING:
            bottom_title = f"Release {self.hotkey_name} to stop"
        elif self.state is PipelineState.PROCESSING:
            bottom_title = "Processing speech..."
        else:
            bottom_title = ""
        return Group(
            Rule("Start: " + started_at.strftime("%Y-%m-%d %H:%M:%S"), style=rule_style),
            text,
            Rule(bottom_title, style=rule_style),
        )
