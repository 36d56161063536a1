"""
Operator prompts for capability requests.

Provides a rich-based terminal prompt with timeout handling, plus scripted
handlers for automation and tests.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from rich.console import Console, Group
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from tessera.permissions.models import Scope, Subject, Verdict
from tessera.protocol.manifest import CapabilityKind, CapabilityRequest


class PromptAnswer(StrEnum):
    """Operator answers, keyed by the letter typed at the prompt."""

    ONCE = "y"  # Allow this request; nothing is stored
    DENY = "n"
    ALWAYS = "a"  # Allow and remember
    SESSION = "s"  # Allow until the process exits

    @property
    def verdict(self) -> Verdict:
        return Verdict.DENY if self is PromptAnswer.DENY else Verdict.ALLOW

    @property
    def scope(self) -> Scope:
        return Scope.PERSISTENT if self is PromptAnswer.ALWAYS else Scope.SESSION

    @property
    def remembered(self) -> bool:
        return self is not PromptAnswer.ONCE

    @classmethod
    def parse(cls, text: str | None) -> PromptAnswer:
        """Anything unrecognised, including empty input, is a denial."""
        value = (text or "").strip().lower()[:1]
        try:
            return cls(value)
        except ValueError:
            return cls.DENY


@dataclass(frozen=True)
class PromptRequest:
    """One capability awaiting an operator decision."""

    subject: Subject
    command: str
    request: CapabilityRequest
    escalation: bool = False


CAPABILITY_DESCRIPTIONS = {
    CapabilityKind.FS_READ: "Read files under",
    CapabilityKind.FS_WRITE: "Write files under",
    CapabilityKind.ENV_READ: "Read environment variable",
    CapabilityKind.STDIN: "Read from standard input",
    CapabilityKind.STDOUT: "Write to standard output",
    CapabilityKind.STDERR: "Write to standard error",
    CapabilityKind.NET: "Access the network",
}


def describe(request: CapabilityRequest) -> str:
    text = CAPABILITY_DESCRIPTIONS[request.kind]
    if request.pattern:
        text = f"{text} {request.pattern}"
    if request.recursive:
        text += " (recursive)"
    return text


class PromptHandler(ABC):
    """Resolves undecided capabilities by asking someone (or something)."""

    @property
    def is_interactive(self) -> bool:
        return True

    @abstractmethod
    async def ask(self, prompt: PromptRequest) -> PromptAnswer: ...


class RichPromptHandler(PromptHandler):
    """Terminal prompt that auto-denies after a timeout."""

    def __init__(self, console: Console | None = None, timeout: float = 60.0):
        """
        Initialize terminal prompt.

        Args:
            console: Rich console for output
            timeout: Seconds to wait before denying
        """
        self.console = console or Console()
        self.timeout = timeout

    @property
    def is_interactive(self) -> bool:
        return self.console.is_terminal

    async def ask(self, prompt: PromptRequest) -> PromptAnswer:
        self._display_request(prompt)
        try:
            return await asyncio.wait_for(self._get_user_input(), timeout=self.timeout)
        except TimeoutError:
            self.console.print(
                f"\n[red]x[/red] No answer within {self.timeout:g} seconds. Access denied.",
                style="bold",
            )
            return PromptAnswer.DENY

    def _display_request(self, prompt: PromptRequest) -> None:
        border = "red" if prompt.escalation else "yellow"
        if prompt.escalation:
            header = f"[bold red]PERMISSIONS CHANGED[/bold red] - {prompt.command}"
        else:
            header = f"PERMISSION REQUEST - {prompt.command}"

        details = Table(show_header=False, box=None, padding=(0, 2))
        details.add_column("Key", style="cyan")
        details.add_column("Value", style="white")
        details.add_row("Plugin", str(prompt.subject))
        details.add_row("Command", prompt.command)
        details.add_row("Requests", describe(prompt.request))

        lines = [details]
        if prompt.escalation:
            lines.append("[bold red]The plugin now declares a different set of capabilities.[/bold red]")
        lines.append(
            "[bold]y[/bold] allow this time   [bold]s[/bold] allow for session   "
            "[bold]a[/bold] always allow   [bold]n[/bold] deny"
        )
        lines.append(f"[bold yellow]Auto-deny in {self.timeout:g} seconds...[/bold yellow]")

        self.console.print()
        self.console.print(Panel(Group(*lines), title=header, border_style=border, padding=(1, 2)))
        self.console.print()

    async def _get_user_input(self) -> PromptAnswer:
        # Run blocking input in executor
        loop = asyncio.get_running_loop()
        answer = await loop.run_in_executor(
            None,
            lambda: Prompt.ask(
                "[bold]Allow?[/bold]",
                choices=[answer.value for answer in PromptAnswer],
                default=PromptAnswer.DENY.value,
                console=self.console,
            ),
        )
        return PromptAnswer.parse(answer)


class AutoPromptHandler(PromptHandler):
    """Answers every prompt the same way without asking anyone."""

    def __init__(self, answer: PromptAnswer = PromptAnswer.DENY):
        self.answer = answer

    @classmethod
    def always_allow(cls) -> AutoPromptHandler:
        return cls(PromptAnswer.ALWAYS)

    @classmethod
    def always_deny(cls) -> AutoPromptHandler:
        return cls(PromptAnswer.DENY)

    async def ask(self, prompt: PromptRequest) -> PromptAnswer:
        return self.answer


@dataclass
class RecordingPromptHandler(PromptHandler):
    """Replays scripted answers and records what was asked."""

    answers: list[PromptAnswer] = field(default_factory=list)
    default: PromptAnswer = PromptAnswer.DENY
    asked: list[PromptRequest] = field(default_factory=list)

    @classmethod
    def answering(cls, *answers: PromptAnswer | str) -> RecordingPromptHandler:
        return cls(answers=[PromptAnswer(a) for a in answers])

    async def ask(self, prompt: PromptRequest) -> PromptAnswer:
        self.asked.append(prompt)
        if self.answers:
            return self.answers.pop(0)
        return self.default

    def requests(self) -> Iterable[CapabilityRequest]:
        return [prompt.request for prompt in self.asked]
