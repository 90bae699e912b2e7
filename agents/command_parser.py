from __future__ import annotations

import json
import os
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.models import CommandSymbol, ParsedCommand, Priority


DEFAULT_SYMBOL_DURATIONS: Dict[CommandSymbol, int] = {
    CommandSymbol.LOAD: 2,
    CommandSymbol.EXECUTE: 10,
    CommandSymbol.UPDATE: 3,
    CommandSymbol.MARATHON: 5,
}

DEFAULT_COMPLEXITY_KEYWORDS: Tuple[str, ...] = (
    "deploy",
    "configure",
    "integrate",
    "analyze",
    "process",
)


@dataclass
class CommandParserConfig:
    """
    Configuration for the CommandParser duration estimate.

    Attributes:
        base_duration: Seconds every valid command is assumed to take.
        symbol_durations: Extra seconds added per symbol present.
        complexity_keywords: Whole words that each add ``keyword_duration``
            seconds when present in the task description.
        keyword_duration: Seconds added per complexity keyword found.
        max_duration: Upper bound for the estimate.
    """

    base_duration: int = 5
    symbol_durations: Dict[CommandSymbol, int] = field(
        default_factory=lambda: dict(DEFAULT_SYMBOL_DURATIONS)
    )
    complexity_keywords: Tuple[str, ...] = DEFAULT_COMPLEXITY_KEYWORDS
    keyword_duration: int = 15
    max_duration: int = 300


@dataclass(frozen=True)
class SlashCommand:
    """
    A slash command and the symbol intents it stands for.

    Attributes:
        name: Canonical name, without the leading slash.
        aliases: Alternative names resolving to this command.
        symbols: Symbols the command always carries.
        flag_symbols: Long flags that add a symbol when given.
        short_flags: Single-letter flags and the long flag each one means.
        description_flag: Flag whose value replaces the positional text as
            the task description.
        verbs: Leading words dropped from the positional text.
        prefix: Word put in front of the task description.
    """

    name: str
    aliases: Tuple[str, ...] = ()
    symbols: Tuple[CommandSymbol, ...] = ()
    flag_symbols: Dict[str, CommandSymbol] = field(default_factory=dict)
    short_flags: Dict[str, str] = field(default_factory=dict)
    description_flag: Optional[str] = None
    verbs: Tuple[str, ...] = ()
    prefix: str = ""


DEFAULT_SLASH_COMMANDS: Tuple[SlashCommand, ...] = (
    SlashCommand(
        "load",
        aliases=("context", "recall"),
        symbols=(CommandSymbol.LOAD,),
        short_flags={"f": "full"},
    ),
    SlashCommand(
        "search",
        aliases=("s", "find"),
        symbols=(CommandSymbol.LOAD,),
        short_flags={"e": "exact", "r": "recent"},
    ),
    SlashCommand(
        "save",
        aliases=("store",),
        symbols=(CommandSymbol.UPDATE,),
        short_flags={"c": "checkpoint"},
    ),
    SlashCommand(
        "execute",
        aliases=("exec", "run"),
        symbols=(CommandSymbol.EXECUTE,),
        flag_symbols={"marathon": CommandSymbol.MARATHON},
        short_flags={"M": "marathon", "p": "parallel"},
    ),
    SlashCommand(
        "deploy",
        aliases=("d",),
        symbols=(CommandSymbol.EXECUTE,),
        flag_symbols={"marathon": CommandSymbol.MARATHON, "with-memory": CommandSymbol.UPDATE},
        short_flags={"M": "marathon", "m": "with-memory", "f": "force", "n": "dry-run"},
        prefix="deploy",
    ),
    SlashCommand(
        "marathon",
        aliases=("m",),
        symbols=(CommandSymbol.MARATHON,),
        short_flags={"t": "task"},
        description_flag="task",
        verbs=("start",),
    ),
)

# A priority flag overrides the priority implied by the symbols.
PRIORITY_FLAGS: Dict[str, Priority] = {
    "urgent": Priority.URGENT,
    "critical": Priority.URGENT,
    "high": Priority.HIGH,
    "important": Priority.HIGH,
    "low": Priority.LOW,
    "minor": Priority.LOW,
}


class CommandParser:
    """
    Turns raw command strings into ParsedCommand intents.

    Symbols are matched as substrings, so ``"---+++ task"`` carries both the
    load and execute symbols. Input starting with ``/`` is read as a slash
    command instead (``/execute --marathon "Set up monitoring"``) and mapped
    onto the same symbols. Parsing is a pure function of the input string.
    """

    def __init__(
        self,
        config: Optional[CommandParserConfig] = None,
        slash_commands: Optional[Tuple[SlashCommand, ...]] = None,
    ) -> None:
        self._config = config or CommandParserConfig()
        self._slash_commands: Dict[str, SlashCommand] = {}
        for spec in slash_commands if slash_commands is not None else DEFAULT_SLASH_COMMANDS:
            for name in (spec.name, *spec.aliases):
                self._slash_commands[name.lower()] = spec

    def parse(self, command: str) -> ParsedCommand:
        if command.strip().startswith("/"):
            return self._parse_slash(command)

        symbols = [symbol for symbol in CommandSymbol if symbol.value in command]
        task_description = strip_symbols(command)

        return ParsedCommand(
            raw_command=command,
            symbols=symbols,
            task_description=task_description,
            priority=self._priority(symbols),
            estimated_duration=self.estimate_duration(task_description, symbols),
            is_valid=bool(symbols) and bool(task_description),
        )

    def estimate_duration(self, task_description: str, symbols: List[CommandSymbol]) -> int:
        duration = self._config.base_duration
        for symbol in symbols:
            duration += self._config.symbol_durations.get(symbol, 0)

        text = task_description.lower()
        for keyword in self._config.complexity_keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", text):
                duration += self._config.keyword_duration

        return min(duration, self._config.max_duration)

    def _parse_slash(self, command: str) -> ParsedCommand:
        try:
            tokens = shlex.split(command.strip()[1:])
        except ValueError as exc:
            return ParsedCommand(raw_command=command, error=f"Malformed command: {exc}")
        if not tokens:
            return ParsedCommand(raw_command=command, error="Empty command")

        spec = self._slash_commands.get(tokens[0].lower())
        if spec is None:
            return ParsedCommand(raw_command=command, error=f"Unknown command: /{tokens[0]}")

        parameters: Dict[str, Any] = {}
        flags: List[str] = []
        words: List[str] = []
        for token in tokens[1:]:
            if token.startswith("--") and token[2:3].isalnum():
                key, sep, value = token[2:].partition("=")
                parameters[key] = _parse_value(value) if sep else True
                flags.append(key)
            elif token.startswith("-") and token[1:2].isalpha():
                for letter in token[1:]:
                    long_name = spec.short_flags.get(letter)
                    if long_name is not None:
                        parameters[long_name] = True
                        flags.append(long_name)
            else:
                words.append(token)

        if words and words[0].lower() in spec.verbs:
            words = words[1:]
        text = " ".join(words)
        if spec.description_flag and isinstance(parameters.get(spec.description_flag), str):
            text = parameters[spec.description_flag]
        text = text.strip()
        task_description = f"{spec.prefix} {text}" if spec.prefix and text else text

        wanted = set(spec.symbols)
        wanted.update(symbol for flag, symbol in spec.flag_symbols.items() if parameters.get(flag))
        symbols = [symbol for symbol in CommandSymbol if symbol in wanted]

        return ParsedCommand(
            raw_command=command,
            symbols=symbols,
            task_description=task_description,
            priority=_flag_priority(parameters) or self._priority(symbols),
            estimated_duration=self.estimate_duration(task_description, symbols),
            is_valid=bool(task_description),
            slash_command=spec.name,
            parameters=parameters,
            flags=flags,
            error=None if task_description else f"Missing task description for /{spec.name}",
        )

    @staticmethod
    def _priority(symbols: List[CommandSymbol]) -> Priority:
        if CommandSymbol.MARATHON in symbols:
            return Priority.URGENT
        if CommandSymbol.EXECUTE in symbols and CommandSymbol.LOAD in symbols:
            return Priority.HIGH
        if CommandSymbol.LOAD in symbols or CommandSymbol.UPDATE in symbols:
            return Priority.LOW
        return Priority.MEDIUM


def _parse_value(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


def _flag_priority(parameters: Dict[str, Any]) -> Optional[Priority]:
    named = parameters.get("priority")
    if isinstance(named, str) and named.lower() in PRIORITY_FLAGS:
        return PRIORITY_FLAGS[named.lower()]
    for flag, priority in PRIORITY_FLAGS.items():
        if parameters.get(flag) is True:
            return priority
    return None


def strip_symbols(command: str) -> str:
    """
    Remove every symbol occurrence and trim the remainder.

    Removal repeats until nothing is left to remove: deleting ``+++`` from
    ``"--+++-"`` would otherwise expose a fresh ``---``.
    """
    text = command
    while True:
        stripped = text
        for symbol in CommandSymbol:
            stripped = stripped.replace(symbol.value, "")
        if stripped == text:
            return text.strip()
        text = stripped


def create_default_command_parser() -> CommandParser:
    """
    Build a CommandParser, honouring environment overrides.

    Environment variables:
      - COMMANDPILOT_MAX_ESTIMATE: override the duration estimate cap.
    """
    max_duration = int(os.getenv("COMMANDPILOT_MAX_ESTIMATE", CommandParserConfig.max_duration))
    return CommandParser(config=CommandParserConfig(max_duration=max_duration))
