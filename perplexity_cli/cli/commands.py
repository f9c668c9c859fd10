from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

# Handlers receive the whitespace-split arguments and return False to end the session.
CommandHandler = Callable[[List[str]], Awaitable[bool]]


@dataclass
class Command:
    name: str
    handler: CommandHandler
    description: str
    usage: str = ""

    @property
    def signature(self) -> str:
        return f"{self.name} {self.usage}".rstrip()


class CommandRegistry:
    """Registry for REPL slash commands."""

    def __init__(self) -> None:
        self._commands: Dict[str, Command] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        description: str,
        usage: str = "",
    ) -> None:
        if not name.startswith("/"):
            name = f"/{name}"
        self._commands[name] = Command(
            name=name, handler=handler, description=description, usage=usage
        )

    def get(self, name: str) -> Optional[Command]:
        if not name.startswith("/"):
            name = f"/{name}"
        return self._commands.get(name)

    def names(self) -> List[str]:
        return list(self._commands.keys())

    def help_text(self) -> str:
        commands = list(self._commands.values())
        width = max((len(cmd.signature) for cmd in commands), default=0) + 2
        lines = ["Available commands:"]
        for cmd in commands:
            lines.append(f"  {cmd.signature.ljust(width)}{cmd.description}")
        return "\n".join(lines)
