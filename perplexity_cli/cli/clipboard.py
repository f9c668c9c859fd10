"""System clipboard access for /copy."""

from __future__ import annotations

import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import pyperclip


class ClipboardError(RuntimeError):
    """Raised when no clipboard mechanism accepted the text."""


def _darwin_clipboard_cmd(name: str) -> Optional[str]:
    path = Path("/usr/bin") / name
    if path.exists():
        return str(path)
    return shutil.which(name)


def _platform_copy_commands() -> List[List[str]]:
    if sys.platform == "darwin":
        cmd = _darwin_clipboard_cmd("pbcopy")
        return [[cmd]] if cmd else []
    if sys.platform.startswith("linux"):
        commands: List[List[str]] = []
        if shutil.which("wl-copy"):
            commands.append(["wl-copy"])
        if shutil.which("xclip"):
            commands.append(["xclip", "-selection", "clipboard"])
        if shutil.which("xsel"):
            commands.append(["xsel", "--clipboard", "--input"])
        return commands
    if sys.platform.startswith("win") and shutil.which("powershell"):
        return [["powershell", "-NoProfile", "-Command", "$input | Set-Clipboard"]]
    return []


class SystemClipboard:
    """Copy text with pyperclip, falling back to the platform's clipboard tools."""

    def write_sync(self, text: str) -> None:
        try:
            pyperclip.copy(text)
            return
        except pyperclip.PyperclipException as exc:
            last_error: Exception = exc
        for command in _platform_copy_commands():
            try:
                subprocess.run(command, input=text.encode("utf-8"), check=True)
                return
            except (OSError, subprocess.CalledProcessError) as exc:
                last_error = exc
        raise ClipboardError(f"Clipboard unavailable: {last_error}")

