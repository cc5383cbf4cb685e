"""Default OS accessors: clipboard text and the frontmost application name."""

import logging
import platform
import subprocess
from typing import List, Optional, Protocol

from context_memory.core.errors import ClipboardError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 3


class ActiveApplicationResolver(Protocol):
    def get_active_application_name(self) -> str: ...


def _run(cmd: List[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        cmd,
        input=input_text,
        capture_output=True,
        text=True,
        timeout=COMMAND_TIMEOUT,
    )


class SystemClipboard:
    """Clipboard access through the platform's command-line tools."""

    LINUX_READERS = [
        ["xclip", "-selection", "clipboard", "-o"],
        ["xsel", "--clipboard", "--output"],
        ["wl-paste", "--no-newline"],
    ]
    LINUX_WRITERS = [
        ["xclip", "-selection", "clipboard"],
        ["xsel", "--clipboard", "--input"],
        ["wl-copy"],
    ]

    def __init__(self):
        self.system = platform.system()

    def read_text(self) -> str:
        if self.system == "Darwin":
            return self._first_success([["pbpaste"]])
        if self.system == "Windows":
            return self._first_success(
                [["powershell", "-NoProfile", "-Command", "Get-Clipboard -Raw"]]
            )
        return self._first_success(self.LINUX_READERS)

    def write_text(self, text: str):
        if self.system == "Darwin":
            writers = [["pbcopy"]]
        elif self.system == "Windows":
            writers = [["clip"]]
        else:
            writers = self.LINUX_WRITERS
        self._first_success(writers, input_text=text)

    @staticmethod
    def _first_success(commands: List[List[str]], input_text: Optional[str] = None) -> str:
        errors = []
        for cmd in commands:
            try:
                result = _run(cmd, input_text)
            except (FileNotFoundError, subprocess.TimeoutExpired) as e:
                errors.append(f"{cmd[0]}: {e}")
                continue
            if result.returncode == 0:
                return result.stdout
            errors.append(f"{cmd[0]}: exit {result.returncode}")

        raise ClipboardError("No clipboard tool succeeded", errors=errors)


class SystemActiveApplication:
    """Best-effort name of the frontmost application."""

    def __init__(self):
        self.system = platform.system()

    def get_active_application_name(self) -> str:
        try:
            if self.system == "Darwin":
                result = _run(
                    [
                        "osascript",
                        "-e",
                        'tell application "System Events" to get name of '
                        "first application process whose frontmost is true",
                    ]
                )
                return result.stdout.strip() if result.returncode == 0 else ""

            if self.system == "Linux":
                window = _run(["xdotool", "getactivewindow"])
                if window.returncode != 0:
                    return ""
                pid = _run(["xdotool", "getwindowpid", window.stdout.strip()])
                if pid.returncode != 0:
                    return ""
                with open(f"/proc/{pid.stdout.strip()}/comm", "r") as f:
                    return f.read().strip()

            if self.system == "Windows":
                script = (
                    "Add-Type '[DllImport(\"user32.dll\")] public static extern "
                    "System.IntPtr GetForegroundWindow(); [DllImport(\"user32.dll\")] "
                    "public static extern int GetWindowThreadProcessId(System.IntPtr h, "
                    "out int p);' -Name W -Namespace U; $p = 0; "
                    "[U.W]::GetWindowThreadProcessId([U.W]::GetForegroundWindow(), [ref]$p) "
                    "| Out-Null; (Get-Process -Id $p).ProcessName"
                )
                result = _run(["powershell", "-NoProfile", "-Command", script])
                return result.stdout.strip() if result.returncode == 0 else ""
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Could not resolve active application: {e}")

        return ""
