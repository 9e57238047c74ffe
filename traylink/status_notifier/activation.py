import itertools
import os
import socket
import typing
import psutil


class LaunchContext(typing.Protocol):
    """Source of XDG activation tokens, normally provided by the shell."""

    def get_startup_notify_id(
        self, command_line: str, app_id: typing.Optional[str], timestamp: int
    ) -> str: ...

    def launch_failed(self, token: str) -> None: ...


class StartupNotifyContext:
    """
    Builds startup-notification ids in the form GLib uses for its launch
    contexts: ``<program>-<pid>-<host>-<app>-<seq>_TIME<timestamp>``.
    Tokens whose launch failed are remembered so they are never reused.
    """

    def __init__(self, program: str = "traylink"):
        self.program = program
        self._sequence = itertools.count()
        self.failed_tokens: typing.Set[str] = set()

    def get_startup_notify_id(
        self, command_line: str, app_id: typing.Optional[str], timestamp: int
    ) -> str:
        executable = os.path.basename((command_line or "true").split()[0])
        app = app_id or executable
        return (
            f"{self.program}-{os.getpid()}-{socket.gethostname()}-"
            f"{app}-{next(self._sequence)}_TIME{timestamp}"
        )

    def launch_failed(self, token: str) -> None:
        self.failed_tokens.add(token)


def read_process_command_line(pid: int) -> str:
    """The command line of a local process, arguments separated by spaces.
    Raises psutil.NoSuchProcess or psutil.AccessDenied."""
    return " ".join(psutil.Process(pid).cmdline())
