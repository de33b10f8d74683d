"""A stack of clean-up actions run in reverse order when unwound."""

from __future__ import annotations

import logging
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Union

log = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class RemoveDirectory:
    """Remove a directory tree."""

    path: PathLike

    def perform(self) -> None:
        path = Path(self.path)
        log.info("FStack: performing `RemoveDirectory(%s)`", path)
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            log.error("FStack: %s does not exist!", path)


@dataclass(frozen=True)
class RemoveFile:
    """Remove a single file."""

    path: PathLike

    def perform(self) -> None:
        path = Path(self.path)
        log.info("FStack: performing `RemoveFile(%s)`", path)
        try:
            path.unlink()
        except OSError as exc:
            log.error("FStack: fail to remove file %s: %s", path, exc)


@dataclass(frozen=True)
class TerminateProcess:
    """Send SIGTERM to a process."""

    pid: int

    def perform(self) -> None:
        log.info("FStack: performing `TerminateProcess(%s)`", self.pid)
        try:
            os.kill(self.pid, signal.SIGTERM)
        except OSError as exc:
            log.error("FStack: fail to terminate process %s: %s", self.pid, exc)
        else:
            log.info("FStack: killed process %s", self.pid)


Action = Union[RemoveDirectory, RemoveFile, TerminateProcess]


class FStack:
    """Clean-up actions, performed last-in first-out on unwind.

    Used as a context manager the stack unwinds on exit unless it was
    cancelled first.
    """

    def __init__(self) -> None:
        self._actions: list[Action] = []

    def __len__(self) -> int:
        return len(self._actions)

    def __enter__(self) -> FStack:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unwind()

    def push_action(self, action: Action) -> None:
        self._actions.append(action)

    def cancel(self) -> None:
        """Forget every action without performing it."""
        self._actions.clear()
        log.info("FStack: stack cancelled, are we going well?")

    def unwind(self) -> None:
        """Perform and discard every action, most recent first."""
        while self._actions:
            self._actions.pop().perform()