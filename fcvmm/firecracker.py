"""Options for launching a bare ``firecracker`` process."""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional, Union

from .async_instance import AsyncInstance
from .errors import ConfigurationError
from .instance import Instance

PathLike = Union[str, "os.PathLike[str]"]

DEFAULT_API_SOCK = "/run/firecracker.socket"
DEFAULT_HTTP_API_MAX_PAYLOAD_SIZE = 51200
DEFAULT_ID = "anonymous-instance"


def _count(name: str, value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"`{name}` must be a non-negative integer, got {value!r}")
    return str(value)


@dataclass
class FirecrackerOption:
    """Command-line options of ``firecracker`` and where its standard streams go.

    Fields left as ``None`` or ``False`` are not passed, so ``firecracker``
    applies its own defaults.
    """

    firecracker_bin: PathLike
    api_sock: Optional[PathLike] = None
    boot_timer: bool = False
    config_file: Optional[PathLike] = None
    http_api_max_payload_size: Optional[int] = None
    id: Optional[str] = None
    level: Optional[str] = None
    log_path: Optional[PathLike] = None
    metadata: Optional[PathLike] = None
    metrics_path: Optional[PathLike] = None
    mmds_size_limit: Optional[int] = None
    module: Optional[str] = None
    no_api: bool = False
    no_seccomp: bool = False
    parent_cpu_time_us: Optional[int] = None
    seccomp_filter: Optional[PathLike] = None
    show_level: bool = False
    show_log_origin: bool = False
    start_time_cpu_us: Optional[int] = None
    start_time_us: Optional[int] = None
    stdin: Optional[PathLike] = None
    stdout: Optional[PathLike] = None
    stderr: Optional[PathLike] = None

    @property
    def socket_on_host(self) -> Path:
        """The API socket path, the default one when none is set."""
        return Path(self.api_sock if self.api_sock is not None else DEFAULT_API_SOCK)

    def exec_file_name(self) -> Path:
        """Return the file name of the ``firecracker`` binary."""
        name = Path(self.firecracker_bin).name
        if name in ("", ".", ".."):
            raise ConfigurationError("jailer `exec_file` ends with `..`")
        return Path(name)

    def build_cmd(self) -> list[str]:
        """Return the argument vector that starts ``firecracker``."""
        cmd = [os.fspath(self.firecracker_bin), "--api-sock", os.fspath(self.socket_on_host)]

        def path_arg(flag: str, value: Optional[PathLike]) -> None:
            if value is not None:
                cmd.extend((flag, os.fspath(value)))

        def count_arg(flag: str, name: str, value: Optional[int]) -> None:
            if value is not None:
                cmd.extend((flag, _count(name, value)))

        if self.boot_timer:
            cmd.append("--boot-timer")
        path_arg("--config-file", self.config_file)
        count_arg(
            "--http-api-max-payload-size",
            "http_api_max_payload_size",
            self.http_api_max_payload_size,
        )
        path_arg("--id", self.id)
        path_arg("--level", self.level)
        path_arg("--log-path", self.log_path)
        path_arg("--metadata", self.metadata)
        path_arg("--metrics-path", self.metrics_path)
        count_arg("--mmds-size-limit", "mmds_size_limit", self.mmds_size_limit)
        path_arg("--module", self.module)
        if self.no_api:
            cmd.append("--no-api")
        if self.no_seccomp:
            cmd.append("--no-seccomp")
        count_arg("--parent-cpu-time-us", "parent_cpu_time_us", self.parent_cpu_time_us)
        path_arg("--seccomp-filter", self.seccomp_filter)
        if self.show_level:
            cmd.append("--show-level")
        if self.show_log_origin:
            cmd.append("--show-log-origin")
        count_arg("--start-time-cpu-us", "start_time_cpu_us", self.start_time_cpu_us)
        count_arg("--start-time-us", "start_time_us", self.start_time_us)
        return cmd

    def _open_streams(self) -> dict[str, Optional[IO[bytes]]]:
        def open_for_writing(path: PathLike) -> IO[bytes]:
            # Created when missing, never truncated.
            fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o666)
            return os.fdopen(fd, "wb")

        with contextlib.ExitStack() as stack:
            streams: dict[str, Optional[IO[bytes]]] = {
                "stdin": None,
                "stdout": None,
                "stderr": None,
            }
            if self.stdin is not None:
                streams["stdin"] = stack.enter_context(open(self.stdin, "rb"))
            if self.stdout is not None:
                streams["stdout"] = stack.enter_context(open_for_writing(self.stdout))
            if self.stderr is not None:
                streams["stderr"] = stack.enter_context(open_for_writing(self.stderr))
            stack.pop_all()
        return streams

    def build(self) -> Instance:
        """Return a blocking :class:`Instance` ready for ``start_vmm``."""
        command = self.build_cmd()
        exec_file_name = self.exec_file_name()
        return Instance(
            self.socket_on_host, command, exec_file_name, **self._open_streams()
        )

    def build_async(self) -> AsyncInstance:
        """Return an :class:`AsyncInstance` ready for ``start_vmm``."""
        command = self.build_cmd()
        exec_file_name = self.exec_file_name()
        return AsyncInstance(
            self.socket_on_host, command, exec_file_name, **self._open_streams()
        )