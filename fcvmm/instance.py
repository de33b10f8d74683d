"""A microVM process and the blocking API calls made to it."""

from __future__ import annotations

import logging
import os
import subprocess
from enum import Enum
from pathlib import Path
from typing import IO, Any, Mapping, Optional, Sequence, Union

from . import events
from .agent import SocketAgent
from .errors import InstanceError
from .events import Event
from .fstack import FStack, RemoveDirectory, RemoveFile, TerminateProcess

log = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]
Stream = Optional[Union[int, IO[Any]]]

CONNECT_TIMEOUT = 3.0
_REAP_TIMEOUT = 1.0
_STRIP_ERROR = (
    "Fail to strip prefix `jailer_workspace_dir`, the chroot strategy should "
    "always link the file under `jailer_workspace_dir`!"
)


class ChrootStrategy(Enum):
    """Where a host file is hard-linked inside the jailer workspace.

    ``NAIVE_LINK`` puts the file directly under the workspace by its name;
    ``FULL_LINK`` keeps its whole host path below the workspace.
    """

    NAIVE_LINK = "naive"
    FULL_LINK = "full"

    def chroot_path(self, root: PathLike, path: PathLike) -> Path:
        """Return where ``path`` lives inside the workspace ``root``."""
        root, path = Path(root), Path(path)
        if self is ChrootStrategy.NAIVE_LINK:
            if path.name in ("", ".", ".."):
                raise InstanceError(
                    f"Cannot place `{path}` in the jail: it has no file name"
                )
            return root / path.name
        if path.is_absolute():
            return root / path.relative_to(path.anchor)
        return root / path

    def perform_link(self, src: PathLike, dst: PathLike) -> None:
        """Hard-link ``src`` at ``dst``, creating the parents of ``dst``."""
        dst = Path(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        os.link(src, dst)

    def link_file(self, root: PathLike, path: PathLike) -> Path:
        """Hard-link the host file ``path`` into ``root``; return the link."""
        target = self.chroot_path(root, path)
        if target.exists() and os.path.samefile(target, path):
            return target
        self.perform_link(path, target)
        return target


class Instance:
    """A ``firecracker`` (or ``jailer``) process driven through its API socket.

    Use it as a context manager, or call :meth:`close`, to undo what
    :meth:`start_vmm` set up.
    """

    def __init__(
        self,
        socket_on_host: PathLike,
        command: Sequence[PathLike],
        exec_file_name: PathLike,
        *,
        jailer_workspace_dir: Optional[PathLike] = None,
        chroot_strategy: Optional[ChrootStrategy] = None,
        remove_jailer_workspace_dir: Optional[bool] = None,
        stdin: Stream = None,
        stdout: Stream = None,
        stderr: Stream = None,
    ) -> None:
        self._socket_on_host = Path(socket_on_host)
        self._command = [os.fspath(part) for part in command]
        self._exec_file_name = Path(exec_file_name)
        self._jailer_workspace_dir = (
            Path(jailer_workspace_dir) if jailer_workspace_dir is not None else None
        )
        self._chroot_strategy = chroot_strategy
        self._remove_jailer_workspace_dir = remove_jailer_workspace_dir
        self._streams = {"stdin": stdin, "stdout": stdout, "stderr": stderr}
        self._child: Optional[subprocess.Popen] = None
        self._agent: Optional[SocketAgent] = None
        self._fstack = FStack()
        self._jailer_pid: Optional[int] = None
        self._firecracker_pid: Optional[int] = None

    def __enter__(self) -> Instance:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def socket_on_host(self) -> Path:
        return self._socket_on_host

    @property
    def jailer_workspace_dir(self) -> Optional[Path]:
        """The jailer's chroot directory; ``None`` for bare ``firecracker``."""
        return self._jailer_workspace_dir

    @property
    def remove_jailer_workspace_dir(self) -> Optional[bool]:
        """Whether closing removes the jailer workspace; ``None`` without jailer."""
        return self._remove_jailer_workspace_dir

    @property
    def firecracker_pid(self) -> Optional[int]:
        return self._firecracker_pid

    @property
    def jailer_pid(self) -> Optional[int]:
        """PID of the jailer, which usually has exited by the time it is read."""
        return self._jailer_pid

    def jailed_link(self, path: PathLike) -> Path:
        """Return the hard link inside the jailer workspace that mirrors ``path``."""
        strategy, root = self._jail_or_raise()
        return strategy.chroot_path(root, path)

    def _jail(self) -> Optional[tuple[ChrootStrategy, Path]]:
        if self._chroot_strategy is None or self._jailer_workspace_dir is None:
            return None
        return self._chroot_strategy, self._jailer_workspace_dir

    def _jail_or_raise(self) -> tuple[ChrootStrategy, Path]:
        jail = self._jail()
        if jail is None:
            raise InstanceError("Not using jailer")
        return jail

    @staticmethod
    def _link_into(jail: tuple[ChrootStrategy, Path], path: PathLike) -> str:
        strategy, root = jail
        linked = strategy.link_file(root, path)
        try:
            return os.fspath(linked.relative_to(root))
        except ValueError:
            raise InstanceError(_STRIP_ERROR) from None

    def _agent_or_raise(self) -> SocketAgent:
        if self._agent is None:
            raise InstanceError("No agent spawned")
        return self._agent

    def _call(self, operation: events.Operation, payload: Any = None) -> Any:
        agent = self._agent_or_raise()
        return agent.event(operation.event(payload))

    def start_vmm(self) -> None:
        """Spawn the process and connect to its API socket."""
        child = subprocess.Popen(self._command, **self._streams)
        self._child = child
        pid = child.pid

        if self._remove_jailer_workspace_dir and self._jailer_workspace_dir is not None:
            self._fstack.push_action(RemoveDirectory(self._jailer_workspace_dir))

        log.info("start_vmm connecting to %s", self._socket_on_host)
        self._agent = SocketAgent.connect(self._socket_on_host, CONNECT_TIMEOUT)
        self._fstack.push_action(RemoveFile(self._socket_on_host))

        if self._jailer_workspace_dir is not None:
            pid_file = self._jailer_workspace_dir / f"{self._exec_file_name}.pid"
            try:
                firecracker_pid = int(pid_file.read_text().strip())
            except (OSError, ValueError) as exc:
                raise InstanceError(f"Bad pid file {pid_file}: {exc}") from exc
            self._jailer_pid = pid
            self._firecracker_pid = firecracker_pid
        else:
            self._jailer_pid = None
            self._firecracker_pid = pid
        self._fstack.push_action(TerminateProcess(self._firecracker_pid))

    def close(self) -> None:
        """Disconnect, then terminate the process and remove what was created."""
        if self._agent is not None:
            self._agent.close()
            self._agent = None
        self._fstack.unwind()
        if self._child is not None:
            try:
                self._child.wait(timeout=_REAP_TIMEOUT)
            except subprocess.TimeoutExpired:
                pass

    def start(self) -> None:
        """Boot the guest."""
        self.create_sync_action("InstanceStart")

    def pause(self) -> None:
        self.patch_vm({"state": "Paused"})

    def resume(self) -> None:
        self.patch_vm({"state": "Resumed"})

    def stop(self) -> None:
        """Send Ctrl+Alt+Del to the guest."""
        self.create_sync_action("SendCtrlAltDel")

    def event(self, event: Event) -> Any:
        """Send a raw event; the other methods also handle jailer links."""
        return self._agent_or_raise().event(event)

    def describe_instance(self) -> Any:
        return self._call(events.DESCRIBE_INSTANCE)

    def create_sync_action(self, action_type: Any) -> None:
        return self._call(events.CREATE_SYNC_ACTION, {"action_type": action_type})

    def describe_balloon_config(self) -> Any:
        return self._call(events.DESCRIBE_BALLOON_CONFIG)

    def put_balloon(self, balloon: Mapping[str, Any]) -> None:
        return self._call(events.PUT_BALLOON, balloon)

    def patch_balloon(self, balloon_update: Mapping[str, Any]) -> None:
        return self._call(events.PATCH_BALLOON, balloon_update)

    def describe_balloon_stats(self) -> Any:
        return self._call(events.DESCRIBE_BALLOON_STATS)

    def patch_balloon_stats_interval(self, balloon_stats_update: Mapping[str, Any]) -> None:
        return self._call(events.PATCH_BALLOON_STATS_INTERVAL, balloon_stats_update)

    def put_guest_boot_source(self, boot_source: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None:
            boot_source = dict(boot_source)
            if boot_source.get("initrd_path") is not None:
                boot_source["initrd_path"] = self._link_into(jail, boot_source["initrd_path"])
            boot_source["kernel_image_path"] = self._link_into(
                jail, boot_source["kernel_image_path"]
            )
        return self._call(events.PUT_GUEST_BOOT_SOURCE, boot_source)

    def put_cpu_configuration(self, cpu_config: Mapping[str, Any]) -> None:
        return self._call(events.PUT_CPU_CONFIGURATION, cpu_config)

    def put_guest_drive_by_id(self, drive: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None:
            drive = {**drive, "path_on_host": self._link_into(jail, drive["path_on_host"])}
        return self._call(events.PUT_GUEST_DRIVE_BY_ID, drive)

    def patch_guest_drive_by_id(self, partial_drive: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None and partial_drive.get("path_on_host") is not None:
            partial_drive = {
                **partial_drive,
                "path_on_host": self._link_into(jail, partial_drive["path_on_host"]),
            }
        return self._call(events.PATCH_GUEST_DRIVE_BY_ID, partial_drive)

    def put_logger(self, logger: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None:
            logger = {**logger, "log_path": self._link_into(jail, logger["log_path"])}
        return self._call(events.PUT_LOGGER, logger)

    def get_machine_configuration(self) -> Any:
        return self._call(events.GET_MACHINE_CONFIGURATION)

    def put_machine_configuration(self, machine_configuration: Mapping[str, Any]) -> None:
        return self._call(events.PUT_MACHINE_CONFIGURATION, machine_configuration)

    def patch_machine_configuration(self, machine_configuration: Mapping[str, Any]) -> None:
        return self._call(events.PATCH_MACHINE_CONFIGURATION, machine_configuration)

    def put_metrics(self, metrics: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None:
            metrics = {
                **metrics,
                "metrics_path": self._link_into(jail, metrics["metrics_path"]),
            }
        return self._call(events.PUT_METRICS, metrics)

    def put_mmds(self, content: Any) -> None:
        return self._call(events.PUT_MMDS, content)

    def patch_mmds(self, content: Any) -> None:
        return self._call(events.PATCH_MMDS, content)

    def get_mmds(self) -> Any:
        return self._call(events.GET_MMDS)

    def put_mmds_config(self, mmds_config: Mapping[str, Any]) -> None:
        return self._call(events.PUT_MMDS_CONFIG, mmds_config)

    def put_entropy_device(self, entropy_device: Mapping[str, Any]) -> None:
        return self._call(events.PUT_ENTROPY_DEVICE, entropy_device)

    def put_guest_network_interface_by_id(self, network_interface: Mapping[str, Any]) -> None:
        return self._call(events.PUT_GUEST_NETWORK_INTERFACE_BY_ID, network_interface)

    def patch_guest_network_interface_by_id(
        self, partial_network_interface: Mapping[str, Any]
    ) -> None:
        return self._call(
            events.PATCH_GUEST_NETWORK_INTERFACE_BY_ID, partial_network_interface
        )

    def create_snapshot(self, snapshot_create_params: Mapping[str, Any]) -> None:
        """Create a snapshot; with jailer the files are linked back to the host paths."""
        agent = self._agent_or_raise()
        jail = self._jail()
        if jail is None:
            return agent.event(events.CREATE_SNAPSHOT.event(snapshot_create_params))

        strategy, root = jail
        mem_file_path = snapshot_create_params["mem_file_path"]
        snapshot_path = snapshot_create_params["snapshot_path"]
        chroot_mem_file_path = strategy.chroot_path(root, mem_file_path)
        chroot_snapshot_path = strategy.chroot_path(root, snapshot_path)
        params = {
            **snapshot_create_params,
            "mem_file_path": os.fspath(chroot_mem_file_path),
            "snapshot_path": os.fspath(chroot_snapshot_path),
        }
        try:
            return agent.event(events.CREATE_SNAPSHOT.event(params))
        finally:
            strategy.perform_link(chroot_mem_file_path, mem_file_path)
            strategy.perform_link(chroot_snapshot_path, snapshot_path)

    def load_snapshot(self, snapshot_load_params: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None:
            params = dict(snapshot_load_params)
            if params.get("mem_file_path") is not None:
                params["mem_file_path"] = self._link_into(jail, params["mem_file_path"])
            params["snapshot_path"] = self._link_into(jail, params["snapshot_path"])
            snapshot_load_params = params
        return self._call(events.LOAD_SNAPSHOT, snapshot_load_params)

    def get_firecracker_version(self) -> Any:
        return self._call(events.GET_FIRECRACKER_VERSION)

    def patch_vm(self, vm: Mapping[str, Any]) -> None:
        return self._call(events.PATCH_VM, vm)

    def get_export_vm_config(self) -> Any:
        return self._call(events.GET_EXPORT_VM_CONFIG)

    def put_guest_vsock(self, vsock: Mapping[str, Any]) -> None:
        self._agent_or_raise()
        jail = self._jail()
        if jail is not None:
            vsock = {**vsock, "uds_path": self._link_into(jail, vsock["uds_path"])}
        return self._call(events.PUT_GUEST_VSOCK, vsock)