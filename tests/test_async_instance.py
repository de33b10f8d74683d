import asyncio
import contextlib
import json
import os
import signal
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from fcvmm.async_instance import AsyncInstance
from fcvmm.errors import EventError, InstanceError
from fcvmm.events import GET_FIRECRACKER_VERSION
from fcvmm.instance import ChrootStrategy

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]
QUICK = [sys.executable, "-c", "pass"]


class FakeApi:
    """A tiny HTTP/1.0 API server recording every request it gets."""

    def __init__(self):
        self.requests = []
        self.replies = {}
        self.on_request = None

    async def handle(self, reader, writer):
        try:
            while True:
                head = await reader.readuntil(b"\r\n\r\n")
                lines = head.decode().split("\r\n")
                method, path, _ = lines[0].split(" ")
                length = 0
                for line in lines[1:]:
                    name, _, value = line.partition(":")
                    if name.strip().lower() == "content-length":
                        length = int(value)
                body = await reader.readexactly(length) if length else b""
                payload = json.loads(body) if body else None
                self.requests.append((method, path, payload))
                if self.on_request is not None:
                    self.on_request(method, path, payload)
                status, document = self.replies.get((method, path), (204, None))
                if document is None:
                    response = f"HTTP/1.1 {status} \r\n\r\n".encode()
                else:
                    data = json.dumps(document).encode()
                    response = (
                        f"HTTP/1.1 {status} \r\nContent-Length: {len(data)}\r\n\r\n".encode()
                        + data
                    )
                writer.write(response)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@contextlib.asynccontextmanager
async def serving(api, path):
    server = await asyncio.start_unix_server(api.handle, path=os.fspath(path))
    try:
        yield
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture
def workdir():
    with tempfile.TemporaryDirectory(prefix="fc") as name:
        yield Path(name)


def _host_file(workdir, name, content=b"data"):
    host = workdir / "host" / name
    host.parent.mkdir(parents=True, exist_ok=True)
    host.write_bytes(content)
    return host


@pytest.mark.asyncio
async def test_calls_without_agent_raise():
    instance = AsyncInstance("/nonexistent.sock", QUICK, "firecracker")
    with pytest.raises(InstanceError, match="No agent spawned"):
        await instance.get_firecracker_version()
    with pytest.raises(InstanceError, match="No agent spawned"):
        await instance.put_guest_drive_by_id({"drive_id": "rootfs", "path_on_host": "/x"})


def test_jailed_link_without_jailer_raises():
    instance = AsyncInstance("/nonexistent.sock", QUICK, "firecracker")
    with pytest.raises(InstanceError, match="Not using jailer"):
        instance.jailed_link("/demo/foo/bar.txt")


def test_jailed_link_naive_and_full():
    root = Path("/srv/jailer/firecracker/test-instance/root")
    naive = AsyncInstance(
        "/x.sock", QUICK, "firecracker",
        jailer_workspace_dir=root, chroot_strategy=ChrootStrategy.NAIVE_LINK,
    )
    full = AsyncInstance(
        "/x.sock", QUICK, "firecracker",
        jailer_workspace_dir=root, chroot_strategy=ChrootStrategy.FULL_LINK,
    )
    assert naive.jailed_link("/demo/foo/bar.txt") == root / "bar.txt"
    assert full.jailed_link("/demo/foo/bar.txt") == root / "demo/foo/bar.txt"


@pytest.mark.asyncio
async def test_bare_firecracker_lifecycle(workdir):
    sock = workdir / "api.sock"
    api = FakeApi()
    api.replies[("GET", "/version")] = (200, {"firecracker_version": "1.7.0"})
    async with serving(api, sock):
        instance = AsyncInstance(sock, SLEEPER, "firecracker")
        await instance.start_vmm()
        pid = instance.firecracker_pid
        assert instance.jailer_pid is None
        assert pid is not None

        version = await instance.get_firecracker_version()
        assert version == {"firecracker_version": "1.7.0"}

        await instance.start()
        await instance.pause()
        await instance.resume()
        await instance.stop()
        await instance.close()

    assert api.requests[1:] == [
        ("PUT", "/actions", {"action_type": "InstanceStart"}),
        ("PATCH", "/vm", {"state": "Paused"}),
        ("PATCH", "/vm", {"state": "Resumed"}),
        ("PUT", "/actions", {"action_type": "SendCtrlAltDel"}),
    ]
    assert not sock.exists()
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_raw_event_and_error_status(workdir):
    sock = workdir / "api.sock"
    api = FakeApi()
    api.replies[("GET", "/version")] = (200, {"firecracker_version": "1.7.0"})
    api.replies[("PUT", "/machine-config")] = (400, {"fault_message": "bad config"})
    async with serving(api, sock):
        async with AsyncInstance(sock, SLEEPER, "firecracker") as instance:
            await instance.start_vmm()
            raw = await instance.event(GET_FIRECRACKER_VERSION.event())
            assert raw == {"firecracker_version": "1.7.0"}
            with pytest.raises(EventError, match="bad config"):
                await instance.put_machine_configuration(
                    {"vcpu_count": 1, "mem_size_mib": 1024}
                )


@pytest.mark.asyncio
async def test_drive_path_sent_unchanged_without_jailer(workdir):
    sock = workdir / "api.sock"
    api = FakeApi()
    drive = {"drive_id": "rootfs", "path_on_host": "/foo/bar/rootfs.ext4",
             "is_root_device": True, "is_read_only": False}
    async with serving(api, sock):
        async with AsyncInstance(sock, SLEEPER, "firecracker") as instance:
            await instance.start_vmm()
            result = await instance.put_guest_drive_by_id(drive)
    assert result is None
    assert api.requests == [("PUT", "/drives/rootfs", drive)]


@pytest.mark.asyncio
async def test_jailer_pids_and_workspace_removal(workdir):
    sock = workdir / "api.sock"
    workspace = workdir / "jail" / "root"
    workspace.mkdir(parents=True)
    helper = subprocess.Popen(SLEEPER)
    (workspace / "firecracker.pid").write_text(str(helper.pid))
    api = FakeApi()
    try:
        async with serving(api, sock):
            instance = AsyncInstance(
                sock, QUICK, "firecracker",
                jailer_workspace_dir=workspace,
                chroot_strategy=ChrootStrategy.NAIVE_LINK,
                remove_jailer_workspace_dir=True,
            )
            await instance.start_vmm()
            assert instance.firecracker_pid == helper.pid
            assert instance.jailer_pid is not None
            assert instance.jailer_pid != helper.pid
            await instance.close()
        assert helper.wait(timeout=5) == -signal.SIGTERM
        assert not workspace.exists()
        assert not sock.exists()
    finally:
        if helper.poll() is None:
            helper.kill()
            helper.wait()


async def _jailed(workdir, api, strategy):
    sock = workdir / "api.sock"
    workspace = workdir / "jail" / "root"
    workspace.mkdir(parents=True, exist_ok=True)
    helper = subprocess.Popen(SLEEPER)
    (workspace / "firecracker.pid").write_text(str(helper.pid))
    instance = AsyncInstance(
        sock, QUICK, "firecracker",
        jailer_workspace_dir=workspace, chroot_strategy=strategy,
    )
    return sock, workspace, helper, instance


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", [ChrootStrategy.NAIVE_LINK, ChrootStrategy.FULL_LINK])
async def test_drive_is_linked_into_jail(workdir, strategy):
    host = _host_file(workdir, "rootfs.ext4")
    api = FakeApi()
    sock, workspace, helper, instance = await _jailed(workdir, api, strategy)
    async with serving(api, sock):
        async with instance:
            await instance.start_vmm()
            await instance.put_guest_drive_by_id(
                {"drive_id": "rootfs", "path_on_host": os.fspath(host)}
            )
    helper.wait(timeout=5)
    method, path, body = api.requests[0]
    assert (method, path) == ("PUT", "/drives/rootfs")
    sent = body["path_on_host"]
    assert not Path(sent).is_absolute()
    assert (workspace / sent).samefile(host)
    if strategy is ChrootStrategy.NAIVE_LINK:
        assert sent == "rootfs.ext4"


@pytest.mark.asyncio
async def test_boot_source_links_kernel_and_keeps_missing_initrd(workdir):
    kernel = _host_file(workdir, "vmlinux.bin")
    api = FakeApi()
    sock, workspace, helper, instance = await _jailed(
        workdir, api, ChrootStrategy.NAIVE_LINK
    )
    async with serving(api, sock):
        async with instance:
            await instance.start_vmm()
            await instance.put_guest_boot_source(
                {"boot_args": "console=ttyS0", "initrd_path": None,
                 "kernel_image_path": os.fspath(kernel)}
            )
    helper.wait(timeout=5)
    body = api.requests[0][2]
    assert body["kernel_image_path"] == "vmlinux.bin"
    assert body["initrd_path"] is None
    assert body["boot_args"] == "console=ttyS0"
    assert (workspace / "vmlinux.bin").samefile(kernel)


@pytest.mark.asyncio
async def test_create_snapshot_links_files_back_to_host(workdir):
    api = FakeApi()
    sock, workspace, helper, instance = await _jailed(
        workdir, api, ChrootStrategy.NAIVE_LINK
    )

    def write_snapshot(method, path, payload):
        if path == "/snapshot/create":
            Path(payload["mem_file_path"]).write_bytes(b"memory")
            Path(payload["snapshot_path"]).write_bytes(b"state")

    api.on_request = write_snapshot
    mem_file = workdir / "out" / "mem"
    snapshot = workdir / "out" / "snap"
    async with serving(api, sock):
        async with instance:
            await instance.start_vmm()
            await instance.create_snapshot(
                {"mem_file_path": os.fspath(mem_file),
                 "snapshot_path": os.fspath(snapshot)}
            )
    helper.wait(timeout=5)
    body = api.requests[0][2]
    assert body["mem_file_path"] == os.fspath(workspace / "mem")
    assert body["snapshot_path"] == os.fspath(workspace / "snap")
    assert mem_file.read_bytes() == b"memory"
    assert snapshot.read_bytes() == b"state"


@pytest.mark.asyncio
async def test_patch_drive_without_path_is_sent_as_is(workdir):
    api = FakeApi()
    sock, workspace, helper, instance = await _jailed(
        workdir, api, ChrootStrategy.NAIVE_LINK
    )
    partial = {"drive_id": "scratch"}
    async with serving(api, sock):
        async with instance:
            await instance.start_vmm()
            await instance.patch_guest_drive_by_id(partial)
    helper.wait(timeout=5)
    assert api.requests == [("PATCH", "/drives/scratch", partial)]
    assert sorted(p.name for p in workspace.iterdir()) == ["firecracker.pid"]