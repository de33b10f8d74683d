# fcvmm

`fcvmm` starts a Firecracker microVM process and controls it through the
HTTP API that Firecracker serves on a Unix domain socket. The same operations
are available as a blocking API (`fcvmm.instance.Instance`) and as an asyncio
API (`fcvmm.async_instance.AsyncInstance`). It uses only the standard library.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Library use

`fcvmm.firecracker.FirecrackerOption` is a dataclass holding the command-line
options of `firecracker` and the files its standard streams go to. Fields left
as `None` or `False` are not passed on the command line. `build()` returns an
`Instance`; `build_async()` returns an `AsyncInstance`. If no `api_sock` is set,
`/run/firecracker.socket` is used.

```python
from fcvmm.firecracker import FirecrackerOption

option = FirecrackerOption("/usr/bin/firecracker",
                           api_sock="/tmp/firecracker.socket",
                           id="test-instance")

with option.build() as instance:
    instance.start_vmm()                  # spawn firecracker, connect to its socket
    print(instance.get_firecracker_version())
    instance.put_machine_configuration({"mem_size_mib": 1024, "vcpu_count": 1})
    instance.put_guest_boot_source({"kernel_image_path": "/path/to/vmlinux.bin"})
    instance.put_guest_drive_by_id({
        "drive_id": "rootfs",
        "is_root_device": True,
        "is_read_only": False,
        "path_on_host": "/path/to/rootfs.ext4",
    })
    instance.start()
    instance.pause()
    instance.resume()
    instance.stop()
# leaving the block calls close(): terminate the process, remove the socket
```

The asyncio form is the same with `build_async()`, `async with` and `await`
in front of each call.

`FirecrackerOption.build_cmd()` returns the exact argument list without
starting anything. `stdout` and `stderr` files are created if missing and are
not truncated.

Request payloads are plain dicts (or other JSON-serialisable values); paths and
enum members in them are written as strings. Answers come back as the decoded
JSON, or `None` for operations that answer without a body. Every API operation
has a method:

- `describe_instance`, `get_firecracker_version`, `get_export_vm_config`
- `create_sync_action`, `patch_vm` (and the helpers `start`, `pause`, `resume`, `stop`)
- `put_machine_configuration`, `patch_machine_configuration`, `get_machine_configuration`
- `put_guest_boot_source`, `put_cpu_configuration`
- `put_guest_drive_by_id`, `patch_guest_drive_by_id`
- `put_guest_network_interface_by_id`, `patch_guest_network_interface_by_id`
- `put_balloon`, `patch_balloon`, `describe_balloon_config`,
  `describe_balloon_stats`, `patch_balloon_stats_interval`
- `put_logger`, `put_metrics`, `put_entropy_device`, `put_guest_vsock`
- `put_mmds`, `patch_mmds`, `get_mmds`, `put_mmds_config`
- `create_snapshot`, `load_snapshot`

`event()` sends any `fcvmm.events.Event` directly. The endpoint table is
`fcvmm.events.OPERATIONS`, keyed by operation id.

### Running inside a jailer workspace

`Instance` and `AsyncInstance` can also be constructed directly with a command,
a `jailer_workspace_dir` and a `fcvmm.instance.ChrootStrategy`
(`NAIVE_LINK` places a file in the workspace by its name, `FULL_LINK` keeps its
whole host path below the workspace). The methods that take host file paths then
hard-link those files into the workspace and send the path relative to it;
`create_snapshot` links the snapshot files back to the host paths afterwards.
`jailed_link(path)` returns where a host file appears in the workspace. The
firecracker PID is read from `<workspace>/<exec file name>.pid`. With
`remove_jailer_workspace_dir=True`, closing removes the workspace.

### Clean-up and errors

Clean-up actions are kept on an `fcvmm.fstack.FStack` and run last-in,
first-out when the instance is closed: terminate the VMM process, remove the
API socket, and remove the jailer workspace if asked.

Failures raise subclasses of `fcvmm.errors.FirecrackerError`:
`ConfigurationError`, `AgentError` (socket connection or reads, including a
3-second connect timeout), `EventError` (encoding, malformed responses and HTTP
error statuses) and `InstanceError` (calls before `start_vmm`, jailer misuse).

## Command line

The `fcvmm` command boots a VM with a kernel and a root drive, starts it,
pauses it, resumes it and stops it.

```
fcvmm --kernel /path/to/vmlinux.bin --rootfs /path/to/rootfs.ext4
fcvmm --help
```

Options include `--firecracker`, `--api-sock`, `--id`, `--boot-args`,
`--mem-size-mib`, `--vcpu-count`, `--run-seconds`, `--pause-seconds`, and
`--async` to drive the VM through asyncio. It exits with status 1 and prints the
error on failure.

## What it does not do

There is no builder for `jailer` command lines: to run under the jailer you
assemble the command and workspace yourself and pass them to `Instance` or
`AsyncInstance`. Payloads are not checked against typed models; Firecracker
validates them and its error is raised as `EventError`.