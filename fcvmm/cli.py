"""Boot a microVM with bare ``firecracker``, run it briefly and stop it."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
import time
from typing import Any, Optional, Sequence

from .errors import FirecrackerError
from .firecracker import FirecrackerOption

DEFAULT_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"


def parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fcvmm", description="Boot, pause, resume and stop a microVM."
    )
    parser.add_argument("--firecracker", default="/usr/bin/firecracker",
                        help="path to the firecracker binary")
    parser.add_argument("--api-sock", default="/tmp/firecracker.socket",
                        help="where to place the API socket")
    parser.add_argument("--kernel", required=True, help="path to the kernel image")
    parser.add_argument("--rootfs", required=True, help="path to the root filesystem")
    parser.add_argument("--id", default="test-instance", help="microVM identifier")
    parser.add_argument("--boot-args", default=DEFAULT_BOOT_ARGS,
                        help="kernel command line")
    parser.add_argument("--mem-size-mib", type=int, default=1024)
    parser.add_argument("--vcpu-count", type=int, default=1)
    parser.add_argument("--run-seconds", type=float, default=3.0,
                        help="how long the guest runs before and after the pause")
    parser.add_argument("--pause-seconds", type=float, default=1.0,
                        help="how long the guest stays paused")
    parser.add_argument("--async", dest="use_async", action="store_true",
                        help="drive the instance with asyncio")
    return parser.parse_args(argv)


def _option(args: argparse.Namespace) -> FirecrackerOption:
    return FirecrackerOption(args.firecracker, api_sock=args.api_sock, id=args.id)


def _machine_configuration(args: argparse.Namespace) -> dict[str, Any]:
    return {"mem_size_mib": args.mem_size_mib, "vcpu_count": args.vcpu_count}


def _boot_source(args: argparse.Namespace) -> dict[str, Any]:
    return {"boot_args": args.boot_args, "kernel_image_path": args.kernel}


def _root_drive(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "drive_id": "rootfs",
        "is_root_device": True,
        "is_read_only": False,
        "path_on_host": args.rootfs,
    }


def _remove_socket(args: argparse.Namespace) -> None:
    with contextlib.suppress(FileNotFoundError):
        FirecrackerOption(args.firecracker, api_sock=args.api_sock).socket_on_host.unlink()


def run(args: argparse.Namespace) -> None:
    """Run the microVM through the blocking API."""
    with _option(args).build() as instance:
        instance.start_vmm()
        print(instance.get_firecracker_version())
        instance.put_machine_configuration(_machine_configuration(args))
        instance.put_guest_boot_source(_boot_source(args))
        instance.put_guest_drive_by_id(_root_drive(args))

        instance.start()
        time.sleep(args.run_seconds)
        instance.pause()
        time.sleep(args.pause_seconds)
        instance.resume()
        time.sleep(args.run_seconds)
        instance.stop()
    _remove_socket(args)


async def run_async(args: argparse.Namespace) -> None:
    """Run the microVM through the asyncio API."""
    async with _option(args).build_async() as instance:
        await instance.start_vmm()
        print(await instance.get_firecracker_version())
        await instance.put_machine_configuration(_machine_configuration(args))
        await instance.put_guest_boot_source(_boot_source(args))
        await instance.put_guest_drive_by_id(_root_drive(args))

        await instance.start()
        await asyncio.sleep(args.run_seconds)
        await instance.pause()
        await asyncio.sleep(args.pause_seconds)
        await instance.resume()
        await asyncio.sleep(args.run_seconds)
        await instance.stop()
    _remove_socket(args)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        if args.use_async:
            asyncio.run(run_async(args))
        else:
            run(args)
    except (FirecrackerError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())