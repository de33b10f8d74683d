"""HTTP/1.0 requests and responses of the microVM API socket."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .errors import EventError

HTTP_VERSION = "HTTP/1.0"
MAX_HEADERS = 64

GET = "GET"
PUT = "PUT"
PATCH = "PATCH"


@dataclass(frozen=True)
class _Head:
    status: int
    headers: dict[str, str]
    body_start: int


def _parse(response: bytes) -> _Head:
    end = response.find(b"\r\n\r\n")
    if end < 0:
        raise EventError("Incomplete response")
    status_line, *header_lines = response[:end].decode("latin-1").split("\r\n")

    parts = status_line.split(" ", 2)
    if (
        len(parts) < 2
        or not parts[0].startswith("HTTP/1.")
        or len(parts[1]) != 3
        or not (parts[1].isascii() and parts[1].isdigit())
    ):
        raise EventError("Bad HTTP response")
    if len(header_lines) > MAX_HEADERS:
        raise EventError("Bad HTTP response: too many headers")

    headers: dict[str, str] = {}
    for line in header_lines:
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise EventError("Bad HTTP response")
        headers[name.strip().lower()] = value.strip()
    return _Head(int(parts[1]), headers, end + 4)


def _fault(status: int, body: bytes) -> str:
    try:
        document = json.loads(body)
    except ValueError:
        document = None
    if isinstance(document, dict) and "fault_message" in document:
        detail = document["fault_message"]
    else:
        detail = body.decode("utf-8", "replace")
    return f"HTTP status {status}: {detail}"


def status_code(response: bytes) -> int:
    """Return the status code of a raw HTTP response."""
    return _parse(response).status


def decode_body(response: bytes, empty: bool) -> Any:
    """Return the JSON body of a raw HTTP response.

    ``empty`` says the operation answers without a payload; ``None`` is then
    returned. Error statuses raise :class:`EventError`.
    """
    head = _parse(response)
    length_text = head.headers.get("content-length")

    if length_text is None:
        if head.status >= 400:
            raise EventError(f"HTTP status {head.status}")
        if empty:
            return None
        raise EventError("Bad HTTP response")

    try:
        length = int(length_text)
    except ValueError:
        raise EventError(f"Bad Content-Length header: {length_text!r}") from None
    if length < 0:
        raise EventError(f"Bad Content-Length header: {length_text!r}")

    body = response[head.body_start : head.body_start + length]
    if len(body) < length:
        raise EventError("Incomplete response")
    if head.status >= 400:
        raise EventError(_fault(head.status, body))
    if empty:
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise EventError(f"JSON decode: {exc}") from exc


def _json_default(value: Any) -> Any:
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass(frozen=True)
class Event:
    """One request to the API socket and how to read its answer."""

    method: str
    path: str
    payload: Any = None
    response_empty: bool = False

    def encode(self) -> bytes:
        request_line = f"{self.method} {self.path} {HTTP_VERSION}\r\n"
        if self.payload is None:
            return (request_line + "\r\n").encode()
        try:
            body = json.dumps(
                self.payload, separators=(",", ":"), default=_json_default
            ).encode()
        except (TypeError, ValueError) as exc:
            raise EventError(f"JSON encode: {exc}") from exc
        head = f"{request_line}Content-Length: {len(body)}\r\n\r\n"
        return head.encode() + body

    def decode(self, response: bytes) -> Any:
        return decode_body(response, self.response_empty)


@dataclass(frozen=True)
class Operation:
    """An endpoint of the API, named by its operation id."""

    name: str
    method: str
    path: str
    request_empty: bool = False
    response_empty: bool = False
    id_field: Optional[str] = None

    def event(self, payload: Any = None) -> Event:
        if self.request_empty:
            if payload is not None:
                raise EventError(f"{self.name} takes no payload")
        elif payload is None:
            raise EventError(f"{self.name} needs a payload")

        path = self.path
        if self.id_field is not None:
            try:
                identifier = payload[self.id_field]
            except (KeyError, TypeError):
                raise EventError(
                    f"{self.name} payload lacks `{self.id_field}`"
                ) from None
            path = f"{path}/{identifier}"
        return Event(self.method, path, payload, self.response_empty)


DESCRIBE_INSTANCE = Operation("describeInstance", GET, "/", request_empty=True)
CREATE_SYNC_ACTION = Operation(
    "createSyncAction", PUT, "/actions", response_empty=True
)
DESCRIBE_BALLOON_CONFIG = Operation(
    "describeBalloonConfig", GET, "/balloon", request_empty=True
)
PUT_BALLOON = Operation("putBalloon", PUT, "/balloon", response_empty=True)
PATCH_BALLOON = Operation("patchBalloon", PATCH, "/balloon", response_empty=True)
DESCRIBE_BALLOON_STATS = Operation(
    "describeBalloonStats", GET, "/balloon/statistics", request_empty=True
)
PATCH_BALLOON_STATS_INTERVAL = Operation(
    "patchBalloonStatsInterval", PATCH, "/balloon/statistics", response_empty=True
)
PUT_GUEST_BOOT_SOURCE = Operation(
    "putGuestBootSource", PUT, "/boot-source", response_empty=True
)
PUT_CPU_CONFIGURATION = Operation(
    "putCpuConfiguration", PUT, "/cpu-config", response_empty=True
)
PUT_GUEST_DRIVE_BY_ID = Operation(
    "putGuestDriveByID", PUT, "/drives", response_empty=True, id_field="drive_id"
)
PATCH_GUEST_DRIVE_BY_ID = Operation(
    "patchGuestDriveByID", PATCH, "/drives", response_empty=True, id_field="drive_id"
)
PUT_LOGGER = Operation("putLogger", PUT, "/logger", response_empty=True)
GET_MACHINE_CONFIGURATION = Operation(
    "getMachineConfiguration", GET, "/machine-config", request_empty=True
)
PUT_MACHINE_CONFIGURATION = Operation(
    "putMachineConfiguration", PUT, "/machine-config", response_empty=True
)
PATCH_MACHINE_CONFIGURATION = Operation(
    "patchMachineConfiguration", PATCH, "/machine-config", response_empty=True
)
PUT_METRICS = Operation("putMetrics", PUT, "/metrics", response_empty=True)
PUT_MMDS = Operation("putMmds", PUT, "/mmds", response_empty=True)
PATCH_MMDS = Operation("patchMmds", PATCH, "/mmds", response_empty=True)
GET_MMDS = Operation("getMmds", GET, "/mmds", request_empty=True)
PUT_MMDS_CONFIG = Operation("putMmdsConfig", PUT, "/mmds/config", response_empty=True)
PUT_ENTROPY_DEVICE = Operation(
    "putEntropyDevice", PUT, "/entropy", response_empty=True
)
PUT_GUEST_NETWORK_INTERFACE_BY_ID = Operation(
    "putGuestNetworkInterfaceByID",
    PUT,
    "/network-interfaces",
    response_empty=True,
    id_field="iface_id",
)
PATCH_GUEST_NETWORK_INTERFACE_BY_ID = Operation(
    "patchGuestNetworkInterfaceByID",
    PATCH,
    "/network-interfaces",
    response_empty=True,
    id_field="iface_id",
)
CREATE_SNAPSHOT = Operation(
    "createSnapshot", PUT, "/snapshot/create", response_empty=True
)
LOAD_SNAPSHOT = Operation("loadSnapshot", PUT, "/snapshot/load", response_empty=True)
GET_FIRECRACKER_VERSION = Operation(
    "getFirecrackerVersion", GET, "/version", request_empty=True
)
PATCH_VM = Operation("patchVm", PATCH, "/vm", response_empty=True)
GET_EXPORT_VM_CONFIG = Operation(
    "getExportVmConfig", GET, "/vm/config", request_empty=True
)
PUT_GUEST_VSOCK = Operation("putGuestVsock", PUT, "/vsock", response_empty=True)

OPERATIONS: dict[str, Operation] = {
    op.name: op
    for op in (
        DESCRIBE_INSTANCE,
        CREATE_SYNC_ACTION,
        DESCRIBE_BALLOON_CONFIG,
        PUT_BALLOON,
        PATCH_BALLOON,
        DESCRIBE_BALLOON_STATS,
        PATCH_BALLOON_STATS_INTERVAL,
        PUT_GUEST_BOOT_SOURCE,
        PUT_CPU_CONFIGURATION,
        PUT_GUEST_DRIVE_BY_ID,
        PATCH_GUEST_DRIVE_BY_ID,
        PUT_LOGGER,
        GET_MACHINE_CONFIGURATION,
        PUT_MACHINE_CONFIGURATION,
        PATCH_MACHINE_CONFIGURATION,
        PUT_METRICS,
        PUT_MMDS,
        PATCH_MMDS,
        GET_MMDS,
        PUT_MMDS_CONFIG,
        PUT_ENTROPY_DEVICE,
        PUT_GUEST_NETWORK_INTERFACE_BY_ID,
        PATCH_GUEST_NETWORK_INTERFACE_BY_ID,
        CREATE_SNAPSHOT,
        LOAD_SNAPSHOT,
        GET_FIRECRACKER_VERSION,
        PATCH_VM,
        GET_EXPORT_VM_CONFIG,
        PUT_GUEST_VSOCK,
    )
}