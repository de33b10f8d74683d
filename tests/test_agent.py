import os
import shutil
import socket
import tempfile
import threading
import time

import pytest

from fcvmm.agent import MAX_BUFFER_SIZE, SocketAgent
from fcvmm.errors import AgentError, EventError
from fcvmm.events import GET_FIRECRACKER_VERSION

VERSION_BODY = b'{"firecracker_version":"1.7.0"}'
VERSION_RESPONSE = (
    b"HTTP/1.1 200 \r\n"
    b"Server: Firecracker API\r\n"
    b"Connection: keep-alive\r\n"
    b"Content-Type: application/json\r\n"
    + f"Content-Length: {len(VERSION_BODY)}\r\n\r\n".encode()
    + VERSION_BODY
)


@pytest.fixture
def sock_path():
    directory = tempfile.mkdtemp(prefix="fca")
    yield os.path.join(directory, "api.sock")
    shutil.rmtree(directory, ignore_errors=True)


def serve_once(path, reply, delay=0.0):
    received = []
    ready = threading.Event()

    def run():
        time.sleep(delay)
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        listener.bind(path)
        listener.listen(1)
        ready.set()
        conn, _ = listener.accept()
        with conn:
            data = conn.recv(1024)
            received.append(data)
            if data:
                conn.sendall(reply(data))
        listener.close()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    if delay == 0.0:
        ready.wait(2)
    return thread, received


def test_echo(sock_path):
    data = b"Hello, world!"
    thread, received = serve_once(sock_path, lambda request: request)
    with SocketAgent.connect(sock_path, 3) as agent:
        agent.send_request(data)
        response = agent.recv_response()
    thread.join(2)
    assert response[: len(data)] == data
    assert received == [data]


def test_connect_waits_for_socket(sock_path):
    thread, _ = serve_once(sock_path, lambda request: request, delay=0.3)
    with SocketAgent.connect(sock_path, 3) as agent:
        agent.send_request(b"ping")
        assert agent.recv_response() == b"ping"
    thread.join(2)


def test_connect_times_out(sock_path):
    start = time.monotonic()
    with pytest.raises(AgentError, match="Connection timed out"):
        SocketAgent.connect(sock_path, 0.2)
    assert time.monotonic() - start >= 0.2


def test_get_firecracker_version(sock_path):
    thread, received = serve_once(sock_path, lambda request: VERSION_RESPONSE)
    with SocketAgent.connect(sock_path, 3) as agent:
        agent.send_request(b"GET /version HTTP/1.0\r\n\r\n")
        response = agent.recv_response()
    thread.join(2)
    assert GET_FIRECRACKER_VERSION.event().decode(response) == {
        "firecracker_version": "1.7.0"
    }


def test_get_firecracker_version_event(sock_path):
    thread, received = serve_once(sock_path, lambda request: VERSION_RESPONSE)
    with SocketAgent.connect(sock_path, 3) as agent:
        result = agent.event(GET_FIRECRACKER_VERSION.event())
    thread.join(2)
    assert result == {"firecracker_version": "1.7.0"}
    assert received == [b"GET /version HTTP/1.0\r\n\r\n"]


def test_event_error_status_raises(sock_path):
    body = b'{"fault_message":"bad request"}'
    reply = (
        b"HTTP/1.1 400 \r\nContent-Length: "
        + str(len(body)).encode()
        + b"\r\n\r\n"
        + body
    )
    thread, _ = serve_once(sock_path, lambda request: reply)
    with SocketAgent.connect(sock_path, 3) as agent:
        with pytest.raises(EventError, match="bad request"):
            agent.event(GET_FIRECRACKER_VERSION.event())
    thread.join(2)


@pytest.mark.parametrize("size", [MAX_BUFFER_SIZE * 2, MAX_BUFFER_SIZE * 3 + 8])
def test_reads_several_chunks(sock_path, size):
    payload = bytes(range(256))[:size] if size <= 256 else b"x" * size
    thread, _ = serve_once(sock_path, lambda request: payload)
    with SocketAgent.connect(sock_path, 3) as agent:
        agent.send_request(b"go")
        response = agent.recv_response()
    thread.join(2)
    assert response == payload


def test_closed_agent_refuses_requests(sock_path):
    thread, _ = serve_once(sock_path, lambda request: request)
    agent = SocketAgent.connect(sock_path, 3)
    agent.close()
    assert agent.closed is True
    with pytest.raises(AgentError, match="closed"):
        agent.send_request(b"data")
    thread.join(2)