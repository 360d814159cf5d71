import socket
import sys
import time
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from lib.dls_transport import (
    ConnectionFailed,
    TransportMode,
    bind_loopback,
    negotiate,
    negotiate_socket,
    negotiate_stdio,
    server_args,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX executables")


@pytest.fixture
def handles():
    handles_ = []

    yield handles_

    for handle in handles_:
        handle.close()
        handle.kill()


class TestTransportMode:
    def test_from_setting(self):
        assert TransportMode.from_setting("socket") == TransportMode.SOCKET
        assert TransportMode.from_setting("stdio") == TransportMode.STDIO
        assert TransportMode.from_setting(None) == TransportMode.STDIO
        assert TransportMode.from_setting("pipe") == TransportMode.STDIO


class TestServerArgs:
    def test_path_is_stripped(self):
        assert server_args("  /opt/dls/dls\n", "--stdio") == ["/opt/dls/dls", "--stdio"]


class TestStdio:
    def test_round_trip(self, monkeypatch, fake_dls, dls_argv, handles):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "echo")

        handle = negotiate(TransportMode.STDIO, f"{fake_dls}\n")
        handles.append(handle)

        payload = b"Content-Length: 2\r\n\r\n{}"

        handle.writer.write(payload)
        handle.writer.flush()

        assert handle.reader.read(len(payload)) == payload
        assert handle.mode == TransportMode.STDIO
        assert handle.port is None
        assert dls_argv() == ["--stdio"]

    def test_exit_right_after_start(self, monkeypatch, fake_dls):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "exit")

        with pytest.raises(ConnectionFailed, match="exited with code 3"):
            negotiate_stdio(fake_dls, grace=30)

    def test_missing_binary(self, tmp_path):
        with pytest.raises(ConnectionFailed, match="Failed to start"):
            negotiate(TransportMode.STDIO, tmp_path / "missing")


class TestSocket:
    def test_round_trip(self, monkeypatch, fake_dls, dls_argv, handles):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "echo")

        handle = negotiate(TransportMode.SOCKET, fake_dls, timeout=30)
        handles.append(handle)

        handle.writer.write(b"ping")
        handle.writer.flush()

        assert handle.reader.read(4) == b"ping"
        assert handle.mode == TransportMode.SOCKET
        assert dls_argv() == [f"--socket={handle.port}"]

    def test_no_delay(self, monkeypatch, fake_dls, handles):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "echo")

        handle = negotiate_socket(fake_dls, timeout=30)
        handles.append(handle)

        assert handle.socket.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0

    def test_listener_is_closed_after_accept(self, monkeypatch, fake_dls, handles):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "echo")

        handle = negotiate_socket(fake_dls, timeout=30)
        handles.append(handle)

        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", handle.port), timeout=5)

    def test_exit_before_connect(self, monkeypatch, fake_dls):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "exit")

        started = time.monotonic()

        with pytest.raises(ConnectionFailed, match="exited with code 3"):
            negotiate_socket(fake_dls, timeout=30)

        assert time.monotonic() - started < 30

    def test_timeout(self, monkeypatch, fake_dls):
        monkeypatch.setenv("FAKE_DLS_BEHAVIOR", "hang")

        with pytest.raises(ConnectionFailed, match="didn't connect"):
            negotiate_socket(fake_dls, timeout=0.5)

    def test_missing_binary(self, tmp_path):
        with pytest.raises(ConnectionFailed, match="Failed to start"):
            negotiate(TransportMode.SOCKET, tmp_path / "missing")


class TestBindLoopback:
    def test_distinct_ephemeral_ports(self):
        a = bind_loopback()
        b = bind_loopback()

        try:
            host_a, port_a = a.getsockname()
            host_b, port_b = b.getsockname()

            assert host_a == host_b == "127.0.0.1"
            assert port_a != 0
            assert port_b != 0
            assert port_a != port_b
        finally:
            a.close()
            b.close()
