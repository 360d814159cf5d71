import logging
import shlex
import socket
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import BinaryIO, List, Optional, Union, cast

from .dls_bootstrap import subprocess_kwargs

logger = logging.getLogger(__name__)


kLOOPBACK = "127.0.0.1"

# How long to wait for the server to connect back (socket) or to survive its start (stdio).
kCONNECT_TIMEOUT = 30.0
kSTDIO_GRACE = 0.2

# Accept is polled so a process exit is noticed before the timeout.
kACCEPT_POLL = 0.1


class TransportMode(Enum):
    STDIO = "stdio"
    SOCKET = "socket"

    @classmethod
    def from_setting(cls, value) -> "TransportMode":
        """
        'socket' selects a socket; Anything else is stdio.
        """
        return cls.SOCKET if value == cls.SOCKET.value else cls.STDIO


class ConnectionFailed(Exception):
    """
    The server process couldn't be started, exited, or didn't connect in time.
    """


class ServerHandle:
    """
    A running server process and its byte channel.

    `reader` and `writer` are binary file objects:
    the process' stdout and stdin, or the accepted connection.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        reader: BinaryIO,
        writer: BinaryIO,
        sock: Optional[socket.socket] = None,
        port: Optional[int] = None,
    ):
        self.process = process
        self.reader = reader
        self.writer = writer
        self.socket = sock
        self.port = port

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def mode(self) -> TransportMode:
        return TransportMode.STDIO if self.socket is None else TransportMode.SOCKET

    def close(self):
        """
        Closes the channel. The process is not terminated - see `kill`.
        """
        if self.socket is not None:
            for f in (self.reader, self.writer):
                try:
                    f.close()
                except OSError:
                    pass

            try:
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Not connected anymore.
                pass

            self.socket.close()

        elif self.process.stdin:
            try:
                self.process.stdin.close()
            except OSError:
                pass

    def kill(self):
        if self.process.poll() is None:
            self.process.kill()

        self.process.wait()

    def __repr__(self):
        return f"ServerHandle(pid={self.pid}, mode={self.mode.value}, port={self.port})"


def server_args(binary_path: Union[str, Path], *args: str) -> List[str]:
    return [str(binary_path).strip(), *args]


def _spawn(args: List[str], stdin, stdout) -> subprocess.Popen:
    logger.debug(f"Spawn `{shlex.join(args)}`")

    try:
        return subprocess.Popen(
            args,
            stdin=stdin,
            stdout=stdout,
            stderr=subprocess.DEVNULL,
            **subprocess_kwargs(),
        )
    except OSError as e:
        raise ConnectionFailed(f"Failed to start server process: {e}") from e


def bind_loopback() -> socket.socket:
    """
    Returns a listener bound to an ephemeral loopback port; It accepts a single connection.
    """
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

    try:
        listener.bind((kLOOPBACK, 0))
        listener.listen(1)
    except OSError:
        listener.close()
        raise

    return listener


def negotiate_stdio(
    binary_path: Union[str, Path],
    grace: float = kSTDIO_GRACE,
) -> ServerHandle:
    process = _spawn(
        server_args(binary_path, "--stdio"),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
    )

    try:
        returncode = process.wait(grace)
    except subprocess.TimeoutExpired:
        pass
    else:
        raise ConnectionFailed(f"Server exited with code {returncode} right after start")

    logger.debug(f"Server {process.pid} on stdio")

    return ServerHandle(
        process,
        reader=cast(BinaryIO, process.stdout),
        writer=cast(BinaryIO, process.stdin),
    )


def negotiate_socket(
    binary_path: Union[str, Path],
    timeout: float = kCONNECT_TIMEOUT,
) -> ServerHandle:
    """
    Listens on loopback, starts the server with `--socket=<port>` and waits for it to connect back.

    Raises ConnectionFailed if the server exits or doesn't connect within `timeout` seconds.
    """
    listener = bind_loopback()

    try:
        port = listener.getsockname()[1]

        process = _spawn(
            server_args(binary_path, f"--socket={port}"),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
        )

        listener.settimeout(kACCEPT_POLL)

        deadline = time.monotonic() + timeout

        while True:
            try:
                conn, address = listener.accept()
                break
            except socket.timeout:
                pass

            if (returncode := process.poll()) is not None:
                raise ConnectionFailed(
                    f"Server exited with code {returncode} before connecting"
                )

            if time.monotonic() >= deadline:
                process.kill()
                process.wait()

                raise ConnectionFailed(f"Server didn't connect after {timeout}s")

    finally:
        # A single connection is ever accepted.
        listener.close()

    conn.settimeout(None)
    conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    logger.debug(f"Server {process.pid} connected from {address} to port {port}")

    return ServerHandle(
        process,
        reader=cast(BinaryIO, conn.makefile("rb")),
        writer=cast(BinaryIO, conn.makefile("wb")),
        sock=conn,
        port=port,
    )


def negotiate(
    mode: TransportMode,
    binary_path: Union[str, Path],
    timeout: float = kCONNECT_TIMEOUT,
) -> ServerHandle:
    if mode == TransportMode.SOCKET:
        return negotiate_socket(binary_path, timeout)
    else:
        return negotiate_stdio(binary_path, min(kSTDIO_GRACE, timeout))
