import json
import logging
import subprocess
import threading
import uuid
from enum import Enum, auto
from queue import Empty, Full, Queue
from typing import Any, Callable, Dict, List, Optional, Tuple, TypedDict, Union, cast

from .dls_transport import ServerHandle


class LSPServerCapabilities(TypedDict, total=False):
    pass


class LSPServerInfo(TypedDict):
    # The name of the server as defined by the server.
    name: str

    # The server's version as defined by the server.
    version: Optional[str]


class LSPInitializeResult(TypedDict):
    # The capabilities the language server provides.
    capabilities: LSPServerCapabilities

    # Information about the server.
    serverInfo: Optional[LSPServerInfo]


class LSPMessage(TypedDict):
    jsonrpc: str


class LSPNotificationMessage(LSPMessage):
    """
    A notification message.

    A processed notification message must not send a response back. They work like events.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#notificationMessage
    """

    method: str
    params: Optional[Any]


class LSPRequestMessage(LSPMessage):
    """
    A request message to describe a request between the client and the server.

    Every processed request must send a response back to the sender of the request.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#requestMessage
    """

    id: Union[int, str]
    method: str
    params: Optional[Any]


class LSPResponseError(TypedDict):
    code: int
    message: str
    data: Optional[Any]


class LSPResponseMessage(TypedDict, total=False):
    """
    A Response Message sent as a result of a request.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#responseMessage
    """

    jsonrpc: str
    id: Optional[Union[int, str]]
    result: Optional[Any]
    error: Optional[LSPResponseError]


class TranslationParams(TypedDict):
    # Message already translated by the server.
    tr: str


class DlsUpgradeSizeParams(TranslationParams):
    size: int


# Handler for notifications sent by the server.
LSPNotificationHandler = Callable[[LSPNotificationMessage], None]

# Handler for requests sent by the server; Returns the response's result.
LSPRequestHandler = Callable[[LSPRequestMessage], Any]

# https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#errorCodes
kMETHOD_NOT_FOUND = -32601
kINTERNAL_ERROR = -32603

# Synthetic error codes for failures which happen on the client side.
kERROR_START = -1
kERROR_TIMEOUT = -2


# --------------------------------------------------------------------------------


def request(
    method: str,
    params: Optional[Any] = None,
) -> LSPRequestMessage:
    return {
        "jsonrpc": "2.0",
        "id": str(uuid.uuid4()),
        "method": method,
        "params": params,
    }


def notification(
    method: str,
    params: Optional[Any] = None,
) -> LSPNotificationMessage:
    return {
        "jsonrpc": "2.0",
        "method": method,
        "params": params,
    }


def response(
    id: Union[int, str],
    result: Optional[Any] = None,
    error: Optional[LSPResponseError] = None,
) -> LSPResponseMessage:
    message: LSPResponseMessage = {"jsonrpc": "2.0", "id": id}

    if error is not None:
        message["error"] = error
    else:
        message["result"] = result

    return message


def encode(message: Dict[str, Any]) -> bytes:
    """
    The base protocol consists of a header and a content part (comparable to HTTP).

    Content-Length is the length of the content in bytes.

    https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#baseProtocol
    """
    content = json.dumps(message).encode("utf-8")

    header = f"Content-Length: {len(content)}\r\n\r\n".encode("ascii")

    return header + content


def read_exactly(reader, n: int) -> bytes:
    remaining = n

    chunks = []

    while remaining > 0:
        chunk = reader.read(remaining)

        # End of file or stream
        if not chunk:
            break

        chunks.append(chunk)

        remaining -= len(chunk)

    return b"".join(chunks)


def read_headers(reader) -> Dict[str, str]:
    """
    Reads headers up to the empty line which separates them from the content.

    Returns an empty dict on EOF.
    """
    headers = {}

    while True:
        line = reader.readline()

        # EOF
        if not line:
            return {}

        line = line.decode("ascii").strip()

        if line == "":
            if headers:
                return headers

            # Stray separator; keep reading.
            continue

        k, v = line.split(":", 1)

        headers[k.strip()] = v.strip()


class LanguageServerStatus(Enum):
    """Represents the lifecycle state of the language server.

    State transitions:
    NOT_STARTED -> INITIALIZING -> INITIALIZED -> SHUTDOWN
                                -> FAILED
    """

    NOT_STARTED = auto()  # Channel hasn't been used yet
    INITIALIZING = auto()  # Initialize request sent, waiting for response
    INITIALIZED = auto()  # Successfully initialized and ready for requests
    FAILED = auto()  # Server crashed, I/O error, or initialization failed
    SHUTDOWN = auto()  # Server has been shutdown gracefully


LanguageServerStatusHandler = Callable[
    [LanguageServerStatus, LanguageServerStatus], None
]


class LanguageServerClient:
    """LSP client talking to a server over a negotiated ServerHandle.

    Thread Safety:
        - Uses a single RLock (_lock) to protect all shared state
        - Status change handler is called outside of the lock

    Threads:
        - Reader: reads framed messages from the channel into the receive queue
        - Writer: writes messages from the send queue to the channel
        - Handler: dispatches responses, notifications and server requests
        - Monitor: waits on the server process and fails the client if it exits unexpectedly

    Send/receive queues are bounded, so a slow consumer blocks its producer.
    """

    def __init__(
        self,
        logger: logging.Logger,
        name: str,
        handle: ServerHandle,
        on_status_change: Optional[LanguageServerStatusHandler] = None,
    ):
        self._lock = threading.RLock()
        self._logger = logger
        self._name = name
        self._handle = handle
        self._server_status = LanguageServerStatus.NOT_STARTED
        self._server_info: Optional[LSPServerInfo] = None
        self._server_capabilities: Optional[LSPServerCapabilities] = None
        self._send_queue = Queue(maxsize=100)
        self._receive_queue = Queue(maxsize=100)
        self._reader: Optional[threading.Thread] = None
        self._writer: Optional[threading.Thread] = None
        self._handler: Optional[threading.Thread] = None
        self._monitor: Optional[threading.Thread] = None
        self._request_callback: Dict[
            Union[int, str], Callable[[LSPResponseMessage], None]
        ] = {}
        self._notification_handlers: Dict[str, List[LSPNotificationHandler]] = {}
        self._request_handlers: Dict[str, LSPRequestHandler] = {}
        self._on_status_change = on_status_change
        self._initialize_callback: Optional[Callable[[LSPResponseMessage], None]] = None
        self._exited = threading.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def handle(self) -> ServerHandle:
        return self._handle

    def server_status(self) -> LanguageServerStatus:
        with self._lock:
            return self._server_status

    def server_info(self) -> Optional[LSPServerInfo]:
        with self._lock:
            return self._server_info

    def is_server_initializing(self) -> bool:
        with self._lock:
            return self._server_status == LanguageServerStatus.INITIALIZING

    def is_server_initialized(self) -> bool:
        """
        Returns True if server is up and running and successfully processed an 'initialize' request.
        """
        with self._lock:
            return self._server_status == LanguageServerStatus.INITIALIZED

    def is_server_shutdown(self) -> bool:
        with self._lock:
            return self._server_status == LanguageServerStatus.SHUTDOWN

    def is_server_failed(self) -> bool:
        """
        Returns True if server failed to initialize, crashed, or encountered an I/O error.
        """
        with self._lock:
            return self._server_status == LanguageServerStatus.FAILED

    def wait_exit(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the client has exited (after shutdown or failure).
        """
        return self._exited.wait(timeout)

    def on_notification(self, method: str, handler: LSPNotificationHandler):
        with self._lock:
            self._notification_handlers.setdefault(method, []).append(handler)

    def on_request(self, method: str, handler: LSPRequestHandler):
        with self._lock:
            self._request_handlers[method] = handler

    # -- Status

    def _transition(
        self, status: LanguageServerStatus
    ) -> Optional[Tuple[LanguageServerStatus, LanguageServerStatus]]:
        # Must be called with lock held.
        old = self._server_status

        if old == status:
            return None

        self._server_status = status

        if status in (LanguageServerStatus.FAILED, LanguageServerStatus.SHUTDOWN):
            self._clear_callbacks()

        return (old, status)

    def _notify_status(
        self, change: Optional[Tuple[LanguageServerStatus, LanguageServerStatus]]
    ):
        if change is None:
            return

        if f := self._on_status_change:
            try:
                f(*change)
            except Exception:
                self._logger.exception(f"[{self._name}] Status handler error")

        if change[1] == LanguageServerStatus.FAILED:
            self._exited.set()

    def _fail(self, reason: str, code: int = kERROR_START):
        """
        Transitions to FAILED - unless already shutdown or failed - and stops workers.

        A pending initialize callback is called with a synthetic error response.
        """
        with self._lock:
            change = None

            if self._server_status not in (
                LanguageServerStatus.SHUTDOWN,
                LanguageServerStatus.FAILED,
            ):
                self._logger.error(f"[{self._name}] {reason}")

                change = self._transition(LanguageServerStatus.FAILED)

            initialize_callback = self._initialize_callback
            self._initialize_callback = None

        if change:
            self._stop_workers()

            if initialize_callback and change[0] == LanguageServerStatus.INITIALIZING:
                initialize_callback(
                    {
                        "id": None,
                        "result": None,
                        "error": {"code": code, "message": reason, "data": None},
                    }
                )

        self._notify_status(change)

    def _stop_workers(self):
        """
        Signals worker threads to stop; Never blocks.

        Pending messages are discarded to make room for the `None` sentinel -
        which also releases producers blocked on a full queue.
        """
        for q in (self._send_queue, self._receive_queue):
            while True:
                try:
                    q.put_nowait(None)
                    break
                except Full:
                    try:
                        q.get_nowait()
                        q.task_done()
                    except Empty:
                        pass

    def _clear_callbacks(self):
        """Clear all pending request callbacks (must be called with lock held).

        In-flight requests won't receive a response once the server failed or exited.
        """
        n = len(self._request_callback)

        if n > 0:
            self._logger.warning(
                f"[{self._name}] Clearing {n} pending request callback(s)"
            )
            self._request_callback.clear()

    # -- Workers

    def _start_monitor(self):
        self._logger.debug(f"[{self._name}] Monitor started")

        try:
            # Block until process exits
            returncode = self._handle.process.wait()

            self._logger.debug(f"[{self._name}] Server exited with code {returncode}")

            self._fail(f"Server crashed unexpectedly with exit code {returncode}")

        except Exception as e:
            self._logger.error(f"[{self._name}] Monitor thread error: {e}")

        finally:
            self._logger.debug(f"[{self._name}] Monitor stopped")

    def _start_reader(self):
        self._logger.debug(f"[{self._name}] Reader started")

        reader = self._handle.reader

        try:
            while self.server_status() in (
                LanguageServerStatus.INITIALIZING,
                LanguageServerStatus.INITIALIZED,
            ):
                # -- HEADER

                headers = read_headers(reader)

                # No headers at all means the channel is closed (EOF).
                if not headers:
                    self._logger.debug(f"[{self._name}] Reader detected EOF")

                    self._fail("Server closed the connection")

                    break

                # -- CONTENT

                if content_length := headers.get("Content-Length"):
                    content = read_exactly(reader, int(content_length)).decode("utf-8")

                    try:
                        message = json.loads(content)

                        # Enqueue message; Blocks if queue is full.
                        self._receive_queue.put(message)

                    except json.JSONDecodeError:
                        # An 'in-flight' request won't have its callback called.
                        self._logger.error(
                            f"[{self._name}] Failed to decode message: {content}"
                        )

        except Exception as e:
            # Normal shutdown can cause I/O errors as the channel closes.
            self._fail(f"Reader thread crashed: {e}")

        finally:
            self._logger.debug(f"[{self._name}] Reader stopped")

    def _start_writer(self):
        self._logger.debug(f"[{self._name}] Writer started")

        writer = self._handle.writer

        while (message := self._send_queue.get()) is not None:
            try:
                writer.write(encode(message))
                writer.flush()

            except (BrokenPipeError, ConnectionError, ValueError) as e:
                # The server's end of the channel is closed - it crashed or exited.
                # ValueError is raised by writing to a closed file.
                self._send_queue.task_done()

                self._fail(f"Can't write to server (closed channel): {e}")

                break

            self._send_queue.task_done()

        else:
            # 'None Task' is complete.
            self._send_queue.task_done()

        self._logger.debug(f"[{self._name}] Writer stopped")

    def _handle_response(self, message: LSPResponseMessage):
        with self._lock:
            callback = self._request_callback.pop(message["id"], None)

        if callback:
            try:
                callback(message)
            except Exception:
                self._logger.exception(f"[{self._name}] Request callback error")

    def _handle_notification(self, message: LSPNotificationMessage):
        method = message["method"]

        with self._lock:
            handlers = list(self._notification_handlers.get(method, []))

        if not handlers:
            self._logger.debug(f"[{self._name}] Unhandled notification '{method}'")

        for handler in handlers:
            try:
                handler(message)
            except Exception:
                self._logger.exception(f"[{self._name}] Error handling '{method}'")

    def _handle_request(self, message: LSPRequestMessage):
        method = message["method"]

        with self._lock:
            handler = self._request_handlers.get(method)

        if handler is None:
            self._logger.debug(f"[{self._name}] Unhandled request '{method}'")

            self._send(
                response(
                    message["id"],
                    error={
                        "code": kMETHOD_NOT_FOUND,
                        "message": f"Unhandled method {method}",
                        "data": None,
                    },
                )
            )

            return

        try:
            self._send(response(message["id"], result=handler(message)))
        except Exception as e:
            self._logger.exception(f"[{self._name}] Error handling request '{method}'")

            self._send(
                response(
                    message["id"],
                    error={"code": kINTERNAL_ERROR, "message": str(e), "data": None},
                )
            )

    def _start_handler(self):
        self._logger.debug(f"[{self._name}] Handler started")

        while (message := self._receive_queue.get()) is not None:
            if "method" in message:
                if "id" in message:
                    self._handle_request(cast(LSPRequestMessage, message))
                else:
                    self._handle_notification(cast(LSPNotificationMessage, message))

            elif "id" in message:
                self._handle_response(cast(LSPResponseMessage, message))

            self._receive_queue.task_done()

        # 'None Task' is complete.
        self._receive_queue.task_done()

        self._logger.debug(f"[{self._name}] Handler stopped")

    # -- Messages

    def _send(self, message: Dict[str, Any]):
        # Responses to server requests bypass the lifecycle checks in `_put`.
        with self._lock:
            ready = self._server_status in (
                LanguageServerStatus.INITIALIZING,
                LanguageServerStatus.INITIALIZED,
            )

        # Blocks if queue is full; Never with the lock held.
        if ready:
            self._send_queue.put(message)

    def _put(
        self,
        message: Union[LSPNotificationMessage, LSPRequestMessage],
        callback: Optional[Callable[[LSPResponseMessage], None]] = None,
    ):
        with self._lock:
            method = message["method"]

            lifecycle_methods = {"initialize", "initialized", "shutdown", "exit"}

            # Drop message if server is not ready - unless it's a lifecycle message.
            if (
                self._server_status != LanguageServerStatus.INITIALIZED
                and method not in lifecycle_methods
            ):
                self._logger.debug(
                    f"[{self._name}] Server is not initialized; Will drop {method}"
                )
                return

            if self._server_status == LanguageServerStatus.FAILED:
                self._logger.debug(f"[{self._name}] Server failed; Will drop {method}")
                return

            if message_id := message.get("id"):
                # A mapping of request ID to callback.
                #
                # callback might not be called if there's an error reading the response,
                # or the server never returns a response.
                if callback:
                    self._request_callback[message_id] = callback

        # Blocks if queue is full; Never with the lock held.
        self._send_queue.put(message)

    def initialize(
        self,
        params,
        callback: Callable[[LSPResponseMessage], None],
        timeout: float = 30.0,
    ):
        """
        Starts the worker threads and sends the initialize request.

        `callback` is called exactly once: with the server's response, or with a
        synthetic error response if the request times out or the server fails first.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initialize
        """

        with self._lock:
            if self._server_status != LanguageServerStatus.NOT_STARTED:
                self._logger.warning(
                    f"[{self._name}] Cannot initialize - already in state {self._server_status.name}"
                )
                return

            change = self._transition(LanguageServerStatus.INITIALIZING)

        self._notify_status(change)

        self._logger.debug(f"[{self._name}] Initializing ({self._handle!r})")

        callback_lock = threading.Lock()
        callback_called = False

        def _callback_once(response: LSPResponseMessage):
            nonlocal callback_called

            with callback_lock:
                if callback_called:
                    return

                callback_called = True

            callback(response)

        with self._lock:
            self._initialize_callback = _callback_once

        for name, target in [
            ("Handler", self._start_handler),
            ("Writer", self._start_writer),
            ("Reader", self._start_reader),
            ("Monitor", self._start_monitor),
        ]:
            thread = threading.Thread(name=name, target=target, daemon=True)
            thread.start()
            setattr(self, f"_{name.lower()}", thread)

        # A timer doesn't block the calling thread - often the UI thread.
        def _timeout_handler():
            with self._lock:
                # Only trigger timeout if still INITIALIZING
                if self._server_status != LanguageServerStatus.INITIALIZING:
                    return

            self._fail(f"Initialization timed out after {timeout}s", code=kERROR_TIMEOUT)

        timeout_timer = threading.Timer(timeout, _timeout_handler)
        timeout_timer.daemon = True
        timeout_timer.start()

        def _callback(response: LSPResponseMessage):
            timeout_timer.cancel()

            with self._lock:
                # If status changed (FAILED by timeout), don't process the response
                if self._server_status != LanguageServerStatus.INITIALIZING:
                    return

                self._initialize_callback = None

                error = response.get("error")

            if not error:
                # The initialized notification is sent after the client received the result of the initialize request
                # but before the client is sending any other request or notification to the server.
                # Other messages are dropped until the transition below.
                #
                # https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#initialized
                self._put(notification("initialized", {}))

                with self._lock:
                    status = self._server_status

                    if status == LanguageServerStatus.INITIALIZING:
                        change = self._transition(LanguageServerStatus.INITIALIZED)

                        if result := cast(LSPInitializeResult, response.get("result")):
                            self._server_capabilities = result.get("capabilities")
                            self._server_info = result.get("serverInfo")

                # Failed or shutdown meanwhile.
                if status != LanguageServerStatus.INITIALIZING:
                    _callback_once(
                        {
                            "id": None,
                            "result": None,
                            "error": {
                                "code": kERROR_START,
                                "message": f"Server {status.name.lower()} during initialization",
                                "data": None,
                            },
                        }
                    )
                    return

            if error:
                self._fail(
                    f"Initialization failed: code={error.get('code')}, message={error.get('message')}"
                )
            else:
                self._logger.info(f"[{self._name}] ({self._handle.pid}) initialized")

                self._notify_status(change)

            _callback_once(response)

        self._put(request("initialize", params), _callback)

    def shutdown(self, timeout: float = 5.0):
        """
        Asks the server to shut down, then to exit.

        If the server doesn't respond within `timeout`, exit is forced.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#shutdown
        """

        self._logger.info(f"[{self._name}] Shutdown")

        current_status = self.server_status()

        if current_status == LanguageServerStatus.SHUTDOWN:
            self._logger.debug(f"[{self._name}] Already shutdown")
            return

        if current_status == LanguageServerStatus.NOT_STARTED:
            self._logger.debug(f"[{self._name}] Server was never started")
            return

        if current_status == LanguageServerStatus.FAILED:
            # There's nobody to talk to; Release the process and channel.
            threading.Thread(name="Exit", target=self._exit, daemon=True).start()
            return

        def _timeout_handler():
            if self.server_status() != LanguageServerStatus.SHUTDOWN:
                self._logger.warning(
                    f"[{self._name}] Shutdown request timed out after {timeout}s, forcing exit"
                )
                self._exit()

        timeout_timer = threading.Timer(timeout, _timeout_handler)
        timeout_timer.daemon = True
        timeout_timer.start()

        def _callback(response: LSPResponseMessage):
            timeout_timer.cancel()

            # Always exit, even if shutdown returned an error.
            if error := response.get("error"):
                self._logger.error(
                    f"[{self._name}] Shutdown request returned error: "
                    f"code={error.get('code')}, message={error.get('message')}"
                )

            self._exit()

        self._put(request("shutdown"), _callback)

    def _exit(self):
        """
        Sends the exit notification, closes the channel and waits for the process to terminate.

        Blocks on process.wait(); Only called from background threads.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#exit
        """

        # Make this method idempotent - safe to call multiple times
        with self._lock:
            if self._server_status == LanguageServerStatus.SHUTDOWN:
                return

            self._logger.info(f"[{self._name}] Exit")

            # Workers of a failed client are already stopped.
            failed = self._server_status == LanguageServerStatus.FAILED

            change = self._transition(LanguageServerStatus.SHUTDOWN)

            initialize_callback = self._initialize_callback
            self._initialize_callback = None

        if not failed:
            try:
                # Enqueue `None` to signal that workers must stop; Writer flushes 'exit' first.
                self._send_queue.put(notification("exit"), timeout=5)
                self._send_queue.put(None, timeout=5)
                self._receive_queue.put(None, timeout=5)
            except Full:
                self._logger.warning(
                    f"[{self._name}] Server isn't reading; Will drop pending messages"
                )

                self._stop_workers()

        if self._writer is not None:
            self._writer.join(5)

        process = self._handle.process

        try:
            # A failed server won't exit by itself.
            returncode = process.wait(0 if failed else 30)
        except subprocess.TimeoutExpired:
            self._logger.info(
                f"[{self._name}] Terminate timeout expired; Will explicitly kill server"
            )

            process.kill()

            returncode = process.wait()

        self._handle.close()

        self._logger.info(f"[{self._name}] Server terminated with returncode {returncode}")

        self._notify_status(change)

        self._exited.set()

        if initialize_callback:
            initialize_callback(
                {
                    "id": None,
                    "result": None,
                    "error": {
                        "code": kERROR_START,
                        "message": "Server shutdown during initialization",
                        "data": None,
                    },
                }
            )

    def workspace_didChangeConfiguration(self, settings: Any):
        """
        A notification sent from the client to the server to signal the change of configuration settings.

        https://microsoft.github.io/language-server-protocol/specifications/lsp/3.17/specification/#workspace_didChangeConfiguration
        """
        self._put(notification("workspace/didChangeConfiguration", {"settings": settings}))
