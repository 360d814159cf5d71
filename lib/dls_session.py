import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, Union

from .dls_bootstrap import InstallCancelled, InstallFailed, Installer, MissingDependency
from .dls_client import (
    LanguageServerClient,
    LanguageServerStatus,
    LSPNotificationMessage,
    LSPResponseMessage,
)
from .dls_locator import locate, needs_install
from .dls_progress import (
    DlsUpgradeSequence,
    ProgressEvent,
    ProgressReporter,
    SelectionsUpgradeSequence,
)
from .dls_transport import (
    ConnectionFailed,
    ServerHandle,
    TransportMode,
    kCONNECT_TIMEOUT,
    negotiate,
)

kNAME = "DLS"
kINSTALLING_TITLE = "Installing DLS"


class SessionState(Enum):
    """
    NOT_STARTED -> STARTING -> RUNNING -> STOPPED
                            -> STOPPED
    """

    NOT_STARTED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPED = auto()


class SessionUI(Protocol):
    """
    What a Session needs from the editor.

    Methods may be called from any thread.
    """

    def on_state_changed(self, old: SessionState, new: SessionState) -> None: ...

    def open_progress(self, title: str, indeterminate: bool) -> ProgressReporter: ...

    def error_message(self, message: str) -> None: ...


@dataclass
class SessionConfig:
    # Explicit path to the DLS executable; Ignored if there's no file at it.
    dls_path: Optional[str] = None

    # 'stdio' or 'socket'.
    connection_type: str = TransportMode.STDIO.value

    # Passed through as initializationOptions.
    init: Optional[Any] = None

    # Passed with workspace/didChangeConfiguration once running.
    settings: Optional[Any] = None

    root_path: Optional[str] = None

    connect_timeout: float = kCONNECT_TIMEOUT

    initialize_timeout: float = 30.0

    @property
    def mode(self) -> TransportMode:
        return TransportMode.from_setting(self.connection_type)


InstallerFactory = Callable[[Callable[[ProgressEvent], None]], Installer]


def initialize_params(config: SessionConfig) -> dict:
    params = {
        "processId": os.getpid(),
        "clientInfo": {
            "name": "Sublime DLS",
            "version": "0.1.0",
        },
        "capabilities": {
            "workspace": {
                "configuration": False,
                "didChangeConfiguration": {
                    "dynamicRegistration": False,
                },
            },
        },
        "initializationOptions": config.init,
    }

    if config.root_path:
        root_path = Path(config.root_path)

        params["rootPath"] = root_path.as_posix()
        params["rootUri"] = root_path.as_uri()
        params["workspaceFolders"] = [
            {"name": root_path.name, "uri": root_path.as_uri()},
        ]
    else:
        # The rootPath of the workspace. Is null if no folder is open.
        params["rootPath"] = None
        params["rootUri"] = None
        params["workspaceFolders"] = None

    return params


class Session:
    """
    A DLS session: finds or installs the server, negotiates the transport and runs the client.

    A Session is started once; Once STOPPED, a new Session is needed.
    """

    def __init__(
        self,
        config: SessionConfig,
        ui: SessionUI,
        logger: Optional[logging.Logger] = None,
        client_logger: Optional[logging.Logger] = None,
        installer_factory: Optional[InstallerFactory] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._lock = threading.RLock()
        self._config = config
        self._ui = ui
        self._logger = logger or logging.getLogger(__name__)
        self._client_logger = client_logger or self._logger
        self._installer_factory = installer_factory or (lambda on_event: Installer(on_event))
        self._environ = environ
        self._state = SessionState.NOT_STARTED
        self._stop_requested = False
        self._stopped = threading.Event()
        self._installer: Optional[Installer] = None
        self._handle: Optional[ServerHandle] = None
        self._client: Optional[LanguageServerClient] = None
        self._upgrade_dls = DlsUpgradeSequence(ui.open_progress)
        self._upgrade_selections = SelectionsUpgradeSequence(ui.open_progress)

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def client(self) -> Optional[LanguageServerClient]:
        with self._lock:
            return self._client

    @property
    def handle(self) -> Optional[ServerHandle]:
        with self._lock:
            return self._handle

    @property
    def upgrade_dls(self) -> DlsUpgradeSequence:
        return self._upgrade_dls

    @property
    def upgrade_selections(self) -> SelectionsUpgradeSequence:
        return self._upgrade_selections

    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        return self._stopped.wait(timeout)

    def _set_state(self, state: SessionState):
        with self._lock:
            old = self._state

            if old == state or old == SessionState.STOPPED:
                return

            self._state = state

        self._logger.debug(f"[{kNAME}] {old.name} -> {state.name}")

        if state == SessionState.STOPPED:
            # Progress scopes must not outlive the session.
            self._upgrade_dls.did_stop()
            self._upgrade_selections.did_stop()

        try:
            self._ui.on_state_changed(old, state)
        except Exception:
            self._logger.exception(f"[{kNAME}] State handler error")

        if state == SessionState.STOPPED:
            self._stopped.set()

    # -- Start

    def _install(self) -> str:
        installer = None
        reporter = None

        try:
            with self._lock:
                if self._state != SessionState.STARTING:
                    raise InstallCancelled()

                def _on_event(event: ProgressEvent):
                    if reporter is not None:
                        reporter.report(event)

                installer = self._installer_factory(_on_event)

                self._installer = installer

            # Fail before any progress is shown.
            installer.check()

            reporter = self._ui.open_progress(kINSTALLING_TITLE, False)

            return installer.install()

        finally:
            with self._lock:
                self._installer = None

            if reporter is not None:
                reporter.close()

    def resolve_binary(self) -> Union[str, Path]:
        """
        Returns the configured or installed DLS executable; Installs it if it's not found.
        """
        path = locate(self._config.dls_path, self._environ)

        if path is None or needs_install(path):
            self._logger.info(f"[{kNAME}] DLS not found at {path}; Installing...")

            return self._install()

        return path

    def _fail_start(self, message: str) -> bool:
        self._ui.error_message(message)

        self._set_state(SessionState.STOPPED)

        return False

    def start(self) -> bool:
        """
        Blocks until the server is initialized or the start failed.

        Returns True if the session is RUNNING.
        """
        with self._lock:
            if self._state != SessionState.NOT_STARTED:
                self._logger.warning(f"[{kNAME}] Can't start - already {self._state.name}")
                return False

        self._set_state(SessionState.STARTING)

        try:
            binary_path = self.resolve_binary()

            self._logger.info(
                f"[{kNAME}] Start {str(binary_path).strip()!r} ({self._config.mode.value})"
            )

            handle = negotiate(
                self._config.mode,
                binary_path,
                self._config.connect_timeout,
            )

        except InstallCancelled:
            self._logger.info(f"[{kNAME}] Install cancelled")

            self._set_state(SessionState.STOPPED)

            return False

        except (MissingDependency, InstallFailed, ConnectionFailed) as e:
            self._logger.error(f"[{kNAME}] {e}")

            return self._fail_start(str(e))

        except Exception as e:
            self._logger.exception(f"[{kNAME}] Failed to start")

            return self._fail_start(f"DLS failed to start: {e}")

        client = LanguageServerClient(
            logger=self._client_logger,
            name=kNAME,
            handle=handle,
            on_status_change=self._on_client_status,
        )

        initialized = threading.Event()

        def _callback(response: LSPResponseMessage):
            if error := response.get("error"):
                # Stopped on purpose; Not an error.
                with self._lock:
                    stop_requested = self._stop_requested

                if not stop_requested:
                    self._ui.error_message(
                        f"DLS failed to initialize: {error.get('message')}"
                    )
            else:
                self._subscribe(client)

                if settings := self._config.settings:
                    client.workspace_didChangeConfiguration(settings)

            initialized.set()

        # The client is published and initialized in one step;
        # `stop` either sees no client, or a client it can shut down.
        with self._lock:
            stopping = self._stop_requested or self._state != SessionState.STARTING

            self._handle = handle
            self._client = client

            if not stopping:
                client.initialize(
                    initialize_params(self._config),
                    _callback,
                    timeout=self._config.initialize_timeout,
                )

        if stopping:
            # Stopped while connecting.
            handle.close()
            handle.kill()

            self._set_state(SessionState.STOPPED)

            return False

        initialized.wait()

        return self.state() == SessionState.RUNNING

    def _subscribe(self, client: LanguageServerClient):
        """
        Routes upgrade notifications to their sequence.
        """

        def params(f: Callable[[Any], None]):
            def handler(message: LSPNotificationMessage):
                f(message.get("params") or {})

            return handler

        upgrade_dls = self._upgrade_dls
        upgrade_selections = self._upgrade_selections

        for method, f in [
            ("$/dls/upgradeDls/didStart", upgrade_dls.did_start),
            ("$/dls/upgradeDls/didStop", upgrade_dls.did_stop),
            ("$/dls/upgradeDls/didChangeTotalSize", upgrade_dls.did_change_total_size),
            ("$/dls/upgradeDls/didChangeCurrentSize", upgrade_dls.did_change_current_size),
            ("$/dls/upgradeDls/didExtract", upgrade_dls.did_extract),
            ("$/dls/upgradeSelections/didStart", upgrade_selections.did_start),
            ("$/dls/upgradeSelections/didStop", upgrade_selections.did_stop),
        ]:
            client.on_notification(method, params(f))

    def _on_client_status(self, old: LanguageServerStatus, new: LanguageServerStatus):
        if new == LanguageServerStatus.INITIALIZED:
            self._set_state(SessionState.RUNNING)

        elif new == LanguageServerStatus.FAILED:
            self._set_state(SessionState.STOPPED)

            # Release process and channel.
            if client := self.client:
                client.shutdown()

        elif new == LanguageServerStatus.SHUTDOWN:
            self._set_state(SessionState.STOPPED)

    # -- Running

    def did_change_configuration(self, settings: Any):
        self._config.settings = settings

        if (client := self.client) and client.is_server_initialized():
            client.workspace_didChangeConfiguration(settings)

    def stop(self):
        """
        Shuts the server down, or cancels the install in progress.

        Doesn't block; See `wait_stopped`.
        """
        with self._lock:
            self._stop_requested = True

            state = self._state
            installer = self._installer
            handle = self._handle
            client = self._client

            # A client that isn't initializing yet can't be shut down.
            client_started = (
                client is not None
                and client.server_status() != LanguageServerStatus.NOT_STARTED
            )

        if state == SessionState.NOT_STARTED:
            self._set_state(SessionState.STOPPED)

        elif state == SessionState.STOPPED:
            return

        elif client is not None and client_started:
            client.shutdown()

        else:
            # Locating, installing or connecting.
            self._set_state(SessionState.STOPPED)

            if installer is not None:
                installer.cancel()

            if handle is not None:
                handle.close()
                handle.kill()
