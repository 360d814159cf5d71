import logging
import threading
from typing import Any, Dict, List, Optional

import sublime
import sublime_plugin

from .lib import dls_bootstrap, dls_progress, dls_session, dls_transport

# -- Logging

logging_formatter = logging.Formatter(fmt="[{name}] {levelname} {message}", style="{")

# Handler to log on the Console.
console_logging_handler = logging.StreamHandler()
console_logging_handler.setFormatter(logging_formatter)

# Logger used to log 'everything-plugin' - except LSP stuff. (See logger below)
plugin_logger = logging.getLogger(__package__)
plugin_logger.propagate = False

# Logger used by the LSP client.
client_logger = logging.getLogger(f"{__package__}.Client")
client_logger.propagate = False

# Loggers of the lib modules.
lib_loggers = [
    logging.getLogger(module.__name__)
    for module in (dls_bootstrap, dls_progress, dls_transport)
]

# ---------------------------------------------------------------------------------------


# -- CONSTANTS

kSETTINGS = "DLS.sublime-settings"
kPROJECT_DATA_KEY = "DLS"

kSETTING_DLS_PATH = "dls_path"
kSETTING_CONNECTION_TYPE = "connection_type"
kSETTING_INIT = "init"
kSETTING_DLS = "dls"
kSETTING_CONNECT_TIMEOUT = "connect_timeout"

kSTATUS_STARTING = "PG_DLS_STARTING"
kSTATUS_PROGRESS = "PG_DLS_PROGRESS"

kSELECTOR = "source.d"


# ---------------------------------------------------------------------------------------


# -- Global Variables

# Window ID to Session.
_SESSIONS: Dict[int, dls_session.Session] = {}
_SESSIONS_LOCK = threading.Lock()


# ---------------------------------------------------------------------------------------


## -- API


def settings() -> sublime.Settings:
    return sublime.load_settings(kSETTINGS)


def project_data(window: sublime.Window) -> Optional[Dict[str, Any]]:
    if project_data_ := window.project_data():
        return project_data_.get(kPROJECT_DATA_KEY)

    return None


def setting(window: sublime.Window, k: str, not_found: Any):
    """
    Get setting k from project's data or DLS.sublime-settings.

    Returns not_found if setting k is is not set.
    """
    if project_data_ := project_data(window):
        try:
            return project_data_[k]
        except KeyError:
            return settings().get(k, not_found)

    return settings().get(k, not_found)


def window_root_path(window: sublime.Window) -> Optional[str]:
    return window.folders()[0] if window.folders() else None


def session_config(window: sublime.Window) -> dls_session.SessionConfig:
    return dls_session.SessionConfig(
        dls_path=setting(window, kSETTING_DLS_PATH, None),
        connection_type=setting(window, kSETTING_CONNECTION_TYPE, "stdio"),
        init=setting(window, kSETTING_INIT, None),
        settings=setting(window, kSETTING_DLS, None),
        root_path=window_root_path(window),
        connect_timeout=setting(window, kSETTING_CONNECT_TIMEOUT, 30.0),
    )


def find_window(id: int) -> Optional[sublime.Window]:
    for window in sublime.windows():
        if window.id() == id:
            return window

    return None


def window_session(window: sublime.Window) -> Optional[dls_session.Session]:
    with _SESSIONS_LOCK:
        return _SESSIONS.get(window.id())


def sessions() -> List[dls_session.Session]:
    with _SESSIONS_LOCK:
        return list(_SESSIONS.values())


def view_applicable(view: sublime.View) -> bool:
    return view.match_selector(0, kSELECTOR)


def set_window_status(window: sublime.Window, key: str, text: Optional[str]):
    for view in window.views():
        if text is None:
            view.erase_status(key)
        else:
            view.set_status(key, text)


# -- UI


class StatusBarProgress:
    """
    Progress reporter which shows progress in the status bar of every view of a window.

    Percentage is the sum of increments since the total size was set.
    """

    def __init__(self, window_id: int, key: str, title: str, indeterminate: bool):
        self._lock = threading.Lock()
        self._window_id = window_id
        self._key = key
        self._title = title
        self._indeterminate = indeterminate
        self._label: Optional[str] = None
        self._percentage = 0.0
        self._closed = False

        self._render()

    def text(self) -> str:
        with self._lock:
            text = self._title

            if self._label:
                text = f"{text}: {self._label}"

            if self._indeterminate:
                return f"{text}..."

            return f"{text} {min(self._percentage, 100):.0f}%"

    def report(self, event: dls_progress.ProgressEvent):
        with self._lock:
            if self._closed:
                return

            if isinstance(event, dls_progress.TotalSizeSet):
                self._percentage = 0.0

            elif isinstance(event, dls_progress.ProgressUpdated):
                self._percentage += event.increment
                self._label = event.label

            elif isinstance(event, (dls_progress.PhaseChanged, dls_progress.Message)):
                self._label = event.label

        self._render()

    def close(self):
        with self._lock:
            self._closed = True

        def _erase():
            if window := find_window(self._window_id):
                set_window_status(window, self._key, None)

        sublime.set_timeout(_erase, 0)

    def _render(self):
        text = self.text()

        def _set():
            with self._lock:
                if self._closed:
                    return

            if window := find_window(self._window_id):
                set_window_status(window, self._key, text)

        sublime.set_timeout(_set, 0)


class WindowUI:
    """
    Session UI of a Sublime Text window.
    """

    def __init__(self, window: sublime.Window):
        self._window_id = window.id()
        self._progress_counter = 0
        self._lock = threading.Lock()

    def on_state_changed(
        self,
        old: dls_session.SessionState,
        new: dls_session.SessionState,
    ):
        plugin_logger.debug(f"Session {old.name} -> {new.name}")

        def _update():
            if not (window := find_window(self._window_id)):
                return

            if new == dls_session.SessionState.STARTING:
                set_window_status(window, kSTATUS_STARTING, "Starting DLS...")

            if old == dls_session.SessionState.STARTING:
                set_window_status(window, kSTATUS_STARTING, None)

        sublime.set_timeout(_update, 0)

    def open_progress(self, title: str, indeterminate: bool) -> StatusBarProgress:
        # Each progress has its own status key; Sequences may overlap.
        with self._lock:
            self._progress_counter += 1

            key = f"{kSTATUS_PROGRESS}_{self._progress_counter}"

        return StatusBarProgress(self._window_id, key, title, indeterminate)

    def error_message(self, message: str):
        sublime.set_timeout(lambda: sublime.error_message(message), 0)


# -- Session


def start_session(window: sublime.Window) -> Optional[dls_session.Session]:
    """
    Starts a Session for window - unless there's one already running.
    """
    with _SESSIONS_LOCK:
        session = _SESSIONS.get(window.id())

        if session and session.state() != dls_session.SessionState.STOPPED:
            return session

        session = dls_session.Session(
            config=session_config(window),
            ui=WindowUI(window),
            logger=plugin_logger,
            client_logger=client_logger,
        )

        _SESSIONS[window.id()] = session

    def _start():
        if session.start():
            plugin_logger.info(f"DLS running for window {window.id()}")

    threading.Thread(name="DLS", target=_start, daemon=True).start()

    return session


def stop_session(window: sublime.Window):
    with _SESSIONS_LOCK:
        session = _SESSIONS.pop(window.id(), None)

    if session:
        session.stop()


def stop_sessions():
    with _SESSIONS_LOCK:
        sessions_ = list(_SESSIONS.values())
        _SESSIONS.clear()

    for session in sessions_:
        session.stop()


def on_settings_change():
    for window in sublime.windows():
        if session := window_session(window):
            session.did_change_configuration(setting(window, kSETTING_DLS, None))


# -- COMMANDS


class PgDlsStartCommand(sublime_plugin.WindowCommand):
    def run(self):
        start_session(self.window)


class PgDlsStopCommand(sublime_plugin.WindowCommand):
    def is_enabled(self):
        return window_session(self.window) is not None

    def run(self):
        stop_session(self.window)


class PgDlsRestartCommand(sublime_plugin.WindowCommand):
    def run(self):
        session = window_session(self.window)

        stop_session(self.window)

        def _restart():
            if session:
                session.wait_stopped(10)

            sublime.set_timeout(lambda: start_session(self.window), 0)

        threading.Thread(name="DLSRestart", target=_restart, daemon=True).start()


class PgDlsStatusCommand(sublime_plugin.WindowCommand):
    def run(self):
        if not (session := window_session(self.window)):
            sublime.status_message("DLS is not started")
            return

        text = f"DLS {session.state().name.lower()}"

        if handle := session.handle:
            text += f" - {handle!r}"

        if (client := session.client) and (info := client.server_info()):
            text += f" - {info.get('name')} {info.get('version') or ''}"

        sublime.status_message(text)


# -- LISTENERS


class PgDlsListener(sublime_plugin.EventListener):
    def on_activated_async(self, view):
        if not view_applicable(view):
            return

        if window := view.window():
            session = window_session(window)

            if session is None:
                plugin_logger.debug("D view activated; Start DLS...")

                start_session(window)

    def on_load_project(self, window):
        plugin_logger.debug("Load project; Stop previous DLS...")

        stop_session(window)

    def on_pre_close_window(self, window):
        plugin_logger.debug("Pre-close window; Stop DLS...")

        stop_session(window)


# -- PLUGIN LIFECYLE


def plugin_loaded():
    plugin_logger.addHandler(console_logging_handler)
    plugin_logger.setLevel(settings().get("logger.plugin.level", "INFO"))

    client_logger.addHandler(console_logging_handler)
    client_logger.setLevel(settings().get("logger.client.level", "INFO"))

    for logger in lib_loggers:
        logger.addHandler(console_logging_handler)
        logger.setLevel(settings().get("logger.plugin.level", "INFO"))

    settings().add_on_change(kSETTING_DLS, on_settings_change)

    plugin_logger.debug("Plugin loaded")


def plugin_unloaded():
    plugin_logger.debug("Plugin unloaded")

    settings().clear_on_change(kSETTING_DLS)

    stop_sessions()

    plugin_logger.removeHandler(console_logging_handler)
    client_logger.removeHandler(console_logging_handler)

    for logger in lib_loggers:
        logger.removeHandler(console_logging_handler)
