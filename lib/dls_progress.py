import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional, Protocol, Union

logger = logging.getLogger(__name__)


kEXTRACT = "extract"
kEXTRACTING = "Extracting"
kDOWNLOADING = "Downloading"

_NUMBER_RE = re.compile(r"[+-]?\d+")


# -- Events


@dataclass(frozen=True)
class PhaseChanged:
    label: str


@dataclass(frozen=True)
class TotalSizeSet:
    size: int


@dataclass(frozen=True)
class ProgressUpdated:
    # Percentage points since the previous update.
    increment: float
    current_size: int
    label: str


@dataclass(frozen=True)
class Message:
    label: str


ProgressEvent = Union[PhaseChanged, TotalSizeSet, ProgressUpdated, Message]

ProgressEventHandler = Callable[[ProgressEvent], None]


class ProgressReporter(Protocol):
    """
    A progress scope owned by the UI.

    `report` is called once per event; `close` is called exactly once.
    """

    def report(self, event: ProgressEvent) -> None: ...

    def close(self) -> None: ...


# -- Parser


class LineKind(Enum):
    EXTRACT = auto()
    NUMBER = auto()
    UNKNOWN = auto()


def classify_line(line: str) -> LineKind:
    line = line.strip()

    if line == kEXTRACT:
        return LineKind.EXTRACT
    elif _NUMBER_RE.fullmatch(line):
        return LineKind.NUMBER
    else:
        return LineKind.UNKNOWN


def increment(size: int, current_size: int, total_size: Optional[int]) -> float:
    """
    Percentage points from `current_size` to `size`.

    A total of zero (or unknown) reports no progress.
    """
    if not total_size:
        return 0.0

    return 100 * (size - current_size) / total_size


class ProgressParser:
    """
    Converts the bootstrap's diagnostic stream into ProgressEvents.

    The first number ever seen is the total size; every number after it is the current size.

    One instance per install run.
    """

    def __init__(self):
        self.total_size: Optional[int] = None
        self.current_size = 0

    def parse_line(self, line: str) -> Optional[ProgressEvent]:
        kind = classify_line(line)

        if kind == LineKind.EXTRACT:
            return PhaseChanged(kEXTRACTING)

        elif kind == LineKind.NUMBER:
            size = int(line.strip())

            if self.total_size is None:
                self.total_size = size

                return TotalSizeSet(size)

            event = ProgressUpdated(
                increment=increment(size, self.current_size, self.total_size),
                current_size=size,
                label=kDOWNLOADING,
            )

            self.current_size = size

            return event

        else:
            logger.debug(f"Ignore progress line {line!r}")

            return None


# -- Upgrade sequences


class SequenceState(Enum):
    IDLE = auto()
    OPEN = auto()


OpenProgress = Callable[[str, bool], ProgressReporter]


class UpgradeSequence:
    """
    A progress scope driven by server notifications: didStart opens it, didStop closes it.

    Each instance is independent from the others; sequences may interleave.
    """

    def __init__(self, name: str, open_progress: OpenProgress, indeterminate=False):
        self._lock = threading.Lock()
        self._name = name
        self._open_progress = open_progress
        self._indeterminate = indeterminate
        self._state = SequenceState.IDLE
        self._reporter: Optional[ProgressReporter] = None

    def state(self) -> SequenceState:
        with self._lock:
            return self._state

    def did_start(self, params: Any):
        title = (params or {}).get("tr", "")

        with self._lock:
            if self._state == SequenceState.OPEN:
                logger.warning(f"[{self._name}] Started while open; Closing previous")

                self._close()

            self._reset()

            self._reporter = self._open_progress(title, self._indeterminate)
            self._state = SequenceState.OPEN

    def did_stop(self, params: Any = None):
        with self._lock:
            if self._state == SequenceState.IDLE:
                logger.debug(f"[{self._name}] Stop while idle; Ignored")
                return

            self._close()

    def _report(self, event: ProgressEvent):
        # Must be called with lock held.
        if self._state == SequenceState.IDLE:
            logger.debug(f"[{self._name}] Event while idle; Ignored {event}")
            return

        if reporter := self._reporter:
            reporter.report(event)

    def _close(self):
        # Must be called with lock held.
        reporter = self._reporter

        self._reporter = None
        self._state = SequenceState.IDLE

        if reporter:
            reporter.close()

    def _reset(self):
        pass


class DlsUpgradeSequence(UpgradeSequence):
    """
    `$/dls/upgradeDls/*` - download and extraction of a new server binary.
    """

    def __init__(self, open_progress: OpenProgress):
        super().__init__("upgradeDls", open_progress)
        self.total_size: Optional[int] = None
        self.current_size = 0

    def _reset(self):
        self.total_size = None
        self.current_size = 0

    def did_change_total_size(self, params: Any):
        with self._lock:
            if self._state == SequenceState.IDLE:
                logger.debug(f"[{self._name}] Total size while idle; Ignored")
                return

            self.total_size = params["size"]

            self._report(TotalSizeSet(self.total_size))

    def did_change_current_size(self, params: Any):
        with self._lock:
            size = params["size"]

            event = ProgressUpdated(
                increment=increment(size, self.current_size, self.total_size),
                current_size=size,
                label=params.get("tr", kDOWNLOADING),
            )

            if self._state == SequenceState.OPEN:
                self.current_size = size

            self._report(event)

    def did_extract(self, params: Any):
        with self._lock:
            self._report(Message(params.get("tr", kEXTRACTING)))


class SelectionsUpgradeSequence(UpgradeSequence):
    """
    `$/dls/upgradeSelections/*` - indeterminate progress.
    """

    def __init__(self, open_progress: OpenProgress):
        super().__init__("upgradeSelections", open_progress, indeterminate=True)
