import logging
import platform
import shlex
import shutil
import subprocess
import threading
from enum import Enum, auto
from typing import BinaryIO, Callable, Dict, List, Optional, cast

from .dls_progress import ProgressEvent, ProgressParser

logger = logging.getLogger(__name__)


kDUB = "dub"

# Probed in order; the first compiler found is used.
kCOMPILERS = ["dmd", "ldc2", "gdc"]


class MissingDependency(Exception):
    """
    Dub or a D compiler is not in PATH.

    Message is meant to be shown to the user.
    """


class InstallCancelled(Exception):
    pass


class InstallFailed(Exception):
    """
    An install step couldn't be run.

    Message is meant to be shown to the user.
    """


class StepPolicy(Enum):
    # Exit code is not checked; next step runs regardless.
    IGNORE = auto()
    # Exit code is logged; the step's output is still used.
    LOG = auto()


class Step(Enum):
    REMOVE = auto()
    FETCH = auto()
    BOOTSTRAP = auto()


# What happens when a step exits with a non-zero code.
STEP_POLICY: Dict[Step, StepPolicy] = {
    Step.REMOVE: StepPolicy.IGNORE,
    Step.FETCH: StepPolicy.IGNORE,
    Step.BOOTSTRAP: StepPolicy.LOG,
}


def subprocess_kwargs() -> dict:
    """
    Keyword arguments for subprocess calls, adding platform-specific flags.
    """
    kwargs = {}

    if platform.system() == "Windows":
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW  # type: ignore

    return kwargs


def find_dub() -> Optional[str]:
    return shutil.which(kDUB)


def find_compiler() -> Optional[str]:
    for compiler in kCOMPILERS:
        if shutil.which(compiler):
            return compiler

    return None


def remove_args(dub: str) -> List[str]:
    return [dub, "remove", "--version=*", "dls"]


def fetch_args(dub: str) -> List[str]:
    return [dub, "fetch", "dls"]


def bootstrap_args(dub: str, compiler: str) -> List[str]:
    return [
        dub,
        "run",
        f"--compiler={compiler}",
        "--quiet",
        "dls:bootstrap",
        "--",
        "--progress",
    ]


class Installer:
    """
    Installs DLS with Dub: remove stale installs, fetch, then build with `dls:bootstrap`.

    `on_event` is called, on the installing thread, for every progress event - in the order lines are received.

    `install` blocks until the bootstrap process ends; `cancel` may be called from any other thread.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[ProgressEvent], None]] = None,
        dub: Optional[str] = None,
        compiler: Optional[str] = None,
    ):
        self._lock = threading.Lock()
        self._on_event = on_event
        self._dub = dub
        self._compiler = compiler
        self._process: Optional[subprocess.Popen] = None
        self._cancelled = False

    def check(self):
        """
        Resolves Dub and compiler; Raises MissingDependency if either is not found.
        """
        if self._dub is None:
            self._dub = find_dub()

        if not self._dub:
            raise MissingDependency("Dub not found in PATH")

        if self._compiler is None:
            self._compiler = find_compiler()

        if not self._compiler:
            raise MissingDependency("No compiler found in PATH")

    def cancel(self):
        with self._lock:
            self._cancelled = True

            process = self._process

        if process and process.poll() is None:
            logger.info(f"Cancel install; Kill {process.pid}")

            process.kill()

    def _spawn(self, args: List[str], **kwargs) -> subprocess.Popen:
        with self._lock:
            if self._cancelled:
                raise InstallCancelled()

            logger.debug(f"Run `{shlex.join(args)}`")

            try:
                self._process = subprocess.Popen(args, **kwargs, **subprocess_kwargs())
            except OSError as e:
                raise InstallFailed(f"Failed to run {args[0]}: {e}") from e

            return self._process

    def _check_exit(self, step: Step, returncode: int):
        with self._lock:
            if self._cancelled:
                raise InstallCancelled()

        if returncode != 0:
            if STEP_POLICY[step] == StepPolicy.LOG:
                logger.warning(f"{step.name} exited with code {returncode}")
            else:
                logger.debug(f"{step.name} exited with code {returncode}; Ignored")

    def _run(self, step: Step, args: List[str]):
        process = self._spawn(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

        self._check_exit(step, process.wait())

    def _emit(self, event: Optional[ProgressEvent]):
        if event is None or self._on_event is None:
            return

        try:
            self._on_event(event)
        except Exception:
            logger.exception("Progress handler error")

    def install(self) -> str:
        """
        Runs the install steps and returns the path printed by the bootstrap.

        The path is the whole standard output - it's not stripped or split.
        """
        self.check()

        # Resolved by check.
        dub = cast(str, self._dub)
        compiler = cast(str, self._compiler)

        self._run(Step.REMOVE, remove_args(dub))
        self._run(Step.FETCH, fetch_args(dub))

        process = self._spawn(
            bootstrap_args(dub, compiler),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

        stdout = cast(BinaryIO, process.stdout)
        stderr = cast(BinaryIO, process.stderr)

        chunks = []

        # Stdout is drained on its own thread so neither pipe can fill up and block the bootstrap.
        def _drain_stdout():
            while chunk := stdout.read(4096):
                chunks.append(chunk)

        stdout_reader = threading.Thread(
            name="BootstrapStdout",
            target=_drain_stdout,
            daemon=True,
        )
        stdout_reader.start()

        parser = ProgressParser()

        for line in stderr:
            self._emit(parser.parse_line(line.decode("utf-8", errors="replace")))

        stdout_reader.join()

        self._check_exit(Step.BOOTSTRAP, process.wait())

        # Undecodable bytes are kept, as surrogates, so the path is spawned as printed.
        path = b"".join(chunks).decode("utf-8", errors="surrogateescape")

        logger.info(f"DLS installed at {path.strip()!r}")

        return path
