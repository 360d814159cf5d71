import os
from pathlib import Path
from typing import Mapping, Optional, Union

kDLS = "dls"
kDLS_LATEST = "dls-latest"


def is_windows() -> bool:
    return os.name == "nt"


def executable_name(name: str, windows: Optional[bool] = None) -> str:
    if windows is None:
        windows = is_windows()

    return f"{name}.exe" if windows else name


def install_dir(
    environ: Optional[Mapping[str, str]] = None,
    windows: Optional[bool] = None,
) -> Optional[Path]:
    """
    Returns Dub's binaries directory - `<HOME>/.dub/packages/.bin` or `<LOCALAPPDATA>/dub/packages/.bin` on Windows.

    Returns None if the home variable is not set.
    """
    if environ is None:
        environ = os.environ

    if windows is None:
        windows = is_windows()

    home = environ.get("LOCALAPPDATA" if windows else "HOME")

    if not home:
        return None

    return Path(home) / ("dub" if windows else ".dub") / "packages" / ".bin"


def locate(
    configured_path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    windows: Optional[bool] = None,
) -> Optional[Path]:
    """
    Resolves the path of the DLS executable.

    Resolution order:
    1. `configured_path`, if there's a file at it;
    2. The 'dls-latest' install, if it exists;
    3. The flat install - existence is not checked.

    A flat path which doesn't exist must be handled by the caller (see `needs_install`).
    """
    if configured_path and str(configured_path).strip():
        configured = Path(str(configured_path).strip())

        if configured.exists():
            return configured

    if (bin_dir := install_dir(environ, windows)) is None:
        return None

    dls = executable_name(kDLS, windows)

    latest = bin_dir / kDLS_LATEST / dls

    if latest.exists():
        return latest

    return bin_dir / dls


def needs_install(path: Optional[Path]) -> bool:
    return path is None or not path.exists()
