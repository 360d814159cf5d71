import json
import stat
import sys
from pathlib import Path

import pytest

kTESTS = Path(__file__).parent


def executable(path: Path, script: Path) -> Path:
    """
    Writes an executable at path which runs script with the current interpreter.
    """
    path.write_text(
        f"#!{sys.executable}\n"
        "import runpy, sys\n"
        f"sys.argv[0] = {str(script)!r}\n"
        f"runpy.run_path({str(script)!r}, run_name='__main__')\n"
    )

    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    return path


@pytest.fixture
def fake_dls(tmp_path) -> Path:
    return executable(tmp_path / "dls", kTESTS / "fake_dls.py")


@pytest.fixture
def fake_dub(tmp_path) -> Path:
    return executable(tmp_path / "dub", kTESTS / "fake_dub.py")


@pytest.fixture
def dub_log(tmp_path, monkeypatch):
    log = tmp_path / "dub.log"

    monkeypatch.setenv("FAKE_DUB_LOG", str(log))

    def invocations():
        if not log.exists():
            return []

        return [json.loads(line) for line in log.read_text().splitlines()]

    return invocations


@pytest.fixture
def dls_argv(tmp_path, monkeypatch):
    argv = tmp_path / "argv.json"

    monkeypatch.setenv("FAKE_DLS_ARGV", str(argv))

    def read():
        return json.loads(argv.read_text())

    return read
