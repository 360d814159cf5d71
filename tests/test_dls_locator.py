import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from lib.dls_locator import executable_name, install_dir, locate, needs_install


def touch(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("")
    return path


class TestExecutableName:
    def test_posix(self):
        assert executable_name("dls", windows=False) == "dls"

    def test_windows(self):
        assert executable_name("dls", windows=True) == "dls.exe"


class TestInstallDir:
    def test_posix(self, tmp_path):
        assert install_dir({"HOME": str(tmp_path)}, windows=False) == (
            tmp_path / ".dub" / "packages" / ".bin"
        )

    def test_windows(self, tmp_path):
        assert install_dir({"LOCALAPPDATA": str(tmp_path)}, windows=True) == (
            tmp_path / "dub" / "packages" / ".bin"
        )

    def test_no_home(self):
        assert install_dir({}, windows=False) is None


class TestLocate:
    def test_flat_path_exists(self, tmp_path):
        flat = touch(tmp_path / ".dub" / "packages" / ".bin" / "dls")

        assert locate(None, {"HOME": str(tmp_path)}, windows=False) == flat

    def test_latest_wins(self, tmp_path):
        bin_dir = tmp_path / ".dub" / "packages" / ".bin"
        touch(bin_dir / "dls")
        latest = touch(bin_dir / "dls-latest" / "dls")

        assert locate(None, {"HOME": str(tmp_path)}, windows=False) == latest

    def test_flat_path_is_not_verified(self, tmp_path):
        path = locate(None, {"HOME": str(tmp_path)}, windows=False)

        assert path == tmp_path / ".dub" / "packages" / ".bin" / "dls"
        assert not path.exists()
        assert needs_install(path)

    def test_configured_path(self, tmp_path):
        configured = touch(tmp_path / "custom" / "dls")
        touch(tmp_path / ".dub" / "packages" / ".bin" / "dls-latest" / "dls")

        assert locate(str(configured), {"HOME": str(tmp_path)}, windows=False) == configured

    def test_configured_path_not_on_disk_is_ignored(self, tmp_path):
        flat = touch(tmp_path / ".dub" / "packages" / ".bin" / "dls")

        assert (
            locate(str(tmp_path / "missing"), {"HOME": str(tmp_path)}, windows=False)
            == flat
        )

    def test_empty_configured_path_is_ignored(self, tmp_path):
        flat = touch(tmp_path / ".dub" / "packages" / ".bin" / "dls")

        assert locate("", {"HOME": str(tmp_path)}, windows=False) == flat

    def test_windows_layout(self, tmp_path):
        latest = touch(tmp_path / "dub" / "packages" / ".bin" / "dls-latest" / "dls.exe")

        assert locate(None, {"LOCALAPPDATA": str(tmp_path)}, windows=True) == latest

    def test_no_home(self):
        assert locate(None, {}, windows=False) is None
        assert needs_install(None)
