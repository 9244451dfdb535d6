"""
Tests for platform detection and dependency reporting.
"""

from devicehub import platform_utils
from devicehub.platform_utils import (
    check_platform_dependencies,
    format_platform_status,
    get_installation_instructions,
    get_platform_info,
    is_linux,
    is_windows,
)


def test_platform_info_keys():
    info = get_platform_info()

    for key in ('system', 'release', 'machine', 'architecture', 'python_version'):
        assert key in info


def test_platform_predicates(mocker):
    mocker.patch("platform.system", return_value="Windows")
    assert is_windows() and not is_linux()

    mocker.patch("platform.system", return_value="Linux")
    assert is_linux() and not is_windows()


def test_linux_dependencies(mocker):
    def which(command):
        return f"/usr/bin/{command}" if command in ("lpstat", "lp") else None

    mocker.patch("platform.system", return_value="Linux")
    mocker.patch.object(platform_utils.shutil, "which", side_effect=which)

    status = check_platform_dependencies("naps2")

    assert status['lpstat'] and status['lp']
    assert not status['scanimage']
    assert not status['naps2']
    assert 'pyudev' in status
    assert status['serial']
    assert 'powershell' not in status


def test_windows_dependencies(mocker):
    mocker.patch("platform.system", return_value="Windows")
    mocker.patch.object(platform_utils.shutil, "which", return_value="C:\\Windows\\powershell.exe")

    status = check_platform_dependencies()

    assert status['powershell']
    assert 'lpstat' not in status


def test_absolute_tool_path(tmp_path):
    tool = tmp_path / "naps2"
    tool.write_text("#!/bin/sh\n")
    tool.chmod(0o755)

    assert platform_utils._check_command_available(str(tool))
    assert not platform_utils._check_command_available(str(tmp_path / "missing"))


def test_unsupported_platform_has_no_instructions(mocker):
    mocker.patch("platform.system", return_value="Darwin")

    assert get_installation_instructions() == []


def test_format_platform_status(mocker):
    mocker.patch("platform.system", return_value="Linux")
    mocker.patch.object(platform_utils, "check_platform_dependencies",
                        return_value={'lpstat': True, 'cv2': False})

    lines = format_platform_status()

    assert lines[0] == "DeviceHub Platform Information"
    assert "  ✓ lpstat" in lines
    assert "  ✗ cv2 - camera capture (opencv)" in lines
    assert "Installation Instructions:" in lines
