import os
import sys

import pytest

from hyrelay.paths import data_dir, home_dir


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("HOME", "HOMEDRIVE", "HOMEPATH", "USERPROFILE", "XDG_DATA_HOME"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_home_from_env(clean_env, tmp_path):
    clean_env.setenv("HOME", str(tmp_path))
    assert home_dir() == str(tmp_path)


def test_home_fallback_non_windows(clean_env):
    clean_env.setattr(sys, "platform", "linux")
    assert home_dir() == "."


def test_home_windows_drive_and_path(clean_env):
    clean_env.setattr(sys, "platform", "win32")
    clean_env.setenv("HOMEDRIVE", "C:")
    clean_env.setenv("HOMEPATH", "\\Users\\someone")
    clean_env.setenv("USERPROFILE", "D:\\profile")
    assert home_dir() == "C:" + "\\Users\\someone"


def test_home_windows_userprofile_when_incomplete(clean_env):
    clean_env.setattr(sys, "platform", "win32")
    clean_env.setenv("HOMEDRIVE", "C:")
    clean_env.setenv("USERPROFILE", "D:\\profile")
    assert home_dir() == "D:\\profile"


def test_home_windows_nothing_set(clean_env):
    clean_env.setattr(sys, "platform", "win32")
    assert home_dir() == "."


def test_home_windows_prefers_home(clean_env, tmp_path):
    clean_env.setattr(sys, "platform", "win32")
    clean_env.setenv("HOME", str(tmp_path))
    clean_env.setenv("USERPROFILE", "D:\\profile")
    assert home_dir() == str(tmp_path)


def test_data_dir_under_home(clean_env, tmp_path):
    clean_env.setenv("HOME", str(tmp_path))
    result = data_dir()
    assert result.startswith(str(tmp_path))
    assert result.endswith(os.path.join(".local", "share", "certmagic"))


def test_data_dir_xdg_override(clean_env, tmp_path):
    clean_env.setenv("HOME", "/nonexistent")
    clean_env.setenv("XDG_DATA_HOME", str(tmp_path))
    assert data_dir() == os.path.join(str(tmp_path), "certmagic")


def test_data_dir_relative_fallback(clean_env):
    clean_env.setattr(sys, "platform", "linux")
    assert data_dir() == os.path.join(".", ".local", "share", "certmagic")