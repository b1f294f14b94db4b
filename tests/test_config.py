from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from bosun_mcp.config import BosunSettings, get_settings

_ENV_NAMES = (
    "BOSUN_ASSISTANT_PATH",
    "BOSUN_ASSISTANT_ARGS",
    "BOSUN_ALLOWED_MODELS",
    "BOSUN_WORKSPACE_ROOT",
    "BOSUN_DATABASE_PATH",
    "BOSUN_PROMPT_PATHS",
    "BOSUN_RESERVED_CHANNELS",
    "BOSUN_MAX_SESSIONS_PER_USER",
    "BOSUN_IDLE_TIMEOUT",
    "BOSUN_LOG_LEVEL",
    "CHROMA_PERSIST_PATH",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults() -> None:
    settings = BosunSettings()

    assert settings.assistant_path is None
    assert settings.allowed_models == ("sonnet", "opus")
    assert settings.reserved_channels == ("general",)
    assert settings.max_sessions_per_user == 5
    assert settings.idle_timeout_seconds == 3600.0
    assert settings.end_sessions_on_shutdown is True
    assert settings.prompt_paths == (Path("prompts"),)


def test_environment_lists_are_split(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOSUN_ALLOWED_MODELS", "sonnet, haiku ,")
    monkeypatch.setenv("BOSUN_RESERVED_CHANNELS", "General,Random")
    monkeypatch.setenv("BOSUN_ASSISTANT_ARGS", "--max-turns 5")
    monkeypatch.setenv("BOSUN_PROMPT_PATHS", os.pathsep.join([str(tmp_path / "a"), str(tmp_path / "b")]))
    monkeypatch.setenv("BOSUN_LOG_LEVEL", " debug ")

    settings = BosunSettings()

    assert settings.allowed_models == ("sonnet", "haiku")
    assert settings.reserved_channels == ("general", "random")
    assert settings.assistant_args == ("--max-turns", "5")
    assert settings.prompt_paths == (tmp_path / "a", tmp_path / "b")
    assert settings.log_level == "DEBUG"


def test_fields_can_be_set_by_name(tmp_path: Path) -> None:
    settings = BosunSettings(workspace_root=tmp_path / "ws", max_sessions_per_user=2, allowed_models=["opus"])

    assert settings.workspace_root == tmp_path / "ws"
    assert settings.max_sessions_per_user == 2
    assert settings.allowed_models == ("opus",)


@pytest.mark.parametrize(
    "name, value",
    [
        ("BOSUN_MAX_SESSIONS_PER_USER", "0"),
        ("BOSUN_IDLE_TIMEOUT", "-1"),
        ("BOSUN_LOG_LEVEL", "chatty"),
        ("BOSUN_ALLOWED_MODELS", " , "),
    ],
)
def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        BosunSettings()


def test_get_settings_resolves_paths_and_caches(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOSUN_WORKSPACE_ROOT", "ws")
    monkeypatch.setenv("BOSUN_DATABASE_PATH", "data/bosun.db")

    settings = get_settings()

    assert settings.workspace_root == (tmp_path / "ws").resolve()
    assert settings.database_path == (tmp_path / "data" / "bosun.db").resolve()
    assert all(path.is_absolute() for path in settings.prompt_paths)
    assert get_settings() is settings


def test_env_file_is_read(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("BOSUN_MAX_SESSIONS_PER_USER=3\n", encoding="utf-8")

    assert BosunSettings().max_sessions_per_user == 3
