import importlib
import os

import pytest

from charforge import config


def test_load_env_file_sets_new_vars_and_keeps_existing(tmp_path, monkeypatch):
    env_path = tmp_path / "sample.env"
    env_path.write_text(
        "\n".join(
            [
                "# comment",
                "EXISTING=from_file",
                "NEW_VAR='new_value'",
                "INVALID_LINE",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("EXISTING", "from_env")
    monkeypatch.delenv("NEW_VAR", raising=False)

    config._load_env_file(env_path)

    assert os.environ["EXISTING"] == "from_env"
    assert os.environ["NEW_VAR"] == "new_value"
    monkeypatch.delenv("NEW_VAR", raising=False)


def test_load_env_file_returns_when_path_missing(tmp_path):
    missing_path = tmp_path / "missing.env"
    config._load_env_file(missing_path)


@pytest.mark.parametrize(
    "value, expected_message",
    [
        ("0", "TEST_POSITIVE_INT must be > 0"),
        ("-1", "TEST_POSITIVE_INT must be > 0"),
        ("oops", "TEST_POSITIVE_INT must be an integer"),
    ],
)
def test_get_positive_int_rejects_invalid_values(monkeypatch, value, expected_message):
    monkeypatch.setenv("TEST_POSITIVE_INT", value)
    with pytest.raises(ValueError, match=expected_message):
        config._get_positive_int("TEST_POSITIVE_INT", 7)


def test_get_positive_int_uses_default(monkeypatch):
    monkeypatch.delenv("TEST_POSITIVE_INT", raising=False)
    assert config._get_positive_int("TEST_POSITIVE_INT", 7) == 7


def test_get_int_in_range(monkeypatch):
    monkeypatch.setenv("TEST_LEVEL", "10")
    with pytest.raises(ValueError, match="TEST_LEVEL must be between 0 and 9"):
        config._get_int_in_range("TEST_LEVEL", 9, 0, 9)

    monkeypatch.setenv("TEST_LEVEL", "3")
    assert config._get_int_in_range("TEST_LEVEL", 9, 0, 9) == 3


def test_get_float_rejects_text(monkeypatch):
    monkeypatch.setenv("TEST_FLOAT", "warm")
    with pytest.raises(ValueError, match="TEST_FLOAT must be a number"):
        config._get_float("TEST_FLOAT", 0.7)


def test_invalid_timeout_fails_fast_on_import(monkeypatch):
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "0")
    try:
        with pytest.raises(ValueError, match="LLM_TIMEOUT_SECONDS must be > 0"):
            importlib.reload(config)
    finally:
        monkeypatch.delenv("LLM_TIMEOUT_SECONDS", raising=False)
        importlib.reload(config)


def test_compression_level_is_read_from_env(monkeypatch):
    monkeypatch.setenv("CHARX_COMPRESSION_LEVEL", "4")
    try:
        reloaded = importlib.reload(config)
        assert reloaded.CHARX_COMPRESSION_LEVEL == 4
    finally:
        monkeypatch.delenv("CHARX_COMPRESSION_LEVEL", raising=False)
        importlib.reload(config)
