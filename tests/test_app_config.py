from pathlib import Path

import pytest

from ical_api.config import AppSettings, parse_interval_expression


def test_defaults(monkeypatch):
    for name in ("PORT", "ICAL_API_PORT", "REFRESH_INTERVAL_SECONDS", "ICAL_API_REFRESH_INTERVAL_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    cfg = AppSettings()
    assert cfg.port == 3000
    assert cfg.refresh_interval_seconds == 3600
    assert cfg.source_offset_seconds == 3600
    assert cfg.links_path == Path("links.txt")


def test_port_from_plain_port_env(monkeypatch):
    monkeypatch.delenv("ICAL_API_PORT", raising=False)
    monkeypatch.setenv("PORT", "8080")

    assert AppSettings().port == 8080


def test_refresh_interval_accepts_product_expression(monkeypatch):
    monkeypatch.setenv("ICAL_API_REFRESH_INTERVAL_SECONDS", "2*60*60")

    assert AppSettings().refresh_interval_seconds == 7200


def test_refresh_interval_rejects_code(monkeypatch):
    monkeypatch.setenv("ICAL_API_REFRESH_INTERVAL_SECONDS", "__import__('os')")

    with pytest.raises(ValueError):
        AppSettings()


@pytest.mark.parametrize(("value", "expected"), [("60", 60), (" 60 * 60 ", 3600), (90, 90)])
def test_parse_interval_expression(value, expected):
    assert parse_interval_expression(value) == expected


def test_prefixed_settings_from_env(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("ICAL_API_LINKS_PATH", str(tmp_path / "feeds.txt"))
    monkeypatch.setenv("ICAL_API_FETCH_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("ICAL_API_SOURCE_OFFSET_SECONDS", "0")
    monkeypatch.setenv("ICAL_API_REGEX_MAX_PATTERN_LENGTH", "64")
    monkeypatch.setenv("ICAL_API_LOG_LEVEL", "debug")

    cfg = AppSettings()
    assert cfg.links_path == tmp_path / "feeds.txt"
    assert cfg.fetch_timeout_seconds == 12.5
    assert cfg.source_offset_seconds == 0
    assert cfg.regex_max_pattern_length == 64
    assert cfg.log_level == "DEBUG"


def test_env_file_is_read(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ICAL_API_PORT", raising=False)
    monkeypatch.delenv("PORT", raising=False)
    (tmp_path / ".server.env").write_text("PORT=4000\n", encoding="utf-8")

    assert AppSettings().port == 4000


def test_db_path_follows_data_root(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("ICAL_API_DB_PATH", raising=False)

    assert AppSettings(data_root=tmp_path).db_path == tmp_path / "db" / "events.db"

    monkeypatch.setenv("ICAL_API_DATA_ROOT", str(tmp_path / "runtime"))
    assert AppSettings().db_path == tmp_path / "runtime" / "db" / "events.db"


def test_explicit_db_path_wins_over_data_root(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("ICAL_API_DB_PATH", str(tmp_path / "elsewhere.db"))

    cfg = AppSettings(data_root=tmp_path / "runtime")
    assert cfg.db_path == tmp_path / "elsewhere.db"
