"""Tests for startup validation."""

import pytest

import startup

PLATFORM_VARS = ["DISCORD_ENABLE", "DISCORD_TOKEN", "DISCORD_ADMIN_ID", "MATRIX_ENABLE", "MATRIX_USER_ID", "MATRIX_PASSWORD"]
VALID_TOKEN = "M" * 24 + "." + "abcdef" + "." + "x" * 27


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in PLATFORM_VARS:
        monkeypatch.delenv(name, raising=False)


class TestCheckPlatforms:

    def test_discord_default_needs_token(self, capsys):
        ok, issues = startup.check_platforms()
        assert not ok
        assert issues == ["missing DISCORD_TOKEN"]

    def test_valid_discord(self, monkeypatch, capsys):
        monkeypatch.setenv("DISCORD_TOKEN", VALID_TOKEN)
        assert startup.check_platforms() == (True, [])

    def test_bad_admin_id(self, monkeypatch, capsys):
        monkeypatch.setenv("DISCORD_TOKEN", VALID_TOKEN)
        monkeypatch.setenv("DISCORD_ADMIN_ID", "me")
        assert startup.check_platforms() == (False, ["invalid DISCORD_ADMIN_ID"])

    def test_matrix_needs_credentials(self, monkeypatch, capsys):
        monkeypatch.setenv("DISCORD_ENABLE", "false")
        monkeypatch.setenv("MATRIX_ENABLE", "true")
        monkeypatch.setenv("MATRIX_USER_ID", "@bot:hs")
        assert startup.check_platforms() == (False, ["missing MATRIX_PASSWORD"])

    def test_no_platform(self, monkeypatch, capsys):
        monkeypatch.setenv("DISCORD_ENABLE", "0")
        ok, issues = startup.check_platforms()
        assert not ok
        assert "no platform" in issues[0]


class TestCheckProviders:

    def test_openai_key_without_file(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr(startup, "BASE_DIR", tmp_path)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert startup.check_providers_config() == (True, [])
        monkeypatch.delenv("OPENAI_API_KEY")
        assert startup.check_providers_config() == (False, ["missing OPENAI_API_KEY"])

    def test_invalid_json(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setattr(startup, "BASE_DIR", tmp_path)
        (tmp_path / "providers.json").write_text("{nope", encoding="utf-8")
        assert startup.check_providers_config() == (False, ["invalid providers.json"])


def test_data_sources_only_warn(monkeypatch, capsys):
    for name in ("OPENWEATHERMAP_API_KEY", "HA_API_URL", "HA_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    ok, issues = startup.check_data_sources()
    assert not ok
    assert not any("missing" in i or "invalid" in i for i in issues)
