"""Tests for blackboard.services.auth."""

import json
import logging
import time

import pytest

from blackboard.exceptions import AuthenticationError
from blackboard.services.auth import (
    AuthResolver,
    OAuthToken,
    default_oauth_provider,
    read_credentials_file,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_credentials(config_dir, entry_key="claudeAiOauth", expires_in=None, token="oat-file"):
    config_dir.mkdir(parents=True, exist_ok=True)
    entry = {"accessToken": token}
    if expires_in is not None:
        entry["expiresAt"] = int((time.time() + expires_in) * 1000)
    (config_dir / ".credentials.json").write_text(json.dumps({entry_key: entry}))


def _resolver(token=None, config_dir=None):
    kwargs = {"oauth_provider": lambda: token}
    if config_dir is not None:
        kwargs["config_dir"] = config_dir
    return AuthResolver(**kwargs)


# ---------------------------------------------------------------------------
# Credentials file
# ---------------------------------------------------------------------------


class TestCredentialsFile:
    def test_reads_claude_ai_oauth(self, tmp_path):
        _write_credentials(tmp_path, expires_in=7200)
        token = read_credentials_file(tmp_path)
        assert token.token == "oat-file"
        assert 7000 < token.seconds_remaining() <= 7200

    def test_reads_oauth_account_entry(self, tmp_path):
        _write_credentials(tmp_path, entry_key="oauthAccount")
        token = read_credentials_file(tmp_path)
        assert token.token == "oat-file"
        assert token.expires_at is None

    def test_missing_file(self, tmp_path):
        assert read_credentials_file(tmp_path) is None

    def test_malformed_file(self, tmp_path):
        (tmp_path / ".credentials.json").write_text("{not json")
        assert read_credentials_file(tmp_path) is None

    def test_environment_token_wins(self, tmp_path, monkeypatch):
        _write_credentials(tmp_path)
        monkeypatch.setenv("CLAUDE_CODE_OAUTH_TOKEN", "oat-env")
        assert default_oauth_provider(tmp_path).token == "oat-env"


# ---------------------------------------------------------------------------
# Explicit modes
# ---------------------------------------------------------------------------


class TestExplicitModes:
    def test_env_mode_with_flag(self):
        credential = _resolver().resolve("env", "sk-flag")
        assert credential.mode == "env"
        assert credential.api_key == "sk-flag"

    def test_env_mode_from_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        assert _resolver().resolve("env").api_key == "sk-env"

    def test_env_mode_without_key(self):
        with pytest.raises(AuthenticationError) as exc_info:
            _resolver().resolve("env")
        assert "--auth env requires ANTHROPIC_API_KEY" in str(exc_info.value)

    def test_oauth_mode(self):
        credential = _resolver(OAuthToken("oat-1", time.time() + 7200)).resolve("oauth")
        assert credential.mode == "oauth"
        assert credential.oauth_token == "oat-1"

    def test_oauth_mode_rejects_expired_token(self):
        with pytest.raises(AuthenticationError, match="No valid OAuth token found"):
            _resolver(OAuthToken("oat-1", time.time() - 10)).resolve("oauth")

    def test_oauth_mode_warns_near_expiry(self, caplog):
        with caplog.at_level(logging.WARNING, logger="blackboard.services.auth"):
            _resolver(OAuthToken("oat-1", time.time() + 600)).resolve("oauth")
        assert "expires in" in caplog.text

    def test_config_mode(self, tmp_path):
        credential = _resolver(config_dir=tmp_path).resolve("config")
        assert credential.mode == "config"
        assert credential.config_dir == tmp_path

    def test_config_mode_missing_directory(self, tmp_path):
        with pytest.raises(AuthenticationError):
            _resolver(config_dir=tmp_path / "nope").resolve("config")

    def test_unknown_mode(self):
        with pytest.raises(AuthenticationError, match="Unknown auth mode"):
            _resolver().resolve("kerberos")


# ---------------------------------------------------------------------------
# Auto-detection
# ---------------------------------------------------------------------------


class TestAutoDetect:
    def test_prefers_oauth(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        credential = _resolver(OAuthToken("oat-1")).resolve(None, "sk-flag")
        assert credential.mode == "oauth"

    def test_falls_back_to_flag_then_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        assert _resolver().resolve(None, "sk-flag").api_key == "sk-flag"
        assert _resolver().resolve(None).api_key == "sk-env"

    def test_expired_oauth_falls_back_to_key(self):
        credential = _resolver(OAuthToken("oat-1", time.time() - 1)).resolve(None, "sk-flag")
        assert credential.mode == "env"

    def test_nothing_available(self):
        with pytest.raises(AuthenticationError) as exc_info:
            _resolver().resolve(None)
        assert "No authentication method available" in str(exc_info.value)
        assert "claude login" in exc_info.value.suggestion
