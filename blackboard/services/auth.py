"""Authentication resolution for spawned agents.

Agents inside containers authenticate one of three ways: an API key in
the environment, an OAuth token in the environment, or the host's Claude
Code config directory mounted read-only. The credential is resolved once
per run and reused for every spawn.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..config.constants import (
    AUTH_MODES,
    CLAUDE_CONFIG_DIR,
    CLAUDE_CREDENTIALS_FILE,
    ENV_API_KEY,
    ENV_OAUTH_TOKEN,
    OAUTH_EXPIRY_WARNING_SECONDS,
)
from ..exceptions import AuthenticationError

logger = logging.getLogger(__name__)

NO_AUTH_SUGGESTION = (
    "Choose one of:\n"
    "  1. Run 'claude login' to authenticate with your Claude subscription\n"
    f"  2. Set {ENV_API_KEY} in your environment\n"
    "  3. Pass --api-key"
)


@dataclass
class OAuthToken:
    token: str
    expires_at: Optional[float] = None  # Epoch seconds, None if unknown

    def seconds_remaining(self, now: Optional[float] = None) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - (now if now is not None else time.time())


@dataclass
class Credential:
    """The single authentication method handed to every container."""
    mode: str  # 'env', 'oauth', 'config'
    api_key: Optional[str] = None
    oauth_token: Optional[str] = None
    config_dir: Optional[Path] = None


def read_credentials_file(config_dir: Path = CLAUDE_CONFIG_DIR) -> Optional[OAuthToken]:
    """Read the OAuth token Claude Code stores in ``.credentials.json``."""
    path = Path(config_dir) / CLAUDE_CREDENTIALS_FILE
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return None

    for key in ("claudeAiOauth", "oauthAccount"):
        entry = data.get(key) or {}
        if entry.get("accessToken"):
            expires_ms = entry.get("expiresAt")
            return OAuthToken(
                token=entry["accessToken"],
                expires_at=expires_ms / 1000 if expires_ms else None,
            )
    return None


def default_oauth_provider(config_dir: Path = CLAUDE_CONFIG_DIR) -> Optional[OAuthToken]:
    """CLAUDE_CODE_OAUTH_TOKEN, else the credentials file."""
    token = os.environ.get(ENV_OAUTH_TOKEN)
    if token:
        return OAuthToken(token=token)
    return read_credentials_file(config_dir)


class AuthResolver:
    """Resolve a Credential for a requested mode.

    ``mode=None`` auto-detects: OAuth first, then the API key.
    """

    def __init__(
        self,
        config_dir: Path = CLAUDE_CONFIG_DIR,
        oauth_provider: Optional[Callable[[], Optional[OAuthToken]]] = None,
    ):
        self.config_dir = Path(config_dir)
        self.oauth_provider = oauth_provider or (lambda: default_oauth_provider(self.config_dir))

    def resolve(self, mode: Optional[str] = None, api_key: Optional[str] = None) -> Credential:
        if mode is None:
            return self._auto(api_key)
        if mode not in AUTH_MODES:
            raise AuthenticationError(
                f"Unknown auth mode '{mode}'", suggestion=f"Use one of: {', '.join(AUTH_MODES)}"
            )
        if mode == "env":
            return self._env(api_key)
        if mode == "oauth":
            return self._oauth()
        return self._config()

    def _env(self, api_key: Optional[str]) -> Credential:
        key = api_key or os.environ.get(ENV_API_KEY)
        if not key:
            raise AuthenticationError(
                f"--auth env requires {ENV_API_KEY} environment variable or --api-key flag",
                suggestion=f"Set {ENV_API_KEY} or pass --api-key",
            )
        return Credential(mode="env", api_key=key)

    def _valid_oauth_token(self) -> Optional[str]:
        token = self.oauth_provider()
        if token is None:
            return None
        remaining = token.seconds_remaining()
        if remaining is not None:
            if remaining <= 0:
                logger.warning(
                    "OAuth token has expired. Run 'claude login' or 'claude setup-token' to refresh."
                )
                return None
            if remaining < OAUTH_EXPIRY_WARNING_SECONDS:
                logger.warning(
                    "OAuth token expires in %d minutes. Consider refreshing with 'claude login'.",
                    int(remaining // 60),
                )
        return token.token

    def _oauth(self) -> Credential:
        token = self._valid_oauth_token()
        if not token:
            raise AuthenticationError(
                "No valid OAuth token found",
                suggestion=f"Run 'claude login' or set {ENV_OAUTH_TOKEN}",
            )
        return Credential(mode="oauth", oauth_token=token)

    def _config(self) -> Credential:
        if not self.config_dir.is_dir():
            raise AuthenticationError(
                f"Claude config directory not found: {self.config_dir}",
                suggestion="Run 'claude login' to create it, or use --auth env",
            )
        return Credential(mode="config", config_dir=self.config_dir)

    def _auto(self, api_key: Optional[str]) -> Credential:
        token = self._valid_oauth_token()
        if token:
            return Credential(mode="oauth", oauth_token=token)
        key = api_key or os.environ.get(ENV_API_KEY)
        if key:
            return Credential(mode="env", api_key=key)
        raise AuthenticationError(
            "No authentication method available.", suggestion=NO_AUTH_SUGGESTION
        )
