"""Jira credential resolution"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jiracdc.errors import CredentialsError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    username: str
    token: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, token='***')"


class CredentialsProvider:
    """Resolves a username/token pair from some secret store."""

    def resolve(self) -> Credentials:
        raise NotImplementedError


class StaticCredentialsProvider(CredentialsProvider):
    """Credentials supplied directly (env settings or tests)."""

    def __init__(self, username: Optional[str], token: Optional[str]):
        self._username = username
        self._token = token

    def resolve(self) -> Credentials:
        if not self._username:
            raise CredentialsError("username not configured")
        if not self._token:
            raise CredentialsError("token not configured")
        return Credentials(username=self._username, token=self._token)


class DirectoryCredentialsProvider(CredentialsProvider):
    """Reads `username` and `token` files from a mounted secret directory.

    Re-reading on every resolve() picks up rotated secrets.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _read(self, name: str) -> str:
        path = self.directory / name
        try:
            value = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CredentialsError(f"{name} not found in credentials secret {self.directory}", cause=e)
        if not value:
            raise CredentialsError(f"{name} is empty in credentials secret {self.directory}")
        return value

    def resolve(self) -> Credentials:
        return Credentials(username=self._read("username"), token=self._read("token"))


def provider_from_settings(settings) -> CredentialsProvider:
    """Pick the credentials provider for the given Settings."""
    if settings.jira_credentials_dir:
        logger.info(f"Using Jira credentials from {settings.jira_credentials_dir}")
        return DirectoryCredentialsProvider(settings.jira_credentials_dir)
    return StaticCredentialsProvider(settings.jira_username, settings.jira_api_token)
