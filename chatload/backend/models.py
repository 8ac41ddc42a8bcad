"""Credentials and errors for the backend's HTTP API."""

from dataclasses import dataclass


class BackendError(Exception):
    """A backend call failed or returned an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthFailure(BackendError):
    """Sign-in or connection-ticket acquisition was rejected."""


class DirectoryError(BackendError):
    """The chat list could not be fetched."""


def as_bearer(token: str) -> str:
    return token if token.lower().startswith("bearer ") else f"Bearer {token}"


@dataclass(frozen=True)
class Credentials:
    user_id: str
    auth_token: str
