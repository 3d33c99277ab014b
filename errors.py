#!/usr/bin/env python3
"""Common error types shared across modules.

Kept in a leaf module to avoid circular imports between the store, the
repositories, the fetch pipeline and the HTTP layer.
"""

from typing import Optional


class NanoreaderError(Exception):
    """Base class for every error raised by nanoreader itself."""


class StorageError(NanoreaderError):
    """Raised when the key/value store fails to read or write."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(f"database error: {message}")
        self.operation = operation


class CorruptRecordError(StorageError):
    """Raised when a stored value cannot be decoded into its record type."""

    def __init__(self, namespace: str, key: bytes, detail: str):
        NanoreaderError.__init__(self, f"serialization error in {namespace}: {detail}")
        self.operation = "decode"
        self.namespace = namespace
        self.key = key


class NotFound(NanoreaderError):
    """Raised when a lookup by id targets something that does not exist."""

    def __init__(self, what: str):
        super().__init__(f"{what} was not found")
        self.what = what


class UsernameTaken(NanoreaderError):
    def __init__(self, username: str):
        super().__init__("username already taken")
        self.username = username


class AuthenticationError(NanoreaderError):
    """Raised when credentials are missing, malformed or wrong."""


class UsernameNotFound(AuthenticationError):
    def __init__(self):
        super().__init__("username not found")


class PasswordIncorrect(AuthenticationError):
    def __init__(self):
        super().__init__("password incorrect")


class FeedFetchError(NanoreaderError):
    """Raised when a feed cannot be retrieved (transport error or non-2xx status)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(f"http client error: {message}")
        self.status = status


class FeedParseError(NanoreaderError):
    """Raised when fetched bytes cannot be parsed as a feed."""

    def __init__(self, message: str):
        super().__init__(f"error while parsing feed: {message}")


class IndexBuildError(NanoreaderError):
    """Raised when the search index cannot be rebuilt or persisted."""

    def __init__(self, message: str):
        super().__init__(f"failed to rebuild search index: {message}")


class OpmlError(NanoreaderError):
    """Raised when an OPML document cannot be parsed."""

    def __init__(self, message: str):
        super().__init__(f"error parsing opml: {message}")


__all__ = [
    "NanoreaderError",
    "StorageError",
    "CorruptRecordError",
    "NotFound",
    "UsernameTaken",
    "AuthenticationError",
    "UsernameNotFound",
    "PasswordIncorrect",
    "FeedFetchError",
    "FeedParseError",
    "IndexBuildError",
    "OpmlError",
]
