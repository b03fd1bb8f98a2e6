"""
Discord-specific exceptions for error handling.
"""

from typing import Optional


class PlatformError(Exception):
    """Base exception for chat platform errors."""

    def __init__(self, message: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server_id = server_id

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, server_id={self.server_id!r})"


class PlatformUnavailableError(PlatformError):
    """Raised when the platform client is not configured or cannot become ready."""

    def __init__(self, message: str = "Discord client is not ready", **kwargs):
        super().__init__(message, **kwargs)


class GuildNotFoundError(PlatformError):
    """Raised when the bot is not a member of the requested guild."""

    def __init__(self, server_id: str):
        super().__init__(f"Guild {server_id} not found or bot is not a member", server_id=server_id)


class PlatformRequestError(PlatformError):
    """Raised when Discord rejects or fails a request (5xx, rate limit)."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status
