"""
RagChat - Error Taxonomy
=========================
A small hierarchy of exceptions shared by every layer.  Each class
carries the HTTP-style ``status_code`` the transport reports for it,
so route handlers never need to inspect the message text.

    RagChatError
    ├── ValidationError        400  empty / missing user input
    ├── ProcessingError        500  completion failed after augmentation
    │   └── RetrievalError     500  query transform or retrieval failed
    ├── IndexingError          500  one document failed to index (isolated)
    ├── ConfigurationError     500  missing credentials, fatal at startup
    └── ChannelBusyError       409  a stream is already live for the session
"""

from __future__ import annotations


class RagChatError(Exception):
    """Base class for all RagChat specific errors."""

    status_code: int = 500

    def __init__(self, message: str = "An unspecified error occurred in RagChat.") -> None:
        self.message = message
        super().__init__(message)


class ValidationError(RagChatError):
    """Raised when a request is rejected before any engine call is made."""

    status_code = 400

    def __init__(self, message: str = "Message cannot be empty") -> None:
        super().__init__(message)


class ProcessingError(RagChatError):
    """Raised when a chat turn fails after validation."""

    def __init__(self, message: str = "Failed to process request") -> None:
        super().__init__(message)


class RetrievalError(ProcessingError):
    """Raised when query transformation or content retrieval fails."""

    def __init__(self, message: str = "Failed to process augmentation request") -> None:
        super().__init__(message)


class IndexingError(RagChatError):
    """Raised for a single document that could not be hashed, loaded or ingested."""

    def __init__(self, path: str = "unknown", message: str = "Indexing failed.") -> None:
        self.path = path
        super().__init__(f"Error indexing '{path}': {message}")


class ConfigurationError(RagChatError):
    """Raised for missing or invalid configuration.  Not recoverable at request time."""

    def __init__(self, message: str = "Configuration error.") -> None:
        super().__init__(message)


class ChannelBusyError(RagChatError):
    """Raised when a stream is requested while another is still live for the same session."""

    status_code = 409

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"A stream is already active for session '{session_id}'")
