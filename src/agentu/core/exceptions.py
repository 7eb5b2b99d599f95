"""Custom exceptions for the AgentU orchestration core.

Every domain error carries a stable ``error_code``, an HTTP-style
``status_code`` hint for presentation layers, and a ``details`` dict.
"""

from typing import Any


class AgentUException(Exception):
    """Base exception class for AgentU."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Generic Exceptions
class NotFoundError(AgentUException):
    """Generic exception for when a resource is not found."""

    def __init__(self, message: str, details: dict[str, Any] | None = None, error_code: str = "NOT_FOUND"):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=404,
            details=details,
        )


class ConflictError(AgentUException):
    """Generic exception for when a resource conflict occurs."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="CONFLICT",
            status_code=409,
            details=details,
        )


class ValidationError(AgentUException):
    """Raised when input validation fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Validation error: {message}",
            error_code="VALIDATION_ERROR",
            status_code=400,
            details=details,
        )


# Lookup Exceptions
class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(f"User '{user_id}' not found", {"user_id": user_id}, "USER_NOT_FOUND")


class ProviderNotFoundError(NotFoundError):
    def __init__(self, provider_id: str):
        super().__init__(f"Provider '{provider_id}' not found", {"provider_id": provider_id}, "PROVIDER_NOT_FOUND")


class ModelNotFoundError(NotFoundError):
    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' not found", {"model_id": model_id}, "MODEL_NOT_FOUND")


class CredentialNotFoundError(NotFoundError):
    def __init__(self, credential_id: str):
        super().__init__(
            f"Credential '{credential_id}' not found", {"credential_id": credential_id}, "CREDENTIAL_NOT_FOUND"
        )


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found", {"session_id": session_id}, "SESSION_NOT_FOUND")


class MessageNotFoundError(NotFoundError):
    def __init__(self, message_id: str):
        super().__init__(f"Message '{message_id}' not found", {"message_id": message_id}, "MESSAGE_NOT_FOUND")


class KnowledgeBaseNotFoundError(NotFoundError):
    def __init__(self, knowledge_base_id: str):
        super().__init__(
            f"Knowledge base '{knowledge_base_id}' not found",
            {"knowledge_base_id": knowledge_base_id},
            "KNOWLEDGE_BASE_NOT_FOUND",
        )


class DocumentNotFoundError(NotFoundError):
    def __init__(self, document_id: str):
        super().__init__(f"Document '{document_id}' not found", {"document_id": document_id}, "DOCUMENT_NOT_FOUND")


# Conversation Exceptions
class SessionNotActiveError(AgentUException):
    """Raised when a write is attempted on a session that is not ACTIVE."""

    def __init__(self, session_id: str, status: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Session '{session_id}' is {status}, not ACTIVE",
            error_code="SESSION_NOT_ACTIVE",
            status_code=409,
            details=details or {"session_id": session_id, "status": status},
        )


class UserNotActiveError(AgentUException):
    """Raised when a non-active user tries to start a turn."""

    def __init__(self, user_id: str, status: str):
        super().__init__(
            message=f"User '{user_id}' is {status}",
            error_code="USER_NOT_ACTIVE",
            status_code=403,
            details={"user_id": user_id, "status": status},
        )


# Quota and Credential Exceptions
class QuotaExceededError(AgentUException):
    """Raised when a consumption would push an account past its monthly limit.

    ``details["severity"]`` is always ``"hard_stop"``: the request is rejected
    and nothing was consumed. Approaching the limit is reported through
    ``QuotaStatus.warning`` instead of an exception.
    """

    def __init__(
        self,
        account_id: str,
        requested: int,
        used: int,
        limit: int,
        reason: str | None = None,
    ):
        remaining = max(0, limit - used)
        super().__init__(
            message=reason
            or f"Monthly token quota exceeded for '{account_id}': requested {requested}, remaining {remaining}",
            error_code="QUOTA_EXCEEDED",
            status_code=429,
            details={
                "severity": "hard_stop",
                "account_id": account_id,
                "requested": requested,
                "used": used,
                "limit": limit,
                "remaining": remaining,
            },
        )


class NoAvailableCredentialError(AgentUException):
    """Raised when no credential can serve a (user, provider, preference) request."""

    def __init__(self, user_id: str, provider_id: str, preference: str, reason: str):
        super().__init__(
            message=f"No available credential for provider '{provider_id}' ({preference}): {reason}",
            error_code="NO_AVAILABLE_CREDENTIAL",
            status_code=409,
            details={"user_id": user_id, "provider_id": provider_id, "preference": preference, "reason": reason},
        )


# Provider Exceptions
class UnsupportedProviderError(AgentUException):
    """Raised when no backend is registered for a provider code."""

    def __init__(self, provider_code: str, available: list[str] | None = None):
        super().__init__(
            message=f"Unsupported provider '{provider_code}'",
            error_code="UNSUPPORTED_PROVIDER",
            status_code=400,
            details={"provider_code": provider_code, "available": available or []},
        )


class RateLimitExceededError(AgentUException):
    """Raised when a local rate limit rejects a provider call before dispatch."""

    def __init__(self, message: str = "Rate limit exceeded", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code="RATE_LIMIT_EXCEEDED",
            status_code=429,
            details=details,
        )


class ProviderError(AgentUException):
    """Base exception for provider call failures."""


class ProviderTransientError(ProviderError):
    """Timeout, 5xx or upstream rate-limit signal. Retried before it is surfaced."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Provider transient error: {message}",
            error_code="PROVIDER_TRANSIENT_ERROR",
            status_code=503,
            details=details,
        )


class ProviderFatalError(ProviderError):
    """Auth failure or malformed request. Never retried."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Provider error: {message}",
            error_code="PROVIDER_FATAL_ERROR",
            status_code=502,
            details=details,
        )


# Knowledge Base Exceptions
class EmbeddingFailureError(AgentUException):
    """Raised when the embedding backend or the vector index fails."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Embedding failure: {reason}",
            error_code="EMBEDDING_FAILURE",
            status_code=502,
            details=details or {"reason": reason},
        )


class ChunkConfigError(AgentUException):
    """Raised when chunk_size/overlap violate 0 <= overlap < chunk_size."""

    def __init__(self, chunk_size: Any, chunk_overlap: Any):
        super().__init__(
            message=(
                f"Invalid chunk configuration: chunk_size={chunk_size}, chunk_overlap={chunk_overlap} "
                "(require chunk_size > 0 and 0 <= chunk_overlap < chunk_size)"
            ),
            error_code="CHUNK_CONFIG_ERROR",
            status_code=400,
            details={"chunk_size": chunk_size, "chunk_overlap": chunk_overlap},
        )


class SecretEncryptionError(AgentUException):
    """Raised when a secret cannot be encrypted or decrypted."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Secret encryption error: {reason}",
            error_code="SECRET_ENCRYPTION_ERROR",
            status_code=500,
            details={"reason": reason},
        )


# Database Exceptions
class DatabaseConnectionError(AgentUException):
    """Raised when there's a database connection error (network, auth, etc.)."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Database connection error: {reason}",
            error_code="DATABASE_CONNECTION_ERROR",
            status_code=503,
            details=details or {"reason": reason},
        )


class DatabaseSessionError(AgentUException):
    """Raised when there's an error with database session management."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Database session error: {reason}",
            error_code="DATABASE_SESSION_ERROR",
            status_code=500,
            details=details or {"reason": reason},
        )
