"""Status and type enumerations shared by records, ORM tables and services."""

from enum import Enum


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class ServiceType(str, Enum):
    """Billing class of a provider; a credential's key type mirrors it."""

    USER_PROVIDED = "USER_PROVIDED"
    OFFICIAL_FREE = "OFFICIAL_FREE"
    OFFICIAL_PAID = "OFFICIAL_PAID"


class CredentialPreference(str, Enum):
    OFFICIAL_FREE = "OFFICIAL_FREE"
    USER_PROVIDED = "USER_PROVIDED"
    OFFICIAL_PAID = "OFFICIAL_PAID"
    AUTO = "AUTO"


# Tier order tried by AUTO selection
AUTO_TIER_ORDER: tuple[ServiceType, ...] = (
    ServiceType.OFFICIAL_FREE,
    ServiceType.USER_PROVIDED,
    ServiceType.OFFICIAL_PAID,
)


class ProviderStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"


class ModelStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"
    BETA = "BETA"


class CredentialStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"


class MessageStatus(str, Enum):
    NORMAL = "normal"
    HIDDEN = "hidden"
    DELETED = "deleted"


class KnowledgeBaseStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INDEXING = "INDEXING"
    ERROR = "ERROR"
    ARCHIVED = "ARCHIVED"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
