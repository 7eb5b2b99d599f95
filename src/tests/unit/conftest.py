"""
Shared pytest fixtures and path setup for unit tests.
"""

import os
import random
import sys
from pathlib import Path

from cryptography.fernet import Fernet

# Set environment variables BEFORE any agentu imports. Leaving
# AGENTU_DATABASE_URL unset selects the in-memory store backend.
os.environ.setdefault("AGENTU_EMBEDDING_BACKEND", "hashing")
os.environ.setdefault("AGENTU_SECRET_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("AGENTU_LOG_LEVEL", "DEBUG")

# Add src to sys.path so agentu.* imports work when running pytest from repo root.
PROJECT_SRC = Path(__file__).resolve().parents[2]
if str(PROJECT_SRC) not in sys.path:
    sys.path.insert(0, str(PROJECT_SRC))

import pytest  # noqa: E402

from agentu.core.config import ConfigurationManager, Settings  # noqa: E402
from agentu.core.in_memory_redis import InMemoryRedisClient  # noqa: E402
from agentu.core.rate_limiting import RateLimitService  # noqa: E402
from agentu.core.store_backend import InMemoryStoreBackend  # noqa: E402
from agentu.models.enums import ServiceType  # noqa: E402
from agentu.models.records import (  # noqa: E402
    CredentialRecord,
    ModelRecord,
    ProviderRecord,
    SessionRecord,
    UserRecord,
)
from agentu.schemas.conversation import SessionCreate  # noqa: E402
from agentu.services.conversation_orchestrator import ConversationOrchestrator  # noqa: E402
from agentu.services.credential_selector import CredentialSelector  # noqa: E402
from agentu.services.embedding_service import EmbeddingService, HashingEmbeddingBackend  # noqa: E402
from agentu.services.knowledge_retriever import KnowledgeRetriever  # noqa: E402
from agentu.services.model_gateway import ModelGateway  # noqa: E402
from agentu.services.quota_ledger import QuotaLedger  # noqa: E402
from agentu.services.vector_index import InMemoryVectorIndex  # noqa: E402


def build_test_settings(**overrides) -> Settings:
    values = {
        "embedding_backend": "hashing",
        "default_vector_dimension": 64,
        "llm_retry_base_delay": 0.01,
        "llm_retry_max_delay": 0.05,
        "secret_encryption_key": os.environ["AGENTU_SECRET_ENCRYPTION_KEY"],
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with offline embeddings and near-zero retry delays."""
    return build_test_settings()


@pytest.fixture
def settings_factory():
    """Build test settings with field overrides: ``settings_factory(enable_rate_limiting=False)``."""
    return build_test_settings


class Harness:
    """Services wired over one in-memory store, with helpers to create fixtures.

    ``sleeps`` records every backoff delay the gateway asked for; no real
    sleeping happens.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = InMemoryStoreBackend()
        self.config_manager = ConfigurationManager(settings)
        self.rate_limiter = RateLimitService(settings, redis_client=InMemoryRedisClient())
        self.sleeps: list[float] = []
        self.gateway = ModelGateway(
            settings=settings,
            rate_limiter=self.rate_limiter,
            sleep=self._sleep,
            rng=random.Random(7),
        )
        self.embedding_service = EmbeddingService(HashingEmbeddingBackend(), settings)
        self.retriever = KnowledgeRetriever(
            self.store,
            embedding_service=self.embedding_service,
            vector_index=InMemoryVectorIndex(self.store),
            config_manager=self.config_manager,
        )
        self.ledger = QuotaLedger(self.store, settings)
        self.selector = CredentialSelector(self.store)
        self.orchestrator = ConversationOrchestrator(
            store=self.store,
            quota_ledger=self.ledger,
            credential_selector=self.selector,
            knowledge_retriever=self.retriever,
            model_gateway=self.gateway,
            config_manager=self.config_manager,
        )

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    async def add_user(self, **fields) -> UserRecord:
        return await self.store.add_user(UserRecord(**fields))

    async def add_provider(self, code: str = "local", **fields) -> tuple[ProviderRecord, ModelRecord]:
        provider = await self.store.add_provider(ProviderRecord(code=code, **fields))
        model = await self.store.add_model(
            ModelRecord(
                provider_id=provider.id,
                model_code="echo-1",
                context_window=8192,
                max_tokens=1024,
                input_price_per_1m_tokens="1.0",
                output_price_per_1m_tokens="2.0",
                is_recommended=True,
            )
        )
        return provider, model

    async def add_credential(
        self, user: UserRecord, provider: ProviderRecord, key_type: ServiceType = ServiceType.USER_PROVIDED, **fields
    ) -> CredentialRecord:
        return await self.store.add_credential(
            CredentialRecord(user_id=user.id, provider_id=provider.id, key_type=key_type, **fields)
        )

    async def start_session(self, **session_fields) -> tuple[UserRecord, SessionRecord]:
        """User + local provider + USER_PROVIDED credential + ACTIVE session."""
        user = await self.add_user()
        provider, model = await self.add_provider()
        await self.add_credential(user, provider)
        session = await self.orchestrator.create_session(
            user.id, SessionCreate(provider_id=provider.id, model_id=model.id, **session_fields)
        )
        return user, session


@pytest.fixture
def harness(test_settings: Settings) -> Harness:
    return Harness(test_settings)
