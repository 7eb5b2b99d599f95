"""
Services package for the AgentU orchestration core.

Business logic for quota accounting, credential selection, knowledge
retrieval, model dispatch and conversation turns.
"""

from .context_window_manager import ContextWindowManager
from .conversation_orchestrator import ConversationOrchestrator, TurnStreamEvent
from .credential_selector import CredentialSelector, select_credential
from .knowledge_retriever import AssembledContext, KnowledgeRetriever
from .model_gateway import ModelGateway
from .quota_ledger import QuotaLedger

__all__ = [
    "AssembledContext",
    "ContextWindowManager",
    "ConversationOrchestrator",
    "CredentialSelector",
    "KnowledgeRetriever",
    "ModelGateway",
    "QuotaLedger",
    "TurnStreamEvent",
    "select_credential",
]
