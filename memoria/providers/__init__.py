"""Model providers: local Ollama, remote LiteLLM, usage ledger and the gateway."""

from memoria.providers.gateway import (
    ChatResult,
    EmbeddingResult,
    EscalatedClassification,
    LocalClassification,
    ProviderGateway,
    UsageContext,
)
from memoria.providers.usage import BudgetStatus, UsageLedger, UsageRecord

__all__ = [
    "BudgetStatus",
    "ChatResult",
    "EmbeddingResult",
    "EscalatedClassification",
    "LocalClassification",
    "ProviderGateway",
    "UsageContext",
    "UsageLedger",
    "UsageRecord",
]
