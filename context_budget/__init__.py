"""context-budget: keeps long LLM conversations inside a token budget."""

from .config import load_config
from .controller import ContextBudgetController
from .types import (
    ContextBudgetConfig,
    ConversationBudgetState,
    DeletionReport,
    GenerationPlan,
    InjectionBlock,
    Message,
    StatusMetrics,
)

__version__ = "0.1.0"

__all__ = [
    "ContextBudgetController",
    "load_config",
    "ContextBudgetConfig",
    "ConversationBudgetState",
    "DeletionReport",
    "GenerationPlan",
    "InjectionBlock",
    "Message",
    "StatusMetrics",
]
