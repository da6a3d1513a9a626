"""Natural-language infrastructure memory.

Free-text commands are turned into validated actions by a resilient parser,
dispatched by a command router, and applied to organization records held in a
vector-indexed store. The package wires together

* OpenAI-compatible chat and embedding clients,
* the action, record and component schemas with their validators,
* the on-disk organization index with bootstrap and recovery, and
* the mutation engine that edits each organization's component graph.
"""

from .clients import LLMClient
from .errors import (
    ActionValidationError,
    ComponentNotFoundError,
    ExtractionError,
    IndexShapeError,
    InfrasimError,
    NotFoundError,
    RecordNotFoundError,
)
from .interactions import Interaction, InteractionLog
from .manager import InfraMemoryManager
from .mutations import MutationEngine, MutationResult
from .parser import ParseResult, ResilientParser, RetryConfig, fallback_action
from .runtime import InfraRuntime, main as runtime_main
from .schemas import (
    ComponentKind,
    ComponentPatch,
    FidelityLevel,
    InfrastructureComponent,
    OrganizationRecord,
    Port,
    Position,
    validate_action,
    validate_record,
)
from .storage import OrganizationStore, SearchResult
from .tools import ChatResponder, CommandRouter, SimulationState, ToolResult

__all__ = [
    "ActionValidationError",
    "ChatResponder",
    "CommandRouter",
    "ComponentKind",
    "ComponentNotFoundError",
    "ComponentPatch",
    "ExtractionError",
    "FidelityLevel",
    "IndexShapeError",
    "InfraMemoryManager",
    "InfraRuntime",
    "InfrasimError",
    "InfrastructureComponent",
    "Interaction",
    "InteractionLog",
    "LLMClient",
    "MutationEngine",
    "MutationResult",
    "NotFoundError",
    "OrganizationRecord",
    "OrganizationStore",
    "ParseResult",
    "Port",
    "Position",
    "RecordNotFoundError",
    "ResilientParser",
    "RetryConfig",
    "SearchResult",
    "SimulationState",
    "ToolResult",
    "fallback_action",
    "runtime_main",
    "validate_action",
    "validate_record",
]
