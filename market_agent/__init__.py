from __future__ import annotations

from market_agent.bidding import BidPlacementEngine
from market_agent.builder import DeliverableBuilder
from market_agent.categorize import Categorizer, KeywordCategorizer
from market_agent.client import ApiResponse, Marketplace, MarketplaceClient
from market_agent.codegen import CodeGenerator, CommandCodeGenerator, OpenAICodeGenerator
from market_agent.config import AgentSettings, BidStrategy, RunningConfig, load_settings
from market_agent.errors import (
    CodeGenerationError,
    ConfigError,
    MarketAgentError,
    PublishError,
    StateInvariantError,
    TransportError,
)
from market_agent.files import parse_generated_files, serialize_files
from market_agent.hosting import GistPublisher, Publisher
from market_agent.ledger import EventJournal, InMemoryJournal, Journal
from market_agent.monitor import AwardMonitor
from market_agent.orchestrator import Orchestrator, build_orchestrator
from market_agent.preflight import Preflight, PreflightVerifier
from market_agent.schemas import (
    AgentState,
    Deliverable,
    EventType,
    Job,
    JobDetail,
    JournalEvent,
    PendingBid,
    TrackedJob,
    TrackedStatus,
)
from market_agent.store import JsonStateStore, StateStore
from market_agent.submission import SubmissionReconciler
from market_agent.verify import CommandResult, SubprocessToolchain, Toolchain

__all__ = [
    "__version__",
    # Orchestration
    "Orchestrator",
    "build_orchestrator",
    "BidPlacementEngine",
    "AwardMonitor",
    "DeliverableBuilder",
    "SubmissionReconciler",
    # Collaborator protocols
    "Marketplace",
    "Categorizer",
    "CodeGenerator",
    "Toolchain",
    "Publisher",
    "Preflight",
    "StateStore",
    "Journal",
    # Shipped implementations
    "MarketplaceClient",
    "ApiResponse",
    "KeywordCategorizer",
    "CommandCodeGenerator",
    "OpenAICodeGenerator",
    "SubprocessToolchain",
    "CommandResult",
    "GistPublisher",
    "PreflightVerifier",
    "JsonStateStore",
    "EventJournal",
    "InMemoryJournal",
    # Config
    "AgentSettings",
    "RunningConfig",
    "BidStrategy",
    "load_settings",
    # Schemas
    "Job",
    "JobDetail",
    "TrackedJob",
    "TrackedStatus",
    "PendingBid",
    "Deliverable",
    "AgentState",
    "EventType",
    "JournalEvent",
    # File convention
    "parse_generated_files",
    "serialize_files",
    # Errors
    "MarketAgentError",
    "ConfigError",
    "TransportError",
    "CodeGenerationError",
    "PublishError",
    "StateInvariantError",
]

__version__ = "0.1.0"
