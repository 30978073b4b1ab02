"""Core module containing framework-agnostic business logic."""
from .errors import (
    DrawQueueError,
    ValidationError,
    ServerConnectionError,
    GenerationError,
    PersistenceError,
)
from .state import ConnectionStatus, ConnectionState
from .profiles import ServerProfile
from .jobs import (
    GenerationJob,
    JobRequest,
    JobStatus,
    JobProgress,
    HintData,
    HintType,
    HintBuilder,
)
from .session import (
    Session,
    Connector,
    PromptRequest,
    ProgressUpdate,
    PreviewUpdate,
    GenerationResult,
    SessionMetadata,
)
from .storage import JsonFileStore, MemoryStore
from .catalog import ModelsCatalog, ModelInfo
from .connection import ConnectionManager
from .queue import JobQueue, QueueEvent, QueueEventKind
from .http_session import HttpSession, http_connector
from .tokens import ModelTokenLimit, estimate, estimate_tokens
from .config import Settings, load_settings
from .services import AppServices, create_services

__all__ = [
    # Errors
    "DrawQueueError",
    "ValidationError",
    "ServerConnectionError",
    "GenerationError",
    "PersistenceError",
    # Connection
    "ConnectionStatus",
    "ConnectionState",
    "ServerProfile",
    "ConnectionManager",
    "ModelsCatalog",
    "ModelInfo",
    # Jobs
    "GenerationJob",
    "JobRequest",
    "JobStatus",
    "JobProgress",
    "HintData",
    "HintType",
    "HintBuilder",
    "JobQueue",
    "QueueEvent",
    "QueueEventKind",
    # Sessions
    "Session",
    "Connector",
    "PromptRequest",
    "ProgressUpdate",
    "PreviewUpdate",
    "GenerationResult",
    "SessionMetadata",
    "HttpSession",
    "http_connector",
    # Storage
    "JsonFileStore",
    "MemoryStore",
    # Tokens
    "ModelTokenLimit",
    "estimate",
    "estimate_tokens",
    # Setup
    "Settings",
    "load_settings",
    "AppServices",
    "create_services",
]
