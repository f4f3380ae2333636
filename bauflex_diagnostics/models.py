"""Diagnostic record types shared by every monitor."""

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"
    FATAL = "FATAL"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def parse(cls, value) -> "LogLevel":
        """Accept a LogLevel or a case-insensitive name (WARNING is an alias of WARN)."""
        if isinstance(value, cls):
            return value
        name = str(value).strip().upper()
        if name == "WARNING":
            name = "WARN"
        return cls(name)


_SEVERITY = {level: rank for rank, level in enumerate(LogLevel)}

ERROR_LEVELS = (LogLevel.ERROR, LogLevel.CRITICAL, LogLevel.FATAL)


class Category(Enum):
    UI = "UI"
    API = "API"
    DATABASE = "DATABASE"
    LOGIC = "LOGIC"
    PERFORMANCE = "PERFORMANCE"
    MEMORY = "MEMORY"
    NETWORK = "NETWORK"
    STATE = "STATE"
    SECURITY = "SECURITY"
    VALIDATION = "VALIDATION"

    @classmethod
    def parse(cls, value) -> "Category":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class ViolationType(Enum):
    CONTRADICTION = "CONTRADICTION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    DUPLICATE = "DUPLICATE"
    MEMORY_LEAK = "MEMORY_LEAK"
    CIRCULAR_REF = "CIRCULAR_REF"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id(prefix: str) -> str:
    """Time-plus-random identifier, e.g. ``event-1717171717171-k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class DiagnosticEvent:
    id: str
    timestamp: str
    level: LogLevel
    category: Category
    message: str
    session_id: str
    details: Any = None
    stack_trace: Optional[str] = None
    context: dict = field(default_factory=lambda: {"type": "general"})
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "sessionId": self.session_id,
            "context": dict(self.context),
            "meta": dict(self.meta),
        }
        if self.details is not None:
            data["details"] = self.details
        if self.stack_trace:
            data["stackTrace"] = self.stack_trace
        return data


@dataclass(frozen=True)
class Session:
    session_id: str
    started_at: str

    @classmethod
    def start(cls) -> "Session":
        return cls(session_id=generate_id("session"), started_at=utc_now_iso())


@dataclass(frozen=True)
class APICallRecord:
    url: str
    method: str
    status: int
    duration_ms: float
    size_bytes: int = 0
    timestamp: str = field(default_factory=utc_now_iso)
    success: bool = True
    error: Optional[dict] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "url": self.url,
            "method": self.method,
            "status": self.status,
            "duration": round(self.duration_ms, 2),
            "size": self.size_bytes,
            "timestamp": self.timestamp,
            "success": self.success,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class QueryRecord:
    operation_name: str
    duration_ms: float
    timestamp: str = field(default_factory=utc_now_iso)
    model: Optional[str] = None
    operation: Optional[str] = None
    error: Optional[dict] = None

    def to_dict(self) -> dict:
        data = {
            "query": self.operation_name,
            "duration": round(self.duration_ms, 2),
            "timestamp": self.timestamp,
            "model": self.model,
            "operation": self.operation,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class StateViolation:
    type: ViolationType
    message: str
    details: Any = None
    rule: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "message": self.message,
            "details": self.details,
            "rule": self.rule,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StateSnapshot:
    store_name: str
    state: Any
    action_name: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "storeName": self.store_name,
            "state": self.state,
            "actionName": self.action_name,
        }


@dataclass(frozen=True)
class IntegrityIssue:
    type: str  # ORPHANED_REFERENCE, DUPLICATE_VALUES, INVALID_DATA, ANALYSIS_ERROR
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message, "details": self.details}
