"""KidVolts package for household missions, a points ledger and a shared bazaar."""

from .admin import AuditLog
from .bazaar import BazaarEconomy
from .config import Settings
from .exceptions import (
    ConflictError,
    InsufficientPointsError,
    InsufficientStockError,
    InvalidTransitionError,
    KidVoltsError,
    RecordNotFoundError,
    RuleSyntaxError,
    UnauthorizedError,
)
from .ledger import PointsLedger
from .models import Actor, AuditEvent, BatchFailure, BatchResult, Decision, HistoryStatus, Role
from .ops import StructuredLogger
from .persistence import BazaarItem, HistoryRecord, Mission, RecordStore, User, make_engine, seed_defaults
from .policy import PolicyGate, Rule, RuleSet, compile_rule
from .scheduler import Scheduler, WeeklySchedule
from .service import KidVolts
from .workflow import HistoryWorkflow

__all__ = [
    "Actor",
    "AuditEvent",
    "AuditLog",
    "BatchFailure",
    "BatchResult",
    "BazaarEconomy",
    "BazaarItem",
    "Decision",
    "HistoryRecord",
    "HistoryStatus",
    "HistoryWorkflow",
    "KidVolts",
    "Mission",
    "PointsLedger",
    "PolicyGate",
    "RecordStore",
    "Role",
    "Rule",
    "RuleSet",
    "Scheduler",
    "Settings",
    "StructuredLogger",
    "User",
    "WeeklySchedule",
    "compile_rule",
    "make_engine",
    "seed_defaults",
    "KidVoltsError",
    "ConflictError",
    "InsufficientPointsError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "RecordNotFoundError",
    "RuleSyntaxError",
    "UnauthorizedError",
]
