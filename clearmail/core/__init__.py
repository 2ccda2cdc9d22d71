"""
Core modules for ClearMail.

This package contains the processing core:
- result_cache: Persistent verdict cache keyed by request fingerprint
- backoff: Retry with exponential backoff and a separate rate-limit budget
- concurrency_gate: Per-backend cap on in-flight requests
- prompt_engine: Template-based prompts
- dispatcher: Cache -> gate -> backoff -> parse for one request
- batch_pipeline: Batched, capped session processing
- action_applier: Flag and move operations for a verdict
- orchestrator: One end-to-end processing session
"""

from .action_applier import ActionApplier, ActionResult
from .backoff import BackoffExecutor
from .batch_pipeline import BatchPipeline, SessionCounters, SessionReport, SessionState
from .concurrency_gate import ConcurrencyGate, PendingRequest
from .dispatcher import Dispatcher, normalize_response, parse_verdict
from .orchestrator import Orchestrator, SessionResult
from .prompt_engine import PromptEngine
from .result_cache import ResultCache, compute_fingerprint

__all__ = [
    "ActionApplier",
    "ActionResult",
    "BackoffExecutor",
    "BatchPipeline",
    "SessionCounters",
    "SessionReport",
    "SessionState",
    "ConcurrencyGate",
    "PendingRequest",
    "Dispatcher",
    "normalize_response",
    "parse_verdict",
    "Orchestrator",
    "SessionResult",
    "PromptEngine",
    "ResultCache",
    "compute_fingerprint",
]
