"""
Dispatcher: the single `classify(request) -> Verdict` entry point.

Flow: Fingerprint -> ResultCache -> ConcurrencyGate -> BackoffExecutor ->
provider -> normalize -> parse -> ResultCache.

Model output is untrusted: a response that cannot be parsed into a valid
verdict yields an `unknown` verdict instead of an exception. Backend
failures that survive the retry policy are raised to the caller.
"""

import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional

from .backoff import BackoffExecutor
from .concurrency_gate import ConcurrencyGate
from .prompt_engine import PromptEngine
from .result_cache import ResultCache, compute_fingerprint
from ..errors import BackendError
from ..providers.base import ClassificationRequest, Judgment, LLMProvider, Verdict

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"'''(?:json)?[ \t]*\n?", re.IGNORECASE)


def normalize_response(raw: str) -> str:
    """
    Clean common formatting noise from model output before JSON parsing.

    - curly double quotes -> straight double quotes
    - curly single quotes and backticks -> straight single quotes
    - escaped underscores -> underscores
    - code-fence markers (''' / ```, optionally tagged json) removed
    """
    text = raw or ""
    text = text.replace("“", '"').replace("”", '"')
    text = text.replace("‘", "'").replace("’", "'")
    text = text.replace("`", "'")
    text = text.replace("\\_", "_")
    text = _FENCE_RE.sub("", text)
    return text.strip()


def _extract_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except ValueError:
        # Prose around the object: retry on the outermost braces
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(text[start:end + 1])
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def verdict_from_payload(payload: Dict[str, Any], categories: List[str], source: str = "llm") -> Verdict:
    """
    Build a verdict from a decoded response object.

    Returns an `unknown` verdict when the payload does not describe a valid
    decision: missing/non-boolean `meets_criteria`, or a rejection whose
    category is outside `categories`.
    """
    judgment = payload.get("meets_criteria")
    if not isinstance(judgment, bool):
        return Verdict.unknown(f"invalid meets_criteria: {judgment!r}")

    category = payload.get("category") or ""
    explanation = payload.get("explanation") or ""
    if not isinstance(category, str) or not isinstance(explanation, str):
        return Verdict.unknown("category and explanation must be strings")

    if judgment:
        return Verdict(Judgment.KEEP, category.strip(), explanation, source=source)

    category = category.strip()
    if category not in categories:
        return Verdict.unknown(f"category {category!r} is not one of the configured categories")
    return Verdict(Judgment.REJECT, category, explanation, source=source)


def parse_verdict(raw: str, categories: List[str]) -> Verdict:
    """Normalize and parse raw model output. Never raises."""
    payload = _extract_object(normalize_response(raw))
    if payload is None:
        return Verdict.unknown("response is not a JSON object")
    return verdict_from_payload(payload, categories)


class Dispatcher:
    """
    Composes ConcurrencyGate, ResultCache and BackoffExecutor around one
    provider.

    Usage:
        dispatcher = Dispatcher(provider, gate, cache, executor, prompt_engine)
        verdict = dispatcher.classify(request)
    """

    def __init__(
        self,
        provider: LLMProvider,
        gate: ConcurrencyGate,
        cache: ResultCache,
        executor: BackoffExecutor,
        prompt_engine: PromptEngine,
        gate_timeout: Optional[float] = None,
    ):
        self.provider = provider
        self.gate = gate
        self.cache = cache
        self.executor = executor
        self.prompt_engine = prompt_engine
        self.gate_timeout = gate_timeout

        self._lock = threading.Lock()
        self._stats = {"requests": 0, "cache_hits": 0, "backend_calls": 0, "parse_failures": 0, "errors": 0}

    @property
    def backend_kind(self) -> str:
        return self.provider.get_name()

    @property
    def categories(self) -> List[str]:
        return self.prompt_engine.categories

    def parameters(self) -> Dict[str, Any]:
        """Backend parameters folded into the request fingerprint."""
        return {**self.provider.parameters(), "prompt": self.prompt_engine.parameters()}

    def fingerprint(self, request: ClassificationRequest) -> str:
        return compute_fingerprint(request, self.parameters())

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def classify(self, request: ClassificationRequest) -> Verdict:
        """
        Classify one request.

        Raises:
            BackendError: When the backend call fails after all retries
        """
        self._count("requests")
        fingerprint = self.fingerprint(request)

        cached = self.cache.get(fingerprint)
        if cached is not None:
            verdict = verdict_from_payload(cached, self.categories, source="cache")
            if verdict.is_actionable:
                self._count("cache_hits")
                logger.debug(f"Cache hit {fingerprint[:12]}: {verdict.judgment.value}")
                return verdict
            logger.debug(f"Ignoring unusable cache entry {fingerprint[:12]}")

        raw = self._call_backend(request)
        verdict = parse_verdict(raw, self.categories)

        if not verdict.is_actionable:
            self._count("parse_failures")
            logger.warning(
                f"Could not parse backend response into a verdict ({verdict.explanation}): {raw[:200]!r}"
            )
            return verdict

        self.cache.put(fingerprint, verdict.to_cache_payload())
        return verdict

    def _call_backend(self, request: ClassificationRequest) -> str:
        messages = self.prompt_engine.build_messages(request)
        kind = self.backend_kind

        with self.gate.slot(kind, timeout=self.gate_timeout) as pending:
            self._count("backend_calls")
            logger.debug(f"Sending request {pending.request_id} to {kind}")

            def _track(future) -> None:
                pending.handle = future

            try:
                return self.executor.execute(lambda: self.provider.invoke(messages), on_attempt=_track)
            except BackendError as e:
                self._count("errors")
                logger.error(f"{kind} request {pending.request_id} failed: {e}")
                raise

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        stats["gate"] = self.gate.get_status()
        stats["cache"] = self.cache.get_stats()
        stats["executor"] = self.executor.get_stats()
        return stats
