"""Turn free-form model replies into validated actions.

The parser asks the language model for a JSON action, then walks an ordered
cascade of extraction strategies over the reply until one yields an object.
The object is validated against the action union; any extraction or
validation failure counts as a failed attempt and is retried with
exponential backoff. Once the attempts run out the caller still receives a
usable action built by :func:`fallback_action`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from openai import OpenAIError

from .errors import ActionValidationError, ExtractionError
from .interactions import InteractionLog
from .prompts import FEW_SHOT_EXAMPLES, build_command_messages
from .schemas import Action, ModifyInfrastructureAction, validate_action

logger = logging.getLogger(__name__)

# The last three cover completions with no choices or no message.
RETRYABLE_ERRORS = (
    OpenAIError,
    ExtractionError,
    ActionValidationError,
    IndexError,
    AttributeError,
    TypeError,
)


_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_ASSISTANT_RE = re.compile(
    r"assistant(?:<\|end_header_id\|>|\s*:)\s*([\s\S]*)", re.IGNORECASE
)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][\w-]*)\s*:")
_SINGLE_QUOTED_RE = re.compile(r":\s*'([^']*?)'")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""

        return min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)


# ----------------------------------------------------------------------
# Extraction strategies
# ----------------------------------------------------------------------
def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _brace_span(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start : end + 1]


def direct(text: str) -> Optional[Dict[str, Any]]:
    return _loads_object(text.strip())


def fenced_block(text: str) -> Optional[Dict[str, Any]]:
    match = _FENCE_RE.search(text)
    if not match:
        return None
    return _loads_object(match.group(1))


def assistant_turn(text: str) -> Optional[Dict[str, Any]]:
    match = _ASSISTANT_RE.search(text)
    if not match:
        return None
    remainder = match.group(1)
    return fenced_block(remainder) or _loads_object(remainder.strip())


def brace_span(text: str) -> Optional[Dict[str, Any]]:
    span = _brace_span(text)
    return _loads_object(span) if span else None


def repair_json_text(text: str) -> Optional[str]:
    """Apply the fixed textual repairs to the first-to-last brace span."""

    cleaned = text.replace("```json", "").replace("```", "")
    span = _brace_span(cleaned)
    if span is None:
        return None
    span = _TRAILING_COMMA_RE.sub(r"\1", span)
    span = _BARE_KEY_RE.sub(r'\1"\2":', span)
    span = _SINGLE_QUOTED_RE.sub(lambda m: ": " + json.dumps(m.group(1)), span)
    return span


def repaired_span(text: str) -> Optional[Dict[str, Any]]:
    repaired = repair_json_text(text)
    return _loads_object(repaired) if repaired else None


Strategy = Callable[[str], Optional[Dict[str, Any]]]

STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("direct", direct),
    ("fenced_block", fenced_block),
    ("assistant_turn", assistant_turn),
    ("brace_span", brace_span),
    ("repaired_span", repaired_span),
)


def extract_structured(text: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Return ``(strategy_name, object)`` for the first strategy that succeeds."""

    for name, strategy in STRATEGIES:
        value = strategy(text)
        if value is not None:
            return name, value
    return None


# ----------------------------------------------------------------------
# Keyword fallback
# ----------------------------------------------------------------------
_NAME_PATTERNS = (
    re.compile(r"called\s+([A-Za-z][A-Za-z0-9 ]+?)(?:\s+that|\s+which|\s*$)", re.IGNORECASE),
    re.compile(r"named\s+([A-Za-z][A-Za-z0-9 ]+?)(?:\s+that|\s+which|\s*$)", re.IGNORECASE),
    re.compile(r'"([^"]+)"'),
    re.compile(r"'([^']+)'"),
)

_INDUSTRY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("fintech", ("fintech", "financial technology", "payments", "micropayments")),
    ("banking", ("bank", "banking", "financial services")),
    ("healthcare", ("healthcare", "medical", "health", "hospital", "clinic")),
    ("tech", ("technology", "software", "ai", "artificial intelligence")),
    ("logistics", ("logistics", "shipping", "delivery", "supply chain")),
    ("defense", ("defense", "security", "military", "cybersecurity")),
    ("retail", ("retail", "ecommerce", "shopping", "commerce")),
    ("energy", ("energy", "renewable", "power", "electricity")),
    ("manufacturing", ("manufacturing", "factory", "production")),
    ("telecom", ("telecom", "telecommunications", "5g", "network")),
)

_COMMON_TAGS = (
    "fintech", "banking", "payments", "ai", "technology", "healthcare", "logistics",
    "security", "retail", "energy", "manufacturing", "telecom", "startup",
    "enterprise", "digital", "cloud", "iot", "blockchain", "micropayments",
)

_SIMULATION_COMMANDS = ("start", "stop", "pause", "resume", "reset")


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


def _company_name(text: str) -> str:
    for pattern in _NAME_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return "New Company"


def _industry(lowered: str) -> str:
    for industry, keywords in _INDUSTRY_KEYWORDS:
        if any(_has_word(lowered, keyword) for keyword in keywords):
            return industry
    return "tech"


def fallback_action(text: str, context: Optional[Mapping[str, Any]] = None) -> Action:
    """Build a valid action from keywords alone; defaults to a verbatim chat."""

    lowered = text.lower()
    candidate: Dict[str, Any]
    if _has_word(lowered, "create") and _has_word(lowered, "company"):
        industry = _industry(lowered)
        tags = [tag for tag in _COMMON_TAGS if _has_word(lowered, tag)] or [industry]
        name = _company_name(text)
        candidate = {
            "action": "createCompany",
            "parameters": {
                "name": name,
                "description": text if len(text.strip()) >= 10 else f"{name} organization",
                "industry": industry,
                "tags": tags,
                "services": ["Business Operations"],
            },
        }
    elif _has_word(lowered, "search") or _has_word(lowered, "find"):
        candidate = {"action": "searchCompanies", "parameters": {"query": text, "limit": 10}}
    elif _has_word(lowered, "simulation") and any(_has_word(lowered, c) for c in _SIMULATION_COMMANDS):
        command = next(c for c in _SIMULATION_COMMANDS if _has_word(lowered, c))
        candidate = {"action": "controlSimulation", "parameters": {"command": command}}
    else:
        candidate = _chat_candidate(text, context)

    outcome = validate_action(candidate)
    if outcome.ok:
        return outcome.value  # type: ignore[return-value]
    logger.debug("Keyword fallback rejected (%s); using chat", outcome.errors)
    return validate_action(_chat_candidate(text, context)).value  # type: ignore[return-value]


def _chat_candidate(text: str, context: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    chat_context: Dict[str, Any] = {"topic": "infrastructure"}
    if context:
        for key in ("companyId", "companyName", "currentInfrastructure"):
            if context.get(key) is not None:
                chat_context[key] = context[key]
    return {"action": "chat", "parameters": {"message": text, "context": chat_context}}


def action_confidence(action: Action) -> float:
    confidence = 0.7
    if isinstance(action, ModifyInfrastructureAction):
        entity = action.parameters.entity
        if entity is not None:
            confidence += 0.1 * sum(1 for value in (entity.name, entity.ip, entity.kind) if value)
        if action.parameters.operation:
            confidence += 0.1
    return min(round(confidence, 4), 1.0)


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------
@dataclass
class ParseResult:
    success: bool
    action: Optional[Action] = None
    error: Optional[str] = None
    strategy: Optional[str] = None
    attempts: int = 0
    confidence: float = 0.0
    fallback: Optional[Action] = None

    @property
    def resolved_action(self) -> Action:
        """The validated action, or the fallback when parsing failed."""

        resolved = self.action if self.action is not None else self.fallback
        if resolved is None:
            raise ValueError("parse result carries no action")
        return resolved

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "attempts": self.attempts,
            "confidence": self.confidence,
        }
        if self.action is not None:
            payload["action"] = self.action.to_payload()
        if self.strategy:
            payload["strategy"] = self.strategy
        if self.error:
            payload["error"] = self.error
        if self.fallback is not None:
            payload["fallback"] = self.fallback.to_payload()
        return payload


@dataclass
class ResilientParser:
    """Command parser with a layered extraction cascade and bounded retries."""

    llm_client: Any
    retry: RetryConfig = field(default_factory=RetryConfig)
    interactions: Optional[InteractionLog] = None
    examples: Sequence[Tuple[str, Mapping[str, object]]] = FEW_SHOT_EXAMPLES
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def parse_reply(self, raw: str) -> Tuple[str, Action]:
        """Extract and validate one reply; raises on either failure."""

        extracted = extract_structured(raw)
        if extracted is None:
            raise ExtractionError("No JSON object could be extracted from the model reply")
        strategy, candidate = extracted
        outcome = validate_action(candidate)
        if not outcome.ok:
            raise ActionValidationError(outcome.errors)
        logger.debug("Extracted action via %s", strategy)
        return strategy, outcome.value  # type: ignore[return-value]

    async def parse_command(
        self, text: str, *, context: Optional[Mapping[str, Any]] = None
    ) -> ParseResult:
        messages = build_command_messages(text, context=context, examples=self.examples)
        model_name = str(getattr(self.llm_client, "model", "unknown"))
        last_error = "no attempts were made"

        for attempt in range(1, self.retry.max_attempts + 1):
            started = time.perf_counter()
            raw = ""
            try:
                raw = await self.llm_client.chat(messages)
                strategy, action = self.parse_reply(raw)
            except RETRYABLE_ERRORS as exc:
                last_error = str(exc)
                self._record(model_name, text, raw, started, attempt, error=last_error)
                logger.warning(
                    "Parse attempt %s/%s failed: %s", attempt, self.retry.max_attempts, last_error
                )
                if attempt < self.retry.max_attempts:
                    await self.sleep(self.retry.delay_for(attempt))
                continue

            self._record(model_name, text, raw, started, attempt, strategy=strategy)
            return ParseResult(
                success=True,
                action=action,
                strategy=strategy,
                attempts=attempt,
                confidence=action_confidence(action),
            )

        logger.warning("All %s parse attempts failed; using keyword fallback", self.retry.max_attempts)
        return ParseResult(
            success=False,
            error=f"Failed to parse command after {self.retry.max_attempts} attempts: {last_error}",
            attempts=self.retry.max_attempts,
            fallback=fallback_action(text, context),
        )

    def _record(
        self,
        model_name: str,
        prompt: str,
        response: str,
        started: float,
        attempt: int,
        *,
        strategy: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.interactions is None:
            return
        metadata: Dict[str, Any] = {"attempt": attempt}
        if strategy:
            metadata["strategy"] = strategy
        self.interactions.record(
            "parsing",
            model=model_name,
            prompt=prompt,
            response=response,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            error=error,
            metadata=metadata,
        )


__all__ = [
    "ParseResult",
    "ResilientParser",
    "RETRYABLE_ERRORS",
    "RetryConfig",
    "STRATEGIES",
    "action_confidence",
    "assistant_turn",
    "brace_span",
    "direct",
    "extract_structured",
    "fallback_action",
    "fenced_block",
    "repair_json_text",
    "repaired_span",
]
