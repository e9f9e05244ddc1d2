import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import openai
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from errors import AgentUnavailable, ConfigurationMissing, InvalidRequest, RequestCancelled
from models import AgentReply
from tools.semantic_catalog import build_context
from .base import LLM

LOGGER = logging.getLogger(__name__)

# transport failures and non-2xx answers; anything else is a bug and propagates as-is
TRANSIENT_ERRORS = (openai.APIError, ConnectionError, TimeoutError)

MAX_SAMPLE_ROWS = 50


class AgentClient:
    """Sends conversion requests to the agent, retrying with exponential backoff."""

    def __init__(self, llm: LLM, instructions: str, retries: int = 3, backoff_ms: int = 300,
                 max_backoff_ms: int = 5000, structured: bool = False,
                 sleep: Optional[Callable[[float], None]] = None):
        if not instructions:
            raise ConfigurationMissing("AgentClient requires agent instructions")
        self.llm = llm
        self.instructions = instructions
        self.retries = max(1, retries)
        self.backoff_ms = backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.structured = structured
        self._sleep = sleep

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        wait = state.next_action.sleep if state.next_action else 0
        LOGGER.warning("[agent] attempt %d/%d failed: %s; retrying in %dms",
                       state.attempt_number, self.retries, exc, int(wait * 1000))

    def _attempt(self, prompt: str, context: str, cancel: threading.Event) -> str:
        if cancel.is_set():
            raise RequestCancelled("Request cancelled before the agent replied")
        return self.llm.complete(prompt, system=self.instructions, context=context,
                                 structured=self.structured, temperature=0)

    def send(self, prompt: str, schema: Optional[Mapping[str, str]],
             sample_rows: Optional[Sequence[Dict[str, Any]]], dataset_id: Optional[str] = None,
             cancel_event: Optional[threading.Event] = None) -> AgentReply:
        if not prompt or not str(prompt).strip():
            raise InvalidRequest("Input prompt is required")
        if schema is None or sample_rows is None:
            raise ConfigurationMissing("Context with schema and sampleRows is required")

        cancel = cancel_event or threading.Event()
        rows: List[Dict[str, Any]] = list(sample_rows)[:MAX_SAMPLE_ROWS]
        context = build_context(schema, rows, dataset_id)

        retrying = Retrying(
            stop=stop_after_attempt(self.retries) | stop_when_event_set(cancel),
            wait=wait_exponential(multiplier=self.backoff_ms / 1000.0, max=self.max_backoff_ms / 1000.0),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            sleep=self._sleep or cancel.wait,
            before_sleep=self._log_retry,
        )
        try:
            text = retrying(self._attempt, prompt, context, cancel)
        except RetryError as e:
            last = e.last_attempt.exception()
            if cancel.is_set():
                raise RequestCancelled("Request cancelled while waiting for the agent") from last
            LOGGER.error("[agent] giving up after %d attempts: %s", e.last_attempt.attempt_number, last)
            raise AgentUnavailable(
                f"Agent service unavailable after {e.last_attempt.attempt_number} attempt(s): "
                f"{type(last).__name__}: {last}"
            ) from last
        return AgentReply(raw_text=text or "")
