import enum
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from db import QueryEndpointError
from errors import ExecutionFailed, RequestCancelled
from models import (
    DEFAULT_LAYOUT,
    ExecutionOutcome,
    FatalError,
    RecoverableTypeError,
    StatementRun,
    StorageLayout,
    Success,
)
from tools.sql_validator import ensure_read_only, force_document_cast, normalize_sql

LOGGER = logging.getLogger(__name__)

Executor = Callable[[str], List[Dict[str, Any]]]


class RunState(enum.Enum):
    NORMALIZED = "normalized"
    EXECUTING = "executing"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class QueryRepairLoop:
    """Normalize, execute, and on a wire-type mismatch repair and resubmit exactly once.

    The instance holds no per-request state, so one loop serves concurrent
    requests and concurrent statements of the same request.
    """

    def __init__(self, execute: Executor, layout: StorageLayout = DEFAULT_LAYOUT):
        self.execute = execute
        self.layout = layout

    def is_type_mismatch(self, message: str) -> bool:
        lowered = (message or "").lower()
        return any(sig in lowered for sig in self.layout.type_mismatch_signatures)

    def _submit(self, sql: str) -> Tuple[ExecutionOutcome, Optional[QueryEndpointError]]:
        try:
            rows = self.execute(sql)
        except QueryEndpointError as e:
            if self.is_type_mismatch(e.message):
                return RecoverableTypeError(original_error_message=e.message), e
            return FatalError(e.message, code=e.code, details=e.details, hint=e.hint), e
        return Success(rows=list(rows or [])), None

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelled("Request cancelled before the statement was executed")

    @staticmethod
    def _enter(state: RunState, sql: str) -> RunState:
        LOGGER.debug("[repair] -> %s: %s", state.value, sql[:300])
        return state

    def run(self, statement: str, dataset_id: Optional[str] = None,
            column_types: Optional[Mapping[str, str]] = None,
            cancel_event: Optional[threading.Event] = None) -> StatementRun:
        # raises DisallowedStatement before anything is normalized or sent
        checked = ensure_read_only(statement)
        sql = normalize_sql(checked, dataset_id, column_types, self.layout).text
        self._enter(RunState.NORMALIZED, sql)

        self._check_cancel(cancel_event)
        self._enter(RunState.EXECUTING, sql)
        outcome, error = self._submit(sql)

        if isinstance(outcome, Success):
            self._enter(RunState.SUCCEEDED, sql)
            return StatementRun(statement=checked, executed_sql=sql, outcome=outcome, attempts=1)
        if isinstance(outcome, FatalError):
            LOGGER.info("[repair] statement failed: %s", outcome.message)
            self._enter(RunState.FAILED, sql)
            return StatementRun(statement=checked, executed_sql=sql, outcome=outcome, attempts=1)

        # RecoverableTypeError: one corrective rewrite, then the outcome is final
        repaired = force_document_cast(sql, self.layout)
        self._enter(RunState.RETRYING, repaired)
        if repaired == sql:
            LOGGER.warning("[repair] cast rewrite left the statement unchanged; resubmitting once anyway")
        else:
            LOGGER.info("[repair] type mismatch (%s); retrying with %s", outcome.original_error_message, repaired)

        self._check_cancel(cancel_event)
        second, second_error = self._submit(repaired)
        if isinstance(second, RecoverableTypeError):
            second = FatalError(
                f"{second.original_error_message} (automatic cast repair failed; "
                f"original error: {outcome.original_error_message})",
                code=second_error.code if second_error else None,
                details=second_error.details if second_error else None,
                hint=second_error.hint if second_error else None,
            )
        elif isinstance(second, FatalError):
            second = FatalError(
                f"{second.message} (after automatic cast repair; original error: "
                f"{outcome.original_error_message})",
                code=second.code, details=second.details, hint=second.hint,
            )
        self._enter(RunState.SUCCEEDED if isinstance(second, Success) else RunState.FAILED, repaired)
        return StatementRun(statement=checked, executed_sql=repaired, outcome=second, attempts=2, repaired=True)

    def execute_or_raise(self, statement: str, dataset_id: Optional[str] = None,
                         column_types: Optional[Mapping[str, str]] = None,
                         cancel_event: Optional[threading.Event] = None) -> StatementRun:
        run = self.run(statement, dataset_id, column_types, cancel_event)
        if isinstance(run.outcome, FatalError):
            raise ExecutionFailed(run.outcome.message, code=run.outcome.code, details=run.outcome.details,
                                  hint=run.outcome.hint, sql=run.executed_sql)
        return run
