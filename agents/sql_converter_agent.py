import os
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .base import Agent
from .query_repair import QueryRepairLoop
from errors import DisallowedStatement, InvalidRequest
from llm.agent_client import AgentClient
from models import ConversionRequest, FatalError, SegmentedReply, StatementRun
from tools.metadata import load_schema
from tools.reply_segmenter import parse_reply
from tools.sql_validator import (
    ensure_read_only,
    extract_dataset_id,
    is_scoped_to_dataset,
    normalize_sql,
    split_statements,
)

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# --- logging setup ---
LOGGER = logging.getLogger(__name__)
if not LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))
    LOGGER.addHandler(_handler)
LOGGER.setLevel(logging.DEBUG if DEBUG else logging.INFO)

DEFAULT_REPLY = "I've generated a SQL query based on your request."


def parse_request(payload: Any) -> ConversionRequest:
    """Validate the inbound body `{prompt, schema, sampleRows, fileId}`."""
    if not isinstance(payload, Mapping):
        raise InvalidRequest("Invalid JSON body")

    prompt = payload.get("prompt")
    if prompt is None or (isinstance(prompt, str) and not prompt.strip()):
        raise InvalidRequest("Prompt is required")
    if not isinstance(prompt, str):
        raise InvalidRequest("Invalid prompt")

    schema = payload.get("schema")
    if not isinstance(schema, Mapping):
        raise InvalidRequest("Invalid schema")

    sample_rows = payload.get("sampleRows")
    if not isinstance(sample_rows, list) or not all(isinstance(r, Mapping) for r in sample_rows):
        raise InvalidRequest("Invalid sample rows")

    file_id = payload.get("fileId", "")
    if file_id is None:
        file_id = ""
    if not isinstance(file_id, str):
        raise InvalidRequest("Invalid fileId")

    rows = [dict(r) for r in sample_rows]
    return ConversionRequest(
        prompt=prompt.strip(),
        schema=load_schema(schema, rows),
        sample_rows=rows,
        file_id=file_id,
        dataset_id=extract_dataset_id(file_id),
    )


class SqlConverterAgent(Agent):
    def __init__(self, client: AgentClient, runner: Optional[QueryRepairLoop] = None, workers: int = 1):
        self.client = client
        self.runner = runner
        self.workers = max(1, workers)
        LOGGER.info("SqlConverterAgent initialized; execution=%s workers=%d DEBUG=%s",
                    "on" if runner else "off", self.workers, DEBUG)

    # ---------- statements ----------

    def _statements(self, reply: SegmentedReply) -> List[str]:
        out: List[str] = []
        for block in (reply.query_text, *reply.extra_queries):
            out.extend(split_statements(block))
        return out

    def _prepare(self, statements: List[str], request: ConversionRequest,
                 warnings: List[str]) -> List[Tuple[str, Optional[str], Optional[FatalError]]]:
        """Normalize each statement; returns (original, normalized or None, rejection or None)."""
        prepared = []
        for i, stmt in enumerate(statements, 1):
            try:
                checked = ensure_read_only(stmt)
            except DisallowedStatement as e:
                warnings.append(f"Statement {i} was not normalized: {e.message}")
                prepared.append((stmt, None, FatalError(e.message, kind="DisallowedStatement")))
                continue
            sql = normalize_sql(checked, request.dataset_id, request.schema).text
            rejection = None
            if request.dataset_id and not is_scoped_to_dataset(sql, request.dataset_id):
                msg = f"Statement {i} does not filter on file_id = '{request.dataset_id}'"
                warnings.append(msg + "; it was not executed")
                rejection = FatalError(msg, kind="UnscopedStatement")
            prepared.append((stmt, sql, rejection))
        return prepared

    def _execute(self, prepared: List[Tuple[str, Optional[str], Optional[FatalError]]],
                 request: ConversionRequest, cancel_event: Optional[threading.Event]) -> List[StatementRun]:
        def one(item: Tuple[str, Optional[str], Optional[FatalError]]) -> StatementRun:
            stmt, sql, rejection = item
            if rejection is not None:
                return StatementRun(statement=stmt, executed_sql=sql or stmt, outcome=rejection)
            return self.runner.run(sql, request.dataset_id, request.schema, cancel_event)

        if self.workers == 1 or len(prepared) < 2:
            return [one(item) for item in prepared]
        with ThreadPoolExecutor(max_workers=min(self.workers, len(prepared))) as pool:
            # map keeps statement order
            return list(pool.map(one, prepared))

    # ---------- entry points ----------

    def convert(self, request: ConversionRequest, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        req_id = str(int(time.time() * 1000))
        LOGGER.info("[%s] prompt=%r fileId=%r", req_id,
                    (request.prompt[:200] + ('…' if len(request.prompt) > 200 else '')), request.dataset_id)

        agent_reply = self.client.send(request.prompt, request.schema, request.sample_rows,
                                       request.dataset_id, cancel_event)
        LOGGER.debug("[%s] reply_len=%d", req_id, len(agent_reply.raw_text))

        reply = parse_reply(agent_reply.raw_text, request.prompt)
        warnings: List[str] = []
        statements = self._statements(reply)
        if not statements:
            LOGGER.info("[%s] reply carried no SQL", req_id)

        prepared = self._prepare(statements, request, warnings)
        sql = "\n".join(f"{normalized or stmt.rstrip(';').rstrip()};" for stmt, normalized, _ in prepared)
        LOGGER.debug("[%s] normalized_sql=%s", req_id, (sql[:500] + '…' if len(sql) > 500 else sql))

        out: Dict[str, Any] = {
            "reply": agent_reply.raw_text or DEFAULT_REPLY,
            "restatement": reply.restatement,
            "sql": sql,
            "resultDescription": reply.description,
            "isGeneralQuestion": reply.is_analytical,
            "warnings": warnings,
        }

        if reply.is_analytical and self.runner is not None and prepared:
            if not request.dataset_id:
                warnings.append("No dataset id in fileId; statements were not executed")
            else:
                runs = self._execute(prepared, request, cancel_event)
                out["results"] = [r.to_dict() for r in runs]
                LOGGER.info("[%s] executed statements=%d failed=%d", req_id, len(runs),
                            sum(1 for r in runs if not r.ok))

        for w in warnings:
            LOGGER.warning("[%s] %s", req_id, w)
        LOGGER.info("[%s] done analytical=%s statements=%d", req_id, reply.is_analytical, len(prepared))
        return out

    def run(self, user_query: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = dict(context or {})
        payload["prompt"] = user_query
        return self.convert(parse_request(payload), self.cancel_event(context))
