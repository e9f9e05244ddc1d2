import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from agents.query_repair import QueryRepairLoop
from agents.sql_converter_agent import SqlConverterAgent, parse_request
from db import QueryEndpoint
from errors import ConfigurationMissing, ConverterError, InvalidRequest
from llm.agent_client import AgentClient
from llm.openai_llm import AgentServiceLLM
from settings import Settings, load_settings
from tools.metadata import load_schema
from tools.semantic_catalog import load_catalog, render_instructions, storage_layout
from tools.sql_validator import extract_dataset_id, is_scoped_to_dataset, split_statements

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

LOGGER = logging.getLogger(__name__)
if not LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s'))
    LOGGER.addHandler(_handler)
LOGGER.setLevel(logging.DEBUG if DEBUG else logging.INFO)

DISCONNECT_POLL_S = 0.25


# ==== API models ====
class ConvertRequest(BaseModel):
    prompt: str = Field(..., description="Natural language question about the dataset")
    schema_: Dict[str, str] = Field(..., alias="schema", description="Column name -> column type")
    sampleRows: List[Dict[str, Any]] = Field(default_factory=list, description="Up to 50 rows of the dataset")
    fileId: str = Field("", description="Uploaded file id; the dataset uuid is extracted from it")


class StatementResult(BaseModel):
    statement: str
    sql: str
    status: str = Field(..., description="ok or error")
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    rowCount: int = 0
    repaired: bool = False
    attempts: int = 0
    error: Optional[Dict[str, Any]] = None


class ConvertResponse(BaseModel):
    reply: str
    restatement: str
    sql: str
    resultDescription: str
    isGeneralQuestion: bool
    warnings: List[str] = Field(default_factory=list)
    results: Optional[List[StatementResult]] = None


class ExecuteRequest(BaseModel):
    sql: str = Field(..., description="One or more SELECT statements separated by ';'")
    fileId: Optional[str] = None
    schema_: Optional[Dict[str, str]] = Field(None, alias="schema")


class ExecuteResponse(BaseModel):
    sql: str
    rows: List[Dict[str, Any]]
    rowCount: int
    repaired: bool
    warnings: List[str] = Field(default_factory=list)
    results: List[StatementResult]
# ====================


def build_services(settings: Settings):
    """Construct the converter and the repair loop once per process."""
    catalog = load_catalog()
    layout = storage_layout(catalog)
    llm = AgentServiceLLM(settings.agent_base_url, settings.agent_api_key,
                          agent_name=settings.agent_name, timeout_s=settings.agent_timeout_s)
    client = AgentClient(
        llm,
        render_instructions(catalog, structured=settings.agent_structured_output),
        retries=settings.agent_retries,
        backoff_ms=settings.agent_backoff_ms,
        max_backoff_ms=settings.agent_max_backoff_ms,
        structured=settings.agent_structured_output,
    )
    endpoint = QueryEndpoint(settings.database_url, function=settings.query_rpc_function,
                             statement_timeout_ms=settings.statement_timeout_ms)
    runner = QueryRepairLoop(endpoint, layout)
    converter = SqlConverterAgent(client, runner, workers=settings.execution_workers)
    return converter, runner


async def _cancellable(request: Request, fn: Callable[..., Any], *args: Any) -> Any:
    """Run `fn(*args, cancel_event)` in the threadpool; a client disconnect sets the event."""
    cancel = threading.Event()

    async def watch() -> None:
        while not cancel.is_set():
            if await request.is_disconnected():
                LOGGER.info("client disconnected; cancelling %s", request.url.path)
                cancel.set()
                return
            await asyncio.sleep(DISCONNECT_POLL_S)

    watcher = asyncio.create_task(watch())
    try:
        return await run_in_threadpool(fn, *args, cancel)
    finally:
        watcher.cancel()


def create_app(settings: Optional[Settings] = None,
               converter: Optional[SqlConverterAgent] = None,
               runner: Optional[QueryRepairLoop] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.converter is None or app.state.runner is None:
            # missing env stops startup here, before any request is served
            conf = settings or load_settings()
            built_converter, built_runner = build_services(conf)
            app.state.converter = app.state.converter or built_converter
            app.state.runner = app.state.runner or built_runner
            LOGGER.info("services ready: %r", conf)
        yield

    app = FastAPI(title="CSV SQL Converter", lifespan=lifespan)
    app.state.converter = converter
    app.state.runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConverterError)
    async def converter_error(request: Request, exc: ConverterError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        LOGGER.log(level, "%s %s -> %d %s: %s", request.method, request.url.path,
                   exc.status_code, type(exc).__name__, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if any(e.get("type") == "json_invalid" for e in errors):
            return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return JSONResponse(status_code=400, content={"error": f"Invalid {field or 'request'}: {first.get('msg', '')}".strip()})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        LOGGER.exception("%s %s failed", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Failed to process request"})

    def _converter(request: Request) -> SqlConverterAgent:
        if request.app.state.converter is None:
            raise ConfigurationMissing("SQL converter is not configured")
        return request.app.state.converter

    def _runner(request: Request) -> QueryRepairLoop:
        if request.app.state.runner is None:
            raise ConfigurationMissing("Query execution is not configured")
        return request.app.state.runner

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    async def _convert(request: Request) -> Dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidRequest("Invalid JSON body")
        conv = parse_request(payload)
        return await _cancellable(request, _converter(request).convert, conv)

    @app.post("/api/convert", response_model=ConvertResponse, openapi_extra={
        "requestBody": {"content": {"application/json": {"schema": ConvertRequest.model_json_schema()}}}})
    async def convert(request: Request):
        return await _convert(request)

    # path used by the original chat client
    @app.post("/api/mastra/chat", response_model=ConvertResponse, include_in_schema=False)
    async def mastra_chat(request: Request):
        return await _convert(request)

    @app.post("/api/execute", response_model=ExecuteResponse)
    async def execute(payload: ExecuteRequest, request: Request):
        statements = split_statements(payload.sql)
        if not statements:
            raise InvalidRequest("SQL is required")
        dataset_id = extract_dataset_id(payload.fileId)
        column_types = load_schema(payload.schema_ or {}, [])
        loop = _runner(request)

        def run_all(cancel: threading.Event):
            return [loop.execute_or_raise(s, dataset_id, column_types, cancel) for s in statements]

        runs = await _cancellable(request, run_all)
        warnings = []
        if dataset_id:
            warnings = [f"Statement {i} does not filter on file_id = '{dataset_id}'"
                        for i, r in enumerate(runs, 1) if not is_scoped_to_dataset(r.executed_sql, dataset_id)]
        last = runs[-1].to_dict()
        return {
            "sql": "\n".join(f"{r.executed_sql};" for r in runs),
            "rows": last["rows"],
            "rowCount": last["rowCount"],
            "repaired": any(r.repaired for r in runs),
            "warnings": warnings,
            "results": [r.to_dict() for r in runs],
        }

    return app


app = create_app()
