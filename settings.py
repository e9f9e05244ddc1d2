import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv, find_dotenv

from errors import ConfigurationMissing

load_dotenv(find_dotenv(usecwd=True), override=False)

REQUIRED_ENV = ("AGENT_BASE_URL", "AGENT_API_KEY", "DATABASE_URL")


@dataclass(frozen=True)
class Settings:
    agent_base_url: str
    agent_api_key: str
    database_url: str
    agent_name: str = "sql-converter"
    agent_retries: int = 3
    agent_backoff_ms: int = 300
    agent_max_backoff_ms: int = 5000
    agent_timeout_s: float = 30.0
    agent_structured_output: bool = False
    statement_timeout_ms: int = 8000
    query_rpc_function: str = "execute_dynamic_select"
    execution_workers: int = 1
    debug: bool = False

    def __repr__(self) -> str:
        # keep credentials out of logs and tracebacks
        return (f"Settings(agent_base_url={self.agent_base_url!r}, agent_name={self.agent_name!r}, "
                f"agent_retries={self.agent_retries}, execution_workers={self.execution_workers})")


def _flag(value: Optional[str]) -> bool:
    return (value or "false").strip().lower() in {"1", "true", "yes", "on"}


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationMissing(f"{name} must be an integer, got {raw!r}") from e


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read configuration from the environment (and .env), failing fast.

    Every missing required variable is reported in a single
    ConfigurationMissing so a misconfigured deployment is fixed in one pass.
    """
    env = os.environ if env is None else env

    missing = [k for k in REQUIRED_ENV if not env.get(k)]
    if missing:
        raise ConfigurationMissing(f"Missing required env(s): {', '.join(missing)}")

    try:
        timeout_s = float(env.get("AGENT_TIMEOUT_S") or 30)
    except ValueError as e:
        raise ConfigurationMissing("AGENT_TIMEOUT_S must be a number") from e

    return Settings(
        agent_base_url=env["AGENT_BASE_URL"].rstrip("/"),
        agent_api_key=env["AGENT_API_KEY"],
        database_url=env["DATABASE_URL"],
        agent_name=env.get("AGENT_NAME") or "sql-converter",
        agent_retries=max(1, _int(env, "AGENT_RETRIES", 3)),
        agent_backoff_ms=_int(env, "AGENT_BACKOFF_MS", 300),
        agent_max_backoff_ms=_int(env, "AGENT_MAX_BACKOFF_MS", 5000),
        agent_timeout_s=timeout_s,
        agent_structured_output=_flag(env.get("AGENT_STRUCTURED_OUTPUT")),
        statement_timeout_ms=_int(env, "STATEMENT_TIMEOUT_MS", 8000),
        query_rpc_function=env.get("QUERY_RPC_FUNCTION") or "execute_dynamic_select",
        execution_workers=max(1, _int(env, "EXECUTION_WORKERS", 1)),
        debug=_flag(env.get("DEBUG")),
    )
