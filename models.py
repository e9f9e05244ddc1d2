from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

# Column types a schema descriptor may carry.
COLUMN_TYPES = ("text", "integer", "numeric", "boolean", "timestamp")


@dataclass(frozen=True)
class ConversionRequest:
    prompt: str
    schema: Dict[str, str]
    sample_rows: List[Dict[str, Any]]
    file_id: str = ""
    dataset_id: Optional[str] = None


@dataclass(frozen=True)
class AgentReply:
    raw_text: str


@dataclass(frozen=True)
class SegmentedReply:
    restatement: str
    query_text: str
    description: str
    is_analytical: bool
    # interiors of any further ```sql blocks after the first one
    extra_queries: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NormalizedQuery:
    text: str


@dataclass(frozen=True)
class Success:
    rows: List[Dict[str, Any]]


@dataclass(frozen=True)
class RecoverableTypeError:
    original_error_message: str


@dataclass(frozen=True)
class FatalError:
    message: str
    code: Optional[str] = None
    details: Optional[str] = None
    hint: Optional[str] = None
    kind: str = "ExecutionFailed"


ExecutionOutcome = Union[Success, RecoverableTypeError, FatalError]


@dataclass(frozen=True)
class StatementRun:
    statement: str
    executed_sql: str
    outcome: ExecutionOutcome
    attempts: int = 0
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "statement": self.statement,
            "sql": self.executed_sql,
            "status": "ok" if self.ok else "error",
            "attempts": self.attempts,
            "repaired": self.repaired,
            "rows": [],
            "rowCount": 0,
            "error": None,
        }
        if isinstance(self.outcome, Success):
            out["rows"] = self.outcome.rows
            out["rowCount"] = len(self.outcome.rows)
        elif isinstance(self.outcome, FatalError):
            out["error"] = {
                "type": self.outcome.kind,
                "message": self.outcome.message,
                "code": self.outcome.code,
                "details": self.outcome.details,
                "hint": self.outcome.hint,
            }
        return out


@dataclass(frozen=True)
class StorageLayout:
    """Where uploaded CSV rows live and how they must be projected."""
    table: str = "csv_data"
    dataset_column: str = "file_id"
    document_column: str = "row_data"
    wire_type: str = "json"
    address_cast: str = "inet"
    address_fields: Tuple[str, ...] = ("ip", "ip_address", "ipaddress", "ip address")
    type_mismatch_signatures: Tuple[str, ...] = (
        "type jsonb does not match expected type json",
        "structure of query does not match function result type",
    )


DEFAULT_LAYOUT = StorageLayout()
