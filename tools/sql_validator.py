# tools/sql_validator.py
import re
from typing import List, Mapping, Optional, Tuple

from errors import DisallowedStatement
from models import DEFAULT_LAYOUT, NormalizedQuery, StorageLayout

# literals and quoted identifiers keep their quotes, comments vanish; lengths are preserved
MASKABLE = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|--[^\n]*|/\*.*?\*/", re.S)

SAFE_START = re.compile(r"^\s*(select)\b", re.I)
FORBIDDEN = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke|copy|merge|call|vacuum)\b", re.I
)

SELECT_HEAD = re.compile(r"^\s*select\s+(?:distinct\s+(?:on\s*\([^)]*\)\s*)?|all\s+)?", re.I)
SELECT_STAR = re.compile(r"^(\s*select)\s*\*", re.I)
FROM_OR_PAREN = re.compile(r"\(|\)|;|\bfrom\b", re.I)

DATASET_PLACEHOLDER = re.compile(
    r"'\s*(?:\[\s*(?:uuid|file[_ ]?id)\s*\]|\{\{\s*file_?id\s*\}\}|\{\s*file_?id\s*\}|<\s*(?:uuid|file_?id)\s*>)\s*'",
    re.I,
)
UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.I)

RANGE_OPS = r"<=|>=|<|>"
COMPARISON_OPS = r"<>|!=|<=|>=|=|<|>"

# schema types that need a cast before comparing, keyed to the SQL cast
TYPED_CASTS = {"integer": "integer", "numeric": "numeric", "boolean": "boolean", "timestamp": "timestamp"}
AGGREGATE_TYPES = {
    "sum": {"integer", "numeric"},
    "avg": {"integer", "numeric"},
    "min": {"integer", "numeric", "timestamp"},
    "max": {"integer", "numeric", "timestamp"},
}


def _strip_code_fences(s: str) -> str:
    s = s.strip()
    if s.startswith("```"):
        s = re.sub(r"^```(?:sql|postgresql|postgres)?\s*", "", s, flags=re.I)
        s = re.sub(r"\s*```$", "", s)
    return s.strip()


def _mask(s: str) -> str:
    """Blank out literal bodies and comments so keyword scans only see SQL structure."""
    def repl(m: re.Match) -> str:
        tok = m.group(0)
        if tok[0] in "'\"":
            return tok[0] + " " * (len(tok) - 2) + tok[-1]
        return " " * len(tok)
    return MASKABLE.sub(repl, s)


# ---------- statement shape ----------

def split_statements(text: str) -> List[str]:
    """Split agent SQL on top-level terminators, ignoring `;` inside literals and comments."""
    s = _strip_code_fences(text or "")
    masked = _mask(s)
    parts: List[str] = []
    start = 0
    for i, ch in enumerate(masked):
        if ch == ";":
            parts.append(s[start:i])
            start = i + 1
    parts.append(s[start:])
    return [p.strip() for p in parts if _mask(p).strip()]


def ensure_read_only(sql: str) -> str:
    """Return the trimmed statement or raise DisallowedStatement."""
    s = _strip_code_fences(sql or "")
    masked = _mask(s).rstrip()
    if masked.endswith(";"):
        # drop the terminator together with any trailing comment
        s, masked = s[: len(masked) - 1], masked[:-1]
    if not masked.strip():
        raise DisallowedStatement("Empty SQL statement.")
    if not SAFE_START.match(masked):
        raise DisallowedStatement("Only SELECT queries are allowed.")
    if ";" in masked:
        raise DisallowedStatement("Multiple statements not allowed.")
    m = FORBIDDEN.search(masked)
    if m:
        raise DisallowedStatement(f"Forbidden statement detected: {m.group(1).upper()}")
    return s.strip()


def _projection_span(sql: str) -> Optional[Tuple[int, int]]:
    masked = _mask(sql)
    head = SELECT_HEAD.match(masked)
    if not head:
        return None
    depth = 0
    for m in FROM_OR_PAREN.finditer(masked, head.end()):
        tok = m.group(0)
        if tok == "(":
            depth += 1
        elif tok == ")":
            depth -= 1
        elif depth == 0:
            return head.end(), m.start()
    return head.end(), len(sql)


def _split_top_level(masked: str, start: int, end: int) -> List[Tuple[int, int]]:
    spans: List[Tuple[int, int]] = []
    depth = 0
    item_start = start
    for i in range(start, end):
        ch = masked[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            spans.append((item_start, i))
            item_start = i + 1
    spans.append((item_start, end))
    return spans


def _document_item_re(layout: StorageLayout) -> re.Pattern:
    col = re.escape(layout.document_column)
    return re.compile(
        rf"^(?P<ref>(?:\w+\.)?{col})(?P<cast>\s*::\s*\w+)?(?P<rest>(?:\s+as)?\s+(?:\w+|\"[^\"]+\"))?$",
        re.I,
    )


def _rewrite_projection(sql: str, layout: StorageLayout, force: bool) -> str:
    span = _projection_span(sql)
    if span is None:
        return sql
    pattern = _document_item_re(layout)
    masked = _mask(sql)
    out = sql
    # right to left so earlier offsets stay valid
    for s, e in reversed(_split_top_level(masked, *span)):
        raw = sql[s:e]
        item = raw.strip()
        m = pattern.match(item)
        if not m:
            continue
        cast = m.group("cast")
        if cast:
            if not force or cast.split("::")[-1].strip().lower() == layout.wire_type:
                continue
        lead = len(raw) - len(raw.lstrip())
        new_item = f"{m.group('ref')}::{layout.wire_type}{m.group('rest') or ''}"
        out = out[: s + lead] + new_item + out[s + lead + len(item):]
    return out


def _subfield_comparison_re(layout: StorageLayout, ops: str, literal_rhs: bool) -> re.Pattern:
    col = rf"\b(?:\w+\.)?{re.escape(layout.document_column)}\b"
    rhs = r"'(?P<lit>[^']*)'(?P<rcast>\s*::\s*\w+)?" if literal_rhs else ""
    return re.compile(
        rf"(?:(?<!\w)\(\s*(?P<c1>{col})\s*->>\s*'(?P<f1>[^']+)'\s*\)|(?P<c2>{col})\s*->>\s*'(?P<f2>[^']+)')"
        rf"(?P<lcast>\s*::\s*\w+)?(?P<ws1>\s*)(?P<op>{ops})(?P<ws2>\s*){rhs}",
        re.I,
    )


def _operand(m: re.Match) -> Tuple[str, str]:
    doc = m.group("c1") or m.group("c2")
    field = m.group("f1") if m.group("f1") is not None else m.group("f2")
    return f"({doc}->>'{field}')", field


def _lookup_type(column_types: Mapping[str, str], field: str) -> Optional[str]:
    if field in column_types:
        return column_types[field]
    lowered = field.lower()
    for name, typ in column_types.items():
        if name.lower() == lowered:
            return typ
    return None


# ---------- rules ----------

def _inject_dataset_id(sql: str, dataset_id: Optional[str]) -> str:
    if not dataset_id:
        return sql
    quoted = "'" + dataset_id.replace("'", "''") + "'"
    return DATASET_PLACEHOLDER.sub(lambda _m: quoted, sql)


def _cast_select_star(sql: str, layout: StorageLayout) -> str:
    m = SELECT_STAR.match(sql)
    if not m:
        return sql
    rest = sql[m.end():]
    # `select*from` has nothing separating the projection from the next keyword
    sep = " " if re.match(r"\w", rest) else ""
    return f"{m.group(1)} {layout.document_column}::{layout.wire_type}{sep}{rest}"


def _cast_address_comparisons(sql: str, layout: StorageLayout) -> str:
    pattern = _subfield_comparison_re(layout, RANGE_OPS, literal_rhs=True)
    addr = {f.lower() for f in layout.address_fields}
    cast = f"::{layout.address_cast}"

    def keep_or_cast(existing: Optional[str]) -> str:
        # any other cast would compare text with inet
        if existing and existing.split("::")[-1].strip().lower() == layout.address_cast.lower():
            return re.sub(r"\s+", "", existing)
        return cast

    def repl(m: re.Match) -> str:
        operand, field = _operand(m)
        if field.lower() not in addr:
            return m.group(0)
        left = operand + keep_or_cast(m.group("lcast"))
        right = f"'{m.group('lit')}'" + keep_or_cast(m.group("rcast"))
        return f"{left}{m.group('ws1') or ' '}{m.group('op')}{m.group('ws2') or ' '}{right}"

    return pattern.sub(repl, sql)


def _cast_typed_comparisons(sql: str, column_types: Mapping[str, str], layout: StorageLayout) -> str:
    if not column_types:
        return sql
    pattern = _subfield_comparison_re(layout, COMPARISON_OPS, literal_rhs=False)
    addr = {f.lower() for f in layout.address_fields}

    def repl(m: re.Match) -> str:
        operand, field = _operand(m)
        lcast = m.group("lcast")
        if lcast:
            if m.group("c2") is None:
                return m.group(0)
            # `doc->>'col'::type` casts the key, not the value
            left = operand + re.sub(r"\s+", "", lcast)
        else:
            typ = _lookup_type(column_types, field)
            if field.lower() in addr or typ not in TYPED_CASTS:
                return m.group(0)
            left = f"{operand}::{TYPED_CASTS[typ]}"
        return f"{left}{m.group('ws1')}{m.group('op')}{m.group('ws2')}"

    sql = pattern.sub(repl, sql)

    col = rf"\b(?:\w+\.)?{re.escape(layout.document_column)}\b"
    agg = re.compile(rf"\b(?P<fn>sum|avg|min|max)\s*\(\s*(?P<c>{col})\s*->>\s*'(?P<f>[^']+)'\s*\)", re.I)

    def agg_repl(m: re.Match) -> str:
        typ = _lookup_type(column_types, m.group("f"))
        if typ not in AGGREGATE_TYPES[m.group("fn").lower()]:
            return m.group(0)
        return f"{m.group('fn')}(({m.group('c')}->>'{m.group('f')}')::{TYPED_CASTS[typ]})"

    return agg.sub(agg_repl, sql)


def normalize_sql(query_text: str, dataset_id: Optional[str] = None,
                  column_types: Optional[Mapping[str, str]] = None,
                  layout: StorageLayout = DEFAULT_LAYOUT) -> NormalizedQuery:
    """Rewrite one statement so it satisfies the storage layer's type contract.

    Purely textual and idempotent. Steps, in order: dataset placeholders are
    replaced with the target id, `SELECT *` becomes a cast document
    projection, bare document columns in the projection get the wire cast,
    range comparisons on address fields get `inet` casts on both sides, and
    comparisons/aggregates on typed sub-fields get the schema's cast.
    """
    sql = query_text or ""
    sql = _inject_dataset_id(sql, dataset_id)
    sql = _cast_select_star(sql, layout)
    sql = _rewrite_projection(sql, layout, force=False)
    sql = _cast_address_comparisons(sql, layout)
    sql = _cast_typed_comparisons(sql, column_types or {}, layout)
    return NormalizedQuery(text=sql)


def force_document_cast(sql: str, layout: StorageLayout = DEFAULT_LAYOUT) -> str:
    """Repair rewrite after a wire-type mismatch: every projected document column becomes `::<wire_type>`."""
    sql = _cast_select_star(sql, layout)
    return _rewrite_projection(sql, layout, force=True)


def is_scoped_to_dataset(sql: str, dataset_id: str, layout: StorageLayout = DEFAULT_LAYOUT) -> bool:
    col = rf"(?:\w+\.)?{re.escape(layout.dataset_column)}"
    lit = rf"'{re.escape(dataset_id)}'(?:\s*::\s*\w+)?"
    pattern = re.compile(rf"\b{col}(?:\s*::\s*\w+)?\s*=\s*{lit}|{lit}\s*=\s*{col}\b", re.I)
    return bool(pattern.search(sql))


def extract_dataset_id(file_id: Optional[str]) -> Optional[str]:
    """Pull the dataset uuid out of a file id such as `59037db4-...-data.csv`."""
    if not file_id:
        return None
    m = UUID_RE.search(file_id)
    if m:
        return m.group(0)
    value = file_id.strip()
    return value or None
