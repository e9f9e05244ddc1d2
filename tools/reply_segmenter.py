"""Split a free-form agent reply into restatement, SQL and result description.

The agent is asked to answer in three numbered parts with the SQL in a
```sql fenced block. Nothing guarantees it does, so every function here is
best-effort and never raises.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from models import SegmentedReply

LOGGER = logging.getLogger(__name__)

SQL_FENCE = re.compile(r"```[ \t]*sql\b(.*?)```", re.I | re.S)
ANY_FENCE = re.compile(r"```[\w+-]*")
JSON_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.I | re.S)

LEADING_RESTATEMENT_MARK = re.compile(r"^\s*(?:\*\*)?1[.)](?:\*\*)?\s*")
TRAILING_SQL_LABEL = re.compile(r"(?:\A|\n)[ \t]*(?:\*\*)?2[.)](?:\*\*)?[ \t]*(?:[^\n]{0,40}:)?(?:\*\*)?[ \t]*$")
LEADING_DESCRIPTION_MARK = re.compile(r"^\s*(?:\*\*)?3[.)](?:\*\*)?\s*")

# Closed vocabulary; a hit on the restatement or the prompt marks the request as analytical.
ANALYTICAL_CUES = (
    "how many",
    "average",
    "to determine",
    "i'll run",
    "i will run",
    "let me run",
    "number of",
    "count of",
    "total number",
    "sum of",
    "median",
    "percentage",
    "proportion",
    "distribution",
    "breakdown",
    "compare",
    "trend",
    "statistics",
    "most common",
)


def is_analytical(*texts: Optional[str]) -> bool:
    for text in texts:
        lowered = (text or "").lower()
        if any(cue in lowered for cue in ANALYTICAL_CUES):
            return True
    return False


def _drop_fences(text: str) -> str:
    text = ANY_FENCE.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def segment(raw_text: str, prompt: str = "") -> SegmentedReply:
    text = raw_text or ""
    m = SQL_FENCE.search(text)
    if not m:
        return SegmentedReply(restatement=text.strip(), query_text="", description="", is_analytical=False)

    before = text[: m.start()]
    after = text[m.end():]

    restatement = LEADING_RESTATEMENT_MARK.sub("", before.strip(), count=1)
    restatement = _drop_fences(TRAILING_SQL_LABEL.sub("", restatement))

    extra: List[str] = [blk.strip() for blk in SQL_FENCE.findall(after) if blk.strip()]
    after = SQL_FENCE.sub("", after)
    description = _drop_fences(LEADING_DESCRIPTION_MARK.sub("", after.strip(), count=1))

    return SegmentedReply(
        restatement=restatement,
        query_text=m.group(1).strip(),
        description=description,
        is_analytical=is_analytical(restatement, prompt),
        extra_queries=tuple(extra),
    )


def _structured(raw_text: str) -> Optional[Dict[str, Any]]:
    text = (raw_text or "").strip()
    fenced = JSON_FENCE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    if not text.startswith("{"):
        return None
    try:
        doc = json.loads(text)
    except ValueError:
        return None
    if not isinstance(doc, dict) or not any(k in doc for k in ("sql", "query")):
        return None
    return doc


def parse_reply(raw_text: str, prompt: str = "") -> SegmentedReply:
    """Read a structured JSON reply when the agent sent one, otherwise segment the text."""
    doc = _structured(raw_text)
    if doc is None:
        return segment(raw_text, prompt)

    LOGGER.debug("[segmenter] structured reply keys=%s", sorted(doc.keys()))
    sql = str(doc.get("sql") or doc.get("query") or "").strip()
    inner = SQL_FENCE.search(sql)
    if inner:
        sql = inner.group(1).strip()
    restatement = str(doc.get("restatement") or doc.get("intent") or "").strip()
    description = str(doc.get("description") or doc.get("resultDescription") or "").strip()
    flag = doc.get("isAnalytical")
    return SegmentedReply(
        restatement=restatement,
        query_text=sql,
        description=description,
        is_analytical=flag if isinstance(flag, bool) else bool(sql) and is_analytical(restatement, prompt),
    )
