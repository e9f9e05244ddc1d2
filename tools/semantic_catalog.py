import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from models import DEFAULT_LAYOUT, StorageLayout

CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config")
CATALOG_PATH = os.path.join(CONFIG_DIR, "storage_catalog.yaml")
PROMPT_PATH = os.path.join(CONFIG_DIR, "prompts", "sql_converter.txt")

TEXT_OUTPUT_FORMAT = (
    "Answer in exactly three numbered parts:\n"
    "1. Restate what the user is asking for in one or two sentences.\n"
    "2. The SQL inside a code block like this:\n"
    "```sql\n"
    "SELECT row_data::json FROM csv_data WHERE file_id = '[UUID]';\n"
    "```\n"
    "3. Describe in plain language what the results will show."
)

STRUCTURED_OUTPUT_FORMAT = (
    "Reply with one JSON object and nothing else, with the keys "
    '"restatement" (string), "sql" (string, statements terminated by ";"), '
    '"description" (string) and "isAnalytical" (boolean, true when the question needs '
    "counting, aggregation or several queries)."
)


@lru_cache(maxsize=4)
def load_catalog(path: str = CATALOG_PATH) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)
    return doc or {}


def storage_layout(catalog: Mapping[str, Any]) -> StorageLayout:
    storage = catalog.get("storage") or {}
    signatures = catalog.get("type_mismatch_signatures") or DEFAULT_LAYOUT.type_mismatch_signatures
    return StorageLayout(
        table=storage.get("table", DEFAULT_LAYOUT.table),
        dataset_column=storage.get("dataset_column", DEFAULT_LAYOUT.dataset_column),
        document_column=storage.get("document_column", DEFAULT_LAYOUT.document_column),
        wire_type=str(storage.get("wire_type", DEFAULT_LAYOUT.wire_type)).lower(),
        address_cast=storage.get("address_cast", DEFAULT_LAYOUT.address_cast),
        address_fields=tuple(str(f).lower() for f in storage.get("address_fields") or DEFAULT_LAYOUT.address_fields),
        type_mismatch_signatures=tuple(str(s).lower() for s in signatures),
    )


def _storage_lines(catalog: Mapping[str, Any]) -> List[str]:
    storage = catalog.get("storage") or {}
    if not storage:
        return []
    lines = [f"- Table `{storage.get('table')}` ({storage.get('label', '')}): {storage.get('description', '')}".strip()]
    for col, desc in (storage.get("columns") or {}).items():
        lines.append(f"  - `{col}`: {desc}")
    return lines


def render_instructions(catalog: Mapping[str, Any], structured: bool = False,
                        template_path: str = PROMPT_PATH) -> str:
    """System instructions for the converter agent, built from the prompt template and the catalog."""
    with open(template_path, "r", encoding="utf-8") as f:
        template = f.read()

    rules = [f"- {r}" for r in catalog.get("rules") or []]
    examples: List[str] = []
    for ex in catalog.get("examples") or []:
        examples.append(f"Q: {ex.get('question', '')}\nSQL: {ex.get('sql', '')}")

    rendered = (template
                .replace("{{storage_context}}", "\n".join(_storage_lines(catalog)))
                .replace("{{rules}}", "\n".join(rules))
                .replace("{{examples}}", "\n\n".join(examples))
                .replace("{{output_format}}", STRUCTURED_OUTPUT_FORMAT if structured else TEXT_OUTPUT_FORMAT))
    # the catalog writes the dataset filter generically; the agent reads the real id from the context
    return rendered.replace("{{file_id}}", "<fileId>")


def build_context(schema: Mapping[str, str], sample_rows: Sequence[Mapping[str, Any]],
                  dataset_id: Optional[str] = None, max_rows: int = 50) -> str:
    """JSON context block sent alongside the user's prompt."""
    context = {
        "schema": dict(schema),
        "sampleRows": list(sample_rows[:max_rows]),
        "fileId": dataset_id,
    }
    return json.dumps(context, ensure_ascii=False, default=str)
