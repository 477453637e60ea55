"""
Record Schemas for gitguard

Schemas (JSON Schema draft-07, in schemas/):
- session: SessionState documents (one per session)
- tasks:   the task record file

Philosophy:
- A record that fails its schema is never handed to a component
- Validation reports every defect, not just the first, so recovery can
  log exactly what was discarded
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List
import json

import jsonschema

SCHEMA_DIR = Path(__file__).parent / "schemas"

SCHEMA_NAMES = ("session", "tasks")


@lru_cache(maxsize=None)
def load_schema(name: str) -> Dict[str, Any]:
    """Load a bundled schema by name."""
    if name not in SCHEMA_NAMES:
        raise KeyError(f"Unknown schema: {name}")
    with open(SCHEMA_DIR / f"{name}.schema.json", encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=None)
def _validator(name: str) -> jsonschema.Draft7Validator:
    return jsonschema.Draft7Validator(load_schema(name))


def validate_document(name: str, document: Any) -> List[str]:
    """
    Validate a parsed document against a named schema.

    Returns:
        List of defects (empty means valid)
    """
    defects = []
    for error in sorted(_validator(name).iter_errors(document), key=lambda e: [str(p) for p in e.absolute_path]):
        location = "/".join(str(p) for p in error.absolute_path) or "<root>"
        defects.append(f"{location}: {error.message}")
    return defects
