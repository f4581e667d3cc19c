from functools import lru_cache
from pathlib import Path
import json
import jsonschema

REPO_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_DIR = REPO_ROOT / "config" / "schemas"

RECORD_SCHEMA = "rma_record"


class RecordValidationError(ValueError):
    """A record failed its JSON schema; the message lists every violation."""


@lru_cache(maxsize=8)
def _load_schema(name: str) -> dict:
    schema_path = SCHEMA_DIR / f"{name}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def get_required_fields(name: str = RECORD_SCHEMA):
    try:
        schema = _load_schema(name)
    except (OSError, ValueError):
        return []
    req = schema.get("required", [])
    return req if isinstance(req, list) else []


def _describe(err: jsonschema.exceptions.ValidationError) -> str:
    where = ".".join(str(p) for p in err.absolute_path)
    return f"{where}: {err.message}" if where else err.message


def validate_with_schema(data: dict, name: str = RECORD_SCHEMA):
    """
    Returns (is_valid, message). Never raises for bad data or a missing schema.
    """
    try:
        schema = _load_schema(name)
    except (OSError, ValueError) as e:
        return False, str(e)

    validator = jsonschema.Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path])
    if not errors:
        return True, "Valid"
    return False, "; ".join(_describe(e) for e in errors)


def ensure_valid_record(data: dict) -> None:
    ok, msg = validate_with_schema(data)
    if not ok:
        raise RecordValidationError(msg)
