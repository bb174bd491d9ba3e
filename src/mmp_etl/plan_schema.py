"""mmp_etl.plan_schema

YAML-based column schema for monitoring plan files.

Responsibilities:
  - Load and validate the schema file (config/plan_schema.yml by default)
  - Expose the header synonym table in normalized form
  - Look up known states (code, hub) for backfill and site-code generation
  - Hash YAML content for traceability in run reports

Usage:
    from mmp_etl.plan_schema import load_plan_schema

    schema = load_plan_schema()
    schema.synonyms["site_activity"]   # ['activityatsite', 'activityatthesite', ...]
    schema.state_code("West Darfur")   # 'WD'
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from mmp_etl.normalize import normalize_header, normalize_name
from mmp_etl.shared import CANONICAL_FIELDS

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SCHEMA_PATH = Path(__file__).parent.parent.parent / "config" / "plan_schema.yml"

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "max_file_bytes",
    "synonyms",
    "identity_fields",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PlanSchemaValidationError(ValueError):
    """Raised when a plan schema YAML file fails validation."""


# ---------------------------------------------------------------------------
# PlanSchema dataclass
# ---------------------------------------------------------------------------

@dataclass
class PlanSchema:
    """Parsed, validated column schema."""

    version: str
    yaml_hash: str
    max_file_bytes: int
    synonyms: dict[str, list[str]]
    identity_fields: list[str]
    recommended_fields: list[str] = field(default_factory=list)
    period_headers: list[str] = field(default_factory=list)
    default_activity_type: str = "TPM"
    # normalized state name -> (display name, code)
    states: dict[str, tuple[str, str]] = field(default_factory=dict)
    # normalized state name -> hub display name
    hubs_by_state: dict[str, str] = field(default_factory=dict)
    raw_yaml: str = field(repr=False, default="")

    def state_code(self, state: str | None) -> str | None:
        known = self.states.get(normalize_name(state) or "")
        return known[1] if known else None

    def canonical_state(self, value: str | None) -> str | None:
        """Return the registered spelling of a known state, else None."""
        known = self.states.get(normalize_name(value) or "")
        return known[0] if known else None

    def hub_for_state(self, state: str | None) -> str | None:
        return self.hubs_by_state.get(normalize_name(state) or "")


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_plan_schema(yaml_path: Path | None = None) -> PlanSchema:
    """Load, validate, and return a PlanSchema from a YAML file.

    Args:
        yaml_path: Path to the schema file; defaults to config/plan_schema.yml.

    Raises:
        PlanSchemaValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_SCHEMA_PATH
    raw = path.read_text(encoding="utf-8")
    return parse_plan_schema(raw)


def parse_plan_schema(raw: str) -> PlanSchema:
    """Validate and build a PlanSchema from YAML text."""
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_plan_schema(data)

    synonyms: dict[str, list[str]] = {}
    for canonical, spellings in data["synonyms"].items():
        normalized: list[str] = []
        for spelling in spellings:
            key = normalize_header(str(spelling))
            if key and key not in normalized:
                normalized.append(key)
        synonyms[canonical] = normalized

    states: dict[str, tuple[str, str]] = {}
    for entry in data.get("states") or []:
        states[normalize_name(entry["name"])] = (str(entry["name"]), str(entry["code"]).upper())

    hubs_by_state: dict[str, str] = {}
    for hub in data.get("hubs") or []:
        for state in hub.get("states") or []:
            hubs_by_state.setdefault(normalize_name(state), str(hub["name"]))

    return PlanSchema(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        max_file_bytes=int(data["max_file_bytes"]),
        synonyms=synonyms,
        identity_fields=list(data["identity_fields"]),
        recommended_fields=list(data.get("recommended_fields") or []),
        period_headers=[normalize_header(str(h)) for h in data.get("period_headers") or []],
        default_activity_type=str(data.get("default_activity_type") or "TPM"),
        states=states,
        hubs_by_state=hubs_by_state,
        raw_yaml=raw,
    )


def validate_plan_schema(data: dict[str, Any]) -> None:
    """Raise PlanSchemaValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - synonym keys are canonical SiteEntry fields with non-empty lists
      - identity / recommended fields refer to canonical fields
      - max_file_bytes is a positive integer
      - state codes are two letters and hubs only reference listed states
    """
    if not isinstance(data, dict):
        raise PlanSchemaValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise PlanSchemaValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    try:
        max_bytes = int(data["max_file_bytes"])
    except (TypeError, ValueError):
        raise PlanSchemaValidationError(
            f"max_file_bytes value '{data['max_file_bytes']}' is not an integer."
        )
    if max_bytes <= 0:
        raise PlanSchemaValidationError("max_file_bytes must be > 0.")

    synonyms = data.get("synonyms")
    if not isinstance(synonyms, dict) or not synonyms:
        raise PlanSchemaValidationError("'synonyms' must be a non-empty mapping.")
    unknown = set(synonyms.keys()) - set(CANONICAL_FIELDS)
    if unknown:
        raise PlanSchemaValidationError(f"Unknown canonical fields in synonyms: {sorted(unknown)}")
    for canonical, spellings in synonyms.items():
        if not isinstance(spellings, list) or not spellings:
            raise PlanSchemaValidationError(
                f"synonyms for '{canonical}' must be a non-empty list."
            )

    identity = data.get("identity_fields") or []
    if not identity:
        raise PlanSchemaValidationError("'identity_fields' must not be empty.")
    for key in ("identity_fields", "recommended_fields"):
        bad = set(data.get(key) or []) - set(synonyms.keys())
        if bad:
            raise PlanSchemaValidationError(f"{key} reference fields without synonyms: {sorted(bad)}")

    state_names: set[str] = set()
    for entry in data.get("states") or []:
        if not isinstance(entry, dict) or "name" not in entry or "code" not in entry:
            raise PlanSchemaValidationError(f"State entry {entry!r} needs 'name' and 'code'.")
        code = str(entry["code"])
        if len(code) != 2 or not code.isalpha():
            raise PlanSchemaValidationError(
                f"State code '{code}' for '{entry['name']}' must be two letters."
            )
        state_names.add(normalize_name(str(entry["name"])))

    for hub in data.get("hubs") or []:
        if not isinstance(hub, dict) or "name" not in hub:
            raise PlanSchemaValidationError(f"Hub entry {hub!r} needs a 'name'.")
        for state in hub.get("states") or []:
            if normalize_name(str(state)) not in state_names:
                raise PlanSchemaValidationError(
                    f"Hub '{hub['name']}' references unknown state '{state}'."
                )
