"""Unit tests for mmp_etl.plan_schema."""

from __future__ import annotations

import hashlib
import textwrap
from pathlib import Path

import pytest
import yaml

from mmp_etl.plan_schema import (
    DEFAULT_SCHEMA_PATH,
    PlanSchemaValidationError,
    load_plan_schema,
    parse_plan_schema,
    validate_plan_schema,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

MINIMAL_YAML = textwrap.dedent("""\
    version: "v0.1.0"
    max_file_bytes: 1024
    synonyms:
      site_code: [Site Code, code]
      site_name: [Site Name, site]
      state: [state]
    identity_fields: [site_code, site_name]
    recommended_fields: [state]
    period_headers: [Month]
    states:
      - {name: West Darfur, code: WD}
    hubs:
      - name: El Fasher Hub
        states: [West Darfur]
""")


def _data(**overrides) -> dict:
    data = yaml.safe_load(MINIMAL_YAML)
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

class TestParsePlanSchema:
    def test_synonyms_are_normalized(self):
        schema = parse_plan_schema(MINIMAL_YAML)
        assert schema.synonyms["site_code"] == ["sitecode", "code"]

    def test_hash_is_sha256_of_text(self):
        schema = parse_plan_schema(MINIMAL_YAML)
        assert schema.yaml_hash == hashlib.sha256(MINIMAL_YAML.encode("utf-8")).hexdigest()

    def test_period_headers_normalized(self):
        assert parse_plan_schema(MINIMAL_YAML).period_headers == ["month"]

    def test_state_lookups(self):
        schema = parse_plan_schema(MINIMAL_YAML)
        assert schema.state_code("west  darfur") == "WD"
        assert schema.canonical_state("WEST DARFUR") == "West Darfur"
        assert schema.hub_for_state("West Darfur") == "El Fasher Hub"

    def test_unknown_state(self):
        schema = parse_plan_schema(MINIMAL_YAML)
        assert schema.state_code("Atlantis") is None
        assert schema.canonical_state(None) is None
        assert schema.hub_for_state("Atlantis") is None

    def test_default_activity_type(self):
        assert parse_plan_schema(MINIMAL_YAML).default_activity_type == "TPM"


class TestDefaultSchemaFile:
    def test_ships_with_repo(self):
        assert DEFAULT_SCHEMA_PATH.exists()

    def test_loads_and_validates(self):
        schema = load_plan_schema()
        assert schema.max_file_bytes == 10 * 1024 * 1024
        assert "activityatsite" in schema.synonyms["site_activity"]
        assert schema.state_code("West Darfur") == "WD"
        assert schema.state_code("Northern") == "NO"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_plan_schema(tmp_path / "nope.yml")

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "schema.yml"
        path.write_text(MINIMAL_YAML, encoding="utf-8")
        assert load_plan_schema(path).version == "v0.1.0"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidatePlanSchema:
    def test_minimal_is_valid(self):
        validate_plan_schema(_data())

    def test_root_must_be_mapping(self):
        with pytest.raises(PlanSchemaValidationError, match="mapping"):
            validate_plan_schema(["not", "a", "mapping"])

    def test_missing_key(self):
        data = _data()
        del data["identity_fields"]
        with pytest.raises(PlanSchemaValidationError, match="identity_fields"):
            validate_plan_schema(data)

    @pytest.mark.parametrize("value", [0, -5, "lots"])
    def test_bad_max_file_bytes(self, value):
        with pytest.raises(PlanSchemaValidationError, match="max_file_bytes"):
            validate_plan_schema(_data(max_file_bytes=value))

    def test_unknown_canonical_field(self):
        data = _data()
        data["synonyms"]["gps"] = ["gps"]
        with pytest.raises(PlanSchemaValidationError, match="gps"):
            validate_plan_schema(data)

    def test_empty_synonym_list(self):
        data = _data()
        data["synonyms"]["state"] = []
        with pytest.raises(PlanSchemaValidationError, match="state"):
            validate_plan_schema(data)

    def test_identity_field_needs_synonyms(self):
        with pytest.raises(PlanSchemaValidationError, match="identity_fields"):
            validate_plan_schema(_data(identity_fields=["locality"]))

    def test_state_code_must_be_two_letters(self):
        with pytest.raises(PlanSchemaValidationError, match="two letters"):
            validate_plan_schema(_data(states=[{"name": "West Darfur", "code": "WDX"}]))

    def test_hub_unknown_state(self):
        with pytest.raises(PlanSchemaValidationError, match="Atlantis"):
            validate_plan_schema(_data(hubs=[{"name": "Sea Hub", "states": ["Atlantis"]}]))


def test_schema_file_next_to_src():
    here = Path(__file__).parent
    assert (here.parent.parent / "config" / "plan_schema.yml").exists()
