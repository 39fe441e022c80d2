"""Schema validation helpers for job configs and run reports."""

from __future__ import annotations

import json
from importlib import resources
from typing import Any, Mapping

import jsonschema

from orthowarp.raster.errors import ConfigurationError

SCHEMA_VERSION = "1.0"


def _load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema bundled in the package."""
    with resources.files("orthowarp.schemas").joinpath(name).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def validate_job_config(config: Mapping[str, Any]) -> None:
    """Validate a job config, raising ConfigurationError on violations."""
    schema = _load_schema("job.schema.json")
    try:
        jsonschema.validate(config, schema)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid job config at {location}: {exc.message}") from exc


def validate_run_report(report: Mapping[str, Any]) -> None:
    """Validate a run report against the schema."""
    schema = _load_schema("run_report.schema.json")
    jsonschema.validate(report, schema)
