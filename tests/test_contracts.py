from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest

from orthowarp import contracts
from orthowarp.raster.errors import ConfigurationError


def _load_fixture(name: str) -> dict:
    path = Path(__file__).parent / "fixtures" / name
    return json.loads(path.read_text(encoding="utf-8"))


def test_minimal_job_config_is_valid() -> None:
    contracts.validate_job_config(
        {"sources": ["a.tif"], "output": "out.tif", "target_crs": "EPSG:3857", "zoom": 17}
    )


def test_job_config_accepts_structured_pipeline() -> None:
    contracts.validate_job_config(
        {
            "sources": ["a.tif"],
            "output": "out.tif",
            "target_crs": "EPSG:3857",
            "resolution": 0.5,
            "pipeline": [
                {"proj": "utm", "inverse": True, "params": {"zone": 33}},
                "+proj=webmerc +ellps=WGS84",
            ],
        }
    )


def test_job_config_error_names_location() -> None:
    with pytest.raises(ConfigurationError, match="at mask/invert"):
        contracts.validate_job_config(
            {
                "sources": ["a.tif"],
                "output": "out.tif",
                "target_crs": "EPSG:3857",
                "zoom": 17,
                "mask": {"path": "m.geojson", "invert": "yes"},
            }
        )


def test_job_config_requires_sources() -> None:
    with pytest.raises(ConfigurationError, match="sources"):
        contracts.validate_job_config({"output": "out.tif", "target_crs": "EPSG:3857", "zoom": 1})


def test_run_report_schema() -> None:
    contracts.validate_run_report(_load_fixture("run_report.json"))


def test_incomplete_run_report_schema() -> None:
    report = _load_fixture("run_report.json")
    report["status"] = "incomplete"
    report["overviews"] = None
    report["warp"]["complete"] = False
    report["warp"]["blocks_done"] = 3
    report["perf"] = {"total_seconds": 1.0, "stages": {"warp": {"seconds": 0.5, "count": 1}}}
    contracts.validate_run_report(report)


def test_run_report_missing_warp() -> None:
    report = _load_fixture("run_report.json")
    del report["warp"]
    with pytest.raises(jsonschema.ValidationError):
        contracts.validate_run_report(report)
