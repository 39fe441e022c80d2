from __future__ import annotations

import threading

import numpy as np
import pytest

from orthowarp.raster.coordops import CoordinatePipeline, PipelineStep, pipeline_from_config
from orthowarp.raster.errors import ConfigurationError
from tests.utils import UTM33_TO_WEBMERC

HELMERT_PIPELINE = (
    "+proj=pipeline +step +inv +proj=utm +zone=33 +ellps=WGS84 "
    "+step +proj=cart +ellps=WGS84 "
    "+step +proj=helmert +x=10.5 +y=-3.2 +z=7.1 "
    "+step +inv +proj=cart +ellps=WGS84 "
    "+step +proj=webmerc +ellps=WGS84"
)


def _utm_points() -> tuple[np.ndarray, np.ndarray]:
    xs, ys = np.meshgrid(
        np.linspace(450000.0, 550000.0, 7),
        np.linspace(5400000.0, 5600000.0, 5),
    )
    return xs.ravel(), ys.ravel()


def test_parse_step_tokens() -> None:
    step = PipelineStep.parse("+inv +proj=utm +zone=33 +ellps=WGS84 +south")
    assert step.inverse
    assert step.proj == "utm"
    assert step.params == (("zone", "33"), ("ellps", "WGS84"), ("south", True))
    assert step.to_proj() == "+inv +proj=utm +zone=33 +ellps=WGS84 +south"
    assert step.kind == "inverse projection"


def test_step_from_dict() -> None:
    step = PipelineStep.from_dict({"proj": "helmert", "params": {"x": 10.5, "y": -3}})
    assert step.kind == "helmert"
    assert step.to_proj() == "+proj=helmert +x=10.5 +y=-3"


@pytest.mark.parametrize(
    "text, message",
    [
        ("+zone=33", "missing \\+proj"),
        ("+proj=pipeline", "Nested pipelines"),
        ("+proj=utm +step", "Nested pipeline steps"),
    ],
)
def test_parse_step_rejects_bad_tokens(text: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        PipelineStep.parse(text)


def test_from_string_splits_steps() -> None:
    pipeline = CoordinatePipeline.from_string(UTM33_TO_WEBMERC)
    assert [step.proj for step in pipeline.steps] == ["utm", "webmerc"]
    assert pipeline.definition == UTM33_TO_WEBMERC
    assert [entry["kind"] for entry in pipeline.describe()] == [
        "inverse projection",
        "projection",
    ]


def test_empty_pipeline_rejected() -> None:
    with pytest.raises(ConfigurationError, match="at least one step"):
        CoordinatePipeline.from_steps([])


@pytest.mark.parametrize("definition", [UTM33_TO_WEBMERC, HELMERT_PIPELINE])
def test_round_trip_law(definition: str) -> None:
    pipeline = CoordinatePipeline.from_string(definition)
    pipeline.validate()
    xs, ys = _utm_points()
    fx, fy = pipeline.forward(xs, ys)
    assert np.all(np.isfinite(fx)) and np.all(np.isfinite(fy))
    bx, by = pipeline.inverse(fx, fy)
    np.testing.assert_allclose(bx, xs, atol=1e-6)
    np.testing.assert_allclose(by, ys, atol=1e-6)


def test_helmert_step_shifts_output() -> None:
    plain = CoordinatePipeline.from_string(UTM33_TO_WEBMERC)
    shifted = CoordinatePipeline.from_string(HELMERT_PIPELINE)
    xs, ys = _utm_points()
    px, _ = plain.forward(xs, ys)
    sx, _ = shifted.forward(xs, ys)
    assert np.all(np.abs(px - sx) > 1.0)


def test_pipeline_matches_crs_pair() -> None:
    explicit = CoordinatePipeline.from_string(UTM33_TO_WEBMERC)
    by_crs = CoordinatePipeline.from_crs("EPSG:32633", "EPSG:3857")
    xs, ys = _utm_points()
    ex, ey = explicit.forward(xs, ys)
    cx, cy = by_crs.forward(xs, ys)
    np.testing.assert_allclose(ex, cx, atol=1e-3)
    np.testing.assert_allclose(ey, cy, atol=1e-3)


def test_non_invertible_step_rejected() -> None:
    pipeline = CoordinatePipeline.from_steps(
        ["+inv +proj=utm +zone=33 +ellps=WGS84", "+proj=airy +R=6378137"]
    )
    with pytest.raises(ConfigurationError, match="Pipeline step 2 .* not invertible"):
        pipeline.validate()


def test_unknown_operation_rejected() -> None:
    pipeline = CoordinatePipeline.from_steps(["+proj=definitely_not_an_operation"])
    with pytest.raises(ConfigurationError, match="Invalid coordinate operation"):
        pipeline.validate()


def test_transformers_are_per_thread() -> None:
    pipeline = CoordinatePipeline.from_string(UTM33_TO_WEBMERC)
    seen: list[object] = []
    thread = threading.Thread(target=lambda: seen.append(pipeline.transformer))
    thread.start()
    thread.join()
    assert seen[0] is not pipeline.transformer
    assert pipeline.transformer is pipeline.transformer


def test_pipeline_from_config_variants() -> None:
    by_crs = pipeline_from_config(None, source_crs="EPSG:32633", target_crs="EPSG:3857")
    assert by_crs.steps == ()
    assert by_crs.describe()[0]["kind"] == "crs"

    from_list = pipeline_from_config(
        [
            "+inv +proj=utm +zone=33 +ellps=WGS84",
            {"proj": "webmerc", "params": {"ellps": "WGS84"}},
        ],
        source_crs="EPSG:32633",
        target_crs="EPSG:3857",
    )
    from_text = pipeline_from_config(
        UTM33_TO_WEBMERC, source_crs="EPSG:32633", target_crs="EPSG:3857"
    )
    assert from_list.definition == from_text.definition
    assert from_list.source_crs == "EPSG:32633"
