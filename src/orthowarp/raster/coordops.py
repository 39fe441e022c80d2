"""Ordered coordinate operation pipelines built on PROJ."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
from pyproj import Transformer
from pyproj.enums import TransformDirection
from pyproj.exceptions import CRSError, ProjError

from orthowarp.raster.crs import normalize_crs
from orthowarp.raster.errors import ConfigurationError

# Step kinds recognized for reporting; any other PROJ operation is accepted as-is.
STEP_KINDS = {
    "hgridshift": "grid shift",
    "vgridshift": "grid shift",
    "cart": "geocentric",
    "helmert": "helmert",
    "axisswap": "axis swap",
    "unitconvert": "unit conversion",
}


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return repr(value)
    return str(value)


@dataclass(frozen=True)
class PipelineStep:
    """Single PROJ operation inside a pipeline."""

    proj: str
    params: tuple[tuple[str, Any], ...] = ()
    inverse: bool = False

    @property
    def kind(self) -> str:
        base = STEP_KINDS.get(self.proj, "projection")
        if base == "projection" and self.inverse:
            return "inverse projection"
        return base

    def to_proj(self) -> str:
        """Render the step as PROJ string tokens."""
        tokens = []
        if self.inverse:
            tokens.append("+inv")
        tokens.append(f"+proj={self.proj}")
        for key, value in self.params:
            if value is True:
                tokens.append(f"+{key}")
            elif value is False or value is None:
                continue
            else:
                tokens.append(f"+{key}={_format_value(value)}")
        return " ".join(tokens)

    @classmethod
    def parse(cls, text: str) -> "PipelineStep":
        """Parse a step from PROJ string tokens like ``+inv +proj=utm +zone=33``."""
        proj: str | None = None
        inverse = False
        params: list[tuple[str, Any]] = []
        for token in text.split():
            token = token.lstrip("+")
            if not token:
                continue
            key, sep, value = token.partition("=")
            if key == "inv" and not sep:
                inverse = True
            elif key == "proj":
                proj = value
            elif key == "step":
                raise ConfigurationError("Nested pipeline steps are not supported.")
            else:
                params.append((key, value if sep else True))
        if not proj:
            raise ConfigurationError(f"Pipeline step is missing +proj: {text!r}")
        if proj == "pipeline":
            raise ConfigurationError("Nested pipelines are not supported.")
        return cls(proj=proj, params=tuple(params), inverse=inverse)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineStep":
        proj = data.get("proj")
        if not isinstance(proj, str) or not proj:
            raise ConfigurationError("Pipeline step requires a 'proj' name.")
        raw_params = data.get("params") or {}
        if not isinstance(raw_params, Mapping):
            raise ConfigurationError("Pipeline step 'params' must be an object.")
        return cls(
            proj=proj,
            params=tuple((str(key), value) for key, value in raw_params.items()),
            inverse=bool(data.get("inverse", False)),
        )

    @classmethod
    def coerce(cls, value: "PipelineStep | str | Mapping[str, Any]") -> "PipelineStep":
        if isinstance(value, PipelineStep):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        if isinstance(value, Mapping):
            return cls.from_dict(value)
        raise ConfigurationError(f"Unsupported pipeline step: {value!r}")


def _pipeline_string(steps: Iterable[PipelineStep]) -> str:
    return " ".join(["+proj=pipeline", *(f"+step {step.to_proj()}" for step in steps)])


def _create(definition: str) -> Transformer:
    try:
        return Transformer.from_pipeline(definition)
    except (ProjError, CRSError) as exc:
        raise ConfigurationError(f"Invalid coordinate operation {definition!r}: {exc}") from exc


@dataclass(frozen=True)
class CoordinatePipeline:
    """Source-to-target coordinate transform as an ordered list of PROJ steps.

    A pipeline is either an explicit list of steps, applied left to right,
    or a CRS pair resolved by PROJ. Transformers are created lazily and kept
    per thread so a single pipeline can be shared across worker threads.
    """

    steps: tuple[PipelineStep, ...] = ()
    source_crs: str | None = None
    target_crs: str | None = None
    _local: threading.local = field(
        default_factory=threading.local, init=False, repr=False, compare=False
    )

    @classmethod
    def from_steps(
        cls,
        steps: Sequence[PipelineStep | str | Mapping[str, Any]],
        *,
        source_crs: str | None = None,
        target_crs: str | None = None,
    ) -> "CoordinatePipeline":
        if not steps:
            raise ConfigurationError("Coordinate pipeline requires at least one step.")
        return cls(
            steps=tuple(PipelineStep.coerce(step) for step in steps),
            source_crs=source_crs,
            target_crs=target_crs,
        )

    @classmethod
    def from_string(cls, text: str, **kwargs: Any) -> "CoordinatePipeline":
        """Parse a ``+proj=pipeline +step ...`` string or a single operation."""
        chunks = [chunk.strip() for chunk in text.split("+step")]
        head, rest = chunks[0], [chunk for chunk in chunks[1:] if chunk]
        if rest:
            if head.lstrip("+") not in {"", "proj=pipeline"}:
                raise ConfigurationError(f"Unsupported pipeline header: {head!r}")
            return cls.from_steps(rest, **kwargs)
        return cls.from_steps([head], **kwargs)

    @classmethod
    def from_crs(cls, source_crs: str, target_crs: str) -> "CoordinatePipeline":
        normalize_crs(source_crs)
        normalize_crs(target_crs)
        return cls(source_crs=source_crs, target_crs=target_crs)

    @property
    def definition(self) -> str:
        if self.steps:
            return _pipeline_string(self.steps)
        return f"{self.source_crs} -> {self.target_crs}"

    def _build(self) -> Transformer:
        if self.steps:
            return _create(_pipeline_string(self.steps))
        if not self.source_crs or not self.target_crs:
            raise ConfigurationError("Coordinate pipeline requires steps or a CRS pair.")
        try:
            return Transformer.from_crs(
                normalize_crs(self.source_crs),
                normalize_crs(self.target_crs),
                always_xy=True,
            )
        except (ProjError, CRSError) as exc:
            raise ConfigurationError(f"Invalid coordinate operation: {exc}") from exc

    @property
    def transformer(self) -> Transformer:
        cached = getattr(self._local, "transformer", None)
        if cached is None:
            cached = self._build()
            self._local.transformer = cached
        return cached

    def validate(self) -> None:
        """Check every step is accepted by PROJ and invertible."""
        for index, step in enumerate(self.steps):
            tx = _create(_pipeline_string([step]))
            if not tx.has_inverse:
                raise ConfigurationError(
                    f"Pipeline step {index + 1} ({step.to_proj()}) is not invertible."
                )
        if not self.transformer.has_inverse:
            raise ConfigurationError(f"Coordinate pipeline is not invertible: {self.definition}")

    def forward(self, xs: Any, ys: Any) -> tuple[np.ndarray, np.ndarray]:
        """Transform source coordinates to the target reference."""
        out_x, out_y = self.transformer.transform(
            np.asarray(xs, dtype="float64"),
            np.asarray(ys, dtype="float64"),
            direction=TransformDirection.FORWARD,
        )
        return np.asarray(out_x, dtype="float64"), np.asarray(out_y, dtype="float64")

    def inverse(self, xs: Any, ys: Any) -> tuple[np.ndarray, np.ndarray]:
        """Transform target coordinates back to the source reference."""
        out_x, out_y = self.transformer.transform(
            np.asarray(xs, dtype="float64"),
            np.asarray(ys, dtype="float64"),
            direction=TransformDirection.INVERSE,
        )
        return np.asarray(out_x, dtype="float64"), np.asarray(out_y, dtype="float64")

    def describe(self) -> list[dict[str, object]]:
        """Return a JSON-friendly description of each step."""
        if not self.steps:
            return [{"kind": "crs", "source": self.source_crs, "target": self.target_crs}]
        return [{"kind": step.kind, "proj": step.to_proj()} for step in self.steps]


def pipeline_from_config(
    value: str | Sequence[Any] | None,
    *,
    source_crs: str,
    target_crs: str,
) -> CoordinatePipeline:
    """Build a pipeline from a config value, falling back to the CRS pair."""
    if value is None or (not isinstance(value, str) and len(value) == 0):
        return CoordinatePipeline.from_crs(source_crs, target_crs)
    if isinstance(value, str):
        return CoordinatePipeline.from_string(
            value, source_crs=source_crs, target_crs=target_crs
        )
    return CoordinatePipeline.from_steps(value, source_crs=source_crs, target_crs=target_crs)
