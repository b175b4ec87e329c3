"""Response types for the Prometheus HTTP query API."""

import math
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger(__name__)


class SamplePoint(BaseModel):
    """A single sample: Unix timestamp in seconds and its value."""

    time: float
    value: float


class RangeSeries(BaseModel):
    """One series from a range query's ``matrix`` result.

    ``values`` arrives as ``[[timestamp, "value"], ...]``. NaN, infinite and
    unparseable samples are dropped.
    """

    metric: dict[str, str] = Field(default_factory=dict)
    values: list[SamplePoint] = Field(default_factory=list)

    @field_validator("metric", mode="before")
    @classmethod
    def _labels_as_strings(cls, value: Any) -> dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {str(k): str(v) for k, v in value.items() if v is not None}

    @field_validator("values", mode="before")
    @classmethod
    def _parse_samples(cls, value: Any) -> list[SamplePoint]:
        if not isinstance(value, list):
            return []

        samples = []
        for item in value:
            try:
                timestamp, raw = item
                sample = float(raw)
                timestamp = float(timestamp)
            except (TypeError, ValueError):
                logger.warning("Skipping malformed sample", sample=repr(item))
                continue
            if not math.isfinite(sample):
                continue
            samples.append(SamplePoint(time=timestamp, value=sample))
        return samples

    def label_values(self) -> list[str]:
        return list(self.metric.values())
