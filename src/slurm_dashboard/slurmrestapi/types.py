"""Raw API response types for SLURM REST API.

Pydantic models representing the structure of data returned by the SLURM
REST API with minimal processing. Fields the dashboard does not aggregate
are kept as extra attributes so node listings can pass them through.
"""

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

logger = structlog.get_logger(__name__)


def _unwrap_number(value: Any) -> Any:
    """Unwrap the ``{"set": ..., "number": ...}`` struct used by newer APIs."""
    if isinstance(value, dict):
        if not value.get("set", True) or value.get("infinite", False):
            return 0
        return value.get("number", 0)
    return value


def _coerce_int(value: Any, field_name: str) -> int:
    value = _unwrap_number(value)
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        logger.warning(
            "Unparseable numeric field, defaulting to 0",
            field=field_name,
            value=repr(value),
        )
        return 0


def _coerce_tokens(value: Any) -> list[str]:
    """Normalize a token field that may be a string, list, or missing."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(token) for token in value if token is not None]
    return [str(value)]


class RawNodeData(BaseModel):
    """Raw node data from SLURM REST API.

    Memory values are in MB, cpu_load is scaled by 100. State is an ordered
    token list (primary state first, then flags such as ``DRAIN``).
    """

    model_config = ConfigDict(extra="allow")

    # Core identification
    name: str = ""
    hostname: str = ""

    # State information
    state: list[str] = []

    # CPU information
    cpus: int = 0
    alloc_cpus: int = 0
    cpu_load: int = 0

    # Memory information (in MB)
    real_memory: int = 0
    alloc_memory: int = 0

    # GRES (Generic Resources like GPUs)
    gres: str = ""
    gres_used: str = ""

    # Partitions
    partitions: list[str] = []

    @field_validator("name", "hostname", "gres", "gres_used", mode="before")
    @classmethod
    def _default_strings(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("state", "partitions", mode="before")
    @classmethod
    def _normalize_tokens(cls, value: Any) -> list[str]:
        return _coerce_tokens(value)

    @field_validator(
        "cpus", "alloc_cpus", "cpu_load", "real_memory", "alloc_memory",
        mode="before",
    )
    @classmethod
    def _normalize_numbers(cls, value: Any, info: ValidationInfo) -> int:
        return _coerce_int(value, info.field_name)

    @property
    def primary_state(self) -> str:
        return self.state[0].upper() if self.state else ""

    @property
    def secondary_state(self) -> str:
        return self.state[1].upper() if len(self.state) > 1 else ""


class RawJobData(BaseModel):
    """Raw job data from SLURM REST API.

    Only identity and state are typed; every other field is carried as an
    extra attribute. ``job_state`` is a token list on newer API versions
    and a plain string on older ones; both are accepted.
    """

    model_config = ConfigDict(extra="allow")

    job_id: int = 0
    user_name: str = ""
    job_state: list[str] = []

    @field_validator("user_name", mode="before")
    @classmethod
    def _default_strings(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("job_state", mode="before")
    @classmethod
    def _normalize_state(cls, value: Any) -> list[str]:
        return _coerce_tokens(value)

    @field_validator("job_id", mode="before")
    @classmethod
    def _normalize_job_id(cls, value: Any) -> int:
        return _coerce_int(value, "job_id")

    @property
    def primary_state(self) -> str:
        return self.job_state[0].upper() if self.job_state else ""
