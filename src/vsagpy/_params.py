from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union

from .errors import ConfigurationError


class IndexType(str, Enum):
    HNSW = "hnsw"
    DISKANN = "diskann"


class MetricType(str, Enum):
    L2 = "l2"
    IP = "ip"
    COSINE = "cosine"


def _require_positive(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


def _enum_value(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass
class HNSWParams:
    """Construction parameters for an HNSW index."""
    dim: int
    metric_type: MetricType | str = MetricType.L2
    dtype: str = "float32"
    max_degree: int = 16
    ef_construction: int = 200

    def __post_init__(self):
        _require_positive("dim", self.dim)
        _require_positive("max_degree", self.max_degree)
        _require_positive("ef_construction", self.ef_construction)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dtype": self.dtype,
            "metric_type": _enum_value(self.metric_type),
            "dim": self.dim,
            "hnsw": {
                "max_degree": self.max_degree,
                "ef_construction": self.ef_construction,
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class DiskANNParams:
    """Construction parameters for a DiskANN index."""
    dim: int
    metric_type: MetricType | str = MetricType.L2
    dtype: str = "float32"
    max_degree: int = 16
    ef_construction: int = 200
    pq_dims: int = 32
    pq_sample_rate: float = 0.5

    def __post_init__(self):
        _require_positive("dim", self.dim)
        _require_positive("max_degree", self.max_degree)
        _require_positive("ef_construction", self.ef_construction)
        _require_positive("pq_dims", self.pq_dims)
        if not 0.0 < float(self.pq_sample_rate) <= 1.0:
            raise ConfigurationError(f"pq_sample_rate must be in (0.0, 1.0], got {self.pq_sample_rate!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "dtype": self.dtype,
            "metric_type": _enum_value(self.metric_type),
            "dim": self.dim,
            "diskann": {
                "max_degree": self.max_degree,
                "ef_construction": self.ef_construction,
                "pq_dims": self.pq_dims,
                "pq_sample_rate": float(self.pq_sample_rate),
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class HNSWSearchParams:
    """Query-time parameters for an HNSW index."""
    ef_search: int = 100
    use_conjugate_graph_search: bool | None = None

    def __post_init__(self):
        _require_positive("ef_search", self.ef_search)

    def to_dict(self) -> dict[str, Any]:
        hnsw: dict[str, Any] = {"ef_search": self.ef_search}
        if self.use_conjugate_graph_search is not None:
            hnsw["use_conjugate_graph_search"] = bool(self.use_conjugate_graph_search)
        return {"hnsw": hnsw}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class DiskANNSearchParams:
    """Query-time parameters for a DiskANN index."""
    ef_search: int = 100
    beam_search: int = 4
    io_limit: int = 200
    use_reorder: bool | None = None

    def __post_init__(self):
        _require_positive("ef_search", self.ef_search)
        _require_positive("beam_search", self.beam_search)
        _require_positive("io_limit", self.io_limit)

    def to_dict(self) -> dict[str, Any]:
        diskann: dict[str, Any] = {
            "ef_search": self.ef_search,
            "beam_search": self.beam_search,
            "io_limit": self.io_limit,
        }
        if self.use_reorder is not None:
            diskann["use_reorder"] = bool(self.use_reorder)
        return {"diskann": diskann}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


ParamsLike = Union[str, bytes, Mapping[str, Any], HNSWParams, DiskANNParams, HNSWSearchParams, DiskANNSearchParams]


def params_to_json(params: ParamsLike) -> tuple[str, dict[str, Any]]:
    """Render ``params`` as JSON text and return it with its parsed form.

    Only the JSON syntax and the top-level object shape are checked here;
    the schema belongs to the engine.
    """
    if hasattr(params, "to_json"):
        text = params.to_json()
    elif isinstance(params, bytes):
        try:
            text = params.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ConfigurationError(f"parameters are not valid UTF-8: {exc}") from exc
    elif isinstance(params, str):
        text = params
    elif isinstance(params, Mapping):
        try:
            text = json.dumps(dict(params))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"parameters are not JSON serializable: {exc}") from exc
    else:
        raise ConfigurationError(f"unsupported parameters type {type(params).__name__}")

    if "\0" in text:
        raise ConfigurationError("parameters must not contain NUL characters")
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ConfigurationError(f"parameters are not valid UTF-8: {exc}") from exc
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"parameters are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"parameters must be a JSON object, got {type(parsed).__name__}")
    return text, parsed


def configured_dim(parsed: Mapping[str, Any]) -> int | None:
    """Return the ``dim`` field of construction parameters when it is an int."""
    dim = parsed.get("dim")
    if isinstance(dim, bool) or not isinstance(dim, int):
        return None
    return dim
