"""vsagpy: Python bindings for the VSAG vector index engine.

vsagpy wraps the VSAG C wrapper library through CFFI. Index construction,
graph traversal and distance computation all run in the native engine; this
package marshals parameters and buffers across the boundary, maps native
error codes to exceptions, and owns the native index handle.

Core Components:
    VsagIndex: Owned native index with create/build/search/dump/load.
    SearchResult: Neighbor ids and distances of one query, nearest first.
    HNSWParams, DiskANNParams: Typed construction parameters.
    HNSWSearchParams, DiskANNSearchParams: Typed search parameters.

Example:
    >>> import numpy as np
    >>> from vsagpy import VsagIndex, HNSWParams, HNSWSearchParams
    >>> vectors = np.random.rand(1000, 128).astype(np.float32)
    >>> with VsagIndex.create("hnsw", HNSWParams(dim=128)) as index:
    ...     failed = index.build(1000, 128, np.arange(1000), vectors)
    ...     result = index.knn_search(vectors[0], k=10, search_params=HNSWSearchParams(ef_search=100))
"""
from ._core import SearchResult, VsagIndex
from ._params import (
    DiskANNParams,
    DiskANNSearchParams,
    HNSWParams,
    HNSWSearchParams,
    IndexType,
    MetricType,
)
from .errors import (
    BuildError,
    ConfigurationError,
    ErrorType,
    IndexClosedError,
    InvalidArgument,
    NativeFailure,
    PersistenceError,
    SearchError,
    VsagError,
)

__all__ = [
    # Index
    "VsagIndex",
    "SearchResult",
    # Parameters
    "IndexType",
    "MetricType",
    "HNSWParams",
    "DiskANNParams",
    "HNSWSearchParams",
    "DiskANNSearchParams",
    # Errors
    "ErrorType",
    "VsagError",
    "ConfigurationError",
    "InvalidArgument",
    "BuildError",
    "SearchError",
    "PersistenceError",
    "NativeFailure",
    "IndexClosedError",
]

__version__ = "0.1.0"
