from __future__ import annotations

import logging
import operator
import os
from dataclasses import dataclass
from typing import Any, Iterator

import numpy as np

from . import _ffi
from ._ffi import ffi
from ._params import IndexType, ParamsLike, configured_dim, params_to_json
from ._sync import ReadWriteLock
from .errors import (
    ConfigurationError,
    IndexClosedError,
    InvalidArgument,
    NativeFailure,
    Operation,
    check_error,
)

logger = logging.getLogger(__name__)

_SIZE_MAX = 2 ** (8 * ffi.sizeof("size_t")) - 1
_INT64_MAX = np.iinfo(np.int64).max


@dataclass(frozen=True, eq=False)
class SearchResult:
    """Neighbors of one query, nearest first."""
    ids: np.ndarray
    distances: np.ndarray

    def __len__(self) -> int:
        return int(self.ids.shape[0])

    def __iter__(self) -> Iterator[tuple[int, float]]:
        return iter(zip(self.ids.tolist(), self.distances.tolist()))


def _as_count(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgument(f"{name} must be an integer, got {value!r}")
    try:
        n = operator.index(value)
    except TypeError as exc:
        raise InvalidArgument(f"{name} must be an integer, got {value!r}") from exc
    if n < 0:
        raise InvalidArgument(f"{name} must be non-negative, got {n}")
    if n > _SIZE_MAX:
        raise InvalidArgument(f"{name} does not fit in size_t, got {n}")
    return n


def _as_ids(ids: Any) -> np.ndarray:
    raw = np.asarray(ids)
    if raw.size and raw.dtype.kind not in "iu":
        raise InvalidArgument(f"ids must be integers, got dtype {raw.dtype}")
    if raw.ndim != 1:
        raise InvalidArgument(f"ids must be one-dimensional, got shape {raw.shape}")
    if raw.size and raw.dtype.kind == "u" and raw.max() > _INT64_MAX:
        raise InvalidArgument(f"ids must fit in int64, got {int(raw.max())}")
    return np.ascontiguousarray(raw, dtype=np.int64)


def _as_floats(values: Any, name: str) -> np.ndarray:
    try:
        arr = np.ascontiguousarray(values, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument(f"{name} must be numeric: {exc}") from exc
    return arr


def _index_type_name(index_type: IndexType | str) -> str:
    name = index_type.value if isinstance(index_type, IndexType) else index_type
    if not isinstance(name, str):
        raise ConfigurationError(f"index_type must be a string, got {type(index_type).__name__}")
    if "\0" in name:
        raise ConfigurationError("index_type must not contain NUL characters")
    try:
        name.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ConfigurationError(f"index_type is not valid UTF-8: {exc}") from exc
    return name


def _path_bytes(path: str | os.PathLike) -> bytes:
    try:
        encoded = os.fsencode(path)
    except TypeError as exc:
        raise InvalidArgument(f"path must be str, bytes or os.PathLike, got {type(path).__name__}") from exc
    if b"\0" in encoded:
        raise InvalidArgument("path must not contain NUL characters")
    return encoded


def _take_handle(out_index_ptr, operation: Operation):
    handle = out_index_ptr[0]
    if handle == ffi.NULL:
        raise NativeFailure(f"{operation.value} returned a NULL index", operation=operation)
    return handle


def _unpack_ids(lib, ids_ptr, n: int) -> np.ndarray:
    try:
        if n == 0:
            return np.empty(0, dtype=np.int64)
        if ids_ptr == ffi.NULL:
            raise NativeFailure(f"engine reported {n} ids but returned NULL")
        return np.array(ffi.unpack(ids_ptr, n), dtype=np.int64)
    finally:
        if ids_ptr != ffi.NULL:
            lib.free_i64_vector(ids_ptr)


def _unpack_results(lib, ids_ptr, distances_ptr, n: int) -> SearchResult:
    try:
        if n == 0:
            return SearchResult(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float32))
        if ids_ptr == ffi.NULL or distances_ptr == ffi.NULL:
            raise NativeFailure(f"engine reported {n} results but returned NULL", operation=Operation.SEARCH)
        ids = np.array(ffi.unpack(ids_ptr, n), dtype=np.int64)
        distances = np.array(ffi.unpack(distances_ptr, n), dtype=np.float32)
    finally:
        if ids_ptr != ffi.NULL:
            lib.free_i64_vector(ids_ptr)
        if distances_ptr != ffi.NULL:
            lib.free_f32_vector(distances_ptr)

    if n > 1 and np.any(np.diff(distances) < 0):
        order = np.argsort(distances, kind="stable")
        ids, distances = ids[order], distances[order]
    return SearchResult(ids, distances)


class VsagIndex:
    """A native VSAG index.

    The instance exclusively owns the native handle and frees it exactly
    once, on :meth:`close`, on leaving a ``with`` block, or when garbage
    collected. Instances cannot be copied or pickled.

    Concurrent :meth:`knn_search` calls are allowed; :meth:`build`,
    :meth:`dump` and :meth:`close` wait for in-flight searches and run alone.

    Example:
        >>> params = HNSWParams(dim=128, metric_type="l2")
        >>> with VsagIndex.create("hnsw", params) as index:
        ...     failed = index.build(len(ids), 128, ids, vectors)
        ...     result = index.knn_search(query, k=10, search_params=HNSWSearchParams(ef_search=100))
    """

    def __init__(self, handle, index_type: str, dim: int | None, lib=None):
        self._lib = lib if lib is not None else _ffi.get_lib()
        self._handle = handle
        self.index_type = index_type
        self.dim = dim
        self._lock = ReadWriteLock()
        self._closed = False

    @classmethod
    def create(cls, index_type: IndexType | str, params: ParamsLike) -> "VsagIndex":
        """
        Create an empty index.

        Args:
            index_type: ``"hnsw"`` or ``"diskann"``.
            params: Construction parameters as JSON text, a mapping, or
                :class:`HNSWParams` / :class:`DiskANNParams`. HNSW example::

                    {
                        "dtype": "float32",
                        "metric_type": "l2",
                        "dim": 128,
                        "hnsw": {"max_degree": 16, "ef_construction": 200}
                    }

        Raises:
            ConfigurationError: If the parameters are malformed or rejected.
            NativeFailure: If the engine fails without a finer classification.
        """
        type_name = _index_type_name(index_type)
        text, parsed = params_to_json(params)
        lib = _ffi.get_lib()
        out_index_ptr = ffi.new("void **")
        err = lib.create_index(type_name.encode("utf-8"), text.encode("utf-8"), out_index_ptr)
        check_error(lib, err, Operation.CREATE)
        handle = _take_handle(out_index_ptr, Operation.CREATE)
        dim = configured_dim(parsed)
        logger.debug("created %s index (dim=%s)", type_name, dim)
        return cls(handle, type_name, dim, lib)

    @classmethod
    def load(cls, path: str | os.PathLike, index_type: IndexType | str, params: ParamsLike) -> "VsagIndex":
        """Load an index written by :meth:`dump`.

        ``index_type`` and ``params`` should be the ones the index was created with.
        """
        type_name = _index_type_name(index_type)
        text, parsed = params_to_json(params)
        lib = _ffi.get_lib()
        out_index_ptr = ffi.new("void **")
        err = lib.load_index(_path_bytes(path), type_name.encode("utf-8"), text.encode("utf-8"), out_index_ptr)
        check_error(lib, err, Operation.LOAD)
        handle = _take_handle(out_index_ptr, Operation.LOAD)
        logger.debug("loaded %s index from %s", type_name, os.fspath(path))
        return cls(handle, type_name, configured_dim(parsed), lib)

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise IndexClosedError("index is closed")

    def _live_handle(self):
        # Call with self._lock held.
        self._ensure_open()
        return self._handle

    def build(self, num_vectors: int, dim: int, ids, vectors) -> np.ndarray:
        """
        Build the index from a batch of vectors.

        Args:
            num_vectors: Number of vectors in the batch.
            dim: Dimensionality of every vector.
            ids: ``num_vectors`` int64 identifiers.
            vectors: Row-major float32 data of size ``num_vectors * dim``,
                flat or shaped ``(num_vectors, dim)``.

        Returns:
            IDs of vectors the engine rejected (e.g. duplicates). Empty when
            every vector was added.

        Raises:
            InvalidArgument: If the batch shape does not match, checked
                before the native call.
            BuildError: If the engine fails the whole build.
        """
        self._ensure_open()
        num_vectors = _as_count(num_vectors, "num_vectors")
        dim = _as_count(dim, "dim")
        ids_arr = _as_ids(ids)
        vec_arr = _as_floats(vectors, "vectors")
        if vec_arr.ndim == 2 and vec_arr.shape != (num_vectors, dim):
            raise InvalidArgument(f"expected vectors of shape ({num_vectors}, {dim}), got {vec_arr.shape}")
        vec_arr = vec_arr.reshape(-1)

        if ids_arr.shape[0] != num_vectors:
            raise InvalidArgument(f"expected {num_vectors} ids, got {ids_arr.shape[0]}")
        if vec_arr.size != num_vectors * dim:
            raise InvalidArgument(
                f"expected {num_vectors * dim} floats ({num_vectors} x {dim}), got {vec_arr.size}"
            )
        if self.dim is not None and dim != self.dim:
            raise InvalidArgument(f"expected vectors of dim {self.dim}, got {dim}")

        with self._lock.write():
            handle = self._live_handle()
            out_failed_ids = ffi.new("int64_t **")
            out_num_failed = ffi.new("size_t *")
            err = self._lib.build_index(
                handle,
                num_vectors,
                dim,
                ffi.from_buffer("int64_t[]", ids_arr),
                ffi.from_buffer("float[]", vec_arr),
                out_failed_ids,
                out_num_failed,
            )
            check_error(self._lib, err, Operation.BUILD)
            failed = _unpack_ids(self._lib, out_failed_ids[0], int(out_num_failed[0]))

        logger.debug("built %s index with %d vectors", self.index_type, num_vectors)
        if failed.size:
            logger.warning("%d of %d vectors were rejected by the engine", failed.size, num_vectors)
        return failed

    def knn_search(self, query, k: int, search_params: ParamsLike) -> SearchResult:
        """
        Search for the ``k`` nearest neighbors of ``query``.

        ``search_params`` is JSON text, a mapping, or :class:`HNSWSearchParams`
        / :class:`DiskANNSearchParams`, e.g. ``{"hnsw": {"ef_search": 100}}``.

        Returns at most ``k`` results ordered by ascending distance; fewer when
        the index holds fewer vectors.
        """
        self._ensure_open()
        k = _as_count(k, "k")
        if k == 0:
            raise InvalidArgument("k must be positive")
        query_arr = _as_floats(query, "query")
        if query_arr.ndim != 1:
            raise InvalidArgument(f"query must be one-dimensional, got shape {query_arr.shape}")
        if self.dim is not None and query_arr.size != self.dim:
            raise InvalidArgument(f"expected query of dim {self.dim}, got {query_arr.size}")
        text, _ = params_to_json(search_params)

        with self._lock.read():
            handle = self._live_handle()
            out_ids = ffi.new("int64_t **")
            out_distances = ffi.new("float **")
            out_num_results = ffi.new("size_t *")
            err = self._lib.knn_search_index(
                handle,
                query_arr.size,
                ffi.from_buffer("float[]", query_arr),
                k,
                text.encode("utf-8"),
                out_ids,
                out_distances,
                out_num_results,
            )
            check_error(self._lib, err, Operation.SEARCH)
            result = _unpack_results(self._lib, out_ids[0], out_distances[0], int(out_num_results[0]))

        logger.debug("knn search k=%d returned %d results", k, len(result))
        return result

    def dump(self, path: str | os.PathLike) -> None:
        """Write the index to ``path``; the index stays usable."""
        self._ensure_open()
        path_bytes = _path_bytes(path)
        with self._lock.write():
            handle = self._live_handle()
            err = self._lib.dump_index(handle, path_bytes)
            check_error(self._lib, err, Operation.DUMP)
        logger.debug("dumped %s index to %s", self.index_type, os.fspath(path))

    def close(self) -> None:
        lock = getattr(self, "_lock", None)
        if lock is None:
            return
        with lock.write():
            if self._closed:
                return
            handle, self._handle = self._handle, ffi.NULL
            self._closed = True
            self._lib.free_index(handle)
        logger.debug("closed %s index", self.index_type)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __copy__(self):
        raise TypeError("VsagIndex owns a native handle and cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("VsagIndex owns a native handle and cannot be copied")

    def __reduce__(self):
        raise TypeError("VsagIndex owns a native handle and cannot be pickled")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<VsagIndex {self.index_type} dim={self.dim} {state}>"

    def __del__(self):
        try:
            self.close()
        except Exception:
            # Avoid raising during interpreter shutdown
            pass
