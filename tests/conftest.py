"""
Shared fixtures.

FakeVsagLib stands in for libvsag_wrapper: it implements the same C ABI on
top of the real ``ffi`` object, allocating genuine cffi memory for error
records and result arrays, so the binding's marshaling, error decoding and
freeing run exactly as they would against the native engine.
"""
from __future__ import annotations

import json
import os
import threading
import time

import numpy as np
import pytest

from vsagpy import _ffi
from vsagpy._ffi import ffi
from vsagpy.errors import ErrorType


def _addr(ptr) -> int:
    return int(ffi.cast("uintptr_t", ptr))


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return ffi.string(value).decode("utf-8")


def _path(value) -> str:
    if isinstance(value, bytes):
        return os.fsdecode(value)
    return os.fsdecode(ffi.string(value))


class _FakeIndex:
    def __init__(self, index_type: str, dim: int, metric: str):
        self.index_type = index_type
        self.dim = dim
        self.metric = metric
        self.ids: list[int] = []
        self.vectors = np.empty((0, dim), dtype=np.float32)

    def distances(self, query: np.ndarray) -> np.ndarray:
        if self.metric == "l2":
            return ((self.vectors - query) ** 2).sum(axis=1)
        dots = self.vectors @ query
        if self.metric == "ip":
            return 1.0 - dots
        norms = np.linalg.norm(self.vectors, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        return 1.0 - dots / norms


class FakeVsagLib:
    """In-process stand-in for the VSAG C wrapper."""

    SUPPORTED = ("hnsw", "diskann")
    METRICS = ("l2", "ip", "cosine")

    def __init__(self):
        self.indexes: dict[int, _FakeIndex] = {}
        self.freed: list[int] = []
        self.allocations: dict[int, object] = {}
        self.bad_frees: list[int] = []
        self.calls: list[str] = []
        self.fail_next = None
        self.null_handle = False
        self.reverse_results = False
        self.call_delay = 0.0
        self.active_builds = 0
        self.active_searches = 0
        self.violations: list[str] = []
        self._next_handle = 0x1000
        self._mutex = threading.Lock()

    # -- helpers ---------------------------------------------------------

    def _error(self, code, message: str):
        err = ffi.new("CError *", {"type_": int(code), "message": message.encode("utf-8")[:255]})
        self.allocations[_addr(err)] = err
        return err

    def _array(self, ctype: str, values):
        buf = ffi.new(f"{ctype}[]", list(values))
        self.allocations[_addr(buf)] = buf
        return buf

    def _injected(self):
        if self.fail_next is None:
            return None
        code, message = self.fail_next
        self.fail_next = None
        return self._error(code, message)

    def _lookup(self, ptr) -> _FakeIndex:
        addr = _addr(ptr)
        if addr in self.freed:
            raise AssertionError(f"use of freed index {addr:#x}")
        return self.indexes[addr]

    def _release(self, ptr) -> None:
        if self.allocations.pop(_addr(ptr), None) is None:
            self.bad_frees.append(_addr(ptr))

    def _parse_construction(self, index_type, params):
        name = _text(index_type)
        if name not in self.SUPPORTED:
            return None, self._error(ErrorType.UNSUPPORTED_INDEX, f"unsupported index type: {name}")
        try:
            parsed = json.loads(_text(params))
        except ValueError:
            return None, self._error(ErrorType.INVALID_ARGUMENT, "parameters are not valid json")
        for key in ("dtype", "metric_type", "dim", name):
            if key not in parsed:
                return None, self._error(ErrorType.INVALID_ARGUMENT, f"missing parameter: {key}")
        if parsed["metric_type"] not in self.METRICS:
            return None, self._error(ErrorType.INVALID_ARGUMENT, f"unknown metric: {parsed['metric_type']}")
        return _FakeIndex(name, int(parsed["dim"]), parsed["metric_type"]), None

    def _install(self, index: _FakeIndex, out_index_ptr) -> None:
        if self.null_handle:
            out_index_ptr[0] = ffi.NULL
            return
        addr = self._next_handle
        self._next_handle += 0x10
        self.indexes[addr] = index
        out_index_ptr[0] = ffi.cast("void *", addr)

    # -- C ABI -----------------------------------------------------------

    def create_index(self, in_index_type, in_parameters, out_index_ptr):
        self.calls.append("create_index")
        err = self._injected()
        if err is not None:
            return err
        index, err = self._parse_construction(in_index_type, in_parameters)
        if err is not None:
            return err
        self._install(index, out_index_ptr)
        return ffi.NULL

    def build_index(self, in_index_ptr, in_num_vectors, in_dim, in_ids, in_vectors,
                    out_failed_ids, out_num_failed):
        self.calls.append("build_index")
        with self._mutex:
            self.active_builds += 1
            if self.active_searches or self.active_builds > 1:
                self.violations.append("build overlapped another call")
        try:
            if self.call_delay:
                time.sleep(self.call_delay)
            err = self._injected()
            if err is not None:
                return err
            index = self._lookup(in_index_ptr)
            if in_dim != index.dim:
                return self._error(ErrorType.DIMENSION_NOT_EQUAL, f"index dim {index.dim} != {in_dim}")
            n = int(in_num_vectors)
            ids = np.frombuffer(ffi.buffer(in_ids, n * 8), dtype=np.int64).tolist() if n else []
            data = np.frombuffer(ffi.buffer(in_vectors, n * in_dim * 4), dtype=np.float32)
            data = data.reshape(n, in_dim)

            known = set(index.ids)
            failed, rows = [], []
            for row, vid in enumerate(ids):
                if vid in known:
                    failed.append(vid)
                    continue
                known.add(vid)
                index.ids.append(vid)
                rows.append(row)
            index.vectors = np.vstack([index.vectors, data[rows]])

            out_failed_ids[0] = self._array("int64_t", failed) if failed else ffi.NULL
            out_num_failed[0] = len(failed)
            return ffi.NULL
        finally:
            with self._mutex:
                self.active_builds -= 1

    def knn_search_index(self, in_index_ptr, in_dim, in_query_vector, in_k, in_search_parameters,
                         out_ids, out_distances, out_num_results):
        self.calls.append("knn_search_index")
        with self._mutex:
            self.active_searches += 1
            if self.active_builds:
                self.violations.append("search overlapped a build")
        try:
            if self.call_delay:
                time.sleep(self.call_delay)
            err = self._injected()
            if err is not None:
                return err
            index = self._lookup(in_index_ptr)
            if in_dim != index.dim:
                return self._error(ErrorType.DIMENSION_NOT_EQUAL, f"index dim {index.dim} != {in_dim}")
            try:
                params = json.loads(_text(in_search_parameters))
                params[index.index_type]["ef_search"]
            except (ValueError, KeyError, TypeError):
                return self._error(ErrorType.INVALID_ARGUMENT, "invalid search parameters")
            if not index.ids:
                return self._error(ErrorType.INDEX_EMPTY, "index is empty")

            query = np.frombuffer(ffi.buffer(in_query_vector, in_dim * 4), dtype=np.float32)
            distances = index.distances(query)
            order = np.argsort(distances, kind="stable")[: int(in_k)]
            if self.reverse_results:
                order = order[::-1]
            out_ids[0] = self._array("int64_t", [index.ids[i] for i in order])
            out_distances[0] = self._array("float", distances[order].tolist())
            out_num_results[0] = len(order)
            return ffi.NULL
        finally:
            with self._mutex:
                self.active_searches -= 1

    def dump_index(self, in_index_ptr, in_file_path):
        self.calls.append("dump_index")
        err = self._injected()
        if err is not None:
            return err
        index = self._lookup(in_index_ptr)
        try:
            with open(_path(in_file_path), "wb") as fh:
                np.savez(fh, ids=np.asarray(index.ids, dtype=np.int64), vectors=index.vectors)
        except OSError as exc:
            return self._error(ErrorType.READ_ERROR, str(exc))
        return ffi.NULL

    def load_index(self, in_file_path, in_index_type, in_parameters, out_index_ptr):
        self.calls.append("load_index")
        err = self._injected()
        if err is not None:
            return err
        index, err = self._parse_construction(in_index_type, in_parameters)
        if err is not None:
            return err
        path = _path(in_file_path)
        if not os.path.exists(path):
            return self._error(ErrorType.MISSING_FILE, f"no such file: {path}")
        try:
            with np.load(path) as data:
                ids, vectors = data["ids"], data["vectors"]
        except (OSError, ValueError, KeyError):
            return self._error(ErrorType.INVALID_BINARY, f"not an index file: {path}")
        if vectors.shape[1] != index.dim:
            return self._error(ErrorType.DIMENSION_NOT_EQUAL, "dumped dim does not match parameters")
        index.ids = ids.tolist()
        index.vectors = vectors
        self._install(index, out_index_ptr)
        return ffi.NULL

    def free_index(self, index_ptr):
        addr = _addr(index_ptr)
        if addr in self.freed or addr not in self.indexes:
            self.bad_frees.append(addr)
            return
        del self.indexes[addr]
        self.freed.append(addr)

    def free_error(self, error):
        self._release(error)

    def free_i64_vector(self, vector):
        self._release(vector)

    def free_f32_vector(self, vector):
        self._release(vector)


@pytest.fixture
def fake_lib(monkeypatch):
    lib = FakeVsagLib()
    monkeypatch.setattr(_ffi, "_lib", lib)
    yield lib
    assert not lib.bad_frees, f"invalid or double frees: {lib.bad_frees}"
    assert not lib.allocations, f"{len(lib.allocations)} native buffers were never freed"


@pytest.fixture
def hnsw_params() -> str:
    return """{
        "dtype": "float32",
        "metric_type": "l2",
        "dim": 128,
        "hnsw": {
            "max_degree": 16,
            "ef_construction": 100
        }
    }"""


@pytest.fixture
def search_params() -> str:
    return '{"hnsw": {"ef_search": 100}}'


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)
