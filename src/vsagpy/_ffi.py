"""VSAG CFFI bindings for the C wrapper library.

This module provides low-level bindings to the libvsag_wrapper shared library
using CFFI (C Foreign Function Interface) in ABI mode. The wrapper exposes a
small C surface over the VSAG C++ engine:

- Index lifecycle (create_index, load_index, free_index)
- Index construction (build_index)
- k-nearest-neighbor search (knn_search_index)
- Persistence (dump_index)
- Release of engine-owned buffers (free_error, free_i64_vector, free_f32_vector)

Every fallible function returns a ``CError *``; ``NULL`` means success.
Output arrays are allocated by the engine and must be handed back to the
matching ``free_*`` function after copying.

Type Aliases:
    CData: CFFI pointer type (cffi.FFI.CData)
    CError: Native error record (type code + NUL-terminated message)

Note:
    This module is internal. Users should use :class:`vsagpy.VsagIndex`.
    The shared library is loaded lazily by :func:`get_lib`, so importing the
    package works on machines without the native engine installed.
"""
from __future__ import annotations

import logging
import os
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from cffi import FFI

if TYPE_CHECKING:
    from cffi import FFI as FFIType

logger = logging.getLogger(__name__)

ffi: FFIType = FFI()

#: Length of ``CError.message``; must match wrapper.h.
ERROR_MESSAGE_LEN = 256

#: Environment variable naming the wrapper library file or its directory.
LIBRARY_PATH_ENV = "VSAG_LIBRARY_PATH"

# =============================================================================
# C Type Definitions
# =============================================================================
# Keep this cdef in sync with the C wrapper header (vsag-sys/include/wrapper.h).
ffi.cdef(
    """
typedef struct {
    int type_;
    char message[256];
} CError;

const CError *create_index(const char *in_index_type,
                           const char *in_parameters,
                           void **out_index_ptr);

const CError *build_index(void *in_index_ptr,
                          size_t in_num_vectors,
                          size_t in_dim,
                          const int64_t *in_ids,
                          const float *in_vectors,
                          int64_t **out_failed_ids,
                          size_t *out_num_failed);

const CError *knn_search_index(void *in_index_ptr,
                               size_t in_dim,
                               const float *in_query_vector,
                               size_t in_k,
                               const char *in_search_parameters,
                               int64_t **out_ids,
                               float **out_distances,
                               size_t *out_num_results);

const CError *dump_index(void *in_index_ptr, const char *in_file_path);

const CError *load_index(const char *in_file_path,
                         const char *in_index_type,
                         const char *in_parameters,
                         void **out_index_ptr);

void free_index(void *index_ptr);
void free_error(const CError *error);
void free_i64_vector(int64_t *vector);
void free_f32_vector(float *vector);
"""
)


def _library_name() -> str:
    if sys.platform == "darwin":
        return "libvsag_wrapper.dylib"
    return "libvsag_wrapper.so"


def _candidate_paths() -> list[Path]:
    here = Path(__file__).resolve().parent
    repo_root = here.parent.parent
    name = _library_name()
    candidates: list[Path] = []

    env_path = os.environ.get(LIBRARY_PATH_ENV)
    if env_path:
        env = Path(env_path)
        candidates.append(env / name if env.is_dir() else env)

    # Prefer a fresh development build, fall back to the packaged copy
    candidates.extend([
        repo_root / "build" / name,
        repo_root / "build" / "lib" / name,
        here / name,
    ])
    return candidates


def find_library() -> Path:
    """Locate the VSAG wrapper shared library.

    Searches the following locations (in order):
    1. ``$VSAG_LIBRARY_PATH`` (a file, or a directory containing the library)
    2. build/libvsag_wrapper.so (development build)
    3. build/lib/libvsag_wrapper.so (CMake install prefix)
    4. Packaged alongside this module

    Returns:
        Path of the first candidate that exists.

    Raises:
        FileNotFoundError: If the library is not found in any location.
    """
    candidates = _candidate_paths()
    for lib_path in candidates:
        if lib_path.is_file():
            return lib_path
    raise FileNotFoundError(f"{_library_name()} not found in {[str(p) for p in candidates]}")


_lib = None
_lib_lock = threading.Lock()


def load_library(path: str | os.PathLike | None = None) -> "FFIType.CData":
    """Open the wrapper library at ``path`` (or the discovered one) and make it current."""
    global _lib
    lib_path = Path(path) if path is not None else find_library()
    with _lib_lock:
        _lib = ffi.dlopen(os.fspath(lib_path))
    logger.debug("loaded VSAG wrapper library from %s", lib_path)
    return _lib


def get_lib() -> "FFIType.CData":
    """Return the library handle, loading it on first use."""
    if _lib is None:
        return load_library()
    return _lib
