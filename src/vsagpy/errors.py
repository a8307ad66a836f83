"""Exception hierarchy and translation of native ``CError`` records."""
from __future__ import annotations

from enum import Enum, IntEnum

from ._ffi import ffi


class ErrorType(IntEnum):
    """Error codes reported by the VSAG C wrapper."""

    # common errors
    UNKNOWN_ERROR = 1
    INTERNAL_ERROR = 2
    INVALID_ARGUMENT = 3

    # behavior errors
    BUILD_TWICE = 4
    INDEX_NOT_EMPTY = 5
    UNSUPPORTED_INDEX = 6
    UNSUPPORTED_INDEX_OPERATION = 7
    DIMENSION_NOT_EQUAL = 8
    INDEX_EMPTY = 9

    # runtime errors
    NO_ENOUGH_MEMORY = 10
    READ_ERROR = 11
    MISSING_FILE = 12
    INVALID_BINARY = 13


class Operation(str, Enum):
    """Native entry points, used to pick the exception for an error code."""

    CREATE = "create_index"
    BUILD = "build_index"
    SEARCH = "knn_search_index"
    DUMP = "dump_index"
    LOAD = "load_index"


class VsagError(Exception):
    """Base class for every error raised by vsagpy."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType | None = None,
        code: int | None = None,
        operation: Operation | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.code = code if code is not None else (int(error_type) if error_type is not None else None)
        self.operation = operation

    def __str__(self) -> str:
        if self.error_type is not None:
            return f"{self.message} [{self.error_type.name}]"
        if self.code is not None:
            return f"{self.message} [code {self.code}]"
        return self.message


class ConfigurationError(VsagError):
    """Index or search parameters are malformed or rejected by the engine."""


class InvalidArgument(VsagError, ValueError):
    """Buffer, dimensionality, count or k do not fit the index."""


class BuildError(VsagError):
    """The engine failed the build call as a whole."""


class SearchError(VsagError):
    """The engine failed to answer a search."""


class PersistenceError(VsagError):
    """Dumping or loading an index file failed."""


class NativeFailure(VsagError):
    """Opaque engine failure with no finer classification."""


class IndexClosedError(VsagError):
    """The index handle has already been released."""


_FIXED = {
    ErrorType.UNKNOWN_ERROR: NativeFailure,
    ErrorType.UNSUPPORTED_INDEX: ConfigurationError,
    ErrorType.DIMENSION_NOT_EQUAL: InvalidArgument,
    ErrorType.INDEX_NOT_EMPTY: PersistenceError,
    ErrorType.READ_ERROR: PersistenceError,
    ErrorType.MISSING_FILE: PersistenceError,
    ErrorType.INVALID_BINARY: PersistenceError,
}

# Native InvalidArgument on calls that carry JSON means the JSON was rejected.
_INVALID_ARGUMENT = {
    Operation.CREATE: ConfigurationError,
    Operation.LOAD: ConfigurationError,
    Operation.SEARCH: ConfigurationError,
    Operation.BUILD: InvalidArgument,
    Operation.DUMP: InvalidArgument,
}

_DEFAULT = {
    Operation.CREATE: NativeFailure,
    Operation.BUILD: BuildError,
    Operation.SEARCH: SearchError,
    Operation.DUMP: PersistenceError,
    Operation.LOAD: PersistenceError,
}


def error_class(error_type: ErrorType | None, operation: Operation) -> type[VsagError]:
    """Map a native error code raised by ``operation`` to an exception class."""
    if error_type is None:
        return NativeFailure
    if error_type in _FIXED:
        return _FIXED[error_type]
    if error_type is ErrorType.INVALID_ARGUMENT:
        return _INVALID_ARGUMENT[operation]
    return _DEFAULT[operation]


def from_c_error(lib, err, operation: Operation) -> VsagError:
    """Decode a ``CError *`` into an exception and release the native record."""
    try:
        code = int(err.type_)
        message = ffi.string(err.message).decode("utf-8", errors="replace")
    finally:
        lib.free_error(err)
    try:
        error_type: ErrorType | None = ErrorType(code)
    except ValueError:
        error_type = None
    cls = error_class(error_type, operation)
    if not message:
        message = f"{operation.value} failed"
    return cls(message, error_type=error_type, code=code, operation=operation)


def check_error(lib, err, operation: Operation) -> None:
    """Raise the mapped exception if ``err`` is not NULL."""
    if err != ffi.NULL:
        raise from_c_error(lib, err, operation)
