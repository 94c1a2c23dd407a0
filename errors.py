"""
Error types shared by the query, CRUD and rating layers.

Every failure the core raises is an AppError subclass; main.py turns them into
the JSON failure envelope. pymongo errors are translated at the storage
boundary with ``storage_errors()``.
"""
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)


class AppError(Exception):
    status_code = 500
    kind = "error"
    retryable = False

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": "fail" if self.status_code < 500 else "error",
            "kind": self.kind,
            "message": self.message,
        }
        if self.errors:
            body["errors"] = self.errors
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(AppError):
    status_code = 400
    kind = "validation_error"

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        errors = []
        for err in exc.errors():
            field = ".".join(str(p) for p in err.get("loc", ()))
            msg = err.get("msg", "Invalid value")
            # pydantic prefixes messages raised from validators
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            errors.append({"field": field, "message": msg})
        summary = ". ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors)
        return cls(f"Invalid input data. {summary}", errors)


class NotFound(AppError):
    status_code = 404
    kind = "not_found"


class Conflict(AppError):
    status_code = 409
    kind = "conflict"


class BadRequest(AppError):
    status_code = 400
    kind = "bad_request"


class StorageError(AppError):
    status_code = 503
    kind = "storage_error"
    retryable = True


_TRANSIENT = (
    ServerSelectionTimeoutError,
    NetworkTimeout,
    AutoReconnect,
    ConnectionFailure,
    ExecutionTimeout,
    WTimeoutError,
)


def duplicate_fields(exc: DuplicateKeyError) -> List[str]:
    details = exc.details or {}
    key_value = details.get("keyValue") or details.get("keyPattern") or {}
    return list(key_value.keys())


@contextmanager
def storage_errors():
    """Translate pymongo exceptions raised inside the block into AppErrors."""
    try:
        yield
    except DuplicateKeyError as exc:
        fields = duplicate_fields(exc)
        if fields:
            message = f"Duplicate value for {', '.join(fields)}. Please use another value!"
        else:
            message = "Duplicate value. Please use another value!"
        raise Conflict(message, [{"field": f, "message": "already exists"} for f in fields]) from exc
    except _TRANSIENT as exc:
        raise StorageError(f"Storage unavailable: {exc}") from exc
    except OperationFailure as exc:
        raise BadRequest(f"Invalid query: {exc}") from exc
    except PyMongoError as exc:
        raise StorageError(f"Storage error: {exc}") from exc
