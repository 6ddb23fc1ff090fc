from __future__ import annotations

from collections.abc import Sequence
from typing import Any


class TableplanPyError(Exception):
    pass


class ValidationError(TableplanPyError):
    pass


class UnsupportedConditionError(ValidationError):
    pass


class AmbiguousIndexError(TableplanPyError):
    def __init__(self, *, candidates: Sequence[str]) -> None:
        names = ", ".join(candidates)
        super().__init__(f"ambiguous index choice ({names}); pass an index hint to disambiguate")
        self.candidates = tuple(candidates)


class InvalidIndexHintError(ValidationError):
    def __init__(self, *, index_name: str, reason: str) -> None:
        super().__init__(f"invalid index hint {index_name!r}: {reason}")
        self.index_name = index_name
        self.reason = reason


class ConditionFailedError(TableplanPyError):
    pass


class AlreadyExistsError(ConditionFailedError):
    pass


class NotFoundError(TableplanPyError):
    pass


class BatchRetryExceededError(TableplanPyError):
    def __init__(self, *, operation: str, unprocessed_count: int) -> None:
        super().__init__(f"{operation}: retry limit exceeded (unprocessed={unprocessed_count})")
        self.operation = operation
        self.unprocessed_count = unprocessed_count


class UnprocessedItemsExhaustedError(BatchRetryExceededError):
    def __init__(self, *, operation: str, unprocessed: Sequence[Any], succeeded_count: int) -> None:
        super().__init__(operation=operation, unprocessed_count=len(unprocessed))
        self.unprocessed = list(unprocessed)
        self.succeeded_count = succeeded_count


class BulkOperationError(TableplanPyError):
    def __init__(
        self,
        *,
        operation: str,
        succeeded_count: int,
        remaining: Sequence[Any],
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"{operation}: partial success (succeeded={succeeded_count}, remaining={len(remaining)})"
        )
        self.operation = operation
        self.succeeded_count = succeeded_count
        self.remaining = list(remaining)
        self.cause = cause


class OperationCanceledError(TableplanPyError):
    def __init__(self, *, operation: str, completed: int, reason: str = "canceled") -> None:
        super().__init__(f"{operation}: {reason} (completed={completed})")
        self.operation = operation
        self.completed = completed
        self.reason = reason


class AwsError(TableplanPyError):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
