from __future__ import annotations

import json
import re
from importlib.resources import files
from typing import TYPE_CHECKING, Any

from .conditions import ClassifiedConditions, QueryCondition, classify, matches
from .errors import (
    AlreadyExistsError,
    AmbiguousIndexError,
    AwsError,
    BatchRetryExceededError,
    BulkOperationError,
    ConditionFailedError,
    InvalidIndexHintError,
    NotFoundError,
    OperationCanceledError,
    TableplanPyError,
    UnprocessedItemsExhaustedError,
    UnsupportedConditionError,
    ValidationError,
)
from .model import (
    AttributeConverter,
    IndexDefinition,
    ModelDefinition,
    ModelDefinitionError,
    Projection,
    gsi,
    lsi,
    tableplan_field,
)
from .planner import PRIMARY_KEY, IndexPlan, plan_query, select_index
from .registry import KeySchema, SchemaDescriptor, SchemaRegistry

if TYPE_CHECKING:
    from .batch import BatchConfig, BatchPlanner, CancelScope, chunked
    from .merge import sort_by
    from .protection import ConcurrencyLimiter
    from .runtime import (
        AwsCallMetric,
        create_boto3_config,
        get_dynamodb_client,
        instrument_boto3_client,
        is_lambda_environment,
    )
    from .store import DynamoDBStoreClient, StoreClient
    from .table import Table


def _read_repo_version() -> str:
    try:
        data = json.loads(files(__package__).joinpath("version.json").read_text(encoding="utf-8"))
    except Exception:
        return "0.0.0"

    version = data.get("version")
    return version if isinstance(version, str) and version else "0.0.0"


def _normalize_repo_version(repo_version: str) -> str:
    match = re.match(r"^(\d+\.\d+\.\d+)-rc\.?([0-9]+)$", repo_version)
    if match:
        return f"{match.group(1)}rc{match.group(2)}"
    return repo_version


__repo_version__ = _read_repo_version()
__version__ = _normalize_repo_version(__repo_version__)


def __getattr__(name: str) -> Any:
    if name == "Table":
        from .table import Table

        return Table
    if name in {"BatchConfig", "BatchPlanner", "CancelScope", "chunked"}:
        from . import batch

        return getattr(batch, name)
    if name == "sort_by":
        from .merge import sort_by

        return sort_by
    if name in {"DynamoDBStoreClient", "StoreClient"}:
        from . import store

        return getattr(store, name)
    if name in {
        "AwsCallMetric",
        "create_boto3_config",
        "get_dynamodb_client",
        "instrument_boto3_client",
        "is_lambda_environment",
    }:
        from . import runtime

        return getattr(runtime, name)
    if name == "ConcurrencyLimiter":
        from .protection import ConcurrencyLimiter

        return ConcurrencyLimiter
    raise AttributeError(name)


__all__ = [
    "AlreadyExistsError",
    "AmbiguousIndexError",
    "AttributeConverter",
    "AwsCallMetric",
    "AwsError",
    "BatchConfig",
    "BatchPlanner",
    "BatchRetryExceededError",
    "BulkOperationError",
    "CancelScope",
    "ClassifiedConditions",
    "ConcurrencyLimiter",
    "ConditionFailedError",
    "DynamoDBStoreClient",
    "IndexDefinition",
    "IndexPlan",
    "InvalidIndexHintError",
    "KeySchema",
    "ModelDefinition",
    "ModelDefinitionError",
    "NotFoundError",
    "OperationCanceledError",
    "PRIMARY_KEY",
    "Projection",
    "QueryCondition",
    "SchemaDescriptor",
    "SchemaRegistry",
    "StoreClient",
    "Table",
    "TableplanPyError",
    "UnprocessedItemsExhaustedError",
    "UnsupportedConditionError",
    "ValidationError",
    "__repo_version__",
    "__version__",
    "chunked",
    "classify",
    "create_boto3_config",
    "get_dynamodb_client",
    "gsi",
    "instrument_boto3_client",
    "is_lambda_environment",
    "lsi",
    "matches",
    "plan_query",
    "select_index",
    "sort_by",
    "tableplan_field",
]
