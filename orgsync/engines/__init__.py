"""API engines executing CRUD operations against an org."""

from .base import ApiEngineBase, ApiEngineOptions, CrudResult, EngineType, RecordResult
from .rest import RestApiEngine
from .bulk_v1 import BulkApiV1Engine
from .bulk_v2 import BulkApiV2Engine
from .factory import create_engine, resolve_engine_type
from .executor import ApiEngineExecutor

__all__ = [
    "ApiEngineBase",
    "ApiEngineOptions",
    "CrudResult",
    "EngineType",
    "RecordResult",
    "RestApiEngine",
    "BulkApiV1Engine",
    "BulkApiV2Engine",
    "create_engine",
    "resolve_engine_type",
    "ApiEngineExecutor",
]
