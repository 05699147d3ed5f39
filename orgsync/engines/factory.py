"""Engine selection."""

import logging
from typing import TYPE_CHECKING, Dict, Optional, Type

from ..constants import NOT_SUPPORTED_OBJECTS_IN_BULK_API
from ..models.script import Operation
from .base import ApiEngineBase, ApiEngineOptions, EngineType
from .bulk_v1 import BulkApiV1Engine
from .bulk_v2 import BulkApiV2Engine
from .rest import RestApiEngine

if TYPE_CHECKING:
    from ..connection import OrgConnection


def _register_builtin_engines() -> Dict[EngineType, Type[ApiEngineBase]]:
    return {
        EngineType.REST: RestApiEngine,
        EngineType.BULK_V1: BulkApiV1Engine,
        EngineType.BULK_V2: BulkApiV2Engine,
    }


ENGINES = _register_builtin_engines()


def resolve_engine_type(
    object_name: str,
    amount_to_process: int,
    options: ApiEngineOptions,
    force_bulk: bool = False,
) -> EngineType:
    """
    Pick the engine for an operation.

    Forced bulk selects the bulk engine of the configured version. Otherwise
    bulk is used only above the record threshold and when REST is not
    required. Objects the bulk API does not support always use REST.

    Args:
        object_name: Object the records belong to
        amount_to_process: Number of records to send
        options: Engine settings
        force_bulk: Use bulk regardless of the amount

    Returns:
        Engine type
    """
    bulk_supported = object_name not in NOT_SUPPORTED_OBJECTS_IN_BULK_API
    bulk_engine = EngineType.BULK_V2 if options.bulk_api_major_version >= 2 else EngineType.BULK_V1

    if (force_bulk or options.always_use_bulk_api) and bulk_supported:
        return bulk_engine

    bulk_allowed = (
        amount_to_process > options.bulk_threshold
        and not options.always_use_rest_api
        and bulk_supported
    )
    return bulk_engine if bulk_allowed else EngineType.REST


def create_engine(
    connection: "OrgConnection",
    object_name: str,
    operation: Operation,
    amount_to_process: int,
    options: ApiEngineOptions,
    engine_type: Optional[EngineType] = None,
    logger: Optional[logging.Logger] = None,
) -> ApiEngineBase:
    """Create the engine for an operation; HardDelete forces bulk."""
    if engine_type is None:
        engine_type = resolve_engine_type(
            object_name,
            amount_to_process,
            options,
            force_bulk=operation == Operation.HARD_DELETE,
        )
    return ENGINES[engine_type](connection, object_name, options, logger=logger)
