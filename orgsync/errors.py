"""Exception hierarchy for migration jobs."""

from typing import Any, Dict, List, Optional


class OrgSyncError(Exception):
    """Base class for all migration errors."""


class InitializationError(OrgSyncError):
    """Raised when the configuration, paths or orgs cannot be set up."""


class MetadataError(OrgSyncError):
    """Raised when object or field metadata cannot be retrieved."""


class ExecutionError(OrgSyncError):
    """
    Raised when a CRUD operation fails as a whole.

    Under all-or-none execution a single failed record fails the operation.
    The failing records are carried on the exception, with the ids of the
    records earlier batches committed and that could not be undone.
    """

    def __init__(
        self,
        message: str,
        object_name: Optional[str] = None,
        failed_records: Optional[List[Dict[str, Any]]] = None,
        committed_ids: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.object_name = object_name
        self.failed_records = failed_records or []
        self.committed_ids = committed_ids or []


class AbortedByUserError(OrgSyncError):
    """Raised when the user stops the job."""


class AbortedByAddonError(OrgSyncError):
    """Raised when an add-on module requests the job to stop."""


class UnresolvableWarning(OrgSyncError):
    """Raised when a condition cannot be resolved and the job must stop."""


class ExpressionError(OrgSyncError):
    """Raised when a filter or mapping expression is invalid."""
