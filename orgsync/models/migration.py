"""Migration execution models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import uuid


class MigrationStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    RETRIEVING = "retrieving"
    UPDATING = "updating"
    DELETING = "deleting"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class CrudSummary:
    """Counts of records changed by one pass of one object."""
    inserted: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.deleted

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def add(self, other: "CrudSummary") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.deleted += other.deleted

    def to_dict(self) -> Dict[str, int]:
        return {"inserted": self.inserted, "updated": self.updated, "deleted": self.deleted}


@dataclass
class MigrationStep:
    """Processing summary of a single object."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    object_name: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    source_records: int = 0
    target_records: int = 0
    passes: Dict[str, CrudSummary] = field(default_factory=dict)
    records_failed: int = 0
    missing_parent_lookups: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def record_pass(self, label: str, summary: CrudSummary) -> None:
        """Accumulate the counts of a pass under its label."""
        self.passes.setdefault(label, CrudSummary()).add(summary)

    @property
    def records_processed(self) -> int:
        return sum(s.total for s in self.passes.values())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "object_name": self.object_name,
            "status": self.status.value,
            "source_records": self.source_records,
            "target_records": self.target_records,
            "passes": {label: s.to_dict() for label, s in self.passes.items()},
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "missing_parent_lookups": self.missing_parent_lookups,
            "errors": self.errors,
            "warnings": self.warnings,
        }


@dataclass
class MigrationRun:
    """A complete migration run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    simulation: bool = False

    # Timing
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    steps: List[MigrationStep] = field(default_factory=list)
    passes_executed: int = 0

    # Errors
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "status": self.status.value,
            "simulation": self.simulation,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "steps": [s.to_dict() for s in self.steps],
            "passes_executed": self.passes_executed,
            "total_records_processed": self.total_records_processed,
            "errors": self.errors,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def total_records_processed(self) -> int:
        return sum(s.records_processed for s in self.steps)

    def get_step(self, object_name: str) -> MigrationStep:
        """Get the step of an object, creating it when missing."""
        for step in self.steps:
            if step.object_name == object_name:
                return step
        step = MigrationStep(object_name=object_name)
        self.steps.append(step)
        return step
