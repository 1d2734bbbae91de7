from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, enum.Enum):
    """Job and run status"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.QUEUED, JobStatus.RUNNING)


class RunKind(str, enum.Enum):
    """Why a run was started"""
    INITIAL = "initial"
    RETRY = "retry"


class RowStatus(str, enum.Enum):
    """Outcome of one attempt for one row"""
    SUCCESS = "success"
    FAILED = "failed"


class FailedStage(str, enum.Enum):
    """Pipeline stage where a row failed"""
    EXTRACT = "extract"
    TRANSFORM = "transform"
    LOAD = "load"
