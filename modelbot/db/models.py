import datetime
import enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

BackupKind = Literal["manual", "automatic"]


class DatabaseErrorType(str, enum.Enum):
    """Category a surfaced database failure is reported under."""

    CONNECTION_LOST = "CONNECTION_LOST"
    QUERY_FAILED = "QUERY_FAILED"
    SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    CORRUPTION_DETECTED = "CORRUPTION_DETECTED"
    BACKUP_FAILED = "BACKUP_FAILED"
    MIGRATION_FAILED = "MIGRATION_FAILED"


class ErrorSeverity(str, enum.Enum):
    """How much attention a failure needs."""

    LOW = "LOW"  # retried automatically
    MEDIUM = "MEDIUM"  # retried with backoff, monitored
    HIGH = "HIGH"  # manual intervention
    CRITICAL = "CRITICAL"  # halt the affected subsystem


class BackupStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    IN_PROGRESS = "IN_PROGRESS"


class Health(BaseModel):
    """Connection state and query metrics of the single database connection."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    is_connected: bool = False
    last_error: Optional[BaseException] = None
    query_count: int = 0
    error_count: int = 0
    average_query_time: float = 0.0  # ms
    last_health_check: datetime.datetime = Field(default_factory=datetime.datetime.now)
    database_size: Optional[int] = None  # bytes
    backup_status: Optional[BackupStatus] = None
    last_backup: Optional[datetime.datetime] = None

    @property
    def error_rate(self) -> float:
        """Percentage of completed operations that failed."""
        if not self.query_count:
            return 0.0
        return self.error_count / self.query_count * 100


class RetryConfig(BaseModel):
    """Exponential backoff policy shared by retries and reconnection."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=1)
    base_delay_ms: float = Field(1000, ge=0)
    max_delay_ms: float = Field(10000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)

    @model_validator(mode="after")
    def max_delay_covers_base_delay(self) -> "RetryConfig":
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to base_delay_ms")
        return self

    def merge(self, **changes: Any) -> "RetryConfig":
        """Return a validated copy with ``changes`` applied."""
        return RetryConfig.model_validate({**self.model_dump(), **changes})

    def delay_for(self, attempt: int) -> float:
        """Return the delay in ms to wait after the given (1-based) failed attempt."""
        return min(
            self.base_delay_ms * self.backoff_multiplier ** (attempt - 1),
            self.max_delay_ms,
        )


class ErrorRecord(BaseModel):
    """A classified failure as kept in the error history."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime.datetime = Field(default_factory=datetime.datetime.now)
    error_type: DatabaseErrorType
    severity: ErrorSeverity
    underlying_code: Optional[str] = None
    message: str
    query: Optional[str] = None
    parameters: Optional[List[Any]] = None
    stack_trace: str = ""
    resolved: bool = False
    retry_count: int = 0


class ErrorStatistics(BaseModel):
    """Aggregated view over the error history."""

    total_errors: int
    errors_by_type: Dict[DatabaseErrorType, int]
    errors_by_severity: Dict[ErrorSeverity, int]
    recent_errors: List[ErrorRecord]


class OperationContext(BaseModel):
    """Caller-supplied details attached to error records; never shown to users."""

    command: Optional[str] = None
    user: Optional[str] = None
    query: Optional[str] = None
    parameters: Optional[List[Any]] = None


class BackupInfo(BaseModel):
    """Represents a backup file on disk."""

    file_name: str
    path: str
    size: int
    created: datetime.datetime
    kind: BackupKind
