import enum
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class RestorePhase(str, enum.Enum):
    EXTRACTING = "extracting"
    DATABASE = "database"
    FILES = "files"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELED = "canceled"


class RestoreState(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ERROR = "error"
    CANCELED = "canceled"


TERMINAL_PHASES = frozenset({RestorePhase.COMPLETED, RestorePhase.ERROR, RestorePhase.CANCELED})
TERMINAL_STATES = frozenset({RestoreState.COMPLETED, RestoreState.PARTIAL, RestoreState.ERROR, RestoreState.CANCELED})

EntryType = Literal["dir", "file"]


class TableItem(BaseModel):
    name: str
    file: str
    # uniform share of a combined dump, used for progress only
    size: float = 0
    offset: int | None = None
    length: int | None = None
    preamble_length: int = 0
    attempts: int = 0


class FsEntry(BaseModel):
    relative_path: str
    depth: int
    size: int = 0
    type: EntryType


class RetryItem(BaseModel):
    path: str
    type: EntryType
    retry_count: int = 1
    entry: FsEntry
    last_error: str | None = None


class FailedItem(BaseModel):
    path: str
    type: EntryType
    retry_count: int
    error: str | None = None


class RestoreIssue(BaseModel):
    message: str
    table: str | None = None
    path: str | None = None
    type: str | None = None


class BatchMetrics(BaseModel):
    last_batch_time: float = 0
    last_batch_size: float = 0
    last_batch_files: int = 0
    optimal_time_per_batch: float = 15
    consecutive_errors: int = 0
    last_memory_usage: int = 0
    last_memory_ratio: float = 0


class BackupManifest(BaseModel):
    type: str = "unknown"
    created: str | None = None
    tables: int = 0
    files: int = 0
    critical_errors: int = 0
    present: bool = False


class BackupDescriptor(BaseModel):
    id: str
    file: str
    path: str | None = None
    storage: str = "local"
    storage_info: dict[str, Any] = Field(default_factory=dict)
    size: int | None = None


class RestoreStatus(BaseModel):
    id: str
    backup_id: str
    temp_dir: str
    extract_dir: str
    backup_file: str
    has_db: bool
    has_files: bool
    started: datetime
    start_time: float
    completed_at: datetime | None = None

    status: RestoreState = RestoreState.PROCESSING
    phase: RestorePhase
    message: str = ""
    progress: float = 0
    cancel_requested: bool = False

    tables_total: int = 0
    tables_processed: int = 0
    tables_failed: int = 0
    current_table: str = ""
    db_initialized: bool = False
    db_size: int = 0
    db_processed_size: float = 0
    db_batch_size: int = 500
    sql_files: list[str] = Field(default_factory=list)

    files_initialized: bool = False
    files_total: int = 0
    files_processed: int = 0
    files_size: int = 0
    files_processed_size: int = 0
    dirs_total: int = 0
    dirs_processed: int = 0
    files_count: int = 0
    actual_files_processed: int = 0
    current_file: str = ""
    batch_size: int = 20
    dir_batch_size: int = 0
    file_batch_size: int = 0

    total_size: int = 0
    processed_size: float = 0
    bytes_per_second: float = 0
    bytes_per_second_avg: float = 0
    db_speed: float = 0
    file_speed: float = 0
    speed_history: list[float] = Field(default_factory=list)
    time_elapsed: float = 0
    batch_metrics: BatchMetrics = Field(default_factory=BatchMetrics)
    max_steps: int = 5

    db_queue: list[TableItem] = Field(default_factory=list)
    dir_queue: list[FsEntry] = Field(default_factory=list)
    file_queue: list[FsEntry] = Field(default_factory=list)
    retry_items: list[RetryItem] = Field(default_factory=list)

    errors: list[RestoreIssue] = Field(default_factory=list)
    failed_files: list[FailedItem] = Field(default_factory=list)
    critical_errors: list[RestoreIssue] = Field(default_factory=list)

    created_directories: dict[str, bool] = Field(default_factory=dict)
    path_cache: dict[str, bool] = Field(default_factory=dict)
    connection_attempts: int = 0
    ops_since_health_check: int = 0
    last_processing_time: float = 0
    recovery_mode: bool = False
    recovery_attempts: int = 0
    manifest: BackupManifest = Field(default_factory=BackupManifest)

    @property
    def source_dir(self) -> str:
        return f"{self.extract_dir.rstrip('/')}/files"

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES or self.status in TERMINAL_STATES

    def sync_processed_size(self) -> None:
        self.processed_size = self.db_processed_size + self.files_processed_size


class RestoreHistoryEntry(BaseModel):
    id: str
    backup_id: str
    has_db: bool
    has_files: bool
    started: datetime
    completed: datetime
    duration: float
    total_size: int
    speed: float
    status: RestoreState
    files_processed: int
    tables_processed: int
    error_count: int
    message: str = ""


class RestoreHistoryResponse(BaseModel):
    items: list[RestoreHistoryEntry]


class RestoreCancelResponse(BaseModel):
    restore_id: str
    status: RestoreState
    message: str
