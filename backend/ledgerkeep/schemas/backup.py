"""Backup API schemas"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


# Remote backup service payloads

class UploadUrlResponse(BaseModel):
    """Pre-signed upload slot"""
    upload_url: str
    s3_key: str


class BackupInfo(BaseModel):
    """Backup metadata as listed by the backup service"""
    backup_version: int
    created_at: str
    backup_size: int


class DownloadUrlResponse(BaseModel):
    """Pre-signed download location"""
    download_url: str
    backup_size: int


class ReportType(str, Enum):
    MAINTENANCE = "maintenance"
    BACKUP = "backup"


class ReportStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class ReportJobStatusPayload(BaseModel):
    report_type: ReportType
    status: ReportStatus
    error_message: Optional[str] = None


# Local state

class BackupStatus(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class BackupState(BaseModel):
    """Persisted outcome of the most recent backup runs"""
    last_backup_at: Optional[datetime] = None
    last_backup_attempt_at: Optional[datetime] = None
    last_backup_status: BackupStatus = BackupStatus.IDLE
    last_backup_error: Optional[str] = None
    last_backup_version: Optional[int] = None
    backup_enabled: bool = True


class RestoreProgress(BaseModel):
    """Ephemeral progress of a running restore"""
    step: str
    percent: int = Field(ge=0, le=100)


# Local control API

class BackupSettingsRequest(BaseModel):
    backup_enabled: bool


class RestoreRequest(BaseModel):
    mnemonic: str = Field(min_length=1)
    backup_version: Optional[int] = None


class BackupOutcomeResponse(BaseModel):
    success: bool
    skipped: bool = False
    version: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None

    class Config:
        from_attributes = True


class RestoreOutcomeResponse(BaseModel):
    success: bool
    version: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    class Config:
        from_attributes = True


class BackupListResponse(BaseModel):
    backups: List[BackupInfo]


class BackupStatusResponse(BaseModel):
    state: BackupState
    running: bool
    step: str


class RestoreProgressResponse(BaseModel):
    progress: Optional[RestoreProgress] = None
