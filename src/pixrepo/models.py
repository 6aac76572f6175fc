from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    FULL = "full"


class BackingStore(SQLModel, table=True):
    """A GitHub repository that holds uploaded blobs."""

    __tablename__ = "repositories"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    owner: str
    token: Optional[str] = None
    deploy_hook: Optional[str] = None
    status: StoreStatus = Field(default=StoreStatus.ACTIVE, index=True)
    is_default: bool = Field(default=False)
    size_estimate: int = Field(default=0)
    file_count: int = Field(default=0)
    priority: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class Folder(SQLModel, table=True):
    __tablename__ = "folders"
    __table_args__ = (UniqueConstraint("path", "repository_id", name="uq_folder_path_store"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    path: str = Field(index=True)
    repository_id: int = Field(foreign_key="repositories.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class FileRecord(SQLModel, table=True):
    __tablename__ = "images"
    __table_args__ = (
        UniqueConstraint("repository_id", "remote_path", name="uq_image_store_path"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    repository_id: int = Field(foreign_key="repositories.id", index=True)
    folder_id: Optional[int] = Field(default=None, foreign_key="folders.id", index=True)
    filename: str = Field(index=True)
    size: int
    mime_type: str
    remote_path: str
    sha: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Setting(SQLModel, table=True):
    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=utcnow)
