"""分片上传会话与分片记录。

会话以对象存储返回的 multipart upload id 为主键；分片记录以 (upload_id, part_index)
唯一，重传同一分片只会覆盖 etag，不会产生重复行。
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.models.base import Base, TimestampMixin


class UploadSession(TimestampMixin, Base):
    __tablename__ = "upload_sessions"

    upload_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    storage_key: Mapped[str] = mapped_column(String(512))
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    file_name: Mapped[str] = mapped_column(String(255))
    relative_path: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    # init 阶段解析出的父目录（可能由 relative_path 新建）
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    declared_size: Mapped[int] = mapped_column(BigInteger)
    total_parts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    item_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class UploadPart(Base):
    __tablename__ = "upload_parts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    upload_id: Mapped[str] = mapped_column(String(1024), index=True)
    part_index: Mapped[int] = mapped_column(Integer)
    etag: Mapped[str] = mapped_column(String(255))
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    create_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("upload_id", "part_index", name="uq_upload_parts_upload_part"),
    )
