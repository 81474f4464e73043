"""网盘条目模型：文件与文件夹共用一张表，以 parent_id 组织为每个用户的一棵树。

存储规则：
- parent_id 为空表示位于根目录；非空时必须指向同一用户的文件夹；
- kind 为 folder 时 size_bytes=0、storage_key/mime_type 为空；
- 同一父目录下未删除条目的名称唯一（区分大小写），由两条部分唯一索引保证：
  一条覆盖 parent_id 非空的行，另一条覆盖根目录下的行（NULL 不参与唯一比较）。
"""

from typing import Optional

from sqlalchemy import BigInteger, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.models.base import Base, SoftDeleteMixin, TimestampMixin, generate_id


class Item(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_id)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(16))
    # 扩展名大写形式，如 "PDF"；仅文件有值
    file_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    storage_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    __table_args__ = (
        Index(
            "uq_items_owner_parent_name",
            "owner_id",
            "parent_id",
            "name",
            unique=True,
            postgresql_where=text("parent_id IS NOT NULL AND is_deleted = false"),
            sqlite_where=text("parent_id IS NOT NULL AND is_deleted = 0"),
        ),
        Index(
            "uq_items_owner_root_name",
            "owner_id",
            "name",
            unique=True,
            postgresql_where=text("parent_id IS NULL AND is_deleted = false"),
            sqlite_where=text("parent_id IS NULL AND is_deleted = 0"),
        ),
    )

    @property
    def is_folder(self) -> bool:
        return self.kind == "folder"
