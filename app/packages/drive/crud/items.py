"""Item CRUD：按用户隔离的条目查询与批量变更。"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import Row, delete, update
from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.item import Item


class CRUDItem(CRUDBase[Item]):
    def get_owned(
        self,
        db: Session,
        *,
        owner_id: str,
        item_id: str,
        include_deleted: bool = False,
    ) -> Optional[Item]:
        return (
            self.query(db, include_deleted=include_deleted)
            .filter(Item.id == item_id, Item.owner_id == owner_id)
            .first()
        )

    def get_child(
        self,
        db: Session,
        *,
        owner_id: str,
        parent_id: Optional[str],
        name: str,
    ) -> Optional[Item]:
        """查找同一父目录下未删除的同名条目（文件或文件夹）。"""
        query = self.query(db).filter(Item.owner_id == owner_id, Item.name == name)
        if parent_id is None:
            query = query.filter(Item.parent_id.is_(None))
        else:
            query = query.filter(Item.parent_id == parent_id)
        return query.first()

    def list_children(
        self,
        db: Session,
        *,
        owner_id: str,
        parent_id: Optional[str],
        include_deleted: bool = False,
    ) -> List[Item]:
        query = self.query(db, include_deleted=include_deleted).filter(Item.owner_id == owner_id)
        if parent_id is None:
            query = query.filter(Item.parent_id.is_(None))
        else:
            query = query.filter(Item.parent_id == parent_id)
        # 文件夹在前，其次按名称
        return query.order_by(Item.kind.desc(), Item.name.asc()).all()

    def list_children_of(
        self,
        db: Session,
        *,
        owner_id: str,
        parent_ids: Sequence[str],
    ) -> List[Item]:
        """一次性取出多个父目录的直接子条目（含已删除），供层序遍历使用。"""
        if not parent_ids:
            return []
        return (
            self.query(db, include_deleted=True)
            .filter(Item.owner_id == owner_id, Item.parent_id.in_(list(parent_ids)))
            .all()
        )

    def sibling_names(
        self,
        db: Session,
        *,
        owner_id: str,
        parent_id: Optional[str],
        stem: str,
    ) -> set[str]:
        query = self.query(db).filter(Item.owner_id == owner_id, Item.name.startswith(stem, autoescape=True))
        if parent_id is None:
            query = query.filter(Item.parent_id.is_(None))
        else:
            query = query.filter(Item.parent_id == parent_id)
        return {name for (name,) in query.with_entities(Item.name).all()}

    def search(self, db: Session, *, owner_id: str, keyword: str, limit: int = 100) -> List[Item]:
        return (
            self.query(db)
            .filter(Item.owner_id == owner_id, Item.name.contains(keyword, autoescape=True))
            .order_by(Item.kind.desc(), Item.name.asc())
            .limit(limit)
            .all()
        )

    def list_trashed(self, db: Session, *, owner_id: str) -> List[Item]:
        return (
            self.query(db, include_deleted=True)
            .filter(Item.owner_id == owner_id, Item.is_deleted.is_(True))
            .order_by(Item.deleted_at.desc())
            .all()
        )

    def mark_deleted(
        self,
        db: Session,
        *,
        owner_id: str,
        item_ids: Iterable[str],
        deleted: bool,
        deleted_at: Optional[datetime],
        batch_deleted_at: Optional[datetime] = None,
    ) -> List[Row]:
        """切换删除标记，只作用于状态确实需要改变的行，返回被改动行的 ``(id, kind, size_bytes)``。

        恢复时可用 ``batch_deleted_at`` 限定为同一次删除的条目。
        """
        ids = list(item_ids)
        if not ids:
            return []
        conditions = [Item.owner_id == owner_id, Item.id.in_(ids), Item.is_deleted.is_(not deleted)]
        if batch_deleted_at is not None:
            conditions.append(Item.deleted_at == batch_deleted_at)
        stmt = (
            update(Item)
            .where(*conditions)
            .values(is_deleted=deleted, deleted_at=deleted_at)
            .returning(Item.id, Item.kind, Item.size_bytes)
            .execution_options(synchronize_session=False)
        )
        return list(db.execute(stmt).all())

    def delete_many(self, db: Session, *, owner_id: str, item_ids: Iterable[str]) -> List[Row]:
        """物理删除，返回实际删除行的 ``(kind, size_bytes, is_deleted, storage_key)``。"""
        ids = list(item_ids)
        if not ids:
            return []
        stmt = (
            delete(Item)
            .where(Item.owner_id == owner_id, Item.id.in_(ids))
            .returning(Item.kind, Item.size_bytes, Item.is_deleted, Item.storage_key)
            .execution_options(synchronize_session=False)
        )
        return list(db.execute(stmt).all())


item_crud = CRUDItem(Item)
