"""User CRUD，包含配额计数的原子更新。"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.item import Item
from app.packages.drive.models.user import User


class CRUDUser(CRUDBase[User]):
    def get_by_external_id(self, db: Session, external_id: str) -> Optional[User]:
        return self.query(db).filter(User.external_id == external_id).first()

    def get_or_create_by_external_id(
        self,
        db: Session,
        *,
        external_id: str,
        storage_limit: int,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> User:
        """按身份提供方标识获取用户，首次访问时自动建档；并发建档以唯一约束收敛。"""
        user = self.get_by_external_id(db, external_id)
        if user is not None:
            return user
        try:
            return self.create(
                db,
                {
                    "external_id": external_id,
                    "email": email,
                    "name": name,
                    "storage_used": 0,
                    "storage_limit": storage_limit,
                },
            )
        except IntegrityError:
            db.rollback()
            user = self.get_by_external_id(db, external_id)
            if user is None:
                raise
            return user

    def add_storage_used(self, db: Session, user_id: str, delta: int) -> int:
        """在数据库侧原子地累加 ``storage_used``，结果下限为 0；返回受影响行数。

        不提交事务，调用方负责与其它写入一起提交。
        """
        new_value = User.storage_used + delta
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(storage_used=case((new_value < 0, 0), else_=new_value))
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount

    def set_storage_used(self, db: Session, user_id: str, value: int) -> None:
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(storage_used=max(int(value), 0))
            .execution_options(synchronize_session=False)
        )
        db.execute(stmt)

    def catalog_usage(self, db: Session, user_id: str) -> dict[str, int]:
        """从条目表汇总实际用量与各类计数。"""
        live_file = (Item.kind == "file") & Item.is_deleted.is_(False)
        live_folder = (Item.kind == "folder") & Item.is_deleted.is_(False)
        row = (
            db.query(
                func.coalesce(func.sum(case((live_file, Item.size_bytes), else_=0)), 0),
                func.count(case((live_file, 1))),
                func.count(case((live_folder, 1))),
                func.count(case((Item.is_deleted.is_(True), 1))),
            )
            .filter(Item.owner_id == user_id)
            .one()
        )
        return {
            "total_size": int(row[0] or 0),
            "file_count": int(row[1] or 0),
            "folder_count": int(row[2] or 0),
            "deleted_count": int(row[3] or 0),
        }


user_crud = CRUDUser(User)
