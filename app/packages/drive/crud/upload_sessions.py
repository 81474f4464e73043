"""UploadSession / UploadPart CRUD：状态机的比较并交换更新与分片 upsert。"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.upload_session import UploadPart, UploadSession


class CRUDUploadSession(CRUDBase[UploadSession]):
    def get_owned(self, db: Session, *, owner_id: str, upload_id: str) -> Optional[UploadSession]:
        return (
            self.query(db)
            .filter(UploadSession.upload_id == upload_id, UploadSession.owner_id == owner_id)
            .first()
        )

    def transition(
        self,
        db: Session,
        *,
        upload_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """仅当当前状态属于 ``from_statuses`` 时切换到 ``to_status``；返回是否切换成功。

        不提交事务，调用方负责提交。
        """
        payload = dict(values or {})
        payload["status"] = to_status
        stmt = (
            update(UploadSession)
            .where(
                UploadSession.upload_id == upload_id,
                UploadSession.status.in_(list(from_statuses)),
            )
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount == 1

    def list_by_status(
        self,
        db: Session,
        *,
        statuses: Iterable[str],
        owner_id: Optional[str] = None,
        idle_before: Optional[datetime] = None,
    ) -> List[UploadSession]:
        query = self.query(db).filter(UploadSession.status.in_(list(statuses)))
        if owner_id is not None:
            query = query.filter(UploadSession.owner_id == owner_id)
        if idle_before is not None:
            query = query.filter(UploadSession.last_activity_at < idle_before)
        return query.order_by(UploadSession.create_time.asc()).all()

    # ------------------------------
    # 分片记录
    # ------------------------------
    def upsert_part(self, db: Session, *, upload_id: str, part_index: int, etag: str, size_bytes: int) -> None:
        """写入或覆盖分片记录，不提交事务。"""
        existing = (
            db.query(UploadPart)
            .filter(UploadPart.upload_id == upload_id, UploadPart.part_index == part_index)
            .first()
        )
        if existing is not None:
            existing.etag = etag
            existing.size_bytes = size_bytes
            db.add(existing)
        else:
            db.add(UploadPart(upload_id=upload_id, part_index=part_index, etag=etag, size_bytes=size_bytes))
        db.flush()

    def list_parts(self, db: Session, *, upload_id: str) -> List[UploadPart]:
        return (
            db.query(UploadPart)
            .filter(UploadPart.upload_id == upload_id)
            .order_by(UploadPart.part_index.asc())
            .all()
        )

    def count_parts(self, db: Session, *, upload_id: str, below: Optional[int] = None) -> int:
        query = db.query(func.count(UploadPart.id)).filter(UploadPart.upload_id == upload_id)
        if below is not None:
            query = query.filter(UploadPart.part_index < below)
        return int(query.scalar() or 0)

    def delete_parts(self, db: Session, *, upload_id: str) -> None:
        db.execute(
            delete(UploadPart)
            .where(UploadPart.upload_id == upload_id)
            .execution_options(synchronize_session=False)
        )


upload_session_crud = CRUDUploadSession(UploadSession)
