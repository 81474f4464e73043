"""配额服务：上传准入判断、用量增减与对账。

``storage_used`` 只通过 :meth:`QuotaService.commit` 的原子更新修改；准入判断与
最终提交之间不做预留，多个并发上传可能在初始化时都被放行。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from sqlalchemy.orm import Session

from app.packages.drive.core.exceptions import AdmissionRejected, NotFoundError
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.users import user_crud
from app.packages.drive.models.user import User


@dataclass(frozen=True)
class Admission:
    admitted: bool
    requested_bytes: int
    available_bytes: int
    storage_used: int
    storage_limit: int


class QuotaService:
    def _get_user(self, db: Session, owner_id: str) -> User:
        user = user_crud.get(db, owner_id)
        if user is None:
            raise NotFoundError("用户不存在")
        # 计数由数据库原子更新维护，读取前丢弃会话内的旧值
        db.refresh(user)
        return user

    def admission_check(self, db: Session, *, owner_id: str, size: int) -> Admission:
        """判断 ``size`` 字节能否放入用户剩余空间，恰好用满也允许。"""
        user = self._get_user(db, owner_id)
        used = int(user.storage_used or 0)
        limit = int(user.storage_limit or 0)
        available = max(limit - used, 0)
        requested = max(int(size or 0), 0)
        return Admission(
            admitted=used + requested <= limit,
            requested_bytes=requested,
            available_bytes=available,
            storage_used=used,
            storage_limit=limit,
        )

    def ensure_admitted(self, db: Session, *, owner_id: str, size: int) -> Admission:
        admission = self.admission_check(db, owner_id=owner_id, size=size)
        if not admission.admitted:
            logger.info(
                "Upload admission rejected for user %s: requested=%s available=%s",
                owner_id,
                admission.requested_bytes,
                admission.available_bytes,
            )
            raise AdmissionRejected(admission.requested_bytes, admission.available_bytes)
        return admission

    def commit(self, db: Session, *, owner_id: str, delta: int, auto_commit: bool = False) -> None:
        """按 ``delta`` 原子调整用量，结果下限为 0。

        默认不提交事务，以便与条目写入在同一事务内生效。
        """
        if not delta:
            return
        updated = user_crud.add_storage_used(db, owner_id, int(delta))
        if updated != 1:
            raise NotFoundError("用户不存在")
        if auto_commit:
            db.commit()

    def usage(self, db: Session, *, owner_id: str) -> Dict[str, Any]:
        user = self._get_user(db, owner_id)
        used = int(user.storage_used or 0)
        limit = int(user.storage_limit or 0)
        counts = user_crud.catalog_usage(db, owner_id)
        percentage = round(used * 100.0 / limit, 2) if limit > 0 else 0.0
        return {
            "storage_used": used,
            "storage_limit": limit,
            "available_bytes": max(limit - used, 0),
            "usage_percentage": percentage,
            "file_count": counts["file_count"],
            "folder_count": counts["folder_count"],
            "trashed_count": counts["deleted_count"],
        }

    def reconcile(self, db: Session, *, owner_id: str) -> Dict[str, int]:
        """以条目表中未删除文件的大小之和重算 ``storage_used``。"""
        user = self._get_user(db, owner_id)
        previous = int(user.storage_used or 0)
        actual = user_crud.catalog_usage(db, owner_id)["total_size"]
        if actual != previous:
            user_crud.set_storage_used(db, owner_id, actual)
            db.commit()
            logger.warning("Storage usage drift for user %s: recorded=%s actual=%s", owner_id, previous, actual)
        return {"previous": previous, "actual": actual, "drift": actual - previous}


quota_service = QuotaService()
