"""分片上传协调：初始化、逐片上传、合并校验入库、中止与超时清理。

会话状态机：``initiated → uploading → completing → completed``，``initiated`` 与
``uploading`` 可转入 ``aborted``。所有状态切换都是带前置状态条件的 UPDATE，
并发请求中只有一方能切换成功。
"""

from __future__ import annotations

import re
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    S3_MAX_PARTS,
    STORAGE_KEY_PREFIX,
    STORAGE_KEY_RANDOM_BYTES,
)
from app.packages.drive.core.enums import ACTIVE_UPLOAD_STATUSES, ItemKindEnum, UploadStatusEnum
from app.packages.drive.core.exceptions import (
    AppException,
    ContentValidationRejected,
    IncompleteUpload,
    NameConflictError,
    NotFoundError,
    ObjectStoreError,
    PartUploadFailed,
    UploadStateError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import hash_owner_id
from app.packages.drive.core.timezone import format_datetime, utcnow
from app.packages.drive.crud.items import item_crud
from app.packages.drive.crud.upload_sessions import upload_session_crud
from app.packages.drive.models.item import Item
from app.packages.drive.models.upload_session import UploadSession
from app.packages.drive.services.content_classifier import (
    classify,
    file_extension,
    file_type_label,
    mime_type_from_extension,
    normalize_mime_type,
    validate,
)
from app.packages.drive.services.folder_resolver import folder_resolver, split_path
from app.packages.drive.services.item_service import dedupe_name, item_service, validate_name
from app.packages.drive.services.quota_service import quota_service
from app.packages.drive.services.storage_backends import StorageBackend, get_storage_backend

_EXTENSION_SAFE = re.compile(r"[^a-z0-9.]")
MAX_EXTENSION_LENGTH = 16
MAX_INSERT_ATTEMPTS = 3

INITIATED = UploadStatusEnum.INITIATED.value
UPLOADING = UploadStatusEnum.UPLOADING.value
COMPLETING = UploadStatusEnum.COMPLETING.value
COMPLETED = UploadStatusEnum.COMPLETED.value
ABORTED = UploadStatusEnum.ABORTED.value


def build_storage_key(owner_id: str, file_name: str) -> str:
    """生成对象键 ``files/<用户哈希>/<随机十六进制><扩展名>``，键中不包含原始文件名。"""
    ext = _EXTENSION_SAFE.sub("", file_extension(file_name))[:MAX_EXTENSION_LENGTH]
    if ext and not ext.startswith("."):
        ext = ""
    return f"{STORAGE_KEY_PREFIX}/{hash_owner_id(owner_id)}/{secrets.token_hex(STORAGE_KEY_RANDOM_BYTES)}{ext}"


def progress_percent(received: int, total: int) -> int:
    """``round(received / total * 100)`` 的整数实现（0.5 向上取整）。"""
    if total <= 0:
        return 0
    return (received * 200 + total) // (2 * total)


class UploadService:
    def __init__(self, backend: Optional[StorageBackend] = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend or get_storage_backend()

    def _get_session(self, db: Session, *, owner_id: str, upload_id: str) -> UploadSession:
        session = upload_session_crud.get_owned(db, owner_id=owner_id, upload_id=upload_id)
        if session is None:
            raise NotFoundError("上传会话不存在")
        return session

    # ----------------------------
    # 初始化
    # ----------------------------
    def init_upload(
        self,
        db: Session,
        *,
        owner_id: str,
        file_name: str,
        declared_size: int,
        relative_path: Optional[str] = None,
        parent_id: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        name = validate_name(file_name)
        if declared_size is None or int(declared_size) <= 0:
            raise AppException("文件大小必须大于 0")
        declared_size = int(declared_size)

        item_service.get_folder(db, owner_id=owner_id, folder_id=parent_id)
        quota_service.ensure_admitted(db, owner_id=owner_id, size=declared_size)

        # relative_path 的最后一段是文件本身
        segments = split_path(relative_path)[:-1]
        folder_id = folder_resolver.resolve_hierarchy(
            db,
            owner_id=owner_id,
            root_parent_id=parent_id,
            segments=segments,
        )

        storage_key = build_storage_key(owner_id, name)
        content_type = normalize_mime_type(mime_type) or mime_type_from_extension(name)
        upload_id = self.backend.create_multipart_upload(storage_key, content_type)
        try:
            upload_session_crud.create(
                db,
                {
                    "upload_id": upload_id,
                    "storage_key": storage_key,
                    "owner_id": owner_id,
                    "file_name": name,
                    "relative_path": relative_path,
                    "parent_id": folder_id,
                    "declared_size": declared_size,
                    "mime_type": content_type,
                    "status": INITIATED,
                    "last_activity_at": utcnow(),
                },
            )
        except Exception:
            db.rollback()
            self._abort_store_upload(storage_key, upload_id)
            raise
        logger.info("Upload %s initiated by user %s for %s (%s bytes)", upload_id, owner_id, name, declared_size)
        return {"upload_id": upload_id, "storage_key": storage_key, "parent_id": folder_id, "file_name": name}

    # ----------------------------
    # 分片
    # ----------------------------
    def upload_part(
        self,
        db: Session,
        *,
        owner_id: str,
        upload_id: str,
        storage_key: str,
        part_index: int,
        total_parts: int,
        chunk: bytes,
    ) -> Dict[str, Any]:
        session = self._get_session(db, owner_id=owner_id, upload_id=upload_id)
        if total_parts < 1 or total_parts > S3_MAX_PARTS:
            raise AppException(f"分片总数必须在 1 到 {S3_MAX_PARTS} 之间")
        if part_index < 0 or part_index >= total_parts:
            raise AppException("分片序号超出范围")
        if session.status not in ACTIVE_UPLOAD_STATUSES:
            raise UploadStateError(upload_id, session.status)
        if storage_key != session.storage_key:
            raise AppException("storageKey 与上传会话不匹配")
        if session.total_parts is not None and session.total_parts != total_parts:
            raise AppException("分片总数与之前的请求不一致")
        if not chunk:
            raise PartUploadFailed(upload_id, part_index, "分片内容为空", HTTP_STATUS_BAD_REQUEST)

        is_last = part_index == total_parts - 1
        min_size = self.backend.min_part_size
        if not is_last and len(chunk) < min_size:
            raise PartUploadFailed(
                upload_id,
                part_index,
                f"非末尾分片不能小于 {min_size} 字节",
                HTTP_STATUS_BAD_REQUEST,
            )

        try:
            etag = self.backend.upload_part(session.storage_key, upload_id, part_index, chunk)
        except ObjectStoreError as exc:
            logger.warning("Part %s of upload %s failed at the object store: %s", part_index, upload_id, exc.detail)
            raise PartUploadFailed(upload_id, part_index) from exc

        self._record_part(db, session, part_index=part_index, total_parts=total_parts, etag=etag, size=len(chunk))

        received = upload_session_crud.count_parts(db, upload_id=upload_id, below=total_parts)
        return {
            "upload_id": upload_id,
            "part_index": part_index,
            "progress_percent": progress_percent(received, total_parts),
            "received_parts": received,
            "total_parts": total_parts,
            "is_complete": received == total_parts,
        }

    def _record_part(self, db: Session, session: UploadSession, *, part_index: int, total_parts: int, etag: str, size: int) -> None:
        """在同一事务内确认会话仍可上传并写入分片记录；会话已被中止或进入合并时回滚。"""
        values: Dict[str, Any] = {"last_activity_at": utcnow()}
        if session.total_parts is None:
            values["total_parts"] = total_parts
        for attempt in range(2):
            if not upload_session_crud.transition(
                db,
                upload_id=session.upload_id,
                from_statuses=ACTIVE_UPLOAD_STATUSES,
                to_status=UPLOADING,
                values=values,
            ):
                db.rollback()
                db.refresh(session)
                raise UploadStateError(session.upload_id, session.status)
            try:
                upload_session_crud.upsert_part(
                    db, upload_id=session.upload_id, part_index=part_index, etag=etag, size_bytes=size
                )
                db.commit()
                return
            except IntegrityError:
                # 同一分片的并发重传，重试时改为覆盖
                db.rollback()
                if attempt:
                    raise

    # ----------------------------
    # 完成
    # ----------------------------
    def _completed_item(self, db: Session, session: UploadSession) -> Item:
        item = None
        if session.item_id:
            item = item_crud.get_owned(db, owner_id=session.owner_id, item_id=session.item_id, include_deleted=True)
        if item is None:
            raise NotFoundError("上传对应的文件已被删除")
        return item

    def complete_upload(
        self,
        db: Session,
        *,
        owner_id: str,
        upload_id: str,
        storage_key: Optional[str] = None,
        file_name: Optional[str] = None,
        declared_size: Optional[int] = None,
        total_parts: Optional[int] = None,
        parent_id: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> Item:
        """合并分片并入库。对已完成的会话重复调用会直接返回已有条目，不会重复计入配额。

        ``parent_id`` 仅用于兼容旧客户端，实际父目录以初始化时解析的结果为准。
        """
        session = self._get_session(db, owner_id=owner_id, upload_id=upload_id)
        if session.status == COMPLETED:
            return self._completed_item(db, session)
        if storage_key is not None and storage_key != session.storage_key:
            raise AppException("storageKey 与上传会话不匹配")
        if declared_size is not None and int(declared_size) != session.declared_size:
            raise AppException("文件大小与初始化时不一致")

        expected_total = session.total_parts or total_parts or 0
        if session.status == INITIATED:
            raise IncompleteUpload(0, expected_total, range(expected_total))
        if session.status != UPLOADING:
            raise UploadStateError(upload_id, session.status)
        if total_parts is not None and total_parts != session.total_parts:
            raise AppException("分片总数与上传时不一致")

        total = int(session.total_parts or 0)
        parts = {
            p.part_index: p.etag
            for p in upload_session_crud.list_parts(db, upload_id=upload_id)
            if p.part_index < total
        }
        missing = set(range(total)) - set(parts)
        if total == 0 or missing:
            raise IncompleteUpload(len(parts), total, missing)

        if not upload_session_crud.transition(
            db,
            upload_id=upload_id,
            from_statuses=[UPLOADING],
            to_status=COMPLETING,
            values={"last_activity_at": utcnow()},
        ):
            db.rollback()
            db.refresh(session)
            if session.status == COMPLETED:
                return self._completed_item(db, session)
            raise UploadStateError(upload_id, session.status)
        db.commit()

        name = validate_name(file_name or session.file_name)
        declared_mime = normalize_mime_type(mime_type) or session.mime_type
        key = session.storage_key

        try:
            self.backend.complete_multipart_upload(key, upload_id, parts)
        except AppException:
            # 合并未发生，分片仍在，客户端可重试
            upload_session_crud.transition(db, upload_id=upload_id, from_statuses=[COMPLETING], to_status=UPLOADING)
            db.commit()
            raise

        # 此后对象已生成，任何失败都要删除对象
        try:
            size = self.backend.object_size(key)
            sample = self.backend.get_object_range(key, 0, get_settings().classifier_sample_bytes - 1)
        except Exception:
            self._compensate(db, session)
            raise
        if size != session.declared_size:
            self._compensate(db, session)
            raise ContentValidationRejected(f"文件大小 {size} 与声明的 {session.declared_size} 不一致")
        verdict = validate(sample, declared_mime, name)
        if not verdict.ok:
            logger.warning("Upload %s rejected by content validation: %s", upload_id, verdict.reason)
            self._compensate(db, session)
            raise ContentValidationRejected(verdict.reason, verdict.detected_type)

        final_mime = normalize_mime_type(declared_mime) or classify(sample, name).mime_type
        try:
            item = self._insert_item(db, session, name=name, mime_type=final_mime)
        except Exception:
            db.rollback()
            self._compensate(db, session)
            raise
        logger.info("Upload %s completed as item %s (%s bytes)", upload_id, item.id, session.declared_size)
        return item

    def _insert_item(self, db: Session, session: UploadSession, *, name: str, mime_type: str) -> Item:
        """在同一事务内写入条目、累加配额并将会话标记为已完成；同级重名时自动改名。"""
        parent_id = session.parent_id
        if parent_id is not None:
            parent = item_crud.get_owned(db, owner_id=session.owner_id, item_id=parent_id)
            if parent is None or not parent.is_folder:
                parent_id = None

        for _ in range(MAX_INSERT_ATTEMPTS):
            final_name = dedupe_name(db, owner_id=session.owner_id, parent_id=parent_id, name=name)
            try:
                item = item_crud.create(
                    db,
                    {
                        "owner_id": session.owner_id,
                        "parent_id": parent_id,
                        "name": final_name,
                        "kind": ItemKindEnum.FILE.value,
                        "file_type": file_type_label(final_name),
                        "size_bytes": session.declared_size,
                        "mime_type": mime_type,
                        "storage_key": session.storage_key,
                    },
                    auto_commit=False,
                )
                quota_service.commit(db, owner_id=session.owner_id, delta=session.declared_size)
                if not upload_session_crud.transition(
                    db,
                    upload_id=session.upload_id,
                    from_statuses=[COMPLETING],
                    to_status=COMPLETED,
                    values={"item_id": item.id, "last_activity_at": utcnow()},
                ):
                    raise UploadStateError(session.upload_id, COMPLETING, "上传会话已被其它请求处理")
                upload_session_crud.delete_parts(db, upload_id=session.upload_id)
                db.commit()
                db.refresh(item)
                return item
            except IntegrityError:
                db.rollback()
                logger.info("Name collision while saving upload %s, retrying", session.upload_id)
        raise NameConflictError(name)

    def _compensate(self, db: Session, session: UploadSession) -> bool:
        """合并后的失败补偿：删除已生成的对象，并将会话标记为已中止；返回本次是否接管了该会话。"""
        upload_id = session.upload_id
        key = session.storage_key
        try:
            owned = upload_session_crud.transition(
                db,
                upload_id=upload_id,
                from_statuses=[COMPLETING],
                to_status=ABORTED,
                values={"last_activity_at": utcnow()},
            )
            upload_session_crud.delete_parts(db, upload_id=upload_id)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to mark upload %s as aborted", upload_id)
            owned = True
        if not owned:
            # 会话已不处于合并中，对象归其它流程所有
            logger.error("Upload %s left completing state during compensation, object %s kept", upload_id, key)
            return False
        try:
            self.backend.delete_object(key)
        except AppException as exc:
            logger.error("Failed to delete object %s of rejected upload %s: %s", key, upload_id, exc.detail)
        return True

    # ----------------------------
    # 中止与清理
    # ----------------------------
    def _abort_store_upload(self, key: str, upload_id: str) -> None:
        try:
            self.backend.abort_multipart_upload(key, upload_id)
        except AppException as exc:
            logger.warning("Failed to abort multipart upload %s at the object store: %s", upload_id, exc.detail)

    def abort_upload(self, db: Session, *, owner_id: str, upload_id: str) -> Dict[str, Any]:
        session = self._get_session(db, owner_id=owner_id, upload_id=upload_id)
        if session.status != ABORTED:
            aborted = upload_session_crud.transition(
                db,
                upload_id=upload_id,
                from_statuses=ACTIVE_UPLOAD_STATUSES,
                to_status=ABORTED,
                values={"last_activity_at": utcnow()},
            )
            db.commit()
            if not aborted:
                db.refresh(session)
                if session.status != ABORTED:
                    raise UploadStateError(upload_id, session.status, "上传会话已在合并或已完成，无法中止")
            self._abort_store_upload(session.storage_key, upload_id)
            upload_session_crud.delete_parts(db, upload_id=upload_id)
            db.commit()
            logger.info("Upload %s aborted by user %s", upload_id, owner_id)
        return {"upload_id": upload_id, "status": ABORTED}

    def abort_stale_sessions(
        self,
        db: Session,
        *,
        max_idle_seconds: Optional[int] = None,
        max_completing_seconds: Optional[int] = None,
    ) -> int:
        """中止超过空闲时长仍未完成的会话，并清理合并中途中断的会话，返回中止数量。"""
        settings = get_settings()
        if max_idle_seconds is None:
            max_idle_seconds = settings.upload_session_timeout_seconds
        if max_completing_seconds is None:
            max_completing_seconds = settings.upload_completing_timeout_seconds
        idle_before = utcnow() - timedelta(seconds=max_idle_seconds)
        stale = upload_session_crud.list_by_status(db, statuses=ACTIVE_UPLOAD_STATUSES, idle_before=idle_before)
        aborted = 0
        for session in stale:
            if not upload_session_crud.transition(
                db,
                upload_id=session.upload_id,
                from_statuses=ACTIVE_UPLOAD_STATUSES,
                to_status=ABORTED,
            ):
                db.rollback()
                continue
            db.commit()
            self._abort_store_upload(session.storage_key, session.upload_id)
            upload_session_crud.delete_parts(db, upload_id=session.upload_id)
            db.commit()
            aborted += 1

        # 合并中的会话在提交条目前进程退出时会一直停留在 completing
        completing_before = utcnow() - timedelta(seconds=max_completing_seconds)
        for session in upload_session_crud.list_by_status(db, statuses=[COMPLETING], idle_before=completing_before):
            if not self._compensate(db, session):
                continue
            self._abort_store_upload(session.storage_key, session.upload_id)
            logger.warning("Upload %s was stuck in completing, cleaned up", session.upload_id)
            aborted += 1
        if aborted:
            logger.info("Aborted %s stale upload sessions idle since before %s", aborted, idle_before.isoformat())
        return aborted

    # ----------------------------
    # 查询
    # ----------------------------
    def _serialize(self, db: Session, session: UploadSession) -> Dict[str, Any]:
        received: List[int] = [p.part_index for p in upload_session_crud.list_parts(db, upload_id=session.upload_id)]
        total = session.total_parts
        if session.status == COMPLETED:
            percent = 100
        else:
            percent = progress_percent(len(received), total or 0)
        return {
            "upload_id": session.upload_id,
            "storage_key": session.storage_key,
            "file_name": session.file_name,
            "relative_path": session.relative_path,
            "parent_id": session.parent_id,
            "declared_size": session.declared_size,
            "mime_type": session.mime_type,
            "status": session.status,
            "item_id": session.item_id,
            "total_parts": total,
            "received_parts": received,
            "progress_percent": percent,
            "last_activity_at": format_datetime(session.last_activity_at),
            "create_time": format_datetime(session.create_time),
        }

    def get_status(self, db: Session, *, owner_id: str, upload_id: str) -> Dict[str, Any]:
        session = self._get_session(db, owner_id=owner_id, upload_id=upload_id)
        return self._serialize(db, session)

    def list_active(self, db: Session, *, owner_id: str) -> List[Dict[str, Any]]:
        sessions = upload_session_crud.list_by_status(db, statuses=ACTIVE_UPLOAD_STATUSES, owner_id=owner_id)
        return [self._serialize(db, s) for s in sessions]


upload_service = UploadService()
