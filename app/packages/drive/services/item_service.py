"""条目服务：文件夹/文件的查询、重命名、移动、回收站与彻底删除。

目录树按层序遍历，不使用递归；遍历深度受 ``MAX_TREE_DEPTH`` 限制，
遇到环或超深结构视为数据损坏并报错，而不是无限循环。
"""

from __future__ import annotations

import os
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.enums import ItemKindEnum
from app.packages.drive.core.exceptions import (
    AppException,
    DataCorruptionError,
    NameConflictError,
    NotFoundError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import format_datetime, utcnow
from app.packages.drive.crud.items import item_crud
from app.packages.drive.models.item import Item
from app.packages.drive.services.content_classifier import file_category, file_type_label
from app.packages.drive.services.quota_service import quota_service
from app.packages.drive.services.storage_backends import StorageBackend, get_storage_backend

MAX_NAME_LENGTH = 255
MAX_DEDUP_ATTEMPTS = 1000


def validate_name(name: Optional[str]) -> str:
    """校验条目名称：非空、不含路径分隔符，且不能是 ``.`` / ``..``。"""
    cleaned = (name or "").strip()
    if not cleaned:
        raise AppException("名称不能为空")
    if "/" in cleaned or "\\" in cleaned or cleaned in {".", ".."}:
        raise AppException("名称包含非法字符")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise AppException("名称过长")
    return cleaned


def split_name(name: str) -> Tuple[str, str]:
    """拆分为主干与扩展名；以点开头且无其它点的名称（如 ``.env``）视为无扩展名。"""
    stem, ext = os.path.splitext(name)
    if not stem:
        return name, ""
    return stem, ext


def dedupe_name(db: Session, *, owner_id: str, parent_id: Optional[str], name: str) -> str:
    """同级重名时生成 ``name (n).ext`` 形式的可用名称，``n`` 从 1 开始。"""
    if item_crud.get_child(db, owner_id=owner_id, parent_id=parent_id, name=name) is None:
        return name
    stem, ext = split_name(name)
    taken = item_crud.sibling_names(db, owner_id=owner_id, parent_id=parent_id, stem=f"{stem} (")
    for n in range(1, MAX_DEDUP_ATTEMPTS + 1):
        candidate = f"{stem} ({n}){ext}"
        if candidate not in taken:
            return candidate
    raise NameConflictError(name, "同名条目过多，请更换名称")


def serialize_item(item: Item) -> Dict[str, Any]:
    is_file = item.kind == ItemKindEnum.FILE.value
    return {
        "id": item.id,
        "name": item.name,
        "kind": item.kind,
        "parent_id": item.parent_id,
        "size_bytes": int(item.size_bytes or 0),
        "mime_type": item.mime_type,
        "file_type": item.file_type,
        "category": file_category(item.name) if is_file else "folder",
        "is_deleted": bool(item.is_deleted),
        "deleted_at": format_datetime(item.deleted_at),
        "create_time": format_datetime(item.create_time),
        "update_time": format_datetime(item.update_time),
    }


class ItemService:
    def __init__(self, backend: Optional[StorageBackend] = None) -> None:
        self._backend = backend

    @property
    def backend(self) -> StorageBackend:
        return self._backend or get_storage_backend()

    # ----------------------------
    # 查询
    # ----------------------------
    def get(self, db: Session, *, owner_id: str, item_id: str, include_deleted: bool = False) -> Item:
        item = item_crud.get_owned(db, owner_id=owner_id, item_id=item_id, include_deleted=include_deleted)
        if item is None:
            raise NotFoundError("文件或文件夹不存在")
        return item

    def get_folder(self, db: Session, *, owner_id: str, folder_id: Optional[str]) -> Optional[Item]:
        if folder_id is None:
            return None
        folder = item_crud.get_owned(db, owner_id=owner_id, item_id=folder_id)
        if folder is None or not folder.is_folder:
            raise NotFoundError("目标文件夹不存在")
        return folder

    def list_items(
        self,
        db: Session,
        *,
        owner_id: str,
        parent_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[Item]:
        self.get_folder(db, owner_id=owner_id, folder_id=parent_id)
        return item_crud.list_children(db, owner_id=owner_id, parent_id=parent_id, include_deleted=include_deleted)

    def list_trash(self, db: Session, *, owner_id: str) -> List[Item]:
        return item_crud.list_trashed(db, owner_id=owner_id)

    def search(self, db: Session, *, owner_id: str, keyword: str, limit: int = 100) -> List[Item]:
        keyword = (keyword or "").strip()
        if not keyword:
            return []
        return item_crud.search(db, owner_id=owner_id, keyword=keyword, limit=limit)

    def list_descendants(self, db: Session, *, owner_id: str, item_id: str) -> List[Item]:
        """层序收集 ``item_id`` 之下的全部条目（含已删除，不含自身）。"""
        max_depth = get_settings().max_tree_depth
        visited = {item_id}
        result: List[Item] = []
        frontier = [item_id]
        depth = 0
        while frontier:
            if depth >= max_depth:
                logger.error("Tree under %s exceeds max depth %s", item_id, max_depth)
                raise DataCorruptionError(item_id)
            children = item_crud.list_children_of(db, owner_id=owner_id, parent_ids=frontier)
            frontier = []
            for child in children:
                if child.id in visited:
                    logger.error("Cycle detected under %s at %s", item_id, child.id)
                    raise DataCorruptionError(child.id)
                visited.add(child.id)
                result.append(child)
                if child.is_folder:
                    frontier.append(child.id)
            depth += 1
        return result

    def _is_within(self, db: Session, *, owner_id: str, folder_id: str, ancestor_id: str) -> bool:
        """沿父链向上查找，判断 ``folder_id`` 是否位于 ``ancestor_id`` 之下（含自身）。"""
        max_depth = get_settings().max_tree_depth
        seen = set()
        current: Optional[str] = folder_id
        while current is not None:
            if current == ancestor_id:
                return True
            if current in seen or len(seen) >= max_depth:
                raise DataCorruptionError(current)
            seen.add(current)
            node = item_crud.get_owned(db, owner_id=owner_id, item_id=current, include_deleted=True)
            current = node.parent_id if node is not None else None
        return False

    # ----------------------------
    # 变更
    # ----------------------------
    def create_folder(self, db: Session, *, owner_id: str, name: str, parent_id: Optional[str] = None) -> Item:
        name = validate_name(name)
        self.get_folder(db, owner_id=owner_id, folder_id=parent_id)
        if item_crud.get_child(db, owner_id=owner_id, parent_id=parent_id, name=name) is not None:
            raise NameConflictError(name)
        try:
            folder = item_crud.create(
                db,
                {
                    "owner_id": owner_id,
                    "parent_id": parent_id,
                    "name": name,
                    "kind": ItemKindEnum.FOLDER.value,
                    "size_bytes": 0,
                },
            )
        except IntegrityError as exc:
            db.rollback()
            raise NameConflictError(name) from exc
        logger.info("User %s created folder %s (%s)", owner_id, name, folder.id)
        return folder

    def _save_placement(self, db: Session, item: Item, *, name: str, parent_id: Optional[str]) -> Item:
        conflict = item_crud.get_child(db, owner_id=item.owner_id, parent_id=parent_id, name=name)
        if conflict is not None and conflict.id != item.id:
            raise NameConflictError(name)
        item.name = name
        item.parent_id = parent_id
        if not item.is_folder:
            item.file_type = file_type_label(name)
        try:
            return item_crud.save(db, item)
        except IntegrityError as exc:
            db.rollback()
            raise NameConflictError(name) from exc

    def rename(self, db: Session, *, owner_id: str, item_id: str, new_name: str) -> Item:
        item = self.get(db, owner_id=owner_id, item_id=item_id)
        name = validate_name(new_name)
        if name == item.name:
            return item
        return self._save_placement(db, item, name=name, parent_id=item.parent_id)

    def move(self, db: Session, *, owner_id: str, item_id: str, target_parent_id: Optional[str]) -> Item:
        item = self.get(db, owner_id=owner_id, item_id=item_id)
        if target_parent_id == item.parent_id:
            return item
        if target_parent_id is not None:
            self.get_folder(db, owner_id=owner_id, folder_id=target_parent_id)
            if item.is_folder and self._is_within(db, owner_id=owner_id, folder_id=target_parent_id, ancestor_id=item.id):
                raise AppException("不能将文件夹移动到自身或其子文件夹中")
        return self._save_placement(db, item, name=item.name, parent_id=target_parent_id)

    def soft_delete(self, db: Session, *, owner_id: str, item_id: str) -> int:
        """移入回收站：整棵子树标记删除，释放其中未删除文件占用的空间；返回释放字节数。"""
        item = self.get(db, owner_id=owner_id, item_id=item_id)
        nodes = [item]
        if item.is_folder:
            nodes.extend(n for n in self.list_descendants(db, owner_id=owner_id, item_id=item.id) if not n.is_deleted)
        deleted_at = utcnow()
        try:
            # 只统计本次真正改动的行，并发删除同一子树时不会重复释放
            changed = item_crud.mark_deleted(
                db, owner_id=owner_id, item_ids=[n.id for n in nodes], deleted=True, deleted_at=deleted_at
            )
            freed = sum(int(row.size_bytes or 0) for row in changed if row.kind != ItemKindEnum.FOLDER.value)
            quota_service.commit(db, owner_id=owner_id, delta=-freed)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("User %s trashed %s (%s items, %s bytes)", owner_id, item.id, len(changed), freed)
        return freed

    def restore(self, db: Session, *, owner_id: str, item_id: str) -> Item:
        """从回收站恢复：一并恢复同一次删除的子条目，父目录已不存在时恢复到根目录，重名时自动改名。"""
        item = self.get(db, owner_id=owner_id, item_id=item_id, include_deleted=True)
        if not item.is_deleted:
            raise AppException("该条目不在回收站中")
        nodes = [item]
        if item.is_folder:
            nodes.extend(
                n
                for n in self.list_descendants(db, owner_id=owner_id, item_id=item.id)
                if n.is_deleted and n.deleted_at == item.deleted_at
            )
        size = sum(int(n.size_bytes or 0) for n in nodes if not n.is_folder)
        quota_service.ensure_admitted(db, owner_id=owner_id, size=size)

        parent_id = item.parent_id
        if parent_id is not None:
            parent = item_crud.get_owned(db, owner_id=owner_id, item_id=parent_id)
            if parent is None or not parent.is_folder:
                parent_id = None
        name = dedupe_name(db, owner_id=owner_id, parent_id=parent_id, name=item.name)
        try:
            item.parent_id = parent_id
            item.name = name
            db.add(item)
            db.flush()
            changed = item_crud.mark_deleted(
                db,
                owner_id=owner_id,
                item_ids=[n.id for n in nodes],
                deleted=False,
                deleted_at=None,
                batch_deleted_at=item.deleted_at,
            )
            if item.id not in {row.id for row in changed}:
                db.rollback()
                raise AppException("该条目不在回收站中")
            size = sum(int(row.size_bytes or 0) for row in changed if row.kind != ItemKindEnum.FOLDER.value)
            quota_service.commit(db, owner_id=owner_id, delta=size)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise NameConflictError(name) from exc
        except Exception:
            db.rollback()
            raise
        db.refresh(item)
        logger.info("User %s restored %s (%s items, %s bytes)", owner_id, item.id, len(changed), size)
        return item

    def hard_delete(self, db: Session, *, owner_id: str, item_id: str) -> int:
        """彻底删除：先删除数据库记录并释放配额，再尽力清理对象存储，清理失败只记录日志。"""
        item = self.get(db, owner_id=owner_id, item_id=item_id, include_deleted=True)
        nodes = [item]
        if item.is_folder:
            nodes.extend(self.list_descendants(db, owner_id=owner_id, item_id=item.id))
        ids = [n.id for n in nodes]
        try:
            removed = item_crud.delete_many(db, owner_id=owner_id, item_ids=ids)
            files = [row for row in removed if row.kind != ItemKindEnum.FOLDER.value]
            # 已在回收站中的文件此前已释放过配额；以删除时的行状态为准
            freed = sum(int(row.size_bytes or 0) for row in files if not row.is_deleted)
            keys = [row.storage_key for row in files if row.storage_key]
            quota_service.commit(db, owner_id=owner_id, delta=-freed)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("User %s permanently deleted %s (%s items, %s bytes)", owner_id, item_id, len(removed), freed)
        self._purge_objects(keys)
        return freed

    def _purge_objects(self, keys: List[str]) -> None:
        if not keys:
            return
        try:
            result = self.backend.delete_objects(keys)
        except AppException as exc:
            logger.error("Object purge failed for %s keys: %s", len(keys), exc.detail)
            return
        for error in result.get("errors", []):
            logger.error("Orphaned object %s: %s", error.get("key"), error.get("message"))

    def delete_item(self, db: Session, *, owner_id: str, item_id: str, permanent: bool = False) -> Dict[str, int]:
        if permanent:
            freed = self.hard_delete(db, owner_id=owner_id, item_id=item_id)
        else:
            freed = self.soft_delete(db, owner_id=owner_id, item_id=item_id)
        return {"bytes_freed": freed}

    # ----------------------------
    # 对象访问
    # ----------------------------
    def _get_file(self, db: Session, *, owner_id: str, item_id: str) -> Item:
        item = self.get(db, owner_id=owner_id, item_id=item_id)
        if item.is_folder or not item.storage_key:
            raise AppException("文件夹不支持下载")
        return item

    def download_url(self, db: Session, *, owner_id: str, item_id: str) -> Dict[str, Any]:
        item = self._get_file(db, owner_id=owner_id, item_id=item_id)
        ttl = get_settings().presign_ttl_seconds
        url = self.backend.presign_get(item.storage_key, ttl, filename=item.name)
        return {"url": url, "expires_in": ttl, "name": item.name}

    def open_download(self, db: Session, *, owner_id: str, item_id: str) -> Tuple[Item, Iterator[bytes]]:
        item = self._get_file(db, owner_id=owner_id, item_id=item_id)
        return item, self.backend.get_object_stream(item.storage_key)

    def read_content(self, db: Session, *, owner_id: str, item_id: str) -> Tuple[Item, bytes]:
        item = self._get_file(db, owner_id=owner_id, item_id=item_id)
        return item, self.backend.get_object(item.storage_key)


item_service = ItemService()
