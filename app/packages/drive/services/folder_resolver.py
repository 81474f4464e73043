"""文件夹解析：把 ``a/b/c`` 形式的相对路径逐段映射为文件夹，缺失的按需创建。

并发场景下多个请求可能同时创建同一路径。每个新文件夹在独立的短事务中插入，
若撞上同级唯一索引，则回滚并重新读取胜出的那一行，保证所有请求收敛到同一个 ID。
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.enums import ItemKindEnum
from app.packages.drive.core.exceptions import AppException, NameConflictError, NotFoundError
from app.packages.drive.core.logger import logger
from app.packages.drive.crud.items import item_crud
from app.packages.drive.models.item import Item

MAX_SEGMENT_LENGTH = 255


def split_path(path: Optional[str]) -> List[str]:
    """拆分路径并清洗：去掉空段、``.`` 与 ``..``，统一使用 ``/`` 作为分隔符。"""
    if not path:
        return []
    return sanitize_segments(path.replace("\\", "/").split("/"))


def sanitize_segments(segments: Iterable[str]) -> List[str]:
    cleaned: List[str] = []
    for raw in segments:
        segment = (raw or "").strip()
        if not segment or segment in {".", ".."}:
            continue
        if len(segment) > MAX_SEGMENT_LENGTH:
            raise AppException(f"路径片段过长: {segment[:32]}...")
        cleaned.append(segment)
    return cleaned


class FolderResolver:
    def _check_root(self, db: Session, owner_id: str, root_parent_id: Optional[str]) -> None:
        if root_parent_id is None:
            return
        parent = item_crud.get_owned(db, owner_id=owner_id, item_id=root_parent_id)
        if parent is None or not parent.is_folder:
            raise NotFoundError("目标文件夹不存在")

    def _get_or_create(self, db: Session, *, owner_id: str, parent_id: Optional[str], name: str) -> Item:
        existing = item_crud.get_child(db, owner_id=owner_id, parent_id=parent_id, name=name)
        if existing is not None:
            if not existing.is_folder:
                raise NameConflictError(name, f"路径中的 '{name}' 已存在同名文件")
            return existing
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
            logger.debug("Created folder %s (%s) under %s for user %s", name, folder.id, parent_id, owner_id)
            return folder
        except IntegrityError:
            # 并发请求先一步创建了同名条目，读取胜出者
            db.rollback()
            winner = item_crud.get_child(db, owner_id=owner_id, parent_id=parent_id, name=name)
            if winner is None:
                raise
            if not winner.is_folder:
                raise NameConflictError(name, f"路径中的 '{name}' 已存在同名文件")
            return winner

    def resolve_hierarchy(
        self,
        db: Session,
        *,
        owner_id: str,
        root_parent_id: Optional[str],
        segments: Iterable[str],
    ) -> Optional[str]:
        """逐段解析（并按需创建）文件夹，返回最后一段的文件夹 ID；无有效片段时返回 ``root_parent_id``。"""
        cleaned = sanitize_segments(segments)
        self._check_root(db, owner_id, root_parent_id)
        current = root_parent_id
        for name in cleaned:
            current = self._get_or_create(db, owner_id=owner_id, parent_id=current, name=name).id
        return current

    def navigate(
        self,
        db: Session,
        *,
        owner_id: str,
        segments: Iterable[str],
        root_parent_id: Optional[str] = None,
    ) -> Optional[str]:
        """只读解析：任一片段不存在或不是文件夹时抛出 404，并指出失效的前缀。"""
        cleaned = sanitize_segments(segments)
        self._check_root(db, owner_id, root_parent_id)
        current = root_parent_id
        for depth, name in enumerate(cleaned):
            child = item_crud.get_child(db, owner_id=owner_id, parent_id=current, name=name)
            if child is None or not child.is_folder:
                invalid = "/".join(cleaned[: depth + 1])
                raise NotFoundError(f"路径不存在: {invalid}")
            current = child.id
        return current


folder_resolver = FolderResolver()
