"""文件夹路由：按路径解析/创建文件夹。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.items import FolderCreateBody, ItemResponse, ResolvedPathResponse
from app.packages.drive.core.dependencies import get_current_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.folder_resolver import folder_resolver, split_path
from app.packages.drive.services.item_service import item_service, serialize_item

router = APIRouter(prefix="/folders", tags=["folders"])


@router.get("/resolve-path", response_model=ResolvedPathResponse)
def resolve_path(
    path: str = Query("", description="以 / 分隔的文件夹路径，如 2024/Q1"),
    create: bool = Query(False, description="为 true 时自动创建缺失的文件夹"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    segments = split_path(path)
    if create:
        folder_id = folder_resolver.resolve_hierarchy(
            db, owner_id=current_user.id, root_parent_id=None, segments=segments
        )
    else:
        folder_id = folder_resolver.navigate(db, owner_id=current_user.id, segments=segments)
    return create_response("路径解析成功", {"folder_id": folder_id, "path": "/".join(segments)})


@router.post("", response_model=ItemResponse)
def create_folder(
    payload: FolderCreateBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    folder = item_service.create_folder(db, owner_id=current_user.id, name=payload.name, parent_id=payload.parentId)
    return create_response("文件夹创建成功", serialize_item(folder))
