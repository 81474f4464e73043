"""条目路由：列表、搜索、详情、重命名/移动、回收站、删除与下载。"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.items import (
    ItemListResponse,
    ItemMutationResponse,
    ItemResponse,
    ItemUpdateBody,
)
from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import DEFAULT_MIME_TYPE
from app.packages.drive.core.dependencies import get_current_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.item_service import item_service, serialize_item

router = APIRouter(prefix="/items", tags=["items"])


def _content_disposition(filename: str) -> str:
    return f"attachment; filename*=UTF-8''{quote(filename)}"


@router.get("", response_model=ItemListResponse)
def list_items(
    parent_id: Optional[str] = Query(None, alias="parentId"),
    include_deleted: bool = Query(False, alias="includeDeleted"),
    trashed: bool = Query(False, description="为 true 时返回回收站中的全部条目"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if trashed:
        items = item_service.list_trash(db, owner_id=current_user.id)
    else:
        items = item_service.list_items(
            db, owner_id=current_user.id, parent_id=parent_id, include_deleted=include_deleted
        )
    return create_response("获取文件列表成功", [serialize_item(i) for i in items])


@router.get("/search", response_model=ItemListResponse)
def search_items(
    q: str = Query(..., min_length=1),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    items = item_service.search(db, owner_id=current_user.id, keyword=q, limit=limit)
    return create_response("搜索成功", [serialize_item(i) for i in items])


@router.get("/{item_id}", response_model=ItemResponse)
def get_item(item_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    item = item_service.get(db, owner_id=current_user.id, item_id=item_id, include_deleted=True)
    return create_response("获取详情成功", serialize_item(item))


@router.patch("/{item_id}", response_model=ItemResponse)
def update_item(
    item_id: str,
    payload: ItemUpdateBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    item = item_service.get(db, owner_id=current_user.id, item_id=item_id)
    if "parentId" in payload.model_fields_set:
        item = item_service.move(db, owner_id=current_user.id, item_id=item_id, target_parent_id=payload.parentId)
    if payload.name is not None:
        item = item_service.rename(db, owner_id=current_user.id, item_id=item_id, new_name=payload.name)
    return create_response("更新成功", serialize_item(item))


@router.post("/{item_id}/restore", response_model=ItemResponse)
def restore_item(item_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    item = item_service.restore(db, owner_id=current_user.id, item_id=item_id)
    return create_response("恢复成功", serialize_item(item))


@router.delete("/{item_id}", response_model=ItemMutationResponse)
def delete_item(
    item_id: str,
    permanent: bool = Query(False, description="为 true 时彻底删除，否则移入回收站"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    data = item_service.delete_item(db, owner_id=current_user.id, item_id=item_id, permanent=permanent)
    return create_response("删除成功", data)


@router.get("/{item_id}/url", response_model=ItemMutationResponse)
def get_download_url(item_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return create_response("获取下载地址成功", item_service.download_url(db, owner_id=current_user.id, item_id=item_id))


@router.get("/{item_id}/download")
def download_item(item_id: str, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    item = item_service.get(db, owner_id=current_user.id, item_id=item_id)
    media_type = item.mime_type or DEFAULT_MIME_TYPE
    headers = {"Content-Disposition": _content_disposition(item.name)}
    # 小文件一次读出，大文件流式返回
    if int(item.size_bytes or 0) <= get_settings().stream_threshold_bytes:
        item, content = item_service.read_content(db, owner_id=current_user.id, item_id=item_id)
        return Response(content=content, media_type=media_type, headers=headers)
    item, stream = item_service.open_download(db, owner_id=current_user.id, item_id=item_id)
    headers["Content-Length"] = str(item.size_bytes)
    return StreamingResponse(stream, media_type=media_type, headers=headers)
