"""分片上传路由：初始化、上传分片、完成合并、中止与进度查询。"""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Path, UploadFile
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.uploads import (
    PartProgressResponse,
    UploadCompleteBody,
    UploadInitBody,
    UploadInitResponse,
    UploadListResponse,
    UploadMutationResponse,
    UploadStatusResponse,
)
from app.packages.drive.core.dependencies import get_current_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.item_service import serialize_item
from app.packages.drive.services.upload_service import upload_service

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("", response_model=UploadInitResponse)
def init_upload(
    payload: UploadInitBody,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    data = upload_service.init_upload(
        db,
        owner_id=current_user.id,
        file_name=payload.fileName,
        declared_size=payload.fileSize,
        relative_path=payload.relativePath,
        parent_id=payload.parentId,
        mime_type=payload.mimeType,
    )
    return create_response("上传会话已创建", data)


@router.get("", response_model=UploadListResponse)
def list_uploads(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return create_response("获取进行中的上传成功", upload_service.list_active(db, owner_id=current_user.id))


@router.put("/{upload_id}/parts/{part_index}", response_model=PartProgressResponse)
def upload_part(
    upload_id: str = Path(...),
    part_index: int = Path(..., ge=0),
    storage_key: str = Form(..., alias="storageKey"),
    total_parts: int = Form(..., alias="totalParts"),
    chunk: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    data = upload_service.upload_part(
        db,
        owner_id=current_user.id,
        upload_id=upload_id,
        storage_key=storage_key,
        part_index=part_index,
        total_parts=total_parts,
        chunk=chunk.file.read(),
    )
    return create_response("分片上传成功", data)


@router.post("/{upload_id}/complete", response_model=UploadMutationResponse)
def complete_upload(
    payload: UploadCompleteBody,
    upload_id: str = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    item = upload_service.complete_upload(
        db,
        owner_id=current_user.id,
        upload_id=upload_id,
        storage_key=payload.storageKey,
        file_name=payload.fileName,
        declared_size=payload.fileSize,
        total_parts=payload.totalParts,
        parent_id=payload.parentId,
        mime_type=payload.mimeType,
    )
    return create_response("上传完成", serialize_item(item))


@router.delete("/{upload_id}", response_model=UploadMutationResponse)
def abort_upload(
    upload_id: str = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return create_response("上传已中止", upload_service.abort_upload(db, owner_id=current_user.id, upload_id=upload_id))


@router.get("/{upload_id}", response_model=UploadStatusResponse)
def get_upload_status(
    upload_id: str = Path(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return create_response("获取上传进度成功", upload_service.get_status(db, owner_id=current_user.id, upload_id=upload_id))
