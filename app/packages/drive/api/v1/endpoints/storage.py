"""存储用量路由。"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.items import ItemMutationResponse, StorageUsageResponse
from app.packages.drive.core.dependencies import get_current_user, get_db
from app.packages.drive.core.responses import create_response
from app.packages.drive.models.user import User
from app.packages.drive.services.quota_service import quota_service

router = APIRouter(prefix="/user", tags=["storage"])


@router.get("/storage", response_model=StorageUsageResponse)
def get_storage_usage(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return create_response("获取存储用量成功", quota_service.usage(db, owner_id=current_user.id))


@router.post("/storage/reconcile", response_model=ItemMutationResponse)
def reconcile_storage_usage(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return create_response("存储用量已校准", quota_service.reconcile(db, owner_id=current_user.id))
