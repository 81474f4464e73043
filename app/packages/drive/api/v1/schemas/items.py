"""文件/文件夹条目与存储用量的请求/响应模型。"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class FolderCreateBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    parentId: Optional[str] = None


class ItemUpdateBody(BaseModel):
    """``name`` 重命名；``parentId`` 移动（显式传 null 表示移到根目录）。"""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    parentId: Optional[str] = None


class ItemData(BaseModel):
    id: str
    name: str
    kind: str
    parent_id: Optional[str] = None
    size_bytes: int
    mime_type: Optional[str] = None
    file_type: Optional[str] = None
    category: str
    is_deleted: bool
    deleted_at: Optional[str] = None
    create_time: Optional[str] = None
    update_time: Optional[str] = None


class ResolvedPathData(BaseModel):
    folder_id: Optional[str] = None
    path: str


class StorageUsageData(BaseModel):
    storage_used: int
    storage_limit: int
    available_bytes: int
    usage_percentage: float
    file_count: int
    folder_count: int
    trashed_count: int


ItemResponse = ResponseEnvelope[ItemData]
ItemListResponse = ResponseEnvelope[List[ItemData]]
ResolvedPathResponse = ResponseEnvelope[ResolvedPathData]
StorageUsageResponse = ResponseEnvelope[StorageUsageData]
ItemMutationResponse = ResponseEnvelope[Any]
