"""分片上传相关的请求/响应模型。"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope


class UploadInitBody(BaseModel):
    fileName: str = Field(..., min_length=1, max_length=255)
    fileSize: int = Field(..., gt=0)
    relativePath: Optional[str] = None  # 文件夹上传时的相对路径，如 2024/Q1/report.pdf
    parentId: Optional[str] = None
    mimeType: Optional[str] = None


class UploadCompleteBody(BaseModel):
    storageKey: str
    fileName: Optional[str] = None
    fileSize: Optional[int] = Field(None, gt=0)
    totalParts: Optional[int] = Field(None, ge=1)
    parentId: Optional[str] = None
    mimeType: Optional[str] = None


class UploadInitData(BaseModel):
    upload_id: str
    storage_key: str
    parent_id: Optional[str] = None
    file_name: str


class PartProgressData(BaseModel):
    upload_id: str
    part_index: int
    progress_percent: int
    received_parts: int
    total_parts: int
    is_complete: bool


class UploadStatusData(BaseModel):
    upload_id: str
    storage_key: str
    file_name: str
    relative_path: Optional[str] = None
    parent_id: Optional[str] = None
    declared_size: int
    mime_type: Optional[str] = None
    status: str
    item_id: Optional[str] = None
    total_parts: Optional[int] = None
    received_parts: List[int]
    progress_percent: int
    last_activity_at: Optional[str] = None
    create_time: Optional[str] = None


UploadInitResponse = ResponseEnvelope[UploadInitData]
PartProgressResponse = ResponseEnvelope[PartProgressData]
UploadStatusResponse = ResponseEnvelope[UploadStatusData]
UploadListResponse = ResponseEnvelope[List[UploadStatusData]]
UploadMutationResponse = ResponseEnvelope[Any]
