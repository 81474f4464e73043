"""异常处理模块：定义统一的业务异常、上传链路的错误分类与响应格式。"""

from typing import Iterable, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_GATEWAY,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_NOT_FOUND,
    HTTP_STATUS_PAYLOAD_TOO_LARGE,
    HTTP_STATUS_UNPROCESSABLE_ENTITY,
)
from app.packages.drive.core.logger import logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = status.HTTP_400_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data


class NotFoundError(AppException):
    """资源不存在；归属不匹配时也使用同一错误，避免泄露其他用户的数据是否存在。"""

    def __init__(self, msg: str = "资源不存在") -> None:
        super().__init__(msg, HTTP_STATUS_NOT_FOUND)


class NameConflictError(AppException):
    def __init__(self, name: str, msg: Optional[str] = None) -> None:
        super().__init__(msg or f"同一目录下已存在名为 '{name}' 的条目", HTTP_STATUS_CONFLICT, {"name": name})
        self.name = name


class AdmissionRejected(AppException):
    """上传初始化时剩余空间不足。"""

    def __init__(self, required_bytes: int, available_bytes: int) -> None:
        super().__init__(
            "存储空间不足",
            HTTP_STATUS_PAYLOAD_TOO_LARGE,
            {"requiredBytes": required_bytes, "availableBytes": available_bytes},
        )
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes


class PartUploadFailed(AppException):
    """单个分片上传失败，客户端只需重试对应的 ``part_index``。"""

    def __init__(
        self,
        upload_id: str,
        part_index: int,
        msg: str = "分片上传失败，请重试该分片",
        code: int = HTTP_STATUS_BAD_GATEWAY,
    ) -> None:
        super().__init__(msg, code, {"uploadId": upload_id, "partIndex": part_index})
        self.upload_id = upload_id
        self.part_index = part_index


class IncompleteUpload(AppException):
    def __init__(self, received_parts: int, total_parts: int, missing_parts: Iterable[int]) -> None:
        missing = sorted(missing_parts)
        super().__init__(
            "上传尚未完成，存在缺失的分片",
            status.HTTP_400_BAD_REQUEST,
            {"receivedParts": received_parts, "totalParts": total_parts, "missingParts": missing},
        )
        self.missing_parts = missing


class ContentValidationRejected(AppException):
    """内容校验拒绝（伪装类型或恶意内容），重新发送相同字节不会成功。"""

    def __init__(self, reason: str, detected_type: Optional[str] = None) -> None:
        super().__init__(
            "文件内容校验未通过",
            HTTP_STATUS_UNPROCESSABLE_ENTITY,
            {"reason": reason, "detectedType": detected_type},
        )
        self.reason = reason
        self.detected_type = detected_type


class UploadStateError(AppException):
    def __init__(self, upload_id: str, current_status: str, msg: str = "上传会话状态不允许该操作") -> None:
        super().__init__(msg, HTTP_STATUS_CONFLICT, {"uploadId": upload_id, "status": current_status})
        self.current_status = current_status


class ObjectStoreError(AppException):
    """对象存储调用失败（网络或服务端错误）。"""

    def __init__(self, msg: str = "对象存储服务调用失败") -> None:
        super().__init__(msg, HTTP_STATUS_BAD_GATEWAY)


class DataCorruptionError(AppException):
    """目录树结构损坏（如检测到环），需要人工排查，不应重试。"""

    def __init__(self, item_id: Optional[str] = None, msg: str = "目录结构异常，请联系管理员") -> None:
        super().__init__(msg, status.HTTP_500_INTERNAL_SERVER_ERROR, {"itemId": item_id})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": status.HTTP_500_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
