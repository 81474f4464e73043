"""枚举定义：约束条目类型、上传会话状态与识别结果的可选值。"""

from enum import Enum


class ItemKindEnum(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class UploadStatusEnum(str, Enum):
    """分片上传会话的状态机取值。"""

    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    COMPLETED = "completed"
    ABORTED = "aborted"


# 可被中止或超时清理的状态
ACTIVE_UPLOAD_STATUSES = (UploadStatusEnum.INITIATED.value, UploadStatusEnum.UPLOADING.value)


class ConfidenceEnum(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DetectionMethodEnum(str, Enum):
    MAGIC_BYTES = "magic-bytes"
    EXTENSION = "extension"
    FALLBACK = "fallback"
