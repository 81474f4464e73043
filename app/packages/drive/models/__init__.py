"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.drive.models.item import Item
from app.packages.drive.models.upload_session import UploadPart, UploadSession
from app.packages.drive.models.user import User

__all__ = [
    "Item",
    "UploadPart",
    "UploadSession",
    "User",
]
