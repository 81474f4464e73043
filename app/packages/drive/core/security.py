"""安全模块：校验身份提供方签发的访问令牌，生成/解析短期签名直链令牌。"""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_settings
from .constants import STORAGE_KEY_OWNER_HASH_LENGTH
from .logger import logger


def decode_identity_token(token: str) -> Optional[Dict[str, Any]]:
    """校验外部身份提供方签发的 JWT，合法时返回载荷，否则返回 ``None``。

    令牌的 ``sub`` 声明即外部用户标识，由依赖层映射为内部用户。
    """
    settings = get_settings()
    options = {"verify_aud": bool(settings.identity_jwt_audience)}
    try:
        return jwt.decode(
            token,
            settings.identity_jwt_secret,
            algorithms=[settings.identity_jwt_algorithm],
            audience=settings.identity_jwt_audience,
            options=options,
        )
    except JWTError as exc:  # pragma: no cover - logging side effect
        logger.warning("Failed to verify identity token: %s", exc)
        return None


def create_temporary_token(subject: Dict[str, Any], *, expires_seconds: int = 600) -> str:
    """创建一个短期有效的 JWT，用于本地存储的预签名上传/下载直链。

    注意：该令牌不绑定用户会话，仅用于对象级别的临时授权。
    """
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(seconds=max(int(expires_seconds or 0), 1))
    payload = subject.copy()
    payload.update({"exp": expire})
    return jwt.encode(payload, settings.signing_secret_key, algorithm=settings.signing_algorithm)


def decode_and_verify_token(token: str, *, verify_exp: bool = True) -> Optional[Dict[str, Any]]:
    """解码并校验直链令牌，默认校验过期时间。"""
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.signing_secret_key,
            algorithms=[settings.signing_algorithm],
            options={"verify_exp": verify_exp},
        )
    except JWTError as exc:  # pragma: no cover - logging side effect
        logger.warning("Failed to verify signed URL token: %s", exc)
        return None


def hash_owner_id(owner_id: str) -> str:
    """对用户 ID 加盐哈希，作为对象键中的用户段，避免通过键名枚举用户。"""
    salt = get_settings().storage_key_salt
    digest = hashlib.sha256(f"{owner_id}{salt}".encode("utf-8")).hexdigest()
    return digest[:STORAGE_KEY_OWNER_HASH_LENGTH]
