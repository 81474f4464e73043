"""对象存储后端抽象与实现：统一封装本地文件系统与 S3 的对象读写、分片上传与预签名直链。

分片序号对外统一从 0 开始；S3 实现内部换算为 ``PartNumber = part_index + 1``。
"""

from __future__ import annotations

import hashlib
import os
import shutil
import uuid
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_INTERNAL_SERVER_ERROR,
    S3_DELETE_BATCH_SIZE,
    S3_MIN_PART_SIZE,
)
from app.packages.drive.core.exceptions import AppException, NotFoundError, ObjectStoreError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import create_temporary_token

DEFAULT_STREAM_CHUNK = 1024 * 1024


class StorageBackend:
    """对象存储接口。"""

    # 非末尾分片允许的最小字节数
    min_part_size: int = 0

    def put_object(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        raise NotImplementedError

    def create_multipart_upload(self, key: str, content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def upload_part(self, key: str, upload_id: str, part_index: int, data: bytes) -> str:
        raise NotImplementedError

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Mapping[int, str]) -> None:
        """按分片序号升序拼装对象。只负责合并，对象大小通过 ``object_size`` 单独读取。"""
        raise NotImplementedError

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        raise NotImplementedError

    def object_size(self, key: str) -> int:
        raise NotImplementedError

    def get_object(self, key: str) -> bytes:
        raise NotImplementedError

    def get_object_range(self, key: str, start: int, end: int) -> bytes:
        """读取 ``[start, end]`` 闭区间的字节，超出对象长度的部分被截断。"""
        raise NotImplementedError

    def get_object_stream(self, key: str, chunk_size: int = DEFAULT_STREAM_CHUNK) -> Iterator[bytes]:
        raise NotImplementedError

    def delete_object(self, key: str) -> None:
        raise NotImplementedError

    def delete_objects(self, keys: Iterable[str]) -> dict:
        """批量删除，返回 ``{"deleted": [...], "errors": [{"key", "message"}]}``，单个失败不影响其它对象。"""
        deleted: list[str] = []
        errors: list[dict] = []
        for key in keys:
            try:
                self.delete_object(key)
                deleted.append(key)
            except AppException as exc:
                errors.append({"key": key, "message": str(exc.detail)})
        return {"deleted": deleted, "errors": errors}

    def presign_get(self, key: str, ttl: int, *, filename: Optional[str] = None) -> str:
        raise NotImplementedError

    def presign_put(self, key: str, content_type: Optional[str], ttl: int) -> str:
        raise NotImplementedError


# ------------------------------------------
# 本地文件系统实现
# ------------------------------------------


class LocalBackend(StorageBackend):
    """对象以文件形式保存在根目录下；分片暂存于 ``.multipart/<upload_id>/``，完成时按序拼接。"""

    STAGING_DIR = ".multipart"

    def __init__(self, root: str | Path, *, min_part_size: int = 0, signed_url_base: str = "/api/v1/objects/signed"):
        self.root = Path(root).resolve()
        self.min_part_size = max(int(min_part_size or 0), 0)
        self.signed_url_base = signed_url_base
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / self.STAGING_DIR).mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - 极端情况下可能失败
            raise AppException(f"无法创建本地存储目录: {exc}", HTTP_STATUS_INTERNAL_SERVER_ERROR) from exc

    # 统一的安全路径拼接，防止路径遍历
    def _resolve(self, key: str) -> Path:
        rel = (key or "").strip().lstrip("/")
        if not rel or rel.split("/", 1)[0] == self.STAGING_DIR:
            raise AppException("非法对象键", HTTP_STATUS_BAD_REQUEST)
        candidate = (self.root / rel).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise AppException("非法对象键: 越权访问", HTTP_STATUS_BAD_REQUEST) from exc
        return candidate

    def _staging(self, upload_id: str) -> Path:
        if not upload_id or not upload_id.isalnum():
            raise NotFoundError("分片上传不存在")
        return self.root / self.STAGING_DIR / upload_id

    def _open_staging(self, key: str, upload_id: str) -> Path:
        staging = self._staging(upload_id)
        marker = staging / "key"
        if not marker.is_file() or marker.read_text(encoding="utf-8") != key:
            raise NotFoundError("分片上传不存在或已结束")
        return staging

    @staticmethod
    def _write_atomic(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, target)

    @contextmanager
    def _io(self, action: str, key: str):
        try:
            yield
        except OSError as exc:
            logger.error("Local storage %s failed for %s: %s", action, key, exc)
            raise ObjectStoreError(f"本地存储{action}失败") from exc

    def put_object(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        target = self._resolve(key)
        with self._io("写入", key):
            self._write_atomic(target, data)

    def create_multipart_upload(self, key: str, content_type: Optional[str] = None) -> str:
        self._resolve(key)
        upload_id = uuid.uuid4().hex
        staging = self._staging(upload_id)
        with self._io("创建分片上传", key):
            staging.mkdir(parents=True, exist_ok=False)
            (staging / "key").write_text(key, encoding="utf-8")
        return upload_id

    def upload_part(self, key: str, upload_id: str, part_index: int, data: bytes) -> str:
        staging = self._open_staging(key, upload_id)
        with self._io("写入分片", key):
            self._write_atomic(staging / f"{int(part_index)}.part", data)
        return hashlib.md5(data).hexdigest()

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Mapping[int, str]) -> None:
        staging = self._open_staging(key, upload_id)
        target = self._resolve(key)
        tmp = target.with_name(f".{target.name}.{upload_id}.assemble")
        with self._io("合并分片", key):
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                with open(tmp, "wb") as out:
                    for index in sorted(parts):
                        part_path = staging / f"{int(index)}.part"
                        if not part_path.is_file():
                            raise ObjectStoreError(f"分片 {index} 不存在")
                        data = part_path.read_bytes()
                        if hashlib.md5(data).hexdigest() != parts[index]:
                            raise ObjectStoreError(f"分片 {index} 的校验值不匹配")
                        out.write(data)
                os.replace(tmp, target)
            finally:
                if tmp.exists():
                    tmp.unlink()
            shutil.rmtree(staging, ignore_errors=True)

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        staging = self._staging(upload_id)
        with self._io("中止分片上传", key):
            if staging.exists():
                shutil.rmtree(staging)

    def _existing(self, key: str) -> Path:
        target = self._resolve(key)
        if not target.is_file():
            raise NotFoundError("对象不存在")
        return target

    def get_object(self, key: str) -> bytes:
        target = self._existing(key)
        with self._io("读取", key):
            return target.read_bytes()

    def get_object_range(self, key: str, start: int, end: int) -> bytes:
        target = self._existing(key)
        if end < start:
            return b""
        with self._io("读取", key):
            with open(target, "rb") as f:
                f.seek(max(start, 0))
                return f.read(end - max(start, 0) + 1)

    def get_object_stream(self, key: str, chunk_size: int = DEFAULT_STREAM_CHUNK) -> Iterator[bytes]:
        target = self._existing(key)

        def _iter() -> Iterator[bytes]:
            with open(target, "rb") as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk

        return _iter()

    def object_size(self, key: str) -> int:
        return self._existing(key).stat().st_size

    def delete_object(self, key: str) -> None:
        target = self._resolve(key)
        with self._io("删除", key):
            # 幂等：不存在则忽略
            if target.exists():
                target.unlink()

    def presign_get(self, key: str, ttl: int, *, filename: Optional[str] = None) -> str:
        self._resolve(key)
        token = create_temporary_token(
            {"purpose": "object_get", "key": key, "filename": filename},
            expires_seconds=ttl,
        )
        return f"{self.signed_url_base}?t={token}"

    def presign_put(self, key: str, content_type: Optional[str], ttl: int) -> str:
        self._resolve(key)
        token = create_temporary_token(
            {"purpose": "object_put", "key": key, "content_type": content_type},
            expires_seconds=ttl,
        )
        return f"{self.signed_url_base}?t={token}"


# ------------------------------------------
# S3 实现（boto3）
# ------------------------------------------


class S3Backend(StorageBackend):
    min_part_size = S3_MIN_PART_SIZE

    def __init__(
        self,
        *,
        bucket: str,
        region: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        prefix: Optional[str] = None,
    ):
        self.bucket = bucket
        self.region = region
        self.prefix = (prefix or "").strip("/")
        self._client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            endpoint_url=endpoint_url or None,
        )

    # 拼接基于 prefix 的对象 key
    def _join_key(self, key: str) -> str:
        rel = key.lstrip("/")
        if self.prefix:
            return f"{self.prefix}/{rel}"
        return rel

    @contextmanager
    def _call(self, action: str, key: str):
        try:
            yield
        except ClientError as exc:
            error = exc.response.get("Error", {}) if hasattr(exc, "response") else {}
            code = str(error.get("Code") or "")
            if code in {"NoSuchKey", "404", "NotFound"}:
                raise NotFoundError("对象不存在") from exc
            if code == "NoSuchUpload":
                raise NotFoundError("分片上传不存在或已结束") from exc
            logger.error("S3 %s failed for %s: %s", action, key, exc)
            raise ObjectStoreError(f"S3 {action}失败: {code or exc}") from exc
        except BotoCoreError as exc:
            logger.error("S3 %s failed for %s: %s", action, key, exc)
            raise ObjectStoreError(f"S3 {action}失败") from exc

    def put_object(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        params = {"Bucket": self.bucket, "Key": self._join_key(key), "Body": data}
        if content_type:
            params["ContentType"] = content_type
        with self._call("写入", key):
            self._client.put_object(**params)

    def create_multipart_upload(self, key: str, content_type: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": self._join_key(key)}
        if content_type:
            params["ContentType"] = content_type
        with self._call("创建分片上传", key):
            resp = self._client.create_multipart_upload(**params)
        return resp["UploadId"]

    def upload_part(self, key: str, upload_id: str, part_index: int, data: bytes) -> str:
        with self._call("上传分片", key):
            resp = self._client.upload_part(
                Bucket=self.bucket,
                Key=self._join_key(key),
                UploadId=upload_id,
                PartNumber=int(part_index) + 1,
                Body=data,
            )
        return resp["ETag"]

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Mapping[int, str]) -> None:
        ordered = [{"ETag": parts[index], "PartNumber": int(index) + 1} for index in sorted(parts)]
        with self._call("合并分片", key):
            self._client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=self._join_key(key),
                UploadId=upload_id,
                MultipartUpload={"Parts": ordered},
            )

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        with self._call("中止分片上传", key):
            self._client.abort_multipart_upload(Bucket=self.bucket, Key=self._join_key(key), UploadId=upload_id)

    def get_object(self, key: str) -> bytes:
        with self._call("读取", key):
            resp = self._client.get_object(Bucket=self.bucket, Key=self._join_key(key))
            return resp["Body"].read()

    def get_object_range(self, key: str, start: int, end: int) -> bytes:
        if end < start:
            return b""
        with self._call("读取", key):
            resp = self._client.get_object(
                Bucket=self.bucket,
                Key=self._join_key(key),
                Range=f"bytes={max(start, 0)}-{end}",
            )
            return resp["Body"].read()

    def get_object_stream(self, key: str, chunk_size: int = DEFAULT_STREAM_CHUNK) -> Iterator[bytes]:
        with self._call("读取", key):
            resp = self._client.get_object(Bucket=self.bucket, Key=self._join_key(key))
        return resp["Body"].iter_chunks(chunk_size=chunk_size)

    def object_size(self, key: str) -> int:
        with self._call("读取元数据", key):
            head = self._client.head_object(Bucket=self.bucket, Key=self._join_key(key))
        return int(head.get("ContentLength") or 0)

    def delete_object(self, key: str) -> None:
        with self._call("删除", key):
            self._client.delete_object(Bucket=self.bucket, Key=self._join_key(key))

    def delete_objects(self, keys: Iterable[str]) -> dict:
        key_list = list(keys)
        by_full_key: Dict[str, str] = {self._join_key(k): k for k in key_list}
        deleted: list[str] = []
        errors: list[dict] = []
        # 批量删除（分批防止一次过多）
        full_keys = list(by_full_key)
        for i in range(0, len(full_keys), S3_DELETE_BATCH_SIZE):
            batch = full_keys[i : i + S3_DELETE_BATCH_SIZE]
            try:
                resp = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                logger.error("S3 batch delete failed for %s keys: %s", len(batch), exc)
                errors.extend({"key": by_full_key[k], "message": str(exc)} for k in batch)
                continue
            failed = {e.get("Key"): e.get("Message") or e.get("Code") for e in resp.get("Errors", [])}
            for k in batch:
                if k in failed:
                    errors.append({"key": by_full_key[k], "message": failed[k]})
                else:
                    deleted.append(by_full_key[k])
        return {"deleted": deleted, "errors": errors}

    def presign_get(self, key: str, ttl: int, *, filename: Optional[str] = None) -> str:
        params = {"Bucket": self.bucket, "Key": self._join_key(key)}
        if filename:
            params["ResponseContentDisposition"] = f"attachment; filename*=UTF-8''{quote(filename)}"
        with self._call("生成预签名地址", key):
            return self._client.generate_presigned_url("get_object", Params=params, ExpiresIn=ttl)

    def presign_put(self, key: str, content_type: Optional[str], ttl: int) -> str:
        params = {"Bucket": self.bucket, "Key": self._join_key(key)}
        if content_type:
            params["ContentType"] = content_type
        with self._call("生成预签名地址", key):
            return self._client.generate_presigned_url("put_object", Params=params, ExpiresIn=ttl)


def build_backend(
    *,
    type: str,
    region: Optional[str] = None,
    bucket_name: Optional[str] = None,
    path_prefix: Optional[str] = None,
    local_root_path: Optional[str] = None,
    access_key_id: Optional[str] = None,
    secret_access_key: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    local_min_part_size: int = 0,
    signed_url_base: str = "/api/v1/objects/signed",
) -> StorageBackend:
    t = (type or "").upper()
    if t == "LOCAL":
        if not local_root_path:
            raise AppException("缺少本地根目录配置", HTTP_STATUS_BAD_REQUEST)
        return LocalBackend(local_root_path, min_part_size=local_min_part_size, signed_url_base=signed_url_base)
    if t == "S3":
        if not (region and bucket_name):
            raise AppException("S3 配置不完整", HTTP_STATUS_BAD_REQUEST)
        return S3Backend(
            bucket=bucket_name,
            region=region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            endpoint_url=endpoint_url,
            prefix=path_prefix,
        )
    raise AppException("不支持的存储类型", HTTP_STATUS_BAD_REQUEST)


@lru_cache
def get_storage_backend() -> StorageBackend:
    """按当前配置构建并缓存对象存储后端。"""
    settings = get_settings()
    return build_backend(
        type=settings.storage_backend,
        region=settings.s3_region,
        bucket_name=settings.s3_bucket,
        path_prefix=settings.s3_prefix,
        local_root_path=str(settings.local_storage_path),
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        endpoint_url=settings.s3_endpoint_url,
        local_min_part_size=settings.local_min_part_size,
        signed_url_base=f"{settings.api_v1_str}/objects/signed",
    )
