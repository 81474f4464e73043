"""对象直链路由：校验短期签名后读写本地存储中的对象。"""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from app.packages.drive.core.constants import DEFAULT_MIME_TYPE
from app.packages.drive.core.responses import create_response
from app.packages.drive.core.security import decode_and_verify_token
from app.packages.drive.services.content_classifier import mime_type_from_extension
from app.packages.drive.services.storage_backends import get_storage_backend

router = APIRouter(prefix="/objects", tags=["objects"])


def _verify(token: str, purpose: str) -> dict:
    payload = decode_and_verify_token(token, verify_exp=True)
    if not payload or payload.get("purpose") != purpose:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="签名无效或已过期")
    if not isinstance(payload.get("key"), str) or not payload["key"]:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="签名载荷不完整")
    return payload


@router.get("/signed")
def get_signed_object(t: str = Query(..., alias="t", description="短期签名 token")):
    payload = _verify(t, "object_get")
    content = get_storage_backend().get_object(payload["key"])
    filename = payload.get("filename")
    headers = {}
    if filename:
        headers["Content-Disposition"] = f"attachment; filename*=UTF-8''{quote(filename)}"
        media_type = mime_type_from_extension(filename)
    else:
        media_type = DEFAULT_MIME_TYPE
    return Response(content=content, media_type=media_type, headers=headers)


@router.put("/signed")
async def put_signed_object(request: Request, t: str = Query(..., alias="t", description="短期签名 token")):
    payload = _verify(t, "object_put")
    body = await request.body()
    await run_in_threadpool(get_storage_backend().put_object, payload["key"], body, payload.get("content_type"))
    return create_response("上传成功", {"key": payload["key"], "size": len(body)})
