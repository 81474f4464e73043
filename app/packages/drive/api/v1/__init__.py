"""API v1 汇总路由：统一挂载所有版本化的子路由。"""

from fastapi import APIRouter

from app.packages.drive.api.v1.endpoints import folders, items, objects, storage, uploads

api_router = APIRouter()
api_router.include_router(uploads.router)
api_router.include_router(folders.router)
api_router.include_router(items.router)
api_router.include_router(storage.router)
api_router.include_router(objects.router)
