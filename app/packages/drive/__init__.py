"""网盘业务包：分片上传、目录树、配额与内容校验。"""

from app.packages.types import AppPackage

from .api.v1 import api_router
from .core.config import get_settings
from .core.exceptions import generic_exception_handler, http_exception_handler
from .core.logger import logger, setup_logging
from .core.responses import create_response
from .db.init_db import init_db
from .services.cleanup_task import stale_upload_sweeper

package = AppPackage(
    name="drive",
    api_router=api_router,
    get_settings=get_settings,
    setup_logging=setup_logging,
    logger=logger,
    init_db=init_db,
    create_response=create_response,
    http_exception_handler=http_exception_handler,
    generic_exception_handler=generic_exception_handler,
    start_background=stale_upload_sweeper.start,
    stop_background=stale_upload_sweeper.stop,
)

__all__ = ["package", "api_router", "get_settings"]
