"""配置模块：负责加载和缓存基于环境变量的应用设置。"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# 探测项目根目录并加载环境文件，支持通过 ENV_FILE/ENVIRONMENT 定制优先级。
def _detect_base_dir() -> Path:
    """向上遍历目录树，寻找包含 `app` 目录的项目根路径。"""
    current = Path(__file__).resolve()
    for candidate in current.parents:
        if (candidate / "app").is_dir():
            return candidate
    return current.parent


BASE_DIR = _detect_base_dir()


def _as_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_environment() -> None:
    env_file_override = os.getenv("ENV_FILE")
    if env_file_override:
        candidate = BASE_DIR / env_file_override
        if candidate.exists():
            load_dotenv(candidate, override=True, encoding="utf-8")
        return

    base_env = BASE_DIR / ".env"
    if base_env.exists():
        load_dotenv(base_env, override=False, encoding="utf-8")

    environment = os.getenv("ENVIRONMENT")
    if environment is None and _as_bool(os.getenv("DEBUG")):
        environment = "development"

    if environment:
        candidate_name = environment if environment.startswith(".env") else f".env.{environment}"
        candidate_path = BASE_DIR / candidate_name
        if candidate_path.exists():
            load_dotenv(candidate_path, override=True, encoding="utf-8")


_load_environment()


class Settings(BaseSettings):
    """
    封装网盘服务运行所需的所有配置项，每个字段都可以通过环境变量重写。
    存储后端、配额默认值与上传会话超时等均集中在此，避免在业务代码中散落魔法数字。
    """

    project_name: str = Field(default="Cloud Drive API", alias="PROJECT_NAME")
    api_v1_str: str = Field(default="/api/v1", alias="API_V1_STR")
    debug: bool = Field(default=False, alias="DEBUG")

    # 数据库：优先使用完整连接串，未配置时按主机/端口拼接 PostgreSQL 地址
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    database_host: str = Field(default="localhost", alias="DATABASE_HOST")
    database_port: int = Field(default=5432, alias="DATABASE_PORT")
    database_user: str = Field(default="postgres", alias="DATABASE_USER")
    database_password: str = Field(default="postgres", alias="DATABASE_PASSWORD")
    database_name: str = Field(default="cloud_drive", alias="DATABASE_NAME")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # 外部身份提供方签发的访问令牌
    identity_jwt_secret: str = Field(default="changeme", alias="IDENTITY_JWT_SECRET")
    identity_jwt_algorithm: str = Field(default="HS256", alias="IDENTITY_JWT_ALGORITHM")
    identity_jwt_audience: Optional[str] = Field(default=None, alias="IDENTITY_JWT_AUDIENCE")

    # 预签名直链（本地存储）使用的签名密钥
    signing_secret_key: str = Field(default="changeme-signing", alias="SIGNING_SECRET_KEY")
    signing_algorithm: str = Field(default="HS256", alias="SIGNING_ALGORITHM")

    # 对象存储
    storage_backend: str = Field(default="LOCAL", alias="STORAGE_BACKEND")
    local_storage_root: str = Field(default="storage", alias="LOCAL_STORAGE_ROOT")
    local_min_part_size: int = Field(default=0, alias="LOCAL_MIN_PART_SIZE")
    s3_bucket: Optional[str] = Field(default=None, alias="S3_BUCKET")
    s3_region: Optional[str] = Field(default=None, alias="S3_REGION")
    s3_access_key_id: Optional[str] = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[str] = Field(default=None, alias="S3_SECRET_ACCESS_KEY")
    s3_endpoint_url: Optional[str] = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_prefix: Optional[str] = Field(default=None, alias="S3_PREFIX")
    storage_key_salt: str = Field(default="cloud-drive", alias="STORAGE_KEY_SALT")
    presign_ttl_seconds: int = Field(default=3600, alias="PRESIGN_TTL_SECONDS")

    # 配额与上传
    default_storage_limit: int = Field(default=16106127360, alias="DEFAULT_STORAGE_LIMIT")
    upload_session_timeout_seconds: int = Field(default=1800, alias="UPLOAD_SESSION_TIMEOUT_SECONDS")
    # 合并中（completing）的会话超过该时长视为进程中断，由清理任务补偿
    upload_completing_timeout_seconds: int = Field(default=3600, alias="UPLOAD_COMPLETING_TIMEOUT_SECONDS")
    upload_sweep_interval_seconds: int = Field(default=900, alias="UPLOAD_SWEEP_INTERVAL_SECONDS")
    classifier_sample_bytes: int = Field(default=8192, alias="CLASSIFIER_SAMPLE_BYTES")
    stream_threshold_bytes: int = Field(default=10 * 1024 * 1024, alias="STREAM_THRESHOLD_BYTES")
    max_tree_depth: int = Field(default=256, alias="MAX_TREE_DEPTH")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="app.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    app_port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    model_config = SettingsConfigDict(extra='ignore')

    @property
    def sql_database_url(self) -> str:
        """返回数据库连接串，未显式配置时拼接 PostgreSQL 地址。"""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def log_directory(self) -> Path:
        """返回日志目录的绝对路径，支持相对路径配置。"""
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        """组合日志目录与文件名，得到完整的日志文件路径。"""
        return self.log_directory / self.log_file_name

    @property
    def local_storage_path(self) -> Path:
        """本地对象存储根目录的绝对路径。"""
        return self._resolve_path(self.local_storage_root)

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量造成性能浪费。"""
    return Settings()
