"""常量定义：集中维护 HTTP 状态码与网盘业务的固定取值。"""

HTTP_STATUS_OK = 200
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_NOT_FOUND = 404
HTTP_STATUS_CONFLICT = 409
HTTP_STATUS_PAYLOAD_TOO_LARGE = 413
HTTP_STATUS_UNPROCESSABLE_ENTITY = 422
HTTP_STATUS_INTERNAL_SERVER_ERROR = 500
HTTP_STATUS_BAD_GATEWAY = 502

ACCESS_TOKEN_TYPE = "bearer"

# 对象存储键的前缀与随机段长度（字节数，十六进制后为两倍长度）
STORAGE_KEY_PREFIX = "files"
STORAGE_KEY_OWNER_HASH_LENGTH = 16
STORAGE_KEY_RANDOM_BYTES = 32

# S3 的分片上限与非末尾分片的最小尺寸
S3_MAX_PARTS = 10000
S3_MIN_PART_SIZE = 5 * 1024 * 1024
S3_DELETE_BATCH_SIZE = 1000

# 恶意特征扫描只检查样本头部
MALICIOUS_SCAN_BYTES = 2048

DEFAULT_MIME_TYPE = "application/octet-stream"
