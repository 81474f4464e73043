"""内容识别与校验：根据文件头/扩展名判断 MIME 类型，识别伪装类型与恶意内容。

模块内均为纯函数，只读取传入的字节样本，不做任何 I/O。
识别顺序：
1. 文件头（magic bytes）匹配，命中即为高置信度；
2. 扩展名映射，中置信度；
3. 都无法判断时返回 ``application/octet-stream``，低置信度。
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, Optional

from app.packages.drive.core.constants import DEFAULT_MIME_TYPE, MALICIOUS_SCAN_BYTES
from app.packages.drive.core.enums import ConfidenceEnum, DetectionMethodEnum


@dataclass(frozen=True)
class Classification:
    mime_type: str
    confidence: str
    method: str


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[str] = None
    detected_type: Optional[str] = None

    @classmethod
    def accepted(cls) -> "ValidationResult":
        return cls(ok=True)

    @classmethod
    def rejected(cls, reason: str, detected_type: Optional[str] = None) -> "ValidationResult":
        return cls(ok=False, reason=reason, detected_type=detected_type)


# ------------------------------------------
# 扩展名映射
# ------------------------------------------

EXTENSION_MIME_TYPES: dict[str, str] = {
    # 文档
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".odt": "application/vnd.oasis.opendocument.text",
    ".ods": "application/vnd.oasis.opendocument.spreadsheet",
    ".odp": "application/vnd.oasis.opendocument.presentation",
    ".rtf": "application/rtf",
    ".epub": "application/epub+zip",
    # 文本与数据
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".json": "application/json",
    ".xml": "application/xml",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".ts": "application/typescript",
    ".md": "text/markdown",
    ".yaml": "application/x-yaml",
    ".yml": "application/x-yaml",
    ".toml": "application/toml",
    ".ini": "text/plain",
    ".log": "text/plain",
    ".conf": "text/plain",
    ".cfg": "text/plain",
    ".sql": "application/sql",
    ".sh": "application/x-sh",
    # 压缩包
    ".zip": "application/zip",
    ".rar": "application/x-rar-compressed",
    ".7z": "application/x-7z-compressed",
    ".tar": "application/x-tar",
    ".gz": "application/gzip",
    ".tgz": "application/gzip",
    ".bz2": "application/x-bzip2",
    ".xz": "application/x-xz",
    # 图片
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".tiff": "image/tiff",
    ".tif": "image/tiff",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".avif": "image/avif",
    # 设计
    ".psd": "image/vnd.adobe.photoshop",
    ".ai": "application/postscript",
    ".eps": "application/postscript",
    ".sketch": "application/x-sketch",
    ".fig": "application/x-figma",
    ".xd": "application/vnd.adobe.xd",
    # 视频
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".m4v": "video/x-m4v",
    ".3gp": "video/3gpp",
    ".ogv": "video/ogg",
    # 音频
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".ogg": "audio/ogg",
    ".wma": "audio/x-ms-wma",
    ".m4a": "audio/mp4",
    ".opus": "audio/opus",
    # 字体
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".eot": "application/vnd.ms-fontobject",
    # 3D / CAD
    ".obj": "model/obj",
    ".dae": "model/vnd.collada+xml",
    ".3ds": "application/x-3ds",
    ".blend": "application/x-blender",
    ".dwg": "image/vnd.dwg",
    ".dxf": "image/vnd.dxf",
    # 数据库
    ".db": "application/x-sqlite3",
    ".sqlite": "application/x-sqlite3",
    ".sqlite3": "application/x-sqlite3",
    ".mdb": "application/x-msaccess",
    # 磁盘镜像
    ".iso": "application/x-iso9660-image",
    ".dmg": "application/x-apple-diskimage",
    # 安装包与可执行文件
    ".deb": "application/vnd.debian.binary-package",
    ".rpm": "application/x-rpm",
    ".apk": "application/vnd.android.package-archive",
    ".jar": "application/java-archive",
    ".msi": "application/x-msi",
    ".exe": "application/x-msdownload",
    ".dll": "application/x-msdownload",
    # 源代码
    ".py": "text/x-python",
    ".java": "text/x-java-source",
    ".cpp": "text/x-c++src",
    ".c": "text/x-csrc",
    ".h": "text/x-chdr",
    ".php": "application/x-httpd-php",
    ".rb": "application/x-ruby",
    ".go": "text/x-go",
    ".rs": "text/x-rust",
    ".swift": "text/x-swift",
    ".kt": "text/x-kotlin",
    ".scala": "text/x-scala",
}

# 客户端常见的非标准写法
MIME_ALIASES: dict[str, str] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "image/vnd.microsoft.icon": "image/x-icon",
    "image/x-ms-bmp": "image/bmp",
    "audio/x-wav": "audio/wav",
    "audio/wave": "audio/wav",
    "audio/vnd.wave": "audio/wav",
    "audio/mp3": "audio/mpeg",
    "audio/x-mpeg": "audio/mpeg",
    "audio/x-flac": "audio/flac",
    "audio/x-m4a": "audio/mp4",
    "audio/m4a": "audio/mp4",
    "text/xml": "application/xml",
    "text/javascript": "application/javascript",
    "application/x-javascript": "application/javascript",
    "text/x-markdown": "text/markdown",
    "text/yaml": "application/x-yaml",
    "application/yaml": "application/x-yaml",
    "application/x-zip-compressed": "application/zip",
    "application/x-gzip": "application/gzip",
    "application/x-rar": "application/x-rar-compressed",
    "application/vnd.rar": "application/x-rar-compressed",
    "application/x-pdf": "application/pdf",
    "application/vnd.sqlite3": "application/x-sqlite3",
    "application/x-dosexec": "application/x-msdownload",
    "application/x-msdos-program": "application/x-msdownload",
    "application/vnd.microsoft.portable-executable": "application/x-msdownload",
    "application/x-shellscript": "application/x-sh",
}

EXECUTABLE_TYPES = frozenset(
    {
        "application/x-msdownload",
        "application/x-executable",
        "application/x-mach-binary",
        "application/x-msi",
    }
)

# 同一容器格式的不同具体类型，文件头只能识别到容器层面
_COMPATIBLE_FAMILIES: tuple[frozenset[str], ...] = (
    frozenset(
        {
            "application/zip",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "application/vnd.openxmlformats-officedocument.presentationml.presentation",
            "application/vnd.oasis.opendocument.text",
            "application/vnd.oasis.opendocument.spreadsheet",
            "application/vnd.oasis.opendocument.presentation",
            "application/epub+zip",
            "application/vnd.android.package-archive",
            "application/java-archive",
            "application/x-sketch",
            "application/vnd.adobe.xd",
        }
    ),
    frozenset(
        {
            "application/msword",
            "application/vnd.ms-excel",
            "application/vnd.ms-powerpoint",
            "application/x-msi",
            "application/x-msaccess",
        }
    ),
    frozenset({"video/mp4", "video/quicktime", "video/x-m4v", "video/3gpp", "audio/mp4"}),
    frozenset({"image/heic", "image/heif", "image/avif"}),
    frozenset({"video/webm", "video/x-matroska", "audio/webm"}),
    frozenset({"audio/ogg", "video/ogg", "audio/opus"}),
    frozenset({"application/postscript", "application/pdf"}),
)

TEXT_LIKE_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/javascript",
        "application/typescript",
        "application/sql",
        "application/x-yaml",
        "application/toml",
        "application/x-sh",
        "application/x-httpd-php",
        "application/x-ruby",
        "image/svg+xml",
    }
)


def file_extension(filename: str) -> str:
    """返回小写扩展名（含点），如 ``.pdf``；无扩展名时返回空字符串。"""
    return os.path.splitext(os.path.basename(filename or ""))[1].lower()


def mime_type_from_extension(filename: str) -> str:
    return EXTENSION_MIME_TYPES.get(file_extension(filename), DEFAULT_MIME_TYPE)


def file_type_label(filename: str) -> str:
    """扩展名的大写形式（不含点），如 ``PDF``。"""
    return file_extension(filename).lstrip(".").upper()


def file_category(filename: str) -> str:
    """用于界面展示的粗粒度分类。"""
    mime = mime_type_from_extension(filename)
    for prefix, label in (
        ("image/", "Image"),
        ("video/", "Video"),
        ("audio/", "Audio"),
        ("text/", "Text"),
        ("font/", "Font"),
        ("model/", "3D Model"),
    ):
        if mime.startswith(prefix):
            return label
    if "pdf" in mime:
        return "PDF"
    if "spreadsheet" in mime or "excel" in mime:
        return "Spreadsheet"
    if "presentation" in mime or "powerpoint" in mime:
        return "Presentation"
    if "word" in mime or "document" in mime:
        return "Document"
    if any(token in mime for token in ("zip", "rar", "7z", "tar", "gzip", "bzip", "xz")):
        return "Archive"
    if any(token in mime for token in ("javascript", "typescript", "python", "java", "ruby", "php", "sh")):
        return "Code"
    if any(token in mime for token in ("photoshop", "sketch", "figma", "adobe")):
        return "Design"
    if "sqlite" in mime or "msaccess" in mime:
        return "Database"
    if mime in EXECUTABLE_TYPES or "package" in mime:
        return "Executable"
    if "iso" in mime or "diskimage" in mime:
        return "Disk Image"
    return "File"


def normalize_mime_type(value: Optional[str]) -> Optional[str]:
    """去掉参数（如 ``; charset=utf-8``）、统一小写并映射常见别名。"""
    if not value:
        return None
    base = value.split(";", 1)[0].strip().lower()
    if not base:
        return None
    return MIME_ALIASES.get(base, base)


def is_compatible(declared: str, detected: str) -> bool:
    if declared == detected:
        return True
    return any(declared in family and detected in family for family in _COMPATIBLE_FAMILIES)


def is_text_like(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in TEXT_LIKE_TYPES


# ------------------------------------------
# 文件头识别
# ------------------------------------------

_FTYP_BRANDS: dict[bytes, str] = {
    b"qt  ": "video/quicktime",
    b"M4A ": "audio/mp4",
    b"M4B ": "audio/mp4",
    b"M4V ": "video/x-m4v",
    b"M4VH": "video/x-m4v",
    b"heic": "image/heic",
    b"heix": "image/heic",
    b"hevc": "image/heic",
    b"heim": "image/heic",
    b"heis": "image/heic",
    b"mif1": "image/heif",
    b"msf1": "image/heif",
    b"avif": "image/avif",
    b"avis": "image/avif",
    b"3gp4": "video/3gpp",
    b"3gp5": "video/3gpp",
    b"3gp6": "video/3gpp",
    b"3g2a": "video/3gpp",
}

_RIFF_FORMS: dict[bytes, str] = {
    b"WEBP": "image/webp",
    b"AVI ": "video/x-msvideo",
    b"WAVE": "audio/wav",
}

# (MIME, 偏移, 签名)；按顺序匹配，较长/较具体的签名排在前面
_SIGNATURES: tuple[tuple[str, int, bytes], ...] = (
    ("image/png", 0, b"\x89PNG\r\n\x1a\n"),
    ("image/jpeg", 0, b"\xff\xd8\xff"),
    ("image/gif", 0, b"GIF87a"),
    ("image/gif", 0, b"GIF89a"),
    ("image/tiff", 0, b"II*\x00"),
    ("image/tiff", 0, b"MM\x00*"),
    ("image/x-icon", 0, b"\x00\x00\x01\x00"),
    ("image/vnd.adobe.photoshop", 0, b"8BPS"),
    ("application/pdf", 0, b"%PDF-"),
    ("application/postscript", 0, b"%!PS"),
    ("application/rtf", 0, b"{\\rtf"),
    ("application/msword", 0, b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"),
    ("application/zip", 0, b"PK\x03\x04"),
    ("application/zip", 0, b"PK\x05\x06"),
    ("application/x-rar-compressed", 0, b"Rar!\x1a\x07"),
    ("application/x-7z-compressed", 0, b"7z\xbc\xaf\x27\x1c"),
    ("application/x-xz", 0, b"\xfd7zXZ\x00"),
    ("application/gzip", 0, b"\x1f\x8b"),
    ("application/x-tar", 257, b"ustar"),
    ("audio/flac", 0, b"fLaC"),
    ("audio/ogg", 0, b"OggS"),
    ("audio/mpeg", 0, b"ID3"),
    ("font/woff", 0, b"wOFF"),
    ("font/woff2", 0, b"wOF2"),
    ("application/x-sqlite3", 0, b"SQLite format 3\x00"),
    ("application/vnd.debian.binary-package", 0, b"!<arch>\ndebian"),
    ("application/x-rpm", 0, b"\xed\xab\xee\xdb"),
    ("application/x-executable", 0, b"\x7fELF"),
    ("application/x-mach-binary", 0, b"\xca\xfe\xba\xbe"),
    ("application/x-mach-binary", 0, b"\xfe\xed\xfa\xce"),
    ("application/x-mach-binary", 0, b"\xfe\xed\xfa\xcf"),
    ("application/x-mach-binary", 0, b"\xce\xfa\xed\xfe"),
    ("application/x-mach-binary", 0, b"\xcf\xfa\xed\xfe"),
    ("application/x-msdownload", 0, b"MZ"),
    ("application/x-iso9660-image", 32769, b"CD001"),
)


def _detect_riff(buffer: bytes) -> Optional[str]:
    if len(buffer) >= 12 and buffer[:4] == b"RIFF":
        return _RIFF_FORMS.get(buffer[8:12])
    return None


def _detect_ftyp(buffer: bytes) -> Optional[str]:
    if len(buffer) >= 12 and buffer[4:8] == b"ftyp":
        return _FTYP_BRANDS.get(buffer[8:12], "video/mp4")
    return None


def _detect_ebml(buffer: bytes) -> Optional[str]:
    if buffer[:4] != b"\x1a\x45\xdf\xa3":
        return None
    header = buffer[:64]
    if b"matroska" in header:
        return "video/x-matroska"
    return "video/webm"


def _detect_mpeg_audio(buffer: bytes) -> Optional[str]:
    if len(buffer) < 2 or buffer[0] != 0xFF:
        return None
    # ADTS 帧头：12 位同步字 + layer 00
    if buffer[1] & 0xF6 == 0xF0:
        return "audio/aac"
    # MPEG 音频帧同步：高 11 位全为 1
    if buffer[1] & 0xE0 == 0xE0:
        return "audio/mpeg"
    return None


# 以下几种签名过短，额外检查后续字节，避免普通文本被误判
def _detect_short_signatures(buffer: bytes) -> Optional[str]:
    if buffer[:2] == b"BM" and len(buffer) >= 10 and buffer[6:10] == b"\x00\x00\x00\x00":
        return "image/bmp"
    if buffer[:3] == b"BZh" and buffer[3:4].isdigit():
        return "application/x-bzip2"
    if buffer[:4] == b"OTTO" and buffer[4:5] == b"\x00":
        return "font/otf"
    return None


_STRUCTURED_DETECTORS: tuple[Callable[[bytes], Optional[str]], ...] = (
    _detect_riff,
    _detect_ftyp,
    _detect_ebml,
    _detect_short_signatures,
)


def detect_magic_type(buffer: bytes) -> Optional[str]:
    """仅根据文件头识别类型，无法识别时返回 ``None``。"""
    if not buffer:
        return None
    for detector in _STRUCTURED_DETECTORS:
        detected = detector(buffer)
        if detected:
            return detected
    for mime_type, offset, signature in _SIGNATURES:
        if buffer[offset:offset + len(signature)] == signature:
            return mime_type
    return _detect_mpeg_audio(buffer)


# 能够从文件头识别出的类型（ISO 的签名超出采样范围，不作要求）
SIGNATURE_TYPES = frozenset(
    {mime for mime, offset, _ in _SIGNATURES if offset < 4096}
    | set(_FTYP_BRANDS.values())
    | set(_RIFF_FORMS.values())
    | {
        "video/mp4",
        "video/webm",
        "video/x-matroska",
        "audio/aac",
        "image/bmp",
        "application/x-bzip2",
        "font/otf",
    }
)


def classify(buffer: bytes, declared_name: str) -> Classification:
    """识别内容类型：文件头优先，其次扩展名，最后兜底为 ``application/octet-stream``。"""
    magic = detect_magic_type(buffer or b"")
    if magic:
        return Classification(magic, ConfidenceEnum.HIGH.value, DetectionMethodEnum.MAGIC_BYTES.value)
    by_extension = mime_type_from_extension(declared_name)
    if by_extension != DEFAULT_MIME_TYPE:
        return Classification(by_extension, ConfidenceEnum.MEDIUM.value, DetectionMethodEnum.EXTENSION.value)
    return Classification(DEFAULT_MIME_TYPE, ConfidenceEnum.LOW.value, DetectionMethodEnum.FALLBACK.value)


# ------------------------------------------
# 恶意特征
# ------------------------------------------

_SVG_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<script",
        r"javascript:",
        r"\bon[a-z]+\s*=",
        r"<iframe",
        r"<object",
        r"<embed",
        r"<link[^>]*javascript",
        r"<style[^>]*expression",
        r"xlink:href\s*=\s*[\"']?\s*javascript",
    )
)

_MARKUP_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<script",
        r"javascript:",
        r"vbscript:",
        r"\bon[a-z]+\s*=",
        r"<iframe",
        r"<object",
        r"<embed",
        r"data:(?:text/html|text/javascript|application/javascript)[^,]*;base64",
    )
)

_SHELL_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE | re.MULTILINE)
    for p in (
        r"^#!.*/bin/(?:env\s+)?(?:bash|sh|zsh|fish)\b",
        r"rm\s+-rf\s+[/*]",
        r"(?:curl|wget)\b[^\n|]*\|\s*(?:sudo\s+)?(?:bash|sh)\b",
        r"\beval\s*\(",
        r"\bexec\s*\(",
    )
)

_COMMAND_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"powershell",
        r"cmd\.exe",
        r"\bsystem\s*\(",
        r"\bpassthru\s*\(",
        r"\bshell_exec\s*\(",
        r"\bbase64_decode\s*\(",
        r"__import__\s*\(\s*[\"']os[\"']\s*\)",
        r"\bsubprocess\.",
    )
)

_EXECUTABLE_HEADERS: tuple[bytes, ...] = (
    b"MZ",
    b"\x7fELF",
    b"\xca\xfe\xba\xbe",
    b"\xfe\xed\xfa\xce",
    b"\xfe\xed\xfa\xcf",
    b"\xce\xfa\xed\xfe",
    b"\xcf\xfa\xed\xfe",
)

# 文本中出现即可疑的较长签名（"MZ" 过短，只在开头检查）
_EMBEDDED_EXECUTABLE_HEADERS = _EXECUTABLE_HEADERS[1:] + (b"This program cannot be run in DOS mode",)

_MARKUP_TYPES = frozenset({"text/html", "application/xml", "application/xhtml+xml"})
_SHELL_SCAN_TYPES = frozenset({"application/x-sh"})


def detect_malicious_patterns(buffer: bytes, mime_type: str) -> Optional[str]:
    """扫描样本头部的恶意特征，命中时返回原因描述，否则返回 ``None``。"""
    head = (buffer or b"")[:MALICIOUS_SCAN_BYTES]
    if not head:
        return None
    text = head.decode("utf-8", errors="ignore")

    if mime_type == "image/svg+xml" and any(p.search(text) for p in _SVG_PATTERNS):
        return "SVG 中包含脚本或外部对象"
    if mime_type in _MARKUP_TYPES and any(p.search(text) for p in _MARKUP_PATTERNS):
        return "标记文档中包含脚本注入特征"

    if mime_type not in EXECUTABLE_TYPES and head.startswith(_EXECUTABLE_HEADERS):
        return "文件以可执行程序头开头"

    if is_text_like(mime_type):
        if any(signature in head for signature in _EMBEDDED_EXECUTABLE_HEADERS):
            return "文本内容中嵌入了可执行程序头"
        if (mime_type.startswith("text/") or mime_type in _SHELL_SCAN_TYPES) and any(
            p.search(text) for p in _SHELL_PATTERNS
        ):
            return "文本内容中包含 shell 命令特征"
        if any(p.search(text) for p in _COMMAND_PATTERNS):
            return "文本内容中包含可疑的系统命令调用"
    return None


def validate(buffer: bytes, declared_mime_type: Optional[str], declared_name: str) -> ValidationResult:
    """交叉校验声明类型、文件头与扩展名，并进行恶意特征扫描。"""
    buffer = buffer or b""
    extension_type = mime_type_from_extension(declared_name)
    declared = normalize_mime_type(declared_mime_type) or extension_type
    result = classify(buffer, declared_name)

    if result.confidence == ConfidenceEnum.HIGH.value:
        if not is_compatible(declared, result.mime_type):
            return ValidationResult.rejected(
                f"文件内容与声明类型不符：声明 {declared}，实际检测为 {result.mime_type}（文件头）",
                result.mime_type,
            )
    else:
        if extension_type != DEFAULT_MIME_TYPE and not is_compatible(declared, extension_type):
            return ValidationResult.rejected(
                f"声明类型 {declared} 与扩展名对应的类型 {extension_type} 不一致",
                extension_type,
            )
        if buffer and declared in SIGNATURE_TYPES:
            return ValidationResult.rejected(
                f"声明类型 {declared} 的文件缺少对应的文件头",
                result.mime_type,
            )

    reason = detect_malicious_patterns(buffer, declared)
    if reason:
        return ValidationResult.rejected(reason, result.mime_type)
    return ValidationResult.accepted()
