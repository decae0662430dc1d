import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

OCTET_STREAM = "application/octet-stream"
TEXT_PLAIN = "text/plain; charset=utf-8"

# leading bytes -> MIME type
SIGNATURES = [
    (b"%PDF-", "application/pdf"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"MZ", "application/x-msdownload"),
    (b"\x7fELF", "application/x-executable"),
]

OFFICE_EXTENSIONS = {".xlsx", ".xls", ".docx", ".doc"}
TEXT_EXTENSIONS = {".csv", ".txt"}

_BINARY_BYTES = set(range(0x00, 0x09)) | {0x0B} | set(range(0x0E, 0x1B)) | set(range(0x1C, 0x20))


def detect_content_type(data: bytes) -> str:
    """Sniff a MIME type from the first 512 bytes of ``data``."""
    head = data[:512]
    for signature, mime in SIGNATURES:
        if head.startswith(signature):
            return mime
    if any(b in _BINARY_BYTES for b in head):
        return OCTET_STREAM
    return TEXT_PLAIN


def _base(mime: str) -> str:
    return mime.split(";")[0].strip().lower()


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    file_type: str = ""
    detected_mime: str = ""

    def fail(self, message: str) -> None:
        self.valid = False
        self.errors.append(message)

    def error_message(self) -> str:
        if self.valid:
            return ""
        return "; ".join(self.errors)


class FileValidator:
    """Extension, size and content-type checks for submitted files."""

    def __init__(
        self,
        max_size: int,
        allowed_extensions: Optional[List[str]] = None,
        allowed_mime_types: Optional[List[str]] = None,
    ):
        self.max_size = max_size
        self.allowed_extensions = [e.lower() for e in (allowed_extensions or [])]
        self.allowed_mime_types = allowed_mime_types or []

    def validate(self, file_name: str, data: bytes) -> ValidationResult:
        result = ValidationResult()

        if len(data) > self.max_size:
            result.fail(f"file size {len(data)} exceeds maximum {self.max_size} bytes")

        ext = Path(file_name).suffix.lower()
        result.file_type = ext
        if not self.is_allowed_extension(ext):
            result.fail(f"file extension '{ext}' not allowed")

        detected = detect_content_type(data)
        result.detected_mime = detected
        if not self.is_allowed_mime_type(detected):
            result.fail(f"detected MIME type '{detected}' not allowed")

        if not self.mime_matches_extension(ext, detected):
            result.fail(f"file extension '{ext}' does not match detected content type '{detected}'")

        return result

    def is_allowed_extension(self, ext: str) -> bool:
        if not self.allowed_extensions:
            return True
        return ext.lower() in self.allowed_extensions

    def is_allowed_mime_type(self, mime: str) -> bool:
        if not self.allowed_mime_types:
            return True

        base = _base(mime)
        for allowed in self.allowed_mime_types:
            allowed_base = _base(allowed)
            if base == allowed_base:
                return True
            # wildcards like "application/*"
            if allowed_base.endswith("/*") and base.startswith(allowed_base[:-1]):
                return True
        return False

    def mime_matches_extension(self, ext: str, mime: str) -> bool:
        expected, _ = mimetypes.guess_type(f"file{ext}")
        if not expected:
            # unknown extension, nothing to compare against
            return True

        base = _base(mime)
        if base == OCTET_STREAM:
            return True
        if ext == ".pdf":
            return base == "application/pdf"
        if ext in OFFICE_EXTENSIONS:
            return base.startswith("application/vnd.") or base == "application/zip"
        if ext in TEXT_EXTENSIONS:
            return base in ("text/plain", "text/csv")
        return base == _base(expected)
