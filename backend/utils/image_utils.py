import re
import uuid

from config import settings

ALLOWED_IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}

_MAGIC_SIGNATURES: list[tuple[bytes, str, str]] = [
    (b"\xff\xd8\xff", "image/jpeg", ".jpg"),
    (b"\x89PNG\r\n\x1a\n", "image/png", ".png"),
]
_SAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9_-]")


def max_image_bytes() -> int:
    return max(int(settings.MAX_IMAGE_SIZE_MB), 1) * 1024 * 1024


def sniff_image_format(image_bytes: bytes) -> tuple[str, str] | None:
    head = image_bytes[:16]
    for magic, mime, ext in _MAGIC_SIGNATURES:
        if head.startswith(magic):
            return mime, ext
    if len(head) >= 12 and head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image/webp", ".webp"
    return None


def validate_photo(image_bytes: bytes, content_type: str | None = None) -> tuple[str, str]:
    """Return (mime, extension) for a product photo or raise ValueError."""
    if not image_bytes:
        raise ValueError("Photo is empty.")
    if len(image_bytes) > max_image_bytes():
        raise ValueError(f"Photo too large. Maximum size is {settings.MAX_IMAGE_SIZE_MB}MB.")

    sniffed = sniff_image_format(image_bytes)
    if not sniffed:
        raise ValueError("Unsupported photo format. Allowed formats: jpg, png, webp.")
    mime, ext = sniffed

    if content_type:
        normalized = content_type.split(";")[0].strip().lower()
        if normalized == "image/jpg":
            normalized = "image/jpeg"
        if normalized not in ALLOWED_IMAGE_MIME_TYPES or normalized != mime:
            raise ValueError("Photo content type does not match the uploaded file.")
    return mime, ext


def store_photo(image_bytes: bytes, user_id: str, extension: str) -> str:
    """Write the photo under the user's upload folder and return its relative URL."""
    folder = _SAFE_SEGMENT_RE.sub("_", user_id)[:64] or "anonymous"
    target_dir = settings.UPLOAD_DIR / folder
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{uuid.uuid4().hex}{extension}"
    (target_dir / filename).write_bytes(image_bytes)
    return f"/uploads/{folder}/{filename}"
