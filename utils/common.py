"""Common utilities: file validation, hashing, identifiers and path management"""
import hashlib
import math
import re
import os
import uuid
from pathlib import Path
import logging

# ⚠️ DO NOT import settings here - causes circular import with config.py
# Settings is imported lazily inside functions that need it

def _get_logger():
    """Lazy logger initialization to avoid circular import"""
    from config import settings
    return logging.getLogger(settings.LOGGER_NAME)


# ============= Path Management =============

def get_project_root() -> str:
    """Returns the absolute path to the project's root directory."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def get_log_file_path() -> str:
    """Returns the log file path under <project>/log (directory created by setup_logging)."""
    return os.path.join(get_project_root(), 'log', 'pagecite.log')


# ============= Upload Validation =============

def validate_upload(filename: str, content: bytes) -> None:
    """Validate name, type, size and PDF magic number. Raises ValidationError."""
    from config import settings  # Lazy import
    from core.exceptions import ValidationError

    if not filename:
        raise ValidationError("No filename provided")

    extension = get_file_extension(filename)
    if extension not in settings.DOCUMENT_EXTENSIONS:
        raise ValidationError(
            f"Unsupported file type. Allowed: {', '.join(settings.DOCUMENT_EXTENSIONS)}"
        )

    if not content:
        raise ValidationError("Uploaded file is empty")

    if len(content) > settings.MAX_FILE_SIZE:
        max_mb = settings.MAX_FILE_SIZE // 1024 // 1024
        raise ValidationError(f"File too large. Max size: {max_mb}MB")

    if extension == 'pdf' and not content[:16].startswith(b'%PDF'):
        raise ValidationError("Invalid PDF file")

    _get_logger().info("Successfully validated upload %s", filename)


# ============= Hashing / Identifiers =============

def get_content_hash(text: str) -> str:
    """SHA256 of chunk text, used as the global dedup key."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


_UUID4_PATTERN = re.compile(
    r'[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}',
    re.IGNORECASE,
)


def is_valid_session_id(session_id: str) -> bool:
    """True only for UUID version 4 strings."""
    return isinstance(session_id, str) and bool(_UUID4_PATTERN.fullmatch(session_id))


def new_session_id() -> str:
    return str(uuid.uuid4())


def sanitize_filename(filename: str) -> str:
    """Remove dangerous characters from filename."""
    safe_name = re.sub(r'[^\w\-_\.]', '_', filename)
    safe_name = os.path.basename(safe_name)
    return safe_name[:100]


def get_file_extension(filename: str) -> str:
    """Extracts and normalizes the file extension from a filename."""
    return Path(filename).suffix[1:].lower()


# ============= Text =============

def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 characters per token."""
    return math.ceil(len(text or "") / 4)


def make_preview(text: str, length: int) -> str:
    if not text:
        return "No preview available"
    return text[:length] + "..." if len(text) > length else text
