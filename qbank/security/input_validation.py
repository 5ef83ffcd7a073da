"""
Input validation utilities for qbank-ingest.

Provides validation and sanitization for document references, identifiers
and classification tags supplied on the command line.
"""

import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse


class InputValidationError(ValueError):
    """Raised when input validation fails."""

    pass


DOCUMENT_EXTENSIONS = [".pdf"]


def validate_uuid(value: str) -> str:
    """
    Validate UUID format.

    Args:
        value: String to validate as UUID

    Returns:
        Normalized UUID (lowercase)

    Raises:
        InputValidationError: If not a valid UUID format
    """
    if not isinstance(value, str):
        raise InputValidationError("UUID must be a string")

    # Standard UUID format: 8-4-4-4-12 hex digits
    uuid_pattern = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

    if not re.match(uuid_pattern, value.strip(), re.IGNORECASE):
        raise InputValidationError(f"Invalid UUID format: {value}")

    return value.strip().lower()


def validate_file_path(
    path: str | Path,
    allowed_extensions: Optional[list[str]] = None,
    allowed_dirs: Optional[list[Path]] = None,
    max_size_mb: int = 500,
    must_exist: bool = True,
) -> Path:
    """
    Validate and sanitize a file path.

    Checks:
    - Path resolves to a valid canonical path
    - Extension is allowed (if specified)
    - Path is within allowed directories (if specified)
    - File exists and is within size limits (if must_exist=True)

    Args:
        path: File path to validate
        allowed_extensions: List of allowed extensions (e.g., [".pdf"])
        allowed_dirs: List of allowed parent directories
        max_size_mb: Maximum file size in MB
        must_exist: Whether file must exist

    Returns:
        Resolved Path object

    Raises:
        InputValidationError: If validation fails
    """
    if not isinstance(path, (str, Path)):
        raise InputValidationError("Path must be a string or Path object")

    try:
        resolved = Path(path).resolve()
    except (OSError, ValueError) as e:
        raise InputValidationError(f"Invalid path: {e}")

    if allowed_extensions:
        if resolved.suffix.lower() not in allowed_extensions:
            raise InputValidationError(
                f"Invalid file type: {resolved.suffix}. Allowed: {allowed_extensions}"
            )

    if allowed_dirs:
        in_allowed = False
        for allowed_dir in allowed_dirs:
            try:
                resolved.relative_to(allowed_dir.resolve())
                in_allowed = True
                break
            except ValueError:
                continue

        if not in_allowed:
            raise InputValidationError(
                f"Path is outside allowed directories: {resolved}"
            )

    if must_exist:
        if not resolved.exists():
            raise InputValidationError(f"File not found: {resolved}")

        if not resolved.is_file():
            raise InputValidationError(f"Not a file: {resolved}")

        try:
            size_mb = resolved.stat().st_size / (1024 * 1024)
            if size_mb > max_size_mb:
                raise InputValidationError(
                    f"File too large: {size_mb:.1f}MB (max: {max_size_mb}MB)"
                )
        except OSError as e:
            raise InputValidationError(f"Cannot access file: {e}")

    return resolved


def validate_source_url(url: str) -> str:
    """
    Validate an http(s) document URL.

    Raises:
        InputValidationError: If the URL is not an absolute http(s) URL
    """
    if not isinstance(url, str):
        raise InputValidationError("URL must be a string")

    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        raise InputValidationError(f"Unsupported URL scheme: {parsed.scheme or '(none)'}")
    if not parsed.netloc:
        raise InputValidationError(f"URL has no host: {url}")

    return url.strip()


def validate_document_source(source: str | Path, max_size_mb: int = 500) -> str:
    """
    Validate a document reference: an http(s) URL or a local PDF path.

    Returns:
        The URL, or the resolved local path as a string
    """
    if isinstance(source, str) and source.strip().lower().startswith(("http://", "https://")):
        return validate_source_url(source)
    return str(
        validate_file_path(
            source,
            allowed_extensions=DOCUMENT_EXTENSIONS,
            max_size_mb=max_size_mb,
        )
    )


def sanitize_string(
    value: str,
    max_length: Optional[int] = None,
    allow_newlines: bool = True,
    allow_tabs: bool = True,
) -> str:
    """
    Sanitize a string by removing control characters.

    Args:
        value: String to sanitize
        max_length: Maximum allowed length (truncate if exceeded)
        allow_newlines: Whether to keep newline characters
        allow_tabs: Whether to keep tab characters

    Returns:
        Sanitized string
    """
    if not isinstance(value, str):
        return str(value)

    allowed_controls = set()
    if allow_newlines:
        allowed_controls.update({"\n", "\r"})
    if allow_tabs:
        allowed_controls.add("\t")

    result = "".join(
        c for c in value if ord(c) >= 32 or c in allowed_controls
    )

    if max_length and len(result) > max_length:
        result = result[:max_length]

    return result


def sanitize_tag(value: Optional[str], max_length: int = 100) -> Optional[str]:
    """Single-line classification tag (subject/system/category); None if blank."""
    if value is None:
        return None
    cleaned = sanitize_string(value, max_length=max_length, allow_newlines=False, allow_tabs=False)
    cleaned = " ".join(cleaned.split())
    return cleaned or None
