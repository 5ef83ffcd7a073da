"""
Security utilities for qbank-ingest.

Provides input validation and sanitization for command line inputs.
"""

from qbank.security.input_validation import (
    validate_uuid,
    validate_file_path,
    validate_source_url,
    validate_document_source,
    sanitize_string,
    sanitize_tag,
    InputValidationError,
)

__all__ = [
    "validate_uuid",
    "validate_file_path",
    "validate_source_url",
    "validate_document_source",
    "sanitize_string",
    "sanitize_tag",
    "InputValidationError",
]
