"""
Boundary checks for VEX inputs.

Length limits and a character blacklist applied to every user-supplied
string before it reaches document construction or the vexctl process.
"""

import re

from .errors import VEXValidationError


MAX_STRING_LENGTH = 1000
MAX_AUTHOR_LENGTH = 200
MAX_ID_LENGTH = 500
MAX_VULNERABILITY_LENGTH = 50
MAX_MERGE_DOCUMENTS = 20
MIN_MERGE_DOCUMENTS = 2

DANGEROUS_CHARS = re.compile(r"""[;&|`$(){}\[\]<>'"\\]""")


def validate_required(name: str, value: str) -> None:
    if not value:
        raise VEXValidationError(f"{name} is required")


def validate_string_length(name: str, value: str, max_length: int) -> None:
    """Empty values pass; required-ness is checked separately."""
    if value and len(value) > max_length:
        raise VEXValidationError(
            f"{name} exceeds maximum length of {max_length} characters"
        )


def validate_dangerous_chars(name: str, value: str) -> None:
    if value and DANGEROUS_CHARS.search(value):
        raise VEXValidationError(f"{name} contains potentially dangerous characters")


def validate_field(name: str, value: str, max_length: int, check_chars: bool = True) -> None:
    validate_string_length(name, value, max_length)
    if check_chars:
        validate_dangerous_chars(name, value)


def validate_document_count(count: int) -> None:
    if count < MIN_MERGE_DOCUMENTS:
        raise VEXValidationError(
            f"at least {MIN_MERGE_DOCUMENTS} VEX documents are required for merging"
        )
    if count > MAX_MERGE_DOCUMENTS:
        raise VEXValidationError(
            f"maximum of {MAX_MERGE_DOCUMENTS} documents can be merged at once"
        )
