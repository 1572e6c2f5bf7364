"""
OpenVEX document backend.

Two interchangeable implementations share one contract
(``create_statement``, ``merge_documents``, ``validate_document``):
the in-process :class:`VEXClient` and the subprocess-based
:class:`VexctlClient`.
"""

from .client import DEFAULT_AUTHOR, CreateOptions, MergeOptions, VEXClient
from .document import (
    ALLOWED_JUSTIFICATIONS,
    ALLOWED_STATUSES,
    OPENVEX_CONTEXT,
    Justification,
    Product,
    Statement,
    Status,
    VEXDocument,
    Vulnerability,
)
from .errors import VEXError, VEXValidationError, VexctlError
from .vexctl import VexctlClient

__all__ = [
    "DEFAULT_AUTHOR",
    "CreateOptions",
    "MergeOptions",
    "VEXClient",
    "VexctlClient",
    "ALLOWED_JUSTIFICATIONS",
    "ALLOWED_STATUSES",
    "OPENVEX_CONTEXT",
    "Justification",
    "Product",
    "Statement",
    "Status",
    "VEXDocument",
    "Vulnerability",
    "VEXError",
    "VEXValidationError",
    "VexctlError",
]
