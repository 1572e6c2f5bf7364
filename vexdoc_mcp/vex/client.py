"""
Native VEX backend.

Creates single-statement OpenVEX documents and merges existing ones
without any external process.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from .document import (
    Product,
    Statement,
    VEXDocument,
    Vulnerability,
    parse_justification,
    parse_status,
    utcnow,
)
from .errors import VEXError
from .validation import (
    MAX_AUTHOR_LENGTH,
    MAX_ID_LENGTH,
    MAX_STRING_LENGTH,
    MAX_VULNERABILITY_LENGTH,
    validate_document_count,
    validate_field,
    validate_required,
)


logger = logging.getLogger(__name__)

DEFAULT_AUTHOR = "vexdoc-mcp-server"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass
class CreateOptions:
    """Input for creating a VEX statement."""
    product: str
    vulnerability: str
    status: str
    justification: str = ""
    impact_statement: str = ""
    action_statement: str = ""
    author: str = ""


@dataclass
class MergeOptions:
    """Input for merging VEX documents."""
    documents: List[Dict[str, Any]] = field(default_factory=list)
    author: str = ""
    author_role: str = ""
    id: str = ""
    products: List[str] = field(default_factory=list)
    vulnerabilities: List[str] = field(default_factory=list)


def check_create_options(options: CreateOptions) -> None:
    """Boundary checks shared by every backend."""
    validate_required("product", options.product)
    validate_field("product", options.product, MAX_STRING_LENGTH)
    validate_required("vulnerability", options.vulnerability)
    validate_field("vulnerability", options.vulnerability, MAX_VULNERABILITY_LENGTH)
    validate_required("status", options.status)
    validate_field("justification", options.justification, MAX_STRING_LENGTH, check_chars=False)
    validate_field("impact_statement", options.impact_statement, MAX_STRING_LENGTH)
    validate_field("action_statement", options.action_statement, MAX_STRING_LENGTH)
    validate_field("author", options.author, MAX_AUTHOR_LENGTH)


def check_merge_options(options: MergeOptions) -> None:
    validate_document_count(len(options.documents))
    validate_field("author", options.author, MAX_AUTHOR_LENGTH)
    validate_field("author_role", options.author_role, MAX_AUTHOR_LENGTH)
    validate_field("id", options.id, MAX_ID_LENGTH)
    for i, product in enumerate(options.products):
        validate_field(f"products[{i}]", product, MAX_STRING_LENGTH)
    for i, vuln in enumerate(options.vulnerabilities):
        validate_field(f"vulnerabilities[{i}]", vuln, MAX_STRING_LENGTH, check_chars=False)

    for i, doc in enumerate(options.documents, 1):
        if not isinstance(doc, dict):
            raise VEXError(f"document {i} must be a valid JSON object")
        if "@context" not in doc:
            raise VEXError(f"document {i} must be a valid VEX document with @context")
        if "statements" not in doc:
            raise VEXError(f"document {i} must be a valid VEX document with statements")


class VEXClient:
    """In-process implementation of the VEX document operations."""

    def __init__(self, default_author: str = DEFAULT_AUTHOR):
        self.default_author = default_author or DEFAULT_AUTHOR

    def _author(self, author: str) -> str:
        return author or self.default_author

    def create_statement(self, options: CreateOptions) -> VEXDocument:
        """Build a document holding one validated statement."""
        check_create_options(options)

        statement = Statement(
            vulnerability=Vulnerability(name=options.vulnerability),
            products=[Product(id=options.product)],
            status=parse_status(options.status),
        )
        if options.justification:
            statement.justification = parse_justification(options.justification)
        if options.impact_statement:
            statement.impact_statement = options.impact_statement
        if options.action_statement:
            statement.action_statement = options.action_statement

        try:
            statement.validate()
        except VEXError as e:
            raise VEXError(f"statement validation failed: {e}")

        now = utcnow()
        doc = VEXDocument(
            id=f"vex-{int(time.time())}",
            author=self._author(options.author),
            version=1,
            timestamp=now,
            statements=[statement],
        )
        logger.debug("Created VEX document %s for %s", doc.id, options.vulnerability)
        return doc

    def merge_documents(self, options: MergeOptions) -> VEXDocument:
        """
        Merge documents into one.

        Statements without their own timestamp inherit the timestamp of the
        document they came from, and the merged list is ordered by time.
        Product and vulnerability filters are applied after the merge.
        """
        check_merge_options(options)

        docs = []
        for i, data in enumerate(options.documents, 1):
            try:
                docs.append(VEXDocument.from_dict(data))
            except VEXError as e:
                raise VEXError(f"failed to parse document {i}: {e}")

        merged = VEXDocument(
            id=_merged_id(docs),
            author=self._author(""),
            version=1,
        )
        for doc in docs:
            for statement in doc.statements:
                if statement.timestamp is None:
                    statement.timestamp = doc.timestamp
                merged.statements.append(statement)
        merged.statements.sort(key=lambda s: s.timestamp or _EPOCH)

        if options.id:
            merged.id = options.id
        if options.author:
            merged.author = options.author
        if options.author_role:
            merged.role = options.author_role

        if options.products:
            merged.statements = filter_by_products(merged.statements, options.products)
        if options.vulnerabilities:
            merged.statements = filter_by_vulnerabilities(
                merged.statements, options.vulnerabilities
            )

        merged.timestamp = utcnow()
        logger.debug(
            "Merged %d documents into %s (%d statements)",
            len(docs), merged.id, len(merged.statements),
        )
        return merged

    def validate_document(self, document: Any) -> VEXDocument:
        """Parse a document and validate every statement in it."""
        doc = VEXDocument.from_dict(document)
        for i, statement in enumerate(doc.statements, 1):
            try:
                statement.validate()
            except VEXError as e:
                raise VEXError(f"statement {i}: {e}")
        return doc


def filter_by_products(statements: List[Statement], products: List[str]) -> List[Statement]:
    wanted = set(products)
    return [s for s in statements if wanted.intersection(s.product_ids())]


def filter_by_vulnerabilities(
    statements: List[Statement], vulnerabilities: List[str]
) -> List[Statement]:
    wanted = set(vulnerabilities)
    return [
        s for s in statements
        if s.vulnerability.name in wanted or wanted.intersection(s.vulnerability.aliases)
    ]


def _merged_id(docs: List[VEXDocument]) -> str:
    digest = hashlib.sha256()
    for doc in docs:
        digest.update(doc.id.encode("utf-8"))
        digest.update(b"\x00")
    return f"merged-vex-{digest.hexdigest()}"

