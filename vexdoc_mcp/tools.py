"""
MCP Tools implementation.

Provides the tool contract, the per-call execution context, the tool
registry, and the built-in VEX document tools.
"""

import asyncio
import functools
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError, best_match

from .errors import DuplicateToolError, RegistrationError, RegistryFrozenError, ToolNotFoundError
from .protocol import ToolDescriptor, ToolResult
from .vex import (
    ALLOWED_JUSTIFICATIONS,
    ALLOWED_STATUSES,
    CreateOptions,
    MergeOptions,
    VEXClient,
    VEXError,
    VexctlClient,
)
from .vex.validation import (
    MAX_AUTHOR_LENGTH,
    MAX_ID_LENGTH,
    MAX_MERGE_DOCUMENTS,
    MAX_STRING_LENGTH,
    MAX_VULNERABILITY_LENGTH,
    MIN_MERGE_DOCUMENTS,
)


logger = logging.getLogger(__name__)

VEXBackend = Union[VEXClient, VexctlClient]


@dataclass
class ToolContext:
    """
    Per-call execution context.

    Carries the correlation id and the time budget of one ``tools/call``,
    plus a cancellation flag that the server sets when the call times out
    or the server shuts down. The flag is a ``threading.Event`` so work
    running in a worker thread can observe it too.
    """
    request_id: Any = None
    tool_name: str = ""
    timeout: Optional[float] = None
    started_at: float = field(default_factory=time.monotonic)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def deadline(self) -> Optional[float]:
        if self.timeout is None:
            return None
        return self.started_at + self.timeout

    def remaining(self) -> Optional[float]:
        """Seconds left in the budget, ``None`` when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise asyncio.CancelledError()

    async def run_blocking(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run blocking work in a worker thread once the call is still live."""
        self.raise_if_cancelled()
        return await asyncio.to_thread(functools.partial(func, *args, **kwargs))


class BaseTool(ABC):
    """Base class for MCP tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description."""
        pass

    @property
    @abstractmethod
    def input_schema(self) -> Dict[str, Any]:
        """JSON Schema for the tool arguments."""
        pass

    @abstractmethod
    async def execute(self, ctx: ToolContext, arguments: Dict[str, Any]) -> ToolResult:
        """
        Execute the tool.

        Domain failures are returned as ``ToolResult(is_error=True)``.
        Raising is reserved for bugs; the server reports those as internal
        errors.
        """
        pass

    def get_definition(self) -> ToolDescriptor:
        """Get the MCP tool definition."""
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )


@dataclass
class ArgumentError:
    """First schema violation found in a set of tool arguments."""
    message: str
    path: List[Any]
    constraint: str

    def to_dict(self) -> dict:
        return {"path": self.path, "constraint": self.constraint}


def validate_arguments(validator: Draft7Validator, arguments: Dict[str, Any]) -> Optional[ArgumentError]:
    """Validate arguments against a compiled schema. Returns ``None`` if valid."""
    error = best_match(validator.iter_errors(arguments))
    if error is None:
        return None
    path = list(error.absolute_path)
    location = ".".join(str(p) for p in path) if path else "root"
    return ArgumentError(
        message=f"Invalid arguments at '{location}': {error.message}",
        path=path,
        constraint=str(error.validator),
    )


def _format_document(doc) -> str:
    return json.dumps(doc.to_dict(), indent=2)


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


VEX_STATEMENT_PROPERTIES: Dict[str, Any] = {
    "product": {
        "type": "string",
        "description": (
            "Software product identifier using PURL (Package URL) format, e.g., "
            "pkg:npm/lodash@4.17.21, pkg:docker/nginx@1.20.1"
        ),
        "maxLength": MAX_STRING_LENGTH,
    },
    "vulnerability": {
        "type": "string",
        "description": (
            "Security vulnerability identifier from CVE, GHSA, or other vulnerability "
            "databases (e.g., CVE-2023-1234, GHSA-xxxx-xxxx-xxxx)"
        ),
        "maxLength": MAX_VULNERABILITY_LENGTH,
    },
    "status": {
        "type": "string",
        "description": (
            "Assessment of how the vulnerability affects this product: not_affected, "
            "affected, fixed, under_investigation"
        ),
        "enum": ALLOWED_STATUSES,
    },
    "justification": {
        "type": "string",
        "description": (
            "Technical reason why a product is not affected by the vulnerability "
            "(required when status=not_affected unless impact_statement is given)"
        ),
        "enum": ALLOWED_JUSTIFICATIONS,
    },
    "impact_statement": {
        "type": "string",
        "description": (
            "Detailed explanation of why the vulnerability cannot be exploited in "
            "this product context (used with status=not_affected)"
        ),
        "maxLength": MAX_STRING_LENGTH,
    },
    "action_statement": {
        "type": "string",
        "description": (
            "Recommended remediation for affected products, such as upgrades or "
            "workarounds (required with status=affected)"
        ),
        "maxLength": MAX_STRING_LENGTH,
    },
    "author": {
        "type": "string",
        "description": "Analyst, team, or organization responsible for this assessment",
        "maxLength": MAX_AUTHOR_LENGTH,
    },
}

VEX_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": (
        "Complete OpenVEX document. Must include @context and a statements array."
    ),
    "properties": {
        "@context": {"type": "string", "description": "OpenVEX specification version URL"},
        "@id": {"type": "string", "description": "Unique identifier for this document"},
        "author": {"type": "string", "description": "Creator of this document"},
        "timestamp": {"type": "string", "description": "Creation time (RFC 3339)"},
        "version": {"type": "number", "description": "Document version number"},
        "statements": {
            "type": "array",
            "description": "Vulnerability assessment statements",
            "items": {"type": "object"},
        },
    },
}


class CreateVEXStatementTool(BaseTool):
    """Create a single-statement OpenVEX document."""

    def __init__(self, client: Optional[VEXBackend] = None):
        self.client = client or VEXClient()

    @property
    def name(self) -> str:
        return "create_vex_statement"

    @property
    def description(self) -> str:
        return (
            "Generate VEX (Vulnerability Exploitability eXchange) statements to document "
            "security vulnerability assessments for software products. Creates "
            "OpenVEX-compliant JSON documents that specify whether products are "
            "affected by specific vulnerabilities."
        )

    @property
    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": VEX_STATEMENT_PROPERTIES,
            "required": ["product", "vulnerability", "status"],
        }

    async def execute(self, ctx: ToolContext, arguments: Dict[str, Any]) -> ToolResult:
        for key in ("product", "vulnerability", "status"):
            if not isinstance(arguments.get(key), str):
                return ToolResult.error(f"Error: {key} is required and must be a string")

        options = CreateOptions(
            product=arguments["product"].strip(),
            vulnerability=arguments["vulnerability"].strip(),
            status=arguments["status"],
            justification=arguments.get("justification") or "",
            impact_statement=(arguments.get("impact_statement") or "").strip(),
            action_statement=(arguments.get("action_statement") or "").strip(),
            author=(arguments.get("author") or "").strip(),
        )

        try:
            doc = await ctx.run_blocking(self.client.create_statement, options)
        except VEXError as e:
            logger.warning("create_vex_statement failed: %s", e)
            return ToolResult.error(f"Error: {e}")

        return ToolResult.text(f"VEX statement created successfully:\n\n{_format_document(doc)}")


class MergeVEXDocumentsTool(BaseTool):
    """Merge several OpenVEX documents into one."""

    def __init__(self, client: Optional[VEXBackend] = None):
        self.client = client or VEXClient()

    @property
    def name(self) -> str:
        return "merge_vex_documents"

    @property
    def description(self) -> str:
        return (
            "Merge and consolidate multiple VEX documents into a unified security "
            "assessment report. Supports filtering by products or vulnerabilities."
        )

    @property
    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "documents": {
                    "type": "array",
                    "description": "VEX documents to merge, each a complete OpenVEX document",
                    "items": VEX_DOCUMENT_SCHEMA,
                    "minItems": MIN_MERGE_DOCUMENTS,
                    "maxItems": MAX_MERGE_DOCUMENTS,
                },
                "author": VEX_STATEMENT_PROPERTIES["author"],
                "author_role": {
                    "type": "string",
                    "description": "Role of the person creating the merged document",
                    "maxLength": MAX_AUTHOR_LENGTH,
                },
                "id": {
                    "type": "string",
                    "description": "Identifier for the merged document; generated when omitted",
                    "maxLength": MAX_ID_LENGTH,
                },
                "products": {
                    "type": "array",
                    "description": "Only keep statements for these products",
                    "items": {"type": "string", "description": "Product identifier in PURL format"},
                },
                "vulnerabilities": {
                    "type": "array",
                    "description": "Only keep statements for these vulnerabilities",
                    "items": {"type": "string", "description": "Vulnerability identifier"},
                },
            },
            "required": ["documents"],
        }

    async def execute(self, ctx: ToolContext, arguments: Dict[str, Any]) -> ToolResult:
        documents = arguments.get("documents")
        if documents is None:
            return ToolResult.error("Error: documents field is required")
        if not isinstance(documents, list):
            return ToolResult.error("Error: documents must be an array")

        options = MergeOptions(
            documents=documents,
            author=arguments.get("author") or "",
            author_role=arguments.get("author_role") or "",
            id=arguments.get("id") or "",
            products=_string_list(arguments.get("products")),
            vulnerabilities=_string_list(arguments.get("vulnerabilities")),
        )

        try:
            doc = await ctx.run_blocking(self.client.merge_documents, options)
        except VEXError as e:
            logger.warning("merge_vex_documents failed: %s", e)
            return ToolResult.error(f"Error: {e}")

        return ToolResult.text(f"VEX documents merged successfully:\n\n{_format_document(doc)}")


class ToolRegistry:
    """
    Registry for managing tools.

    Written during startup and frozen when the server starts serving.
    Listing order is registration order.
    """

    def __init__(self):
        self._tools: "OrderedDict[str, BaseTool]" = OrderedDict()
        self._validators: Dict[str, Draft7Validator] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def register(self, tool: BaseTool) -> None:
        """Register a tool. Rejected registrations leave the registry unchanged."""
        name = tool.name
        if self._frozen:
            raise RegistryFrozenError(name)
        if name in self._tools:
            raise DuplicateToolError(name)

        schema = tool.input_schema
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            raise RegistrationError(f"Tool {name} has an invalid input schema: {e.message}")

        self._tools[name] = tool
        self._validators[name] = Draft7Validator(schema)
        logger.info("Registered tool: %s", name)

    def get(self, name: str) -> Optional[BaseTool]:
        """Get a tool by name."""
        return self._tools.get(name)

    def lookup(self, name: str) -> BaseTool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def validator(self, name: str) -> Draft7Validator:
        return self._validators[name]

    def names(self) -> List[str]:
        return list(self._tools)

    def list_tools(self) -> List[ToolDescriptor]:
        """List all registered tools as MCP tool descriptors."""
        return [tool.get_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


def create_default_registry(client: Optional[VEXBackend] = None) -> ToolRegistry:
    """Create a registry with the VEX tools."""
    client = client or VEXClient()
    registry = ToolRegistry()
    registry.register(CreateVEXStatementTool(client))
    registry.register(MergeVEXDocumentsTool(client))
    return registry
