"""
OpenVEX document model.

A small, dependency-free rendition of the OpenVEX v0.2.0 JSON format:
documents, statements, products and vulnerabilities, with parsing from
and serialization to plain dicts.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import VEXError


OPENVEX_CONTEXT = "https://openvex.dev/ns/v0.2.0"


class Status(Enum):
    """Impact status of a vulnerability on a product."""
    NOT_AFFECTED = "not_affected"
    AFFECTED = "affected"
    FIXED = "fixed"
    UNDER_INVESTIGATION = "under_investigation"


class Justification(Enum):
    """Reason a product is not affected."""
    COMPONENT_NOT_PRESENT = "component_not_present"
    VULNERABLE_CODE_NOT_PRESENT = "vulnerable_code_not_present"
    VULNERABLE_CODE_NOT_IN_EXECUTE_PATH = "vulnerable_code_not_in_execute_path"
    VULNERABLE_CODE_CANNOT_BE_CONTROLLED_BY_ADVERSARY = (
        "vulnerable_code_cannot_be_controlled_by_adversary"
    )
    INLINE_MITIGATIONS_ALREADY_EXIST = "inline_mitigations_already_exist"


ALLOWED_STATUSES = [s.value for s in Status]
ALLOWED_JUSTIFICATIONS = [j.value for j in Justification]


def parse_status(value: str) -> Status:
    try:
        return Status(value)
    except ValueError:
        raise VEXError(f"invalid status: {value}")


def parse_justification(value: str) -> Justification:
    try:
        return Justification(value)
    except ValueError:
        raise VEXError(f"invalid justification: {value}")


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp. ``None`` and empty strings yield ``None``."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise VEXError(f"invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # RFC 3339 allows any number of fraction digits; fromisoformat wants six
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise VEXError(f"invalid timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class Product:
    """A product identified by a PURL or other IRI."""
    id: str

    def to_dict(self) -> dict:
        return {"@id": self.id}

    @classmethod
    def from_dict(cls, data: Any) -> "Product":
        if isinstance(data, str):
            return cls(id=data)
        if not isinstance(data, dict):
            raise VEXError("product must be an object")
        product_id = data.get("@id") or data.get("id")
        if not isinstance(product_id, str) or not product_id:
            raise VEXError("product is missing @id")
        return cls(id=product_id)


@dataclass
class Vulnerability:
    """A vulnerability identified by CVE, GHSA or similar."""
    name: str
    id: Optional[str] = None
    description: Optional[str] = None
    aliases: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {"name": self.name}
        if self.id:
            result["@id"] = self.id
        if self.description:
            result["description"] = self.description
        if self.aliases:
            result["aliases"] = list(self.aliases)
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "Vulnerability":
        if isinstance(data, str):
            return cls(name=data)
        if not isinstance(data, dict):
            raise VEXError("vulnerability must be an object")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise VEXError("vulnerability is missing name")
        aliases = data.get("aliases") or []
        return cls(
            name=name,
            id=data.get("@id"),
            description=data.get("description"),
            aliases=[a for a in aliases if isinstance(a, str)],
        )


@dataclass
class Statement:
    """Links one vulnerability to a set of products with an impact status."""
    vulnerability: Vulnerability
    products: List[Product]
    status: Status
    justification: Optional[Justification] = None
    impact_statement: str = ""
    action_statement: str = ""
    status_notes: str = ""
    timestamp: Optional[datetime] = None

    def product_ids(self) -> List[str]:
        return [p.id for p in self.products]

    def validate(self) -> None:
        """Check the status-dependent field rules of OpenVEX."""
        if not self.vulnerability.name:
            raise VEXError("statement vulnerability name is required")
        if not self.products:
            raise VEXError("statement must reference at least one product")

        if self.status is Status.NOT_AFFECTED:
            if self.justification is None and not self.impact_statement:
                raise VEXError(
                    "either justification or impact_statement is required "
                    "when status is not_affected"
                )
            if self.action_statement:
                raise VEXError("action_statement is only valid when status is affected")
            return

        if self.justification is not None:
            raise VEXError("justification is only valid when status is not_affected")
        if self.impact_statement:
            raise VEXError("impact_statement is only valid when status is not_affected")

        if self.status is Status.AFFECTED:
            if not self.action_statement:
                raise VEXError("action_statement is required when status is affected")
        elif self.action_statement:
            raise VEXError("action_statement is only valid when status is affected")

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {
            "vulnerability": self.vulnerability.to_dict(),
            "products": [p.to_dict() for p in self.products],
            "status": self.status.value,
        }
        if self.timestamp is not None:
            result["timestamp"] = format_timestamp(self.timestamp)
        if self.justification is not None:
            result["justification"] = self.justification.value
        if self.impact_statement:
            result["impact_statement"] = self.impact_statement
        if self.action_statement:
            result["action_statement"] = self.action_statement
        if self.status_notes:
            result["status_notes"] = self.status_notes
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "Statement":
        if not isinstance(data, dict):
            raise VEXError("statement must be an object")
        if "vulnerability" not in data:
            raise VEXError("statement is missing vulnerability")
        products = data.get("products") or []
        if not isinstance(products, list):
            raise VEXError("statement products must be an array")
        status = data.get("status")
        if not isinstance(status, str):
            raise VEXError("statement is missing status")
        justification = data.get("justification")
        return cls(
            vulnerability=Vulnerability.from_dict(data["vulnerability"]),
            products=[Product.from_dict(p) for p in products],
            status=parse_status(status),
            justification=parse_justification(justification) if justification else None,
            impact_statement=data.get("impact_statement") or "",
            action_statement=data.get("action_statement") or "",
            status_notes=data.get("status_notes") or "",
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class VEXDocument:
    """An OpenVEX document."""
    id: str = ""
    author: str = ""
    role: str = ""
    version: int = 1
    timestamp: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    context: str = OPENVEX_CONTEXT
    tooling: str = ""
    statements: List[Statement] = field(default_factory=list)

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {
            "@context": self.context,
            "@id": self.id,
            "author": self.author,
        }
        if self.role:
            result["role"] = self.role
        if self.timestamp is not None:
            result["timestamp"] = format_timestamp(self.timestamp)
        if self.last_updated is not None:
            result["last_updated"] = format_timestamp(self.last_updated)
        result["version"] = self.version
        if self.tooling:
            result["tooling"] = self.tooling
        result["statements"] = [s.to_dict() for s in self.statements]
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "VEXDocument":
        if not isinstance(data, dict):
            raise VEXError("document must be a JSON object")
        context = data.get("@context")
        if not isinstance(context, str) or not context.startswith("https://openvex.dev/ns"):
            raise VEXError("document @context is not an OpenVEX context")
        statements = data.get("statements")
        if statements is None:
            statements = []
        if not isinstance(statements, list):
            raise VEXError("document statements must be an array")
        version = data.get("version", 1)
        if isinstance(version, bool) or not isinstance(version, (int, float)):
            raise VEXError("document version must be a number")
        return cls(
            id=data.get("@id") or "",
            author=data.get("author") or "",
            role=data.get("role") or "",
            version=int(version),
            timestamp=parse_timestamp(data.get("timestamp")),
            last_updated=parse_timestamp(data.get("last_updated")),
            context=context,
            tooling=data.get("tooling") or "",
            statements=[Statement.from_dict(s) for s in statements],
        )
