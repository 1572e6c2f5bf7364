"""Tests for the vexdoc_mcp.vex package."""

import pytest
import json
import os
import subprocess
from datetime import datetime, timezone

from vexdoc_mcp.vex import (
    OPENVEX_CONTEXT,
    CreateOptions,
    Justification,
    MergeOptions,
    Product,
    Statement,
    Status,
    VEXClient,
    VEXDocument,
    VEXError,
    VEXValidationError,
    VexctlClient,
    VexctlError,
    Vulnerability,
)
from vexdoc_mcp.vex import vexctl as vexctl_module
from vexdoc_mcp.vex.client import filter_by_products, filter_by_vulnerabilities
from vexdoc_mcp.vex.document import format_timestamp, parse_timestamp
from vexdoc_mcp.vex.validation import (
    validate_document_count,
    validate_field,
    validate_required,
)
from vexdoc_mcp.vex.vexctl import sanitize_stderr


def statement(vuln="CVE-2023-1", product="pkg:npm/a@1.0.0", status="fixed", **extra):
    data = {
        "vulnerability": {"name": vuln},
        "products": [{"@id": product}],
        "status": status,
    }
    data.update(extra)
    return data


def document(doc_id, timestamp, statements):
    return {
        "@context": OPENVEX_CONTEXT,
        "@id": doc_id,
        "author": "tester",
        "timestamp": timestamp,
        "version": 1,
        "statements": statements,
    }


class TestTimestamps:
    def test_parse_zulu(self):
        parsed = parse_timestamp("2024-03-01T12:00:00Z")
        assert parsed == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_parse_naive_as_utc(self):
        assert parse_timestamp("2024-03-01T12:00:00").tzinfo is not None

    def test_parse_nanosecond_fraction(self):
        parsed = parse_timestamp("2023-11-04T10:12:33.123456789-04:00")
        assert parsed == datetime(2023, 11, 4, 14, 12, 33, 123456, tzinfo=timezone.utc)

    def test_parse_short_fraction(self):
        parsed = parse_timestamp("2023-11-04T10:12:33.5Z")
        assert parsed.microsecond == 500000

    def test_parse_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_parse_invalid(self):
        with pytest.raises(VEXError):
            parse_timestamp("yesterday")

    def test_format(self):
        value = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2024-03-01T12:00:00Z"


class TestStatement:
    def make(self, status, **kwargs):
        return Statement(
            vulnerability=Vulnerability(name="CVE-2023-1"),
            products=[Product(id="pkg:npm/a@1.0.0")],
            status=status,
            **kwargs,
        )

    def test_not_affected_with_justification(self):
        self.make(
            Status.NOT_AFFECTED, justification=Justification.COMPONENT_NOT_PRESENT
        ).validate()

    def test_not_affected_with_impact_statement(self):
        self.make(Status.NOT_AFFECTED, impact_statement="Unused code path").validate()

    def test_not_affected_requires_reason(self):
        with pytest.raises(VEXError, match="justification"):
            self.make(Status.NOT_AFFECTED).validate()

    def test_affected_requires_action(self):
        with pytest.raises(VEXError, match="action_statement"):
            self.make(Status.AFFECTED).validate()

    def test_justification_only_for_not_affected(self):
        with pytest.raises(VEXError):
            self.make(Status.FIXED, justification=Justification.COMPONENT_NOT_PRESENT).validate()

    def test_action_only_for_affected(self):
        with pytest.raises(VEXError):
            self.make(Status.UNDER_INVESTIGATION, action_statement="Upgrade").validate()

    def test_requires_products(self):
        s = self.make(Status.FIXED)
        s.products = []
        with pytest.raises(VEXError):
            s.validate()

    def test_from_dict(self):
        s = Statement.from_dict(
            statement(status="not_affected", justification="inline_mitigations_already_exist")
        )
        assert s.status is Status.NOT_AFFECTED
        assert s.justification is Justification.INLINE_MITIGATIONS_ALREADY_EXIST
        assert s.product_ids() == ["pkg:npm/a@1.0.0"]

    def test_from_dict_invalid_status(self):
        with pytest.raises(VEXError, match="invalid status"):
            Statement.from_dict(statement(status="maybe"))

    def test_to_dict_omits_empty_fields(self):
        d = self.make(Status.FIXED).to_dict()
        assert d == {
            "vulnerability": {"name": "CVE-2023-1"},
            "products": [{"@id": "pkg:npm/a@1.0.0"}],
            "status": "fixed",
        }


class TestVEXDocument:
    def test_from_dict(self):
        doc = VEXDocument.from_dict(document("doc-1", "2024-01-01T00:00:00Z", [statement()]))
        assert doc.id == "doc-1"
        assert doc.author == "tester"
        assert len(doc.statements) == 1

    def test_to_dict(self):
        doc = VEXDocument(id="doc-1", author="me", timestamp=parse_timestamp("2024-01-01T00:00:00Z"))
        d = doc.to_dict()
        assert d["@context"] == OPENVEX_CONTEXT
        assert d["@id"] == "doc-1"
        assert d["timestamp"] == "2024-01-01T00:00:00Z"
        assert d["statements"] == []

    def test_rejects_foreign_context(self):
        data = document("doc-1", None, [])
        data["@context"] = "https://example.com/ns"
        with pytest.raises(VEXError, match="@context"):
            VEXDocument.from_dict(data)

    def test_rejects_non_object(self):
        with pytest.raises(VEXError):
            VEXDocument.from_dict(["not", "a", "document"])

    def test_rejects_bad_statements(self):
        data = document("doc-1", None, [])
        data["statements"] = "nope"
        with pytest.raises(VEXError):
            VEXDocument.from_dict(data)


class TestValidation:
    def test_required(self):
        with pytest.raises(VEXValidationError, match="product is required"):
            validate_required("product", "")

    def test_length(self):
        with pytest.raises(VEXValidationError, match="exceeds maximum length of 5"):
            validate_field("name", "abcdefg", 5)

    def test_empty_values_pass(self):
        validate_field("name", "", 5)

    def test_dangerous_characters(self):
        for value in ["a;b", "a|b", "$(x)", "`x`", "a>b", "a&b"]:
            with pytest.raises(VEXValidationError):
                validate_field("product", value, 100)

    def test_dangerous_check_optional(self):
        validate_field("justification", "a;b", 100, check_chars=False)

    def test_document_count(self):
        validate_document_count(2)
        validate_document_count(20)
        with pytest.raises(VEXValidationError):
            validate_document_count(1)
        with pytest.raises(VEXValidationError, match="maximum of 20"):
            validate_document_count(21)

    def test_error_message_prefix(self):
        assert str(VEXValidationError("x is required")) == "validation error: x is required"


class TestVEXClient:
    def test_create_statement(self):
        doc = VEXClient().create_statement(
            CreateOptions(
                product="pkg:npm/a@1.0.0",
                vulnerability="CVE-2023-1",
                status="affected",
                action_statement="Upgrade to 1.0.1",
            )
        )
        assert doc.id.startswith("vex-")
        assert doc.version == 1
        assert doc.timestamp is not None
        assert doc.statements[0].action_statement == "Upgrade to 1.0.1"

    def test_create_statement_custom_default_author(self):
        doc = VEXClient(default_author="acme").create_statement(
            CreateOptions(product="pkg:npm/a@1.0.0", vulnerability="CVE-2023-1", status="fixed")
        )
        assert doc.author == "acme"

    def test_create_invalid_status(self):
        with pytest.raises(VEXError, match="invalid status"):
            VEXClient().create_statement(
                CreateOptions(product="pkg:npm/a@1.0.0", vulnerability="CVE-2023-1", status="bogus")
            )

    def test_create_vulnerability_too_long(self):
        with pytest.raises(VEXValidationError):
            VEXClient().create_statement(
                CreateOptions(product="pkg:npm/a@1.0.0", vulnerability="C" * 51, status="fixed")
            )

    def test_merge_inherits_timestamps_and_sorts(self):
        older = document("old", "2023-01-01T00:00:00Z", [statement("CVE-OLD")])
        newer = document(
            "new",
            "2024-01-01T00:00:00Z",
            [statement("CVE-NEW"), statement("CVE-EARLIEST", timestamp="2022-06-01T00:00:00Z")],
        )
        merged = VEXClient().merge_documents(MergeOptions(documents=[newer, older]))

        names = [s.vulnerability.name for s in merged.statements]
        assert names == ["CVE-EARLIEST", "CVE-OLD", "CVE-NEW"]
        assert merged.statements[1].timestamp == parse_timestamp("2023-01-01T00:00:00Z")

    def test_merge_nanosecond_timestamps(self):
        docs = [
            document("a", "2023-11-04T10:12:33.123456789-04:00", [statement("CVE-A")]),
            document("b", "2023-11-04T14:12:34.000000001Z", [statement("CVE-B")]),
        ]
        merged = VEXClient().merge_documents(MergeOptions(documents=docs))

        assert [s.vulnerability.name for s in merged.statements] == ["CVE-A", "CVE-B"]
        assert merged.statements[0].timestamp.microsecond == 123456

    def test_merge_id_is_deterministic(self):
        docs = [
            document("a", "2023-01-01T00:00:00Z", [statement()]),
            document("b", "2023-01-02T00:00:00Z", [statement("CVE-2023-2")]),
        ]
        first = VEXClient().merge_documents(MergeOptions(documents=docs))
        second = VEXClient().merge_documents(MergeOptions(documents=docs))
        assert first.id == second.id
        assert first.id.startswith("merged-vex-")

    def test_merge_filters_by_vulnerability_alias(self):
        aliased = statement()
        aliased["vulnerability"]["aliases"] = ["GHSA-aaaa-bbbb-cccc"]
        docs = [
            document("a", "2023-01-01T00:00:00Z", [aliased]),
            document("b", "2023-01-02T00:00:00Z", [statement("CVE-2023-2")]),
        ]
        merged = VEXClient().merge_documents(
            MergeOptions(documents=docs, vulnerabilities=["GHSA-aaaa-bbbb-cccc"])
        )
        assert [s.vulnerability.name for s in merged.statements] == ["CVE-2023-1"]

    def test_merge_reports_failing_document(self):
        docs = [
            document("a", "2023-01-01T00:00:00Z", [statement()]),
            document("b", "2023-01-02T00:00:00Z", [statement(status="maybe")]),
        ]
        with pytest.raises(VEXError, match="failed to parse document 2"):
            VEXClient().merge_documents(MergeOptions(documents=docs))

    def test_merge_requires_statements_key(self):
        broken = document("b", None, [])
        del broken["statements"]
        with pytest.raises(VEXError, match="statements"):
            VEXClient().merge_documents(
                MergeOptions(documents=[document("a", None, []), broken])
            )

    def test_validate_document(self):
        doc = VEXClient().validate_document(
            document("a", None, [statement(status="affected", action_statement="Patch")])
        )
        assert len(doc.statements) == 1

    def test_validate_document_reports_statement(self):
        with pytest.raises(VEXError, match="statement 1"):
            VEXClient().validate_document(document("a", None, [statement(status="affected")]))

    def test_filters(self):
        statements = [
            Statement.from_dict(statement("CVE-1", "pkg:npm/a@1")),
            Statement.from_dict(statement("CVE-2", "pkg:npm/b@1")),
        ]
        assert len(filter_by_products(statements, ["pkg:npm/b@1"])) == 1
        assert filter_by_vulnerabilities(statements, ["CVE-3"]) == []


class FakeCompleted:
    def __init__(self, returncode=0, stdout=b"", stderr=b""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class TestVexctlClient:
    def options(self, **kwargs):
        values = dict(product="pkg:npm/a@1.0.0", vulnerability="CVE-2023-1", status="fixed")
        values.update(kwargs)
        return CreateOptions(**values)

    def test_build_create_args(self):
        client = VexctlClient(default_author="acme")
        args = client.build_create_args(
            self.options(status="not_affected", justification="component_not_present")
        )
        assert args[:7] == [
            "create", "--product", "pkg:npm/a@1.0.0", "--vuln", "CVE-2023-1",
            "--status", "not_affected",
        ]
        assert args[args.index("--justification") + 1] == "component_not_present"
        assert args[-2:] == ["--author", "acme"]

    def test_build_create_args_affected(self):
        args = VexctlClient().build_create_args(
            self.options(status="affected", action_statement="Upgrade")
        )
        assert "--action-statement" in args
        assert "--author" not in args

    def test_build_merge_args(self):
        options = MergeOptions(
            author="me", id="merged", products=["pkg:npm/a@1"], vulnerabilities=["CVE-1"]
        )
        args = VexctlClient().build_merge_args(options, ["/tmp/1.json", "/tmp/2.json"])
        assert args == [
            "merge", "--author", "me", "--id", "merged",
            "--product", "pkg:npm/a@1", "--vuln", "CVE-1",
            "/tmp/1.json", "/tmp/2.json",
        ]

    def test_create_requires_justification(self):
        with pytest.raises(VEXError, match="justification is required"):
            VexctlClient().create_statement(self.options(status="not_affected"))

    def test_create_statement(self, monkeypatch):
        calls = []
        output = json.dumps(document("vex-1", "2024-01-01T00:00:00Z", [statement()]))

        def fake_run(command, **kwargs):
            calls.append((command, kwargs))
            return FakeCompleted(stdout=output.encode())

        monkeypatch.setattr(vexctl_module.subprocess, "run", fake_run)
        doc = VexctlClient(executable="vexctl", timeout=7.0).create_statement(self.options())

        assert doc.id == "vex-1"
        command, kwargs = calls[0]
        assert command[0] == "vexctl"
        assert command[1] == "create"
        assert kwargs["timeout"] == 7.0
        assert kwargs["shell"] is False

    def test_merge_removes_temp_files(self, monkeypatch):
        seen = []
        output = json.dumps(document("merged", "2024-01-01T00:00:00Z", []))

        def fake_run(command, **kwargs):
            files = [arg for arg in command if arg.endswith(".json")]
            seen.extend(files)
            assert all(os.path.exists(f) for f in files)
            return FakeCompleted(stdout=output.encode())

        monkeypatch.setattr(vexctl_module.subprocess, "run", fake_run)
        docs = [document("a", None, []), document("b", None, [])]
        VexctlClient().merge_documents(MergeOptions(documents=docs))

        assert len(seen) == 2
        assert not any(os.path.exists(f) for f in seen)

    def test_merge_removes_temp_files_on_failure(self, monkeypatch):
        seen = []

        def fake_run(command, **kwargs):
            seen.extend(arg for arg in command if arg.endswith(".json"))
            return FakeCompleted(returncode=1, stderr=b"boom")

        monkeypatch.setattr(vexctl_module.subprocess, "run", fake_run)
        docs = [document("a", None, []), document("b", None, [])]
        with pytest.raises(VexctlError, match="exit code 1: boom"):
            VexctlClient().merge_documents(MergeOptions(documents=docs))
        assert seen
        assert not any(os.path.exists(f) for f in seen)

    def test_timeout(self, monkeypatch):
        def fake_run(command, **kwargs):
            raise subprocess.TimeoutExpired(command, kwargs["timeout"])

        monkeypatch.setattr(vexctl_module.subprocess, "run", fake_run)
        with pytest.raises(VexctlError, match="timed out"):
            VexctlClient(timeout=1.0).create_statement(self.options())

    def test_missing_binary(self, monkeypatch):
        def fake_run(command, **kwargs):
            raise FileNotFoundError(2, "No such file or directory")

        monkeypatch.setattr(vexctl_module.subprocess, "run", fake_run)
        with pytest.raises(VexctlError, match="failed to execute vexctl"):
            VexctlClient().create_statement(self.options())

    def test_output_size_limit(self, monkeypatch):
        monkeypatch.setattr(
            vexctl_module.subprocess,
            "run",
            lambda command, **kwargs: FakeCompleted(stdout=b"x" * (vexctl_module.MAX_STDOUT_BYTES + 1)),
        )
        with pytest.raises(VexctlError, match="size limit"):
            VexctlClient().create_statement(self.options())

    def test_non_json_output(self, monkeypatch):
        monkeypatch.setattr(
            vexctl_module.subprocess, "run", lambda command, **kwargs: FakeCompleted(stdout=b"ok")
        )
        with pytest.raises(VexctlError, match="not JSON"):
            VexctlClient().create_statement(self.options())

    def test_available_without_binary(self, monkeypatch):
        monkeypatch.setattr(vexctl_module.shutil, "which", lambda name: None)
        assert VexctlClient().available() is False

    def test_available(self, monkeypatch):
        monkeypatch.setattr(vexctl_module.shutil, "which", lambda name: "/usr/local/bin/vexctl")
        monkeypatch.setattr(
            vexctl_module.subprocess, "run", lambda command, **kwargs: FakeCompleted(stdout=b"v0.3.0")
        )
        assert VexctlClient().available() is True

    def test_sanitize_stderr(self):
        message = sanitize_stderr("  error: /usr/local/bin/vexctl failed to read input\n")
        assert message == "error: vexctl failed to read input"
