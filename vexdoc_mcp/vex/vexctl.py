"""
vexctl-backed VEX operations.

Same contract as :class:`VEXClient`, implemented by running the ``vexctl``
command-line tool. Arguments are always passed as a list (never through a
shell) and every invocation is bounded by a timeout.
"""

import json
import logging
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any, List

from .client import (
    CreateOptions,
    MergeOptions,
    VEXClient,
    check_create_options,
    check_merge_options,
)
from .document import Status, VEXDocument, parse_status
from .errors import VEXError, VexctlError


logger = logging.getLogger(__name__)

MAX_STDOUT_BYTES = 100_000
MAX_STDERR_BYTES = 10_000

_PATH_PATTERN = re.compile(r"/[^\s]*vexctl[^\s]*")


class VexctlClient:
    """Runs ``vexctl create`` and ``vexctl merge`` as subprocesses."""

    def __init__(
        self,
        executable: str = "vexctl",
        timeout: float = 30.0,
        default_author: str = "",
    ):
        self.executable = executable
        self.timeout = timeout
        self.default_author = default_author

    def available(self, timeout: float = 5.0) -> bool:
        """Check that ``vexctl version`` runs."""
        if shutil.which(self.executable) is None:
            return False
        try:
            result = subprocess.run(
                [self.executable, "version"],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0 or bool(result.stdout)

    def build_create_args(self, options: CreateOptions) -> List[str]:
        args = [
            "create",
            "--product", options.product,
            "--vuln", options.vulnerability,
            "--status", options.status,
        ]
        status = parse_status(options.status)
        if status is Status.NOT_AFFECTED:
            if options.justification:
                args += ["--justification", options.justification]
            if options.impact_statement:
                args += ["--impact-statement", options.impact_statement]
        elif status is Status.AFFECTED and options.action_statement:
            args += ["--action-statement", options.action_statement]

        author = options.author or self.default_author
        if author:
            args += ["--author", author]
        return args

    def build_merge_args(self, options: MergeOptions, files: List[str]) -> List[str]:
        args = ["merge"]
        if options.author:
            args += ["--author", options.author]
        if options.author_role:
            args += ["--author-role", options.author_role]
        if options.id:
            args += ["--id", options.id]
        for product in options.products:
            args += ["--product", product]
        for vuln in options.vulnerabilities:
            args += ["--vuln", vuln]
        return args + files

    def create_statement(self, options: CreateOptions) -> VEXDocument:
        check_create_options(options)
        if options.status == Status.NOT_AFFECTED.value and not options.justification:
            raise VEXError("justification is required when status is not_affected")
        output = self._run(self.build_create_args(options))
        return self._parse_output(output)

    def merge_documents(self, options: MergeOptions) -> VEXDocument:
        check_merge_options(options)
        tmpdir = tempfile.mkdtemp(prefix="vexctl-merge-")
        try:
            files = []
            for i, doc in enumerate(options.documents, 1):
                path = Path(tmpdir) / f"document-{i}.json"
                path.write_text(json.dumps(doc), encoding="utf-8")
                files.append(str(path))
            output = self._run(self.build_merge_args(options, files))
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)
        return self._parse_output(output)

    def validate_document(self, document: Any) -> VEXDocument:
        # vexctl has no standalone validation; parse locally
        return VEXClient(self.default_author).validate_document(document)

    def _run(self, args: List[str]) -> str:
        command = [self.executable] + args
        logger.debug("Running %s %s", self.executable, args[0])
        try:
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired:
            raise VexctlError(f"vexctl timed out after {self.timeout} seconds")
        except OSError as e:
            raise VexctlError(f"failed to execute vexctl: {e.strerror or e}")

        if len(result.stdout) > MAX_STDOUT_BYTES:
            raise VexctlError("vexctl output exceeded size limit")

        stderr = result.stderr[:MAX_STDERR_BYTES].decode("utf-8", errors="replace")
        if result.returncode != 0:
            raise VexctlError(
                f"vexctl {args[0]} failed with exit code {result.returncode}: "
                f"{sanitize_stderr(stderr)}"
            )
        return result.stdout.decode("utf-8", errors="replace")

    @staticmethod
    def _parse_output(output: str) -> VEXDocument:
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            raise VexctlError("vexctl produced output that is not JSON")
        return VEXDocument.from_dict(data)


def sanitize_stderr(stderr: str) -> str:
    """Strip filesystem paths of the vexctl binary from error output."""
    return _PATH_PATTERN.sub("vexctl", stderr.strip())
