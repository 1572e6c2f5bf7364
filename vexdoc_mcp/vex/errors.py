"""Error types for the VEX document backend."""


class VEXError(Exception):
    """A VEX operation could not be completed with the given input."""


class VEXValidationError(VEXError):
    """An input field failed a boundary check."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"validation error: {detail}")


class VexctlError(VEXError):
    """The vexctl command-line tool failed or is unavailable."""
