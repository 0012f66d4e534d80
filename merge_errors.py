"""
Failure kinds of a split-APK merge request.

All of them are terminal for the request. Tool-backed failures carry the
tool's exit code (None when it never finished, e.g. on timeout) and its
captured output.
"""

from typing import Optional


class MergeError(Exception):
    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        if self.exit_code is None:
            return self.message
        return f"{self.message} (exit {self.exit_code})"


class InvalidInput(MergeError):
    """Input directory missing, not a directory, or holds no archives."""


class ToolNotFound(MergeError):
    """A required external tool could not be located or fetched."""

    def __init__(self, tool: str, detail: str = ""):
        super().__init__(f"{tool} not found" + (f": {detail}" if detail else ""))
        self.tool = tool


class UnpackFailure(MergeError):
    pass


class RepackFailure(MergeError):
    pass


class RepackOutputMissing(RepackFailure):
    """Build reported success but dist/ holds nothing."""


class AlignFailure(MergeError):
    pass
