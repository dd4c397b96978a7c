# errors.py
# Exception hierarchy for the tool-calling orchestrator.
#
# Patch errors are fatal to the call that raised them. Tool-level errors are
# converted into error results and handed back to the model. Session-level
# errors end the run with an error event.


class OrchestratorError(Exception):
    """Root of every error raised by this package."""


# ---------------------------------------------------------------------------
# Patch engine
# ---------------------------------------------------------------------------


class PatchError(OrchestratorError):
    """Base class for patch parse and apply failures. Never partially applied."""


class MalformedPatch(PatchError):
    """Raised when diff text has a header without its pair, or no hunks."""


class HunkMismatch(PatchError):
    """Raised when a context or removal line does not match the file."""


class UnsupportedPatchFormat(PatchError):
    """Raised when input cannot be normalized into a supported unified diff."""


class PathOutsideWorkdir(PatchError):
    """Raised when a target path resolves outside the working root."""


# ---------------------------------------------------------------------------
# Tool level
# ---------------------------------------------------------------------------


class ToolError(OrchestratorError):
    """Base class for errors confined to a single tool call."""


class ApprovalDenied(ToolError):
    """Raised when the human declines a gated tool call."""


class ToolExecutionFailed(ToolError):
    """Wraps an arbitrary collaborator failure."""


class UnknownTool(ToolError):
    """Raised when a tool name is absent from the registry."""


class InvalidToolInput(ToolError):
    """Raised when tool input fails schema validation."""


# ---------------------------------------------------------------------------
# Session level
# ---------------------------------------------------------------------------


class SessionError(OrchestratorError):
    """Base class for errors that end the whole session."""


class NoActiveModel(SessionError):
    """Raised when no usable provider or model is configured."""


class ModelCallFailed(SessionError):
    """Raised when the model capability fails or returns nothing usable."""
