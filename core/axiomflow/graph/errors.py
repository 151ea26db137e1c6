"""
Error kinds and exceptions raised by the workflow engine.

Handler-level problems never escape as exceptions to the caller of an
execution: they become ``Fail`` routing directives and are recorded in the
execution's error list. The exceptions here are raised at the edges of the
engine (definition validation, template resolution, the resume endpoint).
"""

from enum import StrEnum


class ValidationErrorKind(StrEnum):
    """Why a workflow definition was rejected."""

    DANGLING_EDGE = "DanglingEdge"
    DUPLICATE_NODE_ID = "DuplicateNodeId"
    NO_ENTRY_NODE = "NoEntryNode"
    MULTIPLE_ENTRY_NODES = "MultipleEntryNodes"
    UNREACHABLE_NODE = "UnreachableNode"
    MISSING_CONFIG = "MissingConfig"
    MISSING_BRANCHES = "MissingBranches"
    INVALID_PARALLEL = "InvalidParallel"
    UNKNOWN_HANDLE = "UnknownHandle"
    AMBIGUOUS_EDGES = "AmbiguousEdges"
    INVALID_EXPRESSION = "InvalidExpression"
    INVALID_VARIABLE = "InvalidVariable"


class ResolutionErrorKind(StrEnum):
    """Why a template or expression could not be resolved."""

    UNKNOWN_PATH = "UnknownPath"
    TYPE_MISMATCH = "TypeMismatch"
    SYNTAX_ERROR = "SyntaxError"


class ErrorKind(StrEnum):
    """Failure kinds recorded on an execution."""

    RESOLUTION_ERROR = "ResolutionError"
    MODEL_INVOCATION_FAILURE = "ModelInvocationFailure"
    TOOL_INVOCATION_FAILURE = "ToolInvocationFailure"
    TIMEOUT = "Timeout"
    NO_MATCHING_BRANCH = "NoMatchingBranch"
    TRANSFORM_ERROR = "TransformError"
    DELEGATION_LIMIT_EXCEEDED = "DelegationLimitExceeded"
    LOOP_LIMIT_EXCEEDED = "LoopLimitExceeded"
    STEP_LIMIT_EXCEEDED = "StepLimitExceeded"
    INVALID_ROUTE = "InvalidRoute"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"
    INTERNAL_ERROR = "InternalError"


class ResumeErrorKind(StrEnum):
    """Why a resume call was rejected."""

    EXPIRED = "Expired"
    ALREADY_RESUMED = "AlreadyResumed"
    NOT_FOUND = "NotFound"


class WorkflowError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(WorkflowError):
    """A workflow definition is malformed."""

    def __init__(
        self,
        kind: ValidationErrorKind,
        message: str,
        node_id: str | None = None,
        edge_id: str | None = None,
    ):
        self.kind = kind
        self.node_id = node_id
        self.edge_id = edge_id
        self.message = message
        super().__init__(f"[{kind}] {message}")

    def to_dict(self) -> dict:
        return {
            "kind": str(self.kind),
            "message": self.message,
            "node_id": self.node_id,
            "edge_id": self.edge_id,
        }


class ResolutionError(WorkflowError):
    """A template path or comparison operand could not be resolved."""

    def __init__(self, kind: ResolutionErrorKind, path: str | None = None, message: str = ""):
        self.kind = kind
        self.path = path
        detail = message or (f"cannot resolve '{path}'" if path else "resolution failed")
        super().__init__(f"[{kind}] {detail}")


class ResumeError(WorkflowError):
    """The resume endpoint was misused."""

    def __init__(self, kind: ResumeErrorKind, token: str, message: str = ""):
        self.kind = kind
        self.token = token
        super().__init__(f"[{kind}] {message or f'cannot resume token {token[:8]}...'}")
