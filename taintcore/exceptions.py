"""Exceptions raised by the taintscope analysis core.

Identifier resolution failures and unsupported constructs are recoverable:
the tracer catches them and degrades to a conservative taint. Structural
violations mean the syntax tree or the resolver is broken and abort the
analysis of the current file.
"""


class TaintScopeError(Exception):
    """Base class for all analysis errors."""


class UnboundIdentifier(TaintScopeError):
    """Raised when a variable, function, class, namespace or constant has
    no reachable binding.

    Attributes:
        identifier: The name that failed to resolve.
        environment: The environment the lookup started from.
    """

    def __init__(self, identifier: str, environment=None):
        where = f" in {environment.name}" if environment is not None else ""
        super().__init__(f"Unbound identifier {identifier!r}{where}")
        self.identifier = identifier
        self.environment = environment


class UnsupportedConstruct(TaintScopeError):
    """A construct the tracer does not follow (method calls, static
    properties, dynamically computed names)."""

    def __init__(self, kind: str, node=None):
        location = f" at line {node.line}" if node is not None else ""
        super().__init__(f"Unsupported construct {kind}{location}")
        self.kind = kind
        self.node = node


class StructuralInvariantViolation(TaintScopeError):
    """The environment stack or chain is malformed."""
