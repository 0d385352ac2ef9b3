#!/usr/bin/env python3
"""
Environments: chained symbol tables mapping PHP identifiers to the
declarations or assignments they are bound to.

Variables and constants in PHP only exist once the statement defining them
has been evaluated, and variables can be unset() again. Instead of one
mutable table per scope, every binding creates a new child environment that
overrides a single name and defers everything else to its parent. Each AST
node keeps a pointer to the environment visible at that point in program
order, and since environments are never modified after creation, those
pointers stay valid snapshots.

Functions, classes, constants and namespaces are visible from anywhere once
declared, so they live in append-only tables owned by the namespace they are
declared in. Those tables are shared, not forked.

Function, method and closure bodies are hard scope boundaries: they do not see
the variables of the enclosing scope. The only variables bound when a function
starts are its parameters and the superglobals, which are aliases of the
global environment's entries rather than copies.

Variables are stored with their '$' prefix; constants, functions, classes and
namespaces without it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .exceptions import StructuralInvariantViolation, UnboundIdentifier

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = '\\'

SUPERGLOBALS = (
    '$GLOBALS', '$_SERVER', '$_GET', '$_POST', '$_FILES',
    '$_COOKIE', '$_SESSION', '$_REQUEST', '$_ENV',
)


class _Unset:
    """Marker bound to a variable after unset()."""

    def __repr__(self):
        return 'UNSET'


UNSET = _Unset()


@dataclass(eq=False)
class Superglobal:
    """A superglobal array, shared by reference between all scopes."""
    name: str
    bindings: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(eq=False)
class ParameterBinding:
    """A variable bound on function entry: a parameter, or $this in methods.

    Its value is only known at a concrete call site.
    """
    name: str
    node: Any = field(repr=False)
    index: int = -1


@dataclass(eq=False)
class GlobalReference:
    """Binding introduced by a `global $x;` statement."""
    name: str
    node: Any = field(repr=False)
    global_env: 'GlobalEnvironment' = field(repr=False)

    def resolve(self) -> Any:
        return self.global_env.resolve_global_variable(self.name)


def is_absolutely_qualified(name: str) -> bool:
    return name.startswith(NAMESPACE_SEPARATOR)


def is_unqualified(name: str) -> bool:
    return NAMESPACE_SEPARATOR not in name


def split_namespace(name: str) -> Tuple[Optional[str], str]:
    """Split 'A\\B\\c' into ('A', 'B\\c'); unqualified names give (None, name)."""
    if is_absolutely_qualified(name):
        raise ValueError(f'{name} is absolutely qualified')
    head, sep, tail = name.partition(NAMESPACE_SEPARATOR)
    if not sep:
        return None, name
    return head, tail


def _strip_relative(name: str) -> str:
    # 'namespace\foo' names the current namespace explicitly
    prefix = 'namespace' + NAMESPACE_SEPARATOR
    if name.lower().startswith(prefix):
        return name[len(prefix):]
    return name


class Environment(ABC):
    """A scope: a symbol table plus a link to its enclosing scope."""

    #: Whether variable lookups stop here instead of continuing to the parent.
    hard_boundary = False

    def __init__(self, name: str, parent: Optional['Environment'] = None):
        self.name = name
        self.parent = parent
        self.variables: Dict[str, Any] = {}
        self.root: 'Environment' = parent.root if parent is not None else self

    def __repr__(self):
        return f'{type(self).__name__}({self.name!r})'

    def get_parent(self) -> Optional['Environment']:
        return self.parent

    def get_namespace(self) -> 'NamespaceEnvironment':
        """The namespace this environment is declared in."""
        env = self.parent
        while env is not None:
            if isinstance(env, NamespaceEnvironment):
                return env.get_namespace()
            env = env.parent
        raise StructuralInvariantViolation(f'{self!r} is not enclosed by a namespace')

    def get_global(self) -> 'GlobalEnvironment':
        if not isinstance(self.root, GlobalEnvironment):
            raise StructuralInvariantViolation(f'{self!r} is not rooted in a global environment')
        return self.root

    # -- variables ----------------------------------------------------------

    def resolve_variable(self, name: str) -> Any:
        """Return what `name` is bound to at this point in program order.

        Raises UnboundIdentifier when the name was never bound, was unset, or
        is only bound outside the nearest hard scope boundary.
        """
        env = self
        while True:
            if name in env.variables:
                value = env.variables[name]
                if value is UNSET:
                    raise UnboundIdentifier(name, self)
                return value
            if env.hard_boundary or env.parent is None:
                raise UnboundIdentifier(name, self)
            env = env.parent

    @abstractmethod
    def create_child(self) -> 'Environment':
        """Construct a new environment with this one as its parent."""

    def _fork(self, name: str, value: Any) -> 'Environment':
        if not name.startswith('$'):
            raise ValueError(f'Variable names must start with $: {name}')
        result = self.create_child()
        result.variables[name] = value
        return result

    def define_variable_by_value(self, name: str, node: Any) -> 'Environment':
        """Return a child environment where `name` is bound to `node`."""
        return self._fork(name, node)

    def define_variable_by_reference(self, name: str, node: Any) -> 'Environment':
        """Return a child environment where `name` refers to the global variable."""
        return self._fork(name, GlobalReference(name, node, self.get_global()))

    def unset_variable(self, name: str) -> 'Environment':
        return self._fork(name, UNSET)

    # -- namespace-level symbols ---------------------------------------------

    def resolve_function(self, name: str) -> Any:
        return self.get_namespace().resolve_function(name)

    def resolve_class(self, name: str) -> Any:
        return self.get_namespace().resolve_class(name)

    def resolve_constant(self, name: str) -> Any:
        return self.get_namespace().resolve_constant(name)

    def resolve_namespace(self, name: Optional[str] = None) -> 'NamespaceEnvironment':
        return self.get_namespace().resolve_namespace(name)

    def create_function(self, name: str, node: Any) -> 'FunctionEnvironment':
        """Declare a function and return the environment for its body."""
        self.get_namespace().register_function(name, node)
        return FunctionEnvironment(name, self, node)

    def create_class(self, name: str, node: Any) -> 'ClassEnvironment':
        self.get_namespace().register_class(name, node)
        return ClassEnvironment(name, self, node)

    def create_namespace(self, name: str) -> 'NamespaceEnvironment':
        return self.get_namespace().create_namespace(name)

    def define_constant(self, name: str, node: Any) -> None:
        self.get_namespace().define_constant(name, node)


class ScopeEnvironment(Environment):
    """An ordinary chained scope, used for statement sequencing."""

    def create_child(self) -> 'Environment':
        return ScopeEnvironment(self.name, self)


class FunctionEnvironment(ScopeEnvironment):
    """Entry scope of a function, method or closure body."""

    hard_boundary = True

    def __init__(self, name: str, parent: Environment, declaration: Any = None):
        super().__init__(name, parent)
        self.declaration = declaration
        self.variables.update(self.get_global().superglobals)

    def bind_parameter(self, name: str, binding: Any) -> None:
        """Bind a name on entry. Only valid while the environment is being set up."""
        if not name.startswith('$'):
            raise ValueError(f'Variable names must start with $: {name}')
        self.variables[name] = binding


class ClassEnvironment(ScopeEnvironment):
    """Scope of a class body: properties, methods and class constants."""

    hard_boundary = True

    def __init__(self, name: str, parent: Environment, declaration: Any = None):
        super().__init__(name, parent)
        self.declaration = declaration
        self.properties: Dict[str, Any] = {}
        self.methods: Dict[str, Any] = {}
        self.constants: Dict[str, Any] = {}

    def create_function(self, name: str, node: Any) -> FunctionEnvironment:
        self.methods[name.lower()] = node
        return FunctionEnvironment(f'{self.name}::{name}', self, node)

    def define_property(self, name: str, node: Any) -> None:
        self.properties[name] = node

    def define_constant(self, name: str, node: Any) -> None:
        self.constants[name] = node

    def resolve_property(self, name: str) -> Any:
        if name not in self.properties:
            raise UnboundIdentifier(name, self)
        return self.properties[name]

    def resolve_method(self, name: str) -> Any:
        if name.lower() not in self.methods:
            raise UnboundIdentifier(name, self)
        return self.methods[name.lower()]

    def resolve_constant(self, name: str) -> Any:
        if name in self.constants:
            return self.constants[name]
        return super().resolve_constant(name)


class NamespaceEnvironment(Environment):
    """A namespace: declarative tables of functions, classes, constants and
    nested namespaces, plus the variable chain of its top-level code."""

    def __init__(self, name: str, parent: Optional[Environment] = None):
        super().__init__(name, parent)
        self.namespaces: Dict[str, 'NamespaceEnvironment'] = {}
        self.functions: Dict[str, Any] = {}
        self.classes: Dict[str, Any] = {}
        self.constants: Dict[str, Any] = {}

    def get_namespace(self) -> 'NamespaceEnvironment':
        return self

    def create_child(self) -> 'Environment':
        return NamespaceContinuationEnvironment(self.name, self)

    def create_namespace(self, name: str) -> 'NamespaceEnvironment':
        """Get or create the child namespace `name` (may be qualified)."""
        head, tail = split_namespace(name)
        if head is not None:
            return self.create_namespace(head).create_namespace(tail)
        key = name.lower()
        if key not in self.namespaces:
            qualified = name if self is self.root else f'{self.name}{NAMESPACE_SEPARATOR}{name}'
            self.namespaces[key] = NamespaceEnvironment(qualified, self)
            logger.debug("Created namespace %s", qualified)
        return self.namespaces[key]

    def register_function(self, name: str, node: Any) -> None:
        self.functions[name.lower()] = node

    def register_class(self, name: str, node: Any) -> None:
        self.classes[name.lower()] = node

    def define_constant(self, name: str, node: Any) -> None:
        self.constants[name] = node

    def resolve_namespace(self, name: Optional[str] = None) -> 'NamespaceEnvironment':
        if not name:
            return self
        name = _strip_relative(name)
        if is_absolutely_qualified(name):
            return self.get_global().resolve_namespace(name.lstrip(NAMESPACE_SEPARATOR))
        if is_unqualified(name):
            if name.lower() in self.namespaces:
                return self.namespaces[name.lower()]
            raise UnboundIdentifier(name, self)
        head, tail = split_namespace(name)
        return self.resolve_namespace(head).resolve_namespace(tail)

    def resolve_function(self, name: str) -> Any:
        return self._resolve_symbol('functions', name, fold_case=True, fallback=True)

    def resolve_class(self, name: str) -> Any:
        return self._resolve_symbol('classes', name, fold_case=True, fallback=False)

    def resolve_constant(self, name: str) -> Any:
        return self._resolve_symbol('constants', name, fold_case=False, fallback=True)

    def _resolve_symbol(self, table: str, name: str, fold_case: bool, fallback: bool) -> Any:
        """Three-form lookup shared by functions, classes and constants.

        `table` names the attribute holding the symbols of the kind looked up.
        """
        name = _strip_relative(name)
        if is_absolutely_qualified(name):
            return self.get_global()._resolve_symbol(
                table, name.lstrip(NAMESPACE_SEPARATOR), fold_case, fallback=False)
        if is_unqualified(name):
            symbols = getattr(self, table)
            key = name.lower() if fold_case else name
            if key in symbols:
                return symbols[key]
            # PHP falls back to the global namespace for unqualified
            # function and constant names
            root = self.get_global()
            if fallback and self is not root:
                return root._resolve_symbol(table, name, fold_case, fallback=False)
            raise UnboundIdentifier(name, self)
        head, tail = split_namespace(name)
        return self.resolve_namespace(head)._resolve_symbol(table, tail, fold_case, fallback=False)


class NamespaceContinuationEnvironment(NamespaceEnvironment):
    """Continues a namespace for variable bindings.

    Namespace-visible declarations and lookups go to the nearest enclosing
    real namespace; variables chain like any other scope.
    """

    def get_namespace(self) -> NamespaceEnvironment:
        env = self.parent
        while isinstance(env, NamespaceContinuationEnvironment):
            env = env.parent
        if not isinstance(env, NamespaceEnvironment):
            raise StructuralInvariantViolation(
                'NamespaceContinuationEnvironments must be enclosed by a NamespaceEnvironment')
        return env

    def create_namespace(self, name: str) -> NamespaceEnvironment:
        return self.get_namespace().create_namespace(name)

    def register_function(self, name: str, node: Any) -> None:
        self.get_namespace().register_function(name, node)

    def register_class(self, name: str, node: Any) -> None:
        self.get_namespace().register_class(name, node)

    def define_constant(self, name: str, node: Any) -> None:
        self.get_namespace().define_constant(name, node)

    def resolve_namespace(self, name: Optional[str] = None) -> NamespaceEnvironment:
        return self.get_namespace().resolve_namespace(name)

    def resolve_function(self, name: str) -> Any:
        return self.get_namespace().resolve_function(name)

    def resolve_class(self, name: str) -> Any:
        return self.get_namespace().resolve_class(name)

    def resolve_constant(self, name: str) -> Any:
        return self.get_namespace().resolve_constant(name)


class GlobalEnvironment(NamespaceEnvironment):
    """Root of every environment chain for one analysis run.

    Besides the global namespace tables it owns the superglobals, the
    node -> environment annotations written by the resolver, and the memo
    table of function analysers.
    """

    def __init__(self):
        super().__init__('Global', None)
        self.superglobals: Dict[str, Superglobal] = {}
        for name in SUPERGLOBALS:
            if name == '$GLOBALS':
                self.superglobals[name] = Superglobal(name, self.variables)
            else:
                self.superglobals[name] = Superglobal(name)
        self.variables.update(self.superglobals)

        self.annotations: Dict[Any, Environment] = {}
        self.analysers: Dict[Any, Any] = {}
        # declarations whose analysers are being built
        self.in_progress: Set[Any] = set()
        # final top-level environments of the programs resolved so far
        self.program_environments: List[Environment] = []

    def get_global(self) -> 'GlobalEnvironment':
        return self

    def get_superglobals(self) -> Dict[str, Superglobal]:
        return self.superglobals

    def annotate(self, node: Any, environment: Environment) -> None:
        self.annotations[node] = environment

    def environment_of(self, node: Any) -> Environment:
        """The environment visible at `node` in program order."""
        try:
            return self.annotations[node]
        except KeyError:
            raise StructuralInvariantViolation(f'{node!r} has no environment annotation') from None

    def resolve_global_variable(self, name: str) -> Any:
        """Resolve a variable in global scope as it stands at the end of the
        programs resolved so far (most recently resolved program first)."""
        for environment in reversed(self.program_environments):
            try:
                return environment.resolve_variable(name)
            except UnboundIdentifier:
                continue
        return self.resolve_variable(name)
