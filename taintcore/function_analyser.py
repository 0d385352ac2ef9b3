#!/usr/bin/env python3
"""
Function analyser: per-function return summaries and the call-site taint query.

An ExpressionTracer turns an expression into a dependency map
(variable name -> VariableInfo) by following each variable back to the
assignment visible at that node, until it reaches a leaf: an input source
(TAINTED), a parameter (resolved per call site), or something that could not
be resolved (UNKNOWN).

A FunctionAnalyser traces every return statement of a function once and keeps
the dependency maps. At a concrete call site each parameter leaf is replaced
by the dependency map of its argument, and analyse_function_call() joins the
result.
"""

import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .environment import (
    Environment, GlobalEnvironment, GlobalReference, ParameterBinding, Superglobal,
)
from .exceptions import UnboundIdentifier, UnsupportedConstruct
from .resolver import SCOPE_TYPES, container_variable, parameter_name, parameter_nodes
from .rule_engine import RuleEngine, get_rule_engine, normalize_name
from .taint import (
    Taint, VariableInfo, VariableMap, merge_variables, summarize,
)
from .ts_adapter import TSNode

logger = logging.getLogger(__name__)

LITERAL_TYPES = frozenset({
    'integer', 'float', 'boolean', 'null', 'string', 'nowdoc',
    'name', 'qualified_name', 'relative_name', 'class_constant_access_expression',
})

# Parts of an interpolated string that are plain text
_STRING_PARTS = frozenset({
    'string_content', 'string_value', 'escape_sequence', 'heredoc_start', 'heredoc_end',
    'text_interpolation', 'comment',
})

_CONTAINER_TYPES = frozenset({
    'subscript_expression', 'member_access_expression', 'nullsafe_member_access_expression',
})

# Casts that keep the textual content of their operand
_PRESERVING_CASTS = frozenset({'string', 'array', 'object', 'binary'})

_METHOD_CALLS = frozenset({
    'member_call_expression', 'nullsafe_member_call_expression', 'scoped_call_expression',
})


def argument_value(arg: TSNode) -> Optional[TSNode]:
    """The expression passed by an `argument` node."""
    if arg.type != 'argument':
        return arg
    named = arg.named_children
    return named[-1] if named else None


def argument_name(arg: TSNode) -> str:
    """'$name' for a named argument (`f(name: $v)`), '' otherwise."""
    if arg.type != 'argument' or len(arg.named_children) < 2:
        return ''
    name = arg.child_by_field('name')
    return '$' + name.text if name is not None else ''


def collect_returns(body: TSNode) -> List[TSNode]:
    """Return statements of a body, skipping nested functions, closures and classes."""
    returns = []
    stack = [body]
    while stack:
        node = stack.pop()
        if node.type == 'return_statement':
            returns.append(node)
        for child in reversed(node.named_children):
            if child.type not in SCOPE_TYPES:
                stack.append(child)
    return returns


class ExpressionTracer:
    """Computes dependency maps for expressions.

    Args:
        global_env:    Root environment holding the resolver's annotations.
        rules:         Source and sanitizer registry.
        parameters:    Names treated as parameters of the traced function.
        resolve_calls: Replace calls to user-defined functions by the callee's
                       return dependencies, with its parameters mapped onto
                       the traced arguments. Function summaries and the
                       call-site query turn it on.
    """

    def __init__(self, global_env: GlobalEnvironment, rules: RuleEngine,
                 parameters: Sequence[str] = (), resolve_calls: bool = False):
        self.global_env = global_env
        self.rules = rules
        self.parameters = set(parameters)
        self.resolve_calls = resolve_calls
        # materialized variables, by name
        self.variables: Dict[str, VariableInfo] = {}
        self.unresolved: List[str] = []
        self.unsupported: List[UnsupportedConstruct] = []
        self._active: Set[TSNode] = set()
        self._traced: Dict[TSNode, VariableMap] = {}
        self._dispatch = {
            'variable_name': self._trace_variable,
            'dynamic_variable_name': self._trace_dynamic,
            'update_expression': self._trace_operands,
            'unary_op_expression': self._trace_unary,
            'error_suppression_expression': self._trace_operands,
            'binary_expression': self._trace_operands,
            'sequence_expression': self._trace_operands,
            'parenthesized_expression': self._trace_operands,
            'array_creation_expression': self._trace_array,
            'subscript_expression': self._trace_container,
            'member_access_expression': self._trace_container,
            'nullsafe_member_access_expression': self._trace_container,
            'scoped_property_access_expression': self._trace_static_property,
            'function_call_expression': self._trace_call,
            'conditional_expression': self._trace_conditional,
            'cast_expression': self._trace_cast,
            'encapsed_string': self._trace_interpolated,
            'heredoc': self._trace_interpolated,
            'heredoc_body': self._trace_interpolated,
            'shell_command_expression': self._trace_interpolated,
            'assignment_expression': self._trace_assignment,
            'reference_assignment_expression': self._trace_assignment,
            'augmented_assignment_expression': self._trace_assignment,
            'argument': self._trace_argument,
            'variadic_unpacking': self._trace_operands,
        }

    def trace(self, expr: Optional[TSNode]) -> VariableMap:
        """Dependency map of `expr`: every leaf it may draw its value from."""
        if expr is None or expr.type in LITERAL_TYPES:
            return {}
        handler = self._dispatch.get(expr.type)
        if handler is not None:
            return handler(expr)
        if expr.type in _METHOD_CALLS:
            self._unsupported('method call', expr)
        else:
            self._unsupported(expr.type, expr)
        return {}

    def _unsupported(self, kind: str, node: TSNode):
        gap = UnsupportedConstruct(kind, node)
        logger.debug("%s, not traced", gap)
        self.unsupported.append(gap)

    # -- variables ----------------------------------------------------------

    def resolve_variable(self, name: str, node: TSNode) -> VariableInfo:
        """Materialize the record for `name`, read at `node`.

        The first resolution of a name is cached and reused for every later
        read of the same name.
        """
        info = self.variables.get(name)
        if info is not None:
            return info
        if name in self.parameters:
            info = VariableInfo(name)
        else:
            info = self._lookup(name, node)
        self.variables[name] = info
        return info

    def _lookup(self, name: str, node: TSNode) -> VariableInfo:
        environment: Environment = self.global_env.environment_of(node)
        try:
            return VariableInfo(name, definition=environment.resolve_variable(name))
        except UnboundIdentifier as exc:
            logger.debug("%s at line %d, treated as unknown", exc, node.line)
            self.unresolved.append(name)
            return VariableInfo(name, Taint.UNKNOWN)

    def _trace_variable(self, node: TSNode) -> VariableMap:
        name = node.text
        info = self.resolve_variable(name, node)
        if self.rules.is_input_variable(name):
            info.taint = Taint.TAINTED
            return {name: info}
        if info.definition is not None and info.definition in self._active:
            # the cached binding is the one being traced: read the one visible here
            info = self._lookup(name, node)
        return self._trace_binding(info)

    def _trace_binding(self, info: VariableInfo) -> VariableMap:
        name, binding = info.name, info.definition
        if binding is None:
            return {name: info}
        if isinstance(binding, GlobalReference):
            try:
                binding = binding.resolve()
            except UnboundIdentifier as exc:
                logger.debug("global %s: %s", name, exc)
                return {name: VariableInfo(name, Taint.UNKNOWN)}
            if isinstance(binding, GlobalReference):
                return {name: VariableInfo(name, Taint.UNKNOWN)}
            return self._trace_binding(VariableInfo(name, definition=binding))
        if isinstance(binding, Superglobal):
            return {name: VariableInfo(name, Taint.UNKNOWN, definition=binding)}
        if isinstance(binding, ParameterBinding):
            if binding.name in self.parameters:
                return {name: VariableInfo(name)}
            # bound by a caller this trace cannot see
            return {name: VariableInfo(name, Taint.UNKNOWN, definition=binding)}
        if binding in self._traced:
            return self._traced[binding]
        if binding in self._active:
            logger.debug("Definition of %s at line %d is already being traced", name, binding.line)
            return {}
        self._active.add(binding)
        try:
            deps = self._trace_definition(name, binding)
        finally:
            self._active.discard(binding)
        self._traced[binding] = deps
        return deps

    def _trace_definition(self, name: str, node: TSNode) -> VariableMap:
        if node.type in ('assignment_expression', 'reference_assignment_expression',
                         'augmented_assignment_expression'):
            left = node.child_by_field('left')
            deps = self.trace(node.child_by_field('right'))
            if left is not None and (node.type == 'augmented_assignment_expression'
                                     or left.type in _CONTAINER_TYPES):
                # `$a[] = ..`, `$a->p = ..` and `$a .= ..` keep the old contents
                deps = merge_variables(self._prior_binding(name, left), deps)
            return deps
        if node.type == 'foreach_statement':
            named = node.named_children
            return self.trace(named[0]) if named else {}
        if node.type == 'static_variable_declaration':
            return self.trace(node.child_by_field('value'))
        self._unsupported(f'{node.type} binding', node)
        return {name: VariableInfo(name, Taint.UNKNOWN, definition=node)}

    def _prior_binding(self, name: str, left: TSNode) -> VariableMap:
        base = container_variable(left) if left.type in _CONTAINER_TYPES else left
        if base is None or base.type != 'variable_name':
            return {}
        if self.rules.is_input_variable(name):
            return {name: VariableInfo(name, Taint.TAINTED)}
        if name in self.parameters:
            return {name: VariableInfo(name)}
        try:
            binding = self.global_env.environment_of(base).resolve_variable(name)
        except UnboundIdentifier:
            return {}
        return self._trace_binding(VariableInfo(name, definition=binding))

    def _trace_dynamic(self, node: TSNode) -> VariableMap:
        self._unsupported('dynamic variable name', node)
        return {node.text: VariableInfo(node.text, Taint.UNKNOWN)}

    # -- compound expressions -------------------------------------------------

    def _trace_operands(self, node: TSNode) -> VariableMap:
        return merge_variables(*(self.trace(child) for child in node.named_children))

    def _trace_unary(self, node: TSNode) -> VariableMap:
        if node.has_token('!'):
            return {}
        return self._trace_operands(node)

    def _trace_array(self, node: TSNode) -> VariableMap:
        maps = []
        for element in node.named_children:
            if element.type == 'array_element_initializer':
                values = element.named_children
                if values:
                    maps.append(self.trace(values[-1]))
        return merge_variables(*maps)

    def _trace_container(self, node: TSNode) -> VariableMap:
        # element and property reads depend on the whole container
        base = node.child_by_field('object')
        if base is None:
            named = node.named_children
            base = named[0] if named else None
        return self.trace(base)

    def _trace_static_property(self, node: TSNode) -> VariableMap:
        self._unsupported('static property', node)
        return {}

    def _trace_conditional(self, node: TSNode) -> VariableMap:
        body = node.child_by_field('body')
        if body is None:
            # `$a ?: $b` yields the condition itself
            body = node.child_by_field('condition')
        return merge_variables(self.trace(body), self.trace(node.child_by_field('alternative')))

    def _trace_cast(self, node: TSNode) -> VariableMap:
        cast_type = node.child_by_field('type')
        if cast_type is not None and cast_type.text.strip().lower() in _PRESERVING_CASTS:
            return self.trace(node.child_by_field('value'))
        return {}

    def _trace_interpolated(self, node: TSNode) -> VariableMap:
        return merge_variables(*(self.trace(child) for child in node.named_children
                                 if child.type not in _STRING_PARTS))

    def _trace_assignment(self, node: TSNode) -> VariableMap:
        deps = self.trace(node.child_by_field('right'))
        left = node.child_by_field('left')
        if node.type == 'augmented_assignment_expression' and left is not None:
            deps = merge_variables(self.trace(left), deps)
        return deps

    def _trace_argument(self, node: TSNode) -> VariableMap:
        return self.trace(argument_value(node))

    # -- calls ----------------------------------------------------------------

    def _trace_call(self, node: TSNode) -> VariableMap:
        func = node.child_by_field('function')
        if func is None or func.type not in ('name', 'qualified_name', 'relative_name'):
            self._unsupported('dynamic function name', node)
            label = func.text if func is not None else node.text
            return {label: VariableInfo(label, Taint.UNKNOWN)}
        function_name = normalize_name(func.text)
        if self.rules.is_input_function(function_name):
            label = f'{function_name}()'
            return {label: VariableInfo(label, Taint.TAINTED, definition=node)}
        if self.resolve_calls:
            result = self._resolve_call(node, func.text)
            if result is not None:
                return result
        maps = [self.apply_sanitizers(self.trace(arg), function_name)
                for arg in node.get_arguments()]
        return merge_variables(*maps)

    def apply_sanitizers(self, deps: VariableMap, function_name: str) -> VariableMap:
        """Record the effect of passing `deps` through `function_name`."""
        function_name = normalize_name(function_name)
        if self.rules.is_sanitising_function(function_name):
            return {name: info.with_sanitizer(function_name) for name, info in deps.items()}
        if self.rules.is_sanitising_reverse_function(function_name):
            affected = self.rules.get_affected_sanitiser(function_name)
            return {name: info.without_sanitizer(affected) for name, info in deps.items()}
        return deps

    def _resolve_call(self, node: TSNode, function_name: str) -> Optional[VariableMap]:
        try:
            declaration = self.global_env.environment_of(node).resolve_function(function_name)
        except UnboundIdentifier:
            return None
        if declaration in self.global_env.in_progress:
            # recursive call: the callee's summary is not complete yet
            label = f'{normalize_name(function_name)}()'
            logger.debug("Recursive call to %s at line %d, treated as unknown", label, node.line)
            return {label: VariableInfo(label, Taint.UNKNOWN, definition=node)}
        analyser = FunctionAnalyser.for_declaration(declaration, self.global_env, self.rules)
        return analyser.call_dependencies(node.get_arguments(), self)


class FunctionAnalyser:
    """Return summaries of one function, method, closure or arrow function.

    Calls to other user functions are resolved while the summary is built.
    A call back into a function whose summary is still being built yields
    an UNKNOWN leaf.

    Usage:
        analyser = FunctionAnalyser.get_function_analyser(env, 'f')
        taint, sanitizers = analyser.analyse_function_call(call.get_arguments())
    """

    def __init__(self, declaration: TSNode, global_env: GlobalEnvironment,
                 rules: Optional[RuleEngine] = None):
        self.declaration = declaration
        self.global_env = global_env
        self.rules = rules or get_rule_engine()
        self.parameters: List[TSNode] = parameter_nodes(declaration)
        self.parameter_names: List[str] = [parameter_name(p) for p in self.parameters]
        self.tracer = ExpressionTracer(global_env, self.rules, parameters=self.parameter_names,
                                       resolve_calls=True)

        body = declaration.child_by_field('body')
        self.statements: List[TSNode] = []
        # source line -> dependency map of the returned expression
        self.return_statements: Dict[int, VariableMap] = {}
        if body is None:
            return
        global_env.in_progress.add(declaration)
        try:
            self._collect(declaration, body)
        finally:
            global_env.in_progress.discard(declaration)
        logger.debug("Analysed %s: %d parameters, %d return lines",
                     self.name, len(self.parameters), len(self.return_statements))

    def __repr__(self):
        return f'FunctionAnalyser({self.name!r})'

    @property
    def name(self) -> str:
        name = self.declaration.child_by_field('name')
        return name.text if name is not None else '{closure}'

    def _collect(self, declaration: TSNode, body: TSNode):
        if declaration.type == 'arrow_function':
            self._add_return(body.line, self.tracer.trace(body))
            return
        self.statements = body.named_children
        for statement in collect_returns(body):
            values = [c for c in statement.named_children if c.type != 'comment']
            self._add_return(statement.line, self.tracer.trace(values[0]) if values else {})

    def _add_return(self, line: int, deps: VariableMap):
        if line in self.return_statements:
            deps = merge_variables(self.return_statements[line], deps)
        self.return_statements[line] = deps

    @classmethod
    def get_function_analyser(cls, environment: Environment, function_name: str,
                              rules: Optional[RuleEngine] = None) -> 'FunctionAnalyser':
        """Memoized analyser of the function `function_name` resolves to from
        `environment`. Raises UnboundIdentifier for unknown functions."""
        declaration = environment.resolve_function(function_name)
        return cls.for_declaration(declaration, environment.get_global(), rules)

    @classmethod
    def for_declaration(cls, declaration: TSNode, global_env: GlobalEnvironment,
                        rules: Optional[RuleEngine] = None) -> 'FunctionAnalyser':
        analyser = global_env.analysers.get(declaration)
        if analyser is None:
            analyser = cls(declaration, global_env, rules)
            global_env.analysers[declaration] = analyser
        return analyser

    def analyse_function_call(self, args: Sequence[TSNode]) -> Tuple[Taint, Set[str]]:
        """Taint and sanitizers of the value returned for these arguments.

        Arguments are evaluated in the caller's environment. The result joins
        every return statement, since any of them may be the one executed.
        """
        caller = ExpressionTracer(self.global_env, self.rules, resolve_calls=True)
        return summarize(self.call_dependencies(args, caller))

    def call_dependencies(self, args: Sequence[TSNode], caller: ExpressionTracer) -> VariableMap:
        """Dependency map of the returned value, as seen by `caller`.

        Each parameter leaf of a return statement is replaced by the map of
        its argument, passed through the sanitizer steps the function
        applies to that parameter. Other leaves are kept as they are.
        """
        bound = self._bind_arguments(args, caller)
        maps = []
        for deps in self.return_statements.values():
            for name, info in deps.items():
                if name not in self.parameter_names:
                    maps.append({name: info})
                    continue
                argument = bound.get(name, {})
                maps.append({key: arg.passed_through(info) for key, arg in argument.items()})
                if info.taint != Taint.UNASSIGNED:
                    maps.append({name: info})
        return merge_variables(*maps)

    def _bind_arguments(self, args: Sequence[TSNode],
                        caller: ExpressionTracer) -> Dict[str, VariableMap]:
        """Map parameter names to the dependency maps of their arguments."""
        bound: Dict[str, VariableMap] = {}

        def bind(name: str, deps: VariableMap):
            bound[name] = merge_variables(bound[name], deps) if name in bound else deps

        position = 0
        for arg in args:
            value = argument_value(arg)
            if value is None:
                continue
            deps = caller.trace(value)
            named = argument_name(arg)
            if named:
                bind(named, deps)
            elif value.type == 'variadic_unpacking':
                # `f(...$args)` may fill every remaining parameter
                for name in self.parameter_names[position:]:
                    bind(name, deps)
            elif position < len(self.parameters):
                bind(self.parameter_names[position], deps)
                if self.parameters[position].type != 'variadic_parameter':
                    position += 1

        for param, name in zip(self.parameters, self.parameter_names):
            default = param.child_by_field('default_value')
            if name not in bound and default is not None:
                bound[name] = caller.trace(default)
        return bound


def resolve_expression_taint(expr: TSNode, global_env: GlobalEnvironment,
                             rules: Optional[RuleEngine] = None) -> Tuple[Taint, Set[str]]:
    """Evaluate `expr` where it stands, resolving calls to user functions."""
    return summarize(trace_in_place(expr, global_env, rules))


def trace_in_place(expr: TSNode, global_env: GlobalEnvironment,
                   rules: Optional[RuleEngine] = None) -> VariableMap:
    """Dependency map of `expr` where it stands, with user function calls resolved."""
    tracer = ExpressionTracer(global_env, rules or get_rule_engine(), resolve_calls=True)
    return tracer.trace(expr)
