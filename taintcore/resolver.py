#!/usr/bin/env python3
"""
Environment resolver: one pass over a tree-sitter PHP tree that stamps every
node with the environment visible at that point in program order.

Scope-opening nodes (namespaces, functions, methods, closures, classes) push a
new environment for their body and pop it afterwards. Binding nodes
(assignments, `global`, `unset`, `foreach`) fork the current environment and
replace the top of the stack, so later statements of the same block see the
new binding while earlier nodes keep their snapshot. Branches and loop bodies
are walked in source order as if they always execute.
"""

import logging
from typing import Dict, Callable, List

from .environment import (
    ClassEnvironment, Environment, FunctionEnvironment, GlobalEnvironment,
    ParameterBinding,
)
from .exceptions import StructuralInvariantViolation, UnboundIdentifier
from .ts_adapter import TSNode, strip_quotes

logger = logging.getLogger(__name__)

CLOSURE_TYPES = frozenset({'anonymous_function', 'anonymous_function_creation_expression'})
CLASS_TYPES = frozenset({
    'class_declaration', 'interface_declaration', 'trait_declaration', 'enum_declaration',
})
ASSIGNMENT_TYPES = frozenset({
    'assignment_expression', 'reference_assignment_expression', 'augmented_assignment_expression',
})
PARAMETER_TYPES = frozenset({'simple_parameter', 'variadic_parameter', 'property_promotion_parameter'})
# Nodes whose body is analysed separately from the enclosing code
SCOPE_TYPES = frozenset({'function_definition', 'method_declaration', 'arrow_function'}) \
    | CLOSURE_TYPES | CLASS_TYPES

# Element and property writes rebind the whole container
_CONTAINER_TYPES = frozenset({
    'subscript_expression', 'member_access_expression', 'nullsafe_member_access_expression',
})

# Node kinds walked without any effect on scoping
_KNOWN_TYPES = frozenset({
    'program', 'php_tag', 'text', 'text_interpolation', 'comment', 'compound_statement',
    'expression_statement', 'echo_statement', 'if_statement', 'else_clause', 'else_if_clause',
    'while_statement', 'do_statement', 'for_statement', 'switch_statement', 'switch_block',
    'case_statement', 'default_statement', 'colon_block', 'return_statement', 'break_statement',
    'continue_statement', 'try_statement', 'catch_clause', 'finally_clause', 'throw_expression',
    'declaration_list', 'formal_parameters', 'arguments', 'argument', 'name', 'namespace_name',
    'qualified_name', 'relative_name', 'namespace_name_as_prefix', 'namespace_use_declaration',
    'namespace_use_clause', 'namespace_use_group', 'use_declaration', 'declare_statement',
    'declare_directive', 'empty_statement', 'named_label_statement', 'goto_statement',
    'exit_statement', 'attribute_list', 'attribute_group', 'attribute', 'visibility_modifier',
    'static_modifier', 'abstract_modifier', 'final_modifier', 'readonly_modifier',
    'var_modifier', 'base_clause', 'class_interface_clause', 'primitive_type', 'named_type',
    'optional_type', 'union_type', 'intersection_type', 'bottom_type', 'cast_type',
    'enum_declaration_list', 'enum_case', 'use_list', 'use_instead_of_clause', 'use_as_clause',
    'function_static_declaration', 'anonymous_function_use_clause', 'by_ref', 'list_literal',
    'pair', 'variadic_unpacking', 'variadic_placeholder', 'reference_modifier',
    'string', 'string_content', 'string_value', 'encapsed_string', 'escape_sequence',
    'heredoc', 'heredoc_body', 'heredoc_start', 'heredoc_end', 'nowdoc', 'nowdoc_body',
    'nowdoc_string', 'integer', 'float', 'boolean', 'null', 'variable_name',
    'dynamic_variable_name', 'binary_expression', 'unary_op_expression', 'update_expression',
    'cast_expression', 'conditional_expression', 'parenthesized_expression',
    'sequence_expression', 'subscript_expression', 'member_access_expression',
    'nullsafe_member_access_expression', 'scoped_property_access_expression',
    'class_constant_access_expression', 'function_call_expression', 'member_call_expression',
    'nullsafe_member_call_expression', 'scoped_call_expression', 'object_creation_expression',
    'array_creation_expression', 'array_element_initializer', 'include_expression',
    'include_once_expression', 'require_expression', 'require_once_expression',
    'print_intrinsic', 'clone_expression', 'shell_command_expression', 'match_expression',
    'match_block', 'match_conditional_expression', 'match_condition_list',
    'match_default_expression', 'error_suppression_expression', 'yield_expression',
    'instanceof_expression', 'silence_expression', 'static_variable_declaration',
    'unset_statement', 'global_declaration', 'const_declaration', 'const_element',
    'property_declaration', 'property_element', 'property_initializer',
})


def variable_name(node: TSNode) -> str:
    """The '$'-prefixed name of a variable_name node, '' for anything else."""
    if node is not None and node.type == 'variable_name':
        return node.text
    return ''


def parameter_nodes(declaration: TSNode) -> List[TSNode]:
    """Parameter nodes of a function, method, closure or arrow function."""
    params = declaration.child_by_field('parameters')
    if params is None:
        return []
    return [p for p in params.named_children if p.type in PARAMETER_TYPES]


def parameter_name(param: TSNode) -> str:
    name = param.child_by_field('name')
    if name is None:
        for child in param.named_children:
            if child.type == 'variable_name':
                return child.text
        return ''
    return variable_name(name)


def container_variable(node: TSNode) -> TSNode:
    """Follow `$a[..]->b[..]` down to its base node."""
    while node is not None and node.type in _CONTAINER_TYPES:
        base = node.child_by_field('object')
        if base is None:
            named = node.named_children
            base = named[0] if named else None
        node = base
    return node


def assignment_targets(left: TSNode) -> List[TSNode]:
    """Variable nodes (re)bound by an assignment to `left`."""
    if left is None:
        return []
    if left.type == 'variable_name':
        return [left]
    if left.type in _CONTAINER_TYPES:
        base = container_variable(left)
        return [base] if base is not None and base.type == 'variable_name' else []
    if left.type == 'by_ref':
        return [t for child in left.named_children for t in assignment_targets(child)]
    if left.type in ('list_literal', 'array_creation_expression'):
        targets = []
        for child in left.named_children:
            if child.type == 'array_element_initializer':
                elements = child.named_children
                if elements:
                    targets.extend(assignment_targets(elements[-1]))
            else:
                targets.extend(assignment_targets(child))
        return targets
    if left.type == 'pair':
        return [t for child in left.named_children for t in assignment_targets(child)]
    return []


class EnvironmentResolver:
    """Annotates a parsed program with environments.

    Usage:
        global_env = GlobalEnvironment()
        EnvironmentResolver(global_env).resolve(parse_php_ts(code))
        env = global_env.environment_of(some_node)
    """

    def __init__(self, global_env: GlobalEnvironment):
        self.global_env = global_env
        self._stack: List[Environment] = []
        self._handlers: Dict[str, Callable[[TSNode], None]] = {
            'program': self._visit_program,
            'namespace_definition': self._visit_namespace,
            'function_definition': self._visit_function,
            'method_declaration': self._visit_method,
            'arrow_function': self._visit_arrow_function,
            'property_declaration': self._visit_property,
            'const_declaration': self._visit_const,
            'global_declaration': self._visit_global,
            'unset_statement': self._visit_unset,
            'foreach_statement': self._visit_foreach,
            'static_variable_declaration': self._visit_static_variable,
            'function_call_expression': self._visit_call,
        }
        for node_type in CLOSURE_TYPES:
            self._handlers[node_type] = self._visit_closure
        for node_type in CLASS_TYPES:
            self._handlers[node_type] = self._visit_class
        for node_type in ASSIGNMENT_TYPES:
            self._handlers[node_type] = self._visit_assignment

    def resolve(self, root: TSNode) -> Environment:
        """Annotate `root` and return its final top-level environment."""
        self._stack = [self.global_env]
        self._visit(root)
        if len(self._stack) != 1:
            raise StructuralInvariantViolation(
                f'Environment stack unbalanced after traversal: {self._stack!r}')
        self.global_env.program_environments.append(self._stack[0])
        return self._stack[0]

    # -- stack --------------------------------------------------------------

    def _current(self) -> Environment:
        return self._stack[-1]

    def _set_current(self, environment: Environment):
        if not self._stack:
            raise StructuralInvariantViolation('Environment stack cannot be empty.')
        self._stack[-1] = environment

    def _push(self, environment: Environment):
        self._stack.append(environment)

    def _pop(self) -> Environment:
        if len(self._stack) <= 1:
            raise StructuralInvariantViolation(
                'Cannot pop the global environment off the environment stack.')
        return self._stack.pop()

    def _annotate(self, node: TSNode, environment: Environment = None):
        self.global_env.annotate(node, environment or self._current())

    # -- traversal ----------------------------------------------------------

    def _visit(self, node: TSNode):
        handler = self._handlers.get(node.type)
        if handler is not None:
            handler(node)
            return
        if node.type not in _KNOWN_TYPES:
            logger.debug("Unknown node type: %s at line %d, ignored.", node.type, node.line)
        self._annotate(node)
        self._visit_children(node)

    def _visit_children(self, node: TSNode):
        for child in node.named_children:
            self._visit(child)

    def _visit_scope(self, node: TSNode, environment: Environment, parts=('parameters', 'body')):
        """Walk the given parts of `node` with `environment` pushed."""
        self._annotate(node, environment)
        self._push(environment)
        for part in parts:
            child = node.child_by_field(part)
            if child is not None:
                self._visit(child)
        self._pop()

    def _visit_program(self, node: TSNode):
        self._annotate(node)
        # `namespace Foo;` applies to every following statement
        open_namespace = False
        for child in node.named_children:
            if child.type == 'namespace_definition' and child.child_by_field('body') is None:
                if open_namespace:
                    self._leave_namespace()
                self._enter_namespace(child)
                open_namespace = True
            else:
                self._visit(child)
        if open_namespace:
            self._leave_namespace()

    def _enter_namespace(self, node: TSNode):
        name = node.child_by_field('name')
        if name is None:
            environment = self._current()
        else:
            environment = self._current().create_namespace(name.text)
        self._annotate(node, environment)
        self._push(environment)

    def _leave_namespace(self):
        self.global_env.program_environments.append(self._pop())

    def _visit_namespace(self, node: TSNode):
        # `namespace X;` forms outside the program level cover nothing
        body = node.child_by_field('body')
        self._enter_namespace(node)
        if body is not None:
            self._visit(body)
        self._leave_namespace()

    def _bind_parameters(self, environment: FunctionEnvironment, declaration: TSNode):
        for index, param in enumerate(parameter_nodes(declaration)):
            name = parameter_name(param)
            if name:
                environment.bind_parameter(name, ParameterBinding(name, param, index))

    def _visit_function(self, node: TSNode):
        name = node.child_by_field('name')
        environment = self._current().create_function(name.text if name else '', node)
        self._bind_parameters(environment, node)
        self._visit_scope(node, environment)

    def _visit_method(self, node: TSNode):
        name = node.child_by_field('name')
        name = name.text if name else ''
        current = self._current()
        if isinstance(current, ClassEnvironment):
            environment = current.create_function(name, node)
        else:
            # method of an anonymous class
            environment = FunctionEnvironment(name, current, node)
        self._bind_parameters(environment, node)
        environment.bind_parameter('$this', ParameterBinding('$this', node))
        self._visit_scope(node, environment)

    def _visit_closure(self, node: TSNode):
        outer = self._current()
        environment = FunctionEnvironment('{closure}', outer, node)
        self._bind_parameters(environment, node)
        for child in node.named_children:
            if child.type != 'anonymous_function_use_clause':
                continue
            captured_vars = [t for var in child.named_children for t in assignment_targets(var)]
            for captured in captured_vars:
                self._annotate(captured, outer)
                name = captured.text
                try:
                    environment.bind_parameter(name, outer.resolve_variable(name))
                except UnboundIdentifier:
                    logger.debug("Closure captures unbound variable %s at line %d", name, captured.line)
        self._visit_scope(node, environment)

    def _visit_arrow_function(self, node: TSNode):
        # arrow functions see the enclosing scope by value
        environment = self._current()
        for index, param in enumerate(parameter_nodes(node)):
            name = parameter_name(param)
            if name:
                environment = environment.define_variable_by_value(
                    name, ParameterBinding(name, param, index))
        self._visit_scope(node, environment)

    def _visit_class(self, node: TSNode):
        name = node.child_by_field('name')
        environment = self._current().create_class(name.text if name else '', node)
        self._visit_scope(node, environment, parts=('body',))

    def _visit_property(self, node: TSNode):
        current = self._current()
        self._annotate(node)
        for element in node.named_children:
            if element.type != 'property_element':
                self._visit(element)
                continue
            self._annotate(element)
            for child in element.named_children:
                if child.type == 'variable_name' and isinstance(current, ClassEnvironment):
                    current.define_property(child.text, element)
                self._visit(child)

    def _visit_const(self, node: TSNode):
        self._annotate(node)
        for element in node.named_children:
            if element.type == 'const_element':
                parts = element.named_children
                if parts and parts[0].type == 'name':
                    self._current().define_constant(parts[0].text, element)
            self._visit(element)

    def _visit_global(self, node: TSNode):
        environment = self._current()
        for child in node.named_children:
            self._annotate(child, environment)
            if child.type == 'variable_name':
                environment = environment.define_variable_by_reference(child.text, node)
            else:
                logger.debug("Dynamic global declaration at line %d ignored", child.line)
        self._set_current(environment)
        self._annotate(node, environment)

    def _visit_unset(self, node: TSNode):
        self._visit_children(node)
        environment = self._current()
        for child in node.named_children:
            if child.type == 'variable_name':
                environment = environment.unset_variable(child.text)
        self._set_current(environment)
        self._annotate(node, environment)

    def _visit_assignment(self, node: TSNode):
        left = node.child_by_field('left')
        right = node.child_by_field('right')
        # the value is evaluated before the target is bound
        if right is not None:
            self._visit(right)
        if left is not None:
            self._visit(left)
        environment = self._current()
        targets = assignment_targets(left)
        if left is not None and not targets:
            logger.debug("Assignment to %s at line %d binds no variable", left.type, node.line)
        for target in targets:
            environment = environment.define_variable_by_value(target.text, node)
        self._set_current(environment)
        self._annotate(node, environment)

    def _visit_foreach(self, node: TSNode):
        named = node.named_children
        self._annotate(node)
        if len(named) < 2:
            self._visit_children(node)
            return
        iterable, binding, body = named[0], named[1], named[2:]
        self._visit(iterable)
        self._visit(binding)
        environment = self._current()
        for target in assignment_targets(binding):
            environment = environment.define_variable_by_value(target.text, node)
        self._set_current(environment)
        for statement in body:
            self._visit(statement)

    def _visit_static_variable(self, node: TSNode):
        name = node.child_by_field('name')
        value = node.child_by_field('value')
        if value is not None:
            self._visit(value)
        environment = self._current()
        if name is not None and name.type == 'variable_name':
            self._annotate(name, environment)
            environment = environment.define_variable_by_value(name.text, node)
            self._set_current(environment)
        self._annotate(node, environment)

    def _visit_call(self, node: TSNode):
        self._annotate(node)
        self._visit_children(node)
        if node.get_function_name().lstrip('\\').lower() != 'define':
            return
        args = node.get_arguments()
        if args and args[0].named_children:
            constant = args[0].named_children[-1]
            if constant.type in ('string', 'encapsed_string'):
                self.global_env.define_constant(strip_quotes(constant.text), node)

