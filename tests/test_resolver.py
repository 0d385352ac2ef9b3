#!/usr/bin/env python3
"""Tests for the environment resolver over parsed PHP programs."""

import pytest
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from taintcore.environment import (
    ClassEnvironment, FunctionEnvironment, GlobalEnvironment, GlobalReference,
    ParameterBinding,
)
from taintcore.exceptions import StructuralInvariantViolation, UnboundIdentifier
from taintcore.resolver import EnvironmentResolver, assignment_targets
from taintcore.ts_adapter import parse_php_ts


def resolve(code):
    global_env = GlobalEnvironment()
    root = parse_php_ts(code, 'test.php')
    EnvironmentResolver(global_env).resolve(root)
    return global_env, root


def nodes(root, node_type, text=None):
    return [n for n in root.walk_descendants()
            if n.type == node_type and (text is None or n.text == text)]


def binding_at(global_env, node, name=None):
    return global_env.environment_of(node).resolve_variable(name or node.text)


class TestProgramOrder:
    def test_snapshot_between_statements(self):
        g, root = resolve('<?php\n$a = 1;\necho $a;\n$b = 2;\necho $a;\n')
        first_def = nodes(root, 'assignment_expression')[0]
        reads = [n for n in nodes(root, 'variable_name', '$a')
                 if n.line in (3, 5)]
        assert len(reads) == 2
        assert binding_at(g, reads[0]) == first_def
        assert binding_at(g, reads[1]) == first_def
        with pytest.raises(UnboundIdentifier):
            binding_at(g, reads[0], '$b')
        assert binding_at(g, reads[1], '$b') == nodes(root, 'assignment_expression')[1]

    def test_value_sees_previous_binding(self):
        g, root = resolve('<?php\n$a = 1;\n$a = $a + 1;\n')
        first, second = nodes(root, 'assignment_expression')
        read = [n for n in nodes(root, 'variable_name', '$a') if n.line == 3][-1]
        assert binding_at(g, read) == first
        assert g.environment_of(second).resolve_variable('$a') == second

    def test_element_assignment_rebinds_container(self):
        g, root = resolve('<?php\n$arr = [];\n$arr["k"] = $_GET["x"];\necho $arr;\n')
        element = nodes(root, 'assignment_expression')[1]
        read = [n for n in nodes(root, 'variable_name', '$arr') if n.line == 4][0]
        assert binding_at(g, read) == element

    def test_list_destructuring_binds_each_target(self):
        g, root = resolve('<?php\n[$a, $b] = explode(",", $s);\necho $a . $b;\n')
        assignment = nodes(root, 'assignment_expression')[0]
        echo = nodes(root, 'echo_statement')[0]
        env = g.environment_of(echo)
        assert env.resolve_variable('$a') == assignment
        assert env.resolve_variable('$b') == assignment
        targets = [t.text for t in assignment_targets(assignment.child_by_field('left'))]
        assert targets == ['$a', '$b']

    def test_unset(self):
        g, root = resolve('<?php\n$a = 1;\nunset($a);\necho $a;\n')
        read = [n for n in nodes(root, 'variable_name', '$a') if n.line == 4][0]
        with pytest.raises(UnboundIdentifier):
            binding_at(g, read)

    def test_foreach_binds_key_and_value(self):
        g, root = resolve('<?php\nforeach ($_GET as $k => $v) {\n  echo $v;\n}\n')
        loop = nodes(root, 'foreach_statement')[0]
        read = [n for n in nodes(root, 'variable_name', '$v') if n.line == 3][0]
        assert binding_at(g, read) == loop
        assert binding_at(g, read, '$k') == loop

    def test_branches_are_sequential(self):
        g, root = resolve('<?php\nif ($c) {\n  $a = 1;\n} else {\n  $a = 2;\n}\necho $a;\n')
        second = nodes(root, 'assignment_expression')[1]
        read = [n for n in nodes(root, 'variable_name', '$a') if n.line == 7][0]
        assert binding_at(g, read) == second


class TestScopes:
    def test_function_is_hard_boundary(self):
        g, root = resolve('<?php\n$x = 1;\nfunction f($p) {\n  return $x . $p;\n}\n')
        decl = nodes(root, 'function_definition')[0]
        assert g.resolve_function('f') == decl
        env = g.environment_of(decl)
        assert isinstance(env, FunctionEnvironment)
        x_read = [n for n in nodes(root, 'variable_name', '$x') if n.line == 4][0]
        with pytest.raises(UnboundIdentifier):
            binding_at(g, x_read)
        p_read = [n for n in nodes(root, 'variable_name', '$p') if n.line == 4][0]
        param = binding_at(g, p_read)
        assert isinstance(param, ParameterBinding)
        assert param.index == 0

    def test_superglobal_inside_function(self):
        g, root = resolve('<?php\nfunction f() {\n  return $_GET;\n}\n')
        read = nodes(root, 'variable_name', '$_GET')[0]
        assert binding_at(g, read) is g.get_superglobals()['$_GET']

    def test_global_declaration(self):
        g, root = resolve('<?php\n$cfg = $_GET["c"];\nfunction f() {\n  global $cfg;\n  return $cfg;\n}\n')
        read = [n for n in nodes(root, 'variable_name', '$cfg') if n.line == 5][0]
        binding = binding_at(g, read)
        assert isinstance(binding, GlobalReference)
        assert binding.resolve() == nodes(root, 'assignment_expression')[0]

    def test_class_and_method(self):
        g, root = resolve(
            '<?php\nclass Foo {\n  public $bar = 1;\n  function m($a) {\n    return $this;\n  }\n}\n')
        decl = nodes(root, 'class_declaration')[0]
        assert g.resolve_class('FOO') == decl
        method = nodes(root, 'method_declaration')[0]
        class_env = g.environment_of(method).parent
        assert isinstance(class_env, ClassEnvironment)
        assert '$bar' in class_env.properties
        assert class_env.resolve_method('m') == method
        this = nodes(root, 'variable_name', '$this')[0]
        assert isinstance(binding_at(g, this), ParameterBinding)

    def test_closure_captures_use_variables(self):
        g, root = resolve(
            '<?php\n$a = $_GET["x"];\n$b = 2;\n$f = function ($p) use ($a) {\n  return $a . $b;\n};\n')
        first = nodes(root, 'assignment_expression')[0]
        a_read = [n for n in nodes(root, 'variable_name', '$a') if n.line == 5][0]
        assert binding_at(g, a_read) == first
        b_read = [n for n in nodes(root, 'variable_name', '$b') if n.line == 5][0]
        with pytest.raises(UnboundIdentifier):
            binding_at(g, b_read)

    def test_arrow_function_sees_enclosing_scope(self):
        g, root = resolve('<?php\n$a = 1;\n$f = fn($x) => $x + $a;\n')
        first = nodes(root, 'assignment_expression')[0]
        a_read = [n for n in nodes(root, 'variable_name', '$a') if n.line == 3][0]
        assert binding_at(g, a_read) == first
        x_read = [n for n in nodes(root, 'variable_name', '$x')][-1]
        assert isinstance(binding_at(g, x_read), ParameterBinding)


class TestNamespaces:
    def test_semicolon_namespace(self):
        g, root = resolve('<?php\nnamespace App\\Util;\nfunction helper() {}\n')
        decl = nodes(root, 'function_definition')[0]
        assert g.resolve_namespace('App\\Util').resolve_function('helper') == decl
        with pytest.raises(UnboundIdentifier):
            g.resolve_function('helper')

    def test_braced_namespaces(self):
        g, root = resolve('<?php\nnamespace A {\n  function f() {}\n}\nnamespace B {\n  function f() {}\n}\n')
        fa, fb = nodes(root, 'function_definition')
        assert g.resolve_function('A\\f') == fa
        assert g.resolve_function('\\B\\f') == fb

    def test_unnamed_namespace_is_global(self):
        g, root = resolve('<?php\nnamespace {\n  function top() {}\n}\n')
        assert g.resolve_function('top') == nodes(root, 'function_definition')[0]

    def test_constants(self):
        g, root = resolve("<?php\nconst MAX = 5;\ndefine('LIMIT', 10);\n")
        assert g.resolve_constant('MAX') == nodes(root, 'const_element')[0]
        assert g.resolve_constant('LIMIT') == nodes(root, 'function_call_expression')[0]

    def test_program_environment_recorded(self):
        g, root = resolve('<?php\n$a = 1;\n')
        assert g.program_environments
        assert g.program_environments[-1].resolve_variable('$a') == nodes(root, 'assignment_expression')[0]


class TestResolverInvariants:
    def test_every_variable_is_annotated(self):
        g, root = resolve(
            '<?php\nfunction f($a) {\n  $b = $a;\n  foreach ($b as $c) { echo "$c"; }\n}\n'
            'class K { function m() { return $this->x; } }\n$r = f($_GET["q"]);\n')
        for node in nodes(root, 'variable_name'):
            g.environment_of(node)

    def test_popping_global_is_fatal(self):
        resolver = EnvironmentResolver(GlobalEnvironment())
        resolver.resolve(parse_php_ts('<?php echo 1;'))
        with pytest.raises(StructuralInvariantViolation):
            resolver._pop()

    def test_unknown_constructs_do_not_abort(self):
        g, root = resolve('<?php\n$x = match($a) { 1 => "a", default => "b" };\n$y = yield $x;\n')
        assert len(nodes(root, 'assignment_expression')) == 2

    def test_multiple_files_share_declarations(self):
        g = GlobalEnvironment()
        resolver = EnvironmentResolver(g)
        lib = parse_php_ts('<?php\nfunction helper($v) { return $v; }\n', 'lib.php')
        app = parse_php_ts('<?php\necho helper($_GET["x"]);\n', 'app.php')
        resolver.resolve(lib)
        resolver.resolve(app)
        call = nodes(app, 'function_call_expression')[0]
        assert g.environment_of(call).resolve_function('helper') == nodes(lib, 'function_definition')[0]
