#!/usr/bin/env python3
"""Tests for the environment chain: snapshots, scoping and name resolution."""

import pytest
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from taintcore.environment import (
    ClassEnvironment, FunctionEnvironment, GlobalEnvironment, GlobalReference,
    NamespaceContinuationEnvironment, NamespaceEnvironment, ScopeEnvironment,
    Superglobal, SUPERGLOBALS, split_namespace,
)
from taintcore.exceptions import StructuralInvariantViolation, UnboundIdentifier


@pytest.fixture
def global_env():
    return GlobalEnvironment()


class TestVariables:
    def test_define_then_resolve(self, global_env):
        env = global_env.define_variable_by_value('$a', 'node-a')
        assert env.resolve_variable('$a') == 'node-a'

    def test_copy_on_write(self, global_env):
        first = global_env.define_variable_by_value('$a', 'node-a')
        second = first.define_variable_by_value('$b', 'node-b')
        third = second.define_variable_by_value('$a', 'node-a2')
        assert second.resolve_variable('$a') == 'node-a'
        assert third.resolve_variable('$a') == 'node-a2'
        assert third.resolve_variable('$b') == 'node-b'
        # earlier snapshots never see later bindings
        assert first.resolve_variable('$a') == 'node-a'
        with pytest.raises(UnboundIdentifier):
            first.resolve_variable('$b')

    def test_unset(self, global_env):
        env = global_env.define_variable_by_value('$a', 'node-a')
        gone = env.unset_variable('$a')
        with pytest.raises(UnboundIdentifier) as info:
            gone.resolve_variable('$a')
        assert info.value.identifier == '$a'
        assert env.resolve_variable('$a') == 'node-a'
        again = gone.define_variable_by_value('$a', 'node-a3')
        assert again.resolve_variable('$a') == 'node-a3'

    def test_never_bound(self, global_env):
        with pytest.raises(UnboundIdentifier):
            global_env.resolve_variable('$missing')

    def test_variables_need_dollar(self, global_env):
        with pytest.raises(ValueError):
            global_env.define_variable_by_value('a', 'node')
        with pytest.raises(ValueError):
            global_env.create_function('f', 'decl-f').bind_parameter('x', 'param-x')

    def test_global_chain_continues_namespace(self, global_env):
        env = global_env.define_variable_by_value('$a', 'node-a')
        assert isinstance(env, NamespaceContinuationEnvironment)
        assert env.get_namespace() is global_env
        assert env.get_global() is global_env


class TestFunctionScope:
    def test_hard_boundary(self, global_env):
        outer = global_env.define_variable_by_value('$a', 'node-a')
        func = outer.create_function('f', 'decl-f')
        assert isinstance(func, FunctionEnvironment)
        with pytest.raises(UnboundIdentifier):
            func.resolve_variable('$a')
        assert global_env.resolve_function('f') == 'decl-f'

    def test_superglobals_are_shared(self, global_env):
        func = global_env.create_function('f', 'decl-f')
        assert func.resolve_variable('$_GET') is global_env.resolve_variable('$_GET')
        assert isinstance(func.resolve_variable('$_POST'), Superglobal)
        for name in SUPERGLOBALS:
            assert func.resolve_variable(name) is global_env.get_superglobals()[name]

    def test_globals_aliases_root_table(self, global_env):
        assert global_env.get_superglobals()['$GLOBALS'].bindings is global_env.variables

    def test_parameters(self, global_env):
        func = global_env.create_function('f', 'decl-f')
        func.bind_parameter('$x', 'param-x')
        body = func.define_variable_by_value('$y', 'node-y')
        assert body.resolve_variable('$x') == 'param-x'
        assert body.resolve_variable('$y') == 'node-y'
        with pytest.raises(UnboundIdentifier):
            func.resolve_variable('$y')

    def test_global_reference(self, global_env):
        top = global_env.define_variable_by_value('$cfg', 'node-cfg')
        global_env.program_environments.append(top)
        func = top.create_function('f', 'decl-f')
        body = func.define_variable_by_reference('$cfg', 'global-stmt')
        binding = body.resolve_variable('$cfg')
        assert isinstance(binding, GlobalReference)
        assert binding.resolve() == 'node-cfg'

    def test_global_reference_unbound(self, global_env):
        func = global_env.create_function('f', 'decl-f')
        binding = func.define_variable_by_reference('$nope', 'global-stmt').resolve_variable('$nope')
        with pytest.raises(UnboundIdentifier):
            binding.resolve()


class TestClassScope:
    def test_members(self, global_env):
        cls = global_env.create_class('Foo', 'decl-foo')
        assert isinstance(cls, ClassEnvironment)
        cls.define_property('$bar', 'prop-bar')
        method = cls.create_function('baz', 'decl-baz')
        assert method.name == 'Foo::baz'
        assert cls.resolve_property('$bar') == 'prop-bar'
        assert cls.resolve_method('BAZ') == 'decl-baz'
        assert global_env.resolve_class('foo') == 'decl-foo'
        # methods are not namespace functions
        with pytest.raises(UnboundIdentifier):
            global_env.resolve_function('baz')
        with pytest.raises(UnboundIdentifier):
            cls.resolve_property('$qux')

    def test_class_constants_fall_back_to_namespace(self, global_env):
        global_env.define_constant('LIMIT', 'global-limit')
        cls = global_env.create_class('Foo', 'decl-foo')
        cls.define_constant('MAX', 'class-max')
        assert cls.resolve_constant('MAX') == 'class-max'
        assert cls.resolve_constant('LIMIT') == 'global-limit'
        with pytest.raises(UnboundIdentifier):
            global_env.resolve_constant('MAX')


class TestNamespaces:
    def test_create_is_get_or_create(self, global_env):
        app = global_env.create_namespace('App')
        assert global_env.create_namespace('app') is app
        assert isinstance(app, NamespaceEnvironment)
        assert app.name == 'App'

    def test_nested_names(self, global_env):
        models = global_env.create_namespace('App\\Models')
        assert models.name == 'App\\Models'
        assert global_env.resolve_namespace('App').resolve_namespace('Models') is models
        assert global_env.resolve_namespace('App\\Models') is models

    def test_qualified_equals_stepwise(self, global_env):
        inner = global_env.create_namespace('A\\B')
        inner.register_function('C', 'decl-c')
        direct = global_env.resolve_function('A\\B\\C')
        stepwise = global_env.resolve_namespace('A\\B').resolve_function('C')
        assert direct == stepwise == 'decl-c'

    def test_absolute_starts_at_root(self, global_env):
        inner = global_env.create_namespace('A\\B')
        inner.register_function('c', 'decl-c')
        other = global_env.create_namespace('X')
        other.create_namespace('A\\B').register_function('c', 'decl-x-c')
        assert other.resolve_function('\\A\\B\\c') == 'decl-c'
        assert other.resolve_function('A\\B\\c') == 'decl-x-c'

    def test_relative_namespace_prefix(self, global_env):
        app = global_env.create_namespace('App')
        app.register_function('helper', 'decl-helper')
        assert app.resolve_function('namespace\\helper') == 'decl-helper'

    def test_unqualified_function_falls_back_to_global(self, global_env):
        global_env.register_function('strlen', 'builtin')
        app = global_env.create_namespace('App')
        assert app.resolve_function('STRLEN') == 'builtin'
        with pytest.raises(UnboundIdentifier):
            app.resolve_function('Sub\\strlen')

    def test_classes_do_not_fall_back(self, global_env):
        global_env.register_class('Foo', 'decl-foo')
        app = global_env.create_namespace('App')
        with pytest.raises(UnboundIdentifier):
            app.resolve_class('Foo')
        assert app.resolve_class('\\Foo') == 'decl-foo'

    def test_constants_are_case_sensitive(self, global_env):
        global_env.define_constant('FOO', 'decl-foo')
        assert global_env.resolve_constant('FOO') == 'decl-foo'
        with pytest.raises(UnboundIdentifier):
            global_env.resolve_constant('foo')

    def test_split_rejects_absolute_names(self):
        assert split_namespace('A\\B\\c') == ('A', 'B\\c')
        assert split_namespace('c') == (None, 'c')
        with pytest.raises(ValueError):
            split_namespace('\\A\\c')

    def test_unknown_namespace(self, global_env):
        with pytest.raises(UnboundIdentifier):
            global_env.resolve_namespace('Nope')
        assert global_env.resolve_namespace() is global_env

    def test_continuation_delegates_declarations(self, global_env):
        app = global_env.create_namespace('App')
        cont = app.define_variable_by_value('$x', 'node-x')
        assert isinstance(cont, NamespaceContinuationEnvironment)
        cont.register_function('g', 'decl-g')
        cont.define_constant('K', 'decl-k')
        assert app.functions['g'] == 'decl-g'
        assert app.constants['K'] == 'decl-k'
        assert cont.resolve_function('g') == 'decl-g'
        deeper = cont.define_variable_by_value('$y', 'node-y')
        assert deeper.get_namespace() is app
        assert deeper.resolve_variable('$x') == 'node-x'


class TestStructuralViolations:
    def test_orphan_continuation(self):
        orphan = NamespaceContinuationEnvironment('orphan', ScopeEnvironment('scope'))
        with pytest.raises(StructuralInvariantViolation):
            orphan.get_namespace()

    def test_not_rooted_in_global(self):
        with pytest.raises(StructuralInvariantViolation):
            ScopeEnvironment('scope').get_global()

    def test_missing_annotation(self, global_env):
        with pytest.raises(StructuralInvariantViolation):
            global_env.environment_of('not-a-node')
