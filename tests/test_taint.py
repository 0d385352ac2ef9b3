#!/usr/bin/env python3
"""Tests for the taint lattice and dependency-map merging."""

import itertools
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from taintcore.taint import (
    Taint, VariableInfo, join, merge_variables, summarize,
)

VALUES = list(Taint)


class TestJoin:
    def test_order(self):
        assert Taint.UNASSIGNED < Taint.UNKNOWN < Taint.TAINTED

    def test_commutative(self):
        for a, b in itertools.product(VALUES, repeat=2):
            assert join(a, b) == join(b, a)

    def test_associative(self):
        for a, b, c in itertools.product(VALUES, repeat=3):
            assert join(join(a, b), c) == join(a, join(b, c))

    def test_idempotent(self):
        for a in VALUES:
            assert join(a, a) == a

    def test_identity_and_absorbing(self):
        for a in VALUES:
            assert join(a, Taint.UNASSIGNED) == a
            assert join(a, Taint.TAINTED) == Taint.TAINTED

    def test_empty_join(self):
        assert join() == Taint.UNASSIGNED
        assert isinstance(join(Taint.UNKNOWN), Taint)


class TestVariableInfo:
    def test_with_sanitizer_returns_copy(self):
        info = VariableInfo('$a', Taint.TAINTED)
        cleaned = info.with_sanitizer('htmlspecialchars')
        assert cleaned.sanitizers == {'htmlspecialchars'}
        assert cleaned.taint == Taint.TAINTED
        assert info.sanitizers == set()

    def test_without_sanitizer(self):
        info = VariableInfo('$a', Taint.TAINTED, {'htmlspecialchars', 'addslashes'})
        reverted = info.without_sanitizer('htmlspecialchars')
        assert reverted.sanitizers == {'addslashes'}
        assert info.sanitizers == {'htmlspecialchars', 'addslashes'}
        assert info.without_sanitizer('absent').sanitizers == info.sanitizers


class TestMerge:
    def test_disjoint_keys(self):
        a = {'$a': VariableInfo('$a', Taint.TAINTED)}
        b = {'$b': VariableInfo('$b', Taint.UNKNOWN)}
        merged = merge_variables(a, b)
        assert set(merged) == {'$a', '$b'}

    def test_shared_key_joins_and_unions(self):
        left = {'$a': VariableInfo('$a', Taint.UNKNOWN, {'intval'})}
        right = {'$a': VariableInfo('$a', Taint.TAINTED, {'htmlspecialchars'})}
        merged = merge_variables(left, right)
        assert merged['$a'].taint == Taint.TAINTED
        assert merged['$a'].sanitizers == {'intval', 'htmlspecialchars'}
        # inputs untouched
        assert left['$a'].taint == Taint.UNKNOWN
        assert left['$a'].sanitizers == {'intval'}

    def test_merge_nothing(self):
        assert merge_variables() == {}
        assert merge_variables({}, {}) == {}

    def test_summarize(self):
        deps = {
            '$a': VariableInfo('$a', Taint.UNASSIGNED, {'intval'}),
            '$b': VariableInfo('$b', Taint.TAINTED, {'htmlspecialchars'}),
        }
        assert summarize(deps) == (Taint.TAINTED, {'intval', 'htmlspecialchars'})
        assert summarize({}) == (Taint.UNASSIGNED, set())

    def test_common_sanitizers_need_every_side(self):
        sanitized = {'$_GET': VariableInfo('$_GET', Taint.TAINTED).with_sanitizer('htmlspecialchars')}
        raw = {'$_GET': VariableInfo('$_GET', Taint.TAINTED)}
        merged = merge_variables(sanitized, raw)
        assert merged['$_GET'].sanitizers == {'htmlspecialchars'}
        assert merged['$_GET'].common == set()
        both = merge_variables(sanitized, sanitized)
        assert both['$_GET'].common == {'htmlspecialchars'}


class TestParameterEffects:
    def test_common_defaults_to_sanitizers(self):
        info = VariableInfo('$a', Taint.TAINTED, {'intval'})
        assert info.common == {'intval'}
        assert info.copy().common == {'intval'}

    def test_reverse_is_recorded(self):
        param = VariableInfo('$x').without_sanitizer('htmlspecialchars')
        assert param.revoked == {'htmlspecialchars'}
        assert param.sanitizers == set()

    def test_passed_through_decoder(self):
        argument = VariableInfo('$_GET', Taint.TAINTED).with_sanitizer('htmlspecialchars')
        param = VariableInfo('$x').without_sanitizer('htmlspecialchars')
        result = argument.passed_through(param)
        assert result.taint == Taint.TAINTED
        assert result.sanitizers == set()
        assert result.common == set()
        # the argument record is untouched
        assert argument.sanitizers == {'htmlspecialchars'}

    def test_passed_through_sanitizer(self):
        argument = VariableInfo('$_GET', Taint.TAINTED, {'addslashes'})
        param = VariableInfo('$x').with_sanitizer('escapeshellarg')
        result = argument.passed_through(param)
        assert result.sanitizers == {'addslashes', 'escapeshellarg'}
        assert result.common == {'addslashes', 'escapeshellarg'}
        assert result.name == '$_GET'

    def test_decode_then_encode(self):
        param = VariableInfo('$x').without_sanitizer('htmlspecialchars').with_sanitizer('htmlspecialchars')
        argument = VariableInfo('$_GET', Taint.TAINTED, {'htmlspecialchars'})
        assert argument.passed_through(param).common == {'htmlspecialchars'}
