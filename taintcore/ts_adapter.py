#!/usr/bin/env python3
"""
Tree-sitter adapter for the taintscope analysis core.
Wraps tree-sitter nodes with a clean, hashable interface so that the
environment resolver can annotate them through a side table.
"""

import tree_sitter_php as tsphp
from tree_sitter import Language, Parser
from typing import Optional, List, Tuple


# Module-level parser (initialized once)
_language = Language(tsphp.language_php())
_parser = Parser(_language)

# Node types that carry a call's name in the 'name' field
_NAMED_CALLS = frozenset({
    'member_call_expression', 'nullsafe_member_call_expression', 'scoped_call_expression',
})


class TSNode:
    """Lightweight wrapper around a tree-sitter node.

    Two wrappers of the same underlying node compare equal and hash alike,
    so a TSNode can be used as a dictionary key.
    """

    __slots__ = ('_node', '_code', '_file')

    def __init__(self, ts_node, code_bytes: bytes, filename: str = ''):
        self._node = ts_node
        self._code = code_bytes
        self._file = filename

    @property
    def type(self) -> str:
        return self._node.type

    @property
    def file(self) -> str:
        return self._file

    @property
    def text(self) -> str:
        return self._code[self._node.start_byte:self._node.end_byte].decode('utf8', errors='replace')

    @property
    def line(self) -> int:
        """1-based line number."""
        return self._node.start_point[0] + 1

    @property
    def key(self) -> Tuple[str, str, int, int]:
        """Stable identity of the node within a parsed file."""
        return (self._file, self._node.type, self._node.start_byte, self._node.end_byte)

    @property
    def children(self) -> List['TSNode']:
        """All children, including punctuation."""
        return [TSNode(c, self._code, self._file) for c in self._node.children]

    @property
    def named_children(self) -> List['TSNode']:
        """Named children only (skip punctuation/anonymous tokens)."""
        return [TSNode(c, self._code, self._file) for c in self._node.children if c.is_named]

    @property
    def child_count(self) -> int:
        return self._node.child_count

    def child_by_field(self, name: str) -> Optional['TSNode']:
        """Get child by tree-sitter field name."""
        c = self._node.child_by_field_name(name)
        if c is not None:
            return TSNode(c, self._code, self._file)
        return None

    def has_token(self, token: str) -> bool:
        """True if one of the anonymous children is the given token."""
        return any(not c.is_named and c.type == token for c in self._node.children)

    def get_function_name(self) -> str:
        """Extract the callee name from a call expression node."""
        if self.type == 'function_call_expression':
            func = self.child_by_field('function')
            if func:
                return func.text
        elif self.type in _NAMED_CALLS:
            name = self.child_by_field('name')
            if name:
                return name.text
        return ''

    def get_arguments(self) -> List['TSNode']:
        """Get argument nodes from a call expression."""
        args_node = self.child_by_field('arguments')
        if args_node is None:
            return []
        return [TSNode(c, self._code, self._file) for c in args_node._node.children
                if c.is_named and c.type == 'argument']

    def walk_descendants(self):
        """Yield all descendant nodes (depth-first)."""
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def __eq__(self, other):
        if not isinstance(other, TSNode):
            return NotImplemented
        return self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        text = self.text
        if len(text) > 40:
            text = text[:40] + '...'
        return f'TSNode({self.type}, line={self.line}, {repr(text)})'


def strip_quotes(text: str) -> str:
    """Return the contents of a quoted PHP string literal."""
    if len(text) >= 2 and text[0] in '\'"' and text[-1] == text[0]:
        return text[1:-1]
    return text


def parse_php_ts(code: str, filename: str = '') -> TSNode:
    """Parse PHP code with tree-sitter, return wrapped root node."""
    if not code.strip().startswith('<?'):
        code = '<?php\n' + code
    code_bytes = code.encode('utf8')
    tree = _parser.parse(code_bytes)
    return TSNode(tree.root_node, code_bytes, filename)
