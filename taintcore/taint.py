#!/usr/bin/env python3
"""
Taint lattice and per-variable dependency records.

The lattice is a small total order; joining alternative data-flow paths
takes the maximum. There is no "definitely safe" level: safety is the
absence of a path to TAINTED plus the sanitizers recorded on the way.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional, Set, Tuple


class Taint(IntEnum):
    UNASSIGNED = 0  # nothing observed yet
    UNKNOWN = 1     # could not be resolved statically
    TAINTED = 2     # derived from untrusted input


def join(*values: Taint) -> Taint:
    """Least upper bound of the given taint values (UNASSIGNED if none)."""
    return Taint(max(values, default=Taint.UNASSIGNED))


@dataclass
class VariableInfo:
    """What one analysis knows about a variable name.

    Attributes:
        name:        Variable name including the '$' prefix (or a synthetic
                     label such as 'getenv()' for source calls).
        taint:       Current lattice value.
        sanitizers:  Names of sanitizing functions applied on some path.
        definition:  The binding the value traces back to, or None for
                     parameters and other externally bound values.
        common:      Sanitizers applied on every path merged into this
                     record. Defaults to `sanitizers`.
        revoked:     Sanitizers removed by reverse functions. Only matters
                     for parameters, whose arguments arrive with their own
                     sanitizers at each call site.
    """
    name: str
    taint: Taint = Taint.UNASSIGNED
    sanitizers: Set[str] = field(default_factory=set)
    definition: Optional[Any] = field(default=None, repr=False)
    common: Optional[Set[str]] = field(default=None, repr=False)
    revoked: Set[str] = field(default_factory=set, repr=False)

    def __post_init__(self):
        if self.common is None:
            self.common = set(self.sanitizers)

    def copy(self) -> 'VariableInfo':
        return VariableInfo(self.name, self.taint, set(self.sanitizers), self.definition,
                            set(self.common), set(self.revoked))

    def with_sanitizer(self, sanitizer: str) -> 'VariableInfo':
        new = self.copy()
        new.sanitizers.add(sanitizer)
        new.common.add(sanitizer)
        return new

    def without_sanitizer(self, sanitizer: str) -> 'VariableInfo':
        new = self.copy()
        new.sanitizers.discard(sanitizer)
        new.common.discard(sanitizer)
        new.revoked.add(sanitizer)
        return new

    def passed_through(self, parameter: 'VariableInfo') -> 'VariableInfo':
        """This argument record after the sanitizer steps recorded on `parameter`."""
        new = self.copy()
        new.sanitizers = (self.sanitizers - parameter.revoked) | parameter.sanitizers
        new.common = (self.common - parameter.revoked) | parameter.common
        new.revoked = self.revoked | parameter.revoked
        return new


VariableMap = Dict[str, VariableInfo]


def merge_variables(*maps: VariableMap) -> VariableMap:
    """Key-wise union of dependency maps.

    Keys present in several maps get a fresh record whose taint is the join
    and whose sanitizers are the union. `common` keeps only the sanitizers
    found on every side. Input records are never mutated.
    """
    merged: VariableMap = {}
    for var_map in maps:
        for name, info in var_map.items():
            existing = merged.get(name)
            if existing is None:
                merged[name] = info
                continue
            combined = existing.copy()
            combined.taint = join(existing.taint, info.taint)
            combined.sanitizers |= info.sanitizers
            combined.common &= info.common
            combined.revoked |= info.revoked
            merged[name] = combined
    return merged


def summarize(var_map: VariableMap) -> Tuple[Taint, Set[str]]:
    """Collapse a dependency map into one (taint, sanitizers) pair."""
    taint = join(*(info.taint for info in var_map.values()))
    sanitizers: Set[str] = set()
    for info in var_map.values():
        sanitizers |= info.sanitizers
    return taint, sanitizers
