#!/usr/bin/env python3
"""
taintscope Rule Engine - single source of truth for taint policy.
Loads input sources, sinks, sanitizers and their reverse functions from YAML.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


@dataclass
class SourceDef:
    name: str
    category: str = "superglobals"  # superglobals, functions
    description: str = ""


@dataclass
class SinkDef:
    name: str
    vuln_type: str
    severity: str  # CRITICAL, HIGH, MEDIUM, LOW
    arg_positions: List[int] = field(default_factory=lambda: [0])
    cwe: str = ""
    kind: str = "function"  # function, construct
    description: str = ""


@dataclass
class SanitizerDef:
    name: str
    protects_against: List[str]
    reversed_by: List[str] = field(default_factory=list)
    strength: str = "strong"  # strong, weak


class RuleEngine:
    """Loads and provides access to all YAML-defined rules."""

    def __init__(self, rules_dir: Optional[str] = None):
        if rules_dir is None:
            rules_dir = str(Path(__file__).parent / 'rules')
        self.rules_dir = rules_dir
        self.sources: Dict[str, SourceDef] = {}
        self.sinks: Dict[str, SinkDef] = {}
        self.sanitizers: Dict[str, SanitizerDef] = {}
        # reverse function name -> sanitizer it undoes
        self.reverses: Dict[str, str] = {}
        self._load_all()

    def _load_all(self):
        """Load all YAML rule files."""
        self._load_sources()
        self._load_sinks()
        self._load_sanitizers()
        logger.debug("Loaded %d sources, %d sinks, %d sanitizers from %s",
                     len(self.sources), len(self.sinks), len(self.sanitizers), self.rules_dir)

    def _load_yaml(self, filename: str) -> Any:
        """Load a YAML file from the rules directory."""
        filepath = os.path.join(self.rules_dir, filename)
        if not os.path.exists(filepath):
            logger.warning("Rule file %s not found", filepath)
            return {}
        with open(filepath, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    def _load_sources(self):
        data = self._load_yaml('sources.yml')
        for category, sources in data.items():
            if not isinstance(sources, list):
                continue
            for src in sources:
                if isinstance(src, str):
                    src = {'name': src}
                if not isinstance(src, dict):
                    continue
                name = src.get('name', '')
                # superglobal names are case-sensitive, function names are not
                key = name.lower() if category == 'functions' else name
                self.sources[key] = SourceDef(
                    name=name,
                    category=category,
                    description=src.get('description', ''),
                )

    def _load_sinks(self):
        data = self._load_yaml('sinks.yml')
        for vuln_type, sinks in data.items():
            if not isinstance(sinks, list):
                continue
            for sink in sinks:
                name = sink.get('name', '')
                self.sinks[name.lower()] = SinkDef(
                    name=name,
                    vuln_type=vuln_type,
                    severity=sink.get('severity', 'HIGH'),
                    arg_positions=sink.get('arg_positions', [0]),
                    cwe=sink.get('cwe', ''),
                    kind=sink.get('kind', 'function'),
                    description=sink.get('description', ''),
                )

    def _load_sanitizers(self):
        data = self._load_yaml('sanitizers.yml')
        for category, sanitizers in data.items():
            if not isinstance(sanitizers, list):
                continue
            for san in sanitizers:
                name = san.get('name', '')
                reversed_by = san.get('reversed_by', [])
                self.sanitizers[name.lower()] = SanitizerDef(
                    name=name,
                    protects_against=san.get('protects_against', [category]),
                    reversed_by=reversed_by,
                    strength=san.get('strength', 'strong'),
                )
                for reverse in reversed_by:
                    # first declared sanitizer wins for shared reverses
                    self.reverses.setdefault(reverse.lower(), name.lower())

    # ==================== Query Methods ====================

    def get_sources(self, category: Optional[str] = None) -> Dict[str, SourceDef]:
        if category is None:
            return self.sources
        return {k: v for k, v in self.sources.items() if v.category == category}

    def get_sinks(self, vuln_type: Optional[str] = None) -> Dict[str, SinkDef]:
        if vuln_type is None:
            return self.sinks
        return {k: v for k, v in self.sinks.items() if v.vuln_type == vuln_type}

    def get_sink(self, name: str) -> Optional[SinkDef]:
        return self.sinks.get(normalize_name(name))

    def get_sanitizers(self, vuln_type: Optional[str] = None) -> Dict[str, SanitizerDef]:
        if vuln_type is None:
            return self.sanitizers
        return {k: v for k, v in self.sanitizers.items()
                if vuln_type in v.protects_against}

    def get_sanitizer(self, name: str) -> Optional[SanitizerDef]:
        return self.sanitizers.get(normalize_name(name))

    def get_sanitizer_protections(self, name: str) -> List[str]:
        san = self.sanitizers.get(normalize_name(name))
        return san.protects_against if san else []

    # -- predicates consumed by the taint tracer --

    def is_input_variable(self, name: str) -> bool:
        src = self.sources.get(name)
        return src is not None and src.category == 'superglobals'

    def is_input_function(self, name: str) -> bool:
        src = self.sources.get(normalize_name(name))
        return src is not None and src.category == 'functions'

    def is_sink(self, name: str) -> bool:
        return normalize_name(name) in self.sinks

    def is_sanitising_function(self, name: str) -> bool:
        return normalize_name(name) in self.sanitizers

    def is_sanitising_reverse_function(self, name: str) -> bool:
        return normalize_name(name) in self.reverses

    def get_affected_sanitiser(self, reverse_name: str) -> Optional[str]:
        return self.reverses.get(normalize_name(reverse_name))


def normalize_name(name: str) -> str:
    """Function names are case-insensitive and may be written fully qualified."""
    return name.lstrip('\\').lower()


# Module-level singleton for convenience
_default_engine: Optional[RuleEngine] = None

def get_rule_engine(rules_dir: Optional[str] = None) -> RuleEngine:
    """Get or create the default RuleEngine singleton."""
    global _default_engine
    if _default_engine is None or rules_dir is not None:
        _default_engine = RuleEngine(rules_dir)
    return _default_engine
