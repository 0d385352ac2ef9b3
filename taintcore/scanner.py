#!/usr/bin/env python3
"""
taintscope scanner - finds tainted values reaching sinks.

All files of a scan share one GlobalEnvironment, so functions declared in one
file are resolved at call sites in another. Every file is resolved first, then
each sink argument is evaluated in place with the caller-side tracer.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .environment import GlobalEnvironment
from .exceptions import StructuralInvariantViolation
from .function_analyser import argument_value, trace_in_place
from .resolver import EnvironmentResolver
from .rule_engine import RuleEngine, SinkDef, get_rule_engine, normalize_name
from .taint import Taint, join, summarize
from .ts_adapter import TSNode, parse_php_ts

logger = logging.getLogger(__name__)

# Language constructs that act as sinks, by node type
CONSTRUCT_SINKS = {
    'echo_statement': 'echo',
    'print_intrinsic': 'print',
    'include_expression': 'include',
    'include_once_expression': 'include_once',
    'require_expression': 'require',
    'require_once_expression': 'require_once',
}

SEVERITY_ORDER = ('CRITICAL', 'HIGH', 'MEDIUM', 'LOW')


@dataclass
class Finding:
    """A sink argument that may carry untrusted input."""
    file: str
    line: int
    sink: str
    vuln_type: str
    severity: str
    taint: Taint
    code: str
    cwe: str = ""
    sanitizers: List[str] = field(default_factory=list)
    # HIGH when the argument is tainted, LOW when it could not be resolved
    confidence: str = "HIGH"

    def to_dict(self) -> Dict:
        return {
            'type': self.vuln_type,
            'severity': self.severity,
            'file': self.file,
            'line': self.line,
            'sink': self.sink,
            'cwe': self.cwe,
            'taint': self.taint.name,
            'sanitizers': self.sanitizers,
            'confidence': self.confidence,
            'code': self.code[:100],
        }


class TaintScanner:
    """Scans PHP sources for flows from input sources into sinks.

    Args:
        rules:           Rule engine; the default rule set when omitted.
        include_unknown: Also report arguments whose taint is UNKNOWN.
    """

    def __init__(self, rules: Optional[RuleEngine] = None, include_unknown: bool = False):
        self.rules = rules or get_rule_engine()
        self.include_unknown = include_unknown
        self.errors: List[Tuple[str, str]] = []

    def scan_code(self, code: str, filename: str = '') -> List[Finding]:
        """Scan a single snippet on its own."""
        return self._scan_sources([(filename, code)])

    def scan_file(self, path: str) -> List[Finding]:
        return self.scan_files([path])

    def scan_files(self, paths: Iterable[str]) -> List[Finding]:
        """Scan several files against one shared global environment."""
        sources = []
        for path in paths:
            try:
                with open(path, 'r', encoding='utf-8', errors='ignore') as f:
                    sources.append((path, f.read()))
            except OSError as e:
                logger.warning("Cannot read %s: %s", path, e)
                self.errors.append((path, str(e)))
        return self._scan_sources(sources)

    def _scan_sources(self, sources: List[Tuple[str, str]]) -> List[Finding]:
        global_env = GlobalEnvironment()
        resolver = EnvironmentResolver(global_env)
        programs = []
        for filename, code in sources:
            root = parse_php_ts(code, filename)
            try:
                resolver.resolve(root)
            except StructuralInvariantViolation as e:
                logger.error("Skipping %s: %s", filename, e)
                self.errors.append((filename, str(e)))
                continue
            programs.append((filename, root))

        findings: List[Finding] = []
        for filename, root in programs:
            try:
                findings.extend(self._scan_program(root, global_env))
            except StructuralInvariantViolation as e:
                logger.error("Skipping %s: %s", filename, e)
                self.errors.append((filename, str(e)))
        return findings

    def _scan_program(self, root: TSNode, global_env: GlobalEnvironment) -> List[Finding]:
        findings = []
        seen: Set[Tuple[int, str]] = set()
        for node in root.walk_descendants():
            for sink, argument in self._sink_arguments(node):
                finding = self._check_argument(node, sink, argument, global_env)
                if finding is None or (finding.line, finding.sink) in seen:
                    continue
                seen.add((finding.line, finding.sink))
                findings.append(finding)
        return findings

    def _sink_arguments(self, node: TSNode) -> List[Tuple[SinkDef, TSNode]]:
        """Sink definition and argument expressions checked at `node`."""
        if node.type in CONSTRUCT_SINKS:
            sink = self.rules.get_sink(CONSTRUCT_SINKS[node.type])
            if sink is None:
                return []
            return [(sink, child) for child in node.named_children if child.type != 'comment']
        if node.type != 'function_call_expression':
            return []
        sink = self.rules.get_sink(node.get_function_name())
        if sink is None or sink.kind != 'function':
            return []
        args = node.get_arguments()
        positions = sink.arg_positions or range(len(args))
        return [(sink, argument_value(args[i])) for i in positions if i < len(args)]

    def _check_argument(self, node: TSNode, sink: SinkDef, argument: Optional[TSNode],
                        global_env: GlobalEnvironment) -> Optional[Finding]:
        if argument is None:
            return None
        deps = trace_in_place(argument, global_env, self.rules)
        reported = []
        confidence = 'LOW'
        for info in deps.values():
            if info.taint != Taint.TAINTED and not (info.taint == Taint.UNKNOWN and self.include_unknown):
                continue
            # only sanitizers applied on every path to this leaf count
            protection = self._protection(info.common, sink.vuln_type)
            if protection == 'strong':
                logger.debug("%s at line %d: %s sanitized by %s", sink.name, node.line,
                             info.name, sorted(info.common))
                continue
            reported.append(info)
            if info.taint == Taint.TAINTED and protection is None:
                confidence = 'HIGH'
        if not reported:
            return None
        taint, sanitizers = summarize(deps)
        return Finding(
            file=node.file,
            line=node.line,
            sink=normalize_name(sink.name),
            vuln_type=sink.vuln_type,
            severity=sink.severity,
            taint=join(*(info.taint for info in reported)),
            code=node.text,
            cwe=sink.cwe,
            sanitizers=sorted(sanitizers),
            confidence=confidence,
        )

    def _protection(self, sanitizers: Set[str], vuln_type: str) -> Optional[str]:
        """'strong' or 'weak' when some sanitizer covers `vuln_type`, else None."""
        strengths = set()
        for name in sanitizers:
            san = self.rules.get_sanitizer(name)
            if san is not None and vuln_type in san.protects_against:
                strengths.add(san.strength)
        if 'strong' in strengths:
            return 'strong'
        return 'weak' if strengths else None


def summarize_findings(findings: List[Finding], total_files: int = 0) -> Dict:
    """Results dictionary with per-severity counts."""
    results = {
        'total_files': total_files,
        'total_findings': len(findings),
        'critical': 0,
        'high': 0,
        'medium': 0,
        'low': 0,
        'findings': [],
    }
    for finding in findings:
        key = finding.severity.lower()
        if key in results:
            results[key] += 1
        else:
            results['low'] += 1
        results['findings'].append(finding.to_dict())
    return results
