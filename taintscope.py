#!/usr/bin/env python3
"""
taintscope - data-flow taint analysis for PHP

Resolves the scope of every variable in program order, follows each sink
argument back to its sources through assignments and user-defined functions,
and reports the arguments that may carry untrusted input.

Usage:
    taintscope /path/to/project              # Scan a project
    taintscope file.php -v                   # Single file, debug logging
    taintscope /path/to/project -f json -o out.json
"""

import sys
import os
import argparse
import glob
import json
import logging
import time
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from taintcore import RuleEngine, TaintScanner, get_rule_engine
from taintcore.scanner import SEVERITY_ORDER, summarize_findings

VERSION = "1.0"

# ── Color helpers (auto-disable on non-TTY) ──────────────────────────────────

_COLOR_ENABLED = hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _c(code: str, text: str) -> str:
    if not _COLOR_ENABLED:
        return text
    return f"\033[{code}m{text}\033[0m"

def _red(t):    return _c("31", t)
def _green(t):  return _c("32", t)
def _yellow(t): return _c("33", t)
def _cyan(t):   return _c("36", t)
def _bold(t):   return _c("1", t)

def _severity_color(sev: str) -> str:
    colors = {'CRITICAL': "31;1", 'HIGH': "31", 'MEDIUM': "33", 'LOW': "36"}
    return _c(colors.get(sev, "0"), sev)


# ── Progress output (stderr) ─────────────────────────────────────────────────

_quiet = False

def _progress(msg: str, prefix: str = "[*]"):
    """Print progress/status to stderr (not mixed with results)."""
    if _quiet:
        return
    print(f"{_cyan(prefix)} {msg}", file=sys.stderr)

def _success(msg: str):
    _progress(msg, _green("[+]"))

def _warn(msg: str):
    _progress(msg, _yellow("[!]"))

def _error(msg: str):
    print(f"{_red('[ERROR]')} {msg}", file=sys.stderr)


# ── File collection ──────────────────────────────────────────────────────────

# Vendor/library paths to skip
VENDOR_SKIP_DIRS = {
    'vendor', 'node_modules', 'composer', 'bower_components',
    'symfony', 'laravel', 'illuminate', 'doctrine', 'twig',
    'phpunit', 'mockery', 'psr', 'monolog', 'guzzlehttp',
    '.git', '.svn', '__pycache__', 'cache', 'tmp',
}


def _is_vendor_path(filepath: str) -> bool:
    return any(part.lower() in VENDOR_SKIP_DIRS for part in Path(filepath).parts)


def collect_files(target: str, skip_vendor: bool = True) -> List[str]:
    """PHP files under `target` (or `target` itself when it is a file)."""
    if os.path.isfile(target):
        return [target]
    php_files = sorted(glob.glob(os.path.join(target, '**', '*.php'), recursive=True))
    if skip_vendor:
        kept = [f for f in php_files if not _is_vendor_path(os.path.relpath(f, target))]
        skipped = len(php_files) - len(kept)
        if skipped:
            _progress(f"Skipped {skipped} vendor/library files")
        php_files = kept
    return php_files


# ── Results display (stdout only) ─────────────────────────────────────────────

def print_results(results: Dict, verbose: bool = False):
    """Print scan results to stdout."""
    print("\n" + "=" * 70)
    print(_bold("TAINT ANALYSIS RESULTS"))
    print("=" * 70)

    print(f"\nTarget: {results['target']}")
    print(f"Files scanned: {results['total_files']}")
    print(f"Total findings: {_bold(str(results['total_findings']))}")
    if results.get('scan_time_seconds'):
        print(f"Scan time: {results['scan_time_seconds']}s")

    for severity in SEVERITY_ORDER:
        print(f"  {_severity_color(severity)}: {results[severity.lower()]}")

    if results['total_findings'] > 0:
        type_counts = Counter(f['type'] for f in results['findings'])
        if len(type_counts) > 1:
            print("\n  Vulnerability Types:")
            for vtype, count in type_counts.most_common(10):
                print(f"    {vtype}: {count}")

        print("\n" + "-" * 70)
        print(_bold("FINDINGS"))
        print("-" * 70)
        for severity in SEVERITY_ORDER:
            severity_findings = [f for f in results['findings'] if f['severity'] == severity]
            if not severity_findings:
                continue
            print(f"\n[{_severity_color(severity)}] - {len(severity_findings)} findings")
            for f in severity_findings:
                print(f"\n  {f['type']} via {f['sink']} ({f['cwe'] or 'no CWE'})")
                print(f"    File: {f['file']}:{f['line']}")
                print(f"    Taint: {f['taint']}  Confidence: {f['confidence']}")
                if f['sanitizers']:
                    print(f"    Sanitizers: {', '.join(f['sanitizers'])}")
                if verbose and f.get('code'):
                    print(f"    Code: {f['code'][:60].replace(chr(10), ' ')}")

    if results.get('errors'):
        print("\n  Files skipped:")
        for path, reason in results['errors']:
            print(f"    {path}: {reason}")


# ── Main entry point ──────────────────────────────────────────────────────────

def main(argv=None):
    """Main entry point."""
    global _quiet

    parser = argparse.ArgumentParser(
        description='taintscope - data-flow taint analysis for PHP',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s /var/www/html                     Scan a project
  %(prog)s /path/to/file.php -v              Single file with debug logging
  %(prog)s /path/to/project -f json -o out   JSON report for CI pipelines
  %(prog)s /path/to/project --include-unknown
                                             Also report unresolved values
        '''
    )

    parser.add_argument('target', help='PHP file or directory to scan')
    parser.add_argument('-o', '--output', help='Output file path')
    parser.add_argument('-f', '--format', choices=['text', 'json'], default='text',
                        help='Output format (default: text)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Debug logging and code snippets')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress progress output (results only)')
    parser.add_argument('--rules', metavar='DIR',
                        help='Directory with sources.yml, sinks.yml and sanitizers.yml')
    parser.add_argument('--include-unknown', action='store_true',
                        help='Report sink arguments whose taint could not be resolved')
    parser.add_argument('--include-vendor', action='store_true',
                        help='Include vendor/library files (skipped by default)')
    parser.add_argument('--version', action='version', version=f'taintscope v{VERSION}')

    args = parser.parse_args(argv)

    _quiet = args.quiet
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    if not os.path.exists(args.target):
        _error(f"Target not found: {args.target}")
        return 1
    if args.rules and not os.path.isdir(args.rules):
        _error(f"Rules directory not found: {args.rules}")
        return 1

    rules: RuleEngine = get_rule_engine(args.rules)
    scanner = TaintScanner(rules, include_unknown=args.include_unknown)
    _success(f"Rules loaded: {len(rules.sources)} sources, {len(rules.sinks)} sinks, "
             f"{len(rules.sanitizers)} sanitizers")

    php_files = collect_files(args.target, skip_vendor=not args.include_vendor)
    _progress(f"Scanning {len(php_files)} PHP files...")

    scan_start = time.time()
    findings = scanner.scan_files(php_files)
    scan_elapsed = time.time() - scan_start

    results = summarize_findings(findings, total_files=len(php_files))
    results['scan_date'] = datetime.now().isoformat()
    results['target'] = args.target
    results['scan_time_seconds'] = round(scan_elapsed, 2)
    results['errors'] = scanner.errors
    for path, reason in scanner.errors:
        _warn(f"Skipped {path}: {reason}")
    _success(f"Scan completed in {scan_elapsed:.1f}s")

    if args.format == 'json':
        output = json.dumps(results, indent=2, default=str)
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(output)
            _success(f"Results saved to: {args.output}")
        else:
            print(output)
    else:
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(results, f, indent=2, default=str)
            _success(f"Results saved to: {args.output}")
        print_results(results, args.verbose)

    # Return code based on findings
    if results['critical'] > 0:
        return 2
    elif results['high'] > 0:
        return 1
    else:
        return 0


if __name__ == "__main__":
    sys.exit(main())
