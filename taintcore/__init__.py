from .ts_adapter import TSNode, parse_php_ts
from .exceptions import TaintScopeError, UnboundIdentifier, UnsupportedConstruct, StructuralInvariantViolation
from .taint import Taint, VariableInfo, join, merge_variables, summarize
from .environment import (
    Environment, ScopeEnvironment, FunctionEnvironment, ClassEnvironment,
    NamespaceEnvironment, NamespaceContinuationEnvironment, GlobalEnvironment,
)
from .resolver import EnvironmentResolver
from .rule_engine import RuleEngine, get_rule_engine
from .function_analyser import ExpressionTracer, FunctionAnalyser, resolve_expression_taint, trace_in_place
from .scanner import TaintScanner, Finding
