# conditions.py
"""
Guard expressions for jobs and steps.

Guards are a small typed expression tree. Declarations written as strings
(`if: runner.os == 'Linux'`) are compiled into that tree once, at load
time; evaluation only ever walks the tree.

Supported references:
    runner.os                   -> OS family of the job (Linux/macOS/Windows)
    matrix.<key>                -> resolved matrix value
    env.<key>                   -> job environment (missing keys are "")
    steps.<id>.outcome          -> status of an earlier step
    steps.<id>.conclusion       -> same, kept for compatibility
Status functions: success(), failure(), always(), cancelled()
Operators: ==  !=  &&  ||  !  ( )
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union, TYPE_CHECKING

from .errors import InvalidCondition
from .model import OSFamily

if TYPE_CHECKING:
    from .context import ExecutionContext


STATUS_NAMES = frozenset({"success", "failure", "skipped", "cancelled"})
STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})


# ---------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class LiteralNode:
    value: Any


@dataclass(frozen=True)
class ContextReferenceNode:
    scope: str   # "matrix" | "env" | "runner"
    name: str


@dataclass(frozen=True)
class StatusReferenceNode:
    step: str


@dataclass(frozen=True)
class StatusFunctionNode:
    name: str


@dataclass(frozen=True)
class ComparisonNode:
    op: str      # "==" | "!="
    left: "Guard"
    right: "Guard"


@dataclass(frozen=True)
class LogicalNode:
    op: str      # "and" | "or"
    operands: Tuple["Guard", ...]


@dataclass(frozen=True)
class NotNode:
    operand: "Guard"


@dataclass(frozen=True)
class MalformedNode:
    """A declared guard that failed to compile; evaluating it raises."""
    source: str
    error: str


Guard = Union[
    LiteralNode,
    ContextReferenceNode,
    StatusReferenceNode,
    StatusFunctionNode,
    ComparisonNode,
    LogicalNode,
    NotNode,
    MalformedNode,
]

_NODE_TYPES = (
    LiteralNode,
    ContextReferenceNode,
    StatusReferenceNode,
    StatusFunctionNode,
    ComparisonNode,
    LogicalNode,
    NotNode,
    MalformedNode,
)


class StepStatus(str):
    """Tag for values read through a StatusReferenceNode."""


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def evaluate(guard: Guard, context: "ExecutionContext") -> bool:
    """
    Evaluate a guard against an execution context. Pure: the context is
    only read.

    Raises:
        InvalidCondition: unknown identifier or type mismatch.
    """
    return _truthy(_value(guard, context))


def _value(node: Guard, ctx: "ExecutionContext") -> Any:
    if isinstance(node, LiteralNode):
        return node.value

    if isinstance(node, ContextReferenceNode):
        if node.scope == "matrix":
            if node.name not in ctx.matrix:
                raise InvalidCondition(
                    f"unknown identifier 'matrix.{node.name}'",
                    job=ctx.job_id,
                    details={"known": sorted(ctx.matrix)},
                )
            return ctx.matrix[node.name]
        if node.scope == "env":
            return ctx.env.get(node.name, "")
        if node.scope == "runner" and node.name == "os":
            return ctx.os_family
        raise InvalidCondition(f"unknown identifier '{node.scope}.{node.name}'", job=ctx.job_id)

    if isinstance(node, StatusReferenceNode):
        status = ctx.step_status(node.step)
        if status is None:
            raise InvalidCondition(
                f"unknown identifier 'steps.{node.step}' (no earlier step with that id)",
                job=ctx.job_id,
            )
        return StepStatus(status)

    if isinstance(node, StatusFunctionNode):
        if node.name == "success":
            return ctx.succeeded_so_far()
        if node.name == "failure":
            return ctx.failed and not ctx.cancelled
        if node.name == "always":
            return True
        if node.name == "cancelled":
            return ctx.cancelled
        raise InvalidCondition(f"unknown function '{node.name}()'", job=ctx.job_id)

    if isinstance(node, ComparisonNode):
        equal = _equal(_value(node.left, ctx), _value(node.right, ctx))
        return equal if node.op == "==" else not equal

    if isinstance(node, LogicalNode):
        if node.op == "and":
            return all(evaluate(o, ctx) for o in node.operands)
        return any(evaluate(o, ctx) for o in node.operands)

    if isinstance(node, NotNode):
        return not evaluate(node.operand, ctx)

    if isinstance(node, MalformedNode):
        raise InvalidCondition(node.error, job=ctx.job_id, details={"expression": node.source})

    raise InvalidCondition(f"unsupported guard node: {node!r}")


def _truthy(value: Any) -> bool:
    if isinstance(value, (OSFamily, StepStatus)):
        return True
    return bool(value)


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, OSFamily):
        return value.value
    return str(value)


def _equal(a: Any, b: Any) -> bool:
    if isinstance(a, OSFamily) or isinstance(b, OSFamily):
        return _family(a) == _family(b)
    if isinstance(a, StepStatus) or isinstance(b, StepStatus):
        return _status(a) == _status(b)
    if isinstance(a, str) or isinstance(b, str):
        return _text(a) == _text(b)
    return a == b


def _family(value: Any) -> OSFamily:
    if isinstance(value, OSFamily):
        return value
    if isinstance(value, str):
        try:
            return OSFamily.parse(value)
        except ValueError:
            pass
    raise InvalidCondition(
        f"type mismatch: {value!r} is not an OS family",
        details={"expected": [f.value for f in OSFamily]},
    )


def _status(value: Any) -> str:
    if isinstance(value, str) and value.lower() in STATUS_NAMES:
        return value.lower()
    raise InvalidCondition(
        f"type mismatch: {value!r} is not a step status",
        details={"expected": sorted(STATUS_NAMES)},
    )


def uses_status_function(guard: Optional[Guard]) -> bool:
    """True if the guard calls success()/failure()/always()/cancelled() anywhere."""
    if guard is None:
        return False
    if isinstance(guard, StatusFunctionNode):
        return True
    if isinstance(guard, ComparisonNode):
        return uses_status_function(guard.left) or uses_status_function(guard.right)
    if isinstance(guard, LogicalNode):
        return any(uses_status_function(o) for o in guard.operands)
    if isinstance(guard, NotNode):
        return uses_status_function(guard.operand)
    return False


def check(guard: Guard) -> Guard:
    """
    Static checks that do not need a context: literal operands compared
    with `runner.os` or a step status must be valid names.
    """
    if isinstance(guard, ComparisonNode):
        for ref, other in ((guard.left, guard.right), (guard.right, guard.left)):
            if isinstance(other, LiteralNode):
                if isinstance(ref, ContextReferenceNode) and ref.scope == "runner":
                    _family(other.value)
                elif isinstance(ref, StatusReferenceNode):
                    _status(other.value)
        check(guard.left)
        check(guard.right)
    elif isinstance(guard, LogicalNode):
        for o in guard.operands:
            check(o)
    elif isinstance(guard, NotNode):
        check(guard.operand)
    elif not isinstance(guard, _NODE_TYPES):
        raise InvalidCondition(f"unsupported guard node: {guard!r}")
    return guard


# ---------------------------------------------------------------------
# Compiling string guards
# ---------------------------------------------------------------------

_WRAPPED_RE = re.compile(r"^\$\{\{\s*(.*?)\s*\}\}$", re.DOTALL)
_EXPR_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}", re.DOTALL)
_TOKEN_RE = re.compile(
    r"""
    (?P<string>'(?:[^']|'')*'|"[^"]*")
    |(?P<number>\d+(?:\.\d+)?)
    |(?P<op>==|!=|&&|\|\||!|\(|\))
    |(?P<ident>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    """,
    re.VERBOSE,
)


def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(source):
        if source[pos].isspace():
            pos += 1
            continue
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise InvalidCondition(
                f"unexpected character {source[pos]!r} at offset {pos}",
                details={"expression": source},
            )
        tokens.append((m.lastgroup, m.group(m.lastgroup)))
        pos = m.end()
    return tokens


def _parse_literal(kind: str, text: str) -> Any:
    if kind == "string":
        if text.startswith("'"):
            return text[1:-1].replace("''", "'")
        return text[1:-1]
    if "." in text:
        return float(text)
    return int(text)


def _reference(path: str) -> Guard:
    parts = path.split(".")
    if parts == ["runner", "os"]:
        return ContextReferenceNode("runner", "os")
    if len(parts) == 2 and parts[0] in ("matrix", "env"):
        return ContextReferenceNode(parts[0], parts[1])
    if len(parts) == 3 and parts[0] == "steps" and parts[2] in ("outcome", "conclusion"):
        return StatusReferenceNode(parts[1])
    raise InvalidCondition(f"unknown identifier {path!r}")


class _Parser:
    def __init__(self, tokens: List[Tuple[str, str]], source: str):
        self.tokens = tokens
        self.source = source
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise InvalidCondition("unexpected end of expression", details={"expression": self.source})
        self.pos += 1
        return tok

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok == ("op", op):
            self.pos += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            raise InvalidCondition(f"expected {op!r}", details={"expression": self.source})

    def parse(self) -> Guard:
        node = self._or()
        if self._peek() is not None:
            raise InvalidCondition(
                f"unexpected token {self._peek()[1]!r}",
                details={"expression": self.source},
            )
        return node

    def _or(self) -> Guard:
        operands = [self._and()]
        while self._accept("||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else LogicalNode("or", tuple(operands))

    def _and(self) -> Guard:
        operands = [self._unary()]
        while self._accept("&&"):
            operands.append(self._unary())
        return operands[0] if len(operands) == 1 else LogicalNode("and", tuple(operands))

    def _unary(self) -> Guard:
        if self._accept("!"):
            return NotNode(self._unary())
        return self._comparison()

    def _comparison(self) -> Guard:
        left = self._primary()
        tok = self._peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.pos += 1
            return ComparisonNode(tok[1], left, self._primary())
        return left

    def _primary(self) -> Guard:
        kind, text = self._take()
        if (kind, text) == ("op", "("):
            node = self._or()
            self._expect(")")
            return node
        if kind in ("string", "number"):
            return LiteralNode(_parse_literal(kind, text))
        if kind == "ident":
            lowered = text.lower()
            if lowered in ("true", "false"):
                return LiteralNode(lowered == "true")
            if lowered == "null":
                return LiteralNode(None)
            if self._accept("("):
                self._expect(")")
                if text not in STATUS_FUNCTIONS:
                    raise InvalidCondition(f"unknown function '{text}()'", details={"expression": self.source})
                return StatusFunctionNode(text)
            return _reference(text)
        raise InvalidCondition(f"unexpected token {text!r}", details={"expression": self.source})


def compile_guard(expression: Union[str, bool]) -> Guard:
    """
    Compile a declared guard string into an expression tree.

    A full `${{ ... }}` wrapper is accepted and stripped.
    """
    if isinstance(expression, bool):
        return LiteralNode(expression)
    source = str(expression).strip()
    m = _WRAPPED_RE.match(source)
    if m:
        source = m.group(1)
    if not source:
        raise InvalidCondition("empty guard expression")
    return check(_Parser(_tokenize(source), source).parse())


def compile_declared(expression: Union[str, bool]) -> Guard:
    """
    Compile a guard read from a workflow file.

    A malformed expression does not fail the load: it becomes a
    MalformedNode, so only the job that evaluates it fails.
    """
    try:
        return compile_guard(expression)
    except InvalidCondition as e:
        return MalformedNode(str(expression), e.message)


def as_guard(value: Any) -> Optional[Guard]:
    """Normalize DSL/loader input (None, str, bool or a node) into a guard."""
    if value is None:
        return None
    if isinstance(value, (str, bool)):
        return compile_guard(value)
    return check(value)


def render(value: Any, context: "ExecutionContext") -> Any:
    """
    Substitute `${{ expr }}` occurrences inside a string using the context.

    Non-string values pass through unchanged.
    """
    if not isinstance(value, str) or "${{" not in value:
        return value

    def _sub(m: re.Match) -> str:
        return _text(_value(compile_guard(m.group(1)), context))

    return _EXPR_RE.sub(_sub, value)


# ---------------------------------------------------------------------
# Builders (for Python workflows)
# ---------------------------------------------------------------------

def os_is(*families: Union[str, OSFamily]) -> Guard:
    """Guard: the job's OS family is one of `families`."""
    if not families:
        raise ValueError("os_is() needs at least one family")
    nodes = tuple(
        ComparisonNode("==", ContextReferenceNode("runner", "os"), LiteralNode(OSFamily.parse(f).value))
        for f in families
    )
    return nodes[0] if len(nodes) == 1 else LogicalNode("or", nodes)


def matrix_is(key: str, value: Any) -> Guard:
    return ComparisonNode("==", ContextReferenceNode("matrix", key), LiteralNode(value))


def step_outcome(step: str, status: str = "success") -> Guard:
    return check(ComparisonNode("==", StatusReferenceNode(step), LiteralNode(status)))


def success() -> Guard:
    return StatusFunctionNode("success")


def failure() -> Guard:
    return StatusFunctionNode("failure")


def always() -> Guard:
    return StatusFunctionNode("always")


def cancelled() -> Guard:
    return StatusFunctionNode("cancelled")


def all_of(*guards: Guard) -> Guard:
    return LogicalNode("and", tuple(guards))


def any_of(*guards: Guard) -> Guard:
    return LogicalNode("or", tuple(guards))


def not_(guard: Guard) -> Guard:
    return NotNode(guard)
