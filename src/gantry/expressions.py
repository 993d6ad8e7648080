"""Expression language for `if:` conditions and `${{ }}` placeholders.

Expressions are parsed into a small typed AST and evaluated against an
explicit :class:`ExpressionContext`::

    success() && branch == 'main'
    needs.build.outputs.version != ''
    startsWith(ref, 'refs/tags/') || matrix.os == 'linux'

Conditions that do not mention a status function (``success()``,
``failure()``, ``always()``, ``cancelled()``) are implicitly combined with
``success()``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .errors import ConditionEvalError

STATUS_FUNCTIONS = frozenset({"success", "failure", "always", "cancelled"})

_PLACEHOLDER = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


# ---------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class NeedResult:
    """Aggregated conclusion of a needed job (all its matrix instances)."""
    result: str  # success | failure | cancelled | skipped
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExpressionContext:
    """Everything an expression may read. Built by the scheduler per job/step."""
    event: str = ""
    ref: str = ""
    branch: str = ""
    tag: str = ""
    sha: str = ""
    actor: str = ""
    run_id: int = 0
    workflow: str = ""
    needs: Dict[str, NeedResult] = field(default_factory=dict)
    jobs: Dict[str, NeedResult] = field(default_factory=dict)
    matrix: Dict[str, Any] = field(default_factory=dict)
    inputs: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    steps: Dict[str, NeedResult] = field(default_factory=dict)

    # status flags, computed by the caller
    is_success: bool = True
    is_failure: bool = False
    is_cancelled: bool = False

    # secrets.NAME lookups go through the permission gate
    secret_resolver: Optional[Callable[[str], str]] = None
    functions: Dict[str, Callable[..., Any]] = field(default_factory=dict)

    def root(self, name: str) -> Any:
        trigger = {
            "event": self.event,
            "event_name": self.event,
            "ref": self.ref,
            "branch": self.branch,
            "ref_name": self.branch or self.tag,
            "tag": self.tag,
            "sha": self.sha,
            "actor": self.actor,
            "run_id": self.run_id,
            "workflow": self.workflow,
        }
        if name in trigger:
            return trigger[name]
        if name == "gantry":
            return trigger
        if name == "matrix":
            return dict(self.matrix)
        if name == "inputs":
            return dict(self.inputs)
        if name == "env":
            return dict(self.env)
        if name in ("needs", "jobs", "steps"):
            results = {"needs": self.needs, "jobs": self.jobs, "steps": self.steps}[name]
            return {
                k: {"result": v.result, "outcome": v.result, "conclusion": v.result, "outputs": dict(v.outputs)}
                for k, v in results.items()
            }
        raise KeyError(name)


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, ctx: ExpressionContext) -> Any:
        return self.value


@dataclass(frozen=True)
class Ref:
    path: Tuple[str, ...]

    def evaluate(self, ctx: ExpressionContext) -> Any:
        head, rest = self.path[0], self.path[1:]
        if head == "secrets":
            if len(rest) != 1:
                raise ConditionEvalError(".".join(self.path), "secrets must be referenced as secrets.NAME")
            if ctx.secret_resolver is None:
                raise ConditionEvalError(".".join(self.path), "secrets are not available here")
            return ctx.secret_resolver(rest[0])
        try:
            value = ctx.root(head)
        except KeyError:
            raise ConditionEvalError(".".join(self.path), f"unknown context {head!r}") from None
        for part in rest:
            if isinstance(value, Mapping):
                value = value.get(part)
            else:
                return None
        return value


@dataclass(frozen=True)
class Not:
    operand: "Node"

    def evaluate(self, ctx: ExpressionContext) -> Any:
        return not truthy(self.operand.evaluate(ctx))


@dataclass(frozen=True)
class Logical:
    op: str  # && | ||
    left: "Node"
    right: "Node"

    def evaluate(self, ctx: ExpressionContext) -> Any:
        left = self.left.evaluate(ctx)
        if self.op == "&&":
            return self.right.evaluate(ctx) if truthy(left) else left
        return left if truthy(left) else self.right.evaluate(ctx)


@dataclass(frozen=True)
class Compare:
    op: str
    left: "Node"
    right: "Node"

    def evaluate(self, ctx: ExpressionContext) -> Any:
        a, b = _coerce_pair(self.left.evaluate(ctx), self.right.evaluate(ctx))
        if self.op == "==":
            return a == b
        if self.op == "!=":
            return a != b
        try:
            if self.op == "<":
                return a < b
            if self.op == "<=":
                return a <= b
            if self.op == ">":
                return a > b
            return a >= b
        except TypeError:
            return False


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]

    def evaluate(self, ctx: ExpressionContext) -> Any:
        if self.name in STATUS_FUNCTIONS:
            if self.args:
                raise ConditionEvalError(f"{self.name}()", "status functions take no arguments")
            if self.name == "always":
                return True
            if self.name == "cancelled":
                return ctx.is_cancelled
            if self.name == "failure":
                return ctx.is_failure
            return ctx.is_success and not ctx.is_cancelled

        values = [a.evaluate(ctx) for a in self.args]
        fn = ctx.functions.get(self.name) or _BUILTINS.get(self.name)
        if fn is None:
            raise ConditionEvalError(f"{self.name}(...)", f"unknown function {self.name!r}")
        try:
            return fn(*values)
        except (TypeError, ValueError) as e:
            raise ConditionEvalError(f"{self.name}(...)", str(e)) from None


Node = Union[Literal, Ref, Not, Logical, Compare, Call]


# ---------------------------------------------------------------------
# Built-in functions
# ---------------------------------------------------------------------

def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(a == b for a, b in (_coerce_pair(item, needle) for item in haystack))
    return to_str(needle).lower() in to_str(haystack).lower()


def _format(template: Any, *args: Any) -> str:
    out = to_str(template)
    for i, arg in enumerate(args):
        out = out.replace("{" + str(i) + "}", to_str(arg))
    return out


_BUILTINS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startsWith": lambda s, p: to_str(s).lower().startswith(to_str(p).lower()),
    "endsWith": lambda s, p: to_str(s).lower().endswith(to_str(p).lower()),
    "format": _format,
    "join": lambda items, sep=",": to_str(sep).join(to_str(i) for i in (items or [])),
    "toJSON": lambda v: json.dumps(v, sort_keys=True),
    "fromJSON": lambda s: json.loads(to_str(s)),
}


# ---------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    return bool(value)


def to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _coerce_pair(a: Any, b: Any) -> Tuple[Any, Any]:
    """Loose equality: numbers compare numerically, everything else as strings."""
    if isinstance(a, (int, float)) and not isinstance(a, bool) and isinstance(b, str):
        try:
            return float(a), float(b)
        except ValueError:
            return to_str(a), b
    if isinstance(b, (int, float)) and not isinstance(b, bool) and isinstance(a, str):
        b2, a2 = _coerce_pair(b, a)
        return a2, b2
    if isinstance(a, (int, float)) and isinstance(b, (int, float)) and not isinstance(a, bool) and not isinstance(b, bool):
        return float(a), float(b)
    if a is None or b is None or isinstance(a, bool) or isinstance(b, bool):
        return to_str(a), to_str(b)
    if isinstance(a, str) and isinstance(b, str):
        return a, b
    return to_str(a), to_str(b)


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m:
            raise ConditionEvalError(text, f"unexpected character {text[pos]!r} at {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, value: Optional[str] = None) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ConditionEvalError(self.text, "unexpected end of expression")
        if value is not None and tok[1] != value:
            raise ConditionEvalError(self.text, f"expected {value!r}, got {tok[1]!r}")
        self.pos += 1
        return tok

    def at(self, value: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "op" and tok[1] == value

    def parse(self) -> Node:
        if not self.tokens:
            raise ConditionEvalError(self.text, "empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionEvalError(self.text, f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.at("||"):
            self.take()
            node = Logical("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_unary()
        while self.at("&&"):
            self.take()
            node = Logical("&&", node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        if self.at("!"):
            self.take()
            return Not(self.parse_unary())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        node = self.parse_primary()
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] in ("==", "!=", "<", "<=", ">", ">="):
            self.take()
            node = Compare(tok[1], node, self.parse_primary())
        return node

    def parse_primary(self) -> Node:
        kind, value = self.take()
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(value[1:-1].replace("''", "'"))
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.take(")")
            return node
        if kind != "ident":
            raise ConditionEvalError(self.text, f"unexpected token {value!r}")

        if value == "true":
            return Literal(True)
        if value == "false":
            return Literal(False)
        if value == "null":
            return Literal(None)

        if self.at("("):
            self.take()
            args: List[Node] = []
            if not self.at(")"):
                args.append(self.parse_or())
                while self.at(","):
                    self.take()
                    args.append(self.parse_or())
            self.take(")")
            return Call(value, tuple(args))

        path = [value]
        while self.at(".") or self.at("["):
            if self.take()[1] == ".":
                kind, part = self.take()
                if kind != "ident":
                    raise ConditionEvalError(self.text, f"expected a property name after '.', got {part!r}")
                path.append(part)
            else:
                kind, part = self.take()
                if kind != "string":
                    raise ConditionEvalError(self.text, "index must be a quoted string")
                path.append(part[1:-1])
                self.take("]")
        return Ref(tuple(path))


def _strip_wrapper(text: str) -> str:
    text = text.strip()
    m = _PLACEHOLDER.fullmatch(text)
    return m.group(1).strip() if m else text


@lru_cache(maxsize=512)
def parse(text: str) -> Node:
    """Parse an expression (an optional ``${{ }}`` wrapper is allowed)."""
    return _Parser(_strip_wrapper(text)).parse()


def uses_status_function(node: Node) -> bool:
    if isinstance(node, Call):
        return node.name in STATUS_FUNCTIONS or any(uses_status_function(a) for a in node.args)
    if isinstance(node, Not):
        return uses_status_function(node.operand)
    if isinstance(node, (Logical, Compare)):
        return uses_status_function(node.left) or uses_status_function(node.right)
    return False


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def evaluate(text: str, ctx: ExpressionContext) -> Any:
    return parse(text).evaluate(ctx)


def evaluate_condition(text: Optional[str], ctx: ExpressionContext) -> bool:
    """
    Evaluate an `if:` condition. Missing/empty condition means `success()`.

    Raises:
        ConditionEvalError: malformed expression or unknown context/function.
    """
    if text is None or not str(text).strip():
        return ctx.is_success and not ctx.is_cancelled
    node = parse(str(text))
    if not uses_status_function(node):
        node = Logical("&&", Call("success", ()), node)
    return truthy(node.evaluate(ctx))


def interpolate(text: Any, ctx: ExpressionContext) -> Any:
    """Replace every ``${{ expr }}`` in a string. Non-strings pass through."""
    if not isinstance(text, str) or "${{" not in text:
        return text
    return _PLACEHOLDER.sub(lambda m: to_str(evaluate(m.group(1), ctx)), text)


def interpolate_mapping(values: Mapping[str, Any], ctx: ExpressionContext) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in values.items():
        if isinstance(v, (list, tuple)):
            out[k] = [interpolate(i, ctx) for i in v]
        else:
            out[k] = interpolate(v, ctx)
    return out
