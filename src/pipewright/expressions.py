# expressions.py
"""
Tiny expression language for job/step conditions and `${{ }}` templates.

Supported:
    literals     'text' (quote escaped as ''), 42, 1.5, true, false, null
    lookups      matrix.os, env.CI, vars.yyyymm, steps.setup.outcome, cache.hit
    operators    ! == != < <= > >= && || and parentheses
    functions    always(), success(), contains(a, b), startsWith(a, b), endsWith(a, b)

`&&` / `||` return one of their operands (like the workflow syntax they come
from); conditions only look at the truthiness of the final value. Missing
lookups resolve to null. String comparison ignores case, and booleans compare
equal to the strings 'true' / 'false' so `cache.hit != 'true'` reads naturally.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ExpressionError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>\d+(?:\.\d+)?)
      | (?P<string>'(?:[^']|'')*')
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,])
      | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*)
    )
    """,
    re.VERBOSE,
)
_TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)
_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)

_COMPARISONS = ("==", "!=", "<", "<=", ">", ">=")

Token = Tuple[str, str]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        if text[pos:].strip() == "":
            break
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise ExpressionError(f"Unexpected character at {pos} in expression: {text!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _equals(a: Any, b: Any) -> bool:
    if isinstance(a, str) or isinstance(b, str):
        if isinstance(a, (str, bool)) and isinstance(b, (str, bool)):
            return as_text(a).lower() == as_text(b).lower()
        na, nb = _as_number(a), _as_number(b)
        if na is not None and nb is not None:
            return na == nb
        return as_text(a).lower() == as_text(b).lower()
    if a is None or b is None:
        return a is b
    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None:
        return na == nb
    return a == b


def _compare(op: str, a: Any, b: Any) -> bool:
    if op == "==":
        return _equals(a, b)
    if op == "!=":
        return not _equals(a, b)

    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None:
        left, right = na, nb
    else:
        left, right = as_text(a).lower(), as_text(b).lower()
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple, set)):
        return any(_equals(item, needle) for item in haystack)
    return as_text(needle).lower() in as_text(haystack).lower()


DEFAULT_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "always": lambda: True,
    # steps stop at the first failure, so anything still evaluated follows success
    "success": lambda: True,
    "contains": _contains,
    "startswith": lambda a, b: as_text(a).lower().startswith(as_text(b).lower()),
    "endswith": lambda a, b: as_text(a).lower().endswith(as_text(b).lower()),
}


class _Parser:
    def __init__(self, text: str, variables: Mapping[str, Any], functions: Mapping[str, Callable[..., Any]]):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0
        self.variables = variables
        self.functions = functions

    # -- token helpers --------------------------------------------------

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _peek_op(self, *ops: str) -> Optional[str]:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] in ops:
            return tok[1]
        return None

    def _next(self) -> Token:
        tok = self._peek()
        if tok is None:
            raise ExpressionError(f"Unexpected end of expression: {self.text!r}")
        self.pos += 1
        return tok

    def _expect_op(self, op: str) -> None:
        kind, value = self._next()
        if kind != "op" or value != op:
            raise ExpressionError(f"Expected '{op}' but found '{value}' in expression: {self.text!r}")

    # -- grammar ----------------------------------------------------------

    def parse(self) -> Any:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"Unexpected '{self._peek()[1]}' in expression: {self.text!r}")
        return value

    def _or(self) -> Any:
        left = self._and()
        while self._peek_op("||"):
            self._next()
            right = self._and()
            left = left if truthy(left) else right
        return left

    def _and(self) -> Any:
        left = self._not()
        while self._peek_op("&&"):
            self._next()
            right = self._not()
            left = right if truthy(left) else left
        return left

    def _not(self) -> Any:
        if self._peek_op("!"):
            self._next()
            return not truthy(self._not())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._primary()
        op = self._peek_op(*_COMPARISONS)
        if op:
            self._next()
            right = self._primary()
            return _compare(op, left, right)
        return left

    def _primary(self) -> Any:
        kind, value = self._next()
        if kind == "number":
            return float(value) if "." in value else int(value)
        if kind == "string":
            return value[1:-1].replace("''", "'")
        if kind == "op" and value == "(":
            inner = self._or()
            self._expect_op(")")
            return inner
        if kind == "name":
            lowered = value.lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
            if lowered == "null":
                return None
            if self._peek_op("("):
                return self._call(value)
            return self._lookup(value)
        raise ExpressionError(f"Unexpected '{value}' in expression: {self.text!r}")

    def _call(self, name: str) -> Any:
        fn = self.functions.get(name.lower())
        if fn is None:
            raise ExpressionError(f"Unknown function '{name}()' in expression: {self.text!r}")
        self._expect_op("(")
        args: List[Any] = []
        if not self._peek_op(")"):
            args.append(self._or())
            while self._peek_op(","):
                self._next()
                args.append(self._or())
        self._expect_op(")")
        try:
            return fn(*args)
        except TypeError as e:
            raise ExpressionError(f"Bad arguments for '{name}()': {e}") from e

    def _lookup(self, head: str) -> Any:
        current: Any = self.variables.get(head) if isinstance(self.variables, Mapping) else None
        while self._peek_op("."):
            self._next()
            kind, part = self._next()
            if kind not in ("name", "number"):
                raise ExpressionError(f"Bad property access '.{part}' in expression: {self.text!r}")
            current = current.get(part) if isinstance(current, Mapping) else None
        return current


def unwrap(expr: str) -> str:
    """Strip an optional `${{ ... }}` wrapper."""
    m = _WRAPPED_RE.match(expr)
    return m.group(1) if m else expr


def evaluate(
    expr: str,
    variables: Mapping[str, Any],
    functions: Optional[Mapping[str, Callable[..., Any]]] = None,
) -> Any:
    """Evaluate an expression string against run-scoped variables."""
    fns = dict(DEFAULT_FUNCTIONS)
    if functions:
        fns.update({k.lower(): v for k, v in functions.items()})
    return _Parser(unwrap(expr), variables, fns).parse()


def evaluate_condition(condition: Any, variables: Mapping[str, Any]) -> bool:
    """
    Decide a job or step condition.

    None means "always run"; callables get the variables mapping; strings are
    parsed as expressions. A callable that raises is reported as an
    ExpressionError, like a malformed string.
    """
    if condition is None:
        return True
    if callable(condition):
        try:
            return bool(condition(variables))
        except Exception as e:
            raise ExpressionError(f"condition raised {type(e).__name__}: {e}") from e
    if isinstance(condition, bool):
        return condition
    return truthy(evaluate(str(condition), variables))


def render_template(template: Any, variables: Mapping[str, Any]) -> Any:
    """Substitute every `${{ expr }}` in a string; non-strings pass through."""
    if not isinstance(template, str) or "${{" not in template:
        return template
    return _TEMPLATE_RE.sub(lambda m: as_text(evaluate(m.group(1), variables)), template)
