"""
Sandboxed evaluator for challenge scripts.

Scripts are parsed up front by js_parser and then run by a tree-walking
interpreter that only sees its declared inputs plus a fixed whitelist of
pure built-ins. Every evaluation is bounded by a SandboxLimits budget:
step count, wall-clock deadline, call depth, parse nesting depth, memory
cells (bindings, array elements, object properties) and string length.
A breach raises ResourceExceededError; anything outside the supported
subset raises UnsupportedConstructError.

There is no randomness and no shared state between runs, so the same
script with the same inputs always yields the same value.
"""

import asyncio
import base64
import binascii
import contextvars
import json
import math
import re
import threading
import time
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Callable, Optional
from urllib.parse import quote, unquote

from .audit_logger import AuditLogger
from .config import SandboxLimits
from .exceptions import ResourceExceededError, UnsupportedConstructError
from .js_parser import (
    ArrayLiteral,
    Assign,
    Binary,
    Block,
    Break,
    Call,
    Conditional,
    Continue,
    DoWhile,
    Empty,
    ExprStmt,
    For,
    FunctionDecl,
    FunctionExpr,
    Identifier,
    If,
    Literal,
    Logical,
    Member,
    ObjectLiteral,
    Program,
    Return,
    Sequence,
    Unary,
    Update,
    VarDecl,
    While,
    parse_expression,
    parse_program,
)
from .models import SandboxScript

NAN = float("nan")
INF = float("inf")

# Deadline and cancellation are polled every this many steps
TIME_CHECK_INTERVAL = 64

DEFAULT_GRACE_SECONDS = 0.5

# String ceiling of the evaluation running in the current context
_string_ceiling: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar(
    "sandbox_string_ceiling", default=None
)


class _Undefined:
    """The JavaScript ``undefined`` value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNDEFINED = _Undefined()


class JSFunction:
    """A script-defined function closing over its defining scope."""

    def __init__(self, name: Optional[str], params: list[str], body: list, closure: "_Scope") -> None:
        self.name = name or ""
        self.params = params
        self.body = body
        self.closure = closure

    def __repr__(self) -> str:
        return f"JSFunction({self.name!r})"


class NativeFunction:
    """A whitelisted built-in. ``fn`` receives the interpreter and the argument list."""

    def __init__(self, name: str, fn: Callable, props: Optional[dict] = None) -> None:
        self.name = name
        self.fn = fn
        self.props = props or {}

    def __repr__(self) -> str:
        return f"NativeFunction({self.name!r})"


class _BreakSignal(Exception):
    pass


class _ContinueSignal(Exception):
    pass


class _ReturnSignal(Exception):
    def __init__(self, value: Any) -> None:
        super().__init__()
        self.value = value


def _script_error(message: str) -> UnsupportedConstructError:
    return UnsupportedConstructError(code="script_error", message=message, details={})


# Coercions -----------------------------------------------------------------

_JS_DECIMAL_RE = re.compile(r"[+-]?(?:Infinity|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_JS_RADIX_RE = re.compile(r"0([xXoObB])([0-9a-fA-F]+)")
_ARRAY_INDEX_RE = re.compile(r"0|[1-9]\d*")
_RADIX_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"
_JS_WHITESPACE = (
    " \t\n\r\v\f\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006"
    "\u2007\u2008\u2009\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
)


def is_callable(value: Any) -> bool:
    return isinstance(value, (JSFunction, NativeFunction))


def type_of(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "object"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if is_callable(value):
        return "function"
    return "object"


def number_to_string(value: float) -> str:
    """Format a number the way JavaScript's Number#toString does."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"
    if value < 0:
        return "-" + number_to_string(-value)

    mantissa, _, exp_part = repr(float(value)).partition("e")
    exponent = int(exp_part) if exp_part else 0
    int_part, _, frac_part = mantissa.partition(".")
    all_digits = int_part + frac_part
    stripped = all_digits.lstrip("0")
    leading_zeros = len(all_digits) - len(stripped)
    digits = stripped.rstrip("0") or "0"
    n = len(int_part) - leading_zeros + exponent
    k = len(digits)

    if k <= n <= 21:
        return digits + "0" * (n - k)
    if 0 < n <= 21:
        return digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return "0." + "0" * (-n) + digits
    e = n - 1
    sign = "+" if e >= 0 else "-"
    if k == 1:
        return f"{digits}e{sign}{abs(e)}"
    return f"{digits[0]}.{digits[1:]}e{sign}{abs(e)}"


def to_string(value: Any) -> str:
    """JavaScript ToString."""
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number_to_string(float(value))
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return join_array(value, ",")
    if isinstance(value, dict):
        return "[object Object]"
    if is_callable(value):
        return f"function {value.name}() {{ [native code] }}"
    return str(value)


def _string_limit_error(length: int, limit: int) -> ResourceExceededError:
    return ResourceExceededError(
        code="string_limit_exceeded",
        message=f"String of length {length} exceeds {limit}",
        details={"limit": limit},
    )


def join_array(items: list, separator: str, _active: Optional[set] = None) -> str:
    """
    Array#join under the string ceiling of the running evaluation.

    The length is checked before each piece is appended. An array that
    contains itself contributes an empty string, as in browsers.
    """
    active = _active if _active is not None else set()
    if id(items) in active:
        return ""
    active.add(id(items))
    limit = _string_ceiling.get()
    pieces: list[str] = []
    length = 0
    try:
        for index, item in enumerate(items):
            if index:
                pieces.append(separator)
                length += len(separator)
            if isinstance(item, list):
                piece = join_array(item, ",", active)
            elif item is None or item is UNDEFINED:
                piece = ""
            else:
                piece = to_string(item)
            length += len(piece)
            if limit is not None and length > limit:
                raise _string_limit_error(length, limit)
            pieces.append(piece)
    finally:
        active.discard(id(items))
    return "".join(pieces)


js_to_string = to_string


def _string_to_number(text: str) -> float:
    text = text.strip(_JS_WHITESPACE)
    if not text:
        return 0.0
    radix_match = _JS_RADIX_RE.fullmatch(text)
    if radix_match:
        base = {"x": 16, "o": 8, "b": 2}[radix_match.group(1).lower()]
        try:
            return float(int(radix_match.group(2), base))
        except ValueError:
            return NAN
    if _JS_DECIMAL_RE.fullmatch(text):
        return float(text.replace("Infinity", "inf"))
    return NAN


def to_primitive(value: Any) -> Any:
    if isinstance(value, (list, dict)) or is_callable(value):
        return to_string(value)
    return value


def to_number(value: Any) -> float:
    """JavaScript ToNumber."""
    if value is UNDEFINED:
        return NAN
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return _string_to_number(value)
    if isinstance(value, list):
        return _string_to_number(to_string(value))
    return NAN


def to_integer(value: Any) -> float:
    number = to_number(value)
    if math.isnan(number):
        return 0.0
    if math.isinf(number):
        return number
    return float(math.trunc(number))


def to_uint32(value: Any) -> int:
    number = to_number(value)
    if math.isnan(number) or math.isinf(number):
        return 0
    return math.trunc(number) % (1 << 32)


def to_int32(value: Any) -> int:
    unsigned = to_uint32(value)
    return unsigned - (1 << 32) if unsigned >= (1 << 31) else unsigned


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return len(value) > 0
    return True


def strict_equals(a: Any, b: Any) -> bool:
    kind_a, kind_b = type_of(a), type_of(b)
    if kind_a != kind_b:
        return False
    if kind_a == "object" and a is not None and b is not None:
        return a is b
    if kind_a == "function":
        return a is b
    return a == b


def loose_equals(a: Any, b: Any) -> bool:
    kind_a, kind_b = type_of(a), type_of(b)
    a_nullish = a is None or a is UNDEFINED
    b_nullish = b is None or b is UNDEFINED
    if a_nullish or b_nullish:
        return a_nullish and b_nullish
    if kind_a == kind_b:
        return strict_equals(a, b)
    if kind_a == "boolean":
        return loose_equals(to_number(a), b)
    if kind_b == "boolean":
        return loose_equals(a, to_number(b))
    if kind_a == "number" and kind_b == "string":
        return a == to_number(b)
    if kind_a == "string" and kind_b == "number":
        return to_number(a) == b
    if kind_a in ("object", "function"):
        return loose_equals(to_primitive(a), b)
    if kind_b in ("object", "function"):
        return loose_equals(a, to_primitive(b))
    return False


def js_pow(base: float, exponent: float) -> float:
    if math.isnan(exponent):
        return NAN
    if exponent == 0:
        return 1.0
    if math.isnan(base) or (abs(base) == 1 and math.isinf(exponent)):
        return NAN
    odd_integer = exponent.is_integer() and not math.isinf(exponent) and exponent % 2 == 1
    try:
        return math.pow(base, exponent)
    except ValueError:
        if base == 0:
            negative = math.copysign(1.0, base) < 0 and odd_integer
            return -INF if negative else INF
        return NAN
    except OverflowError:
        return -INF if base < 0 and odd_integer else INF


def _divide(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return NAN
        return INF if math.copysign(1.0, a) == math.copysign(1.0, b) else -INF
    return a / b


def _remainder(a: float, b: float) -> float:
    if b == 0 or math.isnan(a) or math.isnan(b) or math.isinf(a):
        return NAN
    if math.isinf(b):
        return a
    return math.fmod(a, b)


def to_js(value: Any, depth: int = 0) -> Any:
    """Deep-copy a Python value into the sandbox's value model."""
    if depth > 64:
        raise ResourceExceededError(
            code="input_too_deep",
            message="Sandbox input nesting is too deep",
            details={"limit": 64},
        )
    if value is None or value is UNDEFINED or isinstance(value, (bool, str)):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, dict):
        return {str(k): to_js(v, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_js(v, depth + 1) for v in value]
    raise UnsupportedConstructError(
        code="unsupported_input",
        message=f"Unsupported sandbox input type {type(value).__name__}",
        details={},
    )


def to_python(value: Any) -> Any:
    """Convert a sandbox value back into plain Python data."""
    if value is UNDEFINED:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, list):
        return [to_python(v) for v in value]
    if isinstance(value, dict):
        return {k: to_python(v) for k, v in value.items()}
    if is_callable(value):
        return None
    return value


def _property_key(key: Any) -> str:
    return to_string(key)


def _array_index(key: str) -> Optional[int]:
    if _ARRAY_INDEX_RE.fullmatch(key):
        return int(key)
    return None


def _relative_index(value: Any, length: int, default: int) -> int:
    if value is UNDEFINED:
        return default
    index = to_integer(value)
    if index < 0:
        return int(max(length + index, 0))
    return int(min(index, length))


def _arg(args: list, index: int) -> Any:
    return args[index] if index < len(args) else UNDEFINED


class _Scope:
    """A lexical scope. Function scopes also hold hoisted ``var`` bindings."""

    __slots__ = ("vars", "consts", "parent", "is_function")

    def __init__(self, parent: Optional["_Scope"] = None, is_function: bool = False) -> None:
        self.vars: dict[str, Any] = {}
        self.consts: set[str] = set()
        self.parent = parent
        self.is_function = is_function

    def find(self, name: str) -> Optional["_Scope"]:
        scope: Optional[_Scope] = self
        while scope is not None:
            if name in scope.vars:
                return scope
            scope = scope.parent
        return None

    def function_scope(self) -> "_Scope":
        scope = self
        while not scope.is_function and scope.parent is not None:
            scope = scope.parent
        return scope


class _Interpreter:
    """Executes one parsed program under one budget. Never reused."""

    def __init__(
        self,
        limits: SandboxLimits,
        deadline: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._limits = limits
        self._deadline = deadline
        self._cancel = cancel_event
        self._steps = 0
        self._cells = 0
        self._call_depth = 0

        self._builtins = _Scope(is_function=True)
        self._builtins.vars.update(_make_builtins())
        self._global = _Scope(parent=self._builtins, is_function=True)

        self._stmt_handlers = {
            VarDecl: self._exec_var,
            FunctionDecl: self._exec_function_decl,
            ExprStmt: self._exec_expr_stmt,
            Block: self._exec_block,
            If: self._exec_if,
            For: self._exec_for,
            While: self._exec_while,
            DoWhile: self._exec_do_while,
            Break: self._exec_break,
            Continue: self._exec_continue,
            Return: self._exec_return,
            Empty: self._exec_empty,
        }
        self._expr_handlers = {
            Literal: self._eval_literal,
            Identifier: self._eval_identifier,
            ArrayLiteral: self._eval_array,
            ObjectLiteral: self._eval_object,
            FunctionExpr: self._eval_function,
            Unary: self._eval_unary,
            Update: self._eval_update,
            Binary: self._eval_binary,
            Logical: self._eval_logical,
            Conditional: self._eval_conditional,
            Assign: self._eval_assign,
            Sequence: self._eval_sequence,
            Member: self._eval_member,
            Call: self._eval_call,
        }

    # budget accounting

    def tick(self) -> None:
        self._steps += 1
        if self._steps > self._limits.max_steps:
            raise ResourceExceededError(
                code="step_limit_exceeded",
                message=f"Script exceeded {self._limits.max_steps} steps",
                details={"limit": self._limits.max_steps},
            )
        if self._cancel is not None and self._cancel.is_set():
            raise ResourceExceededError(
                code="cancelled",
                message="Script evaluation was cancelled",
                details={"steps": self._steps},
            )
        if self._steps % TIME_CHECK_INTERVAL == 0 and time.monotonic() > self._deadline:
            raise ResourceExceededError(
                code="time_limit_exceeded",
                message=f"Script exceeded {self._limits.max_duration_seconds}s",
                details={"limit": self._limits.max_duration_seconds, "steps": self._steps},
            )

    def alloc(self, cells: int = 1) -> None:
        self._cells += cells
        if self._cells > self._limits.max_memory_cells:
            raise ResourceExceededError(
                code="memory_limit_exceeded",
                message=f"Script exceeded {self._limits.max_memory_cells} memory cells",
                details={"limit": self._limits.max_memory_cells},
            )

    @property
    def max_string_length(self) -> int:
        return self._limits.max_string_length

    def check_string_length(self, length: int) -> None:
        if length > self._limits.max_string_length:
            raise _string_limit_error(length, self._limits.max_string_length)

    # entry points

    def bind_inputs(self, inputs: dict) -> None:
        for name, value in inputs.items():
            self.alloc()
            self._global.vars[name] = to_js(value)

    def run(self, program: Program) -> Any:
        completion = UNDEFINED
        try:
            self._hoist(program.body, self._global)
            for stmt in program.body:
                result = self._exec(stmt, self._global)
                if isinstance(stmt, ExprStmt):
                    completion = result
        except (_BreakSignal, _ContinueSignal):
            raise _script_error("break/continue outside of a loop")
        return completion

    def evaluate_expression(self, node: Any) -> Any:
        return self._eval(node, self._global)

    # statements

    def _hoist(self, body: list, scope: _Scope) -> None:
        names: list[str] = []
        _collect_var_names(body, names)
        for name in names:
            if name not in scope.vars:
                self.alloc()
                scope.vars[name] = UNDEFINED
        for stmt in body:
            if isinstance(stmt, FunctionDecl):
                if stmt.name not in scope.vars:
                    self.alloc()
                scope.vars[stmt.name] = JSFunction(stmt.name, stmt.params, stmt.body, scope)

    def _exec(self, stmt: Any, scope: _Scope) -> Any:
        self.tick()
        handler = self._stmt_handlers.get(type(stmt))
        if handler is None:
            raise _script_error(f"Unsupported statement {type(stmt).__name__}")
        return handler(stmt, scope)

    def _exec_var(self, stmt: VarDecl, scope: _Scope) -> Any:
        for name, init in stmt.declarations:
            if stmt.kind == "var":
                target = scope.find(name) or scope.function_scope()
                if init is not None:
                    target.vars[name] = self._eval(init, scope)
                elif name not in target.vars:
                    self.alloc()
                    target.vars[name] = UNDEFINED
            else:
                value = self._eval(init, scope) if init is not None else UNDEFINED
                if name not in scope.vars:
                    self.alloc()
                scope.vars[name] = value
                if stmt.kind == "const":
                    scope.consts.add(name)
        return UNDEFINED

    def _exec_function_decl(self, stmt: FunctionDecl, scope: _Scope) -> Any:
        return UNDEFINED

    def _exec_expr_stmt(self, stmt: ExprStmt, scope: _Scope) -> Any:
        return self._eval(stmt.expr, scope)

    def _exec_block(self, stmt: Block, scope: _Scope) -> Any:
        inner = _Scope(parent=scope)
        for child in stmt.body:
            if isinstance(child, FunctionDecl):
                self.alloc()
                inner.vars[child.name] = JSFunction(child.name, child.params, child.body, inner)
        for child in stmt.body:
            self._exec(child, inner)
        return UNDEFINED

    def _exec_if(self, stmt: If, scope: _Scope) -> Any:
        if truthy(self._eval(stmt.test, scope)):
            self._exec(stmt.consequent, scope)
        elif stmt.alternate is not None:
            self._exec(stmt.alternate, scope)
        return UNDEFINED

    def _exec_for(self, stmt: For, scope: _Scope) -> Any:
        loop_scope = _Scope(parent=scope)
        if stmt.init is not None:
            self._exec(stmt.init, loop_scope)
        while True:
            self.tick()
            if stmt.test is not None and not truthy(self._eval(stmt.test, loop_scope)):
                break
            try:
                self._exec(stmt.body, loop_scope)
            except _BreakSignal:
                break
            except _ContinueSignal:
                pass
            if stmt.update is not None:
                self._eval(stmt.update, loop_scope)
        return UNDEFINED

    def _exec_while(self, stmt: While, scope: _Scope) -> Any:
        while True:
            self.tick()
            if not truthy(self._eval(stmt.test, scope)):
                break
            try:
                self._exec(stmt.body, scope)
            except _BreakSignal:
                break
            except _ContinueSignal:
                continue
        return UNDEFINED

    def _exec_do_while(self, stmt: DoWhile, scope: _Scope) -> Any:
        while True:
            self.tick()
            try:
                self._exec(stmt.body, scope)
            except _BreakSignal:
                break
            except _ContinueSignal:
                pass
            if not truthy(self._eval(stmt.test, scope)):
                break
        return UNDEFINED

    def _exec_break(self, stmt: Break, scope: _Scope) -> Any:
        raise _BreakSignal()

    def _exec_continue(self, stmt: Continue, scope: _Scope) -> Any:
        raise _ContinueSignal()

    def _exec_return(self, stmt: Return, scope: _Scope) -> Any:
        value = self._eval(stmt.argument, scope) if stmt.argument is not None else UNDEFINED
        raise _ReturnSignal(value)

    def _exec_empty(self, stmt: Empty, scope: _Scope) -> Any:
        return UNDEFINED

    # expressions

    def _eval(self, node: Any, scope: _Scope) -> Any:
        self.tick()
        handler = self._expr_handlers.get(type(node))
        if handler is None:
            raise _script_error(f"Unsupported expression {type(node).__name__}")
        return handler(node, scope)

    def _eval_literal(self, node: Literal, scope: _Scope) -> Any:
        return node.value

    def _eval_identifier(self, node: Identifier, scope: _Scope) -> Any:
        owner = scope.find(node.name)
        if owner is None:
            raise UnsupportedConstructError(
                code="unknown_global",
                message=f"Unknown global '{node.name}'",
                details={"name": node.name},
            )
        return owner.vars[node.name]

    def _eval_array(self, node: ArrayLiteral, scope: _Scope) -> Any:
        self.alloc(len(node.elements))
        return [self._eval(element, scope) for element in node.elements]

    def _eval_object(self, node: ObjectLiteral, scope: _Scope) -> Any:
        self.alloc(len(node.properties))
        result: dict[str, Any] = {}
        for key, value_node in node.properties:
            result[_property_key(key)] = self._eval(value_node, scope)
        return result

    def _eval_function(self, node: FunctionExpr, scope: _Scope) -> Any:
        if node.name:
            own = _Scope(parent=scope)
            fn = JSFunction(node.name, node.params, node.body, own)
            own.vars[node.name] = fn
            return fn
        return JSFunction(None, node.params, node.body, scope)

    def _eval_unary(self, node: Unary, scope: _Scope) -> Any:
        if node.op == "typeof":
            if isinstance(node.operand, Identifier) and scope.find(node.operand.name) is None:
                return "undefined"
            return type_of(self._eval(node.operand, scope))
        value = self._eval(node.operand, scope)
        if node.op == "!":
            return not truthy(value)
        if node.op == "-":
            return -to_number(value)
        if node.op == "+":
            return to_number(value)
        if node.op == "~":
            return float(~to_int32(value))
        if node.op == "void":
            return UNDEFINED
        raise _script_error(f"Unsupported unary operator {node.op}")

    def _eval_update(self, node: Update, scope: _Scope) -> Any:
        ref = self._resolve_ref(node.target, scope)
        old = to_number(self._get_ref(ref))
        new = old + 1 if node.op == "++" else old - 1
        self._put_ref(ref, new)
        return new if node.prefix else old

    def _eval_binary(self, node: Binary, scope: _Scope) -> Any:
        left = self._eval(node.left, scope)
        right = self._eval(node.right, scope)
        return self.binary(node.op, left, right)

    def _eval_logical(self, node: Logical, scope: _Scope) -> Any:
        left = self._eval(node.left, scope)
        if node.op == "&&":
            return self._eval(node.right, scope) if truthy(left) else left
        if node.op == "||":
            return left if truthy(left) else self._eval(node.right, scope)
        if left is None or left is UNDEFINED:
            return self._eval(node.right, scope)
        return left

    def _eval_conditional(self, node: Conditional, scope: _Scope) -> Any:
        if truthy(self._eval(node.test, scope)):
            return self._eval(node.consequent, scope)
        return self._eval(node.alternate, scope)

    def _eval_assign(self, node: Assign, scope: _Scope) -> Any:
        ref = self._resolve_ref(node.target, scope)
        if node.op == "=":
            value = self._eval(node.value, scope)
        else:
            current = self._get_ref(ref)
            value = self.binary(node.op[:-1], current, self._eval(node.value, scope))
        self._put_ref(ref, value)
        return value

    def _eval_sequence(self, node: Sequence, scope: _Scope) -> Any:
        value = UNDEFINED
        for expr in node.expressions:
            value = self._eval(expr, scope)
        return value

    def _eval_member(self, node: Member, scope: _Scope) -> Any:
        obj = self._eval(node.obj, scope)
        key = self._eval(node.prop, scope) if node.computed else node.prop.value
        return self.get_property(obj, key)

    def _eval_call(self, node: Call, scope: _Scope) -> Any:
        if isinstance(node.callee, Member):
            obj = self._eval(node.callee.obj, scope)
            key = self._eval(node.callee.prop, scope) if node.callee.computed else node.callee.prop.value
            fn = self.get_property(obj, key)
            label = to_string(key)
        else:
            fn = self._eval(node.callee, scope)
            label = node.callee.name if isinstance(node.callee, Identifier) else "expression"
        args = [self._eval(arg, scope) for arg in node.args]
        if not is_callable(fn):
            raise _script_error(f"{label} is not a function")
        return self.call(fn, args)

    # references

    def _resolve_ref(self, target: Any, scope: _Scope) -> tuple:
        if isinstance(target, Identifier):
            return ("var", scope, target.name)
        obj = self._eval(target.obj, scope)
        key = self._eval(target.prop, scope) if target.computed else target.prop.value
        return ("prop", obj, key)

    def _get_ref(self, ref: tuple) -> Any:
        if ref[0] == "var":
            return self._eval_identifier(Identifier(ref[2]), ref[1])
        return self.get_property(ref[1], ref[2])

    def _put_ref(self, ref: tuple, value: Any) -> None:
        if ref[0] == "var":
            _, scope, name = ref
            owner = scope.find(name)
            if owner is self._builtins:
                raise _script_error(f"Cannot reassign built-in '{name}'")
            if owner is None:
                # sloppy-mode implicit global
                self.alloc()
                self._global.vars[name] = value
                return
            if name in owner.consts:
                raise _script_error(f"Assignment to constant variable '{name}'")
            owner.vars[name] = value
            return
        self.put_property(ref[1], ref[2], value)

    # operators

    def binary(self, op: str, left: Any, right: Any) -> Any:
        if op == "+":
            a, b = to_primitive(left), to_primitive(right)
            if isinstance(a, str) or isinstance(b, str):
                a_str, b_str = to_string(a), to_string(b)
                self.check_string_length(len(a_str) + len(b_str))
                return a_str + b_str
            return to_number(a) + to_number(b)
        if op == "-":
            return to_number(left) - to_number(right)
        if op == "*":
            return to_number(left) * to_number(right)
        if op == "/":
            return _divide(to_number(left), to_number(right))
        if op == "%":
            return _remainder(to_number(left), to_number(right))
        if op == "**":
            return js_pow(to_number(left), to_number(right))
        if op == "&":
            return float(to_int32(left) & to_int32(right))
        if op == "|":
            return float(to_int32(left) | to_int32(right))
        if op == "^":
            return float(to_int32(left) ^ to_int32(right))
        if op == "<<":
            return float(to_int32(to_int32(left) << (to_uint32(right) & 31)))
        if op == ">>":
            return float(to_int32(left) >> (to_uint32(right) & 31))
        if op == ">>>":
            return float(to_uint32(left) >> (to_uint32(right) & 31))
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op in ("<", ">", "<=", ">="):
            return self._compare(op, left, right)
        raise _script_error(f"Unsupported operator {op}")

    @staticmethod
    def _compare(op: str, left: Any, right: Any) -> bool:
        a, b = to_primitive(left), to_primitive(right)
        if not (isinstance(a, str) and isinstance(b, str)):
            a, b = to_number(a), to_number(b)
            if math.isnan(a) or math.isnan(b):
                return False
        if op == "<":
            return a < b
        if op == ">":
            return a > b
        if op == "<=":
            return a <= b
        return a >= b

    # properties

    def get_property(self, obj: Any, key: Any) -> Any:
        if obj is UNDEFINED or obj is None:
            raise _script_error(f"Cannot read properties of {to_string(obj)} (reading '{to_string(key)}')")
        name = _property_key(key)
        if isinstance(obj, str):
            if name == "length":
                return float(len(obj))
            index = _array_index(name)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            return _bind_method(STRING_METHODS, name, obj)
        if isinstance(obj, list):
            if name == "length":
                return float(len(obj))
            index = _array_index(name)
            if index is not None:
                return obj[index] if index < len(obj) else UNDEFINED
            return _bind_method(ARRAY_METHODS, name, obj)
        if isinstance(obj, dict):
            return obj.get(name, UNDEFINED)
        if isinstance(obj, bool):
            return UNDEFINED
        if isinstance(obj, (int, float)):
            return _bind_method(NUMBER_METHODS, name, float(obj))
        if isinstance(obj, NativeFunction):
            return obj.props.get(name, UNDEFINED)
        if isinstance(obj, JSFunction):
            if name == "length":
                return float(len(obj.params))
            if name == "name":
                return obj.name
        return UNDEFINED

    def put_property(self, obj: Any, key: Any, value: Any) -> None:
        if obj is UNDEFINED or obj is None:
            raise _script_error(f"Cannot set properties of {to_string(obj)} (setting '{to_string(key)}')")
        name = _property_key(key)
        if isinstance(obj, list):
            if name == "length":
                self._set_array_length(obj, value)
                return
            index = _array_index(name)
            if index is None:
                raise _script_error(f"Named array property '{name}' is not supported")
            if index >= len(obj):
                self.alloc(index - len(obj) + 1)
                obj.extend([UNDEFINED] * (index - len(obj) + 1))
            obj[index] = value
            return
        if isinstance(obj, dict):
            if name not in obj:
                self.alloc()
            obj[name] = value
            return
        if isinstance(obj, (str, bool, int, float)):
            # primitives ignore property writes
            return
        raise _script_error(f"Cannot set property '{name}' on a function")

    def _set_array_length(self, obj: list, value: Any) -> None:
        length = to_number(value)
        if math.isnan(length) or length < 0 or not length.is_integer() or length >= (1 << 32):
            raise _script_error("Invalid array length")
        length_int = int(length)
        if length_int > len(obj):
            self.alloc(length_int - len(obj))
            obj.extend([UNDEFINED] * (length_int - len(obj)))
        else:
            del obj[length_int:]

    # calls

    def call(self, fn: Any, args: list) -> Any:
        if isinstance(fn, NativeFunction):
            return fn.fn(self, args)
        if not isinstance(fn, JSFunction):
            raise _script_error(f"{to_string(fn)} is not a function")

        self._call_depth += 1
        try:
            if self._call_depth > self._limits.max_depth:
                raise ResourceExceededError(
                    code="call_depth_exceeded",
                    message=f"Call depth exceeded {self._limits.max_depth}",
                    details={"limit": self._limits.max_depth},
                )
            scope = _Scope(parent=fn.closure, is_function=True)
            self.alloc(len(fn.params))
            for index, param in enumerate(fn.params):
                scope.vars[param] = _arg(args, index)
            self._hoist(fn.body, scope)
            try:
                for stmt in fn.body:
                    self._exec(stmt, scope)
            except _ReturnSignal as signal:
                return signal.value
            except (_BreakSignal, _ContinueSignal):
                raise _script_error("break/continue outside of a loop")
            return UNDEFINED
        finally:
            self._call_depth -= 1


def _collect_var_names(body: list, names: list[str]) -> None:
    for stmt in body:
        if isinstance(stmt, VarDecl) and stmt.kind == "var":
            names.extend(name for name, _ in stmt.declarations)
        elif isinstance(stmt, Block):
            _collect_var_names(stmt.body, names)
        elif isinstance(stmt, If):
            _collect_var_names([stmt.consequent], names)
            if stmt.alternate is not None:
                _collect_var_names([stmt.alternate], names)
        elif isinstance(stmt, For):
            if stmt.init is not None:
                _collect_var_names([stmt.init], names)
            _collect_var_names([stmt.body], names)
        elif isinstance(stmt, (While, DoWhile)):
            _collect_var_names([stmt.body], names)


def _bind_method(table: dict, name: str, receiver: Any) -> Any:
    impl = table.get(name)
    if impl is None:
        return UNDEFINED
    return NativeFunction(name, lambda interp, args: impl(interp, receiver, args))


# String methods --------------------------------------------------------------


def _str_char_at(interp, s, args):
    index = to_integer(_arg(args, 0))
    return s[int(index)] if 0 <= index < len(s) else ""


def _str_char_code_at(interp, s, args):
    index = to_integer(_arg(args, 0))
    return float(ord(s[int(index)])) if 0 <= index < len(s) else NAN


def _str_index_of(interp, s, args):
    start = int(min(max(to_integer(_arg(args, 1)), 0), len(s)))
    return float(s.find(to_string(_arg(args, 0)), start))


def _str_last_index_of(interp, s, args):
    return float(s.rfind(to_string(_arg(args, 0))))


def _str_slice(interp, s, args):
    start = _relative_index(_arg(args, 0), len(s), 0)
    end = _relative_index(_arg(args, 1), len(s), len(s))
    return s[start:end] if start < end else ""


def _str_substring(interp, s, args):
    def clamp(value, default):
        if value is UNDEFINED:
            return default
        return int(min(max(to_integer(value), 0), len(s)))

    start, end = clamp(_arg(args, 0), 0), clamp(_arg(args, 1), len(s))
    if start > end:
        start, end = end, start
    return s[start:end]


def _str_substr(interp, s, args):
    start = _relative_index(_arg(args, 0), len(s), 0)
    length_arg = _arg(args, 1)
    length = len(s) - start if length_arg is UNDEFINED else int(min(max(to_integer(length_arg), 0), len(s)))
    return s[start:start + length]


def _str_split(interp, s, args):
    separator, limit_arg = _arg(args, 0), _arg(args, 1)
    limit = (1 << 32) - 1 if limit_arg is UNDEFINED else to_uint32(limit_arg)
    if separator is UNDEFINED:
        parts = [s]
    else:
        sep = to_string(separator)
        parts = list(s) if sep == "" else s.split(sep)
    parts = parts[:limit]
    interp.alloc(len(parts))
    return parts


def _str_replace(interp, s, args):
    pattern = to_string(_arg(args, 0))
    replacement = _arg(args, 1)
    index = s.find(pattern)
    if index == -1:
        return s
    if is_callable(replacement):
        substitute = to_string(interp.call(replacement, [pattern, float(index), s]))
    else:
        chunks = to_string(replacement).split("$$")
        matches = sum(chunk.count("$&") for chunk in chunks)
        expanded = sum(len(chunk) for chunk in chunks) + len(chunks) - 1 + matches * (len(pattern) - 2)
        interp.check_string_length(len(s) - len(pattern) + expanded)
        substitute = "$".join(chunk.replace("$&", pattern) for chunk in chunks)
    interp.check_string_length(len(s) - len(pattern) + len(substitute))
    return s[:index] + substitute + s[index + len(pattern):]


def _str_concat(interp, s, args):
    pieces = [s] + [to_string(a) for a in args]
    interp.check_string_length(sum(len(p) for p in pieces))
    return "".join(pieces)


def _str_repeat(interp, s, args):
    count = to_integer(_arg(args, 0))
    if count < 0 or math.isinf(count):
        raise _script_error("Invalid count value")
    interp.check_string_length(len(s) * int(count))
    return s * int(count)


# Unicode case mapping turns one character into at most three
MAX_CASE_EXPANSION = 3


def _str_change_case(interp, s, convert):
    if len(s) * MAX_CASE_EXPANSION > interp.max_string_length:
        interp.check_string_length(sum(len(convert(ch)) for ch in s))
    return convert(s)


STRING_METHODS = {
    "charAt": _str_char_at,
    "charCodeAt": _str_char_code_at,
    "indexOf": _str_index_of,
    "lastIndexOf": _str_last_index_of,
    "slice": _str_slice,
    "substring": _str_substring,
    "substr": _str_substr,
    "split": _str_split,
    "replace": _str_replace,
    "concat": _str_concat,
    "repeat": _str_repeat,
    "toUpperCase": lambda interp, s, args: _str_change_case(interp, s, str.upper),
    "toLowerCase": lambda interp, s, args: _str_change_case(interp, s, str.lower),
    "trim": lambda interp, s, args: s.strip(_JS_WHITESPACE),
    "startsWith": lambda interp, s, args: s.startswith(to_string(_arg(args, 0))),
    "endsWith": lambda interp, s, args: s.endswith(to_string(_arg(args, 0))),
    "includes": lambda interp, s, args: to_string(_arg(args, 0)) in s,
    "toString": lambda interp, s, args: s,
    "valueOf": lambda interp, s, args: s,
}


# Number methods --------------------------------------------------------------


def _num_to_fixed(interp, x, args):
    digits = to_integer(_arg(args, 0))
    if digits < 0 or digits > 100:
        raise _script_error("toFixed() digits argument must be between 0 and 100")
    if math.isnan(x):
        return "NaN"
    if abs(x) >= 1e21 or math.isinf(x):
        return number_to_string(x)
    quantum = Decimal(1).scaleb(-int(digits))
    with localcontext() as context:
        # 21 integer digits plus up to 100 fraction digits
        context.prec = 128
        rounded = Decimal(abs(x)).quantize(quantum, rounding=ROUND_HALF_UP)
    text = f"{rounded:f}"
    return "-" + text if x < 0 and rounded != 0 else text


def _num_to_string(interp, x, args):
    radix_arg = _arg(args, 0)
    radix = 10 if radix_arg is UNDEFINED else int(to_integer(radix_arg))
    if radix < 2 or radix > 36:
        raise _script_error("toString() radix must be between 2 and 36")
    if radix == 10 or math.isnan(x) or math.isinf(x):
        return number_to_string(x)
    negative = x < 0
    x = abs(x)
    integer = int(x)
    fraction = x - integer
    digits = []
    while integer:
        integer, rem = divmod(integer, radix)
        digits.append(_RADIX_DIGITS[rem])
    text = "".join(reversed(digits)) or "0"
    if fraction:
        frac_digits = []
        while fraction and len(frac_digits) < 52:
            fraction *= radix
            digit = int(fraction)
            frac_digits.append(_RADIX_DIGITS[digit])
            fraction -= digit
        text += "." + "".join(frac_digits)
    return "-" + text if negative else text


NUMBER_METHODS = {
    "toFixed": _num_to_fixed,
    "toString": _num_to_string,
    "valueOf": lambda interp, x, args: x,
}


# Array methods ---------------------------------------------------------------


def _arr_push(interp, arr, args):
    interp.alloc(len(args))
    arr.extend(args)
    return float(len(arr))


def _arr_unshift(interp, arr, args):
    interp.alloc(len(args))
    arr[0:0] = args
    return float(len(arr))


def _arr_join(interp, arr, args):
    separator = _arg(args, 0)
    sep = "," if separator is UNDEFINED else to_string(separator)
    return join_array(arr, sep)


def _arr_index_of(interp, arr, args):
    target = _arg(args, 0)
    for index, item in enumerate(arr):
        if strict_equals(item, target):
            return float(index)
    return -1.0


def _arr_slice(interp, arr, args):
    start = _relative_index(_arg(args, 0), len(arr), 0)
    end = _relative_index(_arg(args, 1), len(arr), len(arr))
    result = arr[start:end]
    interp.alloc(len(result))
    return result


def _arr_concat(interp, arr, args):
    result = list(arr)
    for arg in args:
        if isinstance(arg, list):
            result.extend(arg)
        else:
            result.append(arg)
    interp.alloc(len(result))
    return result


def _arr_reverse(interp, arr, args):
    arr.reverse()
    return arr


def _arr_map(interp, arr, args):
    fn = _arg(args, 0)
    if not is_callable(fn):
        raise _script_error("map callback is not a function")
    interp.alloc(len(arr))
    return [interp.call(fn, [item, float(i), arr]) for i, item in enumerate(list(arr))]


def _arr_for_each(interp, arr, args):
    fn = _arg(args, 0)
    if not is_callable(fn):
        raise _script_error("forEach callback is not a function")
    for i, item in enumerate(list(arr)):
        interp.call(fn, [item, float(i), arr])
    return UNDEFINED


def _arr_filter(interp, arr, args):
    fn = _arg(args, 0)
    if not is_callable(fn):
        raise _script_error("filter callback is not a function")
    result = [item for i, item in enumerate(list(arr)) if truthy(interp.call(fn, [item, float(i), arr]))]
    interp.alloc(len(result))
    return result


def _arr_reduce(interp, arr, args):
    fn = _arg(args, 0)
    if not is_callable(fn):
        raise _script_error("reduce callback is not a function")
    items = list(arr)
    if len(args) >= 2:
        accumulator, start = args[1], 0
    elif items:
        accumulator, start = items[0], 1
    else:
        raise _script_error("Reduce of empty array with no initial value")
    for i in range(start, len(items)):
        accumulator = interp.call(fn, [accumulator, items[i], float(i), arr])
    return accumulator


ARRAY_METHODS = {
    "push": _arr_push,
    "pop": lambda interp, arr, args: arr.pop() if arr else UNDEFINED,
    "shift": lambda interp, arr, args: arr.pop(0) if arr else UNDEFINED,
    "unshift": _arr_unshift,
    "join": _arr_join,
    "indexOf": _arr_index_of,
    "slice": _arr_slice,
    "concat": _arr_concat,
    "reverse": _arr_reverse,
    "map": _arr_map,
    "forEach": _arr_for_each,
    "filter": _arr_filter,
    "reduce": _arr_reduce,
    "toString": lambda interp, arr, args: _arr_join(interp, arr, []),
}


# Global built-ins --------------------------------------------------------------


def _math1(fn: Callable[[float], float]) -> Callable:
    def wrapper(interp, args):
        x = to_number(_arg(args, 0))
        if math.isnan(x):
            return NAN
        try:
            return float(fn(x))
        except ValueError:
            return NAN
        except OverflowError:
            return INF

    return wrapper


def _math_round(x: float) -> float:
    if math.isinf(x):
        return x
    return float(math.floor(x + 0.5))


def _math_min_max(pick: Callable, empty: float) -> Callable:
    def wrapper(interp, args):
        numbers = [to_number(a) for a in args]
        if not numbers:
            return empty
        if any(math.isnan(n) for n in numbers):
            return NAN
        return pick(numbers)

    return wrapper


def _finite_or_self(fn: Callable[[float], float]) -> Callable[[float], float]:
    return lambda x: x if math.isinf(x) else fn(x)


def _parse_int(interp, args):
    text = to_string(_arg(args, 0)).lstrip(_JS_WHITESPACE)
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    radix_arg = _arg(args, 1)
    radix = 0 if radix_arg is UNDEFINED else to_int32(radix_arg)
    strip_prefix = True
    if radix != 0:
        if radix < 2 or radix > 36:
            return NAN
        strip_prefix = radix == 16
    else:
        radix = 10
    if strip_prefix and text[:2].lower() == "0x":
        text = text[2:]
        radix = 16
    end = 0
    while end < len(text):
        ch = text[end]
        if not (ch.isascii() and ch.isalnum()) or int(ch, 36) >= radix:
            break
        end += 1
    if end == 0:
        return NAN
    try:
        return sign * float(int(text[:end], radix))
    except (ValueError, OverflowError):
        return sign * INF


def _parse_float(interp, args):
    text = to_string(_arg(args, 0)).lstrip(_JS_WHITESPACE)
    match = _JS_DECIMAL_RE.match(text)
    if not match:
        return NAN
    return float(match.group().replace("Infinity", "inf"))


def _from_char_code(interp, args):
    chars = "".join(chr(to_uint32(a) & 0xFFFF) for a in args)
    interp.check_string_length(len(chars))
    return chars


def _btoa(interp, args):
    text = to_string(_arg(args, 0))
    try:
        raw = text.encode("latin-1")
    except UnicodeEncodeError:
        raise _script_error("btoa: string contains characters outside of Latin1")
    return base64.b64encode(raw).decode("ascii")


def _atob(interp, args):
    text = re.sub(r"[\t\n\f\r ]", "", to_string(_arg(args, 0)))
    if len(text) % 4:
        text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True).decode("latin-1")
    except (binascii.Error, ValueError):
        raise _script_error("atob: invalid base64 input")


def _encode_uri_component(interp, args):
    text = to_string(_arg(args, 0))
    try:
        return quote(text, safe="-_.!~*'()")
    except UnicodeEncodeError:
        raise _script_error("encodeURIComponent: malformed string")


def _decode_uri_component(interp, args):
    text = to_string(_arg(args, 0))
    try:
        return unquote(text, errors="strict")
    except UnicodeDecodeError:
        raise _script_error("decodeURIComponent: malformed URI sequence")


class _JsonWriter:
    """Accumulates JSON text, checking the string ceiling on every write."""

    def __init__(self, interp) -> None:
        self._interp = interp
        self._pieces: list[str] = []
        self._length = 0
        self._active: set[int] = set()

    def write(self, text: str) -> None:
        self._length += len(text)
        self._interp.check_string_length(self._length)
        self._pieces.append(text)

    def mark(self) -> tuple[int, int]:
        return len(self._pieces), self._length

    def rewind(self, mark: tuple[int, int]) -> None:
        del self._pieces[mark[0]:]
        self._length = mark[1]

    def text(self) -> str:
        return "".join(self._pieces)

    def encode(self, value: Any) -> bool:
        """Write value. Returns False for values JSON skips."""
        if value is UNDEFINED or is_callable(value):
            return False
        if value is None:
            self.write("null")
        elif isinstance(value, bool):
            self.write("true" if value else "false")
        elif isinstance(value, (int, float)):
            number = float(value)
            self.write(number_to_string(number) if math.isfinite(number) else "null")
        elif isinstance(value, str):
            self.write(json.dumps(value, ensure_ascii=False))
        elif isinstance(value, (list, dict)):
            if id(value) in self._active:
                raise _script_error("Converting circular structure to JSON")
            self._active.add(id(value))
            if isinstance(value, list):
                self._encode_list(value)
            else:
                self._encode_dict(value)
            self._active.discard(id(value))
        else:
            return False
        return True

    def _encode_list(self, value: list) -> None:
        self.write("[")
        for index, item in enumerate(value):
            if index:
                self.write(",")
            if not self.encode(item):
                self.write("null")
        self.write("]")

    def _encode_dict(self, value: dict) -> None:
        self.write("{")
        first = True
        for key, item in value.items():
            mark = self.mark()
            self.write(("" if first else ",") + json.dumps(key, ensure_ascii=False) + ":")
            if self.encode(item):
                first = False
            else:
                self.rewind(mark)
        self.write("}")


def _json_stringify(interp, args):
    writer = _JsonWriter(interp)
    if not writer.encode(_arg(args, 0)):
        return UNDEFINED
    return writer.text()


def _reject_constant(name: str):
    raise ValueError(f"Invalid JSON constant {name}")


def _json_parse(interp, args):
    try:
        data = json.loads(to_string(_arg(args, 0)), parse_constant=_reject_constant)
    except ValueError as e:
        raise _script_error(f"JSON.parse: {e}")
    return to_js(data)


def _is_integer(interp, args):
    value = _arg(args, 0)
    return type_of(value) == "number" and math.isfinite(value) and float(value).is_integer()


def _make_builtins() -> dict[str, Any]:
    """Fresh built-in bindings; scripts may mutate their copies freely."""
    math_object = {
        "PI": math.pi,
        "E": math.e,
        "LN2": math.log(2),
        "LN10": math.log(10),
        "LOG2E": 1 / math.log(2),
        "LOG10E": 1 / math.log(10),
        "SQRT2": math.sqrt(2),
        "SQRT1_2": math.sqrt(0.5),
        "abs": NativeFunction("abs", _math1(abs)),
        "floor": NativeFunction("floor", _math1(_finite_or_self(math.floor))),
        "ceil": NativeFunction("ceil", _math1(_finite_or_self(math.ceil))),
        "round": NativeFunction("round", _math1(_math_round)),
        "trunc": NativeFunction("trunc", _math1(_finite_or_self(math.trunc))),
        "sign": NativeFunction("sign", _math1(lambda x: x if x == 0 else math.copysign(1.0, x))),
        "sqrt": NativeFunction("sqrt", _math1(math.sqrt)),
        "cbrt": NativeFunction("cbrt", _math1(lambda x: math.copysign(abs(x) ** (1.0 / 3.0), x))),
        "exp": NativeFunction("exp", _math1(math.exp)),
        "log": NativeFunction("log", _math1(lambda x: -INF if x == 0 else math.log(x))),
        "log2": NativeFunction("log2", _math1(lambda x: -INF if x == 0 else math.log2(x))),
        "log10": NativeFunction("log10", _math1(lambda x: -INF if x == 0 else math.log10(x))),
        "sin": NativeFunction("sin", _math1(math.sin)),
        "cos": NativeFunction("cos", _math1(math.cos)),
        "tan": NativeFunction("tan", _math1(math.tan)),
        "asin": NativeFunction("asin", _math1(math.asin)),
        "acos": NativeFunction("acos", _math1(math.acos)),
        "atan": NativeFunction("atan", _math1(math.atan)),
        "atan2": NativeFunction(
            "atan2", lambda interp, args: math.atan2(to_number(_arg(args, 0)), to_number(_arg(args, 1)))
        ),
        "pow": NativeFunction(
            "pow", lambda interp, args: js_pow(to_number(_arg(args, 0)), to_number(_arg(args, 1)))
        ),
        "max": NativeFunction("max", _math_min_max(max, -INF)),
        "min": NativeFunction("min", _math_min_max(min, INF)),
    }
    string_fn = NativeFunction(
        "String",
        lambda interp, args: to_string(args[0]) if args else "",
        {"fromCharCode": NativeFunction("fromCharCode", _from_char_code)},
    )
    number_fn = NativeFunction(
        "Number",
        lambda interp, args: to_number(args[0]) if args else 0.0,
        {
            "MAX_SAFE_INTEGER": float(2 ** 53 - 1),
            "MIN_SAFE_INTEGER": float(-(2 ** 53 - 1)),
            "EPSILON": 2.0 ** -52,
            "NaN": NAN,
            "POSITIVE_INFINITY": INF,
            "NEGATIVE_INFINITY": -INF,
            "isInteger": NativeFunction("isInteger", _is_integer),
            "parseInt": NativeFunction("parseInt", _parse_int),
            "parseFloat": NativeFunction("parseFloat", _parse_float),
        },
    )
    return {
        "undefined": UNDEFINED,
        "NaN": NAN,
        "Infinity": INF,
        "Math": math_object,
        "parseInt": NativeFunction("parseInt", _parse_int),
        "parseFloat": NativeFunction("parseFloat", _parse_float),
        "isNaN": NativeFunction("isNaN", lambda interp, args: math.isnan(to_number(_arg(args, 0)))),
        "isFinite": NativeFunction("isFinite", lambda interp, args: math.isfinite(to_number(_arg(args, 0)))),
        "String": string_fn,
        "Number": number_fn,
        "atob": NativeFunction("atob", _atob),
        "btoa": NativeFunction("btoa", _btoa),
        "encodeURIComponent": NativeFunction("encodeURIComponent", _encode_uri_component),
        "decodeURIComponent": NativeFunction("decodeURIComponent", _decode_uri_component),
        "JSON": {
            "stringify": NativeFunction("stringify", _json_stringify),
            "parse": NativeFunction("parse", _json_parse),
        },
    }


class SandboxEvaluator:
    """
    Evaluates SandboxScripts under their resource budgets.

    Each call builds a fresh interpreter, so evaluations never share state
    and concurrent calls from worker threads are independent.
    """

    def __init__(
        self,
        audit_logger: Optional[AuditLogger] = None,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self._logger = audit_logger
        self._grace_seconds = grace_seconds

    def _log_debug(self, message: str, **context) -> None:
        if self._logger:
            self._logger.debug("sandbox", message, context)

    def evaluate(self, script: SandboxScript, cancel_event: Optional[threading.Event] = None) -> Any:
        """
        Run a script synchronously.

        Args:
            script: Source, optional entry expression, budget and inputs
            cancel_event: When set, evaluation aborts at the next step

        Returns:
            The value of the entry expression, or the completion value of the
            last top-level expression statement when no entry is given

        Raises:
            UnsupportedConstructError: Script is outside the supported subset
            ResourceExceededError: A budget ceiling was breached
        """
        limits = script.budget
        started = time.monotonic()
        deadline = started + limits.max_duration_seconds
        ceiling_token = _string_ceiling.set(limits.max_string_length)
        try:
            program = parse_program(script.source, limits.max_nesting_depth)
            entry = None
            if script.entry_expression:
                entry = parse_expression(script.entry_expression, limits.max_nesting_depth)

            interpreter = _Interpreter(limits, deadline, cancel_event)
            interpreter.bind_inputs(script.inputs)
            value = interpreter.run(program)
            if entry is not None:
                value = interpreter.evaluate_expression(entry)
        except (ResourceExceededError, UnsupportedConstructError):
            raise
        except RecursionError:
            raise ResourceExceededError(
                code="recursion_limit_exceeded",
                message="Script nesting exhausted the interpreter stack",
                details={},
            )
        except Exception as e:
            raise UnsupportedConstructError(
                code="script_error",
                message=f"Script evaluation failed: {type(e).__name__}: {e}",
                details={"error_type": type(e).__name__},
            ) from e
        finally:
            _string_ceiling.reset(ceiling_token)

        self._log_debug(
            "Script evaluated",
            steps=interpreter._steps,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return value

    async def evaluate_async(self, script: SandboxScript) -> Any:
        """
        Run a script in a worker thread without blocking the event loop.

        The cancel event is set if the awaiting task is cancelled or the
        budget deadline plus the grace period passes, so the worker stops
        at its next step instead of running on in the background.
        """
        cancel_event = threading.Event()
        timeout = script.budget.max_duration_seconds + self._grace_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.evaluate, script, cancel_event),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            cancel_event.set()
            raise ResourceExceededError(
                code="time_limit_exceeded",
                message=f"Script did not finish within {timeout:.2f}s",
                details={"limit": script.budget.max_duration_seconds},
            )
        except asyncio.CancelledError:
            cancel_event.set()
            raise
