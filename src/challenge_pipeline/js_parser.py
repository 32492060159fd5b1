"""
Tokenizer and parser for the JavaScript subset run by the sandbox.

The grammar covers what challenge scripts need: literals, variables,
operators, control flow, functions with closures, and member access.
Anything outside the subset (``new``, ``this``, regex and template
literals, ``try``, arrow functions, labels, ...) raises
UnsupportedConstructError while parsing, so nothing runs before the whole
script has been accepted.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .exceptions import ResourceExceededError, UnsupportedConstructError

DEFAULT_MAX_NESTING_DEPTH = 64

KEYWORDS = {
    "var", "let", "const", "if", "else", "for", "while", "do", "break",
    "continue", "function", "return", "typeof", "void", "true", "false", "null",
}

UNSUPPORTED_KEYWORDS = {
    "new", "this", "try", "catch", "finally", "throw", "with", "delete", "in",
    "instanceof", "class", "switch", "case", "default", "yield", "async",
    "await", "import", "export", "debugger", "super", "extends",
}

PUNCTUATORS = sorted(
    [
        ">>>=", "...", "===", "!==", "**=", "<<=", ">>=", ">>>", "=>", "==",
        "!=", "<=", ">=", "&&", "||", "??", "?.", "++", "--", "+=", "-=", "*=",
        "/=", "%=", "&=", "|=", "^=", "**", "<<", ">>", "{", "}", "(", ")",
        "[", "]", ";", ",", "<", ">", "+", "-", "*", "/", "%", "&", "|", "^",
        "!", "~", "?", ":", "=", ".",
    ],
    key=len,
    reverse=True,
)

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>[ \t\f\v\u00a0\ufeff]+)
  | (?P<nl>\r\n|[\n\r\u2028\u2029])
  | (?P<comment>//[^\n\r]*|/\*.*?\*/)
  | (?P<num>0[xX][0-9a-fA-F]+|0[oO][0-7]+|0[bB][01]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_$][\w$]*)
  | (?P<str>"(?:[^"\\\n\r]|\\.)*"|'(?:[^'\\\n\r]|\\.)*')
  | (?P<punct>"""
    + "|".join(re.escape(p) for p in PUNCTUATORS)
    + r""")
    """,
    re.VERBOSE | re.DOTALL,
)

_SIMPLE_ESCAPES = {
    "n": "\n", "r": "\r", "t": "\t", "b": "\b", "f": "\f", "v": "\v",
    "'": "'", '"': '"', "\\": "\\",
}

ASSIGN_OPS = {"=", "+=", "-=", "*=", "/=", "%=", "**=", "<<=", ">>=", ">>>=", "&=", "|=", "^="}

BINARY_PRECEDENCE = {
    "??": 1,
    "||": 2,
    "&&": 3,
    "|": 4,
    "^": 5,
    "&": 6,
    "==": 7, "!=": 7, "===": 7, "!==": 7,
    "<": 8, ">": 8, "<=": 8, ">=": 8,
    "<<": 9, ">>": 9, ">>>": 9,
    "+": 10, "-": 10,
    "*": 11, "/": 11, "%": 11,
    "**": 12,
}

LOGICAL_OPS = {"&&", "||", "??"}


@dataclass
class Token:
    kind: str  # 'num', 'str', 'name', 'keyword', 'punct', 'eof'
    value: Any
    pos: int
    nl_before: bool = False


# AST nodes -----------------------------------------------------------------


@dataclass
class Literal:
    value: Any


@dataclass
class Identifier:
    name: str


@dataclass
class ArrayLiteral:
    elements: list


@dataclass
class ObjectLiteral:
    properties: list  # (key, value expr); key is str or float


@dataclass
class FunctionExpr:
    name: Optional[str]
    params: list[str]
    body: list


@dataclass
class Unary:
    op: str
    operand: Any


@dataclass
class Update:
    op: str
    prefix: bool
    target: Any


@dataclass
class Binary:
    op: str
    left: Any
    right: Any


@dataclass
class Logical:
    op: str
    left: Any
    right: Any


@dataclass
class Conditional:
    test: Any
    consequent: Any
    alternate: Any


@dataclass
class Assign:
    op: str
    target: Any
    value: Any


@dataclass
class Sequence:
    expressions: list


@dataclass
class Member:
    obj: Any
    prop: Any  # expression; Literal for dotted access
    computed: bool = False


@dataclass
class Call:
    callee: Any
    args: list


@dataclass
class VarDecl:
    kind: str
    declarations: list  # (name, init expr or None)


@dataclass
class ExprStmt:
    expr: Any


@dataclass
class Block:
    body: list


@dataclass
class If:
    test: Any
    consequent: Any
    alternate: Any = None


@dataclass
class For:
    init: Any
    test: Any
    update: Any
    body: Any


@dataclass
class While:
    test: Any
    body: Any


@dataclass
class DoWhile:
    body: Any
    test: Any


@dataclass
class Break:
    pass


@dataclass
class Continue:
    pass


@dataclass
class Return:
    argument: Any = None


@dataclass
class FunctionDecl:
    name: str
    params: list[str]
    body: list


@dataclass
class Empty:
    pass


@dataclass
class Program:
    body: list = field(default_factory=list)


Node = Union[
    Literal, Identifier, ArrayLiteral, ObjectLiteral, FunctionExpr, Unary, Update,
    Binary, Logical, Conditional, Assign, Sequence, Member, Call,
]


def _unsupported(message: str, pos: int) -> UnsupportedConstructError:
    return UnsupportedConstructError(
        code="unsupported_construct",
        message=message,
        details={"position": pos},
    )


def _decode_string(raw: str, pos: int) -> str:
    body = raw[1:-1]
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\":
            out.append(ch)
            i += 1
            continue
        i += 1
        esc = body[i]
        if esc in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[esc])
            i += 1
        elif esc == "0" and not (i + 1 < len(body) and body[i + 1].isdigit()):
            out.append("\0")
            i += 1
        elif esc == "x":
            hex_digits = body[i + 1:i + 3]
            if not re.fullmatch(r"[0-9a-fA-F]{2}", hex_digits):
                raise _unsupported("Invalid \\x escape", pos)
            out.append(chr(int(hex_digits, 16)))
            i += 3
        elif esc == "u":
            if body[i + 1:i + 2] == "{":
                end = body.find("}", i)
                hex_digits = body[i + 2:end] if end != -1 else ""
                if not re.fullmatch(r"[0-9a-fA-F]{1,6}", hex_digits):
                    raise _unsupported("Invalid \\u escape", pos)
                out.append(chr(int(hex_digits, 16)))
                i = end + 1
            else:
                hex_digits = body[i + 1:i + 5]
                if not re.fullmatch(r"[0-9a-fA-F]{4}", hex_digits):
                    raise _unsupported("Invalid \\u escape", pos)
                out.append(chr(int(hex_digits, 16)))
                i += 5
        elif esc in "\r\n\u2028\u2029":
            # line continuation
            i += 1
            if esc == "\r" and body[i:i + 1] == "\n":
                i += 1
        elif esc.isdigit():
            raise _unsupported("Legacy octal escapes are not supported", pos)
        else:
            out.append(esc)
            i += 1
    return "".join(out)


def _parse_number(text: str) -> float:
    lowered = text.lower()
    if lowered.startswith("0x"):
        return float(int(text[2:], 16))
    if lowered.startswith("0o"):
        return float(int(text[2:], 8))
    if lowered.startswith("0b"):
        return float(int(text[2:], 2))
    return float(text)


def tokenize(source: str) -> list[Token]:
    """
    Split source into tokens.

    Raises:
        UnsupportedConstructError: On characters outside the subset
            (template literals, unterminated strings, ...)
    """
    tokens: list[Token] = []
    pos = 0
    nl_before = False
    length = len(source)
    while pos < length:
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            ch = source[pos]
            if ch == "`":
                raise _unsupported("Template literals are not supported", pos)
            if ch in "\"'":
                raise _unsupported("Unterminated string literal", pos)
            raise _unsupported(f"Unexpected character {ch!r}", pos)
        kind = match.lastgroup
        text = match.group()
        if kind == "ws":
            pass
        elif kind == "nl":
            nl_before = True
        elif kind == "comment":
            if text.startswith("/*") and re.search(r"[\n\r\u2028\u2029]", text):
                nl_before = True
        elif kind == "num":
            end = match.end()
            if end < length and (source[end].isalpha() or source[end] in "_$"):
                raise _unsupported("Identifier directly after number", end)
            tokens.append(Token("num", _parse_number(text), pos, nl_before))
            nl_before = False
        elif kind == "name":
            token_kind = "keyword" if text in KEYWORDS or text in UNSUPPORTED_KEYWORDS else "name"
            tokens.append(Token(token_kind, text, pos, nl_before))
            nl_before = False
        elif kind == "str":
            tokens.append(Token("str", _decode_string(text, pos), pos, nl_before))
            nl_before = False
        else:
            tokens.append(Token("punct", text, pos, nl_before))
            nl_before = False
        pos = match.end()
    tokens.append(Token("eof", None, length, nl_before))
    return tokens


class Parser:
    """Recursive-descent parser with a nesting-depth bound."""

    def __init__(self, source: str, max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH) -> None:
        self._tokens = tokenize(source)
        self._index = 0
        self._depth = 0
        self._max_depth = max_nesting_depth
        self._function_depth = 0

    # token helpers

    @property
    def _tok(self) -> Token:
        return self._tokens[self._index]

    def _peek(self, offset: int = 1) -> Token:
        index = min(self._index + offset, len(self._tokens) - 1)
        return self._tokens[index]

    def _advance(self) -> Token:
        tok = self._tokens[self._index]
        if tok.kind != "eof":
            self._index += 1
        return tok

    def _is(self, kind: str, value: Any = None) -> bool:
        tok = self._tok
        return tok.kind == kind and (value is None or tok.value == value)

    def _is_punct(self, value: str) -> bool:
        return self._is("punct", value)

    def _expect_punct(self, value: str) -> Token:
        if not self._is_punct(value):
            raise self._error(f"Expected {value!r}")
        return self._advance()

    def _error(self, message: str) -> UnsupportedConstructError:
        tok = self._tok
        found = "end of input" if tok.kind == "eof" else repr(tok.value)
        return _unsupported(f"{message}, found {found}", tok.pos)

    def _check_unsupported(self) -> None:
        tok = self._tok
        if tok.kind == "keyword" and tok.value in UNSUPPORTED_KEYWORDS:
            raise _unsupported(f"'{tok.value}' is not supported", tok.pos)

    def _enter(self) -> None:
        self._depth += 1
        if self._depth > self._max_depth:
            raise ResourceExceededError(
                code="nesting_depth_exceeded",
                message=f"Script nesting exceeds {self._max_depth} levels",
                details={"limit": self._max_depth, "position": self._tok.pos},
            )

    def _leave(self) -> None:
        self._depth -= 1

    def _consume_semicolon(self) -> None:
        if self._is_punct(";"):
            self._advance()
            return
        if self._is_punct("}") or self._is("eof") or self._tok.nl_before:
            return
        raise self._error("Expected ';'")

    def _identifier_name(self) -> str:
        tok = self._tok
        if tok.kind != "name":
            self._check_unsupported()
            raise self._error("Expected identifier")
        self._advance()
        return tok.value

    # program and statements

    def parse_program(self) -> Program:
        body = []
        while not self._is("eof"):
            body.append(self._parse_statement())
        return Program(body=body)

    def parse_expression_only(self) -> Any:
        """Parse source consisting of a single expression."""
        expr = self._parse_expression()
        if self._is_punct(";"):
            self._advance()
        if not self._is("eof"):
            raise self._error("Unexpected token after expression")
        return expr

    def _parse_statement(self) -> Any:
        self._enter()
        try:
            return self._parse_statement_inner()
        finally:
            self._leave()

    def _parse_statement_inner(self) -> Any:
        tok = self._tok
        self._check_unsupported()

        if tok.kind == "punct":
            if tok.value == "{":
                return self._parse_block()
            if tok.value == ";":
                self._advance()
                return Empty()

        if tok.kind == "keyword":
            if tok.value in ("var", "let", "const"):
                decl = self._parse_var_decl()
                self._consume_semicolon()
                return decl
            if tok.value == "function":
                self._advance()
                name = self._identifier_name()
                params, body = self._parse_function_rest()
                return FunctionDecl(name=name, params=params, body=body)
            if tok.value == "if":
                return self._parse_if()
            if tok.value == "for":
                return self._parse_for()
            if tok.value == "while":
                self._advance()
                self._expect_punct("(")
                test = self._parse_expression()
                self._expect_punct(")")
                return While(test=test, body=self._parse_statement())
            if tok.value == "do":
                self._advance()
                body = self._parse_statement()
                if not self._is("keyword", "while"):
                    raise self._error("Expected 'while'")
                self._advance()
                self._expect_punct("(")
                test = self._parse_expression()
                self._expect_punct(")")
                if self._is_punct(";"):
                    self._advance()
                return DoWhile(body=body, test=test)
            if tok.value in ("break", "continue"):
                self._advance()
                if self._is("name") and not self._tok.nl_before:
                    raise _unsupported("Labels are not supported", self._tok.pos)
                self._consume_semicolon()
                return Break() if tok.value == "break" else Continue()
            if tok.value == "return":
                if self._function_depth == 0:
                    raise _unsupported("'return' outside of a function", tok.pos)
                self._advance()
                if self._is_punct(";") or self._is_punct("}") or self._is("eof") or self._tok.nl_before:
                    self._consume_semicolon()
                    return Return()
                argument = self._parse_expression()
                self._consume_semicolon()
                return Return(argument=argument)

        expr = self._parse_expression()
        if self._is_punct(":") and isinstance(expr, Identifier):
            raise _unsupported("Labels are not supported", self._tok.pos)
        self._consume_semicolon()
        return ExprStmt(expr=expr)

    def _parse_block(self) -> Block:
        self._expect_punct("{")
        body = []
        while not self._is_punct("}"):
            if self._is("eof"):
                raise self._error("Expected '}'")
            body.append(self._parse_statement())
        self._advance()
        return Block(body=body)

    def _parse_var_decl(self) -> VarDecl:
        kind = self._advance().value
        declarations = []
        while True:
            if self._is_punct("[") or self._is_punct("{"):
                raise _unsupported("Destructuring is not supported", self._tok.pos)
            name = self._identifier_name()
            init = None
            if self._is_punct("="):
                self._advance()
                init = self._parse_assignment()
            elif kind == "const" and not (self._is("keyword", "in") or self._is("name", "of")):
                raise self._error("Missing initializer in const declaration")
            declarations.append((name, init))
            if not self._is_punct(","):
                break
            self._advance()
        return VarDecl(kind=kind, declarations=declarations)

    def _parse_if(self) -> If:
        self._advance()
        self._expect_punct("(")
        test = self._parse_expression()
        self._expect_punct(")")
        consequent = self._parse_statement()
        alternate = None
        if self._is("keyword", "else"):
            self._advance()
            alternate = self._parse_statement()
        return If(test=test, consequent=consequent, alternate=alternate)

    def _parse_for(self) -> For:
        self._advance()
        self._expect_punct("(")
        init = None
        if not self._is_punct(";"):
            if self._is("keyword") and self._tok.value in ("var", "let", "const"):
                init = self._parse_var_decl()
            else:
                init = ExprStmt(expr=self._parse_expression())
        if self._is("keyword", "in") or self._is("name", "of"):
            raise _unsupported(f"for-{self._tok.value} loops are not supported", self._tok.pos)
        self._expect_punct(";")
        test = None if self._is_punct(";") else self._parse_expression()
        self._expect_punct(";")
        update = None if self._is_punct(")") else self._parse_expression()
        self._expect_punct(")")
        return For(init=init, test=test, update=update, body=self._parse_statement())

    def _parse_function_rest(self) -> tuple[list[str], list]:
        self._expect_punct("(")
        params = []
        while not self._is_punct(")"):
            if self._is_punct("...") or self._is_punct("[") or self._is_punct("{"):
                raise _unsupported("Rest and destructured parameters are not supported", self._tok.pos)
            params.append(self._identifier_name())
            if self._is_punct("="):
                raise _unsupported("Default parameters are not supported", self._tok.pos)
            if not self._is_punct(")"):
                self._expect_punct(",")
        self._advance()
        self._function_depth += 1
        try:
            block = self._parse_block()
        finally:
            self._function_depth -= 1
        return params, block.body

    # expressions

    def _parse_expression(self) -> Any:
        first = self._parse_assignment()
        if not self._is_punct(","):
            return first
        expressions = [first]
        while self._is_punct(","):
            self._advance()
            expressions.append(self._parse_assignment())
        return Sequence(expressions=expressions)

    def _parse_assignment(self) -> Any:
        self._enter()
        try:
            left = self._parse_conditional()
            if self._is_punct("=>"):
                raise _unsupported("Arrow functions are not supported", self._tok.pos)
            if self._tok.kind == "punct" and self._tok.value in ASSIGN_OPS:
                if not isinstance(left, (Identifier, Member)):
                    raise self._error("Invalid assignment target")
                op = self._advance().value
                value = self._parse_assignment()
                return Assign(op=op, target=left, value=value)
            return left
        finally:
            self._leave()

    def _parse_conditional(self) -> Any:
        test = self._parse_binary(0)
        if not self._is_punct("?"):
            return test
        self._advance()
        consequent = self._parse_assignment()
        self._expect_punct(":")
        alternate = self._parse_assignment()
        return Conditional(test=test, consequent=consequent, alternate=alternate)

    def _parse_binary(self, min_prec: int) -> Any:
        left = self._parse_unary()
        while True:
            tok = self._tok
            if tok.kind == "keyword" and tok.value in ("in", "instanceof"):
                raise _unsupported(f"'{tok.value}' is not supported", tok.pos)
            if tok.kind != "punct" or tok.value not in BINARY_PRECEDENCE:
                return left
            prec = BINARY_PRECEDENCE[tok.value]
            if prec < min_prec:
                return left
            self._advance()
            # '**' is right-associative
            right = self._parse_binary(prec if tok.value == "**" else prec + 1)
            if tok.value in LOGICAL_OPS:
                left = Logical(op=tok.value, left=left, right=right)
            else:
                left = Binary(op=tok.value, left=left, right=right)

    def _parse_unary(self) -> Any:
        tok = self._tok
        if tok.kind == "keyword" and tok.value == "delete":
            raise _unsupported("'delete' is not supported", tok.pos)
        is_unary = (tok.kind == "punct" and tok.value in ("!", "-", "+", "~")) or (
            tok.kind == "keyword" and tok.value in ("typeof", "void")
        )
        if is_unary:
            self._advance()
            self._enter()
            try:
                return Unary(op=tok.value, operand=self._parse_unary())
            finally:
                self._leave()
        if tok.kind == "punct" and tok.value in ("++", "--"):
            self._advance()
            self._enter()
            try:
                target = self._parse_unary()
            finally:
                self._leave()
            if not isinstance(target, (Identifier, Member)):
                raise _unsupported("Invalid update target", tok.pos)
            return Update(op=tok.value, prefix=True, target=target)
        return self._parse_postfix()

    def _parse_postfix(self) -> Any:
        expr = self._parse_call_member()
        tok = self._tok
        if tok.kind == "punct" and tok.value in ("++", "--") and not tok.nl_before:
            if not isinstance(expr, (Identifier, Member)):
                raise _unsupported("Invalid update target", tok.pos)
            self._advance()
            return Update(op=tok.value, prefix=False, target=expr)
        return expr

    def _parse_call_member(self) -> Any:
        expr = self._parse_primary()
        while True:
            tok = self._tok
            if tok.kind != "punct":
                return expr
            if tok.value == ".":
                self._advance()
                name_tok = self._advance()
                if name_tok.kind not in ("name", "keyword"):
                    raise _unsupported("Expected property name", name_tok.pos)
                expr = Member(obj=expr, prop=Literal(name_tok.value), computed=False)
            elif tok.value == "[":
                self._advance()
                prop = self._parse_expression()
                self._expect_punct("]")
                expr = Member(obj=expr, prop=prop, computed=True)
            elif tok.value == "(":
                self._advance()
                args = []
                while not self._is_punct(")"):
                    if self._is_punct("..."):
                        raise _unsupported("Spread arguments are not supported", self._tok.pos)
                    args.append(self._parse_assignment())
                    if not self._is_punct(")"):
                        self._expect_punct(",")
                self._advance()
                expr = Call(callee=expr, args=args)
            elif tok.value == "?.":
                raise _unsupported("Optional chaining is not supported", tok.pos)
            else:
                return expr

    def _parse_primary(self) -> Any:
        tok = self._tok
        self._check_unsupported()

        if tok.kind == "num":
            self._advance()
            return Literal(tok.value)
        if tok.kind == "str":
            self._advance()
            return Literal(tok.value)
        if tok.kind == "name":
            self._advance()
            return Identifier(tok.value)
        if tok.kind == "keyword":
            if tok.value == "true":
                self._advance()
                return Literal(True)
            if tok.value == "false":
                self._advance()
                return Literal(False)
            if tok.value == "null":
                self._advance()
                return Literal(None)
            if tok.value == "function":
                self._advance()
                name = self._identifier_name() if self._is("name") else None
                params, body = self._parse_function_rest()
                return FunctionExpr(name=name, params=params, body=body)
            raise self._error("Unexpected keyword")
        if tok.kind == "punct":
            if tok.value == "(":
                self._advance()
                if self._is_punct(")"):
                    raise _unsupported("Arrow functions are not supported", tok.pos)
                expr = self._parse_expression()
                self._expect_punct(")")
                if self._is_punct("=>"):
                    raise _unsupported("Arrow functions are not supported", self._tok.pos)
                return expr
            if tok.value == "[":
                return self._parse_array()
            if tok.value == "{":
                return self._parse_object()
            if tok.value in ("/", "/="):
                raise _unsupported("Regular expression literals are not supported", tok.pos)
            if tok.value == "...":
                raise _unsupported("Spread syntax is not supported", tok.pos)
        raise self._error("Unexpected token")

    def _parse_array(self) -> ArrayLiteral:
        self._expect_punct("[")
        elements = []
        while not self._is_punct("]"):
            if self._is_punct(","):
                # hole
                self._advance()
                elements.append(Identifier("undefined"))
                continue
            if self._is_punct("..."):
                raise _unsupported("Spread syntax is not supported", self._tok.pos)
            elements.append(self._parse_assignment())
            if not self._is_punct("]"):
                self._expect_punct(",")
        self._advance()
        return ArrayLiteral(elements=elements)

    def _parse_object(self) -> ObjectLiteral:
        self._expect_punct("{")
        properties = []
        while not self._is_punct("}"):
            tok = self._advance()
            if tok.kind in ("name", "keyword", "str"):
                key: Union[str, float] = tok.value
            elif tok.kind == "num":
                key = tok.value
            elif tok.kind == "punct" and tok.value == "[":
                raise _unsupported("Computed property keys are not supported", tok.pos)
            else:
                raise _unsupported("Unexpected token in object literal", tok.pos)

            if self._is_punct(":"):
                self._advance()
                value = self._parse_assignment()
            elif tok.kind == "name" and (self._is_punct(",") or self._is_punct("}")):
                value = Identifier(tok.value)
            else:
                raise _unsupported("Only key: value properties are supported", self._tok.pos)
            properties.append((key, value))
            if not self._is_punct("}"):
                self._expect_punct(",")
        self._advance()
        return ObjectLiteral(properties=properties)


def parse_program(source: str, max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH) -> Program:
    """Parse a full script."""
    return Parser(source, max_nesting_depth).parse_program()


def parse_expression(source: str, max_nesting_depth: int = DEFAULT_MAX_NESTING_DEPTH) -> Any:
    """Parse a standalone expression such as an entry expression."""
    return Parser(source, max_nesting_depth).parse_expression_only()
