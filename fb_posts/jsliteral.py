from __future__ import annotations

from typing import Any

_MAX_DEPTH = 64
_MAX_LENGTH = 1_000_000

_ESCAPES = {
    '"': '"',
    "'": "'",
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

_KEYWORDS = {"true": True, "false": False, "null": None}


class JSLiteralError(ValueError):
    """Raised when a fragment is not a well-formed object/array literal."""


def _is_ident_start(ch: str) -> bool:
    return len(ch) == 1 and (ch.isalpha() or ch in "_$")


def _is_ident_part(ch: str) -> bool:
    return len(ch) == 1 and (ch.isalnum() or ch in "_$")


class _Parser:
    """
    Recursive-descent parser for the data subset of JavaScript literals.

    Accepts objects with bare or quoted keys, arrays, strings in either quote style,
    numbers and true/false/null. Anything else (calls, operators, identifiers used as
    values) is rejected: nothing is ever evaluated.
    """

    def __init__(self, text: str) -> None:
        self._s = text
        self._i = 0

    def parse(self) -> Any:
        value = self._value(0)
        self._ws()
        if self._i != len(self._s):
            raise self._error("trailing characters")
        return value

    def _error(self, message: str) -> JSLiteralError:
        return JSLiteralError(f"{message} at offset {self._i}")

    def _peek(self) -> str:
        return self._s[self._i] if self._i < len(self._s) else ""

    def _ws(self) -> None:
        while self._i < len(self._s) and self._s[self._i] in " \t\r\n":
            self._i += 1

    def _expect(self, ch: str) -> None:
        if self._peek() != ch:
            raise self._error(f"expected {ch!r}")
        self._i += 1

    def _value(self, depth: int) -> Any:
        if depth > _MAX_DEPTH:
            raise self._error("nesting too deep")

        self._ws()
        ch = self._peek()
        if ch == "{":
            return self._object(depth + 1)
        if ch == "[":
            return self._array(depth + 1)
        if ch in ("'", '"'):
            return self._string()
        if ch == "-" or ch.isdigit():
            return self._number()
        if _is_ident_start(ch):
            word = self._identifier()
            if word in _KEYWORDS:
                return _KEYWORDS[word]
            raise self._error(f"unexpected identifier {word!r}")
        raise self._error("unexpected character" if ch else "unexpected end")

    def _object(self, depth: int) -> dict[str, Any]:
        self._expect("{")
        out: dict[str, Any] = {}

        self._ws()
        if self._peek() == "}":
            self._i += 1
            return out

        while True:
            self._ws()
            key = self._key()
            self._ws()
            self._expect(":")
            out[key] = self._value(depth)
            self._ws()

            ch = self._peek()
            if ch == ",":
                self._i += 1
                self._ws()
                if self._peek() == "}":
                    self._i += 1
                    return out
                continue
            if ch == "}":
                self._i += 1
                return out
            raise self._error("expected ',' or '}'")

    def _key(self) -> str:
        ch = self._peek()
        if ch in ("'", '"'):
            return self._string()
        if ch.isdigit():
            return str(self._number())
        if _is_ident_start(ch):
            return self._identifier()
        raise self._error("expected object key")

    def _array(self, depth: int) -> list[Any]:
        self._expect("[")
        out: list[Any] = []

        self._ws()
        if self._peek() == "]":
            self._i += 1
            return out

        while True:
            out.append(self._value(depth))
            self._ws()

            ch = self._peek()
            if ch == ",":
                self._i += 1
                self._ws()
                if self._peek() == "]":
                    self._i += 1
                    return out
                continue
            if ch == "]":
                self._i += 1
                return out
            raise self._error("expected ',' or ']'")

    def _identifier(self) -> str:
        start = self._i
        while self._i < len(self._s) and _is_ident_part(self._s[self._i]):
            self._i += 1
        return self._s[start : self._i]

    def _string(self) -> str:
        quote = self._s[self._i]
        self._i += 1
        parts: list[str] = []

        while True:
            if self._i >= len(self._s):
                raise self._error("unterminated string")
            ch = self._s[self._i]
            self._i += 1

            if ch == quote:
                return "".join(parts)
            if ch in "\r\n":
                raise self._error("newline in string")
            if ch != "\\":
                parts.append(ch)
                continue

            esc = self._peek()
            self._i += 1
            if esc in _ESCAPES:
                parts.append(_ESCAPES[esc])
            elif esc == "u":
                digits = self._s[self._i : self._i + 4]
                if len(digits) != 4 or any(c not in "0123456789abcdefABCDEF" for c in digits):
                    raise self._error("bad unicode escape")
                parts.append(chr(int(digits, 16)))
                self._i += 4
            else:
                raise self._error("bad escape")

    def _number(self) -> int | float:
        start = self._i
        if self._peek() == "-":
            self._i += 1
        if not self._peek().isdigit():
            raise self._error("expected digit")
        while self._peek().isdigit():
            self._i += 1

        is_float = False
        if self._peek() == ".":
            is_float = True
            self._i += 1
            if not self._peek().isdigit():
                raise self._error("expected digit after '.'")
            while self._peek().isdigit():
                self._i += 1

        if self._peek() in ("e", "E"):
            is_float = True
            self._i += 1
            if self._peek() in ("+", "-"):
                self._i += 1
            if not self._peek().isdigit():
                raise self._error("expected exponent digits")
            while self._peek().isdigit():
                self._i += 1

        raw = self._s[start : self._i]
        return float(raw) if is_float else int(raw)


def parse_js_literal(text: str) -> Any:
    """Parse a JavaScript/JSON data literal without evaluating anything."""
    if not isinstance(text, str):
        raise JSLiteralError("fragment must be a string")
    if len(text) > _MAX_LENGTH:
        raise JSLiteralError("fragment too large")
    return _Parser(text).parse()
