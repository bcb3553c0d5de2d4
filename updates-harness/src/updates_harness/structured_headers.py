"""Structured Field Values (RFC 8941) dictionary serialization.

Only what the update protocol needs: dictionaries of items/inner lists with
parameters. Serialization is deterministic: members are emitted in insertion
order, which strict client-side parsers rely on.

Values are represented as plain Python objects:

  * `str`        -> sf-string (`"..."`)
  * `Token`      -> sf-token
  * `bool`       -> sf-boolean (`?1` / `?0`)
  * `int`        -> sf-integer
  * `float`/`Decimal` -> sf-decimal
  * `bytes`      -> sf-binary (`:base64:`)
  * `list`       -> inner list

A dictionary member is either a bare value (empty parameters) or a
`(value, params)` tuple.
"""

from __future__ import annotations

import base64
import binascii
import re
import string
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Mapping, Tuple

Params = dict[str, Any]
Member = Tuple[Any, Params]

_KEY_RE = re.compile(r"^[a-z*][a-z0-9_\-.*]*$")
_TOKEN_RE = re.compile(r"^[A-Za-z*][!#$%&'*+\-.^_`|~0-9A-Za-z:/]*$")
_TCHARS = set("!#$%&'*+-.^_`|~" + string.ascii_letters + string.digits + ":/")
_MAX_INT = 999_999_999_999_999


class StructuredHeaderError(ValueError):
    pass


class Token(str):
    """A bare token, serialized without quotes."""

    def __repr__(self) -> str:
        return f"Token({str(self)!r})"


# ------------------------------- serialization -------------------------------


def _serialize_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_RE.match(key):
        raise StructuredHeaderError(f"invalid structured field key: {key!r}")
    return key


def _serialize_decimal(value: float | Decimal) -> str:
    d = Decimal(str(value)) if isinstance(value, float) else value
    d = d.quantize(Decimal("0.001"), rounding=ROUND_HALF_EVEN)
    if abs(d) >= Decimal("1000000000000"):
        raise StructuredHeaderError(f"decimal out of range: {value!r}")
    text = format(d, "f")
    if "." not in text:
        text += ".0"
    integer, frac = text.split(".")
    frac = frac.rstrip("0") or "0"
    return f"{integer}.{frac}"


def _serialize_string(value: str) -> str:
    out = ['"']
    for ch in value:
        if not (0x20 <= ord(ch) <= 0x7E):
            raise StructuredHeaderError(f"non-printable or non-ASCII character in string: {ch!r}")
        if ch in ('"', "\\"):
            out.append("\\")
        out.append(ch)
    out.append('"')
    return "".join(out)


def serialize_bare_item(value: Any) -> str:
    if isinstance(value, bool):
        return "?1" if value else "?0"
    if isinstance(value, Token):
        if not _TOKEN_RE.match(value):
            raise StructuredHeaderError(f"invalid token: {value!r}")
        return str(value)
    if isinstance(value, str):
        return _serialize_string(value)
    if isinstance(value, int):
        if abs(value) > _MAX_INT:
            raise StructuredHeaderError(f"integer out of range: {value}")
        return str(value)
    if isinstance(value, (float, Decimal)):
        return _serialize_decimal(value)
    if isinstance(value, (bytes, bytearray)):
        return ":" + base64.b64encode(bytes(value)).decode("ascii") + ":"
    raise StructuredHeaderError(f"unsupported bare item type: {type(value).__name__}")


def serialize_parameters(params: Mapping[str, Any] | None) -> str:
    out = []
    for key, value in (params or {}).items():
        out.append(";" + _serialize_key(key))
        if value is not True:
            out.append("=" + serialize_bare_item(value))
    return "".join(out)


def _serialize_item_or_inner_list(value: Any, params: Mapping[str, Any] | None) -> str:
    if isinstance(value, (list, tuple)):
        inner = " ".join(
            serialize_bare_item(v) + serialize_parameters(p) for v, p in map(_as_member, value)
        )
        return f"({inner})" + serialize_parameters(params)
    return serialize_bare_item(value) + serialize_parameters(params)


def _as_member(raw: Any) -> Member:
    if isinstance(raw, tuple) and len(raw) == 2 and isinstance(raw[1], Mapping):
        return raw[0], dict(raw[1])
    return raw, {}


def serialize_dictionary(members: Mapping[str, Any]) -> str:
    """Serialize `members` as an sf-dictionary, keeping insertion order."""

    out = []
    for key, raw in members.items():
        value, params = _as_member(raw)
        entry = _serialize_key(key)
        if value is True:
            entry += serialize_parameters(params)
        else:
            entry += "=" + _serialize_item_or_inner_list(value, params)
        out.append(entry)
    return ", ".join(out)


def dictionary_from_strings(obj: Mapping[str, str]) -> dict[str, Member]:
    """Wrap each string as an sf-string item with empty parameters."""

    return {k: (str(v), {}) for k, v in obj.items()}


# ---------------------------------- parsing ----------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.s = text
        self.i = 0

    def peek(self) -> str:
        return self.s[self.i] if self.i < len(self.s) else ""

    def eof(self) -> bool:
        return self.i >= len(self.s)

    def skip_sp(self) -> None:
        while self.peek() == " ":
            self.i += 1

    def skip_ows(self) -> None:
        while self.peek() in (" ", "\t") and not self.eof():
            self.i += 1

    def fail(self, msg: str) -> StructuredHeaderError:
        return StructuredHeaderError(f"{msg} at offset {self.i}: {self.s!r}")

    def key(self) -> str:
        ch = self.peek()
        if not ch or not (ch.islower() and ch.isascii() or ch == "*"):
            raise self.fail("expected key")
        start = self.i
        while not self.eof() and (
            (self.peek().islower() and self.peek().isascii())
            or self.peek().isdigit()
            or self.peek() in "_-.*"
        ):
            self.i += 1
        return self.s[start : self.i]

    def bare_item(self) -> Any:
        ch = self.peek()
        if ch == "-" or ch.isdigit():
            return self.number()
        if ch == '"':
            return self.string()
        if ch == ":":
            return self.binary()
        if ch == "?":
            return self.boolean()
        if ch.isalpha() or ch == "*":
            return self.token()
        raise self.fail("unexpected character")

    def number(self) -> int | Decimal:
        start = self.i
        if self.peek() == "-":
            self.i += 1
        if not self.peek().isdigit():
            raise self.fail("expected digit")
        while self.peek().isdigit() or self.peek() == ".":
            self.i += 1
        raw = self.s[start : self.i]
        if "." in raw:
            integer, _, frac = raw.lstrip("-").partition(".")
            if "." in frac or len(integer) > 12 or not frac or len(frac) > 3:
                raise self.fail("invalid decimal")
            return Decimal(raw)
        if len(raw.lstrip("-")) > 15:
            raise self.fail("integer too long")
        return int(raw)

    def string(self) -> str:
        self.i += 1
        out = []
        while not self.eof():
            ch = self.s[self.i]
            self.i += 1
            if ch == "\\":
                nxt = self.peek()
                if nxt not in ('"', "\\"):
                    raise self.fail("invalid escape")
                out.append(nxt)
                self.i += 1
            elif ch == '"':
                return "".join(out)
            elif not (0x20 <= ord(ch) <= 0x7E):
                raise self.fail("invalid string character")
            else:
                out.append(ch)
        raise self.fail("unterminated string")

    def token(self) -> Token:
        start = self.i
        self.i += 1
        while not self.eof() and self.peek() in _TCHARS:
            self.i += 1
        return Token(self.s[start : self.i])

    def binary(self) -> bytes:
        self.i += 1
        end = self.s.find(":", self.i)
        if end < 0:
            raise self.fail("unterminated byte sequence")
        raw = self.s[self.i : end]
        self.i = end + 1
        try:
            return base64.b64decode(raw, validate=True)
        except binascii.Error as e:
            raise self.fail(f"invalid base64 ({e})") from e

    def boolean(self) -> bool:
        self.i += 1
        ch = self.peek()
        if ch not in ("0", "1"):
            raise self.fail("invalid boolean")
        self.i += 1
        return ch == "1"

    def parameters(self) -> Params:
        params: Params = {}
        while self.peek() == ";":
            self.i += 1
            self.skip_sp()
            key = self.key()
            value: Any = True
            if self.peek() == "=":
                self.i += 1
                value = self.bare_item()
            params[key] = value
        return params

    def inner_list(self) -> list[Member]:
        self.i += 1
        items: list[Member] = []
        while not self.eof():
            self.skip_sp()
            if self.peek() == ")":
                self.i += 1
                return items
            value = self.bare_item()
            items.append((value, self.parameters()))
            if self.peek() not in (" ", ")"):
                raise self.fail("expected space or ')' in inner list")
        raise self.fail("unterminated inner list")

    def item_or_inner_list(self) -> Member:
        if self.peek() == "(":
            value: Any = self.inner_list()
        else:
            value = self.bare_item()
        return value, self.parameters()


def parse_dictionary(text: str) -> dict[str, Member]:
    """Parse an sf-dictionary into `{key: (value, params)}`, preserving order."""

    p = _Parser(text)
    p.skip_sp()
    out: dict[str, Member] = {}
    while not p.eof():
        key = p.key()
        if p.peek() == "=":
            p.i += 1
            out[key] = p.item_or_inner_list()
        else:
            out[key] = (True, p.parameters())
        p.skip_ows()
        if p.eof():
            break
        if p.peek() != ",":
            raise p.fail("expected ','")
        p.i += 1
        p.skip_ows()
        if p.eof():
            raise p.fail("trailing comma")
    return out
