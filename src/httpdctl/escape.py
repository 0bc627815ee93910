"""Escaping of arbitrary values for use inside Apache directives.

Values are emitted unchanged whenever possible. Double quotes are added only
when the value contains characters Apache would otherwise split on, and
``${name}`` sequences are neutralised through the ``Define $ $`` hack
configured by the distribution's core include (``${$}{name}``).
"""
from __future__ import annotations

_FORBIDDEN = {
    "\0": "Null character not allowed in Apache directives",
    "\b": "Backspace character not allowed in Apache directives",
    "\f": "Form feed character not allowed in Apache directives",
    "\n": "Newline character not allowed in Apache directives",
    "\r": "Carriage return character not allowed in Apache directives",
}
_QUOTE_ONLY = {" ", "\t", "'", "<", ">"}


class EscapeError(ValueError):
    """Raised when a value cannot be represented in an Apache directive."""


def escape(dollar_variable: str | None, value: str, *, allow_variables: bool = False) -> str:
    """Return *value* escaped for an Apache directive.

    ``dollar_variable`` names the ``Define`` that expands to a literal ``$``;
    ``None`` means the target server has no such define, so any ``${name}``
    sequence that would need escaping is rejected.
    """
    length = len(value)
    if length == 0:
        return '""'
    out: list[str] | None = None
    quoted = False
    for index, char in enumerate(value):
        message = _FORBIDDEN.get(char)
        if message is not None:
            raise EscapeError(message)
        if char in _QUOTE_ONLY:
            if out is None:
                out = list(value[:index])
            quoted = True
            out.append(char)
        elif char < " ":
            raise EscapeError(f"Control character not allowed in Apache directives: {ord(char)}")
        elif (
            char == "$"
            and not allow_variables
            and index < length - 1
            and value[index + 1] == "{"
        ):
            end = value.find("}", index + 2)
            colon = value.find(":", index + 2)
            if end == -1 or end == index + 2 or (colon != -1 and colon < end):
                if out is not None:
                    out.append(char)
                continue
            if dollar_variable is None:
                raise EscapeError(f'Unable to escape "${{", no dollar variable: {value}')
            if out is None:
                out = list(value[:index])
            out.append("${" + dollar_variable + "}")
        elif char == "\\":
            if index == length - 1:
                if out is None:
                    out = list(value[:index])
                quoted = True
                out.append("\\\\")
            elif value[index + 1] in {"\\", '"'}:
                if out is None:
                    out = list(value[:index])
                out.append("\\\\")
            elif out is not None:
                out.append(char)
        elif char == '"':
            if out is None:
                out = list(value[:index])
            quoted = True
            out.append('\\"')
        elif out is not None:
            out.append(char)
    if out is None:
        return value
    text = "".join(out)
    return f'"{text}"' if quoted else text


def escape_prefix_replaced(
    dollar_variable: str | None,
    value: str,
    prefix: str,
    replacement: str,
) -> str:
    """Escape *value*, swapping a literal *prefix* for a variable *replacement*.

    The replacement is only applied when the remainder of the value contains
    no variable reference of its own; the result then keeps ``${...}``
    references unescaped.
    """
    if value.startswith(prefix):
        suffix = value[len(prefix) :]
        if "${" not in suffix:
            return escape(dollar_variable, replacement + suffix, allow_variables=True)
    return escape(dollar_variable, value)


__all__ = ["EscapeError", "escape", "escape_prefix_replaced"]
