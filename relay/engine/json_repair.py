"""Best-effort syntactic repair of JSON emitted by a model.

Handles the mistakes models actually make in tool arguments:
markdown fences, unescaped inner quotes, raw newlines inside
strings, single-quoted strings, trailing commas, Python literals
and truncated output with unclosed strings or brackets.
"""
from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*|\s*```$")
_WORDS = {"True": "true", "False": "false", "None": "null"}
_CLOSERS = {"{": "}", "[": "]"}
_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def _next_significant(text: str, start: int) -> tuple[str, int]:
    """Return the next non-whitespace character and its index ("" at end)."""
    i = start
    while i < len(text) and text[i].isspace():
        i += 1
    return (text[i], i) if i < len(text) else ("", i)


class _Repairer:
    def __init__(self, text: str) -> None:
        self.text = text
        self.out: list[str] = []
        # One frame per open container: [opener, expecting_key]
        self.stack: list[list[Any]] = []

    def _in_key(self) -> bool:
        return bool(self.stack) and self.stack[-1][0] == "{" and self.stack[-1][1]

    def _drop_trailing_comma(self) -> None:
        while self.out and self.out[-1].isspace():
            self.out.pop()
        if self.out and self.out[-1] == ",":
            self.out.pop()

    def _closes_string(self, i: int, is_key: bool) -> bool:
        """Decide whether the quote at ``i`` ends the current string."""
        nxt, j = _next_significant(self.text, i + 1)
        if nxt == "":
            return True
        if is_key:
            return nxt == ":"
        if nxt in "}]":
            return True
        if nxt == ",":
            after, _ = _next_significant(self.text, j + 1)
            if self.stack and self.stack[-1][0] == "{":
                return after in ('"', "'", "}", "")
            return True
        return False

    def _read_string(self, i: int) -> int:
        quote = self.text[i]
        is_key = self._in_key()
        self.out.append('"')
        i += 1
        while i < len(self.text):
            ch = self.text[i]
            if ch == "\\" and i + 1 < len(self.text):
                nxt = self.text[i + 1]
                # \' is not a valid JSON escape
                self.out.append("'" if nxt == "'" else ch + nxt)
                i += 2
                continue
            if ch == quote and self._closes_string(i, is_key):
                self.out.append('"')
                return i + 1
            if ch == '"':
                self.out.append('\\"')
            elif ch in _ESCAPES:
                self.out.append(_ESCAPES[ch])
            elif ord(ch) < 0x20:
                self.out.append(f"\\u{ord(ch):04x}")
            else:
                self.out.append(ch)
            i += 1
        # Unterminated string
        self.out.append('"')
        return i

    def run(self) -> str:
        text = self.text
        i = 0
        while i < len(text):
            ch = text[i]
            if ch in "\"'":
                i = self._read_string(i)
                continue
            if ch in "{[":
                self.stack.append([ch, ch == "{"])
                self.out.append(ch)
            elif ch in "}]":
                if not self.stack:
                    break
                self._drop_trailing_comma()
                if self.out and self.out[-1] == ":":
                    self.out.append("null")
                opener, _ = self.stack.pop()
                self.out.append(_CLOSERS[opener])
                if not self.stack:
                    break
            elif ch == ",":
                if self.stack and self.stack[-1][0] == "{":
                    self.stack[-1][1] = True
                self.out.append(ch)
            elif ch == ":":
                if self.stack:
                    self.stack[-1][1] = False
                self.out.append(ch)
            elif ch.isalpha() or ch == "_":
                j = i
                while j < len(text) and (text[j].isalnum() or text[j] == "_"):
                    j += 1
                word = text[i:j]
                if self._in_key():
                    # Unquoted key
                    self.out.append(json.dumps(word))
                else:
                    self.out.append(_WORDS.get(word, word))
                i = j
                continue
            else:
                self.out.append(ch)
            i += 1

        self._drop_trailing_comma()
        if self.out and self.out[-1] == ":":
            self.out.append("null")
        while self.stack:
            opener, _ = self.stack.pop()
            self.out.append(_CLOSERS[opener])
        return "".join(self.out)


def repair_json(text: str) -> str:
    """Return a repaired JSON document string for ``text``.

    Text that already parses is returned unchanged.
    """
    try:
        json.loads(text)
        return text
    except (json.JSONDecodeError, TypeError):
        pass
    body = _FENCE_RE.sub("", text.strip())
    starts = [p for p in (body.find("{"), body.find("[")) if p != -1]
    if not starts:
        return body
    return _Repairer(body[min(starts):]).run()


def loads_repaired(text: str) -> Any:
    """Parse ``text`` as JSON, repairing it first if needed.

    Raises ValueError when even the repaired text does not parse.
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    repaired = repair_json(text)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise ValueError(f"unrepairable JSON: {exc}") from exc
