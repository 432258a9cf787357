from __future__ import annotations

import re


_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z_0-9]*)?\$")
_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")

# Leading words inspected to recognise a CREATE [TEMP] TRIGGER statement.
_HEAD_WORDS = 4


def _skip_quoted(script: str, start: int, backslash_escapes: bool = False) -> int:
    quote = script[start]
    i = start + 1
    n = len(script)
    while i < n:
        ch = script[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            # A doubled quote is an escaped quote.
            if script.startswith(quote, i + 1):
                i += 2
                continue
            return i + 1
        i += 1
    raise ValueError(f"unterminated {quote} quote starting at offset {start}")


def split_statements(script: str) -> list[str]:
    """
    Split a SQL script into its top-level statements.

    Semicolons inside quoted strings (including `E'...'` strings with backslash
    escapes), dollar-quoted bodies, comments and the `BEGIN ... END` body of a
    `CREATE TRIGGER` do not terminate a statement. Fragments with nothing but
    whitespace and comments are dropped, so a trailing comment after the last
    `;` yields no statement.
    """
    statements: list[str] = []
    start = 0
    has_code = False
    head: list[str] = []
    depth = 0
    i = 0
    n = len(script)

    while i < n:
        ch = script[i]
        if script.startswith("--", i):
            end = script.find("\n", i)
            i = n if end == -1 else end + 1
            continue
        if script.startswith("/*", i):
            end = script.find("*/", i + 2)
            if end == -1:
                raise ValueError(f"unterminated block comment starting at offset {i}")
            i = end + 2
            continue
        if ch in ("'", '"'):
            has_code = True
            i = _skip_quoted(script, i)
            continue
        if ch == "$":
            m = _DOLLAR_TAG_RE.match(script, i)
            if m:
                end = script.find(m.group(0), m.end())
                if end == -1:
                    raise ValueError(f"unterminated dollar-quoted body starting at offset {i}")
                has_code = True
                i = end + len(m.group(0))
                continue
        m = _WORD_RE.match(script, i)
        if m:
            has_code = True
            word = m.group(0)
            if word in ("E", "e") and script.startswith("'", m.end()):
                i = _skip_quoted(script, m.end(), backslash_escapes=True)
                continue
            word = word.upper()
            if len(head) < _HEAD_WORDS:
                head.append(word)
            if head[0] == "CREATE" and "TRIGGER" in head:
                if word in ("BEGIN", "CASE"):
                    depth += 1
                elif word == "END" and depth:
                    depth -= 1
            i = m.end()
            continue
        if ch == ";" and depth == 0:
            if has_code:
                statements.append(script[start:i].strip())
            start = i + 1
            has_code = False
            head = []
        elif not ch.isspace():
            has_code = True
        i += 1

    if has_code:
        statements.append(script[start:].strip())
    return statements
