"""Escaping of literal text for ffmpeg filter-graph parameters.

ffmpeg unescapes a parameter value twice: once when the filter graph is split
into filters (quotes group, backslash escapes) and once more when the filter's
own ``key=value:key=value`` option string is parsed (same rules, ``:`` ends
the value, unprotected outer whitespace is dropped). User text therefore gets
two escaping layers, applied exactly once, when a stage is serialised.
"""

_WHITESPACE = " \n\t\r"


def _escape_option_value(text: str) -> str:
    # inner layer, read by the option parser
    text = text.replace("\\", "\\\\")
    text = text.replace("'", "\\'")
    text = text.replace(":", "\\:")
    body = text.strip(_WHITESPACE)
    if not body:
        return "".join("\\" + ch for ch in text)
    start = len(text) - len(text.lstrip(_WHITESPACE))
    end = len(text.rstrip(_WHITESPACE))
    lead = "".join("\\" + ch for ch in text[:start])
    trail = "".join("\\" + ch for ch in text[end:])
    return lead + body + trail


def escape_literal(text: str) -> str:
    """Escape ``text`` for use between single quotes in a filter graph.

    Passes, in order:

    1. line breaks normalised to ``\\n`` and kept as real newlines
    2. backslash ``\\`` -> ``\\\\``
    3. single quote ``'`` -> ``\\'``
    4. colon ``:`` -> ``\\:``
    5. leading and trailing whitespace backslash-protected
    6. every ``'`` of the result -> ``'\\''`` (close the quotes, escaped
       quote, reopen) for the graph-level parser

    So ``it's: a\\test`` becomes ``it\\'\\''s\\: a\\\\test``. Brackets,
    commas, semicolons and multi-byte text pass through untouched.
    """
    text = str(text).replace("\r\n", "\n").replace("\r", "\n")
    return _escape_option_value(text).replace("'", "'\\''")


def quote_literal(text: str) -> str:
    return f"'{escape_literal(text)}'"


def _unescape_token(value: str) -> str:
    out: list[str] = []
    protected = 0
    i = 0
    n = len(value)
    while i < n and value[i] in _WHITESPACE:
        i += 1
    while i < n:
        ch = value[i]
        i += 1
        if ch == "\\" and i < n:
            out.append(value[i])
            i += 1
            protected = len(out)
        elif ch == "'":
            close = value.find("'", i)
            if close == -1:
                out.extend(value[i:])
                i = n
                protected = len(out)
            else:
                out.extend(value[i:close])
                i = close + 1
                protected = len(out)
        else:
            out.append(ch)
    while len(out) > protected and out[-1] in _WHITESPACE:
        out.pop()
    return "".join(out)


def parse_literal(value: str) -> str:
    """Decode a parameter value the way the engine reads it back.

    Both parsing levels are applied: the graph-level split, then the
    filter's option parser. Each one drops quotes, makes the character
    after a backslash literal and trims unprotected outer whitespace.
    """
    return _unescape_token(_unescape_token(value))
