"""cURL command parsing for the ``curl-default`` protocol.

:func:`parse_curl` turns a command string such as::

    curl -X POST 'https://api.example.com/v1/items' \\
      -H 'Authorization: Bearer {{access_token}}' \\
      -d '{"name": "{{name}}"}'

into a :class:`~handshake_engine.models.ParsedCurlCommand`. Tokenising is
done with :mod:`shlex` in POSIX mode, so quoting and backslash escapes behave
as they would in a shell. Unrecognised flags are skipped rather than
rejected.

:func:`to_curl` renders a parsed command back to a multi-line string, used
by the CLI to show what will be sent.
"""

from __future__ import annotations

import shlex
from typing import Optional

from handshake_engine.exceptions import ParseError
from handshake_engine.models import ParsedCurlCommand

_VALUE_FLAGS: dict[str, Optional[str]] = {
    "-X": "method",
    "--request": "method",
    "-H": "header",
    "--header": "header",
    "-d": "data",
    "--data": "data",
    "--data-raw": "data",
    "--data-binary": "data",
    "--data-ascii": "data",
    "--json": "json",
    "-u": "user",
    "--user": "user",
    "-A": "user-agent",
    "--user-agent": "user-agent",
    "-b": "cookie",
    "--cookie": "cookie",
    "-e": "referer",
    "--referer": "referer",
    "-m": "max-time",
    "--max-time": "max-time",
    "--url": "url",
    # Accepted but ignored.
    "-o": None,
    "--output": None,
    "-c": None,
    "--cookie-jar": None,
    "-F": None,
    "--form": None,
    "-T": None,
    "--upload-file": None,
    "--connect-timeout": None,
}

_BOOLEAN_FLAGS: dict[str, str] = {
    "-L": "location",
    "--location": "location",
    "-k": "insecure",
    "--insecure": "insecure",
    "-I": "head",
    "--head": "head",
    "-v": "verbose",
    "--verbose": "verbose",
    "-s": "silent",
    "--silent": "silent",
    "-S": "show-error",
    "--show-error": "show-error",
    "--compressed": "compressed",
}


def _tokenize(command: str) -> list[str]:
    text = command.replace("\\\r\n", " ").replace("\\\n", " ").strip()
    try:
        tokens = shlex.split(text, posix=True)
    except ValueError as exc:
        raise ParseError(f"Malformed cURL command: {exc}") from exc
    if tokens and tokens[0].lower() == "curl":
        tokens = tokens[1:]
    return tokens


def _looks_like_url(token: str) -> bool:
    lowered = token.lower()
    if lowered.startswith(("http://", "https://", "ws://", "wss://")):
        return True
    if lowered.startswith("{{"):
        return True
    return "." in token or lowered.startswith("localhost")


def parse_curl(command: str) -> ParsedCurlCommand:
    """Parse a cURL command string.

    Args:
        command: The command, with or without a leading ``curl``.

    Returns:
        The parsed command. ``-d`` without an explicit ``-X`` switches the
        method to ``POST``; ``-I`` switches it to ``HEAD``.

    Raises:
        ParseError: If the command has unbalanced quotes, a header without a
            colon, or no URL.
    """
    if not command or not command.strip():
        raise ParseError("cURL command is empty")

    tokens = _tokenize(command)
    parsed = ParsedCurlCommand()
    explicit_method = False
    i = 0

    while i < len(tokens):
        token = tokens[i]

        if token in _BOOLEAN_FLAGS:
            name = _BOOLEAN_FLAGS[token]
            if name == "location":
                parsed.follow_redirects = True
            elif name == "insecure":
                parsed.insecure = True
            elif name == "head" and not explicit_method:
                parsed.method = "HEAD"
            i += 1
            continue

        if token in _VALUE_FLAGS:
            if i + 1 >= len(tokens):
                raise ParseError(f"Flag {token} expects a value")
            value = tokens[i + 1]
            name = _VALUE_FLAGS[token]
            if name == "method":
                parsed.method = value.upper()
                explicit_method = True
            elif name == "header":
                header_name, sep, header_value = value.partition(":")
                if not sep or not header_name.strip():
                    raise ParseError(f"Malformed header: {value!r}")
                parsed.headers[header_name.strip()] = header_value.strip()
            elif name in ("data", "json"):
                parsed.body = value if parsed.body is None else f"{parsed.body}&{value}"
                if name == "json":
                    parsed.headers.setdefault("Content-Type", "application/json")
                    parsed.headers.setdefault("Accept", "application/json")
                if not explicit_method and parsed.method in ("GET", "HEAD"):
                    parsed.method = "POST"
            elif name == "user":
                username, _, password = value.partition(":")
                parsed.basic_auth = (username, password)
            elif name == "user-agent":
                parsed.headers["User-Agent"] = value
            elif name == "cookie":
                parsed.headers["Cookie"] = value
            elif name == "referer":
                parsed.headers["Referer"] = value
            elif name == "max-time":
                try:
                    parsed.max_time_s = float(value)
                except ValueError as exc:
                    raise ParseError(f"Invalid --max-time value: {value!r}") from exc
            elif name == "url":
                parsed.url = value
            i += 2
            continue

        if token.startswith("-"):
            # Unknown flag
            i += 1
            continue

        if not parsed.url and _looks_like_url(token):
            parsed.url = token
        i += 1

    if not parsed.url:
        raise ParseError("cURL command has no URL")
    return parsed


def to_curl(parsed: ParsedCurlCommand) -> str:
    """Render *parsed* back to a multi-line cURL command."""
    parts = ["curl"]
    if parsed.method != "GET":
        parts.append(f"-X {parsed.method}")
    parts.append(shlex.quote(parsed.url))
    for name, value in parsed.headers.items():
        parts.append(f"-H {shlex.quote(f'{name}: {value}')}")
    if parsed.basic_auth:
        parts.append(f"-u {shlex.quote(':'.join(parsed.basic_auth))}")
    if parsed.body is not None:
        parts.append(f"-d {shlex.quote(parsed.body)}")
    if parsed.follow_redirects:
        parts.append("-L")
    if parsed.insecure:
        parts.append("-k")
    return " \\\n  ".join(parts)
