"""
Command Grammar — ``/memory ...`` text to structured commands.

Grammar::

    [/]memory [<subcommand>] [--flag value | --flag=value | <text>]...

Quoted segments ("..." or '...') are single tokens whose inner text is kept
verbatim. ``--`` ends flag parsing; everything after it is text. When the
first word is not a subcommand the whole tail is the content of an ``add``.

parse() is pure: it touches no state and returns equal commands for equal
input. Every rejection is a ParseError naming the offending token and its
character offset in the raw text.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from agentmem.types import AgentMemError, Category, ValidationError

SUBCOMMANDS = (
    "add", "list", "search", "delete", "pin", "auto", "stats",
    "export", "refresh", "sync", "capture", "show", "help",
)

_FLAGS: Dict[str, Tuple[str, ...]] = {
    "add": ("category",),
    "list": ("limit", "offset", "cursor", "category"),
    "search": ("limit", "category"),
    "export": ("format",),
}

EXPORT_FORMATS = ("json", "md")

_ON_VALUES = {"on", "true", "yes", "1"}
_OFF_VALUES = {"off", "false", "no", "0"}

_BARE_WORD_RE = re.compile(r"^[a-z]+$")

HELP_TEXT = """\
Memory commands

  /memory add [--category C] <text>      store a memory (default subcommand)
  /memory list [--limit N] [--offset N] [--category C]
  /memory search [--limit N] <query>
  /memory delete <id-or-prefix>
  /memory pin <id-or-prefix> [on|off]
  /memory auto [on|off|status]            toggle heuristic auto-capture
  /memory capture <transcript>            propose memories from a transcript
  /memory stats
  /memory export [--format json|md] [path]
  /memory refresh                         compact and run maintenance
  /memory sync [path]                     rewrite the managed AGENTS.md block
  /memory show                            preview the managed block, no write
  /memory help
"""


class ParseError(AgentMemError, ValueError):
    """Malformed command text."""

    def __init__(self, message: str, token: str, position: int):
        self.message = message
        self.token = token
        self.position = position
        super().__init__(f"{message} (token {token!r} at position {position})")


@dataclass(frozen=True)
class Command:
    """A parsed memory command. Fields unused by a subcommand stay default."""

    name: str
    content: str = ""
    category: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0
    target: Optional[str] = None
    value: Optional[str] = None
    fmt: Optional[str] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class _Token:
    text: str
    position: int
    quoted: bool = False

    @property
    def is_flag(self) -> bool:
        return not self.quoted and self.text.startswith("--")


# ---------------------------------------------------------------------------
# Cursors
# ---------------------------------------------------------------------------


def encode_cursor(offset: int) -> str:
    """Opaque paging cursor for an offset."""
    return base64.urlsafe_b64encode(f"o:{offset}".encode("ascii")).decode("ascii")


def decode_cursor(cursor: str) -> int:
    """Offset encoded in a cursor. Raises ValueError when malformed."""
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("ascii")
    except (binascii.Error, UnicodeError) as e:
        raise ValueError(f"invalid cursor: {cursor!r}") from e
    if not raw.startswith("o:") or not raw[2:].isdigit():
        raise ValueError(f"invalid cursor: {cursor!r}")
    return int(raw[2:])


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


def _tokenize(raw: str) -> List[_Token]:
    tokens: List[_Token] = []
    i, n = 0, len(raw)
    while i < n:
        ch = raw[i]
        if ch.isspace():
            i += 1
            continue
        if ch in "\"'":
            end = raw.find(ch, i + 1)
            if end == -1:
                raise ParseError("unterminated quote", raw[i:], i)
            tokens.append(_Token(raw[i + 1:end], i, quoted=True))
            i = end + 1
            continue
        j = i
        while j < n and not raw[j].isspace():
            j += 1
        tokens.append(_Token(raw[i:j], i))
        i = j
    return tokens


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _split_args(
    name: str, args: List[_Token],
) -> Tuple[Dict[str, _Token], List[_Token]]:
    allowed = _FLAGS.get(name, ())
    flags: Dict[str, _Token] = {}
    positional: List[_Token] = []
    i = 0
    while i < len(args):
        tok = args[i]
        if tok.is_flag and tok.text == "--":
            positional.extend(args[i + 1:])
            break
        if tok.is_flag:
            flag = tok.text[2:]
            if "=" in flag:
                flag, value = flag.split("=", 1)
                value_tok = _Token(value, tok.position + 3 + len(flag))
                if not value:
                    raise ParseError(f"flag --{flag} requires a value", tok.text, tok.position)
            else:
                nxt = args[i + 1] if i + 1 < len(args) else None
                if nxt is None or nxt.is_flag:
                    raise ParseError(f"flag --{flag} requires a value", tok.text, tok.position)
                value_tok = nxt
                i += 1
            if flag not in allowed:
                raise ParseError(f"unknown flag for '{name}'", tok.text, tok.position)
            if flag in flags:
                raise ParseError(f"duplicate flag --{flag}", tok.text, tok.position)
            flags[flag] = value_tok
        else:
            positional.append(tok)
        i += 1
    return flags, positional


def _int_flag(tok: _Token, lo: int) -> int:
    try:
        value = int(tok.text)
    except ValueError:
        raise ParseError("expected an integer", tok.text, tok.position) from None
    if value < lo:
        raise ParseError(f"value must be >= {lo}", tok.text, tok.position)
    return value


def _category_flag(tok: _Token) -> str:
    try:
        return str(Category(tok.text))
    except ValidationError as e:
        raise ParseError(str(e), tok.text, tok.position) from None


def _no_extra(positional: List[_Token], start: int = 0) -> None:
    if len(positional) > start:
        extra = positional[start]
        raise ParseError("unexpected argument", extra.text, extra.position)


def _switch(tok: _Token, allowed: Tuple[str, ...]) -> str:
    word = tok.text.lower()
    if word in _ON_VALUES:
        word = "on"
    elif word in _OFF_VALUES:
        word = "off"
    if word not in allowed:
        raise ParseError(f"expected one of {'|'.join(allowed)}", tok.text, tok.position)
    return word


def parse(raw: str) -> Command:
    """Parse raw command text.

    Raises:
        ParseError: unknown subcommand, malformed or unknown flag, missing
            required content, bad argument values, unterminated quotes.
    """
    if not isinstance(raw, str):
        raise ParseError("command must be text", repr(raw), 0)
    tokens = _tokenize(raw)
    if not tokens:
        raise ParseError("empty command", raw, 0)

    head = tokens[0]
    keyword = head.text[1:] if head.text.startswith("/") and not head.quoted else head.text
    if head.quoted or keyword.lower() != "memory":
        raise ParseError("expected 'memory'", head.text, head.position)

    rest = tokens[1:]
    if not rest:
        return Command(name="help")

    first = rest[0]
    if not first.quoted and first.text.lower() in SUBCOMMANDS:
        name, anchor, args = first.text.lower(), first, rest[1:]
    elif len(rest) == 1 and not first.quoted and _BARE_WORD_RE.match(first.text):
        raise ParseError("unknown subcommand", first.text, first.position)
    else:
        name, anchor, args = "add", head, rest

    if name == "capture":
        # Transcripts keep their line structure: take the raw tail verbatim.
        transcript = raw[args[0].position:].strip() if args else ""
        return Command(name="capture", content=transcript)

    flags, positional = _split_args(name, args)
    text = " ".join(t.text for t in positional).strip()

    if name == "add":
        if not text:
            raise ParseError("'add' requires memory text", anchor.text, anchor.position)
        category = _category_flag(flags["category"]) if "category" in flags else None
        return Command(name="add", content=text, category=category)

    if name == "search":
        if not text:
            raise ParseError("'search' requires a query", anchor.text, anchor.position)
        limit = _int_flag(flags["limit"], 1) if "limit" in flags else None
        category = _category_flag(flags["category"]) if "category" in flags else None
        return Command(name="search", content=text, limit=limit, category=category)

    if name == "list":
        _no_extra(positional)
        limit = _int_flag(flags["limit"], 1) if "limit" in flags else None
        offset = _int_flag(flags["offset"], 0) if "offset" in flags else 0
        if "cursor" in flags:
            tok = flags["cursor"]
            try:
                offset = decode_cursor(tok.text)
            except ValueError:
                raise ParseError("invalid cursor", tok.text, tok.position) from None
        category = _category_flag(flags["category"]) if "category" in flags else None
        return Command(name="list", limit=limit, offset=offset, category=category)

    if name == "delete":
        if not positional:
            raise ParseError("'delete' requires an id", anchor.text, anchor.position)
        _no_extra(positional, 1)
        return Command(name="delete", target=positional[0].text)

    if name == "pin":
        if not positional:
            raise ParseError("'pin' requires an id", anchor.text, anchor.position)
        _no_extra(positional, 2)
        value = _switch(positional[1], ("on", "off")) if len(positional) > 1 else "on"
        return Command(name="pin", target=positional[0].text, value=value)

    if name == "auto":
        _no_extra(positional, 1)
        value = _switch(positional[0], ("on", "off", "status")) if positional else "status"
        return Command(name="auto", value=value)

    if name == "export":
        fmt = None
        if "format" in flags:
            tok = flags["format"]
            fmt = tok.text.lower()
            if fmt not in EXPORT_FORMATS:
                raise ParseError("format must be json or md", tok.text, tok.position)
        if fmt is None and positional and positional[0].text.lower() in EXPORT_FORMATS:
            fmt = positional.pop(0).text.lower()
        _no_extra(positional, 1)
        path = positional[0].text if positional else None
        return Command(name="export", fmt=fmt or "json", path=path)

    if name == "sync":
        _no_extra(positional, 1)
        return Command(name="sync", path=positional[0].text if positional else None)

    # stats, refresh, show, help
    _no_extra(positional)
    return Command(name=name)
