"""RouterOS API sentence helpers.

Word framing (length prefixes, socket I/O, login) is done by ``librouteros``;
this module only builds command words and decodes reply words.

A command sentence starts with the command path (``/ppp/secret/add``) followed
by attribute words (``=name=alice``), query words (``?.id=*A``) and API
attributes (``.tag=7``). Reply sentences start with ``!re``, ``!done``,
``!trap``, ``!fatal`` or ``!empty``.

Values are kept as the strings the router sent: ``librouteros``' own
``Api.__call__`` casts ``yes``/``no`` and digits, which loses information
(``packet-loss=0`` vs ``"0"``), so replies are read raw and decoded here.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from mikrops.infra.routeros.exceptions import RouterOSError

REPLY_RE = "!re"
REPLY_DONE = "!done"
REPLY_TRAP = "!trap"
REPLY_FATAL = "!fatal"
REPLY_EMPTY = "!empty"

TERMINAL_REPLIES = frozenset({REPLY_DONE, REPLY_TRAP, REPLY_FATAL, REPLY_EMPTY})


@dataclass
class ReplySentence:
    """Decoded reply sentence.

    Attributes:
        reply: Reply word (``!re``, ``!done``, ``!trap``, ...)
        attributes: ``=key=value`` pairs with the leading ``=`` removed
        tag: Value of the ``.tag`` API attribute, if present
    """

    reply: str
    attributes: dict[str, str] = field(default_factory=dict)
    tag: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.reply in TERMINAL_REPLIES


def parse_sentence(words: Iterable[str]) -> ReplySentence:
    """Decode raw reply words into a ReplySentence."""
    words = list(words)
    if not words:
        raise RouterOSError("Empty reply sentence")

    sentence = ReplySentence(reply=words[0])
    for word in words[1:]:
        if word.startswith("="):
            key, _, value = word[1:].partition("=")
            sentence.attributes[key] = value
        elif word.startswith(".tag="):
            sentence.tag = word[len(".tag="):]
        # other API attributes are ignored

    # !fatal carries its message as a bare word
    if sentence.reply == REPLY_FATAL and "message" not in sentence.attributes and len(words) > 1:
        sentence.attributes["message"] = " ".join(w for w in words[1:] if not w.startswith("."))

    return sentence


def format_value(value: object) -> str:
    """Render a Python value the way RouterOS expects it in an attribute word."""
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def build_command(
    command: str,
    args: Mapping[str, object] | None = None,
    query: Mapping[str, object] | None = None,
    tag: str | None = None,
) -> list[str]:
    """Build command words.

    Args:
        command: Command path, e.g. ``/ppp/secret/add``
        args: Attribute map rendered as ``=k=v``; None values are skipped
        query: Query map rendered as ``?k=v``
        tag: Optional ``.tag`` value

    Returns:
        Words ready for ``ApiProtocol.writeSentence``
    """
    if not command.startswith("/"):
        raise ValueError(f"Command must be an absolute path: {command!r}")

    words = [command]
    for key, value in (args or {}).items():
        if value is None:
            continue
        words.append(f"={key}={format_value(value)}")
    for key, value in (query or {}).items():
        if value is None:
            continue
        words.append(f"?{key}={format_value(value)}")
    if tag is not None:
        words.append(f".tag={tag}")
    return words
