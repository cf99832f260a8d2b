from __future__ import annotations

import re
from dataclasses import dataclass, field


ADMIN_COMMAND_RE = re.compile(r"^please (?P<action>join|leave|watch\+|watch-) (?P<channel>\S+) now$")


@dataclass(slots=True)
class IrcMessage:
    command: str
    params: list[str] = field(default_factory=list)
    prefix: str = ""

    @property
    def nick(self) -> str:
        return self.prefix.split("!", 1)[0]

    def param(self, index: int, default: str = "") -> str:
        if -len(self.params) <= index < len(self.params):
            return self.params[index]
        return default


def parse_irc_line(line: str) -> IrcMessage | None:
    text = line.rstrip("\r\n")
    if text.startswith("@"):
        # IRCv3 message tags are not used.
        _, _, text = text.partition(" ")
    if not text:
        return None

    prefix = ""
    if text.startswith(":"):
        prefix, _, text = text[1:].partition(" ")

    trailing: str | None = None
    if " :" in text:
        text, trailing = text.split(" :", 1)
    elif text.startswith(":"):
        trailing, text = text[1:], ""

    parts = text.split()
    if not parts:
        return None
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, prefix=prefix)


def collapse_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
