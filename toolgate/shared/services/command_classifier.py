"""Shell command line classification for terminal auto-approval.

Splits a command line into the sub-commands a shell would run and pulls
out the canonical command name of each one, so approval rules can be
keyed by ``git`` or ``swift`` rather than by whole command lines.

Splitting happens at top-level ``&&``, ``||``, ``;``, ``|``, ``|&``,
background ``&`` and newlines. Quoted spans are never split. Subshells
``( ... )`` and command substitutions ``$( ... )`` / backticks, including
those inside double quotes, are flattened: their contents come back as
sub-commands of their own, right after the command that contains them.
Redirections (``>``, ``>>``, ``&>``, ``2>&1``, ``<``) stay attached to
their command.
"""
from __future__ import annotations

import re
import shlex

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# sudo options that consume the following argument
_SUDO_ARG_OPTIONS = frozenset({"-u", "-g", "-h", "-p", "-C", "-D", "-r", "-t", "-U"})
_ENV_ARG_OPTIONS = frozenset({"-u", "-C", "-S"})


class _Scanner:
    """Single pass over a command line, one nesting level per call."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        if index < len(self.text):
            return self.text[index]
        return ""

    def parse(self, closing: str | None = None) -> list[str]:
        commands: list[str] = []
        nested: list[str] = []
        buf: list[str] = []

        def flush() -> None:
            current = "".join(buf).strip()
            if current:
                commands.append(current)
            commands.extend(nested)
            buf.clear()
            nested.clear()

        while self.pos < len(self.text):
            ch = self.peek()

            if closing is not None and ch == closing:
                self.pos += 1
                break

            if ch == "'":
                end = self.text.find("'", self.pos + 1)
                end = len(self.text) if end == -1 else end + 1
                buf.append(self.text[self.pos:end])
                self.pos = end
                continue

            if ch == '"':
                buf.append(self._read_double_quoted(nested))
                continue

            if ch == "\\":
                buf.append(self.text[self.pos:self.pos + 2])
                self.pos += 2
                continue

            if ch == "#" and (not buf or buf[-1].isspace()):
                end = self.text.find("\n", self.pos)
                self.pos = len(self.text) if end == -1 else end
                continue

            if ch == "$" and self.peek(1) == "(":
                if self.peek(2) == "(":
                    buf.append(self._read_arithmetic())
                    continue
                buf.append("$")
                self.pos += 2
                nested.extend(self.parse(")"))
                continue

            if ch == "`":
                self.pos += 1
                nested.extend(self.parse("`"))
                continue

            if ch in "<>" and self.peek(1) == "(":
                buf.append(ch)
                self.pos += 2
                nested.extend(self.parse(")"))
                continue

            if ch == "(":
                self.pos += 1
                inner = self.parse(")")
                if "".join(buf).strip():
                    nested.extend(inner)
                else:
                    flush()
                    commands.extend(inner)
                continue

            if ch in ";\n":
                self.pos += 1
                flush()
                continue

            if ch == "|":
                previous = "".join(buf).rstrip()[-1:] if buf else ""
                if previous == ">":
                    # ">|" clobber redirection
                    buf.append(ch)
                    self.pos += 1
                    continue
                self.pos += 2 if self.peek(1) in "|&" and self.peek(1) else 1
                flush()
                continue

            if ch == "&":
                nxt = self.peek(1)
                previous = buf[-1] if buf else ""
                if nxt == ">" or previous in ("<", ">"):
                    # "&>", ">&", "2>&1", "<&" are redirections
                    buf.append(ch)
                    self.pos += 1
                    continue
                self.pos += 2 if nxt == "&" else 1
                flush()
                continue

            buf.append(ch)
            self.pos += 1

        flush()
        return commands

    def _read_double_quoted(self, nested: list[str]) -> str:
        # Substitutions still run inside double quotes.
        parts: list[str] = [self.text[self.pos]]
        self.pos += 1
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\\":
                parts.append(self.text[self.pos:self.pos + 2])
                self.pos += 2
                continue
            if ch == "$" and self.peek(1) == "(" and self.peek(2) != "(":
                parts.append("$")
                self.pos += 2
                nested.extend(self.parse(")"))
                continue
            if ch == "`":
                self.pos += 1
                nested.extend(self.parse("`"))
                continue
            parts.append(ch)
            self.pos += 1
            if ch == '"':
                break
        return "".join(parts)

    def _read_arithmetic(self) -> str:
        start = self.pos
        depth = 0
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            self.pos += 1
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    break
        return self.text[start:self.pos]


def split_sub_commands(command: str) -> list[str]:
    """Split *command* into independently meaningful sub-commands.

    >>> split_sub_commands("cd Core && swift test")
    ['cd Core', 'swift test']
    >>> split_sub_commands("echo 'hello && world'")
    ["echo 'hello && world'"]
    """
    if not command or not command.strip():
        return []
    return _Scanner(command).parse()


def _tokenize(sub_command: str) -> list[str]:
    try:
        return shlex.split(sub_command, comments=False, posix=True)
    except ValueError:
        return sub_command.split()


def _skip_wrapper(tokens: list[str], index: int, arg_options: frozenset[str]) -> int:
    """Skip a wrapper's option flags, returning the index after them."""
    while index < len(tokens) and tokens[index].startswith("-"):
        option = tokens[index]
        index += 1
        if option == "--":
            break
        if option in arg_options:
            index += 1
    return index


def extract_command_name(sub_command: str) -> str | None:
    """Return the canonical command name of a single sub-command.

    Leading ``NAME=value`` assignments and ``sudo`` / ``env`` wrappers are
    skipped. Returns None when nothing is left.
    """
    tokens = _tokenize(sub_command.strip())
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if _ASSIGNMENT_RE.match(token):
            index += 1
        elif token == "sudo":
            index = _skip_wrapper(tokens, index + 1, _SUDO_ARG_OPTIONS)
        elif token == "env":
            index = _skip_wrapper(tokens, index + 1, _ENV_ARG_OPTIONS)
        else:
            return token
    return None


def extract_terminal_command_names(command: str) -> list[str]:
    """Return the command names of every sub-command, first-seen order."""
    names: list[str] = []
    for sub_command in split_sub_commands(command):
        name = extract_command_name(sub_command)
        if name and name not in names:
            names.append(name)
    return names
