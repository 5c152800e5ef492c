"""Rule files that select kernel modules by path, information and symbols."""

from __future__ import annotations

import enum
import logging
import os
import re
import string
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

_log = logging.getLogger(__name__)

HAS_INFO = 1
HAS_SYMBOLS = 2
HAS_PATHS = 4

_SPACE = " \t\n\v\f\r"
_MATCH_LINE = re.compile(r"[ \t\n\v\f\r]*([^ \t\n\v\f\r]+)[ \t\n\v\f\r]+([^ \t\n\v\f\r][^\n]*)")

_POSIX_CLASS = re.compile(r"\[:([a-z]+):\]")
_POSIX_CLASSES = {
    "alpha": "a-zA-Z",
    "digit": "0-9",
    "alnum": "a-zA-Z0-9",
    "upper": "A-Z",
    "lower": "a-z",
    "space": r" \t\n\r\f\v",
    "blank": r" \t",
    "punct": re.escape(string.punctuation),
    "xdigit": "0-9A-Fa-f",
    "print": r"\x20-\x7e",
    "graph": r"\x21-\x7e",
    "cntrl": r"\x00-\x1f\x7f",
}


class RulesError(Exception):
    """Raised when a rules file cannot be read or holds a bad rule."""


class Keyword(enum.Enum):
    """What a rule looks at."""

    ALIAS = "alias"
    AUTHOR = "author"
    DEPENDS = "depends"
    DESCRIPTION = "description"
    FILENAME = "filename"
    FIRMWARE = "firmware"
    LICENSE = "license"
    NAME = "name"
    SYMBOL = "symbol"


class RuleType(enum.Enum):
    """Whether a rule requires a match or the absence of one."""

    MATCH = 0
    NOT_MATCH = 1


@dataclass(frozen=True)
class Rule:
    """One line of a rules file."""

    type: RuleType
    keyword: Keyword
    pattern: re.Pattern[str]


@dataclass
class Ruleset:
    """All rules of one file, grouped by what they look at."""

    filename: str
    flags: int = 0
    info: list[Rule] = field(default_factory=list)
    symbols: list[Rule] = field(default_factory=list)
    paths: list[Rule] = field(default_factory=list)


def _compile(pattern: str) -> re.Pattern[str]:
    translated = _POSIX_CLASS.sub(
        lambda m: _POSIX_CLASSES.get(m.group(1), m.group(0)), pattern
    )
    return re.compile(translated)


def _split_rule(line: str) -> tuple[RuleType, str, str] | None:
    if line.startswith("not-"):
        fields = line[4:].split()
        if len(fields) >= 2:
            return RuleType.NOT_MATCH, fields[0], fields[1]
    found = _MATCH_LINE.match(line)
    if found is None:
        return None
    return RuleType.MATCH, found.group(1), found.group(2)


def parse_ruleset(path: str | os.PathLike[str]) -> Ruleset:
    """Read one rules file."""
    filename = os.fspath(path)
    try:
        data = Path(filename).read_bytes()
    except OSError as exc:
        raise RulesError(f"open: {filename}: {exc.strerror}") from exc
    if not data:
        _log.warning("file %s is empty", filename)

    ruleset = Ruleset(filename=filename)
    text = data.split(b"\0", 1)[0].decode("utf-8", "surrogateescape")

    for lineno, line in enumerate(text.split("\n"), start=1):
        line = line.lstrip(" \t")
        if not line or line.startswith("#"):
            continue

        parsed = _split_rule(line)
        if parsed is None:
            raise RulesError(f"{filename}:{lineno}: bad line format")
        rule_type, word, value = parsed

        try:
            keyword = Keyword(word)
        except ValueError:
            raise RulesError(f"{filename}:{lineno}: unknown keyword") from None

        try:
            pattern = _compile(value)
        except re.error as exc:
            raise RulesError(
                f"{filename}:{lineno}: '{value}' is not a regular expression"
            ) from exc

        rule = Rule(rule_type, keyword, pattern)
        if keyword is Keyword.SYMBOL:
            ruleset.symbols.append(rule)
            ruleset.flags |= HAS_SYMBOLS
        elif keyword is Keyword.FILENAME:
            ruleset.paths.append(rule)
            ruleset.flags |= HAS_PATHS
        else:
            ruleset.info.append(rule)
            ruleset.flags |= HAS_INFO

    return ruleset


def parse_rules(paths: Iterable[str | os.PathLike[str] | None]) -> list[Ruleset]:
    """Read every rules file once, in the order given."""
    rulesets: list[Ruleset] = []
    seen: set[str] = set()
    for path in paths:
        if path is None:
            continue
        filename = os.fspath(path)
        if filename in seen:
            continue
        seen.add(filename)
        rulesets.append(parse_ruleset(filename))
    return rulesets


def _satisfied(rule: Rule, found: bool) -> bool:
    return found if rule.type is RuleType.MATCH else not found


def match_filename(filename: str, rules: Iterable[Rule]) -> bool:
    """Tell whether filename satisfies every rule."""
    return all(_satisfied(rule, rule.pattern.search(filename) is not None)
               for rule in rules)


def match_values(pairs: Iterable[tuple[str | None, str | None]],
                 rules: Iterable[Rule], use_key: bool) -> bool:
    """Tell whether the (key, value) pairs satisfy every rule.

    A rule matches if the pattern is found in some value; with use_key only
    values whose key is the rule's keyword are considered.
    """
    pairs = list(pairs)
    for rule in rules:
        found = any(
            value is not None
            and (not use_key or key == rule.keyword.value)
            and rule.pattern.search(value) is not None
            for key, value in pairs
        )
        if not _satisfied(rule, found):
            return False
    return True