"""
core/patterns.py -- Action-name matchers shared by pricing and routing.

Both the cost policy (ledger/pricing.py) and the action router
(routing/router.py) are ordered lists of "first match wins" rules. The match
itself is the same small vocabulary in both places: prefix, suffix, substring
keyword, exact name, or a regular expression. Keeping it here means the two
tables read the same way and are tested the same way.

Matching is case-sensitive. "COMP_" and "comp_" are distinct prefixes and
both appear in the routing table.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

MatchKind = Literal["prefix", "suffix", "contains", "exact", "regex"]


@dataclass(frozen=True)
class ActionPattern:
    """One matcher: kind plus the alternatives it accepts (any-of)."""

    kind: MatchKind
    values: tuple[str, ...]

    def matches(self, action: str) -> bool:
        if self.kind == "prefix":
            return action.startswith(self.values)
        if self.kind == "suffix":
            return action.endswith(self.values)
        if self.kind == "contains":
            return any(v in action for v in self.values)
        if self.kind == "exact":
            return action in self.values
        return any(re.search(v, action) for v in self.values)


def prefix(*values: str) -> ActionPattern:
    return ActionPattern("prefix", values)


def suffix(*values: str) -> ActionPattern:
    return ActionPattern("suffix", values)


def contains(*values: str) -> ActionPattern:
    return ActionPattern("contains", values)


def exact(*values: str) -> ActionPattern:
    return ActionPattern("exact", values)


def regex(*values: str) -> ActionPattern:
    return ActionPattern("regex", values)


def any_of(action: str, patterns: tuple[ActionPattern, ...]) -> bool:
    """Return True if any pattern matches. Used for rules with mixed kinds."""
    return any(p.matches(action) for p in patterns)
