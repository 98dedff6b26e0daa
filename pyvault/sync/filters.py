"""Workspace filter model.

A :class:`Filter` mirrors one ``<filter>`` entry of a FileVault
``filter.xml``: a root path plus ordered include/exclude rules deciding
which repository paths below the root take part in a sync.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from .verdict import SyncVerdict


class RuleKind(str, Enum):
    """Kind of a filter rule, named after its XML element."""

    INCLUDE = "include"
    EXCLUDE = "exclude"


@dataclass(frozen=True)
class FilterRule:
    """An include or exclude rule with its regular expression."""

    kind: RuleKind
    pattern: re.Pattern

    def matches(self, path: str) -> bool:
        """Check if the rule's pattern matches anywhere in ``path``."""
        return self.pattern.search(path) is not None


@dataclass(frozen=True)
class Filter:
    """Filter root with its ordered rules.

    Examples:
        >>> f = Filter("/apps/myproj", [FilterRule(RuleKind.INCLUDE, re.compile(r".*\\.html"))])
        >>> f.get_sync_status("/apps/myproj/a.html")
        <SyncVerdict.INCLUDED: 1>
        >>> f.get_sync_status("/apps/myproj/a.js")
        <SyncVerdict.EXCLUDED: -1>
        >>> f.get_sync_status("/content/a.html")
        <SyncVerdict.IGNORED: 0>
    """

    root: str
    rules: tuple[FilterRule, ...] = ()
    default_action: RuleKind = field(init=False)

    def __post_init__(self) -> None:
        # Accept any sequence of rules but keep the instance immutable
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "default_action", _default_action(self.rules))

    def covers(self, path: str) -> bool:
        """Check if ``path`` lies under this filter's root."""
        return path.startswith(self.root)

    def get_sync_status(self, path: str) -> SyncVerdict:
        """Compute the verdict of a repository path.

        Rules are evaluated in declared order and the last matching rule
        wins. Without any matching rule the default action applies.

        Args:
            path: Repository path (POSIX style, rooted at /)

        Returns:
            INCLUDED, EXCLUDED, or IGNORED for paths outside the root
        """
        if not self.covers(path):
            return SyncVerdict.IGNORED

        verdict = None
        for rule in self.rules:
            if rule.matches(path):
                verdict = _verdict_for(rule.kind)
        if verdict is None:
            verdict = _verdict_for(self.default_action)
        return verdict


def _verdict_for(kind: RuleKind) -> SyncVerdict:
    if kind is RuleKind.INCLUDE:
        return SyncVerdict.INCLUDED
    return SyncVerdict.EXCLUDED


def _default_action(rules: tuple[FilterRule, ...]) -> RuleKind:
    """A filter starting with an include excludes everything else, and vice versa."""
    if not rules:
        return RuleKind.INCLUDE
    if rules[0].kind is RuleKind.INCLUDE:
        return RuleKind.EXCLUDE
    return RuleKind.INCLUDE
