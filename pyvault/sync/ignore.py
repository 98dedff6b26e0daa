"""Ignore file support (``.vltignore``).

Ignore files use a shell-glob-like syntax, one pattern per line:

- ``#`` starts a comment line, blank lines are skipped
- ``!pattern`` negates a pattern: matching paths are never ignored,
  whatever the other patterns say
- ``*`` matches within one path segment, ``**`` across segments
  (``**/`` also matches zero segments)
- ``*.ext`` matches at any depth
- ``/pattern`` is anchored to the ignore file's folder and also matches
  everything below it
- a pattern without ``/`` matches a name at any depth, including
  everything below it

Paths are checked relative to the folder being synced.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..utils import EXCLUDES, VLTIGNORE, get_checkout_root

logger = logging.getLogger(__name__)

IGNORE_FILE_NAME = VLTIGNORE

# Characters escaped before translating glob wildcards
_REGEX_SPECIALS = re.compile(r"[-\[\]/{}()+?.\\^$|]")

# Placeholders for wildcard translations, never present in patterns
_ANY_DIRS = "\x00"
_ANY = "\x01"


def glob_to_regex(pattern: str) -> str:
    """Translate one ignore pattern into a regular expression.

    Args:
        pattern: Ignore pattern without the negation prefix

    Returns:
        Regular expression source (without anchors)

    Examples:
        >>> glob_to_regex("*.tmp")
        '(.*/)?(([^/]*)\\\\.tmp)'
        >>> glob_to_regex("/build")
        '(build)(/.*)?'
    """
    translated = _REGEX_SPECIALS.sub(lambda m: "\\" + m.group(0), pattern)
    translated = translated.replace("**\\/", _ANY_DIRS)
    translated = translated.replace("**", _ANY)
    translated = translated.replace("*", "([^/]*)")
    translated = translated.replace(_ANY_DIRS, "(.*/)?").replace(_ANY, "(.+)")

    if pattern.startswith("*."):
        return "(.*/)?(" + translated + ")"
    if pattern.startswith("/"):
        # drop the escaped leading slash
        return "(" + translated[2:] + ")(/.*)?"
    if "/" not in pattern:
        return "(.*/)?" + translated + "(/.*)?"
    return translated


def parse_ignore_content(content: str) -> tuple[list[str], list[str]]:
    """Split ignore file content into positive and negated patterns.

    Returns:
        Tuple of (positive patterns, negative patterns), each sorted
    """
    positives: list[str] = []
    negatives: list[str] = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("!"):
            if line[1:]:
                negatives.append(line[1:])
        else:
            positives.append(line)
    return sorted(positives), sorted(negatives)


def _compile_alternation(patterns: list[str]) -> Optional[re.Pattern]:
    if not patterns:
        return None
    alternation = "|".join(f"({glob_to_regex(p)})" for p in patterns)
    return re.compile(f"^({alternation})$")


@dataclass(frozen=True)
class IgnoreRuleSet:
    """Compiled accept/deny predicates of an ignore file."""

    positives: Optional[re.Pattern] = None
    """Alternation of all ignore patterns"""

    negatives: Optional[re.Pattern] = None
    """Alternation of all negated (force-include) patterns"""

    @classmethod
    def compile(cls, content: str) -> "IgnoreRuleSet":
        """Compile ignore file content.

        Examples:
            >>> rules = IgnoreRuleSet.compile("*.tmp\\n!keep.tmp")
            >>> rules.accepts("a.tmp"), rules.accepts("keep.tmp")
            (False, True)
        """
        positives, negatives = parse_ignore_content(content)
        return cls(_compile_alternation(positives), _compile_alternation(negatives))

    def accepts(self, path: str) -> bool:
        """Check if a relative path may be synced.

        Negated patterns always win over ignore patterns.
        """
        path = path.lstrip("/")
        if self.negatives is not None and self.negatives.match(path):
            return True
        return self.positives is None or not self.positives.match(path)

    def denies(self, path: str) -> bool:
        """Check if a relative path is ignored."""
        return not self.accepts(path)


def _read_ignore_lines(ignore_file: Path) -> list[str]:
    lines = []
    for line in ignore_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            lines.append(line)
    return lines


def _prefix_line(line: str, prefix: str) -> str:
    """Anchor a nested ignore file line to the nested file's folder."""
    negated = line.startswith("!")
    body = line[1:] if negated else line
    anchored = "/" + prefix + body.lstrip("/")
    return "!" + anchored if negated else anchored


def build_ignore_content(sync_path: Union[str, Path]) -> str:
    """Aggregate the ignore rules that apply to a sync operation.

    The result holds the built-in excludes, the checkout-level
    ``.vltignore`` (next to ``jcr_root``) and every ``.vltignore`` found
    below ``sync_path``, the latter anchored to their own folder.

    Args:
        sync_path: File or folder being synced

    Returns:
        Ignore file content
    """
    sync_path = Path(sync_path)
    lines = list(EXCLUDES)

    checkout_ignore = get_checkout_root(sync_path) / IGNORE_FILE_NAME
    if checkout_ignore.is_file():
        lines.extend(_read_ignore_lines(checkout_ignore))

    if sync_path.is_dir():
        for ignore_file in sorted(sync_path.rglob(IGNORE_FILE_NAME)):
            if not ignore_file.is_file():
                continue
            folder = ignore_file.parent.relative_to(sync_path).as_posix()
            nested = _read_ignore_lines(ignore_file)
            if folder == ".":
                lines.extend(nested)
            else:
                lines.extend(_prefix_line(line, folder + "/") for line in nested)
            logger.debug("Loaded %d ignore rule(s) from %s", len(nested), ignore_file)

    return "\n".join(lines) + "\n"


def load_ignore_rules(sync_path: Union[str, Path]) -> IgnoreRuleSet:
    """Build and compile the ignore rules for a sync operation."""
    return IgnoreRuleSet.compile(build_ignore_content(sync_path))
