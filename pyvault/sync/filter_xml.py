"""Reading and writing FileVault ``filter.xml`` workspace filters."""

import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Iterable, Union
from xml.sax.saxutils import escape

from ..exceptions import MalformedFilterError
from .filters import Filter, FilterRule, RuleKind

logger = logging.getLogger(__name__)

WORKSPACE_FILTER_TAG = "workspaceFilter"
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

_ATTR_ENTITIES = {'"': "&quot;"}


def parse_filter_xml(file_path: Union[str, Path]) -> list[Filter]:
    """Parse a workspace filter file.

    Args:
        file_path: Path to the filter.xml file

    Returns:
        Filters in document order

    Raises:
        MalformedFilterError: If the file cannot be read or is not a valid filter
    """
    try:
        content = Path(file_path).read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedFilterError(f"Cannot read filter file {file_path}: {e}") from e
    return parse_filter_string(content)


def parse_filter_string(content: str) -> list[Filter]:
    """Parse the text of a workspace filter document.

    Rule patterns are compiled verbatim; no anchoring is added.

    Raises:
        MalformedFilterError: On malformed XML, a filter without a root,
            an unknown rule element or an invalid pattern
    """
    try:
        document = ET.fromstring(content)
    except ET.ParseError as e:
        raise MalformedFilterError(f"Invalid filter file: {e}") from e

    filter_elements = document.findall("filter")
    if document.tag != WORKSPACE_FILTER_TAG or not filter_elements:
        raise MalformedFilterError("Invalid filter file - unknown XML structure")

    filters = []
    for element in filter_elements:
        root = element.get("root")
        if not root:
            raise MalformedFilterError("Invalid filter - missing root attribute.")
        rules = [_parse_rule(child) for child in element]
        filters.append(Filter(root, rules))

    logger.debug("Parsed %d filter(s): %s", len(filters), [f.root for f in filters])
    return filters


def _parse_rule(element: ET.Element) -> FilterRule:
    tag = element.tag.lower()
    try:
        kind = RuleKind(tag)
    except ValueError as e:
        raise MalformedFilterError(
            f"Invalid filter - unknown element [{element.tag}]"
        ) from e

    pattern = element.get("pattern")
    if pattern is None:
        raise MalformedFilterError(f"Invalid filter - [{tag}] without pattern")
    try:
        return FilterRule(kind, re.compile(pattern))
    except re.error as e:
        raise MalformedFilterError(
            f"Invalid filter - bad pattern [{pattern}]: {e}"
        ) from e


def narrow_root(remote_path: str) -> str:
    """Turn a synced repository path into a filter root.

    A ``.content.xml`` stands for its folder, an ``_cq_editConfig.xml``
    for the ``cq:editConfig`` node, and ``_cq_`` name prefixes are the
    file system escape of ``cq:``.

    Examples:
        >>> narrow_root("/apps/myproj/comp/.content.xml")
        '/apps/myproj/comp'
        >>> narrow_root("/apps/myproj/comp/_cq_editConfig.xml")
        '/apps/myproj/comp/cq:editConfig'
    """
    if remote_path.endswith("/.content.xml"):
        remote_path = remote_path[: -len("/.content.xml")]
    elif remote_path.endswith("_cq_editConfig.xml"):
        remote_path = remote_path[: -len(".xml")]
    return remote_path.replace("/_cq_", "/cq:")


def contains_path(ancestor: str, remote_path: str) -> bool:
    """Check if ``remote_path`` is ``ancestor`` or lies below it.

    Paths are compared segment by segment, so ``/apps/myproj2`` is not
    below ``/apps/myproj``.
    """
    if ancestor == "/" or remote_path == ancestor:
        return True
    return remote_path.startswith(ancestor.rstrip("/") + "/")


def is_below_root(remote_path: str, root: str) -> bool:
    """Check if ``remote_path`` is strictly below the filter root ``root``."""
    return remote_path not in ("/", root) and contains_path(root, remote_path)


def select_filters(filters: Iterable[Filter], remote_path: str) -> list[Filter]:
    """Return the filters that can contribute content to ``remote_path``.

    Args:
        filters: All filters of the checkout
        remote_path: Repository path being synced

    Returns:
        Filters whose root contains the path or lies below it
    """
    if remote_path == "/":
        return list(filters)
    return [
        f
        for f in filters
        if contains_path(f.root, remote_path) or contains_path(remote_path, f.root)
    ]


def render_filter_xml(filters: Iterable[Filter], remote_path: str) -> str:
    """Render the workspace filter of a sync package.

    Filters are written in full, except when the synced path lies strictly
    below a filter's root: the filter is then narrowed to that path.

    Args:
        filters: Filters to write
        remote_path: Repository path being synced

    Returns:
        The filter.xml document
    """
    lines = [XML_DECLARATION, f'<{WORKSPACE_FILTER_TAG} version="1.0">']
    written_roots: set[str] = set()

    for f in filters:
        if is_below_root(remote_path, f.root):
            root = narrow_root(remote_path)
            if root in written_roots:
                continue
            written_roots.add(root)
            lines.append(f"    <filter root={_attr(root)}/>")
            continue

        if f.root in written_roots:
            continue
        written_roots.add(f.root)
        if not f.rules:
            lines.append(f"    <filter root={_attr(f.root)}/>")
            continue
        lines.append(f"    <filter root={_attr(f.root)}>")
        for rule in f.rules:
            lines.append(
                f"        <{rule.kind.value} pattern={_attr(rule.pattern.pattern)}/>"
            )
        lines.append("    </filter>")

    lines.append(f"</{WORKSPACE_FILTER_TAG}>")
    return "\n".join(lines) + "\n"


def _attr(value: str) -> str:
    return '"' + escape(value, _ATTR_ENTITIES) + '"'
