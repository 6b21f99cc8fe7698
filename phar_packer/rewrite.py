"""Syntax-aware PHP rewrites.

Some files assume they run from a plain filesystem and misbehave once packed
into an archive. They are patched on a tree-sitter concrete syntax tree:

- Each rewrite locates its target nodes structurally.
- It then splices replacement text over exactly those byte ranges, leaving
  every other byte of the file untouched.
"""

from collections.abc import Iterator
from dataclasses import dataclass
from functools import cache

import tree_sitter_php
from tree_sitter import Language, Node, Parser

from phar_packer.errors import UnparsableSourceError


PHP_LANGUAGE = Language(tree_sitter_php.language_php())

SCAN_CACHEABLE_KEY: str = "scan_cacheable"


@dataclass(frozen=True, slots=True)
class _Edit:
    start: int
    end: int
    text: bytes


@cache
def _parser() -> Parser:
    """Return the shared PHP parser."""

    return Parser(PHP_LANGUAGE)


def _parse(source: bytes, *, filename: str) -> Node:
    """Parse PHP source into a syntax tree.

    :param source: UTF-8 encoded PHP source.
    :param filename: Name used in error messages.
    :returns: Root node of the tree.
    :raises UnparsableSourceError: If the tree contains syntax errors.
    """

    tree = _parser().parse(source)
    root: Node = tree.root_node
    if root.has_error is True:
        raise UnparsableSourceError(f"Unable to parse PHP source {filename}")
    return root


def _walk(node: Node) -> Iterator[Node]:
    """Yield ``node`` and its descendants in document order."""

    stack: list[Node] = [node]
    while len(stack) > 0:
        current: Node = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def _apply(source: bytes, edits: list[_Edit]) -> bytes:
    """Splice non-overlapping edits into ``source``.

    :param source: Original bytes.
    :param edits: Replacements, in any order.
    :returns: Edited bytes.
    """

    out: bytes = source
    for edit in sorted(edits, key=lambda e: e.start, reverse=True):
        out = out[: edit.start] + edit.text + out[edit.end :]
    return out


def _string_literal(node: Node) -> str | None:
    """Return the value of a plain quoted string literal, else ``None``."""

    if node.type not in {"string", "encapsed_string"}:
        return None
    text: str = node.text.decode("utf-8")
    if len(text) < 2 or text[0] not in {"'", '"'} or text[-1] != text[0]:
        return None
    return text[1:-1]


def _returned_array(root: Node) -> Node | None:
    """Find the array literal of the file's top-level ``return`` statement."""

    for child in root.named_children:
        if child.type != "return_statement":
            continue
        for expr in child.named_children:
            if expr.type == "array_creation_expression":
                return expr
    return None


def enable_scan_cacheable(source: str, *, filename: str = "config/config.php") -> str:
    """Force ``scan_cacheable`` to ``true`` in a returned config array.

    Only the top-level array of the file's ``return`` statement is inspected;
    a missing key is not inserted.

    :param source: PHP source.
    :param filename: Name used in error messages.
    :returns: Rewritten source.
    :raises UnparsableSourceError: If ``source`` is not valid PHP.
    """

    data: bytes = source.encode("utf-8")
    root: Node = _parse(data, filename=filename)
    array: Node | None = _returned_array(root)
    if array is None:
        return source

    edits: list[_Edit] = []
    for element in array.named_children:
        if element.type != "array_element_initializer":
            continue
        parts: list[Node] = element.named_children
        if len(parts) != 2:
            continue
        key, value = parts
        if _string_literal(key) != SCAN_CACHEABLE_KEY:
            continue
        if value.type == "boolean" and value.text.decode("utf-8").lower() == "true":
            continue
        edits.append(_Edit(start=value.start_byte, end=value.end_byte, text=b"true"))

    return _apply(data, edits).decode("utf-8")


def rewrite_config_factory(
    source: str,
    *,
    filename: str = "ConfigFactory.php",
    method: str = "readPaths",
) -> str:
    """Make the config loader keep archive paths instead of resolving them.

    Inside ``method``, ``$var->getRealPath()`` calls become
    ``$var->getPathname()``; ``realpath`` yields nothing for files inside a
    phar. Every other method is left alone.

    :param source: PHP source of the config factory.
    :param filename: Name used in error messages.
    :param method: Method whose body is rewritten.
    :returns: Rewritten source.
    :raises UnparsableSourceError: If ``source`` is not valid PHP.
    """

    data: bytes = source.encode("utf-8")
    root: Node = _parse(data, filename=filename)

    edits: list[_Edit] = []
    for node in _walk(root):
        if node.type != "method_declaration":
            continue
        name: Node | None = node.child_by_field_name("name")
        body: Node | None = node.child_by_field_name("body")
        if name is None or body is None or name.text.decode("utf-8") != method:
            continue
        for call in _walk(body):
            if call.type != "member_call_expression":
                continue
            obj: Node | None = call.child_by_field_name("object")
            member: Node | None = call.child_by_field_name("name")
            if obj is None or member is None or obj.type != "variable_name":
                continue
            if member.text.decode("utf-8") != "getRealPath":
                continue
            edits.append(_Edit(start=member.start_byte, end=member.end_byte, text=b"getPathname"))

    return _apply(data, edits).decode("utf-8")
