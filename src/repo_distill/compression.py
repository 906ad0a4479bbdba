"""Structural compression of source files.

A tree-sitter parse keeps what describes a file's interface (imports, type
declarations, signatures, top-level constants) and replaces function bodies
with an elision marker. When the parse is unavailable or untrustworthy the
text only gets its blank lines collapsed and trailing whitespace removed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING

from tree_sitter_language_pack import get_parser

from repo_distill.config import CompressionKind, LanguageTag
from repo_distill.events import CompressionEvent, emit
from repo_distill.exceptions import CompressionError
from repo_distill.logging import logger
from repo_distill.models import UTF8_ERRORS, CompressedUnit, SourceUnit, utf8_size

if TYPE_CHECKING:
    from tree_sitter import Node, Parser

    from repo_distill.events import EventSink

BRACE_MARKER = "{ ... }"
PYTHON_MARKER = "..."

_JS_DECLARATIONS = frozenset(
    {
        "import_statement",
        "export_statement",
        "function_declaration",
        "generator_function_declaration",
        "class_declaration",
        "lexical_declaration",
        "variable_declaration",
    },
)
_JS_BODIED = frozenset(
    {
        "function_declaration",
        "generator_function_declaration",
        "function_expression",
        "function",
        "generator_function",
        "arrow_function",
        "method_definition",
    },
)
_C_DECLARATIONS = frozenset(
    {
        "preproc_include",
        "preproc_def",
        "preproc_function_def",
        "preproc_ifdef",
        "preproc_if",
        "declaration",
        "type_definition",
        "struct_specifier",
        "enum_specifier",
        "union_specifier",
        "function_definition",
        "linkage_specification",
    },
)


@dataclass(frozen=True)
class GrammarProfile:
    """Node kinds that decide what a structural pass keeps for one language.

    Attributes:
        grammar: Grammar name understood by tree-sitter-language-pack.
        declarations: Top-level node kinds that are interface-bearing and kept.
        bodied: Node kinds whose `body` field is implementation and gets elided.
        marker: Text replacing an elided body.
        assignment_wrappers: Top-level kinds kept only when they wrap an assignment.
    """

    grammar: str
    declarations: frozenset[str]
    bodied: frozenset[str]
    marker: str = BRACE_MARKER
    assignment_wrappers: frozenset[str] = field(default_factory=frozenset)


PROFILES: dict[LanguageTag, GrammarProfile] = {
    LanguageTag.PYTHON: GrammarProfile(
        grammar="python",
        declarations=frozenset(
            {
                "import_statement",
                "import_from_statement",
                "future_import_statement",
                "function_definition",
                "class_definition",
                "decorated_definition",
                "type_alias_statement",
            },
        ),
        bodied=frozenset({"function_definition"}),
        marker=PYTHON_MARKER,
        assignment_wrappers=frozenset({"expression_statement"}),
    ),
    LanguageTag.JAVASCRIPT: GrammarProfile(
        grammar="javascript",
        declarations=_JS_DECLARATIONS,
        bodied=_JS_BODIED,
    ),
    LanguageTag.TYPESCRIPT: GrammarProfile(
        grammar="typescript",
        declarations=_JS_DECLARATIONS
        | {
            "interface_declaration",
            "type_alias_declaration",
            "enum_declaration",
            "abstract_class_declaration",
            "ambient_declaration",
            "module",
            "internal_module",
            "function_signature",
        },
        bodied=_JS_BODIED,
    ),
    LanguageTag.RUST: GrammarProfile(
        grammar="rust",
        declarations=frozenset(
            {
                "use_declaration",
                "extern_crate_declaration",
                "mod_item",
                "struct_item",
                "enum_item",
                "union_item",
                "trait_item",
                "impl_item",
                "function_item",
                "function_signature_item",
                "const_item",
                "static_item",
                "type_item",
                "macro_definition",
                "attribute_item",
                "inner_attribute_item",
                "foreign_mod_item",
            },
        ),
        bodied=frozenset({"function_item", "closure_expression"}),
    ),
    LanguageTag.GO: GrammarProfile(
        grammar="go",
        declarations=frozenset(
            {
                "package_clause",
                "import_declaration",
                "function_declaration",
                "method_declaration",
                "type_declaration",
                "const_declaration",
                "var_declaration",
            },
        ),
        bodied=frozenset({"function_declaration", "method_declaration", "func_literal"}),
    ),
    LanguageTag.JAVA: GrammarProfile(
        grammar="java",
        declarations=frozenset(
            {
                "package_declaration",
                "import_declaration",
                "class_declaration",
                "interface_declaration",
                "enum_declaration",
                "record_declaration",
                "annotation_type_declaration",
            },
        ),
        bodied=frozenset(
            {"method_declaration", "constructor_declaration", "compact_constructor_declaration", "lambda_expression"},
        ),
    ),
    LanguageTag.C: GrammarProfile(
        grammar="c",
        declarations=_C_DECLARATIONS,
        bodied=frozenset({"function_definition"}),
    ),
    LanguageTag.CPP: GrammarProfile(
        grammar="cpp",
        declarations=_C_DECLARATIONS
        | {
            "namespace_definition",
            "class_specifier",
            "template_declaration",
            "using_declaration",
            "alias_declaration",
            "concept_definition",
        },
        bodied=frozenset({"function_definition", "lambda_expression"}),
    ),
    LanguageTag.PHP: GrammarProfile(
        grammar="php",
        declarations=frozenset(
            {
                "php_tag",
                "namespace_definition",
                "namespace_use_declaration",
                "class_declaration",
                "interface_declaration",
                "trait_declaration",
                "enum_declaration",
                "function_definition",
                "const_declaration",
            },
        ),
        bodied=frozenset({"function_definition", "method_declaration", "anonymous_function"}),
    ),
}

_ASSIGNMENT_KINDS = frozenset({"assignment", "augmented_assignment"})
_TRAILING_WHITESPACE = " \t\r"


@lru_cache(maxsize=None)
def _parser(grammar: str) -> Parser:
    return get_parser(grammar)  # type: ignore[arg-type]


def _collect_elisions(node: Node, profile: GrammarProfile, out: list[tuple[int, int]]) -> None:
    if node.type in profile.bodied:
        body = node.child_by_field_name("body")
        if body is not None:
            out.append((body.start_byte, body.end_byte))
            return
    for child in node.children:
        _collect_elisions(child, profile, out)


def _render(node: Node, source: bytes, profile: GrammarProfile) -> str:
    elisions: list[tuple[int, int]] = []
    _collect_elisions(node, profile, elisions)
    pieces: list[bytes] = []
    cursor = node.start_byte
    marker = profile.marker.encode("utf-8")
    for start, end in elisions:
        pieces.append(source[cursor:start])
        pieces.append(marker)
        cursor = end
    pieces.append(source[cursor : node.end_byte])
    return b"".join(pieces).decode("utf-8", errors=UTF8_ERRORS)


def _is_interface(node: Node, profile: GrammarProfile) -> bool:
    if node.type in profile.declarations:
        return True
    if node.type in profile.assignment_wrappers:
        children = node.named_children
        return bool(children) and children[0].type in _ASSIGNMENT_KINDS
    return False


def compress_structural(text: str, language: LanguageTag) -> str:
    """Keep declarations and signatures, replacing implementation bodies.

    Args:
        text (str): the source text
        language (LanguageTag): the language to parse it as

    Raises:
        CompressionError: when no grammar profile exists, the parser cannot be
            loaded, the tree contains syntax errors, or nothing interface-bearing
            was found

    Returns:
        str: the reduced text
    """
    profile = PROFILES.get(language)
    if profile is None:
        raise CompressionError(message="no structural profile", language=str(language))
    try:
        parser = _parser(profile.grammar)
        source = text.encode("utf-8", errors=UTF8_ERRORS)
        tree = parser.parse(source)
    except Exception as e:
        raise CompressionError(message=f"parser unavailable: {e}", language=str(language)) from e

    root = tree.root_node
    if root.has_error:
        raise CompressionError(message="syntax errors in source", language=str(language))

    try:
        kept = [_render(child, source, profile) for child in root.named_children if _is_interface(child, profile)]
    except UnicodeDecodeError as e:
        raise CompressionError(message=f"node boundary splits a character: {e}", language=str(language)) from e
    if not kept:
        raise CompressionError(message="no interface-bearing declarations", language=str(language))
    return "\n".join(kept) + "\n"


def compress_whitespace(text: str) -> str:
    """Strip trailing whitespace and collapse runs of blank lines into one.

    Leading and trailing blank lines are dropped; a final newline is kept when
    the input had one. Only line feeds end a line, and only spaces, tabs
    and carriage returns count as trailing whitespace, so form feeds or
    Unicode line separators inside string literals survive.

    Args:
        text (str): the text to reduce

    Returns:
        str: the reduced text
    """
    out: list[str] = []
    previous_blank = True
    for line in text.split("\n"):
        stripped = line.rstrip(_TRAILING_WHITESPACE)
        if not stripped:
            if previous_blank:
                continue
            previous_blank = True
        else:
            previous_blank = False
        out.append(stripped)
    while out and not out[-1]:
        out.pop()
    reduced = "\n".join(out)
    if reduced and text.endswith("\n"):
        reduced += "\n"
    return reduced


def _build(unit: SourceUnit, content: str, method: CompressionKind, original_size: int) -> CompressedUnit:
    ratio = None if method is CompressionKind.NONE else utf8_size(content) / original_size
    return CompressedUnit(
        path=unit.path,
        language=unit.language,
        content=content,
        method=method,
        ratio=ratio,
        original_size=original_size,
    )


def compress(unit: SourceUnit, *, structural: bool = True, sink: EventSink | None = None) -> CompressedUnit:
    """Reduce one source unit, degrading from structural to whitespace to nothing.

    Args:
        unit (SourceUnit): the unit to compress
        structural (bool, optional): try the syntax-tree pass first. Defaults to True.
        sink (EventSink | None, optional): progress callback. Defaults to None.

    Returns:
        CompressedUnit: the compressed unit; never raises for parser problems
    """
    original_size = unit.size
    result: CompressedUnit | None = None

    if original_size and structural and unit.language is not None:
        try:
            reduced = compress_structural(unit.content, unit.language)
        except CompressionError as e:
            logger.debug("structural_compression_skipped", path=unit.path, language=e.language, reason=e.message)
        else:
            if 0 < utf8_size(reduced) < original_size:
                result = _build(unit, reduced, CompressionKind.STRUCTURAL, original_size)

    if result is None and original_size:
        reduced = compress_whitespace(unit.content)
        if 0 < utf8_size(reduced) < original_size:
            result = _build(unit, reduced, CompressionKind.WHITESPACE, original_size)

    if result is None:
        result = _build(unit, unit.content, CompressionKind.NONE, original_size)

    emit(
        CompressionEvent(
            path=unit.path,
            language=str(unit.language) if unit.language is not None else None,
            method=str(result.method),
            ratio=result.ratio,
        ),
        sink,
    )
    return result


async def compress_async(
    unit: SourceUnit,
    *,
    structural: bool = True,
    sink: EventSink | None = None,
) -> CompressedUnit:
    """Run `compress` in a worker thread so a long parse does not block the event loop."""
    return await asyncio.to_thread(compress, unit, structural=structural, sink=sink)
