"""Syntax-tree chunking for source files.

JavaScript and TypeScript are parsed with tree-sitter, Python with the
standard ``ast`` module. Both are reduced to a flat list of top-level
nodes (imports, declarations, exports, comments) from which chunks are cut:

1. one chunk spanning the top-level imports (``include_imports``)
2. one chunk per top-level declaration of at least ``min_node_size`` lines,
   optionally prefixed by the comment block directly above it
3. one chunk per export statement, whatever its size
"""
import ast
import io
import tokenize
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, List, Optional

import structlog
import tree_sitter_javascript
import tree_sitter_typescript
from tree_sitter import Language, Node, Parser

from workspace_rag.rag.chunk_utils import estimate_tokens
from workspace_rag.rag.errors import ChunkingError
from workspace_rag.rag.types import ChunkResult, FileType

if TYPE_CHECKING:
    from workspace_rag.rag.chunker import Chunker

logger = structlog.get_logger()

ANONYMOUS = "anonymous"

IMPORT = "import"
DECLARATION = "declaration"
EXPORT = "export"
COMMENT = "comment"
OTHER = "other"

ECMASCRIPT_DECLARATIONS = frozenset({
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "abstract_class_declaration",
    "interface_declaration",
    "type_alias_declaration",
    # anonymous values of `export default ...`
    "function_expression",
    "function",
    "generator_function",
    "arrow_function",
    "class",
})

PYTHON_DECLARATIONS = frozenset({"FunctionDef", "AsyncFunctionDef", "ClassDef"})


@dataclass
class TopLevelNode:
    """A top-level statement or comment, located by utf-8 byte offsets."""

    kind: str
    node_type: str
    start: int
    end: int
    start_line: int  # 1-based
    end_line: int
    name: Optional[str] = None
    declaration: Optional["TopLevelNode"] = None


@lru_cache(maxsize=None)
def _get_parser(grammar: str) -> Parser:
    if grammar == "javascript":
        language = Language(tree_sitter_javascript.language())
    elif grammar == "typescript":
        language = Language(tree_sitter_typescript.language_typescript())
    elif grammar == "tsx":
        language = Language(tree_sitter_typescript.language_tsx())
    else:
        raise ValueError(f"Unknown grammar: {grammar}")
    return Parser(language)


def _grammar_for(file_type: FileType, file_path: str) -> str:
    if file_type == FileType.TYPESCRIPT:
        return "tsx" if file_path.lower().endswith(".tsx") else "typescript"
    return "javascript"


def _first_error_line(root: Node) -> int:
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return node.start_point[0] + 1
        stack.extend(reversed(node.children))
    return root.start_point[0] + 1


def _ts_name(node: Node) -> str:
    name = node.child_by_field_name("name")
    if name is None or name.text is None:
        return ANONYMOUS
    return name.text.decode("utf-8")


def _ts_top_level(node: Node, kind: str, declaration: Optional[TopLevelNode] = None) -> TopLevelNode:
    return TopLevelNode(
        kind=kind,
        node_type=node.type,
        start=node.start_byte,
        end=node.end_byte,
        start_line=node.start_point[0] + 1,
        end_line=node.end_point[0] + 1,
        name=_ts_name(node) if kind == DECLARATION else None,
        declaration=declaration,
    )


def parse_ecmascript(source: bytes, grammar: str) -> List[TopLevelNode]:
    """Parse JavaScript/TypeScript into top-level nodes.

    Raises:
        ChunkingError: If the source has syntax errors
    """
    tree = _get_parser(grammar).parse(source)
    root = tree.root_node

    if root.has_error:
        raise ChunkingError(f"Syntax error near line {_first_error_line(root)}")

    nodes: List[TopLevelNode] = []
    for child in root.named_children:
        if child.type == "comment":
            nodes.append(_ts_top_level(child, COMMENT))
        elif child.type == "import_statement":
            nodes.append(_ts_top_level(child, IMPORT))
        elif child.type == "export_statement":
            inner = child.child_by_field_name("declaration") or child.child_by_field_name("value")
            declaration = _ts_top_level(inner, DECLARATION) if inner is not None else None
            nodes.append(_ts_top_level(child, EXPORT, declaration=declaration))
        elif child.type in ECMASCRIPT_DECLARATIONS:
            nodes.append(_ts_top_level(child, DECLARATION))
        else:
            nodes.append(_ts_top_level(child, OTHER))

    return nodes


def _is_all_assignment(stmt: ast.stmt) -> bool:
    if isinstance(stmt, ast.Assign):
        targets = stmt.targets
    elif isinstance(stmt, (ast.AnnAssign, ast.AugAssign)):
        targets = [stmt.target]
    else:
        return False
    return any(isinstance(t, ast.Name) and t.id == "__all__" for t in targets)


def parse_python(text: str, source: bytes) -> List[TopLevelNode]:
    """Parse Python into top-level nodes.

    Decorators belong to the definition they decorate. ``__all__``
    assignments are treated as exports. Comments are the ``#`` lines
    starting at column 0 outside any statement.

    Raises:
        ChunkingError: If the source has syntax errors
    """
    try:
        tree = ast.parse(text)
    except SyntaxError as e:
        raise ChunkingError(f"Syntax error at line {e.lineno}: {e.msg}", e) from e

    line_starts = [0]
    for line in source.split(b"\n")[:-1]:
        line_starts.append(line_starts[-1] + len(line) + 1)

    nodes: List[TopLevelNode] = []
    covered = set()

    for stmt in tree.body:
        decorators = getattr(stmt, "decorator_list", [])
        start_line = min([stmt.lineno] + [d.lineno for d in decorators])
        end_line = stmt.end_lineno
        covered.update(range(start_line, end_line + 1))

        if isinstance(stmt, (ast.Import, ast.ImportFrom)):
            kind = IMPORT
        elif type(stmt).__name__ in PYTHON_DECLARATIONS:
            kind = DECLARATION
        elif _is_all_assignment(stmt):
            kind = EXPORT
        else:
            kind = OTHER

        nodes.append(
            TopLevelNode(
                kind=kind,
                node_type=type(stmt).__name__,
                start=line_starts[start_line - 1],
                end=line_starts[end_line - 1] + stmt.end_col_offset,
                start_line=start_line,
                end_line=end_line,
                name=getattr(stmt, "name", ANONYMOUS) if kind == DECLARATION else None,
            )
        )

    try:
        tokens = list(tokenize.generate_tokens(io.StringIO(text).readline))
    except (tokenize.TokenError, SyntaxError) as e:
        raise ChunkingError(f"Failed to tokenize source: {e}", e) from e

    for token in tokens:
        line, column = token.start
        if token.type != tokenize.COMMENT or column != 0 or line in covered:
            continue
        nodes.append(
            TopLevelNode(
                kind=COMMENT,
                node_type="comment",
                start=line_starts[line - 1],
                end=line_starts[line - 1] + len(token.string.encode("utf-8")),
                start_line=line,
                end_line=line,
            )
        )

    nodes.sort(key=lambda n: (n.start, n.end))
    return nodes


def parse_top_level(text: str, file_type: FileType, file_path: str):
    """Parse source into (utf-8 bytes, top-level nodes) for a code file type."""
    source = text.encode("utf-8")

    if file_type == FileType.PYTHON:
        return source, parse_python(text, source)
    if file_type in (FileType.JAVASCRIPT, FileType.TYPESCRIPT):
        return source, parse_ecmascript(source, _grammar_for(file_type, file_path))

    raise ChunkingError(f"AST chunking is not supported for file type '{file_type.value}'")


def _leading_comments(nodes: List[TopLevelNode], index: int) -> List[TopLevelNode]:
    """Comment nodes directly above nodes[index], with no blank line between.

    A comment sharing its first line with the node before it trails that
    node and is not part of the block.
    """
    block: List[TopLevelNode] = []
    boundary = nodes[index].start_line
    j = index - 1
    while j >= 0 and nodes[j].kind == COMMENT and nodes[j].end_line >= boundary - 1:
        if j > 0 and nodes[j - 1].end_line >= nodes[j].start_line:
            break
        block.insert(0, nodes[j])
        boundary = nodes[j].start_line
        j -= 1
    return block


def chunk_code(text: str, chunker: "Chunker") -> List[ChunkResult]:
    """Cut source code into import, declaration and export chunks.

    Options (``chunker.config.options``): ``min_node_size`` (lines, default
    1), ``include_imports``, ``include_comments`` and ``node_types`` (the
    declaration node types to keep; defaults per language).

    Raises:
        ChunkingError: If the source cannot be parsed
    """
    file_type = FileType(chunker.file_type)
    source, nodes = parse_top_level(text, file_type, chunker.file_path)

    min_node_size = chunker.option("min_node_size", 1)
    include_imports = chunker.option("include_imports", False)
    include_comments = chunker.option("include_comments", False)
    default_types = PYTHON_DECLARATIONS if file_type == FileType.PYTHON else ECMASCRIPT_DECLARATIONS
    node_types = set(chunker.option("node_types") or default_types)

    def node_text(node: TopLevelNode) -> str:
        return source[node.start:node.end].decode("utf-8")

    chunks: List[ChunkResult] = []

    if include_imports:
        imports = [n for n in nodes if n.kind == IMPORT]
        if imports:
            content = source[imports[0].start:imports[-1].end].decode("utf-8")
            chunks.append(
                ChunkResult(
                    content=content,
                    metadata=chunker.metadata(
                        imports[0].start_line,
                        imports[-1].end_line,
                        estimate_tokens(content),
                        {"node_type": "imports"},
                    ),
                )
            )

    dropped = 0
    for index, node in enumerate(nodes):
        declaration = node if node.kind == DECLARATION else node.declaration
        if declaration is None or declaration.node_type not in node_types:
            continue

        if declaration.end_line - declaration.start_line + 1 < min_node_size:
            dropped += 1
            continue

        content = node_text(declaration)
        comments = _leading_comments(nodes, index) if include_comments else []
        if comments:
            content = "\n".join(node_text(c) for c in comments) + "\n" + content

        chunks.append(
            ChunkResult(
                content=content,
                metadata=chunker.metadata(
                    declaration.start_line,
                    declaration.end_line,
                    estimate_tokens(content),
                    {
                        "node_type": declaration.node_type,
                        "name": declaration.name or ANONYMOUS,
                        "has_comments": bool(comments),
                    },
                ),
            )
        )

    for node in nodes:
        if node.kind != EXPORT:
            continue
        content = node_text(node)
        chunks.append(
            ChunkResult(
                content=content,
                metadata=chunker.metadata(
                    node.start_line,
                    node.end_line,
                    estimate_tokens(content),
                    {"node_type": "export"},
                ),
            )
        )

    logger.debug(
        "code_chunked",
        path=chunker.file_path,
        top_level_nodes=len(nodes),
        declarations_dropped=dropped,
        chunk_count=len(chunks),
    )

    return chunks
