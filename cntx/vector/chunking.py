"""Chunk boundary extraction with tree-sitter and Python AST parsing."""

import ast
import re
from pathlib import PurePosixPath
from typing import Dict, Iterator, List, Optional, Set, Tuple

import tree_sitter_javascript
import tree_sitter_rust
import tree_sitter_typescript
from tree_sitter import Language, Node, Parser

from cntx.observability.logging import get_logger
from cntx.vector.exceptions import ParseError
from cntx.vector.models import CandidateChunk, ChunkSubtype

logger = get_logger(__name__)

JSX_NODE_TYPES = {"jsx_element", "jsx_self_closing_element", "jsx_fragment"}
FUNCTION_NODE_TYPES = {
    "function_declaration",
    "generator_function_declaration",
    "function_expression",
    "function",
    "arrow_function",
    "method_definition",
}
IDENTIFIER_NODE_TYPES = {"identifier", "type_identifier", "shorthand_property_identifier"}
HOOK_NAME = re.compile(r"^use[A-Z0-9]")


class LanguageDetector:
    """Detect the grammar to use from a file extension."""

    EXTENSION_MAP = {
        '.js': 'javascript',
        '.jsx': 'javascript',
        '.mjs': 'javascript',
        '.cjs': 'javascript',
        '.ts': 'typescript',
        '.mts': 'typescript',
        '.cts': 'typescript',
        '.tsx': 'tsx',
        '.rs': 'rust',
        '.py': 'python',
        '.pyi': 'python',
    }

    @classmethod
    def detect_language(cls, file_path: str) -> str:
        """Return the grammar name for ``file_path``, or 'text' if unsupported."""
        suffix = PurePosixPath(file_path).suffix.lower()
        return cls.EXTENSION_MAP.get(suffix, 'text')


def _node_text(node: Node, source: bytes) -> str:
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def _walk(node: Node) -> Iterator[Node]:
    """Depth-first pre-order walk over named nodes."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.named_children))


def _contains_jsx(node: Optional[Node]) -> bool:
    if node is None:
        return False
    return any(child.type in JSX_NODE_TYPES for child in _walk(node))


class ChunkExtractor:
    """Split one file's text into ordered candidate chunks.

    ``extract`` never raises: unparsable input, unsupported languages and
    files without any matching declaration all come back as a single
    whole-file chunk with ``subtype=unknown`` and ``low_confidence=True``.
    """

    def __init__(self, min_chunk_chars: int = 40, max_file_bytes: int = 200_000):
        self.min_chunk_chars = min_chunk_chars
        self.max_file_bytes = max_file_bytes
        self.language_detector = LanguageDetector()
        self._parsers: Dict[str, Parser] = {}

    def _get_parser(self, language: str) -> Parser:
        parser = self._parsers.get(language)
        if parser is not None:
            return parser

        if language == "javascript":
            grammar = Language(tree_sitter_javascript.language())
        elif language == "typescript":
            grammar = Language(tree_sitter_typescript.language_typescript())
        elif language == "tsx":
            grammar = Language(tree_sitter_typescript.language_tsx())
        elif language == "rust":
            grammar = Language(tree_sitter_rust.language())
        else:
            raise ValueError(f"No tree-sitter grammar for {language}")

        parser = Parser(grammar)
        self._parsers[language] = parser
        return parser

    def extract(self, file_path: str, source_text: str, language: Optional[str] = None) -> List[CandidateChunk]:
        """Extract candidate chunks from ``source_text``.

        Args:
            file_path: Workspace-relative POSIX path of the file
            source_text: Decoded file content
            language: Grammar name; detected from the extension when omitted

        Returns:
            Chunks ordered by start line, outer chunks before nested ones
        """
        language = language or self.language_detector.detect_language(file_path)

        if len(source_text.encode("utf-8")) > self.max_file_bytes:
            logger.info("File too large for parsing, indexing as one chunk", file_path=file_path)
            return [self._fallback_chunk(file_path, source_text, language)]

        try:
            if language == "python":
                chunks = self._extract_python(file_path, source_text)
            elif language in ("javascript", "typescript", "tsx"):
                chunks = self._extract_js(file_path, source_text, language)
            elif language == "rust":
                chunks = self._extract_rust(file_path, source_text)
            else:
                chunks = []
        except ParseError as e:
            logger.warning("Parse failed, using whole-file chunk", file_path=file_path, reason=e.reason)
            return [self._fallback_chunk(file_path, source_text, language)]
        except Exception as e:
            diagnostic = ParseError(file_path, f"{type(e).__name__}: {e}")
            logger.warning("Parse failed, using whole-file chunk", file_path=file_path, reason=diagnostic.reason)
            return [self._fallback_chunk(file_path, source_text, language)]

        chunks = [c for c in chunks if len(c.source_text.strip()) >= self.min_chunk_chars]
        if not chunks:
            logger.debug("No declarations found, using whole-file chunk", file_path=file_path, language=language)
            return [self._fallback_chunk(file_path, source_text, language)]

        return sorted(chunks, key=lambda c: (c.start_line, -c.end_line, c.name))

    def _fallback_chunk(self, file_path: str, source_text: str, language: str) -> CandidateChunk:
        stem = PurePosixPath(file_path).stem or PurePosixPath(file_path).name or "file"
        # A trailing newline ends the last line rather than starting a new one
        line_count = max(1, source_text.count("\n") + (0 if source_text.endswith("\n") else 1))
        return CandidateChunk(
            name=stem,
            file_path=file_path,
            start_line=1,
            end_line=line_count,
            source_text=source_text,
            subtype=ChunkSubtype.UNKNOWN,
            language=language,
            low_confidence=True,
        )

    # JavaScript / TypeScript

    def _extract_js(self, file_path: str, source_text: str, language: str) -> List[CandidateChunk]:
        source = source_text.encode("utf-8")
        tree = self._get_parser(language).parse(source)
        root = tree.root_node

        imports = self._collect_js_imports(root, source)
        chunks = []

        for node in _walk(root):
            found = self._map_js_node(node, source)
            if found is None:
                continue
            name, subtype, anchor = found
            chunks.append(self._make_ts_chunk(
                node, anchor, name, subtype, file_path, source, language, imports,
                is_exported=self._is_js_exported(node),
                is_async=any(child.type == "async" for child in node.children),
            ))

        if not chunks and root.has_error:
            raise ParseError(file_path, "syntax errors and no recoverable declarations")
        if root.has_error:
            logger.debug("Syntax errors in file, keeping recovered chunks", file_path=file_path, chunks=len(chunks))

        return chunks

    def _map_js_node(self, node: Node, source: bytes) -> Optional[Tuple[str, ChunkSubtype, Node]]:
        """Decide whether ``node`` starts a chunk; returns (name, subtype, span anchor)."""
        node_type = node.type
        parent = node.parent

        if node_type in ("function_declaration", "generator_function_declaration"):
            name_node = node.child_by_field_name("name")
            name = _node_text(name_node, source) if name_node else "anonymous"
            return name, self._refine_function(name, ChunkSubtype.FUNCTION, node), self._export_anchor(node)

        if node_type in ("class_declaration", "abstract_class_declaration"):
            name_node = node.child_by_field_name("name")
            name = _node_text(name_node, source) if name_node else "anonymous"
            return name, ChunkSubtype.CLASS, self._export_anchor(node)

        if node_type == "method_definition":
            name_node = node.child_by_field_name("name")
            name = _node_text(name_node, source) if name_node else "anonymous"
            return name, ChunkSubtype.METHOD, node

        if node_type in ("function_expression", "function", "arrow_function"):
            base = ChunkSubtype.ARROW_FUNCTION if node_type == "arrow_function" else ChunkSubtype.FUNCTION
            if parent is None:
                return None

            if parent.type == "variable_declarator" and parent.child_by_field_name("value") == node:
                name_node = parent.child_by_field_name("name")
                if name_node is None or name_node.type != "identifier":
                    return None
                name = _node_text(name_node, source)
                declaration = parent.parent if parent.parent is not None else parent
                return name, self._refine_function(name, base, node), self._export_anchor(declaration)

            if parent.type == "pair" and parent.child_by_field_name("value") == node:
                key_node = parent.child_by_field_name("key")
                name = _node_text(key_node, source).strip("'\"") if key_node else "anonymous"
                return name, self._refine_function(name, base, node), parent

            if parent.type == "assignment_expression" and parent.child_by_field_name("right") == node:
                left = parent.child_by_field_name("left")
                name = _node_text(left, source) if left else "anonymous"
                anchor = parent.parent if parent.parent is not None and parent.parent.type == "expression_statement" else parent
                short_name = name.rsplit(".", 1)[-1]
                return name, self._refine_function(short_name, base, node), anchor

            if parent.type == "export_statement":
                return "default", self._refine_function("default", base, node), parent

        return None

    def _refine_function(self, name: str, base: ChunkSubtype, node: Node) -> ChunkSubtype:
        """Apply the react_component and hook naming heuristics."""
        if name[:1].isupper() and self._returns_jsx(node):
            return ChunkSubtype.REACT_COMPONENT
        if HOOK_NAME.match(name):
            return ChunkSubtype.HOOK
        return base

    def _returns_jsx(self, node: Node) -> bool:
        body = node.child_by_field_name("body")
        if body is None:
            return False
        if body.type != "statement_block":
            return _contains_jsx(body)

        stack = list(body.named_children)
        while stack:
            current = stack.pop()
            if current.type in FUNCTION_NODE_TYPES or current.type in ("class_declaration", "class"):
                continue
            if current.type == "return_statement":
                if _contains_jsx(current):
                    return True
                continue
            stack.extend(current.named_children)
        return False

    def _export_anchor(self, node: Node) -> Node:
        parent = node.parent
        if parent is not None and parent.type == "export_statement":
            return parent
        return node

    def _is_js_exported(self, node: Node) -> bool:
        parent = node.parent
        while parent is not None:
            if parent.type in ("export_statement", "export_declaration"):
                return True
            if parent.type in FUNCTION_NODE_TYPES or parent.type in ("class_body", "object"):
                return False
            parent = parent.parent
        return False

    def _collect_js_imports(self, root: Node, source: bytes) -> Dict[str, str]:
        """Map each top-level import binding to its import statement."""
        bindings: Dict[str, str] = {}

        for node in root.named_children:
            if node.type == "import_statement":
                statement = _node_text(node, source).strip()
                for clause in node.named_children:
                    if clause.type != "import_clause":
                        continue
                    for ident in self._import_clause_identifiers(clause):
                        bindings[_node_text(ident, source)] = statement

            elif node.type in ("lexical_declaration", "variable_declaration"):
                statement = _node_text(node, source).strip()
                for declarator in node.named_children:
                    if declarator.type != "variable_declarator":
                        continue
                    value = declarator.child_by_field_name("value")
                    if value is None or value.type != "call_expression":
                        continue
                    function = value.child_by_field_name("function")
                    if function is None or _node_text(function, source) != "require":
                        continue
                    pattern = declarator.child_by_field_name("name")
                    for ident in _walk(pattern):
                        if ident.type in ("identifier", "shorthand_property_identifier_pattern"):
                            bindings[_node_text(ident, source)] = statement

        return bindings

    def _import_clause_identifiers(self, clause: Node) -> Iterator[Node]:
        for child in clause.named_children:
            if child.type == "identifier":
                yield child
            elif child.type == "namespace_import":
                for ident in child.named_children:
                    if ident.type == "identifier":
                        yield ident
            elif child.type == "named_imports":
                for spec in child.named_children:
                    if spec.type != "import_specifier":
                        continue
                    local = spec.child_by_field_name("alias") or spec.child_by_field_name("name")
                    if local is not None:
                        yield local

    # Rust

    def _extract_rust(self, file_path: str, source_text: str) -> List[CandidateChunk]:
        source = source_text.encode("utf-8")
        tree = self._get_parser("rust").parse(source)
        root = tree.root_node

        imports = self._collect_rust_imports(root, source)
        chunks = []

        for node in _walk(root):
            if node.type == "function_item":
                subtype = ChunkSubtype.METHOD if self._inside_rust_impl(node) else ChunkSubtype.FUNCTION
            elif node.type in ("struct_item", "enum_item", "trait_item"):
                subtype = ChunkSubtype.CLASS
            else:
                continue

            name_node = node.child_by_field_name("name")
            name = _node_text(name_node, source) if name_node else "anonymous"
            is_async = any(
                child.type == "function_modifiers" and "async" in _node_text(child, source)
                for child in node.children
            )
            chunks.append(self._make_ts_chunk(
                node, node, name, subtype, file_path, source, "rust", imports,
                is_exported=any(child.type == "visibility_modifier" for child in node.children),
                is_async=is_async,
            ))

        if not chunks and root.has_error:
            raise ParseError(file_path, "syntax errors and no recoverable declarations")

        return chunks

    def _inside_rust_impl(self, node: Node) -> bool:
        parent = node.parent
        return (
            parent is not None
            and parent.type == "declaration_list"
            and parent.parent is not None
            and parent.parent.type in ("impl_item", "trait_item")
        )

    def _collect_rust_imports(self, root: Node, source: bytes) -> Dict[str, str]:
        bindings: Dict[str, str] = {}
        for node in root.named_children:
            if node.type != "use_declaration":
                continue
            statement = _node_text(node, source).strip()
            path = statement[len("use"):].strip().rstrip(";")
            if path.startswith("pub "):
                path = path[4:]
            for piece in re.split(r"[{},]", path):
                piece = piece.strip()
                if not piece:
                    continue
                if " as " in piece:
                    local = piece.split(" as ", 1)[1].strip()
                else:
                    local = piece.split("::")[-1].strip()
                if local and local not in ("self", "*"):
                    bindings[local] = statement
        return bindings

    # Shared tree-sitter helpers

    def _make_ts_chunk(
        self,
        node: Node,
        anchor: Node,
        name: str,
        subtype: ChunkSubtype,
        file_path: str,
        source: bytes,
        language: str,
        imports: Dict[str, str],
        is_exported: bool,
        is_async: bool,
    ) -> CandidateChunk:
        first = self._leading_comment_start(anchor)
        text = source[first.start_byte:anchor.end_byte].decode("utf-8", errors="replace")

        return CandidateChunk(
            name=name,
            file_path=file_path,
            start_line=first.start_point[0] + 1,
            end_line=anchor.end_point[0] + 1,
            source_text=text,
            subtype=subtype,
            language=language,
            is_exported=is_exported,
            is_async=is_async,
            includes=self._referenced_imports(node, source, imports),
        )

    def _leading_comment_start(self, anchor: Node) -> Node:
        """Walk back over comments (and Rust attributes) attached directly above ``anchor``."""
        first = anchor
        previous = anchor.prev_named_sibling
        while previous is not None and previous.type in ("comment", "line_comment", "block_comment", "attribute_item"):
            if previous.end_point[0] < first.start_point[0] - 1:
                break
            first = previous
            previous = previous.prev_named_sibling
        return first

    def _referenced_imports(self, node: Node, source: bytes, imports: Dict[str, str]) -> Tuple[str, ...]:
        if not imports:
            return ()
        used: Set[str] = {
            _node_text(child, source)
            for child in _walk(node)
            if child.type in IDENTIFIER_NODE_TYPES
        }
        statements: List[str] = []
        for binding, statement in imports.items():
            if binding in used and statement not in statements:
                statements.append(statement)
        return tuple(statements)

    # Python

    def _extract_python(self, file_path: str, source_text: str) -> List[CandidateChunk]:
        try:
            tree = ast.parse(source_text)
        except SyntaxError as e:
            raise ParseError(file_path, f"line {e.lineno}: {e.msg}") from e

        lines = source_text.split("\n")
        imports = self._collect_python_imports(tree, lines)
        chunks: List[CandidateChunk] = []

        def visit(parent: ast.AST, in_class: bool, public_scope: bool) -> None:
            for node in ast.iter_child_nodes(parent):
                if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    subtype = ChunkSubtype.METHOD if in_class else ChunkSubtype.FUNCTION
                    exported = public_scope and not node.name.startswith("_")
                    chunks.append(self._make_python_chunk(node, subtype, file_path, lines, imports, exported))
                    visit(node, False, False)
                elif isinstance(node, ast.ClassDef):
                    exported = public_scope and not node.name.startswith("_")
                    chunks.append(self._make_python_chunk(node, ChunkSubtype.CLASS, file_path, lines, imports, exported))
                    visit(node, True, exported)
                else:
                    visit(node, False, False)

        visit(tree, False, True)
        return chunks

    def _make_python_chunk(
        self,
        node,
        subtype: ChunkSubtype,
        file_path: str,
        lines: List[str],
        imports: Dict[str, str],
        exported: bool,
    ) -> CandidateChunk:
        start_line = node.lineno
        end_line = node.end_lineno or start_line

        # Include decorators
        if node.decorator_list:
            start_line = min(start_line, min(d.lineno for d in node.decorator_list))

        # Include the comment block directly above
        while start_line > 1 and lines[start_line - 2].strip().startswith("#"):
            start_line -= 1

        used = {n.id for n in ast.walk(node) if isinstance(n, ast.Name)}
        includes: List[str] = []
        for binding, statement in imports.items():
            if binding in used and statement not in includes:
                includes.append(statement)

        return CandidateChunk(
            name=node.name,
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            source_text="\n".join(lines[start_line - 1:end_line]),
            subtype=subtype,
            language="python",
            is_exported=exported,
            is_async=isinstance(node, ast.AsyncFunctionDef),
            includes=tuple(includes),
        )

    def _collect_python_imports(self, tree: ast.Module, lines: List[str]) -> Dict[str, str]:
        bindings: Dict[str, str] = {}
        for node in tree.body:
            if not isinstance(node, (ast.Import, ast.ImportFrom)):
                continue
            statement = "\n".join(lines[node.lineno - 1:(node.end_lineno or node.lineno)]).strip()
            for alias in node.names:
                local = alias.asname or alias.name.split(".")[0]
                if local != "*":
                    bindings[local] = statement
        return bindings


def assign_chunk_ids(candidates: List[CandidateChunk]) -> List[Tuple[str, CandidateChunk]]:
    """Give each chunk the id ``{file_path}:{name}:{ordinal}``.

    The ordinal counts earlier chunks of the same name in the file, so ids
    survive edits that only move code up or down.
    """
    seen: Dict[str, int] = {}
    result = []
    for chunk in candidates:
        ordinal = seen.get(chunk.name, 0)
        seen[chunk.name] = ordinal + 1
        result.append((f"{chunk.file_path}:{chunk.name}:{ordinal}", chunk))
    return result
