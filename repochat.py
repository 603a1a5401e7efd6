#!/usr/bin/env python3
"""repochat - chat with a local git repository v1.0.0.

Keeps a ChromaDB index in sync with a git repository and answers questions
about the code with retrieval-augmented chat.

  python repochat.py                             # Pick a repo, index it, start chatting
  python repochat.py chat --repo ~/src/project   # Same, without the path prompt
  python repochat.py update --repo ~/src/project # Reindex uncommitted edits now
  python repochat.py status --repo ~/src/project # Tracked revision, drift, chunk count
  python repochat.py search "auth flow" --repo . # Nearest chunks with scores

Key Features:
• Incremental Reindexing: only files changed since the last indexed commit are re-embedded
• Working-Tree Updates: type "update" in the chat to pick up uncommitted edits
• Syntax-Aware Chunking: splits code at function/class boundaries, markdown at headings
• Repository Isolation: several repositories can share one index without mixing answers
• Bounded History: the chat keeps the last few question/answer turns as context
• Config Support: optional repochat_config.yaml for customization
"""

# Standard library imports
import argparse
import hashlib
import json
import os
import re
import subprocess
import sys
import threading
import time
from collections import deque
from pathlib import Path
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

# Third-party imports
import chromadb
import numpy as np
import pathspec
import yaml
from openai import OpenAI
from sentence_transformers import SentenceTransformer

# Version information
__version__ = "1.0.0"

# Constants
BINARY_SNIFF_CHARS = 8192  # Characters inspected when looking for binary content
BINARY_CONTROL_RATIO = 0.10  # Share of control characters that marks content as binary
MAX_FILE_SIZE_MB = 5
DEFAULT_CHUNK_SIZE = 5000
DEFAULT_CHUNK_OVERLAP = 2000
DEFAULT_BATCH_SIZE = 1000
DELETE_BATCH_SIZE = 500
DEFAULT_RESULTS = 4
DEFAULT_HISTORY_WINDOW = 5
DEFAULT_INTERVAL_SECONDS = 10
DEFAULT_GIT_TIMEOUT = 60
DEFAULT_COLLECTION = "repo_chunks"
CONFIG_FILENAME = "repochat_config.yaml"
LOCAL_INDEX_FILENAME = "index.json"
LOCAL_INDEX_SCHEMA_VERSION = 1
DEFAULT_REPO_ENV = "DEFAULT_REPO_PATH"
UPDATE_COMMAND = "update"
EXIT_COMMAND = "exit"

# Model defaults
DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_CHAT_MODEL = "gpt-4"

# Change detection modes
MODE_COMMITTED = "committed"
MODE_WORKING_TREE = "working-tree"

# Reindex cycle states
STATE_CLEAN = "clean"
STATE_DETECTING = "detecting"
STATE_DIRTY = "dirty"
STATE_PURGING = "purging"
STATE_EMBEDDING = "embedding"
STATE_COMMITTED = "committed"

# Exclusion rules, gitignore syntax, matched against repo-relative paths
DEFAULT_EXCLUDE_PATTERNS = [
    ".git/",
    "node_modules/",
    "bower_components/",
    "vendor/",
    ".venv/",
    "venv/",
    "__pycache__/",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "poetry.lock",
    "Cargo.lock",
    "composer.lock",
    ".env",
    ".env.*",
    "dist/",
    "build/",
    "out/",
    ".next/",
    "target/",
    "coverage/",
    "vectordb/",
    "metadatas/",
]

IGNORED_EXTENSIONS = [
    "tsbuildinfo", "webmanifest", "riv", "svg", "png", "jpg", "jpeg", "gif",
    "bmp", "ico", "webp", "pdf", "zip", "gz", "tgz", "tar", "7z", "rar",
    "jar", "war", "class", "exe", "dll", "so", "dylib", "o", "a", "bin",
    "pyc", "woff", "woff2", "ttf", "otf", "eot", "mp3", "mp4", "mov", "avi",
    "wav", "webm", "sqlite", "db", "min.js", "map",
]

# Extension to splitter language
EXTENSION_LANGUAGES = {
    ".js": "js", ".jsx": "js", ".ts": "js", ".tsx": "js", ".mjs": "js", ".cjs": "js",
    ".py": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java", ".kt": "java", ".scala": "java",
    ".rb": "ruby",
    ".php": "php",
    ".c": "cpp", ".h": "cpp", ".cc": "cpp", ".cpp": "cpp", ".hpp": "cpp", ".cs": "cpp",
    ".md": "markdown", ".markdown": "markdown", ".mdx": "markdown",
}

# Split points per language, tried in order (regular expressions)
LANGUAGE_SEPARATORS: Dict[str, List[str]] = {
    "js": [
        r"\nfunction ", r"\nconst ", r"\nlet ", r"\nvar ", r"\nclass ",
        r"\nexport ", r"\nif ", r"\nfor ", r"\nwhile ", r"\nswitch ",
        r"\ncase ", r"\ndefault ", r"\n\n", r"\n", r" ", "",
    ],
    "python": [
        r"\nclass ", r"\ndef ", r"\n\tdef ", r"\n    def ", r"\n\n", r"\n", r" ", "",
    ],
    "go": [
        r"\nfunc ", r"\nvar ", r"\nconst ", r"\ntype ", r"\nif ", r"\nfor ",
        r"\nswitch ", r"\ncase ", r"\n\n", r"\n", r" ", "",
    ],
    "rust": [
        r"\nfn ", r"\npub fn ", r"\nimpl ", r"\nstruct ", r"\nenum ", r"\nconst ",
        r"\nlet ", r"\nif ", r"\nwhile ", r"\nfor ", r"\nloop ", r"\nmatch ",
        r"\n\n", r"\n", r" ", "",
    ],
    "java": [
        r"\nclass ", r"\npublic ", r"\nprotected ", r"\nprivate ", r"\nstatic ",
        r"\nif ", r"\nfor ", r"\nwhile ", r"\nswitch ", r"\ncase ",
        r"\n\n", r"\n", r" ", "",
    ],
    "ruby": [
        r"\ndef ", r"\nclass ", r"\nmodule ", r"\nif ", r"\nunless ", r"\nwhile ",
        r"\nfor ", r"\ndo ", r"\nbegin ", r"\nrescue ", r"\n\n", r"\n", r" ", "",
    ],
    "php": [
        r"\nfunction ", r"\nclass ", r"\nif ", r"\nforeach ", r"\nwhile ",
        r"\ndo ", r"\nswitch ", r"\ncase ", r"\n\n", r"\n", r" ", "",
    ],
    "cpp": [
        r"\nclass ", r"\nstruct ", r"\nnamespace ", r"\nvoid ", r"\nint ",
        r"\nfloat ", r"\ndouble ", r"\nif ", r"\nfor ", r"\nwhile ",
        r"\nswitch ", r"\ncase ", r"\n\n", r"\n", r" ", "",
    ],
    "markdown": [
        r"\n#{1,6} ", r"```\n", r"\n\*\*\*+\n", r"\n---+\n", r"\n___+\n",
        r"\n\n", r"\n", r" ", "",
    ],
    "generic": [r"\n\n", r"\n", r" ", ""],
}

SYSTEM_PROMPT = """You are a coding assistant helping a programmer with the repository at {repo_path}.
You have read this codebase and understand it in detail.
Follow the programmer's requirements carefully and to the letter.
Base every answer on the repository context you are given and on the conversation so far.
Use the tools, libraries and design patterns that the codebase already uses.
Mention the files that need to change, or the new files that need to be created.
If the context does not contain the answer, say "I don't know"."""

RECORD_REQUIRED_FIELDS = ("file_path", "repo_path", "commit_hash")


class RepoChatError(Exception):
    """Base error for repochat failures."""


class ChangeDetectionError(RepoChatError):
    """Raised when git cannot report the repository revision or its changes."""


class IndexStoreError(RepoChatError):
    """Raised when the index store fails to read or write chunks."""


def log_error(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized error logging with consistent formatting."""
    if quiet:
        return

    if error:
        print(f"ERROR: {message}: {error}")
    else:
        print(f"ERROR: {message}")


def log_warning(message: str, error: Optional[Exception] = None, *, quiet: bool = False) -> None:
    """Centralized warning logging with consistent formatting."""
    if quiet:
        return

    if error:
        print(f"Warning: {message}: {error}")
    else:
        print(f"Warning: {message}")


def handle_file_error(relative_path: str, operation: str, error: Exception, *, quiet: bool = False) -> None:
    """Standardized file operation error handling."""
    if isinstance(error, (FileNotFoundError, PermissionError)):
        log_warning(f"Cannot {operation} {relative_path} - {type(error).__name__}", quiet=quiet)
    else:
        log_warning(f"Cannot {operation} {relative_path}", error, quiet=quiet)


def _default_config() -> Dict[str, Any]:
    """Return the built-in configuration."""
    return {
        "index": {
            "backend": "chroma",
            "collection_name": DEFAULT_COLLECTION,
            "chunk_size": DEFAULT_CHUNK_SIZE,
            "chunk_overlap": DEFAULT_CHUNK_OVERLAP,
            "batch_size": DEFAULT_BATCH_SIZE,
        },
        "scanner": {
            "exclude_patterns": list(DEFAULT_EXCLUDE_PATTERNS),
            "ignored_extensions": list(IGNORED_EXTENSIONS),
            "max_file_size_mb": MAX_FILE_SIZE_MB,
            "use_gitignore": True,
        },
        "models": {
            "embedding": DEFAULT_MODEL,
            "chat": DEFAULT_CHAT_MODEL,
            "temperature": 0,
        },
        "chat": {
            "history_window": DEFAULT_HISTORY_WINDOW,
            "context_results": DEFAULT_RESULTS,
            "update_command": UPDATE_COMMAND,
            "exit_command": EXIT_COMMAND,
        },
        "reindex": {
            "interval_seconds": DEFAULT_INTERVAL_SECONDS,
        },
        "paths": {
            "db_dir": "./vectordb",
            "metadata_dir": "./metadatas",
        },
    }


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load optional configuration file merged over the defaults."""
    config = _default_config()

    config_file = Path(config_path or CONFIG_FILENAME)
    if not config_file.exists():
        if config_path:
            log_warning(f"Config file {config_file} not found, using defaults")
        return config

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            user_config = yaml.safe_load(f)
    except yaml.YAMLError as yaml_error:
        log_warning(f"Invalid YAML format in {config_file}", yaml_error)
        return config
    except OSError as e:
        log_warning(f"Could not access config file {config_file}", e)
        return config

    if user_config is None:
        return config
    if not isinstance(user_config, dict):
        log_warning(f"Ignoring {config_file}: top level must be a mapping")
        return config

    _merge_configs(config, user_config)
    return config


def _merge_configs(default: Dict[str, Any], user: Dict[str, Any]) -> None:
    """Recursively merge user config into default config."""
    for key, value in user.items():
        if (
            key in default
            and isinstance(default[key], dict)
            and isinstance(value, dict)
        ):
            _merge_configs(default[key], value)
        else:
            default[key] = value


def normalize_cosine_distance(distance: float) -> float:
    """Convert cosine distance to similarity (0-1, higher is better)."""
    # Cosine distance runs from 0 (identical) to 2 (opposite)
    return max(0.0, min(1.0, 1.0 - (distance / 2.0)))


def interpret_score(score: float) -> str:
    """Provide human-readable score interpretation."""
    if score >= 0.8:
        return "Excellent"
    elif score >= 0.6:
        return "Good"
    elif score >= 0.4:
        return "Fair"
    else:
        return "Poor"


def is_binary_text(text: str) -> bool:
    """Heuristic: too many control characters means the content is not source text."""
    sample = text[:BINARY_SNIFF_CHARS]
    if not sample:
        return False
    control = sum(1 for ch in sample if ord(ch) < 32 and ch not in "\t\n\r\f\v")
    return control / len(sample) > BINARY_CONTROL_RATIO


def sanitize_content(raw: bytes) -> Optional[str]:
    """Decode file bytes and strip null characters.

    Returns None when nothing indexable is left: the content is empty or
    whitespace after sanitization, or it still looks like binary data.
    """
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        # Fallback to latin-1 for older files
        text = raw.decode("latin-1")

    text = text.replace("\x00", "")
    if not text.strip():
        return None
    if is_binary_text(text):
        return None
    return text


def sanitize_question(question: str) -> str:
    """Trim a question and collapse embedded newlines into single spaces."""
    return re.sub(r"\s*[\r\n]+\s*", " ", question.strip())


def chunk_id(repo_path: str, file_path: str, commit_hash: str, index: int) -> str:
    """Deterministic identifier for one chunk of one file at one revision."""
    digest = hashlib.sha256(f"{repo_path}|{file_path}|{commit_hash}".encode("utf-8"))
    return f"{digest.hexdigest()[:24]}_{index}"


def _unique_paths(lines: Iterable[str]) -> List[str]:
    """Trim path lines, drop blanks and duplicates, keep first-seen order."""
    seen: Set[str] = set()
    paths = []
    for line in lines:
        path = line.strip()
        if path and path not in seen:
            seen.add(path)
            paths.append(path)
    return paths


class CorpusScanner:
    """Enumerates the files of a repository that are eligible for indexing."""

    def __init__(
        self,
        repo_path: Path,
        exclude_patterns: Sequence[str] = DEFAULT_EXCLUDE_PATTERNS,
        ignored_extensions: Sequence[str] = IGNORED_EXTENSIONS,
        max_file_size_mb: float = MAX_FILE_SIZE_MB,
        use_gitignore: bool = True,
        quiet: bool = False,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.max_file_size = int(max_file_size_mb * 1024 * 1024)
        self.quiet = quiet

        patterns = list(exclude_patterns)
        patterns.extend(f"*.{ext.lstrip('.')}" for ext in ignored_extensions)
        if use_gitignore:
            patterns.extend(self._read_gitignore())
        self.exclude_patterns = patterns
        self._spec = pathspec.GitIgnoreSpec.from_lines(patterns)

    def _read_gitignore(self) -> List[str]:
        """Read the repository's own .gitignore lines, if any."""
        gitignore = self.repo_path / ".gitignore"
        if not gitignore.is_file():
            return []
        try:
            return gitignore.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as error:
            log_warning("Could not read .gitignore", error, quiet=self.quiet)
            return []

    def is_excluded(self, relative_path: str) -> bool:
        """Check a repo-relative POSIX path against the exclusion rules."""
        if ".git" in relative_path.split("/"):
            return True
        return self._spec.match_file(relative_path)

    def is_indexable(self, relative_path: str) -> bool:
        """A path is indexable when it is a regular, not excluded, not oversized file."""
        if self.is_excluded(relative_path):
            return False
        file_path = self.repo_path / relative_path
        try:
            if not file_path.is_file():
                return False
            return file_path.stat().st_size <= self.max_file_size
        except OSError:
            return False

    def scan(self, subset: Optional[Iterable[str]] = None) -> List[str]:
        """Return sorted relative paths of indexable files.

        With ``subset`` only those paths are considered; any of them that is
        excluded or no longer exists is dropped without complaint.
        """
        if subset is not None:
            candidates = {Path(p).as_posix() for p in subset}
            return sorted(p for p in candidates if self.is_indexable(p))

        files = []
        for root, dirs, filenames in os.walk(self.repo_path):
            rel_root = Path(root).relative_to(self.repo_path).as_posix()
            prefix = "" if rel_root == "." else f"{rel_root}/"

            # Prune excluded directories in place
            dirs[:] = sorted(
                d for d in dirs
                if d != ".git" and not self._spec.match_file(f"{prefix}{d}/")
            )

            for filename in filenames:
                relative_path = f"{prefix}{filename}"
                if self.is_indexable(relative_path):
                    files.append(relative_path)

        return sorted(files)

    def read_document(self, relative_path: str) -> Optional[str]:
        """Read and sanitize one file; None when it cannot be indexed."""
        try:
            raw = (self.repo_path / relative_path).read_bytes()
        except OSError as error:
            handle_file_error(relative_path, "read", error, quiet=self.quiet)
            return None

        text = sanitize_content(raw)
        if text is None:
            log_warning(f"Skipping {relative_path}: empty or binary after sanitization", quiet=self.quiet)
        return text


class GitRepository:
    """Thin wrapper over the git CLI for one working copy."""

    def __init__(self, repo_path: Path, timeout: int = DEFAULT_GIT_TIMEOUT) -> None:
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    @staticmethod
    def is_repository(path: str) -> bool:
        """True when ``path`` holds git metadata."""
        return bool(path) and (Path(path).expanduser() / ".git").exists()

    def _run(self, *args: str) -> str:
        command = ["git", "-c", "core.quotepath=off", "--no-pager", *args]
        try:
            result = subprocess.run(
                command,
                cwd=str(self.repo_path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as error:
            raise ChangeDetectionError(f"git command timed out: git {' '.join(args)}") from error
        except subprocess.CalledProcessError as error:
            stderr = (error.stderr or "").strip()
            raise ChangeDetectionError(f"git {' '.join(args)} failed in {self.repo_path}: {stderr}") from error
        except OSError as error:
            raise ChangeDetectionError(f"Could not run git in {self.repo_path}: {error}") from error
        return result.stdout

    def current_revision(self) -> str:
        """Commit hash of HEAD."""
        revision = self._run("rev-parse", "HEAD").strip()
        if not revision:
            raise ChangeDetectionError(f"git rev-parse returned no revision for {self.repo_path}")
        return revision

    def changed_paths_since(self, revision: str) -> List[str]:
        """Paths whose content differs between ``revision`` and HEAD."""
        output = self._run("diff", "--name-only", "--no-renames", revision, "HEAD")
        return _unique_paths(output.splitlines())

    def working_tree_changed_paths(self) -> List[str]:
        """Paths with uncommitted modifications, additions, deletions or untracked status."""
        output = self._run("status", "--porcelain", "--no-renames", "--untracked-files=all")
        paths = []
        for line in output.splitlines():
            tokens = line.split()
            if len(tokens) < 2:
                continue
            # Renames read "R  old -> new"; both sides changed
            if "->" in tokens:
                arrow = tokens.index("->")
                paths.append(tokens[arrow - 1].strip('"'))
            paths.append(tokens[-1].strip('"'))
        return _unique_paths(paths)


class ChangeDetector:
    """Compares a repository against the revision its index reflects."""

    def __init__(self, vcs: Any) -> None:
        self.vcs = vcs

    def detect(self, metadata: Dict[str, Any], mode: str = MODE_COMMITTED) -> Dict[str, Any]:
        """Return the drift state and changed relative paths for ``metadata``."""
        if mode not in (MODE_COMMITTED, MODE_WORKING_TREE):
            raise ValueError(f"Unknown change detection mode: {mode}")

        previous = metadata["last_known_commit_hash"]
        current = self.vcs.current_revision()
        is_dirty = current != previous

        paths: List[str] = []
        if is_dirty:
            paths.extend(self.vcs.changed_paths_since(previous))
        if mode == MODE_WORKING_TREE:
            paths.extend(self.vcs.working_tree_changed_paths())

        return {
            "mode": mode,
            "previous_revision": previous,
            "current_revision": current,
            "is_dirty": is_dirty,
            "paths": _unique_paths(paths),
        }


class Chunker:
    """Splits file content into overlapping chunks at language-aware boundaries."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be between 0 and chunk_size ({chunk_size})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    @staticmethod
    def language_for(file_path: str) -> str:
        """Map a file name to the splitter language."""
        return EXTENSION_LANGUAGES.get(Path(file_path).suffix.lower(), "generic")

    def split(self, text: str, file_path: str) -> List[Dict[str, Any]]:
        """Split text into chunks with metadata."""
        if not text or not text.strip():
            return []

        language = self.language_for(file_path)
        if language == "markdown":
            chunk_type = "markdown"
        elif language == "generic":
            chunk_type = "recursive"
        else:
            chunk_type = "syntax"

        pieces = self._split_recursive(text, LANGUAGE_SEPARATORS[language])
        return [
            {"text": piece, "metadata": {"language": language, "chunk_type": chunk_type}}
            for piece in pieces
        ]

    def _split_recursive(self, text: str, separators: List[str]) -> List[str]:
        # First separator that occurs in the text wins; the rest are fallbacks
        separator = separators[-1]
        fallbacks: List[str] = []
        for index, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if re.search(candidate, text):
                separator = candidate
                fallbacks = separators[index + 1:]
                break

        chunks: List[str] = []
        pending: List[str] = []
        for piece in self._split_keeping_separator(text, separator):
            if len(piece) < self.chunk_size:
                pending.append(piece)
                continue

            if pending:
                chunks.extend(self._merge_pieces(pending))
                pending = []
            if fallbacks:
                chunks.extend(self._split_recursive(piece, fallbacks))
            elif piece.strip():
                chunks.append(piece.strip())

        if pending:
            chunks.extend(self._merge_pieces(pending))
        return chunks

    @staticmethod
    def _split_keeping_separator(text: str, separator: str) -> List[str]:
        """Split on a regex, attaching each separator to the piece it starts."""
        if not separator:
            return list(text)
        parts = re.split(f"({separator})", text)
        pieces = [parts[0]] + [parts[i] + parts[i + 1] for i in range(1, len(parts), 2)]
        return [piece for piece in pieces if piece]

    def _merge_pieces(self, pieces: List[str]) -> List[str]:
        """Pack small pieces into chunks, carrying a tail of each chunk into the next."""
        chunks: List[str] = []
        window: Deque[str] = deque()
        window_len = 0

        for piece in pieces:
            piece_len = len(piece)
            if window and window_len + piece_len > self.chunk_size:
                self._emit(chunks, window)
                while window and (
                    window_len > self.chunk_overlap
                    or window_len + piece_len > self.chunk_size
                ):
                    window_len -= len(window.popleft())
            window.append(piece)
            window_len += piece_len

        self._emit(chunks, window)
        return chunks

    @staticmethod
    def _emit(chunks: List[str], window: Iterable[str]) -> None:
        text = "".join(window).strip()
        if text:
            chunks.append(text)


class MetadataStore:
    """Reads and writes the per-repository tracking record."""

    def __init__(self, metadata_dir: Path, quiet: bool = False) -> None:
        self.metadata_dir = Path(metadata_dir)
        self.quiet = quiet

    def path_for(self, repo_path: str) -> Path:
        """Filesystem-safe metadata file for a repository path."""
        key = re.sub(r"[\\/:]", "_", str(repo_path))
        return self.metadata_dir / f"{key}.json"

    def load(self, repo_path: str) -> Optional[Dict[str, Any]]:
        """Load the record for ``repo_path`` or None when there is no usable one."""
        metadata_path = self.path_for(repo_path)
        if not metadata_path.exists():
            return None

        try:
            with open(metadata_path, "r", encoding="utf-8") as metadata_file:
                data = json.load(metadata_file)
        except (json.JSONDecodeError, OSError) as err:
            log_warning(
                f"Could not read metadata at {metadata_path.name}; reindexing from scratch",
                err,
                quiet=self.quiet,
            )
            return None

        if not isinstance(data, dict) or not data.get("last_known_commit_hash"):
            log_warning(f"Metadata at {metadata_path.name} is incomplete; reindexing from scratch", quiet=self.quiet)
            return None

        data["repo_path"] = str(repo_path)
        return data

    def save(self, metadata: Dict[str, Any]) -> None:
        """Persist the record, replacing the previous file in one step."""
        metadata_path = self.path_for(metadata["repo_path"])
        metadata_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = metadata_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as metadata_file:
            json.dump(metadata, metadata_file, indent=2, sort_keys=True)
        os.replace(tmp_path, metadata_path)

    def load_or_create(self, repo_path: str, vcs: Any) -> Tuple[Dict[str, Any], bool]:
        """Return ``(metadata, is_new)``.

        New records are seeded with the current revision but not written;
        the first successful full index persists them.
        """
        metadata = self.load(repo_path)
        if metadata is not None:
            if not self.quiet:
                print(f"Found existing metadata for {repo_path}")
            return metadata, False

        if not self.quiet:
            print(f"No existing metadata found for {repo_path}. Creating new...")
        metadata = {
            "repo_path": str(repo_path),
            "last_known_commit_hash": vcs.current_revision(),
        }
        return metadata, True


class Embedder:
    """Turns texts into vectors."""

    def embed(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


class SentenceTransformerEmbedder(Embedder):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = DEFAULT_MODEL, quiet: bool = False) -> None:
        self.model_name = model_name
        self.quiet = quiet
        self._model = None
        self._lock = threading.Lock()

    @property
    def model(self):
        """Lazy-load embedding model."""
        with self._lock:
            if self._model is None:
                if not self.quiet:
                    print(f"Loading embedding model ({self.model_name})...")
                self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        vectors = self.model.encode(
            list(texts),
            show_progress_bar=not self.quiet and len(texts) > 1,
            normalize_embeddings=True,
        )
        return vectors.tolist()


class ChatModel:
    """Streams a completion for a list of chat messages."""

    def complete(
        self,
        messages: List[Dict[str, str]],
        on_token: Optional[Callable[[str], None]] = None,
    ) -> str:
        raise NotImplementedError


class OpenAIChatModel(ChatModel):
    """OpenAI chat completions with token streaming."""

    def __init__(
        self,
        model: str = DEFAULT_CHAT_MODEL,
        temperature: float = 0,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self._client = client

    @property
    def client(self):
        """Lazy-create the API client (reads OPENAI_API_KEY)."""
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def complete(
        self,
        messages: List[Dict[str, str]],
        on_token: Optional[Callable[[str], None]] = None,
    ) -> str:
        stream = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            stream=True,
        )
        parts = []
        for event in stream:
            if not event.choices:
                continue
            token = event.choices[0].delta.content
            if token:
                parts.append(token)
                if on_token is not None:
                    on_token(token)
        return "".join(parts)


def validate_record(record: Dict[str, Any]) -> Optional[str]:
    """Return why a chunk record cannot be stored, or None when it is valid."""
    if not isinstance(record.get("id"), str) or not record["id"]:
        return "missing id"

    text = record.get("text")
    if not isinstance(text, str):
        return "content is not text"
    if "\x00" in text:
        return "content contains null bytes"
    if not text.strip():
        return "content is empty"
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return "content is not valid UTF-8"

    metadata = record.get("metadata")
    if not isinstance(metadata, dict):
        return "metadata is missing"
    for field in RECORD_REQUIRED_FIELDS:
        value = metadata.get(field)
        if not isinstance(value, str) or not value:
            return f"metadata field '{field}' is missing"
    for key, value in metadata.items():
        if isinstance(value, str) and "\x00" in value:
            return f"metadata field '{key}' contains null bytes"

    embedding = record.get("embedding")
    if embedding is None or len(embedding) == 0:
        return "embedding is missing"
    return None


def _clean_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Remove None values, which the vector store cannot hold."""
    return {k: v for k, v in metadata.items() if v is not None}


class IndexStore:
    """Storage capability used by the pipeline.

    Engines implement ``_write`` (all-or-nothing), ``delete_matching``,
    ``nearest_neighbors`` and ``count``.
    """

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE, quiet: bool = False) -> None:
        self.batch_size = max(1, batch_size)
        self.quiet = quiet

    def insert(self, chunk: Dict[str, Any]) -> int:
        """Insert one chunk record."""
        return self.insert_many([chunk])

    def insert_many(self, chunks: Sequence[Dict[str, Any]]) -> int:
        """Insert chunk records; invalid ones are logged and skipped.

        Either every valid record of the call becomes visible or none does.
        Returns the number of records written.
        """
        valid = []
        for record in chunks:
            reason = validate_record(record)
            if reason:
                source = (record.get("metadata") or {}).get("source", record.get("id"))
                log_warning(f"Rejected chunk from {source}: {reason}", quiet=self.quiet)
                continue
            valid.append(record)

        if not valid:
            return 0
        self._write(valid)
        return len(valid)

    def delete_matching(self, paths: Iterable[str], commit_hash: str) -> int:
        """Delete chunks of ``paths`` tagged with ``commit_hash``; returns the count."""
        raise NotImplementedError

    def delete_repository(self, repo_path: str) -> int:
        """Delete every chunk of a repository, whatever its revision; returns the count."""
        raise NotImplementedError

    def nearest_neighbors(
        self, query_vector: Sequence[float], k: int, repo_path: str
    ) -> List[Tuple[Dict[str, Any], float]]:
        """Return up to ``k`` (chunk, cosine distance) pairs of one repository, closest first."""
        raise NotImplementedError

    def count(self, repo_path: str) -> int:
        """Number of chunks stored for a repository."""
        raise NotImplementedError

    def _write(self, records: List[Dict[str, Any]]) -> None:
        raise NotImplementedError


class ChromaIndexStore(IndexStore):
    """Handles ChromaDB operations and collection management."""

    def __init__(
        self,
        db_dir: Path,
        collection_name: str = DEFAULT_COLLECTION,
        batch_size: int = DEFAULT_BATCH_SIZE,
        quiet: bool = False,
    ) -> None:
        super().__init__(batch_size=batch_size, quiet=quiet)
        self.db_dir = Path(db_dir)
        self.collection_name = collection_name
        self._client = None
        self._collection = None

    @property
    def client(self):
        """Lazy-load ChromaDB client."""
        if self._client is None:
            self.db_dir.mkdir(parents=True, exist_ok=True)
            self._client = chromadb.PersistentClient(path=str(self.db_dir))
        return self._client

    @property
    def collection(self):
        """Open the collection, creating it on first use."""
        if self._collection is None:
            self._collection = self.client.get_or_create_collection(
                name=self.collection_name,
                embedding_function=None,
                metadata={"hnsw:space": "cosine", "description": "Repository code chunks"},
            )
        return self._collection

    def _write(self, records: List[Dict[str, Any]]) -> None:
        written: List[str] = []
        try:
            for start in range(0, len(records), self.batch_size):
                group = records[start : start + self.batch_size]
                ids = [record["id"] for record in group]
                self.collection.add(
                    ids=ids,
                    embeddings=[[float(v) for v in record["embedding"]] for record in group],
                    documents=[record["text"] for record in group],
                    metadatas=[_clean_metadata(record["metadata"]) for record in group],
                )
                written.extend(ids)
        except Exception as error:
            if written:
                self._rollback(written)
            raise IndexStoreError(f"Failed to write {len(records)} chunks") from error

    def _rollback(self, ids: List[str]) -> None:
        try:
            self._delete_ids(ids)
        except IndexStoreError as error:
            log_error(f"Could not roll back {len(ids)} partially written chunks", error, quiet=self.quiet)

    def _delete_ids(self, ids: List[str]) -> None:
        try:
            for start in range(0, len(ids), DELETE_BATCH_SIZE):
                self.collection.delete(ids=ids[start : start + DELETE_BATCH_SIZE])
        except Exception as error:
            raise IndexStoreError(f"Failed to delete {len(ids)} chunks") from error

    def delete_matching(self, paths: Iterable[str], commit_hash: str) -> int:
        path_list = sorted(set(paths))
        if not path_list or not commit_hash:
            return 0

        ids: List[str] = []
        try:
            for start in range(0, len(path_list), self.batch_size):
                where = {
                    "$and": [
                        {"file_path": {"$in": path_list[start : start + self.batch_size]}},
                        {"commit_hash": commit_hash},
                    ]
                }
                ids.extend(self.collection.get(where=where, include=[])["ids"])
        except Exception as error:
            raise IndexStoreError("Failed to look up chunks for deletion") from error

        if ids:
            self._delete_ids(ids)
        return len(ids)

    def delete_repository(self, repo_path: str) -> int:
        try:
            ids = self.collection.get(where={"repo_path": repo_path}, include=[])["ids"]
        except Exception as error:
            raise IndexStoreError(f"Failed to look up chunks of {repo_path}") from error

        if ids:
            self._delete_ids(ids)
        return len(ids)

    def nearest_neighbors(
        self, query_vector: Sequence[float], k: int, repo_path: str
    ) -> List[Tuple[Dict[str, Any], float]]:
        if k <= 0 or self.collection.count() == 0:
            return []

        results = self.collection.query(
            query_embeddings=[[float(v) for v in query_vector]],
            n_results=k,
            where={"repo_path": repo_path},
            include=["documents", "metadatas", "distances"],
        )

        neighbors = []
        for doc_id, text, metadata, distance in zip(
            results["ids"][0],
            results["documents"][0],
            results["metadatas"][0],
            results["distances"][0],
        ):
            neighbors.append(({"id": doc_id, "text": text, "metadata": dict(metadata)}, float(distance)))
        return neighbors

    def count(self, repo_path: str) -> int:
        return len(self.collection.get(where={"repo_path": repo_path}, include=[])["ids"])


class LocalIndexStore(IndexStore):
    """Brute-force cosine search over records kept in a single JSON file."""

    def __init__(
        self,
        index_path: Path,
        batch_size: int = DEFAULT_BATCH_SIZE,
        quiet: bool = False,
    ) -> None:
        super().__init__(batch_size=batch_size, quiet=quiet)
        self.index_path = Path(index_path)
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        try:
            with open(self.index_path, "r", encoding="utf-8") as index_file:
                data = json.load(index_file)
        except (json.JSONDecodeError, OSError) as error:
            raise IndexStoreError(f"Could not open index at {self.index_path}") from error
        if not isinstance(data, dict) or not isinstance(data.get("records", []), list):
            raise IndexStoreError(f"Index at {self.index_path} is not a valid index file")
        return {record["id"]: record for record in data.get("records", [])}

    def _persist(self, records: Dict[str, Dict[str, Any]]) -> None:
        payload = {
            "schema_version": LOCAL_INDEX_SCHEMA_VERSION,
            "records": list(records.values()),
        }
        tmp_path = self.index_path.with_suffix(".tmp")
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as index_file:
                json.dump(payload, index_file)
            os.replace(tmp_path, self.index_path)
        except OSError as error:
            raise IndexStoreError(f"Could not save index to {self.index_path}") from error

    def _write(self, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            updated = dict(self._records)
            for record in records:
                updated[record["id"]] = {
                    "id": record["id"],
                    "text": record["text"],
                    "metadata": _clean_metadata(record["metadata"]),
                    "embedding": [float(v) for v in record["embedding"]],
                }
            self._persist(updated)
            self._records = updated

    def delete_matching(self, paths: Iterable[str], commit_hash: str) -> int:
        path_set = set(paths)
        if not path_set or not commit_hash:
            return 0

        with self._lock:
            doomed = [
                doc_id
                for doc_id, record in self._records.items()
                if record["metadata"].get("file_path") in path_set
                and record["metadata"].get("commit_hash") == commit_hash
            ]
            if not doomed:
                return 0
            updated = dict(self._records)
            for doc_id in doomed:
                del updated[doc_id]
            self._persist(updated)
            self._records = updated
        return len(doomed)

    def delete_repository(self, repo_path: str) -> int:
        with self._lock:
            kept = {
                doc_id: record
                for doc_id, record in self._records.items()
                if record["metadata"].get("repo_path") != repo_path
            }
            deleted = len(self._records) - len(kept)
            if deleted:
                self._persist(kept)
                self._records = kept
        return deleted

    def nearest_neighbors(
        self, query_vector: Sequence[float], k: int, repo_path: str
    ) -> List[Tuple[Dict[str, Any], float]]:
        if k <= 0:
            return []

        with self._lock:
            candidates = [
                record for record in self._records.values()
                if record["metadata"].get("repo_path") == repo_path
            ]
        if not candidates:
            return []

        matrix = np.array([record["embedding"] for record in candidates], dtype=float)
        query = np.array(query_vector, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarity = np.where(norms > 0, matrix @ query / norms, 0.0)
        distances = 1.0 - similarity
        order = np.argsort(distances, kind="stable")[:k]

        return [
            (
                {
                    "id": candidates[i]["id"],
                    "text": candidates[i]["text"],
                    "metadata": dict(candidates[i]["metadata"]),
                },
                float(distances[i]),
            )
            for i in order
        ]

    def count(self, repo_path: str) -> int:
        with self._lock:
            return sum(
                1 for record in self._records.values()
                if record["metadata"].get("repo_path") == repo_path
            )


def create_index_store(config: Dict[str, Any], db_dir: Path, quiet: bool = False) -> IndexStore:
    """Build the configured storage engine."""
    index_config = config["index"]
    backend = index_config.get("backend", "chroma")
    batch_size = index_config.get("batch_size", DEFAULT_BATCH_SIZE)

    if backend == "chroma":
        return ChromaIndexStore(
            db_dir,
            collection_name=index_config.get("collection_name", DEFAULT_COLLECTION),
            batch_size=batch_size,
            quiet=quiet,
        )
    if backend == "local":
        return LocalIndexStore(Path(db_dir) / LOCAL_INDEX_FILENAME, batch_size=batch_size, quiet=quiet)
    raise ValueError(f"Unknown index backend: {backend}")


class Reindexer:
    """Keeps the index of one repository in step with its revisions."""

    def __init__(
        self,
        metadata: Dict[str, Any],
        metadata_store: MetadataStore,
        vcs: Any,
        scanner: CorpusScanner,
        chunker: Chunker,
        embedder: Embedder,
        store: IndexStore,
        quiet: bool = False,
    ) -> None:
        self.metadata = metadata
        self.metadata_store = metadata_store
        self.vcs = vcs
        self.detector = ChangeDetector(vcs)
        self.scanner = scanner
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.quiet = quiet
        self.state = STATE_CLEAN
        self._lock = threading.Lock()

    @property
    def repo_path(self) -> str:
        return self.metadata["repo_path"]

    def _absolute(self, relative_path: str) -> str:
        return str(Path(self.repo_path) / relative_path)

    def _print(self, message: str) -> None:
        if not self.quiet:
            print(message)

    def run_cycle(self, force: bool = False) -> Dict[str, Any]:
        """Run one detect/purge/embed/commit cycle.

        ``force`` switches to working-tree mode so uncommitted edits are
        picked up. Any failure leaves the tracked revision untouched.
        """
        mode = MODE_WORKING_TREE if force else MODE_COMMITTED
        with self._lock:
            try:
                return self._run_cycle(mode)
            finally:
                self.state = STATE_CLEAN

    def _run_cycle(self, mode: str) -> Dict[str, Any]:
        self.state = STATE_DETECTING
        change = self.detector.detect(self.metadata, mode)
        previous = change["previous_revision"]
        current = change["current_revision"]

        summary: Dict[str, Any] = {
            "mode": mode,
            "revision": current,
            "changed": [],
            "deleted": 0,
            "inserted": 0,
            "skipped": [],
            "noop": False,
        }
        if not change["is_dirty"] and not change["paths"]:
            summary["noop"] = True
            return summary

        self.state = STATE_DIRTY
        relative_paths = change["paths"]
        absolute_paths = [self._absolute(p) for p in relative_paths]
        summary["changed"] = relative_paths
        self._print(f"Repo {self.repo_path} is dirty. Found {len(relative_paths)} changed files")

        self.state = STATE_PURGING
        summary["deleted"] = self._purge(absolute_paths, [previous, current])

        self.state = STATE_EMBEDDING
        indexable = self.scanner.scan(subset=relative_paths)
        summary["inserted"], summary["skipped"] = self._embed(indexable, current)

        self.state = STATE_COMMITTED
        self._commit(current)
        return summary

    def build_full(self) -> Dict[str, Any]:
        """Replace everything stored for the repository with the current revision, then persist the metadata."""
        with self._lock:
            try:
                self.state = STATE_DETECTING
                revision = self.vcs.current_revision()

                self.state = STATE_DIRTY
                relative_paths = self.scanner.scan()
                self._print(f"Loading {len(relative_paths)} files from {self.repo_path}...")

                self.state = STATE_PURGING
                deleted = self.store.delete_repository(self.repo_path)
                self._print(f"Deleted {deleted} old chunks")

                self.state = STATE_EMBEDDING
                inserted, skipped = self._embed(relative_paths, revision)

                self.state = STATE_COMMITTED
                self._commit(revision)
            finally:
                self.state = STATE_CLEAN

        return {
            "mode": "full",
            "revision": revision,
            "changed": relative_paths,
            "deleted": deleted,
            "inserted": inserted,
            "skipped": skipped,
            "noop": False,
        }

    def _purge(self, absolute_paths: List[str], revisions: List[str]) -> int:
        # Chunks tagged with the current revision may remain from an interrupted cycle
        deleted = 0
        for revision in dict.fromkeys(revisions):
            deleted += self.store.delete_matching(absolute_paths, revision)
        self._print(f"Deleted {deleted} old chunks")
        return deleted

    def _embed(self, relative_paths: List[str], revision: str) -> Tuple[int, List[str]]:
        records: List[Dict[str, Any]] = []
        skipped: List[str] = []

        for index, relative_path in enumerate(relative_paths, 1):
            if not self.quiet:
                print(f"[{index}/{len(relative_paths)}] chunking {relative_path}")
            text = self.scanner.read_document(relative_path)
            if text is None:
                skipped.append(relative_path)
                continue
            records.extend(self._build_records(relative_path, text, revision))

        if not records:
            return 0, skipped

        start_time = time.time()
        self._print(f"Generating embeddings for {len(records)} chunks...")
        vectors = self.embedder.embed([record["text"] for record in records])
        if len(vectors) != len(records):
            raise RepoChatError(
                f"Embedder returned {len(vectors)} vectors for {len(records)} chunks"
            )
        for record, vector in zip(records, vectors):
            record["embedding"] = list(vector)

        inserted = self.store.insert_many(records)
        self._print(f"Indexed {inserted} chunks in {time.time() - start_time:.1f} seconds")
        return inserted, skipped

    def _build_records(self, relative_path: str, text: str, revision: str) -> List[Dict[str, Any]]:
        file_path = self._absolute(relative_path)
        pieces = self.chunker.split(text, relative_path)
        records = []
        for index, piece in enumerate(pieces):
            metadata = {
                "file_path": file_path,
                "source": relative_path,
                "repo_path": self.repo_path,
                "commit_hash": revision,
                "chunk_index": index,
                "total_chunks": len(pieces),
            }
            metadata.update(piece["metadata"])
            records.append(
                {
                    "id": chunk_id(self.repo_path, file_path, revision, index),
                    "text": piece["text"],
                    "metadata": metadata,
                }
            )
        return records

    def _commit(self, revision: str) -> None:
        updated = dict(self.metadata, last_known_commit_hash=revision)
        self.metadata_store.save(updated)
        self.metadata = updated


class ReindexScheduler(threading.Thread):
    """Runs the committed-diff cycle on a fixed interval in the background."""

    def __init__(self, reindexer: Reindexer, interval: float = DEFAULT_INTERVAL_SECONDS, quiet: bool = False) -> None:
        super().__init__(name="repochat-reindex", daemon=True)
        self.reindexer = reindexer
        self.interval = interval
        self.quiet = quiet
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                summary = self.reindexer.run_cycle()
            except Exception as error:
                log_error("Background reindex failed; retrying on the next tick", error, quiet=self.quiet)
                continue
            if not summary["noop"] and not self.quiet:
                print(describe_summary(summary))

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)


def describe_summary(summary: Dict[str, Any]) -> str:
    """One-line report of a reindex cycle."""
    if summary.get("noop"):
        return "No changes detected; index is already up-to-date."
    text = (
        f"Reindexed {len(summary['changed'])} files at {summary['revision'][:12]} | "
        f"deleted {summary['deleted']} old chunks, inserted {summary['inserted']}"
    )
    if summary["skipped"]:
        text += f", skipped {len(summary['skipped'])}: {', '.join(summary['skipped'])}"
    return text


def format_context(results: List[Dict[str, Any]]) -> str:
    """Join retrieved passages, each headed by its source file."""
    blocks = []
    for result in results:
        metadata = result["metadata"]
        source = metadata.get("source") or metadata.get("file_path", "unknown")
        blocks.append(f"File: {source}\n{result['text']}")
    return "\n\n---\n\n".join(blocks)


class ChatSession:
    """Answers questions about one repository from retrieved context."""

    def __init__(
        self,
        store: IndexStore,
        embedder: Embedder,
        chat_model: ChatModel,
        repo_path: str,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        context_results: int = DEFAULT_RESULTS,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.chat_model = chat_model
        self.repo_path = repo_path
        self.context_results = context_results
        self.system_prompt = system_prompt
        self.history: Deque[Tuple[str, str]] = deque(maxlen=max(0, history_window))

    def retrieve(self, question: str, n_results: Optional[int] = None) -> List[Dict[str, Any]]:
        """Nearest chunks for the question, restricted to this repository."""
        k = self.context_results if n_results is None else n_results
        query_vector = self.embedder.embed([question])[0]
        results = []
        for chunk, distance in self.store.nearest_neighbors(query_vector, k, self.repo_path):
            similarity = normalize_cosine_distance(distance)
            results.append(
                {
                    "text": chunk["text"],
                    "metadata": chunk["metadata"],
                    "distance": distance,
                    "similarity": similarity,
                    "score_interpretation": interpret_score(similarity),
                }
            )
        return results

    def build_messages(self, question: str, results: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        """System instructions, context, history window, then the question."""
        messages = [
            {"role": "system", "content": self.system_prompt.format(repo_path=self.repo_path)},
            {"role": "system", "content": f"Context:\n{format_context(results) or '(no matching code)'}"},
        ]
        for past_question, past_answer in self.history:
            messages.append({"role": "user", "content": past_question})
            messages.append({"role": "assistant", "content": past_answer})
        messages.append({"role": "user", "content": question})
        return messages

    def ask(self, question: str, on_token: Optional[Callable[[str], None]] = None) -> str:
        """Answer a question, streaming tokens, and record the turn."""
        sanitized = sanitize_question(question)
        if not sanitized:
            raise ValueError("Question is empty")

        results = self.retrieve(sanitized)
        messages = self.build_messages(sanitized, results)
        answer = self.chat_model.complete(messages, on_token)
        self.history.append((sanitized, answer))
        return answer


def _write_stdout(token: str) -> None:
    sys.stdout.write(token)
    sys.stdout.flush()


def run_chat_loop(
    session: ChatSession,
    reindexer: Optional[Reindexer] = None,
    input_fn: Callable[[str], str] = input,
    write: Callable[[str], None] = _write_stdout,
    update_command: str = UPDATE_COMMAND,
    exit_command: str = EXIT_COMMAND,
    quiet: bool = False,
) -> int:
    """Read questions until exit; returns the number of answered questions."""
    answered = 0
    while True:
        try:
            question = input_fn(f'\nAsk a question (type "{exit_command}" to stop): ')
        except (EOFError, KeyboardInterrupt):
            write("\n")
            break

        command = question.strip().lower()
        if command == exit_command:
            break
        if not command:
            continue

        if command == update_command:
            if reindexer is None:
                log_warning("Reindexing is not available in this session", quiet=quiet)
                continue
            try:
                summary = reindexer.run_cycle(force=True)
                if not quiet:
                    print(describe_summary(summary))
            except Exception as error:
                log_error("Forced reindex failed", error)
            continue

        try:
            session.ask(question, on_token=write)
            answered += 1
        except KeyboardInterrupt:
            write("\n")
            break
        except Exception as error:
            write("\n")
            log_error("Could not answer the question", error)
            continue
        write("\n")

    if not quiet:
        print("Goodbye!")
    return answered


def resolve_repo_path(path: str) -> str:
    """Validate a repository path and return it absolute."""
    if not GitRepository.is_repository(path):
        raise ValueError(f"Invalid repo path provided: {path}")
    return str(Path(path).expanduser().resolve())


def prompt_repo_path(
    input_fn: Callable[[str], str] = input,
    environ: Optional[Dict[str, str]] = None,
) -> str:
    """Ask for a repository until a path with git metadata is given.

    A valid DEFAULT_REPO_PATH skips the prompt; an empty answer falls back to it.
    """
    environ = os.environ if environ is None else environ
    default_path = environ.get(DEFAULT_REPO_ENV, "").strip()
    if default_path and GitRepository.is_repository(default_path):
        return resolve_repo_path(default_path)

    while True:
        answer = input_fn("Enter absolute path to local repo: ").strip() or default_path
        if GitRepository.is_repository(answer):
            return resolve_repo_path(answer)
        log_error(f"Invalid repo path provided: {answer or '(empty)'}")


class RepoChat:
    """Wires the pipeline for one repository; every component shares one store."""

    def __init__(
        self,
        repo_path: str,
        config: Dict[str, Any],
        db_dir: Optional[str] = None,
        metadata_dir: Optional[str] = None,
        quiet: bool = False,
        store: Optional[IndexStore] = None,
        embedder: Optional[Embedder] = None,
        chat_model: Optional[ChatModel] = None,
        vcs: Optional[Any] = None,
    ) -> None:
        self.repo_path = repo_path
        self.config = config
        self.quiet = quiet
        self.db_dir = Path(db_dir or config["paths"]["db_dir"]).resolve()
        self.metadata_dir = Path(metadata_dir or config["paths"]["metadata_dir"]).resolve()

        scanner_config = config["scanner"]
        index_config = config["index"]
        models_config = config["models"]

        self.vcs = vcs or GitRepository(Path(repo_path))
        self.metadata_store = MetadataStore(self.metadata_dir, quiet=quiet)
        self.scanner = CorpusScanner(
            Path(repo_path),
            exclude_patterns=scanner_config["exclude_patterns"],
            ignored_extensions=scanner_config["ignored_extensions"],
            max_file_size_mb=scanner_config["max_file_size_mb"],
            use_gitignore=scanner_config["use_gitignore"],
            quiet=quiet,
        )
        self.chunker = Chunker(index_config["chunk_size"], index_config["chunk_overlap"])
        self.embedder = embedder or SentenceTransformerEmbedder(models_config["embedding"], quiet=quiet)
        self.chat_model = chat_model or OpenAIChatModel(
            models_config["chat"], temperature=models_config.get("temperature", 0)
        )
        self.store = store or create_index_store(config, self.db_dir, quiet=quiet)
        self.reindexer: Optional[Reindexer] = None

    def prepare(self) -> Reindexer:
        """Load tracking metadata, indexing the whole repository the first time."""
        metadata, is_new = self.metadata_store.load_or_create(self.repo_path, self.vcs)
        self.reindexer = Reindexer(
            metadata,
            self.metadata_store,
            self.vcs,
            self.scanner,
            self.chunker,
            self.embedder,
            self.store,
            quiet=self.quiet,
        )
        if is_new:
            if not self.quiet:
                print("Haven't indexed this codebase before. Indexing now...")
            summary = self.reindexer.build_full()
            if not self.quiet:
                print(describe_summary(summary))
        return self.reindexer

    def session(self) -> ChatSession:
        chat_config = self.config["chat"]
        return ChatSession(
            self.store,
            self.embedder,
            self.chat_model,
            self.repo_path,
            history_window=chat_config["history_window"],
            context_results=chat_config["context_results"],
        )

    def get_stats(self) -> Dict[str, Any]:
        """Tracked revision, drift and stored chunk count for the repository."""
        metadata = self.metadata_store.load(self.repo_path)
        current = self.vcs.current_revision()
        tracked = metadata["last_known_commit_hash"] if metadata else None
        return {
            "repo_path": self.repo_path,
            "tracked_revision": tracked,
            "current_revision": current,
            "is_dirty": tracked != current,
            "total_chunks": self.store.count(self.repo_path),
            "db_path": str(self.db_dir),
            "metadata_path": str(self.metadata_store.path_for(self.repo_path)),
        }


def parse_args(argv: Optional[List[str]] = None) -> Any:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description=f"repochat v{__version__} - chat with a local git repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s                                   # Prompt for a repo and start chatting
    %(prog)s chat --repo ~/src/project         # Chat about a given repository
    %(prog)s update --repo ~/src/project       # Reindex uncommitted edits now
    %(prog)s status --repo ~/src/project       # Revision tracking and chunk count
    %(prog)s search "token refresh" --repo .   # Nearest chunks with scores

In the chat, type "update" to reindex uncommitted edits and "exit" to quit.
Set DEFAULT_REPO_PATH to skip the repository prompt.
        """,
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="chat",
        choices=["chat", "update", "status", "search"],
        help="Command to execute (default: chat)",
    )
    parser.add_argument("query", nargs="*", help="Search query (for search command)")

    parser.add_argument("--repo", help="Repository path (default: prompt or $DEFAULT_REPO_PATH)")
    parser.add_argument("--config", help=f"Path to config file (default: {CONFIG_FILENAME})")
    parser.add_argument("--db-dir", help="Vector database directory (default: ./vectordb)")
    parser.add_argument("--metadata-dir", help="Revision tracking directory (default: ./metadatas)")
    parser.add_argument("--model", help=f"Embedding model name (default: {DEFAULT_MODEL})")
    parser.add_argument("--chat-model", help=f"Chat model name (default: {DEFAULT_CHAT_MODEL})")
    parser.add_argument("--interval", type=float, help="Seconds between background reindex checks")
    parser.add_argument("--results", type=int, help="Number of chunks to retrieve")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    parser.add_argument("--version", action="version", version=f"repochat {__version__}")

    return parser.parse_args(argv)


def apply_overrides(config: Dict[str, Any], args: Any) -> Dict[str, Any]:
    """Fold command line options into the loaded configuration."""
    if args.model:
        config["models"]["embedding"] = args.model
    if args.chat_model:
        config["models"]["chat"] = args.chat_model
    if args.interval is not None:
        config["reindex"]["interval_seconds"] = args.interval
    if args.results is not None:
        config["chat"]["context_results"] = args.results
    return config


# Command Pattern Implementation
class Command:
    """Base command interface."""

    def execute(self, args: Any, app: RepoChat) -> None:
        """Execute the command."""
        raise NotImplementedError


class ChatCommand(Command):
    """Index if needed, keep the index fresh in the background, and chat."""

    def execute(self, args: Any, app: RepoChat) -> None:
        reindexer = app.prepare()
        scheduler = ReindexScheduler(
            reindexer,
            interval=app.config["reindex"]["interval_seconds"],
            quiet=args.quiet,
        )
        scheduler.start()
        chat_config = app.config["chat"]
        try:
            run_chat_loop(
                app.session(),
                reindexer,
                update_command=chat_config["update_command"],
                exit_command=chat_config["exit_command"],
                quiet=args.quiet,
            )
        finally:
            scheduler.stop(timeout=1.0)


class UpdateCommand(Command):
    """Run one forced working-tree reindex."""

    def execute(self, args: Any, app: RepoChat) -> None:
        reindexer = app.prepare()
        print(describe_summary(reindexer.run_cycle(force=True)))


class StatusCommand(Command):
    """Show revision tracking and index statistics."""

    def execute(self, args: Any, app: RepoChat) -> None:
        stats = app.get_stats()
        print("Repository Status:")
        print(f"  Repository: {stats['repo_path']}")
        print(f"  Tracked revision: {stats['tracked_revision'] or 'not indexed yet'}")
        print(f"  Current revision: {stats['current_revision']}")
        print(f"  Drift: {'yes' if stats['is_dirty'] else 'no'}")
        print(f"  Indexed chunks: {stats['total_chunks']}")
        print(f"  Database path: {stats['db_path']}")
        print(f"  Metadata file: {stats['metadata_path']}")


class SearchCommand(Command):
    """Print the chunks a question would be answered from."""

    def execute(self, args: Any, app: RepoChat) -> None:
        query = sanitize_question(" ".join(args.query))
        if not query:
            raise ValueError("Please provide a search query")

        results = app.session().retrieve(query)
        if not results:
            print("No results found.")
            return

        print(f"\nSearch results for: '{query}'")
        print("=" * 50)
        for i, result in enumerate(results, 1):
            metadata = result["metadata"]
            print(
                f"\n{i}. {metadata.get('source')} "
                f"(chunk {metadata.get('chunk_index', 0) + 1}/{metadata.get('total_chunks', '?')}) "
                f"({result['score_interpretation']}: {result['similarity']:.3f})"
            )
            print(f"   {result['text'][:300]}...")


class CommandFactory:
    """Factory for creating command instances."""

    _commands = {
        "chat": ChatCommand,
        "update": UpdateCommand,
        "status": StatusCommand,
        "search": SearchCommand,
    }

    @classmethod
    def create_command(cls, command_name: str) -> Command:
        """Create a command instance."""
        command_class = cls._commands.get(command_name)
        if command_class is None:
            raise ValueError(f"Unknown command: {command_name}")
        return command_class()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point using Command pattern."""
    args = parse_args(argv)

    try:
        config = apply_overrides(load_config(args.config), args)
        command = CommandFactory.create_command(args.command)
        repo_path = resolve_repo_path(args.repo) if args.repo else prompt_repo_path()

        app = RepoChat(
            repo_path,
            config,
            db_dir=args.db_dir,
            metadata_dir=args.metadata_dir,
            quiet=args.quiet,
        )
        command.execute(args, app)

    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)
    except ValueError as e:
        log_error(str(e))
        sys.exit(1)
    except Exception as e:
        log_error(f"Unexpected error executing command '{args.command}'", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
