"""Shared test fixtures for repochat testing."""

import pytest
import tempfile
import shutil
import subprocess
import hashlib
import re
from pathlib import Path
from typing import Dict, Any, Generator, List, Optional
import sys
import os

import numpy as np

# Add parent directory to path so we can import repochat
sys.path.insert(0, str(Path(__file__).parent.parent))

# Keep chromadb from phoning home during tests
os.environ.setdefault("ANONYMIZED_TELEMETRY", "False")

import repochat


EMBEDDING_DIM = 64


class FakeEmbedder(repochat.Embedder):
    """Bag-of-words hashing embedder: texts sharing words land close together."""

    def __init__(self):
        self.calls: List[List[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            vector = np.zeros(EMBEDDING_DIM)
            for word in re.findall(r"[a-z0-9_]+", text.lower()):
                bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % EMBEDDING_DIM
                vector[bucket] += 1.0
            if not vector.any():
                vector[0] = 1.0
            vectors.append((vector / np.linalg.norm(vector)).tolist())
        return vectors


class FakeChatModel(repochat.ChatModel):
    """Streams a canned answer word by word and remembers what it was sent."""

    def __init__(self, answer: str = "It lives in app.js", error: Optional[Exception] = None):
        self.answer = answer
        self.error = error
        self.requests: List[List[Dict[str, str]]] = []

    def complete(self, messages, on_token=None):
        self.requests.append(messages)
        if self.error is not None:
            raise self.error
        tokens = self.answer.split(" ")
        for i, token in enumerate(tokens):
            piece = token if i == 0 else " " + token
            if on_token is not None:
                on_token(piece)
        return self.answer


class FakeVCS:
    """Scriptable stand-in for GitRepository."""

    def __init__(self, revision: str = "rev1"):
        self.revision = revision
        self.committed_changes: Dict[str, List[str]] = {}
        self.working_changes: List[str] = []
        self.error: Optional[Exception] = None

    def current_revision(self) -> str:
        if self.error is not None:
            raise self.error
        return self.revision

    def changed_paths_since(self, revision: str) -> List[str]:
        if self.error is not None:
            raise self.error
        return list(self.committed_changes.get(revision, []))

    def working_tree_changed_paths(self) -> List[str]:
        if self.error is not None:
            raise self.error
        return list(self.working_changes)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def repo_dir(temp_dir: Path) -> Path:
    """A plain directory laid out like a small JavaScript project."""
    repo = temp_dir / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "node_modules" / "left-pad").mkdir(parents=True)
    (repo / "src" / "app.js").write_text(
        "function startServer() {\n  return listen(8080);\n}\n", encoding="utf-8"
    )
    (repo / "src" / "util.ts").write_text(
        "export const add = (a: number, b: number) => a + b;\n", encoding="utf-8"
    )
    (repo / "README.md").write_text("# Demo\n\nA tiny demo project.\n", encoding="utf-8")
    (repo / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1;\n", encoding="utf-8")
    (repo / "pnpm-lock.yaml").write_text("lockfileVersion: 6\n", encoding="utf-8")
    (repo / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n" + bytes(range(256)))
    return repo


@pytest.fixture
def sample_config(temp_dir: Path) -> Dict[str, Any]:
    """Default configuration pointed at the temp directory, local backend."""
    config = repochat._default_config()
    config["index"]["backend"] = "local"
    config["index"]["chunk_size"] = 200
    config["index"]["chunk_overlap"] = 50
    config["paths"]["db_dir"] = str(temp_dir / "vectordb")
    config["paths"]["metadata_dir"] = str(temp_dir / "metadatas")
    return config


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_chat_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def fake_vcs() -> FakeVCS:
    return FakeVCS()


@pytest.fixture
def local_store(temp_dir: Path) -> repochat.LocalIndexStore:
    return repochat.LocalIndexStore(temp_dir / "vectordb" / "index.json", quiet=True)


def make_record(
    text: str,
    file_path: str,
    commit_hash: str,
    repo_path: str = "/repo",
    index: int = 0,
    embedder: Optional[FakeEmbedder] = None,
) -> Dict[str, Any]:
    """Build a storable chunk record."""
    embedder = embedder or FakeEmbedder()
    return {
        "id": repochat.chunk_id(repo_path, file_path, commit_hash, index),
        "text": text,
        "metadata": {
            "file_path": file_path,
            "source": Path(file_path).name,
            "repo_path": repo_path,
            "commit_hash": commit_hash,
            "chunk_index": index,
            "total_chunks": 1,
            "language": "js",
        },
        "embedding": embedder.embed([text])[0],
    }


GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "author@example.com",
}


class GitRepoBuilder:
    """Creates commits in a scratch repository."""

    def __init__(self, path: Path):
        self.path = path
        self.env = {**os.environ, **GIT_ENV}
        self.git("init", "-q")
        self.git("config", "commit.gpgsign", "false")

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=str(self.path),
            env=self.env,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout

    def write(self, relative_path: str, content: str) -> None:
        target = self.path / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def commit(self, message: str = "change") -> str:
        self.git("add", "-A")
        self.git("commit", "-q", "--allow-empty", "-m", message)
        return self.git("rev-parse", "HEAD").strip()


@pytest.fixture
def git_repo(temp_dir: Path) -> GitRepoBuilder:
    """A real git repository with one commit of a.js and b.js."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    path = temp_dir / "gitrepo"
    path.mkdir()
    builder = GitRepoBuilder(path)
    builder.write("a.js", "function alpha() {\n  return 'a';\n}\n")
    builder.write("b.js", "function beta() {\n  return 'b';\n}\n")
    builder.commit("initial")
    return builder
