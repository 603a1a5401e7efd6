"""Tests for language-aware text chunking in repochat."""

import pytest

from repochat import Chunker


class TestChunkerConfiguration:
    """Test chunker construction rules."""

    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(ValueError):
            Chunker(chunk_size=100, chunk_overlap=100)

    def test_negative_overlap_rejected(self):
        with pytest.raises(ValueError):
            Chunker(chunk_size=100, chunk_overlap=-1)

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            Chunker(chunk_size=0, chunk_overlap=0)

    @pytest.mark.parametrize(
        "file_path,language",
        [
            ("src/app.js", "js"),
            ("src/App.TSX", "js"),
            ("lib/server.mjs", "js"),
            ("tool.py", "python"),
            ("main.go", "go"),
            ("README.md", "markdown"),
            ("docs/guide.mdx", "markdown"),
            ("Makefile", "generic"),
            ("notes.txt", "generic"),
        ],
    )
    def test_language_for(self, file_path, language):
        assert Chunker.language_for(file_path) == language


class TestChunkSplitting:
    """Test the recursive splitter."""

    @pytest.fixture
    def chunker(self):
        return Chunker(chunk_size=200, chunk_overlap=50)

    def test_empty_text_yields_no_chunks(self, chunker):
        assert chunker.split("", "a.js") == []
        assert chunker.split("   \n\n  ", "a.js") == []

    def test_short_text_is_one_chunk(self, chunker):
        text = "const answer = 42;"

        chunks = chunker.split(text, "a.js")

        assert len(chunks) == 1
        assert chunks[0]["text"] == text
        assert chunks[0]["metadata"] == {"language": "js", "chunk_type": "syntax"}

    def test_chunks_respect_size(self, chunker):
        text = "\n".join(f"const value{i} = compute({i});" for i in range(100))

        chunks = chunker.split(text, "values.js")

        assert len(chunks) > 1
        assert all(len(chunk["text"]) <= 200 for chunk in chunks)

    def test_code_splits_at_function_boundaries(self):
        chunker = Chunker(chunk_size=120, chunk_overlap=0)
        functions = [
            f"function handler{i}(req, res) {{\n  return res.send('{i}');\n}}\n" for i in range(6)
        ]
        text = "\n".join(functions)

        chunks = chunker.split(text, "routes.js")

        assert len(chunks) > 1
        for chunk in chunks:
            assert chunk["text"].startswith("function handler")

    def test_consecutive_chunks_overlap(self):
        chunker = Chunker(chunk_size=100, chunk_overlap=40)
        words = " ".join(f"word{i}" for i in range(120))

        chunks = chunker.split(words, "notes.txt")

        assert len(chunks) > 2
        for previous, current in zip(chunks, chunks[1:]):
            first_word = current["text"].split()[0]
            assert first_word in previous["text"].split()

    def test_no_content_is_lost(self):
        chunker = Chunker(chunk_size=80, chunk_overlap=20)
        words = [f"token{i}" for i in range(200)]

        chunks = chunker.split(" ".join(words), "notes.txt")

        seen = set()
        for chunk in chunks:
            seen.update(chunk["text"].split())
        assert seen == set(words)

    def test_unbreakable_run_is_split_by_characters(self):
        chunker = Chunker(chunk_size=50, chunk_overlap=10)

        chunks = chunker.split("x" * 180, "blob.txt")

        assert len(chunks) > 1
        assert all(len(chunk["text"]) <= 50 for chunk in chunks)
        assert sum(len(chunk["text"]) for chunk in chunks) >= 180

    def test_markdown_splits_at_headings(self):
        chunker = Chunker(chunk_size=90, chunk_overlap=0)
        text = "# Title\n\nIntro text here.\n" + "".join(
            f"\n## Section {i}\n\nBody of section {i} with some words.\n" for i in range(4)
        )

        chunks = chunker.split(text, "README.md")

        assert all(chunk["metadata"]["chunk_type"] == "markdown" for chunk in chunks)
        assert any(chunk["text"].startswith("## Section") for chunk in chunks)

    def test_generic_files_use_recursive_type(self, chunker):
        chunks = chunker.split("plain words only", "LICENSE")

        assert chunks[0]["metadata"] == {"language": "generic", "chunk_type": "recursive"}
