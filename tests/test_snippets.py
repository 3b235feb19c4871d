from __future__ import annotations

from pathlib import Path

import pytest

from safe_cpp_runner.errors import ValidationError
from safe_cpp_runner.snippets import SnippetStore, sanitize_snippet_name


def test_save_then_load_is_byte_identical(tmp_path: Path) -> None:
    store = SnippetStore(tmp_path / "user_codes")
    content = "#include <cstdio>\r\nint main() { puts(\"é\"); }\n".encode("utf-8")

    written = store.save("star_code.cpp", content)

    assert written == len(content)
    assert store.load("star_code.cpp") == content
    assert (tmp_path / "user_codes" / "star_code.cpp").read_bytes() == content


def test_save_overwrites_existing_snippet(tmp_path: Path) -> None:
    store = SnippetStore(tmp_path)
    store.save("a.cpp", b"old contents")
    store.save("a.cpp", b"new")
    assert store.load("a.cpp") == b"new"


@pytest.mark.parametrize(
    "name",
    ["../x.cpp", "a..cpp", "x.txt", "a/b.cpp", "a b.cpp", ".cpp", "", "x" * 77 + ".cpp"],
)
def test_rejected_names_touch_nothing(tmp_path: Path, name: str) -> None:
    root = tmp_path / "user_codes"
    store = SnippetStore(root)
    with pytest.raises(ValidationError, match="star_code.cpp"):
        store.save(name, b"int main() {}")
    assert not root.exists()


def test_accepted_names() -> None:
    assert sanitize_snippet_name("test-1.cpp") == "test-1.cpp"
    assert sanitize_snippet_name("A_b.c.cpp") == "A_b.c.cpp"
    assert sanitize_snippet_name("x" * 76 + ".cpp") == "x" * 76 + ".cpp"


def test_load_missing_snippet_raises_file_not_found(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        SnippetStore(tmp_path).load("missing.cpp")


def test_load_rejects_traversal(tmp_path: Path) -> None:
    (tmp_path / "secret.cpp").write_text("x")
    store = SnippetStore(tmp_path / "user_codes")
    with pytest.raises(ValidationError):
        store.load("../secret.cpp")


def test_names_lists_only_snippets(tmp_path: Path) -> None:
    store = SnippetStore(tmp_path)
    assert store.names() == []
    store.save("b.cpp", b"")
    store.save("a.cpp", b"")
    (tmp_path / "notes.txt").write_text("x")
    (tmp_path / "dir.cpp").mkdir()
    assert store.names() == ["a.cpp", "b.cpp"]
