from __future__ import annotations

import re
from pathlib import Path

from .errors import ValidationError

DEFAULT_SNIPPET_NAME = "star_code.cpp"
MAX_NAME_LENGTH = 80
_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+\.cpp$")


def sanitize_snippet_name(name: str) -> str:
    """Validate a snippet filename such as ``star_code.cpp`` or ``test-1.cpp``.

    Example:
        ```python
        sanitize_snippet_name("star_code.cpp")
        ```
    """
    if len(name) > MAX_NAME_LENGTH or ".." in name or not _SAFE_NAME.fullmatch(name):
        raise ValidationError("Invalid filename. Use something like star_code.cpp")
    return name


class SnippetStore:
    """Named C++ snippets kept as flat files in one storage directory.

    Example:
        ```python
        store = SnippetStore("user_codes")
        store.save("star_code.cpp", b"int main() {}")
        ```
    """

    def __init__(self, root: str | Path) -> None:
        """Point the store at its directory; it is created on first save.

        Example:
            ```python
            store = SnippetStore(Path("/tmp/snippets"))
            ```
        """
        self._root = Path(root)

    @property
    def root(self) -> Path:
        """Return the storage directory.

        Example:
            ```python
            path = store.root
            ```
        """
        return self._root

    def save(self, name: str, content: bytes) -> int:
        """Write a snippet byte-for-byte and return the number of bytes stored.

        Example:
            ```python
            written = store.save("a.cpp", b"int main() {}")
            ```
        """
        safe = sanitize_snippet_name(name)
        self._root.mkdir(parents=True, exist_ok=True)
        (self._root / safe).write_bytes(content)
        return len(content)

    def load(self, name: str) -> bytes:
        """Read a snippet; raises FileNotFoundError when it does not exist.

        Example:
            ```python
            content = store.load("a.cpp")
            ```
        """
        safe = sanitize_snippet_name(name)
        return (self._root / safe).read_bytes()

    def names(self) -> list[str]:
        """List stored snippet names in sorted order.

        Example:
            ```python
            store.names()  # -> ["a.cpp", "star_code.cpp"]
            ```
        """
        if not self._root.is_dir():
            return []
        return sorted(
            path.name
            for path in self._root.iterdir()
            if path.is_file() and _SAFE_NAME.fullmatch(path.name)
        )
