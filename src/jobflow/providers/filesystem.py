"""Project filesystem access for processors that inspect source trees."""

from __future__ import annotations

import fnmatch
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from jobflow.errors import ValidationError

BINARY_SNIFF_BYTES = 8_192
DEFAULT_EXCLUDED_DIRS: tuple[str, ...] = (
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "node_modules",
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    "dist",
    "build",
    "target",
)


class FilesystemProvider(Protocol):
    """Read-only view of a project directory addressed by relative paths."""

    def list_files(self, root: Path, *, excluded: Sequence[str] = ()) -> list[str]:
        """Relative POSIX paths of regular files under ``root``."""

    def exists(self, root: Path, relative_path: str) -> bool: ...

    def file_size(self, root: Path, relative_path: str) -> int: ...

    def is_binary(self, root: Path, relative_path: str) -> bool: ...

    def read_text(self, root: Path, relative_path: str) -> str: ...


class LocalFilesystem:
    """Filesystem provider over the local disk."""

    def __init__(self, excluded_dirs: Sequence[str] = DEFAULT_EXCLUDED_DIRS) -> None:
        self.excluded_dirs = frozenset(excluded_dirs)

    def list_files(self, root: Path, *, excluded: Sequence[str] = ()) -> list[str]:
        root = _require_directory(root)
        files: list[str] = []
        for current, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(name for name in dirnames if name not in self.excluded_dirs)
            for filename in sorted(filenames):
                relative = (Path(current) / filename).relative_to(root).as_posix()
                if _is_excluded(relative, excluded):
                    continue
                files.append(relative)
        return files

    def exists(self, root: Path, relative_path: str) -> bool:
        """``False`` for missing files and for paths outside ``root``."""

        base = root.resolve()
        candidate = (base / relative_path).resolve()
        return candidate.is_relative_to(base) and candidate.is_file()

    def file_size(self, root: Path, relative_path: str) -> int:
        return self._resolve(root, relative_path).stat().st_size

    def is_binary(self, root: Path, relative_path: str) -> bool:
        with self._resolve(root, relative_path).open("rb") as handle:
            return b"\0" in handle.read(BINARY_SNIFF_BYTES)

    def read_text(self, root: Path, relative_path: str) -> str:
        return self._resolve(root, relative_path).read_text("utf-8", errors="replace")

    def _resolve(self, root: Path, relative_path: str) -> Path:
        base = root.resolve()
        candidate = (base / relative_path).resolve()
        if not candidate.is_relative_to(base):
            raise ValidationError(f"Path escapes project directory: {relative_path!r}")
        return candidate


def directory_tree(paths: Sequence[str], *, max_entries: int = 500) -> str:
    """Compact indented listing of relative paths for prompts."""

    lines: list[str] = []
    seen_dirs: set[str] = set()
    for path in sorted(paths):
        parts = path.split("/")
        for depth in range(len(parts) - 1):
            directory = "/".join(parts[: depth + 1])
            if directory not in seen_dirs:
                seen_dirs.add(directory)
                lines.append(f"{'  ' * depth}{parts[depth]}/")
        lines.append(f"{'  ' * (len(parts) - 1)}{parts[-1]}")
        if len(lines) >= max_entries:
            lines.append("...")
            break
    return "\n".join(lines)


def _require_directory(root: Path) -> Path:
    resolved = root.resolve()
    if not resolved.is_dir():
        raise ValidationError(f"Project directory does not exist: {root}")
    return resolved


def _is_excluded(relative_path: str, excluded: Sequence[str]) -> bool:
    for pattern in excluded:
        normalized = pattern.strip().strip("/")
        if not normalized:
            continue
        if relative_path == normalized or relative_path.startswith(f"{normalized}/"):
            return True
        if fnmatch.fnmatch(relative_path, normalized):
            return True
    return False
