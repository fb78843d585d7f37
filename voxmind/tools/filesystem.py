"""
Filesystem tools: the built-in tool set registered at initialization.

Five plain synchronous operations (search, read, create, modify, list) that
the tool capability wrapper runs off the event loop. Every path goes through
``validate_path`` first:

  ``allowed is None``   unrestricted; any path the process can touch.
  ``allowed == ()``     denied; no path is accessible.
  ``allowed == (...)``  scoped; only paths under one of these directories,
                        checked again after symlink resolution.
"""

from __future__ import annotations

import fnmatch
import os
import time
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import structlog

from voxmind.capabilities.tools import ToolCapability

logger = structlog.get_logger(__name__)

_MAX_SCAN_FILE_BYTES = 1_000_000


def _is_relative_to(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_path(
    requested: str,
    allowed: Optional[tuple[Path, ...]] = None,
    *,
    require_exists: bool = False,
) -> Path:
    """Resolve *requested* and check it against the allowed roots.

    Raises ``PermissionError`` or ``FileNotFoundError``; the tool wrapper
    turns either into a failed result.
    """
    if allowed is not None and not allowed:
        raise PermissionError("Filesystem access denied: no allowed paths configured.")

    try:
        resolved = Path(os.path.realpath(os.path.expanduser(requested)))
    except (OSError, ValueError) as exc:
        raise ValueError(f"Invalid path: {exc}") from exc

    if allowed is not None and not any(
        resolved == root or _is_relative_to(resolved, root) for root in allowed
    ):
        raise PermissionError(f"Access denied: '{resolved}' is not within any allowed path.")

    if require_exists and not resolved.exists():
        raise FileNotFoundError(f"File not found: '{resolved}'.")
    return resolved


class FilesystemTools:
    """Handlers for the built-in filesystem tools, scoped to ``allowed_paths``."""

    def __init__(self, allowed_paths: Optional[Sequence[str | Path]] = None):
        if allowed_paths is None:
            self._allowed: Optional[tuple[Path, ...]] = None
        else:
            self._allowed = tuple(Path(os.path.realpath(p)) for p in allowed_paths)

    def _path(self, requested: str, *, require_exists: bool = False) -> Path:
        return validate_path(requested, self._allowed, require_exists=require_exists)

    def search_files(
        self,
        path: str,
        pattern: str = "*",
        content_filter: Optional[str] = None,
        max_results: int = 10,
    ) -> dict[str, Any]:
        root = self._path(path, require_exists=True)
        if not root.is_dir():
            raise NotADirectoryError(f"Not a directory: '{root}'.")
        limit = max(1, int(max_results))

        matches: list[str] = []
        for file_path in _walk(root, dirs=False):
            if not file_path.is_file():
                continue
            rel = file_path.relative_to(root).as_posix()
            if not (fnmatch.fnmatch(file_path.name, pattern) or fnmatch.fnmatch(rel, pattern)):
                continue
            if content_filter:
                if file_path.stat().st_size > _MAX_SCAN_FILE_BYTES:
                    continue
                try:
                    text = file_path.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
                if content_filter not in text:
                    continue
            matches.append(str(file_path))
            if len(matches) >= limit:
                break

        return {"files": matches, "total_found": len(matches)}

    def read_file(
        self,
        path: str,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
    ) -> dict[str, Any]:
        file_path = self._path(path, require_exists=True)
        content = file_path.read_text(encoding="utf-8")
        lines = content.split("\n")

        selected = content
        if start_line:
            start = max(1, int(start_line)) - 1
            stop = int(end_line) if end_line else len(lines)
            selected = "\n".join(lines[start:stop])

        return {
            "path": str(file_path),
            "content": selected,
            "total_lines": len(lines),
            "returned_lines": len(selected.split("\n")),
        }

    def create_file(self, path: str, content: str) -> dict[str, Any]:
        file_path = self._path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        logger.info("filesystem.created", path=str(file_path), length=len(content))
        return {"created_file": str(file_path), "content_length": len(content)}

    def modify_file(
        self,
        path: str,
        old_content: str,
        new_content: str,
        backup: bool = True,
    ) -> dict[str, Any]:
        file_path = self._path(path, require_exists=True)
        current = file_path.read_text(encoding="utf-8")
        if old_content not in current:
            raise ValueError("Old content not found in file")

        backup_path = None
        if backup:
            backup_path = file_path.with_name(f"{file_path.name}.backup.{int(time.time() * 1000)}")
            backup_path.write_text(current, encoding="utf-8")

        file_path.write_text(current.replace(old_content, new_content, 1), encoding="utf-8")
        logger.info("filesystem.modified", path=str(file_path), backup=bool(backup_path))
        return {
            "modified_file": str(file_path),
            "backup_created": backup_path is not None,
            "backup_path": str(backup_path) if backup_path else None,
            "changes_made": 1,
        }

    def list_directory(self, path: str, recursive: bool = False) -> dict[str, Any]:
        dir_path = self._path(path, require_exists=True)
        if not dir_path.is_dir():
            raise NotADirectoryError(f"Not a directory: '{dir_path}'.")

        entries = _walk(dir_path) if recursive else sorted(dir_path.iterdir())
        items = [
            {
                "name": entry.relative_to(dir_path).as_posix(),
                "path": str(entry),
                "type": "directory" if entry.is_dir() else "file",
            }
            for entry in entries
        ]
        return {"directory": str(dir_path), "items": items, "total_items": len(items)}


def _walk(root: Path, *, dirs: bool = True) -> Iterator[Path]:
    """Top-down walk, names sorted within each directory. Stops when the caller does."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        names = sorted(dirnames + filenames) if dirs else sorted(filenames)
        for name in names:
            yield base / name


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


def build_filesystem_tools(
    allowed_paths: Optional[Sequence[str | Path]] = None,
    *,
    timeout: float = 30.0,
    max_output_length: int = 25000,
) -> list[ToolCapability]:
    """Wrap the filesystem handlers as tool capabilities."""
    fs = FilesystemTools(allowed_paths)
    opts = {"timeout": timeout, "max_output_length": max_output_length}
    path_prop = {"type": "string", "description": "File or directory path"}

    return [
        ToolCapability(
            "search_files",
            "Search a directory tree for files by glob pattern, optionally keeping only "
            "files that contain some text.",
            _schema(
                {
                    "path": {"type": "string", "description": "Directory to search in"},
                    "pattern": {"type": "string", "description": "Glob such as '*.py'"},
                    "content_filter": {"type": "string", "description": "Text the file must contain"},
                    "max_results": {"type": "number", "description": "Maximum files to return"},
                },
                ["path"],
            ),
            fs.search_files,
            **opts,
        ),
        ToolCapability(
            "read_file",
            "Read a text file, optionally only a range of lines (1-indexed, inclusive).",
            _schema(
                {
                    "path": path_prop,
                    "start_line": {"type": "number", "description": "First line to return"},
                    "end_line": {"type": "number", "description": "Last line to return"},
                },
                ["path"],
            ),
            fs.read_file,
            **opts,
        ),
        ToolCapability(
            "create_file",
            "Create or overwrite a file with the given content. Parent directories are created.",
            _schema(
                {"path": path_prop, "content": {"type": "string", "description": "File content"}},
                ["path", "content"],
            ),
            fs.create_file,
            **opts,
        ),
        ToolCapability(
            "modify_file",
            "Replace the first exact occurrence of some text in a file, keeping a backup copy.",
            _schema(
                {
                    "path": path_prop,
                    "old_content": {"type": "string", "description": "Exact text to replace"},
                    "new_content": {"type": "string", "description": "Replacement text"},
                    "backup": {"type": "boolean", "description": "Write a backup first"},
                },
                ["path", "old_content", "new_content"],
            ),
            fs.modify_file,
            **opts,
        ),
        ToolCapability(
            "list_directory",
            "List the entries of a directory, optionally recursively.",
            _schema(
                {"path": path_prop, "recursive": {"type": "boolean", "description": "Include subdirectories"}},
                ["path"],
            ),
            fs.list_directory,
            **opts,
        ),
    ]
