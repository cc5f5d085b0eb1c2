"""Markdown note vault, laid out so the Obsidian app can open it directly.

Notes are ``<title>.md`` files with a small YAML frontmatter block
(``created`` / ``updated`` dates). Titles are sanitized into file names;
folders are relative to the vault root and may not escape it.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .builtin import _require_str
from .registry import Tool, ToolContext

logger = logging.getLogger(__name__)

DEFAULT_FOLDERS = ("People", "Topics", "Daily", "Preferences")
MAX_SEARCH_RESULTS = 10
MATCHES_PER_NOTE = 3

_UNSAFE_TITLE_CHARS = re.compile(r'[/\\?%*:|"<>]')
_UPDATED_LINE = re.compile(r"updated: \d{4}-\d{2}-\d{2}")


def _utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def sanitize_title(title: str) -> str:
    """Replace characters that are unsafe in file names with ``-``."""
    return _UNSAFE_TITLE_CHARS.sub("-", title.strip())


def frontmatter(day: str) -> str:
    return f"---\ncreated: {day}\nupdated: {day}\n---\n\n"


@dataclass
class SearchHit:
    file: str
    matches: list[str] = field(default_factory=list)


class ObsidianVault:
    """File operations on one vault directory."""

    def __init__(self, root: Path | str, today: Callable[[], str] = _utc_today):
        self.root = Path(root)
        self._today = today
        self._ready = False

    def ensure(self) -> None:
        """Create the vault, its default folders, and the ``.obsidian`` marker."""
        if self._ready:
            return
        if not self.root.exists():
            logger.info("creating vault at %s", self.root)
        for folder in DEFAULT_FOLDERS:
            (self.root / folder).mkdir(parents=True, exist_ok=True)
        marker = self.root / ".obsidian"
        if not marker.exists():
            marker.mkdir(parents=True)
            (marker / "workspace.json").write_text(
                json.dumps({"main": {"children": []}}, indent=2), encoding="utf-8"
            )
        self._ready = True

    def _folder(self, folder: str) -> Path:
        root = self.root.resolve()
        if not folder.strip():
            return root
        target = (root / folder.strip()).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"Folder must be inside the vault: {folder}")
        return target

    def note_path(self, title: str, folder: str = "") -> Path:
        name = sanitize_title(title)
        if not name:
            raise ValueError("Note title must not be empty")
        return self._folder(folder) / f"{name}.md"

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root.resolve()).as_posix()

    def save(self, title: str, content: str, folder: str = "") -> Path:
        """Write a note, replacing any existing note of the same title."""
        self.ensure()
        path = self.note_path(title, folder)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(frontmatter(self._today()) + content, encoding="utf-8")
        logger.info("saved note %s", self.relative(path))
        return path

    def append(self, title: str, content: str, folder: str = "") -> Path:
        """Append to a note, bumping its ``updated`` date; creates it when missing."""
        self.ensure()
        path = self.note_path(title, folder)
        if not path.exists():
            return self.save(title, content, folder)
        existing = path.read_text(encoding="utf-8")
        updated = _UPDATED_LINE.sub(f"updated: {self._today()}", existing, count=1)
        path.write_text(f"{updated}\n\n{content}", encoding="utf-8")
        return path

    def read(self, title: str, folder: str = "") -> str | None:
        self.ensure()
        path = self.note_path(title, folder)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def _notes(self, start: Path) -> list[Path]:
        if not start.is_dir():
            return []
        found = []
        for path in sorted(start.iterdir()):
            if path.name.startswith("."):
                continue
            if path.is_dir():
                found.extend(self._notes(path))
            elif path.suffix == ".md":
                found.append(path)
        return found

    def search(self, query: str) -> list[SearchHit]:
        """Case-insensitive line search across every note."""
        self.ensure()
        needle = query.lower()
        hits = []
        for path in self._notes(self.root.resolve()):
            lines = path.read_text(encoding="utf-8").splitlines()
            matches = [ln for ln in lines if needle in ln.lower()]
            if matches:
                hits.append(SearchHit(file=self.relative(path), matches=matches[:MATCHES_PER_NOTE]))
        return hits

    def list_notes(self, folder: str = "") -> list[str]:
        self.ensure()
        return [self.relative(p) for p in self._notes(self._folder(folder))]


def _folder_arg(arguments: dict[str, Any]) -> str:
    return str(arguments.get("folder") or "")


_FOLDER_PARAM = {
    "type": "string",
    "description": "Optional folder: People, Topics, Daily, or Preferences (default: vault root)",
}


class VaultTool(Tool):
    def __init__(self, vault: ObsidianVault):
        self.vault = vault


class ObsidianSaveTool(VaultTool):
    name = "obsidian_save"
    description = (
        "Save a note to the Obsidian vault. Use for important information, facts, "
        "preferences, etc. Supports Markdown and [[wikilinks]]."
    )
    parameters = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Note title (e.g. 'User Preferences', 'Python Tips')"},
            "content": {
                "type": "string",
                "description": "Note content in Markdown. Use [[links]] to reference other notes.",
            },
            "folder": _FOLDER_PARAM,
        },
        "required": ["title", "content"],
    }

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        title = _require_str(arguments, "title")
        path = self.vault.save(title, _require_str(arguments, "content"), _folder_arg(arguments))
        return f"Note saved: {title}\nLocation: {path}"


class ObsidianAppendTool(VaultTool):
    name = "obsidian_append"
    description = "Append content to an existing note (or create it). Use to add to existing knowledge."
    parameters = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Note title to append to"},
            "content": {"type": "string", "description": "Content to append"},
            "folder": _FOLDER_PARAM,
        },
        "required": ["title", "content"],
    }

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        title = _require_str(arguments, "title")
        self.vault.append(title, _require_str(arguments, "content"), _folder_arg(arguments))
        return f"Appended to note: {title}"


class ObsidianReadTool(VaultTool):
    name = "obsidian_read"
    description = "Read a note from the Obsidian vault by title."
    parameters = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Note title to read"},
            "folder": _FOLDER_PARAM,
        },
        "required": ["title"],
    }

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        title = _require_str(arguments, "title")
        content = self.vault.read(title, _folder_arg(arguments))
        if content is None:
            return f"Note not found: {title}"
        return content


class ObsidianSearchTool(VaultTool):
    name = "obsidian_search"
    description = "Search all notes for a keyword or phrase."
    parameters = {
        "type": "object",
        "properties": {"query": {"type": "string", "description": "Search query"}},
        "required": ["query"],
    }

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        query = _require_str(arguments, "query")
        hits = self.vault.search(query)
        if not hits:
            return f"No results found for: {query}"
        blocks = [
            f"**{hit.file}**\n" + "\n".join(f"  > {m}" for m in hit.matches)
            for hit in hits[:MAX_SEARCH_RESULTS]
        ]
        return f"Found {len(hits)} notes:\n\n" + "\n\n".join(blocks)


class ObsidianListTool(VaultTool):
    name = "obsidian_list"
    description = "List all notes in the vault or a specific folder."
    parameters = {"type": "object", "properties": {"folder": _FOLDER_PARAM}}

    async def execute(self, arguments: dict[str, Any], context: ToolContext) -> str:
        notes = self.vault.list_notes(_folder_arg(arguments))
        if not notes:
            return "No notes found."

        grouped: dict[str, list[str]] = {}
        for note in notes:
            group = note.split("/", 1)[0] if "/" in note else "Root"
            grouped.setdefault(group, []).append(note)
        sections = [
            f"**{group}/**\n" + "\n".join(f"  - {n}" for n in files) for group, files in grouped.items()
        ]
        return (
            f"Obsidian vault ({len(notes)} notes)\n\n"
            + "\n\n".join(sections)
            + f"\n\nVault location: {self.vault.root}"
        )


def make_vault_tools(vault: ObsidianVault) -> list[Tool]:
    return [
        ObsidianSaveTool(vault),
        ObsidianAppendTool(vault),
        ObsidianReadTool(vault),
        ObsidianSearchTool(vault),
        ObsidianListTool(vault),
    ]
