"""File access on behalf of an agent, scoped to the session's working directory."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)


class FileAccess:
    """Reads and writes text files for an agent.

    Relative paths resolve against ``cwd``. Errors propagate as ``OSError``
    or ``ValueError`` so the caller can report them back to the agent.
    """

    def __init__(self, cwd: str | Path):
        self.cwd = Path(cwd)

    def resolve(self, path: str | Path) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.cwd / p

    def read_text_file(
        self, path: str | Path, line: int | None = None, limit: int | None = None
    ) -> str:
        """Read a text file, optionally windowed.

        Args:
            path: File to read
            line: 1-based line to start from
            limit: Maximum number of lines to return

        Returns:
            The selected lines joined with newlines, or the whole file
        """
        full_path = self.resolve(path)
        if not full_path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        if not full_path.is_file():
            raise IsADirectoryError(f"Path is not a file: {path}")
        if line is not None and line < 1:
            raise ValueError(f"line must be >= 1, got {line}")
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")

        log.info(f"📖 Reading file: {full_path} (line={line}, limit={limit})")
        content = full_path.read_text(encoding="utf-8")
        if line is None and limit is None:
            return content

        lines = content.split("\n")
        start = (line or 1) - 1
        end = len(lines) if limit is None else start + limit
        return "\n".join(lines[start:end])

    def write_text_file(self, path: str | Path, content: str) -> None:
        """Write a text file atomically, creating parent directories as needed."""
        full_path = self.resolve(path)
        log.info(f"📝 Writing file: {full_path}")
        full_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=f".{full_path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                fh.write(content)
            os.replace(tmp_name, full_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
