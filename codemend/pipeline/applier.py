"""Writes fixes to disk and takes them back out.

Writes to one file are serialized through a per-path ``asyncio.Lock`` so
two pipelines never interleave edits of the same file. Each write keeps a
backup copy of the original file under ``backup_dir``.
"""
from __future__ import annotations

import ast
import asyncio
import difflib
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import structlog
from pydantic import BaseModel

from codemend.core.errors import FixConflict, RollbackFailed, ValidationError
from codemend.models.issue import Fix
from codemend.pipeline.generator import match_line_endings

logger = structlog.get_logger(__name__)


class FileLockRegistry:
    """Per-file locks; an entry lives only while someone holds or waits for it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, file_path: str) -> AsyncIterator[None]:
        key = str(Path(file_path).resolve())
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def held_paths(self) -> List[str]:
        return list(self._locks)


class ApplyResult(BaseModel):
    fix_id: str
    file_path: str
    backup_path: str
    original_content: str
    new_content: str
    start_line: int
    end_line: int
    diff: str = ""


def create_diff(original: str, new: str, filename: str = "file") -> str:
    diff = difflib.unified_diff(
        original.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=f"a/{filename}",
        tofile=f"b/{filename}",
    )
    return "".join(diff)


class FixApplier:
    def __init__(self, backup_dir: str = ".codemend/backups", validate_syntax: bool = True, locks: Optional[FileLockRegistry] = None):
        self.backup_dir = Path(backup_dir)
        self.validate_syntax = validate_syntax
        self.locks = locks if locks is not None else FileLockRegistry()

    async def apply(self, file_path: str, fix: Fix) -> ApplyResult:
        async with self.locks.hold(file_path):
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._apply_sync, Path(file_path), fix)

    async def revert(self, result: ApplyResult, fix: Fix) -> None:
        async with self.locks.hold(result.file_path):
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._revert_sync, result, fix)

    def _apply_sync(self, path: Path, fix: Fix) -> ApplyResult:
        if not path.is_file():
            raise FixConflict(f"File not found: {path}")
        content = path.read_text(encoding="utf-8")
        lines = content.splitlines(keepends=True)
        code = match_line_endings(fix.code, fix.original_code)
        backup_path = self.backup_dir / fix.id / path.name
        in_bounds = 1 <= fix.start_line <= fix.end_line <= len(lines)
        if not in_bounds or "".join(lines[fix.start_line - 1:fix.end_line]) != fix.original_code:
            # A retried write of the same fix is a no-op.
            already = self._already_applied(path, content, backup_path, fix, code)
            if already is not None:
                return already
            if not in_bounds:
                raise FixConflict(f"Lines {fix.start_line}-{fix.end_line} are outside {path}")
            raise FixConflict(f"{path}:{fix.start_line} changed since the fix was proposed")

        new_content = "".join(lines[:fix.start_line - 1]) + code + "".join(lines[fix.end_line:])
        if self.validate_syntax and path.suffix == ".py":
            try:
                ast.parse(new_content)
            except SyntaxError as e:
                raise ValidationError(f"Fix leaves {path} with a syntax error: {e}") from e

        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup_path)
        path.write_text(new_content, encoding="utf-8")

        new_line_count = len(code.splitlines())
        logger.info("fix_applied", file=str(path), fix_id=fix.id, backup=str(backup_path))
        return ApplyResult(
            fix_id=fix.id,
            file_path=str(path),
            backup_path=str(backup_path),
            original_content=content,
            new_content=new_content,
            start_line=fix.start_line,
            end_line=fix.start_line + new_line_count - 1,
            diff=create_diff(content, new_content, path.name),
        )

    def _already_applied(self, path: Path, content: str, backup_path: Path, fix: Fix, code: str) -> Optional[ApplyResult]:
        """Rebuilds the result of an earlier write of this same fix, if the file still holds exactly that write."""
        if fix.start_line < 1 or fix.end_line < fix.start_line or not backup_path.is_file():
            return None
        original = backup_path.read_text(encoding="utf-8")
        lines = original.splitlines(keepends=True)
        if "".join(lines[fix.start_line - 1:fix.end_line]) != fix.original_code:
            return None
        expected = "".join(lines[:fix.start_line - 1]) + code + "".join(lines[fix.end_line:])
        if content != expected:
            return None
        logger.info("fix_already_applied", file=str(path), fix_id=fix.id)
        return ApplyResult(
            fix_id=fix.id,
            file_path=str(path),
            backup_path=str(backup_path),
            original_content=original,
            new_content=content,
            start_line=fix.start_line,
            end_line=fix.start_line + len(code.splitlines()) - 1,
            diff=create_diff(original, content, path.name),
        )

    def _revert_sync(self, result: ApplyResult, fix: Fix) -> None:
        path = Path(result.file_path)
        current = path.read_text(encoding="utf-8") if path.is_file() else None
        if current is None:
            raise RollbackFailed(f"{path} no longer exists")

        if current == result.new_content:
            shutil.copy2(result.backup_path, path)
            logger.info("fix_reverted", file=str(path), fix_id=fix.id, mode="backup")
            return

        # The file moved on after our write; undo only our region if it is intact.
        lines = current.splitlines(keepends=True)
        code = match_line_endings(fix.code, fix.original_code)
        region = "".join(lines[result.start_line - 1:result.end_line])
        if region != code:
            raise RollbackFailed(f"{path}:{result.start_line} was modified after the fix was applied")
        reverted = "".join(lines[:result.start_line - 1]) + fix.original_code + "".join(lines[result.end_line:])
        path.write_text(reverted, encoding="utf-8")
        logger.info("fix_reverted", file=str(path), fix_id=fix.id, mode="region")
