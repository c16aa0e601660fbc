import hashlib
import os
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from gitignore_parser import parse_gitignore


def iter_source_files(
    root: str,
    extensions: Sequence[str],
    exclude_dirs: Sequence[str] = (),
    respect_gitignore: bool = True,
) -> Iterator[Path]:
    """
    Walks ``root`` in sorted order yielding files with a wanted extension,
    pruning excluded directories and anything matched by the root .gitignore.
    """
    base_dir = Path(root)
    matches = None
    gitignore_path = base_dir / ".gitignore"
    if respect_gitignore and gitignore_path.is_file():
        matches = parse_gitignore(str(gitignore_path), base_dir=str(base_dir))

    excluded = set(exclude_dirs)
    wanted = tuple(extensions)
    for dirpath, dirnames, filenames in os.walk(base_dir):
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in excluded and not (matches and matches(os.path.join(dirpath, d)))
        )
        for filename in sorted(filenames):
            if wanted and not filename.endswith(wanted):
                continue
            file_path = Path(dirpath) / filename
            if matches and matches(str(file_path)):
                continue
            yield file_path


def resolve_targets(
    target,
    extensions: Sequence[str],
    exclude_dirs: Sequence[str] = (),
    respect_gitignore: bool = True,
) -> List[Path]:
    """A directory is walked; an explicit file list is taken as given."""
    if isinstance(target, (str, os.PathLike)):
        path = Path(target)
        if path.is_dir():
            return list(iter_source_files(str(path), extensions, exclude_dirs, respect_gitignore))
        return [path]
    return [Path(p) for p in target]


def compute_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def read_lines(path: Path, start: int, end: Optional[int] = None) -> str:
    """Returns lines ``start``..``end`` (1-based, inclusive) with their line endings."""
    with open(path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    return "".join(lines[start - 1:(end or start)])
