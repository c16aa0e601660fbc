from pathlib import Path

from codemend.crawler.files import compute_hash, iter_source_files, read_lines, resolve_targets


def _tree(root: Path) -> None:
    (root / "pkg").mkdir()
    (root / "pkg" / "a.py").write_text("a = 1\n")
    (root / "pkg" / "b.js").write_text("let b;\n")
    (root / "pkg" / "notes.txt").write_text("hi\n")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.js").write_text("x\n")
    (root / "generated").mkdir()
    (root / "generated" / "out.py").write_text("y = 2\n")
    (root / ".gitignore").write_text("generated/\n")


def test_walk_respects_extensions_excludes_and_gitignore(tmp_path: Path):
    _tree(tmp_path)
    found = [p.relative_to(tmp_path).as_posix() for p in iter_source_files(str(tmp_path), [".py", ".js"], ["node_modules"])]
    assert found == ["pkg/a.py", "pkg/b.js"]


def test_gitignore_can_be_disabled(tmp_path: Path):
    _tree(tmp_path)
    found = [p.name for p in iter_source_files(str(tmp_path), [".py"], ["node_modules"], respect_gitignore=False)]
    assert sorted(found) == ["a.py", "out.py"]


def test_resolve_targets_accepts_file_lists(tmp_path: Path):
    assert resolve_targets(["x.py", "y.py"], [".py"]) == [Path("x.py"), Path("y.py")]
    single = tmp_path / "one.py"
    single.write_text("")
    assert resolve_targets(str(single), [".py"]) == [single]


def test_read_lines_is_one_based_and_inclusive(tmp_path: Path):
    path = tmp_path / "m.py"
    path.write_text("one\ntwo\nthree\n")
    assert read_lines(path, 2) == "two\n"
    assert read_lines(path, 2, 3) == "two\nthree\n"


def test_compute_hash_is_stable():
    assert compute_hash(b"abc") == compute_hash(b"abc")
    assert compute_hash(b"abc") != compute_hash(b"abd")
