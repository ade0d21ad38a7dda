from pathlib import Path

from logship.discovery import Root, depth_pattern, discover, make_roots

def _touch(path: Path):
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text("x\n")

	return path

def test_depth_pattern():
	assert depth_pattern(0, "*.log") == "*.log"
	assert depth_pattern(2, "*.gz") == "*/*/*.gz"

def test_make_roots_accepts_strings_and_dicts(tmp_path):
	roots = make_roots([str(tmp_path / "app"), {"path": str(tmp_path / "db"), "tag": "sql"}])

	assert roots == [Root(tmp_path / "app", "app"), Root(tmp_path / "db", "sql")]

def test_discovers_up_to_max_depth(tmp_path):
	_touch(tmp_path / "a.log")
	_touch(tmp_path / "one" / "b.log")
	_touch(tmp_path / "one" / "two" / "c.log")
	_touch(tmp_path / "one" / "two" / "three" / "d.log")
	_touch(tmp_path / "one" / "ignored.txt")

	found = list(discover([{"path": str(tmp_path), "tag": "app"}], max_depth=2))

	assert [(f.path.name, f.depth, f.tag) for f in found] == [
		("a.log", 0, "app.depth0"),
		("b.log", 1, "app.depth1"),
		("c.log", 2, "app.depth2"),
	]

def test_missing_root_is_skipped(tmp_path):
	_touch(tmp_path / "real" / "a.log")

	found = list(discover([tmp_path / "missing", tmp_path / "real"], max_depth=0))

	assert [f.path.name for f in found] == ["a.log"]

def test_archive_pattern(tmp_path):
	_touch(tmp_path / "x" / "old.log.gz")
	_touch(tmp_path / "x" / "live.log")

	found = list(discover([tmp_path], max_depth=1, pattern="*.gz"))

	assert [f.path.name for f in found] == ["old.log.gz"]

def test_rediscovery_is_idempotent(tmp_path):
	_touch(tmp_path / "a.log")

	first = list(discover([tmp_path], max_depth=1))
	second = list(discover([tmp_path], max_depth=1))

	assert first == second
