import os

import pytest

from logship.collector.log import LogCollector, LogFileCursor, RawParser, RegexParser
from logship.positions import JsonPositionStore

START = r"^\d{4}-\d{2}-\d{2} "

@pytest.fixture
def store(tmp_path):
	return JsonPositionStore(tmp_path / "state" / "positions.json")

def _append(path, text):
	with open(path, "ab") as f:
		f.write(text.encode())

def _commit(store, records):
	for r in records:
		store.commit_offset(r.source, r.offset, r.inode)

def test_reads_only_complete_lines(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("one\ntwo\nthr")

	cursor = LogFileCursor(path, "app.depth0", store)
	records = cursor.read_new()

	assert [r.fields["log"] for r in records] == ["one", "two"]
	assert records[-1].offset == len("one\ntwo\n")

	_append(path, "ee\n")

	records = cursor.read_new()

	assert [r.fields["log"] for r in records] == ["three"]
	assert records[0].offset == len("one\ntwo\nthree\n")

def test_no_redelivery_after_restart(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("one\ntwo\n")

	records = LogFileCursor(path, "app", store).read_new()
	_commit(store, records)
	store.flush()

	_append(path, "three\n")

	reopened = JsonPositionStore(store.path)
	records = LogFileCursor(path, "app", reopened).read_new()

	assert [r.fields["log"] for r in records] == ["three"]

def test_uncommitted_bytes_are_reread_after_restart(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("one\ntwo\n")

	first = LogFileCursor(path, "app", store).read_new()
	_commit(store, first[:1])

	records = LogFileCursor(path, "app", store).read_new()

	assert [r.fields["log"] for r in records] == ["two"]

def test_multiline_records_are_reassembled(tmp_path, store):
	path = tmp_path / "a.log"
	text = (
		"2024-01-01 00:00:00.12 Server boom\n"
		"  at frame one\n"
		"  at frame two\n"
		"2024-01-01 00:00:01.00 Server next\n"
	)
	path.write_text(text)

	cursor = LogFileCursor(path, "app", store, record_start=START, multiline_flush=5)
	records = cursor.read_new(now=100.0)

	assert len(records) == 1
	assert records[0].fields["log"].splitlines() == [
		"2024-01-01 00:00:00.12 Server boom",
		"  at frame one",
		"  at frame two",
	]
	assert records[0].offset == text.index("2024-01-01 00:00:01")

	# The last record waits for a continuation until the flush delay passes.
	assert cursor.read_new(now=101.0) == []

	held = cursor.read_new(now=106.0)

	assert [r.fields["log"] for r in held] == ["2024-01-01 00:00:01.00 Server next"]
	assert held[0].offset == len(text)

def test_continuation_arriving_later_joins_held_record(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("2024-01-01 00:00:00.12 first\n")

	cursor = LogFileCursor(path, "app", store, record_start=START)

	assert cursor.read_new(now=0.0) == []

	_append(path, "  more\n2024-01-01 00:00:02.00 second\n")

	records = cursor.read_new(now=1.0)

	assert [r.fields["log"] for r in records] == ["2024-01-01 00:00:00.12 first\n  more"]

def test_truncation_resets_offset(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("aaaa\nbbbb\ncccc\n")

	resets = []
	cursor = LogFileCursor(path, "app", store, on_reset=resets.append)
	_commit(store, cursor.read_new())

	with open(path, "w") as f:
		f.write("new\n")

	records = cursor.read_new()

	assert [r.fields["log"] for r in records] == ["new"]
	assert store.get_offset(str(path)) == 0
	assert resets == [str(path)]

def test_truncation_detected_on_startup(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("x\n")
	store.commit_offset(str(path), 500, path.stat().st_ino)

	records = LogFileCursor(path, "app", store).read_new()

	assert [r.fields["log"] for r in records] == ["x"]

def test_replaced_file_is_read_from_start(tmp_path, store):
	path = tmp_path / "a.log"
	path.write_text("old line\n")

	cursor = LogFileCursor(path, "app", store)
	_commit(store, cursor.read_new())

	replacement = tmp_path / "a.log.new"
	replacement.write_text("fresh line one\n")
	os.replace(replacement, path)

	records = cursor.read_new()

	assert [r.fields["log"] for r in records] == ["fresh line one"]

def test_regex_parser_keeps_raw_text():
	parser = RegexParser(r"^(?P<log_timestamp>\S+ \S+) (?P<source>\S+) (?P<message>.*)$")

	data = parser.parse("2024-01-01 00:00:00.12 Server boom\n  at frame")

	assert data["source"] == "Server"
	assert data["message"] == "boom\n  at frame"
	assert data["log"].startswith("2024-01-01")

	assert parser.parse("garbage") == {"log": "garbage"}

def test_collector_tags_and_evicts_gone_files(tmp_path, store):
	root = tmp_path / "logs"
	(root / "svc").mkdir(parents=True)
	path = root / "svc" / "a.log"
	path.write_text("hello\n")

	collector = LogCollector(
		[{"path": str(root), "tag": "app"}],
		store,
		max_depth=2,
		parser=RawParser(),
		gone_grace=10,
	)

	records = list(collector.collect(now=0.0))

	assert [(r.tag, r.fields["log"]) for r in records] == [("app.depth1", "hello")]

	_commit(store, records)
	path.unlink()

	assert list(collector.collect(now=1.0)) == []
	assert collector.cursors[path].state == "gone"

	list(collector.collect(now=20.0))

	assert path not in collector.cursors
	assert store.get_offset(str(path)) == len("hello\n")

def test_reappearing_file_resumes_from_stored_offset(tmp_path, store):
	root = tmp_path / "logs"
	root.mkdir()
	path = root / "a.log"
	path.write_text("one\n")

	collector = LogCollector([root], store, max_depth=0, gone_grace=0)
	_commit(store, list(collector.collect(now=0.0)))

	moved = tmp_path / "a.log.bak"
	os.replace(path, moved)
	list(collector.collect(now=1.0))
	list(collector.collect(now=2.0))

	os.replace(moved, path)
	_append(path, "two\n")

	records = list(collector.collect(now=3.0))

	assert [r.fields["log"] for r in records] == ["two"]

def test_file_back_within_grace_is_not_read_twice(tmp_path, store):
	root = tmp_path / "logs"
	root.mkdir()
	path = root / "a.log"
	path.write_text("one\n")

	collector = LogCollector([root], store, max_depth=0, gone_grace=60)

	# Read but never committed: still waiting in the forwarder's buffer.
	assert [r.fields["log"] for r in collector.collect(now=0.0)] == ["one"]

	moved = tmp_path / "a.log.bak"
	os.replace(path, moved)
	list(collector.collect(now=1.0))

	assert collector.cursors[path].state == "gone"

	os.replace(moved, path)
	_append(path, "two\n")

	records = list(collector.collect(now=2.0))

	assert [r.fields["log"] for r in records] == ["two"]
	assert collector.cursors[path].state == "tailing"
