import asyncio
import gzip
import json
import threading
import types

import pytest

import logship

from logship import Settings, load_config
from logship.agent import Agent
from logship.archive import ArchiveRecord, ArchiveStatus
from logship.errors import ConfigError
from logship.transport import TestTransport

LINES = [
	"2024-01-01 00:00:00.12 Server Starting up",
	"2024-01-01 00:00:01.50 Server Recovery complete",
]

def _settings(tmp_path, **kwargs):
	values = dict(
		LOG_ROOTS=[
			{"path": str(tmp_path / "logs" / "app"), "tag": "app"},
			{"path": str(tmp_path / "logs" / "sql"), "tag": "sql"},
		],
		MAX_DEPTH=2,
		ARCHIVE_ROOTS=[str(tmp_path / "logs" / "app" / "archive")],
		STATE_DIR=str(tmp_path / "state"),
		FORWARD_HOST="collector.invalid",
		MULTILINE_FLUSH=0,
	)
	values.update(kwargs)

	return Settings(**values)

def _write_archive(path, lines):
	path.parent.mkdir(parents=True, exist_ok=True)

	with gzip.open(path, "wt") as f:
		f.write("".join(f"{line}\n" for line in lines))

def _shutdown(agent):
	agent.positions.close()
	agent.lock.release()

def _events(transport):
	return [event for batch in transport.sent for event in batch]

def test_settings_defaults_and_required_keys():
	s = Settings.from_module(types.SimpleNamespace(
		LOG_ROOTS=["/var/log/app"],
		FORWARD_HOST="h",
		STATE_DIR="/srv/state",
	))

	assert s.TEMP_DIR == "/srv/state/decompressed"
	assert s.POSITION_STORE == "/srv/state/positions.db"
	assert s.BATCH_FILES == 3

	with pytest.raises(ConfigError):
		Settings.from_module(types.SimpleNamespace(LOG_ROOTS=[]))

def test_load_config_file(tmp_path, monkeypatch):
	path = tmp_path / "config.py"
	path.write_text('LOG_ROOTS = ["/var/log/app"]\nFORWARD_HOST = "logs.example.com"\nFORWARD_PORT = 5080\n')

	assert load_config(path).FORWARD_PORT == 5080

	monkeypatch.setattr(logship, "_CONFIG", None)
	monkeypatch.setenv("LOGSHIP_CONFIG", str(path))

	assert logship.config().FORWARD_HOST == "logs.example.com"

	monkeypatch.setattr(logship, "_CONFIG", None)
	monkeypatch.delenv("LOGSHIP_CONFIG")

	with pytest.raises(ConfigError):
		logship.config()

def test_single_writer_lock(tmp_path):
	agent = Agent(_settings(tmp_path), transport=TestTransport())

	try:
		with pytest.raises(RuntimeError):
			Agent(_settings(tmp_path), transport=TestTransport())

	finally:
		_shutdown(agent)

def test_end_to_end(tmp_path):
	settings = _settings(tmp_path)
	live = tmp_path / "logs" / "app" / "web" / "node1" / "current.log"
	live.parent.mkdir(parents=True)
	live.write_text("".join(f"{line}\n" for line in LINES))
	(tmp_path / "logs" / "sql").mkdir(parents=True)

	archive = tmp_path / "logs" / "app" / "archive" / "2023" / "old.log.gz"
	_write_archive(archive, [
		"2023-06-01 12:00:00,100 Server Archived event",
		"  continued detail",
		"2023-06-01 12:00:01,200 Server Another archived event",
	])

	transport = TestTransport()
	agent = Agent(settings, transport=transport)
	agent.pipeline.ctx.ip_lookup = lambda: "10.1.2.3"

	asyncio.run(agent.archive_once())

	record = agent.archives.state.files[str(archive)]

	assert record.status == ArchiveStatus.COMPLETED

	agent.tail_once()
	agent.tail_once()
	agent.ingest(agent.system.collect())
	asyncio.run(agent.dispatcher.flush())

	events = _events(transport)
	archived = [e for e in events if e["source_file_path"] == str(archive)]
	current = [e for e in events if e["source_file_path"] == str(live)]

	assert [e["message"] for e in archived] == [
		"Archived event\n  continued detail",
		"Another archived event",
	]
	assert [e["message"] for e in current] == ["Starting up", "Recovery complete"]
	assert len(events) == 4
	assert all("exec" not in e for e in events)
	assert all(e["host_fqdn"] for e in events)
	# The backlog read before the first probe still carries the host address.
	assert {(e["host_ip"], e["host_ip_class"]) for e in events} == {("10.1.2.3", "private_class_a")}
	assert archived[0]["_timestamp"] % 1_000_000_000 == 100_000_000
	assert archived[0]["log_category"] == "database"

	# Consumed: the next tick removes the decompressed copy.
	asyncio.run(agent.archive_once())

	assert record.status == ArchiveStatus.CLEANED
	assert list((tmp_path / "state" / "decompressed").iterdir()) == []

	agent.write_status()
	status = json.loads((tmp_path / "state" / "status.json").read_text())

	assert status["forwarder"]["sent"] == 4
	assert status["archives"]["cleaned"] == 1

	_shutdown(agent)

	# A restart neither re-sends committed bytes nor rescans the drained root.
	_write_archive(archive.with_name("late.log.gz"), ["2023-07-01 00:00:00,000 Server late"])

	transport = TestTransport()
	agent = Agent(settings, transport=transport)

	asyncio.run(agent.archive_once())
	agent.tail_once()
	agent.tail_once()
	asyncio.run(agent.dispatcher.flush())

	assert transport.sent == []
	assert str(archive.with_name("late.log.gz")) not in agent.archives.state.files

	_shutdown(agent)

def test_status_written_while_archives_are_scanned(tmp_path):
	agent = Agent(_settings(tmp_path), transport=TestTransport())
	errors = []
	done = threading.Event()

	def scan():
		for i in range(20000):
			agent.archives.state.add(ArchiveRecord(f"/archives/{i}.log.gz", 1, 0.0))

		done.set()

	worker = threading.Thread(target=scan)
	worker.start()

	try:
		while not done.is_set():
			try:
				agent.write_status()

			except RuntimeError as e:
				errors.append(e)

	finally:
		worker.join()

	agent.write_status()
	_shutdown(agent)

	assert errors == []

	status = json.loads((tmp_path / "state" / "status.json").read_text())

	assert status["archives"]["pending"] == 20000

def test_status_loop_outlives_a_failed_write(tmp_path, monkeypatch):
	agent = Agent(_settings(tmp_path, FLUSH_INTERVAL=0), transport=TestTransport())
	calls = []

	def write_status():
		calls.append(1)

		if len(calls) == 2:
			agent.stop()

		raise RuntimeError("dictionary changed size during iteration")

	monkeypatch.setattr(agent, "write_status", write_status)

	try:
		asyncio.run(agent.handle_status())

	finally:
		_shutdown(agent)

	assert len(calls) == 2
