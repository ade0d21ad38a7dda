import os
import asyncio
import fcntl
import signal
import logging
import json

from datetime import datetime, timezone
from pathlib import Path

from . import config, Loggable
from .archive import ARCHIVE_TAG, ArchiveProcessor, PathMapping
from .collector.log import LogCollector, RegexParser
from .collector.system import SystemCollector
from .discovery import Root, make_roots
from .dispatch import Dispatcher
from .enrich import Pipeline, PipelineContext
from .positions import open_position_store
from .transport import DebugTransport, HTTPTransport

class StateLock(Loggable):
	"""
	Exclusive lock on the state directory: one writer for the position store
	and the processing state.
	"""

	def __init__(self, path: Path):
		self.path = Path(path)
		self._fd = None

	def acquire(self):
		self.path.parent.mkdir(parents=True, exist_ok=True)

		fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)

		try:
			fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

		except OSError:
			os.close(fd)

			raise RuntimeError(f"Another agent holds {self.path}")

		os.ftruncate(fd, 0)
		os.write(fd, str(os.getpid()).encode())

		self._fd = fd

	def release(self):
		if self._fd is None:
			return

		fcntl.flock(self._fd, fcntl.LOCK_UN)
		os.close(self._fd)

		self._fd = None

class Agent(Loggable):
	def __init__(self, settings=None, transport=None):
		self.settings = settings or config()

		s = self.settings
		state_dir = Path(s.STATE_DIR)

		self.lock = StateLock(state_dir / "logship.lock")
		self.lock.acquire()

		self.positions = open_position_store(s.POSITION_STORE)
		self.mapping = PathMapping(state_dir / "path_mappings.txt")

		self.archives = ArchiveProcessor(
			state_dir / "processing_state.json",
			s.TEMP_DIR,
			state_dir,
			mapping=self.mapping,
			batch_size=s.BATCH_FILES,
			batch_bytes=s.BATCH_BYTES,
			max_file_size=s.MAX_ARCHIVE_SIZE,
			max_depth=s.ARCHIVE_MAX_DEPTH,
			interval=s.ARCHIVE_INTERVAL,
		)

		if transport is None:
			if s.TRANSPORT == "debug":
				transport = DebugTransport(s.COMPRESSION_THRESHOLD)

			else:
				transport = HTTPTransport.from_settings(s)

		self.transport = transport
		self.dispatcher = Dispatcher(
			self.transport,
			self.positions,
			interval=s.FLUSH_INTERVAL,
			batch_size=s.BATCH_SIZE,
			buffer_limit=s.BUFFER_LIMIT,
			retry_initial=s.RETRY_INITIAL,
			retry_max=s.RETRY_MAX,
		)

		self.pipeline = Pipeline(PipelineContext(
			mapping=self.mapping,
			environment=s.ENVIRONMENT,
			data_pipeline=s.DATA_PIPELINE,
		))

		self.tail_roots = make_roots(s.LOG_ROOTS)

		# Decompressed archives are tailed like any other root, at depth 0.
		self.logs = LogCollector(
			self.tail_roots,
			self.positions,
			max_depth=s.MAX_DEPTH,
			parser=RegexParser(s.RECORD_REGEX) if s.RECORD_REGEX else None,
			record_start=s.RECORD_START or None,
			max_read_bytes=s.MAX_READ_BYTES,
			multiline_flush=s.MULTILINE_FLUSH,
			gone_grace=s.GONE_GRACE,
			on_reset=self.dispatcher.discard,
		)
		self.decompressed = LogCollector(
			[Root(Path(s.TEMP_DIR), ARCHIVE_TAG)],
			self.positions,
			max_depth=0,
			parser=self.logs.parser,
			record_start=self.logs.record_start,
			max_read_bytes=s.MAX_READ_BYTES,
			multiline_flush=s.MULTILINE_FLUSH,
			gone_grace=s.GONE_GRACE,
			on_reset=self.dispatcher.discard,
		)
		self.system = SystemCollector()

		self._running = True
		self._stopping = asyncio.Event()

	def should_stop(self) -> bool:
		return not self._running

	async def _pause(self, seconds):
		try:
			await asyncio.wait_for(self._stopping.wait(), seconds)

		except asyncio.TimeoutError:
			pass

	def ingest(self, records) -> int:
		count = 0

		for record in records:
			try:
				enriched = self.pipeline.process(record)

			except Exception as e:
				self.log.warning(f"{record.tag}: enrichment failed: {e}")

				enriched = None

			if enriched is None:
				self.dispatcher.checkpoint(record)

				continue

			self.dispatcher.enqueue(enriched)

			count += 1

		return count

	def tail_once(self) -> int:
		count = 0

		for c in (self.logs, self.decompressed):
			try:
				count += self.ingest(c.collect())

			except Exception as e:
				self.log.warning(f"{c}: collect failed: {e}")

		return count

	async def handle_tail(self):
		while self._running:
			count = self.tail_once()

			if count:
				self.log.debug(f"queued {count} records")

			await self._pause(self.settings.TAIL_INTERVAL)

	async def handle_probe(self):
		while self._running:
			try:
				self.ingest(self.system.collect())

			except Exception as e:
				self.log.warning(f"{self.system}: probe failed: {e}")

			await self._pause(self.settings.PROBE_INTERVAL)

	async def archive_once(self):
		s = self.settings
		tailing = [r.path for r in self.tail_roots]

		# Decompression leaves the loop free; cleanup touches the position
		# store, so it stays on the loop thread.
		counts = await asyncio.to_thread(
			self.archives.run,
			s.ARCHIVE_ROOTS,
			tailing,
			self.should_stop,
		)

		removed = self.archives.cleanup(self.positions)

		if removed:
			self.log.info(f"Removed {removed} consumed temp files")

		return counts

	async def handle_archives(self):
		while self._running:
			try:
				await self.archive_once()

			except Exception as e:
				self.log.warning(f"Archive tick failed: {e}")

			await self._pause(self.settings.ARCHIVE_INTERVAL)

	def write_status(self):
		status = {
			"updated": datetime.now(timezone.utc).isoformat(),
			"pid": os.getpid(),
			"forwarder": self.dispatcher.status(),
			"archives": self.archives.state.counters(),
			"tailing": len(self.logs.cursors) + len(self.decompressed.cursors),
		}

		path = Path(self.settings.STATE_DIR) / "status.json"
		tmp = path.with_suffix(".tmp")
		tmp.write_text(json.dumps(status, indent=2))
		os.replace(tmp, path)

	async def handle_status(self):
		while self._running:
			try:
				self.write_status()

			except Exception as e:
				self.log.warning(f"Status write failed: {e}")

			await self._pause(self.settings.FLUSH_INTERVAL)

	async def run(self):
		self.log.info("Running")

		tasks = [
			asyncio.create_task(self.dispatcher.run()),
			asyncio.create_task(self.handle_tail()),
			asyncio.create_task(self.handle_probe()),
			asyncio.create_task(self.handle_archives()),
			asyncio.create_task(self.handle_status()),
		]

		try:
			await asyncio.gather(*tasks)

		except asyncio.CancelledError:
			pass

		finally:
			self.log.info("Stopping tasks")

			for task in tasks:
				task.cancel()

			await asyncio.gather(*tasks, return_exceptions=True)

			await self.dispatcher.close()
			await self.transport.close()

			self.write_status()
			self.positions.close()
			self.lock.release()

			self.log.info("Stopping tasks complete")

	def stop(self):
		self.log.info("Stopping")

		self._running = False
		self._stopping.set()
		self.dispatcher.stop()

async def main():
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
	)

	agent = Agent()
	loop = asyncio.get_running_loop()

	loop.add_signal_handler(signal.SIGTERM, agent.stop)
	loop.add_signal_handler(signal.SIGINT, agent.stop)

	await agent.run()

if __name__ == "__main__":
	asyncio.run(main())
