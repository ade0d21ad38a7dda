import asyncio
import time

from collections import deque
from typing import NamedTuple

from . import Loggable
from .errors import FatalError, PositionError, RetryableError
from .positions import PositionStore
from .record import Record

class Entry(NamedTuple):
	payload: dict | None
	source: str | None
	offset: int | None
	inode: int | None

class Dispatcher(Loggable):
	"""
	Buffers enriched records and forwards them in batches.

	Offsets are committed to the position store only after the transport has
	acknowledged the batch that carried them. Records the pipeline dropped
	ride along as payload-less entries so their offsets commit in order too.
	When the buffer is full the oldest entries are discarded.
	"""

	def __init__(self,
		transport,
		positions: PositionStore | None = None,
		interval: float = 5.0,
		batch_size: int = 500,
		buffer_limit: int = 50000,
		retry_initial: float = 1.0,
		retry_max: float = 60.0,
		clock=time.monotonic,
	):
		self.transport = transport
		self.positions = positions
		self.interval = interval
		self.batch_size = batch_size
		self.buffer_limit = buffer_limit
		self.retry_initial = retry_initial
		self.retry_max = retry_max
		self.clock = clock

		self.buffer: deque[Entry] = deque()

		self.backoff = 0.0
		self.retry_at = 0.0
		self.halted: str | None = None

		self.sent = 0
		self.dropped = 0
		self.failures = 0

		self._running = True
		self._stopping = asyncio.Event()

	def _push(self, entry: Entry):
		if len(self.buffer) >= self.buffer_limit:
			self.buffer.popleft()
			self.dropped += 1

			if self.dropped == 1 or self.dropped % 1000 == 0:
				self.log.warning(f"Buffer full ({self.buffer_limit}), dropped {self.dropped} oldest")

		self.buffer.append(entry)

	def enqueue(self, record: Record):
		self._push(Entry(record.payload(), record.source, record.offset, record.inode))

	def checkpoint(self, record: Record):
		"""
		Queue the position of a record that will not be forwarded.
		"""

		if record.source is None or record.offset is None:
			return

		self._push(Entry(None, record.source, record.offset, record.inode))

	def discard(self, source: str):
		"""
		Drops buffered entries of a file whose position was just reset, so
		their stale offsets are never committed.
		"""

		before = len(self.buffer)
		self.buffer = deque(e for e in self.buffer if e.source != source)

		if len(self.buffer) != before:
			self.log.info(f"{source}: discarded {before - len(self.buffer)} buffered entries")

	def _commit(self, entries):
		if self.positions is None:
			return

		latest = {}

		for e in entries:
			if e.source is not None and e.offset is not None:
				latest[e.source] = (e.offset, e.inode)

		for source, (offset, inode) in latest.items():
			try:
				self.positions.commit_offset(source, offset, inode)

			except PositionError as e:
				self.log.warning(str(e))

		self.positions.flush()

	def _take(self):
		entries = []

		while self.buffer and len(entries) < self.batch_size:
			entries.append(self.buffer.popleft())

		return entries

	def _requeue(self, entries):
		self.buffer.extendleft(reversed(entries))

		while len(self.buffer) > self.buffer_limit:
			self.buffer.popleft()
			self.dropped += 1

	async def send_one(self) -> bool:
		"""
		Sends a single batch. Returns True when more sending makes sense now.
		"""

		entries = self._take()

		if not entries:
			return False

		events = [e.payload for e in entries if e.payload is not None]

		if not events:
			self._commit(entries)

			return True

		try:
			await self.transport.send(events)

		except FatalError as e:
			self._requeue(entries)

			self.halted = str(e)
			self.failures += 1

			self.log.error(f"Forwarding halted until reconfigured: {e}")

			return False

		except RetryableError as e:
			self._requeue(entries)

			self.backoff = min(
				self.retry_max,
				self.backoff * 2 if self.backoff else self.retry_initial,
			)
			self.retry_at = self.clock() + self.backoff
			self.failures += 1

			self.log.warning(f"Send failed, retrying in {self.backoff:.1f}s: {e}")

			return False

		self.backoff = 0.0
		self.retry_at = 0.0
		self.sent += len(events)

		self._commit(entries)

		self.log.info(f"Flushed batch ({len(events)} events)")

		return True

	async def flush(self, force: bool = False):
		"""
		Drain the buffer in batches, stopping at the first failure.
		"""

		if self.halted:
			return

		if not force and self.clock() < self.retry_at:
			return

		while self.buffer:
			if not await self.send_one():
				break

	async def run(self):
		"""
		Periodically flush queued payloads.
		"""

		self.log.info(f"Running with {self.interval}s interval")

		while self._running:
			try:
				await asyncio.wait_for(self._stopping.wait(), self.interval)

			except asyncio.TimeoutError:
				await self.flush()

		self.log.info("Stopped")

	def stop(self):
		self._running = False
		self._stopping.set()

	def status(self) -> dict:
		return {
			"buffered": len(self.buffer),
			"sent": self.sent,
			"dropped": self.dropped,
			"failures": self.failures,
			"backoff": self.backoff,
			"halted": self.halted,
		}

	async def close(self):
		"""
		Stop dispatcher and make one last attempt at the remaining events.
		"""

		self._running = False

		await self.flush(force=True)

		if self.positions is not None:
			self.positions.flush()
