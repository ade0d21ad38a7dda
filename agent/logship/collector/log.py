import re
import time

from abc import ABC, abstractmethod
from pathlib import Path

from .. import Loggable
from ..discovery import discover
from ..positions import PositionStore
from ..record import Record
from . import Collector

class Parser(ABC):
	NAME = ""

	@abstractmethod
	def parse(self, text: str) -> dict:
		pass

class RawParser(Parser):
	NAME = "raw"

	def parse(self, text: str) -> dict:
		return {"log": text}

class RegexParser(Parser):
	"""
	Extracts named groups from the first line of a record. Records that do
	not match (continuation-only text, foreign formats) are kept raw.
	"""

	NAME = "regex"

	def __init__(self, pattern):
		self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern

	def parse(self, text: str) -> dict:
		first, _, rest = text.partition("\n")
		m = self.pattern.match(first)

		if not m:
			return {"log": text}

		data = {k: v for k, v in m.groupdict().items() if v is not None}

		if rest and "message" in data:
			data["message"] = f"{data['message']}\n{rest}"

		data["log"] = text

		return data

class LogFileCursor(Loggable):
	"""
	Tails one file: Unseen -> Tailing -> (Truncated -> Tailing) | Gone.

	`position` is how far this cursor has read, which runs ahead of the
	committed offset in the store until the dispatcher has forwarded the
	records. The last record of every read is held back in `pending` because
	the next line may still be one of its continuations.
	"""

	def __init__(self,
		path: Path,
		tag: str,
		store: PositionStore,
		parser: Parser | None = None,
		record_start=None,
		max_read_bytes: int = 1024 * 1024,
		multiline_flush: float = 5.0,
		on_reset=None,
	):
		self.path = Path(path)
		self.tag = tag
		self.store = store
		self.parser = parser or RawParser()
		self.record_start = re.compile(record_start) if isinstance(record_start, str) else record_start
		self.max_read_bytes = max_read_bytes
		self.multiline_flush = multiline_flush
		self.on_reset = on_reset

		self.state = "unseen"
		self.position = 0
		self.inode = None
		self.gone_since = None

		self.pending = []
		self.pending_end = 0
		self.last_data = 0.0

	def __repr__(self):
		return f"LogFileCursor({self.path}, {self.state}, {self.position})"

	def _reset(self, inode, reason):
		self.log.warning(f"{self.path}: {reason}, re-reading from start")

		self.store.reset(str(self.path), inode)

		self.position = 0
		self.pending = []
		self.pending_end = 0

		if self.on_reset:
			self.on_reset(str(self.path))

	def _open(self, inode, size):
		saved = self.store.get(str(self.path))
		resumed = self.state == "gone" and inode == self.inode and size >= self.position

		self.inode = inode
		self.state = "tailing"

		if resumed:
			# Same file back; its read but uncommitted records are already queued.
			self.log.info(f"{self.path}: back, resuming at {self.position}")

		elif saved is None:
			self.position = 0

		elif saved.inode is not None and saved.inode != inode:
			self._reset(inode, "file replaced")

		elif size < saved.offset:
			self._reset(inode, "file truncated")

		else:
			self.position = saved.offset

		self.log.debug(f"{self.path}: tailing from {self.position}")

	def _record(self, lines, end) -> Record:
		return Record(
			tag=self.tag,
			fields=self.parser.parse("\n".join(lines)),
			source=str(self.path),
			offset=end,
			inode=self.inode,
		)

	def _take_pending(self) -> list[Record]:
		if not self.pending:
			return []

		record = self._record(self.pending, self.pending_end)
		self.pending = []

		return [record]

	def _is_start(self, line) -> bool:
		return self.record_start is None or bool(self.record_start.match(line))

	def read_new(self, now: float | None = None) -> list[Record]:
		"""
		Reads whatever complete lines were appended since the last call and
		returns the records completed by them. Never blocks for more data.
		"""

		now = time.monotonic() if now is None else now

		st = self.path.stat()
		inode = st.st_ino
		size = st.st_size

		if self.state != "tailing":
			self.gone_since = None
			self._open(inode, size)

		elif inode != self.inode:
			self.inode = inode
			self._reset(inode, "file replaced")

		else:
			committed = self.store.get_offset(str(self.path))

			if size < self.position or size < committed:
				self._reset(inode, "file truncated")

		if size == self.position:
			if self.pending and now - self.last_data >= self.multiline_flush:
				return self._take_pending()

			return []

		with self.path.open("rb") as f:
			f.seek(self.position)
			data = f.read(self.max_read_bytes)

		cut = data.rfind(b"\n")

		if cut < 0:
			# Wait for the newline unless a single line already fills a read.
			if len(data) < self.max_read_bytes:
				return []

			chunk = data

		else:
			chunk = data[:cut + 1]

		records = []
		pos = self.position

		for raw in chunk.split(b"\n"):
			if pos >= self.position + len(chunk):
				break

			pos = min(pos + len(raw) + 1, self.position + len(chunk))
			line = raw.decode("utf-8", errors="replace").rstrip("\r")

			if self.pending and not self._is_start(line):
				self.pending.append(line)

			else:
				records.extend(self._take_pending())
				self.pending = [line]

			self.pending_end = pos

		self.position += len(chunk)
		self.last_data = now

		if self.record_start is None:
			records.extend(self._take_pending())

		return records

	def mark_gone(self, now: float) -> list[Record]:
		"""
		The file is no longer discoverable. Whatever record was held back is
		complete now.
		"""

		if self.state != "gone":
			self.log.info(f"{self.path}: gone")

			self.state = "gone"
			self.gone_since = now

		return self._take_pending()

class LogCollector(Collector, Loggable):
	NAME = "logs"

	def __init__(self,
		roots,
		store: PositionStore,
		max_depth: int = 2,
		parser: Parser | None = None,
		record_start=None,
		max_read_bytes: int = 1024 * 1024,
		multiline_flush: float = 5.0,
		gone_grace: float = 60.0,
		on_reset=None,
	):
		self.roots = roots
		self.store = store
		self.max_depth = max_depth
		self.parser = parser or RawParser()
		self.record_start = record_start
		self.max_read_bytes = max_read_bytes
		self.multiline_flush = multiline_flush
		self.gone_grace = gone_grace
		self.on_reset = on_reset

		self.cursors: dict[Path, LogFileCursor] = {}

	def name(self):
		n = self.NAME

		if self.parser.NAME:
			n = f"{n}.{self.parser.NAME}"

		return n

	def _cursor(self, found) -> LogFileCursor:
		cursor = self.cursors.get(found.path)

		if cursor is None:
			cursor = LogFileCursor(
				found.path,
				found.tag,
				self.store,
				parser=self.parser,
				record_start=self.record_start,
				max_read_bytes=self.max_read_bytes,
				multiline_flush=self.multiline_flush,
				on_reset=self.on_reset,
			)

			self.cursors[found.path] = cursor

		return cursor

	def collect(self, now: float | None = None):
		now = time.monotonic() if now is None else now
		found = set()

		for f in discover(self.roots, self.max_depth):
			found.add(f.path)

			cursor = self._cursor(f)

			try:
				yield from cursor.read_new(now)

			except FileNotFoundError:
				yield from cursor.mark_gone(now)

			except OSError as e:
				# Retried on the next tick; tailing has no attempt cap.
				self.log.warning(f"{f.path}: read failed: {e}")

		evicted = []

		for path, cursor in self.cursors.items():
			if path in found:
				continue

			if cursor.state != "gone":
				yield from cursor.mark_gone(now)

			elif now - cursor.gone_since >= self.gone_grace:
				evicted.append(path)

		for path in evicted:
			# The stored offset stays, so a reappearing file resumes from it.
			self.log.info(f"{path}: evicted after {self.gone_grace}s")

			del self.cursors[path]
