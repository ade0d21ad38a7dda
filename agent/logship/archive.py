import gzip
import hashlib
import json
import os
import posixpath
import secrets
import shutil
import tempfile
import threading
import time
import zlib

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from . import Loggable
from .discovery import discover, make_roots
from .errors import StateError

ARCHIVE_TAG = "archive"
STATE_VERSION = 1
COPY_CHUNK = 1024 * 1024

class ArchiveStatus(str, Enum):
	PENDING = "pending"
	COMPLETED = "completed"
	FAILED = "failed"
	CLEANED = "cleaned"

# Failed records are terminal; extraction_attempts records why, nothing re-queues them.
TRANSITIONS = {
	ArchiveStatus.PENDING: {ArchiveStatus.COMPLETED, ArchiveStatus.FAILED},
	ArchiveStatus.COMPLETED: {ArchiveStatus.CLEANED},
	ArchiveStatus.FAILED: set(),
	ArchiveStatus.CLEANED: set(),
}

def normalize(path) -> str:
	s = posixpath.normpath(str(path).replace("\\", "/"))

	if len(s) > 1:
		s = s.rstrip("/")

	return s.lower()

def is_within(path, root) -> bool:
	path, root = normalize(path), normalize(root)

	return path == root or path.startswith(root.rstrip("/") + "/")

def overlapping_roots(archive_root, tailing_roots) -> list:
	return [
		t for t in tailing_roots
		if is_within(archive_root, t) or is_within(t, archive_root)
	]

def overlap(archive_root, tailing_roots) -> bool:
	"""
	True when archive_root equals, contains, or sits inside any tailing root.
	Comparison is case-insensitive and accepts either path separator.
	"""

	return bool(overlapping_roots(archive_root, tailing_roots))

def _atomic_write(path: Path, text: str):
	path.parent.mkdir(parents=True, exist_ok=True)

	fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")

	try:
		with os.fdopen(fd, "w") as f:
			f.write(text)

		os.replace(tmp, path)

	except Exception:
		os.unlink(tmp)

		raise

@dataclass
class ArchiveRecord:
	original_path: str
	size: int
	modified_time: float
	status: ArchiveStatus = ArchiveStatus.PENDING
	extraction_attempts: int = 0
	temp_file_path: str | None = None
	discovered_at: float = field(default_factory=time.time)
	completed_at: float | None = None
	error: str | None = None

	def transition(self, status: ArchiveStatus):
		if status not in TRANSITIONS[self.status]:
			raise StateError(
				f"{self.original_path}: {self.status.value} -> {status.value} not allowed"
			)

		self.status = status

	def to_dict(self) -> dict:
		data = asdict(self)
		data["status"] = self.status.value

		return data

	@classmethod
	def from_dict(cls, data: dict) -> "ArchiveRecord":
		data = dict(data)
		data["status"] = ArchiveStatus(data.get("status", "pending"))

		return cls(**data)

@dataclass
class BatchResult:
	processed: list[str] = field(default_factory=list)
	failed: list[str] = field(default_factory=list)

	def __bool__(self):
		return bool(self.processed or self.failed)

class ProcessingState(Loggable):
	"""
	Every ArchiveRecord plus the batch configuration, kept as one versioned
	JSON document. Each mutation rewrites the whole document.
	"""

	def __init__(self,
		path: Path,
		temp_dir: Path,
		batch_size: int,
		batch_byte_ceiling: int,
		interval: float,
		initialization_timestamp: str | None = None,
		files=None,
	):
		self.path = Path(path)
		self.temp_dir = Path(temp_dir)
		self.batch_size = batch_size
		self.batch_byte_ceiling = batch_byte_ceiling
		self.interval = interval
		self.initialization_timestamp = (
			initialization_timestamp or datetime.now(timezone.utc).isoformat()
		)

		# The archive tick runs in a worker thread while the loop thread reads
		# counters for status; every access to `files` goes through `lock`.
		self.lock = threading.RLock()
		self.files: dict[str, ArchiveRecord] = {}

		for record in files or []:
			self.files[record.original_path] = record

	@classmethod
	def load(cls, path, temp_dir, batch_size, batch_byte_ceiling, interval):
		path = Path(path)
		fresh = cls(path, temp_dir, batch_size, batch_byte_ceiling, interval)

		if not path.exists():
			return fresh

		try:
			doc = json.loads(path.read_text())

			if doc.get("version") != STATE_VERSION:
				raise ValueError(f"unsupported version {doc.get('version')}")

			files = [ArchiveRecord.from_dict(f) for f in doc.get("files", [])]

		except (OSError, ValueError, TypeError, KeyError) as e:
			cls.log.warning(f"Unreadable processing state {path}, rescanning: {e}")

			return fresh

		return cls(
			path,
			temp_dir,
			batch_size,
			batch_byte_ceiling,
			interval,
			initialization_timestamp=doc.get("initialization_timestamp"),
			files=files,
		)

	def records(self) -> list[ArchiveRecord]:
		with self.lock:
			return list(self.files.values())

	def add(self, record: ArchiveRecord):
		with self.lock:
			self.files[record.original_path] = record

	def counters(self) -> dict:
		records = self.records()
		counts = {s.value: 0 for s in ArchiveStatus}

		for record in records:
			counts[record.status.value] += 1

		counts["total"] = len(records)

		return counts

	def save(self):
		records = self.records()
		doc = {
			"version": STATE_VERSION,
			"initialization_timestamp": self.initialization_timestamp,
			"temp_dir": str(self.temp_dir),
			"batch_size": self.batch_size,
			"batch_byte_ceiling": self.batch_byte_ceiling,
			"interval": self.interval,
			"files": [r.to_dict() for r in records],
			"counters": self.counters(),
		}

		_atomic_write(self.path, json.dumps(doc, indent=2))

	def records_under(self, root) -> list[ArchiveRecord]:
		return [r for r in self.records() if is_within(r.original_path, root)]

	def pending(self, root=None) -> list[ArchiveRecord]:
		records = self.records() if root is None else self.records_under(root)

		return [r for r in records if r.status == ArchiveStatus.PENDING]

	def completed(self) -> list[ArchiveRecord]:
		return [r for r in self.records() if r.status == ArchiveStatus.COMPLETED]

class PathMapping(Loggable):
	"""
	temp filename -> original archive path, one `filename=original_path` per
	line. A cache derived from ProcessingState, never the source of truth.
	"""

	def __init__(self, path: Path):
		self.path = Path(path)

		self._map = {}
		self._lock = threading.Lock()

	def load(self):
		mapping = {}

		with self._lock:
			try:
				text = self.path.read_text()

			except FileNotFoundError:
				text = ""

			for line in text.splitlines():
				name, sep, original = line.partition("=")

				if sep and name:
					mapping[name] = original

			self._map = mapping

		return self

	def reload(self):
		return self.load()

	def lookup(self, filename: str) -> str | None:
		return self._map.get(filename)

	def __len__(self):
		return len(self._map)

	def append(self, filename: str, original_path: str):
		self.path.parent.mkdir(parents=True, exist_ok=True)

		with self._lock:
			with self.path.open("a") as f:
				f.write(f"{filename}={original_path}\n")

			self._map = {**self._map, filename: original_path}

	def rebuild(self, state: ProcessingState):
		mapping = {
			Path(r.temp_file_path).name: r.original_path
			for r in state.completed()
			if r.temp_file_path
		}

		with self._lock:
			_atomic_write(
				self.path,
				"".join(f"{name}={original}\n" for name, original in mapping.items()),
			)

			self._map = mapping

class CompletionMarker:
	"""
	Durable flag for one (archive_root, tailing_root) overlap pair. Once set,
	the archive root is never scanned again.
	"""

	def __init__(self, state_dir: Path, archive_root, tailing_root):
		self.archive_root = str(archive_root)
		self.tailing_root = str(tailing_root)

		key = f"{normalize(archive_root)}|{normalize(tailing_root)}"
		digest = hashlib.sha1(key.encode()).hexdigest()[:12]

		self.path = Path(state_dir) / f"archive_complete_{digest}.json"

	def is_set(self) -> bool:
		return self.path.exists()

	def set(self, counts: dict):
		_atomic_write(self.path, json.dumps({
			"archive_root": self.archive_root,
			"tailing_root": self.tailing_root,
			"completed_at": datetime.now(timezone.utc).isoformat(),
			"counts": counts,
		}, indent=2))

class ArchiveProcessor(Loggable):
	def __init__(self,
		state_path: Path,
		temp_dir: Path,
		state_dir: Path,
		mapping: PathMapping | None = None,
		batch_size: int = 3,
		batch_bytes: int = 100 * 1024 * 1024,
		max_file_size: int = 1024 * 1024 * 1024,
		max_depth: int = 2,
		interval: float = 60.0,
	):
		self.temp_dir = Path(temp_dir)
		self.state_dir = Path(state_dir)
		self.mapping = mapping or PathMapping(self.state_dir / "path_mappings.txt")
		self.batch_size = batch_size
		self.batch_bytes = batch_bytes
		self.max_file_size = max_file_size
		self.max_depth = max_depth

		self.state = ProcessingState.load(
			state_path,
			self.temp_dir,
			batch_size,
			batch_bytes,
			interval,
		)

		self.reconcile()

	def reconcile(self):
		"""
		Removes temp output that no completed record owns: `.part` leftovers
		and files renamed into place just before a crash lost the state save.
		"""

		self.temp_dir.mkdir(parents=True, exist_ok=True)

		owned = {
			Path(r.temp_file_path).name
			for r in self.state.completed()
			if r.temp_file_path
		}

		for path in self.temp_dir.iterdir():
			if path.is_file() and path.name not in owned:
				self.log.warning(f"Removing orphaned temp file {path}")

				path.unlink(missing_ok=True)

		self.mapping.rebuild(self.state)

	def scan(self, roots, max_depth: int | None = None) -> list[ArchiveRecord]:
		"""
		Discovers `*.gz` under roots and merges new ones as pending. Records
		already known are left untouched whatever their status.
		"""

		max_depth = self.max_depth if max_depth is None else max_depth
		found = []
		added = 0

		for f in discover(roots, max_depth, pattern="*.gz"):
			key = str(f.path)
			record = self.state.files.get(key)

			if record is None:
				try:
					st = f.path.stat()

				except OSError as e:
					self.log.warning(f"{f.path}: stat failed: {e}")

					continue

				record = ArchiveRecord(key, st.st_size, st.st_mtime)
				self.state.add(record)

				added += 1

			found.append(record)

		if added:
			self.log.info(f"Discovered {added} new archives")

			self.state.save()

		return found

	def _select(self, records, max_files, max_total_bytes):
		selected = []
		oversized = []
		total = 0

		for record in records:
			if record.size > self.max_file_size:
				oversized.append(record)

				continue

			if selected and (
				len(selected) >= max_files
				or total + record.size > max_total_bytes
			):
				break

			selected.append(record)
			total += record.size

			# An oversized-for-the-batch file still goes alone.
			if total > max_total_bytes:
				break

		return selected, oversized

	def _temp_name(self, original: Path) -> str:
		stem = original.name

		for suffix in (".gz", ".log"):
			if stem.endswith(suffix):
				stem = stem[:-len(suffix)]

		stamp = datetime.now().strftime("%Y%m%d_%H%M%S")

		return f"{stem}_{stamp}_{secrets.token_hex(4)}.log"

	def _decompress(self, record: ArchiveRecord) -> Path:
		target = self.temp_dir / self._temp_name(Path(record.original_path))
		part = target.with_name(target.name + ".part")

		try:
			with gzip.open(record.original_path, "rb") as src, part.open("wb") as dst:
				shutil.copyfileobj(src, dst, COPY_CHUNK)

			# Mapped before the file is visible to the tail reader.
			self.mapping.append(target.name, record.original_path)

			os.replace(part, target)

		except BaseException:
			part.unlink(missing_ok=True)

			raise

		return target

	def _fail(self, record: ArchiveRecord, reason: str):
		record.transition(ArchiveStatus.FAILED)
		record.extraction_attempts += 1
		record.error = reason

		self.log.warning(f"{record.original_path}: failed: {reason}")

	def process_batch(self,
		max_files: int | None = None,
		max_total_bytes: int | None = None,
		root=None,
		should_stop=None,
	) -> BatchResult:
		"""
		Decompresses one batch of pending archives into the temp directory.

		The batch is cut at whichever of max_files / max_total_bytes is hit
		first, but is never empty while an eligible archive is pending. One
		bad archive does not stop its siblings. The state document is saved
		after every file, so a crash loses at most the file in flight.
		"""

		max_files = self.batch_size if max_files is None else max_files
		max_total_bytes = self.batch_bytes if max_total_bytes is None else max_total_bytes

		result = BatchResult()
		selected, oversized = self._select(self.state.pending(root), max_files, max_total_bytes)

		for record in oversized:
			self._fail(record, f"size {record.size} exceeds limit {self.max_file_size}")

			result.failed.append(record.original_path)

		if oversized:
			self.state.save()

		for record in selected:
			if should_stop and should_stop():
				self.log.info("Stopping before next archive")

				break

			start = time.monotonic()

			try:
				target = self._decompress(record)

			except (OSError, EOFError, zlib.error) as e:
				self._fail(record, str(e))

				result.failed.append(record.original_path)

			else:
				record.transition(ArchiveStatus.COMPLETED)
				record.temp_file_path = str(target)
				record.completed_at = time.time()
				record.error = None

				result.processed.append(record.original_path)

				self.log.info(
					f"{record.original_path} -> {target.name} "
					f"({time.monotonic() - start:.2f}s)"
				)

			self.state.save()

		return result

	def cleanup(self, positions) -> int:
		"""
		Deletes decompressed files the tail reader has fully consumed and
		marks their records cleaned. A file still being tailed is never
		touched.
		"""

		removed = 0

		for record in self.state.completed():
			path = Path(record.temp_file_path)

			try:
				size = path.stat().st_size

			except FileNotFoundError:
				self.log.warning(f"{path}: temp file already gone")

				size = None

			if size is not None:
				if size == 0 or positions.get_offset(str(path)) < size:
					continue

				path.unlink(missing_ok=True)

				removed += 1

			positions.forget(str(path))

			record.transition(ArchiveStatus.CLEANED)
			record.temp_file_path = None

			self.log.info(f"Cleaned {path.name} ({record.original_path})")

		if removed:
			positions.flush()

		self.state.save()

		return removed

	def run(self, archive_roots, tailing_roots, should_stop=None) -> dict:
		"""
		One archive tick. Roots overlapping a tailed tree are drained in as
		many batches as it takes and then marked complete for good; others
		get a single batch per tick.
		"""

		for root in make_roots(archive_roots):
			if should_stop and should_stop():
				break

			overlapping = overlapping_roots(root.path, tailing_roots)

			if not overlapping:
				self.scan([root])
				self.process_batch(root=root.path, should_stop=should_stop)

				continue

			markers = [CompletionMarker(self.state_dir, root.path, t) for t in overlapping]

			if all(m.is_set() for m in markers):
				self.log.debug(f"{root.path}: already drained, skipping")

				continue

			if not Path(root.path).is_dir():
				self.log.warning(f"{root.path}: archive root missing, skipping")

				continue

			self.scan([root])

			while self.state.pending(root.path):
				if should_stop and should_stop():
					break

				if not self.process_batch(root=root.path, should_stop=should_stop):
					break

			records = self.state.records_under(root.path)

			# An empty or not yet populated root is not drained.
			if records and not any(r.status == ArchiveStatus.PENDING for r in records):
				counts = {
					"archives": len(records),
					"completed": sum(r.status != ArchiveStatus.FAILED for r in records),
					"failed": sum(r.status == ArchiveStatus.FAILED for r in records),
				}

				for m in markers:
					m.set(counts)

				self.log.info(f"{root.path}: drained {counts}")

		return self.state.counters()
