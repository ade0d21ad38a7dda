import json
import os
import sqlite3
import tempfile
import time

from abc import ABC, abstractmethod
from pathlib import Path
from typing import NamedTuple

from . import Loggable
from .errors import PositionError

class Position(NamedTuple):
	offset: int
	inode: int | None

class PositionStore(ABC, Loggable):
	"""
	Durable file -> byte offset ledger.

	The stored offset only ever moves forward through `commit_offset`; the
	only way back is an explicit `reset`, which the tail reader issues when
	it detects truncation or replacement.
	"""

	@abstractmethod
	def get(self, file_id: str) -> Position | None:
		pass

	@abstractmethod
	def _put(self, file_id: str, position: Position):
		pass

	@abstractmethod
	def forget(self, file_id: str):
		pass

	@abstractmethod
	def flush(self):
		pass

	def close(self):
		self.flush()

	def get_offset(self, file_id: str) -> int:
		saved = self.get(file_id)

		return saved.offset if saved else 0

	def commit_offset(self, file_id: str, offset: int, inode: int | None = None):
		saved = self.get(file_id)

		if saved:
			# Written by a reader of a file generation that has since been reset.
			if inode is not None and saved.inode is not None and inode != saved.inode:
				self.log.debug(f"{file_id}: ignoring stale commit for inode {inode}")

				return

			if offset < saved.offset:
				raise PositionError(
					f"{file_id}: commit {offset} is behind stored offset {saved.offset}"
				)

			if inode is None:
				inode = saved.inode

		self._put(file_id, Position(offset, inode))

	def reset(self, file_id: str, inode: int | None = None):
		self.log.info(f"{file_id}: offset reset to 0")

		self._put(file_id, Position(0, inode))

class JsonPositionStore(PositionStore):
	def __init__(self, path: Path):
		self.path = Path(path)

		self._state = {}
		self._dirty = False
		self._load()

	def _load(self):
		if not self.path.exists():
			return

		try:
			self._state = json.loads(self.path.read_text())

		except (OSError, ValueError) as e:
			self.log.warning(f"Unreadable position store {self.path}, starting empty: {e}")

			self._state = {}

	def get(self, file_id):
		saved = self._state.get(str(file_id))

		if saved is None:
			return None

		return Position(saved["offset"], saved.get("inode"))

	def _put(self, file_id, position):
		self._state[str(file_id)] = {
			"inode": position.inode,
			"offset": position.offset,
		}

		self._dirty = True

	def forget(self, file_id):
		if self._state.pop(str(file_id), None) is not None:
			self._dirty = True

	def flush(self):
		if not self._dirty:
			return

		self.path.parent.mkdir(parents=True, exist_ok=True)

		fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")

		try:
			with os.fdopen(fd, "w") as f:
				json.dump(self._state, f, indent=2)

			os.replace(tmp, self.path)

		except Exception:
			os.unlink(tmp)

			raise

		self._dirty = False

class SqlitePositionStore(PositionStore):
	SCHEMA = (
		"CREATE TABLE IF NOT EXISTS positions ("
		" file_id TEXT PRIMARY KEY,"
		" byte_offset INTEGER NOT NULL,"
		" inode INTEGER,"
		" updated REAL NOT NULL"
		")"
	)

	def __init__(self, path: Path):
		self.path = Path(path)
		self.path.parent.mkdir(parents=True, exist_ok=True)

		self.conn = sqlite3.connect(str(self.path))
		self.conn.execute(self.SCHEMA)
		self.conn.commit()

	def get(self, file_id):
		row = self.conn.execute(
			"SELECT byte_offset, inode FROM positions WHERE file_id = ?",
			(str(file_id),),
		).fetchone()

		if row is None:
			return None

		return Position(row[0], row[1])

	def _put(self, file_id, position):
		self.conn.execute(
			"INSERT INTO positions (file_id, byte_offset, inode, updated) VALUES (?, ?, ?, ?) "
			"ON CONFLICT(file_id) DO UPDATE SET "
			"byte_offset = excluded.byte_offset, inode = excluded.inode, updated = excluded.updated",
			(str(file_id), position.offset, position.inode, time.time()),
		)

	def forget(self, file_id):
		self.conn.execute("DELETE FROM positions WHERE file_id = ?", (str(file_id),))

	def flush(self):
		self.conn.commit()

	def close(self):
		self.flush()
		self.conn.close()

def open_position_store(path) -> PositionStore:
	path = Path(path)

	if path.suffix == ".json":
		return JsonPositionStore(path)

	return SqlitePositionStore(path)
