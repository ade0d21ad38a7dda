import time

from dataclasses import dataclass, field
from typing import Any

@dataclass
class Record:
	"""
	One parsed log record on its way to the collector.

	`fields` holds whatever the parser extracted; `enrichment` holds what the
	pipeline stages add. `source`, `offset` and `inode` are provenance: the
	file the record came from and the byte position just past it, which is
	what gets committed once the record has been forwarded. `timestamp` is
	when the record was read, the event time of last resort.
	"""

	tag: str
	fields: dict[str, Any]
	timestamp: float = field(default_factory=time.time)
	enrichment: dict[str, Any] = field(default_factory=dict)

	source: str | None = None
	offset: int | None = None
	inode: int | None = None

	def get(self, key, default=None):
		if key in self.enrichment:
			return self.enrichment[key]

		return self.fields.get(key, default)

	def payload(self) -> dict[str, Any]:
		# Enrichment wins over raw fields on a key collision.
		return {**self.fields, **self.enrichment}
