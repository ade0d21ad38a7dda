from abc import ABC, abstractmethod
from typing import Iterator

from ..record import Record

class Collector(ABC):
	NAME = "base"

	@abstractmethod
	def collect(self) -> Iterator[Record]:
		pass

	def name(self) -> str:
		return self.NAME

	def __repr__(self) -> str:
		return f"{self.__class__.__name__}({self.name()})"

def _coerce(value: str):
	"""
	Coerce string to int, float, or str (in that order).
	Supports quoted strings.
	"""

	value = value.strip()

	# Strip surrounding quotes if present
	if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
		return value[1:-1]

	# Try int
	try:
		return int(value)

	except ValueError:
		pass

	# Try float
	try:
		return float(value)

	except ValueError:
		pass

	# Fallback to string
	return value

def parse_pairs(text: str, sep: str = ",") -> dict:
	"""
	Parses probe output into a dict.

	Example:
		host_ip=192.168.1.100,adapter_name=Ethernet,gateway=192.168.1.1
	"""

	pairs = {}

	for token in text.strip().split(sep):
		if "=" not in token:
			continue

		key, value = token.split("=", 1)
		pairs[key.strip()] = _coerce(value)

	return pairs
