import socket

from pathlib import Path

from .. import Loggable
from ..record import Record
from . import Collector

ROUTE_TABLE = Path("/proc/net/route")

def primary_ip() -> str:
	# Connecting a UDP socket sends nothing; it only selects the outbound route.
	with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
		s.connect(("192.0.2.1", 9))

		return s.getsockname()[0]

def _default_route(table: Path = ROUTE_TABLE):
	"""
	Returns (interface, gateway) of the default IPv4 route, or (None, None).
	"""

	try:
		lines = table.read_text().splitlines()[1:]

	except OSError:
		return None, None

	for line in lines:
		parts = line.split()

		if len(parts) < 3 or parts[1] != "00000000":
			continue

		gateway = socket.inet_ntoa(int(parts[2], 16).to_bytes(4, "little"))

		return parts[0], gateway

	return None, None

class SystemCollector(Collector, Loggable):
	"""
	Network probe. Its records are internal: the enrichment pipeline absorbs
	them into the host network cache and never forwards them.
	"""

	NAME = "internal.host.network"

	def __init__(self, route_table: Path = ROUTE_TABLE):
		self.route_table = route_table

	def probe(self) -> str:
		try:
			ip = primary_ip()

		except OSError as e:
			self.log.debug(f"No routable address: {e}")

			return "host_ip=unavailable"

		adapter, gateway = _default_route(self.route_table)

		return f"host_ip={ip},adapter_name={adapter or 'unknown'},gateway={gateway or 'unknown'}"

	def collect(self):
		yield Record(
			tag=self.NAME,
			fields={
				"exec": self.probe(),
				"hostname": socket.gethostname(),
			},
		)
