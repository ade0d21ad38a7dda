import ipaddress
import os
import platform
import re
import socket
import time

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from . import Loggable
from .archive import ARCHIVE_TAG, PathMapping
from .collector import parse_pairs
from .collector.system import primary_ip
from .record import Record

# Dot-separated fraction first (SQL Server style, ".24" is 240ms), then the
# Java style with a comma and milliseconds.
TIMESTAMP_FORMATS = [
	re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2}) (\d{1,2}):(\d{2}):(\d{2})\.(\d+)"),
	re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2}) (\d{1,2}):(\d{2}):(\d{2}),(\d+)"),
]

INTERNAL_TAG = re.compile(r"internal\.host\.(ip|network)")
UNUSABLE_IPS = ("unavailable", "error", "unknown")

# Probe results older than this are replaced by a direct lookup.
NETWORK_CACHE_TTL = 300.0

def _machine_id() -> str:
	for candidate in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
		try:
			value = Path(candidate).read_text().strip()

		except OSError:
			continue

		if value:
			return value

	return os.environ.get("PROCESSOR_IDENTIFIER") or platform.processor() or "unknown"

def collect_host_info(data_pipeline: str = "logship") -> dict:
	computer_name = os.environ.get("COMPUTERNAME") or socket.gethostname() or "unknown"
	domain = os.environ.get("USERDOMAIN") or os.environ.get("USERDNSDOMAIN") or ""

	if not domain:
		fqdn = socket.getfqdn()
		domain = fqdn.partition(".")[2]

	fqdn = f"{computer_name}.{domain}" if domain else computer_name

	return {
		"host_computer_name": computer_name,
		"host_domain": domain or "unknown",
		"host_architecture": os.environ.get("PROCESSOR_ARCHITECTURE") or platform.machine() or "unknown",
		"host_machine_id": _machine_id(),
		"host_fqdn": fqdn,
		"host_os_type": platform.system().lower() or "unknown",
		"host_log_source": data_pipeline,
	}

def ip_class(ip) -> str:
	if not ip or ip in UNUSABLE_IPS:
		return "unknown"

	try:
		addr = ipaddress.ip_address(ip)

	except ValueError:
		return "unknown"

	if addr.version == 4:
		if addr in ipaddress.ip_network("10.0.0.0/8"):
			return "private_class_a"

		if addr in ipaddress.ip_network("172.16.0.0/12"):
			return "private_class_b"

		if addr in ipaddress.ip_network("192.168.0.0/16"):
			return "private_class_c"

	return "public_or_other"

def parse_timestamp(text) -> int | None:
	"""
	Returns epoch nanoseconds for a known timestamp format, else None.
	A 2-digit fraction is centiseconds; 3 digits are milliseconds.
	"""

	if not isinstance(text, str):
		return None

	for pattern in TIMESTAMP_FORMATS:
		m = pattern.search(text)

		if not m:
			continue

		year, month, day, hour, minute, sec = (int(g) for g in m.groups()[:6])
		fraction = m.group(7)

		# Scale to milliseconds: "5" -> 500, "24" -> 240, "123456" -> 123.
		millis = int(fraction[:3].ljust(3, "0"))

		try:
			dt = datetime(year, month, day, hour, minute, sec)

		except ValueError:
			return None

		return int(dt.timestamp()) * 1_000_000_000 + millis * 1_000_000

	return None

@dataclass
class PipelineContext:
	"""
	Process-lifetime caches shared by the enrichment stages. One context per
	pipeline instance, so independent pipelines never see each other's state.
	"""

	mapping: PathMapping | None = None
	environment: str = "production"
	data_pipeline: str = "logship"
	archive_tag: str = ARCHIVE_TAG

	host_info: dict | None = None
	network: dict = field(default_factory=dict)
	last_timestamp: int | None = None
	unmapped: set = field(default_factory=set)

	clock: object = time.time
	ip_lookup: object = primary_ip

def host_ip(ctx: PipelineContext) -> str | None:
	"""
	The probe-fed network cache while it is fresh, else a direct lookup,
	attempted at most once per NETWORK_CACHE_TTL.
	"""

	now = ctx.clock()
	network = ctx.network

	if network.get("ip") and now - network.get("last_updated", 0) < NETWORK_CACHE_TTL:
		return network["ip"]

	if now - network.get("looked_up", float("-inf")) >= NETWORK_CACHE_TTL:
		network["looked_up"] = now

		try:
			ip = ctx.ip_lookup()

		except OSError:
			ip = None

		if ip and ip not in UNUSABLE_IPS:
			network["ip"] = ip
			network["last_updated"] = now

	return network.get("ip")

def add_host_info(ctx: PipelineContext, record: Record) -> Record | None:
	if ctx.host_info is None:
		ctx.host_info = collect_host_info(ctx.data_pipeline)

	record.enrichment.update(ctx.host_info)

	ip = host_ip(ctx)

	if ip:
		record.enrichment["host_ip"] = ip

		if ctx.network.get("adapter_name"):
			record.enrichment["host_adapter_name"] = ctx.network["adapter_name"]

		if ctx.network.get("gateway"):
			record.enrichment["host_gateway"] = ctx.network["gateway"]

	else:
		record.enrichment["host_ip"] = "unavailable"

	record.enrichment["host_ip_class"] = ip_class(ip)
	record.enrichment["environment"] = ctx.environment
	record.enrichment["data_pipeline"] = ctx.data_pipeline

	return record

class SourceResolver(Loggable):
	"""
	Maps records read from decompressed temp files back to the archive they
	came from. The first miss for a filename triggers one mapping reload;
	after that the temp path stands.
	"""

	def __call__(self, ctx: PipelineContext, record: Record) -> Record | None:
		source = record.source

		if not source:
			return record

		record.enrichment["source_file_path"] = source

		if not (record.tag == ctx.archive_tag or record.tag.startswith(f"{ctx.archive_tag}.")):
			return record

		if ctx.mapping is None:
			return record

		name = Path(source).name
		original = ctx.mapping.lookup(name)

		if original is None and name not in ctx.unmapped:
			ctx.mapping.reload()
			original = ctx.mapping.lookup(name)

			if original is None:
				ctx.unmapped.add(name)

				self.log.warning(f"No original path for {name}, keeping temp path")

		if original is None:
			return record

		record.enrichment["source_file_path"] = original
		record.enrichment["decompressed_file"] = source

		return record

resolve_source_path = SourceResolver()

def convert_timestamp(ctx: PipelineContext, record: Record) -> Record | None:
	nanos = parse_timestamp(record.get("log_timestamp"))

	if nanos is not None:
		ctx.last_timestamp = nanos

	elif ctx.last_timestamp is not None:
		nanos = ctx.last_timestamp

	else:
		nanos = int(record.timestamp) * 1_000_000_000

	record.enrichment["_timestamp"] = nanos
	record.enrichment["ingestion_timestamp"] = datetime.fromtimestamp(
		ctx.clock(), timezone.utc
	).strftime("%Y-%m-%dT%H:%M:%SZ")

	if record.get("source") == "Server":
		record.enrichment["log_type"] = "sql_server"
		record.enrichment["log_category"] = "database"

	else:
		record.enrichment["log_category"] = "application"

	return record

def absorb_internal(ctx: PipelineContext, record: Record) -> Record | None:
	m = INTERNAL_TAG.search(record.tag)

	if not m:
		return record

	output = record.get("exec")

	if not output:
		return None

	info = parse_pairs(str(output))
	ip = info.get("host_ip")

	if ip and str(ip) not in UNUSABLE_IPS:
		ctx.network["ip"] = str(ip)
		ctx.network["last_updated"] = ctx.clock()

		if m.group(1) == "network":
			ctx.network["adapter_name"] = str(info.get("adapter_name") or "unknown")
			ctx.network["gateway"] = str(info.get("gateway") or "unknown")

	# Internal records are never forwarded.
	return None

STAGES = [
	add_host_info,
	resolve_source_path,
	convert_timestamp,
	absorb_internal,
]

class Pipeline(Loggable):
	def __init__(self, ctx: PipelineContext | None = None, stages=None):
		self.ctx = ctx or PipelineContext()
		self.stages = list(STAGES if stages is None else stages)

	def process(self, record: Record) -> Record | None:
		"""
		Runs the stages left to right. Returns None when a stage drops the
		record.
		"""

		for stage in self.stages:
			record = stage(self.ctx, record)

			if record is None:
				return None

		return record
