import os
import logging
import importlib.util
import pathlib

from dataclasses import MISSING, dataclass, field, fields

from .errors import ConfigError

class Loggable:
	def __init_subclass__(cls):
		cls.log = logging.getLogger(f"{cls.__name__}")

@dataclass
class Settings:
	LOG_ROOTS: list
	FORWARD_HOST: str

	MAX_DEPTH: int = 2
	ARCHIVE_ROOTS: list = field(default_factory=list)
	ARCHIVE_MAX_DEPTH: int = 2

	STATE_DIR: str = "/var/lib/logship"
	TEMP_DIR: str = ""
	POSITION_STORE: str = ""

	TAIL_INTERVAL: float = 1.0
	ARCHIVE_INTERVAL: float = 60.0
	FLUSH_INTERVAL: float = 5.0
	PROBE_INTERVAL: float = 300.0

	BATCH_FILES: int = 3
	BATCH_BYTES: int = 100 * 1024 * 1024
	MAX_ARCHIVE_SIZE: int = 1024 * 1024 * 1024

	# A line not matching RECORD_START continues the previous record.
	RECORD_START: str = r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}"
	RECORD_REGEX: str = (
		r"^(?P<log_timestamp>\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}[.,]\d+)\s+"
		r"(?P<source>\S+)\s+(?P<message>.*)$"
	)
	MULTILINE_FLUSH: float = 5.0
	MAX_READ_BYTES: int = 1024 * 1024
	GONE_GRACE: float = 60.0

	FORWARD_PORT: int = 443
	FORWARD_URI: str = "/api/default/{stream}/_json"
	FORWARD_STREAM: str = "default"
	FORWARD_TOKEN: str = ""
	FORWARD_USER: str = ""
	FORWARD_PASSWORD: str = ""
	FORWARD_TLS: bool = True
	FORWARD_TIMEOUT: float = 10.0
	COMPRESSION_THRESHOLD: int = 4096

	BATCH_SIZE: int = 500
	BUFFER_LIMIT: int = 50000
	RETRY_INITIAL: float = 1.0
	RETRY_MAX: float = 60.0

	ENVIRONMENT: str = "production"
	DATA_PIPELINE: str = "logship"
	TRANSPORT: str = "http"

	def __post_init__(self):
		if not self.TEMP_DIR:
			self.TEMP_DIR = os.path.join(self.STATE_DIR, "decompressed")

		if not self.POSITION_STORE:
			self.POSITION_STORE = os.path.join(self.STATE_DIR, "positions.db")

		if self.TRANSPORT not in ("http", "debug"):
			raise ConfigError(f"Unknown transport: {self.TRANSPORT}")

	@classmethod
	def from_module(cls, module):
		"""
		Build settings from the upper-case attributes of a config module.
		Unknown attributes are ignored; missing required ones raise.
		"""

		values = {}

		for f in fields(cls):
			if hasattr(module, f.name):
				values[f.name] = getattr(module, f.name)

		missing = [
			f.name for f in fields(cls)
			if f.name not in values
			and f.default is MISSING
			and f.default_factory is MISSING
		]

		if missing:
			raise ConfigError(f"Missing config keys: {', '.join(missing)}")

		return cls(**values)

_CONFIG = None

def load_config(path):
	path = pathlib.Path(path)

	if not path.exists():
		raise ConfigError(f"Config file not found: {path}")

	spec = importlib.util.spec_from_file_location("logship_user_config", path)
	module = importlib.util.module_from_spec(spec)
	spec.loader.exec_module(module)

	return Settings.from_module(module)

def config():
	global _CONFIG

	if _CONFIG is not None:
		return _CONFIG

	path = os.environ.get("LOGSHIP_CONFIG")

	if not path:
		raise ConfigError(
			"LOGSHIP_CONFIG environment variable not set"
		)

	_CONFIG = load_config(path)

	return _CONFIG
