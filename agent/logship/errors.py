class LogshipError(Exception):
	pass

class ConfigError(LogshipError):
	pass

class PositionError(LogshipError):
	"""
	Raised when an offset commit would move a file's position backwards.
	"""

class StateError(LogshipError):
	"""
	Raised on an illegal ArchiveRecord status transition.
	"""

class TransportError(LogshipError):
	pass

# Network blips, timeouts, 429/5xx: keep the batch and retry later.
class RetryableError(TransportError):
	pass

# Rejected credentials or request: forwarding halts until reconfigured.
class FatalError(TransportError):
	pass
