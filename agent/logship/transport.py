import asyncio
import aiohttp
import gzip
import json

from abc import ABC, abstractmethod

from . import Loggable
from .errors import FatalError, RetryableError

class Transport(ABC, Loggable):
	def __init__(self, compression_threshold: int = 4096):
		self.compression_threshold = compression_threshold

		self.log.debug(f"Compression threshold: {compression_threshold}")

	def _headers_body(self, payload):
		if not isinstance(payload, list):
			payload = [payload]

		raw_body = json.dumps(
			payload,
			separators=(",", ":"),
			default=str,
		).encode()

		headers = {
			"Content-Type": "application/json",
		}

		if len(raw_body) > self.compression_threshold:
			body = gzip.compress(raw_body)
			ratio = len(body) / len(raw_body)

			headers["Content-Encoding"] = "gzip"

			self.log.debug(
				f"size: {len(raw_body)} "
				f"compressed: {len(body)} "
				f"ratio: {ratio:.2f}"
			)

		else:
			body = raw_body

			self.log.debug(f"size: {len(raw_body)}")

		return headers, body

	@abstractmethod
	async def send(self, payload):
		"""
		Returns on acknowledgement. Raises RetryableError when the batch should
		be tried again later and FatalError when retrying cannot help.
		"""

	async def close(self):
		pass

class HTTPTransport(Transport):
	def __init__(self,
		host: str,
		port: int = 443,
		uri: str = "/api/default/{stream}/_json",
		stream: str = "default",
		token: str = "",
		user: str = "",
		password: str = "",
		tls: bool = True,
		timeout: float = 10.0,
		compression_threshold: int = 4096,
	):
		super().__init__(compression_threshold)

		scheme = "https" if tls else "http"

		self.url = f"{scheme}://{host}:{port}{uri.format(stream=stream)}"
		self.timeout = aiohttp.ClientTimeout(total=timeout)
		self.auth = None
		self.auth_headers = {}

		if token:
			self.auth_headers["Authorization"] = f"Bearer {token}"

		elif user:
			self.auth = aiohttp.BasicAuth(user, password)

		self.session = None

	@classmethod
	def from_settings(cls, settings):
		return cls(
			settings.FORWARD_HOST,
			port=settings.FORWARD_PORT,
			uri=settings.FORWARD_URI,
			stream=settings.FORWARD_STREAM,
			token=settings.FORWARD_TOKEN,
			user=settings.FORWARD_USER,
			password=settings.FORWARD_PASSWORD,
			tls=settings.FORWARD_TLS,
			timeout=settings.FORWARD_TIMEOUT,
			compression_threshold=settings.COMPRESSION_THRESHOLD,
		)

	def _session(self):
		# Created lazily so it binds to the running loop.
		if self.session is None or self.session.closed:
			self.session = aiohttp.ClientSession(
				timeout=self.timeout,
				auth=self.auth,
			)

			self.log.info(f"Session opened to {self.url}")

		return self.session

	async def send(self, payload):
		headers, body = self._headers_body(payload)
		headers.update(self.auth_headers)

		try:
			async with self._session().post(
				self.url,
				data=body,
				headers=headers,
			) as resp:
				if 200 <= resp.status < 300:
					return

				text = (await resp.text())[:200]

				if resp.status == 429 or resp.status >= 500:
					raise RetryableError(f"Bad response: {resp.status} {text}")

				raise FatalError(f"Rejected: {resp.status} {text}")

		except (aiohttp.ClientError, asyncio.TimeoutError) as e:
			raise RetryableError(f"{type(e).__name__}: {e}") from e

	async def close(self):
		if self.session is not None:
			await self.session.close()

			self.log.info("Session closed")

# Simply logs `send/close`, rather than firing them off.
class DebugTransport(Transport):
	async def send(self, payload):
		headers, body = self._headers_body(payload)

		if "Content-Encoding" in headers:
			body = gzip.decompress(body)

		self.log.info(f"Would send: {body.decode()}")

	async def close(self):
		self.log.info("Closed")

# Accumulates into the `.sent` member (for use in pytest, etc).
class TestTransport(Transport):
	__test__ = False

	def __init__(self, errors=None):
		super().__init__()

		self.sent = []
		self.errors = list(errors or [])

	async def send(self, payload):
		if self.errors:
			raise self.errors.pop(0)

		self.sent.append(payload)
