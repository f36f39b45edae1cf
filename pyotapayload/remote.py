# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

from __future__ import annotations

from collections.abc import MutableMapping
from http.client import HTTPConnection, HTTPException, HTTPResponse, HTTPSConnection
from logging import getLogger
from pathlib import PurePosixPath
from threading import Lock
from typing import Any, Iterator, NamedTuple
from urllib.parse import unquote, urlparse

from pyotapayload.exceptions import InitError, InvalidSeek, RemoteIOError

USER_AGENT = "Dalvik/2.1.0 (Linux; U; Android 14; IN2020 Build/UP1A.231005.007)"
READ_TIMEOUT = 60
DEFAULT_FILE_NAME = "payload.bin"

logger = getLogger("pyotapayload")


# Based on requests CaseInsensitiveDict
class CaseInsensitiveDict(MutableMapping):
	"""A case-insensitive ``dict``-like object"""

	def __init__(self, data: dict[str, Any] | None = None, **kwargs: Any) -> None:
		self._store: dict[str, tuple[str, Any]] = {}
		self.update(data or {}, **kwargs)

	def __setitem__(self, key: str, value: Any) -> None:
		self._store[key.lower()] = (key, value)

	def __getitem__(self, key: str) -> Any:
		return self._store[key.lower()][1]

	def __delitem__(self, key: str) -> None:
		del self._store[key.lower()]

	def __iter__(self) -> Iterator[str]:
		return (cased_key for cased_key, _ in self._store.values())

	def __len__(self) -> int:
		return len(self._store)

	def __repr__(self) -> str:
		return str(dict(self.items()))


class ContentRange(NamedTuple):
	"""Value of a Content-Range header (zero-indexed & inclusive), total is -1 if unknown"""

	start: int
	end: int
	total: int


def parse_content_range(content_range: str) -> ContentRange:
	"""Parse ``bytes <start>-<end>/<total>``"""
	unit, _, value = content_range.strip().partition(" ")
	if unit.strip() != "bytes":
		raise ValueError(f"Invalid Content-Range unit {unit!r}")
	range_part, _, total = value.partition("/")
	start, _, end = range_part.partition("-")
	total = total.strip()
	return ContentRange(int(start.strip()), int(end.strip()), -1 if total in ("", "*") else int(total))


def file_name_from_headers(headers: CaseInsensitiveDict, url: str) -> str:
	content_disposition = headers.get("Content-Disposition")
	if content_disposition:
		for part in content_disposition.split(";"):
			part = part.strip()
			if part.startswith("filename="):
				return part.split("=", 1)[1].replace('"', "")
	name = PurePosixPath(unquote(urlparse(url).path)).name
	return name or DEFAULT_FILE_NAME


class RemoteFile:
	"""
	Seekable read-only view of a remote file, every read is a HTTP range request.

	The instance is meant to be owned by one session. ``lock`` serializes
	complete seek / read / write pipelines of concurrent users.
	"""

	_chunk_size = 128 * 1000

	def __init__(
		self,
		url: str,
		*,
		headers: CaseInsensitiveDict | dict[str, str] | None = None,
		read_timeout: int = READ_TIMEOUT,
	) -> None:
		self._url = urlparse(url)
		if self._url.scheme not in ("http", "https"):
			raise InitError(f"Unsupported URL scheme {self._url.scheme!r}: {url}")
		self._headers = headers if isinstance(headers, CaseInsensitiveDict) else CaseInsensitiveDict(headers)
		self._headers.setdefault("User-Agent", USER_AGENT)
		self._headers["Accept-Encoding"] = "identity"
		self._read_timeout = read_timeout
		self._position = 0
		self._length = 0
		self._name = DEFAULT_FILE_NAME
		self.lock = Lock()
		self._probe()

	def __repr__(self) -> str:
		return f"<{self.__class__.__name__} url={self.url!r} length={self._length} position={self._position}>"

	@property
	def url(self) -> str:
		return self._url.geturl()

	@property
	def length(self) -> int:
		return self._length

	@property
	def position(self) -> int:
		return self._position

	@property
	def name(self) -> str:
		return self._name

	def _send_request(self, start: int, end: int) -> tuple[HTTPConnection, HTTPResponse]:
		conn_class = HTTPConnection if self._url.scheme == "http" else HTTPSConnection
		connection = conn_class(self._url.netloc, timeout=self._read_timeout, blocksize=self._chunk_size)
		target = self._url.path or "/"
		if self._url.query:
			target = f"{target}?{self._url.query}"
		headers = dict(self._headers)
		headers["Range"] = f"bytes={start}-{end}"
		logger.debug("Sending GET request to %s with headers: %r", self.url, headers)
		connection.request("GET", target, headers=headers)
		response = connection.getresponse()
		logger.debug("Received response: %r, headers: %r", response.status, response.getheaders())
		return connection, response

	def _probe(self) -> None:
		logger.info("Probing %s", self.url)
		try:
			connection, response = self._send_request(0, 0)
			try:
				if response.status < 200 or response.status > 299:
					raise InitError(f"Failed to initialize HTTP request to {self.url}: {response.status} - {response.reason}")
				headers = CaseInsensitiveDict(dict(response.getheaders()))
				content_range = headers.get("Content-Range")
				if not content_range:
					raise InitError(f"Content-Range header missing in response from {self.url}, range requests not supported")
				try:
					total = parse_content_range(content_range).total
				except ValueError as err:
					raise InitError(f"Failed to parse Content-Range {content_range!r}: {err}") from err
				if total <= 0:
					raise InitError(f"Unknown file length in Content-Range {content_range!r}")
				response.read()
			finally:
				connection.close()
		except (OSError, HTTPException) as err:
			raise InitError(f"Failed to initialize HTTP request to {self.url}: {err}") from err

		self._length = total
		self._name = file_name_from_headers(headers, self.url)
		logger.info("Remote file %r has %d bytes", self._name, self._length)

	def seek(self, position: int) -> int:
		if position < 0 or position >= self._length:
			raise InvalidSeek(position, self._length)
		self._position = position
		return self._position

	def tell(self) -> int:
		return self._position

	def readinto(self, buffer: bytearray | memoryview) -> int:
		"""
		Read up to ``len(buffer)`` bytes starting at the current position.
		Bytes sent beyond the requested range are discarded.

		:return: Number of bytes copied into ``buffer``.
		"""
		view = memoryview(buffer).cast("B")
		size = len(view)
		if size == 0:
			return 0

		start = self._position
		end = start + size - 1
		logger.info("Reading bytes %d-%d from %s", start, end, self.url)
		total_read = 0
		try:
			connection, response = self._send_request(start, end)
			try:
				if response.status < 200 or response.status > 299:
					raise RemoteIOError(
						f"Failed to fetch range {start}-{end} from {self.url}: "
						f"{response.status} - {response.read(self._chunk_size).decode('utf-8', 'replace')}"
					)
				content_range = response.getheader("Content-Range")
				if content_range:
					try:
						range_start = parse_content_range(content_range).start
					except ValueError as err:
						raise RemoteIOError(f"Failed to parse Content-Range {content_range!r}: {err}") from err
					if range_start != start:
						raise RemoteIOError(f"Content-Range {content_range} does not match requested range {start}-{end}")
				elif start != 0:
					raise RemoteIOError(f"Content-Range header missing, server ignored range {start}-{end}")

				while total_read < size:
					data = response.read(min(self._chunk_size, size - total_read))
					if not data:
						break
					view[total_read : total_read + len(data)] = data
					total_read += len(data)
			finally:
				connection.close()
		except (OSError, HTTPException) as err:
			if isinstance(err, RemoteIOError):
				raise
			raise RemoteIOError(f"Failed to fetch range {start}-{end} from {self.url}: {err}") from err

		self._position += total_read
		return total_read

	def read(self, size: int) -> bytes:
		buffer = bytearray(size)
		return bytes(buffer[: self.readinto(buffer)])

	def read_exactly(self, size: int) -> bytes:
		data = self.read(size)
		if len(data) != size:
			raise RemoteIOError(f"Failed to read {size} bytes at {self._position - len(data)} from {self.url}: got {len(data)} bytes")
		return data
