# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from logging import getLogger
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable

from pyotapayload.exceptions import EntryNotFound
from pyotapayload.metadata import read_metadata
from pyotapayload.payload import (
	PAYLOAD_FILE_NAME,
	ExtractResult,
	PartitionInfo,
	Payload,
	ProgressCallback,
	decode_payload,
	extract_partition,
	list_partitions,
	locate_payload,
)
from pyotapayload.remote import READ_TIMEOUT, CaseInsensitiveDict, RemoteFile

MAX_WORKERS = 4

logger = getLogger("pyotapayload")


def _named_progress_callback(progress_callback: Callable[[str, int, int], None], name: str) -> ProgressCallback:
	def callback(position: int, total: int) -> None:
		progress_callback(name, position, total)

	return callback


class PayloadSession:
	"""
	A payload behind one URL.

	All partitions of a session are read through the same ``RemoteFile``,
	concurrent extractions are queued operation by operation on its lock.
	"""

	def __init__(
		self,
		url: str,
		*,
		headers: CaseInsensitiveDict | dict[str, str] | None = None,
		read_timeout: int = READ_TIMEOUT,
		file_name: str = PAYLOAD_FILE_NAME,
		max_workers: int = MAX_WORKERS,
	) -> None:
		self.source = RemoteFile(url, headers=headers, read_timeout=read_timeout)
		self.file_name = file_name
		self.max_workers = max_workers
		self._payload: Payload | None = None
		self._payload_lock = Lock()
		self._executor: ThreadPoolExecutor | None = None

	def __enter__(self) -> PayloadSession:
		return self

	def __exit__(self, *args: Any) -> None:
		self.close()

	@property
	def payload(self) -> Payload:
		return self.open()

	def open(self) -> Payload:
		with self._payload_lock:
			if not self._payload:
				offset = locate_payload(self.source, self.file_name)
				if offset < 0:
					raise EntryNotFound(self.file_name, self.source.url)
				self._payload = decode_payload(self.source, offset)
				logger.debug("Session %s opened payload at offset %d", self.source.url, offset)
			return self._payload

	def close(self) -> None:
		with self._payload_lock:
			executor, self._executor = self._executor, None
		if executor:
			executor.shutdown(wait=True)

	def metadata(self) -> dict[str, str]:
		return read_metadata(self.source)

	def partitions(self) -> list[PartitionInfo]:
		return list_partitions(self.payload)

	def extract(
		self, name: str, output_dir: Path | str, progress_callback: ProgressCallback | None = None, *, verify_operations: bool = True
	) -> ExtractResult:
		return extract_partition(name, self.payload, output_dir, progress_callback, verify_operations=verify_operations)

	def submit(
		self, name: str, output_dir: Path | str, progress_callback: ProgressCallback | None = None, *, verify_operations: bool = True
	) -> Future[ExtractResult]:
		payload = self.payload
		with self._payload_lock:
			if not self._executor:
				self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pyotapayload")
			executor = self._executor
		return executor.submit(
			extract_partition, name, payload, output_dir, progress_callback, verify_operations=verify_operations
		)

	def extract_many(
		self,
		names: Iterable[str],
		output_dir: Path | str,
		progress_callback: Callable[[str, int, int], None] | None = None,
		*,
		verify_operations: bool = True,
	) -> dict[str, ExtractResult]:
		"""
		Extract several partitions in the thread pool of the session.

		:param progress_callback: Called with (partition name, output file length, partition size).
		:return: Results by partition name, in the order of ``names``.
		"""
		futures: dict[str, Future[ExtractResult]] = {}
		for name in names:
			callback = _named_progress_callback(progress_callback, name) if progress_callback else None
			futures[name] = self.submit(name, output_dir, callback, verify_operations=verify_operations)
		return {name: future.result() for name, future in futures.items()}
