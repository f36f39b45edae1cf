# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

from __future__ import annotations

from pyotapayload.manifest import operation_name


class PayloadError(RuntimeError):
	"""Base class of all errors raised by pyotapayload"""


class InitError(PayloadError):
	"""The initial range probe of a remote file failed"""


class InvalidSeek(PayloadError, ValueError):
	def __init__(self, position: int, length: int) -> None:
		super().__init__(f"Invalid seek position: {position} (file length: {length})")
		self.position = position
		self.length = length


class RemoteIOError(PayloadError, OSError):
	"""Transport failure or unexpected response while reading a byte range"""


class InvalidMagic(PayloadError):
	def __init__(self, magic: bytes) -> None:
		super().__init__(f"Invalid magic value: {magic!r}")
		self.magic = magic


class UnsupportedFormatVersion(PayloadError):
	def __init__(self, version: int) -> None:
		super().__init__(f"Unsupported file format version: {version}")
		self.version = version


class ManifestDecodeError(PayloadError):
	"""The manifest bytes are not a valid DeltaArchiveManifest"""


class PartitionNotFound(PayloadError):
	def __init__(self, name: str) -> None:
		super().__init__(f"Partition not found: {name}")
		self.name = name


class UnsupportedOperation(PayloadError):
	def __init__(self, op_type: int) -> None:
		super().__init__(f"Unsupported operation type: {operation_name(op_type)}")
		self.op_type = op_type


class EntryNotFound(PayloadError):
	def __init__(self, file_name: str, url: str) -> None:
		super().__init__(f"{file_name} not found in {url}")
		self.file_name = file_name
		self.url = url


class Zip64LocatorMissing(PayloadError):
	"""End of central directory record requires ZIP64 but no usable ZIP64 record was found"""
