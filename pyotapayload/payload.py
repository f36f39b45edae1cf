# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

from __future__ import annotations

import bz2
import hashlib
import lzma
import os
import struct
from logging import getLogger
from pathlib import Path
from typing import Any, BinaryIO, Callable, NamedTuple
from urllib.parse import urlparse

from google.protobuf.message import DecodeError

from pyotapayload.exceptions import (
	InvalidMagic,
	ManifestDecodeError,
	PartitionNotFound,
	PayloadError,
	RemoteIOError,
	UnsupportedFormatVersion,
	UnsupportedOperation,
)
from pyotapayload.manifest import DeltaArchiveManifest, OperationType, operation_name
from pyotapayload.remote import RemoteFile
from pyotapayload.zip import CentralDirectoryEntry, find_central_directory_entry, locate_central_directory, locate_local_file_offset

PAYLOAD_MAGIC = b"CrAU"
PAYLOAD_FORMAT_VERSION = 2
PAYLOAD_HEADER_SIZE = 24
PAYLOAD_FILE_NAME = "payload.bin"
TRAILER_SIZE = 4096
LOCAL_HEADER_SIZE = 256
HASH_CHUNK_SIZE = 65536
ZERO_CHUNK_SIZE = 1024 * 1024

ProgressCallback = Callable[[int, int], None]

logger = getLogger("pyotapayload")


class PayloadHeader(NamedTuple):
	format_version: int
	manifest_size: int
	metadata_signature_size: int


class Payload(NamedTuple):
	file_name: str
	header: PayloadHeader
	manifest: Any
	data_offset: int
	block_size: int
	archive_size: int
	source: RemoteFile


class PartitionInfo(NamedTuple):
	name: str
	size: int
	raw_size: int
	sha256: str


class ExtractResult(NamedTuple):
	success: bool
	expected_hash: str
	actual_hash: str
	file_path: str
	corrupt_operations: tuple[int, ...] = ()


class LocalHeader(NamedTuple):
	offset: int
	data: bytes
	entry: CentralDirectoryEntry


def find_local_header(source: RemoteFile, file_name: str) -> LocalHeader | None:
	"""
	Read the local file header of ``file_name`` from the ZIP container behind ``source``.
	Only the trailing bytes, the central directory and the local header are fetched.

	:return: Offset and bytes of the local file header, `None` if there is no such entry.
	"""
	with source.lock:
		trailer_size = min(TRAILER_SIZE, source.length)
		source.seek(source.length - trailer_size)
		trailer = source.read_exactly(trailer_size)

		directory = locate_central_directory(trailer, source.length)
		if not directory.found:
			logger.info("No end of central directory record found in %s", source.url)
			return None
		if directory.size <= 0 or directory.offset + directory.size > source.length:
			logger.warning("Central directory %r out of bounds of %s (%d bytes)", directory, source.url, source.length)
			return None

		source.seek(directory.offset)
		central_directory = source.read_exactly(directory.size)
		entry = find_central_directory_entry(central_directory, file_name)
		header_offset = entry.local_header_offset if entry else -1
		if not entry or header_offset >= source.length:
			logger.info("%s not found in central directory of %s", file_name, source.url)
			return None

		source.seek(header_offset)
		data = source.read(min(LOCAL_HEADER_SIZE, source.length - header_offset))
	return LocalHeader(offset=header_offset, data=data, entry=entry)


def locate_payload(source: RemoteFile, file_name: str = PAYLOAD_FILE_NAME) -> int:
	"""
	Find the offset of the payload inside the remote file.
	A URL to a raw ``.bin`` file has the payload at offset 0.

	:return: Absolute offset of the payload data or -1 if not found.
	"""
	if urlparse(source.url).path.endswith(".bin"):
		return 0

	local_header = find_local_header(source, file_name)
	if not local_header:
		return -1
	data_offset = locate_local_file_offset(local_header.data)
	if data_offset < 0:
		logger.warning("Invalid local file header of %s at offset %d", file_name, local_header.offset)
		return -1
	logger.debug("%s data starts at offset %d", file_name, local_header.offset + data_offset)
	return local_header.offset + data_offset


def decode_payload(source: RemoteFile, offset: int) -> Payload:
	with source.lock:
		source.seek(offset)
		data = source.read(PAYLOAD_HEADER_SIZE)
		if data[:4] != PAYLOAD_MAGIC:
			raise InvalidMagic(data[:4])
		if len(data) < PAYLOAD_HEADER_SIZE:
			raise RemoteIOError(f"Payload header truncated: got {len(data)} of {PAYLOAD_HEADER_SIZE} bytes")

		format_version, manifest_size, metadata_signature_size = struct.unpack(">QQI", data[4:])
		if format_version != PAYLOAD_FORMAT_VERSION:
			raise UnsupportedFormatVersion(format_version)
		header = PayloadHeader(format_version, manifest_size, metadata_signature_size)
		logger.debug("Payload header: %r", header)

		manifest_data = source.read_exactly(manifest_size)
		try:
			manifest = DeltaArchiveManifest.FromString(manifest_data)
		except DecodeError as err:
			raise ManifestDecodeError(f"Failed to decode manifest: {err}") from err

		# Metadata signature is not verified
		source.read_exactly(metadata_signature_size)
		data_offset = source.position

	logger.info(
		"Decoded payload of %s: %d partitions, block size %d, data at offset %d",
		source.name,
		len(manifest.partitions),
		manifest.block_size,
		data_offset,
	)
	return Payload(
		file_name=source.name,
		header=header,
		manifest=manifest,
		data_offset=data_offset,
		block_size=manifest.block_size,
		archive_size=source.length,
		source=source,
	)


def list_partitions(payload: Payload) -> list[PartitionInfo]:
	partitions = []
	for partition in payload.manifest.partitions:
		operations = partition.operations
		raw_size = 0
		if operations:
			raw_size = operations[-1].data_offset + operations[-1].data_length - operations[0].data_offset
		partitions.append(
			PartitionInfo(
				name=partition.partition_name,
				size=partition.new_partition_info.size,
				raw_size=raw_size,
				sha256=partition.new_partition_info.hash.hex(),
			)
		)
	return partitions


def find_partition(payload: Payload, name: str) -> Any:
	for partition in payload.manifest.partitions:
		if partition.partition_name == name:
			return partition
	raise PartitionNotFound(name)


def file_sha256(file: Path) -> str:
	_hash = hashlib.sha256()
	with open(file, "rb") as fh:
		while data := fh.read(HASH_CHUNK_SIZE):
			_hash.update(data)
	return _hash.hexdigest()


_DECOMPRESSORS: dict[int, Callable[[bytes], bytes]] = {
	OperationType.REPLACE: bytes,
	OperationType.REPLACE_XZ: lzma.decompress,
	OperationType.REPLACE_BZ: bz2.decompress,
}


def _write_zeros(file: BinaryIO, size: int) -> None:
	zeros = bytes(min(size, ZERO_CHUNK_SIZE))
	while size > 0:
		written = file.write(zeros[:size])
		size -= written


def _apply_zero(operation: Any, file: BinaryIO, block_size: int) -> None:
	if operation.data_length:
		file.seek(operation.dst_extents[0].start_block * block_size)
		_write_zeros(file, operation.data_length)
		return
	for extent in operation.dst_extents:
		file.seek(extent.start_block * block_size)
		_write_zeros(file, extent.num_blocks * block_size)


def _write_extents(data: bytes, operation: Any, file: BinaryIO, block_size: int) -> None:
	extents = operation.dst_extents
	pos = 0
	for idx, extent in enumerate(extents):
		file.seek(extent.start_block * block_size)
		if idx == len(extents) - 1:
			chunk = data[pos:]
		else:
			chunk = data[pos : pos + extent.num_blocks * block_size]
		file.write(chunk)
		pos += len(chunk)


def _apply_operation(payload: Payload, index: int, operation: Any, file: BinaryIO, verify: bool) -> bool:
	"""
	Apply one operation to the output file.

	:return: False if the operation data does not match its sha256 hash.
	"""
	if not operation.dst_extents:
		raise PayloadError(f"Operation {index} has no destination extents")

	if operation.type == OperationType.ZERO:
		_apply_zero(operation, file, payload.block_size)
		return True

	decompress = _DECOMPRESSORS.get(operation.type)
	if decompress is None:
		raise UnsupportedOperation(operation.type)

	data = b""
	if operation.data_length:
		payload.source.seek(payload.data_offset + operation.data_offset)
		data = payload.source.read_exactly(operation.data_length)

	valid = True
	if verify and operation.data_sha256_hash:
		expected = operation.data_sha256_hash.hex()
		actual = hashlib.sha256(data).hexdigest()
		if actual != expected:
			logger.warning("Data hash mismatch at operation %d: %s != %s", index, actual, expected)
			valid = False

	try:
		data = decompress(data)
	except (lzma.LZMAError, OSError, EOFError, ValueError) as err:
		if not valid:
			# Corrupt data, destination blocks stay unwritten
			return False
		raise PayloadError(f"Failed to decompress {operation_name(operation.type)} data of operation {index}: {err}") from err

	_write_extents(data, operation, file, payload.block_size)
	return valid


def _report_progress(progress_callback: ProgressCallback | None, position: int, total: int) -> None:
	if not progress_callback:
		return
	try:
		progress_callback(position, total)
	except Exception as err:
		logger.warning(err)


def extract_partition(
	name: str,
	payload: Payload,
	output_dir: Path | str,
	progress_callback: ProgressCallback | None = None,
	*,
	verify_operations: bool = True,
) -> ExtractResult:
	"""
	Extract a partition image from the payload to ``<output_dir>/<name>.img``.

	Operations are applied in manifest order, each one while holding the lock
	of the payload source. Hash mismatches of operation data or of the
	written image are reported in the result and the file is kept.

	:param name: Name of the partition.
	:param payload: Decoded payload.
	:param output_dir: Output directory, created if missing.
	:param progress_callback: Called with (output file length, partition size) after every operation.
	:param verify_operations: Verify the data of every operation against its sha256 hash if present,
		mismatching operations are listed in ``ExtractResult.corrupt_operations``.
	:return: Result of the hash verification.
	"""
	partition = find_partition(payload, name)
	total_size = partition.new_partition_info.size

	output_dir = Path(output_dir)
	output_dir.mkdir(parents=True, exist_ok=True)
	output_file = output_dir / f"{partition.partition_name}.img"

	logger.info("Extracting partition %r (%d operations, %d bytes) to %s", name, len(partition.operations), total_size, output_file)
	corrupt_operations = []
	with open(output_file, "w+b") as file:
		for index, operation in enumerate(partition.operations):
			logger.debug(
				"Operation %d: %s, data %d+%d", index, operation_name(operation.type), operation.data_offset, operation.data_length
			)
			with payload.source.lock:
				if not _apply_operation(payload, index, operation, file, verify_operations):
					corrupt_operations.append(index)
				file.flush()
				position = os.fstat(file.fileno()).st_size
			_report_progress(progress_callback, position, total_size)

	expected_hash = partition.new_partition_info.hash.hex()
	actual_hash = file_sha256(output_file)
	success = expected_hash.lower() == actual_hash.lower() and not corrupt_operations
	if success:
		logger.info("Partition %r extracted, sha256 %s", name, actual_hash)
	elif corrupt_operations:
		logger.warning("Partition %r has corrupt data in operations %s", name, corrupt_operations)
	else:
		logger.warning("Partition %r sha256 mismatch: %s != %s", name, actual_hash, expected_hash)
	return ExtractResult(
		success=success,
		expected_hash=expected_hash,
		actual_hash=actual_hash,
		file_path=str(output_file.absolute()),
		corrupt_operations=tuple(corrupt_operations),
	)
