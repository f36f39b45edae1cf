# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

"""
Locate entries of a ZIP container from its trailing bytes and central directory.
All functions work on byte buffers fetched by the caller and do no I/O.
All fields are little-endian.
"""

from __future__ import annotations

import struct
from typing import NamedTuple

from pyotapayload.exceptions import Zip64LocatorMissing

CENSIG = 0x02014B50  # "PK\001\002"
LOCSIG = 0x04034B50  # "PK\003\004"
ENDSIG = 0x06054B50  # "PK\005\006"
ENDHDR = 22
CENHDR = 46
LOCHDR = 30
ZIP64_ENDSIG = 0x06064B50  # "PK\006\006"
ZIP64_ENDHDR = 56
ZIP64_LOCSIG = 0x07064B50  # "PK\006\007"
ZIP64_LOCHDR = 20
ZIP64_MAGICVAL = 0xFFFFFFFF
ZIP64_EXTRA_ID = 0x0001


class CentralDirectory(NamedTuple):
	"""Position of the central directory, (-1, -1) if not found"""

	offset: int
	size: int

	@property
	def found(self) -> bool:
		return self.offset >= 0 and self.size >= 0


NOT_FOUND = CentralDirectory(-1, -1)


class LocalFileSizes(NamedTuple):
	flags: int
	method: int
	compressed_size: int
	uncompressed_size: int


class CentralDirectoryEntry(NamedTuple):
	local_header_offset: int
	method: int
	compressed_size: int
	uncompressed_size: int


def _u16(data: bytes, pos: int) -> int:
	if pos < 0 or pos + 2 > len(data):
		return 0
	return struct.unpack_from("<H", data, pos)[0]


def _u32(data: bytes, pos: int) -> int:
	if pos < 0 or pos + 4 > len(data):
		return 0
	return struct.unpack_from("<I", data, pos)[0]


def _u64(data: bytes, pos: int) -> int:
	if pos < 0 or pos + 8 > len(data):
		return 0
	return struct.unpack_from("<Q", data, pos)[0]


def _locate_zip64_end(data: bytes, end_pos: int, container_length: int) -> CentralDirectory:
	locator_pos = end_pos - ZIP64_LOCHDR
	if locator_pos < 0 or _u32(data, locator_pos) != ZIP64_LOCSIG:
		raise Zip64LocatorMissing(f"ZIP64 end of central directory locator not found before offset {end_pos}")

	record_offset_in_file = _u64(data, locator_pos + 8)
	record_pos = len(data) - (container_length - record_offset_in_file)
	if record_pos < 0 or record_pos + ZIP64_ENDHDR > len(data):
		raise Zip64LocatorMissing(f"ZIP64 end of central directory record at {record_offset_in_file} is outside of the trailing bytes")
	if _u32(data, record_pos) != ZIP64_ENDSIG:
		raise Zip64LocatorMissing(f"Invalid ZIP64 end of central directory record signature at {record_offset_in_file}")

	return CentralDirectory(offset=_u64(data, record_pos + 48), size=_u64(data, record_pos + 40))


def locate_central_directory(data: bytes, container_length: int) -> CentralDirectory:
	"""
	Find the central directory by scanning ``data`` backwards for the end of central directory record.

	:param data: The trailing bytes of the container.
	:param container_length: Total length of the container, used to resolve ZIP64 records.
	:return: Offset and size of the central directory or ``NOT_FOUND``.
	"""
	for pos in range(len(data) - ENDHDR, -1, -1):
		if _u32(data, pos) != ENDSIG:
			continue
		size = _u32(data, pos + 12)
		offset = _u32(data, pos + 16)
		if size == ZIP64_MAGICVAL or offset == ZIP64_MAGICVAL:
			return _locate_zip64_end(data, pos, container_length)
		return CentralDirectory(offset=offset, size=size)
	return NOT_FOUND


def _zip64_extra_values(extra: bytes, entry: CentralDirectoryEntry) -> CentralDirectoryEntry | None:
	pos = 0
	while pos + 4 <= len(extra):
		header_id, data_size = struct.unpack_from("<HH", extra, pos)
		pos += 4
		if header_id == ZIP64_EXTRA_ID:
			end = min(pos + data_size, len(extra))
			values = {}
			# Values are only present for fields set to the magic value, in this order
			for field in ("uncompressed_size", "compressed_size", "local_header_offset"):
				if getattr(entry, field) != ZIP64_MAGICVAL:
					continue
				if pos + 8 > end:
					return None
				values[field] = _u64(extra, pos)
				pos += 8
			return entry._replace(**values)
		pos += data_size
	return None


def find_central_directory_entry(data: bytes, file_name: str) -> CentralDirectoryEntry | None:
	"""
	Walk the central directory file headers in ``data`` and return the record of ``file_name``.
	ZIP64 values are resolved from the extra field.
	The walk stops at the first record with an invalid signature.
	"""
	pos = 0
	while pos + CENHDR <= len(data):
		if _u32(data, pos) != CENSIG:
			break
		name_length = _u16(data, pos + 28)
		extra_length = _u16(data, pos + 30)
		comment_length = _u16(data, pos + 32)

		name_pos = pos + CENHDR
		if name_pos + name_length > len(data):
			break
		name = data[name_pos : name_pos + name_length].decode("utf-8", "replace")
		if name == file_name:
			entry = CentralDirectoryEntry(
				local_header_offset=_u32(data, pos + 42),
				method=_u16(data, pos + 10),
				compressed_size=_u32(data, pos + 20),
				uncompressed_size=_u32(data, pos + 24),
			)
			if ZIP64_MAGICVAL in (entry.local_header_offset, entry.compressed_size, entry.uncompressed_size):
				extra_pos = name_pos + name_length
				return _zip64_extra_values(data[extra_pos : extra_pos + extra_length], entry)
			return entry
		pos = name_pos + name_length + extra_length + comment_length
	return None


def locate_local_file_header(data: bytes, file_name: str) -> int:
	"""
	Walk the central directory file headers in ``data`` and return the
	relative offset of the local file header of ``file_name``.

	:return: Offset of the local file header or -1 if not found.
	"""
	entry = find_central_directory_entry(data, file_name)
	return entry.local_header_offset if entry else -1


def locate_local_file_offset(data: bytes) -> int:
	"""
	:param data: Bytes starting at a local file header.
	:return: Offset of the entry data relative to the header start or -1 on an invalid signature.
	"""
	if len(data) < LOCHDR or _u32(data, 0) != LOCSIG:
		return -1
	return LOCHDR + _u16(data, 26) + _u16(data, 28)


def read_local_file_sizes(data: bytes) -> LocalFileSizes | None:
	if len(data) < LOCHDR or _u32(data, 0) != LOCSIG:
		return None
	return LocalFileSizes(
		flags=_u16(data, 6),
		method=_u16(data, 8),
		compressed_size=_u32(data, 18),
		uncompressed_size=_u32(data, 22),
	)
