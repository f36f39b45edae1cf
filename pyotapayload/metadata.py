# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

from __future__ import annotations

import zlib
from logging import getLogger

from pyotapayload.exceptions import PayloadError
from pyotapayload.payload import find_local_header
from pyotapayload.remote import RemoteFile
from pyotapayload.zip import locate_local_file_offset, read_local_file_sizes

METADATA_FILE_NAME = "META-INF/com/android/metadata"
METHOD_STORED = 0
METHOD_DEFLATED = 8
FLAG_DATA_DESCRIPTOR = 0x08

logger = getLogger("pyotapayload")


def parse_metadata(text: str) -> dict[str, str]:
	metadata = {}
	for line in text.splitlines():
		key, sep, value = line.partition("=")
		if sep and key.strip():
			metadata[key.strip()] = value.strip()
	return metadata


def read_metadata(source: RemoteFile, file_name: str = METADATA_FILE_NAME) -> dict[str, str]:
	"""
	Read the OTA metadata (``key=value`` lines) from a remote OTA package.

	:return: The metadata, empty if the package has no metadata entry.
	"""
	local_header = find_local_header(source, file_name)
	if not local_header:
		return {}
	data_offset = locate_local_file_offset(local_header.data)
	sizes = read_local_file_sizes(local_header.data)
	if data_offset < 0 or not sizes:
		logger.warning("Invalid local file header of %s at offset %d", file_name, local_header.offset)
		return {}

	if sizes.flags & FLAG_DATA_DESCRIPTOR or not sizes.compressed_size:
		# Sizes follow the data, the central directory has them
		compressed_size = local_header.entry.compressed_size
	else:
		compressed_size = sizes.compressed_size

	if sizes.method not in (METHOD_STORED, METHOD_DEFLATED):
		raise PayloadError(f"Unsupported compression method {sizes.method} of {file_name}")
	if local_header.offset + data_offset + compressed_size > source.length:
		raise PayloadError(f"{file_name} exceeds the file length of {source.url}")

	with source.lock:
		if compressed_size:
			source.seek(local_header.offset + data_offset)
		data = source.read_exactly(compressed_size)

	if sizes.method == METHOD_DEFLATED:
		try:
			data = zlib.decompress(data, -15)
		except zlib.error as err:
			raise PayloadError(f"Failed to inflate {file_name}: {err}") from err

	metadata = parse_metadata(data.decode("utf-8", "replace"))
	logger.debug("Metadata of %s: %r", source.url, metadata)
	return metadata
