# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

"""
Read partitions from Android OTA payloads on HTTP servers using range requests.
"""

from __future__ import annotations

from logging import getLogger

from pyotapayload.exceptions import (
	EntryNotFound,
	InitError,
	InvalidMagic,
	InvalidSeek,
	ManifestDecodeError,
	PartitionNotFound,
	PayloadError,
	RemoteIOError,
	UnsupportedFormatVersion,
	UnsupportedOperation,
	Zip64LocatorMissing,
)
from pyotapayload.manifest import DeltaArchiveManifest, OperationType, operation_name
from pyotapayload.metadata import METADATA_FILE_NAME, parse_metadata, read_metadata
from pyotapayload.payload import (
	PAYLOAD_FILE_NAME,
	ExtractResult,
	PartitionInfo,
	Payload,
	PayloadHeader,
	decode_payload,
	extract_partition,
	file_sha256,
	list_partitions,
	locate_payload,
)
from pyotapayload.remote import CaseInsensitiveDict, RemoteFile
from pyotapayload.session import PayloadSession
from pyotapayload.zip import (
	CentralDirectory,
	CentralDirectoryEntry,
	find_central_directory_entry,
	locate_central_directory,
	locate_local_file_header,
	locate_local_file_offset,
)

__version__ = "0.1.0"

__all__ = [
	"CaseInsensitiveDict",
	"CentralDirectory",
	"CentralDirectoryEntry",
	"DeltaArchiveManifest",
	"EntryNotFound",
	"ExtractResult",
	"InitError",
	"InvalidMagic",
	"InvalidSeek",
	"ManifestDecodeError",
	"METADATA_FILE_NAME",
	"OperationType",
	"PAYLOAD_FILE_NAME",
	"PartitionInfo",
	"PartitionNotFound",
	"Payload",
	"PayloadError",
	"PayloadHeader",
	"PayloadSession",
	"RemoteFile",
	"RemoteIOError",
	"UnsupportedFormatVersion",
	"UnsupportedOperation",
	"Zip64LocatorMissing",
	"decode_payload",
	"extract_partition",
	"file_sha256",
	"find_central_directory_entry",
	"list_partitions",
	"locate_central_directory",
	"locate_local_file_header",
	"locate_local_file_offset",
	"locate_payload",
	"operation_name",
	"parse_metadata",
	"read_metadata",
]

logger = getLogger("pyotapayload")
