# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

"""
Message classes of the update_engine ``update_metadata.proto`` subset used by payload.bin.

The classes are created from a descriptor at import time, no protoc run is needed.
The operation type is declared as plain ``uint32`` so that codes this module
does not know survive parsing and can be reported as unsupported.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "chromeos_update_engine"

_FD = descriptor_pb2.FieldDescriptorProto


class OperationType(IntEnum):
	REPLACE = 0
	REPLACE_BZ = 1
	MOVE = 2
	BSDIFF = 3
	SOURCE_COPY = 4
	SOURCE_BSDIFF = 5
	ZERO = 6
	DISCARD = 7
	REPLACE_XZ = 8
	PUFFDIFF = 9
	BROTLI_BSDIFF = 10
	ZUCCHINI = 11
	LZ4DIFF_BSDIFF = 12
	LZ4DIFF_PUFFDIFF = 13


def operation_name(op_type: int) -> str:
	try:
		return OperationType(op_type).name
	except ValueError:
		return str(op_type)


# (name, number, type, label, message type name, default)
_MESSAGES: dict[str, list[tuple[str, int, int, int, str | None, str | None]]] = {
	"Extent": [
		("start_block", 1, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("num_blocks", 2, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
	],
	"PartitionInfo": [
		("size", 1, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("hash", 2, _FD.TYPE_BYTES, _FD.LABEL_OPTIONAL, None, None),
	],
	"InstallOperation": [
		("type", 1, _FD.TYPE_UINT32, _FD.LABEL_OPTIONAL, None, None),
		("data_offset", 2, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("data_length", 3, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("src_extents", 4, _FD.TYPE_MESSAGE, _FD.LABEL_REPEATED, "Extent", None),
		("src_length", 5, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("dst_extents", 6, _FD.TYPE_MESSAGE, _FD.LABEL_REPEATED, "Extent", None),
		("dst_length", 7, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("data_sha256_hash", 8, _FD.TYPE_BYTES, _FD.LABEL_OPTIONAL, None, None),
		("src_sha256_hash", 9, _FD.TYPE_BYTES, _FD.LABEL_OPTIONAL, None, None),
	],
	"PartitionUpdate": [
		("partition_name", 1, _FD.TYPE_STRING, _FD.LABEL_OPTIONAL, None, None),
		("run_postinstall", 2, _FD.TYPE_BOOL, _FD.LABEL_OPTIONAL, None, None),
		("postinstall_path", 3, _FD.TYPE_STRING, _FD.LABEL_OPTIONAL, None, None),
		("filesystem_type", 4, _FD.TYPE_STRING, _FD.LABEL_OPTIONAL, None, None),
		("old_partition_info", 6, _FD.TYPE_MESSAGE, _FD.LABEL_OPTIONAL, "PartitionInfo", None),
		("new_partition_info", 7, _FD.TYPE_MESSAGE, _FD.LABEL_OPTIONAL, "PartitionInfo", None),
		("operations", 8, _FD.TYPE_MESSAGE, _FD.LABEL_REPEATED, "InstallOperation", None),
		("version", 17, _FD.TYPE_STRING, _FD.LABEL_OPTIONAL, None, None),
	],
	"DeltaArchiveManifest": [
		("block_size", 3, _FD.TYPE_UINT32, _FD.LABEL_OPTIONAL, None, "4096"),
		("signatures_offset", 4, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("signatures_size", 5, _FD.TYPE_UINT64, _FD.LABEL_OPTIONAL, None, None),
		("minor_version", 12, _FD.TYPE_UINT32, _FD.LABEL_OPTIONAL, None, "0"),
		("partitions", 13, _FD.TYPE_MESSAGE, _FD.LABEL_REPEATED, "PartitionUpdate", None),
		("max_timestamp", 14, _FD.TYPE_INT64, _FD.LABEL_OPTIONAL, None, None),
		("partial_update", 16, _FD.TYPE_BOOL, _FD.LABEL_OPTIONAL, None, None),
		("security_patch_level", 18, _FD.TYPE_STRING, _FD.LABEL_OPTIONAL, None, None),
	],
}


def _build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
	file_proto = descriptor_pb2.FileDescriptorProto(name="update_metadata.proto", package=PACKAGE, syntax="proto2")
	for message_name, fields in _MESSAGES.items():
		message_proto = file_proto.message_type.add(name=message_name)
		for name, number, field_type, label, type_name, default in fields:
			field_proto = message_proto.field.add(name=name, number=number, type=field_type, label=label)
			if type_name:
				field_proto.type_name = f".{PACKAGE}.{type_name}"
			if default is not None:
				field_proto.default_value = default
	return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file_descriptor().SerializeToString())


def _message_class(name: str) -> Any:
	return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.{name}"))


Extent = _message_class("Extent")
PartitionInfo = _message_class("PartitionInfo")
InstallOperation = _message_class("InstallOperation")
PartitionUpdate = _message_class("PartitionUpdate")
DeltaArchiveManifest = _message_class("DeltaArchiveManifest")
