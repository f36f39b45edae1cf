# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

import hashlib
import socket
import struct
import zipfile
from contextlib import closing, contextmanager
from pathlib import Path
from socketserver import TCPServer
from threading import Thread
from typing import Any, Callable, Generator

import pytest
from RangeHTTPServer import RangeRequestHandler

from pyotapayload import DeltaArchiveManifest, OperationType

METADATA = b"ota-type=AB\npost-build=OnePlus/CPH2551/OP594DL1:14/UKQ1.230924.001/R.1:user/release-keys\npre-device=OP594DL1\n"


@contextmanager
def http_server(directory: Path, handler_class: type = RangeRequestHandler) -> Generator[int, None, None]:
	# Select free port
	with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
		sock.bind(("", 0))
		sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
		port = sock.getsockname()[1]

	class Handler(handler_class):  # type: ignore[valid-type,misc]
		def __init__(self, *args, **kwargs):
			super().__init__(*args, directory=str(directory), **kwargs)

		def log_message(self, format, *args):
			pass

	server = TCPServer(("", port), Handler)
	thread = Thread(target=server.serve_forever)
	thread.daemon = True
	thread.start()
	try:
		yield port
	finally:
		server.shutdown()
		server.server_close()
		thread.join(3)


@pytest.fixture
def server(tmp_path: Path) -> Generator[str, None, None]:
	"""Base URL of a range capable HTTP server serving ``tmp_path / "www"``"""
	www = tmp_path / "www"
	www.mkdir()
	with http_server(www) as port:
		yield f"http://127.0.0.1:{port}"


class PayloadBuilder:
	"""Create payload.bin files, operations are (type, start block, num blocks, blob)"""

	def __init__(self, block_size: int = 4096, signature: bytes = b"\x5a" * 267) -> None:
		self.manifest = DeltaArchiveManifest(block_size=block_size, minor_version=0)
		self.signature = signature
		self.data = bytearray()

	def add_partition(
		self,
		name: str,
		image: bytes,
		operations: list[tuple[int, int, int, bytes]],
		*,
		expected_hash: bytes | None = None,
	) -> None:
		partition = self.manifest.partitions.add(partition_name=name)
		partition.new_partition_info.size = len(image)
		partition.new_partition_info.hash = hashlib.sha256(image).digest() if expected_hash is None else expected_hash
		for op_type, start_block, num_blocks, blob in operations:
			operation = partition.operations.add(type=op_type)
			if op_type == OperationType.ZERO:
				operation.data_length = len(blob)
			else:
				operation.data_offset = len(self.data)
				operation.data_length = len(blob)
				operation.data_sha256_hash = hashlib.sha256(blob).digest()
				self.data += blob
			operation.dst_extents.add(start_block=start_block, num_blocks=num_blocks)

	def header(self, magic: bytes = b"CrAU", version: int = 2) -> bytes:
		manifest = self.manifest.SerializeToString()
		return magic + struct.pack(">QQI", version, len(manifest), len(self.signature)) + manifest + self.signature

	def build(self, magic: bytes = b"CrAU", version: int = 2) -> bytes:
		return self.header(magic, version) + bytes(self.data)


@pytest.fixture
def payload_builder() -> type[PayloadBuilder]:
	return PayloadBuilder


def write_ota_zip(
	file: Path,
	payload: bytes | None,
	*,
	metadata: bytes | None = METADATA,
	metadata_compression: int = zipfile.ZIP_STORED,
) -> int:
	"""
	Write an OTA package like zip to ``file``.

	:return: Offset of the payload.bin data in the zip, -1 without payload.
	"""
	with zipfile.ZipFile(file, "w") as zfile:
		zfile.writestr("apex_info.pb", b"\x0a\x10" + b"a" * 16, compress_type=zipfile.ZIP_DEFLATED)
		zfile.writestr("care_map.pb", b"\x00" * 100)
		if payload is not None:
			zfile.writestr("payload.bin", payload, compress_type=zipfile.ZIP_STORED)
		zfile.writestr("payload_properties.txt", b"FILE_HASH=abc\nFILE_SIZE=123\n")
		if metadata is not None:
			zfile.writestr("META-INF/com/android/metadata", metadata, compress_type=metadata_compression)

	if payload is None:
		return -1
	with zipfile.ZipFile(file) as zfile:
		info = zfile.getinfo("payload.bin")
		return info.header_offset + 30 + len(info.filename.encode("utf-8")) + len(info.extra)


@pytest.fixture
def ota_zip() -> Callable[..., int]:
	return write_ota_zip


@pytest.fixture
def serve() -> Callable[..., Any]:
	"""The ``http_server`` context manager, for tests using their own request handler"""
	return http_server
