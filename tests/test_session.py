# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

import hashlib
import lzma
import sys
import zipfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from random import randbytes
from threading import Barrier

import pytest

from pyotapayload import EntryNotFound, OperationType, PayloadSession, RemoteFile, locate_payload, read_metadata
from pyotapayload.__main__ import main, run

BLOCK_SIZE = 4096


def build_payload(payload_builder) -> tuple[bytes, dict[str, bytes]]:
	builder = payload_builder(block_size=BLOCK_SIZE)
	images = {
		"boot": randbytes(BLOCK_SIZE * 8),
		"vendor_boot": randbytes(BLOCK_SIZE * 4) + b"\x00" * BLOCK_SIZE * 4,
	}
	builder.add_partition(
		"boot",
		images["boot"],
		[(OperationType.REPLACE, block, 1, images["boot"][block * BLOCK_SIZE : (block + 1) * BLOCK_SIZE]) for block in range(8)],
	)
	builder.add_partition(
		"vendor_boot",
		images["vendor_boot"],
		[
			(OperationType.REPLACE_XZ, 0, 2, lzma.compress(images["vendor_boot"][: BLOCK_SIZE * 2])),
			(OperationType.REPLACE, 2, 2, images["vendor_boot"][BLOCK_SIZE * 2 : BLOCK_SIZE * 4]),
			(OperationType.ZERO, 4, 4, b"\x00" * BLOCK_SIZE * 4),
		],
	)
	return builder.build(), images


def test_locate_payload_in_zip(tmp_path: Path, server: str, payload_builder, ota_zip) -> None:
	payload_data, _ = build_payload(payload_builder)
	payload_offset = ota_zip(tmp_path / "www" / "ota.zip", payload_data)

	source = RemoteFile(f"{server}/ota.zip")
	assert locate_payload(source) == payload_offset
	assert locate_payload(source, "payload_properties.txt") > payload_offset
	assert locate_payload(source, "missing.bin") == -1


def test_locate_payload_without_central_directory(tmp_path: Path, server: str) -> None:
	(tmp_path / "www" / "ota.zip").write_bytes(b"\x00" * 10_000)
	assert locate_payload(RemoteFile(f"{server}/ota.zip")) == -1


def test_session(tmp_path: Path, server: str, payload_builder, ota_zip) -> None:
	payload_data, images = build_payload(payload_builder)
	payload_offset = ota_zip(tmp_path / "www" / "ota.zip", payload_data)

	with PayloadSession(f"{server}/ota.zip") as session:
		payload = session.open()
		assert session.open() is payload
		assert payload.file_name == "ota.zip"
		assert payload.data_offset > payload_offset
		assert payload.archive_size == (tmp_path / "www" / "ota.zip").stat().st_size

		partitions = session.partitions()
		assert [(p.name, p.size, p.sha256) for p in partitions] == [
			(name, len(image), hashlib.sha256(image).hexdigest()) for name, image in images.items()
		]

		result = session.extract("vendor_boot", tmp_path / "out")
		assert result.success
		assert (tmp_path / "out" / "vendor_boot.img").read_bytes() == images["vendor_boot"]


def test_session_entry_not_found(tmp_path: Path, server: str, ota_zip) -> None:
	ota_zip(tmp_path / "www" / "ota.zip", None)
	with PayloadSession(f"{server}/ota.zip") as session:
		with pytest.raises(EntryNotFound):
			session.open()


def test_concurrent_extraction(tmp_path: Path, server: str, payload_builder, ota_zip) -> None:
	payload_data, images = build_payload(payload_builder)
	ota_zip(tmp_path / "www" / "ota.zip", payload_data)

	progress: dict[str, list[int]] = {}

	def progress_changed(name: str, position: int, total: int) -> None:
		progress.setdefault(name, []).append(position)
		assert total == len(images[name])

	with PayloadSession(f"{server}/ota.zip", max_workers=2) as session:
		results = session.extract_many(images, tmp_path / "out", progress_changed)

	assert list(results) == list(images)
	for name, image in images.items():
		assert results[name].success
		assert results[name].actual_hash == hashlib.sha256(image).hexdigest()
		assert (tmp_path / "out" / f"{name}.img").read_bytes() == image
	assert progress["boot"] == [BLOCK_SIZE * (block + 1) for block in range(8)]
	assert progress["vendor_boot"][-1] == len(images["vendor_boot"])


def test_concurrent_extraction_from_threads(tmp_path: Path, server: str, payload_builder, ota_zip) -> None:
	payload_data, images = build_payload(payload_builder)
	ota_zip(tmp_path / "www" / "ota.zip", payload_data)

	with PayloadSession(f"{server}/ota.zip") as session:
		with ThreadPoolExecutor(max_workers=4) as executor:
			futures = {
				(name, run): executor.submit(session.extract, name, tmp_path / f"run{run}") for run in range(2) for name in images
			}
			results = {key: future.result() for key, future in futures.items()}

	for (name, run), result in results.items():
		assert result.success
		assert (tmp_path / f"run{run}" / f"{name}.img").read_bytes() == images[name]


@pytest.mark.parametrize("compression", (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED))
def test_read_metadata(tmp_path: Path, server: str, payload_builder, ota_zip, compression: int) -> None:
	payload_data, _ = build_payload(payload_builder)
	ota_zip(tmp_path / "www" / "ota.zip", payload_data, metadata_compression=compression)

	metadata = read_metadata(RemoteFile(f"{server}/ota.zip"))
	assert metadata == {
		"ota-type": "AB",
		"post-build": "OnePlus/CPH2551/OP594DL1:14/UKQ1.230924.001/R.1:user/release-keys",
		"pre-device": "OP594DL1",
	}


def test_read_metadata_missing(tmp_path: Path, server: str, payload_builder, ota_zip) -> None:
	payload_data, _ = build_payload(payload_builder)
	ota_zip(tmp_path / "www" / "ota.zip", payload_data, metadata=None)
	assert read_metadata(RemoteFile(f"{server}/ota.zip")) == {}

	(tmp_path / "www" / "payload.bin").write_bytes(payload_data)
	assert read_metadata(RemoteFile(f"{server}/payload.bin")) == {}


def test_cli(tmp_path: Path, server: str, payload_builder, ota_zip, monkeypatch, capsys) -> None:
	payload_data, images = build_payload(payload_builder)
	ota_zip(tmp_path / "www" / "ota.zip", payload_data)
	url = f"{server}/ota.zip"

	monkeypatch.setattr(sys, "argv", ["pyotapayload", "list", url])
	assert main() == 0
	out = capsys.readouterr().out
	assert "Block size: 4096" in out
	assert "vendor_boot" in out

	monkeypatch.setattr(sys, "argv", ["pyotapayload", "extract", url, "boot", "vendor_boot", "-o", str(tmp_path / "out")])
	assert main() == 0
	out = capsys.readouterr().out
	assert "boot: OK" in out
	assert hashlib.sha256(images["boot"]).hexdigest() in out
	assert (tmp_path / "out" / "boot.img").read_bytes() == images["boot"]

	monkeypatch.setattr(sys, "argv", ["pyotapayload", "metadata", url])
	assert main() == 0
	assert "ota-type=AB" in capsys.readouterr().out


def test_session_raw_payload(tmp_path: Path, server: str, payload_builder) -> None:
	payload_data, images = build_payload(payload_builder)
	(tmp_path / "www" / "payload.bin").write_bytes(payload_data)

	with PayloadSession(f"{server}/payload.bin") as session:
		assert locate_payload(session.source) == 0
		assert session.payload.file_name == "payload.bin"
		assert session.payload.archive_size == len(payload_data)
		result = session.submit("boot", tmp_path / "out").result()
	assert result.success
	assert (tmp_path / "out" / "boot.img").read_bytes() == images["boot"]


class UnseekableFile:
	def __init__(self, file) -> None:
		self.file = file

	def write(self, data: bytes) -> int:
		return self.file.write(data)

	def tell(self) -> int:
		return self.file.tell()

	def seek(self, *args) -> int:
		raise OSError("Not seekable")

	def flush(self) -> None:
		self.file.flush()


def test_read_metadata_with_data_descriptor(tmp_path: Path, server: str) -> None:
	metadata = b"ota-type=AB\npre-device=OP594DL1\n" * 20
	with open(tmp_path / "www" / "ota.zip", "wb") as file:
		# Written to an unseekable stream, the local headers carry no sizes
		with zipfile.ZipFile(UnseekableFile(file), "w") as zfile:
			zfile.writestr("payload_properties.txt", b"FILE_SIZE=123\n")
			zfile.writestr("META-INF/com/android/metadata", metadata, compress_type=zipfile.ZIP_DEFLATED)

	with zipfile.ZipFile(tmp_path / "www" / "ota.zip") as zfile:
		assert zfile.getinfo("META-INF/com/android/metadata").flag_bits & 0x08

	assert read_metadata(RemoteFile(f"{server}/ota.zip")) == {"ota-type": "AB", "pre-device": "OP594DL1"}


def test_cli_error(tmp_path: Path, server: str, monkeypatch, capsys) -> None:
	monkeypatch.setattr(sys, "argv", ["pyotapayload", "list", f"{server}/missing.zip"])
	with pytest.raises(SystemExit) as exc_info:
		run()
	assert exc_info.value.code == 1
	captured = capsys.readouterr()
	assert "missing.zip" in captured.err
	assert "Traceback" not in captured.err


def test_submit_from_threads_shares_executor(tmp_path: Path, server: str, payload_builder, ota_zip, monkeypatch) -> None:
	payload_data, images = build_payload(payload_builder)
	ota_zip(tmp_path / "www" / "ota.zip", payload_data)

	executors = []

	class CountingExecutor(ThreadPoolExecutor):
		def __init__(self, *args, **kwargs) -> None:
			executors.append(self)
			super().__init__(*args, **kwargs)

	monkeypatch.setattr("pyotapayload.session.ThreadPoolExecutor", CountingExecutor)

	with PayloadSession(f"{server}/ota.zip") as session:
		session.open()
		barrier = Barrier(8)

		def submit(index: int):
			barrier.wait()
			return session.submit("boot", tmp_path / f"run{index}")

		with ThreadPoolExecutor(max_workers=8) as executor:
			futures = list(executor.map(submit, range(8)))
		assert all(future.result().success for future in futures)

	assert len(executors) == 1
	assert session._executor is None
