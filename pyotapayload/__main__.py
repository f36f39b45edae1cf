# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

import argparse
import logging
import sys
from pathlib import Path

from pyotapayload import PayloadSession
from pyotapayload.session import MAX_WORKERS


def format_size(size: float) -> str:
	for unit in ("B", "KB", "MB", "GB"):
		if size < 1024 or unit == "GB":
			return f"{size:.2f} {unit}" if unit != "B" else f"{size} B"
		size /= 1024
	return f"{size} B"


def list_command(url: str) -> None:
	with PayloadSession(url) as session:
		payload = session.payload
		print(f"Payload: {payload.file_name} ({format_size(payload.archive_size)})")
		print(f"Block size: {payload.block_size}")
		print(f"Partitions: {len(payload.manifest.partitions)}\n")

		print(f"{'Name':<24} {'Size':>12} {'Raw size':>12} {'Ops':>6}")
		print("-" * 57)
		operations = {p.partition_name: len(p.operations) for p in payload.manifest.partitions}
		for info in session.partitions():
			print(f"{info.name:<24} {format_size(info.size):>12} {format_size(info.raw_size):>12} {operations[info.name]:>6}")


def extract_command(url: str, names: list[str], output_dir: Path, max_workers: int) -> bool:
	last_completed: dict[str, float] = {}

	def progress_changed(name: str, position: int, total: int) -> None:
		completed = round(position * 100 / total, 1) if total else 100.0
		if completed == last_completed.get(name):
			return
		last_completed[name] = completed
		print(f"\r::: {name} ::: {completed:0.1f} % ::: {position/1_000_000:.2f}/{total/1_000_000:.2f} MB :::", end="")

	with PayloadSession(url, max_workers=max_workers) as session:
		print(f"Extracting {', '.join(names)} from {session.source.name} to {output_dir}...")
		results = session.extract_many(names, output_dir, progress_changed)
	print("")

	success = True
	for name, result in results.items():
		if result.success:
			print(f"{name}: OK {result.file_path}")
		else:
			success = False
			print(f"{name}: SHA256 mismatch {result.file_path}")
			if result.corrupt_operations:
				print(f"  Corrupt operations: {', '.join(str(index) for index in result.corrupt_operations)}")
		print(f"  Expected: {result.expected_hash}")
		print(f"  Actual:   {result.actual_hash}")
	return success


def metadata_command(url: str) -> None:
	with PayloadSession(url) as session:
		for key, value in session.metadata().items():
			print(f"{key}={value}")


def main() -> int:
	parser = argparse.ArgumentParser(description="Read partitions of Android OTA payloads via HTTP range requests")
	parser.add_argument("--log-level", choices=["debug", "info", "warning", "error", "critical"], default="warning")

	subparsers = parser.add_subparsers(dest="command")

	p_list = subparsers.add_parser("list", help="List partitions of the payload at URL")
	p_list.add_argument("url", help="URL to an OTA zip or payload.bin")

	p_extract = subparsers.add_parser("extract", help="Extract partitions from the payload at URL")
	p_extract.add_argument("url", help="URL to an OTA zip or payload.bin")
	p_extract.add_argument("partitions", nargs="+", metavar="NAME", help="Partition name")
	p_extract.add_argument("-o", "--output", type=Path, default=Path("."), help="Output directory")
	p_extract.add_argument("-j", "--jobs", type=int, default=MAX_WORKERS, help="Number of worker threads")

	p_metadata = subparsers.add_parser("metadata", help="Show the OTA metadata of the zip at URL")
	p_metadata.add_argument("url", help="URL to an OTA zip")

	args = parser.parse_args()

	logging.basicConfig(format="[%(levelno)d] [%(asctime)s.%(msecs)03d] %(message)s   (%(filename)s:%(lineno)d)")
	logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))

	if args.command == "list":
		list_command(args.url)
		return 0

	if args.command == "extract":
		return 0 if extract_command(args.url, args.partitions, args.output, args.jobs) else 1

	if args.command == "metadata":
		metadata_command(args.url)
		return 0

	parser.print_help()
	return 0


def run() -> None:
	try:
		exit_code = main()
	except Exception as err:
		print(err, file=sys.stderr)
		sys.exit(1)
	sys.exit(exit_code)


if __name__ == "__main__":
	run()
