"""Local event bus CLI (tail/publish)."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from manta_gc.logging_utils import configure_logging

from .publisher import FileEventBusPublisher
from .reader import EventBusReader


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="manta_gc local event bus")
    sub = parser.add_subparsers(dest="command", required=True)

    tail = sub.add_parser("tail", help="Read records from a topic")
    tail.add_argument("--root", required=True, help="Bus root path")
    tail.add_argument("--topic", required=True, help="Topic name")
    tail.add_argument("--partition", type=int, default=0, help="Partition id")
    tail.add_argument("--from-offset", type=int, default=0, help="Start offset (inclusive)")
    tail.add_argument("--max", type=int, default=20, help="Max records to return")

    publish = sub.add_parser("publish", help="Append a JSON payload to a topic")
    publish.add_argument("--root", required=True, help="Bus root path")
    publish.add_argument("--topic", required=True, help="Topic name")
    publish.add_argument("--file", required=True, help="JSON file holding the payload")
    publish.add_argument("--partition-key", default=None, help="Partition key (defaults to payload node)")
    return parser


def _cmd_tail(args: argparse.Namespace) -> int:
    reader = EventBusReader(Path(args.root))
    for record in reader.read(
        args.topic,
        partition=args.partition,
        from_offset=args.from_offset,
        max_records=args.max,
    ):
        row: dict[str, object] = {
            "topic": record.topic,
            "partition": record.partition,
            "offset": record.offset,
            "record": record.record,
        }
        if record.error is not None:
            row["error"] = record.error
        print(json.dumps(row, ensure_ascii=True))
    return 0


def _cmd_publish(args: argparse.Namespace) -> int:
    payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise SystemExit("PAYLOAD_NOT_AN_OBJECT")
    partition_key = args.partition_key or str(payload.get("node") or "")
    ref = FileEventBusPublisher(Path(args.root)).publish(args.topic, partition_key, payload)
    print(json.dumps({"topic": ref.topic, "partition": ref.partition, "offset": ref.offset}, ensure_ascii=True))
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    if args.command == "tail":
        return _cmd_tail(args)
    if args.command == "publish":
        return _cmd_publish(args)
    raise SystemExit("UNKNOWN_COMMAND")


if __name__ == "__main__":
    raise SystemExit(main())
