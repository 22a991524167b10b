import json
from pathlib import Path

from manta_gc.event_bus import EventBusReader, FileEventBusPublisher
from manta_gc.event_bus.cli import main as bus_main


TOPIC = "manta_gc.instructions.v1"


def _publish(bus: FileEventBusPublisher, count: int) -> None:
    for idx in range(count):
        bus.publish(TOPIC, f"s{idx}", {"node": f"s{idx}", "records": []})


def test_reader_returns_offsets(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    _publish(bus, 3)
    reader = EventBusReader(tmp_path)
    records = reader.read(TOPIC, from_offset=0, max_records=10)
    assert [record.offset for record in records] == [0, 1, 2]
    assert records[0].payload["node"] == "s0"


def test_reader_from_offset(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    _publish(bus, 5)
    reader = EventBusReader(tmp_path)
    records = reader.read(TOPIC, from_offset=3, max_records=10)
    assert [record.offset for record in records] == [3, 4]


def test_reader_stops_at_partial_line(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    _publish(bus, 2)
    log_path = tmp_path / TOPIC / "partition=0.jsonl"
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write('{"partition_key":"s9","payload":{"no')
    records = EventBusReader(tmp_path).read(TOPIC, max_records=10)
    assert [record.offset for record in records] == [0, 1]


def test_reader_partitions_default_to_zero(tmp_path: Path) -> None:
    reader = EventBusReader(tmp_path)
    assert reader.partitions(TOPIC) == [0]
    assert reader.read(TOPIC) == []
    (tmp_path / TOPIC).mkdir()
    (tmp_path / TOPIC / "partition=2.jsonl").write_text("", encoding="utf-8")
    (tmp_path / TOPIC / "partition=x.jsonl").write_text("", encoding="utf-8")
    assert reader.partitions(TOPIC) == [2]


def test_cli_publish_then_tail(tmp_path: Path, capsys) -> None:
    payload_path = tmp_path / "batch.json"
    payload_path.write_text(json.dumps({"node": "s1", "records": []}), encoding="utf-8")
    root = tmp_path / "eb"

    assert bus_main(["publish", "--root", str(root), "--topic", TOPIC, "--file", str(payload_path)]) == 0
    published = json.loads(capsys.readouterr().out.strip())
    assert published == {"topic": TOPIC, "partition": 0, "offset": "0"}

    assert bus_main(["tail", "--root", str(root), "--topic", TOPIC]) == 0
    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert len(lines) == 1
    assert lines[0]["record"]["partition_key"] == "s1"
    assert lines[0]["record"]["payload"] == {"node": "s1", "records": []}


def test_reader_reports_corrupt_line_and_continues(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    _publish(bus, 1)
    log_path = tmp_path / TOPIC / "partition=0.jsonl"
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")
        handle.write("[1, 2]\n")
    _publish(bus, 1)

    records = EventBusReader(tmp_path).read(TOPIC, max_records=10)

    assert [record.offset for record in records] == [0, 1, 2, 3]
    assert [record.error is None for record in records] == [True, False, False, True]
    assert records[1].error.startswith("invalid JSON")
    assert records[1].payload is None
    assert records[3].payload["node"] == "s0"
