import json
from pathlib import Path

import pytest

from manta_gc.event_bus import FileEventBusPublisher
from manta_gc.event_bus.publisher import read_head


TOPIC = "manta_gc.instructions.v1"


def test_offsets_are_monotonic(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    ref1 = bus.publish(TOPIC, "s1", {"node": "s1", "records": []})
    ref2 = bus.publish(TOPIC, "s2", {"node": "s2", "records": []})
    assert ref1.offset_kind == "file_line"
    assert ref1.offset == "0"
    assert ref2.offset == "1"
    assert read_head(tmp_path / TOPIC / "head.json") == 2


def test_head_recovers_from_missing(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    bus.publish(TOPIC, "s1", {"node": "s1", "records": []})
    head = tmp_path / TOPIC / "head.json"
    head.unlink()
    ref2 = bus.publish(TOPIC, "s2", {"node": "s2", "records": []})
    assert ref2.offset == "1"


def test_head_recovers_when_log_missing(tmp_path: Path) -> None:
    topic_dir = tmp_path / TOPIC
    topic_dir.mkdir(parents=True)
    (topic_dir / "head.json").write_text('{"next_offset": 7}', encoding="utf-8")
    bus = FileEventBusPublisher(tmp_path)
    ref = bus.publish(TOPIC, "s1", {"node": "s1", "records": []})
    assert ref.offset == "0"


def test_records_carry_partition_key_and_payload(tmp_path: Path) -> None:
    bus = FileEventBusPublisher(tmp_path)
    bus.publish("manta_gc.cleanup.v1", "k1", {"cleanup": [{"key": "k1", "size": 10, "shards": []}]})
    line = (tmp_path / "manta_gc.cleanup.v1" / "partition=0.jsonl").read_text(encoding="utf-8")
    record = json.loads(line)
    assert record["partition_key"] == "k1"
    assert record["payload"] == {"cleanup": [{"key": "k1", "size": 10, "shards": []}]}


@pytest.mark.parametrize("topic", ["", "..", "a/b"])
def test_invalid_topic_is_rejected(tmp_path: Path, topic: str) -> None:
    bus = FileEventBusPublisher(tmp_path)
    with pytest.raises(ValueError):
        bus.publish(topic, "k", {})
