"""Session log tests for livecast."""

import json

from loguru import logger

from livecast.core.log import LogEntry, SessionLog, Severity


def test_log_creates_file(tmp_path):
    """SessionLog creates the log file (and its directory) on first write."""
    log_path = tmp_path / "subdir" / "session.jsonl"
    log = SessionLog(log_path)
    log.info("Initializing connection via RELAY...")
    log.success("Streaming started: MP3 [audio/mpeg] @ 128kbps")

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    records = [json.loads(line) for line in lines]
    assert records[0]["severity"] == "info"
    assert records[1]["severity"] == "success"
    assert records[1]["message"] == "Streaming started: MP3 [audio/mpeg] @ 128kbps"
    assert "T" in records[0]["timestamp"]


def test_log_in_memory_only():
    log = SessionLog()
    log.warning("Codec fallback")
    log.error("Connection failed")
    assert len(log) == 2
    assert [e.severity for e in log.entries] == [Severity.WARNING, Severity.ERROR]


def test_entries_is_a_snapshot():
    log = SessionLog()
    log.info("one")
    snapshot = log.entries
    log.info("two")
    assert len(snapshot) == 1


def test_listeners_receive_entries():
    log = SessionLog()
    received = []
    log.subscribe(received.append)
    entry = log.add("hello", "success")
    assert received == [entry]
    assert isinstance(entry, LogEntry)
    assert entry.severity is Severity.SUCCESS


def test_entries_forwarded_to_loguru():
    messages = []
    sink_id = logger.add(lambda m: messages.append(m.record["level"].name + ":" + m.record["message"]), level="INFO")
    try:
        log = SessionLog()
        log.success("Recording saved: show.webm")
        log.warning("Hint: check relay")
    finally:
        logger.remove(sink_id)
    assert "SUCCESS:Recording saved: show.webm" in messages
    assert "WARNING:Hint: check relay" in messages
