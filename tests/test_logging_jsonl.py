import json

from node_harness.logging_jsonl import JsonlLogger, NullLogger


def test_writes_one_record_per_line(tmp_path):
    logger = JsonlLogger(run_id="0123456789abcdef", rpc_port=19932, log_dir=str(tmp_path / "logs"))
    logger.log("node_spawn", pid=42, command="node --dev")
    logger.log("node_exit", pid=42, returncode=None)
    logger.close()

    assert logger.path.name.startswith("harness-19932-")
    assert logger.path.name.endswith("-01234567.jsonl")
    records = [json.loads(line) for line in logger.path.read_text().splitlines()]
    assert [r["event"] for r in records] == ["node_spawn", "node_exit"]
    assert records[0]["pid"] == 42
    assert records[0]["run_id"] == "0123456789abcdef"
    assert "returncode" not in records[1]
    assert isinstance(records[0]["ts_ms"], int)


def test_records_carry_sequence_and_port(tmp_path):
    logger = JsonlLogger(run_id="run", rpc_port=19932, log_dir=str(tmp_path))
    for event in ("group_start", "gate_acquired", "group_end"):
        logger.log(event)
    logger.close()

    records = [json.loads(line) for line in logger.path.read_text().splitlines()]
    assert [r["seq"] for r in records] == [0, 1, 2]
    assert all(r["rpc_port"] == 19932 for r in records)
    elapsed = [r["elapsed_ms"] for r in records]
    assert elapsed == sorted(elapsed)
    assert elapsed[0] >= 0


def test_non_json_values_are_stringified(tmp_path):
    logger = JsonlLogger(run_id="run", rpc_port=1, log_dir=str(tmp_path))
    logger.log("node_spawn", command=tmp_path)
    logger.close()
    record = json.loads(logger.path.read_text())
    assert record["command"] == str(tmp_path)


def test_close_is_idempotent_and_silences_logging(tmp_path):
    logger = JsonlLogger(run_id="run", rpc_port=1, log_dir=str(tmp_path))
    logger.close()
    logger.close()
    assert logger.closed
    logger.log("ignored")
    assert logger.path.read_text() == ""


def test_null_logger_accepts_everything():
    logger = NullLogger()
    logger.log("anything", x=1)
    logger.close()
    assert logger.path is None
