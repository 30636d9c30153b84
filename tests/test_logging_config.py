import logging

from logging_config import LOG_FORMAT, ContextualFormatter


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="services.ingestion",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="Sink write failed",
        args=None,
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_pairs_follow_message_in_key_order() -> None:
    formatter = ContextualFormatter(fmt="%(message)s")

    line = formatter.format(_record(reason="deadline exceeded", device_id="FRIDGE_001", sink=("history",)))

    assert line == "Sink write failed | device_id=FRIDGE_001 sink=history reason='deadline exceeded'"


def test_record_without_context_is_unchanged() -> None:
    formatter = ContextualFormatter(fmt="%(levelname)s %(message)s")

    assert formatter.format(_record()) == "ERROR Sink write failed"


def test_sequences_are_comma_joined_and_timestamps_are_utc() -> None:
    formatter = ContextualFormatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    record = _record(sink=["latest", "history"], aged_deleted=0)
    record.created = 0.0
    record.threadName = "writer_0"

    line = formatter.format(record)

    assert line.startswith("1970-01-01T00:00:00Z | ERROR | writer_0 | services.ingestion |")
    assert line.endswith("| sink=latest,history aged_deleted=0")
