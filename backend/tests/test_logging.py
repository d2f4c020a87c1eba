import logging

from skinscan.core.logging import StructuredFormatter, get_logger, log_context


def _record(msg, *args, **extra):
    logger = get_logger("relay")
    record = logger.makeRecord(logger.name, logging.INFO, "relay.py", 42, msg, args, None, func="ingest", extra=extra)
    return StructuredFormatter().format(record)


def test_line_carries_location_and_message():
    line = _record("Cart update: %d items", 3)

    timestamp, level, location, message = line.split(" | ")
    assert timestamp.endswith("+00:00")
    assert level.strip() == "INFO"
    assert location == "skinscan.relay:ingest:42"
    assert message == "Cart update: 3 items"


def test_context_pairs_are_appended_sorted():
    line = _record("SSE subscriber connected", **log_context(shop="a.myshopify.com", jobId=None, userId="u1"))

    assert line.endswith(" | shop=a.myshopify.com userId=u1")
    assert "jobId" not in line
