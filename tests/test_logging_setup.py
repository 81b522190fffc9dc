import logging

from charforge.logging_setup import SessionLogBuffer, get_session_buffer, setup_logging


def test_session_buffer_appends_payload_and_respects_capacity():
    buffer = SessionLogBuffer(capacity=2)
    buffer.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger = logging.getLogger("charforge.tests.buffer")
    logger.propagate = False
    logger.addHandler(buffer)
    logger.setLevel(logging.INFO)
    try:
        logger.info("first")
        logger.info("second", extra={"payload": {"stage": 1}})
        logger.info("third")
    finally:
        logger.removeHandler(buffer)

    assert buffer.lines() == ["INFO second | {'stage': 1}", "INFO third"]
    assert buffer.text().endswith("INFO third\n")
    buffer.clear()
    assert buffer.text() == ""


def test_setup_logging_is_idempotent():
    setup_logging(force=True)
    root = logging.getLogger()
    handlers = list(root.handlers)

    setup_logging()

    assert root.handlers == handlers
    assert get_session_buffer() in root.handlers
