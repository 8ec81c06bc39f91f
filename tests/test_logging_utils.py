import json
import logging
from pathlib import Path

from oh_my_telegram.config import LogConfig
from oh_my_telegram.logging_utils import log_event, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("bot:a", cfg_a)
    logger_b = setup_rotating_logger("bot:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()

    same_logger = setup_rotating_logger("bot:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_log_event_emits_one_json_line(caplog) -> None:
    logger = logging.getLogger("test.log_event")
    with caplog.at_level(logging.INFO, logger="test.log_event"):
        log_event(
            logger,
            logging.INFO,
            "telegram.poll.failed",
            offset=5,
            skipped=None,
            path=Path("/tmp/x"),
            exc=RuntimeError("boom"),
        )

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {
        "event": "telegram.poll.failed",
        "offset": 5,
        "path": "/tmp/x",
        "error": "boom",
        "error_type": "RuntimeError",
    }


def test_log_event_never_raises() -> None:
    class Exploding(logging.Logger):
        def log(self, *args, **kwargs):
            raise RuntimeError("handler broke")

    log_event(Exploding("broken"), logging.INFO, "any.event", value=object())
