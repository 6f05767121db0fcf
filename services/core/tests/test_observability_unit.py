"""Unit tests for structured logging."""

import json
import logging
import sys

from pbxsync_core.observability.logging import (
    JsonFormatter,
    SyncContext,
    configure_logging,
    get_logger,
)


def make_record(msg="Sync run started", level=logging.INFO, **extra):
    record = logging.LogRecord("pbxsync.test", level, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JSON log lines."""

    def test_basic_fields(self):
        line = json.loads(JsonFormatter(service_name="pbxsync-worker").format(make_record()))

        assert line["message"] == "Sync run started"
        assert line["level"] == "INFO"
        assert line["service"] == "pbxsync-worker"
        assert set(line) == {"timestamp", "level", "logger", "service", "message"}

    def test_extra_fields_and_unserializable_values(self):
        line = json.loads(JsonFormatter().format(make_record(tenant_id=7, payload=object())))

        assert line["tenant_id"] == 7
        assert line["payload"].startswith("<object object")

    def test_exception_is_rendered(self):
        try:
            raise RuntimeError("tunnel dropped")
        except RuntimeError:
            record = logging.LogRecord(
                "pbxsync.test", logging.ERROR, __file__, 10, "Sync cycle crashed", (), sys.exc_info()
            )

        line = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: tunnel dropped" in line["exception"]


class TestSyncContext:
    """Tests for cycle context."""

    def test_to_dict_skips_empty(self):
        assert SyncContext(tenant_id=3).to_dict() == {"tenant_id": 3}

    def test_context_fields_reach_record(self, caplog):
        logger = get_logger("pbxsync.test.context")
        context = SyncContext(tenant_id=3, sync_kind="messages", cycle_id="abc")

        with caplog.at_level(logging.INFO, logger="pbxsync.test.context"):
            logger.info("Batch merged", context=context, messages=100)

        record = caplog.records[-1]
        assert record.tenant_id == 3
        assert record.cycle_id == "abc"
        assert record.messages == 100


class TestConfigureLogging:
    """Tests for root logger setup."""

    def test_json_handler_installed(self):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            configure_logging(level="DEBUG", json_format=True, service_name="pbxsync-test")

            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
            assert logging.getLogger("paramiko").level == logging.WARNING
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])

    def test_loggers_are_cached(self):
        assert get_logger("pbxsync.same") is get_logger("pbxsync.same")
