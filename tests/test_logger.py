import logging

from trademaster.utils.logger import ColoredFormatter, TradeLogger, setup_logging


def test_trade_logger_writes_json_lines(tmp_path):
    trade_logger = TradeLogger(str(tmp_path / "logs"))

    trade_logger.log_trade({"symbol": "EURUSD", "success": True})
    trade_logger.log_trade({"symbol": "GBPUSD", "success": False})
    trade_logger.log_connection({"state": "connected"})
    trade_logger.log_performance({"win_rate": 50.0})

    trades = trade_logger.read("trade")
    assert [t["symbol"] for t in trades] == ["EURUSD", "GBPUSD"]
    assert trades[0]["event"] == "trade"
    assert "time" in trades[0]
    assert trade_logger.read("connection")[0]["state"] == "connected"
    assert trade_logger.read("performance")[0]["win_rate"] == 50.0


def test_trade_logger_read_limit_and_bad_lines(tmp_path):
    trade_logger = TradeLogger(str(tmp_path))
    for i in range(3):
        trade_logger.log_trade({"n": i})
    with open(trade_logger.trade_file, "a") as f:
        f.write("not json\n")

    assert [t["n"] for t in trade_logger.read("trade", limit=2)] == [1, 2]
    assert trade_logger.read("performance") == []


def test_colored_formatter_includes_source_and_message():
    record = logging.LogRecord(
        "trademaster.core.quote_stream", logging.WARNING, __file__, 1, "Stale tick", None, None
    )
    line = ColoredFormatter().format(record)

    assert "WARNING" in line
    assert "core.quote_stream" in line
    assert "Stale tick" in line
    assert "\033[33m" in line


def test_plain_formatter_has_no_escape_codes():
    record = logging.LogRecord("trademaster.main", logging.INFO, __file__, 1, "Ready", None, None)

    assert "\033[" not in ColoredFormatter(use_color=False).format(record)


def test_setup_logging_adds_rotating_file_handler(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        setup_logging(level="DEBUG", log_file=str(tmp_path / "logs" / "app.log"), quiet=["aiohttp"])

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert root.handlers[1].maxBytes == 20 * 1024 * 1024
        assert logging.getLogger("aiohttp").level == logging.WARNING
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
