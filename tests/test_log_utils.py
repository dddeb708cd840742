import logging

import log_utils


def _reset_logger(logger: logging.Logger) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        try:
            handler.close()
        except Exception:
            pass


def test_setup_logger_attaches_noise_filter(tmp_path, monkeypatch):
    monkeypatch.setattr(log_utils, "LOG_FILE", str(tmp_path / "logs" / "fib_agent.log"))
    logger = log_utils.setup_logger("test_log_utils_filter")
    try:
        assert len(logger.handlers) == 2
        for handler in logger.handlers:
            assert log_utils._NOISE_FILTER in handler.filters
        assert log_utils.setup_logger("test_log_utils_filter") is logger
        assert len(logger.handlers) == 2
    finally:
        _reset_logger(logger)


def test_noise_filter_drops_connection_chatter():
    noisy = logging.LogRecord("urllib3", logging.DEBUG, __file__, 1, "Starting new HTTPS connection (1): x", None, None)
    useful = logging.LogRecord("agent", logging.INFO, __file__, 1, "BUY SIGNAL!", None, None)
    assert log_utils._NOISE_FILTER.filter(noisy) is False
    assert log_utils._NOISE_FILTER.filter(useful) is True


def test_read_logs_tails_file(tmp_path):
    path = tmp_path / "SOL.log"
    path.write_text("".join(f"line {i}\n" for i in range(10)))

    assert log_utils.read_logs(2, path=str(path)) == "line 8\nline 9\n"
    assert log_utils.read_logs(0, path=str(path)).count("\n") == 10
    assert log_utils.read_logs(path=str(tmp_path / "missing.log")) == ""
