import logging

from pythonjsonlogger import jsonlogger

from cyberdefense.core.logging_setup import HANDLER_NAME, configure_logging

from conftest import make_settings


def _ours():
    return [h for h in logging.getLogger().handlers if h.get_name() == HANDLER_NAME]


def test_json_format_installs_single_handler():
    configure_logging(make_settings(LOG_FORMAT="json"))
    configure_logging(make_settings(LOG_FORMAT="json"))
    handlers = _ours()
    assert len(handlers) == 1
    assert isinstance(handlers[0].formatter, jsonlogger.JsonFormatter)


def test_text_format():
    configure_logging(make_settings(LOG_FORMAT="text", LOG_LEVEL="DEBUG"))
    handler = _ours()[0]
    assert not isinstance(handler.formatter, jsonlogger.JsonFormatter)
    assert logging.getLogger().level == logging.DEBUG
    configure_logging(make_settings())
