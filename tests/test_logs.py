import logging

from lib.logs import LevelCeilingFilter, LoggingConfig, SensitiveDataFilter, setup_logger


def make_record(msg, args=()):
    return logging.LogRecord("certmgr", logging.INFO, __file__, 1, msg, args, None)


def test_secrets_are_masked_in_message_and_arguments():
    record = make_record(
        "Calling hook with %s and %s",
        ({"url": "https://hooks.example.com", "password": "hunter2"}, 'Authorization: Bearer abc.def'),
    )

    assert SensitiveDataFilter().filter(record)

    message = record.getMessage()
    assert "hunter2" not in message and "abc.def" not in message
    assert "https://hooks.example.com" in message


def test_quoted_fields_are_masked():
    assert SensitiveDataFilter.mask('{"passphrase": "s3cret", "name": "web"}') == \
        '{"passphrase": "[REDACTED]", "name": "web"}'


def test_level_ceiling():
    ceiling = LevelCeilingFilter(logging.WARNING)
    assert ceiling.filter(make_record("fine"))
    error = make_record("boom")
    error.levelno = logging.ERROR
    assert not ceiling.filter(error)


def test_setup_writes_to_log_dir(tmp_path):
    config = LoggingConfig(log_dir=str(tmp_path / "logs"))
    setup_logger(config)
    logging.getLogger("certmgr").info("hello %s", {"token": "abc"})
    for handler in logging.getLogger("certmgr").handlers:
        handler.flush()

    content = (tmp_path / "logs" / "app.log").read_text()
    assert "hello" in content and "abc" not in content
