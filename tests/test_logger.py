"""Test the logging system."""
from logging import Logger, getLogger as stdlib_getlogger
from io import BytesIO
from pathlib import Path
import sys

import pytest

from helpers import build_bsp


def function(logger: Logger) -> None:
    """Test detecting different methods."""
    logger.info('Starting other function')
    logger.warning('Used wrong logic')
    logger.info('Finishing.')


@pytest.fixture
def clean_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """init_logging() modifies global state, so ensure we undo that."""
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)
    monkeypatch.setattr(stdlib_getlogger(), 'handlers', [])
    monkeypatch.setattr(stdlib_getlogger(), 'level', stdlib_getlogger().level)
    monkeypatch.delenv('Q1BSP_DEBUG', raising=False)


def test_logging_output(capsys: pytest.CaptureFixture[str], clean_logging: None) -> None:
    """Test the output of logging to the console."""
    from q1bsp.logger import context, get_logger, init_logging

    root = init_logging()
    root.info('hello there')
    root.error('Root error!:\n- Something failed.')
    get_logger('another').warning('A problem: {}', 45)
    root.debug('Hidden')
    function(root)
    with context('First'):
        root.info('Message')
        with context('Second'):
            root.info('More messages')
        root.warning('A warning.')
    root.info('No {} formatting')

    out, err = capsys.readouterr()
    assert 'hello there' in out
    assert 'Hidden' not in out
    assert 'Starting other function' in out
    assert '[I] (First) ' in out
    assert '(First, Second)' in out
    assert 'No {} formatting' in out
    # Warnings are only on stderr.
    assert 'Used wrong logic' not in out
    assert 'Used wrong logic' in err
    assert 'A problem: 45' in err
    assert '[W] (First) ' in err
    # Multi-line messages are indented.
    assert 'Root error!:\n | - Something failed.\n |___' in err


def test_debug_env(capsys: pytest.CaptureFixture[str], clean_logging: None, monkeypatch: pytest.MonkeyPatch) -> None:
    """The environment variable shows debug messages."""
    from q1bsp.logger import init_logging

    monkeypatch.setenv('Q1BSP_DEBUG', '1')
    root = init_logging()
    root.debug('Visible: {}', 'yes')
    out, err = capsys.readouterr()
    assert '[D] ' in out
    assert 'Visible: yes' in out


def test_load_logging(caplog: pytest.LogCaptureFixture) -> None:
    """Loading logs with the filename as context."""
    from q1bsp.bsp import BSP

    caplog.set_level('DEBUG', logger='q1bsp')
    file = BytesIO(build_bsp({}))
    file.name = 'e1m1.bsp'
    BSP().load(file)
    records = [rec for rec in caplog.records if rec.name == 'q1bsp.bsp']
    assert records
    assert all(rec.q1bsp_context == ' (e1m1.bsp)' for rec in records)
    assert 'Header OK: version=29' in caplog.text


def test_log_file(tmp_path: Path, clean_logging: None) -> None:
    """Logs are written to the file, and older logs are shifted along."""
    from q1bsp.logger import init_logging

    path = tmp_path / 'logs' / 'loader.log'
    path.parent.mkdir()
    path.write_text('previous')
    log = init_logging(path, 'app')
    log.debug('Debug message')
    for handler in stdlib_getlogger().handlers:
        handler.flush()
        handler.close()

    assert (tmp_path / 'logs' / 'loader.1.log').read_text() == 'previous'
    text = path.read_text('utf8')
    assert '[DEBUG]' in text
    assert 'Debug message' in text
