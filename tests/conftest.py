import logging

import pytest

from relay.logs import ROOT_LOGGER


@pytest.fixture(autouse=True)
def _reset_relay_logging():
    yield
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
