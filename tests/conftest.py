import os

import pytest
import structlog

from langalign.configuration import AppConfiguration, load_configuration


@pytest.fixture(autouse=True)
def __env_setup():  # type:ignore
    # The CLI loads .env files and sets DD_SERVICE, and tests set API keys.
    # Restore the environment after every test.
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture(autouse=True)
def __reset_structlog():  # type:ignore
    # `langalign align` reconfigures structlog with the requested log level
    yield
    structlog.reset_defaults()


@pytest.fixture
def config() -> AppConfiguration:
    # no backoff between retries to keep the suite fast
    return load_configuration(
        overrides={
            "retry": {"retry_base_delay": 0.0, "max_retries": 2},
        }
    )
