import pytest

from agent_kernel import display


@pytest.fixture(autouse=True)
def quiet_console():
    display.set_enabled(False)
    yield
    display.set_enabled(False)
