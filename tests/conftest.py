import pytest
from sse_starlette.sse import AppStatus


@pytest.fixture(autouse=True)
def fresh_sse_exit_event():
    # sse-starlette caches its shutdown event on the first event loop that waits on it.
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
