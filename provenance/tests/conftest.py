import pytest


@pytest.fixture
def anyio_backend():
    # The pipeline is built on asyncio primitives (Event, Lock, Task)
    return "asyncio"
