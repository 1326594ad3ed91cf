import os
import sys

import pytest

# Add project root to allow importing sibling modules
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '../..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from cortex_engine.controller import GenerationController
from cortex_engine.kv_mirror import KVMirror
from cortex_engine.metrics import reset_metrics

from scripted_context import ScriptedContext


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def empty_mirror():
    """Provide a fresh, empty KVMirror."""
    return KVMirror(capacity=32)


@pytest.fixture
def populated_mirror(empty_mirror):
    """Provide a KVMirror with 10 tokens of sequence 0 at positions 0..9."""
    empty_mirror.allocate([i + 100 for i in range(10)], seq_id=0)
    return empty_mirror


@pytest.fixture
def scripted_context():
    # "Hello world! foo bar" then end of generation
    return ScriptedContext(script=[1, 2, 3, 4, 5])


@pytest.fixture
def controller(scripted_context):
    return GenerationController(scripted_context)
