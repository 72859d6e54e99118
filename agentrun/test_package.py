"""
Package Import Tests

Every module must import cleanly on each supported interpreter: class
bodies evaluate their annotations eagerly before Python 3.14.

Test list:
1. test_every_module_imports - Each agentrun module imports
2. test_checkpoint_manager_annotations - list[...] annotations resolve to the builtin
"""

import importlib
import typing

import pytest

MODULES = [
    "agentrun",
    "agentrun.alerts",
    "agentrun.api",
    "agentrun.audit",
    "agentrun.checkpoints",
    "agentrun.cli",
    "agentrun.config",
    "agentrun.controller",
    "agentrun.costs",
    "agentrun.errors",
    "agentrun.filestore",
    "agentrun.ledger",
    "agentrun.lifecycle",
    "agentrun.mcp_server",
    "agentrun.providers",
    "agentrun.safety",
    "agentrun.scheduler",
    "agentrun.schemas",
    "agentrun.store",
    "agentrun.ui",
]


# =============================================================================
# TEST 1: Imports
# =============================================================================

@pytest.mark.parametrize("name", MODULES)
def test_every_module_imports(name):
    """
    Test 1: The module imports without evaluating anything that fails.
    """
    module = importlib.import_module(name)
    assert module.__name__ == name


# =============================================================================
# TEST 2: Annotations
# =============================================================================

def test_checkpoint_manager_annotations():
    """
    Test 2: CheckpointManager has no method that shadows a builtin used in
    its own annotations.
    """
    from agentrun.checkpoints import CheckpointManager
    from agentrun.schemas import Checkpoint

    assert "list" not in vars(CheckpointManager)

    hints = typing.get_type_hints(CheckpointManager.list_checkpoints)
    assert hints["return"] == list[Checkpoint]

    print("✓ Test 2 passed: annotations resolve")
