"""
Shared test fixtures for vmdeploy tests.

This module provides common fixtures used across the unit tests:
- A recording in-memory Azure platform
- Scripted interaction handlers
- Retry policies that never sleep
- Parameters files written to tmp_path
"""

import json

import pytest
from rich.console import Console

from tests.mocks.azure_platform_mock import FakeAzurePlatform
from vmdeploy.access_grants import GrantPolicies
from vmdeploy.interaction_handler import MockInteractionHandler
from vmdeploy.retry_handler import RetryPolicy, fixed_backoff, linear_backoff

# ============================================================================
# PLATFORM FIXTURES
# ============================================================================


@pytest.fixture
def platform():
    """Recording fake Azure platform with an empty subscription."""
    return FakeAzurePlatform()


@pytest.fixture
def interaction():
    """Interaction handler with no scripted responses.

    Any prompt raises IndexError, so tests that expect no interaction fail
    loudly if one happens.
    """
    return MockInteractionHandler()


@pytest.fixture
def console():
    """Rich console writing to an in-memory buffer."""
    return Console(record=True, width=160, force_terminal=False)


# ============================================================================
# RETRY FIXTURES
# ============================================================================


class SleepRecorder:
    """Replacement for time.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def grant_policies(sleeper):
    """Default grant policies (3 attempts, 12 polls) without real sleeping."""
    return GrantPolicies(
        assignment=RetryPolicy(max_attempts=3, backoff=linear_backoff(5.0), sleep=sleeper),
        propagation=RetryPolicy(max_attempts=12, backoff=fixed_backoff(5.0), sleep=sleeper),
    )


@pytest.fixture
def feature_poll_policy(sleeper):
    return RetryPolicy(max_attempts=None, backoff=fixed_backoff(5.0), sleep=sleeper)


# ============================================================================
# FILE FIXTURES
# ============================================================================


def write_parameters(path, **values):
    """Write an ARM-style parameters file with the given values."""
    document = {
        "$schema": "https://schema.management.azure.com/schemas/2019-04-01/"
        "deploymentParameters.json#",
        "contentVersion": "1.0.0.0",
        "parameters": {key: {"value": value} for key, value in values.items()},
    }
    path.write_text(json.dumps(document))
    return path


@pytest.fixture
def parameters_file(tmp_path):
    """Parameters file with a project name, service user and two port rules."""
    return write_parameters(
        tmp_path / "parameters.json",
        projectName="hfm",
        serviceUser="hfm",
        servicePorts="8080 (HTTP)",
        inboundPorts=[
            {
                "name": "AllowHTTP",
                "portRange": "8080",
                "sourceAddressPrefixes": ["10.0.0.0/8"],
                "priority": 1010,
            },
            {
                "name": "AllowMetrics",
                "portRange": "9100-9101",
                "sourceAddressPrefixes": ["VirtualNetwork"],
                "priority": 1020,
            },
        ],
    )
