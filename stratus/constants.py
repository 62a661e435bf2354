"""Centralized constants and enums for Stratus.

All magic strings, paths, and configuration constants are defined here
to ensure consistency and enable type-safe usage throughout the codebase.
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Final

# =============================================================================
# Providers
# =============================================================================


class Provider(StrEnum):
    """Supported cloud backends."""

    AWS = "aws"
    GCP = "gcp"
    AZ = "az"
    K8S = "k8s"


# =============================================================================
# Task Status
# =============================================================================


class StatusCode(StrEnum):
    """Worker counters reported by Task.status()."""

    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# Resource Naming and Tags
# =============================================================================

IDENTIFIER_PREFIX: Final = "stratus"


class StratusTag(StrEnum):
    """Tag and label keys attached to managed resources."""

    MANAGED = "stratus:managed"
    IDENTIFIER = "stratus:identifier"


K8S_IDENTIFIER_LABEL: Final = "stratus.dev/identifier"


# =============================================================================
# Remote Storage Layout
# =============================================================================

DATA_DIR: Final = "/data"
REPORTS_DIR: Final = "/reports"
STATUS_REPORT_PREFIX: Final = "status"
LOG_REPORT_PREFIX: Final = "task"

# Seconds between throughput lines while a transfer is running
PROGRESS_INTERVAL: Final = 10.0


# =============================================================================
# Timeouts
# =============================================================================

DEFAULT_CREATE_TIMEOUT: Final = timedelta(minutes=15)
DEFAULT_READ_TIMEOUT: Final = timedelta(minutes=3)
DEFAULT_UPDATE_TIMEOUT: Final = timedelta(minutes=3)
DEFAULT_DELETE_TIMEOUT: Final = timedelta(minutes=15)

DEFAULT_TASK_TIMEOUT: Final = timedelta(hours=24)


# =============================================================================
# Worker Bootstrap
# =============================================================================

WORKER_DIR: Final = "/opt/stratus"
DEFAULT_AGENT_COMMAND: Final = "stratus-agent"
DEFAULT_SSH_USER: Final = "ubuntu"
