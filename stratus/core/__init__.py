from stratus.core.exceptions import (
    JobNotFoundError,
    NotFoundError,
    OperationTimeoutError,
    ProviderError,
    StratusError,
    UnsupportedError,
    ValidationError,
)
from stratus.core.steps import Step, run_steps

__all__ = [
    "JobNotFoundError",
    "NotFoundError",
    "OperationTimeoutError",
    "ProviderError",
    "Step",
    "StratusError",
    "UnsupportedError",
    "ValidationError",
    "run_steps",
]
