from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CONNECTION_TIMEOUT = "ConnectionTimeout"
    CONNECTION_ERROR = "ConnectionError"
    MEDIATION_TIMEOUT = "MediationTimeout"
    MEDIATION_ERROR = "MediationError"
    PICKUP_TIMEOUT = "PickupTimeout"
    PICKUP_ERROR = "PickupError"
    CONFIGURATION_ERROR = "ConfigurationError"
    SCHEDULING_OVERLOAD = "SchedulingOverload"

    def __str__(self) -> str:
        return self.value


class ConfigurationError(ValueError):
    """Invalid run configuration. Raised before any wallet is scheduled."""

    kind = ErrorKind.CONFIGURATION_ERROR

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))
