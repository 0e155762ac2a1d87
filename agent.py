from __future__ import annotations

import asyncio
import importlib
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from errors import ConfigurationError


class AgentError(Exception):
    pass


class ConnectionFailure(AgentError):
    pass


class MediationFailure(AgentError):
    pass


class PickupFailure(AgentError):
    pass


class MediatorAgent(Protocol):
    """One wallet's session with the mediator. Never shared between wallets."""

    async def connect(self, invitation_url: str, options: dict[str, Any]) -> Any:
        ...

    async def wait_for_connection_completed(self, handle: Any, timeout_s: float) -> Optional[Any]:
        """Return the completed connection, or None when ``timeout_s`` elapses."""
        ...

    async def request_mediation(self, connection: Any) -> Any:
        ...

    async def initiate_pickup(self, grant: Any) -> Any:
        ...

    async def shutdown(self) -> None:
        ...


AgentFactory = Callable[[str], MediatorAgent]


class NumericSampler:
    """Latency source in milliseconds: a fixed value or a clamped distribution."""

    def __init__(self, spec: str, label: str) -> None:
        self.spec = spec.strip()
        self.label = label
        self._sampler = self._build_sampler(self.spec)

    def _build_sampler(self, spec: str) -> Callable[[random.Random], float]:
        if ":" not in spec:
            try:
                value = float(spec)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid {self.label}: {spec}") from exc
            if value < 0:
                raise ConfigurationError(f"{self.label} must be >= 0, got {value}")
            return lambda _rng: value

        parts = spec.split(":")
        if len(parts) != 5:
            raise ConfigurationError(
                f"Invalid {self.label} distribution: {spec}. "
                "Expected normal:<mean>:<std>:<min>:<max> or "
                "lognormal:<mean>:<std>:<min>:<max>."
            )
        dist = parts[0].lower()
        try:
            mean = float(parts[1])
            std = float(parts[2])
            lower = float(parts[3])
            upper = float(parts[4])
        except ValueError as exc:
            raise ConfigurationError(f"Invalid {self.label} distribution: {spec}") from exc
        if std < 0:
            raise ConfigurationError(f"{self.label} std must be >= 0, got {std}")
        if lower < 0 or lower > upper:
            raise ConfigurationError(
                f"{self.label} bounds must satisfy 0 <= min <= max, got {lower}, {upper}"
            )

        if dist == "normal":
            return lambda rng: min(max(rng.gauss(mean, std), lower), upper)
        if dist == "lognormal":
            return lambda rng: min(max(rng.lognormvariate(mean, std), lower), upper)
        raise ConfigurationError(f"Unsupported {self.label} distribution kind: {dist}")

    def sample(self, rng: random.Random) -> float:
        return max(0.0, float(self._sampler(rng)))


@dataclass(frozen=True)
class SimulatedStageProfile:
    latency_ms: str = "50"
    failure_rate: float = 0.0
    hang_rate: float = 0.0


@dataclass(frozen=True)
class SimulationSettings:
    connect: SimulatedStageProfile = field(default_factory=SimulatedStageProfile)
    mediation: SimulatedStageProfile = field(default_factory=SimulatedStageProfile)
    pickup: SimulatedStageProfile = field(default_factory=SimulatedStageProfile)
    shutdown_latency_ms: str = "0"
    seed: int = 42


@dataclass
class SimulatedConnection:
    connection_id: str
    wallet_id: str
    state: str = "requested"


@dataclass
class SimulatedMediationGrant:
    mediation_id: str
    connection_id: str


class SimulatedAgent:
    """In-process stand-in for a wallet agent, driven by latency samplers and
    failure/hang probabilities. Useful for dry runs of the harness itself.
    """

    def __init__(self, wallet_id: str, settings: SimulationSettings) -> None:
        self.wallet_id = wallet_id
        self.settings = settings
        self._rng = random.Random(f"{settings.seed}:{wallet_id}")
        self._samplers = {
            "connect": NumericSampler(settings.connect.latency_ms, "connect latency"),
            "mediation": NumericSampler(settings.mediation.latency_ms, "mediation latency"),
            "pickup": NumericSampler(settings.pickup.latency_ms, "pickup latency"),
        }
        self._shutdown_sampler = NumericSampler(settings.shutdown_latency_ms, "shutdown latency")
        self.closed = False

    async def _simulate(self, stage: str, profile: SimulatedStageProfile) -> bool:
        if self.closed:
            raise AgentError(f"{self.wallet_id} agent already shut down")
        if profile.hang_rate > 0 and self._rng.random() < profile.hang_rate:
            # Never answers; the caller's stage timeout has to fire.
            await asyncio.Event().wait()
        await asyncio.sleep(self._samplers[stage].sample(self._rng) / 1000.0)
        return not (profile.failure_rate > 0 and self._rng.random() < profile.failure_rate)

    async def connect(self, invitation_url: str, options: dict[str, Any]) -> SimulatedConnection:
        if not await self._simulate("connect", self.settings.connect):
            raise ConnectionFailure(f"simulated invitation failure for {invitation_url}")
        return SimulatedConnection(
            connection_id=f"conn-{self.wallet_id}",
            wallet_id=self.wallet_id,
        )

    async def wait_for_connection_completed(
        self, handle: SimulatedConnection, timeout_s: float
    ) -> Optional[SimulatedConnection]:
        handle.state = "completed"
        return handle

    async def request_mediation(self, connection: SimulatedConnection) -> SimulatedMediationGrant:
        if not await self._simulate("mediation", self.settings.mediation):
            raise MediationFailure(f"simulated mediation denial for {connection.connection_id}")
        return SimulatedMediationGrant(
            mediation_id=f"med-{self.wallet_id}",
            connection_id=connection.connection_id,
        )

    async def initiate_pickup(self, grant: SimulatedMediationGrant) -> dict[str, Any]:
        if not await self._simulate("pickup", self.settings.pickup):
            raise PickupFailure(f"simulated pickup failure for {grant.mediation_id}")
        return {"mediation_id": grant.mediation_id, "messages": 0}

    async def shutdown(self) -> None:
        await asyncio.sleep(self._shutdown_sampler.sample(self._rng) / 1000.0)
        self.closed = True


def simulated_agent_factory(settings: Optional[SimulationSettings] = None) -> AgentFactory:
    resolved = settings or SimulationSettings()

    def factory(wallet_id: str) -> SimulatedAgent:
        return SimulatedAgent(wallet_id, resolved)

    return factory


def load_agent_factory(reference: str) -> AgentFactory:
    """Resolve ``package.module:callable`` to an agent factory."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"Invalid agent factory '{reference}'. Expected module:callable."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import agent module '{module_name}': {exc}") from exc
    factory = getattr(module, attribute, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"'{reference}' is not a callable agent factory")
    return factory
