import asyncio
import random

import pytest

from agent import (
    ConnectionFailure,
    NumericSampler,
    PickupFailure,
    SimulatedAgent,
    SimulatedConnection,
    SimulatedStageProfile,
    SimulationSettings,
    load_agent_factory,
    simulated_agent_factory,
)
from errors import ConfigurationError


class TestNumericSampler:
    def test_fixed_value(self):
        assert NumericSampler("25", "latency").sample(random.Random(0)) == 25.0

    def test_distribution_is_clamped(self):
        sampler = NumericSampler("normal:50:500:10:60", "latency")
        rng = random.Random(3)
        values = [sampler.sample(rng) for _ in range(200)]
        assert min(values) >= 10
        assert max(values) <= 60

    def test_lognormal(self):
        sampler = NumericSampler("lognormal:3:0.5:1:100", "latency")
        assert 1 <= sampler.sample(random.Random(1)) <= 100

    @pytest.mark.parametrize(
        "spec",
        ["abc", "-5", "normal:1:2:3", "uniform:1:1:0:5", "normal:1:-1:0:5", "normal:1:1:9:5"],
    )
    def test_invalid_specs(self, spec):
        with pytest.raises(ConfigurationError):
            NumericSampler(spec, "latency")


def _settings(**stages):
    return SimulationSettings(
        connect=stages.get("connect", SimulatedStageProfile(latency_ms="1")),
        mediation=stages.get("mediation", SimulatedStageProfile(latency_ms="1")),
        pickup=stages.get("pickup", SimulatedStageProfile(latency_ms="1")),
    )


class TestSimulatedAgent:
    @pytest.mark.asyncio
    async def test_full_flow(self):
        agent = SimulatedAgent("wallet-1", _settings())
        handle = await agent.connect("https://mediator.example", {})
        connection = await agent.wait_for_connection_completed(handle, timeout_s=1)
        assert connection.state == "completed"
        grant = await agent.request_mediation(connection)
        assert grant.connection_id == connection.connection_id
        assert (await agent.initiate_pickup(grant))["mediation_id"] == grant.mediation_id
        await agent.shutdown()
        assert agent.closed

    @pytest.mark.asyncio
    async def test_failures(self):
        agent = SimulatedAgent(
            "wallet-2",
            _settings(
                connect=SimulatedStageProfile(latency_ms="0", failure_rate=1.0),
                pickup=SimulatedStageProfile(latency_ms="0", failure_rate=1.0),
            ),
        )
        with pytest.raises(ConnectionFailure):
            await agent.connect("https://mediator.example", {})
        grant = await agent.request_mediation(SimulatedConnection("conn-x", "wallet-2"))
        with pytest.raises(PickupFailure):
            await agent.initiate_pickup(grant)

    @pytest.mark.asyncio
    async def test_hang_needs_a_timeout(self):
        agent = SimulatedAgent(
            "wallet-4", _settings(mediation=SimulatedStageProfile(latency_ms="0", hang_rate=1.0))
        )
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(agent.request_mediation(object()), timeout=0.05)

    def test_factory_builds_one_agent_per_wallet(self):
        factory = simulated_agent_factory()
        first, second = factory("wallet-a"), factory("wallet-b")
        assert first is not second
        assert first.wallet_id == "wallet-a"


class TestLoadAgentFactory:
    def test_resolves_callable(self):
        factory = load_agent_factory("agent:simulated_agent_factory")
        assert factory is simulated_agent_factory

    @pytest.mark.parametrize(
        "reference",
        ["agent", "agent:", ":factory", "no_such_module_xyz:factory", "agent:missing"],
    )
    def test_bad_references(self, reference):
        with pytest.raises(ConfigurationError):
            load_agent_factory(reference)
