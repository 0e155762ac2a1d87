"""Shared fakes for driving wallets without a real agent library."""

import asyncio

import pytest

from agent import ConnectionFailure, MediationFailure, PickupFailure


class ConcurrencyTracker:
    """Counts agents that have been created but not yet shut down."""

    def __init__(self):
        self.created = 0
        self.active = 0
        self.peak = 0
        self.shut_down = 0

    def enter(self):
        self.created += 1
        self.active += 1
        self.peak = max(self.peak, self.active)

    def exit(self):
        self.active -= 1
        self.shut_down += 1


class ScriptedAgent:
    """Agent whose stages follow a script.

    Each stage takes a behaviour or a list of behaviours, one per attempt
    (the last one repeats): "ok", "fail", "hang", or for connect also
    "no_completion" (the completion wait returns the timeout signal).
    """

    def __init__(
        self,
        wallet_id,
        connect="ok",
        mediation="ok",
        pickup="ok",
        latency_s=0.0,
        shutdown_error=False,
        shutdown_hang=False,
        tracker=None,
    ):
        self.wallet_id = wallet_id
        self.script = {
            "connect": _as_list(connect),
            "mediation": _as_list(mediation),
            "pickup": _as_list(pickup),
        }
        self.calls = {"connect": 0, "mediation": 0, "pickup": 0}
        self.latency_s = latency_s
        self.shutdown_error = shutdown_error
        self.shutdown_hang = shutdown_hang
        self.shutdown_called = False
        self.tracker = tracker
        self._last_connect = "ok"
        if tracker is not None:
            tracker.enter()

    async def _act(self, stage):
        plan = self.script[stage]
        behaviour = plan[min(self.calls[stage], len(plan) - 1)]
        self.calls[stage] += 1
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if behaviour == "hang":
            await asyncio.Event().wait()
        return behaviour

    async def connect(self, invitation_url, options):
        self._last_connect = await self._act("connect")
        if self._last_connect == "fail":
            raise ConnectionFailure("invitation rejected")
        return {"invitation": invitation_url, "options": options}

    async def wait_for_connection_completed(self, handle, timeout_s):
        if self._last_connect == "no_completion":
            return None
        return {"connection": handle, "state": "completed"}

    async def request_mediation(self, connection):
        if await self._act("mediation") == "fail":
            raise MediationFailure("mediation denied")
        return {"grant": connection}

    async def initiate_pickup(self, grant):
        if await self._act("pickup") == "fail":
            raise PickupFailure("pickup rejected")
        return {"messages": 0}

    async def shutdown(self):
        self.shutdown_called = True
        if self.tracker is not None:
            self.tracker.exit()
        if self.shutdown_hang:
            await asyncio.Event().wait()
        if self.shutdown_error:
            raise RuntimeError("wallet store locked")


def _as_list(value):
    return list(value) if isinstance(value, (list, tuple)) else [value]


@pytest.fixture
def scripted_factory():
    """Build an agent factory; the factory exposes ``agents`` and ``tracker``."""

    def build(**behaviour):
        tracker = ConcurrencyTracker()
        agents = []

        def factory(wallet_id):
            agent = ScriptedAgent(wallet_id, tracker=tracker, **behaviour)
            agents.append(agent)
            return agent

        factory.agents = agents
        factory.tracker = tracker
        return factory

    return build
