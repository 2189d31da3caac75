import random
from datetime import datetime, timedelta

import pytest

from simulator import (
    DroneProfile,
    Location,
    OverrideRegistry,
    SimulationConfig,
    SimulationContext,
    build_fleet,
)
from storage import InMemoryTelemetryStore

class ScriptedRandom(random.Random):
    """random() returns queued values first, then a fixed fallback"""

    def __init__(self, values=(), fallback=0.5):
        super().__init__(0)
        self.values = list(values)
        self.fallback = fallback

    def push(self, *values):
        self.values.extend(values)

    def random(self):
        if self.values:
            return self.values.pop(0)
        return self.fallback

class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

# Wednesday, mid-morning
BUSINESS_TIME = datetime(2024, 3, 13, 10, 30)
NIGHT_TIME = datetime(2024, 3, 13, 23, 0)

@pytest.fixture
def clock():
    return FakeClock(BUSINESS_TIME)

@pytest.fixture
def store():
    return InMemoryTelemetryStore()

@pytest.fixture
def registry(clock):
    return OverrideRegistry(clock=clock)

@pytest.fixture
def profile():
    return DroneProfile(
        id='A1',
        name='Drone A1',
        base_location=Location(-1.2921, 36.8219),
        battery_decay_rate=0.8,
        max_speed=65,
        operating_altitude=150,
        current_battery=90,
    )

@pytest.fixture
def fleet():
    return build_fleet(random.Random(7))

@pytest.fixture
def config():
    return SimulationConfig(store_backend='memory', auto_start=False, seed=42,
                            tick_interval=0.05, start_delay=0)

@pytest.fixture
def context(config, store, clock):
    return SimulationContext.from_config(config, store=store, clock=clock)

@pytest.fixture
def scripted():
    """Factory for ScriptedRandom instances"""
    return ScriptedRandom
