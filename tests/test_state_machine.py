import random
from datetime import datetime, timedelta

import pytest

from simulator import (
    DELIVERY_SITES,
    Destination,
    Location,
    MissionPhase,
    MissionStateMachine,
    degrees_per_step,
    is_business_hours,
)

from conftest import BUSINESS_TIME, NIGHT_TIME

def test_business_hours_are_inclusive():
    assert is_business_hours(datetime(2024, 3, 13, 8, 0))
    assert is_business_hours(datetime(2024, 3, 13, 18, 59))
    assert not is_business_hours(datetime(2024, 3, 13, 7, 59))
    assert not is_business_hours(datetime(2024, 3, 13, 19, 0))

class TestIdle:
    def test_mission_starts_during_business_hours(self, profile, scripted):
        machine = MissionStateMachine(scripted([0.05]))

        machine.step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.PREPARING
        assert profile.destination in DELIVERY_SITES
        assert profile.mission_start_time == BUSINESS_TIME
        assert profile.current_battery == 90
        assert (profile.current_location.lat, profile.current_location.lng) == (-1.2921, 36.8219)

    def test_no_mission_outside_business_hours(self, profile, scripted):
        rng = scripted([0.01])
        MissionStateMachine(rng).step(profile, NIGHT_TIME)

        assert profile.mission_phase == MissionPhase.IDLE
        assert profile.current_battery == pytest.approx(90.3)
        # the draw is only taken during business hours
        assert rng.values == [0.01]

    def test_low_battery_recharges_instead(self, profile, scripted):
        profile.current_battery = 50
        MissionStateMachine(scripted([0.05])).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.IDLE
        assert profile.current_battery == pytest.approx(50.3)

    def test_recharge_caps_at_full(self, profile, scripted):
        profile.current_battery = 99.9
        MissionStateMachine(scripted([0.9])).step(profile, BUSINESS_TIME)
        assert profile.current_battery == 100

class TestPreparing:
    def test_takeoff(self, profile, scripted):
        profile.mission_phase = MissionPhase.PREPARING
        MissionStateMachine(scripted([0.4])).step(profile, BUSINESS_TIME)
        assert profile.mission_phase == MissionPhase.FLYING

    def test_waits_on_high_draw(self, profile, scripted):
        profile.mission_phase = MissionPhase.PREPARING
        MissionStateMachine(scripted([0.6])).step(profile, BUSINESS_TIME)
        assert profile.mission_phase == MissionPhase.PREPARING
        assert profile.current_battery == 90

class TestFlying:
    def test_moves_and_drains(self, profile, scripted):
        profile.mission_phase = MissionPhase.FLYING
        profile.destination = Destination(-1.1921, 36.8219, 'North Site')

        MissionStateMachine(scripted([0.5])).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.FLYING
        assert profile.current_location.lat == pytest.approx(-1.2921 + degrees_per_step(65))
        assert profile.current_battery == pytest.approx(90 - 0.8 * 0.8)

    def test_early_delivery(self, profile, scripted):
        profile.mission_phase = MissionPhase.FLYING
        profile.destination = DELIVERY_SITES[0]
        MissionStateMachine(scripted([0.01])).step(profile, BUSINESS_TIME)
        assert profile.mission_phase == MissionPhase.DELIVERING

    def test_arrival_switches_to_delivering(self, profile, scripted):
        profile.mission_phase = MissionPhase.FLYING
        profile.destination = Destination(-1.2921, 36.8240, 'Next Door')
        MissionStateMachine(scripted([0.9])).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.DELIVERING
        assert profile.current_location.lng == 36.8240

    def test_missing_destination_holds(self, profile, scripted):
        profile.mission_phase = MissionPhase.FLYING
        MissionStateMachine(scripted()).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.FLYING
        assert profile.current_battery == 90

    def test_battery_floor(self, profile, scripted):
        profile.mission_phase = MissionPhase.FLYING
        profile.destination = DELIVERY_SITES[1]
        profile.current_battery = 15.2
        MissionStateMachine(scripted([0.9])).step(profile, BUSINESS_TIME)
        assert profile.current_battery == 15

class TestDeliveringAndReturning:
    def test_delivering_draws_battery_then_returns(self, profile, scripted):
        profile.mission_phase = MissionPhase.DELIVERING
        profile.destination = DELIVERY_SITES[0]
        MissionStateMachine(scripted([0.2])).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.RETURNING
        assert profile.current_battery == pytest.approx(89.8)

    def test_returning_moves_toward_base(self, profile, scripted):
        profile.mission_phase = MissionPhase.RETURNING
        profile.destination = DELIVERY_SITES[0]
        profile.current_location = Location(-1.25, 36.7833)

        MissionStateMachine(scripted([0.9])).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.RETURNING
        assert profile.current_battery == pytest.approx(90 - 0.8 * 0.6)

    def test_arrival_snaps_to_base_and_clears_mission(self, profile, scripted):
        profile.mission_phase = MissionPhase.RETURNING
        profile.destination = DELIVERY_SITES[0]
        profile.mission_start_time = BUSINESS_TIME - timedelta(minutes=30)
        profile.current_location = Location(-1.2922, 36.8220)

        MissionStateMachine(scripted([0.9])).step(profile, BUSINESS_TIME)

        assert profile.mission_phase == MissionPhase.IDLE
        assert profile.current_location == profile.base_location
        assert profile.current_location is not profile.base_location
        assert profile.destination is None
        assert profile.mission_start_time is None

def test_long_run_keeps_invariants(fleet):
    machine = MissionStateMachine(random.Random(1234))
    now = BUSINESS_TIME

    for _ in range(2000):
        for profile in fleet.values():
            machine.step(profile, now)
            assert 15 <= profile.current_battery <= 100
            if profile.mission_phase in (MissionPhase.PREPARING, MissionPhase.FLYING,
                                         MissionPhase.DELIVERING):
                assert profile.destination is not None
                assert profile.mission_start_time is not None
            if profile.mission_phase == MissionPhase.IDLE:
                assert profile.destination is None
        now += timedelta(seconds=20)
        if now.hour > 18:
            now = BUSINESS_TIME
