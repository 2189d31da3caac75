import random
from datetime import datetime, timedelta

import pytest

from simulator import (
    HEADQUARTERS,
    HISTORICAL_STATUSES,
    DroneStatus,
    Location,
    MissionPhase,
    TelemetrySynthesizer,
)

from conftest import BUSINESS_TIME, NIGHT_TIME

NOON = datetime(2024, 3, 13, 12, 0)

def assert_in_domain(record):
    assert 0 <= record.battery <= 100
    assert 0 <= record.humidity <= 100
    assert record.speed >= 0
    assert record.altitude >= 0
    assert -90 <= record.lat <= 90
    assert -180 <= record.lng <= 180

class TestLivePoint:
    def test_idle_reading(self, profile, scripted):
        record = TelemetrySynthesizer(scripted(fallback=0.0)).live_point(profile, NOON)

        assert record.status == "Standby"
        assert record.temperature == 28.0
        assert record.humidity == 62.0
        assert record.speed == 0
        assert record.altitude == 0
        assert (record.lat, record.lng) == (-1.2921, 36.8219)
        assert record.battery == 90
        assert record.timestamp == NOON

    def test_flying_reading_ranges(self, profile):
        profile.mission_phase = MissionPhase.FLYING
        synthesizer = TelemetrySynthesizer(random.Random(3))

        for _ in range(200):
            record = synthesizer.live_point(profile, BUSINESS_TIME)
            assert record.status == "In Flight"
            assert 65 * 0.8 <= record.speed <= 65
            assert 135 <= record.altitude <= 165
            assert_in_domain(record)

    @pytest.mark.parametrize("phase,status", [
        (MissionPhase.PREPARING, "Pre-Flight"),
        (MissionPhase.DELIVERING, "Delivered"),
        (MissionPhase.RETURNING, "Returning"),
    ])
    def test_phase_labels(self, profile, phase, status):
        profile.mission_phase = phase
        record = TelemetrySynthesizer(random.Random(0)).live_point(profile, BUSINESS_TIME)
        assert record.status == status

    def test_values_are_rounded(self, profile):
        profile.current_battery = 87.6543
        profile.current_location = Location(-1.29211234567, 36.82191234567)
        record = TelemetrySynthesizer(random.Random(0)).live_point(profile, BUSINESS_TIME)

        assert record.battery == 87.7
        assert record.lat == -1.292112
        assert record.lng == 36.821912
        assert record.altitude == int(record.altitude)

class TestHistoricalPoint:
    def test_quiet_hours_are_standby_at_base(self, profile, scripted):
        # 0.5 is above the 0.2 off-hours activity level
        synthesizer = TelemetrySynthesizer(scripted(fallback=0.5))
        record = synthesizer.historical_point(profile, NIGHT_TIME)

        assert record.status == "Standby"
        assert record.speed == 0
        assert record.altitude == 0
        assert (record.lat, record.lng) == (-1.2921, 36.8219)
        assert 85 <= record.battery <= 100

    def test_weekend_uses_quiet_activity(self, profile, scripted):
        saturday = datetime(2024, 3, 16, 10, 0)
        record = TelemetrySynthesizer(scripted([0.3])).historical_point(profile, saturday)
        assert record.status == "Standby"

    def test_busy_hours_can_be_active(self, profile, scripted):
        record = TelemetrySynthesizer(scripted([0.3])).historical_point(profile, BUSINESS_TIME)

        assert record.status in {s.value for s in HISTORICAL_STATUSES}
        assert record.battery >= 20
        assert abs(record.lat - profile.base_location.lat) <= 0.04

    def test_domain_over_a_day(self, profile):
        synthesizer = TelemetrySynthesizer(random.Random(99))
        moment = datetime(2024, 3, 13)
        for _ in range(480):
            assert_in_domain(synthesizer.historical_point(profile, moment))
            moment += timedelta(minutes=3)

class TestManualPoint:
    LAST = Location(-1.2500, 36.7833)

    def point(self, status, battery, rng=None, base=HEADQUARTERS):
        synthesizer = TelemetrySynthesizer(rng or random.Random(5))
        return synthesizer.manual_point('A1', status, battery, self.LAST, base, NOON)

    def test_humidity_is_fixed(self):
        for status in DroneStatus:
            record = self.point(status, 60)
            assert record.humidity == 65
            assert record.status == status.value
            assert_in_domain(record)

    def test_accepts_label(self):
        assert self.point("In Flight", 60).status == "In Flight"

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            self.point("Hovering", 60)

    def test_powered_off_sits_at_base(self):
        record = self.point(DroneStatus.POWERED_OFF, 42, base=Location(-1.3032, 36.8356))
        assert (record.lat, record.lng) == (-1.3032, 36.8356)
        assert record.battery == 42
        assert record.speed == 0
        assert 22 <= record.temperature <= 25

    def test_standby_charges_to_cap(self):
        assert self.point(DroneStatus.STANDBY, 99.5).battery == 100
        assert self.point(DroneStatus.STANDBY, 50).battery == 51

    def test_battery_floors(self):
        assert self.point(DroneStatus.ACTIVE, 20.2).battery == 20
        assert self.point(DroneStatus.IN_FLIGHT, 16).battery == 15
        assert self.point(DroneStatus.EMERGENCY, 6).battery == 5
        assert self.point(DroneStatus.EMERGENCY, 50).battery == 47

    def test_in_flight_jitters_around_last_position(self):
        rng = random.Random(11)
        for _ in range(50):
            record = self.point(DroneStatus.IN_FLIGHT, 80, rng=rng)
            assert abs(record.lat - self.LAST.lat) <= 0.0051
            assert abs(record.lng - self.LAST.lng) <= 0.0051
            assert 40 <= record.speed <= 65
            assert 120 <= record.altitude <= 200

    def test_returning_nudges_toward_base(self):
        record = self.point(DroneStatus.RETURNING, 80)
        expected_lat = self.LAST.lat + (HEADQUARTERS.lat - self.LAST.lat) * 0.1
        expected_lng = self.LAST.lng + (HEADQUARTERS.lng - self.LAST.lng) * 0.1
        assert record.lat == pytest.approx(expected_lat, abs=1e-6)
        assert record.lng == pytest.approx(expected_lng, abs=1e-6)

    def test_landing_holds_last_position(self):
        record = self.point(DroneStatus.LANDING, 80)
        assert (record.lat, record.lng) == (self.LAST.lat, self.LAST.lng)
        assert 5 <= record.speed <= 15
