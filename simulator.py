# Drone Delivery Telemetry Simulator - Core Engine
# File: simulator.py

"""
Mission simulation, manual-override arbitration and telemetry synthesis
for the drone delivery dashboard.

Run with: python simulator.py [status|tick|run|help]
"""

import math
import os
import random
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# PART 1: STATUS VOCABULARY AND DATA MODELS
# ============================================================================

class DroneStatus(str, Enum):
    """Human-facing status labels stored on telemetry records"""
    POWERED_OFF = "Powered Off"
    STANDBY = "Standby"
    PRE_FLIGHT = "Pre-Flight"
    ACTIVE = "Active"
    IN_FLIGHT = "In Flight"
    LANDING = "Landing"
    DELIVERED = "Delivered"
    RETURNING = "Returning"
    MAINTENANCE = "Maintenance"
    EMERGENCY = "Emergency"

# Labels the automatic simulator produces; the manual path accepts all of DroneStatus
SIMULATOR_STATUSES = frozenset({
    DroneStatus.STANDBY,
    DroneStatus.PRE_FLIGHT,
    DroneStatus.IN_FLIGHT,
    DroneStatus.DELIVERED,
    DroneStatus.RETURNING,
    DroneStatus.ACTIVE,
})

class MissionPhase(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    FLYING = "flying"
    DELIVERING = "delivering"
    RETURNING = "returning"

@dataclass
class Location:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {'lat': self.lat, 'lng': self.lng}

@dataclass(frozen=True)
class Destination:
    lat: float
    lng: float
    name: str

@dataclass
class DroneProfile:
    """Simulated airframe plus its live mission state"""
    id: str
    name: str
    base_location: Location
    battery_decay_rate: float
    max_speed: float  # km/h
    operating_altitude: float  # meters
    current_battery: float = 100.0
    current_location: Optional[Location] = None
    mission_phase: MissionPhase = MissionPhase.IDLE
    mission_start_time: Optional[datetime] = None
    destination: Optional[Destination] = None

    def __post_init__(self):
        if self.current_location is None:
            self.current_location = Location(self.base_location.lat, self.base_location.lng)

@dataclass(frozen=True)
class TelemetryRecord:
    drone_id: str
    timestamp: datetime
    battery: float
    temperature: float
    humidity: float
    speed: float
    altitude: float
    lat: float
    lng: float
    status: str

    def to_document(self) -> Dict[str, Any]:
        """Document shape used by the persistence layer"""
        return {
            'drone_id': self.drone_id,
            'timestamp': self.timestamp,
            'battery': self.battery,
            'temperature': self.temperature,
            'humidity': self.humidity,
            'speed': self.speed,
            'altitude': self.altitude,
            'lat': self.lat,
            'lng': self.lng,
            'status': self.status,
        }

    def to_dict(self) -> Dict[str, Any]:
        doc = self.to_document()
        doc['timestamp'] = self.timestamp.isoformat()
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'TelemetryRecord':
        return cls(
            drone_id=doc['drone_id'],
            timestamp=doc['timestamp'],
            battery=doc['battery'],
            temperature=doc['temperature'],
            humidity=doc['humidity'],
            speed=doc['speed'],
            altitude=doc['altitude'],
            lat=doc['lat'],
            lng=doc['lng'],
            status=doc['status'],
        )

@dataclass
class OverrideEntry:
    """Manual control state written by the admin surface"""
    status: str
    is_online: bool
    last_update: datetime
    manual_override: bool = True
    battery: Optional[float] = None
    override_expiry: Optional[datetime] = None
    last_position: Optional[Location] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'is_online': self.is_online,
            'battery': self.battery,
            'last_update': self.last_update.isoformat(),
            'manual_override': self.manual_override,
            'override_expiry': self.override_expiry.isoformat() if self.override_expiry else None,
            'last_position': self.last_position.to_dict() if self.last_position else None,
        }

# ============================================================================
# PART 2: CONFIGURATION
# ============================================================================

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')

@dataclass
class SimulationConfig:
    """Runtime configuration for the simulator service"""
    mongo_uri: str = "mongodb://localhost:27017"
    database: str = "drone_dashboard"
    collection: str = "telemetry"
    store_backend: str = "mongo"  # mongo, memory
    tick_interval: float = 20.0  # wall-clock seconds between ticks
    backfill_hours: int = 6
    backfill_interval_minutes: int = 3
    backfill_batch_size: int = 100
    default_override_seconds: float = 300.0
    start_delay: float = 2.0
    auto_start: bool = True
    seed: Optional[int] = None
    kafka_servers: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> 'SimulationConfig':
        """Build configuration from environment variables (and .env if present)"""
        load_dotenv()
        seed = os.getenv('SIM_SEED')
        kafka = os.getenv('KAFKA_BOOTSTRAP_SERVERS', '')
        return cls(
            mongo_uri=os.getenv('MONGO_URI', cls.mongo_uri),
            database=os.getenv('MONGO_DB_NAME', cls.database),
            collection=os.getenv('TELEMETRY_COLLECTION', cls.collection),
            store_backend=os.getenv('TELEMETRY_STORE', cls.store_backend).lower(),
            tick_interval=float(os.getenv('SIM_TICK_INTERVAL', cls.tick_interval)),
            backfill_hours=int(os.getenv('SIM_BACKFILL_HOURS', cls.backfill_hours)),
            backfill_interval_minutes=int(os.getenv('SIM_BACKFILL_INTERVAL', cls.backfill_interval_minutes)),
            backfill_batch_size=int(os.getenv('SIM_BACKFILL_BATCH', cls.backfill_batch_size)),
            default_override_seconds=float(os.getenv('OVERRIDE_DEFAULT_SECONDS', cls.default_override_seconds)),
            start_delay=float(os.getenv('SIM_START_DELAY', cls.start_delay)),
            auto_start=_env_bool('SIM_AUTO_START', cls.auto_start),
            seed=int(seed) if seed else None,
            kafka_servers=[s.strip() for s in kafka.split(',') if s.strip()],
        )

# ============================================================================
# PART 3: DISTANCE / MOTION UTILITIES
# ============================================================================

KM_PER_DEGREE = 111.0
MOTION_STEP_SECONDS = 20  # simulated seconds of travel per tick

def planar_distance(a, b) -> float:
    """Straight-line distance in degrees between two lat/lng points"""
    lat_diff = b.lat - a.lat
    lng_diff = b.lng - a.lng
    return math.sqrt(lat_diff * lat_diff + lng_diff * lng_diff)

def degrees_per_step(speed_kmh: float, step_seconds: float = MOTION_STEP_SECONDS) -> float:
    """Degrees covered at speed_kmh during one motion step"""
    return speed_kmh * (step_seconds / 3600) / KM_PER_DEGREE

def move_toward(current: Location, target, step_degrees: float) -> Location:
    """
    Advance current toward target by at most step_degrees.

    Never overshoots: the final step lands exactly on the target.
    """
    lat_diff = target.lat - current.lat
    lng_diff = target.lng - current.lng
    total = math.sqrt(lat_diff * lat_diff + lng_diff * lng_diff)
    if total <= 0:
        return Location(current.lat, current.lng)

    ratio = min(step_degrees / total, 1.0)
    if ratio >= 1.0:
        return Location(target.lat, target.lng)
    return Location(current.lat + lat_diff * ratio, current.lng + lng_diff * ratio)

# ============================================================================
# PART 4: OVERRIDE REGISTRY
# ============================================================================

class OverrideRegistry:
    """
    Drone id -> manual control state, shared by the driver and the admin surface.

    Expired overrides are cleared lazily by whichever reader sees them first,
    so every read method here may write.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock
        self._entries: Dict[str, OverrideEntry] = {}
        self._lock = threading.Lock()

    def set_override(self, drone_id: str, entry: OverrideEntry):
        with self._lock:
            self._entries[drone_id] = entry
        logger.info(f"Manual override set: {drone_id} -> {entry.status} "
                    f"(expires {entry.override_expiry})")

    def is_overridden(self, drone_id: str) -> bool:
        """Check-and-clear: returns False and clears the flag once the expiry has passed"""
        with self._lock:
            return self._check_locked(drone_id, self.clock())

    def _check_locked(self, drone_id: str, now: datetime) -> bool:
        entry = self._entries.get(drone_id)
        if entry is None or not entry.manual_override:
            return False

        if entry.override_expiry is not None and now > entry.override_expiry:
            entry.manual_override = False
            entry.override_expiry = None
            logger.info(f"Manual override expired: {drone_id}")
            return False

        return True

    def clear_override(self, drone_id: str) -> bool:
        """Explicitly release a drone back to automatic simulation"""
        with self._lock:
            entry = self._entries.get(drone_id)
            if entry is None or not entry.manual_override:
                return False
            entry.manual_override = False
            entry.override_expiry = None
        logger.info(f"Manual override released: {drone_id}")
        return True

    def expire_all(self) -> int:
        """Sweep every entry; returns how many overrides were cleared"""
        cleared = 0
        with self._lock:
            now = self.clock()
            for drone_id, entry in list(self._entries.items()):
                if entry.manual_override and not self._check_locked(drone_id, now):
                    cleared += 1
        return cleared

    def get(self, drone_id: str) -> Optional[OverrideEntry]:
        with self._lock:
            self._check_locked(drone_id, self.clock())
            return self._entries.get(drone_id)

    def snapshot(self) -> Dict[str, OverrideEntry]:
        self.expire_all()
        with self._lock:
            return dict(self._entries)

    def __len__(self):
        with self._lock:
            return len(self._entries)

# ============================================================================
# PART 5: MISSION STATE MACHINE
# ============================================================================

MISSION_START_PROBABILITY = 0.10
MISSION_START_MIN_BATTERY = 50.0
TAKEOFF_PROBABILITY = 0.5
EARLY_DELIVERY_PROBABILITY = 0.08
DELIVERY_ARRIVAL_DEGREES = 0.005
RETURN_PROBABILITY = 0.3
EARLY_HOME_PROBABILITY = 0.12
HOME_ARRIVAL_DEGREES = 0.002

IDLE_RECHARGE = 0.3
DELIVERY_DRAW = 0.2
FLYING_DECAY_FACTOR = 0.8
RETURNING_DECAY_FACTOR = 0.6
BATTERY_FLOOR = 15.0
BATTERY_MAX = 100.0

BUSINESS_HOURS = (8, 18)  # inclusive local hours

DELIVERY_SITES = [
    Destination(-1.2500, 36.7833, 'Karen Hospital'),
    Destination(-1.3500, 36.9167, 'Machakos Hospital'),
    Destination(-1.1667, 36.8000, 'Kiambu Medical Center'),
    Destination(-1.4000, 36.9500, 'Athi River Clinic'),
    Destination(-1.2000, 36.7500, 'Limuru Health Center'),
]

def is_business_hours(moment: datetime) -> bool:
    return BUSINESS_HOURS[0] <= moment.hour <= BUSINESS_HOURS[1]

class MissionStateMachine:
    """idle -> preparing -> flying -> delivering -> returning -> idle, one step per tick"""

    def __init__(self, rng: Optional[random.Random] = None,
                 destinations: Optional[List[Destination]] = None):
        self.rng = rng or random.Random()
        self.destinations = list(destinations or DELIVERY_SITES)

    def step(self, profile: DroneProfile, now: Optional[datetime] = None):
        """Advance one drone by one tick (mutates profile)"""
        now = now or datetime.now()
        phase = profile.mission_phase

        if phase == MissionPhase.IDLE:
            self._step_idle(profile, now)
        elif phase == MissionPhase.PREPARING:
            if self.rng.random() < TAKEOFF_PROBABILITY:
                profile.mission_phase = MissionPhase.FLYING
        elif phase == MissionPhase.FLYING:
            self._step_flying(profile)
        elif phase == MissionPhase.DELIVERING:
            profile.current_battery -= DELIVERY_DRAW
            if self.rng.random() < RETURN_PROBABILITY:
                profile.mission_phase = MissionPhase.RETURNING
        elif phase == MissionPhase.RETURNING:
            self._step_returning(profile)

        profile.current_battery = max(BATTERY_FLOOR, profile.current_battery)

    def _step_idle(self, profile: DroneProfile, now: datetime):
        should_start = (
            is_business_hours(now)
            and self.rng.random() < MISSION_START_PROBABILITY
            and profile.current_battery > MISSION_START_MIN_BATTERY
        )

        if should_start:
            profile.mission_phase = MissionPhase.PREPARING
            profile.mission_start_time = now
            profile.destination = self.rng.choice(self.destinations)
            logger.info(f"{profile.id}: mission started -> {profile.destination.name}")
        else:
            profile.current_battery = min(BATTERY_MAX, profile.current_battery + IDLE_RECHARGE)

    def _step_flying(self, profile: DroneProfile):
        if profile.destination is None:
            logger.warning(f"{profile.id}: flying without a destination, holding position")
            return

        profile.current_location = move_toward(
            profile.current_location, profile.destination, degrees_per_step(profile.max_speed)
        )
        profile.current_battery -= profile.battery_decay_rate * FLYING_DECAY_FACTOR

        remaining = planar_distance(profile.current_location, profile.destination)
        if remaining < DELIVERY_ARRIVAL_DEGREES or self.rng.random() < EARLY_DELIVERY_PROBABILITY:
            profile.mission_phase = MissionPhase.DELIVERING

    def _step_returning(self, profile: DroneProfile):
        profile.current_location = move_toward(
            profile.current_location, profile.base_location, degrees_per_step(profile.max_speed)
        )
        profile.current_battery -= profile.battery_decay_rate * RETURNING_DECAY_FACTOR

        remaining = planar_distance(profile.current_location, profile.base_location)
        if remaining < HOME_ARRIVAL_DEGREES or self.rng.random() < EARLY_HOME_PROBABILITY:
            profile.mission_phase = MissionPhase.IDLE
            profile.current_location = Location(profile.base_location.lat, profile.base_location.lng)
            profile.destination = None
            profile.mission_start_time = None
            logger.info(f"{profile.id}: back at base")

# ============================================================================
# PART 6: TELEMETRY SYNTHESIZER
# ============================================================================

HEADQUARTERS = Location(-1.2921, 36.8219)

@dataclass(frozen=True)
class PhaseReading:
    """Live value ranges for one mission phase: (base, spread) pairs"""
    status: DroneStatus
    temperature: Tuple[float, float]
    speed_fraction: Optional[Tuple[float, float]] = None  # of max speed
    altitude_offset: Optional[Tuple[float, float]] = None  # around operating altitude

PHASE_READINGS: Dict[MissionPhase, PhaseReading] = {
    MissionPhase.IDLE: PhaseReading(DroneStatus.STANDBY, (25, 3)),
    MissionPhase.PREPARING: PhaseReading(DroneStatus.PRE_FLIGHT, (28, 3)),
    MissionPhase.FLYING: PhaseReading(DroneStatus.IN_FLIGHT, (35, 6), (0.8, 0.2), (-15, 30)),
    MissionPhase.DELIVERING: PhaseReading(DroneStatus.DELIVERED, (32, 4)),
    MissionPhase.RETURNING: PhaseReading(DroneStatus.RETURNING, (34, 5), (0.7, 0.2), (-10, 25)),
}

@dataclass(frozen=True)
class ManualReading:
    """Value ranges for a manually forced status"""
    temperature: Tuple[float, float]
    battery_delta: float = 0.0
    battery_floor: Optional[float] = None
    speed: Tuple[float, float] = (0, 0)
    altitude: Tuple[float, float] = (0, 0)
    position: str = "base"  # base, last, jitter, toward_base

MANUAL_READINGS: Dict[DroneStatus, ManualReading] = {
    DroneStatus.POWERED_OFF: ManualReading((22, 3)),
    DroneStatus.STANDBY: ManualReading((25, 3), battery_delta=1.0),
    DroneStatus.PRE_FLIGHT: ManualReading((28, 3)),
    DroneStatus.ACTIVE: ManualReading((30, 4), -0.5, 20),
    DroneStatus.IN_FLIGHT: ManualReading((35, 6), -2.0, 15, (40, 25), (120, 80), "jitter"),
    DroneStatus.LANDING: ManualReading((33, 4), -1.0, 15, (5, 10), (0, 20), "last"),
    DroneStatus.DELIVERED: ManualReading((32, 4), -0.5, 15, position="last"),
    DroneStatus.RETURNING: ManualReading((34, 5), -1.5, 15, (35, 20), (100, 60), "toward_base"),
    DroneStatus.MAINTENANCE: ManualReading((24, 2)),
    DroneStatus.EMERGENCY: ManualReading((40, 8), -3.0, 5, (0, 15), (0, 50), "last"),
}

HISTORICAL_STATUSES = [
    DroneStatus.STANDBY,
    DroneStatus.ACTIVE,
    DroneStatus.IN_FLIGHT,
    DroneStatus.DELIVERED,
    DroneStatus.RETURNING,
]

BUSY_ACTIVITY = 0.6
QUIET_ACTIVITY = 0.2
MANUAL_HUMIDITY = 65.0
POSITION_JITTER_DEGREES = 0.01
RETURN_NUDGE = 0.1

def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))

class TelemetrySynthesizer:
    """Render plausible sensor readings; every output is clamped to its domain"""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def _spread(self, pair: Tuple[float, float]) -> float:
        base, spread = pair
        return base + self.rng.random() * spread

    def _finalize(self, drone_id: str, timestamp: datetime, status: str, battery: float,
                  temperature: float, humidity: float, speed: float, altitude: float,
                  lat: float, lng: float) -> TelemetryRecord:
        return TelemetryRecord(
            drone_id=drone_id,
            timestamp=timestamp,
            battery=round(_clamp(battery, 0, 100), 1),
            temperature=round(temperature, 1),
            humidity=round(_clamp(humidity, 0, 100), 1),
            speed=round(max(0.0, speed), 1),
            altitude=round(max(0.0, altitude)),
            lat=round(_clamp(lat, -90, 90), 6),
            lng=round(_clamp(lng, -180, 180), 6),
            status=status,
        )

    def historical_point(self, profile: DroneProfile, timestamp: datetime) -> TelemetryRecord:
        """Randomised reading for backfill, busier on weekday business hours"""
        busy = is_business_hours(timestamp) and timestamp.weekday() < 5
        activity = BUSY_ACTIVITY if busy else QUIET_ACTIVITY
        base = profile.base_location

        if self.rng.random() < activity:
            progress = self.rng.random()
            battery = max(20.0, 90 - progress * 40 + self.rng.random() * 10)
            temperature = 32 + progress * 8 + self.rng.random() * 4
            speed = profile.max_speed * (0.6 + self.rng.random() * 0.4)
            lat = base.lat + (self.rng.random() - 0.5) * 0.08
            lng = base.lng + (self.rng.random() - 0.5) * 0.08
            return self._finalize(
                profile.id, timestamp,
                status=self.rng.choice(HISTORICAL_STATUSES).value,
                battery=battery,
                temperature=temperature,
                humidity=55 + self.rng.random() * 25,
                speed=speed,
                altitude=profile.operating_altitude + self.rng.random() * 40 - 20,
                lat=lat, lng=lng,
            )

        return self._finalize(
            profile.id, timestamp,
            status=DroneStatus.STANDBY.value,
            battery=85 + self.rng.random() * 15,
            temperature=26 + self.rng.random() * 4,
            humidity=60 + self.rng.random() * 20,
            speed=0, altitude=0,
            lat=base.lat, lng=base.lng,
        )

    def live_point(self, profile: DroneProfile, timestamp: datetime) -> TelemetryRecord:
        """Reading derived from the drone's current phase and position"""
        reading = PHASE_READINGS[profile.mission_phase]

        temperature = self._spread(reading.temperature)
        speed = 0.0
        altitude = 0.0
        if reading.speed_fraction:
            speed = profile.max_speed * self._spread(reading.speed_fraction)
        if reading.altitude_offset:
            altitude = profile.operating_altitude + self._spread(reading.altitude_offset)

        hour = timestamp.hour
        temperature += math.sin((hour - 6) / 12 * math.pi) * 3
        humidity = 65 - abs(hour - 14) * 1.5 + self.rng.random() * 15

        return self._finalize(
            profile.id, timestamp,
            status=reading.status.value,
            battery=profile.current_battery,
            temperature=temperature,
            humidity=humidity,
            speed=speed,
            altitude=altitude,
            lat=profile.current_location.lat,
            lng=profile.current_location.lng,
        )

    def manual_point(self, drone_id: str, status: DroneStatus, battery: float,
                     last_position: Location, base_location: Location = HEADQUARTERS,
                     timestamp: Optional[datetime] = None) -> TelemetryRecord:
        """Reading that reflects a status forced through the admin surface"""
        status = DroneStatus(status)
        reading = MANUAL_READINGS[status]

        if reading.battery_delta > 0:
            new_battery = min(BATTERY_MAX, battery + reading.battery_delta)
        else:
            new_battery = battery + reading.battery_delta
            if reading.battery_floor is not None:
                new_battery = max(new_battery, reading.battery_floor)

        if reading.position == "base":
            lat, lng = base_location.lat, base_location.lng
        elif reading.position == "jitter":
            lat = last_position.lat + (self.rng.random() - 0.5) * POSITION_JITTER_DEGREES
            lng = last_position.lng + (self.rng.random() - 0.5) * POSITION_JITTER_DEGREES
        elif reading.position == "toward_base":
            lat = last_position.lat + (base_location.lat - last_position.lat) * RETURN_NUDGE
            lng = last_position.lng + (base_location.lng - last_position.lng) * RETURN_NUDGE
        else:
            lat, lng = last_position.lat, last_position.lng

        return self._finalize(
            drone_id, timestamp or datetime.now(),
            status=status.value,
            battery=new_battery,
            temperature=self._spread(reading.temperature),
            humidity=MANUAL_HUMIDITY,
            speed=self._spread(reading.speed),
            altitude=self._spread(reading.altitude),
            lat=lat, lng=lng,
        )

# ============================================================================
# PART 7: SIMULATION DRIVER
# ============================================================================

DEFAULT_FLEET = [
    {'id': 'A1', 'name': 'Drone A1', 'base': (-1.2921, 36.8219),
     'decay': 0.8, 'max_speed': 65, 'altitude': 150},
    {'id': 'A2', 'name': 'Drone A2', 'base': (-1.3032, 36.8356),
     'decay': 0.7, 'max_speed': 70, 'altitude': 180},
    {'id': 'B1', 'name': 'Drone B1', 'base': (-1.2745, 36.8098),
     'decay': 0.9, 'max_speed': 60, 'altitude': 120},
    {'id': 'B2', 'name': 'Drone B2', 'base': (-1.3167, 36.8833),
     'decay': 0.6, 'max_speed': 75, 'altitude': 200},
]

def build_fleet(rng: random.Random, fleet: Optional[List[Dict]] = None) -> Dict[str, DroneProfile]:
    """Create the drone profiles, idle at base with 85-100% battery"""
    profiles = {}
    for spec in fleet or DEFAULT_FLEET:
        lat, lng = spec['base']
        profiles[spec['id']] = DroneProfile(
            id=spec['id'],
            name=spec['name'],
            base_location=Location(lat, lng),
            battery_decay_rate=spec['decay'],
            max_speed=spec['max_speed'],
            operating_altitude=spec['altitude'],
            current_battery=85 + rng.random() * 15,
        )
    return profiles

class AutoDroneSimulator:
    """Periodic driver: advances every free drone and appends one record per drone per tick"""

    STOP_JOIN_SECONDS = 5.0

    def __init__(self, store, registry: OverrideRegistry,
                 config: Optional[SimulationConfig] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 profiles: Optional[Dict[str, DroneProfile]] = None,
                 publisher=None, metrics=None):
        self.config = config or SimulationConfig()
        self.store = store
        self.registry = registry
        self.rng = rng or random.Random(self.config.seed)
        self.clock = clock
        self.profiles: Dict[str, DroneProfile] = profiles if profiles is not None else build_fleet(self.rng)
        self.state_machine = MissionStateMachine(self.rng)
        self.synthesizer = TelemetrySynthesizer(self.rng)
        self.publisher = publisher
        self.metrics = metrics

        self.is_running = False
        self.start_time: Optional[datetime] = None
        self.last_tick: Optional[datetime] = None
        self._tick_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> bool:
        """Backfill if needed, tick once, then tick every config.tick_interval seconds"""
        with self._lifecycle_lock:
            if self.is_running:
                return True

            logger.info("🚀 Starting auto drone simulation with manual override support...")
            try:
                self.store.ping()
                self._initialize_database()
            except Exception as e:
                logger.error(f"❌ Failed to start simulation: {e}")
                return False

            self.is_running = True
            self.start_time = self.clock()
            # Each run owns its event so a lingering loop from an earlier run still sees its stop
            stop_event = threading.Event()
            self._stop_event = stop_event

            self.tick()

            self._thread = threading.Thread(target=self._run_loop, args=(stop_event,),
                                            daemon=True, name="auto-simulator")
            self._thread.start()

        logger.info("✅ Auto simulation started")
        return True

    def stop(self):
        with self._lifecycle_lock:
            if not self.is_running:
                return
            self.is_running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread and thread is not threading.current_thread():
            thread.join(timeout=self.STOP_JOIN_SECONDS)
        logger.info("🛑 Auto simulation stopped")

    def _run_loop(self, stop_event: threading.Event):
        # The wait restarts only after the previous tick (and its write) has returned
        while not stop_event.wait(self.config.tick_interval):
            self.tick()

    def _initialize_database(self):
        from generate_history import HistoryGenerator

        try:
            count = self.store.count()
            if count > 0:
                logger.info(f"📊 Database has {count} existing records")
                return

            logger.info("📊 Database is empty, generating initial historical data...")
            generator = HistoryGenerator(self.store, self.synthesizer)
            written = generator.generate(
                list(self.profiles.values()),
                hours=self.config.backfill_hours,
                interval_minutes=self.config.backfill_interval_minutes,
                batch_size=self.config.backfill_batch_size,
                now=self.clock(),
            )
            logger.info(f"✅ Initial historical data generated ({written} records)")
        except Exception as e:
            logger.error(f"❌ Failed to check/initialize database: {e}")

    def tick(self) -> List[TelemetryRecord]:
        """Run one simulation step for the whole fleet"""
        started = time.time()
        now = self.clock()
        records: List[TelemetryRecord] = []

        with self._tick_lock:
            for drone_id, profile in self.profiles.items():
                try:
                    if self.registry.is_overridden(drone_id):
                        logger.debug(f"⏸️  Skipping auto-update for {drone_id} - under manual control")
                        self._count('drones_skipped_total', labels={'drone_id': drone_id})
                        continue

                    self.state_machine.step(profile, now)
                    records.append(self.synthesizer.live_point(profile, now))
                except Exception as e:
                    logger.error(f"Skipping {drone_id} this tick: {e}")

            self.last_tick = now

            if records:
                try:
                    self.store.insert_many(records)
                except Exception as e:
                    logger.error(f"❌ Failed to save telemetry: {e}")
                    self._count('persistence_failures_total')
                    records = []

        if records:
            self._publish(records)
            for record in records:
                logger.debug(f"   {record.drone_id}: {record.status:<11} | {record.battery}% | "
                             f"{round(record.speed)} km/h | {record.lat:.4f}, {record.lng:.4f}")

        self._count('simulator_ticks_total')
        self._count('telemetry_records_total', value=len(records))
        if self.metrics:
            self.metrics.record_histogram('tick_duration_ms', (time.time() - started) * 1000)
        return records

    def _publish(self, records: List[TelemetryRecord]):
        if not self.publisher:
            return
        try:
            self.publisher.publish_telemetry_batch(records)
        except Exception as e:
            logger.error(f"Telemetry publish failed: {e}")

    def _count(self, name: str, value: int = 1, labels: Optional[Dict] = None):
        if self.metrics and value:
            self.metrics.record_counter(name, value, labels)

    def base_locations(self) -> Dict[str, Location]:
        return {drone_id: p.base_location for drone_id, p in self.profiles.items()}

    def get_status(self) -> Dict[str, Any]:
        """Fleet snapshot; the override check may clear expired entries"""
        with self._tick_lock:
            profiles = [
                {
                    'id': p.id,
                    'name': p.name,
                    'battery': p.current_battery,
                    'phase': p.mission_phase.value,
                    'location': p.current_location.to_dict(),
                    'destination': p.destination.name if p.destination else None,
                    'manual_override': self.registry.is_overridden(p.id),
                }
                for p in self.profiles.values()
            ]
        return {
            'is_running': self.is_running,
            'drone_count': len(self.profiles),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'last_tick': self.last_tick.isoformat() if self.last_tick else None,
            'profiles': profiles,
        }

# ============================================================================
# PART 8: ADMIN DRONE CONTROL
# ============================================================================

DEFAULT_MANUAL_BATTERY = 85.0

class DroneControlService:
    """Manual status override: pins a drone's status and records a matching reading"""

    def __init__(self, registry: OverrideRegistry, store, synthesizer: TelemetrySynthesizer,
                 base_locations: Optional[Dict[str, Location]] = None,
                 default_duration_seconds: float = 300.0,
                 clock: Callable[[], datetime] = datetime.now,
                 publisher=None):
        self.registry = registry
        self.store = store
        self.synthesizer = synthesizer
        self.base_locations = base_locations or {}
        self.default_duration_seconds = default_duration_seconds
        self.clock = clock
        self.publisher = publisher

    def set_status(self, drone_id: str, status, is_online: Optional[bool] = None,
                   battery: Optional[float] = None,
                   duration_seconds: Optional[float] = None) -> Dict[str, Any]:
        """
        Force a drone into a status for a limited time.

        Args:
            drone_id: Drone identifier
            status: DroneStatus or its label; unknown labels raise ValueError
            is_online: Defaults to status != Powered Off
            battery: Defaults to the last recorded battery, else 85
            duration_seconds: Override lifetime, defaults to the configured value

        Returns:
            Summary of the applied override
        """
        if not drone_id:
            raise ValueError("drone_id is required")
        status = DroneStatus(status)
        if battery is not None and not 0 <= battery <= 100:
            raise ValueError("battery must be within 0..100")
        if duration_seconds is not None and duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")

        now = self.clock()
        duration = duration_seconds or self.default_duration_seconds
        expiry = now + timedelta(seconds=duration)

        last = self.store.find_latest(drone_id)
        last_position = Location(last.lat, last.lng) if last else None
        if battery is None:
            battery = last.battery if last and last.battery else DEFAULT_MANUAL_BATTERY
        if is_online is None:
            is_online = status != DroneStatus.POWERED_OFF

        entry = OverrideEntry(
            status=status.value,
            is_online=is_online,
            battery=battery,
            last_update=now,
            manual_override=True,
            override_expiry=expiry,
            last_position=last_position,
        )
        self.registry.set_override(drone_id, entry)

        # Fleet drones park at their own base; only unknown ids fall back to headquarters
        base = self.base_locations.get(drone_id, HEADQUARTERS)
        record = self.synthesizer.manual_point(
            drone_id, status, battery,
            last_position=last_position or HEADQUARTERS,
            base_location=base,
            timestamp=now,
        )
        self.store.insert_one(record)

        if status == DroneStatus.EMERGENCY:
            logger.warning(f"🚨 {drone_id} manually set to EMERGENCY")
        if self.publisher:
            try:
                self.publisher.publish_override_event(drone_id, entry)
            except Exception as e:
                logger.error(f"Override publish failed: {e}")

        return {
            'success': True,
            'message': f"Drone {drone_id} manually set to {status.value}",
            'drone_id': drone_id,
            'status': status.value,
            'is_online': is_online,
            'battery': record.battery,
            'timestamp': now.isoformat(),
            'override_active': True,
            'override_expiry': expiry.isoformat(),
        }

    def get_states(self, drone_id: Optional[str] = None) -> List[Dict[str, Any]]:
        states = self.registry.snapshot()
        if drone_id is not None:
            states = {drone_id: states[drone_id]} if drone_id in states else {}
        return [{'drone_id': key, **entry.to_dict()} for key, entry in states.items()]

    def release(self, drone_id: str) -> bool:
        return self.registry.clear_override(drone_id)

# ============================================================================
# PART 9: SERVICE WIRING
# ============================================================================

@dataclass
class SimulationContext:
    """Everything the driver and the admin surface share, constructed once"""
    config: SimulationConfig
    store: Any
    registry: OverrideRegistry
    simulator: AutoDroneSimulator
    control: DroneControlService
    metrics: Any = None
    publisher: Any = None

    @classmethod
    def from_config(cls, config: SimulationConfig, store=None, publisher=None,
                    clock: Callable[[], datetime] = datetime.now) -> 'SimulationContext':
        from monitoring import MetricsCollector
        from storage import create_store

        if store is None:
            store = create_store(config)
        if publisher is None and config.kafka_servers:
            from kafka_integration import TelemetryEventProducer
            try:
                publisher = TelemetryEventProducer(config.kafka_servers)
            except Exception as e:
                logger.error(f"Kafka stream disabled: {e}")

        metrics = MetricsCollector()
        registry = OverrideRegistry(clock=clock)
        simulator = AutoDroneSimulator(
            store, registry, config=config, clock=clock, publisher=publisher, metrics=metrics
        )
        control = DroneControlService(
            registry, store, simulator.synthesizer,
            base_locations=simulator.base_locations(),
            default_duration_seconds=config.default_override_seconds,
            clock=clock,
            publisher=publisher,
        )
        return cls(config, store, registry, simulator, control, metrics, publisher)

# ============================================================================
# PART 10: COMMAND LINE INTERFACE
# ============================================================================

class CLI:
    """Command-line interface for the simulator"""

    def __init__(self, context: SimulationContext):
        self.context = context
        self.commands = {
            'status': self._status_cmd,
            'tick': self._tick_cmd,
            'run': self._run_cmd,
            'override': self._override_cmd,
            'help': self._help_cmd,
        }

    def run(self, args: List[str]):
        if not args:
            self._help_cmd([])
            return

        handler = self.commands.get(args[0])
        if handler is None:
            print(f"Unknown command: {args[0]}")
            self._help_cmd([])
            return
        handler(args[1:])

    def _status_cmd(self, args: List[str]):
        status = self.context.simulator.get_status()

        print(f"\n{'='*78}")
        print(f"{'ID':<6} {'Name':<12} {'Phase':<12} {'Battery':<9} {'Lat':<12} {'Lng':<12} {'Manual'}")
        print(f"{'='*78}")
        for p in status['profiles']:
            print(f"{p['id']:<6} {p['name']:<12} {p['phase']:<12} {p['battery']:<9.1f} "
                  f"{p['location']['lat']:<12.6f} {p['location']['lng']:<12.6f} "
                  f"{'Yes' if p['manual_override'] else 'No'}")
        print(f"{'='*78}")
        print(f"Running: {status['is_running']}  Drones: {status['drone_count']}\n")

    def _tick_cmd(self, args: List[str]):
        count = int(args[0]) if args else 1
        for _ in range(count):
            records = self.context.simulator.tick()
            for r in records:
                print(f"   {r.drone_id}: {r.status:<11} | {r.battery}% | {round(r.speed)} km/h")

    def _run_cmd(self, args: List[str]):
        simulator = self.context.simulator
        if not simulator.start():
            print("❌ Simulator failed to start, check the logs")
            return
        print("Simulator running, Ctrl+C to stop")
        try:
            while simulator.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            simulator.stop()

    def _override_cmd(self, args: List[str]):
        if len(args) < 2:
            print("Usage: override <drone_id> <status> [minutes]")
            return

        drone_id, label = args[0], args[1].replace('_', ' ')
        minutes = float(args[2]) if len(args) > 2 else None
        try:
            result = self.context.control.set_status(
                drone_id, label, duration_seconds=minutes * 60 if minutes else None
            )
        except ValueError as e:
            print(f"❌ {e}")
            return
        print(f"✅ {result['message']} until {result['override_expiry']}")

    def _help_cmd(self, args: List[str]):
        print("\n" + "="*70)
        print("Drone Delivery Telemetry Simulator")
        print("="*70)
        print("\nCommands:")
        print("  status                          - Show fleet state")
        print("  tick [n]                        - Run n simulation ticks now")
        print("  run                             - Start the periodic simulator")
        print("  override <id> <status> [min]    - Pin a drone status (use _ for spaces)")
        print("  help                            - Show this help")
        print("="*70 + "\n")

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main(argv: Optional[List[str]] = None):
    """Run one CLI command, or the interactive prompt when none is given"""
    argv = sys.argv[1:] if argv is None else argv
    context = SimulationContext.from_config(SimulationConfig.from_env())
    cli = CLI(context)

    try:
        if argv:
            cli.run(argv)
            return

        print("\n📋 Type 'help' for commands, 'exit' to quit\n")

        while True:
            try:
                command = input("SIM> ").strip()

                if command.lower() in ['exit', 'quit']:
                    break

                if command:
                    cli.run(command.split())

            except (KeyboardInterrupt, EOFError):
                print()
                break
            except Exception as e:
                print(f"❌ Error: {e}")
    finally:
        context.simulator.stop()
        if context.publisher:
            context.publisher.close()
        context.store.close()

if __name__ == "__main__":
    # Run through the importable module so its classes are the ones other modules see
    import simulator

    simulator.main()
