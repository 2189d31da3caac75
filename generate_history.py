# Historical Telemetry Generator
# File: generate_history.py

"""
Generate a window of synthetic history so the dashboard has data on a cold start.
Usage: python generate_history.py [hours]
"""

import random
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from simulator import (
    DroneProfile,
    SimulationConfig,
    TelemetryRecord,
    TelemetrySynthesizer,
    build_fleet,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# HISTORY GENERATOR
# ============================================================================

class HistoryGenerator:
    """Backfill one reading per drone per sampling interval"""

    def __init__(self, store, synthesizer: Optional[TelemetrySynthesizer] = None):
        self.store = store
        self.synthesizer = synthesizer or TelemetrySynthesizer()

    def timestamps(self, hours: int, interval_minutes: int, now: datetime) -> List[datetime]:
        """Oldest-first sample times ending at now, (hours*60/interval)+1 of them"""
        total_points = (hours * 60) // interval_minutes
        return [
            now - timedelta(minutes=i * interval_minutes)
            for i in range(total_points, -1, -1)
        ]

    def build(self, profiles: List[DroneProfile], hours: int = 6,
              interval_minutes: int = 3, now: Optional[datetime] = None) -> List[TelemetryRecord]:
        now = now or datetime.now()
        return [
            self.synthesizer.historical_point(profile, timestamp)
            for timestamp in self.timestamps(hours, interval_minutes, now)
            for profile in profiles
        ]

    def generate(self, profiles: List[DroneProfile], hours: int = 6,
                 interval_minutes: int = 3, batch_size: int = 100,
                 now: Optional[datetime] = None) -> int:
        """
        Build and write the history window in fixed-size chunks.

        Args:
            profiles: Drones to generate readings for
            hours: Length of the window
            interval_minutes: Sampling interval
            batch_size: Maximum records per insert call
            now: End of the window

        Returns:
            Number of records written
        """
        records = self.build(profiles, hours, interval_minutes, now)

        for start in range(0, len(records), batch_size):
            self.store.insert_many(records[start:start + batch_size])

        logger.info(f"Backfilled {len(records)} records for {len(profiles)} drones "
                    f"({hours}h @ {interval_minutes}min)")
        return len(records)

# ============================================================================
# MAIN EXECUTION
# ============================================================================

if __name__ == "__main__":
    import sys
    from storage import create_store

    config = SimulationConfig.from_env()
    hours = int(sys.argv[1]) if len(sys.argv) > 1 else config.backfill_hours

    store = create_store(config)
    store.ping()

    existing = store.count()
    if existing:
        print(f"⚠️  Store already holds {existing} records, appending anyway")

    rng = random.Random(config.seed)
    fleet = list(build_fleet(rng).values())
    written = HistoryGenerator(store, TelemetrySynthesizer(rng)).generate(
        fleet,
        hours=hours,
        interval_minutes=config.backfill_interval_minutes,
        batch_size=config.backfill_batch_size,
    )
    print(f"✅ Wrote {written} historical records ({hours}h, {len(fleet)} drones)")
    store.close()
