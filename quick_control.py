#!/usr/bin/env python3
# Quick Fleet Control - Demo presets over the admin API
# File: quick_control.py

"""
Apply fleet-wide manual overrides through the running API server
Usage: python quick_control.py [start-all|launch|return|power-off|states|release DRONE]
"""

import argparse
import random
import sys
import requests
from typing import Dict, List, Optional

# API Configuration
BASE_URL = "http://localhost:8000"
HEADERS = {"Content-Type": "application/json"}
CONTROL_PATH = "/api/admin/drone-control"

DRONES = ['A1', 'A2', 'B1', 'B2']

# preset -> (status, battery range or None, is_online)
PRESETS = {
    'start-all': ("Active", (85, 100), None),
    'launch': ("In Flight", (70, 90), None),
    'return': ("Returning", (40, 70), None),
    'power-off': ("Powered Off", None, False),
}

class QuickControlClient:
    """Drive manual overrides via the API"""

    def __init__(self, base_url: str = BASE_URL, rng: Optional[random.Random] = None):
        self.base_url = base_url.rstrip('/')
        self.rng = rng or random.Random()
        self.stats = {'success': 0, 'failed': 0}

    def check_server(self) -> bool:
        """Check if API server is running"""
        try:
            response = requests.get(f"{self.base_url}/health", timeout=2)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def set_status(self, drone_id: str, status: str, battery: Optional[float] = None,
                   is_online: Optional[bool] = None,
                   duration_seconds: Optional[float] = None) -> Optional[Dict]:
        payload = {'drone_id': drone_id, 'status': status}
        if battery is not None:
            payload['battery'] = round(battery, 1)
        if is_online is not None:
            payload['is_online'] = is_online
        if duration_seconds is not None:
            payload['duration_seconds'] = duration_seconds

        try:
            response = requests.post(
                f"{self.base_url}{CONTROL_PATH}",
                headers=HEADERS,
                json=payload,
                timeout=5
            )

            if response.status_code == 200:
                result = response.json()
                print(f"   ✓ {drone_id}: {status} ({result.get('battery')}%)")
                self.stats['success'] += 1
                return result

            print(f"   ✗ {drone_id}: {response.json().get('detail', 'Error')}")

        except requests.RequestException as e:
            print(f"   ✗ {drone_id}: {str(e)}")

        self.stats['failed'] += 1
        return None

    def release(self, drone_id: str) -> bool:
        try:
            response = requests.delete(f"{self.base_url}{CONTROL_PATH}/{drone_id}", timeout=5)
        except requests.RequestException as e:
            print(f"   ✗ {drone_id}: {str(e)}")
            return False
        return response.status_code == 200

    def list_states(self) -> List[Dict]:
        response = requests.get(f"{self.base_url}{CONTROL_PATH}", timeout=5)
        response.raise_for_status()
        return response.json().get('states', [])

    def run_preset(self, name: str, drones: Optional[List[str]] = None,
                   duration_seconds: Optional[float] = None) -> Dict[str, int]:
        """Apply one preset to every drone; returns success/failed counts"""
        if name not in PRESETS:
            raise ValueError(f"Unknown preset: {name}")

        status, battery_range, is_online = PRESETS[name]
        drones = drones or DRONES
        print(f"\n🎮 {name}: setting {len(drones)} drones to {status}...")

        for drone_id in drones:
            battery = self.rng.uniform(*battery_range) if battery_range else None
            self.set_status(drone_id, status, battery=battery, is_online=is_online,
                            duration_seconds=duration_seconds)

        return dict(self.stats)

    def print_states(self):
        states = self.list_states()
        active = [s['drone_id'] for s in states if s['manual_override']]

        print("\n" + "="*70)
        print("MANUAL OVERRIDES")
        print("="*70)
        for s in states:
            flag = "🔒" if s['manual_override'] else "  "
            print(f"{flag} {s['drone_id']:<6} {s['status']:<12} online={s['is_online']} "
                  f"expires={s['override_expiry'] or '-'}")
        print(f"\nUnder manual control: {', '.join(active) or 'None'}")
        print("="*70)

def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Quick fleet control for the drone telemetry simulator')
    parser.add_argument('command', choices=sorted(PRESETS) + ['states', 'release'])
    parser.add_argument('drones', nargs='*', help='Drone ids (default: whole fleet)')
    parser.add_argument('--url', default=BASE_URL, help=f'API base URL (default: {BASE_URL})')
    parser.add_argument('--minutes', type=float, help='Override duration in minutes')
    args = parser.parse_args()

    client = QuickControlClient(args.url)

    print("🔍 Checking API server...")
    if not client.check_server():
        print("❌ API server is not running!")
        print("\nPlease start the server first:")
        print("   uvicorn api_server:app --reload --port 8000")
        sys.exit(1)

    if args.command == 'states':
        client.print_states()
    elif args.command == 'release':
        for drone_id in args.drones or DRONES:
            released = client.release(drone_id)
            print(f"   {'✓' if released else '✗'} {drone_id}")
    else:
        duration = args.minutes * 60 if args.minutes else None
        stats = client.run_preset(args.command, args.drones, duration)
        print(f"\n📊 Total: {stats['success']} successful, {stats['failed']} failed")

if __name__ == "__main__":
    main()
