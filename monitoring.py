# Simulator Monitoring & Metrics
# File: monitoring.py

"""
Metrics collection and health checks for the telemetry simulator service
"""

import time
import psutil
import statistics
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Callable
from collections import deque, defaultdict
from dataclasses import dataclass, field
import threading
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class MetricPoint:
    """Single metric data point"""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Counters, gauges and histograms keyed by name and labels"""

    def __init__(self, retention_minutes: int = 60, max_samples: int = 1000):
        """
        Args:
            retention_minutes: How long time series points stay queryable
            max_samples: Bound on stored points per series
        """
        self.retention_minutes = retention_minutes
        self.max_samples = max_samples
        self.series: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples))
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples))
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: float = 1, labels: Dict = None):
        """Add value to a monotonically increasing counter"""
        with self.lock:
            key = self._make_key(name, labels)
            self.counters[key] += value
            self.series[key].append(MetricPoint(datetime.now(), self.counters[key], labels or {}))

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        with self.lock:
            key = self._make_key(name, labels)
            self.gauges[key] = value
            self.series[key].append(MetricPoint(datetime.now(), value, labels or {}))

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Record one observation (latency, batch size, ...)"""
        with self.lock:
            key = self._make_key(name, labels)
            self.histograms[key].append(value)
            self.series[key].append(MetricPoint(datetime.now(), value, labels or {}))

    def get_series(self, name: str, labels: Dict = None) -> List[MetricPoint]:
        """Points within the retention window"""
        key = self._make_key(name, labels)
        cutoff = datetime.now() - timedelta(minutes=self.retention_minutes)
        with self.lock:
            return [p for p in self.series.get(key, ()) if p.timestamp > cutoff]

    def get_counter(self, name: str, labels: Dict = None) -> float:
        return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Summary statistics for a histogram

        Returns:
            count, min, max, mean, median, p95, p99
        """
        with self.lock:
            values = sorted(self.histograms.get(self._make_key(name, labels), ()))
        return self._summarize(values)

    def _summarize(self, values: List[float]) -> Dict:
        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'mean': 0, 'median': 0, 'p95': 0, 'p99': 0}

        count = len(values)
        return {
            'count': count,
            'min': values[0],
            'max': values[-1],
            'mean': statistics.mean(values),
            'median': statistics.median(values),
            'p95': values[min(count - 1, int(count * 0.95))],
            'p99': values[min(count - 1, int(count * 0.99))],
        }

    def _make_key(self, name: str, labels: Dict = None) -> str:
        if not labels:
            return name
        label_str = ','.join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        with self.lock:
            histograms = {key: sorted(values) for key, values in self.histograms.items()}
            return {
                'counters': dict(self.counters),
                'gauges': dict(self.gauges),
                'histograms': {key: self._summarize(values) for key, values in histograms.items()},
                'timestamp': datetime.now().isoformat()
            }

    def export_prometheus(self) -> str:
        """Prometheus text exposition of all metrics"""
        metrics = self.get_all_metrics()
        output = []
        typed = set()

        def declare(key: str, kind: str):
            base = key.split('{')[0]
            if base not in typed:
                typed.add(base)
                output.append(f"# TYPE {base} {kind}")

        for key, value in sorted(metrics['counters'].items()):
            declare(key, 'counter')
            output.append(f"{key} {value}")

        for key, value in sorted(metrics['gauges'].items()):
            declare(key, 'gauge')
            output.append(f"{key} {value}")

        for key, stats in sorted(metrics['histograms'].items()):
            if stats['count'] == 0:
                continue
            declare(key, 'summary')
            base, _, labels = key.partition('{')
            labels = labels.rstrip('}')
            for quantile, stat in (('0.5', 'median'), ('0.95', 'p95'), ('0.99', 'p99')):
                label_str = ','.join(filter(None, [labels, f'quantile="{quantile}"']))
                output.append(f"{base}{{{label_str}}} {stats[stat]}")
            suffix = f"{{{labels}}}" if labels else ""
            output.append(f"{base}_count{suffix} {stats['count']}")

        return '\n'.join(output) + '\n'

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Run registered health checks on demand or on a background thread"""

    def __init__(self, check_interval: float = 30):
        self.checks: Dict[str, Callable] = {}
        self.health_history: deque = deque(maxlen=100)
        self.check_interval = check_interval
        self.running = False
        self.monitor_thread = None
        self._stop_event = threading.Event()

    def register_check(self, name: str, check_fn: Callable):
        """
        Register health check function

        Args:
            name: Check name
            check_fn: Function that returns HealthCheck or boolean
        """
        self.checks[name] = check_fn
        logger.info(f"Registered health check: {name}")

    def start(self):
        if self.running:
            logger.warning("Health monitor already running")
            return

        self.running = True
        self._stop_event.clear()
        self.monitor_thread = threading.Thread(
            target=self._monitor_loop,
            daemon=True,
            name="health-monitor"
        )
        self.monitor_thread.start()
        logger.info("Health monitor started")

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self.monitor_thread:
            self.monitor_thread.join(timeout=5)
            self.monitor_thread = None
        logger.info("Health monitor stopped")

    def _monitor_loop(self):
        while not self._stop_event.is_set():
            try:
                results = self.run_checks()
                self.health_history.append({
                    'timestamp': datetime.now().isoformat(),
                    'results': [r.to_dict() for r in results]
                })

                unhealthy = [r.component for r in results if r.status == 'unhealthy']
                degraded = [r.component for r in results if r.status == 'degraded']
                if unhealthy:
                    logger.warning(f"Unhealthy components detected: {unhealthy}")
                if degraded:
                    logger.info(f"Degraded components: {degraded}")

            except Exception as e:
                logger.error(f"Health monitoring error: {e}")

            self._stop_event.wait(self.check_interval)

    def run_checks(self) -> List[HealthCheck]:
        results = []

        for name, check_fn in self.checks.items():
            start_time = time.time()

            try:
                result = check_fn()
                latency = (time.time() - start_time) * 1000

                if isinstance(result, HealthCheck):
                    result.latency_ms = latency
                    results.append(result)
                else:
                    results.append(HealthCheck(
                        component=name,
                        status='healthy' if result else 'unhealthy',
                        timestamp=datetime.now(),
                        latency_ms=latency
                    ))

            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                results.append(HealthCheck(
                    component=name,
                    status='unhealthy',
                    timestamp=datetime.now(),
                    details={'error': str(e)}
                ))

        return results

    def get_health_status(self) -> Dict:
        results = self.run_checks()

        overall_status = 'healthy'
        if any(r.status == 'unhealthy' for r in results):
            overall_status = 'unhealthy'
        elif any(r.status == 'degraded' for r in results):
            overall_status = 'degraded'

        return {
            'overall_status': overall_status,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
            'check_count': len(results)
        }

    def get_health_history(self, limit: int = 10) -> List[Dict]:
        return list(self.health_history)[-limit:]

# ============================================================================
# SIMULATOR METRICS INTEGRATION
# ============================================================================

class SimulatorMetrics:
    """Health checks and gauges for a SimulationContext"""

    def __init__(self, context, check_interval: float = 30):
        self.context = context
        self.collector = context.metrics or MetricsCollector()
        self.health_monitor = HealthMonitor(check_interval)

        self.health_monitor.register_check('simulator', self._check_simulator)
        self.health_monitor.register_check('persistence', self._check_persistence)
        self.health_monitor.register_check('overrides', self._check_overrides)
        self.health_monitor.register_check('system_resources', self._check_system_resources)

    def _check_simulator(self) -> HealthCheck:
        simulator = self.context.simulator
        details = {
            'running': simulator.is_running,
            'drones': len(simulator.profiles),
            'last_tick': simulator.last_tick.isoformat() if simulator.last_tick else None,
        }

        status = 'healthy' if simulator.is_running else 'degraded'
        if simulator.is_running and simulator.last_tick:
            # Two missed intervals means the loop is stuck on a slow write
            age = (simulator.clock() - simulator.last_tick).total_seconds()
            details['seconds_since_tick'] = round(age, 1)
            if age > simulator.config.tick_interval * 2:
                status = 'degraded'

        return HealthCheck('simulator', status, datetime.now(), details)

    def _check_persistence(self) -> HealthCheck:
        store = self.context.store
        store.ping()
        return HealthCheck(
            'persistence', 'healthy', datetime.now(),
            {
                'backend': type(store).__name__,
                'failures': self.collector.get_counter('persistence_failures_total'),
            }
        )

    def _check_overrides(self) -> HealthCheck:
        states = self.context.registry.snapshot()
        active = [drone_id for drone_id, entry in states.items() if entry.manual_override]
        return HealthCheck(
            'overrides', 'healthy', datetime.now(),
            {'tracked': len(states), 'active': active}
        )

    def _check_system_resources(self) -> HealthCheck:
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        status = 'healthy'
        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            status = 'unhealthy'
        elif cpu_percent > 70 or memory.percent > 70 or disk.percent > 80:
            status = 'degraded'

        return HealthCheck(
            'system_resources', status, datetime.now(),
            {
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
                'memory_available_gb': memory.available / (1024**3),
                'disk_percent': disk.percent,
            }
        )

    def record_fleet_gauges(self):
        """Snapshot fleet state into gauges"""
        status = self.context.simulator.get_status()
        profiles = status['profiles']

        self.collector.record_gauge('simulator_running', 1 if status['is_running'] else 0)
        self.collector.record_gauge('fleet_drones_total', status['drone_count'])
        self.collector.record_gauge(
            'fleet_manual_overrides', sum(1 for p in profiles if p['manual_override'])
        )
        if profiles:
            self.collector.record_gauge(
                'fleet_battery_average', sum(p['battery'] for p in profiles) / len(profiles)
            )

        phases = defaultdict(int)
        for p in profiles:
            phases[p['phase']] += 1
        for phase, count in phases.items():
            self.collector.record_gauge('fleet_drones_by_phase', count, labels={'phase': phase})

    def start(self):
        self.health_monitor.start()

    def stop(self):
        self.health_monitor.stop()

    def get_dashboard_data(self) -> Dict:
        self.record_fleet_gauges()
        return {
            'health': self.health_monitor.get_health_status(),
            'metrics': self.collector.get_all_metrics(),
            'tick_duration_ms': self.collector.get_histogram_stats('tick_duration_ms'),
            'timestamp': datetime.now().isoformat()
        }

    def export_prometheus(self) -> str:
        self.record_fleet_gauges()
        return self.collector.export_prometheus()
