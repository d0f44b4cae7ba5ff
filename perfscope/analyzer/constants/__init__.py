"""
Threshold tables and scoring constants.

Risk cutoffs differ per granularity (route, device, session, health score);
each view reads its own table.
"""

from attr import dataclass


TARGET_FPS = 60

# performance score weights: fps, memory, cpu, load time
SCORE_WEIGHTS = (0.3, 0.25, 0.25, 0.2)
MEMORY_SCORE_CEILING_MB = 1000
LOAD_TIME_SCORE_CEILING_MS = 5000

RISK_HIGH = 'high'
RISK_MEDIUM = 'medium'
RISK_LOW = 'low'


@dataclass(slots=True, frozen=True)
class RiskThresholds:
    """Cutoffs for one granularity. A None cutoff is not checked."""

    name: str
    high_fps_below: float | None = None
    high_memory_above: float | None = None
    high_cpu_above: float | None = None
    high_load_time_above: float | None = None
    high_sessions_below: int | None = None
    medium_fps_below: float | None = None
    medium_memory_above: float | None = None
    medium_cpu_above: float | None = None
    medium_load_time_above: float | None = None
    medium_sessions_below: int | None = None

    def classify(
        self,
        fps: float,
        memory: float,
        sessions: int | None = None,
        cpu: float | None = None,
        load_time: float | None = None,
    ) -> str:
        if self._breaches('high', fps, memory, sessions, cpu, load_time):
            return RISK_HIGH
        if self._breaches('medium', fps, memory, sessions, cpu, load_time):
            return RISK_MEDIUM
        return RISK_LOW

    def _breaches(self, level, fps, memory, sessions, cpu, load_time) -> bool:
        fps_below = getattr(self, f'{level}_fps_below')
        memory_above = getattr(self, f'{level}_memory_above')
        cpu_above = getattr(self, f'{level}_cpu_above')
        load_above = getattr(self, f'{level}_load_time_above')
        sessions_below = getattr(self, f'{level}_sessions_below')
        return (
            (fps_below is not None and fps < fps_below)
            or (memory_above is not None and memory > memory_above)
            or (cpu_above is not None and cpu is not None and cpu > cpu_above)
            or (load_above is not None and load_time is not None and load_time > load_above)
            or (sessions_below is not None and sessions is not None and sessions < sessions_below)
        )


@dataclass(slots=True, frozen=True)
class ScoreRiskThresholds:
    name: str
    high_below: float
    medium_below: float

    def classify(self, score: float) -> str:
        if score < self.high_below:
            return RISK_HIGH
        if score < self.medium_below:
            return RISK_MEDIUM
        return RISK_LOW


ROUTE_RISK = RiskThresholds(
    name='route',
    high_fps_below=20, high_memory_above=800, high_sessions_below=2,
    medium_fps_below=45, medium_memory_above=400, medium_sessions_below=5,
)

DEVICE_RISK = RiskThresholds(
    name='device',
    high_fps_below=20, high_memory_above=800, high_sessions_below=2,
    medium_fps_below=45, medium_memory_above=400, medium_sessions_below=5,
)

SESSION_RISK = RiskThresholds(
    name='session',
    high_fps_below=20, high_memory_above=600, high_cpu_above=90, high_load_time_above=3000,
    medium_fps_below=30, medium_memory_above=400, medium_cpu_above=70, medium_load_time_above=2000,
)

HEALTH_SCORE_RISK = ScoreRiskThresholds(name='health_score', high_below=50, medium_below=70)

# fps buckets for distributions: label, lower bound inclusive
FPS_DISTRIBUTION = (
    ('<20', 0),
    ('20-30', 20),
    ('30-45', 30),
    ('45-60', 45),
    ('60+', 60),
)

# route performance distribution cutoffs
FPS_EXCELLENT, FPS_GOOD, FPS_FAIR = 50, 30, 20
MEMORY_EXCELLENT, MEMORY_GOOD, MEMORY_FAIR = 200, 400, 600

# early warning
EW_FPS_DEGRADATION_THRESHOLD = 45
EW_MEMORY_SPIKE_THRESHOLD = 500
EW_CONFIDENCE_THRESHOLD = 0.6
EW_SEASONAL_LOOKAHEAD_HOURS = 48
EW_MAX_ALERTS = 10

SCORE_CRITICAL = 30
SCORE_HIGH = 50
SCORE_MEDIUM = 60

FPS_DROP_RATIO = 0.8
MEMORY_SPIKE_MULTIPLIER = 1.5

SEVERITY_RANK = {'critical': 4, 'high': 3, 'medium': 2, 'low': 1}

# platform health score: (bound, score) steps, HEALTH_FLOOR when no step matches
HEALTH_FPS_STEPS = ((50, 90), (30, 70), (20, 50))
HEALTH_MEMORY_STEPS = ((200, 90), (400, 70), (600, 50))
HEALTH_LOAD_TIME_STEPS = ((500, 90), (1000, 70), (2000, 50))
HEALTH_FLOOR = 30
