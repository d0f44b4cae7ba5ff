"""
Data models for derived performance analytics.

Every model is plain data handed to the presentation layer and the export
formats; numeric fields are rounded by the producing service.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any, Literal, Tuple
from pydantic import BaseModel, Field


Severity = Literal["critical", "high", "medium", "low"]
RiskLevel = Literal["low", "medium", "high"]
TrendDirection = Literal["improving", "stable", "degrading"]
CompletionStatus = Literal["completed", "abandoned", "in_progress"]
CorrelationType = Literal[
    "memory_leak", "cpu_spike", "fps_degradation", "performance_boost", "unclassified"
]
PerformanceImpact = Literal["positive", "negative", "neutral"]


# Aggregation

class TrendPoint(BaseModel):
    """One time bucket of averaged metrics"""
    timestamp: datetime
    fps: float = 0
    memory_usage: float = 0
    cpu_usage: float = 0
    load_time: float = 0
    cpu_inferred: bool = False
    route_pattern: Optional[str] = None
    session_id: Optional[str] = None


class SessionAggregate(BaseModel):
    """Per-session metric averages"""
    session_id: str
    device_type: str
    sample_count: int = Field(ge=0)
    avg_fps: float
    avg_memory: float
    avg_cpu: float
    avg_load_time: float
    cpu_inferred: bool
    transition_count: int = Field(ge=0)
    risk_level: RiskLevel


class CountBucket(BaseModel):
    label: str
    count: int = Field(ge=0)


class PerformanceSummary(BaseModel):
    """App-wide totals for the dashboard header"""
    total_sessions: int = 0
    active_sessions: int = 0
    total_metrics: int = 0
    avg_fps: float = 0
    avg_memory: float = 0
    avg_cpu: float = 0
    cpu_inferred: bool = False
    avg_load_time: float = 0
    device_count: int = 0
    platform_breakdown: List[CountBucket] = []
    fps_distribution: List[CountBucket] = []


class DeviceProfile(BaseModel):
    device_id: str
    device_type: str
    app_version: Optional[str] = None
    total_sessions: int = Field(ge=0)
    avg_fps: float
    avg_memory: float
    avg_cpu: float
    cpu_inferred: bool = False
    last_seen: datetime
    risk_level: RiskLevel


class PlatformHealth(BaseModel):
    """Stepped 0-100 health of one platform (device type)"""
    platform: str
    total_sessions: int = Field(ge=0)
    total_devices: int = Field(ge=0)
    avg_fps: float
    avg_memory: float
    avg_cpu: float
    avg_load_time: float
    health_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel


# Route performance

class PerformanceDistribution(BaseModel):
    excellent: int = 0
    good: int = 0
    fair: int = 0
    poor: int = 0


class RouteSessionSample(BaseModel):
    """Metrics of one screen visit correlated to its time window"""
    session_id: str
    device_id: str
    device_type: str
    route_pattern: str
    route_name: str
    timestamp: datetime
    screen_duration: float
    avg_fps: float
    avg_memory: float
    avg_cpu: float
    avg_load_time: float
    cpu_inferred: bool = False


class RelativePerformance(BaseModel):
    """Percent difference from the app average"""
    fps: float = 0
    memory: float = 0
    cpu: float = 0


class RoutePerformanceData(BaseModel):
    route_pattern: str
    route_name: str
    total_sessions: int = Field(ge=0)
    unique_devices: int = Field(ge=0)
    avg_fps: float
    avg_memory: float
    avg_cpu: float
    avg_load_time: float
    avg_screen_duration: float
    fps_distribution: PerformanceDistribution
    memory_distribution: PerformanceDistribution
    performance_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    performance_trend: TrendDirection
    relative_performance: RelativePerformance
    sessions: List[RouteSessionSample] = []


class AppAverages(BaseModel):
    avg_fps: float = 0
    avg_memory: float = 0
    avg_cpu: float = 0
    avg_load_time: float = 0


class RouteSummary(BaseModel):
    total_routes: int = 0
    total_sessions: int = 0
    best_performing_routes: List[str] = []
    worst_performing_routes: List[str] = []
    routes_with_high_memory_usage: List[str] = []
    routes_with_low_fps: List[str] = []


class RoutePerformanceAnalysis(BaseModel):
    routes: List[RoutePerformanceData] = []
    summary: RouteSummary = RouteSummary()
    app_averages: AppAverages = AppAverages()


class RouteGlobalComparison(BaseModel):
    """Route deviation from the app-wide averages, in percent"""
    route_pattern: str
    fps_deviation: float
    memory_deviation: float
    cpu_deviation: float
    anomaly_score: float = Field(ge=0, le=1)
    is_outlier: bool


class ProblematicRoute(BaseModel):
    route_pattern: str
    issues: List[str]
    severity: Severity


# Correlation

class RouteCorrelation(BaseModel):
    source_route: str
    target_route: str
    fps_corr: float
    memory_corr: float
    cpu_corr: float
    correlation_strength: float = Field(ge=0, le=1)
    performance_impact: PerformanceImpact
    correlation_type: CorrelationType
    statistical_significance: float = Field(ge=0, le=1)
    confidence_level: float
    sample_size: int = Field(ge=0)


# Journeys

class RouteVisitMetrics(BaseModel):
    avg_fps: float
    avg_memory: float
    avg_cpu: float
    avg_load_time: float


class TransitionPerformance(BaseModel):
    transition_time: float = 0
    memory_spike: float = 0
    cpu_spike: float = 0


class RouteVisit(BaseModel):
    route_pattern: str
    route_name: str
    entry_timestamp: datetime
    exit_timestamp: Optional[datetime] = None
    duration: float = Field(ge=0, description="milliseconds")
    performance_metrics: RouteVisitMetrics
    transition_performance: TransitionPerformance = TransitionPerformance()


class PerformancePoint(BaseModel):
    timestamp: datetime
    fps: float
    memory_usage: float
    cpu_usage: float
    route_pattern: str


class BottleneckPoint(BaseModel):
    route_pattern: str
    timestamp: datetime
    bottleneck_type: Literal["performance_drop", "high_cpu", "memory_spike", "slow_transition"]
    severity: Severity
    impact_score: float
    description: str


class UserJourney(BaseModel):
    journey_id: str
    session_id: str
    session_ids: List[str] = []
    device_id: str
    device_type: str = "unknown"
    anonymous_user_id: str
    route_sequence: List[RouteVisit] = []
    journey_duration: float = Field(default=0, description="milliseconds")
    performance_trajectory: List[PerformancePoint] = []
    bottleneck_points: List[BottleneckPoint] = []
    journey_score: float = Field(default=50, ge=0, le=100)
    completion_status: CompletionStatus = "in_progress"
    journey_start: datetime
    journey_end: Optional[datetime] = None


class JourneyPattern(BaseModel):
    pattern_id: str
    route_sequence: List[str]
    frequency: int = Field(ge=2)
    avg_performance_score: float
    common_bottlenecks: List[str] = []
    optimization_potential: float
    user_impact_score: float
    avg_journey_duration: float
    completion_rate: float = Field(ge=0, le=1)


class AbandonmentPattern(BaseModel):
    abandonment_point: str
    frequency: int
    avg_time_to_abandonment: float
    common_preceding_routes: List[str] = []


class JourneyRegression(BaseModel):
    route_pattern: str
    performance_change: float
    significance: Literal["high", "medium", "low"]
    sample_size: int


class CompletionByLength(BaseModel):
    sequence_length: int
    total_journeys: int
    completion_rate: float
    avg_performance_score: float


class AbandonmentRoute(BaseModel):
    route_pattern: str
    abandonment_correlation: float
    frequency_in_abandoned_journeys: int
    avg_performance_impact: float


class FlowEfficiency(BaseModel):
    avg_journey_duration: float = 0
    avg_routes_per_journey: float = 0
    avg_time_per_route: float = 0
    efficiency_score: float = 0
    bottleneck_frequency: float = 0


class DeviceJourneyStats(BaseModel):
    device_type: str
    total_journeys: int
    avg_completion_rate: float
    avg_performance_score: float
    common_bottlenecks: List[str] = []


class JourneyAnalysisReport(BaseModel):
    journeys: List[UserJourney] = []
    patterns: List[JourneyPattern] = []
    abandonment: List[AbandonmentPattern] = []
    high_value_paths: List[JourneyPattern] = []
    completion_by_length: List[CompletionByLength] = []
    problematic_routes: List[AbandonmentRoute] = []
    flow_efficiency: FlowEfficiency = FlowEfficiency()
    by_device: List[DeviceJourneyStats] = []
    regressions: List[JourneyRegression] = []


# Trends, statistics and predictions

class LinearTrend(BaseModel):
    slope: float = 0
    intercept: float = 0
    r_squared: float = 0
    correlation: float = 0
    p_value: float = 1
    is_significant: bool = False
    sample_size: int = 0


class SeriesStatistics(BaseModel):
    mean: float = 0
    median: float = 0
    standard_deviation: float = 0
    min: float = 0
    max: float = 0
    percentile_25: float = 0
    percentile_75: float = 0
    percentile_90: float = 0
    percentile_95: float = 0
    outliers: List[float] = []


class Anomaly(BaseModel):
    metric_type: str
    value: float
    expected_value: float
    deviation: float
    z_score: float
    severity: Severity
    timestamp: Optional[datetime] = None
    route_pattern: Optional[str] = None
    percentile_rank: float = 0


class MannKendallResult(BaseModel):
    tau: float = 0
    is_significant: bool = False
    trend: Literal["increasing", "decreasing", "no_trend"] = "no_trend"


class RegressionResult(BaseModel):
    """Recent window mean compared with the preceding baseline window"""
    metric_type: str
    recent_average: float
    baseline_average: float
    change_ratio: float
    recent_count: int
    baseline_count: int
    is_regression: bool
    severity: Optional[Literal["warning", "critical"]] = None


class SeasonalPattern(BaseModel):
    pattern_id: str
    metric_type: str
    pattern_type: Literal["hourly", "daily", "weekly", "monthly"]
    confidence: float = Field(ge=0, le=1)
    seasonal_strength: float = Field(ge=0, le=1)
    amplitude: float
    peak_times: List[str] = []
    low_times: List[str] = []
    next_predicted_peak: datetime
    next_predicted_low: datetime


class PerformancePrediction(BaseModel):
    prediction_id: str
    metric_type: str
    predicted_value: float
    confidence_interval: Tuple[float, float]
    probability_of_issue: float = Field(ge=0, le=1)
    time_horizon: Literal["1h", "24h", "7d", "30d"]
    route_pattern: Optional[str] = None
    model: str = "linear_regression"


class RoutePrediction(BaseModel):
    route_pattern: str
    predicted_performance_score: float = Field(ge=0, le=100)
    confidence_interval: Tuple[float, float]
    prediction_horizon: Literal["1d", "7d", "30d"] = "7d"
    horizon_scores: Dict[str, float] = {}
    contributing_factors: List[str] = []
    recommendation_priority: Literal["high", "medium", "low"]
    forecast_accuracy: float = Field(ge=0, le=1)
    trend_direction: TrendDirection
    prediction_model: str = "linear_regression"


# Early warnings and insights

class EarlyWarningAlert(BaseModel):
    id: str
    type: Literal["performance_degradation", "memory_spike", "fps_drop", "seasonal_peak"]
    severity: Severity
    confidence: float = Field(ge=0, le=1)
    predicted_issue_date: datetime
    time_to_issue: str
    affected_routes: List[str] = []
    prevention_recommendations: List[str] = []
    monitoring_suggestions: List[str] = []
    prediction_basis: str


class CrossRoutePattern(BaseModel):
    pattern_id: str
    pattern_type: Literal["memory_leak_chain", "cpu_cascade", "fps_recovery"]
    affected_routes: List[str]
    pattern_strength: float = Field(ge=0, le=1)
    detection_confidence: float
    suggested_mitigation: List[str] = []


class DegradationPoint(BaseModel):
    from_route: str
    to_route: str
    performance_drop: float
    severity: Severity


class NavigationFlow(BaseModel):
    flow_id: str
    route_sequence: List[str]
    performance_trajectory: List[float]
    bottleneck_routes: List[str] = []
    optimization_potential: float
    user_impact_score: float
    flow_frequency: int
    avg_transition_time: float
    performance_degradation_points: List[DegradationPoint] = []


class RouteInsight(BaseModel):
    route_pattern: str
    route_name: str
    insight_type: Literal["correlation", "prediction", "flow_analysis", "pattern_detection"]
    confidence: float
    impact_assessment: Literal["high", "medium", "low"]
    actionable_recommendation: str


class ProactiveRecommendation(BaseModel):
    recommendation_id: str
    priority: Literal["high", "medium", "low"]
    category: str
    title: str
    description: str
    implementation_steps: List[str] = []
    deadline: datetime


class RouteInsightsReport(BaseModel):
    generated_at: datetime
    processing_time_ms: float
    route_correlations: List[RouteCorrelation] = []
    performance_predictions: List[RoutePrediction] = []
    navigation_flows: List[NavigationFlow] = []
    cross_route_patterns: List[CrossRoutePattern] = []
    insights: List[RouteInsight] = []
    proactive_recommendations: List[ProactiveRecommendation] = []
    sessions_processed: int = 0
    routes_analyzed: int = 0


class SectionError(BaseModel):
    section: str
    error: str


class AnalyticsReport(BaseModel):
    """Full report. A section that failed is None (or empty) and listed in errors."""
    generated_at: datetime
    time_range: Dict[str, Optional[datetime]]
    summary: Optional[PerformanceSummary] = None
    route_analysis: Optional[RoutePerformanceAnalysis] = None
    route_correlations: Optional[List[RouteCorrelation]] = None
    route_predictions: Optional[List[RoutePrediction]] = None
    journey_analysis: Optional[JourneyAnalysisReport] = None
    regressions: Optional[List[RegressionResult]] = None
    seasonal_patterns: Optional[List[SeasonalPattern]] = None
    early_warnings: Optional[List[EarlyWarningAlert]] = None
    errors: List[SectionError] = []
    metadata: Dict[str, Any] = {}
