"""
Inventory Truth Engine Configuration

Static thresholds used by the detector bank and the investigation builder.
Every value has a default; deployments override them through TRUTH_*
environment variables.
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict


ENV_VAR_PREFIX = "TRUTH_"


@dataclass
class TruthEngineConfig:
    """Thresholds for detection, investigation and pattern mining."""

    # Transaction gap / unexplained variance
    gap_threshold: float = 1.0
    gap_medium_threshold: float = 10.0
    gap_high_threshold: float = 100.0
    max_gap_findings: int = 50

    # Cycle count variance
    cycle_count_percent_threshold: float = 5.0
    cycle_count_qty_threshold: float = 10.0
    cycle_count_medium_percent: float = 10.0
    cycle_count_medium_qty: float = 20.0
    cycle_count_high_percent: float = 20.0
    cycle_count_high_qty: float = 50.0
    max_cycle_count_findings: int = 100

    # Adjustment spikes
    spike_lookback_days: int = 30
    spike_z_threshold: float = 2.0
    spike_high_z_threshold: float = 3.0
    spike_daily_count_threshold: int = 5
    max_spike_findings: int = 50

    # Drift
    drift_lookback_days: int = 30
    drift_min_data_points: int = 7
    drift_min_absolute: float = 5.0
    drift_min_percent: float = 5.0
    drift_medium_percent: float = 10.0
    drift_high_percent: float = 20.0
    max_drift_findings: int = 50

    # Trend classification
    trend_threshold: float = 0.1

    # Mis-slot pairing
    mis_slot_tolerance: float = 0.10

    # Investigation
    investigation_lookback_days: int = 7
    operator_adjustment_threshold: int = 3
    operator_adjustment_high_threshold: int = 5
    adjustment_volume_ratio: float = 0.5
    hotspot_open_threshold: int = 3
    adjustment_recommendation_threshold: float = 10.0
    adjustment_approval_threshold: float = 50.0

    # Default analysis window
    analysis_window_days: int = 30

    @classmethod
    def from_env(cls) -> "TruthEngineConfig":
        """
        Build a config from TRUTH_* environment variables.

        e.g. TRUTH_SPIKE_Z_THRESHOLD=2.5 overrides spike_z_threshold.
        Unset variables keep their defaults.
        """
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f"{ENV_VAR_PREFIX}{f.name.upper()}")
            if raw is None or raw == "":
                continue
            if f.type in (int, "int"):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        return cls(**overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_CONFIG = TruthEngineConfig()
