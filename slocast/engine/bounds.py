"""
Bounded-update primitives shared by every controller that persists state.

- clamp(): the one clamping helper
- EnsembleWeights + project_weights(): weights always in [0.2, 0.6], sum 1
- bounded_weight_update(): the reliability/MAE-driven nudge used by both
  the self-tuner and the retraining trainer
- bound_slo_target(): SLO targets in [70, 98], at most ±5 per step
"""

from dataclasses import dataclass

# ── Configuration ─────────────────────────────────────────────────────────

WEIGHT_MIN: float = 0.2
WEIGHT_MAX: float = 0.6
DEFAULT_WEIGHTS: tuple[float, float, float] = (0.33, 0.33, 0.34)

RELIABILITY_PIVOT: float = 75.0         # Reliability above this favours the trend model
WEIGHT_LEARNING_RATE: float = 0.05
MAE_SHIFT_FLOOR: float = 3.0            # MAE above this moves weight to the conservative model
MAE_SHIFT_SLOPE: float = 0.02
MAE_SHIFT_CAP: float = 0.1

SLO_MIN: float = 70.0
SLO_MAX: float = 98.0
SLO_MAX_STEP: float = 5.0

SIGNAL_WEIGHT_MIN: float = 0.5
SIGNAL_WEIGHT_MAX: float = 2.0

_PROJECTION_ITERATIONS = 100


def clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class EnsembleWeights:
    """Blend weights for the trend / conservative / optimistic models."""
    trend: float
    conservative: float
    optimistic: float

    @classmethod
    def default(cls) -> "EnsembleWeights":
        return cls(*DEFAULT_WEIGHTS)

    @property
    def total(self) -> float:
        return self.trend + self.conservative + self.optimistic

    def to_dict(self) -> dict:
        return {
            "trend": self.trend,
            "conservative": self.conservative,
            "optimistic": self.optimistic,
        }


def project_weights(
    trend: float,
    conservative: float,
    optimistic: float,
    lo: float = WEIGHT_MIN,
    hi: float = WEIGHT_MAX,
) -> EnsembleWeights:
    """
    Euclidean projection onto {w : lo <= w_i <= hi, sum(w) = 1}.

    Finds the shift t such that sum(clamp(w_i + t)) == 1 by bisection.
    Unlike clamp-then-divide, the result never leaves the box.
    """
    raw = (trend, conservative, optimistic)

    def total(t: float) -> float:
        return sum(clamp(w + t, lo, hi) for w in raw)

    low_t = lo - max(raw)
    high_t = hi - min(raw)
    for _ in range(_PROJECTION_ITERATIONS):
        mid = (low_t + high_t) / 2
        if total(mid) < 1.0:
            low_t = mid
        else:
            high_t = mid

    t = (low_t + high_t) / 2
    projected = [clamp(w + t, lo, hi) for w in raw]

    # Put the bisection residue on a weight that has room for it
    residue = 1.0 - sum(projected)
    for i, w in enumerate(projected):
        if lo <= w + residue <= hi:
            projected[i] = w + residue
            break

    return EnsembleWeights(*projected)


def bounded_weight_update(
    current: EnsembleWeights,
    reliability: float,
    mae: float,
    learning_rate: float = WEIGHT_LEARNING_RATE,
) -> EnsembleWeights:
    """
    One bounded controller step.

    delta = (reliability - 75) / 100
    trend += delta * lr, conservative -= delta * lr / 2, optimistic takes the rest.
    MAE above 3 moves min(0.1, (mae - 3) * 0.02) from trend to conservative.
    """
    delta = (reliability - RELIABILITY_PIVOT) / 100.0

    trend = clamp(current.trend + delta * learning_rate, WEIGHT_MIN, WEIGHT_MAX)
    conservative = clamp(current.conservative - delta * learning_rate * 0.5, WEIGHT_MIN, WEIGHT_MAX)
    optimistic = 1.0 - trend - conservative

    if mae > MAE_SHIFT_FLOOR:
        shift = min(MAE_SHIFT_CAP, (mae - MAE_SHIFT_FLOOR) * MAE_SHIFT_SLOPE)
        trend -= shift
        conservative += shift

    return project_weights(trend, conservative, optimistic)


def bound_slo_target(current: float, proposed: float) -> float:
    """Limit a proposed SLO target to the absolute range and the per-step size."""
    target = clamp(proposed, SLO_MIN, SLO_MAX)
    target = clamp(target, current - SLO_MAX_STEP, current + SLO_MAX_STEP)
    return clamp(target, SLO_MIN, SLO_MAX)


def bound_signal_weight(weight: float) -> float:
    return clamp(weight, SIGNAL_WEIGHT_MIN, SIGNAL_WEIGHT_MAX)
