"""Weights layer - Event Replay, Chain Read and reconciliation."""

from delegate_vote_tracker.weights.onchain import ChainReadCalculator
from delegate_vote_tracker.weights.precision import (
    WEIGHT_QUANTUM,
    ZERO_WEIGHT,
    format_weight,
    from_base_units,
    percent,
    to_base_units,
)
from delegate_vote_tracker.weights.reconcile import (
    CorrectedWeight,
    MergeReport,
    MismatchReport,
    VoteWeightReconciler,
)
from delegate_vote_tracker.weights.replay import ReplayWeight, event_replay_weight, replay_weights

__all__ = [
    "ChainReadCalculator",
    "CorrectedWeight",
    "MergeReport",
    "MismatchReport",
    "ReplayWeight",
    "VoteWeightReconciler",
    "WEIGHT_QUANTUM",
    "ZERO_WEIGHT",
    "event_replay_weight",
    "format_weight",
    "from_base_units",
    "percent",
    "replay_weights",
    "to_base_units",
]
