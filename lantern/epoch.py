"""Slot and epoch arithmetic against the wall clock.

Everything here is an estimate from genesis parameters. The node's own
metrics are the ground truth; the estimate is only used to judge how far
behind the node is.
"""

import time
from dataclasses import dataclass
from enum import Enum

from lantern.genesis import GenesisModel, GenesisParameters

# Used when live protocol parameters are unavailable
DEFAULT_ACTIVE_SLOT_COEFF = 0.05
DEFAULT_DECENTRALIZATION = 0.5

HEALTHY_TIP_DIFF = 20
BEHIND_TIP_DIFF = 600


def _now(now: float | None) -> int:
    return int(time.time() if now is None else now)


def legacy_slot_count(now: int, legacy: GenesisParameters) -> int:
    """Slots elapsed since the legacy genesis start, using legacy slot length."""
    if now <= legacy.start_time:
        return 0
    return ((now - legacy.start_time) * 1000) // legacy.slot_length_ms


def current_slot_estimate(genesis: GenesisModel, now: float | None = None) -> int | None:
    """Expected absolute slot number at `now`, or None while the transition is unresolved."""
    if not genesis.transition.resolved:
        return None
    now = _now(now)
    end = genesis.legacy_end_time
    if now < end:
        return legacy_slot_count(now, genesis.legacy)
    return genesis.legacy_slots + ((now - end) * 1000) // genesis.modern.slot_length_ms


def epoch_progress_percent(genesis: GenesisModel, epoch_num: int, slot_in_epoch: int) -> float:
    if not genesis.transition.resolved:
        return 0.0
    if epoch_num >= genesis.transition.epoch:
        epoch_length = genesis.modern.epoch_length
    else:
        epoch_length = genesis.legacy.epoch_length
    if epoch_length <= 0:
        return 0.0
    return 100.0 * slot_in_epoch / epoch_length


def current_epoch(genesis: GenesisModel, now: float | None = None) -> int | None:
    if not genesis.transition.resolved:
        return None
    now = _now(now)
    end = genesis.legacy_end_time
    if now < end:
        if now <= genesis.legacy.start_time:
            return 0
        return ((now - genesis.legacy.start_time) * 1000) // genesis.legacy.epoch_duration_ms
    return genesis.transition.epoch + ((now - end) * 1000) // genesis.modern.epoch_duration_ms


def time_until_next_epoch(genesis: GenesisModel, now: float | None = None) -> int | None:
    """Seconds until the next epoch boundary."""
    epoch = current_epoch(genesis, now)
    if epoch is None:
        return None
    now = _now(now)
    end = genesis.legacy_end_time
    if now < end:
        next_start = genesis.legacy.start_time + ((epoch + 1) * genesis.legacy.epoch_duration_ms) // 1000
    else:
        modern_epochs = epoch - genesis.transition.epoch + 1
        next_start = end + (modern_epochs * genesis.modern.epoch_duration_ms) // 1000
    return max(next_start - now, 0)


def current_kes_period(genesis: GenesisModel, now: float | None = None) -> int | None:
    slot = current_slot_estimate(genesis, now)
    per_period = genesis.modern.slots_per_kes_period
    if slot is None or not per_period:
        return None
    return slot // per_period


def slot_interval_threshold(
    modern: GenesisParameters,
    active_slot_coeff: float = DEFAULT_ACTIVE_SLOT_COEFF,
    decentralization: float = DEFAULT_DECENTRALIZATION,
) -> int:
    """Expected gap between blocks in milliseconds, rounded to the nearest unit.

    An approximation: the coefficients are fixed defaults, not the live
    per-epoch protocol parameters.
    """
    return int(modern.slot_length_ms / active_slot_coeff / decentralization + 0.5)


class SyncStatus(Enum):
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    BEHIND = "behind"
    SYNCING = "syncing"


@dataclass(frozen=True)
class SyncDiagnosis:
    status: SyncStatus
    tip_diff: int | None = None
    progress: float | None = None


def diagnose_sync(tip_ref: int | None, slot_num: int) -> SyncDiagnosis:
    """Compare the reported slot with the wall-clock estimate."""
    if slot_num == 0:
        return SyncDiagnosis(SyncStatus.STARTING)
    if tip_ref is None or tip_ref <= 0:
        return SyncDiagnosis(SyncStatus.UNKNOWN)
    tip_diff = tip_ref - slot_num
    if tip_diff <= HEALTHY_TIP_DIFF:
        return SyncDiagnosis(SyncStatus.HEALTHY, tip_diff=tip_diff)
    if tip_diff <= BEHIND_TIP_DIFF:
        return SyncDiagnosis(SyncStatus.BEHIND, tip_diff=tip_diff)
    return SyncDiagnosis(SyncStatus.SYNCING, tip_diff=tip_diff, progress=100.0 * slot_num / tip_ref)


def format_time_left(seconds: int) -> str:
    """Render seconds as "Nd HH:MM:SS"; the day prefix only appears when non-zero."""
    seconds = max(int(seconds), 0)
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    prefix = f"{days}d " if days > 0 else ""
    return f"{prefix}{hours:02d}:{minutes:02d}:{secs:02d}"
