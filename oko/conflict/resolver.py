"""
Conflict resolution for signals that target a symbol with an existing position.

    1. an opening lock for (symbol, side) is mid-flight    -> REJECT
    2. no open position for the symbol                     -> IGNORE, proceed
    3. classify: other side -> REVERSE; same side, higher tier -> UPGRADE;
       same side, same or lower tier -> SAME_DIRECTION
    4. apply the configured policy for that type

Every resolution is logged and written to the conflict log, whether or not the
caller proceeds.
"""
from decimal import Decimal
from typing import Optional, Tuple

from oko.config.config import ConflictConfig
from oko.domain.models import (
    Alert,
    ConflictAnalysis,
    ConflictLogEntry,
    ConflictType,
    Position,
    Resolution,
)
from oko.domain.protocols import Ledger
from oko.monitoring.logger import get_logger
from oko.utils.ledger_writes import ledger_write

logger = get_logger(__name__)


def determine_conflict_type(alert: Alert, existing: Optional[Position]) -> ConflictType:
    if existing is None:
        return ConflictType.NONE
    if alert.side != existing.side:
        return ConflictType.REVERSE
    if alert.tier_rank > existing.tier_rank:
        return ConflictType.UPGRADE
    return ConflictType.SAME_DIRECTION


def resolve_reverse(alert: Alert, existing: Position, config: ConflictConfig) -> Tuple[Resolution, str]:
    strategy = config.opposite_direction_strategy

    if strategy == "reject":
        return Resolution.REJECT, f"Rejected: already in {existing.side.value} position, opposite direction not allowed"

    if strategy == "market_reversal":
        if alert.strength < config.reversal_min_strength:
            return (
                Resolution.REJECT,
                f"Rejected: reversal strength {alert.strength:.2f} below minimum {config.reversal_min_strength}",
            )

        is_emergency = alert.tier.lower() == config.emergency_tier.lower()
        if is_emergency and not config.emergency_can_reverse:
            return Resolution.REJECT, f"Rejected: {config.emergency_tier} tier cannot trigger reversal"

        if is_emergency and config.emergency_override_mode == "only_profit":
            pnl_pct = existing.pnl_pct
            required = Decimal(str(config.emergency_min_profit_percent))
            if pnl_pct < required:
                return (
                    Resolution.REJECT,
                    f"Rejected: emergency override requires {required}% profit, current: {pnl_pct:.2f}%",
                )

        return (
            Resolution.CLOSE_AND_OPEN,
            f"Market reversal: closing {existing.side.value} to open {alert.side.value} (strength: {alert.strength:.2f})",
        )

    return Resolution.REJECT, "Unknown opposite direction strategy"


def resolve_upgrade(alert: Alert, existing: Position, config: ConflictConfig) -> Tuple[Resolution, str]:
    behavior = config.same_symbol_behavior

    if behavior == "reject_duplicates":
        return Resolution.REJECT, f"Rejected: position already exists ({existing.tier}), duplicates not allowed"
    if behavior == "track_confirmations":
        return (
            Resolution.UPGRADE,
            f"Upgrade: increasing confirmation from {existing.confirmation_count} to {existing.confirmation_count + 1}",
        )
    if behavior == "tier_based":
        return Resolution.UPGRADE, f"Upgrade: {existing.tier} -> {alert.tier} (higher tier detected)"
    if behavior == "ignore":
        return Resolution.IGNORE, f"Ignored: position already exists ({existing.tier})"
    return Resolution.REJECT, "Unknown same symbol behavior"


def resolve_same_direction(alert: Alert, existing: Position, config: ConflictConfig) -> Tuple[Resolution, str]:
    behavior = config.same_symbol_behavior

    if behavior == "reject_duplicates":
        return Resolution.REJECT, f"Rejected: position already exists ({existing.tier}), same direction not allowed"
    if behavior == "track_confirmations":
        return (
            Resolution.UPGRADE,
            f"Confirmation: increasing count from {existing.confirmation_count} to {existing.confirmation_count + 1}",
        )
    return Resolution.IGNORE, f"Ignored: position already exists, same tier {existing.tier}"


class ConflictResolver:
    """Decides what happens when a signal meets an existing position."""

    def __init__(self, ledger: Ledger, config: ConflictConfig):
        self.ledger = ledger
        self.config = config

    def resolve(self, alert: Alert, policy: Optional[ConflictConfig] = None) -> ConflictAnalysis:
        config = policy or self.config

        if self.ledger.is_symbol_opening(alert.symbol, alert.side):
            analysis = ConflictAnalysis(
                has_conflict=True,
                conflict_type=ConflictType.NONE,
                resolution=Resolution.REJECT,
                reason="Rejected: position is currently being opened",
                should_proceed=False,
            )
            self._record(alert, None, analysis)
            return analysis

        existing = self.ledger.get_open_position(alert.symbol)
        if existing is None:
            analysis = ConflictAnalysis(
                has_conflict=False,
                conflict_type=ConflictType.NONE,
                resolution=Resolution.IGNORE,
                reason="No conflict: no existing position found",
                should_proceed=True,
            )
            self._record(alert, None, analysis)
            return analysis

        conflict_type = determine_conflict_type(alert, existing)
        if conflict_type == ConflictType.REVERSE:
            resolution, reason = resolve_reverse(alert, existing, config)
        elif conflict_type == ConflictType.UPGRADE:
            resolution, reason = resolve_upgrade(alert, existing, config)
        else:
            resolution, reason = resolve_same_direction(alert, existing, config)

        analysis = ConflictAnalysis(
            has_conflict=True,
            conflict_type=conflict_type,
            resolution=resolution,
            reason=reason,
            should_proceed=resolution in (Resolution.CLOSE_AND_OPEN, Resolution.UPGRADE),
            existing_position=existing,
        )
        self._record(alert, existing, analysis)
        return analysis

    def _record(self, alert: Alert, existing: Optional[Position], analysis: ConflictAnalysis) -> None:
        logger.info(
            "CONFLICT_RESOLVED",
            alert_id=alert.id,
            symbol=alert.symbol,
            new_side=alert.side.value,
            new_tier=alert.tier,
            existing_position_id=existing.id if existing else None,
            existing_side=existing.side.value if existing else None,
            existing_tier=existing.tier if existing else None,
            conflict_type=analysis.conflict_type.value,
            resolution=analysis.resolution.value,
            should_proceed=analysis.should_proceed,
            reason=analysis.reason,
        )
        entry = ConflictLogEntry(
            alert_id=alert.id,
            existing_position_id=existing.id if existing else None,
            symbol=alert.symbol,
            new_side=alert.side,
            existing_side=existing.side if existing else None,
            new_tier=alert.tier,
            existing_tier=existing.tier if existing else None,
            conflict_type=analysis.conflict_type,
            resolution=analysis.resolution,
            reason=analysis.reason,
        )
        ledger_write("conflict_log", self.ledger.append_conflict_log, entry)
