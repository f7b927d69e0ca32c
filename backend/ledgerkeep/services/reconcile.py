"""
Ledger reconciliation.

Files movements from the remote ledger into the local transaction history.
A pass is idempotent: a movement whose natural key is already stored is
skipped, so re-running after a partial failure only fills the gaps.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.errors import UnclassifiedMovement
from ledgerkeep.models.transaction import Direction, MovementKind, PaymentType, Transaction
from ledgerkeep.schemas.movement import Movement, MovementDestination
from ledgerkeep.services.feed import EventFeed, feed as default_feed
from ledgerkeep.services.ledger_store import LedgerStore
from ledgerkeep.services.wallet import PriceOracle, WalletBridge

logger = structlog.get_logger()

SUBSYSTEM_KIND_TABLE: Dict[Tuple[str, str], MovementKind] = {
    ("bark.board", "board"): MovementKind.ONBOARD,
    ("bark.arkoor", "receive"): MovementKind.ARKOOR_RECEIVE,
    ("bark.round", "offboard"): MovementKind.OFFBOARD,
    ("bark.round", "send_onchain"): MovementKind.EXIT,
}

INCOMING_KINDS = frozenset({MovementKind.ARKOOR_RECEIVE, MovementKind.ONBOARD})

ReconcileStats = Dict[str, Any]


def classify(movement: Movement) -> MovementKind:
    """Local kind for a movement; raises UnclassifiedMovement for unmapped pairs"""
    name = (movement.subsystem.name or "").lower()
    kind = (movement.subsystem.kind or "").lower()
    try:
        return SUBSYSTEM_KIND_TABLE[(name, kind)]
    except KeyError:
        raise UnclassifiedMovement(f"Unmapped subsystem {name}:{kind}") from None


def direction_for(kind: MovementKind) -> Direction:
    return Direction.INCOMING if kind in INCOMING_KINDS else Direction.OUTGOING


def payment_type_for(kind: MovementKind) -> PaymentType:
    if kind == MovementKind.ARKOOR_RECEIVE:
        return PaymentType.ARKOOR
    return PaymentType.ONCHAIN


def natural_key(movement: Movement, direction: Direction) -> Optional[str]:
    """First non-empty vtxo id, preferring outputs for incoming and inputs for outgoing"""
    if direction == Direction.INCOMING:
        candidates = movement.output_vtxos + movement.input_vtxos + movement.exited_vtxos
    else:
        candidates = movement.input_vtxos + movement.output_vtxos + movement.exited_vtxos
    return next((vtxo for vtxo in candidates if vtxo), None)


def _sum_amounts(destinations: Iterable[MovementDestination]) -> int:
    return sum(d.amount_sat for d in destinations)


def movement_amount(movement: Movement, direction: Direction) -> int:
    """Routed amount on the relevant side, else the absolute balance change"""
    routed = _sum_amounts(
        movement.received_on if direction == Direction.INCOMING else movement.sent_to
    )
    if routed > 0:
        return routed
    return abs(movement.effective_balance_sat or 0)


def movement_date(created_at: Optional[str]) -> datetime:
    """Movement timestamp as aware UTC; naive values are UTC, missing ones are now"""
    if not created_at:
        return datetime.now(timezone.utc)
    value = created_at.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Unparseable movement timestamp", created_at=created_at)
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _dump_destinations(destinations: List[MovementDestination]) -> List[Dict[str, Any]]:
    return [d.model_dump() for d in destinations]


def build_transaction(
    movement: Movement,
    kind: MovementKind,
    direction: Direction,
    txid: str,
    at: datetime,
    btc_price: float,
) -> Transaction:
    side = movement.received_on if direction == Direction.INCOMING else movement.sent_to
    return Transaction(
        id=f"movement-{movement.id}",
        txid=txid,
        type=payment_type_for(kind).value,
        direction=direction.value,
        amount=movement_amount(movement, direction),
        date=at.isoformat(),
        description="",
        destination=side[0].destination if side else "",
        btc_price=btc_price,
        movement_id=movement.id,
        movement_status=movement.status,
        movement_kind=kind.value,
        subsystem_name=movement.subsystem.name,
        subsystem_kind=movement.subsystem.kind,
        metadata_json=movement.metadata_json,
        intended_balance_sat=movement.intended_balance_sat,
        effective_balance_sat=movement.effective_balance_sat,
        offchain_fee_sat=movement.offchain_fee_sat,
        sent_to=_dump_destinations(movement.sent_to),
        received_on=_dump_destinations(movement.received_on),
        input_vtxos=list(movement.input_vtxos),
        output_vtxos=list(movement.output_vtxos),
        exited_vtxos=list(movement.exited_vtxos),
    )


class LedgerReconciler:
    """Brings local history up to date with the remote ledger"""

    def __init__(
        self,
        store: LedgerStore,
        wallet: WalletBridge,
        prices: PriceOracle,
        settings: Optional[Settings] = None,
        feed: Optional[EventFeed] = None,
    ):
        self.store = store
        self.wallet = wallet
        self.prices = prices
        self.settings = settings or get_settings()
        self.feed = feed or default_feed

    async def reconcile(self) -> ReconcileStats:
        """
        Run one reconciliation pass.

        Never raises for expected failures: a fetch failure aborts the pass
        with local state untouched, per-movement failures skip that movement.
        Returns stats about the pass.
        """
        stats: ReconcileStats = {
            'fetched': 0,
            'created': 0,
            'skipped_known': 0,
            'skipped_unclassified': 0,
            'skipped_no_key': 0,
            'skipped_price': 0,
            'errors': 0,
        }

        try:
            movements = list(await self.wallet.history(self.settings.movement_page_size))
            known: Set[str] = await self.store.known_natural_keys()
        except Exception as e:
            logger.error("Reconciliation aborted, failed to fetch movements", error=str(e))
            stats['errors'] += 1
            stats['error'] = str(e)
            return stats

        stats['fetched'] = len(movements)
        logger.info("Reconciling movements", fetched=len(movements), known=len(known))

        for movement in movements:
            try:
                kind = classify(movement)
            except UnclassifiedMovement as e:
                stats['skipped_unclassified'] += 1
                logger.debug("Skipping movement", movement_id=movement.id, reason=str(e))
                continue

            direction = direction_for(kind)
            txid = natural_key(movement, direction)
            if txid is None:
                stats['skipped_no_key'] += 1
                logger.warning("Skipping movement without vtxo ids", movement_id=movement.id)
                continue

            if txid in known:
                stats['skipped_known'] += 1
                continue
            # Same key twice in one page: file it once
            known.add(txid)

            at = movement_date(movement.created_at)
            try:
                btc_price = await self.prices.historical_btc_usd(at)
            except Exception as e:
                # Left unfiled so the next pass retries it
                known.discard(txid)
                stats['skipped_price'] += 1
                logger.warning("Price lookup failed, movement deferred", movement_id=movement.id, error=str(e))
                continue

            try:
                await self.store.add_transaction(
                    build_transaction(movement, kind, direction, txid, at, btc_price)
                )
            except Exception as e:
                known.discard(txid)
                stats['errors'] += 1
                logger.warning("Failed to file movement", movement_id=movement.id, error=str(e))
                continue

            stats['created'] += 1
            logger.info(
                "Filed movement",
                movement_id=movement.id,
                kind=kind.value,
                direction=direction.value,
            )

        logger.info("Reconciliation completed", **stats)
        await self.feed.publish("transactions", "reload", {"created": stats["created"]})
        return stats

