"""Pruning of checkout sessions that never reached an order."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.checkout_session import CheckoutSession
from app.models.consent_event import ConsentEvent, ConsentEventType

logger = logging.getLogger(__name__)


def prune_abandoned_sessions(
    db: Session,
    days: Optional[int] = None,
    batch_size: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Delete sessions older than `days` that never got a checkout_completed event,
    together with all of their events. Works in id-ordered batches, committing
    after each one. With dry_run nothing is deleted and the counters report
    what would have been.
    """
    days = settings.session_prune_days if days is None else days
    batch_size = settings.session_prune_batch if batch_size is None else batch_size
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

    completed = select(ConsentEvent.session_id).where(
        ConsentEvent.type == ConsentEventType.CHECKOUT_COMPLETED.value,
        ConsentEvent.session_id.isnot(None),
    )

    stats = {"scanned": 0, "sessions_deleted": 0, "events_deleted": 0}
    last_id = ""
    while True:
        rows = (
            db.query(CheckoutSession.id)
            .filter(
                CheckoutSession.created_at < cutoff,
                CheckoutSession.order_id.is_(None),
                ~CheckoutSession.id.in_(completed),
                CheckoutSession.id > last_id,
            )
            .order_by(CheckoutSession.id)
            .limit(batch_size)
            .all()
        )
        ids = [row.id for row in rows]
        if not ids:
            break
        last_id = ids[-1]
        stats["scanned"] += len(ids)

        events = db.query(ConsentEvent).filter(ConsentEvent.session_id.in_(ids))
        if dry_run:
            stats["events_deleted"] += events.count()
            stats["sessions_deleted"] += len(ids)
            continue

        stats["events_deleted"] += events.delete(synchronize_session=False)
        stats["sessions_deleted"] += (
            db.query(CheckoutSession)
            .filter(CheckoutSession.id.in_(ids))
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("Pruned %d sessions (through id %s)", len(ids), last_id)

        if len(ids) < batch_size:
            break

    logger.info(
        "Session prune %s: cutoff=%s scanned=%d sessions=%d events=%d",
        "dry-run" if dry_run else "done",
        cutoff.isoformat(),
        stats["scanned"],
        stats["sessions_deleted"],
        stats["events_deleted"],
    )
    return stats
