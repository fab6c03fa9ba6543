"""End-to-end consent flows against a real database session (in-memory SQLite)"""
import pytest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

from app.models.checkout_session import CheckoutSession, PresentationMode
from app.models.consent_event import ConsentEvent, ConsentEventType
from app.models.customer import ConsentStatus, CustomerConsentRecord
from app.services import consent_store
from app.services.housekeeping import prune_abandoned_sessions
from app.services.platform_sync import PlatformPushResult
from app.services.provider_sync import ProviderSyncResult
from app.services.reconciliation import ConsentSignal, ReconciliationOutcome, reconcile
from app.services.shop_settings import ProviderListConfig


SHOP = "test-shop.myshopify.com"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
LISTS = ProviderListConfig(api_key="pk_test", single_list_id="LIST_SOI", double_list_id="LIST_DOI")


@pytest.fixture
def synchronizers():
    with patch("app.services.reconciliation.platform_sync.push", return_value=PlatformPushResult.PUSHED) as push, \
         patch("app.services.reconciliation.provider_sync.sync", return_value=ProviderSyncResult.SUBSCRIBED) as sync, \
         patch("app.services.reconciliation.get_provider_config", return_value=LISTS), \
         patch("app.services.reconciliation.get_platform_access_token", return_value="shpat_test"):
        yield SimpleNamespace(push=push, sync=sync)


def open_session(db, token="tok-1", mode=PresentationMode.OPT_OUT, region="GB"):
    session = consent_store.upsert_session_for_token(db, SHOP, token, mode, region)
    db.commit()
    return session


def toggle(db, session_id, status, occurred_at=None):
    return reconcile(db, ConsentSignal(
        type=ConsentEventType.CHECKOUT_TOGGLE,
        shop=SHOP,
        session_id=session_id,
        status=status,
        occurred_at=occurred_at,
    ))


def complete_order(db, session_id, occurred_at=T0, order_id="5001"):
    return reconcile(db, ConsentSignal(
        type=ConsentEventType.CHECKOUT_COMPLETED,
        shop=SHOP,
        platform_customer_id="1001",
        email="buyer@example.com",
        order_id=order_id,
        session_id=session_id,
        orders_count=1,
        occurred_at=occurred_at,
    ))


def stored_customer(db):
    db.expire_all()
    return db.query(CustomerConsentRecord).filter(CustomerConsentRecord.shop == SHOP).one()


class TestCheckoutToggles:
    def test_last_untimestamped_toggle_decides_the_order(self, sqlite_db, synchronizers):
        session = open_session(sqlite_db)

        first = toggle(sqlite_db, session.id, ConsentStatus.SUBSCRIBED)
        second = toggle(sqlite_db, session.id, ConsentStatus.UNSUBSCRIBED)
        result = complete_order(sqlite_db, session.id)

        assert first.event_id != second.event_id
        assert second.status == ConsentStatus.UNSUBSCRIBED
        assert result.outcome == ReconciliationOutcome.APPLIED
        assert stored_customer(sqlite_db).status == ConsentStatus.UNSUBSCRIBED
        assert synchronizers.push.call_args.args[2] == ConsentStatus.UNSUBSCRIBED

    def test_untimestamped_toggles_are_all_kept(self, sqlite_db, synchronizers):
        session = open_session(sqlite_db)

        toggle(sqlite_db, session.id, ConsentStatus.SUBSCRIBED)
        toggle(sqlite_db, session.id, ConsentStatus.UNSUBSCRIBED)
        toggle(sqlite_db, session.id, ConsentStatus.SUBSCRIBED)

        events = sqlite_db.query(ConsentEvent).filter(ConsentEvent.session_id == session.id).all()
        assert len(events) == 3
        assert all(e.occurred_at is not None for e in events)
        sqlite_db.expire_all()
        assert sqlite_db.get(CheckoutSession, session.id).intended_status == ConsentStatus.SUBSCRIBED

    def test_redelivered_toggle_is_recorded_once(self, sqlite_db, synchronizers):
        session = open_session(sqlite_db)

        first = toggle(sqlite_db, session.id, ConsentStatus.UNSUBSCRIBED, occurred_at=T0)
        again = toggle(sqlite_db, session.id, ConsentStatus.UNSUBSCRIBED, occurred_at=T0)

        assert again.event_id == first.event_id
        assert sqlite_db.query(ConsentEvent).filter(ConsentEvent.session_id == session.id).count() == 1

    def test_late_arriving_older_toggle_does_not_win(self, sqlite_db, synchronizers):
        session = open_session(sqlite_db)

        toggle(sqlite_db, session.id, ConsentStatus.UNSUBSCRIBED, occurred_at=T0 + timedelta(seconds=10))
        toggle(sqlite_db, session.id, ConsentStatus.SUBSCRIBED, occurred_at=T0)

        assert consent_store.latest_toggle(sqlite_db, session.id).status == ConsentStatus.UNSUBSCRIBED
        complete_order(sqlite_db, session.id, occurred_at=T0 + timedelta(minutes=1))
        assert stored_customer(sqlite_db).status == ConsentStatus.UNSUBSCRIBED

    def test_anonymous_toggles_are_linked_to_the_buyer(self, sqlite_db, synchronizers):
        session = open_session(sqlite_db)
        toggle(sqlite_db, session.id, ConsentStatus.SUBSCRIBED)

        result = complete_order(sqlite_db, session.id)

        sqlite_db.expire_all()
        events = sqlite_db.query(ConsentEvent).filter(ConsentEvent.session_id == session.id).all()
        assert {e.customer_id for e in events} == {result.customer_id}
        linked = sqlite_db.get(CheckoutSession, session.id)
        assert linked.order_id == "5001"
        assert linked.resolved_subscribed is True


class TestProfileSeedThenOrder:
    def test_seed_without_timestamp_does_not_block_checkout(self, sqlite_db, synchronizers):
        session = open_session(sqlite_db)
        seeded = reconcile(sqlite_db, ConsentSignal(
            type=ConsentEventType.PROFILE_UPDATE,
            shop=SHOP,
            platform_customer_id="1001",
            email="buyer@example.com",
            status=ConsentStatus.NOT_SUBSCRIBED,
        ))
        assert seeded.status == ConsentStatus.NOT_SUBSCRIBED
        assert stored_customer(sqlite_db).last_consent_at is None

        result = complete_order(sqlite_db, session.id, occurred_at=datetime.now(timezone.utc) - timedelta(seconds=5))

        assert result.outcome == ReconciliationOutcome.APPLIED
        customer = stored_customer(sqlite_db)
        assert customer.status == ConsentStatus.SUBSCRIBED
        assert customer.last_consent_source == "checkout_completed"
        synchronizers.sync.assert_called_once()

    def test_seed_with_consent_timestamp_takes_part_in_ordering(self, sqlite_db, synchronizers):
        reconcile(sqlite_db, ConsentSignal(
            type=ConsentEventType.PROFILE_UPDATE,
            shop=SHOP,
            platform_customer_id="1001",
            status=ConsentStatus.UNSUBSCRIBED,
            occurred_at=T0,
        ))
        session = open_session(sqlite_db)

        result = complete_order(sqlite_db, session.id, occurred_at=T0 - timedelta(days=1))

        assert result.outcome == ReconciliationOutcome.STALE
        assert stored_customer(sqlite_db).status == ConsentStatus.UNSUBSCRIBED


class TestPruning:
    def test_abandoned_sessions_and_their_events_are_deleted(self, sqlite_db, synchronizers):
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        old = now - timedelta(days=90)
        abandoned = open_session(sqlite_db, token="tok-abandoned")
        ordered = open_session(sqlite_db, token="tok-ordered")
        recent = open_session(sqlite_db, token="tok-recent")
        for s, created in ((abandoned, old), (ordered, old), (recent, now - timedelta(days=1))):
            s.created_at = created
        sqlite_db.commit()

        toggle(sqlite_db, abandoned.id, ConsentStatus.SUBSCRIBED)
        toggle(sqlite_db, ordered.id, ConsentStatus.SUBSCRIBED)
        complete_order(sqlite_db, ordered.id)
        abandoned_id, ordered_id, recent_id = abandoned.id, ordered.id, recent.id

        stats = prune_abandoned_sessions(sqlite_db, days=30, batch_size=1, now=now)

        assert stats == {"scanned": 1, "sessions_deleted": 1, "events_deleted": 1}
        sqlite_db.expire_all()
        remaining = {s.id for s in sqlite_db.query(CheckoutSession).all()}
        assert remaining == {ordered_id, recent_id}
        assert sqlite_db.query(ConsentEvent).filter(ConsentEvent.session_id == abandoned_id).count() == 0

    def test_dry_run_deletes_nothing(self, sqlite_db, synchronizers):
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        session = open_session(sqlite_db)
        session.created_at = now - timedelta(days=90)
        sqlite_db.commit()
        toggle(sqlite_db, session.id, ConsentStatus.SUBSCRIBED)

        stats = prune_abandoned_sessions(sqlite_db, days=30, dry_run=True, now=now)

        assert stats == {"scanned": 1, "sessions_deleted": 1, "events_deleted": 1}
        assert sqlite_db.query(CheckoutSession).count() == 1
