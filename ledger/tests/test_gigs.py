"""
Unit Tests for the Gig Lifecycle

Tests cover:
1. Posting a gig with escrow
2. Deleting open gigs with refund
3. Acceptance and completion payouts
4. Idempotent completion
5. Expiry sweeps
6. Feedback and partial updates
"""

import asyncio
import threading

import pytest
from datetime import timedelta
from decimal import Decimal

from ledger.models import (
    CreateGigRequest,
    GigStatus,
    GigUpdate,
    TransactionType,
)
from ledger.service import (
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
)
from ledger.storage import USERS, GIGS, TRANSACTIONS
from ledger.sweeper import SWEEP_JOB_ID


def gig_request(clock, price="75", hours=2, parcel="Amazon parcel"):
    return CreateGigRequest(
        parcel_info=parcel,
        pickup_block="Main Gate",
        destination_block="Block A",
        price=Decimal(price),
        delivery_deadline=clock() + timedelta(hours=hours),
    )


def balance(platform, user_id) -> Decimal:
    return platform.storage.get(USERS, user_id)["wallet_balance"]


def gig_transactions(platform, gig_id):
    return platform.storage.find(TRANSACTIONS, lambda t: t["related_gig_id"] == gig_id)


class TestCreateGig:
    """Tests for posting gigs."""

    def test_create_gig_escrows_price(self, platform, make_user, clock):
        """Test that balance 250 minus a 75 gig leaves 175 with one DEBIT."""
        requester = make_user(balance="250")

        response = platform.add_gig(requester["id"], gig_request(clock))

        assert response.success is True
        assert response.gig.status == GigStatus.OPEN
        assert response.gig.price == Decimal("75.00")
        assert len(response.gig.otp) == 6 and response.gig.otp.isdigit()
        assert balance(platform, requester["id"]) == Decimal("175.00")

        entries = gig_transactions(platform, response.gig.id)
        assert len(entries) == 1
        assert entries[0]["type"] == TransactionType.DEBIT
        assert entries[0]["amount"] == Decimal("75.00")

    def test_create_gig_insufficient_balance_declines(self, platform, make_user, clock):
        """Test that a short wallet declines without raising or writing."""
        requester = make_user(balance="50")

        response = platform.add_gig(requester["id"], gig_request(clock))

        assert response.success is False
        assert response.gig is None
        assert balance(platform, requester["id"]) == Decimal("50.00")
        assert platform.storage.find(GIGS) == []

    def test_create_gig_without_actor_asks_for_auth(self, platform, clock):
        """Test that an anonymous caller gets a declined result flagged for sign-in."""
        response = platform.add_gig(None, gig_request(clock))

        assert response.success is False
        assert response.auth_required is True

    def test_requester_snapshot(self, platform, make_user, clock):
        """Test that the requester summary is captured at creation."""
        requester = make_user(name="Asha Verma", balance="100")

        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        assert gig.requester.id == requester["id"]
        assert gig.requester.name == "Asha Verma"
        assert gig.deliverer is None

    @pytest.mark.parametrize("price", ["0.004", "0.001"])
    def test_price_rounding_to_zero_declines(self, platform, make_user, clock, price):
        """Test that a price below half a cent is declined, not escrowed."""
        requester = make_user(balance="100")

        response = platform.add_gig(requester["id"], gig_request(clock, price=price))

        assert response.success is False
        assert response.auth_required is False
        assert balance(platform, requester["id"]) == Decimal("100.00")
        assert platform.storage.find(GIGS) == []

    def test_otp_hidden_from_everyone_but_requester(self, platform, make_user, admin, clock):
        """Test that only the requester and admins can read the delivery code."""
        requester = make_user(balance="100")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        assert platform.get_gig(requester["id"], gig.id).otp == gig.otp
        assert platform.get_gig(admin["id"], gig.id).otp == gig.otp
        assert platform.get_gig(None, gig.id).otp is None
        assert platform.accept_gig(deliverer["id"], gig.id).otp is None
        assert all(g.otp is None for g in platform.list_gigs(deliverer["id"], mine=True))


class TestDeleteGig:
    """Tests for deleting gigs."""

    def test_delete_open_gig_refunds(self, platform, make_user, clock):
        """Test that deleting an OPEN gig returns the full price."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        platform.delete_gig(requester["id"], gig.id)

        assert balance(platform, requester["id"]) == Decimal("250.00")
        assert platform.storage.get(GIGS, gig.id) is None
        refund = [t for t in gig_transactions(platform, gig.id) if t["type"] == TransactionType.CREDIT]
        assert len(refund) == 1
        assert refund[0]["amount"] == Decimal("75.00")

    def test_cannot_delete_accepted_gig(self, platform, make_user, clock):
        """Test that accepted gigs are not deletable."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig
        platform.accept_gig(deliverer["id"], gig.id)

        with pytest.raises(InvalidStateTransitionError):
            platform.delete_gig(requester["id"], gig.id)

        assert balance(platform, requester["id"]) == Decimal("175.00")
        assert platform.storage.get(GIGS, gig.id)["status"] == GigStatus.ACCEPTED

    def test_only_owner_or_admin_can_delete(self, platform, make_user, admin, clock):
        """Test deletion permissions."""
        requester = make_user(balance="250")
        stranger = make_user(name="Stranger")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        with pytest.raises(PermissionDeniedError):
            platform.delete_gig(stranger["id"], gig.id)

        platform.delete_gig(admin["id"], gig.id)
        assert balance(platform, requester["id"]) == Decimal("250.00")

    def test_delete_missing_gig(self, platform, make_user):
        """Test that deleting an unknown gig fails."""
        user = make_user()
        with pytest.raises(NotFoundError):
            platform.delete_gig(user["id"], "missing")


class TestAcceptAndComplete:
    """Tests for acceptance and completion payouts."""

    def test_accept_then_complete_pays_deliverer(self, platform, make_user, clock):
        """Test that a 75 gig at 20% fee pays 60 and bumps the delivery count."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Deliverer Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        accepted = platform.accept_gig(deliverer["id"], gig.id, acceptance_selfie_url="selfies/dave.jpg")
        assert accepted.status == GigStatus.ACCEPTED
        assert accepted.deliverer.id == deliverer["id"]
        # No money moves at acceptance
        assert balance(platform, deliverer["id"]) == Decimal("0.00")

        completed = platform.complete_gig(requester["id"], gig.id)

        assert completed.status == GigStatus.COMPLETED
        assert completed.platform_fee_rate == Decimal("0.2")
        assert completed.platform_fee_amount == Decimal("15.00")
        assert balance(platform, deliverer["id"]) == Decimal("60.00")
        assert platform.storage.get(USERS, deliverer["id"])["deliveries_completed"] == 1

        payouts = [t for t in gig_transactions(platform, gig.id) if t["type"] == TransactionType.PAYOUT]
        assert len(payouts) == 1
        assert payouts[0]["amount"] == Decimal("60.00")
        assert payouts[0]["user_id"] == deliverer["id"]

    def test_double_complete_is_noop(self, platform, make_user, clock):
        """Test that a repeated completion pays out only once."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig
        platform.accept_gig(deliverer["id"], gig.id)

        platform.complete_gig(requester["id"], gig.id)
        platform.complete_gig(requester["id"], gig.id)

        assert balance(platform, deliverer["id"]) == Decimal("60.00")
        assert platform.storage.get(USERS, deliverer["id"])["deliveries_completed"] == 1

    def test_complete_without_deliverer_fails(self, platform, make_user, clock):
        """Test that an OPEN gig cannot be completed."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        with pytest.raises(InvalidStateTransitionError):
            platform.complete_gig(requester["id"], gig.id)

    def test_deliverer_cannot_complete_own_delivery(self, platform, make_user, clock):
        """Test that only the requester or an admin marks completion."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig
        platform.accept_gig(deliverer["id"], gig.id)

        with pytest.raises(PermissionDeniedError):
            platform.complete_gig(deliverer["id"], gig.id)

    def test_cannot_accept_own_gig(self, platform, make_user, clock):
        """Test that a requester cannot deliver their own gig."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        with pytest.raises(InvalidStateTransitionError):
            platform.accept_gig(requester["id"], gig.id)

    def test_second_accept_loses(self, platform, make_user, clock):
        """Test that only one deliverer can win an OPEN gig."""
        requester = make_user(balance="250")
        first = make_user(name="First")
        second = make_user(name="Second")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        platform.accept_gig(first["id"], gig.id)
        with pytest.raises(InvalidStateTransitionError):
            platform.accept_gig(second["id"], gig.id)

        assert platform.gigs.get_gig(gig.id).deliverer.id == first["id"]

    def test_accept_after_delete_rejected(self, platform, make_user, clock):
        """Test that the loser of a delete/accept race observes the deletion."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        platform.delete_gig(requester["id"], gig.id)

        with pytest.raises(NotFoundError):
            platform.accept_gig(deliverer["id"], gig.id)

    @pytest.mark.parametrize("attempt", range(5))
    def test_concurrent_accept_and_delete(self, platform, make_user, clock, attempt):
        """Test that exactly one of a racing accept and delete wins."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig
        barrier = threading.Barrier(2)
        outcomes = {}

        def run(name, operation):
            barrier.wait()
            try:
                operation()
                outcomes[name] = "ok"
            except (InvalidStateTransitionError, NotFoundError) as e:
                outcomes[name] = e

        threads = [
            threading.Thread(target=run, args=("accept", lambda: platform.accept_gig(deliverer["id"], gig.id))),
            threading.Thread(target=run, args=("delete", lambda: platform.delete_gig(requester["id"], gig.id))),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert sorted(outcomes) == ["accept", "delete"]
        assert [v for v in outcomes.values() if v == "ok"] == ["ok"]
        stored = platform.storage.get(GIGS, gig.id)
        if outcomes["accept"] == "ok":
            assert stored["status"] == GigStatus.ACCEPTED
            assert balance(platform, requester["id"]) == Decimal("175.00")
        else:
            assert stored is None
            assert balance(platform, requester["id"]) == Decimal("250.00")
        assert platform.ledger.ledger_balance(requester["id"]) == balance(platform, requester["id"])

    def test_accept_requires_sign_in(self, platform, make_user, clock):
        """Test that anonymous acceptance is refused."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        with pytest.raises(UnauthenticatedError):
            platform.accept_gig(None, gig.id)

    def test_fee_in_effect_at_completion_applies(self, platform, make_user, admin, clock):
        """Test that fee changes after posting affect the payout."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock, price="50")).gig
        platform.accept_gig(deliverer["id"], gig.id)

        platform.set_platform_fee(admin["id"], Decimal("0.1"))
        completed = platform.complete_gig(requester["id"], gig.id)

        assert balance(platform, deliverer["id"]) == Decimal("45.00")
        assert completed.platform_fee_amount + Decimal("45.00") == completed.price

    def test_payout_plus_fee_equals_price_with_rounding(self, platform, make_user, admin, clock):
        """Test conservation when the fee split is not a whole cent."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock, price="33.33")).gig
        platform.accept_gig(deliverer["id"], gig.id)
        platform.set_platform_fee(admin["id"], Decimal("0.15"))

        completed = platform.complete_gig(requester["id"], gig.id)

        payout = balance(platform, deliverer["id"])
        assert payout + completed.platform_fee_amount == Decimal("33.33")


class TestExpirySweep:
    """Tests for expiring overdue OPEN gigs."""

    def test_scheduler_start_and_shutdown(self, platform):
        """Test that the interval job is registered once and removed on shutdown."""
        async def scenario():
            platform.sweeper.start()
            platform.sweeper.start()
            jobs = platform.sweeper.scheduler.get_jobs()
            platform.sweeper.shutdown()
            return jobs

        jobs = asyncio.run(scenario())

        assert [job.id for job in jobs] == [SWEEP_JOB_ID]
        assert jobs[0].func == platform.sweeper.sweep
        assert platform.sweeper.scheduler is None

    def test_overdue_open_gig_expires_and_refunds(self, platform, make_user, clock):
        """Test that passing the deadline expires and refunds."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock, hours=1)).gig

        clock.advance(hours=1, seconds=1)
        result = platform.sweep_expired_gigs()

        assert result.expired_gig_ids == [gig.id]
        assert result.refunded_total == Decimal("75.00")
        assert platform.gigs.get_gig(gig.id).status == GigStatus.EXPIRED
        assert balance(platform, requester["id"]) == Decimal("250.00")

    def test_gig_at_exact_deadline_not_expired(self, platform, make_user, clock):
        """Test that deadline == now is still live."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock, hours=1)).gig

        clock.advance(hours=1)
        result = platform.sweep_expired_gigs()

        assert result.expired_gig_ids == []
        assert platform.gigs.get_gig(gig.id).status == GigStatus.OPEN

    def test_accepted_gigs_never_expire(self, platform, make_user, clock):
        """Test that only OPEN gigs are swept."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock, hours=1)).gig
        platform.accept_gig(deliverer["id"], gig.id)

        clock.advance(days=3)
        platform.sweep_expired_gigs()

        assert platform.gigs.get_gig(gig.id).status == GigStatus.ACCEPTED
        assert balance(platform, requester["id"]) == Decimal("175.00")

    def test_sweep_is_idempotent(self, platform, make_user, clock):
        """Test that a second sweep refunds nothing."""
        requester = make_user(balance="250")
        platform.add_gig(requester["id"], gig_request(clock, hours=1))
        platform.add_gig(requester["id"], gig_request(clock, price="25", hours=1))

        clock.advance(hours=2)
        first = platform.sweep_expired_gigs()
        second = platform.sweep_expired_gigs()

        assert len(first.expired_gig_ids) == 2
        assert second.expired_gig_ids == []
        assert balance(platform, requester["id"]) == Decimal("250.00")

    def test_sweep_notifies_once(self, platform, make_user, clock):
        """Test that one sweep produces one gigs notification."""
        requester = make_user(balance="250")
        platform.add_gig(requester["id"], gig_request(clock, hours=1))
        platform.add_gig(requester["id"], gig_request(clock, price="25", hours=1))
        notifications = []
        platform.storage.subscribe(lambda name, docs: notifications.append(name))

        clock.advance(hours=2)
        platform.sweep_expired_gigs()

        assert notifications.count(GIGS) == 1

    def test_expired_gig_cannot_be_deleted(self, platform, make_user, clock):
        """Test that an expired gig is never refunded twice."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock, hours=1)).gig
        clock.advance(hours=2)
        platform.sweep_expired_gigs()

        with pytest.raises(InvalidStateTransitionError):
            platform.delete_gig(requester["id"], gig.id)

        assert balance(platform, requester["id"]) == Decimal("250.00")


class TestFeedbackAndUpdates:
    """Tests for feedback and the partial update dispatcher."""

    def _completed_gig(self, platform, make_user, clock):
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig
        platform.accept_gig(deliverer["id"], gig.id)
        platform.complete_gig(requester["id"], gig.id)
        return requester, deliverer, gig

    def test_feedback_is_write_once(self, platform, make_user, clock):
        """Test that each side rates once after completion."""
        requester, deliverer, gig = self._completed_gig(platform, make_user, clock)

        rated = platform.submit_feedback(requester["id"], gig.id, 5, "Super fast delivery!")
        assert rated.deliverer_rating == 5
        assert rated.deliverer_comments == "Super fast delivery!"

        rated = platform.submit_feedback(deliverer["id"], gig.id, 4)
        assert rated.requester_rating == 4

        with pytest.raises(InvalidStateTransitionError):
            platform.submit_feedback(requester["id"], gig.id, 1)

    def test_feedback_before_completion_rejected(self, platform, make_user, clock):
        """Test that open gigs cannot be rated."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        with pytest.raises(InvalidStateTransitionError):
            platform.submit_feedback(requester["id"], gig.id, 5)

    def test_update_routes_status_to_transitions(self, platform, make_user, clock):
        """Test that a status patch runs the matching transition with its ledger effect."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        platform.update_gig(deliverer["id"], gig.id, GigUpdate(status=GigStatus.ACCEPTED))
        updated = platform.update_gig(requester["id"], gig.id, GigUpdate(status=GigStatus.COMPLETED))

        assert updated.status == GigStatus.COMPLETED
        assert balance(platform, deliverer["id"]) == Decimal("60.00")

    def test_update_cannot_force_expiry(self, platform, make_user, clock):
        """Test that EXPIRED is reserved for the sweeper."""
        requester = make_user(balance="250")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        with pytest.raises(InvalidStateTransitionError):
            platform.update_gig(requester["id"], gig.id, GigUpdate(status=GigStatus.EXPIRED))

        assert balance(platform, requester["id"]) == Decimal("175.00")

    def test_edit_details_only_while_open(self, platform, make_user, clock):
        """Test that descriptive fields are editable until accepted."""
        requester = make_user(balance="250")
        deliverer = make_user(name="Dave")
        gig = platform.add_gig(requester["id"], gig_request(clock)).gig

        edited = platform.update_gig(requester["id"], gig.id, GigUpdate(note="Leave at reception"))
        assert edited.note == "Leave at reception"

        platform.accept_gig(deliverer["id"], gig.id)
        with pytest.raises(InvalidStateTransitionError):
            platform.update_gig(requester["id"], gig.id, GigUpdate(note="Changed my mind"))

    def test_price_is_not_patchable(self):
        """Test that price is not part of the update shape."""
        with pytest.raises(ValueError):
            GigUpdate(price=Decimal("1"))


class TestConservation:
    """Tests that escrow always leaves through exactly one path."""

    def test_every_gig_nets_to_zero(self, platform, make_user, clock):
        """Test DEBIT equals refund or payout+fee for each terminal gig."""
        requester = make_user(balance="500")
        deliverer = make_user(name="Dave")
        completed = platform.add_gig(requester["id"], gig_request(clock, price="80")).gig
        deleted = platform.add_gig(requester["id"], gig_request(clock, price="40")).gig
        expired = platform.add_gig(requester["id"], gig_request(clock, price="30", hours=1)).gig

        platform.accept_gig(deliverer["id"], completed.id)
        platform.complete_gig(requester["id"], completed.id)
        platform.delete_gig(requester["id"], deleted.id)
        clock.advance(hours=2)
        platform.sweep_expired_gigs()

        for gig_id in (deleted.id, expired.id):
            entries = gig_transactions(platform, gig_id)
            assert sorted(t["type"] for t in entries) == [TransactionType.CREDIT, TransactionType.DEBIT]
            assert entries[0]["amount"] == entries[1]["amount"]

        entries = gig_transactions(platform, completed.id)
        assert sorted(t["type"] for t in entries) == [TransactionType.DEBIT, TransactionType.PAYOUT]
        payout = next(t["amount"] for t in entries if t["type"] == TransactionType.PAYOUT)
        fee = platform.gigs.get_gig(completed.id).platform_fee_amount
        assert payout + fee == Decimal("80.00")

        report = platform.admin.revenue_report()
        assert report.platform_revenue == fee
        assert platform.ledger.ledger_balance(requester["id"]) == balance(platform, requester["id"])
        assert balance(platform, requester["id"]) == Decimal("420.00")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
