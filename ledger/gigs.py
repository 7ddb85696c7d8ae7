"""
Gig lifecycle state machine.

The gig price is escrowed from the requester when the gig is posted and then
leaves escrow exactly once: paid out to the deliverer (net of the platform
fee) on completion, or refunded to the requester on deletion or expiry.
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .accounts import AccountService
from .models import (
    Gig,
    GigStatus,
    GigUser,
    GigUpdate,
    CreateGigRequest,
    GigCreateResponse,
    TransactionType,
    SweepResult,
    to_money,
)
from .service import (
    LedgerService,
    LedgerServiceError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
    positive_money,
)
from .storage import InMemoryStorage, USERS, GIGS

logger = logging.getLogger(__name__)


GIG_TRANSITIONS: dict[GigStatus, frozenset] = {
    GigStatus.OPEN: frozenset({GigStatus.ACCEPTED, GigStatus.EXPIRED}),
    GigStatus.ACCEPTED: frozenset({GigStatus.COMPLETED}),
    GigStatus.COMPLETED: frozenset(),
    GigStatus.EXPIRED: frozenset(),
}

EDITABLE_WHILE_OPEN = ("parcel_info", "pickup_block", "destination_block", "note", "size", "is_urgent")


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def _as_utc(value: datetime) -> datetime:
    # Naive deadlines are interpreted as UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class GigService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        accounts: AccountService,
        fee_provider: Callable[[], Decimal],
    ):
        self.storage = storage
        self.ledger = ledger
        self.accounts = accounts
        self.fee_provider = fee_provider

    def add_gig(self, actor_id: Optional[str], request: CreateGigRequest) -> GigCreateResponse:
        """Post a gig, escrowing its price. Declines instead of raising."""
        if not actor_id:
            return GigCreateResponse(success=False, auth_required=True, message="Sign in to post a gig")

        try:
            price = positive_money(request.price)
            with self.storage.transaction():
                requester = self.accounts.require_actor(actor_id)
                if to_money(requester["wallet_balance"]) < price:
                    raise InsufficientFundsError("Insufficient wallet balance")
                gig_data = {
                    "id": self.storage.new_id(),
                    "requester": GigUser.from_user(requester).model_dump(),
                    "deliverer": None,
                    "parcel_info": request.parcel_info,
                    "pickup_block": request.pickup_block,
                    "destination_block": request.destination_block,
                    "price": price,
                    "delivery_deadline": _as_utc(request.delivery_deadline),
                    "posted_at": self.ledger.clock(),
                    "status": GigStatus.OPEN,
                    "otp": generate_otp(),
                    "note": request.note,
                    "size": request.size,
                    "is_urgent": request.is_urgent,
                }
                self.storage.put(GIGS, gig_data)
                entry = self.ledger.debit(
                    requester["id"], price, f"Gig created: {request.parcel_info}", related_gig_id=gig_data["id"],
                )
        except UnauthenticatedError as e:
            return GigCreateResponse(success=False, auth_required=True, message=str(e))
        except LedgerServiceError as e:
            logger.warning(f"Gig declined for {actor_id}: {e}")
            return GigCreateResponse(success=False, message=str(e))

        logger.info(f"Gig {gig_data['id']} posted by {actor_id} for {price}")
        return GigCreateResponse(success=True, gig=Gig(**gig_data), transaction=entry, message="Gig posted")

    def delete_gig(self, gig_id: str, actor_id: Optional[str] = None) -> None:
        """Remove an OPEN gig and refund its price. ``actor_id`` None means a trusted caller."""
        with self.storage.transaction():
            gig = self.require_gig(gig_id)
            if actor_id is not None:
                self._require_owner_or_admin(gig, actor_id)
            if gig["status"] != GigStatus.OPEN:
                logger.warning(f"Attempted to delete gig {gig_id} in {gig['status'].value} state")
                raise InvalidStateTransitionError(f"Cannot delete a gig in {gig['status'].value} state")
            self.ledger.credit(
                gig["requester"]["id"], gig["price"], f"Refund for deleted gig: {gig['parcel_info']}",
                related_gig_id=gig_id,
            )
            self.storage.delete(GIGS, gig_id)
        logger.info(f"Gig {gig_id} deleted and {gig['price']} refunded")

    def accept_gig(self, gig_id: str, actor_id: Optional[str], acceptance_selfie_url: Optional[str] = None) -> Gig:
        with self.storage.transaction():
            deliverer = self.accounts.require_actor(actor_id)
            gig = self.require_gig(gig_id)
            self._check_transition(gig, GigStatus.ACCEPTED)
            if gig["requester"]["id"] == deliverer["id"]:
                raise InvalidStateTransitionError("You cannot accept your own gig")
            gig = self.storage.update(GIGS, gig_id, {
                "status": GigStatus.ACCEPTED,
                "deliverer": GigUser.from_user(deliverer).model_dump(),
                "acceptance_selfie_url": acceptance_selfie_url,
            })
        logger.info(f"Gig {gig_id} accepted by {deliverer['id']}")
        return Gig(**gig)

    def complete_gig(self, gig_id: str, actor_id: Optional[str] = None) -> Gig:
        """Pay the deliverer net of the platform fee. Repeated calls are no-ops."""
        with self.storage.transaction():
            gig = self.require_gig(gig_id)
            if actor_id is not None:
                self._require_owner_or_admin(gig, actor_id)
            if gig["status"] == GigStatus.COMPLETED:
                logger.info(f"Gig {gig_id} already completed; ignoring")
                return Gig(**gig)
            if not gig.get("deliverer"):
                raise InvalidStateTransitionError(f"Gig {gig_id} has no deliverer")
            self._check_transition(gig, GigStatus.COMPLETED)

            price = to_money(gig["price"])
            fee_rate = Decimal(str(self.fee_provider()))
            payout = to_money(price * (1 - fee_rate))
            deliverer_id = gig["deliverer"]["id"]

            self.ledger.credit(
                deliverer_id, payout, f"Payout for gig: {gig['parcel_info']}",
                entry_type=TransactionType.PAYOUT, related_gig_id=gig_id,
            )
            deliverer = self.ledger.require_user(deliverer_id)
            self.storage.update(USERS, deliverer_id, {
                "deliveries_completed": deliverer["deliveries_completed"] + 1,
            })
            gig = self.storage.update(GIGS, gig_id, {
                "status": GigStatus.COMPLETED,
                "completed_at": self.ledger.clock(),
                "platform_fee_rate": fee_rate,
                "platform_fee_amount": price - payout,
            })
        logger.info(f"Gig {gig_id} completed; paid {payout} to {deliverer_id}")
        return Gig(**gig)

    def submit_feedback(self, gig_id: str, actor_id: Optional[str], rating: int, comments: Optional[str] = None) -> Gig:
        """Attach write-once feedback from either party of a completed gig."""
        with self.storage.transaction():
            actor = self.accounts.require_actor(actor_id)
            gig = self.require_gig(gig_id)
            if gig["status"] != GigStatus.COMPLETED:
                raise InvalidStateTransitionError("Feedback can only be left on completed gigs")
            if actor["id"] == gig["requester"]["id"]:
                # Requester rates the deliverer
                rating_field, comments_field = "deliverer_rating", "deliverer_comments"
            elif gig.get("deliverer") and actor["id"] == gig["deliverer"]["id"]:
                rating_field, comments_field = "requester_rating", "requester_comments"
            else:
                raise PermissionDeniedError("Only the requester or deliverer can leave feedback")
            if gig.get(rating_field) is not None:
                raise InvalidStateTransitionError("Feedback has already been submitted")
            gig = self.storage.update(GIGS, gig_id, {rating_field: rating, comments_field: comments})
        return Gig(**gig)

    def update_gig(self, gig_id: str, updates: GigUpdate, actor_id: Optional[str] = None) -> Gig:
        """Route a partial update to the transition each field belongs to."""
        fields = updates.model_dump(exclude_unset=True)
        status = fields.pop("status", None)
        selfie = fields.pop("acceptance_selfie_url", None)
        rating = fields.pop("rating", None)
        comments = fields.pop("comments", None)

        with self.storage.transaction():
            gig = self.require_gig(gig_id)
            if fields:
                if actor_id is not None:
                    self._require_owner_or_admin(gig, actor_id)
                if gig["status"] != GigStatus.OPEN:
                    raise InvalidStateTransitionError("Gig details can only be edited while OPEN")
                self.storage.update(GIGS, gig_id, fields)

            if status == GigStatus.ACCEPTED:
                self.accept_gig(gig_id, actor_id, acceptance_selfie_url=selfie)
            elif status == GigStatus.COMPLETED:
                self.complete_gig(gig_id, actor_id)
            elif status is not None and status != gig["status"]:
                raise InvalidStateTransitionError(f"Gigs cannot be moved to {status.value} directly")

            if rating is not None:
                self.submit_feedback(gig_id, actor_id, rating, comments)

            return Gig(**self.require_gig(gig_id))

    def expire_overdue(self, now: datetime) -> SweepResult:
        """Expire every OPEN gig whose deadline is strictly before ``now`` and refund it."""
        expired_ids: list[str] = []
        refunded = Decimal("0.00")
        with self.storage.transaction():
            overdue = self.storage.find(
                GIGS,
                lambda g: g["status"] == GigStatus.OPEN and _as_utc(g["delivery_deadline"]) < now,
            )
            for gig in overdue:
                self._check_transition(gig, GigStatus.EXPIRED)
                self.storage.update(GIGS, gig["id"], {"status": GigStatus.EXPIRED})
                self.ledger.credit(
                    gig["requester"]["id"], gig["price"], f"Refund for expired gig: {gig['parcel_info']}",
                    related_gig_id=gig["id"],
                )
                expired_ids.append(gig["id"])
                refunded += to_money(gig["price"])
        if expired_ids:
            logger.info(f"Expired {len(expired_ids)} gigs, refunded {refunded}")
        return SweepResult(swept_at=now, expired_gig_ids=expired_ids, refunded_total=refunded)

    # ----- Queries -----

    def require_gig(self, gig_id: str) -> dict:
        gig = self.storage.get(GIGS, gig_id)
        if not gig:
            raise NotFoundError(f"Gig {gig_id} not found")
        return gig

    def get_gig(self, gig_id: str) -> Gig:
        return Gig(**self.require_gig(gig_id))

    def list_gigs(self, status: Optional[GigStatus] = None) -> list[Gig]:
        gigs = [Gig(**g) for g in self.storage.find(GIGS) if status is None or g["status"] == status]
        gigs.sort(key=lambda g: g.posted_at, reverse=True)
        return gigs

    def list_user_gigs(self, user_id: str) -> list[Gig]:
        gigs = [
            Gig(**g) for g in self.storage.find(GIGS)
            if g["requester"]["id"] == user_id or (g.get("deliverer") and g["deliverer"]["id"] == user_id)
        ]
        gigs.sort(key=lambda g: g.posted_at, reverse=True)
        return gigs

    def visible_to(self, gig: Gig, actor_id: Optional[str]) -> Gig:
        """Hide the delivery OTP from everyone but the requester and administrators."""
        if actor_id:
            if actor_id == gig.requester.id:
                return gig
            actor = self.storage.get(USERS, actor_id)
            if actor and actor.get("is_admin"):
                return gig
        return gig.model_copy(update={"otp": None})

    def _check_transition(self, gig: dict, target: GigStatus) -> None:
        if target not in GIG_TRANSITIONS[gig["status"]]:
            raise InvalidStateTransitionError(
                f"Cannot move gig {gig['id']} from {gig['status'].value} to {target.value}"
            )

    def _require_owner_or_admin(self, gig: dict, actor_id: str) -> None:
        actor = self.accounts.require_actor(actor_id)
        if actor["id"] != gig["requester"]["id"] and not actor.get("is_admin"):
            raise PermissionDeniedError("Only the requester or an administrator can do this")
