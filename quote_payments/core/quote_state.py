"""
Quote status state machine.

Every quote mutation goes through ``QuoteStateMachine.modify``: read the
current version, apply the change to a copy, write it back only if the
version is unchanged. On a version conflict the change is re-derived from a
fresh read, so re-validation decides whether the losing writer still has a
legal move.
"""
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional, Tuple

import structlog

from quote_payments.monitoring.metrics import metrics

from .errors import (
    ActorNotPermitted,
    ConcurrencyConflict,
    InvalidStatusTransition,
    QuoteExpired,
    QuoteNotFound,
)
from .models import ActorContext, ActorRole, Quote, QuoteStatus, utcnow
from .ports import QuoteRepository

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
QuoteMutation = Callable[[Quote], Optional[Quote]]

ALLOWED_TRANSITIONS: Dict[QuoteStatus, FrozenSet[QuoteStatus]] = {
    QuoteStatus.DRAFT: frozenset({QuoteStatus.SENT, QuoteStatus.CANCELLED}),
    QuoteStatus.SENT: frozenset(
        {
            QuoteStatus.VIEWED,
            QuoteStatus.ACCEPTED,
            QuoteStatus.REJECTED,
            QuoteStatus.EXPIRED,
            QuoteStatus.CANCELLED,
        }
    ),
    QuoteStatus.VIEWED: frozenset(
        {
            QuoteStatus.ACCEPTED,
            QuoteStatus.REJECTED,
            QuoteStatus.EXPIRED,
            QuoteStatus.CANCELLED,
        }
    ),
    QuoteStatus.ACCEPTED: frozenset(),
    QuoteStatus.REJECTED: frozenset(),
    QuoteStatus.EXPIRED: frozenset(),
    QuoteStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Who may move a quote into each target status (system may do anything).
_TARGET_ROLES: Dict[QuoteStatus, FrozenSet[ActorRole]] = {
    QuoteStatus.SENT: frozenset({ActorRole.PROVIDER}),
    QuoteStatus.CANCELLED: frozenset({ActorRole.PROVIDER}),
    QuoteStatus.VIEWED: frozenset({ActorRole.CLIENT}),
    QuoteStatus.ACCEPTED: frozenset({ActorRole.CLIENT}),
    QuoteStatus.REJECTED: frozenset({ActorRole.CLIENT}),
    QuoteStatus.EXPIRED: frozenset({ActorRole.PROVIDER}),
}


def can_transition(current: QuoteStatus, target: QuoteStatus) -> bool:
    """Check whether ``current -> target`` is an allowed edge."""
    return target in ALLOWED_TRANSITIONS[current]


def authorize(quote: Quote, actor: ActorContext, target: QuoteStatus) -> None:
    """
    Check that the actor owns the side of the quote the transition belongs to.

    Raises:
        ActorNotPermitted: If the role or ownership does not match
    """
    if actor.role == ActorRole.SYSTEM:
        return

    allowed_roles = _TARGET_ROLES.get(target, frozenset())
    owner_id = quote.provider_id if actor.role == ActorRole.PROVIDER else quote.client_id
    if actor.role not in allowed_roles or actor.actor_id != owner_id:
        raise ActorNotPermitted(
            f"{actor.role.value} {actor.actor_id} may not move quote to {target.value}",
            quote_id=quote.id,
            target=target.value,
        )


def apply_status(quote: Quote, target: QuoteStatus, now: datetime) -> Quote:
    """Set the status and its timestamp on ``quote`` (in place) and return it."""
    quote.status = target
    quote.updated_at = now
    if target == QuoteStatus.SENT:
        quote.sent_at = now
    elif target == QuoteStatus.VIEWED:
        quote.viewed_at = now
    elif target == QuoteStatus.ACCEPTED:
        quote.accepted_at = now
    elif target == QuoteStatus.REJECTED:
        quote.rejected_at = now
    elif target == QuoteStatus.CANCELLED:
        quote.cancelled_at = now
    elif target == QuoteStatus.EXPIRED:
        quote.expired_at = now
    return quote


class QuoteStateMachine:
    """
    Guards quote status transitions and serialises quote writes.

    Features:
    - Edge validation against ALLOWED_TRANSITIONS
    - Deadline guards (expire only after, accept/reject only before)
    - Role and ownership checks
    - Optimistic compare-and-set with bounded re-reads
    """

    def __init__(
        self,
        quotes: QuoteRepository,
        clock: Clock = utcnow,
        max_conflict_retries: int = 5,
    ):
        """
        Initialize state machine.

        Args:
            quotes: Quote repository
            clock: Source of the current time
            max_conflict_retries: Re-reads allowed after version conflicts
        """
        self.quotes = quotes
        self.clock = clock
        self.max_conflict_retries = max_conflict_retries

    async def load(self, quote_id: int) -> Quote:
        """
        Fetch a quote or fail.

        Raises:
            QuoteNotFound: If the quote does not exist
        """
        quote = await self.quotes.get(quote_id)
        if quote is None:
            raise QuoteNotFound(f"Quote {quote_id} not found", quote_id=quote_id)
        return quote

    async def modify(self, quote_id: int, mutate: QuoteMutation) -> Tuple[Quote, bool]:
        """
        Apply ``mutate`` to the latest version of a quote atomically.

        ``mutate`` receives a private copy and returns the modified quote, or
        None to leave the quote untouched. It may raise to abort; nothing is
        written in that case.

        Args:
            quote_id: Quote to modify
            mutate: Pure function of the current quote

        Returns:
            Tuple[Quote, bool]: Stored quote and whether a write happened

        Raises:
            QuoteNotFound: If the quote does not exist
            ConcurrencyConflict: If every attempt lost the version race
        """
        for attempt in range(1, self.max_conflict_retries + 1):
            current = await self.load(quote_id)
            updated = mutate(current.model_copy(deep=True))
            if updated is None:
                return current, False

            try:
                saved = await self.quotes.save(updated, expected_version=current.version)
                return saved, True
            except ConcurrencyConflict:
                logger.info(
                    "quote_version_conflict",
                    quote_id=quote_id,
                    expected_version=current.version,
                    attempt=attempt,
                )

        raise ConcurrencyConflict(
            f"Quote {quote_id} is being modified concurrently, try again",
            quote_id=quote_id,
        )

    async def transition(
        self,
        quote_id: int,
        target: QuoteStatus,
        actor: ActorContext,
        reason: Optional[str] = None,
    ) -> Quote:
        """
        Move a quote to ``target``.

        Accepting or rejecting after the validity deadline stores the quote
        as expired instead and raises QuoteExpired.

        Args:
            quote_id: Quote to transition
            target: Desired status
            actor: Caller identity
            reason: Rejection reason, stored with a rejected quote

        Returns:
            Quote: Stored quote after the transition

        Raises:
            InvalidStatusTransition: If the edge or deadline guard fails
            QuoteExpired: If accept/reject arrived after the deadline
            ActorNotPermitted: If the actor may not make this move
        """
        now = self.clock()
        outcome: Dict[str, QuoteStatus] = {}

        def mutate(quote: Quote) -> Quote:
            outcome.clear()
            authorize(quote, actor, target)
            if not can_transition(quote.status, target):
                raise InvalidStatusTransition(quote.status.value, target.value)

            if target == QuoteStatus.EXPIRED and not quote.is_past_deadline(now):
                raise InvalidStatusTransition(
                    quote.status.value,
                    target.value,
                    reason="quote is still within its validity period",
                )

            source = quote.status
            if target in (QuoteStatus.ACCEPTED, QuoteStatus.REJECTED) and quote.is_past_deadline(now):
                outcome["from"], outcome["to"] = source, QuoteStatus.EXPIRED
                return apply_status(quote, QuoteStatus.EXPIRED, now)

            outcome["from"], outcome["to"] = source, target
            if target == QuoteStatus.REJECTED:
                quote.rejection_reason = reason
            return apply_status(quote, target, now)

        quote, _ = await self.modify(quote_id, mutate)
        metrics.record_quote_transition(outcome["from"].value, outcome["to"].value)

        if outcome["to"] != target:
            logger.warning(
                "quote_expired_on_action",
                quote_id=quote_id,
                attempted=target.value,
                valid_until=quote.valid_until.isoformat(),
            )
            raise QuoteExpired(quote_id)

        logger.info(
            "quote_status_changed",
            quote_id=quote_id,
            from_status=outcome["from"].value,
            to_status=target.value,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
        )
        return quote
