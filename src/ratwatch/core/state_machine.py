"""Watch state machine: pure transition logic.

``transition`` takes a watch, an event, and the current instant, and returns
either a ``Transition`` (the next status, the timestamp fields to persist, and
the side effects to run once the persist succeeds) or a ``Rejection``.
Nothing here touches storage or the network; callers persist the result with
a conditional update and then execute the side effects.

Transition table::

    pending  + deadline reached  -> voting         (now >= scheduled_at)
    pending  + check-in          -> cleared_early  (accused only, before deadline)
    pending  + cancel            -> cancelled      (initiator or moderator)
    voting   + vote cast         -> voting         (before voting_ended_at)
    voting   + deadline reached  -> guilty | not_guilty
    voting   + cancel            -> cancelled      (moderator only)
    terminal + anything          -> rejected
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from ratwatch.core.vote_ledger import decide_verdict
from ratwatch.models.watch import TERMINAL_STATUSES, VoteTally, Watch, WatchStatus

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    DEADLINE_REACHED = "deadline_reached"
    CHECK_IN = "check_in"
    CANCEL = "cancel"
    VOTE_CAST = "vote_cast"


class SideEffect(StrEnum):
    """Work the caller performs after a transition has been persisted."""

    VOTING_OPENED = "voting_opened"
    VERDICT_ANNOUNCED = "verdict_announced"
    GUILTY_RECORDED = "guilty_recorded"
    ACCUSED_NOTIFIED = "accused_notified"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"


class RejectionReason(StrEnum):
    TERMINAL = "terminal"
    WRONG_USER = "wrong_user"
    NOT_DUE = "not_due"
    INVALID_STATE = "invalid_state"
    VOTING_CLOSED = "voting_closed"


@dataclass(frozen=True)
class WatchEvent:
    """Something that happened to a watch."""

    kind: EventKind
    actor_user_id: int | None = None
    is_moderator: bool = False
    tally: VoteTally | None = None


def deadline_reached(tally: VoteTally | None = None) -> WatchEvent:
    """Deadline event. Finalizing a Voting watch requires the current tally."""
    return WatchEvent(kind=EventKind.DEADLINE_REACHED, tally=tally)


def check_in(user_id: int) -> WatchEvent:
    return WatchEvent(kind=EventKind.CHECK_IN, actor_user_id=user_id)


def cancel(user_id: int, *, is_moderator: bool = False) -> WatchEvent:
    return WatchEvent(kind=EventKind.CANCEL, actor_user_id=user_id, is_moderator=is_moderator)


def vote_cast(voter_user_id: int) -> WatchEvent:
    return WatchEvent(kind=EventKind.VOTE_CAST, actor_user_id=voter_user_id)


@dataclass(frozen=True)
class Transition:
    from_status: WatchStatus
    to_status: WatchStatus
    fields: dict[str, datetime] = field(default_factory=dict)
    side_effects: tuple[SideEffect, ...] = ()


@dataclass(frozen=True)
class Rejection:
    reason: RejectionReason
    message: str


TransitionResult = Transition | Rejection


def transition(
    watch: Watch,
    event: WatchEvent,
    now: datetime,
    voting_duration: timedelta = timedelta(minutes=5),
) -> TransitionResult:
    """Compute the result of applying *event* to *watch* at *now*."""
    status = WatchStatus(watch.status)

    if status in TERMINAL_STATUSES:
        logger.warning(
            "watch_event_rejected watch=%s status=%s event=%s",
            watch.id,
            status.value,
            event.kind.value,
        )
        return Rejection(
            RejectionReason.TERMINAL,
            f"This watch has already ended ({status.value.replace('_', ' ')}).",
        )

    if status == WatchStatus.PENDING:
        return _from_pending(watch, event, now, voting_duration)
    if status == WatchStatus.VOTING:
        return _from_voting(watch, event, now)

    msg = f"Unhandled watch status: {status}"
    raise ValueError(msg)


def _from_pending(
    watch: Watch,
    event: WatchEvent,
    now: datetime,
    voting_duration: timedelta,
) -> TransitionResult:
    if event.kind == EventKind.DEADLINE_REACHED:
        if now < watch.scheduled_at:
            return Rejection(RejectionReason.NOT_DUE, "The watch is not due yet.")
        return Transition(
            from_status=WatchStatus.PENDING,
            to_status=WatchStatus.VOTING,
            fields={
                "voting_started_at": now,
                "voting_ended_at": now + voting_duration,
            },
            side_effects=(SideEffect.VOTING_OPENED,),
        )

    if event.kind == EventKind.CHECK_IN:
        if event.actor_user_id != watch.accused_user_id:
            return Rejection(
                RejectionReason.WRONG_USER,
                "Only the accused user can check in on this watch.",
            )
        if now >= watch.scheduled_at:
            return Rejection(
                RejectionReason.INVALID_STATE,
                "Too late to check in: the deadline has already passed.",
            )
        return Transition(
            from_status=WatchStatus.PENDING,
            to_status=WatchStatus.CLEARED_EARLY,
            fields={"cleared_at": now},
            side_effects=(SideEffect.CHECKED_IN,),
        )

    if event.kind == EventKind.CANCEL:
        if not event.is_moderator and event.actor_user_id != watch.initiator_user_id:
            return Rejection(
                RejectionReason.WRONG_USER,
                "Only the person who started this watch or a moderator can cancel it.",
            )
        return Transition(
            from_status=WatchStatus.PENDING,
            to_status=WatchStatus.CANCELLED,
            side_effects=(SideEffect.CANCELLED,),
        )

    # EventKind.VOTE_CAST
    return Rejection(RejectionReason.INVALID_STATE, "Voting has not opened yet.")


def _from_voting(watch: Watch, event: WatchEvent, now: datetime) -> TransitionResult:
    closes_at = watch.voting_ended_at
    voting_closed = closes_at is None or now >= closes_at

    if event.kind == EventKind.VOTE_CAST:
        if voting_closed:
            return Rejection(RejectionReason.VOTING_CLOSED, "Voting on this watch has closed.")
        return Transition(from_status=WatchStatus.VOTING, to_status=WatchStatus.VOTING)

    if event.kind == EventKind.DEADLINE_REACHED:
        if not voting_closed:
            return Rejection(RejectionReason.NOT_DUE, "Voting is still open.")
        if event.tally is None:
            msg = "Finalizing a watch requires a vote tally"
            raise ValueError(msg)
        verdict = decide_verdict(event.tally)
        effects = [SideEffect.VERDICT_ANNOUNCED, SideEffect.ACCUSED_NOTIFIED]
        if verdict == WatchStatus.GUILTY:
            effects.append(SideEffect.GUILTY_RECORDED)
        return Transition(
            from_status=WatchStatus.VOTING,
            to_status=verdict,
            side_effects=tuple(effects),
        )

    if event.kind == EventKind.CANCEL:
        if not event.is_moderator:
            return Rejection(
                RejectionReason.WRONG_USER,
                "Only a moderator can cancel a watch once voting has opened.",
            )
        return Transition(
            from_status=WatchStatus.VOTING,
            to_status=WatchStatus.CANCELLED,
            side_effects=(SideEffect.CANCELLED,),
        )

    # EventKind.CHECK_IN
    return Rejection(
        RejectionReason.INVALID_STATE,
        "Too late to check in: voting has already opened.",
    )


def derive_side_effects(status: WatchStatus | str) -> tuple[SideEffect, ...]:
    """Side effects implied by a persisted status.

    Used to re-issue notifications for a watch whose transition was
    persisted but whose side effects may not have been delivered.
    """
    status = WatchStatus(status)
    if status == WatchStatus.VOTING:
        return (SideEffect.VOTING_OPENED,)
    if status == WatchStatus.GUILTY:
        return (
            SideEffect.VERDICT_ANNOUNCED,
            SideEffect.ACCUSED_NOTIFIED,
            SideEffect.GUILTY_RECORDED,
        )
    if status == WatchStatus.NOT_GUILTY:
        return (SideEffect.VERDICT_ANNOUNCED, SideEffect.ACCUSED_NOTIFIED)
    if status == WatchStatus.CLEARED_EARLY:
        return (SideEffect.CHECKED_IN,)
    if status == WatchStatus.CANCELLED:
        return (SideEffect.CANCELLED,)
    return ()
