"""Consensus and quorum engine for blind investment-committee rounds.

Everything here is a pure function over plain values so the visibility and
aggregation rules can be tested without a database.

Visibility
----------
A round is *revealed* once ``revealed_at`` is set or its status is
``closed``.  Until then a reader sees only their own ballot; every other
ballot keeps its slot in the list but loses its value, comment and voter.

Aggregation
-----------
Ballots map to ``strong_yes=+2 … strong_no=-2``.  Consensus is ``positive``
when at least 70% of ballots are yes/strong_yes, ``negative`` when at least
70% are no/strong_no, ``neutral`` when at least half are neutral, otherwise
``mixed``.  Quorum is advisory and never blocks a reveal or close.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

from dealflow.errors import InvalidRequest, PermissionDenied
from dealflow.utils import as_utc, round_half_up

VOTE_VALUES: dict[str, int] = {
    "strong_yes": 2,
    "yes": 1,
    "neutral": 0,
    "no": -1,
    "strong_no": -2,
}

VOTE_LABELS: dict[str, str] = {
    "strong_yes": "Strong Yes",
    "yes": "Yes",
    "neutral": "Neutral",
    "no": "No",
    "strong_no": "Strong No",
}

ROUND_STATUSES = ("open", "closed", "cancelled")

CONSENSUS_THRESHOLD = 0.7
NEUTRAL_THRESHOLD = 0.5


@dataclass(frozen=True)
class Ballot:
    voter_id: int
    value: str
    comment: str | None = None
    voter_name: str | None = None


@dataclass
class Tally:
    distribution: dict[str, int]
    total: int
    average_score: float
    consensus: str

    def distribution_rows(self) -> list[dict[str, Any]]:
        return [
            {
                "vote": value,
                "label": VOTE_LABELS[value],
                "count": count,
                "percentage": int(round_half_up(count / self.total * 100)) if self.total else 0,
            }
            for value, count in self.distribution.items()
        ]


def is_revealed(status: str, revealed_at: datetime | None) -> bool:
    return revealed_at is not None or status == "closed"


def quorum_required(participant_count: int, quorum_percentage: int) -> int:
    """ceil(participants × pct / 100) in integer arithmetic."""
    return -(-participant_count * quorum_percentage // 100)


def quorum_met(votes_submitted: int, participant_count: int, quorum_percentage: int) -> bool:
    return votes_submitted >= quorum_required(participant_count, quorum_percentage)


def consensus_label(distribution: dict[str, int], total: int) -> str:
    if total <= 0:
        return "mixed"
    positive = distribution.get("strong_yes", 0) + distribution.get("yes", 0)
    negative = distribution.get("strong_no", 0) + distribution.get("no", 0)
    if positive / total >= CONSENSUS_THRESHOLD:
        return "positive"
    if negative / total >= CONSENSUS_THRESHOLD:
        return "negative"
    if distribution.get("neutral", 0) / total >= NEUTRAL_THRESHOLD:
        return "neutral"
    return "mixed"


def tally(values: Iterable[str]) -> Tally:
    counts = Counter(v for v in values if v in VOTE_VALUES)
    distribution = {v: counts.get(v, 0) for v in VOTE_VALUES}
    total = sum(distribution.values())
    score = sum(VOTE_VALUES[v] * n for v, n in distribution.items())
    average = round_half_up(score / total, 2) if total else 0
    return Tally(
        distribution=distribution,
        total=total,
        average_score=average,
        consensus=consensus_label(distribution, total),
    )


def mask_ballots(ballots: Sequence[Ballot], viewer_id: int, revealed: bool) -> list[dict[str, Any]]:
    """Ballots as the viewer may see them."""
    rows = []
    for b in ballots:
        own = b.voter_id == viewer_id
        if revealed or own:
            rows.append({
                "voter_id": b.voter_id, "voter_name": b.voter_name,
                "vote": b.value, "comment": b.comment, "is_own": own,
            })
        else:
            rows.append({
                "voter_id": None, "voter_name": None,
                "vote": None, "comment": None, "is_own": False,
            })
    return rows


def validate_vote_value(value: str) -> str:
    if value not in VOTE_VALUES:
        raise InvalidRequest(f"Invalid vote value {value!r}; expected one of {', '.join(VOTE_VALUES)}")
    return value


def check_ballot_accepted(
    status: str,
    deadline: datetime,
    participant_ids: Iterable[int],
    voter_id: int,
    now: datetime,
) -> None:
    """Raise if a ballot from *voter_id* may not be recorded right now."""
    if status != "open":
        raise InvalidRequest("Voting round is not open")
    if as_utc(deadline) < as_utc(now):
        raise InvalidRequest("Voting deadline has passed")
    if voter_id not in set(participant_ids):
        raise PermissionDenied("You are not a participant in this voting round")


def check_transition(status: str, revealed_at: datetime | None, action: str) -> None:
    """Raise if *action* (reveal, close, cancel) is not allowed from the current state."""
    if action == "reveal":
        if revealed_at is not None:
            raise InvalidRequest("Votes have already been revealed")
        if status == "cancelled":
            raise InvalidRequest("Cannot reveal a cancelled round")
        return
    if action in ("close", "cancel"):
        if status != "open":
            raise InvalidRequest(f"Cannot {action} a round that is {status}")
        return
    raise ValueError(f"Unknown round action: {action!r}")
