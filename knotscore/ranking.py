"""Ranking pipeline: attempts -> node rankings -> category scores -> leaderboards.

Everything here is a pure function of a ``Snapshot``; nothing is cached and
nothing touches the database. Rules:
- Node ranking: dense rank on best time (centiseconds, ascending), finishers only.
- Non-finishers take placement = group size (all of them, no trailing ranks).
- Category score: sum of placements and of tie-break times over counted nodes.
- Leaderboard: dense rank on (placement_sum, tie_break_sum), both ascending.
- Relay leaderboard: same, over relay nodes, ignoring ``counts_to_overall``.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, Literal, Optional, Sequence, TypeVar

Status = Literal["time", "fault", "incomplete", "missing"]

T = TypeVar("T")


@dataclass(frozen=True)
class Station:
    """A node as seen from one category (the category-node mapping plus node flags)."""

    category_code: str
    node_id: int
    sequence: int
    is_relay: bool = False
    counts_to_overall: bool = True


@dataclass(frozen=True)
class Entrant:
    competitor_id: int
    category_code: str


@dataclass(frozen=True)
class AttemptFact:
    competitor_id: int
    node_id: int
    result_kind: str
    centiseconds: Optional[int] = None


@dataclass(frozen=True)
class Snapshot:
    event_id: int
    stations: tuple[Station, ...]
    entrants: tuple[Entrant, ...]
    attempts: tuple[AttemptFact, ...]
    # category code -> display order; unknown codes sort after known ones by code
    category_order: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class AttemptBest:
    best_centiseconds: Optional[int]
    has_fault: bool
    has_any_attempt: bool

    @property
    def status(self) -> Status:
        if self.best_centiseconds is not None:
            return "time"
        if self.has_fault:
            return "fault"
        if self.has_any_attempt:
            return "incomplete"
        return "missing"


@dataclass(frozen=True)
class NodeRanking:
    event_id: int
    category_code: str
    node_id: int
    sequence: int
    competitor_id: int
    best_centiseconds: Optional[int]
    has_fault: bool
    has_any_attempt: bool
    status: Status
    time_rank: Optional[int]
    competitor_count: int
    placement: int
    tie_break_centiseconds: Optional[int]
    is_relay: bool
    counts_to_overall: bool


@dataclass(frozen=True)
class CategoryScore:
    event_id: int
    category_code: str
    competitor_id: int
    placement_sum: int
    tie_break_centiseconds_sum: int
    counted_nodes: int
    has_non_time: bool
    # None when the category has no counted node at all
    competitor_count: Optional[int]


@dataclass(frozen=True)
class LeaderboardEntry:
    event_id: int
    category_code: str
    competitor_id: int
    placement_sum: int
    tie_break_centiseconds_sum: int
    counted_nodes: int
    has_non_time: bool
    competitor_count: int
    overall_rank: int


@dataclass(frozen=True)
class RelayLeaderboardEntry:
    event_id: int
    category_code: str
    competitor_id: int
    placement_sum: int
    tie_break_centiseconds_sum: int
    counted_nodes: int
    competitor_count: int
    relay_rank: int


def best_attempt(attempts: Iterable[AttemptFact]) -> AttemptBest:
    times: list[int] = []
    has_fault = False
    has_any = False
    for a in attempts:
        has_any = True
        if a.result_kind == "time" and a.centiseconds is not None:
            times.append(int(a.centiseconds))
        elif a.result_kind == "fault":
            has_fault = True
    return AttemptBest(
        best_centiseconds=min(times) if times else None,
        has_fault=has_fault,
        has_any_attempt=has_any,
    )


def dense_rank(items: Sequence[T], key: Callable[[T], Hashable]) -> list[int]:
    """Dense ranks aligned with ``items`` (1-based, equal keys share, no gaps)."""
    ranks = [0] * len(items)
    rank = 0
    previous: object = object()
    for i in sorted(range(len(items)), key=lambda i: key(items[i])):
        k = key(items[i])
        if k != previous:
            rank += 1
            previous = k
        ranks[i] = rank
    return ranks


def _category_sort_key(snapshot: Snapshot, code: str) -> tuple[int, int, str]:
    if code in snapshot.category_order:
        return (0, snapshot.category_order[code], code)
    return (1, 0, code)


def _attempts_by_pair(attempts: Iterable[AttemptFact]) -> dict[tuple[int, int], list[AttemptFact]]:
    grouped: dict[tuple[int, int], list[AttemptFact]] = defaultdict(list)
    for a in attempts:
        grouped[(a.node_id, a.competitor_id)].append(a)
    return grouped


def _rank_station(
    snapshot: Snapshot,
    station: Station,
    entrants: Sequence[Entrant],
    grouped: dict[tuple[int, int], list[AttemptFact]],
) -> list[NodeRanking]:
    bests = [(e, best_attempt(grouped.get((station.node_id, e.competitor_id), ()))) for e in entrants]
    finishers = [pair for pair in bests if pair[1].best_centiseconds is not None]
    ranks = dense_rank(finishers, key=lambda pair: pair[1].best_centiseconds)
    rank_by_competitor = {pair[0].competitor_id: rank for pair, rank in zip(finishers, ranks)}
    group_size = len(entrants)

    rows: list[NodeRanking] = []
    for entrant, best in bests:
        finished = best.best_centiseconds is not None
        time_rank = rank_by_competitor[entrant.competitor_id] if finished else None
        rows.append(
            NodeRanking(
                event_id=snapshot.event_id,
                category_code=station.category_code,
                node_id=station.node_id,
                sequence=station.sequence,
                competitor_id=entrant.competitor_id,
                best_centiseconds=best.best_centiseconds,
                has_fault=best.has_fault,
                has_any_attempt=best.has_any_attempt,
                status=best.status,
                time_rank=time_rank,
                competitor_count=group_size,
                placement=time_rank if finished else group_size,
                tie_break_centiseconds=best.best_centiseconds if finished else None,
                is_relay=station.is_relay,
                counts_to_overall=station.counts_to_overall,
            )
        )
    return rows


def compute_node_rankings(snapshot: Snapshot, category_code: Optional[str] = None) -> list[NodeRanking]:
    """Rank every (category, node) group of the snapshot.

    Ordered by category display order, per-category node sequence, placement,
    then competitor id.
    """
    entrants_by_category: dict[str, list[Entrant]] = defaultdict(list)
    for e in snapshot.entrants:
        entrants_by_category[e.category_code].append(e)
    grouped = _attempts_by_pair(snapshot.attempts)

    rows: list[NodeRanking] = []
    for station in snapshot.stations:
        if category_code is not None and station.category_code != category_code:
            continue
        rows.extend(_rank_station(snapshot, station, entrants_by_category.get(station.category_code, []), grouped))

    rows.sort(
        key=lambda r: (
            _category_sort_key(snapshot, r.category_code),
            r.sequence,
            r.node_id,
            r.placement,
            r.competitor_id,
        )
    )
    return rows


def compute_category_scores(node_rankings: Iterable[NodeRanking]) -> list[CategoryScore]:
    """Sum placements over counted nodes.

    A competitor gets a score row as soon as any of its category's nodes is
    ranked, even when none of them counts (the sums are then zero).
    """
    acc: dict[tuple[int, str, int], dict] = {}
    for r in node_rankings:
        key = (r.event_id, r.category_code, r.competitor_id)
        slot = acc.setdefault(
            key,
            {"placement": 0, "tie_break": 0, "counted": 0, "non_time": False, "count": None},
        )
        if not r.counts_to_overall:
            continue
        slot["placement"] += r.placement
        slot["tie_break"] += r.tie_break_centiseconds or 0
        slot["counted"] += 1
        if r.status != "time":
            slot["non_time"] = True
        slot["count"] = r.competitor_count if slot["count"] is None else max(slot["count"], r.competitor_count)

    return [
        CategoryScore(
            event_id=event_id,
            category_code=code,
            competitor_id=competitor_id,
            placement_sum=slot["placement"],
            tie_break_centiseconds_sum=slot["tie_break"],
            counted_nodes=slot["counted"],
            has_non_time=slot["non_time"],
            competitor_count=slot["count"],
        )
        for (event_id, code, competitor_id), slot in acc.items()
    ]


def _roster_sizes(snapshot: Snapshot) -> dict[str, int]:
    sizes: dict[str, int] = defaultdict(int)
    for e in snapshot.entrants:
        sizes[e.category_code] += 1
    return sizes


def compute_category_leaderboard(
    snapshot: Snapshot, node_rankings: Optional[Sequence[NodeRanking]] = None
) -> list[LeaderboardEntry]:
    if node_rankings is None:
        node_rankings = compute_node_rankings(snapshot)
    scores = compute_category_scores(node_rankings)
    roster = _roster_sizes(snapshot)

    by_category: dict[str, list[CategoryScore]] = defaultdict(list)
    for s in scores:
        by_category[s.category_code].append(s)

    entries: list[LeaderboardEntry] = []
    for code, group in by_category.items():
        ranks = dense_rank(group, key=lambda s: (s.placement_sum, s.tie_break_centiseconds_sum))
        for s, rank in zip(group, ranks):
            entries.append(
                LeaderboardEntry(
                    event_id=s.event_id,
                    category_code=code,
                    competitor_id=s.competitor_id,
                    placement_sum=s.placement_sum,
                    tie_break_centiseconds_sum=s.tie_break_centiseconds_sum,
                    counted_nodes=s.counted_nodes,
                    has_non_time=s.has_non_time,
                    competitor_count=s.competitor_count if s.competitor_count is not None else roster[code],
                    overall_rank=rank,
                )
            )
    entries.sort(key=lambda e: (_category_sort_key(snapshot, e.category_code), e.overall_rank, e.competitor_id))
    return entries


def compute_relay_leaderboard(
    snapshot: Snapshot, node_rankings: Optional[Sequence[NodeRanking]] = None
) -> list[RelayLeaderboardEntry]:
    if node_rankings is None:
        node_rankings = compute_node_rankings(snapshot)

    acc: dict[tuple[str, int], list[NodeRanking]] = defaultdict(list)
    for r in node_rankings:
        if r.is_relay:
            acc[(r.category_code, r.competitor_id)].append(r)

    totals_by_category: dict[str, list[tuple[int, int, int, int, int]]] = defaultdict(list)
    for (code, competitor_id), rows in acc.items():
        totals_by_category[code].append(
            (
                competitor_id,
                sum(r.placement for r in rows),
                sum(r.tie_break_centiseconds or 0 for r in rows),
                len(rows),
                max(r.competitor_count for r in rows),
            )
        )

    entries: list[RelayLeaderboardEntry] = []
    for code, totals in totals_by_category.items():
        ranks = dense_rank(totals, key=lambda t: (t[1], t[2]))
        for t, rank in zip(totals, ranks):
            competitor_id, placement_sum, tie_break_sum, counted, count = t
            entries.append(
                RelayLeaderboardEntry(
                    event_id=snapshot.event_id,
                    category_code=code,
                    competitor_id=competitor_id,
                    placement_sum=placement_sum,
                    tie_break_centiseconds_sum=tie_break_sum,
                    counted_nodes=counted,
                    competitor_count=count,
                    relay_rank=rank,
                )
            )
    entries.sort(key=lambda e: (_category_sort_key(snapshot, e.category_code), e.relay_rank, e.competitor_id))
    return entries
