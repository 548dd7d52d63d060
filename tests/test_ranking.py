from __future__ import annotations

from knotscore.ranking import (
    AttemptFact,
    Entrant,
    Snapshot,
    Station,
    best_attempt,
    compute_category_leaderboard,
    compute_category_scores,
    compute_node_rankings,
    compute_relay_leaderboard,
    dense_rank,
)


def _time(competitor_id, node_id, cs):
    return AttemptFact(competitor_id=competitor_id, node_id=node_id, result_kind="time", centiseconds=cs)


def _fault(competitor_id, node_id):
    return AttemptFact(competitor_id=competitor_id, node_id=node_id, result_kind="fault")


def _snapshot(stations, entrants, attempts, order=None):
    return Snapshot(
        event_id=1,
        stations=tuple(stations),
        entrants=tuple(Entrant(competitor_id=cid, category_code=code) for cid, code in entrants),
        attempts=tuple(attempts),
        category_order=order or {},
    )


def _rows_by(rows, node_id):
    return {r.competitor_id: r for r in rows if r.node_id == node_id}


def test_dense_rank_shares_ties_without_gaps():
    assert dense_rank([300, 100, 100, 200], key=lambda v: v) == [3, 1, 1, 2]
    assert dense_rank([], key=lambda v: v) == []


def test_best_attempt_status_priority():
    assert best_attempt([_fault(1, 1), _time(1, 1, 900)]).status == "time"
    assert best_attempt([_time(1, 1, 900), _time(1, 1, 700)]).best_centiseconds == 700
    assert best_attempt([_fault(1, 1)]).status == "fault"
    partial = AttemptFact(competitor_id=1, node_id=1, result_kind="time", centiseconds=None)
    assert best_attempt([partial]).status == "incomplete"
    assert best_attempt([]).status == "missing"


def test_two_node_scenario_tie_break_decides():
    # A: 1500 / 1800, B: 1200 / nothing; both sum to 3 placements
    stations = [Station("S", 10, 1), Station("S", 20, 2)]
    snap = _snapshot(
        stations,
        [(1, "S"), (2, "S")],
        [_time(1, 10, 1500), _time(1, 20, 1800), _time(2, 10, 1200)],
    )
    rows = compute_node_rankings(snap)
    node1 = _rows_by(rows, 10)
    node2 = _rows_by(rows, 20)
    assert node1[2].time_rank == 1 and node1[1].time_rank == 2
    assert node2[1].time_rank == 1 and node2[1].placement == 1
    assert node2[2].status == "missing"
    assert node2[2].time_rank is None
    assert node2[2].placement == 2
    assert node2[2].tie_break_centiseconds is None

    board = compute_category_leaderboard(snap)
    by_id = {e.competitor_id: e for e in board}
    assert by_id[1].placement_sum == 3 and by_id[1].tie_break_centiseconds_sum == 3300
    assert by_id[2].placement_sum == 3 and by_id[2].tie_break_centiseconds_sum == 1200
    assert by_id[2].has_non_time is True
    assert by_id[1].has_non_time is False
    assert [e.competitor_id for e in board] == [2, 1]
    assert [e.overall_rank for e in board] == [1, 2]


def test_non_finishers_all_take_group_size():
    snap = _snapshot(
        [Station("M", 10, 1)],
        [(i, "M") for i in range(1, 6)],
        [_time(1, 10, 2000), _time(2, 10, 2500), _fault(3, 10), _fault(4, 10)],
    )
    rows = _rows_by(compute_node_rankings(snap), 10)
    assert [rows[i].placement for i in (1, 2, 3, 4, 5)] == [1, 2, 5, 5, 5]
    assert rows[3].status == "fault"
    assert rows[5].status == "missing"
    assert all(r.competitor_count == 5 for r in rows.values())


def test_equal_times_share_rank_and_next_rank_follows():
    snap = _snapshot(
        [Station("N", 10, 1)],
        [(1, "N"), (2, "N"), (3, "N")],
        [_time(1, 10, 1000), _time(2, 10, 1000), _time(3, 10, 1100)],
    )
    rows = _rows_by(compute_node_rankings(snap), 10)
    assert rows[1].time_rank == rows[2].time_rank == 1
    assert rows[3].time_rank == 2


def test_node_rankings_are_reproducible():
    attempts = [_time(1, 10, 1300), _time(2, 10, 1200), _fault(3, 10), _time(3, 10, 1250)]
    stations = [Station("S", 10, 1)]
    entrants = [(1, "S"), (2, "S"), (3, "S")]
    first = compute_node_rankings(_snapshot(stations, entrants, attempts))
    second = compute_node_rankings(_snapshot(stations, entrants, list(reversed(attempts))))
    assert first == second
    assert first[0].competitor_id == 2 and first[0].time_rank == 1


def test_category_filter_and_ordering():
    snap = _snapshot(
        [Station("M", 10, 2), Station("N", 10, 1), Station("M", 20, 1)],
        [(1, "N"), (2, "M")],
        [],
        order={"N": 1, "M": 2},
    )
    rows = compute_node_rankings(snap)
    assert [(r.category_code, r.node_id) for r in rows] == [("N", 10), ("M", 20), ("M", 10)]
    only_m = compute_node_rankings(snap, category_code="M")
    assert {r.category_code for r in only_m} == {"M"}


def test_uncounted_nodes_stay_out_of_overall():
    stations = [
        Station("S", 10, 1),
        Station("S", 60, 2, is_relay=True, counts_to_overall=False),
    ]
    snap = _snapshot(stations, [(1, "S"), (2, "S")], [_time(1, 10, 1000), _time(2, 10, 1100), _time(2, 60, 500)])
    scores = {s.competitor_id: s for s in compute_category_scores(compute_node_rankings(snap))}
    assert scores[1].counted_nodes == 1
    assert scores[1].placement_sum == 1
    assert scores[2].tie_break_centiseconds_sum == 1100
    # competitor 1 missed the relay, but that node does not count
    assert scores[1].has_non_time is False


def test_relay_leaderboard_ignores_counts_flag():
    stations = [
        Station("R", 10, 1),
        Station("R", 60, 2, is_relay=True, counts_to_overall=True),
    ]
    snap = _snapshot(stations, [(1, "R"), (2, "R"), (3, "R")], [_time(1, 60, 4000), _time(2, 60, 3000)])
    relay = compute_relay_leaderboard(snap)
    assert [(e.competitor_id, e.relay_rank) for e in relay] == [(2, 1), (1, 2), (3, 3)]
    assert relay[2].placement_sum == 3
    assert all(e.counted_nodes == 1 and e.competitor_count == 3 for e in relay)

    overall = {e.competitor_id: e for e in compute_category_leaderboard(snap)}
    # the relay node also counts here, so it feeds the overall sums too
    assert overall[2].counted_nodes == 2
    assert overall[2].placement_sum == 3 + 1


def test_category_without_counted_nodes_uses_roster_size():
    stations = [Station("N", 60, 1, is_relay=True, counts_to_overall=False)]
    snap = _snapshot(stations, [(1, "N"), (2, "N"), (3, "N")], [])
    board = compute_category_leaderboard(snap)
    assert len(board) == 3
    assert all(e.competitor_count == 3 for e in board)
    assert all(e.placement_sum == 0 and e.overall_rank == 1 for e in board)


def test_leaderboard_rank_is_monotonic_in_sort_key():
    stations = [Station("S", n, n) for n in (1, 2, 3)]
    entrants = [(c, "S") for c in range(1, 7)]
    attempts = [
        _time(1, 1, 1000), _time(1, 2, 1500), _time(1, 3, 900),
        _time(2, 1, 1100), _time(2, 2, 1400),
        _time(3, 1, 1000), _time(3, 2, 1500), _time(3, 3, 900),
        _fault(4, 1), _time(4, 2, 2000), _time(4, 3, 800),
        _time(5, 3, 1000),
    ]
    board = compute_category_leaderboard(_snapshot(stations, entrants, attempts))
    keys = [(e.placement_sum, e.tie_break_centiseconds_sum) for e in board]
    assert keys == sorted(keys)
    for prev, cur in zip(board, board[1:]):
        same = (prev.placement_sum, prev.tie_break_centiseconds_sum) == (cur.placement_sum, cur.tie_break_centiseconds_sum)
        assert cur.overall_rank == prev.overall_rank + (0 if same else 1)
    by_id = {e.competitor_id: e for e in board}
    # identical results share a rank
    assert by_id[1].overall_rank == by_id[3].overall_rank
