"""
fitsettle/tests/test_scoring.py

Unit tests for aggregation and ranking:
- ScoringPolicy parsing and strategies
- aggregate() per policy, order independence, de-duplication
- rank() zero-fill, direction and tie-breaks
- format_score() display strings
"""

import random

import pytest

from fitsettle.protocol.activity import ActivityRecord
from fitsettle.protocol.scoring import (
    ScoringPolicy,
    AggregateMetric,
    aggregate,
    rank,
    build_standings,
    format_score,
)


# ============================================================================
# Fixtures
# ============================================================================

def record(event_id, participant, distance=0.0, duration=None, calories=None, occurred_at=1000):
    return ActivityRecord(
        event_id=event_id,
        participant_id=participant,
        activity_type="running",
        distance=distance,
        duration_seconds=duration,
        calories=calories,
        occurred_at=occurred_at,
    )


@pytest.fixture
def records():
    return [
        record("a1", "alice", distance=5.0, duration=1500, calories=300),
        record("a2", "alice", distance=10.0, duration=3300, calories=650),
        record("b1", "bob", distance=8.0, duration=2400, calories=500),
        record("c1", "carol", distance=3.0, duration=900, calories=200),
        record("c2", "carol", distance=2.0, duration=None, calories=None),
    ]


# ============================================================================
# ScoringPolicy Tests
# ============================================================================

class TestScoringPolicy:
    """Tests for policy parsing and direction."""

    def test_parse_values(self):
        assert ScoringPolicy.parse("sum-distance") == ScoringPolicy.SUM_DISTANCE
        assert ScoringPolicy.parse("MIN-PACE") == ScoringPolicy.MIN_PACE
        assert ScoringPolicy.parse(ScoringPolicy.COUNT) == ScoringPolicy.COUNT

    def test_parse_aliases(self):
        assert ScoringPolicy.parse("total_distance") == ScoringPolicy.SUM_DISTANCE
        assert ScoringPolicy.parse("most_workouts") == ScoringPolicy.COUNT
        assert ScoringPolicy.parse("fastest_time") == ScoringPolicy.MIN_DURATION
        assert ScoringPolicy.parse("average_pace") == ScoringPolicy.MIN_PACE

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            ScoringPolicy.parse("longest_nap")

    def test_direction(self):
        assert ScoringPolicy.MIN_DURATION.ascending is True
        assert ScoringPolicy.MIN_PACE.ascending is True
        assert ScoringPolicy.SUM_DISTANCE.ascending is False
        assert ScoringPolicy.COUNT.ascending is False

    def test_minimum_policies_require_positive_score(self):
        assert ScoringPolicy.MIN_DURATION.strategy.requires_positive_score
        assert not ScoringPolicy.SUM_DISTANCE.strategy.requires_positive_score


# ============================================================================
# aggregate() Tests
# ============================================================================

class TestAggregate:
    """Tests for per-participant reduction."""

    def test_sum_distance(self, records):
        result = aggregate(records, ScoringPolicy.SUM_DISTANCE)

        assert result["alice"].score == pytest.approx(15.0)
        assert result["bob"].score == pytest.approx(8.0)
        assert result["carol"].score == pytest.approx(5.0)
        assert result["alice"].activity_count == 2

    def test_count(self, records):
        result = aggregate(records, ScoringPolicy.COUNT)
        assert result["alice"].score == 2
        assert result["carol"].score == 2

    def test_sum_duration_skips_missing(self, records):
        result = aggregate(records, ScoringPolicy.SUM_DURATION)
        assert result["carol"].score == 900

    def test_sum_calories(self, records):
        result = aggregate(records, ScoringPolicy.SUM_CALORIES)
        assert result["alice"].score == 950
        assert result["carol"].score == 200

    def test_min_duration(self, records):
        result = aggregate(records, ScoringPolicy.MIN_DURATION)
        assert result["alice"].score == 1500
        assert result["carol"].score == 900

    def test_min_duration_without_durations_is_unscored(self):
        result = aggregate([record("x", "dave", distance=4.0)], ScoringPolicy.MIN_DURATION)

        assert result["dave"].score is None
        assert result["dave"].activity_count == 1

    def test_min_pace_skips_zero_distance(self):
        records = [
            record("p1", "erin", distance=0.0, duration=600),
            record("p2", "erin", distance=5.0, duration=1500),   # 5:00 /km
            record("p3", "erin", distance=10.0, duration=3300),  # 5:30 /km
        ]
        result = aggregate(records, ScoringPolicy.MIN_PACE)
        assert result["erin"].score == pytest.approx(5.0)

    def test_duplicate_events_counted_once(self, records):
        result = aggregate(records + records[:2], ScoringPolicy.SUM_DISTANCE)

        assert result["alice"].score == pytest.approx(15.0)
        assert result["alice"].activity_count == 2

    def test_order_independent(self):
        """Same records in any order give identical scores."""
        records = [
            record(f"e{i}", "alice", distance=d)
            for i, d in enumerate([0.1, 0.2, 0.3, 1e-9, 7.77, 123.456, 0.7])
        ]
        expected = aggregate(records, ScoringPolicy.SUM_DISTANCE)["alice"].score

        rng = random.Random(42)
        for _ in range(20):
            shuffled = list(records)
            rng.shuffle(shuffled)
            assert aggregate(shuffled, ScoringPolicy.SUM_DISTANCE)["alice"].score == expected


# ============================================================================
# rank() Tests
# ============================================================================

class TestRank:
    """Tests for ranking and zero-fill."""

    def test_zero_fill(self, records):
        participants = ["alice", "bob", "carol", "dave", "erin"]
        standings = build_standings(records, participants, ScoringPolicy.SUM_DISTANCE)

        assert len(standings) == 5
        by_id = {s.participant_id: s for s in standings}
        assert by_id["dave"].score == 0
        assert by_id["dave"].activity_count == 0

    def test_descending_order(self, records):
        standings = build_standings(records, ["alice", "bob", "carol"], ScoringPolicy.SUM_DISTANCE)

        assert [s.participant_id for s in standings] == ["alice", "bob", "carol"]
        assert [s.rank for s in standings] == [1, 2, 3]

    def test_min_duration_ascending(self):
        """X 300 s, Y 280 s -> Y first."""
        records = [record("x", "X", duration=300), record("y", "Y", duration=280)]
        standings = build_standings(records, ["X", "Y"], ScoringPolicy.MIN_DURATION)

        assert standings[0].participant_id == "Y"
        assert standings[0].rank == 1
        assert standings[1].participant_id == "X"
        assert standings[1].rank == 2

    def test_unscored_rank_after_scored_for_minimum(self):
        """A zero-filled participant never beats a real best time."""
        records = [record("x", "X", duration=300)]
        standings = build_standings(records, ["A", "X"], ScoringPolicy.MIN_DURATION)

        assert [s.participant_id for s in standings] == ["X", "A"]
        assert standings[1].score == 0

    def test_tie_break_by_participant_id(self):
        records = [record("1", "zed", distance=5.0), record("2", "amy", distance=5.0)]
        standings = build_standings(records, ["zed", "amy"], ScoringPolicy.SUM_DISTANCE)

        assert [s.participant_id for s in standings] == ["amy", "zed"]
        assert [s.rank for s in standings] == [1, 2]

    def test_unregistered_authors_ignored(self):
        records = [record("1", "alice", distance=5.0), record("2", "mallory", distance=50.0)]
        standings = build_standings(records, ["alice"], ScoringPolicy.SUM_DISTANCE)

        assert [s.participant_id for s in standings] == ["alice"]

    def test_duplicate_participant_ids_collapsed(self):
        standings = rank({}, ["a", "b", "a"], ScoringPolicy.COUNT)
        assert [s.participant_id for s in standings] == ["a", "b"]

    def test_rank_from_aggregates(self):
        aggregates = {
            "a": AggregateMetric("a", 2.0, 2),
            "b": AggregateMetric("b", 7.0, 7),
        }
        standings = rank(aggregates, ["a", "b", "c"], ScoringPolicy.COUNT)
        assert [(s.participant_id, s.rank) for s in standings] == [("b", 1), ("a", 2), ("c", 3)]

    def test_empty(self):
        assert build_standings([], [], ScoringPolicy.SUM_DISTANCE) == []


# ============================================================================
# format_score() Tests
# ============================================================================

class TestFormatScore:
    """Tests for display strings."""

    def test_formats(self):
        assert format_score(12.346, ScoringPolicy.SUM_DISTANCE) == "12.35 km"
        assert format_score(5, ScoringPolicy.COUNT) == "5 workouts"
        assert format_score(3725, ScoringPolicy.SUM_DURATION) == "1h 2m"
        assert format_score(1530, ScoringPolicy.MIN_DURATION) == "25:30"
        assert format_score(5.5, ScoringPolicy.MIN_PACE) == "5:30 /km"
        assert format_score(412.4, ScoringPolicy.SUM_CALORIES) == "412 cal"
