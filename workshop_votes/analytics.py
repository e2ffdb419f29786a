"""Vote aggregation, consensus metrics and role-based voting analysis.

Everything here is a pure function over rows that were already fetched for a
single session. Inputs are never mutated; every sort works on a new list.
"""
import math
import statistics
from itertools import combinations
from typing import Iterable, Mapping, Optional, Sequence

from . import schemas

UNKNOWN_ROLE = "Unknown"
ALL_ROLES = "all"
ALIGNMENT_TOP_N = 3
CONTROVERSIAL_LIMIT = 3
UNANIMOUS_RATIO = 0.8
TOP_FEATURES_PER_ROLE = 5


class VoteValidationError(ValueError):
    """Raised when a vote row carries points the engine cannot count."""

    def __init__(self, message: str, feature_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.feature_id = feature_id


def _checked_points(vote) -> int:
    points = vote.points_allocated
    if isinstance(points, bool) or not isinstance(points, int):
        raise VoteValidationError(
            f"points_allocated must be an integer, got {points!r}",
            feature_id=str(vote.feature_id),
        )
    if points < 0:
        raise VoteValidationError(
            "points_allocated cannot be negative", feature_id=str(vote.feature_id)
        )
    return points


def _ranking_key(feature: schemas.FeatureWithVotes):
    return (-feature.total_points, feature.id)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mean(values: Sequence[int]) -> float:
    if not values:
        return 0.0
    return statistics.fmean(values)


def _std_dev(values: Sequence[int]) -> float:
    # population standard deviation
    if not values:
        return 0.0
    return statistics.pstdev(values)


def normalize_role(role: Optional[str]) -> str:
    return role or UNKNOWN_ROLE


def aggregate_votes(features: Iterable, votes: Iterable) -> list[schemas.FeatureWithVotes]:
    """Attach ``total_points`` and ``vote_count`` to every feature and rank them.

    Features without votes are kept with zero totals. Ranking is by total points
    descending, ties broken by feature id. Duplicate vote rows are counted as-is.
    """
    totals: dict[str, list[int]] = {}
    for vote in votes:
        points = _checked_points(vote)
        bucket = totals.setdefault(str(vote.feature_id), [0, 0])
        bucket[0] += points
        bucket[1] += 1

    results = []
    for feature in features:
        total, count = totals.get(str(feature.id), (0, 0))
        base = schemas.FeatureWithVotes.model_validate(feature)
        results.append(
            base.model_copy(update={"total_points": total, "vote_count": count})
        )
    return sorted(results, key=_ranking_key)


def calculate_consensus_metrics(
    results: Sequence[schemas.FeatureWithVotes],
) -> schemas.ConsensusMetrics:
    """Team alignment, leader, controversial features and unanimous winners.

    ``teamAlignment`` is the share of all points held by the top three
    features, rounded half up to an integer percentage. Controversial
    features (engagement above average, points below average) and unanimous
    winners (many small votes, points above average) are filtered from
    ``results`` in the order given, not in ranked order.
    """
    if not results:
        return schemas.ConsensusMetrics(
            team_alignment=0,
            consensus_leader=None,
            controversial_features=[],
            unanimous_winners=[],
        )

    ranked = sorted(results, key=_ranking_key)

    total_points = sum(r.total_points for r in ranked)
    top_points = sum(r.total_points for r in ranked[:ALIGNMENT_TOP_N])
    concentration = top_points / total_points if total_points > 0 else 0
    team_alignment = _round_half_up(concentration * 100)

    avg_vote_count = sum(r.vote_count for r in results) / len(results)
    avg_points = total_points / len(results)

    controversial = [
        r
        for r in results
        if r.vote_count > avg_vote_count and r.total_points < avg_points
    ][:CONTROVERSIAL_LIMIT]

    unanimous = [
        r
        for r in results
        if r.vote_count >= r.total_points * UNANIMOUS_RATIO
        and r.total_points > avg_points
    ]

    return schemas.ConsensusMetrics(
        team_alignment=team_alignment,
        consensus_leader=ranked[0],
        controversial_features=controversial,
        unanimous_winners=unanimous,
    )


def jaccard_similarity(first: set, second: set) -> float:
    """Intersection over union as a percentage; two empty sets score 0."""
    union = first | second
    if not union:
        return 0.0
    return 100 * len(first & second) / len(union)


def _group_by_role(
    rows: Iterable[schemas.VoteWithContext],
) -> dict[str, list[schemas.VoteWithContext]]:
    groups: dict[str, list[schemas.VoteWithContext]] = {}
    for row in rows:
        _checked_points(row)
        groups.setdefault(normalize_role(row.player_role), []).append(row)
    return groups


def build_role_profile(
    role: str, rows: Sequence[schemas.VoteWithContext]
) -> schemas.RoleVotingProfile:
    feature_points: dict[str, tuple[str, list[int]]] = {}
    for row in rows:
        _, points = feature_points.setdefault(
            str(row.feature_id), (row.feature_title, [])
        )
        points.append(row.points_allocated)

    top_features = sorted(
        (
            schemas.RoleTopFeature(
                feature_id=feature_id,
                feature_title=title,
                total_points=sum(points),
                voter_count=len(points),
            )
            for feature_id, (title, points) in feature_points.items()
        ),
        key=lambda f: (-f.total_points, f.feature_id),
    )[:TOP_FEATURES_PER_ROLE]

    # averaged over vote rows, not over distinct features
    all_points = [row.points_allocated for row in rows]
    return schemas.RoleVotingProfile(
        role=role,
        player_count=len({row.player_id for row in rows}),
        total_votes=len(rows),
        average_points_per_feature=_mean(all_points),
        top_features=top_features,
        voting_variance=_std_dev(all_points),
    )


def cross_role_consensus(profiles: Sequence[schemas.RoleVotingProfile]) -> float:
    """Mean pairwise Jaccard similarity of the roles' top-feature sets."""
    if len(profiles) < 2:
        return 0.0
    top_sets = [{f.feature_id for f in profile.top_features} for profile in profiles]
    similarities = [jaccard_similarity(a, b) for a, b in combinations(top_sets, 2)]
    return sum(similarities) / len(similarities)


def analyze_role_voting(
    rows: Sequence[schemas.VoteWithContext],
) -> schemas.VotingAnalysisResponse:
    if not rows:
        return schemas.VotingAnalysisResponse(
            role_profiles=[], overall_variance=0, consensus_score=0
        )

    groups = _group_by_role(rows)
    profiles = [build_role_profile(role, group) for role, group in groups.items()]

    return schemas.VotingAnalysisResponse(
        role_profiles=profiles,
        overall_variance=_std_dev([row.points_allocated for row in rows]),
        consensus_score=cross_role_consensus(profiles),
    )


def aggregate_results_for_role(
    rows: Iterable[schemas.VoteWithContext], role: Optional[str] = None
) -> list[schemas.RoleFilteredResult]:
    by_feature: dict[str, schemas.RoleFilteredResult] = {}
    for row in rows:
        if role and role != ALL_ROLES and normalize_role(row.player_role) != role:
            continue
        points = _checked_points(row)
        result = by_feature.get(row.feature_id)
        if result is None:
            result = schemas.RoleFilteredResult(
                feature_id=row.feature_id,
                feature_title=row.feature_title,
                feature_effort=row.feature_effort,
                feature_impact=row.feature_impact,
                total_points=0,
                vote_count=0,
            )
            by_feature[row.feature_id] = result
        result.total_points += points
        result.vote_count += 1

    return sorted(by_feature.values(), key=lambda r: (-r.total_points, r.feature_id))


def calculate_remaining_points(total_points: int, allocations: Mapping[str, int]) -> int:
    return total_points - sum(allocations.values())


def summarize_player_progress(players: Iterable, votes: Iterable) -> list[schemas.PlayerProgress]:
    allocated: dict[str, int] = {}
    for vote in votes:
        player_id = str(vote.player_id)
        allocated[player_id] = allocated.get(player_id, 0) + _checked_points(vote)

    return [
        schemas.PlayerProgress(
            player=schemas.PlayerOut.model_validate(player),
            has_voted=str(player.id) in allocated,
            total_allocated=allocated.get(str(player.id), 0),
        )
        for player in players
    ]
