import pytest

from workshop_votes import analytics, schemas


def feature(id, title=None, effort=None, impact=None):
    return schemas.FeatureOut(
        id=id, title=title or f"Feature {id}", effort=effort, impact=impact
    )


def vote(feature_id, points, player_id="p1"):
    return schemas.VoteRecord(
        feature_id=feature_id, player_id=player_id, points_allocated=points
    )


def ranked(id, total_points, vote_count):
    return schemas.FeatureWithVotes(
        id=id, title=f"Feature {id}", total_points=total_points, vote_count=vote_count
    )


def row(feature_id, player_id, role, points, title=None):
    return schemas.VoteWithContext(
        feature_id=feature_id,
        feature_title=title or f"Feature {feature_id}",
        player_id=player_id,
        player_name=player_id.title(),
        player_role=role,
        points_allocated=points,
    )


# --- Агрегация ---


def test_aggregate_example():
    features = [feature("1", "A"), feature("2", "B")]
    votes = [vote("1", 70), vote("2", 30), vote("1", 10, "p2")]

    results = analytics.aggregate_votes(features, votes)

    assert [(r.title, r.total_points, r.vote_count) for r in results] == [
        ("A", 80, 2),
        ("B", 30, 1),
    ]
    assert analytics.calculate_consensus_metrics(results).team_alignment == 100


def test_aggregate_conserves_points_and_features():
    features = [feature(str(i)) for i in range(6)]
    votes = [vote("0", 5), vote("3", 40), vote("3", 15), vote("5", 40), vote("1", 0)]

    results = analytics.aggregate_votes(features, votes)

    assert len(results) == len(features)
    assert sum(r.total_points for r in results) == sum(
        v.points_allocated for v in votes
    )
    totals = [r.total_points for r in results]
    assert totals == sorted(totals, reverse=True)


def test_aggregate_keeps_features_without_votes():
    results = analytics.aggregate_votes([feature("a"), feature("b")], [])
    assert [(r.total_points, r.vote_count) for r in results] == [(0, 0), (0, 0)]


def test_aggregate_ignores_votes_for_unknown_features():
    results = analytics.aggregate_votes([feature("a")], [vote("zzz", 50)])
    assert results[0].total_points == 0


def test_aggregate_ties_broken_by_id():
    features = [feature("c"), feature("a"), feature("b")]
    votes = [vote("c", 20), vote("a", 20), vote("b", 50)]

    results = analytics.aggregate_votes(features, votes)

    assert [r.id for r in results] == ["b", "a", "c"]


def test_aggregate_counts_duplicate_rows():
    results = analytics.aggregate_votes([feature("a")], [vote("a", 10), vote("a", 10)])
    assert (results[0].total_points, results[0].vote_count) == (20, 2)


def test_aggregate_does_not_mutate_inputs():
    features = [feature("a"), feature("b")]
    analytics.aggregate_votes(features, [vote("b", 10)])
    assert [f.id for f in features] == ["a", "b"]
    assert not hasattr(features[0], "total_points")


def test_aggregate_keeps_feature_fields():
    results = analytics.aggregate_votes([feature("a", "Alpha", 3, 9)], [vote("a", 1)])
    assert results[0].title == "Alpha"
    assert (results[0].effort, results[0].impact) == (3, 9)


def test_aggregate_rejects_negative_points():
    bad = schemas.VoteRecord.model_construct(
        feature_id="a", player_id="p1", points_allocated=-1
    )
    with pytest.raises(analytics.VoteValidationError) as exc:
        analytics.aggregate_votes([feature("a")], [bad])
    assert exc.value.feature_id == "a"


def test_aggregate_rejects_non_integer_points():
    bad = schemas.VoteRecord.model_construct(
        feature_id="a", player_id="p1", points_allocated="10"
    )
    with pytest.raises(analytics.VoteValidationError):
        analytics.aggregate_votes([feature("a")], [bad])


# --- Консенсус ---


def test_consensus_empty():
    metrics = analytics.calculate_consensus_metrics([])
    assert metrics.team_alignment == 0
    assert metrics.consensus_leader is None
    assert metrics.controversial_features == []
    assert metrics.unanimous_winners == []
    assert metrics.model_dump(by_alias=True) == {
        "teamAlignment": 0,
        "consensusLeader": None,
        "controversialFeatures": [],
        "unanimousWinners": [],
    }


def test_consensus_three_features_full_alignment():
    results = [ranked("a", 50, 2), ranked("b", 30, 2), ranked("c", 20, 1)]
    assert analytics.calculate_consensus_metrics(results).team_alignment == 100


def test_consensus_alignment_rounds_half_up():
    # top three hold 45 of 90
    results = [ranked("a", 15, 1), ranked("b", 15, 1), ranked("c", 15, 1)] + [
        ranked(f"z{i}", 15, 1) for i in range(3)
    ]
    assert analytics.calculate_consensus_metrics(results).team_alignment == 50

    results = [ranked("a", 1, 1)] + [ranked(f"z{i}", 1, 1) for i in range(7)]
    # 3 of 8 = 37.5 -> 38
    assert analytics.calculate_consensus_metrics(results).team_alignment == 38


def test_consensus_all_zero_points():
    metrics = analytics.calculate_consensus_metrics([ranked("a", 0, 0), ranked("b", 0, 0)])
    assert metrics.team_alignment == 0
    assert metrics.consensus_leader.id == "a"
    assert metrics.unanimous_winners == []


def test_consensus_leader_from_unsorted_input():
    results = [ranked("a", 10, 1), ranked("b", 60, 3), ranked("c", 30, 2)]
    metrics = analytics.calculate_consensus_metrics(results)
    assert metrics.consensus_leader.id == "b"
    assert [r.id for r in results] == ["a", "b", "c"]


def test_controversial_features_keep_input_order_and_cap():
    # avg votes = 3, avg points = 40
    results = [
        ranked("lead", 160, 1),
        ranked("x", 10, 5),
        ranked("y", 5, 4),
        ranked("z", 20, 4),
        ranked("w", 30, 4),
        ranked("quiet", 15, 0),
    ]
    metrics = analytics.calculate_consensus_metrics(results)
    assert [r.id for r in metrics.controversial_features] == ["x", "y", "z"]


def test_unanimous_winners():
    # avg points = 13
    results = [ranked("broad", 20, 18), ranked("narrow", 30, 2), ranked("low", 0, 0)]
    results.append(ranked("small", 2, 2))
    metrics = analytics.calculate_consensus_metrics(results)
    assert [r.id for r in metrics.unanimous_winners] == ["broad"]


# --- Анализ по ролям ---


def test_role_analysis_empty():
    response = analytics.analyze_role_voting([])
    assert response.role_profiles == []
    assert response.overall_variance == 0
    assert response.consensus_score == 0


def test_role_analysis_single_role_has_no_consensus():
    rows = [row("f1", "anna", "Designer", 60), row("f2", "bob", "Designer", 40)]
    response = analytics.analyze_role_voting(rows)
    assert len(response.role_profiles) == 1
    assert response.consensus_score == 0


def test_role_profile_statistics():
    rows = [
        row("f1", "anna", "Engineer", 70),
        row("f2", "anna", "Engineer", 30),
        row("f1", "bob", "Engineer", 50),
        row("f3", "bob", "Engineer", 50),
    ]
    profile = analytics.analyze_role_voting(rows).role_profiles[0]

    assert profile.role == "Engineer"
    assert profile.player_count == 2
    assert profile.total_votes == 4
    assert profile.average_points_per_feature == 50
    # deviations 20, -20, 0, 0 -> sqrt(800 / 4)
    assert profile.voting_variance == pytest.approx(200**0.5)
    assert [(f.feature_id, f.total_points, f.voter_count) for f in profile.top_features] == [
        ("f1", 120, 2),
        ("f3", 50, 1),
        ("f2", 30, 1),
    ]


def test_role_profile_top_five():
    rows = [row(f"f{i}", "anna", "PM", 10 + i) for i in range(7)]
    profile = analytics.analyze_role_voting(rows).role_profiles[0]
    assert [f.feature_id for f in profile.top_features] == ["f6", "f5", "f4", "f3", "f2"]


def test_missing_role_becomes_unknown():
    rows = [row("f1", "anna", None, 10), row("f1", "bob", "", 20)]
    response = analytics.analyze_role_voting(rows)
    assert [p.role for p in response.role_profiles] == ["Unknown"]
    assert response.role_profiles[0].player_count == 2


def test_role_order_follows_first_occurrence():
    rows = [
        row("f1", "anna", "Marketing", 10),
        row("f1", "bob", "Designer", 10),
        row("f2", "carl", "Marketing", 10),
    ]
    roles = [p.role for p in analytics.analyze_role_voting(rows).role_profiles]
    assert roles == ["Marketing", "Designer"]


def test_overall_variance_across_roles():
    rows = [
        row("f1", "anna", "Designer", 10),
        row("f1", "bob", "Engineer", 30),
    ]
    response = analytics.analyze_role_voting(rows)
    assert response.overall_variance == 10
    assert [p.voting_variance for p in response.role_profiles] == [0, 0]


def test_consensus_score_jaccard_average():
    rows = [
        row("f1", "anna", "Designer", 50),
        row("f2", "anna", "Designer", 50),
        row("f1", "bob", "Engineer", 50),
        row("f2", "bob", "Engineer", 50),
        row("f3", "carl", "Marketing", 100),
    ]
    # Designer/Engineer 100, Designer/Marketing 0, Engineer/Marketing 0
    response = analytics.analyze_role_voting(rows)
    assert response.consensus_score == pytest.approx(100 / 3)


def test_jaccard_similarity():
    assert analytics.jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(100 / 3)
    assert analytics.jaccard_similarity({"a"}, {"a"}) == 100
    assert analytics.jaccard_similarity(set(), set()) == 0


def test_cross_role_consensus_empty_top_features_counts_as_zero():
    profiles = [
        schemas.RoleVotingProfile(
            role=role,
            player_count=0,
            total_votes=0,
            average_points_per_feature=0,
            top_features=[],
            voting_variance=0,
        )
        for role in ("A", "B")
    ]
    assert analytics.cross_role_consensus(profiles) == 0


def test_role_analysis_camel_case_output():
    response = analytics.analyze_role_voting([row("f1", "anna", "PM", 10)])
    dumped = response.model_dump(by_alias=True)
    assert set(dumped) == {"roleProfiles", "overallVariance", "consensusScore"}
    assert set(dumped["roleProfiles"][0]) == {
        "role",
        "playerCount",
        "totalVotes",
        "averagePointsPerFeature",
        "topFeatures",
        "votingVariance",
    }


# --- Фильтр по роли ---


def test_results_for_role():
    rows = [
        row("f1", "anna", "Designer", 30),
        row("f2", "anna", "Designer", 70),
        row("f1", "bob", "Engineer", 90),
        row("f2", "carl", None, 5),
    ]

    everyone = analytics.aggregate_results_for_role(rows)
    assert [(r.feature_id, r.total_points, r.vote_count) for r in everyone] == [
        ("f1", 120, 2),
        ("f2", 75, 2),
    ]
    assert analytics.aggregate_results_for_role(rows, "all") == everyone

    designers = analytics.aggregate_results_for_role(rows, "Designer")
    assert [(r.feature_id, r.total_points) for r in designers] == [("f2", 70), ("f1", 30)]

    unknown = analytics.aggregate_results_for_role(rows, "Unknown")
    assert [(r.feature_id, r.total_points) for r in unknown] == [("f2", 5)]

    assert analytics.aggregate_results_for_role(rows, "Executive") == []


# --- Бюджет ---


def test_remaining_points():
    assert analytics.calculate_remaining_points(100, {"a": 30, "b": 45}) == 25
    assert analytics.calculate_remaining_points(100, {}) == 100
    assert analytics.calculate_remaining_points(100, {"a": 80, "b": 30}) == -10
