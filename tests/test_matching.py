import numpy as np

from loc_app.config import ViewMatchParameters
from loc_app.features.keypoints import Regions
from loc_app.features.matching import (
    CorrespondenceKey,
    LandmarkIndex,
    build_view_features,
    filter_matches_ratio_test,
    match_keypoints,
    match_to_landmarks,
    match_to_views,
    occurrence_weights,
)
from loc_app.scene.data_structures import Landmark, MapData, Observation, View
from loc_app.testing.synthetic import (
    DESC_TYPE,
    look_at,
    make_correspondences,
    make_map,
    make_query_regions,
    query_pose,
)


def _tiny_map(descriptors_per_landmark):
    """One view; landmark i observed with the given descriptor(s)."""
    map_data = MapData()
    for view_id in range(3):
        map_data.views[view_id] = View(id=view_id, width=10, height=10, intrinsic_id=0, pose_id=view_id)
    for i, descs in enumerate(descriptors_per_landmark):
        lm = Landmark(id=i, xyz=np.array([float(i), 0.0, 5.0]), desc_type=DESC_TYPE)
        for view_id, d in enumerate(descs):
            lm.observations[view_id] = Observation(
                view_id=view_id, uv=np.zeros(2), descriptor=np.asarray(d, dtype=np.float32)
            )
        map_data.landmarks[i] = lm
    return map_data


def _query(descs):
    d = np.asarray(descs, dtype=np.float32)
    return {DESC_TYPE: Regions(keypoints=np.arange(2 * len(d), dtype=np.float64).reshape(-1, 2), descriptors=d)}


def test_ratio_test_accepts_distinctive_match() -> None:
    index = LandmarkIndex(_tiny_map([[[0, 0]], [[10, 0]], [[0, 10]]]))

    correspondences = match_to_landmarks(_query([[0.5, 0.0]]), index, ratio=0.8)

    assert len(correspondences) == 1
    c = correspondences[0]
    assert (c.landmark_id, c.feature_index, c.desc_type) == (0, 0, DESC_TYPE)
    assert np.allclose(c.point_3d, [0.0, 0.0, 5.0])
    assert np.allclose(c.point_2d, [0.0, 1.0])
    assert abs(c.distance - 0.5) < 1e-6


def test_ratio_test_rejects_ambiguous_and_tied_matches() -> None:
    index = LandmarkIndex(_tiny_map([[[0, 0]], [[2, 0]], [[0, 50]]]))

    # 0.9 / 1.1 > 0.8: ambiguous; (1, 0) is equidistant from landmarks 0 and 1.
    correspondences = match_to_landmarks(_query([[0.9, 0.0], [1.0, 0.0]]), index, ratio=0.8)

    assert correspondences == []


def test_second_neighbour_is_a_distinct_landmark() -> None:
    # Landmark 0 has two nearly identical observations; they must not make it
    # ambiguous with itself.
    index = LandmarkIndex(_tiny_map([[[0, 0], [0.1, 0]], [[10, 0]]]))

    correspondences = match_to_landmarks(_query([[0.05, 0.0]]), index, ratio=0.8)

    assert [c.landmark_id for c in correspondences] == [0]


def test_single_candidate_landmark_is_rejected() -> None:
    index = LandmarkIndex(_tiny_map([[[0, 0], [0.1, 0]]]))

    assert match_to_landmarks(_query([[0.0, 0.0]]), index, ratio=0.8) == []


def test_unknown_descriptor_type_is_skipped() -> None:
    index = LandmarkIndex(_tiny_map([[[0, 0]], [[10, 0]]]))
    query = {"orb": Regions(keypoints=np.zeros((1, 2)), descriptors=np.zeros((1, 32), dtype=np.uint8))}

    assert match_to_landmarks(query, index, ratio=0.8) == []


def test_landmark_matching_is_idempotent() -> None:
    rng = np.random.default_rng(0)
    scene = make_map(rng, n_landmarks=120)
    regions, owners = make_query_regions(rng, scene, query_pose(), n_clutter=30)
    index = LandmarkIndex(scene.map_data)

    first = match_to_landmarks(regions, index, ratio=0.8)
    second = match_to_landmarks(regions, index, ratio=0.8)

    assert [c.key for c in first] == [c.key for c in second]
    assert [c.distance for c in first] == [c.distance for c in second]
    # Every visible landmark is found, at the keypoint it was projected to.
    assert len(first) >= np.count_nonzero(owners >= 0) - 2
    for c in first:
        assert owners[c.feature_index] == c.landmark_id


def test_filter_matches_ratio_test_drops_ties() -> None:
    pts1 = np.array([[0.0, 0.0], [1.0, 1.0]])
    pts2 = np.array([[5.0, 5.0], [6.0, 6.0], [7.0, 7.0]])
    d1 = np.array([[0.0, 0.0], [5.0, 5.0]], dtype=np.float32)
    d2 = np.array([[0.1, 0.0], [9.0, 9.0], [5.0, 4.0]], dtype=np.float32)
    d2_tied = np.array([[4.0, 5.0], [5.0, 4.0], [0.0, 0.0]], dtype=np.float32)

    out1, out2, good = filter_matches_ratio_test(pts1, pts2, match_keypoints(d1, d2), ratio=0.8)
    assert [(m.queryIdx, m.trainIdx) for m in good] == [(0, 0), (1, 2)]
    assert np.allclose(out1, [[0.0, 0.0], [1.0, 1.0]])
    assert np.allclose(out2, [[5.0, 5.0], [7.0, 7.0]])

    _, _, good = filter_matches_ratio_test(pts1, pts2, match_keypoints(d1, d2_tied), ratio=0.8)
    assert [(m.queryIdx, m.trainIdx) for m in good] == [(0, 2)]


def test_match_to_views_counts_occurrences() -> None:
    rng = np.random.default_rng(1)
    scene = make_map(rng, n_landmarks=150, n_views=3)
    regions, owners = make_query_regions(rng, scene, query_pose(), n_clutter=20)
    params = ViewMatchParameters(seed=0)

    correspondences, occurrences = match_to_views(
        regions,
        build_view_features(scene.map_data),
        scene.map_data.landmarks,
        params,
    )

    assert len(correspondences) > 100
    assert set(occurrences) == {c.key for c in correspondences}
    # Every landmark is seen by the three views.
    assert max(occurrences.values()) == 3
    for c in correspondences:
        assert owners[c.feature_index] == c.landmark_id
        assert np.allclose(c.point_3d, scene.points_3d[c.landmark_id])


def test_view_with_too_few_matches_is_ignored() -> None:
    rng = np.random.default_rng(2)
    scene = make_map(rng, n_landmarks=100, n_views=1)
    regions, _ = make_query_regions(rng, scene, look_at((0.5, 0.0, -8.0), (0.0, 0.0, 0.0)))
    params = ViewMatchParameters(min_view_matches=1000)

    correspondences, occurrences = match_to_views(
        regions, build_view_features(scene.map_data), scene.map_data.landmarks, params
    )

    assert correspondences == []
    assert occurrences == {}


def test_occurrence_weights() -> None:
    correspondences = make_correspondences(np.zeros((3, 3)), np.zeros((3, 2)))
    keys = [c.key for c in correspondences]

    assert occurrence_weights(correspondences, None) is None
    assert occurrence_weights(correspondences, {k: 2 for k in keys}) is None
    weights = occurrence_weights(correspondences, {keys[0]: 3, keys[2]: 1})
    assert np.array_equal(weights, [3.0, 1.0, 1.0])
    assert keys[1] == CorrespondenceKey(1, DESC_TYPE, 1)
