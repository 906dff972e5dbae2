import numpy as np
import pytest

from loc_app.config import DescriberPreset, LocalizerParameters, ViewMatchParameters
from loc_app.features.keypoints import Regions
from loc_app.localization.localizer import LandmarkLocalizer, ViewMatchLocalizer
from loc_app.scene.data_structures import Landmark, MapData, Observation, View
from loc_app.testing.synthetic import (
    DESC_TYPE,
    make_map,
    make_query_regions,
    make_rig,
    pose_errors,
    query_pose,
)

IMAGE_SIZE = (800, 600)


class StubDescriber:
    """Returns fixed regions whatever the image."""

    def __init__(self, regions):
        self.regions = regions
        self.calls = []

    def describe(self, image, preset):
        self.calls.append((image.shape, preset))
        return self.regions


@pytest.fixture
def scene():
    return make_map(np.random.default_rng(0), n_landmarks=200, n_views=3)


@pytest.fixture
def query(scene):
    regions, owners = make_query_regions(
        np.random.default_rng(1), scene, query_pose(), noise_px=0.3, n_clutter=40
    )
    return regions, owners


def _assert_inliers_are_true_matches(result, owners) -> None:
    for i in result.inliers:
        c = result.correspondences[i]
        assert owners[c.feature_index] == c.landmark_id


def test_invalid_map_disables_localizer(scene, query) -> None:
    map_data = MapData()
    map_data.views[0] = View(id=0, width=800, height=600, intrinsic_id=0, pose_id=0)
    map_data.landmarks[0] = Landmark(id=0, xyz=np.zeros(3), desc_type=DESC_TYPE)
    map_data.landmarks[0].observations[7] = Observation(
        view_id=7, uv=np.zeros(2), descriptor=np.zeros(128, dtype=np.float32)
    )
    regions, _ = query

    localizer = LandmarkLocalizer(map_data)
    ok, result = localizer.localize_regions(regions, IMAGE_SIZE, LocalizerParameters(), scene.camera)

    assert not localizer.is_init
    assert not ok
    assert result.pose is None
    assert not result.is_valid


@pytest.mark.parametrize("localizer_cls", [LandmarkLocalizer, ViewMatchLocalizer])
def test_empty_map_is_not_initialized(localizer_cls) -> None:
    localizer = localizer_cls(MapData())

    ok, result = localizer.localize(np.zeros((600, 800), dtype=np.uint8), LocalizerParameters())

    assert not localizer.is_init
    assert not ok
    assert result.pose is None
    assert result.image_size == IMAGE_SIZE


def test_landmark_localizer_from_regions(scene, query) -> None:
    regions, owners = query
    localizer = LandmarkLocalizer(scene.map_data)

    ok, result = localizer.localize_regions(
        regions, IMAGE_SIZE, LocalizerParameters(seed=0), scene.camera, image_path="q.png"
    )

    t_err, r_err = pose_errors(result.pose, query_pose())
    assert localizer.is_init
    assert ok and result.is_valid
    assert result.image_path == "q.png"
    assert result.inlier_count >= 100
    assert t_err < 0.05
    assert r_err < 0.005
    _assert_inliers_are_true_matches(result, owners)


def test_localize_extracts_features_with_describer(scene, query) -> None:
    regions, owners = query
    describer = StubDescriber(regions)
    localizer = LandmarkLocalizer(scene.map_data, describer=describer)
    params = LocalizerParameters(feature_preset=DescriberPreset.HIGH, seed=0)

    ok, result = localizer.localize(np.zeros((600, 800), dtype=np.uint8), params, scene.camera)

    assert ok
    assert describer.calls == [((600, 800), DescriberPreset.HIGH)]
    assert result.image_size == IMAGE_SIZE
    _assert_inliers_are_true_matches(result, owners)


def test_localize_estimates_unknown_intrinsics(scene, query) -> None:
    regions, _ = query
    localizer = LandmarkLocalizer(scene.map_data)

    ok, result = localizer.localize_regions(regions, IMAGE_SIZE, LocalizerParameters(seed=0))

    assert ok
    assert result.intrinsics is not None
    assert result.intrinsics.focal == pytest.approx(scene.camera.focal, rel=0.05)


@pytest.mark.parametrize(
    "params",
    [ViewMatchParameters(seed=0), LocalizerParameters(seed=0)],
    ids=["view-params", "base-params"],
)
def test_view_match_localizer(scene, query, params) -> None:
    regions, owners = query
    localizer = ViewMatchLocalizer(scene.map_data)

    ok, result = localizer.localize_regions(regions, IMAGE_SIZE, params, scene.camera)

    t_err, r_err = pose_errors(result.pose, query_pose())
    assert localizer.is_init
    assert ok
    assert t_err < 0.05
    assert r_err < 0.005
    _assert_inliers_are_true_matches(result, owners)


def test_visual_debug_writes_image(scene, query, tmp_path) -> None:
    regions, _ = query
    localizer = LandmarkLocalizer(scene.map_data)
    params = LocalizerParameters(visual_debug=str(tmp_path / "debug"), seed=0)

    ok, _ = localizer.localize_regions(regions, IMAGE_SIZE, params, scene.camera, image_path="imgs/q.jpg")

    assert ok
    assert (tmp_path / "debug" / "q_loc.png").is_file()


def test_visual_debug_on_failure(scene, tmp_path) -> None:
    localizer = LandmarkLocalizer(scene.map_data)
    params = LocalizerParameters(visual_debug=str(tmp_path))

    ok, result = localizer.localize_regions({}, IMAGE_SIZE, params, scene.camera)

    assert not ok
    assert result.pose is None
    assert (tmp_path / "query_loc.png").is_file()


def test_no_matches_is_reported_not_raised(scene) -> None:
    localizer = LandmarkLocalizer(scene.map_data)
    empty = {DESC_TYPE: Regions(keypoints=np.zeros((0, 2)), descriptors=np.zeros((0, 128), dtype=np.float32))}

    ok, result = localizer.localize_regions(empty, IMAGE_SIZE, LocalizerParameters(), scene.camera)

    assert not ok
    assert result.pose is None
    assert len(result.correspondences) == 0


@pytest.mark.parametrize("naive", [True, False])
def test_localize_rig_regions(scene, naive) -> None:
    rng = np.random.default_rng(2)
    rig_pose = query_pose()
    sub_poses = make_rig(2)
    regions = []
    for sub_pose in sub_poses:
        r, _ = make_query_regions(rng, scene, sub_pose.compose(rig_pose), n_clutter=20)
        regions.append(r)

    localizer = LandmarkLocalizer(scene.map_data)
    params = LocalizerParameters(use_localize_rig_naive=naive, seed=0)
    ok, result = localizer.localize_rig_regions(
        regions, [IMAGE_SIZE] * 2, params, [scene.camera] * 2, sub_poses
    )

    t_err, r_err = pose_errors(result.pose, rig_pose)
    assert ok
    assert result.num_cameras == 2
    assert result.num_cameras_localized == 2
    assert t_err < 1e-3
    assert r_err < 1e-4


def test_localize_rig_with_images(scene, tmp_path) -> None:
    rng = np.random.default_rng(3)
    rig_pose = query_pose()
    sub_poses = make_rig(1)
    regions, _ = make_query_regions(rng, scene, sub_poses[0].compose(rig_pose))
    localizer = LandmarkLocalizer(scene.map_data, describer=StubDescriber(regions))
    params = LocalizerParameters(visual_debug=str(tmp_path), seed=0)

    ok, result = localizer.localize_rig(
        [np.zeros((600, 800, 3), dtype=np.uint8)], params, [scene.camera], sub_poses
    )

    assert ok
    assert result.results[0].is_valid
    assert (tmp_path / "camera_0_loc.png").is_file()


def test_localize_rig_mismatched_inputs_fails_cleanly(scene, query) -> None:
    regions, _ = query
    localizer = LandmarkLocalizer(scene.map_data)

    ok, result = localizer.localize_rig_regions(
        [regions, regions], [IMAGE_SIZE] * 2, LocalizerParameters(), [scene.camera] * 2, make_rig(3)
    )

    assert not ok
    assert result.pose is None
    assert result.num_cameras == 2


@pytest.mark.parametrize("image", [None, np.zeros(800, dtype=np.uint8), np.zeros((0, 0), dtype=np.uint8)])
def test_malformed_query_image_fails_cleanly(scene, image) -> None:
    localizer = LandmarkLocalizer(scene.map_data, describer=StubDescriber({}))

    ok, result = localizer.localize(image, LocalizerParameters(), scene.camera, image_path="bad.png")

    assert not ok
    assert result.pose is None
    assert result.image_size == (0, 0)
    assert result.image_path == "bad.png"
    assert localizer.describer.calls == []


@pytest.mark.parametrize("image", [None, np.zeros(800, dtype=np.uint8)])
def test_malformed_rig_image_fails_cleanly(scene, image) -> None:
    localizer = LandmarkLocalizer(scene.map_data, describer=StubDescriber({}))
    images = [np.zeros((600, 800), dtype=np.uint8), image]

    ok, result = localizer.localize_rig(images, LocalizerParameters(), [scene.camera] * 2, make_rig(2))

    assert not ok
    assert result.pose is None
    assert [r.image_size for r in result.results] == [IMAGE_SIZE, (0, 0)]


def test_malformed_regions_fail_cleanly(scene) -> None:
    localizer = LandmarkLocalizer(scene.map_data)
    broken = {DESC_TYPE: Regions(keypoints=None, descriptors=None)}

    ok, result = localizer.localize_regions(broken, IMAGE_SIZE, LocalizerParameters(), scene.camera)

    assert not ok
    assert result.pose is None


def test_unwritable_debug_directory_keeps_result(scene, query, tmp_path) -> None:
    regions, _ = query
    not_a_directory = tmp_path / "debug"
    not_a_directory.write_text("")
    localizer = LandmarkLocalizer(scene.map_data)
    params = LocalizerParameters(visual_debug=str(not_a_directory), seed=0)

    ok, result = localizer.localize_regions(regions, IMAGE_SIZE, params, scene.camera, image_path="q.png")

    assert ok
    assert result.is_valid
    assert not_a_directory.is_file()


def test_unwritable_debug_directory_keeps_rig_result(scene, tmp_path) -> None:
    rig_pose = query_pose()
    sub_poses = make_rig(2)
    rng = np.random.default_rng(4)
    regions = [make_query_regions(rng, scene, s.compose(rig_pose))[0] for s in sub_poses]
    not_a_directory = tmp_path / "debug"
    not_a_directory.write_text("")
    localizer = LandmarkLocalizer(scene.map_data)
    params = LocalizerParameters(visual_debug=str(not_a_directory), seed=0)

    ok, result = localizer.localize_rig_regions(
        regions, [IMAGE_SIZE] * 2, params, [scene.camera] * 2, sub_poses
    )

    assert ok
    assert result.num_cameras_localized == 2
