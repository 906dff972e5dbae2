import numpy as np

from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose, project_to_rotation, rotation_angle_between
from loc_app.testing.synthetic import look_at, make_camera


def test_pose_inverse_and_compose() -> None:
    pose = Pose.from_rvec(np.array([0.1, -0.3, 0.2]), np.array([1.0, 2.0, -0.5]))
    identity = pose.compose(pose.inverse())

    assert np.allclose(identity.R, np.eye(3), atol=1e-12)
    assert np.allclose(identity.t, 0.0, atol=1e-12)

    X = np.array([[0.3, -1.0, 4.0], [2.0, 0.5, 6.0]])
    other = Pose.from_rvec(np.array([0.0, 0.2, 0.0]), np.array([0.1, 0.0, 0.0]))
    # compose applies the right operand first.
    assert np.allclose(other.compose(pose).transform(X), other.transform(pose.transform(X)))


def test_pose_center_maps_to_origin() -> None:
    pose = look_at(center=(1.0, -2.0, -5.0), target=(0.0, 0.0, 0.0))

    assert np.allclose(pose.center, [1.0, -2.0, -5.0])
    assert np.allclose(pose.transform(pose.center[None, :]), 0.0, atol=1e-12)
    # The target lies on the optical axis.
    target_cam = pose.transform(np.zeros((1, 3)))[0]
    assert target_cam[2] > 0
    assert np.allclose(target_cam[:2], 0.0, atol=1e-12)


def test_rotation_helpers() -> None:
    R = Pose.from_rvec(np.array([0.0, 0.0, 0.3]), np.zeros(3)).R

    assert abs(rotation_angle_between(R, np.eye(3)) - 0.3) < 1e-12
    assert rotation_angle_between(R, R) < 1e-7

    noisy = R + 1e-3 * np.arange(9).reshape(3, 3)
    projected = project_to_rotation(noisy)
    assert np.allclose(projected @ projected.T, np.eye(3), atol=1e-12)
    assert np.linalg.det(projected) > 0


def test_camera_projection_and_normalization() -> None:
    camera = make_camera(k1=-0.05, k2=0.01)
    pose = look_at(center=(0.0, 0.0, -6.0), target=(0.0, 0.0, 0.0))
    X = np.array([[0.5, 0.4, 0.0], [-1.0, 0.8, 1.0], [0.0, 0.0, -1.0]])

    uv = camera.project(pose, X)
    xy = camera.normalized(uv)
    Xc = pose.transform(X)

    assert np.allclose(xy, Xc[:, :2] / Xc[:, 2:3], atol=1e-5)

    bearings = camera.bearings(uv)
    assert np.allclose(np.linalg.norm(bearings, axis=1), 1.0)
    assert np.allclose(bearings, Xc / np.linalg.norm(Xc, axis=1, keepdims=True), atol=1e-5)


def test_camera_from_K_and_params() -> None:
    K = np.array([[702.0, 0.0, 401.0], [0.0, 698.0, 299.0], [0.0, 0.0, 1.0]])
    camera = PinholeRadialK3.from_K(K, 800, 600, np.array([0.1, -0.02, 0.001, 0.002, 0.003]))

    assert camera.focal == 700.0
    assert (camera.ppx, camera.ppy) == (401.0, 299.0)
    assert (camera.k1, camera.k2, camera.k3) == (0.1, -0.02, 0.003)
    assert np.allclose(camera.dist_coeffs, [0.1, -0.02, 0.0, 0.0, 0.003])
    assert camera.with_params(camera.params()) == camera
