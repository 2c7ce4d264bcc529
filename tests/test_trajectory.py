import math

import numpy as np
import pytest

from slamkit.trajectory import (
    FrameRecord,
    KeyFrameNode,
    has_suffix,
    rotation_to_quaternion,
    write_keyframe_trajectory_tum,
    write_trajectory_kitti,
    write_trajectory_tum,
)


def _pose(R=None, t=(0.0, 0.0, 0.0)):
    T = np.eye(4)
    if R is not None:
        T[:3, :3] = R
    T[:3, 3] = t
    return T


def _rot_z(theta):
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _rot_x(theta):
    c, s = math.cos(theta), math.sin(theta)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


def _read(path):
    return [[float(v) for v in line.split()] for line in path.read_text().splitlines()]


@pytest.mark.parametrize("text,suffix,expected", [
    ("ORBvoc.txt", ".txt", True),
    ("ORBvoc.bin", ".bin", True),
    ("ORBvoc.bin", ".txt", False),
    ("txt", ".txt", False),
    ("", ".bin", False),
])
def test_has_suffix(text, suffix, expected):
    assert has_suffix(text, suffix) is expected


def test_quaternion_of_identity():
    assert np.allclose(rotation_to_quaternion(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("theta", [0.3, 1.2, 2.5, math.pi])
def test_quaternion_about_z_axis(theta):
    q = rotation_to_quaternion(_rot_z(theta))
    expected = np.array([0.0, 0.0, math.sin(theta / 2), math.cos(theta / 2)])
    assert np.allclose(q, expected) or np.allclose(q, -expected)


@pytest.mark.parametrize("theta", [0.7, 2.9])
def test_quaternion_about_x_axis_is_unit(theta):
    q = rotation_to_quaternion(_rot_x(theta))
    assert math.isclose(np.linalg.norm(q), 1.0, rel_tol=1e-12)
    expected = np.array([math.sin(theta / 2), 0.0, 0.0, math.cos(theta / 2)])
    assert np.allclose(q, expected) or np.allclose(q, -expected)


def test_quaternion_rejects_bad_shape():
    with pytest.raises(ValueError):
        rotation_to_quaternion(np.eye(4))


def test_resolve_good_keyframe_returns_pose():
    kf = KeyFrameNode(id=0, timestamp=0.0, pose=_pose(t=(1.0, 2.0, 3.0)))
    assert np.allclose(kf.resolve(), kf.pose)


def test_resolve_walks_past_bad_keyframes():
    root = KeyFrameNode(id=0, timestamp=0.0, pose=_pose(t=(1.0, 0.0, 0.0)))
    Tcp1 = _pose(_rot_z(0.2), (0.0, 1.0, 0.0))
    Tcp2 = _pose(t=(0.0, 0.0, 2.0))
    mid = KeyFrameNode(id=1, timestamp=1.0, bad=True, parent=root, pose_to_parent=Tcp1)
    leaf = KeyFrameNode(id=2, timestamp=2.0, bad=True, parent=mid, pose_to_parent=Tcp2)
    assert np.allclose(leaf.resolve(), Tcp2 @ Tcp1 @ root.pose)


def test_resolve_bad_without_parent_raises():
    kf = KeyFrameNode(id=3, timestamp=0.0, bad=True)
    with pytest.raises(ValueError):
        kf.resolve()


def test_camera_center_and_inverse():
    kf = KeyFrameNode(id=0, timestamp=0.0, pose=_pose(_rot_z(0.4), (1.0, -2.0, 0.5)))
    assert np.allclose(kf.pose_inverse @ kf.pose, np.eye(4))
    assert np.allclose(kf.pose_inverse[:3, 3], kf.camera_center)


def test_keyframe_trajectory_skips_bad_and_sorts(tmp_path):
    a = KeyFrameNode(id=2, timestamp=2.25, pose=_pose(t=(-1.0, -2.0, -3.0)))
    b = KeyFrameNode(id=0, timestamp=1.5, pose=_pose(t=(0.5, 0.5, 0.5)))
    bad = KeyFrameNode(id=1, timestamp=9.0, bad=True, parent=b, pose_to_parent=np.eye(4))
    path = tmp_path / "kf.txt"
    write_keyframe_trajectory_tum(path, [a, bad, b])
    text = path.read_text().splitlines()
    assert len(text) == 2
    assert text[0].split()[0] == "1.500000"
    rows = _read(path)
    assert np.allclose(rows[0][1:4], [-0.5, -0.5, -0.5])
    assert np.allclose(rows[1][1:4], [1.0, 2.0, 3.0])
    assert np.allclose(rows[1][4:], [0.0, 0.0, 0.0, 1.0])
    assert len(text[1].split()[1].split(".")[1]) == 7


def test_tum_trajectory_skips_lost_frames(tmp_path):
    kf0 = KeyFrameNode(id=0, timestamp=0.0)
    kf1 = KeyFrameNode(id=1, timestamp=1.0, pose=_pose(t=(0.0, 0.0, -1.0)))
    records = [
        FrameRecord(_pose(t=(-1.0, 0.0, 0.0)), kf0, 0.5),
        FrameRecord(np.eye(4), kf1, 1.0, lost=True),
        FrameRecord(np.eye(4), kf1, 1.25),
    ]
    path = tmp_path / "traj.txt"
    write_trajectory_tum(path, records, [kf1, kf0])
    rows = _read(path)
    assert len(rows) == 2
    assert rows[0][0] == 0.5 and rows[1][0] == 1.25
    assert np.allclose(rows[0][1:4], [1.0, 0.0, 0.0])
    assert np.allclose(rows[1][1:4], [0.0, 0.0, 1.0])
    for row in rows:
        assert math.isclose(np.linalg.norm(row[4:]), 1.0, rel_tol=1e-6)


def test_tum_trajectory_is_relative_to_first_keyframe(tmp_path):
    offset = _pose(t=(3.0, 4.0, 5.0))
    kf0 = KeyFrameNode(id=0, timestamp=0.0, pose=offset)
    records = [FrameRecord(np.eye(4), kf0, 0.0)]
    path = tmp_path / "traj.txt"
    write_trajectory_tum(path, records, [kf0])
    assert np.allclose(_read(path)[0][1:4], [0.0, 0.0, 0.0])


def test_kitti_trajectory_rows(tmp_path):
    kf0 = KeyFrameNode(id=0, timestamp=0.0)
    R = _rot_z(0.5)
    records = [
        FrameRecord(_pose(R.T, (0.0, 0.0, 0.0)), kf0, 0.0),
        FrameRecord(_pose(t=(0.0, -2.0, 0.0)), kf0, 1.0, lost=True),
    ]
    path = tmp_path / "kitti.txt"
    write_trajectory_kitti(path, records, [kf0])
    rows = _read(path)
    assert len(rows) == 2
    assert all(len(r) == 12 for r in rows)
    first = np.array(rows[0]).reshape(3, 4)
    assert np.allclose(first[:, :3], R, atol=1e-6)
    second = np.array(rows[1]).reshape(3, 4)
    assert np.allclose(second[:, :3], np.eye(3))
    assert np.allclose(second[:, 3], [0.0, 2.0, 0.0])


def test_trajectory_without_keyframes_raises(tmp_path):
    kf0 = KeyFrameNode(id=0, timestamp=0.0)
    records = [FrameRecord(np.eye(4), kf0, 0.0)]
    with pytest.raises(ValueError):
        write_trajectory_tum(tmp_path / "a.txt", records, [])
    with pytest.raises(ValueError):
        write_trajectory_kitti(tmp_path / "b.txt", records, [])


def test_frame_record_rejects_bad_pose():
    kf0 = KeyFrameNode(id=0, timestamp=0.0)
    with pytest.raises(ValueError):
        FrameRecord(np.eye(3), kf0, 0.0)