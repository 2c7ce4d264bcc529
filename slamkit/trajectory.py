"""Camera and keyframe trajectories in the TUM and KITTI text formats.

Frame poses are kept relative to a reference keyframe, so that later
optimisation of the keyframes moves the frames with them. When a reference
keyframe has been culled, the spanning tree is walked up to the first
keyframe that is still valid. All poses are aligned so that the keyframe
with the smallest id is at the origin.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Union

import numpy as np

PathLike = Union[str, "os.PathLike[str]"]


def has_suffix(text, suffix):
    """Whether ``text`` ends with ``suffix``."""
    return text.endswith(suffix)


def rotation_to_quaternion(R):
    """Convert a 3x3 rotation matrix to a unit quaternion ``[x, y, z, w]``."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError("R must be a 3x3 matrix")
    q = np.zeros(4)
    trace = R[0, 0] + R[1, 1] + R[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        q[3] = 0.5 * t
        t = 0.5 / t
        q[0] = (R[2, 1] - R[1, 2]) * t
        q[1] = (R[0, 2] - R[2, 0]) * t
        q[2] = (R[1, 0] - R[0, 1]) * t
    else:
        i = 0
        if R[1, 1] > R[0, 0]:
            i = 1
        if R[2, 2] > R[i, i]:
            i = 2
        j = (i + 1) % 3
        k = (j + 1) % 3
        t = math.sqrt(R[i, i] - R[j, j] - R[k, k] + 1.0)
        q[i] = 0.5 * t
        t = 0.5 / t
        q[3] = (R[k, j] - R[j, k]) * t
        q[j] = (R[j, i] + R[i, j]) * t
        q[k] = (R[k, i] + R[i, k]) * t
    return q


def _as_pose(matrix, name):
    T = np.asarray(matrix, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"{name} must be a 4x4 matrix")
    return T


@dataclass(eq=False)
class KeyFrameNode:
    """A keyframe in the spanning tree.

    ``pose`` is the world-to-camera transform. A culled keyframe is ``bad``
    and keeps ``pose_to_parent``, its pose relative to ``parent``.
    """

    id: int
    timestamp: float
    pose: np.ndarray = field(default_factory=lambda: np.eye(4))
    bad: bool = False
    parent: Optional["KeyFrameNode"] = None
    pose_to_parent: Optional[np.ndarray] = None

    def __post_init__(self):
        self.pose = _as_pose(self.pose, "pose")
        if self.pose_to_parent is not None:
            self.pose_to_parent = _as_pose(self.pose_to_parent, "pose_to_parent")

    @property
    def rotation(self):
        return self.pose[:3, :3].copy()

    @property
    def translation(self):
        return self.pose[:3, 3].copy()

    @property
    def camera_center(self):
        return -self.pose[:3, :3].T @ self.pose[:3, 3]

    @property
    def pose_inverse(self):
        Rwc = self.pose[:3, :3].T
        Twc = np.eye(4)
        Twc[:3, :3] = Rwc
        Twc[:3, 3] = -Rwc @ self.pose[:3, 3]
        return Twc

    def resolve(self):
        """World-to-camera pose, walking up the tree past culled keyframes."""
        T = np.eye(4)
        node = self
        visited = set()
        while node.bad:
            if node.parent is None or node.pose_to_parent is None:
                raise ValueError(f"keyframe {node.id} is bad and has no parent")
            if id(node) in visited:
                raise ValueError("cycle in the keyframe spanning tree")
            visited.add(id(node))
            T = T @ node.pose_to_parent
            node = node.parent
        return T @ node.pose


@dataclass
class FrameRecord:
    """A tracked frame: its pose relative to its reference keyframe."""

    relative_pose: np.ndarray
    reference: KeyFrameNode
    timestamp: float
    lost: bool = False

    def __post_init__(self):
        self.relative_pose = _as_pose(self.relative_pose, "relative_pose")


def _origin(keyframes: Sequence[KeyFrameNode]):
    if not keyframes:
        raise ValueError("at least one keyframe is required")
    return min(keyframes, key=lambda kf: kf.id).pose_inverse


def _frame_poses(records: Iterable[FrameRecord], keyframes, skip_lost):
    Two = _origin(list(keyframes))
    for record in records:
        if skip_lost and record.lost:
            continue
        Trw = record.reference.resolve() @ Two
        Tcw = record.relative_pose @ Trw
        Rwc = Tcw[:3, :3].T
        twc = -Rwc @ Tcw[:3, 3]
        yield record, Rwc, twc


def _fmt(values, precision):
    return " ".join(f"{float(np.float32(v)):.{precision}f}" for v in values)


def write_trajectory_tum(path: PathLike, records, keyframes):
    """Write every tracked (not lost) frame pose in TUM format."""
    lines = []
    for record, Rwc, twc in _frame_poses(records, keyframes, skip_lost=True):
        q = rotation_to_quaternion(Rwc)
        lines.append(f"{record.timestamp:.6f} {_fmt(list(twc) + list(q), 9)}\n")
    with open(path, "w", encoding="ascii") as f:
        f.writelines(lines)


def write_keyframe_trajectory_tum(path: PathLike, keyframes):
    """Write the pose of every valid keyframe, ordered by id, in TUM format."""
    lines = []
    for kf in sorted(keyframes, key=lambda k: k.id):
        if kf.bad:
            continue
        q = rotation_to_quaternion(kf.rotation.T)
        center = kf.camera_center
        lines.append(f"{kf.timestamp:.6f} {_fmt(list(center) + list(q), 7)}\n")
    with open(path, "w", encoding="ascii") as f:
        f.writelines(lines)


def write_trajectory_kitti(path: PathLike, records, keyframes):
    """Write every frame pose as a flattened 3x4 ``[R | t]`` in KITTI format."""
    lines = []
    for _, Rwc, twc in _frame_poses(records, keyframes, skip_lost=False):
        values = []
        for row in range(3):
            values.extend(Rwc[row])
            values.append(twc[row])
        lines.append(_fmt(values, 9) + "\n")
    with open(path, "w", encoding="ascii") as f:
        f.writelines(lines)