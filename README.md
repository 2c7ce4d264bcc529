# slamkit

Geometric building blocks for visual SLAM pipelines, written on top of NumPy.

## What is inside

- `slamkit.epnp` — the EPnP camera pose solver. `EPnP(fu, fv, uc, vc)` holds
  the pinhole intrinsics; `compute_pose(world_points, image_points)` returns
  `(R, t, error)`, with `error` the mean reprojection error in pixels, and
  `reprojection_error(R, t, world_points, image_points)` scores any pose.
  Helpers: `qr_solve(A, b)` (Householder least squares, raises
  `numpy.linalg.LinAlgError` on a zero column), `mat_to_quat(R)` and
  `relative_error(R_true, t_true, R_est, t_est)`.
- `slamkit.pnp_ransac` — `PnPSolver`, a RANSAC wrapper around EPnP. It takes a
  list of `Correspondence(index, world, image, sigma2)` objects, the number of
  matches in the frame and the intrinsics, and returns a `PnPResult` with
  `pose` (4x4 world-to-camera, or `None`), `inliers` (one flag per frame
  match), `n_inliers`, `no_more` and `found`.
- `slamkit.viewer_control` — `ViewerControl`, a thread-safe stop/finish
  handshake for a rendering loop (`start`, `request_stop`, `stop`,
  `is_stopped`, `release`, `request_finish`, `check_finish`, `set_finish`,
  `is_finished`).
- `slamkit.trajectory` — trajectory export in TUM and KITTI text formats
  from `KeyFrameNode` and `FrameRecord` objects, plus `rotation_to_quaternion`
  and `has_suffix`.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Camera pose from 2D–3D points

```python
import numpy as np
from slamkit.epnp import EPnP

solver = EPnP(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
world = np.random.default_rng(0).uniform(-1, 1, size=(20, 3)) + [0, 0, 5]
image = world[:, :2] / world[:, 2:] * 500.0 + [320.0, 240.0]

R, t, error = solver.compute_pose(world, image)
```

## Relocalisation with RANSAC

```python
import random
from slamkit.pnp_ransac import Correspondence, PnPSolver

matches = [
    Correspondence(index=i, world=tuple(w), image=tuple(u), sigma2=1.0)
    for i, (w, u) in enumerate(zip(world, image))
]
solver = PnPSolver(matches, len(matches), 500.0, 500.0, 320.0, 240.0, rng=random.Random(0))
solver.set_ransac_parameters(0.99, 10, 300, 4, 0.5, 5.991)

result = solver.find()
if result.found:
    print(result.pose, result.n_inliers)
```

`iterate(n)` runs a few iterations at a time and keeps its count between
calls; `no_more` becomes true once the iteration budget is spent. The minimum
number of inliers and the iteration budget are adapted to the number of
correspondences, as `set_ransac_parameters` describes.

## Viewer loop signalling

```python
from slamkit.viewer_control import ViewerControl

control = ViewerControl()   # not started: counts as stopped and finished
control.start()
control.request_stop()
assert control.stop()       # the loop pauses here
control.release()
control.request_finish()
assert control.check_finish()
control.set_finish()
```

## Exporting trajectories

Keyframes form a spanning tree: a `KeyFrameNode` has an `id`, a `timestamp`, a
world-to-camera `pose`, and, when culled (`bad=True`), a `parent` and its
`pose_to_parent`. `KeyFrameNode.resolve()` walks up past culled keyframes to a
world-to-camera pose. A `FrameRecord` stores a frame's pose relative to its
reference keyframe, its timestamp and whether tracking was lost.

- `write_trajectory_tum(path, records, keyframes)` writes
  `timestamp tx ty tz qx qy qz qw` for every frame that was not lost.
- `write_keyframe_trajectory_tum(path, keyframes)` writes the same columns for
  every valid keyframe, in id order.
- `write_trajectory_kitti(path, records, keyframes)` writes each frame's pose
  as a flattened 3x4 `[R | t]`.

Frame poses are aligned so that the keyframe with the smallest id sits at the
origin.

## What this package does not do

slamkit holds solvers and utilities only. It has no tracker, local mapper or
loop closer, no feature extraction or vocabulary, no similarity (Sim3)
alignment, no saving or loading of maps, no drawing or window, and no
command-line program. It is meant to be called from code that provides those
parts.