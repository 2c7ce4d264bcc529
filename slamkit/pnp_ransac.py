"""RANSAC camera relocalisation from 2D-3D matches using EPnP.

Minimal sets of correspondences are drawn at random and a pose is computed
from each. Poses are scored by the number of correspondences whose squared
reprojection error is under a per-point threshold. A pose with enough support
is refined with all of its inliers before it is returned.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from slamkit.epnp import EPnP

DEFAULT_PROBABILITY = 0.99
DEFAULT_MIN_INLIERS = 8
DEFAULT_MAX_ITERATIONS = 300
DEFAULT_MIN_SET = 4
DEFAULT_EPSILON = 0.4
DEFAULT_TH2 = 5.991


@dataclass(frozen=True)
class Correspondence:
    """A keypoint matched to a map point.

    ``index`` is the keypoint's position in the frame's list of matches,
    ``world`` the map point in world coordinates, ``image`` the undistorted
    keypoint position and ``sigma2`` the variance of its pyramid level.
    """

    index: int
    world: tuple
    image: tuple
    sigma2: float = 1.0


@dataclass
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is a 4x4 world-to-camera transform, or ``None`` when no pose was
    found. ``inliers`` has one flag per match of the frame (empty when no pose
    was found). ``no_more`` tells that the iteration budget is spent.
    """

    pose: Optional[np.ndarray]
    inliers: list = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self) -> bool:
        return self.pose is not None


def _to_pose(R, t):
    T = np.eye(4, dtype=np.float32)
    T[:3, :3] = np.asarray(R, dtype=np.float32)
    T[:3, 3] = np.asarray(t, dtype=np.float32).reshape(3)
    return T


class PnPSolver:
    """RANSAC pose estimator over a frame's 2D-3D correspondences."""

    def __init__(self, correspondences: Sequence[Correspondence], n_matches, fx, fy, cx, cy,
                 rng=None):
        self.correspondences = list(correspondences)
        self.n_matches = int(n_matches)
        for c in self.correspondences:
            if not 0 <= c.index < self.n_matches:
                raise ValueError(f"correspondence index {c.index} out of range")
        self._world = np.array([c.world for c in self.correspondences],
                               dtype=np.float64).reshape(-1, 3)
        self._image = np.array([c.image for c in self.correspondences],
                               dtype=np.float64).reshape(-1, 2)
        self._sigma2 = np.array([c.sigma2 for c in self.correspondences], dtype=np.float64)
        self._indices = [c.index for c in self.correspondences]
        self._epnp = EPnP(fx, fy, cx, cy)
        self._rng = rng if rng is not None else random.Random()

        self.iterations = 0
        self._best_inliers = np.zeros(len(self.correspondences), dtype=bool)
        self._n_best_inliers = 0
        self._best_pose: Optional[np.ndarray] = None

        self.set_ransac_parameters()

    @property
    def n_correspondences(self) -> int:
        return len(self.correspondences)

    def set_ransac_parameters(self, probability=DEFAULT_PROBABILITY,
                              min_inliers=DEFAULT_MIN_INLIERS,
                              max_iterations=DEFAULT_MAX_ITERATIONS,
                              min_set=DEFAULT_MIN_SET, epsilon=DEFAULT_EPSILON,
                              th2=DEFAULT_TH2):
        """Configure RANSAC, adapting the thresholds to the number of matches."""
        n = self.n_correspondences
        self.probability = float(probability)
        self.min_set = int(min_set)

        n_min_inliers = max(int(n * epsilon), int(min_inliers), self.min_set)
        self.min_inliers = n_min_inliers

        if n > 0 and epsilon < n_min_inliers / n:
            epsilon = n_min_inliers / n
        self.epsilon = float(epsilon)

        if n == 0 or self.min_inliers == n:
            n_iterations = 1
        else:
            inlier_prob = self.epsilon ** 3
            if inlier_prob >= 1.0:
                n_iterations = 1
            elif self.probability >= 1.0:
                n_iterations = int(max_iterations)
            else:
                n_iterations = math.ceil(
                    math.log(1 - self.probability) / math.log(1 - inlier_prob))
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))

        self._max_error = self._sigma2 * float(th2)

    def _compute_pose(self, selection):
        try:
            R, t, _ = self._epnp.compute_pose(self._world[selection], self._image[selection])
        except (np.linalg.LinAlgError, ValueError):
            return None
        return R, t

    def _check_inliers(self, pose):
        if pose is None:
            return np.zeros(self.n_correspondences, dtype=bool)
        R, t = pose
        pc = self._world @ R.T + t
        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z = 1.0 / pc[:, 2]
            ue = self._epnp.uc + self._epnp.fu * pc[:, 0] * inv_z
            ve = self._epnp.vc + self._epnp.fv * pc[:, 1] * inv_z
            error2 = (self._image[:, 0] - ue) ** 2 + (self._image[:, 1] - ve) ** 2
            return error2 < self._max_error

    def _frame_inliers(self, mask):
        flags = [False] * self.n_matches
        for idx, inlier in zip(self._indices, mask):
            if inlier:
                flags[idx] = True
        return flags

    def _sample(self):
        available = list(range(self.n_correspondences))
        chosen = []
        for _ in range(self.min_set):
            r = self._rng.randint(0, len(available) - 1)
            chosen.append(available[r])
            available[r] = available[-1]
            available.pop()
        return chosen

    def _refine(self):
        selection = np.flatnonzero(self._best_inliers)
        pose = self._compute_pose(selection)
        mask = self._check_inliers(pose)
        n = int(mask.sum())
        if pose is not None and n > self.min_inliers:
            return _to_pose(*pose), mask, n
        return None

    def iterate(self, n_iterations):
        """Run at least ``n_iterations`` RANSAC iterations and return a result."""
        n = self.n_correspondences
        if n < self.min_inliers or n < self.min_set:
            return PnPResult(pose=None, no_more=True)

        current = 0
        while self.iterations < self.max_iterations or current < n_iterations:
            current += 1
            self.iterations += 1

            pose = self._compute_pose(self._sample())
            mask = self._check_inliers(pose)
            n_inliers = int(mask.sum())

            if n_inliers >= self.min_inliers:
                if n_inliers > self._n_best_inliers:
                    self._best_inliers = mask
                    self._n_best_inliers = n_inliers
                    self._best_pose = _to_pose(*pose)

                refined = self._refine()
                if refined is not None:
                    T, refined_mask, n_refined = refined
                    return PnPResult(pose=T.copy(), inliers=self._frame_inliers(refined_mask),
                                     n_inliers=n_refined, no_more=False)

        if self.iterations >= self.max_iterations:
            if self._n_best_inliers >= self.min_inliers and self._best_pose is not None:
                return PnPResult(pose=self._best_pose.copy(),
                                 inliers=self._frame_inliers(self._best_inliers),
                                 n_inliers=self._n_best_inliers, no_more=True)
            return PnPResult(pose=None, no_more=True)
        return PnPResult(pose=None)

    def find(self):
        """Run RANSAC for the full iteration budget."""
        return self.iterate(self.max_iterations)