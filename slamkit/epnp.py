"""Efficient Perspective-n-Point (EPnP) camera pose estimation.

The pose of a calibrated pinhole camera is recovered from 3D world points and
their 2D projections. Four virtual control points are chosen from a PCA of the
world points. Three closed-form approximations of the control-point
coordinates in the camera frame are each refined with Gauss-Newton. The
candidate with the lowest mean reprojection error is returned.
"""

from __future__ import annotations

import numpy as np

_GAUSS_NEWTON_ITERATIONS = 5
_CONTROL_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))


def qr_solve(A, b):
    """Solve ``A x = b`` in the least-squares sense with Householder QR.

    ``A`` must have at least as many rows as columns. Raises
    ``numpy.linalg.LinAlgError`` when a column of ``A`` is entirely zero.
    """
    A = np.array(A, dtype=np.float64)
    b = np.array(b, dtype=np.float64).reshape(-1)
    if A.ndim != 2:
        raise ValueError("A must be a two-dimensional matrix")
    nr, nc = A.shape
    if nr < nc:
        raise ValueError("A must have at least as many rows as columns")
    if b.shape[0] != nr:
        raise ValueError("b must have one entry per row of A")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        column = A[k:, k]
        eta = np.max(np.abs(column))
        if eta == 0:
            raise np.linalg.LinAlgError("matrix is singular")
        A[k:, k] /= eta
        sigma = float(np.sqrt(A[k:, k] @ A[k:, k]))
        if A[k, k] < 0:
            sigma = -sigma
        A[k, k] += sigma
        a1[k] = sigma * A[k, k]
        a2[k] = -eta * sigma
        if k + 1 < nc:
            tau = (A[k:, k] @ A[k:, k + 1:]) / a1[k]
            A[k:, k + 1:] -= np.outer(A[k:, k], tau)

    # b <- Q^T b
    for j in range(nc):
        tau = (A[j:, j] @ b[j:]) / a1[j]
        b[j:] -= tau * A[j:, j]

    # x = R^-1 b
    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (b[i] - A[i, i + 1:] @ x[i + 1:]) / a2[i]
    return x


def mat_to_quat(R):
    """Convert a 3x3 rotation matrix to a quaternion ``[x, y, z, w]``."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError("R must be a 3x3 matrix")
    tr = R[0, 0] + R[1, 1] + R[2, 2]
    if tr > 0.0:
        q = np.array([R[1, 2] - R[2, 1], R[2, 0] - R[0, 2], R[0, 1] - R[1, 0], tr + 1.0])
        n4 = q[3]
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        q = np.array([
            1.0 + R[0, 0] - R[1, 1] - R[2, 2],
            R[1, 0] + R[0, 1],
            R[2, 0] + R[0, 2],
            R[1, 2] - R[2, 1],
        ])
        n4 = q[0]
    elif R[1, 1] > R[2, 2]:
        q = np.array([
            R[1, 0] + R[0, 1],
            1.0 + R[1, 1] - R[0, 0] - R[2, 2],
            R[2, 1] + R[1, 2],
            R[2, 0] - R[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            R[2, 0] + R[0, 2],
            R[2, 1] + R[1, 2],
            1.0 + R[2, 2] - R[0, 0] - R[1, 1],
            R[0, 1] - R[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / np.sqrt(n4))


def relative_error(R_true, t_true, R_est, t_est):
    """Return ``(rotation_error, translation_error)`` relative to the true pose.

    The rotation error compares quaternions, taking the smaller of the
    distances to ``q`` and ``-q``. Both errors are normalised by the norm of
    the true quantity.
    """
    q_true = mat_to_quat(R_true)
    q_est = mat_to_quat(R_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(
        np.linalg.norm(q_true - q_est) / q_norm,
        np.linalg.norm(q_true + q_est) / q_norm,
    )
    t_true = np.asarray(t_true, dtype=np.float64).reshape(3)
    t_est = np.asarray(t_est, dtype=np.float64).reshape(3)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def _choose_control_points(pws):
    centroid = pws.mean(axis=0)
    centred = pws - centroid
    U, singular, _ = np.linalg.svd(centred.T @ centred)
    uct = U.T
    n = pws.shape[0]
    cws = np.empty((4, 3))
    cws[0] = centroid
    for i in range(1, 4):
        k = np.sqrt(singular[i - 1] / n)
        cws[i] = centroid + k * uct[i - 1]
    return cws


def _barycentric_coordinates(pws, cws):
    cc = (cws[1:] - cws[0]).T
    cc_inv = np.linalg.pinv(cc)
    alphas = np.empty((pws.shape[0], 4))
    alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
    alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
    return alphas


def _compute_L_6x10(ut):
    v = [ut[11 - i].reshape(4, 3) for i in range(4)]
    dv = np.array([[vi[a] - vi[b] for a, b in _CONTROL_PAIRS] for vi in v])
    L = np.empty((6, 10))
    for i in range(6):
        d0, d1, d2, d3 = dv[0, i], dv[1, i], dv[2, i], dv[3, i]
        L[i] = (
            d0 @ d0,
            2.0 * (d0 @ d1),
            d1 @ d1,
            2.0 * (d0 @ d2),
            2.0 * (d1 @ d2),
            d2 @ d2,
            2.0 * (d0 @ d3),
            2.0 * (d1 @ d3),
            2.0 * (d2 @ d3),
            d3 @ d3,
        )
    return L


def _compute_rho(cws):
    return np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _CONTROL_PAIRS])


def _solve_svd(L, rho):
    return np.linalg.lstsq(L, rho, rcond=None)[0]


# betas10        = [B11 B12 B22 B13 B23 B33 B14 B24 B34 B44]
# betas_approx_1 = [B11 B12     B13         B14]
def _find_betas_approx_1(L, rho):
    b4 = _solve_svd(L[:, [0, 1, 3, 6]], rho)
    betas = np.zeros(4)
    with np.errstate(divide="ignore", invalid="ignore"):
        if b4[0] < 0:
            betas[0] = np.sqrt(-b4[0])
            betas[1:] = -b4[1:] / betas[0]
        else:
            betas[0] = np.sqrt(b4[0])
            betas[1:] = b4[1:] / betas[0]
    return betas


# betas_approx_2 = [B11 B12 B22                            ]
def _find_betas_approx_2(L, rho):
    b3 = _solve_svd(L[:, :3], rho)
    betas = np.zeros(4)
    if b3[0] < 0:
        betas[0] = np.sqrt(-b3[0])
        betas[1] = np.sqrt(-b3[2]) if b3[2] < 0 else 0.0
    else:
        betas[0] = np.sqrt(b3[0])
        betas[1] = np.sqrt(b3[2]) if b3[2] > 0 else 0.0
    if b3[1] < 0:
        betas[0] = -betas[0]
    return betas


# betas_approx_3 = [B11 B12 B22 B13 B23                    ]
def _find_betas_approx_3(L, rho):
    b5 = _solve_svd(L[:, :5], rho)
    betas = np.zeros(4)
    if b5[0] < 0:
        betas[0] = np.sqrt(-b5[0])
        betas[1] = np.sqrt(-b5[2]) if b5[2] < 0 else 0.0
    else:
        betas[0] = np.sqrt(b5[0])
        betas[1] = np.sqrt(b5[2]) if b5[2] > 0 else 0.0
    if b5[1] < 0:
        betas[0] = -betas[0]
    with np.errstate(divide="ignore", invalid="ignore"):
        betas[2] = b5[3] / betas[0]
    return betas


def _gauss_newton(L, rho, betas):
    betas = betas.copy()
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        b0, b1, b2, b3 = betas
        A = np.column_stack((
            2 * L[:, 0] * b0 + L[:, 1] * b1 + L[:, 3] * b2 + L[:, 6] * b3,
            L[:, 1] * b0 + 2 * L[:, 2] * b1 + L[:, 4] * b2 + L[:, 7] * b3,
            L[:, 3] * b0 + L[:, 4] * b1 + 2 * L[:, 5] * b2 + L[:, 8] * b3,
            L[:, 6] * b0 + L[:, 7] * b1 + L[:, 8] * b2 + 2 * L[:, 9] * b3,
        ))
        products = np.array([
            b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
            b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
        ])
        residual = rho - L @ products
        try:
            step = qr_solve(A, residual)
        except np.linalg.LinAlgError:
            break
        betas += step
    return betas


def _estimate_R_and_t(pcs, pws):
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    U, _, Vt = np.linalg.svd(abt)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        R[2] = -R[2]
    t = pc0 - R @ pw0
    return R, t


class EPnP:
    """EPnP solver for a pinhole camera with intrinsics ``fu, fv, uc, vc``."""

    def __init__(self, fu, fv, uc, vc):
        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)

    @staticmethod
    def _validate(world_points, image_points):
        pws = np.asarray(world_points, dtype=np.float64)
        us = np.asarray(image_points, dtype=np.float64)
        if pws.ndim != 2 or pws.shape[1] != 3:
            raise ValueError("world_points must have shape (n, 3)")
        if us.ndim != 2 or us.shape[1] != 2:
            raise ValueError("image_points must have shape (n, 2)")
        if pws.shape[0] != us.shape[0]:
            raise ValueError("world_points and image_points differ in length")
        if pws.shape[0] == 0:
            raise ValueError("at least one correspondence is required")
        return pws, us

    def reprojection_error(self, R, t, world_points, image_points):
        """Mean Euclidean distance between projected and observed points."""
        pws, us = self._validate(world_points, image_points)
        R = np.asarray(R, dtype=np.float64)
        t = np.asarray(t, dtype=np.float64).reshape(3)
        pc = pws @ R.T + t
        inv_z = 1.0 / pc[:, 2]
        ue = self.uc + self.fu * pc[:, 0] * inv_z
        ve = self.vc + self.fv * pc[:, 1] * inv_z
        dist = np.hypot(us[:, 0] - ue, us[:, 1] - ve)
        return float(dist.mean())

    def _design_matrix(self, alphas, us):
        n = alphas.shape[0]
        M = np.zeros((2 * n, 12))
        for i in range(4):
            a = alphas[:, i]
            M[0::2, 3 * i] = a * self.fu
            M[0::2, 3 * i + 2] = a * (self.uc - us[:, 0])
            M[1::2, 3 * i + 1] = a * self.fv
            M[1::2, 3 * i + 2] = a * (self.vc - us[:, 1])
        return M

    def _pose_from_betas(self, ut, betas, alphas, pws, us):
        ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
        pcs = alphas @ ccs
        if pcs[0, 2] < 0.0:
            pcs = -pcs
        R, t = _estimate_R_and_t(pcs, pws)
        return R, t, self.reprojection_error(R, t, pws, us)

    def compute_pose(self, world_points, image_points):
        """Estimate the camera pose.

        Returns ``(R, t, error)`` where ``R`` is 3x3, ``t`` has three entries
        and ``error`` is the mean reprojection error in pixels.
        """
        pws, us = self._validate(world_points, image_points)
        cws = _choose_control_points(pws)
        alphas = _barycentric_coordinates(pws, cws)

        M = self._design_matrix(alphas, us)
        U, _, _ = np.linalg.svd(M.T @ M)
        ut = U.T

        L = _compute_L_6x10(ut)
        rho = _compute_rho(cws)

        candidates = []
        for approximation in (_find_betas_approx_1, _find_betas_approx_2, _find_betas_approx_3):
            betas = _gauss_newton(L, rho, approximation(L, rho))
            candidates.append(self._pose_from_betas(ut, betas, alphas, pws, us))

        best = candidates[0]
        if candidates[1][2] < best[2]:
            best = candidates[1]
        if candidates[2][2] < best[2]:
            best = candidates[2]
        return best