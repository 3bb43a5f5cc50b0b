"""Robust relative pose estimators used for geometric outlier rejection.

All estimators return poses ``ref_T_cur`` (``p_ref = R @ p_cur + t``):

- ``estimate_essential_five_point``: five-point (Nister) RANSAC on bearing
  vectors via ``cv2.findEssentialMat``; unit-norm translation
- ``estimate_translation_given_rotation``: two-point translation direction
  RANSAC for a known rotation
- ``estimate_arun``: three-point absolute orientation RANSAC on 3D-3D
  correspondences, refit on all inliers
- ``estimate_translation_mahalanobis``: one-point translation consensus
  with per-correspondence covariances for a known rotation
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable

import cv2
import numpy as np

from .pose import SE3

logger = logging.getLogger(__name__)

RANSAC_SEED = 42


@dataclass
class RansacResult:
    """Result of a robust estimation.

    Attributes:
        success: True if a consensus model was found
        pose: Estimated ref_T_cur, None on failure
        inliers: (N,) boolean inlier mask over the input correspondences
        iterations: Number of hypotheses evaluated
        covariance: Optional 3x3 translation covariance
    """

    success: bool
    pose: SE3 | None
    inliers: np.ndarray
    iterations: int = 0
    covariance: np.ndarray | None = field(default=None)

    @classmethod
    def failure(cls, n: int, iterations: int = 0) -> RansacResult:
        return cls(success=False, pose=None, inliers=np.zeros(n, dtype=bool), iterations=iterations)

    @property
    def num_inliers(self) -> int:
        """Return number of inliers."""
        return int(np.count_nonzero(self.inliers))


def make_rng(randomize: bool) -> np.random.Generator:
    """Return a RANSAC random generator, seeded unless ``randomize``."""
    return np.random.default_rng() if randomize else np.random.default_rng(RANSAC_SEED)


def adaptive_iterations(
    inlier_ratio: float, sample_size: int, probability: float, max_iterations: int
) -> int:
    """Number of samples needed to draw one outlier-free sample with ``probability``.

    k = log(1 - p) / log(1 - w^s), capped at ``max_iterations``.
    """
    if inlier_ratio <= 0.0:
        return max_iterations
    outlier_free = inlier_ratio**sample_size
    if outlier_free >= 1.0:
        return 1
    if probability >= 1.0:
        return max_iterations
    denominator = math.log(1.0 - outlier_free)
    if denominator == 0.0:
        return max_iterations
    k = math.ceil(math.log(1.0 - probability) / denominator)
    return int(min(max(k, 1), max_iterations))


def ransac(
    n_points: int,
    sample_size: int,
    fit: Callable[[np.ndarray], SE3 | None],
    residuals: Callable[[SE3], np.ndarray],
    threshold: float,
    max_iterations: int,
    probability: float,
    rng: np.random.Generator,
    refit: bool = True,
) -> RansacResult:
    """Generic RANSAC loop with adaptive termination.

    Args:
        n_points: Number of correspondences
        sample_size: Minimal sample size of ``fit``
        fit: Model from correspondence indices, None when degenerate
        residuals: (N,) residuals of a model over all correspondences
        threshold: Inlier threshold on the residuals
        max_iterations: Iteration cap
        probability: Desired probability of an outlier-free sample
        rng: Random generator used for sampling
        refit: Refit the best model on all its inliers

    Returns:
        RansacResult with the best model and its inliers
    """
    if n_points < sample_size:
        return RansacResult.failure(n_points)

    best_pose: SE3 | None = None
    best_inliers = np.zeros(n_points, dtype=bool)
    best_count = 0
    needed = max_iterations
    iterations = 0

    while iterations < needed:
        iterations += 1
        sample = rng.choice(n_points, size=sample_size, replace=False)
        model = fit(sample)
        if model is None:
            continue

        inliers = residuals(model) < threshold
        count = int(np.count_nonzero(inliers))
        if count > best_count:
            best_pose, best_inliers, best_count = model, inliers, count
            needed = adaptive_iterations(
                count / n_points, sample_size, probability, max_iterations
            )

    if best_pose is None or best_count < sample_size:
        return RansacResult.failure(n_points, iterations)

    if refit:
        refined = fit(np.flatnonzero(best_inliers))
        if refined is not None:
            refined_inliers = residuals(refined) < threshold
            if np.count_nonzero(refined_inliers) >= best_count:
                best_pose, best_inliers = refined, refined_inliers

    return RansacResult(success=True, pose=best_pose, inliers=best_inliers, iterations=iterations)


def arun(points_ref: np.ndarray, points_cur: np.ndarray) -> SE3 | None:
    """Closed-form least-squares rigid alignment (Arun et al. 1987).

    Finds R, t minimizing sum ||p_ref - (R p_cur + t)||^2.

    Returns:
        ref_T_cur, or None if the points are degenerate (collinear)
    """
    points_ref = np.asarray(points_ref, dtype=np.float64).reshape(-1, 3)
    points_cur = np.asarray(points_cur, dtype=np.float64).reshape(-1, 3)
    if len(points_ref) < 3:
        return None

    centroid_ref = points_ref.mean(axis=0)
    centroid_cur = points_cur.mean(axis=0)
    H = (points_cur - centroid_cur).T @ (points_ref - centroid_ref)

    U, S, Vt = np.linalg.svd(H)
    if S[1] <= 1e-9 * max(S[0], 1e-12):
        return None

    D = np.eye(3)
    D[2, 2] = np.sign(np.linalg.det(Vt.T @ U.T)) or 1.0
    R = Vt.T @ D @ U.T
    t = centroid_ref - R @ centroid_cur
    return SE3(rotation=R, translation=t)


def estimate_arun(
    points_ref: np.ndarray,
    points_cur: np.ndarray,
    threshold: float,
    max_iterations: int,
    probability: float,
    rng: np.random.Generator,
) -> RansacResult:
    """Three-point Arun RANSAC on 3D-3D correspondences (Euclidean residuals)."""
    points_ref = np.asarray(points_ref, dtype=np.float64).reshape(-1, 3)
    points_cur = np.asarray(points_cur, dtype=np.float64).reshape(-1, 3)

    def fit(indices: np.ndarray) -> SE3 | None:
        return arun(points_ref[indices], points_cur[indices])

    def residuals(pose: SE3) -> np.ndarray:
        return np.linalg.norm(points_ref - pose.transform_points(points_cur), axis=1)

    result = ransac(
        len(points_ref), 3, fit, residuals, threshold, max_iterations, probability, rng
    )
    logger.debug(
        "Arun RANSAC: %d correspondences, %d inliers, %d iterations",
        len(points_ref),
        result.num_inliers,
        result.iterations,
    )
    return result


def _normalized(versors: np.ndarray) -> np.ndarray:
    versors = np.asarray(versors, dtype=np.float64).reshape(-1, 3)
    return versors[:, :2] / versors[:, 2:3]


def estimate_essential_five_point(
    versors_ref: np.ndarray,
    versors_cur: np.ndarray,
    threshold: float,
    max_iterations: int,
    probability: float,
    randomize: bool = True,
) -> RansacResult:
    """Five-point RANSAC on matched bearing vectors.

    Bearing vectors are converted to normalized image coordinates and fed to
    ``cv2.findEssentialMat`` with an identity camera matrix, so ``threshold``
    is a distance on the normalized image plane. The reported iteration count
    is the adaptive number of samples implied by the final inlier ratio.

    Returns:
        RansacResult with ref_T_cur (unit translation) and the RANSAC inliers
    """
    n = len(versors_ref)
    if n < 5:
        return RansacResult.failure(n)

    pts_ref = _normalized(versors_ref)
    pts_cur = _normalized(versors_cur)
    if not randomize:
        cv2.setRNGSeed(RANSAC_SEED)

    try:
        E, mask = cv2.findEssentialMat(
            pts_cur,
            pts_ref,
            np.eye(3),
            method=cv2.RANSAC,
            prob=probability,
            threshold=threshold,
            maxIters=max_iterations,
        )
    except cv2.error as e:
        logger.debug("Five-point RANSAC failed: %s", e)
        return RansacResult.failure(n, max_iterations)

    if E is None or mask is None or E.shape[0] < 3:
        return RansacResult.failure(n, max_iterations)

    inliers = mask.reshape(-1).astype(bool)
    n_inliers = int(np.count_nonzero(inliers))
    if n_inliers < 5:
        return RansacResult.failure(n, max_iterations)

    _, R, t, _ = cv2.recoverPose(E[:3], pts_cur, pts_ref, np.eye(3), mask=mask.copy())
    iterations = adaptive_iterations(n_inliers / n, 5, probability, max_iterations)

    logger.debug(
        "Five-point RANSAC: %d correspondences, %d inliers, %d iterations",
        n,
        n_inliers,
        iterations,
    )
    return RansacResult(
        success=True,
        pose=SE3(rotation=R, translation=t.flatten()),
        inliers=inliers,
        iterations=iterations,
    )


def _epipolar_normals(
    versors_ref: np.ndarray, versors_cur: np.ndarray, R: np.ndarray
) -> np.ndarray:
    return np.cross(versors_cur @ R.T, versors_ref)


def _translation_sign(
    versors_ref: np.ndarray, versors_cur: np.ndarray, R: np.ndarray, t: np.ndarray
) -> float:
    """Pick the translation sign placing most points in front of both cameras."""
    rotated = versors_cur @ R.T
    votes = 0
    for f_ref, f_cur in zip(versors_ref, rotated):
        # Solve lambda_ref * f_ref - lambda_cur * f_cur = t in least squares
        A = np.column_stack([f_ref, -f_cur])
        depths, *_ = np.linalg.lstsq(A, t, rcond=None)
        if depths[0] > 0 and depths[1] > 0:
            votes += 1
        elif depths[0] < 0 and depths[1] < 0:
            votes -= 1
    return -1.0 if votes < 0 else 1.0


def estimate_translation_given_rotation(
    versors_ref: np.ndarray,
    versors_cur: np.ndarray,
    R: np.ndarray,
    threshold: float,
    max_iterations: int,
    probability: float,
    rng: np.random.Generator,
) -> RansacResult:
    """Two-point RANSAC for the translation direction with a known rotation.

    With ``R`` fixed the epipolar constraint is linear in ``t``:
    ``t . ((R f_cur) x f_ref) = 0``. Two correspondences give ``t`` as the
    cross product of their normals. The residual is the sine of the angle
    between ``f_ref`` and the epipolar plane spanned by ``t`` and ``R f_cur``.
    """
    versors_ref = np.asarray(versors_ref, dtype=np.float64).reshape(-1, 3)
    versors_cur = np.asarray(versors_cur, dtype=np.float64).reshape(-1, 3)
    R = np.asarray(R, dtype=np.float64)
    normals = _epipolar_normals(versors_ref, versors_cur, R)
    rotated_cur = versors_cur @ R.T

    def fit(indices: np.ndarray) -> SE3 | None:
        if len(indices) == 2:
            t = np.cross(normals[indices[0]], normals[indices[1]])
        else:
            # Null vector of the stacked normals
            _, _, Vt = np.linalg.svd(normals[indices])
            t = Vt[-1]
        norm = np.linalg.norm(t)
        if norm < 1e-12:
            return None
        return SE3(rotation=R, translation=t / norm)

    def residuals(pose: SE3) -> np.ndarray:
        plane_normals = np.cross(pose.translation, rotated_cur)
        norms = np.linalg.norm(plane_normals, axis=1)
        norms[norms < 1e-12] = 1e-12
        return np.abs(np.sum(versors_ref * plane_normals, axis=1)) / norms

    result = ransac(
        len(versors_ref), 2, fit, residuals, threshold, max_iterations, probability, rng
    )
    if result.success:
        t = result.pose.translation
        inliers = result.inliers
        sign = _translation_sign(versors_ref[inliers], versors_cur[inliers], R, t)
        result.pose = SE3(rotation=R, translation=sign * t)

    logger.debug(
        "Two-point translation RANSAC: %d correspondences, %d inliers, %d iterations",
        len(versors_ref),
        result.num_inliers,
        result.iterations,
    )
    return result


def estimate_translation_mahalanobis(
    translations: np.ndarray,
    covariances: np.ndarray,
    R: np.ndarray,
    threshold: float,
) -> RansacResult:
    """One-point translation consensus with a known rotation.

    Every correspondence ``i`` votes for ``t_i = p_ref_i - R p_cur_i`` with
    covariance ``C_i``. Each ``t_j`` is tried as hypothesis; ``i`` agrees
    when ``(t_i - t_j)^T (C_i + C_j)^-1 (t_i - t_j) < threshold``. The
    largest agreeing set gives the information-weighted mean translation and
    its covariance ``(sum C_i^-1)^-1``.

    Args:
        translations: Nx3 per-correspondence translations
        covariances: Nx3x3 per-correspondence translation covariances
        R: Fixed rotation ref_R_cur
        threshold: Squared Mahalanobis threshold

    Returns:
        RansacResult with pose, inliers and 3x3 translation covariance
    """
    translations = np.asarray(translations, dtype=np.float64).reshape(-1, 3)
    covariances = np.asarray(covariances, dtype=np.float64).reshape(-1, 3, 3)
    n = len(translations)
    if n == 0:
        return RansacResult.failure(0)

    best_inliers = np.zeros(n, dtype=bool)
    best_count = 0
    for j in range(n):
        diffs = translations - translations[j]
        sums = covariances + covariances[j]
        try:
            solved = np.linalg.solve(sums, diffs[:, :, np.newaxis])[:, :, 0]
        except np.linalg.LinAlgError:
            continue
        distances = np.sum(diffs * solved, axis=1)
        inliers = distances < threshold
        count = int(np.count_nonzero(inliers))
        if count > best_count:
            best_inliers, best_count = inliers, count

    if best_count == 0:
        return RansacResult.failure(n, n)

    information = np.linalg.inv(covariances[best_inliers])
    information_sum = information.sum(axis=0)
    weighted = np.einsum("nij,nj->i", information, translations[best_inliers])
    covariance = np.linalg.inv(information_sum)
    t = covariance @ weighted
    covariance = 0.5 * (covariance + covariance.T)

    logger.debug(
        "One-point Mahalanobis translation: %d correspondences, %d inliers",
        n,
        best_count,
    )
    return RansacResult(
        success=True,
        pose=SE3(rotation=R, translation=t),
        inliers=best_inliers,
        iterations=n,
        covariance=covariance,
    )
