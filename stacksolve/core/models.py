"""
2D transform models for tile alignment

All models map tile-local pixel coordinates to world coordinates and share
one capability interface:
- fit(p, q, w): weighted least-squares fit so that apply(p) ~ q
- apply(points): map an Nx2 array of points
- to_matrix(): 3x3 homogeneous matrix
- create_affine(): bake the model into a concrete AffineModel
- copy()

The set of variants is closed: translation, rigid, affine and the
interpolated (regularized) blend of two of them.
"""

import numpy as np
from typing import Optional, Sequence
import logging

from stacksolve.core.errors import (
    IllDefinedDataPointsError,
    NoninvertibleModelError,
    NotEnoughDataPointsError,
)

logger = logging.getLogger(__name__)

# Relative tolerance for singular normal equations
_SINGULAR_EPS = 1e-12


def _prepare_fit_data(p: np.ndarray, q: np.ndarray, w: Optional[np.ndarray], min_points: int):
    """Validate fit input, return float arrays, weights and weighted centroids."""
    p = np.asarray(p, dtype=np.float64).reshape(-1, 2)
    q = np.asarray(q, dtype=np.float64).reshape(-1, 2)
    if len(p) != len(q):
        raise ValueError(f"Point count mismatch: {len(p)} vs {len(q)}")

    if len(p) < min_points:
        raise NotEnoughDataPointsError(
            f"{len(p)} data points are not enough, at least {min_points} required"
        )

    if w is None:
        w = np.ones(len(p), dtype=np.float64)
    else:
        w = np.asarray(w, dtype=np.float64).reshape(-1)

    w_sum = w.sum()
    if w_sum <= 0:
        raise IllDefinedDataPointsError("Sum of point match weights is zero")

    pc = (w[:, None] * p).sum(axis=0) / w_sum
    qc = (w[:, None] * q).sum(axis=0) / w_sum
    return p, q, w, pc, qc


class TransformModel:
    """Common interface of all transform models"""

    min_num_matches = 1

    def fit(self, p: np.ndarray, q: np.ndarray, w: Optional[np.ndarray] = None) -> None:
        raise NotImplementedError

    def to_matrix(self) -> np.ndarray:
        raise NotImplementedError

    def copy(self) -> "TransformModel":
        raise NotImplementedError

    def apply(self, points: np.ndarray) -> np.ndarray:
        """Map Nx2 local points to world coordinates"""
        m = self.to_matrix()
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return points @ m[:2, :2].T + m[:2, 2]

    def create_affine(self) -> "AffineModel":
        return AffineModel(self.to_matrix())

    def __repr__(self) -> str:
        m = self.to_matrix()
        return (f"{type(self).__name__}([{m[0, 0]:.6f}, {m[0, 1]:.6f}, {m[0, 2]:.3f}], "
                f"[{m[1, 0]:.6f}, {m[1, 1]:.6f}, {m[1, 2]:.3f}])")


class TranslationModel(TransformModel):
    """Pure translation"""

    min_num_matches = 1

    def __init__(self, tx: float = 0.0, ty: float = 0.0):
        self.tx = float(tx)
        self.ty = float(ty)

    def fit(self, p, q, w=None):
        _, _, _, pc, qc = _prepare_fit_data(p, q, w, self.min_num_matches)
        self.tx, self.ty = (qc - pc).tolist()

    def to_matrix(self):
        return np.array([[1.0, 0.0, self.tx],
                         [0.0, 1.0, self.ty],
                         [0.0, 0.0, 1.0]])

    def copy(self):
        return TranslationModel(self.tx, self.ty)


class RigidModel(TransformModel):
    """Rotation + translation (closed-form weighted Procrustes fit)"""

    min_num_matches = 2

    def __init__(self, angle: float = 0.0, tx: float = 0.0, ty: float = 0.0):
        self.angle = float(angle)
        self.tx = float(tx)
        self.ty = float(ty)

    def fit(self, p, q, w=None):
        p, q, w, pc, qc = _prepare_fit_data(p, q, w, self.min_num_matches)
        dp = p - pc
        dq = q - qc

        cos_sum = np.sum(w * (dp[:, 0] * dq[:, 0] + dp[:, 1] * dq[:, 1]))
        sin_sum = np.sum(w * (dp[:, 0] * dq[:, 1] - dp[:, 1] * dq[:, 0]))

        if abs(cos_sum) < _SINGULAR_EPS and abs(sin_sum) < _SINGULAR_EPS:
            raise IllDefinedDataPointsError("Rigid fit needs at least two distinct points")

        angle = np.arctan2(sin_sum, cos_sum)
        c, s = np.cos(angle), np.sin(angle)

        self.angle = float(angle)
        self.tx = float(qc[0] - (c * pc[0] - s * pc[1]))
        self.ty = float(qc[1] - (s * pc[0] + c * pc[1]))

    def to_matrix(self):
        c, s = np.cos(self.angle), np.sin(self.angle)
        return np.array([[c, -s, self.tx],
                         [s, c, self.ty],
                         [0.0, 0.0, 1.0]])

    def copy(self):
        return RigidModel(self.angle, self.tx, self.ty)


class AffineModel(TransformModel):
    """
    Full 2D affine transform

    Stored as a 2x3 matrix [[m00, m01, m02], [m10, m11, m12]].
    """

    min_num_matches = 3

    def __init__(self, matrix: Optional[np.ndarray] = None):
        if matrix is None:
            self.m = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        else:
            self.m = np.array(matrix, dtype=np.float64)[:2, :3].copy()

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "AffineModel":
        """Create from the 6 parameters (m00, m10, m01, m11, m02, m12)"""
        m00, m10, m01, m11, m02, m12 = [float(v) for v in values]
        return cls(np.array([[m00, m01, m02], [m10, m11, m12]]))

    def to_array(self) -> list:
        """6 parameters (m00, m10, m01, m11, m02, m12)"""
        m = self.m
        return [float(m[0, 0]), float(m[1, 0]), float(m[0, 1]),
                float(m[1, 1]), float(m[0, 2]), float(m[1, 2])]

    def fit(self, p, q, w=None):
        p, q, w, pc, qc = _prepare_fit_data(p, q, w, self.min_num_matches)
        dp = p - pc
        dq = q - qc

        wp = w[:, None] * dp
        spp = wp.T @ dp
        spq = wp.T @ dq

        det = np.linalg.det(spp)
        scale = max(1.0, float(np.trace(spp)) ** 2)
        if abs(det) <= _SINGULAR_EPS * scale:
            raise IllDefinedDataPointsError("Affine fit is ill-defined (collinear points?)")

        a = np.linalg.solve(spp, spq).T
        t = qc - a @ pc

        self.m = np.column_stack([a, t])

    def to_matrix(self):
        return np.vstack([self.m, [0.0, 0.0, 1.0]])

    def copy(self):
        return AffineModel(self.m)

    def create_affine(self):
        return self.copy()

    def then(self, other: TransformModel) -> "AffineModel":
        """New model that applies this model first, then `other`"""
        return AffineModel(other.to_matrix() @ self.to_matrix())

    def pre_concatenate(self, other: TransformModel) -> None:
        """In place: afterwards this model applies itself first, then `other`"""
        self.m = (other.to_matrix() @ self.to_matrix())[:2, :3].copy()

    def concatenate(self, other: TransformModel) -> None:
        """In place: afterwards this model applies `other` first, then itself"""
        self.m = (self.to_matrix() @ other.to_matrix())[:2, :3].copy()

    def inverse(self) -> "AffineModel":
        det = np.linalg.det(self.m[:, :2])
        if abs(det) < _SINGULAR_EPS:
            raise NoninvertibleModelError(f"Model is not invertible (det={det:.3e})")
        return AffineModel(np.linalg.inv(self.to_matrix()))

    @staticmethod
    def interpolate(a: TransformModel, b: TransformModel, lambda_: float) -> "AffineModel":
        """Matrix blend (1 - lambda) * a + lambda * b"""
        return AffineModel((1.0 - lambda_) * a.to_matrix() + lambda_ * b.to_matrix())

    def __eq__(self, other):
        return isinstance(other, AffineModel) and np.array_equal(self.m, other.m)

    def __hash__(self):
        return hash(tuple(self.to_array()))


class InterpolatedModel(TransformModel):
    """
    Regularized model: (1 - lambda) * a + lambda * b

    Both models are fitted to the same data, the result is the matrix blend.
    With a = affine and b = rigid, lambda 1.0 is rigid-like and lambda 0.0
    is fully affine.
    """

    def __init__(self, a: TransformModel, b: TransformModel, lambda_: float):
        self.a = a
        self.b = b
        self.lambda_ = float(lambda_)

    @property
    def min_num_matches(self):
        return max(self.a.min_num_matches, self.b.min_num_matches)

    def set_lambda(self, lambda_: float, lambda_translation: Optional[float] = None):
        self.lambda_ = float(lambda_)
        if lambda_translation is not None and isinstance(self.b, InterpolatedModel):
            self.b.set_lambda(lambda_translation)

    def fit(self, p, q, w=None):
        self.a.fit(p, q, w)
        self.b.fit(p, q, w)

    def to_matrix(self):
        return (1.0 - self.lambda_) * self.a.to_matrix() + self.lambda_ * self.b.to_matrix()

    def copy(self):
        return InterpolatedModel(self.a.copy(), self.b.copy(), self.lambda_)


REGULARIZERS = {
    'rigid': RigidModel,
    'translation': TranslationModel,
}


def create_regularizer(name: str, lambda_translation: Optional[float] = None) -> TransformModel:
    """
    Create the regularizer model.

    Args:
        name: 'rigid' or 'translation'
        lambda_translation: if set (rigid only), the regularizer itself is a
            rigid/translation blend with this weight on the translation

    Returns:
        New regularizer model
    """
    if name not in REGULARIZERS:
        raise ValueError(f"Unknown regularizer '{name}', expected one of {sorted(REGULARIZERS)}")

    if lambda_translation is not None and name == 'rigid':
        return InterpolatedModel(RigidModel(), TranslationModel(), lambda_translation)
    return REGULARIZERS[name]()


def make_regularized_model(
    previous: AffineModel,
    width: float,
    height: float,
    regularizer: str = 'rigid',
    lambda_: float = 1.0,
    lambda_translation: Optional[float] = None
) -> InterpolatedModel:
    """
    Build the per-tile solve model initialized from the previous transform.

    The affine part starts as a copy of `previous`, the regularizer is fitted
    to `previous` sampled at the tile corners so that the blend starts close
    to the pre-solve placement.
    """
    model = InterpolatedModel(previous.copy(), create_regularizer(regularizer, lambda_translation), lambda_)

    corners = np.array([[0.0, 0.0], [width, 0.0], [width, height], [0.0, height]])
    try:
        model.b.fit(corners, previous.apply(corners))
    except (NotEnoughDataPointsError, IllDefinedDataPointsError):
        logger.debug("Could not initialize regularizer from previous model, using identity")

    return model
