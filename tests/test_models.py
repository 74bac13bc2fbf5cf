import numpy as np
import pytest

from stacksolve.core.errors import (
    IllDefinedDataPointsError,
    NoninvertibleModelError,
    NotEnoughDataPointsError,
)
from stacksolve.core.models import (
    AffineModel,
    InterpolatedModel,
    RigidModel,
    TranslationModel,
    create_regularizer,
    make_regularized_model,
)


@pytest.fixture
def points():
    return np.array([[0.0, 0.0], [100.0, 0.0], [100.0, 80.0], [0.0, 80.0], [40.0, 30.0]])


def test_translation_fit(points):
    model = TranslationModel()
    model.fit(points, points + [3.0, -2.0])
    assert model.tx == pytest.approx(3.0)
    assert model.ty == pytest.approx(-2.0)


def test_rigid_fit_recovers_rotation(points):
    angle = 0.1
    c, s = np.cos(angle), np.sin(angle)
    target = points @ np.array([[c, -s], [s, c]]).T + [10.0, 5.0]

    model = RigidModel()
    model.fit(points, target)

    assert model.angle == pytest.approx(angle)
    np.testing.assert_allclose(model.apply(points), target, atol=1e-9)


def test_affine_fit_recovers_shear(points):
    truth = AffineModel(np.array([[1.02, 0.05, 7.0], [-0.03, 0.98, -4.0]]))
    model = AffineModel()
    model.fit(points, truth.apply(points))
    np.testing.assert_allclose(model.m, truth.m, atol=1e-9)


def test_weighted_fit_ignores_zero_weight_outlier(points):
    target = points + [1.0, 1.0]
    target[-1] += [50.0, 50.0]
    weights = np.array([1.0, 1.0, 1.0, 1.0, 0.0])

    model = AffineModel()
    model.fit(points, target, weights)
    np.testing.assert_allclose(model.m[:, 2], [1.0, 1.0], atol=1e-9)


def test_not_enough_points():
    with pytest.raises(NotEnoughDataPointsError):
        AffineModel().fit(np.zeros((2, 2)), np.zeros((2, 2)))
    with pytest.raises(NotEnoughDataPointsError):
        RigidModel().fit(np.zeros((1, 2)), np.zeros((1, 2)))


def test_collinear_points_are_ill_defined():
    p = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [3.0, 3.0]])
    with pytest.raises(IllDefinedDataPointsError):
        AffineModel().fit(p, p)


def test_zero_weights_are_ill_defined(points):
    with pytest.raises(IllDefinedDataPointsError):
        TranslationModel().fit(points, points, np.zeros(len(points)))


def test_then_applies_self_first(points):
    a = AffineModel(np.array([[2.0, 0.0, 0.0], [0.0, 2.0, 0.0]]))
    b = TranslationModel(5.0, 0.0)
    np.testing.assert_allclose(a.then(b).apply(points), b.apply(a.apply(points)))


def test_concatenate_and_pre_concatenate(points):
    a = AffineModel(np.array([[1.0, 0.2, 3.0], [0.0, 1.0, -1.0]]))
    b = AffineModel(np.array([[0.5, 0.0, 2.0], [0.0, 0.5, 4.0]]))

    pre = a.copy()
    pre.pre_concatenate(b)
    np.testing.assert_allclose(pre.apply(points), b.apply(a.apply(points)))

    post = a.copy()
    post.concatenate(b)
    np.testing.assert_allclose(post.apply(points), a.apply(b.apply(points)))


def test_inverse(points):
    model = AffineModel(np.array([[1.1, 0.1, 5.0], [-0.2, 0.9, 3.0]]))
    np.testing.assert_allclose(model.inverse().apply(model.apply(points)), points, atol=1e-9)


def test_singular_inverse_raises():
    with pytest.raises(NoninvertibleModelError):
        AffineModel(np.array([[1.0, 2.0, 0.0], [2.0, 4.0, 0.0]])).inverse()


def test_interpolate_endpoints():
    a = AffineModel(np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]))
    b = AffineModel(np.array([[1.0, 0.0, 10.0], [0.0, 1.0, 20.0]]))
    assert AffineModel.interpolate(a, b, 0.0) == a
    assert AffineModel.interpolate(a, b, 1.0) == b
    np.testing.assert_allclose(AffineModel.interpolate(a, b, 0.25).m[:, 2], [2.5, 5.0])


def test_array_round_trip_is_exact():
    model = AffineModel(np.array([[0.1 + 0.2, 1e-17, 1234.5678901234], [np.pi, np.e, -0.3]]))
    values = model.to_array()
    assert values[1] == model.m[1, 0]
    assert AffineModel.from_array(values) == model


def test_interpolated_model_blends_fits(points):
    truth = AffineModel(np.array([[1.1, 0.0, 0.0], [0.0, 1.1, 0.0]]))
    target = truth.apply(points)

    model = InterpolatedModel(AffineModel(), RigidModel(), 0.0)
    model.fit(points, target)
    np.testing.assert_allclose(model.apply(points), target, atol=1e-9)

    model.set_lambda(1.0)
    np.testing.assert_allclose(model.to_matrix(), model.b.to_matrix())


def test_translation_regularizer_lambda():
    regularizer = create_regularizer('rigid', lambda_translation=0.3)
    assert isinstance(regularizer, InterpolatedModel)

    model = InterpolatedModel(AffineModel(), regularizer, 1.0)
    model.set_lambda(0.5, 0.8)
    assert model.lambda_ == 0.5
    assert model.b.lambda_ == 0.8


def test_unknown_regularizer():
    with pytest.raises(ValueError):
        create_regularizer('similarity')


def test_regularized_model_starts_at_previous():
    previous = AffineModel(np.array([[1.0, 0.0, 15.0], [0.0, 1.0, -7.0]]))
    model = make_regularized_model(previous, 100.0, 80.0, 'rigid', lambda_=0.7)
    np.testing.assert_allclose(model.to_matrix(), previous.to_matrix(), atol=1e-9)
    assert model.create_affine() is not previous
