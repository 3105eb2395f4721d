import numpy as np
import pytest

from openpop.survey import COVARIATE_PLACEHOLDER, SurveyData


def counts(shape=(3, 2, 3), value=1.0):
    return np.full(shape, value)


def test_missing_slots_are_masked_not_zero():
    y = counts()
    y[0, 1, 2] = np.nan
    data = SurveyData(y)
    assert not data.observed[0, 1, 2]
    assert data.n_observed() == y.size - 1
    assert np.isnan(data.y[0, 1, 2])
    assert data.y[0, 1, 1] == 1.0


def test_masked_array_and_none_inputs():
    y = np.ma.masked_array(np.ones((2, 2, 2)), mask=np.zeros((2, 2, 2), dtype=bool))
    y[1, 0, 0] = np.ma.masked
    assert not SurveyData(y).observed[1, 0, 0]

    nested = [[[1, None], [2, 3]], [[0, 0], [None, None]]]
    data = SurveyData(nested)
    assert data.shape == (2, 2, 2)
    assert data.observed.sum() == 5


def test_shape_errors_fail_fast():
    with pytest.raises(ValueError):
        SurveyData(np.ones((2, 3)))
    with pytest.raises(ValueError):
        SurveyData(counts(), n_sites=4)
    with pytest.raises(ValueError):
        SurveyData(counts(), n_visits=2)
    with pytest.raises(ValueError):
        SurveyData(counts(), hour=np.ones((3, 2, 2)))
    with pytest.raises(ValueError):
        SurveyData(counts(), habitat=["a", "b"])
    with pytest.raises(ValueError):
        SurveyData(counts(), mean_flower_abundance=np.ones((3, 3)))


def test_invalid_counts_rejected():
    with pytest.raises(ValueError):
        SurveyData(counts(value=-1.0))
    with pytest.raises(ValueError):
        SurveyData(counts(value=1.5))


def test_season_covariate_must_be_complete():
    mf = np.ones((3, 2))
    mf[0, 0] = np.nan
    with pytest.raises(ValueError):
        SurveyData(counts(), mean_flower_abundance=mf)


def test_missing_observation_covariates_backfilled():
    hour = np.zeros((3, 2, 3))
    hour[1, 1, 1] = np.nan
    y = counts()
    y[2, 0, 0] = np.nan
    data = SurveyData(y, hour=hour)
    assert data.covariate("hour")[1, 1, 1] == COVARIATE_PLACEHOLDER
    assert data.covariate("hour")[2, 0, 0] == 0.0
    # response missingness is kept independently of covariate backfill
    assert data.observed[1, 1, 1]
    assert not data.observed[2, 0, 0]


def test_custom_placeholder():
    hour = np.full((3, 2, 3), np.nan)
    data = SurveyData(counts(), hour=hour, placeholder=0.0)
    assert np.all(data.covariate("hour") == 0.0)


def test_habitat_dummies_use_first_level_as_reference():
    data = SurveyData(counts(), habitat=["wood", "grass", "wood"])
    assert data.habitat_levels == ["grass", "wood"]
    X, labels = data.covariate_block("habitat", (3, 1))
    assert labels == ["habitat:wood"]
    assert X.shape == (3, 1, 1)
    assert X[:, 0, 0].tolist() == [1.0, 0.0, 1.0]


def test_season_covariate_for_transitions_uses_starting_season():
    mf = np.arange(6.0).reshape(3, 2)
    data = SurveyData(counts(), mean_flower_abundance=mf)
    X, labels = data.covariate_block("mean_flower_abundance", (3, 1))
    assert labels == ["mean_flower_abundance"]
    assert np.array_equal(X[..., 0], mf[:, :1])


def test_observation_covariate_only_for_visit_shape():
    data = SurveyData(counts(), hour=np.zeros((3, 2, 3)))
    with pytest.raises(ValueError):
        data.covariate_block("hour", (3, 1))
    with pytest.raises(ValueError):
        data.covariate_block("flower_abundance", (3, 2, 3))


def test_data_is_immutable():
    data = SurveyData(counts())
    with pytest.raises(ValueError):
        data.counts[0, 0, 0] = 5


def test_max_counts_ignore_missing():
    y = np.array([[[1.0, np.nan], [np.nan, np.nan]]])
    data = SurveyData(y)
    assert data.max_counts().tolist() == [[1, 0]]


def test_with_missing_returns_new_data():
    data = SurveyData(counts(), hour=np.zeros((3, 2, 3)), habitat=["a", "b", "a"])
    fewer = data.with_missing(0, 0, 0)
    assert data.observed[0, 0, 0]
    assert not fewer.observed[0, 0, 0]
    assert fewer.shape == data.shape
    assert fewer.covariate_names == data.covariate_names
