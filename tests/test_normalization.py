"""Tests for log-normalization with size factors."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scanpy_scran import (
    FeatureClass,
    FeatureClassMismatchError,
    InvalidArgumentError,
    NormalizationConfig,
    SizeFactors,
    ZeroSizeFactorError,
    pp,
)


@pytest.fixture
def small() -> ad.AnnData:
    X = np.array(
        [
            [0.0, 4.0, 10.0, 2.0],
            [3.0, 1.0, 0.0, 6.0],
            [8.0, 0.0, 5.0, 1.0],
        ]
    )
    return ad.AnnData(
        X=X,
        obs=pd.DataFrame(index=["c0", "c1", "c2"]),
        var=pd.DataFrame(
            {"spike": [False, False, True, True]}, index=["g0", "g1", "s0", "s1"]
        ),
    )


def _factors(values, feature_class=FeatureClass.ENDOGENOUS) -> SizeFactors:
    return SizeFactors(
        pd.Series(values, index=["c0", "c1", "c2"], dtype=np.float64),
        feature_class=feature_class,
    )


def test_unit_factors_are_identity(small):
    endo = small[:, ["g0", "g1"]].copy()
    ret = pp.log_norm_counts(endo, _factors([1.0, 1.0, 1.0]), log=False)
    np.testing.assert_array_equal(ret, endo.X)


def test_log_transform(small):
    endo = small[:, ["g0", "g1"]].copy()
    ret = pp.log_norm_counts(endo, _factors([1.0, 2.0, 3.0]))
    sf = np.array([0.5, 1.0, 1.5])
    np.testing.assert_allclose(ret, np.log2(endo.X / sf[:, None] + 1))

    ret = pp.log_norm_counts(
        endo, _factors([1.0, 2.0, 3.0]), pseudo_count=0.5, center_size_factors=False
    )
    sf = np.array([1.0, 2.0, 3.0])
    np.testing.assert_allclose(ret, np.log2(endo.X / sf[:, None] + 0.5))


def test_sparse_stays_sparse(small):
    endo = small[:, ["g0", "g1"]].copy()
    dense = pp.log_norm_counts(endo, _factors([1.0, 2.0, 3.0]))
    endo.X = sparse.csr_matrix(endo.X)
    ret = pp.log_norm_counts(endo, _factors([1.0, 2.0, 3.0]))
    assert sparse.issparse(ret)
    np.testing.assert_allclose(ret.toarray(), dense)


def test_factors_follow_obs_names(small):
    endo = small[:, ["g0", "g1"]].copy()
    shuffled = SizeFactors(pd.Series([3.0, 1.0, 2.0], index=["c2", "c0", "c1"]))
    np.testing.assert_allclose(
        pp.log_norm_counts(endo, shuffled),
        pp.log_norm_counts(endo, _factors([1.0, 2.0, 3.0])),
    )


def test_requires_size_factors_object(small):
    endo = small[:, ["g0", "g1"]].copy()
    with pytest.raises(InvalidArgumentError):
        pp.log_norm_counts(endo, np.array([1.0, 2.0, 3.0]))
    with pytest.raises(InvalidArgumentError):
        pp.log_norm_counts(endo)


def test_spike_factors_refused_for_genes(small):
    endo = small[:, ["g0", "g1"]].copy()
    with pytest.raises(FeatureClassMismatchError):
        pp.log_norm_counts(endo, _factors([1.0, 2.0, 3.0], FeatureClass.SPIKE_IN))


def test_endogenous_factors_refused_for_spikes(small):
    endo_sf = _factors([1.0, 2.0, 3.0])
    with pytest.raises(FeatureClassMismatchError):
        pp.log_norm_counts(small, endo_sf, spike_rows="spike")
    with pytest.raises(FeatureClassMismatchError):
        pp.log_norm_counts(small, endo_sf, spike_rows="spike", spike_factors=endo_sf)
    with pytest.raises(InvalidArgumentError):
        pp.log_norm_counts(
            small, endo_sf, spike_factors=_factors([1.0, 1.0, 1.0], "spike_in")
        )


def test_mixed_normalization(small):
    endo_sf = _factors([1.0, 2.0, 3.0])
    spike_sf = _factors([2.0, 1.0, 3.0], FeatureClass.SPIKE_IN)
    ret = pp.log_norm_counts(small, endo_sf, spike_rows="spike", spike_factors=spike_sf)
    assert ret.shape == small.shape
    np.testing.assert_allclose(
        ret[:, :2], np.log2(small.X[:, :2] / np.array([[0.5], [1.0], [1.5]]) + 1)
    )
    np.testing.assert_allclose(
        ret[:, 2:], np.log2(small.X[:, 2:] / np.array([[1.0], [0.5], [1.5]]) + 1)
    )


def test_only_spikes(small):
    spikes = small[:, ["s0", "s1"]].copy()
    spike_sf = _factors([2.0, 1.0, 3.0], "spike_in")
    ret = pp.log_norm_counts(spikes, spike_rows="spike", spike_factors=spike_sf)
    np.testing.assert_allclose(
        ret, np.log2(spikes.X / np.array([[1.0], [0.5], [1.5]]) + 1)
    )


def test_inplace(small):
    ret = pp.log_norm_counts(
        small,
        _factors([1.0, 2.0, 3.0]),
        spike_rows=["s0", "s1"],
        spike_factors=_factors([1.0, 1.0, 1.0], "spike_in"),
        config=NormalizationConfig(log=False),
        inplace=True,
        key_added="normcounts",
    )
    assert ret is None
    np.testing.assert_allclose(small.layers["normcounts"][:, 2:], small.X[:, 2:])
    np.testing.assert_allclose(small.layers["normcounts"][1, :2], small.X[1, :2])


def test_layer_is_used(small):
    endo = small[:, ["g0", "g1"]].copy()
    endo.layers["counts"] = endo.X * 2
    ret = pp.log_norm_counts(endo, _factors([1.0, 1.0, 1.0]), layer="counts", log=False)
    np.testing.assert_allclose(ret, endo.X * 2)


def test_factor_count_must_match(small):
    endo = small[:, ["g0", "g1"]].copy()
    with pytest.raises(InvalidArgumentError):
        pp.log_norm_counts(endo, SizeFactors(pd.Series([1.0, 2.0])))
    with pytest.raises(ZeroSizeFactorError):
        _factors([1.0, -1.0, 2.0])
