import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy.stats import ks_2samp

from scatac_data_processing.enrichment import (ENRICHMENT_COLUMNS, find_motifs, joint_bins, match_region_stats,
                                               naive_background)


@pytest.fixture
def regions():
    """5000 regions with uniform GC and length, and a GC-rich query of 300."""
    rng = np.random.default_rng(11)
    n = 5000
    var = pd.DataFrame({
        "GC_percent": rng.uniform(30, 70, n),
        "sequence_length": rng.integers(200, 1000, n),
    }, index=[f"chr1-{i * 2000}-{i * 2000 + 500}" for i in range(n)])
    weight = np.exp((var["GC_percent"].values - 50) / 10)
    query = var.index[np.sort(rng.choice(n, size=300, replace=False, p=weight / weight.sum()))]
    return var, query


def test_joint_bins():
    values = pd.DataFrame({"a": np.arange(100), "b": np.arange(100)[::-1]})
    labels = joint_bins(values, n_bins=10)
    assert len(np.unique(labels)) == 10
    assert labels[0] == 9
    assert labels[99] == 90


def test_matched_background(regions):
    var, query = regions
    background = match_region_stats(var, query, n=300, seed=1)
    assert len(background) == 300
    assert len(background.intersection(query)) == 0
    assert background.is_unique
    for feature in ["GC_percent", "sequence_length"]:
        assert ks_2samp(var.loc[query, feature], var.loc[background, feature]).pvalue > 0.01
    assert background.equals(match_region_stats(var, query, n=300, seed=1))


def test_naive_background_is_not_matched(regions):
    var, query = regions
    background = naive_background(var, query, n=1000, seed=1)
    assert len(background) == 1000
    assert len(background.intersection(query)) == 0
    assert ks_2samp(var.loc[query, "GC_percent"], var.loc[background, "GC_percent"]).pvalue < 0.01


def test_background_is_capped(regions):
    var, query = regions
    assert len(naive_background(var, query, n=10 ** 6)) == len(var) - len(query)
    assert len(match_region_stats(var, query, n=10 ** 6)) <= len(var) - len(query)


def test_invalid_query(regions):
    var, query = regions
    with pytest.raises(KeyError):
        match_region_stats(var, ["chrX-1-2"])
    with pytest.raises(ValueError):
        naive_background(var, [])
    with pytest.raises(KeyError):
        match_region_stats(var, query, features=["GC_percent", "count"])


@pytest.fixture
def annotated():
    rng = np.random.default_rng(5)
    n_regions, n_motifs = 400, 6
    match = (rng.random((n_regions, n_motifs)) < 0.2).astype(np.uint8)
    query = np.arange(40)
    match[query, 2] = 1
    var = pd.DataFrame(index=[f"chr1-{i * 1000}-{i * 1000 + 300}" for i in range(n_regions)])
    adata = ad.AnnData(X=np.ones((3, n_regions), dtype=np.float32), var=var)
    adata.varm["motif_match"] = match
    adata.uns["motif_id"] = np.array([f"MA000{i}.1" for i in range(n_motifs)], dtype=object)
    adata.uns["motif_name"] = np.array([f"TF{i}" for i in range(n_motifs)], dtype=object)
    return adata, adata.var_names[query]


def test_find_motifs(annotated):
    adata, query = annotated
    result = find_motifs(adata, query)
    assert list(result.columns) == ENRICHMENT_COLUMNS
    assert set(result.index) == set(adata.uns["motif_id"])
    assert result.index[0] == "MA0002.1"
    assert result.loc["MA0002.1", "motif_name"] == "TF2"
    assert result.loc["MA0002.1", "observed"] == 40
    assert result.loc["MA0002.1", "percent_observed"] == pytest.approx(100)
    assert result.loc["MA0002.1", "fold_enrichment"] > 1
    assert result["p_adjust"].is_monotonic_increasing
    assert ((result.p_adjust >= result.pvalue) | np.isclose(result.p_adjust, result.pvalue)).all()


def test_find_motifs_with_background(annotated):
    adata, query = annotated
    background = naive_background(adata.var, query, n=200, seed=0)
    result = find_motifs(adata, query, background)
    assert (result["background"] <= 200).all()
    assert result.index[0] == "MA0002.1"


def test_find_motifs_needs_annotation(annotated):
    adata, query = annotated
    with pytest.raises(KeyError):
        find_motifs(adata, ["chr9-1-2"])
    del adata.varm["motif_match"]
    with pytest.raises(KeyError):
        find_motifs(adata, query)
