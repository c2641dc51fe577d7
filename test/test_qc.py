import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy.sparse import csr_matrix

from scatac_data_processing.io.fragments import FRAGMENT_COLUMNS, count_insertions, read_fragments
from scatac_data_processing.qc import (compute_qc_metrics, filter_cells, fraction_counts_in_regions,
                                       nucleosome_signal, qc_mask, quantile_bounds, tss_enrichment)


def test_read_fragments_filters_barcodes(fragment_file):
    fragments = read_fragments(fragment_file, ["AAAC-1", "AAAG-1"])
    assert list(fragments.columns) == FRAGMENT_COLUMNS
    assert set(fragments.Barcode) == {"AAAC-1", "AAAG-1"}
    assert len(fragments) == 17


def test_read_missing_fragments(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_fragments(str(tmp_path / "fragments.tsv.gz"))


def test_count_insertions():
    fragments = pd.DataFrame({
        "Chromosome": ["chr1", "chr1", "chr1"],
        "Start": [100, 150, 1000],
        "End": [300, 160, 1100],
        "Barcode": ["A", "B", "A"],
        "Count": [1, 1, 1],
    })
    regions = pd.DataFrame({"Chromosome": ["chr1", "chr1"], "Start": [90, 290], "End": [200, 1050]})
    counts = count_insertions(fragments, regions, ["A", "B", "C"]).toarray()
    # A: 100 in region 0, 299 and 1000 in region 1; B: both ends in region 0
    assert counts.tolist() == [[1, 2], [2, 0], [0, 0]]


def test_nucleosome_signal():
    fragments = pd.DataFrame({
        "Start": [0, 0, 0, 0],
        "End": [100, 120, 200, 250],
        "Barcode": ["A", "A", "A", "B"],
    })
    signal = nucleosome_signal(fragments, ["A", "B", "C"])
    assert signal["A"] == pytest.approx(0.5)
    assert np.isinf(signal["B"])
    assert np.isnan(signal["C"])


def test_tss_enrichment(fragment_file):
    fragments = read_fragments(fragment_file)
    tss = pd.DataFrame({"Chromosome": ["chr1"], "Start": [5000], "End": [5001]})
    score = tss_enrichment(fragments, tss, ["AAAC-1", "AAAG-1"])
    # 10 center insertions over 101 bp against 1 flank insertion over 200 bp
    assert score["AAAC-1"] == pytest.approx((10 / 101) / (1 / 200))
    assert score["AAAG-1"] == pytest.approx((1 / 101) / (5 / 200))


def test_fraction_counts_in_regions(peaks_adata):
    blacklist = pd.DataFrame({"Chromosome": ["chr1"], "Start": [4950], "End": [4960]})
    fraction = fraction_counts_in_regions(peaks_adata, blacklist)
    assert fraction.tolist() == pytest.approx([4 / 6, 1 / 4, 2 / 10])


def test_compute_qc_metrics(peaks_adata, fragment_file):
    tss = pd.DataFrame({"Chromosome": ["chr1"], "Start": [5000], "End": [5001]})
    blacklist = pd.DataFrame({"Chromosome": ["chr1"], "Start": [15000], "End": [15100]})
    compute_qc_metrics(peaks_adata, tss, blacklist)
    obs = peaks_adata.obs
    assert obs.nCount_peaks.tolist() == [6, 4, 10]
    assert obs.nFeature_peaks.tolist() == [2, 2, 4]
    assert obs.loc["AAAC-1", "nucleosome_signal"] == pytest.approx(0.1)
    assert obs.loc["AAAG-1", "nucleosome_group"] == "NS > 4"
    assert obs.loc["AAAC-1", "passed_filters"] == 11
    assert obs.loc["AAAG-1", "blacklist_ratio"] == 0
    assert obs.loc["AAAT-1", "blacklist_ratio"] == pytest.approx(0.5)
    for column in ["TSS_enrichment", "TSS_percentile", "pct_reads_in_peaks"]:
        assert column in obs.columns
    assert obs.loc["AAAC-1", "TSS_enrichment"] > obs.loc["AAAG-1", "TSS_enrichment"]


def qc_object(n=100, seed=0):
    rng = np.random.default_rng(seed)
    obs = pd.DataFrame({
        "pct_reads_in_peaks": rng.permutation(n).astype(float),
        "blacklist_ratio": rng.permutation(n).astype(float),
        "nucleosome_signal": rng.permutation(n).astype(float),
        "TSS_enrichment": rng.permutation(n).astype(float),
    }, index=[f"cell{i}" for i in range(n)])
    return ad.AnnData(X=csr_matrix(np.ones((n, 3))), obs=obs)


METRICS = {
    "pct_reads_in_peaks": "lower",
    "blacklist_ratio": "upper",
    "nucleosome_signal": "upper",
    "TSS_enrichment": "lower",
}


def test_quantile_bounds():
    bounds = quantile_bounds(qc_object().obs, {"pct_reads_in_peaks": "lower", "TSS_enrichment": "both"})
    assert bounds.loc["pct_reads_in_peaks", "lower"] == pytest.approx(1.98)
    assert np.isnan(bounds.loc["pct_reads_in_peaks", "upper"])
    assert bounds.loc["TSS_enrichment", "upper"] == pytest.approx(97.02)


def test_filter_cells_keeps_a_subset():
    adata = qc_object()
    filtered = filter_cells(adata, METRICS)
    assert set(filtered.obs_names) <= set(adata.obs_names)
    # two cells per bounded side at most
    discarded = adata.n_obs - filtered.n_obs
    assert 2 <= discarded <= 8
    assert filtered.obs.pct_reads_in_peaks.min() > 1.98
    assert filtered.obs.blacklist_ratio.max() < 97.02
    assert set(filtered.uns["qc_bounds"]["TSS_enrichment"]) == {"lower"}


def test_nan_metrics_fail():
    adata = qc_object()
    adata.obs.loc["cell0", "TSS_enrichment"] = np.nan
    bounds = quantile_bounds(adata.obs, {"TSS_enrichment": "lower"})
    mask = qc_mask(adata.obs, bounds)
    assert not mask[0]


def test_invalid_metrics():
    obs = qc_object().obs
    with pytest.raises(ValueError):
        quantile_bounds(obs, {"TSS_enrichment": "middle"})
    with pytest.raises(KeyError):
        quantile_bounds(obs, {"FRiP": "lower"})
