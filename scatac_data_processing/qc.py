import logging

import numpy as np
import pandas as pd
from pyranges import PyRanges
from scipy.sparse import csr_matrix
from scipy.stats import rankdata

from scatac_data_processing.io.fragments import count_insertions, read_fragments
from scatac_data_processing.io.region import REGION_COLUMNS

logger = logging.getLogger(__name__)

SIDES = ("lower", "upper", "both")


def nucleosome_signal(fragments, barcodes, nucleosome_free_upper=147, mononucleosome_upper=294):
    """
    Ratio of mono-nucleosomal to nucleosome-free fragments per cell.

    Cells without nucleosome-free fragments get inf, or NaN when they have no
    fragment in either class.
    """
    length = (fragments.End - fragments.Start).values
    nucleosome_free = fragments.Barcode[length < nucleosome_free_upper].value_counts()
    mono = fragments.Barcode[(length >= nucleosome_free_upper) & (length < mononucleosome_upper)].value_counts()
    nucleosome_free = nucleosome_free.reindex(barcodes, fill_value=0).values.astype(float)
    mono = mono.reindex(barcodes, fill_value=0).values.astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return pd.Series(mono / nucleosome_free, index=barcodes)


def tss_windows(tss, extend=1000, center=50, flank=100):
    """Center and flank windows around each TSS, labelled 0 (center) and 1 (flanks)."""
    position = tss["Start"].values.astype(np.int64)
    chrom = tss["Chromosome"].astype(str).values
    windows = [
        pd.DataFrame({"Chromosome": chrom, "Start": position - center, "End": position + center + 1, "window": 0}),
        pd.DataFrame({"Chromosome": chrom, "Start": position - extend, "End": position - extend + flank, "window": 1}),
        pd.DataFrame({"Chromosome": chrom, "Start": position + extend - flank + 1, "End": position + extend + 1, "window": 1}),
    ]
    windows = pd.concat(windows, ignore_index=True)
    return windows[windows.Start >= 0].reset_index(drop=True)


def tss_enrichment(fragments, tss, barcodes, extend=1000, center=50, flank=100):
    """
    TSS enrichment score per cell.

    Insertions are aggregated over all TSSs; the score is the mean insertion
    count per base within +/- `center` bp of the TSS divided by the mean per
    base in the `flank` bp at both ends of the +/- `extend` bp window. Cells
    without flank signal use the population mean flank instead.
    """
    windows = tss_windows(tss, extend, center, flank)
    counts = count_insertions(fragments, windows, barcodes)
    label = csr_matrix((np.ones(len(windows)), (np.arange(len(windows)), windows.window.values)), shape=(len(windows), 2))
    per_window = np.asarray((counts @ label).todense())
    center_mean = per_window[:, 0] / (2 * center + 1)
    flank_mean = per_window[:, 1] / (2 * flank)
    flank_mean[flank_mean == 0] = flank_mean.mean()
    with np.errstate(divide="ignore", invalid="ignore"):
        score = center_mean / flank_mean
    return pd.Series(score, index=barcodes)


def tss_percentile(scores):
    """Empirical CDF of the TSS enrichment score, rounded to 2 digits."""
    values = np.asarray(scores, dtype=float)
    return np.round(rankdata(values, method="max") / len(values), 2)


def fragments_in_regions(fragments, regions, barcodes):
    """Number of fragments per cell overlapping at least one region."""
    if len(fragments) == 0 or len(regions) == 0:
        return pd.Series(0, index=barcodes)
    hits = PyRanges(fragments[REGION_COLUMNS + ["Barcode"]]).overlap(PyRanges(regions[REGION_COLUMNS]))
    if len(hits) == 0:
        return pd.Series(0, index=barcodes)
    return hits.as_df().Barcode.value_counts().reindex(barcodes, fill_value=0)


def fraction_counts_in_regions(adata, regions):
    """Fraction of each cell's peak counts falling in peaks that overlap `regions`."""
    peaks = adata.var[REGION_COLUMNS].reset_index(drop=True).assign(peak_idx=np.arange(adata.n_vars))
    overlap = PyRanges(peaks).overlap(PyRanges(regions[REGION_COLUMNS]))
    mask = np.zeros(adata.n_vars, dtype=bool)
    if len(overlap) > 0:
        mask[overlap.as_df().peak_idx.values] = True
    total = np.asarray(adata.X.sum(axis=1)).ravel()
    inside = np.asarray(adata.X[:, mask].sum(axis=1)).ravel()
    with np.errstate(divide="ignore", invalid="ignore"):
        return inside / total


def count_metrics(adata, assay="peaks"):
    """Total counts and number of detected features per cell."""
    adata.obs[f"nCount_{assay}"] = np.asarray(adata.X.sum(axis=1)).ravel()
    adata.obs[f"nFeature_{assay}"] = np.diff(csr_matrix(adata.X).indptr)
    return adata


def compute_qc_metrics(adata, tss=None, blacklist=None, nucleosome_signal_cutoff=4):
    """
    Add per-cell QC metrics to adata.obs, in place.

    Counts-based metrics are always computed. Fragment-based metrics
    (nucleosome_signal, TSS_enrichment) need a registered fragment file and,
    for the TSS score, a TSS table. pct_reads_in_peaks and blacklist_ratio use
    the cellranger-atac metadata columns when present, the fragment file and
    the blacklist regions otherwise.
    """
    count_metrics(adata)
    obs = adata.obs

    files = adata.uns.get("fragments", {})
    for sample, cells in obs.groupby("dataset", observed=True).groups.items():
        fragment_file = files.get(sample)
        if fragment_file is None:
            logger.warning("No fragment file for %s, skipping fragment based metrics", sample)
            continue
        barcodes = obs.loc[cells, "barcode"].values
        fragments = read_fragments(fragment_file, barcodes)
        logger.info("Computing nucleosome signal for %s", sample)
        obs.loc[cells, "nucleosome_signal"] = nucleosome_signal(fragments, barcodes).values
        if tss is not None:
            logger.info("Computing TSS enrichment for %s over %d TSSs", sample, len(tss))
            obs.loc[cells, "TSS_enrichment"] = tss_enrichment(fragments, tss, barcodes).values
        if "passed_filters" not in obs.columns or obs.loc[cells, "passed_filters"].isnull().any():
            obs.loc[cells, "passed_filters"] = fragments.Barcode.value_counts().reindex(barcodes, fill_value=0).values
        if "peak_region_fragments" not in obs.columns or obs.loc[cells, "peak_region_fragments"].isnull().any():
            obs.loc[cells, "peak_region_fragments"] = fragments_in_regions(fragments, adata.var, barcodes).values

    if "TSS_enrichment" in obs.columns:
        obs["TSS_percentile"] = tss_percentile(obs["TSS_enrichment"].fillna(0))
    if "nucleosome_signal" in obs.columns:
        obs["nucleosome_group"] = np.where(
            obs["nucleosome_signal"] > nucleosome_signal_cutoff,
            f"NS > {nucleosome_signal_cutoff}", f"NS < {nucleosome_signal_cutoff}",
        )
    if {"peak_region_fragments", "passed_filters"} <= set(obs.columns):
        with np.errstate(divide="ignore", invalid="ignore"):
            obs["pct_reads_in_peaks"] = obs["peak_region_fragments"] / obs["passed_filters"] * 100
    if {"blacklist_region_fragments", "peak_region_fragments"} <= set(obs.columns):
        with np.errstate(divide="ignore", invalid="ignore"):
            obs["blacklist_ratio"] = obs["blacklist_region_fragments"] / obs["peak_region_fragments"]
    elif blacklist is not None:
        obs["blacklist_ratio"] = fraction_counts_in_regions(adata, blacklist)
    return adata


def quantile_bounds(obs, metrics, lower=0.02, upper=0.98):
    """
    Data-derived cutoffs per metric.

    `metrics` maps a metric (obs column) to the bounded side: lower, upper or both.
    Returns a dataframe indexed by metric with `lower` and `upper` columns,
    NaN where the side is not bounded.
    """
    bounds = {}
    for metric, side in metrics.items():
        if side not in SIDES:
            raise ValueError(f"Unknown side {side} for {metric}, expected one of {SIDES}")
        if metric not in obs.columns:
            raise KeyError(f"QC metric {metric} is not in the cell metadata")
        values = obs[metric].astype(float).replace([np.inf, -np.inf], np.nan).values
        low, high = np.nanquantile(values, [lower, upper])
        bounds[metric] = {
            "lower": low if side in ("lower", "both") else np.nan,
            "upper": high if side in ("upper", "both") else np.nan,
        }
    return pd.DataFrame.from_dict(bounds, orient="index", columns=["lower", "upper"])


def qc_mask(obs, bounds):
    """Cells strictly inside every bound; NaN metrics fail."""
    keep = np.ones(len(obs), dtype=bool)
    for metric, row in bounds.iterrows():
        values = obs[metric].astype(float).values
        passed = ~np.isnan(values)
        if not np.isnan(row["lower"]):
            passed &= values > row["lower"]
        if not np.isnan(row["upper"]):
            passed &= values < row["upper"]
        logger.info("%s: %d cells outside bounds", metric, (~passed).sum())
        keep &= passed
    return keep


def filter_cells(adata, metrics, lower=0.02, upper=0.98):
    """
    Drop the cells outside the per-metric quantile bounds.

    Returns a filtered copy; the bounds are kept in uns['qc_bounds'].
    """
    bounds = quantile_bounds(adata.obs, metrics, lower, upper)
    keep = qc_mask(adata.obs, bounds)
    logger.info("Keeping %d of %d cells after QC", keep.sum(), adata.n_obs)
    filtered = adata[keep].copy()
    filtered.uns["qc_bounds"] = {
        metric: {side: float(value) for side, value in row.items() if not np.isnan(value)}
        for metric, row in bounds.iterrows()
    }
    return filtered
