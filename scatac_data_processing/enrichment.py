"""
Motif over-representation in a set of regions against a background set,
with background regions drawn either uniformly or matched on GC content and
length to the query regions.
"""
import logging

import numpy as np
import pandas as pd
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from scatac_data_processing.differential import sort_results

logger = logging.getLogger(__name__)

ENRICHMENT_COLUMNS = ["motif_name", "observed", "background", "percent_observed", "percent_background",
                      "fold_enrichment", "pvalue", "p_adjust"]


def _check_query(var, query):
    query = pd.Index(query)
    missing = query.difference(var.index)
    if len(missing) > 0:
        raise KeyError(f"{len(missing)} query regions are not in the object, e.g. {missing[:3].tolist()}")
    if len(query) == 0:
        raise ValueError("Empty query region set")
    return query


def joint_bins(values, n_bins=10):
    """Joint quantile bin label of each row of a feature dataframe."""
    labels = np.zeros(len(values), dtype=np.int64)
    for column in values.columns:
        codes = pd.qcut(values[column].rank(method="first"), n_bins, labels=False, duplicates="drop")
        labels = labels * n_bins + np.asarray(codes, dtype=np.int64)
    return labels


def match_region_stats(var, query, features=("GC_percent", "sequence_length"), n=50000, n_bins=10, seed=0):
    """
    Background regions whose feature distribution matches the query regions.

    Regions are put in joint quantile bins of `features`; non-query regions are
    sampled without replacement with probability proportional to the
    query/pool frequency ratio of their bin.

    Returns
    -------
    pd.Index
        Names of the sampled background regions, at most `n`.
    """
    query = _check_query(var, query)
    features = list(features)
    missing = [f for f in features if f not in var.columns]
    if missing:
        raise KeyError(f"Region features {missing} are missing, run region_stats first")
    bins = pd.Series(joint_bins(var[features].astype(float), n_bins), index=var.index)
    in_query = var.index.isin(query)
    query_freq = bins[in_query].value_counts(normalize=True)
    pool = bins[~in_query]
    pool_freq = pool.value_counts(normalize=True)
    weight = (query_freq / pool_freq).reindex(pool.values).fillna(0).values
    candidates = int((weight > 0).sum())
    if candidates == 0:
        raise ValueError("No background region shares a bin with the query regions")
    size = min(n, candidates)
    if size < n:
        logger.warning("Only %d background regions available, %d requested", size, n)
    rng = np.random.default_rng(seed)
    chosen = rng.choice(len(pool), size=size, replace=False, p=weight / weight.sum())
    return pool.index[np.sort(chosen)]


def naive_background(var, query, n=50000, seed=0):
    """Background regions drawn uniformly from the non-query regions."""
    query = _check_query(var, query)
    pool = var.index[~var.index.isin(query)]
    size = min(n, len(pool))
    rng = np.random.default_rng(seed)
    return pool[np.sort(rng.choice(len(pool), size=size, replace=False))]


def find_motifs(adata, query, background=None):
    """
    Hypergeometric test of motif over-representation in `query` regions.

    Parameters
    ----------
    adata: AnnData
        Peaks object annotated with add_motifs.
    query: list of str
        Region names.
    background: list of str, optional
        Background region names; all regions of the object by default.

    Returns
    -------
    pd.DataFrame
        indexed by motif id, sorted by adjusted p-value (Benjamini-Hochberg).
    """
    if "motif_match" not in adata.varm:
        raise KeyError("varm['motif_match'] is missing, run add_motifs first")
    query = _check_query(adata.var, query)
    background = adata.var_names if background is None else _check_query(adata.var, background)
    match = adata.varm["motif_match"]
    query_match = match[adata.var_names.get_indexer(query)]
    background_match = match[adata.var_names.get_indexer(background)]
    observed = np.asarray(query_match.sum(axis=0)).ravel().astype(np.int64)
    expected = np.asarray(background_match.sum(axis=0)).ravel().astype(np.int64)
    n_query, n_background = len(query), len(background)

    pvalue = hypergeom.sf(observed - 1, n_background, expected, n_query)
    percent_observed = observed / n_query * 100
    percent_background = expected / n_background * 100
    with np.errstate(divide="ignore", invalid="ignore"):
        fold_enrichment = percent_observed / percent_background
    result = pd.DataFrame({
        "motif_name": np.asarray(adata.uns["motif_name"]),
        "observed": observed,
        "background": expected,
        "percent_observed": percent_observed,
        "percent_background": percent_background,
        "fold_enrichment": fold_enrichment,
        "pvalue": pvalue,
    }, index=pd.Index(np.asarray(adata.uns["motif_id"])))
    result["p_adjust"] = multipletests(result["pvalue"].values, method="fdr_bh")[1]
    logger.info("Tested %d motifs in %d regions against %d background regions", len(result), n_query, n_background)
    return sort_results(result[ENRICHMENT_COLUMNS], by=("p_adjust", "pvalue"))
