import logging

import anndata as ad
import pandas as pd
from pyranges import PyRanges

from scatac_data_processing.io.fragments import count_features
from scatac_data_processing.io.region import REGION_COLUMNS, parse_region_names, region_names

logger = logging.getLogger(__name__)


def combine_peaks(adatas, min_width=20, max_width=10000):
    """
    Common peak set: the union of all samples' peaks with overlapping peaks
    merged into one, then filtered on width.
    """
    peaks = pd.concat([a.var[REGION_COLUMNS] for a in adatas], ignore_index=True)
    combined = PyRanges(peaks).merge().as_df()[REGION_COLUMNS]
    combined["Chromosome"] = combined["Chromosome"].astype(str)
    width = combined.End - combined.Start
    combined = combined[(width > min_width) & (width < max_width)]
    combined = combined.sort_values(REGION_COLUMNS).reset_index(drop=True)
    combined.index = region_names(combined)
    logger.info("Combined %d peaks into %d", len(peaks), len(combined))
    return combined


def requantify(adata, peaks):
    """Re-count a sample over a new peak set from its fragment file."""
    counts = count_features(adata, peaks)
    requantified = ad.AnnData(X=counts, obs=adata.obs.copy(), var=peaks.copy())
    requantified.uns["fragments"] = dict(adata.uns.get("fragments", {}))
    return requantified


def merge_samples(samples, requantify_peaks=True, min_width=20, max_width=10000):
    """
    Merge per-sample peaks objects into one.

    Parameters
    ----------
    samples: dict
        sample name -> peaks AnnData, as returned by read_10x_sample.
    requantify_peaks: bool
        Re-count every sample over the combined peak set from its fragment
        file. Otherwise the matrices are joined on their features with zeros
        for the peaks a sample does not have.

    Every input cell is kept exactly once; cell names get the sample name
    appended and obs['dataset'] records the sample.
    """
    if len(samples) == 0:
        raise ValueError("No sample to merge")
    names = list(samples.keys())
    adatas = [samples[name] for name in names]
    for name, adata in zip(names, adatas):
        adata.obs["dataset"] = name
        if "barcode" not in adata.obs.columns:
            adata.obs["barcode"] = adata.obs_names.values

    if requantify_peaks:
        peaks = combine_peaks(adatas, min_width, max_width)
        adatas = [requantify(adata, peaks) for adata in adatas]

    merged = ad.concat(
        adatas,
        join="outer",
        label="dataset",
        keys=names,
        index_unique="_",
        fill_value=0,
    )
    merged.var = parse_region_names(merged.var_names)
    merged.X = merged.X.tocsr() if hasattr(merged.X, "tocsr") else merged.X
    fragments = {}
    for adata in adatas:
        fragments.update(adata.uns.get("fragments", {}))
    merged.uns["fragments"] = fragments
    merged.obs["dataset"] = pd.Categorical(merged.obs["dataset"], categories=names)
    logger.info("Merged %d samples: %d cells x %d peaks", len(names), merged.n_obs, merged.n_vars)
    return merged
