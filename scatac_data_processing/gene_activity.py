"""
Gene activity: insertion counts over gene bodies extended upstream of the
TSS, used as a surrogate expression matrix.
"""
import logging

import anndata as ad
import numpy as np
import scanpy as sc

from scatac_data_processing.io.fragments import count_features
from scatac_data_processing.qc import count_metrics

logger = logging.getLogger(__name__)


def gene_activities(adata, gencode, upstream=2000, downstream=0, biotypes=("protein_coding",), features=None):
    """
    Count every cell's insertions over the extended gene bodies.

    Parameters
    ----------
    adata: AnnData
        Peaks object with its fragment files registered in uns['fragments'].
    gencode: Gencode
        Gene annotation.
    features: list of str, optional
        Restrict to these gene names.

    Returns
    -------
    AnnData
        cells x genes raw counts, same cell index as `adata`.
    """
    bodies = gencode.gene_bodies(upstream, downstream, list(biotypes) if biotypes else None)
    if features:
        bodies = bodies[bodies.gene_name.isin(features)]
    bodies = bodies[bodies.gene_name.astype(str).str.len() > 0].reset_index(drop=True)
    if len(bodies) == 0:
        raise ValueError("No gene left to compute gene activities for")
    logger.info("Counting insertions over %d gene bodies", len(bodies))
    counts = count_features(adata, bodies)
    var = bodies[["gene_id", "gene_type", "Chromosome", "Start", "End", "Strand"]].copy()
    var.index = bodies.gene_name.astype(str).values
    activity = ad.AnnData(X=counts, obs=adata.obs[[]].copy(), var=var)
    activity.var_names_make_unique()
    return activity


def normalize_gene_activity(activity):
    """
    Log-normalize with the median per-cell total as scale factor; raw counts
    are kept in layers['counts'].
    """
    activity.layers["counts"] = activity.X.copy()
    count_metrics(activity, assay="RNA")
    target = float(np.median(activity.obs["nCount_RNA"]))
    if target <= 0:
        target = 1.0
    sc.pp.normalize_total(activity, target_sum=target)
    sc.pp.log1p(activity)
    activity.uns["scale_factor"] = target
    return activity
