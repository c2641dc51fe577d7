import logging

import numpy as np
import pandas as pd
import scanpy as sc

logger = logging.getLogger(__name__)


def select_dims(adata, dims=(2, 30), key="X_lsi"):
    """
    Columns of an embedding by 1-based inclusive range. The first LSI
    component usually tracks sequencing depth and is skipped by default.
    """
    first, last = dims
    n = adata.obsm[key].shape[1]
    if first < 1 or first > last:
        raise ValueError(f"Invalid component range {dims}")
    last = min(last, n)
    return adata.obsm[key][:, first - 1:last]


def cluster_cells(adata, dims=(2, 30), n_neighbors=20, resolution=0.8, key="seurat_clusters", seed=0):
    """
    Nearest-neighbor graph over the selected LSI components, Leiden community
    detection into obs[key] and a 2-D UMAP embedding in obsm['X_umap'].
    """
    adata.obsm["X_lsi_use"] = select_dims(adata, dims)
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep="X_lsi_use", random_state=seed)
    sc.tl.leiden(adata, resolution=resolution, key_added=key, random_state=seed)
    sc.tl.umap(adata, random_state=seed)
    logger.info("Found %d clusters in %d cells", adata.obs[key].nunique(), adata.n_obs)
    return adata


def annotate_clusters(adata, mapping, cluster_key="seurat_clusters", key="celltype"):
    """
    Map cluster ids to labels in obs[key]. Clusters missing from `mapping`
    keep their id as label.
    """
    mapping = {str(k): v for k, v in mapping.items()}
    clusters = adata.obs[cluster_key].astype(str)
    unknown = set(mapping) - set(clusters)
    if unknown:
        logger.warning("Clusters %s are not present in %s", sorted(unknown), cluster_key)
    adata.obs[key] = pd.Categorical(clusters.map(lambda c: mapping.get(c, c)))
    return adata


def group_mask(obs, key, labels):
    """Cells whose obs[key] is one of `labels`."""
    if key not in obs.columns:
        raise KeyError(f"{key} is not in the cell metadata")
    if isinstance(labels, str):
        labels = [labels]
    labels = [str(label) for label in labels]
    mask = obs[key].astype(str).isin(labels).values
    if not mask.any():
        raise ValueError(f"No cell has {key} in {labels}")
    return np.asarray(mask)
