"""
Normalization and linear dimension reduction of the peaks matrix (LSI):
TF-IDF, top feature selection and truncated SVD, following Signac's
RunTFIDF (method 1), FindTopFeatures and RunSVD.
"""
import logging

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix, diags, issparse
from sklearn.decomposition import TruncatedSVD

logger = logging.getLogger(__name__)


def tfidf(X, scale_factor=1e4):
    """log1p(TF x IDF x scale_factor) with TF = counts / cell total and IDF = n_cells / peak total."""
    X = csr_matrix(X, dtype=np.float64)
    cell_total = np.asarray(X.sum(axis=1)).ravel()
    peak_total = np.asarray(X.sum(axis=0)).ravel()
    with np.errstate(divide="ignore"):
        inv_cell = np.where(cell_total > 0, 1.0 / cell_total, 0.0)
        idf = np.where(peak_total > 0, X.shape[0] / peak_total, 0.0)
    norm = diags(inv_cell) @ X @ diags(idf * scale_factor)
    norm = csr_matrix(norm)
    norm.data = np.log1p(norm.data)
    norm.eliminate_zeros()
    return norm.astype(np.float32)


def run_tfidf(adata, scale_factor=1e4, layer="data"):
    """TF-IDF normalize adata.X (raw counts) into adata.layers[layer]."""
    adata.layers[layer] = tfidf(adata.X, scale_factor)
    return adata


def find_top_features(adata, min_cutoff="q0"):
    """
    Mark the features used for dimension reduction in var['highly_variable'].

    `min_cutoff` is either a percentile of the feature total counts written
    as "q<percent>" (e.g. "q5") or an absolute count; features strictly above
    it are kept.
    """
    counts = np.asarray(adata.X.sum(axis=0)).ravel()
    adata.var["count"] = counts
    adata.var["percentile"] = pd.Series(counts).rank(method="max", pct=True).values
    if isinstance(min_cutoff, str):
        if not min_cutoff.startswith("q"):
            raise ValueError(f"min_cutoff must be a number or q<percentile>, got {min_cutoff}")
        cutoff = np.quantile(counts, float(min_cutoff[1:]) / 100)
    else:
        cutoff = float(min_cutoff)
    adata.var["highly_variable"] = counts > cutoff
    logger.info("Selected %d of %d features (count > %.1f)", adata.var["highly_variable"].sum(), adata.n_vars, cutoff)
    return adata


def run_svd(adata, n_components=50, layer="data", seed=0, scale_embeddings=True):
    """
    Truncated SVD of the normalized matrix restricted to the top features.

    Writes obsm['X_lsi'] (cells x components), varm['LSI'] (loadings, zero
    for unused features) and uns['lsi'] (standard deviations, singular values).
    """
    if layer not in adata.layers:
        raise KeyError(f"Layer {layer} is missing, run run_tfidf first")
    if "highly_variable" in adata.var.columns:
        features = adata.var["highly_variable"].values.astype(bool)
    else:
        features = np.ones(adata.n_vars, dtype=bool)
    X = adata.layers[layer][:, features]
    n_components = min(n_components, min(X.shape) - 1)
    if n_components < 1:
        raise ValueError(f"Cannot run SVD on a {X.shape[0]} x {X.shape[1]} matrix")
    svd = TruncatedSVD(n_components=n_components, algorithm="arpack", random_state=seed)
    embeddings = svd.fit_transform(X if issparse(X) else np.asarray(X)).astype(np.float64)
    if scale_embeddings:
        embeddings = (embeddings - embeddings.mean(axis=0)) / embeddings.std(axis=0, ddof=1)
    loadings = np.zeros((adata.n_vars, n_components))
    loadings[features] = svd.components_.T
    adata.obsm["X_lsi"] = embeddings
    adata.varm["LSI"] = loadings
    adata.uns["lsi"] = {
        "stdev": svd.singular_values_ / np.sqrt(max(1, X.shape[0] - 1)),
        "singular_values": svd.singular_values_,
    }
    logger.info("Computed %d LSI components", n_components)
    return adata


def depth_correlation(adata, key="X_lsi", depth="nCount_peaks"):
    """Pearson correlation of every component with log10 sequencing depth."""
    if depth in adata.obs.columns:
        depth_values = adata.obs[depth].values.astype(float)
    else:
        depth_values = np.asarray(adata.X.sum(axis=1)).ravel()
    depth_values = np.log10(np.clip(depth_values, 1, None))
    embeddings = adata.obsm[key]
    correlation = [np.corrcoef(embeddings[:, i], depth_values)[0, 1] for i in range(embeddings.shape[1])]
    return pd.DataFrame({"component": np.arange(1, embeddings.shape[1] + 1), "correlation": correlation})
