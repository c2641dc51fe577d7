"""
Differential tests between two groups of cells.

find_markers_lr tests accessibility of every region with a logistic
regression likelihood-ratio test that controls for latent covariates
(sequencing depth), the way Seurat's FindMarkers(test.use = "LR") does.
find_markers_wilcoxon tests continuous scores (motif deviations) with a
rank-sum test.
"""
import logging
import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.sparse import csc_matrix, issparse
from scipy.stats import chi2, mannwhitneyu
from statsmodels.tools.sm_exceptions import PerfectSeparationError
from tqdm import tqdm

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["p_val", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"]


def _check_masks(mask_1, mask_2, n):
    mask_1 = np.asarray(mask_1, dtype=bool)
    mask_2 = np.asarray(mask_2, dtype=bool)
    if mask_1.shape != (n,) or mask_2.shape != (n,):
        raise ValueError(f"Group masks must be boolean vectors of length {n}")
    if not mask_1.any() or not mask_2.any():
        raise ValueError("Both groups need at least one cell")
    if (mask_1 & mask_2).any():
        raise ValueError("A cell cannot be in both groups")
    return mask_1, mask_2


def _standardize(values):
    values = np.asarray(values, dtype=float)
    sd = values.std(axis=0)
    sd = np.where(sd > 0, sd, 1.0)
    return (values - values.mean(axis=0)) / sd


def sort_results(df, by=("p_val_adj", "p_val")):
    """Ascending adjusted p-value, ties broken by raw p-value, NaN last."""
    return df.sort_values(list(by), ascending=True, na_position="last", kind="mergesort")


def _expm1_mean(x):
    if issparse(x):
        # expm1(0) == 0, only the stored values change
        x = x.copy()
        x.data = np.expm1(x.data)
        return np.asarray(x.mean(axis=0)).ravel()
    return np.expm1(np.asarray(x, dtype=float)).mean(axis=0)


def log_mean_fold_change(x1, x2):
    """Seurat fold change for log1p data: log2 of the ratio of expm1 means, pseudocount 1."""
    mean_1 = _expm1_mean(x1)
    mean_2 = _expm1_mean(x2)
    return np.log2(mean_1 + 1) - np.log2(mean_2 + 1)


def _pct(x):
    return np.round(np.asarray((x > 0).mean(axis=0)).ravel(), 3)


def lr_test(feature, y, null_design, null_llf):
    """Likelihood-ratio p-value of adding `feature` to the null logistic model."""
    design = np.column_stack([null_design, _standardize(feature)])
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            full = sm.Logit(y, design).fit(disp=0)
    except (PerfectSeparationError, np.linalg.LinAlgError):
        return np.nan
    statistic = max(2 * (full.llf - null_llf), 0.0)
    return chi2.sf(statistic, df=1)


def find_markers_lr(adata, mask_1, mask_2, latent_vars=("nCount_peaks",), layer="data",
                    min_pct=0.05, logfc_threshold=0.1, features=None):
    """
    Differentially accessible regions between two groups of cells.

    Parameters
    ----------
    adata: AnnData
        Peaks object; the test runs on layers[layer] (TF-IDF).
    mask_1, mask_2: boolean arrays
        The two groups of cells.
    latent_vars: list of str
        obs columns added to both the null and the full model.
    min_pct: float
        Only test regions accessible in at least this fraction of the cells
        of either group.
    logfc_threshold: float
        Only test regions with at least this absolute log2 fold change.

    Returns
    -------
    pd.DataFrame
        indexed by region with p_val, avg_log2FC, pct_1, pct_2 and p_val_adj
        (Bonferroni over all regions of the object), sorted by p_val_adj.
    """
    mask_1, mask_2 = _check_masks(mask_1, mask_2, adata.n_obs)
    X = adata.layers[layer] if layer is not None else adata.X
    X = csc_matrix(X) if issparse(X) else csc_matrix(np.asarray(X))
    names = adata.var_names
    if features is not None:
        keep = names.isin(features)
        X, names = X[:, keep], names[keep]

    x1, x2 = X[mask_1], X[mask_2]
    result = pd.DataFrame({
        "avg_log2FC": log_mean_fold_change(x1, x2),
        "pct_1": _pct(x1),
        "pct_2": _pct(x2),
    }, index=names)
    tested = (result[["pct_1", "pct_2"]].max(axis=1) >= min_pct) & (result.avg_log2FC.abs() >= logfc_threshold)
    logger.info("Testing %d of %d regions (%d vs %d cells)", tested.sum(), len(result), mask_1.sum(), mask_2.sum())

    cells = mask_1 | mask_2
    y = mask_1[cells].astype(float)
    latent = [v for v in (latent_vars or []) if v is not None]
    for v in latent:
        if v not in adata.obs.columns:
            raise KeyError(f"Latent variable {v} is not in the cell metadata")
    if latent:
        null_design = sm.add_constant(_standardize(adata.obs.loc[cells, latent].values), has_constant="add")
    else:
        null_design = np.ones((cells.sum(), 1))
    null_llf = sm.Logit(y, null_design).fit(disp=0).llf

    X_cells = X[cells]
    p_val = np.full(len(result), np.nan)
    for j in tqdm(np.where(tested.values)[0], desc="LR test", leave=False):
        p_val[j] = lr_test(X_cells[:, j].toarray().ravel(), y, null_design, null_llf)
    result["p_val"] = p_val
    result = result[tested.values].copy()
    result["p_val_adj"] = np.minimum(result["p_val"] * adata.n_vars, 1.0)
    return sort_results(result[RESULT_COLUMNS])


def find_markers_wilcoxon(matrix, names, mask_1, mask_2, min_pct=0.0, threshold=0.0):
    """
    Rank-sum test of continuous scores (cells x features) between two groups.

    The effect size is the difference of group means (avg_diff). Features
    with |avg_diff| below `threshold` are not reported.
    """
    matrix = matrix.toarray() if issparse(matrix) else np.asarray(matrix, dtype=float)
    mask_1, mask_2 = _check_masks(mask_1, mask_2, matrix.shape[0])
    x1, x2 = matrix[mask_1], matrix[mask_2]
    result = pd.DataFrame({
        "avg_diff": x1.mean(axis=0) - x2.mean(axis=0),
        "pct_1": _pct(x1),
        "pct_2": _pct(x2),
    }, index=pd.Index(names))
    tested = (result[["pct_1", "pct_2"]].max(axis=1) >= min_pct) & (result.avg_diff.abs() >= threshold)
    p_val = np.full(len(result), np.nan)
    if tested.any():
        with np.errstate(divide="ignore", invalid="ignore"):
            p_val[tested.values] = mannwhitneyu(x1[:, tested.values], x2[:, tested.values],
                                                alternative="two-sided", axis=0).pvalue
    result["p_val"] = p_val
    result = result[tested.values].copy()
    result["p_val_adj"] = np.minimum(result["p_val"] * matrix.shape[1], 1.0)
    return sort_results(result[["p_val", "avg_diff", "pct_1", "pct_2", "p_val_adj"]])


def significant(result, cutoff=0.005, column="p_val", effect=None):
    """Rows under the p-value cutoff, optionally with a positive effect only."""
    selected = result[result[column] < cutoff]
    if effect is not None:
        selected = selected[selected[effect] > 0]
    return selected
