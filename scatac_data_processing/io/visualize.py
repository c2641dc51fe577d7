"""
Figures, result tables and checkpoints of a pipeline run.

Every output goes to `output_dir` and is named by the run prefix followed by
a label, e.g. `run_umap_clusters.pdf`.
"""
import logging
import os

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import mudata as md
import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns

logger = logging.getLogger(__name__)


def output_path(output_dir, prefix, label, extension):
    os.makedirs(output_dir, exist_ok=True)
    return os.path.join(output_dir, f"{prefix}{label}.{extension}")


def figure_path(output_dir, prefix, label):
    """{output_dir}/{prefix}{label}.pdf"""
    return output_path(output_dir, prefix, label, "pdf")


def save_figure(fig, path):
    fig.savefig(path, bbox_inches="tight")
    plt.close(fig)
    logger.info("Saved %s", path)
    return path


def plot_qc_violin(obs, metrics, path, group_by="dataset"):
    """One violin per QC metric, split by sample."""
    metrics = [m for m in metrics if m in obs.columns]
    if not metrics:
        raise ValueError("None of the QC metrics is in the cell metadata")
    fig, axes = plt.subplots(1, len(metrics), figsize=(3 * len(metrics), 4), squeeze=False)
    for ax, metric in zip(axes[0], metrics):
        data = obs[[metric]].assign(group=obs[group_by].astype(str).values if group_by in obs.columns else "all")
        data = data.replace([np.inf, -np.inf], np.nan).dropna()
        sns.violinplot(data=data, x="group", y=metric, ax=ax, cut=0, inner=None, color="lightgrey")
        sns.stripplot(data=data, x="group", y=metric, ax=ax, size=1, color="black", alpha=0.3)
        ax.set_xlabel("")
        ax.set_title(metric)
    fig.tight_layout()
    return save_figure(fig, path)


def plot_qc_density(obs, path, x="nCount_peaks", y="TSS_enrichment"):
    """Density scatter of TSS enrichment against depth."""
    data = obs[[x, y]].replace([np.inf, -np.inf], np.nan).dropna()
    fig, ax = plt.subplots(figsize=(4, 4))
    ax.hexbin(np.log10(data[x].clip(lower=1)), data[y], gridsize=50, bins="log", cmap="viridis", mincnt=1)
    ax.set_xlabel(f"log10 {x}")
    ax.set_ylabel(y)
    return save_figure(fig, path)


def plot_dim(adata, color, path, palette="tab20", title=None):
    """Cells on the UMAP embedding colored by a categorical obs column."""
    fig = sc.pl.umap(adata, color=color, palette=palette, legend_loc="on data", title=title,
                     frameon=False, show=False, return_fig=True)
    return save_figure(fig, path)


def plot_feature(adata, features, path, cmap="viridis", layer=None, ncols=4):
    """Cells on the UMAP embedding colored by feature values."""
    features = [f for f in features if f in adata.var_names]
    if not features:
        raise ValueError("None of the features is in the object")
    fig = sc.pl.umap(adata, color=features, cmap=cmap, layer=layer, ncols=ncols, frameon=False,
                     show=False, return_fig=True)
    return save_figure(fig, path)


def plot_violin(adata, features, group_by, path, layer=None):
    """Feature values per group of cells."""
    features = [f for f in features if f in adata.var_names]
    if not features:
        raise ValueError("None of the features is in the object")
    values = sc.get.obs_df(adata, keys=features, layer=layer)
    values["group"] = adata.obs[group_by].astype(str).values
    data = values.melt(id_vars="group", var_name="feature", value_name="value")
    grid = sns.catplot(data=data, x="group", y="value", col="feature", kind="violin", col_wrap=min(4, len(features)),
                       sharey=False, cut=0, inner=None, height=3)
    grid.set_xticklabels(rotation=45)
    return save_figure(grid.figure, path)


def group_means(matrix, groups):
    """Mean of every column of a (cells x features) dataframe per group."""
    return matrix.groupby(np.asarray(groups), observed=True).mean()


def plot_motif_heatmap(chromvar, group_by, path, motifs=None, cmap="RdBu_r", vmax=None):
    """
    Mean motif deviation per group of cells, motifs as rows labelled by name.
    """
    scores = pd.DataFrame(np.asarray(chromvar.X), index=chromvar.obs_names, columns=chromvar.var_names)
    if motifs is not None:
        scores = scores[[m for m in motifs if m in scores.columns]]
    means = group_means(scores, chromvar.obs[group_by].astype(str).values).T
    if "motif_name" in chromvar.var.columns:
        means.index = [f"{chromvar.var.loc[m, 'motif_name']} ({m})" for m in means.index]
    if vmax is None:
        vmax = float(np.nanmax(np.abs(means.values))) if means.size else 1.0
    fig, ax = plt.subplots(figsize=(1 + 0.5 * means.shape[1], 1 + 0.25 * means.shape[0]))
    sns.heatmap(means, cmap=cmap, center=0, vmin=-vmax, vmax=vmax, ax=ax, cbar_kws={"label": "mean deviation"})
    ax.set_xlabel(group_by)
    return save_figure(fig, path)


def plot_motif_logos(motifs, motif_ids, output_dir, prefix, label="motif_logo"):
    """One sequence logo per motif, named {prefix}{label}_{motif id}.pdf."""
    paths = []
    for motif_id in motif_ids:
        path = figure_path(output_dir, prefix, f"{label}_{motif_id}")
        motifs.get_motif(motif_id).plot_logo(filename=path, format="pdf")
        paths.append(path)
    return paths


def write_table(df, output_dir, prefix, label):
    path = output_path(output_dir, prefix, label, "csv")
    df.to_csv(path)
    logger.info("Wrote %d rows to %s", len(df), path)
    return path


def save_checkpoint(mdata, output_dir, prefix, stage):
    """Serialize the container after a pipeline stage as {prefix}{stage}.h5mu."""
    path = output_path(output_dir, prefix, stage, "h5mu")
    mdata.write(path)
    logger.info("Checkpoint %s written to %s", stage, path)
    return path


def load_checkpoint(path):
    if not os.path.exists(path):
        raise FileNotFoundError(f"Checkpoint {path} does not exist")
    logger.info("Loading checkpoint %s", path)
    return md.read_h5mu(path)
