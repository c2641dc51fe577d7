"""
Motif annotation of the peaks and per-cell motif activity.

Regions are scanned with MOODS (io/motif.py) into a binary region x motif
incidence matrix; the bias-corrected deviation z-scores are computed by
pychromvar.
"""
import logging

import anndata as ad
import numpy as np
import pandas as pd
import pychromvar as pc
from scipy.sparse import csr_matrix, issparse

from scatac_data_processing.io.region import REGION_COLUMNS, GenomicRegionCollection

logger = logging.getLogger(__name__)


def region_stats(adata, genome, sequences=None):
    """
    Per-region GC content and length in adata.var: GC_percent,
    sequence_length, gc_bias (GC fraction, as pychromvar expects) and count
    (total insertions).
    """
    if sequences is None:
        regions = GenomicRegionCollection(genome, adata.var[REGION_COLUMNS])
        sequences = regions.collect_sequence(progress=True)
    gc = sequences.gc_content
    adata.var["GC_percent"] = np.round(gc * 100, 2)
    adata.var["sequence_length"] = sequences.lengths
    adata.var["gc_bias"] = gc
    adata.var["count"] = np.asarray(adata.X.sum(axis=0)).ravel()
    return sequences


def base_composition(sequences):
    """Frequencies of A, C, G and T over a sequence collection."""
    counts = np.zeros(4)
    for seq in sequences:
        seq = str(seq)
        counts += [seq.count(base) for base in "ACGT"]
    if counts.sum() == 0:
        return [0.25] * 4
    return list(counts / counts.sum())


def match_motifs(sequences, motifs, pvalue=5e-5, bg="subject"):
    """
    Binary regions x motifs incidence matrix.

    `bg` is the base composition used for the log-odds scores and p-value
    thresholds: "subject" for the composition of the scanned sequences,
    "even" for uniform, or four frequencies for A, C, G, T.
    """
    if isinstance(bg, str):
        if bg == "subject":
            bg = base_composition(sequences)
        elif bg == "even":
            bg = [0.25] * 4
        else:
            raise ValueError(f"Unknown background {bg}")
    motifs.set_background(bg, pvalue)
    logger.info("Scanning %d sequences for %d motifs (p < %g)", len(sequences), len(motifs), pvalue)
    return csr_matrix(sequences.scan_motif(motifs))


def add_motifs(adata, genome, motifs, pvalue=5e-5, bg="subject"):
    """
    Annotate the peaks of `adata` with motif matches: region stats in var,
    varm['motif_match'] (regions x motifs, 0/1), uns['motif_id'] and
    uns['motif_name'].
    """
    sequences = region_stats(adata, genome)
    match = match_motifs(sequences, motifs, pvalue, bg)
    adata.varm["motif_match"] = match.toarray().astype(np.uint8)
    adata.uns["motif_id"] = np.array(motifs.matrix_names, dtype=object)
    adata.uns["motif_name"] = np.array(motifs.names, dtype=object)
    logger.info("%d motif matches over %d regions", match.nnz, adata.n_vars)
    return adata


def motif_table(adata):
    """motif id -> name, in the column order of varm['motif_match']."""
    return pd.DataFrame({"motif_name": adata.uns["motif_name"]}, index=pd.Index(adata.uns["motif_id"], name="motif_id"))


def run_chromvar(adata, n_jobs=1, niterations=50, seed=0):
    """
    Motif deviation z-scores (cells x motifs), indexed by motif id with the
    motif names in var['motif_name'].

    Regions without any insertion are left out of the computation.
    """
    if "motif_match" not in adata.varm:
        raise KeyError("varm['motif_match'] is missing, run add_motifs first")
    if "gc_bias" not in adata.var.columns:
        raise KeyError("var['gc_bias'] is missing, run region_stats first")
    keep = np.asarray(adata.X.sum(axis=0)).ravel() > 0
    peaks = ad.AnnData(X=csr_matrix(adata.X[:, keep]), obs=adata.obs[[]].copy(), var=adata.var.loc[keep, ["gc_bias"]].copy())
    match = adata.varm["motif_match"][keep]
    peaks.varm["motif_match"] = match.toarray() if issparse(match) else np.asarray(match)
    # deviations are labelled by motif id, names are not unique across versions
    peaks.uns["motif_name"] = list(adata.uns["motif_id"])

    np.random.seed(seed)
    logger.info("Sampling background peaks for %d regions", peaks.n_vars)
    pc.get_bg_peaks(peaks, niterations=niterations, n_jobs=n_jobs)
    logger.info("Computing deviations for %d motifs", peaks.varm["motif_match"].shape[1])
    deviations = pc.compute_deviations(peaks, n_jobs=n_jobs)

    chromvar = ad.AnnData(
        X=np.asarray(deviations.X, dtype=np.float32),
        obs=adata.obs[[]].copy(),
        var=motif_table(adata).reindex(list(deviations.var_names)),
    )
    chromvar.var.index.name = None
    return chromvar
