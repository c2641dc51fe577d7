"""
The two halves of the scATAC-seq analysis.

preprocess: ingestion, QC, merge, LSI, clustering and gene activity, with
checkpoints `merged`, `clustered` and `gene_activity`.

motif_analysis: differential accessibility, motif annotation, chromVAR
deviations, differential motif activity and motif enrichment, starting from
the `gene_activity` checkpoint and writing the `chromvar` checkpoint.
"""
import logging
import os

import mudata as md

from scatac_data_processing.chromvar import add_motifs, run_chromvar
from scatac_data_processing.cluster import annotate_clusters, cluster_cells, group_mask
from scatac_data_processing.differential import find_markers_lr, find_markers_wilcoxon, significant
from scatac_data_processing.enrichment import find_motifs, match_region_stats, naive_background
from scatac_data_processing.gene_activity import gene_activities, normalize_gene_activity
from scatac_data_processing.io.gencode import Gencode
from scatac_data_processing.io.jaspar import JasparMotifs
from scatac_data_processing.io.region import Genome, read_bed
from scatac_data_processing.io.tenx import read_10x_sample
from scatac_data_processing.io.visualize import (figure_path, load_checkpoint, plot_dim, plot_feature,
                                                 plot_motif_heatmap, plot_motif_logos, plot_qc_density,
                                                 plot_qc_violin, plot_violin, save_checkpoint, write_table)
from scatac_data_processing.merge import merge_samples
from scatac_data_processing.qc import compute_qc_metrics, count_metrics, filter_cells
from scatac_data_processing.reduction import depth_correlation, find_top_features, run_svd, run_tfidf

logger = logging.getLogger(__name__)

# assay annotations stay in the assays, the container only tracks the cells
md.set_options(pull_on_update=False)

PEAKS, RNA, CHROMVAR = "peaks", "RNA", "chromvar"


def make_container(peaks):
    """MuData holding the peaks assay, set as the active assay."""
    mdata = md.MuData({PEAKS: peaks})
    mdata.uns["active_assay"] = PEAKS
    return mdata


def add_assay(mdata, name, adata, active=False):
    """Add an assay sharing the cell index of the container."""
    if not adata.obs_names.equals(mdata.obs_names):
        raise ValueError(f"Assay {name} does not have the cells of the container")
    mdata.mod[name] = adata
    mdata.update()
    if active:
        mdata.uns["active_assay"] = name
    return mdata


def checkpoint_path(config, stage):
    return os.path.join(config.run.output_dir, f"{config.run.prefix}{stage}.h5mu")


def load_references(config):
    reference = config.reference
    gencode = Gencode(reference.gtf, reference.assembly, cache_dir=config.run.output_dir) if reference.gtf else None
    blacklist = read_bed(reference.blacklist) if reference.blacklist else None
    return gencode, blacklist


def load_motifs(config):
    """
    JASPAR motifs of the run. With motifs.cache set, the set is read from that
    pickle when it exists and written there after a fetch otherwise.
    """
    motif_config = config.motifs
    cache = motif_config.cache
    if cache and os.path.exists(cache):
        logger.info("Loading motifs from %s", cache)
        return JasparMotifs.load_from_pickle(cache)
    motifs = JasparMotifs(motif_config.release, motif_config.collection, motif_config.tax_group,
                          motif_config.species, pseudocount=motif_config.pseudocount)
    if cache:
        motifs.save_to_pickle(cache)
        logger.info("Saved %d motifs to %s", len(motifs), cache)
    return motifs


def qc_sample(adata, config, tss=None, blacklist=None):
    """QC metrics, QC figures and quantile filtering of one sample."""
    qc = config.qc
    sample = adata.obs["dataset"].iloc[0]
    compute_qc_metrics(adata, tss, blacklist, qc.nucleosome_signal_cutoff)
    metrics = {}
    for metric, side in qc.metrics.to_dict().items():
        if metric in adata.obs.columns:
            metrics[metric] = side
        else:
            logger.warning("%s: QC metric %s is not available, it is not filtered on", sample, metric)
    out, prefix = config.run.output_dir, config.run.prefix
    plot_qc_violin(adata.obs, list(metrics) + ["nCount_peaks"], figure_path(out, prefix, f"{sample}_qc_violin"))
    if "TSS_enrichment" in adata.obs.columns:
        plot_qc_density(adata.obs, figure_path(out, prefix, f"{sample}_tss_density"))
    if not metrics:
        return adata
    return filter_cells(adata, metrics, qc.lower_quantile, qc.upper_quantile)


def preprocess(config):
    """
    Stages 1 to 6: read and QC every sample, merge, normalize and reduce,
    cluster and compute gene activities. Returns the container.
    """
    run = config.run
    out, prefix = run.output_dir, run.prefix
    if not config.samples:
        raise ValueError("No sample in the configuration")
    gencode, blacklist = load_references(config)
    tss = gencode.tss(config.reference.biotypes) if gencode is not None else None

    samples = {}
    for sample in config.samples:
        sample = sample.to_dict() if hasattr(sample, "to_dict") else dict(sample)
        name = sample["name"]
        if name in samples:
            raise ValueError(f"Sample {name} is listed twice")
        adata = read_10x_sample(sample["matrix"], sample.get("metadata"), sample.get("fragments"), name)
        samples[name] = qc_sample(adata, config, tss, blacklist)

    merged = merge_samples(samples, config.merge.requantify, config.merge.min_width, config.merge.max_width)
    count_metrics(merged)
    mdata = make_container(merged)
    save_checkpoint(mdata, out, prefix, "merged")

    logger.info("Running TF-IDF and SVD")
    peaks = mdata.mod[PEAKS]
    norm = config.normalization
    run_tfidf(peaks, norm.scale_factor)
    find_top_features(peaks, norm.min_cutoff)
    run_svd(peaks, norm.n_components, seed=run.seed)
    write_table(depth_correlation(peaks), out, prefix, "depth_correlation")

    clustering = config.clustering
    cluster_cells(peaks, tuple(clustering.dims), clustering.n_neighbors, clustering.resolution,
                  key=clustering.cluster_key, seed=run.seed)
    plot_dim(peaks, clustering.cluster_key, figure_path(out, prefix, "umap_clusters"), config.report.cluster_palette)
    plot_dim(peaks, "dataset", figure_path(out, prefix, "umap_dataset"), config.report.cluster_palette)
    labels = clustering.labels.to_dict() if hasattr(clustering.labels, "to_dict") else (clustering.labels or {})
    if labels:
        annotate_clusters(peaks, labels, clustering.cluster_key, clustering.label_key)
        plot_dim(peaks, clustering.label_key, figure_path(out, prefix, "umap_celltype"), config.report.cluster_palette)
    mdata.update()
    save_checkpoint(mdata, out, prefix, "clustered")

    if gencode is None:
        raise ValueError("reference.gtf is needed to compute gene activities")
    ga = config.gene_activity
    activity = gene_activities(peaks, gencode, ga.upstream, ga.downstream, config.reference.biotypes)
    normalize_gene_activity(activity)
    activity.obsm["X_umap"] = peaks.obsm["X_umap"]
    add_assay(mdata, RNA, activity)
    if ga.features:
        plot_feature(activity, list(ga.features), figure_path(out, prefix, "gene_activity_umap"),
                     config.report.feature_cmap)
    save_checkpoint(mdata, out, prefix, "gene_activity")
    return mdata


def comparison_masks(obs, config):
    """The two groups of cells compared in the differential tests."""
    diff = config.differential
    if not diff.ident_1:
        raise ValueError("differential.ident_1 must list the labels of the first group")
    mask_1 = group_mask(obs, diff.group_by, list(diff.ident_1))
    mask_2 = group_mask(obs, diff.group_by, list(diff.ident_2)) if diff.ident_2 else ~mask_1
    return mask_1, mask_2


def motif_analysis(config, mdata=None):
    """
    Stages 7 to 10 on the `gene_activity` checkpoint (or the given container).
    Returns the container with the chromvar assay.
    """
    run = config.run
    out, prefix = run.output_dir, run.prefix
    if mdata is None:
        mdata = load_checkpoint(checkpoint_path(config, "gene_activity"))
    peaks = mdata.mod[PEAKS]
    diff = config.differential
    mask_1, mask_2 = comparison_masks(peaks.obs, config)

    logger.info("Finding differentially accessible regions")
    da_peaks = find_markers_lr(peaks, mask_1, mask_2, list(diff.latent_vars or []),
                               min_pct=diff.min_pct, logfc_threshold=diff.logfc_threshold)
    gencode, _ = load_references(config)
    if gencode is not None and len(da_peaks) > 0:
        da_peaks = da_peaks.join(gencode.closest_gene(peaks.var.loc[da_peaks.index], config.reference.biotypes))
    write_table(da_peaks, out, prefix, "da_peaks")

    logger.info("Annotating regions with motifs")
    motif_config = config.motifs
    motifs = load_motifs(config)
    genome = Genome(config.reference.assembly, config.reference.genome_fasta)
    add_motifs(peaks, genome, motifs, motif_config.pvalue)
    chromvar = run_chromvar(peaks, n_jobs=run.n_jobs, seed=run.seed)
    chromvar.obsm["X_umap"] = peaks.obsm["X_umap"]
    chromvar.obs[diff.group_by] = peaks.obs[diff.group_by].values
    add_assay(mdata, CHROMVAR, chromvar, active=True)
    save_checkpoint(mdata, out, prefix, "chromvar")

    logger.info("Testing motif activity")
    motif_activity = find_markers_wilcoxon(chromvar.X, chromvar.var_names, mask_1, mask_2)
    motif_activity.insert(0, "motif_name", chromvar.var.loc[motif_activity.index, "motif_name"].values)
    write_table(motif_activity, out, prefix, "differential_motifs")

    report = config.report
    top = list(motif_activity.index[:report.heatmap_top_motifs])
    plot_motif_heatmap(chromvar, diff.group_by, figure_path(out, prefix, "motif_heatmap"), top, report.heatmap_cmap)
    features = motifs.lookup(names=list(motif_config.features)) if motif_config.features else top[:4]
    if features:
        plot_feature(chromvar, features, figure_path(out, prefix, "motif_umap"), report.feature_cmap)
        plot_violin(chromvar, features, diff.group_by, figure_path(out, prefix, "motif_violin"))

    query = significant(da_peaks, diff.pvalue_cutoff, effect="avg_log2FC").index
    if len(query) == 0:
        logger.warning("No region with p_val < %g, skipping motif enrichment", diff.pvalue_cutoff)
        return mdata
    logger.info("Testing motif enrichment in %d regions", len(query))
    enrichment = config.enrichment
    backgrounds = {
        "naive": naive_background(peaks.var, query, enrichment.n_background, run.seed),
        "matched": match_region_stats(peaks.var, query, list(enrichment.match_features), enrichment.n_background,
                                      enrichment.n_bins, run.seed),
    }
    for name, background in backgrounds.items():
        enriched = find_motifs(peaks, query, background)
        write_table(enriched, out, prefix, f"enriched_motifs_{name}")
    plot_motif_logos(motifs, list(enriched.index[:6]), out, prefix)
    return mdata
