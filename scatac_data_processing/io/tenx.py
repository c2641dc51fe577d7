import logging
import os

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy.sparse import csr_matrix

from scatac_data_processing.io.region import is_standard_chromosome, parse_region_names, region_names

logger = logging.getLogger(__name__)


def read_metadata(metadata_csv):
    """Per-cell metadata written by cellranger-atac (singlecell.csv), indexed by barcode."""
    if not os.path.exists(metadata_csv):
        raise FileNotFoundError(f"Metadata file {metadata_csv} does not exist")
    metadata = pd.read_csv(metadata_csv, header=0, index_col=0)
    # the first row of singlecell.csv is the NO_BARCODE aggregate
    return metadata.drop(index="NO_BARCODE", errors="ignore")


def set_regions(adata, standard_chromosomes=True):
    """
    Rename features to chrom-start-end keys and store the coordinates in var.
    """
    regions = parse_region_names(adata.var_names)
    adata.var_names = region_names(regions)
    regions.index = adata.var_names
    for column in regions.columns:
        adata.var[column] = regions[column].values
    if standard_chromosomes:
        keep = is_standard_chromosome(adata.var["Chromosome"])
        if not keep.all():
            logger.info("Dropping %d regions on non-standard chromosomes", (~keep).sum())
        adata = adata[:, keep].copy()
    return adata


def attach_metadata(adata, metadata, cells_only=True):
    """
    Join per-cell metadata on the barcodes; cells missing from the metadata are dropped.
    """
    if cells_only and "is__cell_barcode" in metadata.columns:
        metadata = metadata[metadata["is__cell_barcode"] == 1]
    common = adata.obs_names.intersection(metadata.index)
    if len(common) == 0:
        raise ValueError("No barcode is shared between the count matrix and the metadata")
    if len(common) < adata.n_obs:
        logger.info("%d of %d barcodes have metadata", len(common), adata.n_obs)
    adata = adata[common].copy()
    overlap = [c for c in metadata.columns if c in adata.obs.columns]
    adata.obs = adata.obs.join(metadata.loc[common].drop(columns=overlap))
    return adata


def make_peaks_object(counts, barcodes, regions, metadata=None, sample="sample", fragments=None):
    """
    Build the peaks AnnData from a cells x regions count matrix.
    """
    obs = pd.DataFrame(index=pd.Index(barcodes, name=None).astype(str))
    var = pd.DataFrame(index=pd.Index(regions).astype(str))
    adata = ad.AnnData(X=csr_matrix(counts, dtype=np.float32), obs=obs, var=var)
    adata = set_regions(adata)
    if metadata is not None:
        adata = attach_metadata(adata, metadata)
    return tag_sample(adata, sample, fragments)


def tag_sample(adata, sample, fragments=None):
    adata.obs["dataset"] = sample
    adata.obs["barcode"] = adata.obs_names.values
    adata.uns["fragments"] = {sample: fragments} if fragments is not None else {}
    return adata


def read_10x_sample(matrix_h5, metadata_csv, fragments, sample):
    """
    Read one cellranger-atac sample: the peak-barcode HDF5 matrix, the
    per-cell metadata and the fragment file location.
    """
    if not os.path.exists(matrix_h5):
        raise FileNotFoundError(f"Count matrix {matrix_h5} does not exist")
    logger.info("Reading %s from %s", sample, matrix_h5)
    adata = sc.read_10x_h5(matrix_h5, gex_only=False)
    if "feature_types" in adata.var.columns:
        adata = adata[:, (adata.var.feature_types == "Peaks").values].copy()
    adata.X = csr_matrix(adata.X, dtype=np.float32)
    adata.var = pd.DataFrame(index=adata.var_names)
    adata = set_regions(adata)
    if metadata_csv is not None:
        adata = attach_metadata(adata, read_metadata(metadata_csv))
    if fragments is not None and not os.path.exists(fragments):
        raise FileNotFoundError(f"Fragment file {fragments} does not exist")
    adata = tag_sample(adata, sample, fragments)
    logger.info("%s: %d cells x %d peaks", sample, adata.n_obs, adata.n_vars)
    return adata
