"""
Fragment files: tab-separated, block-gzipped `chrom start end barcode count`
records as written by cellranger-atac. Counting is done on Tn5 insertion
sites, i.e. both ends of every fragment, the way Signac's FeatureMatrix does.
"""
import logging
import os

import numpy as np
import pandas as pd
from pyranges import PyRanges
from scipy.sparse import coo_matrix, csr_matrix, vstack
from tqdm import tqdm

logger = logging.getLogger(__name__)

FRAGMENT_COLUMNS = ["Chromosome", "Start", "End", "Barcode", "Count"]


def read_fragments(fragment_file, barcodes=None, chunksize=5_000_000):
    """
    Read a fragment file, keeping the fragments of the given barcodes only.
    """
    if not os.path.exists(fragment_file):
        raise FileNotFoundError(f"Fragment file {fragment_file} does not exist")
    keep = None if barcodes is None else set(barcodes)
    chunks = []
    reader = pd.read_csv(
        fragment_file,
        sep="\t",
        header=None,
        comment="#",
        names=FRAGMENT_COLUMNS,
        dtype={"Chromosome": str, "Start": np.int64, "End": np.int64, "Barcode": str, "Count": np.int64},
        chunksize=chunksize,
    )
    for chunk in tqdm(reader, desc=f"Reading {os.path.basename(fragment_file)}", leave=False):
        if keep is not None:
            chunk = chunk[chunk.Barcode.isin(keep)]
        chunks.append(chunk)
    if not chunks:
        return pd.DataFrame({c: pd.Series(dtype=t) for c, t in zip(FRAGMENT_COLUMNS, [str, np.int64, np.int64, str, np.int64])})
    fragments = pd.concat(chunks, ignore_index=True)
    logger.info("Read %d fragments from %s", len(fragments), fragment_file)
    return fragments


def insertion_sites(fragments):
    """One 1-bp interval per fragment end."""
    return pd.DataFrame({
        "Chromosome": np.concatenate([fragments.Chromosome.values, fragments.Chromosome.values]),
        "Start": np.concatenate([fragments.Start.values, fragments.End.values - 1]),
        "End": np.concatenate([fragments.Start.values + 1, fragments.End.values]),
        "Barcode": np.concatenate([fragments.Barcode.values, fragments.Barcode.values]),
    })


def count_insertions(fragments, regions, barcodes):
    """
    Count insertion sites per cell and region.

    Parameters
    ----------
    fragments: pd.DataFrame
        Fragments as returned by read_fragments.
    regions: pd.DataFrame
        BED-like dataframe (Chromosome, Start, End); regions may overlap.
    barcodes: sequence of str
        Cell barcodes, giving the row order of the result.

    Returns
    -------
    scipy.sparse.csr_matrix
        cells x regions insertion counts.
    """
    shape = (len(barcodes), len(regions))
    if len(fragments) == 0 or len(regions) == 0:
        return csr_matrix(shape, dtype=np.float32)
    cuts = PyRanges(insertion_sites(fragments))
    targets = PyRanges(
        pd.DataFrame({
            "Chromosome": regions["Chromosome"].astype(str).values,
            "Start": regions["Start"].values.astype(np.int64),
            "End": regions["End"].values.astype(np.int64),
            "region_idx": np.arange(len(regions)),
        })
    )
    overlap = cuts.join(targets)
    if len(overlap) == 0:
        return csr_matrix(shape, dtype=np.float32)
    overlap = overlap.as_df()
    cell_idx = pd.Series(np.arange(len(barcodes)), index=pd.Index(barcodes)).reindex(overlap.Barcode.values)
    found = ~cell_idx.isnull().values
    row = cell_idx.values[found].astype(np.int64)
    col = overlap.region_idx.values[found].astype(np.int64)
    # duplicated coordinates are summed by the conversion to csr
    return coo_matrix((np.ones(len(row), dtype=np.float32), (row, col)), shape=shape).tocsr()


def fragment_files(adata):
    """sample -> fragment file registered on a peaks AnnData."""
    files = adata.uns.get("fragments", {})
    if len(files) == 0:
        raise ValueError("No fragment file registered for this object")
    return dict(files)


def count_features(adata, regions):
    """
    Count insertions over regions for every cell of an object that may hold several samples.

    Cells are matched to their sample through obs['dataset'] and to the
    fragment file through obs['barcode'].
    """
    files = fragment_files(adata)
    rows = []
    order = []
    for sample, cells in adata.obs.groupby("dataset", observed=True).groups.items():
        if sample not in files:
            raise KeyError(f"No fragment file for sample {sample}")
        barcodes = adata.obs.loc[cells, "barcode"].values
        fragments = read_fragments(files[sample], barcodes)
        rows.append(count_insertions(fragments, regions, barcodes))
        order.append(adata.obs_names.get_indexer(cells))
    counts = vstack(rows).tocsr()
    # back to the order of adata.obs_names
    position = np.empty(adata.n_obs, dtype=np.int64)
    position[np.concatenate(order)] = np.arange(adata.n_obs)
    return counts[position]
